"""
Error taxonomy for the proxy e2e harness

Provisioning and readiness errors are fatal for a scenario. Probe errors are
frequently the expected outcome of a test, so they carry enough context
(kind, status, body) to be asserted on directly.
"""

import enum
from typing import Mapping, Optional


class HarnessError(Exception):
    """Base class for all harness errors"""


class ConfigError(HarnessError):
    """Harness settings could not be loaded"""


class ProvisioningError(HarnessError):
    """Network, container or directory setup failed"""


class ProxyImageMissing(ProvisioningError):
    """The proxy image under test is not present locally"""

    def __init__(self, image: str):
        super().__init__(f"proxy image {image!r} not found, build it first: docker build -t {image} .")
        self.image = image


class ReadinessTimeout(HarnessError):
    """A dependency never became reachable within its deadline"""

    def __init__(self, target: str, timeout: float, detail: str = ""):
        message = f"{target} did not become ready within {timeout:.1f}s"
        if detail:
            message += f": {detail}"
        super().__init__(message)
        self.target = target
        self.timeout = timeout


class ConvergenceTimeout(ReadinessTimeout):
    """The proxy never reflected a lifecycle event within the grace window"""

    def __init__(self, description: str, timeout: float, last_observation: object = None):
        super().__init__(description, timeout, f"last observation: {last_observation!r}")
        self.last_observation = last_observation


class StartFailure(enum.Enum):
    CRASHED_BEFORE_READY = "crashed_before_ready"
    TIMED_OUT = "timed_out"


class StartError(HarnessError):
    """A backend container failed to start listening"""

    def __init__(self, name: str, cause: StartFailure, logs: str = ""):
        if cause is StartFailure.CRASHED_BEFORE_READY:
            message = f"backend {name} exited before its port was reachable"
        else:
            message = f"backend {name} did not open its port in time"
        if logs:
            message += f"\n--- container logs ---\n{logs}"
        super().__init__(message)
        self.name = name
        self.cause = cause
        self.logs = logs


class GenerationError(HarnessError):
    """Certificate material could not be produced"""


class CertificateConflictError(GenerationError):
    """Certificate material for the hostname already exists in this environment"""

    def __init__(self, hostname: str, path: str):
        super().__init__(f"certificate for {hostname} already issued at {path}")
        self.hostname = hostname
        self.path = path


class ProbeError(HarnessError):
    """A single probe could not complete

    ``kind`` is one of ``connection``, ``timeout``, ``tls``, ``handshake``,
    ``protocol`` or ``closed``. Handshake rejections keep the HTTP status,
    headers and body the server answered with.
    """

    def __init__(self, kind: str, message: str, status: Optional[int] = None,
                 headers: Optional[Mapping[str, str]] = None, body: bytes = b""):
        super().__init__(message)
        self.kind = kind
        self.status = status
        self.headers = dict(headers or {})
        self.body = body

    def __str__(self) -> str:
        text = super().__str__()
        if self.status is not None:
            text += f" (status {self.status}"
            if self.body:
                text += f", body {self.body[:200]!r}"
            text += ")"
        return text


class AssertionFailure(AssertionError):
    """Expected vs actual mismatch with full diagnostic context"""

    def __init__(self, message: str, expected: object = None, actual: object = None):
        super().__init__(message)
        self.expected = expected
        self.actual = actual
