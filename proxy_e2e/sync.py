"""
Readiness and convergence waits

The proxy reconfigures itself asynchronously when containers start, stop or
disappear, and it exposes no completion signal. Every wait here is a bounded
sleep-poll loop with an explicit deadline so that a slow reload surfaces as a
timeout error instead of a hang or an unexplained assertion failure.
"""

import logging
import socket
import time
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, TypeVar

from .errors import ConvergenceTimeout, ProbeError, ProvisioningError, ReadinessTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """A deadline plus a poll interval, optionally growing by ``backoff``"""
    timeout: float
    interval: float = 0.5
    backoff: float = 1.0
    max_interval: Optional[float] = None

    def __post_init__(self):
        if self.timeout < 0:
            raise ValueError("timeout must be >= 0")
        if self.interval <= 0:
            raise ValueError("interval must be > 0")
        if self.backoff < 1.0:
            raise ValueError("backoff must be >= 1.0")

    @classmethod
    def fixed(cls, timeout: float, interval: float = 0.5) -> "RetryPolicy":
        return cls(timeout=timeout, interval=interval)

    @classmethod
    def exponential(cls, timeout: float, interval: float = 0.1, backoff: float = 2.0,
                    max_interval: float = 2.0) -> "RetryPolicy":
        return cls(timeout=timeout, interval=interval, backoff=backoff, max_interval=max_interval)

    def intervals(self) -> Iterator[float]:
        """Successive sleep durations, unbounded; callers enforce the deadline"""
        current = self.interval
        while True:
            yield current
            current = current * self.backoff
            if self.max_interval is not None:
                current = min(current, self.max_interval)


class Deadline:
    """Tracks remaining time for one wait"""

    def __init__(self, timeout: float, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self.timeout = timeout
        self.expires_at = clock() + timeout

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self.clock())

    def expired(self) -> bool:
        return self.clock() >= self.expires_at


def try_connect(host: str, port: int, timeout: float = 1.0) -> bool:
    """Single bounded TCP connect attempt"""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def await_reachable(host: str, port: int, timeout: float, *,
                    policy: Optional[RetryPolicy] = None,
                    settle: float = 2.0,
                    connect_timeout: float = 1.0,
                    connect: Callable[[str, int, float], bool] = try_connect,
                    clock: Callable[[], float] = time.monotonic,
                    sleep: Callable[[float], None] = time.sleep) -> None:
    """Wait for a TCP service to accept connections

    On success sleeps ``settle`` seconds so the service can finish
    initialising behind its listening socket.
    """
    policy = policy or RetryPolicy.fixed(timeout, 0.5)
    deadline = Deadline(timeout, clock)
    attempts = 0
    logger.debug(f"Waiting for {host}:{port} (timeout {timeout:.1f}s)...")

    for interval in policy.intervals():
        attempts += 1
        if connect(host, port, min(connect_timeout, max(deadline.remaining(), 0.01))):
            logger.info(f"{host}:{port} is ready after {attempts} attempt(s)")
            if settle > 0:
                sleep(settle)
            return
        if deadline.expired():
            break
        sleep(min(interval, deadline.remaining()))

    raise ReadinessTimeout(f"{host}:{port}", timeout, f"{attempts} connection attempt(s) refused")


def await_convergence(delay: float, reason: str = "configuration reload",
                      sleep: Callable[[float], None] = time.sleep) -> None:
    """Fixed-delay wait after a registration-affecting event

    This does not observe the proxy. It only gives the proxy's reconciliation
    loop time to run; probes issued shortly afterwards may still see the old
    state, which is what ``eventually`` is for.
    """
    logger.debug(f"Waiting {delay:.1f}s for {reason}")
    sleep(delay)


def await_log_line(container, needle: str, policy: RetryPolicy, *,
                   clock: Callable[[], float] = time.monotonic,
                   sleep: Callable[[float], None] = time.sleep) -> None:
    """Poll a container's logs until ``needle`` appears

    Fails fast with ProvisioningError if the container stops running first.
    """
    deadline = Deadline(policy.timeout, clock)
    name = getattr(container, "name", "container")

    for interval in policy.intervals():
        logs = container.logs().decode("utf-8", errors="replace")
        if needle in logs:
            logger.info(f"{name} logged {needle!r}")
            return

        container.reload()
        if container.status in ("exited", "dead"):
            raise ProvisioningError(
                f"{name} exited before logging {needle!r}\n--- container logs ---\n{_tail(logs)}"
            )
        if deadline.expired():
            break
        sleep(min(interval, deadline.remaining()))

    raise ReadinessTimeout(name, policy.timeout, f"log line {needle!r} never appeared")


def eventually(action: Callable[[], T], predicate: Callable[[T], bool], policy: RetryPolicy,
               description: str = "condition", *,
               clock: Callable[[], float] = time.monotonic,
               sleep: Callable[[float], None] = time.sleep) -> T:
    """Re-run ``action`` until ``predicate`` accepts its result

    A ProbeError raised inside the window is treated as transient and the
    probe is retried. Returns the accepted result; raises ConvergenceTimeout
    carrying the last observation (a result or an error) when the deadline
    passes.
    """
    deadline = Deadline(policy.timeout, clock)
    last: object = None

    for interval in policy.intervals():
        try:
            result = action()
        except ProbeError as e:
            last = e
        else:
            if predicate(result):
                return result
            last = result
        if deadline.expired():
            break
        sleep(min(interval, deadline.remaining()))

    raise ConvergenceTimeout(description, policy.timeout, last)


def _tail(text: str, lines: int = 40) -> str:
    return "\n".join(text.splitlines()[-lines:])
