"""
proxy-e2e: black-box end-to-end harness for nginx-proxy-go

Provisions an isolated network, scratch tree and proxy container per
scenario, starts backend containers that declare virtual hosts, and probes the
proxy over HTTP, HTTPS, WS and WSS.
"""

from .assertions import (Check, SoftAssertions, assert_contains, assert_equals,
                         assert_header_contains, assert_not_contains, assert_status, contains,
                         equals, header_contains, not_contains, status_is)
from .backends import Backend, BackendState, start_backend
from .certs import CertificateRecord, issue
from .cleanup import REGISTRY, CleanupCoordinator, ResourceRegistry, release
from .config import HarnessSettings, load_settings
from .environment import Environment, EnvironmentState, ProxyConfig, provision
from .errors import (AssertionFailure, CertificateConflictError, ConfigError,
                     ConvergenceTimeout, GenerationError, HarnessError, ProbeError,
                     ProvisioningError, ProxyImageMissing, ReadinessTimeout,
                     StartError, StartFailure)
from .probes import ProbeResult, WebSocketProbe, http_get, https_get, ws_connect, wss_connect
from .sync import RetryPolicy, await_convergence, await_log_line, await_reachable, eventually

__version__ = "0.1.0"
