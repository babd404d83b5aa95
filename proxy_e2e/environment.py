"""
Environment provisioning

An Environment is one isolated copy of the system under test: a dedicated
bridge network, a scratch directory tree bind-mounted into the proxy, and a
single proxy container with its HTTP/HTTPS ports published on ephemeral host
ports. Everything it acquires is registered for cleanup as it is acquired,
so provisioning that fails halfway leaves nothing behind.

    with provision(settings=settings) as env:
        env.issue_certificate("secure.example.com")
        backend = env.start_backend(env_vars={"VIRTUAL_HOST": "https://secure.example.com"})
        env.await_convergence()
        result = env.https_get("secure.example.com")
"""

import enum
import logging
import tempfile
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence, TypeVar

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from . import backends as backend_factory
from . import certs, probes, sync
from .backends import ENV_LABEL, ROLE_LABEL, Backend
from .certs import CertificateRecord
from .cleanup import REGISTRY, CleanupCoordinator, ResourceRegistry
from .config import HarnessSettings, load_settings
from .errors import (CertificateConflictError, HarnessError, ProvisioningError,
                     ProxyImageMissing)
from .sync import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_NGINX_CONF = """events {
    worker_connections 1024;
}

http {
    include /etc/nginx/conf.d/*.conf;
}
"""

# Where the proxy image expects each scratch directory
SSL_MOUNT = "/etc/ssl/custom"
NGINX_MOUNT = "/etc/nginx"
CHALLENGE_MOUNT = "/tmp/acme-challenges"
DOCKER_SOCKET_MOUNT = "/var/run/docker.sock"


class EnvironmentState(enum.Enum):
    CREATED = "created"
    PROVISIONING = "provisioning"
    READY = "ready"
    IN_USE = "in_use"
    TEARING_DOWN = "tearing_down"
    DESTROYED = "destroyed"


@dataclass
class ProxyConfig:
    """How the proxy container is configured for one environment"""
    base_config: str = DEFAULT_NGINX_CONF
    environment: Dict[str, str] = field(default_factory=dict)
    ready_log: Optional[str] = None
    # paths relative to the nginx config directory
    extra_files: Dict[str, str] = field(default_factory=dict)
    ports: Sequence[str] = ("80/tcp", "443/tcp")


def new_environment_id() -> str:
    return f"proxy-e2e-{uuid.uuid4().hex[:12]}"


class Environment:
    """One network, one proxy, one scratch tree"""

    def __init__(self, environment_id: str, client, settings: HarnessSettings,
                 registry: Optional[ResourceRegistry] = None):
        self.id = environment_id
        self.docker = client
        self.settings = settings
        self.registry = registry
        self.state = EnvironmentState.CREATED
        self.cleanup = CleanupCoordinator(environment_id)

        self.network = None
        self.proxy = None
        self.proxy_ip: Optional[str] = None
        self.ports: Dict[str, int] = {}

        self.scratch_dir: Optional[Path] = None
        self.tls_dir: Optional[Path] = None
        self.config_dir: Optional[Path] = None
        self.challenge_dir: Optional[Path] = None

        self.certificates: Dict[str, CertificateRecord] = {}
        self.backends: List[Backend] = []

    def __repr__(self) -> str:
        return f"Environment({self.id!r}, state={self.state.value}, http={self.http_port}, https={self.https_port})"

    @property
    def address(self) -> str:
        """Host address the published proxy ports are reachable on"""
        return self.settings.host

    @property
    def http_port(self) -> Optional[int]:
        return self.ports.get("80/tcp")

    @property
    def https_port(self) -> Optional[int]:
        return self.ports.get("443/tcp")

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    def _create_scratch_tree(self, proxy_config: ProxyConfig):
        self.scratch_dir = Path(tempfile.mkdtemp(prefix=f"{self.id}-", dir=self.settings.scratch_root))
        self.cleanup.push_directory(self.scratch_dir)

        self.tls_dir = self.scratch_dir / "ssl"
        self.config_dir = self.scratch_dir / "nginx"
        self.challenge_dir = self.scratch_dir / "acme"
        for path in (self.tls_dir / "certs", self.tls_dir / "private",
                     self.config_dir / "conf.d", self.challenge_dir):
            path.mkdir(parents=True)

        (self.config_dir / "nginx.conf").write_text(proxy_config.base_config)
        for relative, content in proxy_config.extra_files.items():
            target = (self.config_dir / relative).resolve()
            if self.config_dir.resolve() not in target.parents:
                raise ProvisioningError(f"extra file {relative!r} escapes the config directory")
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)
        logger.debug(f"{self.id}: scratch tree at {self.scratch_dir}")

    def _labels(self, role: str) -> Dict[str, str]:
        labels = dict(self.settings.labels)
        labels[ENV_LABEL] = self.id
        labels[ROLE_LABEL] = role
        return labels

    def _create_network(self):
        self.network = self.docker.networks.create(self.id, driver="bridge", labels=self._labels("network"))
        self.cleanup.push_network(self.network)
        logger.debug(f"{self.id}: network created")

    def _start_proxy(self, image: str, proxy_config: ProxyConfig):
        environment = {
            "NGINX_CONF_DIR": NGINX_MOUNT,
            "CHALLENGE_DIR": CHALLENGE_MOUNT,
            "SSL_DIR": SSL_MOUNT,
        }
        environment.update(proxy_config.environment)
        volumes = {
            self.settings.docker_socket: {"bind": DOCKER_SOCKET_MOUNT, "mode": "rw"},
            str(self.tls_dir): {"bind": SSL_MOUNT, "mode": "rw"},
            str(self.config_dir): {"bind": NGINX_MOUNT, "mode": "rw"},
            str(self.challenge_dir): {"bind": CHALLENGE_MOUNT, "mode": "rw"},
        }

        logger.info(f"{self.id}: starting proxy from {image}")
        self.proxy = self.docker.containers.create(
            image,
            name=f"{self.id}-proxy",
            network=self.network.name,
            ports={port: None for port in proxy_config.ports},
            volumes=volumes,
            environment=environment,
            labels=self._labels("proxy"),
        )
        self.cleanup.push_container(self.proxy)
        self.proxy.start()

    def _resolve_addresses(self):
        self.proxy.reload()
        settings = self.proxy.attrs.get("NetworkSettings", {})
        network = (settings.get("Networks") or {}).get(self.network.name) or {}
        self.proxy_ip = network.get("IPAddress") or None

        self.ports = {}
        for port, bindings in (settings.get("Ports") or {}).items():
            if bindings:
                self.ports[port] = int(bindings[0]["HostPort"])
        if self.http_port is None:
            raise ProvisioningError(f"{self.id}: proxy has no published HTTP port")

    def _provision(self, image: str, proxy_config: ProxyConfig):
        try:
            self.docker.images.get(image)
        except ImageNotFound as e:
            raise ProxyImageMissing(image) from e

        self._create_scratch_tree(proxy_config)
        self._create_network()
        self._start_proxy(image, proxy_config)

        ready_log = proxy_config.ready_log or self.settings.ready_log
        sync.await_log_line(self.proxy, ready_log,
                            RetryPolicy.fixed(self.settings.startup_timeout, self.settings.poll_interval))
        self._resolve_addresses()
        sync.await_reachable(
            self.address, self.http_port, self.settings.startup_timeout,
            policy=RetryPolicy.fixed(self.settings.startup_timeout, self.settings.poll_interval),
            settle=self.settings.settle_interval,
            connect_timeout=self.settings.connect_timeout,
        )

    def _abort(self):
        failures = self.cleanup.release()
        self.state = EnvironmentState.DESTROYED
        if failures:
            logger.warning(f"{self.id}: {len(failures)} cleanup step(s) failed after provisioning error")

    # ------------------------------------------------------------------
    # Scenario helpers
    # ------------------------------------------------------------------

    def _use(self):
        if self.state is EnvironmentState.READY:
            self.state = EnvironmentState.IN_USE
        elif self.state is not EnvironmentState.IN_USE:
            raise HarnessError(f"{self.id} is {self.state.value}, not usable")

    def issue_certificate(self, hostname: str, **kwargs) -> CertificateRecord:
        """Write a self-signed cert/key pair the proxy will pick up for ``hostname``"""
        self._use()
        if hostname in self.certificates:
            raise CertificateConflictError(hostname, str(self.certificates[hostname].cert_path))
        record = certs.issue(self.tls_dir, hostname, **kwargs)
        self.certificates[hostname] = record
        return record

    def start_backend(self, image: Optional[str] = None, env_vars: Optional[Mapping[str, str]] = None,
                      exposed_port: str = "80/tcp", **kwargs) -> Backend:
        """Start a backend on this environment's network; the caller owns it"""
        self._use()
        backend = backend_factory.start_backend(
            self, image or self.settings.backend_image, env_vars or {}, exposed_port, **kwargs)
        self.backends.append(backend)
        return backend

    def http_get(self, host: str, path: str = "/", **kwargs) -> probes.ProbeResult:
        kwargs.setdefault("timeout", self.settings.probe_timeout)
        return probes.http_get(self.address, self.http_port, host, path, **kwargs)

    def https_get(self, host: str, path: str = "/", **kwargs) -> probes.ProbeResult:
        kwargs.setdefault("timeout", self.settings.probe_timeout)
        return probes.https_get(self.address, self.https_port, host, path, **kwargs)

    def ws_connect(self, host: str, path: str = "/", **kwargs) -> probes.WebSocketProbe:
        kwargs.setdefault("timeout", self.settings.probe_timeout)
        return probes.ws_connect(self.address, self.http_port, host, path, **kwargs)

    def wss_connect(self, host: str, path: str = "/", **kwargs) -> probes.WebSocketProbe:
        kwargs.setdefault("timeout", self.settings.probe_timeout)
        return probes.wss_connect(self.address, self.https_port, host, path, **kwargs)

    def await_convergence(self, reason: str = "configuration reload"):
        """Give the proxy time to notice the last container event"""
        sync.await_convergence(self.settings.convergence_delay, reason)

    def convergence_policy(self, timeout: Optional[float] = None) -> RetryPolicy:
        return RetryPolicy.fixed(timeout if timeout is not None else self.settings.convergence_timeout,
                                 self.settings.poll_interval)

    def eventually(self, action: Callable[[], T], predicate: Callable[[T], bool],
                   description: str = "condition", timeout: Optional[float] = None) -> T:
        return sync.eventually(action, predicate, self.convergence_policy(timeout), description)

    def await_status(self, host: str, status: int, path: str = "/", *, secure: bool = False,
                     timeout: Optional[float] = None, **kwargs) -> probes.ProbeResult:
        """Probe ``host`` until it answers ``status``; returns that response"""
        probe = self.https_get if secure else self.http_get
        scheme = "https" if secure else "http"
        return self.eventually(
            lambda: probe(host, path, **kwargs),
            lambda result: result.status == status,
            f"{scheme}://{host}{path} answers {status}",
            timeout,
        )

    def proxy_logs(self, tail="all") -> str:
        if self.proxy is None:
            return ""
        try:
            return self.proxy.logs(tail=tail).decode("utf-8", errors="replace")
        except (NotFound, APIError) as e:
            return f"<proxy logs unavailable: {e}>"

    def generated_config(self) -> Dict[str, str]:
        """Configuration fragments the proxy wrote to ``conf.d``, by file name"""
        if self.config_dir is None:
            return {}
        conf_d = self.config_dir / "conf.d"
        if not conf_d.is_dir():
            return {}
        return {path.name: path.read_text(errors="replace") for path in sorted(conf_d.glob("*.conf"))}

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    def release(self):
        """Stop the proxy, drop the network and delete the scratch tree"""
        if self.state in (EnvironmentState.TEARING_DOWN, EnvironmentState.DESTROYED):
            return
        self.state = EnvironmentState.TEARING_DOWN
        logger.info(f"{self.id}: releasing")
        try:
            self.cleanup.release()
        finally:
            if self.registry is not None:
                self.registry.unregister(self)
            self.state = EnvironmentState.DESTROYED

    def __enter__(self) -> "Environment":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False


def provision(image: Optional[str] = None, proxy_config: Optional[ProxyConfig] = None, *,
              settings: Optional[HarnessSettings] = None, docker_client=None,
              registry: Optional[ResourceRegistry] = None) -> Environment:
    """Provision an isolated environment with a ready proxy

    Raises ProxyImageMissing when the image is not built, ReadinessTimeout
    when the proxy never becomes reachable and ProvisioningError for any
    other setup failure. Partially acquired resources are released first.
    """
    settings = settings or load_settings()
    image = image or settings.image
    proxy_config = proxy_config or ProxyConfig()
    registry = REGISTRY if registry is None else registry

    if docker_client is None:
        try:
            docker_client = docker.from_env()
        except DockerException as e:
            raise ProvisioningError(f"cannot connect to the Docker daemon: {e}") from e

    environment = Environment(new_environment_id(), docker_client, settings, registry)
    environment.state = EnvironmentState.PROVISIONING
    logger.info(f"Provisioning {environment.id}")

    provisioned = False
    try:
        environment._provision(image, proxy_config)
        provisioned = True
    except HarnessError:
        raise
    except (DockerException, OSError) as e:
        raise ProvisioningError(f"provisioning {environment.id} failed: {e}") from e
    finally:
        if not provisioned:
            environment._abort()

    environment.state = EnvironmentState.READY
    registry.register(environment)
    logger.info(f"{environment.id} ready: http={environment.address}:{environment.http_port} "
                f"https={environment.address}:{environment.https_port} proxy_ip={environment.proxy_ip}")
    return environment
