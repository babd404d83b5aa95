"""
Backend container factory

Backends are the routing targets the proxy discovers through the Docker
socket. Each one is started on the environment's network with its
declarations as environment variables, and is only handed back once its
service port accepts connections.

A Backend is owned by the scenario, not by the Environment: tests stop,
restart and remove backends as the event under test, so environment release
never touches them.
"""

import enum
import logging
import socket
import time
import uuid
from typing import Dict, List, Mapping, Optional, Sequence, Union

from docker.errors import APIError, ImageNotFound, NotFound

from .declarations import VirtualHostRule, virtual_hosts
from .errors import ProvisioningError, StartError, StartFailure
from .sync import Deadline, RetryPolicy

logger = logging.getLogger(__name__)

ENV_LABEL = "proxy-e2e.environment"
ROLE_LABEL = "proxy-e2e.role"


class BackendState(enum.Enum):
    REQUESTED = "requested"
    STARTING = "starting"
    LISTENING = "listening"
    STOPPED = "stopped"
    REMOVED = "removed"


def listening(host: str, port: int, timeout: float = 1.0) -> bool:
    """True when something behind ``host:port`` holds a connection open

    A published Docker port accepts TCP connections as soon as the container
    starts, even before the service inside listens; in that case the
    forwarder closes the connection straight away. A service that is up
    keeps it open waiting for a request.
    """
    try:
        with socket.create_connection((host, port), timeout=timeout) as sock:
            sock.settimeout(0.2)
            try:
                return sock.recv(1) != b""
            except socket.timeout:
                return True
    except OSError:
        return False


class Backend:
    """A running routing target and the declarations it was started with"""

    def __init__(self, container, name: str, environment_id: str, network_name: str,
                 image: str, env_vars: Mapping[str, str], exposed_port: str,
                 address: str, policy: RetryPolicy, connect_timeout: float = 1.0):
        self.container = container
        self.name = name
        self.environment_id = environment_id
        self.network_name = network_name
        self.image = image
        self.env_vars: Dict[str, str] = dict(env_vars)
        self.exposed_port = exposed_port
        self.address = address
        self.policy = policy
        self.connect_timeout = connect_timeout
        self.state = BackendState.REQUESTED
        self.ip: Optional[str] = None
        self.host_port: Optional[int] = None

    def __repr__(self) -> str:
        return f"Backend({self.name!r}, image={self.image!r}, state={self.state.value}, ip={self.ip})"

    @property
    def rules(self) -> List[VirtualHostRule]:
        return virtual_hosts(self.env_vars)

    @property
    def hostnames(self) -> List[str]:
        return [rule.hostname for rule in self.rules]

    def _refresh(self):
        """Re-read the network address and published port"""
        try:
            self.container.reload()
        except NotFound as e:
            raise StartError(self.name, StartFailure.CRASHED_BEFORE_READY) from e
        settings = self.container.attrs.get("NetworkSettings", {})
        network = (settings.get("Networks") or {}).get(self.network_name) or {}
        self.ip = network.get("IPAddress") or None
        bindings = (settings.get("Ports") or {}).get(self.exposed_port) or []
        self.host_port = int(bindings[0]["HostPort"]) if bindings else None

    def wait_listening(self, policy: Optional[RetryPolicy] = None):
        """Block until the service port accepts connections

        Raises StartError if the container exits first or the deadline passes.
        """
        policy = policy or self.policy
        deadline = Deadline(policy.timeout)
        self.state = BackendState.STARTING

        for interval in policy.intervals():
            self._refresh()
            if self.container.status in ("exited", "dead"):
                raise StartError(self.name, StartFailure.CRASHED_BEFORE_READY, self.logs(tail=40))
            if self.host_port and listening(self.address, self.host_port, self.connect_timeout):
                self.state = BackendState.LISTENING
                logger.info(f"Backend {self.name} listening on {self.ip} ({self.address}:{self.host_port})")
                return
            if deadline.expired():
                break
            time.sleep(min(interval, deadline.remaining()))

        raise StartError(self.name, StartFailure.TIMED_OUT, self.logs(tail=40))

    def is_running(self) -> bool:
        try:
            self.container.reload()
        except NotFound:
            return False
        return self.container.status == "running"

    def stop(self, timeout: int = 5):
        """Stop the container; the proxy should drop its routes"""
        logger.info(f"Stopping backend {self.name}")
        self.container.stop(timeout=timeout)
        self.state = BackendState.STOPPED

    def start(self, wait: bool = True):
        """Start a stopped backend again"""
        logger.info(f"Starting backend {self.name}")
        self.container.start()
        if wait:
            self.wait_listening()

    def restart(self, timeout: int = 5, wait: bool = True):
        logger.info(f"Restarting backend {self.name}")
        self.container.restart(timeout=timeout)
        if wait:
            self.wait_listening()

    def remove(self):
        """Force-remove the container; a second call is a no-op"""
        if self.state is BackendState.REMOVED:
            return
        logger.info(f"Removing backend {self.name}")
        try:
            self.container.remove(force=True, v=True)
        except NotFound:
            pass
        self.state = BackendState.REMOVED

    def logs(self, tail: Union[int, str] = "all") -> str:
        try:
            return self.container.logs(tail=tail).decode("utf-8", errors="replace")
        except (NotFound, APIError) as e:
            return f"<logs unavailable: {e}>"


def backend_name(environment_id: str) -> str:
    return f"{environment_id}-backend-{uuid.uuid4().hex[:8]}"


def create_container(client, image: str, **kwargs):
    """``containers.create``, pulling ``image`` first when it is not local"""
    try:
        return client.containers.create(image, **kwargs)
    except ImageNotFound:
        logger.info(f"Pulling {image}")
        client.images.pull(image)
        return client.containers.create(image, **kwargs)


def start_backend(environment, image: str, env_vars: Mapping[str, str],
                  exposed_port: str = "80/tcp", *,
                  command: Optional[Union[str, Sequence[str]]] = None,
                  timeout: Optional[float] = None,
                  policy: Optional[RetryPolicy] = None) -> Backend:
    """Start ``image`` on the environment's network and wait for it to listen

    The container is created and started in two steps so one that exists but
    fails to start is still removed.
    """
    settings = environment.settings
    if "/" not in exposed_port:
        exposed_port = f"{exposed_port}/tcp"
    if policy is None:
        policy = RetryPolicy.fixed(timeout if timeout is not None else settings.backend_timeout,
                                   settings.poll_interval)

    name = backend_name(environment.id)
    labels = dict(settings.labels)
    labels[ENV_LABEL] = environment.id
    labels[ROLE_LABEL] = "backend"

    logger.info(f"Starting backend {name} from {image} with {dict(env_vars)}")
    try:
        container = create_container(
            environment.docker,
            image,
            command=command,
            name=name,
            environment=dict(env_vars),
            network=environment.network.name,
            ports={exposed_port: None},
            labels=labels,
        )
    except ImageNotFound as e:
        raise ProvisioningError(f"backend image {image} not available: {e}") from e
    except APIError as e:
        raise ProvisioningError(f"could not create backend {name}: {e}") from e

    backend = Backend(
        container,
        name=name,
        environment_id=environment.id,
        network_name=environment.network.name,
        image=image,
        env_vars=env_vars,
        exposed_port=exposed_port,
        address=environment.address,
        policy=policy,
        connect_timeout=settings.connect_timeout,
    )
    try:
        container.start()
    except APIError as e:
        logger.error(f"Backend {name} was created but did not start, removing it")
        backend.remove()
        raise ProvisioningError(f"could not start backend {name}: {e}") from e

    try:
        backend.wait_listening()
    except StartError:
        logger.error(f"Backend {name} failed to start, removing it")
        backend.remove()
        raise
    return backend
