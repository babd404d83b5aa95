"""
Cleanup coordination

Every resource an environment acquires is registered here the moment it
exists, so a failure halfway through provisioning releases exactly what was
created. Release is best-effort: each step runs even when an earlier one
failed, failures are logged and never raised, and a second release is a no-op.
"""

import atexit
import logging
import shutil
import threading
from pathlib import Path
from typing import Callable, List, Tuple

from docker.errors import APIError, NotFound

logger = logging.getLogger(__name__)


class CleanupCoordinator:
    """Ordered release steps for one environment, run in reverse order"""

    def __init__(self, owner: str):
        self.owner = owner
        self._steps: List[Tuple[str, Callable[[], None]]] = []
        self._released = False
        self._lock = threading.Lock()
        self.failures: List[Tuple[str, BaseException]] = []

    @property
    def released(self) -> bool:
        return self._released

    def push(self, description: str, action: Callable[[], None]):
        """Register a release step; steps run last-in first-out"""
        if self._released:
            raise RuntimeError(f"{self.owner} already released, cannot register {description}")
        self._steps.append((description, action))

    def push_container(self, container, stop_timeout: int = 5):
        def _remove():
            try:
                container.stop(timeout=stop_timeout)
            except NotFound:
                return
            except APIError as e:
                logger.warning(f"{self.owner}: stopping {container.name} failed: {e}, forcing removal")
            try:
                container.remove(force=True, v=True)
            except NotFound:
                pass
        self.push(f"remove container {container.name}", _remove)

    def push_network(self, network):
        def _remove():
            try:
                network.reload()
                # leftover backends lose their endpoint but keep running
                for container in list(network.containers):
                    logger.warning(f"{self.owner}: {container.name} still attached to {network.name}, disconnecting")
                    network.disconnect(container, force=True)
                network.remove()
            except NotFound:
                pass
        self.push(f"remove network {network.name}", _remove)

    def push_directory(self, path: Path):
        def _remove():
            if path.exists():
                shutil.rmtree(path)
        self.push(f"delete {path}", _remove)

    def release(self) -> List[Tuple[str, BaseException]]:
        """Run every step once; returns the (step, error) pairs that failed"""
        with self._lock:
            if self._released:
                return []
            self._released = True
            steps = list(reversed(self._steps))
            self._steps.clear()

        failures = []
        for description, action in steps:
            try:
                action()
                logger.debug(f"{self.owner}: {description}")
            except Exception as e:
                logger.warning(f"{self.owner}: cleanup step '{description}' failed: {e}")
                failures.append((description, e))
        self.failures.extend(failures)
        if not failures:
            logger.info(f"{self.owner}: released")
        return failures


class ResourceRegistry:
    """Environments still alive in this process

    Lets the pytest session hook and the interpreter exit hook release
    anything a crashed or interrupted scenario left behind.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._live = {}

    def register(self, environment):
        with self._lock:
            self._live[environment.id] = environment

    def unregister(self, environment):
        with self._lock:
            self._live.pop(environment.id, None)

    def live(self) -> list:
        with self._lock:
            return list(self._live.values())

    def release_all(self):
        for environment in self.live():
            logger.warning(f"Releasing leaked environment {environment.id}")
            release(environment)


REGISTRY = ResourceRegistry()
atexit.register(REGISTRY.release_all)


def release(environment):
    """Release an environment; safe to call more than once"""
    environment.release()
