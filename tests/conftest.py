"""
pytest configuration and fixtures for the proxy e2e suite

Provides harness settings, a shared Docker client, one freshly provisioned
environment per test and a backend factory that removes whatever a test
started. Failing tests get the proxy's logs and generated configuration
attached to their report.
"""

import time
from typing import Dict, Optional

import docker
import pytest
from docker.errors import DockerException

from proxy_e2e import diagnostics
from proxy_e2e.cleanup import REGISTRY
from proxy_e2e.config import load_settings
from proxy_e2e.environment import provision
from proxy_e2e.errors import ProxyImageMissing
from proxy_e2e.log import configure_logging

# ============================================================================
# Test configuration
# ============================================================================

def pytest_configure(config):
    """Register suite-wide markers"""
    config.addinivalue_line(
        "markers", "e2e: Tests that provision Docker containers"
    )
    config.addinivalue_line(
        "markers", "unit: Harness self-tests, no Docker required"
    )
    config.addinivalue_line(
        "markers", "slow: Tests that wait through several reconfigurations"
    )


def pytest_sessionfinish(session, exitstatus):
    """Release any environment a crashed test left behind"""
    REGISTRY.release_all()


# ============================================================================
# Session-level fixtures (setup once per test session)
# ============================================================================

@pytest.fixture(scope="session")
def settings():
    """Harness settings from defaults, PROXY_E2E_CONFIG and PROXY_E2E_* vars"""
    harness_settings = load_settings()
    configure_logging(harness_settings.verbose)
    return harness_settings


@pytest.fixture(scope="session")
def docker_client(settings):
    """Docker client shared by every environment of the session"""
    try:
        client = docker.from_env()
        client.ping()
    except DockerException as e:
        pytest.skip(f"Docker daemon not available: {e}")
    yield client
    client.close()


# ============================================================================
# Environment fixtures
# ============================================================================

@pytest.fixture
def environment(settings, docker_client):
    """A provisioned environment, released after the test"""
    try:
        env = provision(settings=settings, docker_client=docker_client)
    except ProxyImageMissing as e:
        pytest.skip(str(e))
    yield env
    env.release()


@pytest.fixture
def backend_factory(environment):
    """Start backends on the test's environment; all are removed at teardown"""
    started = []

    def _start(env_vars: Optional[Dict[str, str]] = None, image: Optional[str] = None,
               exposed_port: str = "80/tcp", **kwargs):
        backend = environment.start_backend(image, env_vars, exposed_port, **kwargs)
        started.append(backend)
        return backend

    yield _start

    for backend in reversed(started):
        backend.remove()


@pytest.fixture
def ws_backend_factory(backend_factory, settings):
    """Start WebSocket echo backends listening on 8080"""
    def _start(env_vars: Dict[str, str], **kwargs):
        return backend_factory(env_vars, image=settings.ws_backend_image, exposed_port="8080/tcp", **kwargs)
    return _start


# ============================================================================
# Test result collection
# ============================================================================

@pytest.fixture(autouse=True)
def setup_test_logging(request):
    """Set up per-test logging"""
    test_name = request.node.name
    print(f"=== Starting test: {test_name} ===")

    start_time = time.time()
    yield
    duration = time.time() - start_time

    print(f"=== Finished test: {test_name} ({duration:.2f}s) ===")


@pytest.hookimpl(hookwrapper=True)
def pytest_runtest_makereport(item, call):
    """Attach proxy diagnostics to failing e2e tests"""
    outcome = yield
    report = outcome.get_result()
    if report.when != "call" or not report.failed:
        return

    funcargs = getattr(item, "funcargs", {})
    env = funcargs.get("environment")
    if env is None or env.proxy is None:
        return
    try:
        report.sections.append(("proxy diagnostics", diagnostics.collect(env)))
    except Exception as e:
        report.sections.append(("proxy diagnostics", f"diagnostics unavailable: {e}"))
