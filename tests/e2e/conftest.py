"""
pytest configuration for proxy scenario tests

Every test here provisions its own proxy environment and drives it through
backend container lifecycle events
"""

import pytest

from proxy_e2e.log import StepLogger

# ============================================================================
# Test configuration
# ============================================================================

def pytest_configure(config):
    """Configure scenario-specific test markers"""
    config.addinivalue_line(
        "markers", "routing: Virtual host, port and path routing tests"
    )
    config.addinivalue_line(
        "markers", "https: TLS termination and SNI tests"
    )
    config.addinivalue_line(
        "markers", "redirect: PROXY_FULL_REDIRECT tests"
    )
    config.addinivalue_line(
        "markers", "basic_auth: PROXY_BASIC_AUTH tests"
    )
    config.addinivalue_line(
        "markers", "websocket: WebSocket upgrade tests"
    )
    config.addinivalue_line(
        "markers", "lifecycle: Backend start/stop/restart/removal tests"
    )


def pytest_collection_modifyitems(config, items):
    """Auto-mark scenario tests based on their file names"""
    for item in items:
        # Auto-mark based on file name
        if "test_http_routing.py" in str(item.fspath):
            item.add_marker(pytest.mark.routing)
        elif "test_https.py" in str(item.fspath):
            item.add_marker(pytest.mark.https)
        elif "test_redirect.py" in str(item.fspath):
            item.add_marker(pytest.mark.redirect)
        elif "test_basic_auth.py" in str(item.fspath):
            item.add_marker(pytest.mark.basic_auth)
        elif "test_websocket.py" in str(item.fspath):
            item.add_marker(pytest.mark.websocket)
        elif "test_multi_container.py" in str(item.fspath):
            item.add_marker(pytest.mark.lifecycle)
        elif "test_container_routing.py" in str(item.fspath):
            item.add_marker(pytest.mark.lifecycle)
            item.add_marker(pytest.mark.routing)

        # All scenario tests need Docker
        if "tests/e2e/" in str(item.fspath):
            item.add_marker(pytest.mark.e2e)


@pytest.fixture
def steps(request):
    """Step banners for the test's log output"""
    return StepLogger(request.node.name)


@pytest.fixture
def ws_dial(environment):
    """Dial a WebSocket through the proxy, retrying until the upgrade succeeds"""
    opened = []

    def _dial(host, path="/", secure=False):
        connect = environment.wss_connect if secure else environment.ws_connect
        probe = environment.eventually(
            lambda: connect(host, path),
            lambda _: True,
            f"WebSocket upgrade for {host}{path}",
        )
        opened.append(probe)
        return probe

    yield _dial

    for probe in opened:
        probe.close()
