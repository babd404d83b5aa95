"""
Tests for environment provisioning and release against a fake Docker client
"""

from types import SimpleNamespace

import pytest

from fakes import FakeDocker, api_error
from proxy_e2e import certs, sync
from proxy_e2e.certs import CertificateRecord
from proxy_e2e.cleanup import ResourceRegistry
from proxy_e2e.config import HarnessSettings
from proxy_e2e.environment import (DEFAULT_NGINX_CONF, EnvironmentState, ProxyConfig,
                                   provision)
from proxy_e2e.errors import (CertificateConflictError, HarnessError, ProvisioningError,
                              ProxyImageMissing, ReadinessTimeout)

PROXY_IMAGE = "nginx-proxy-go:test"
READY = b"starting\nWebServer started successfully\n"


@pytest.fixture
def settings(tmp_path):
    return HarnessSettings(scratch_root=str(tmp_path), startup_timeout=2, poll_interval=0.01,
                           settle_interval=0)


@pytest.fixture
def client():
    client = FakeDocker(images=[PROXY_IMAGE])
    client.containers.behaviour[PROXY_IMAGE] = {"logs": READY}
    return client


@pytest.fixture
def registry():
    return ResourceRegistry()


@pytest.fixture(autouse=True)
def no_tcp_wait(monkeypatch):
    """Published ports of fake containers are not reachable"""
    calls = []
    monkeypatch.setattr(sync, "await_reachable", lambda host, port, timeout, **kwargs: calls.append((host, port)))
    return calls


def _provision(settings, client, registry, **kwargs):
    return provision(settings=settings, docker_client=client, registry=registry, **kwargs)


class TestProvision:
    """Happy path wiring"""

    def test_environment_is_ready_and_registered(self, settings, client, registry, no_tcp_wait):
        env = _provision(settings, client, registry)

        assert env.state is EnvironmentState.READY
        assert registry.live() == [env]
        assert env.id.startswith("proxy-e2e-")
        assert env.http_port is not None and env.https_port is not None
        assert env.proxy_ip is not None
        assert no_tcp_wait == [("localhost", env.http_port)]
        env.release()

    def test_network_is_named_after_environment(self, settings, client, registry):
        env = _provision(settings, client, registry)
        network = client.networks.created[0]
        assert network.name == env.id
        assert network.labels["proxy-e2e.environment"] == env.id
        env.release()

    def test_proxy_container_wiring(self, settings, client, registry):
        env = _provision(settings, client, registry)
        kwargs = client.containers.created[0].kwargs

        assert kwargs["network"] == env.id
        assert set(kwargs["ports"]) == {"80/tcp", "443/tcp"}
        assert kwargs["environment"] == {
            "NGINX_CONF_DIR": "/etc/nginx",
            "CHALLENGE_DIR": "/tmp/acme-challenges",
            "SSL_DIR": "/etc/ssl/custom",
        }
        binds = {mount["bind"]: host for host, mount in kwargs["volumes"].items()}
        assert binds["/var/run/docker.sock"] == "/var/run/docker.sock"
        assert binds["/etc/ssl/custom"] == str(env.tls_dir)
        assert binds["/etc/nginx"] == str(env.config_dir)
        assert binds["/tmp/acme-challenges"] == str(env.challenge_dir)
        env.release()

    def test_scratch_tree_layout(self, settings, client, registry, tmp_path):
        env = _provision(settings, client, registry)

        assert env.scratch_dir.parent == tmp_path
        assert (env.tls_dir / "certs").is_dir()
        assert (env.tls_dir / "private").is_dir()
        assert (env.config_dir / "conf.d").is_dir()
        assert env.challenge_dir.is_dir()
        assert (env.config_dir / "nginx.conf").read_text() == DEFAULT_NGINX_CONF
        assert "include /etc/nginx/conf.d/*.conf;" in DEFAULT_NGINX_CONF
        env.release()

    def test_proxy_config_overrides(self, settings, client, registry):
        config = ProxyConfig(
            base_config="events {}\nhttp {}\n",
            environment={"LOG_LEVEL": "debug"},
            extra_files={"snippets/extra.conf": "# extra\n"},
        )
        env = _provision(settings, client, registry, proxy_config=config)

        assert (env.config_dir / "nginx.conf").read_text() == "events {}\nhttp {}\n"
        assert (env.config_dir / "snippets" / "extra.conf").read_text() == "# extra\n"
        assert client.containers.created[0].kwargs["environment"]["LOG_LEVEL"] == "debug"
        env.release()

    def test_environment_ids_are_unique(self, settings, client, registry):
        first = _provision(settings, client, registry)
        second = _provision(settings, client, registry)
        assert first.id != second.id
        assert first.scratch_dir != second.scratch_dir
        first.release()
        second.release()


class TestProvisionFailures:
    """Partial provisioning never leaks"""

    def test_missing_image_creates_nothing(self, settings, registry):
        client = FakeDocker(images=[])
        with pytest.raises(ProxyImageMissing) as exc_info:
            _provision(settings, client, registry)
        assert isinstance(exc_info.value, ProvisioningError)
        assert exc_info.value.image == PROXY_IMAGE
        assert client.events == []
        assert registry.live() == []

    def test_proxy_crash_releases_everything(self, settings, client, registry, tmp_path):
        client.containers.behaviour[PROXY_IMAGE] = {"logs": b"fatal: bad config\n", "statuses": ["exited"]}
        with pytest.raises(ProvisioningError) as exc_info:
            _provision(settings, client, registry)

        assert "fatal: bad config" in str(exc_info.value)
        proxy = client.containers.created[0]
        assert proxy.removed
        assert client.networks.created[0].removed
        assert list(tmp_path.iterdir()) == []
        assert registry.live() == []

    def test_readiness_timeout_keeps_its_type(self, settings, client, registry, tmp_path):
        client.containers.behaviour[PROXY_IMAGE] = {"logs": b"starting\n"}
        with pytest.raises(ReadinessTimeout):
            _provision(settings.replace(startup_timeout=0.05), client, registry)
        assert client.containers.created[0].removed
        assert list(tmp_path.iterdir()) == []

    def test_docker_error_is_wrapped(self, settings, client, registry, tmp_path):
        client.networks.create_error = api_error("network pool exhausted")
        with pytest.raises(ProvisioningError) as exc_info:
            _provision(settings, client, registry)
        assert "network pool exhausted" in str(exc_info.value)
        assert list(tmp_path.iterdir()) == []

    def test_proxy_that_fails_to_start_is_removed(self, settings, client, registry, tmp_path):
        client.containers.start_error = api_error("OCI runtime create failed: bind source path does not exist")
        with pytest.raises(ProvisioningError) as exc_info:
            _provision(settings, client, registry)

        assert "OCI runtime create failed" in str(exc_info.value)
        assert len(client.containers.created) == 1
        assert client.containers.created[0].removed
        assert client.networks.created[0].removed
        assert list(tmp_path.iterdir()) == []
        assert registry.live() == []

    def test_extra_file_outside_config_dir_is_rejected(self, settings, client, registry, tmp_path):
        config = ProxyConfig(extra_files={"../escape.conf": "nope"})
        with pytest.raises(ProvisioningError):
            _provision(settings, client, registry, proxy_config=config)
        assert list(tmp_path.iterdir()) == []


class TestRelease:
    """Teardown order and idempotency"""

    def test_release_order(self, settings, client, registry):
        env = _provision(settings, client, registry)
        proxy_name = env.proxy.name
        scratch = env.scratch_dir
        del client.events[:]

        env.release()
        assert client.events == [("stop", proxy_name), ("remove", proxy_name), ("remove-network", env.id)]
        assert not scratch.exists()
        assert env.state is EnvironmentState.DESTROYED
        assert registry.live() == []

    def test_release_twice_is_a_no_op(self, settings, client, registry):
        env = _provision(settings, client, registry)
        env.release()
        events = list(client.events)
        env.release()
        assert client.events == events

    def test_context_manager_releases_on_error(self, settings, client, registry):
        with pytest.raises(RuntimeError):
            with _provision(settings, client, registry) as env:
                raise RuntimeError("assertion blew up")
        assert env.state is EnvironmentState.DESTROYED
        assert client.networks.created[0].removed

    def test_registry_releases_leaked_environment(self, settings, client, registry):
        env = _provision(settings, client, registry)
        registry.release_all()
        assert env.state is EnvironmentState.DESTROYED

    def test_released_environment_is_not_usable(self, settings, client, registry):
        env = _provision(settings, client, registry)
        env.release()
        with pytest.raises(HarnessError):
            env.start_backend(env_vars={"VIRTUAL_HOST": "example.com"})


class TestEnvironmentHelpers:

    def test_issue_certificate_twice_is_a_conflict(self, settings, client, registry, monkeypatch):
        env = _provision(settings, client, registry)
        issued = []

        def fake_issue(directory, hostname, **kwargs):
            issued.append((directory, hostname))
            return CertificateRecord(hostname, directory / "certs" / f"{hostname}.crt",
                                     directory / "private" / f"{hostname}.key", None, None)

        monkeypatch.setattr(certs, "issue", fake_issue)
        record = env.issue_certificate("secure.example.com")
        assert issued == [(env.tls_dir, "secure.example.com")]
        assert env.certificates == {"secure.example.com": record}
        assert env.state is EnvironmentState.IN_USE

        with pytest.raises(CertificateConflictError):
            env.issue_certificate("secure.example.com")
        env.release()

    def test_generated_config_reads_conf_d(self, settings, client, registry):
        env = _provision(settings, client, registry)
        (env.config_dir / "conf.d" / "example.com.conf").write_text("server { server_name example.com; }\n")
        (env.config_dir / "conf.d" / "notes.txt").write_text("ignored")
        assert env.generated_config() == {"example.com.conf": "server { server_name example.com; }\n"}
        env.release()

    def test_proxy_logs(self, settings, client, registry):
        env = _provision(settings, client, registry)
        assert "WebServer started successfully" in env.proxy_logs()
        env.release()

    def test_await_status_retries_until_match(self, settings, client, registry, monkeypatch):
        env = _provision(settings.replace(convergence_timeout=2), client, registry)
        answers = iter([200, 200, 503])
        seen = []

        def fake_get(host, path="/", **kwargs):
            seen.append((host, path))
            return SimpleNamespace(status=next(answers))

        monkeypatch.setattr(env, "http_get", fake_get)
        result = env.await_status("stoppable.example.com", 503)
        assert result.status == 503
        assert seen == [("stoppable.example.com", "/")] * 3
        env.release()

    def test_explicit_zero_timeout_is_kept(self, settings, client, registry):
        env = _provision(settings.replace(convergence_timeout=15), client, registry)
        assert env.convergence_policy(0).timeout == 0
        assert env.convergence_policy().timeout == 15
        env.release()
