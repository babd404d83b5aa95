"""
Harness settings

Defaults suit a local Docker daemon with the proxy image built as
``nginx-proxy-go:test``. A YAML file named by ``PROXY_E2E_CONFIG`` overrides
the defaults, and ``PROXY_E2E_*`` environment variables override both.
"""

import dataclasses
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .errors import ConfigError

ENV_PREFIX = "PROXY_E2E_"
CONFIG_ENV = "PROXY_E2E_CONFIG"


@dataclass(frozen=True)
class HarnessSettings:
    """Tunables shared by every environment of a test run"""
    image: str = "nginx-proxy-go:test"
    backend_image: str = "nginx:alpine"
    ws_backend_image: str = "jmalloc/echo-server"
    host: str = "localhost"
    docker_socket: str = "/var/run/docker.sock"
    ready_log: str = "WebServer started successfully"

    # Deadlines and intervals, seconds
    startup_timeout: float = 60.0
    backend_timeout: float = 30.0
    convergence_delay: float = 3.0
    convergence_timeout: float = 15.0
    probe_timeout: float = 10.0
    poll_interval: float = 0.5
    settle_interval: float = 2.0
    connect_timeout: float = 1.0

    scratch_root: Optional[str] = None
    verbose: bool = False
    labels: Dict[str, str] = field(default_factory=lambda: {"proxy-e2e": "true"})

    def replace(self, **changes: Any) -> "HarnessSettings":
        return dataclasses.replace(self, **changes)


def _coerce(name: str, raw: Any, target_type: Any) -> Any:
    """Convert a raw YAML/env value to the declared field type"""
    if raw is None:
        if type(None) in getattr(target_type, "__args__", ()):
            return None
        raise ConfigError(f"{name} cannot be empty")
    try:
        if target_type is float:
            return float(raw)
        if target_type is bool:
            if isinstance(raw, bool):
                return raw
            return str(raw).strip().lower() in ("1", "true", "yes", "on")
        if target_type == Dict[str, str]:
            if not isinstance(raw, Mapping):
                raise TypeError(f"expected a mapping, got {type(raw).__name__}")
            return {str(k): str(v) for k, v in raw.items()}
        return str(raw)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid value for {name}: {raw!r} ({e})") from e


def _field_types() -> Dict[str, Any]:
    return {f.name: f.type for f in dataclasses.fields(HarnessSettings)}


def load_yaml_overrides(path: Path) -> Dict[str, Any]:
    """Read settings overrides from a YAML mapping"""
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigError(f"cannot read harness config {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in harness config {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"harness config {path} must be a mapping")

    types = _field_types()
    unknown = sorted(set(data) - set(types))
    if unknown:
        raise ConfigError(f"unknown settings in {path}: {', '.join(unknown)}")
    return {name: _coerce(name, value, types[name]) for name, value in data.items()}


def env_overrides(environ: Mapping[str, str]) -> Dict[str, Any]:
    """Collect ``PROXY_E2E_<FIELD>`` overrides"""
    overrides = {}
    for name, field_type in _field_types().items():
        if name == "labels":
            continue
        key = ENV_PREFIX + name.upper()
        if key in environ:
            overrides[name] = _coerce(key, environ[key], field_type)
    return overrides


def load_settings(path: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None) -> HarnessSettings:
    """Build settings from defaults, an optional YAML file and the environment"""
    environ = os.environ if environ is None else environ
    if path is None and environ.get(CONFIG_ENV):
        path = Path(environ[CONFIG_ENV])

    values: Dict[str, Any] = {}
    if path is not None:
        values.update(load_yaml_overrides(Path(path)))
    values.update(env_overrides(environ))
    return HarnessSettings(**values)
