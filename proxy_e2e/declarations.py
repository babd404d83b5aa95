"""
Backend declaration strings understood by the proxy

Builders for the environment variables a backend container carries, plus
parsers that mirror how the proxy reads them. The parsers let a Backend know
which hosts it declared without re-deriving that in every scenario.

    VIRTUAL_HOST[<N>]        [scheme://]host[:port][/path][ -> target][; directive]
    PROXY_FULL_REDIRECT[<N>] source1[,source2,...]->target
    PROXY_BASIC_AUTH         host[/path] -> user:pass
"""

import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

VIRTUAL_HOST = "VIRTUAL_HOST"
FULL_REDIRECT = "PROXY_FULL_REDIRECT"
BASIC_AUTH = "PROXY_BASIC_AUTH"

SCHEMES = ("https", "http", "wss", "ws")
DEFAULT_PORTS = {"http": 80, "ws": 80, "https": 443, "wss": 443}


@dataclass(frozen=True)
class VirtualHostRule:
    hostname: str
    scheme: str = "http"
    server_port: int = 80
    path: str = "/"
    external_path: str = "/"
    container_port: Optional[int] = None
    container_scheme: str = "http"
    extras: Sequence[str] = field(default_factory=tuple)

    @property
    def secure(self) -> bool:
        return self.scheme in ("https", "wss")


@dataclass(frozen=True)
class RedirectRule:
    sources: Sequence[str]
    target: str


@dataclass(frozen=True)
class BasicAuthRule:
    host: str
    path: Optional[str]
    username: str
    password: str


class DeclarationError(ValueError):
    """A declaration string the proxy would reject"""


def virtual_host(host: str, *, scheme: Optional[str] = None, port: Optional[int] = None,
                 path: Optional[str] = None, target: Optional[str] = None,
                 directives: Iterable[str] = ()) -> str:
    """Build a VIRTUAL_HOST value, e.g. ``https://example.com/api -> :8080``"""
    if scheme is not None and scheme not in SCHEMES:
        raise DeclarationError(f"unsupported scheme {scheme!r}")
    value = f"{scheme}://{host}" if scheme else host
    if port is not None:
        value += f":{port}"
    if path:
        value += path if path.startswith("/") else "/" + path
    if target:
        value += f" -> {target}"
    for directive in directives:
        value += f"; {directive}"
    return value


def full_redirect(sources, target: str) -> str:
    """Build a PROXY_FULL_REDIRECT value"""
    if isinstance(sources, str):
        sources = [sources]
    if not sources:
        raise DeclarationError("a redirect needs at least one source")
    return f"{','.join(sources)}->{target}"


def basic_auth(host: str, username: str, password: str, path: Optional[str] = None) -> str:
    """Build a PROXY_BASIC_AUTH value"""
    if ":" in username:
        raise DeclarationError("username must not contain ':'")
    target = host
    if path:
        target += path if path.startswith("/") else "/" + path
    return f"{target} -> {username}:{password}"


def numbered(prefix: str, values: Sequence[str]) -> Dict[str, str]:
    """``numbered("VIRTUAL_HOST", [a, b])`` -> ``{"VIRTUAL_HOST1": a, "VIRTUAL_HOST2": b}``"""
    return {f"{prefix}{i}": value for i, value in enumerate(values, start=1)}


def _parse_port(text: str, original: str) -> int:
    if not text.isdigit():
        raise DeclarationError(f"invalid port in VIRTUAL_HOST: {original}")
    return int(text)


def parse_virtual_host(value: str) -> VirtualHostRule:
    """Parse one VIRTUAL_HOST value the way the proxy does"""
    main, _, extra_text = value.partition(";")
    extras = tuple(e.strip() for e in extra_text.split(";") if e.strip())

    parts = main.split("->")
    if len(parts) > 2:
        raise DeclarationError(f"invalid VIRTUAL_HOST format: {value}")
    external = parts[0].strip()
    internal = parts[1].strip() if len(parts) > 1 else ""

    scheme = "http"
    for candidate in SCHEMES:
        if external.startswith(f"{candidate}://"):
            scheme = candidate
            external = external[len(candidate) + 3:]
            break

    host_port, slash, rest = external.partition("/")
    external_path = "/" + rest if slash else "/"
    hostname, colon, port_text = host_port.partition(":")
    if not hostname:
        raise DeclarationError(f"missing hostname in VIRTUAL_HOST: {value}")
    server_port = _parse_port(port_text, value) if colon else DEFAULT_PORTS[scheme]

    path = external_path
    container_port = None
    container_scheme = "http"
    if internal.startswith(":"):
        # explicit container port resets the upstream path to root
        port_text, slash, rest = internal[1:].partition("/")
        if port_text:
            container_port = _parse_port(port_text, value)
        path = "/" + rest if slash else "/"
    elif "://" in internal:
        container_scheme, _, internal = internal.partition("://")
        _, colon, port_and_path = internal.partition(":")
        if colon:
            port_text, slash, rest = port_and_path.partition("/")
            if port_text:
                container_port = _parse_port(port_text, value)
            if slash:
                path = "/" + rest
    elif internal.startswith("/"):
        path = internal

    return VirtualHostRule(
        hostname=hostname,
        scheme=scheme,
        server_port=server_port,
        path=path,
        external_path=external_path,
        container_port=container_port,
        container_scheme=container_scheme,
        extras=extras,
    )


def parse_full_redirect(value: str) -> RedirectRule:
    compact = re.sub(r"\s+", "", value)
    parts = compact.split("->")
    if len(parts) != 2 or not parts[1]:
        raise DeclarationError(f"invalid redirect rule format: {value}")
    sources = tuple(s for s in parts[0].split(",") if s)
    if not sources:
        raise DeclarationError(f"redirect rule without sources: {value}")
    return RedirectRule(sources=sources, target=parts[1])


def parse_basic_auth(value: str) -> BasicAuthRule:
    parts = value.split("->")
    if len(parts) != 2:
        raise DeclarationError(f"invalid basic auth format: {value}")
    target, credentials = parts[0].strip(), parts[1].strip()
    cred_parts = credentials.split(":")
    if len(cred_parts) != 2:
        raise DeclarationError(f"invalid credentials format: {credentials}")
    host, slash, rest = target.partition("/")
    return BasicAuthRule(
        host=host,
        path="/" + rest if slash else None,
        username=cred_parts[0],
        password=cred_parts[1],
    )


def virtual_hosts(env: Mapping[str, str]) -> List[VirtualHostRule]:
    """Every VIRTUAL_HOST* rule in a backend's environment, in key order"""
    return [parse_virtual_host(env[key]) for key in sorted(env) if key.startswith(VIRTUAL_HOST)]


def redirects(env: Mapping[str, str]) -> List[RedirectRule]:
    return [parse_full_redirect(env[key]) for key in sorted(env) if key.startswith(FULL_REDIRECT)]
