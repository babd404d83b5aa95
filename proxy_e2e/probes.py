"""
Protocol probe clients

Each probe is a single attempt against ``address:port`` with the Host header
overridden, so one published proxy port can be asked about any virtual host.
Redirects are never followed and there are no retries: a refused connection,
a 503 or a rejected upgrade is usually the thing a scenario is checking for.
"""

import logging
import ssl
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Tuple

import httpx
import websocket

from .errors import ProbeError

logger = logging.getLogger(__name__)

Credentials = Tuple[str, str]


@dataclass
class ProbeResult:
    """Captured HTTP response"""
    status: int
    headers: httpx.Headers
    body: bytes
    url: str = ""
    host: str = ""

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def header(self, name: str, default: str = "") -> str:
        return self.headers.get(name, default)

    def __repr__(self) -> str:
        return f"ProbeResult(status={self.status}, host={self.host!r}, url={self.url!r}, body={self.body[:80]!r})"


def _sni_name(host: str) -> str:
    """Hostname part of a Host header value"""
    if host.startswith("["):
        return host[1:].split("]", 1)[0]
    return host.rsplit(":", 1)[0] if host.count(":") == 1 else host


def _is_tls_error(exc: BaseException) -> bool:
    seen = 0
    while exc is not None and seen < 8:
        if isinstance(exc, ssl.SSLError):
            return True
        exc = exc.__cause__ or exc.__context__
        seen += 1
    return False


def _request(scheme: str, address: str, port: int, host: str, path: str,
             auth: Optional[Credentials], timeout: float,
             headers: Optional[Mapping[str, str]]) -> ProbeResult:
    if not path.startswith("/"):
        path = "/" + path
    url = f"{scheme}://{address}:{port}{path}"

    request_headers = dict(headers or {})
    extensions = {}
    if host:
        request_headers["Host"] = host
        if scheme == "https":
            extensions["sni_hostname"] = _sni_name(host)

    # Self-signed certificates are the point of these environments; never
    # copy verify=False into a production client.
    client = httpx.Client(
        verify=False if scheme == "https" else True,
        follow_redirects=False,
        timeout=timeout,
        trust_env=False,
    )
    try:
        with client:
            response = client.get(url, headers=request_headers, auth=auth, extensions=extensions)
    except httpx.TimeoutException as e:
        raise ProbeError("timeout", f"GET {url} (Host: {host}) timed out after {timeout}s") from e
    except httpx.ConnectError as e:
        kind = "tls" if _is_tls_error(e) else "connection"
        raise ProbeError(kind, f"GET {url} (Host: {host}) failed to connect: {e}") from e
    except httpx.HTTPError as e:
        raise ProbeError("protocol", f"GET {url} (Host: {host}) failed: {e}") from e

    logger.debug(f"GET {url} Host={host} -> {response.status_code}")
    return ProbeResult(
        status=response.status_code,
        headers=response.headers,
        body=response.content,
        url=url,
        host=host,
    )


def http_get(address: str, port: int, host: str, path: str = "/", *,
             auth: Optional[Credentials] = None, timeout: float = 10.0,
             headers: Optional[Mapping[str, str]] = None) -> ProbeResult:
    """Plain HTTP GET with a custom Host header"""
    return _request("http", address, port, host, path, auth, timeout, headers)


def https_get(address: str, port: int, host: str, path: str = "/", *,
              auth: Optional[Credentials] = None, timeout: float = 10.0,
              headers: Optional[Mapping[str, str]] = None) -> ProbeResult:
    """HTTPS GET with a custom Host header and SNI, certificate checks disabled"""
    return _request("https", address, port, host, path, auth, timeout, headers)


class WebSocketProbe:
    """A live WebSocket connection held open by a scenario"""

    def __init__(self, conn: websocket.WebSocket, url: str, host: str):
        self.conn = conn
        self.url = url
        self.host = host
        self.closed = False

    @property
    def status(self) -> int:
        return self.conn.getstatus()

    @property
    def headers(self) -> Dict[str, str]:
        return dict(self.conn.getheaders() or {})

    def _guard(self, action: str):
        if self.closed:
            raise ProbeError("closed", f"cannot {action} on {self.url} (Host: {self.host}): close frame already sent")

    def send_text(self, message: str):
        self._guard("send")
        try:
            self.conn.send(message, opcode=websocket.ABNF.OPCODE_TEXT)
        except (websocket.WebSocketException, OSError) as e:
            raise ProbeError("closed", f"send on {self.url} failed: {e}") from e

    def send_binary(self, payload: bytes):
        self._guard("send")
        try:
            self.conn.send(payload, opcode=websocket.ABNF.OPCODE_BINARY)
        except (websocket.WebSocketException, OSError) as e:
            raise ProbeError("closed", f"send on {self.url} failed: {e}") from e

    def receive(self) -> Tuple[int, bytes]:
        """Next data frame as (opcode, payload)"""
        self._guard("receive")
        try:
            opcode, data = self.conn.recv_data()
        except websocket.WebSocketTimeoutException as e:
            raise ProbeError("timeout", f"no message on {self.url} within {self.conn.gettimeout()}s") from e
        except (websocket.WebSocketException, OSError) as e:
            raise ProbeError("closed", f"receive on {self.url} failed: {e}") from e
        if opcode == websocket.ABNF.OPCODE_CLOSE:
            self.closed = True
            raise ProbeError("closed", f"{self.url} closed by peer")
        if isinstance(data, str):
            data = data.encode("utf-8")
        return opcode, data

    def receive_text(self) -> str:
        _, data = self.receive()
        return data.decode("utf-8", errors="replace")

    def close(self, status: int = websocket.STATUS_NORMAL, reason: str = ""):
        """Send a close frame and shut the connection; later writes fail"""
        if self.closed:
            return
        self.closed = True
        try:
            self.conn.close(status=status, reason=reason.encode("utf-8"), timeout=1)
        except (websocket.WebSocketException, OSError) as e:
            logger.debug(f"close on {self.url} raised {e}")

    def __enter__(self) -> "WebSocketProbe":
        return self

    def __exit__(self, *exc_info):
        self.close()


def _ws_connect(scheme: str, address: str, port: int, host: str, path: str,
                timeout: float, headers: Optional[Mapping[str, str]]) -> WebSocketProbe:
    if not path.startswith("/"):
        path = "/" + path
    url = f"{scheme}://{address}:{port}{path}"

    header = [f"{name}: {value}" for name, value in (headers or {}).items()]
    options = {"timeout": timeout, "header": header}
    if host:
        options["host"] = host
    if scheme == "wss":
        options["sslopt"] = {
            "cert_reqs": ssl.CERT_NONE,
            "check_hostname": False,
            "server_hostname": _sni_name(host) if host else address,
        }

    try:
        conn = websocket.create_connection(url, **options)
    except websocket.WebSocketBadStatusException as e:
        body = e.resp_body or b""
        if isinstance(body, str):
            body = body.encode("utf-8")
        logger.debug(f"WebSocket dial {url} (Host: {host}) rejected: {e.status_code} {body[:200]!r}")
        raise ProbeError(
            "handshake",
            f"WebSocket upgrade to {url} (Host: {host}) rejected",
            status=e.status_code,
            headers=e.resp_headers,
            body=body,
        ) from e
    except websocket.WebSocketTimeoutException as e:
        raise ProbeError("timeout", f"WebSocket dial {url} (Host: {host}) timed out after {timeout}s") from e
    except ssl.SSLError as e:
        raise ProbeError("tls", f"TLS handshake with {url} (Host: {host}) failed: {e}") from e
    except websocket.WebSocketException as e:
        raise ProbeError("protocol", f"WebSocket dial {url} (Host: {host}) failed: {e}") from e
    except OSError as e:
        raise ProbeError("connection", f"WebSocket dial {url} (Host: {host}) failed to connect: {e}") from e

    logger.debug(f"WebSocket {url} Host={host} upgraded")
    return WebSocketProbe(conn, url, host)


def ws_connect(address: str, port: int, host: str, path: str = "/", *,
               timeout: float = 10.0, headers: Optional[Mapping[str, str]] = None) -> WebSocketProbe:
    """Plain WebSocket upgrade with a custom Host header"""
    return _ws_connect("ws", address, port, host, path, timeout, headers)


def wss_connect(address: str, port: int, host: str, path: str = "/", *,
                timeout: float = 10.0, headers: Optional[Mapping[str, str]] = None) -> WebSocketProbe:
    """Secure WebSocket upgrade, certificate checks disabled"""
    return _ws_connect("wss", address, port, host, path, timeout, headers)
