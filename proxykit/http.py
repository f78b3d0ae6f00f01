"""HTTP proxy: a CONNECT client and a proxy server handler."""

from __future__ import annotations

import base64
import binascii
import logging
import re
import socket
import threading
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from email.utils import formatdate
from http import HTTPStatus
from typing import Iterable, Optional, Tuple
from urllib.parse import urlsplit

from .options import HandlerOptions, UserInfo
from .permissions import _split_host_port, can

__all__ = [
    "ProxyError",
    "HTTPConnector",
    "HTTPHandler",
    "basic_proxy_auth",
    "PROXY_AGENT",
    "DEFAULT_USER_AGENT",
    "CONNECT_TIMEOUT",
    "DIAL_TIMEOUT",
]

_log = logging.getLogger("proxykit")

PROXY_AGENT = "proxykit/1.0"
DEFAULT_USER_AGENT = "Chrome/78.0.3904.106"
CONNECT_TIMEOUT = 10.0
DIAL_TIMEOUT = 5.0
REALM = "proxykit"

_MAX_HEAD = 64 * 1024
_CHUNK = 32 * 1024
_INTEGER = re.compile(r"[+-]?\d+")


class ProxyError(Exception):
    """The proxy refused the request or answered with something unusable."""


class _Headers:
    """An ordered, case-insensitive list of header fields."""

    def __init__(self, items: Iterable[Tuple[str, str]] = ()) -> None:
        self._items = list(items)

    def __iter__(self):
        return iter(self._items)

    def get(self, name: str) -> str:
        lowered = name.lower()
        return next((v for k, v in self._items if k.lower() == lowered), "")

    def add(self, name: str, value: str) -> None:
        self._items.append((name, value))

    def set(self, name: str, value: str) -> None:
        self.delete(name)
        self.add(name, value)

    def delete(self, name: str) -> None:
        lowered = name.lower()
        self._items = [(k, v) for k, v in self._items if k.lower() != lowered]

    def lines(self) -> list:
        return [f"{k}: {v}" for k, v in self._items]


@dataclass
class _Request:
    method: str
    target: str
    headers: _Headers
    host: str
    scheme: str
    hostname: str
    rest: bytes = b""

    def encode(self) -> bytes:
        uri = self.target
        if self.method != "CONNECT":
            parts = urlsplit(self.target)
            if parts.scheme or parts.netloc:
                uri = (parts.path or "/") + (f"?{parts.query}" if parts.query else "")
        lines = [f"{self.method} {uri} HTTP/1.1", f"Host: {self.host}"]
        lines += [f"{k}: {v}" for k, v in self.headers if k.lower() != "host"]
        return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1") + self.rest


def _status_text(code: int) -> str:
    try:
        return HTTPStatus(code).phrase
    except ValueError:
        return f"status code {code}"


@dataclass
class _Response:
    status: int = 0
    headers: _Headers = field(default_factory=_Headers)
    body: bytes = b""

    def encode(self) -> bytes:
        lines = [f"HTTP/1.1 {self.status:03d} {_status_text(self.status)}"]
        lines += self.headers.lines()
        lines.append(f"Content-Length: {len(self.body)}")
        return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1") + self.body


class _PrefixedConn:
    """A socket whose first reads return bytes that were already received."""

    def __init__(self, sock, prefix: bytes) -> None:
        self._sock = sock
        self._prefix = prefix

    def recv(self, size: int, *flags) -> bytes:
        if self._prefix:
            chunk, self._prefix = self._prefix[:size], self._prefix[size:]
            return chunk
        return self._sock.recv(size, *flags)

    def __getattr__(self, name):
        return getattr(self._sock, name)

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        self._sock.close()


def _read_head(conn) -> Tuple[bytes, bytes]:
    """Read up to the blank line ending a header; return (head, extra bytes)."""
    buf = b""
    while True:
        end = buf.find(b"\r\n\r\n")
        if end >= 0:
            return buf[:end], buf[end + 4:]
        if len(buf) > _MAX_HEAD:
            raise ProxyError("header too large")
        chunk = conn.recv(4096)
        if not chunk:
            raise ProxyError("unexpected EOF")
        buf += chunk


def _parse_headers(lines: Iterable[str]) -> _Headers:
    headers = _Headers()
    for line in lines:
        name, colon, value = line.partition(":")
        if not colon or not name.strip():
            raise ProxyError(f"malformed MIME header line: {line}")
        headers.add(name.strip(), value.strip())
    return headers


def _read_request(conn) -> _Request:
    head, rest = _read_head(conn)
    lines = [line.rstrip("\r") for line in head.decode("latin-1").split("\n")]
    request_line, *header_lines = lines
    parts = request_line.split(" ")
    if len(parts) != 3 or not parts[2].startswith("HTTP/"):
        raise ProxyError(f"malformed HTTP request {request_line!r}")
    method, target, _ = parts
    headers = _parse_headers(header_lines)
    if method == "CONNECT" and not target.startswith("/"):
        host, scheme = target, ""
        hostname = urlsplit("//" + target).hostname or ""
    else:
        url = urlsplit(target)
        scheme = url.scheme
        host = url.netloc.rpartition("@")[2] or headers.get("Host")
        hostname = url.hostname or ""
    return _Request(method, target, headers, host, scheme, hostname, rest)


def _with_default_port(host: str) -> str:
    try:
        _, port = _split_host_port(host)
    except ValueError:
        port = ""
    if port:
        return host
    return f"[{host}]:80" if ":" in host else f"{host}:80"


def _peer(conn) -> str:
    try:
        host, port = conn.getpeername()[:2]
    except (OSError, AttributeError, ValueError):
        return "?"
    return f"{host}:{port}"


def _transport(a, b) -> None:
    """Copy data both ways until either side stops, then shut both down."""
    done = threading.Event()

    def pump(src, dst) -> None:
        try:
            while True:
                chunk = src.recv(_CHUNK)
                if not chunk:
                    break
                dst.sendall(chunk)
        except OSError:
            pass
        finally:
            done.set()

    for src, dst in ((a, b), (b, a)):
        threading.Thread(target=pump, args=(src, dst), daemon=True).start()
    done.wait()
    for sock in (a, b):
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass


def _default_dial(host: str, port: int, timeout: float) -> socket.socket:
    sock = socket.create_connection((host, port), timeout)
    sock.settimeout(None)
    return sock


def _fetch(url: str) -> Optional[Tuple[int, bytes]]:
    if not url.startswith("http"):
        url = "http://" + url
    opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))
    try:
        with opener.open(url, timeout=CONNECT_TIMEOUT) as reply:
            return reply.status, reply.read()
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read()
    except (OSError, ValueError):
        return None


def basic_proxy_auth(proxy_auth: str) -> Tuple[str, str, bool]:
    """Decode a ``Basic`` credential into ``(username, password, ok)``."""
    if not proxy_auth or not proxy_auth.startswith("Basic "):
        return "", "", False
    try:
        decoded = base64.b64decode(proxy_auth[len("Basic "):], validate=True)
    except (binascii.Error, ValueError):
        return "", "", False
    text = decoded.decode("utf-8", "replace")
    fields = text.split(":", 1)
    if len(fields) < 2:
        return "", "", False
    return fields[0], fields[1], True


def _basic_token(user: UserInfo) -> str:
    raw = f"{user.username}:{user.password or ''}".encode()
    return base64.b64encode(raw).decode("ascii")


class HTTPConnector:
    """Opens a tunnel through an HTTP proxy with the CONNECT method."""

    def __init__(self, user: Optional[UserInfo] = None) -> None:
        self.user = user

    def connect(
        self,
        conn,
        address: str,
        network: str = "tcp",
        timeout: Optional[float] = None,
        user_agent: Optional[str] = None,
        user: Optional[UserInfo] = None,
    ):
        """Ask the proxy on ``conn`` to connect to ``address``; return the tunnel."""
        if network in ("udp", "udp4", "udp6"):
            raise ProxyError(f"{network} unsupported")
        if timeout is None or timeout <= 0:
            timeout = CONNECT_TIMEOUT
        user = user or self.user

        lines = [
            f"CONNECT {address} HTTP/1.1",
            f"Host: {address}",
            f"User-Agent: {user_agent or DEFAULT_USER_AGENT}",
            "Proxy-Connection: keep-alive",
        ]
        if user is not None:
            lines.append(f"Proxy-Authorization: Basic {_basic_token(user)}")

        previous = conn.gettimeout()
        conn.settimeout(timeout)
        try:
            conn.sendall(("\r\n".join(lines) + "\r\n\r\n").encode("latin-1"))
            head, rest = _read_head(conn)
        finally:
            conn.settimeout(previous)

        status_line = head.split(b"\r\n", 1)[0].decode("latin-1")
        proto, _, status = status_line.partition(" ")
        status = status.lstrip(" ")
        if not proto.startswith("HTTP/") or not status[:3].isdigit():
            raise ProxyError(f"malformed HTTP response {status_line!r}")
        if int(status[:3]) != HTTPStatus.OK:
            raise ProxyError(status)
        return _PrefixedConn(conn, rest) if rest else conn


class HTTPHandler:
    """Serves one HTTP proxy client connection."""

    def __init__(self, options: Optional[HandlerOptions] = None) -> None:
        self.options = options or HandlerOptions()

    def handle(self, conn) -> None:
        """Read a request from ``conn``, serve it and close ``conn``."""
        try:
            try:
                request = _read_request(conn)
            except (ProxyError, OSError, UnicodeError) as exc:
                _log.info("[http] %s : %s", _peer(conn), exc)
                return
            self._handle_request(conn, request)
        finally:
            conn.close()

    def _send(self, conn, response: _Response) -> None:
        try:
            conn.sendall(response.encode())
        except OSError as exc:
            _log.info("[http] %s : %s", _peer(conn), exc)

    def _handle_request(self, conn, req: _Request) -> None:
        opts = self.options
        peer = _peer(conn)
        host = _with_default_port(req.host)

        user = basic_proxy_auth(req.headers.get("Proxy-Authorization"))[0]
        _log.info("[http] %s%s -> %s -> %s", f"{user}@" if user else "", peer, opts.node, host)
        req.headers.delete("Gost-Target")

        response = _Response(headers=_Headers([("Proxy-Agent", PROXY_AGENT)]))

        if not can("tcp", host, opts.whitelist, opts.blacklist):
            _log.info("[http] %s : Unauthorized to tcp connect to %s", peer, host)
            response.status = HTTPStatus.FORBIDDEN
            self._send(conn, response)
            return

        if opts.bypass is not None and opts.bypass.contains(host):
            _log.info("[http] %s bypass %s", peer, host)
            response.status = HTTPStatus.FORBIDDEN
            self._send(conn, response)
            return

        if not self._authenticate(conn, req, response):
            return

        if req.method == "PRI" or (req.method != "CONNECT" and req.scheme != "http"):
            response.status = HTTPStatus.BAD_REQUEST
            self._send(conn, response)
            return

        req.headers.delete("Proxy-Authorization")

        retries = opts.retries if opts.retries > 0 else 1
        for _ in range(retries):
            try:
                upstream = self._dial(host)
                break
            except (OSError, ValueError) as exc:
                _log.info("[http] %s -> %s : %s", peer, host, exc)
        else:
            response.status = HTTPStatus.SERVICE_UNAVAILABLE
            self._send(conn, response)
            return

        try:
            try:
                if req.method == "CONNECT":
                    conn.sendall(
                        b"HTTP/1.1 200 Connection established\r\n"
                        + f"Proxy-Agent: {PROXY_AGENT}\r\n\r\n".encode("latin-1")
                    )
                    if req.rest:
                        upstream.sendall(req.rest)
                else:
                    req.headers.delete("Proxy-Connection")
                    upstream.sendall(req.encode())
            except OSError as exc:
                _log.info("[http] %s -> %s : %s", peer, host, exc)
                return
            _log.info("[http] %s <-> %s", peer, host)
            _transport(conn, upstream)
            _log.info("[http] %s >-< %s", peer, host)
        finally:
            upstream.close()

    def _dial(self, address: str):
        opts = self.options
        host, port = _split_host_port(address)
        if opts.hosts is not None:
            ip = opts.hosts.lookup(host)
            if ip is not None:
                host = str(ip)
        dialer = opts.dialer or _default_dial
        timeout = opts.timeout if opts.timeout > 0 else DIAL_TIMEOUT
        return dialer(host, int(port), timeout)

    def _authenticate(self, conn, req: _Request, response: _Response) -> bool:
        opts = self.options
        peer = _peer(conn)
        credentials = basic_proxy_auth(req.headers.get("Proxy-Authorization"))
        user, given = credentials[0], credentials[1]
        if user or given:
            _log.debug("[http] %s : Authorization %r", peer, user)
        if opts.authenticate(user, given):
            return True

        mode, sep, arg = opts.probe_resist.partition(":")
        knocked = bool(opts.knocking_host) and req.hostname.lower() == opts.knocking_host.lower()
        if sep and not knocked:
            response.status = HTTPStatus.SERVICE_UNAVAILABLE
            if mode == "code":
                response.status = int(arg) if _INTEGER.fullmatch(arg) else 0
            elif mode == "web":
                fetched = _fetch(arg)
                if fetched is not None:
                    response.status, response.body = fetched
            elif mode == "host":
                try:
                    target_host, target_port = _split_host_port(arg)
                    forward = socket.create_connection((target_host, int(target_port)))
                except (OSError, ValueError):
                    pass
                else:
                    with forward:
                        try:
                            forward.sendall(req.encode())
                        except OSError as exc:
                            _log.info("[http] %s : %s", peer, exc)
                            return False
                        _log.info("[http] %s <-> %s : forward to %s", peer, opts.addr, arg)
                        _transport(conn, forward)
                        _log.info("[http] %s >-< %s : forward to %s", peer, opts.addr, arg)
                    return False
            elif mode == "file":
                try:
                    with open(arg, "rb") as page:
                        response.body = page.read()
                    response.status = HTTPStatus.OK
                except OSError:
                    pass

        if response.status == 0:
            _log.info("[http] %s : proxy authentication required", peer)
            response.status = HTTPStatus.PROXY_AUTHENTICATION_REQUIRED
            response.headers.add("Proxy-Authenticate", f'Basic realm="{REALM}"')
            if req.headers.get("Proxy-Connection").lower() == "keep-alive":
                response.headers.add("Connection", "close")
                response.headers.add("Proxy-Connection", "close")
        else:
            response.headers = _Headers(
                [("Server", "nginx/1.14.1"), ("Date", formatdate(usegmt=True))]
            )
            if response.status == HTTPStatus.OK:
                response.headers.set("Connection", "keep-alive")

        self._send(conn, response)
        return False