"""Obfuscating connection wrappers that disguise traffic as HTTP upgrades or TLS."""

from __future__ import annotations

import base64
import hashlib
import logging
import os
import socket
import struct
import threading
import time
from dataclasses import dataclass
from email.utils import formatdate
from enum import IntEnum
from typing import Optional, Tuple

from .http import DEFAULT_USER_AGENT
from .permissions import _split_host_port

__all__ = [
    "ObfsError",
    "ObfsHTTPConn",
    "ObfsHTTPListener",
    "ObfsTLSParser",
    "ObfsTLSConn",
    "ObfsTLSListener",
    "client_obfs_tls_conn",
    "server_obfs_tls_conn",
    "MAX_TLS_DATA_LEN",
]

_log = logging.getLogger("proxykit")

MAX_TLS_DATA_LEN = 16384

_READ_SIZE = 32 * 1024
_MAX_HEAD = 64 * 1024
_WEBSOCKET_GUID = "258EAFA5-E914-47DA-95CA-C5AB0DC85B11"

# TLS record types and versions.
_CHANGE_CIPHER_SPEC = 0x14
_HANDSHAKE = 0x16
_APP_DATA = 0x17
_TLS10 = 0x0301
_TLS12 = 0x0303

# Handshake message types.
_CLIENT_HELLO = 0x01
_SERVER_HELLO = 0x02

# Extension types.
_EXT_SERVER_NAME = 0
_EXT_SUPPORTED_GROUPS = 10
_EXT_EC_POINT_FORMATS = 11
_EXT_SIGNATURE_ALGORITHMS = 13
_EXT_ENCRYPT_THEN_MAC = 22
_EXT_EXTENDED_MASTER_SECRET = 23
_EXT_SESSION_TICKET = 35
_EXT_RENEGOTIATION_INFO = 0xFF01

_CIPHER_SUITES = (
    0xC02C, 0xC030, 0x009F, 0xCCA9, 0xCCA8, 0xCCAA, 0xC02B, 0xC02F,
    0x009E, 0xC024, 0xC028, 0x006B, 0xC023, 0xC027, 0x0067, 0xC00A,
    0xC014, 0x0039, 0xC009, 0xC013, 0x0033, 0x009D, 0x009C, 0x003D,
    0x003C, 0x0035, 0x002F, 0x00FF,
)
_COMPRESSION_METHODS = (0x00,)
_ALGORITHMS = (
    0x0601, 0x0602, 0x0603, 0x0501, 0x0502, 0x0503, 0x0401, 0x0402,
    0x0403, 0x0301, 0x0302, 0x0303, 0x0201, 0x0202, 0x0203,
)
_SUPPORTED_GROUPS = (0x001D, 0x0017, 0x0019, 0x0018)

# The record types and minor versions the client expects from the server,
# in order: ServerHello, ChangeCipherSpec, first data, further data.
_RECORD_TYPES = (0x16, 0x14, 0x16, 0x17)
_VERSION_MINORS = (0x01, 0x03, 0x03, 0x03)
_SERVER_HELLO_LEN = 91


class ObfsError(Exception):
    """The peer sent data that does not fit the obfuscation protocol."""


# --------------------------------------------------------------------------
# Low level helpers


def _recv_exact(conn, size: int) -> bytes:
    buf = bytearray()
    while len(buf) < size:
        chunk = conn.recv(size - len(buf))
        if not chunk:
            break
        buf += chunk
    return bytes(buf)


def _read_head(conn) -> Tuple[bytes, bytes]:
    """Read up to the blank line that ends a header; return (head, extra bytes)."""
    buf = b""
    while True:
        end = buf.find(b"\r\n\r\n")
        if end >= 0:
            return buf[:end], buf[end + 4:]
        if len(buf) > _MAX_HEAD:
            raise ObfsError("header too large")
        chunk = conn.recv(4096)
        if not chunk:
            raise ObfsError("unexpected EOF")
        buf += chunk


def _parse_headers(lines) -> dict:
    headers: dict = {}
    for line in lines:
        name, colon, value = line.partition(":")
        if not colon or not name.strip():
            raise ObfsError(f"malformed MIME header line: {line}")
        headers.setdefault(name.strip().lower(), value.strip())
    return headers


def _accept_key(key: str) -> str:
    digest = hashlib.sha1((key + _WEBSOCKET_GUID).encode("latin-1")).digest()
    return base64.b64encode(digest).decode("ascii")


def _challenge_key() -> str:
    return base64.b64encode(os.urandom(16)).decode("ascii")


@dataclass
class _Record:
    type: int
    version: int
    opaque: bytes

    def encode(self) -> bytes:
        if len(self.opaque) > 0xFFFF:
            raise ObfsError("record too large")
        return struct.pack("!BHH", self.type, self.version, len(self.opaque)) + self.opaque


def _read_record(conn) -> Optional[_Record]:
    """Read one TLS record; ``None`` on a clean end of stream."""
    header = _recv_exact(conn, 5)
    if not header:
        return None
    if len(header) < 5:
        raise ObfsError("unexpected EOF")
    rtype, version, length = struct.unpack("!BHH", header)
    opaque = _recv_exact(conn, length)
    if len(opaque) < length:
        raise ObfsError("unexpected EOF")
    return _Record(rtype, version, opaque)


def _extension(ext_type: int, data: bytes) -> bytes:
    return struct.pack("!HH", ext_type, len(data)) + data


def _u16_list(values) -> bytes:
    return struct.pack(f"!H{len(values)}H", 2 * len(values), *values)


def _handshake_message(msg_type: int, body: bytes) -> bytes:
    return bytes([msg_type]) + len(body).to_bytes(3, "big") + body


def _random() -> bytes:
    return struct.pack("!I", int(time.time()) & 0xFFFFFFFF) + os.urandom(28)


def _client_hello(host: str, payload: bytes) -> bytes:
    name = host.encode()
    extensions = b"".join([
        _extension(_EXT_SESSION_TICKET, payload),
        _extension(
            _EXT_SERVER_NAME,
            struct.pack("!HBH", len(name) + 3, 0, len(name)) + name,
        ),
        _extension(_EXT_EC_POINT_FORMATS, bytes([3, 0x01, 0x00, 0x02])),
        _extension(_EXT_SUPPORTED_GROUPS, _u16_list(_SUPPORTED_GROUPS)),
        _extension(_EXT_SIGNATURE_ALGORITHMS, _u16_list(_ALGORITHMS)),
        _extension(_EXT_ENCRYPT_THEN_MAC, b""),
        _extension(_EXT_EXTENDED_MASTER_SECRET, b""),
    ])
    session_id = os.urandom(32)
    body = (
        struct.pack("!H", _TLS12)
        + _random()
        + bytes([len(session_id)]) + session_id
        + _u16_list(_CIPHER_SUITES)
        + bytes([len(_COMPRESSION_METHODS), *_COMPRESSION_METHODS])
        + struct.pack("!H", len(extensions)) + extensions
    )
    return _handshake_message(_CLIENT_HELLO, body)


def _server_hello(session_id: bytes) -> bytes:
    extensions = b"".join([
        _extension(_EXT_RENEGOTIATION_INFO, b"\x00"),
        _extension(_EXT_EXTENDED_MASTER_SECRET, b""),
        _extension(_EXT_EC_POINT_FORMATS, bytes([1, 0x00])),
    ])
    body = (
        struct.pack("!H", _TLS12)
        + _random()
        + bytes([len(session_id)]) + session_id
        + struct.pack("!HB", 0xCCA8, 0x00)
        + struct.pack("!H", len(extensions)) + extensions
    )
    return _handshake_message(_SERVER_HELLO, body)


class _Reader:
    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    def take(self, size: int) -> bytes:
        if self._pos + size > len(self._data):
            raise ObfsError("malformed client hello")
        chunk = self._data[self._pos:self._pos + size]
        self._pos += size
        return chunk

    def u8(self) -> int:
        return self.take(1)[0]

    def u16(self) -> int:
        return struct.unpack("!H", self.take(2))[0]

    def u24(self) -> int:
        return int.from_bytes(self.take(3), "big")

    def remaining(self) -> int:
        return len(self._data) - self._pos


def _parse_client_hello(data: bytes) -> Tuple[bytes, list]:
    """Return the session id and the ``(type, data)`` extensions of a ClientHello."""
    reader = _Reader(data)
    if reader.u8() != _CLIENT_HELLO:
        raise ObfsError("bad handshake type")
    body = _Reader(reader.take(reader.u24()))
    body.take(2 + 32)  # version and random
    session_id = body.take(body.u8())
    body.take(body.u16())  # cipher suites
    body.take(body.u8())  # compression methods
    extensions = []
    if body.remaining():
        ext = _Reader(body.take(body.u16()))
        while ext.remaining():
            ext_type = ext.u16()
            extensions.append((ext_type, ext.take(ext.u16())))
    return session_id, extensions


class _WrappedConn:
    """Common plumbing of the wrappers: socket-style aliases and delegation."""

    def __init__(self, conn) -> None:
        self._conn = conn

    def recv(self, size: int, *flags) -> bytes:
        return self.read(size)

    def sendall(self, data: bytes) -> None:
        self.write(data)

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return getattr(self._conn, name)

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        self.close()


# --------------------------------------------------------------------------
# HTTP obfuscation


class ObfsHTTPConn(_WrappedConn):
    """A connection disguised as a websocket upgrade.

    The client sends its request header together with its first write; the
    server answers ``101 Switching Protocols`` and then both sides exchange
    raw data.
    """

    def __init__(self, conn, host: str = "", is_server: bool = False) -> None:
        super().__init__(conn)
        self.host = host
        self.is_server = is_server
        self._rbuf = b""
        self._wbuf = b""
        self._header_drained = False
        self._handshaked = False
        self._lock = threading.Lock()

    def handshake(self) -> None:
        """Run the handshake once; later calls do nothing."""
        with self._lock:
            if self._handshaked:
                return
            if self.is_server:
                self._server_handshake()
            else:
                self._client_handshake()
            self._handshaked = True

    def _server_handshake(self) -> None:
        head, rest = _read_head(self._conn)
        request_line, *header_lines = head.decode("latin-1").split("\r\n")
        parts = request_line.split(" ")
        if len(parts) != 3 or not parts[2].startswith("HTTP/"):
            raise ObfsError(f"malformed HTTP request {request_line!r}")
        method = parts[0]
        headers = _parse_headers(header_lines)
        _log.debug("[ohttp] request %s", request_line)

        length_text = headers.get("content-length", "")
        length = int(length_text) if length_text.isdigit() else 0
        while len(rest) < length:
            chunk = self._conn.recv(length - len(rest))
            if not chunk:
                raise ObfsError("unexpected EOF")
            rest += chunk
        self._rbuf = rest

        date = formatdate(usegmt=True)
        if method != "GET" or headers.get("upgrade", "") != "websocket":
            self._conn.sendall(
                (
                    "HTTP/1.1 503 Service Unavailable\r\n"
                    "Content-Length: 0\r\n"
                    f"Date: {date}\r\n"
                    "\r\n"
                ).encode("latin-1")
            )
            raise ObfsError("bad request")

        response = (
            "HTTP/1.1 101 Switching Protocols\r\n"
            "Server: nginx/1.10.0\r\n"
            f"Date: {date}\r\n"
            "Connection: Upgrade\r\n"
            "Upgrade: websocket\r\n"
            f"Sec-WebSocket-Accept: {_accept_key(headers.get('sec-websocket-key', ''))}\r\n"
            "\r\n"
        ).encode("latin-1")

        if self._rbuf:
            # Send the answer with the first write when data came along.
            self._wbuf = response
        else:
            self._conn.sendall(response)

    def _client_handshake(self) -> None:
        self._wbuf = (
            "GET / HTTP/1.1\r\n"
            f"Host: {self.host}\r\n"
            f"User-Agent: {DEFAULT_USER_AGENT}\r\n"
            "Connection: Upgrade\r\n"
            f"Sec-WebSocket-Key: {_challenge_key()}\r\n"
            "Upgrade: websocket\r\n"
            "\r\n"
        ).encode("latin-1")

    def _drain_header(self) -> None:
        if self._header_drained:
            return
        self._header_drained = True
        _, rest = _read_head(self._conn)
        self._rbuf += rest

    def read(self, size: int = _READ_SIZE) -> bytes:
        """Return up to ``size`` bytes of payload; ``b""`` at end of stream."""
        self.handshake()
        if not self.is_server:
            self._drain_header()
        if self._rbuf:
            chunk, self._rbuf = self._rbuf[:size], self._rbuf[size:]
            return chunk
        return self._conn.recv(size)

    def write(self, data: bytes) -> int:
        """Send ``data``, preceded by a cached header if one is pending."""
        self.handshake()
        data = bytes(data)
        if self._wbuf:
            pending, self._wbuf = self._wbuf, b""
            self._conn.sendall(pending + data)
        else:
            self._conn.sendall(data)
        return len(data)

    def close(self) -> None:
        """Close the underlying connection."""
        self._conn.close()


# --------------------------------------------------------------------------
# TLS obfuscation


class _State(IntEnum):
    TYPE = 0
    VERSION0 = 1
    VERSION1 = 2
    LENGTH0 = 3
    LENGTH1 = 4
    DATA = 5


class ObfsTLSParser:
    """Strips the fake TLS framing from the server's byte stream."""

    def __init__(self) -> None:
        self.step = 0
        self.state = _State.TYPE
        self.length = 0

    def parse(self, data: bytes) -> bytes:
        """Feed received bytes; return the application data found in them."""
        out = bytearray()
        pos = 0
        end = len(data)
        while pos < end:
            ch = data[pos]
            if self.state is _State.TYPE:
                if ch != _RECORD_TYPES[self.step]:
                    raise ObfsError("bad type")
                self.state = _State.VERSION0
                pos += 1
            elif self.state is _State.VERSION0:
                if ch != 0x03:
                    raise ObfsError("bad major version")
                self.state = _State.VERSION1
                pos += 1
            elif self.state is _State.VERSION1:
                if ch != _VERSION_MINORS[self.step]:
                    raise ObfsError("bad minor version")
                self.state = _State.LENGTH0
                pos += 1
            elif self.state is _State.LENGTH0:
                self.length = ch << 8
                self.state = _State.LENGTH1
                pos += 1
            elif self.state is _State.LENGTH1:
                self.length |= ch
                if self.step == 0:
                    self.length = _SERVER_HELLO_LEN
                elif self.step == 1:
                    self.length = 1
                elif self.length > MAX_TLS_DATA_LEN:
                    raise ObfsError("bad tls data len")
                if self.length > 0:
                    self.state = _State.DATA
                else:
                    self.state = _State.TYPE
                    if self.step < 3:
                        self.step += 1
                pos += 1
            else:
                take = min(end - pos, self.length)
                if self.step >= 2:
                    out += data[pos:pos + take]
                pos += take
                self.length -= take
                if self.length == 0:
                    if self.step < 3:
                        self.step += 1
                    self.state = _State.TYPE
        return bytes(out)


class ObfsTLSConn(_WrappedConn):
    """A connection dressed as a TLS 1.2 session.

    The client's first write travels in the session ticket of a ClientHello;
    afterwards data moves in application data records.
    """

    def __init__(self, conn, host: str = "", is_server: bool = False) -> None:
        super().__init__(conn)
        self.host = host
        self.is_server = is_server
        self._rbuf = b""
        self._wbuf = b""
        self._handshaked = threading.Event()
        self._lock = threading.Lock()
        self._parser = None if is_server else ObfsTLSParser()

    def handshaked(self) -> bool:
        return self._handshaked.is_set()

    def handshake(self, payload: Optional[bytes] = None) -> bool:
        """Run the handshake once; return True if this call performed it."""
        with self._lock:
            if self.handshaked():
                return False
            if self.is_server:
                self._server_handshake()
            else:
                self._client_handshake(bytes(payload or b""))
            self._handshaked.set()
            return True

    def _client_handshake(self, payload: bytes) -> None:
        record = _Record(_HANDSHAKE, _TLS10, _client_hello(self.host, payload))
        self._conn.sendall(record.encode())

    def _server_handshake(self) -> None:
        record = _read_record(self._conn)
        if record is None:
            raise ObfsError("unexpected EOF")
        if record.type != _HANDSHAKE:
            raise ObfsError("bad type")
        session_id, extensions = _parse_client_hello(record.opaque)
        ticket = next((d for t, d in extensions if t == _EXT_SESSION_TICKET), b"")
        self._rbuf += ticket
        self._wbuf = (
            _Record(_HANDSHAKE, _TLS10, _server_hello(session_id)).encode()
            + _Record(_CHANGE_CIPHER_SPEC, _TLS12, b"\x01").encode()
        )

    def read(self, size: int = _READ_SIZE) -> bytes:
        """Return up to ``size`` bytes of payload; ``b""`` at end of stream.

        On the client side this waits until a write has done the handshake.
        """
        if self.is_server:
            self.handshake()
        self._handshaked.wait()

        if self.is_server:
            while not self._rbuf:
                record = _read_record(self._conn)
                if record is None:
                    return b""
                self._rbuf = record.opaque
            chunk, self._rbuf = self._rbuf[:size], self._rbuf[size:]
            return chunk

        while True:
            data = self._conn.recv(size)
            if not data:
                return b""
            payload = self._parser.parse(data)
            if payload:
                return payload

    def write(self, data: bytes) -> int:
        """Send ``data`` framed as TLS records; return its length."""
        data = bytes(data)
        size = len(data)
        if not self.handshaked() and self.handshake(data) and not self.is_server:
            return size  # the data went out inside the ClientHello

        for start in range(0, size, MAX_TLS_DATA_LEN):
            chunk = data[start:start + MAX_TLS_DATA_LEN]
            if self._wbuf:
                pending, self._wbuf = self._wbuf, b""
                self._conn.sendall(pending + _Record(_HANDSHAKE, _TLS12, chunk).encode())
            else:
                self._conn.sendall(_Record(_APP_DATA, _TLS12, chunk).encode())
        return size

    def close(self) -> None:
        """Close the underlying connection."""
        self._conn.close()


def client_obfs_tls_conn(conn, host: str) -> ObfsTLSConn:
    """Wrap ``conn`` as the client side of an obfs-tls connection."""
    return ObfsTLSConn(conn, host=host, is_server=False)


def server_obfs_tls_conn(conn, host: str) -> ObfsTLSConn:
    """Wrap ``conn`` as the server side of an obfs-tls connection."""
    return ObfsTLSConn(conn, host=host, is_server=True)


# --------------------------------------------------------------------------
# Listeners


def _listen_address(addr: str) -> Tuple[str, int]:
    if not addr:
        return "", 0
    host, port = _split_host_port(addr)
    if port and not port.isdigit():
        raise ValueError(f"invalid port in address {addr!r}")
    return host, int(port) if port else 0


class _TCPListener:
    def __init__(self, addr: str = "") -> None:
        self._sock = socket.create_server(_listen_address(addr))

    def _accept_socket(self) -> socket.socket:
        conn, _ = self._sock.accept()
        conn.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
        return conn

    def _bound_addr(self) -> Tuple[str, int]:
        return tuple(self._sock.getsockname()[:2])

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class ObfsHTTPListener(_TCPListener):
    """Accepts TCP connections and wraps them as HTTP obfuscation servers."""

    def accept(self) -> ObfsHTTPConn:
        return ObfsHTTPConn(self._accept_socket(), is_server=True)

    def addr(self) -> Tuple[str, int]:
        """Return the ``(host, port)`` the listener is bound to."""
        return self._bound_addr()

    def close(self) -> None:
        """Stop listening."""
        self._sock.close()


class ObfsTLSListener(_TCPListener):
    """Accepts TCP connections and wraps them as obfs-tls servers."""

    def accept(self) -> ObfsTLSConn:
        return server_obfs_tls_conn(self._accept_socket(), "")

    def addr(self) -> Tuple[str, int]:
        """Return the ``(host, port)`` the listener is bound to."""
        return self._bound_addr()

    def close(self) -> None:
        """Stop listening."""
        self._sock.close()