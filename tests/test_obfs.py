import socket
import struct

import pytest

from proxykit.obfs import (
    MAX_TLS_DATA_LEN,
    ObfsError,
    ObfsHTTPConn,
    ObfsHTTPListener,
    ObfsTLSConn,
    ObfsTLSListener,
    ObfsTLSParser,
    client_obfs_tls_conn,
    server_obfs_tls_conn,
)


@pytest.fixture
def pair():
    a, b = socket.socketpair()
    a.settimeout(5)
    b.settimeout(5)
    yield a, b
    a.close()
    b.close()


def _record(rtype, version, payload):
    return struct.pack("!BHH", rtype, version, len(payload)) + payload


def _server_stream(*chunks):
    stream = _record(0x16, 0x0301, bytes(91)) + _record(0x14, 0x0303, b"\x01")
    first, *rest = chunks
    stream += _record(0x16, 0x0303, first)
    for chunk in rest:
        stream += _record(0x17, 0x0303, chunk)
    return stream


def _read_exactly(conn, size):
    data = b""
    while len(data) < size:
        chunk = conn.read(size - len(data))
        assert chunk
        data += chunk
    return data


def _read_until(sock, marker):
    data = b""
    while marker not in data:
        chunk = sock.recv(4096)
        assert chunk
        data += chunk
    return data


# ---------------------------------------------------------------- parser


def test_parser_extracts_application_data():
    parser = ObfsTLSParser()
    assert parser.parse(_server_stream(b"hello", b"world")) == b"helloworld"


def test_parser_byte_by_byte_matches_whole():
    stream = _server_stream(b"abc", b"defg", b"h")
    parser = ObfsTLSParser()
    collected = b"".join(parser.parse(stream[i:i + 1]) for i in range(len(stream)))
    assert collected == ObfsTLSParser().parse(stream)


@pytest.mark.parametrize(
    "data, message",
    [
        (b"\x17", "bad type"),
        (b"\x16\x02", "bad major version"),
        (b"\x16\x03\x03", "bad minor version"),
    ],
)
def test_parser_rejects_bad_headers(data, message):
    with pytest.raises(ObfsError, match=message):
        ObfsTLSParser().parse(data)


def test_parser_rejects_oversized_record():
    stream = _record(0x16, 0x0301, bytes(91)) + _record(0x14, 0x0303, b"\x01")
    stream += struct.pack("!BHH", 0x16, 0x0303, MAX_TLS_DATA_LEN + 1)
    with pytest.raises(ObfsError, match="bad tls data len"):
        ObfsTLSParser().parse(stream)


# ---------------------------------------------------------------- obfs-tls


def test_tls_round_trip(pair):
    a, b = pair
    client = client_obfs_tls_conn(a, "example.com")
    server = server_obfs_tls_conn(b, "")
    assert not client.handshaked()

    assert client.write(b"ping") == 4
    assert client.handshaked()
    assert server.read() == b"ping"

    assert server.write(b"pong") == 4
    assert client.read() == b"pong"

    client.write(b"more")
    assert server.read() == b"more"
    server.write(b"again")
    assert client.read() == b"again"


def test_tls_large_writes_are_split(pair):
    a, b = pair
    client = client_obfs_tls_conn(a, "example.com")
    server = server_obfs_tls_conn(b, "")
    client.write(b"x")
    assert server.read() == b"x"

    payload = bytes(range(256)) * 80
    assert server.write(payload) == len(payload)
    assert _read_exactly(client, len(payload)) == payload

    assert client.write(payload) == len(payload)
    assert _read_exactly(server, len(payload)) == payload


def test_tls_client_hello_wire_format(pair):
    a, b = pair
    client = ObfsTLSConn(a, host="example.com")
    assert client.write(b"data") == 4
    assert client.handshaked()
    header = b.recv(6)
    assert header[:3] == b"\x16\x03\x01"
    assert header[5] == 0x01


def test_tls_server_hello_wire_format(pair):
    a, b = pair
    client = client_obfs_tls_conn(a, "example.com")
    server = server_obfs_tls_conn(b, "")
    client.write(b"hi")
    assert server.read() == b"hi"
    server.write(b"ok")
    raw = a.recv(4096)
    assert raw[:5] == b"\x16\x03\x01\x00\x5b"
    assert raw[5] == 0x02
    assert raw[96:102] == b"\x14\x03\x03\x00\x01\x01"


def test_tls_server_rejects_non_handshake(pair):
    a, b = pair
    a.sendall(_record(0x17, 0x0303, b"junk"))
    server = server_obfs_tls_conn(b, "")
    with pytest.raises(ObfsError):
        server.read()
    assert not server.handshaked()


def test_tls_server_read_returns_empty_at_eof(pair):
    a, b = pair
    client = client_obfs_tls_conn(a, "example.com")
    server = server_obfs_tls_conn(b, "")
    client.write(b"last")
    a.shutdown(socket.SHUT_WR)
    assert server.read() == b"last"
    assert server.read() == b""


# ---------------------------------------------------------------- obfs-http


def test_http_round_trip(pair):
    a, b = pair
    client = ObfsHTTPConn(a, host="example.com")
    server = ObfsHTTPConn(b, is_server=True)
    assert client.write(b"hello") == 5
    assert server.read() == b"hello"
    assert server.write(b"world") == 5
    assert client.read() == b"world"
    client.write(b"again")
    assert server.read() == b"again"


def test_http_client_request_wire_format(pair):
    a, b = pair
    client = ObfsHTTPConn(a, host="example.com")
    assert client.write(b"x") == 1
    raw = _read_until(b, b"\r\n\r\nx")
    assert raw.startswith(b"GET / HTTP/1.1\r\n")
    assert b"Host: example.com\r\n" in raw
    assert b"Upgrade: websocket\r\n" in raw
    assert raw.endswith(b"\r\n\r\nx")


def test_http_server_rejects_non_upgrade(pair):
    a, b = pair
    a.sendall(b"POST / HTTP/1.1\r\nHost: example.com\r\n\r\n")
    server = ObfsHTTPConn(b, is_server=True)
    with pytest.raises(ObfsError, match="bad request"):
        server.read()
    reply = _read_until(a, b"\r\n\r\n")
    assert reply.startswith(b"HTTP/1.1 503 Service Unavailable\r\n")


def test_http_server_accept_key(pair):
    a, b = pair
    a.sendall(
        b"GET / HTTP/1.1\r\nHost: example.com\r\nUpgrade: websocket\r\n"
        b"Connection: Upgrade\r\nSec-WebSocket-Key: dGhlIHNhbXBsZSBub25jZQ==\r\n\r\n"
    )
    server = ObfsHTTPConn(b, is_server=True)
    server.handshake()
    reply = _read_until(a, b"\r\n\r\n")
    assert reply.startswith(b"HTTP/1.1 101 Switching Protocols\r\n")
    assert b"Sec-WebSocket-Accept: s3pPLMBiTxaQ9kYGzzhZRbK+xOo=\r\n" in reply

    a.sendall(b"after")
    assert server.read() == b"after"
    assert server.write(b"ok") == 2
    assert _read_until(a, b"ok") == b"ok"


def test_http_server_reads_request_body(pair):
    a, b = pair
    a.sendall(
        b"GET / HTTP/1.1\r\nHost: example.com\r\nUpgrade: websocket\r\n"
        b"Content-Length: 3\r\n\r\nabc"
    )
    server = ObfsHTTPConn(b, is_server=True)
    assert server.read() == b"abc"


# ---------------------------------------------------------------- listeners


def test_http_listener_round_trip():
    with ObfsHTTPListener("127.0.0.1:0") as listener:
        host, port = listener.addr()
        assert host == "127.0.0.1"
        raw = socket.create_connection((host, port), timeout=5)
        with ObfsHTTPConn(raw, host="example.com") as client:
            with listener.accept() as server:
                server.settimeout(5)
                client.write(b"hello")
                assert server.read() == b"hello"
                server.write(b"world")
                assert client.read() == b"world"


def test_tls_listener_round_trip():
    with ObfsTLSListener("127.0.0.1:0") as listener:
        raw = socket.create_connection(listener.addr(), timeout=5)
        with client_obfs_tls_conn(raw, "example.com") as client:
            with listener.accept() as server:
                server.settimeout(5)
                client.write(b"ping")
                assert server.read() == b"ping"
                server.write(b"pong")
                assert client.read() == b"pong"


def test_listener_rejects_bad_address():
    with pytest.raises(ValueError):
        ObfsHTTPListener("nohostport")