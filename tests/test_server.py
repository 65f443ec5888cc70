import asyncio
import os
import socket
import struct

import dns.asyncquery
import dns.flags
import dns.message
import dns.rrset
import httpx
import pytest

from dnsroute.dns_handler import DummyServerHandler
from dnsroute.server import (
    HTTPRequest,
    HTTPResponse,
    Server,
    ServerClosedError,
    get_udp_size,
)


def tcp_listener() -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen()
    return sock


def udp_socket() -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    return sock


async def stop(server: Server, task: asyncio.Task) -> None:
    server.close()
    with pytest.raises(ServerClosedError):
        await asyncio.wait_for(task, 2)


async def read_until_closed(reader: asyncio.StreamReader) -> bytes:
    try:
        return await asyncio.wait_for(reader.read(), 2)
    except ConnectionResetError:
        return b""


def big_response() -> dns.message.Message:
    resp = dns.message.make_response(dns.message.make_query("example.com.", "A"))
    addrs = [f"10.0.{i // 256}.{i % 256}" for i in range(100)]
    resp.answer.append(dns.rrset.from_text_list("example.com.", 300, "IN", "A", addrs))
    return resp


def test_get_udp_size_without_edns():
    assert get_udp_size(dns.message.make_query("example.com.", "A")) == 512


def test_get_udp_size_with_edns():
    q = dns.message.make_query("example.com.", "A", use_edns=0, payload=4096)
    assert get_udp_size(q) == 4096


def test_get_udp_size_small_edns_payload():
    q = dns.message.make_query("example.com.", "A", use_edns=0, payload=100)
    assert get_udp_size(q) == 512


def test_http_request_accessors():
    req = HTTPRequest(
        method="GET",
        target="/dns-query?dns=AAAB&x=1",
        headers=(("Accept", "application/dns-message"),),
    )
    assert req.path == "/dns-query"
    assert req.query == {"dns": ["AAAB"], "x": ["1"]}
    assert req.header("accept") == "application/dns-message"
    assert req.header("missing", "none") == "none"


def test_close_is_idempotent():
    server = Server(dns_handler=DummyServerHandler())
    assert server.closed() is False
    server.close()
    server.close()
    assert server.closed() is True


@pytest.mark.asyncio
async def test_udp_server_answers_after_junk():
    sock = udp_socket()
    port = sock.getsockname()[1]
    server = Server(dns_handler=DummyServerHandler())
    task = asyncio.create_task(server.serve_udp(sock))
    await asyncio.sleep(0.05)

    junk = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    junk.sendto(os.urandom(1200), ("127.0.0.1", port))
    junk.close()

    async def one(i: int) -> int:
        q = dns.message.make_query("example.com.", "A")
        q.id = i
        r = await dns.asyncquery.udp(q, "127.0.0.1", timeout=2, port=port)
        return r.id

    ids = await asyncio.gather(*(one(i) for i in range(50)))
    assert ids == list(range(50))
    await stop(server, task)


@pytest.mark.asyncio
async def test_udp_response_is_truncated_to_client_size():
    sock = udp_socket()
    port = sock.getsockname()[1]
    server = Server(dns_handler=DummyServerHandler(want_msg=big_response()))
    task = asyncio.create_task(server.serve_udp(sock))
    await asyncio.sleep(0.05)

    q = dns.message.make_query("example.com.", "A")
    r = await dns.asyncquery.udp(q, "127.0.0.1", timeout=2, port=port)
    assert r.flags & dns.flags.TC
    assert len(r.to_wire()) <= 512
    assert r.answer == []

    q = dns.message.make_query("example.com.", "A", use_edns=0, payload=4096)
    r = await dns.asyncquery.udp(q, "127.0.0.1", timeout=2, port=port)
    assert not r.flags & dns.flags.TC
    assert len(r.answer[0]) == 100
    await stop(server, task)


@pytest.mark.asyncio
async def test_tcp_server_answers_after_junk():
    sock = tcp_listener()
    port = sock.getsockname()[1]
    server = Server(dns_handler=DummyServerHandler())
    task = asyncio.create_task(server.serve_tcp(sock))
    await asyncio.sleep(0.05)

    _, junk_writer = await asyncio.open_connection("127.0.0.1", port)
    junk_writer.write(os.urandom(1200))
    await junk_writer.drain()

    async def one(i: int) -> int:
        q = dns.message.make_query("example.com.", "A")
        q.id = i
        r = await dns.asyncquery.tcp(q, "127.0.0.1", timeout=2, port=port)
        return r.id

    ids = await asyncio.gather(*(one(i) for i in range(20)))
    assert ids == list(range(20))
    junk_writer.close()
    await stop(server, task)


@pytest.mark.asyncio
async def test_tcp_handler_error_closes_connection():
    sock = tcp_listener()
    port = sock.getsockname()[1]
    server = Server(dns_handler=DummyServerHandler(want_error=RuntimeError("boom")))
    task = asyncio.create_task(server.serve_tcp(sock))
    await asyncio.sleep(0.05)

    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    wire = dns.message.make_query("example.com.", "A").to_wire()
    writer.write(struct.pack("!H", len(wire)) + wire)
    await writer.drain()
    data = await read_until_closed(reader)
    assert data == b""
    writer.close()
    await stop(server, task)


@pytest.mark.asyncio
async def test_tcp_idle_connection_is_closed():
    sock = tcp_listener()
    port = sock.getsockname()[1]
    server = Server(dns_handler=DummyServerHandler(), idle_timeout=0.2)
    task = asyncio.create_task(server.serve_tcp(sock))
    await asyncio.sleep(0.05)

    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    data = await asyncio.wait_for(reader.read(), 2)
    assert data == b""
    writer.close()
    await stop(server, task)


@pytest.mark.asyncio
async def test_close_closes_open_connections():
    sock = tcp_listener()
    port = sock.getsockname()[1]
    server = Server(dns_handler=DummyServerHandler())
    task = asyncio.create_task(server.serve_tcp(sock))
    await asyncio.sleep(0.05)

    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    await asyncio.sleep(0.05)
    await stop(server, task)
    data = await asyncio.wait_for(reader.read(), 2)
    assert data == b""
    writer.close()


@pytest.mark.asyncio
async def test_serve_on_closed_server_raises():
    server = Server(dns_handler=DummyServerHandler())
    server.close()
    tcp = tcp_listener()
    with pytest.raises(ServerClosedError):
        await server.serve_tcp(tcp)
    assert tcp.fileno() == -1
    udp = udp_socket()
    with pytest.raises(ServerClosedError):
        await server.serve_udp(udp)
    assert udp.fileno() == -1


@pytest.mark.asyncio
async def test_missing_dns_handler():
    server = Server()
    sock = tcp_listener()
    with pytest.raises(ValueError, match="missing dns handler"):
        await server.serve_tcp(sock)
    assert sock.fileno() == -1
    with pytest.raises(ValueError, match="missing dns handler"):
        await server.serve_udp(udp_socket())


@pytest.mark.asyncio
async def test_missing_http_handler():
    server = Server(dns_handler=DummyServerHandler())
    sock = tcp_listener()
    with pytest.raises(ValueError, match="missing http handler"):
        await server.serve_http(sock)
    assert sock.fileno() == -1


@pytest.mark.asyncio
async def test_tls_without_certificate():
    server = Server(dns_handler=DummyServerHandler())
    sock = tcp_listener()
    with pytest.raises(ValueError, match="missing certificate"):
        await server.serve_tls(sock)
    assert sock.fileno() == -1


@pytest.mark.asyncio
async def test_https_with_missing_cert_file(tmp_path):
    async def handler(request: HTTPRequest) -> HTTPResponse:
        return HTTPResponse()

    server = Server(
        http_handler=handler,
        cert=str(tmp_path / "missing.cert"),
        key=str(tmp_path / "missing.key"),
    )
    sock = tcp_listener()
    with pytest.raises(FileNotFoundError):
        await server.serve_https(sock)
    assert sock.fileno() == -1


async def echo_handler(request: HTTPRequest) -> HTTPResponse:
    if request.path != "/dns-query":
        return HTTPResponse(status=404)
    if request.method == "POST":
        body = request.body
    else:
        body = request.query["dns"][0].encode()
    return HTTPResponse(
        status=200,
        headers=[("content-type", "application/dns-message")],
        body=body,
    )


@pytest.mark.asyncio
async def test_http_server_get_and_post():
    sock = tcp_listener()
    port = sock.getsockname()[1]
    server = Server(http_handler=echo_handler)
    task = asyncio.create_task(server.serve_http(sock))
    await asyncio.sleep(0.05)

    base = f"http://127.0.0.1:{port}"
    async with httpx.AsyncClient(trust_env=False) as client:
        r = await client.get(f"{base}/dns-query?dns=abc")
        assert r.status_code == 200
        assert r.content == b"abc"
        assert r.headers["content-type"] == "application/dns-message"

        r = await client.post(f"{base}/dns-query", content=b"\x01\x02\x03")
        assert r.status_code == 200
        assert r.content == b"\x01\x02\x03"

        r = await client.get(f"{base}/other")
        assert r.status_code == 404
    await stop(server, task)


@pytest.mark.asyncio
async def test_http_handler_error_drops_connection():
    async def failing(request: HTTPRequest) -> HTTPResponse:
        raise RuntimeError("boom")

    sock = tcp_listener()
    port = sock.getsockname()[1]
    server = Server(http_handler=failing)
    task = asyncio.create_task(server.serve_http(sock))
    await asyncio.sleep(0.05)

    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(b"GET /dns-query HTTP/1.1\r\nHost: 127.0.0.1\r\n\r\n")
    await writer.drain()
    data = await read_until_closed(reader)
    assert data == b""
    writer.close()
    await stop(server, task)


@pytest.mark.asyncio
async def test_http_bad_request_gets_400():
    sock = tcp_listener()
    port = sock.getsockname()[1]
    server = Server(http_handler=echo_handler)
    task = asyncio.create_task(server.serve_http(sock))
    await asyncio.sleep(0.05)

    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(b"this is not http\r\n\r\n")
    await writer.drain()
    data = await asyncio.wait_for(reader.read(), 2)
    assert data.startswith(b"HTTP/1.1 400")
    writer.close()
    await stop(server, task)