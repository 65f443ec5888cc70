import asyncio
import base64
from urllib.parse import parse_qs, urlsplit

import dns.message
import dns.rcode
import httpx
import pytest

from dnsroute.doh import DoHUpstream


def _decode_dns_param(value: str) -> dns.message.Message:
    padded = value + "=" * (-len(value) % 4)
    return dns.message.from_wire(base64.urlsafe_b64decode(padded))


def _echo_handler(seen: list[httpx.Request]):
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        q = _decode_dns_param(parse_qs(urlsplit(str(request.url)).query)["dns"][0])
        r = dns.message.make_response(q)
        return httpx.Response(200, content=r.to_wire())

    return handler


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_query_id_zeroed_on_wire_and_restored_in_response():
    seen: list[httpx.Request] = []
    async with _client(_echo_handler(seen)) as client:
        up = DoHUpstream("https://example.com/dns-query", client)
        q = dns.message.make_query("example.com.", "A")
        q.id = 1234
        r = await up.exchange(q)

    assert r.id == 1234
    assert r.question[0].name.to_text() == "example.com."
    sent = _decode_dns_param(parse_qs(urlsplit(str(seen[0].url)).query)["dns"][0])
    assert sent.id == 0
    assert seen[0].method == "GET"
    assert seen[0].headers["accept"] == "application/dns-message"


@pytest.mark.asyncio
async def test_dns_param_has_no_padding():
    seen: list[httpx.Request] = []
    async with _client(_echo_handler(seen)) as client:
        up = DoHUpstream("https://example.com/dns-query", client)
        q = dns.message.make_query("a.", "A")
        await up.exchange(q)
    value = parse_qs(urlsplit(str(seen[0].url)).query)["dns"][0]
    assert "=" not in value
    assert urlsplit(str(seen[0].url)).path == "/dns-query"


@pytest.mark.asyncio
async def test_endpoint_with_existing_parameter_keeps_it():
    seen: list[httpx.Request] = []
    async with _client(_echo_handler(seen)) as client:
        up = DoHUpstream("https://example.com/dns-query?x=1", client)
        q = dns.message.make_query("example.com.", "AAAA")
        q.id = 7
        r = await up.exchange(q)
    params = parse_qs(urlsplit(str(seen[0].url)).query)
    assert params["x"] == ["1"]
    assert "dns" in params
    assert r.id == 7


@pytest.mark.asyncio
async def test_bad_status_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, content=b"busy")

    async with _client(handler) as client:
        up = DoHUpstream("https://example.com/dns-query", client)
        with pytest.raises(ConnectionError, match="503"):
            await up.exchange(dns.message.make_query("example.com.", "A"))


@pytest.mark.asyncio
async def test_invalid_body_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"\x01")

    async with _client(handler) as client:
        up = DoHUpstream("https://example.com/dns-query", client)
        with pytest.raises(ValueError, match="unpack"):
            await up.exchange(dns.message.make_query("example.com.", "A"))


@pytest.mark.asyncio
async def test_response_rcode_is_kept():
    def handler(request: httpx.Request) -> httpx.Response:
        q = _decode_dns_param(parse_qs(urlsplit(str(request.url)).query)["dns"][0])
        r = dns.message.make_response(q)
        r.set_rcode(dns.rcode.NXDOMAIN)
        return httpx.Response(200, content=r.to_wire())

    async with _client(handler) as client:
        up = DoHUpstream("https://example.com/dns-query", client)
        r = await up.exchange(dns.message.make_query("nothing.example.com.", "A"))
    assert r.rcode() == dns.rcode.NXDOMAIN


class _Closer:
    def __init__(self) -> None:
        self.calls = 0

    def close(self) -> None:
        self.calls += 1


@pytest.mark.asyncio
async def test_close_closes_client_and_addon():
    closer = _Closer()
    client = _client(_echo_handler([]))
    up = DoHUpstream("https://example.com/dns-query", client, closer)
    up.close()
    await asyncio.sleep(0.01)
    assert closer.calls == 1
    assert client.is_closed