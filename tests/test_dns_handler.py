import asyncio

import dns.flags
import dns.message
import dns.rcode
import pytest

from dnsroute.dns_handler import DummyServerHandler, EntryHandler
from dnsroute.query_context import RequestMeta


class _Entry:
    def __init__(self, action):
        self.action = action
        self.seen = []

    async def exec(self, qctx):
        self.seen.append(qctx)
        await self.action(qctx)


async def _answer(qctx):
    resp = dns.message.make_response(qctx.query)
    resp.set_rcode(dns.rcode.NXDOMAIN)
    qctx.response = resp


async def _fail(qctx):
    raise RuntimeError("boom")


async def _nothing(qctx):
    return None


async def _slow(qctx):
    await asyncio.sleep(5)
    await _answer(qctx)


def _query():
    return dns.message.make_query("example.com.", "A")


def test_nil_entry_rejected():
    with pytest.raises(ValueError):
        EntryHandler(None)


@pytest.mark.asyncio
async def test_entry_response_returned():
    entry = _Entry(_answer)
    handler = EntryHandler(entry)
    q = _query()
    meta = RequestMeta(client_addr="127.0.0.1")
    resp = await handler.serve_dns(q, meta)
    assert resp.rcode() == dns.rcode.NXDOMAIN
    assert resp.id == q.id
    assert entry.seen[0].req_meta is meta
    assert not resp.flags & dns.flags.RA


@pytest.mark.parametrize("action", [_fail, _nothing])
@pytest.mark.asyncio
async def test_servfail_on_error_or_no_response(action):
    handler = EntryHandler(_Entry(action))
    q = _query()
    resp = await handler.serve_dns(q, RequestMeta())
    assert resp.rcode() == dns.rcode.SERVFAIL
    assert resp.id == q.id
    assert resp.flags & dns.flags.QR
    assert resp.question[0].name == q.question[0].name


@pytest.mark.asyncio
async def test_timeout_gives_servfail():
    handler = EntryHandler(_Entry(_slow), query_timeout=0.05)
    resp = await handler.serve_dns(_query(), RequestMeta())
    assert resp.rcode() == dns.rcode.SERVFAIL


@pytest.mark.asyncio
async def test_recursion_available_flag():
    handler = EntryHandler(_Entry(_answer), recursion_available=True)
    resp = await handler.serve_dns(_query(), RequestMeta())
    assert resp.flags & dns.flags.RA

    handler = EntryHandler(_Entry(_fail), recursion_available=True)
    resp = await handler.serve_dns(_query(), RequestMeta())
    assert resp.flags & dns.flags.RA
    assert resp.rcode() == dns.rcode.SERVFAIL


@pytest.mark.asyncio
async def test_dummy_handler_echo():
    q = _query()
    resp = await DummyServerHandler().serve_dns(q, RequestMeta())
    assert resp.id == q.id
    assert resp.flags & dns.flags.QR
    assert resp.question[0].name == q.question[0].name


@pytest.mark.asyncio
async def test_dummy_handler_fixed_msg():
    template = dns.message.make_response(_query())
    template.set_rcode(dns.rcode.REFUSED)
    q = _query()
    q.id = (template.id + 1) & 0xFFFF
    resp = await DummyServerHandler(want_msg=template).serve_dns(q, RequestMeta())
    assert resp.id == q.id
    assert resp.rcode() == dns.rcode.REFUSED
    assert template.id != q.id


@pytest.mark.asyncio
async def test_dummy_handler_error():
    handler = DummyServerHandler(want_error=ConnectionError("bad"))
    with pytest.raises(ConnectionError):
        await handler.serve_dns(_query(), RequestMeta())