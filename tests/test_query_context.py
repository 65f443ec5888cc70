import ipaddress

import dns.message
import dns.rcode
import pytest

from dnsroute.query_context import QueryContext, RequestMeta, allocate_mark


def test_str_summarizes_question_and_client():
    q = dns.message.make_query("example.com.", "A")
    ctx = QueryContext(q, RequestMeta(client_addr="127.0.0.1"))
    assert str(ctx) == f"example.com. IN A {q.id} {ctx.id} 127.0.0.1"


def test_str_without_question_or_client():
    q = dns.message.Message(id=7)
    ctx = QueryContext(q)
    assert str(ctx) == f"empty question 7 {ctx.id} unknown client"


def test_none_query_is_rejected():
    with pytest.raises(ValueError):
        QueryContext(None)


def test_ids_grow():
    q = dns.message.make_query("a.", "A")
    first = QueryContext(q)
    second = QueryContext(q)
    assert second.id > first.id


def test_default_meta():
    ctx = QueryContext(dns.message.make_query("a.", "A"))
    assert ctx.req_meta.client_addr is None
    assert ctx.req_meta.from_udp is False


def test_meta_parses_string_address():
    meta = RequestMeta(client_addr="::1")
    assert meta.client_addr == ipaddress.ip_address("::1")


def test_original_query_is_a_copy():
    q = dns.message.make_query("example.com.", "A")
    q.id = 100
    ctx = QueryContext(q)
    q.id = 200
    assert ctx.query is q
    assert ctx.original_query.id == 100
    assert ctx.original_query.question[0].name == q.question[0].name


def test_copy_is_deep():
    q = dns.message.make_query("example.com.", "A")
    ctx = QueryContext(q)
    resp = dns.message.make_response(q)
    ctx.response = resp
    ctx.add_mark(5)

    dup = ctx.copy()
    assert dup.id == ctx.id
    assert dup.start_time == ctx.start_time
    assert dup.original_query is ctx.original_query
    assert dup.has_mark(5)
    assert dup.response is not resp
    assert dup.response.to_wire() == resp.to_wire()

    dup.query.id = (q.id + 1) & 0xFFFF
    dup.add_mark(6)
    assert ctx.query.id == q.id
    assert not ctx.has_mark(6)


def test_copy_without_response():
    ctx = QueryContext(dns.message.make_query("a.", "A"))
    assert ctx.copy().response is None


def test_marks():
    ctx = QueryContext(dns.message.make_query("a.", "A"))
    assert not ctx.has_mark(1)
    ctx.add_mark(1)
    assert ctx.has_mark(1)
    assert not ctx.has_mark(2)


def test_allocate_mark_unique_and_growing():
    a = allocate_mark()
    b = allocate_mark()
    assert a > 0
    assert b > a