# dnsroute

Building blocks for a rule-based DNS forwarder: match queries by
domain, client address, query type or answer content, serve them over
UDP, TCP, DNS-over-TLS, HTTP or HTTPS, and forward them to upstream
resolvers over pooled, pipelined connections. Everything that touches
the network is built on `asyncio`; DNS messages are `dns.message.Message`
objects from dnspython.

## Installation

```
pip install dnsroute
```

Install with `pip install "dnsroute[test]"` to get what the test suite needs.

## What is inside

| Module | Purpose |
| --- | --- |
| `dnsroute.domain_matcher` | `FullMatcher`, `SubDomainMatcher`, `KeywordMatcher`, `RegexMatcher` and the combining `MixMatcher`; also `ReverseDomainScanner`, `normalize_domain` and `trim_dot`. All matchers ignore case and a trailing dot. |
| `dnsroute.domain_loader` | Load domain rules from strings or text (`pattern_only`, `load`, `batch_load`, `load_from_text_reader`, `parse_text_domain_file`, `new_domain_mix_matcher`), group matchers (`MatcherGroup`), swap rule sets at run time (`DynamicMatcher`), and parse tag filters (`parse_v2_suffix`, `V2Filter`). |
| `dnsroute.elem` | `IntMatcher`, a set of integers such as query types, classes or rcodes. |
| `dnsroute.netlist` | `IPList`, a sorted and merged list of IPv4/IPv6 prefixes searched by bisection, with `NotSortedError` and `InvalidAddrError`. |
| `dnsroute.netlist_loader` | Load prefixes from text (`load`, `load_from_text`, `load_from_reader`, `parse_text_ip_file`), and the `IPMatcherGroup` and `DynamicIPMatcher` containers. |
| `dnsroute.query_context` | `QueryContext` carries a query, its response, request metadata (`RequestMeta`) and marks; `allocate_mark` hands out unique marks. |
| `dnsroute.msg_matcher` | Matchers over a query context: `ClientIPMatcher`, `ClientECSMatcher`, `QNameMatcher`, `QTypeMatcher`, `QClassMatcher`, `AAAAIPMatcher`, `CNameMatcher`, `RCodeMatcher`. |
| `dnsroute.dns_handler` | `EntryHandler` runs an entry against each request and always produces a reply; `DummyServerHandler` echoes a reply, a fixed message or an error. |
| `dnsroute.server` | `Server` listens on UDP, TCP, TLS, HTTP and HTTPS sockets. |
| `dnsroute.transport` | `Transport` exchanges messages over one-shot, reusable or pipelined connections. |
| `dnsroute.doh` | `DoHUpstream`, an RFC 8484 client using HTTP GET. |
| `dnsroute.upstream` | `new_upstream` builds an upstream from an address such as `8.8.8.8`, `tcp://1.1.1.1`, `tls://dns.example:853` or `https://dns.example/dns-query`. |

## Domain rules

A `MixMatcher` accepts rules written as `type:pattern`. The type is one
of `full`, `domain`, `regexp` or `keyword`. A rule without a type goes to
the default sub-matcher, which is `full` unless changed with
`set_default_matcher`. An unknown type raises `ValueError`, and so does an
invalid regular expression. `match` returns a `(value, matched)` tuple.

```python
from dnsroute.domain_matcher import MixMatcher

rules = MixMatcher()
rules.add("domain:example.com", "proxy")
rules.add("keyword:ads", "block")
rules.add("full:exact.example.org", "direct")

rules.match("www.example.com.")   # ("proxy", True)
rules.match("other.net")          # (None, False)
len(rules)                        # 3
```

`new_domain_mix_matcher()` returns a `MixMatcher` whose default type is
`domain`. `parse_text_domain_file(data)` fills such a matcher from bytes
holding one rule per line; text after `#` and blank lines are ignored.

## IP lists

```python
from dnsroute.netlist import IPList
from dnsroute.netlist_loader import load_from_text

networks = IPList()
load_from_text(networks, "192.168.0.0/16")
load_from_text(networks, "2000::/32")
networks.sort()                        # required before matching

networks.contains("192.168.1.1")       # True
```

Sorting merges prefixes contained in others. Searching an unsorted list
raises `NotSortedError`; an invalid address raises `InvalidAddrError`.
`load_from_reader` reads one entry per line and ignores text after `#` or
after the first space.

## Serving

`Server` takes a DNS handler (for UDP, TCP and TLS) and an HTTP handler
(for HTTP and HTTPS), plus an optional `ssl.SSLContext` or certificate and
key files, and an idle timeout for stream connections. Each `serve_*`
coroutine takes a bound socket and owns it from then on. It runs until the
server is closed and then raises `ServerClosedError`. `Server.close`
closes every listener and connection it is tracking. UDP responses are
truncated to the size the client advertised (at least 512 bytes).

```python
import asyncio
import socket

from dnsroute.dns_handler import DummyServerHandler
from dnsroute.server import Server


async def main() -> None:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 5353))
    server = Server(dns_handler=DummyServerHandler())
    await server.serve_udp(sock)

asyncio.run(main())
```

An HTTP handler is any callable taking an `HTTPRequest` and returning an
`HTTPResponse` (or an awaitable of one). HTTP is served as HTTP/1.1.

`EntryHandler` wraps an entry object with an `async exec(qctx)` method. If
the entry raises, times out, or sets no response, the reply is SERVFAIL.

## Forwarding

`new_upstream` picks the transport from the address scheme. A plain
address means UDP, and truncated UDP answers are repeated over TCP.
`UpstreamOptions` carries the dial address, SOCKS5 proxy (TCP and TLS
only), idle timeout, pipelining, connection limit, bootstrap server,
socket mark and bound device (applied on Linux), and TLS context.

```python
import asyncio

import dns.message

from dnsroute.upstream import UpstreamOptions, new_upstream


async def main() -> None:
    upstream = new_upstream("tls://1.1.1.1", UpstreamOptions(enable_pipeline=True))
    response = await upstream.exchange(dns.message.make_query("example.com", "A"))
    print(response)
    upstream.close()

asyncio.run(main())
```

## What it does not do

- It has no command-line program and no configuration file: the pieces are
  wired together in Python code.
- It ships no entries or plugins for `EntryHandler`; the caller supplies
  the entry that decides how each query is answered.
- It ships no HTTP handler that decodes DNS-over-HTTPS requests; the
  `Server` HTTP and HTTPS listeners hand raw `HTTPRequest` objects to a
  handler the caller supplies.
- DoH upstreams do not support HTTP/3 or SOCKS5; asking for either raises
  `ValueError`.
- It does not read binary geosite or geoip data files; rules come from text.

## Running the tests

```
pytest
```