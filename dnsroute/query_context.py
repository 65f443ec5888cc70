"""The per-query context passed through the query handling chain."""

from __future__ import annotations

import copy as _copy
import ipaddress
import itertools
import threading
import time
from dataclasses import dataclass
from typing import Union

import dns.message
import dns.rdataclass
import dns.rdatatype

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

_MAX_MARK = 2**64 - 1


class MarkOverflowError(RuntimeError):
    """No more marks can be allocated."""

    def __init__(self) -> None:
        super().__init__("too many allocated marks")


@dataclass(frozen=True)
class RequestMeta:
    """Metadata about a request.

    ``client_addr`` is the client's address, or None when it is unknown.
    ``from_udp`` tells whether the request came in over UDP.
    """

    client_addr: IPAddress | None = None
    from_udp: bool = False

    def __post_init__(self) -> None:
        if isinstance(self.client_addr, str):
            object.__setattr__(self, "client_addr", ipaddress.ip_address(self.client_addr))


_EMPTY_META = RequestMeta()

_id_lock = threading.Lock()
_id_counter = itertools.count(1)

_mark_lock = threading.Lock()
_last_mark = 0


def _next_context_id() -> int:
    with _id_lock:
        return next(_id_counter) & 0xFFFFFFFF


def _copy_msg(msg: dns.message.Message) -> dns.message.Message:
    """Deep copy a DNS message."""
    try:
        return dns.message.from_wire(msg.to_wire())
    except Exception:
        return _copy.deepcopy(msg)


class QueryContext:
    """A query travelling through the handlers.

    It always holds a query. The response is None until a handler sets it.
    Not safe for concurrent use.
    """

    def __init__(self, q: dns.message.Message, meta: RequestMeta | None = None) -> None:
        if q is None:
            raise ValueError("query msg is None")
        self._query = q
        self._original_query = _copy_msg(q)
        self._meta = meta if meta is not None else _EMPTY_META
        self._id = _next_context_id()
        self._start_time = time.time()
        self._marks: set[int] = set()
        self.response: dns.message.Message | None = None

    @property
    def query(self) -> dns.message.Message:
        """The query message."""
        return self._query

    @property
    def original_query(self) -> dns.message.Message:
        """A copy of the query as it was when the context was created."""
        return self._original_query

    @property
    def req_meta(self) -> RequestMeta:
        """The request metadata; never None."""
        return self._meta

    @property
    def id(self) -> int:
        """A number that grows with each context; not the DNS message id."""
        return self._id

    @property
    def start_time(self) -> float:
        """When the context was created, in seconds since the epoch."""
        return self._start_time

    def __str__(self) -> str:
        if self._query.question:
            rrset = self._query.question[0]
            question = (
                f"{rrset.name.to_text()} "
                f"{dns.rdataclass.to_text(rrset.rdclass)} "
                f"{dns.rdatatype.to_text(rrset.rdtype)}"
            )
        else:
            question = "empty question"
        addr = self._meta.client_addr
        client = str(addr) if addr is not None else "unknown client"
        return f"{question} {self._query.id} {self._id} {client}"

    def copy(self) -> QueryContext:
        """Deep copy this context; the original query and metadata are shared."""
        new = QueryContext.__new__(QueryContext)
        new._query = _copy_msg(self._query)
        new._original_query = self._original_query
        new._meta = self._meta
        new._id = self._id
        new._start_time = self._start_time
        new._marks = set(self._marks)
        new.response = _copy_msg(self.response) if self.response is not None else None
        return new

    def add_mark(self, mark: int) -> None:
        self._marks.add(mark)

    def has_mark(self, mark: int) -> bool:
        return mark in self._marks


def allocate_mark() -> int:
    """Return a new, unique, non-zero mark."""
    global _last_mark
    with _mark_lock:
        if _last_mark >= _MAX_MARK:
            raise MarkOverflowError()
        _last_mark += 1
        return _last_mark