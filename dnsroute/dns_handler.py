"""DNS handlers that turn a request into a response."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Protocol

import dns.flags
import dns.message
import dns.opcode
import dns.rcode
import dns.rrset

from dnsroute.query_context import QueryContext, RequestMeta, _copy_msg

DEFAULT_QUERY_TIMEOUT = 5.0

_logger = logging.getLogger(__name__)


class Executable(Protocol):
    """Something that processes a query context."""

    async def exec(self, qctx: QueryContext) -> None: ...


class DNSHandler(ABC):
    """Handles a DNS request.

    It must always return a response and handle DNS errors itself; an
    exception means the downstream connection should be closed.
    """

    @abstractmethod
    async def serve_dns(self, req: dns.message.Message, meta: RequestMeta) -> dns.message.Message:
        """Return the response to req."""


def _reply_to(req: dns.message.Message) -> dns.message.Message:
    """Build an empty reply to req, keeping its id, opcode and first question."""
    resp = dns.message.Message(id=req.id)
    resp.flags = dns.flags.QR
    resp.set_opcode(req.opcode())
    if req.opcode() == dns.opcode.QUERY:
        resp.flags |= req.flags & (dns.flags.RD | dns.flags.CD)
    if req.question:
        q = req.question[0]
        resp.question = [dns.rrset.RRset(q.name, q.rdclass, q.rdtype)]
    return resp


class EntryHandler(DNSHandler):
    """Runs an entry on each query.

    If the entry fails or times out, a SERVFAIL response is returned; so it is
    when the entry sets no response.
    """

    def __init__(
        self,
        entry: Executable,
        logger: logging.Logger | None = None,
        query_timeout: float = DEFAULT_QUERY_TIMEOUT,
        recursion_available: bool = False,
    ) -> None:
        if entry is None:
            raise ValueError("nil entry")
        self._entry = entry
        self._logger = logger or _logger
        self._query_timeout = query_timeout if query_timeout > 0 else DEFAULT_QUERY_TIMEOUT
        self._recursion_available = recursion_available

    async def serve_dns(self, req: dns.message.Message, meta: RequestMeta) -> dns.message.Message:
        qctx = QueryContext(req, meta)
        error: Exception | None = None
        try:
            async with asyncio.timeout(self._query_timeout):
                await self._entry.exec(qctx)
        except Exception as exc:
            error = exc

        resp = qctx.response
        if error is not None:
            self._logger.warning("entry returned an err, query: %s, err: %r", qctx, error)
        else:
            self._logger.debug("entry returned, query: %s", qctx)
            if resp is None:
                self._logger.error("entry returned an nil response, query: %s", qctx)

        if resp is None or error is not None:
            resp = _reply_to(req)
            resp.set_rcode(dns.rcode.SERVFAIL)

        if self._recursion_available:
            resp.flags |= dns.flags.RA
        return resp


class DummyServerHandler(DNSHandler):
    """A handler for tests: echoes a reply, a fixed message or an error."""

    def __init__(
        self,
        want_msg: dns.message.Message | None = None,
        want_error: Exception | None = None,
    ) -> None:
        self.want_msg = want_msg
        self.want_error = want_error

    async def serve_dns(self, req: dns.message.Message, meta: RequestMeta) -> dns.message.Message:
        if self.want_error is not None:
            raise self.want_error
        if self.want_msg is not None:
            resp = _copy_msg(self.want_msg)
            resp.id = req.id
            return resp
        return _reply_to(req)