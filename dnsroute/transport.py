"""A DNS message transport over stream or datagram connections.

The transport can run each query on a fresh connection, reuse idle
connections one query at a time, or pipeline many queries over a few
connections and match out-of-order responses by id (RFC 7766 6.2.1.1).

Connections are opaque to the transport: ``dial`` opens one, ``write``
sends a message on it and ``read`` receives the next message from it.
A connection only needs a ``close()`` method.
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import logging
import random
import time
from collections.abc import Awaitable, Callable
from typing import Any

import dns.message

DEFAULT_IDLE_TIMEOUT = 10.0
DEFAULT_DIAL_TIMEOUT = 5.0
DEFAULT_NO_CONN_REUSE_QUERY_TIMEOUT = 5.0
DEFAULT_MAX_CONNS = 2
DEFAULT_MAX_QUERY_PER_CONN = 65535

WRITE_TIMEOUT = 1.0
CONN_TOO_OLD_THRESHOLD = 0.5

_MAX_RETRY = 3

DialFunc = Callable[[], Awaitable[Any]]
WriteFunc = Callable[[Any, dns.message.Message], Awaitable[Any]]
ReadFunc = Callable[[Any], Awaitable[dns.message.Message]]

_logger = logging.getLogger(__name__)


class TransportClosedError(Exception):
    """The transport has been closed."""

    def __init__(self) -> None:
        super().__init__("transport has been closed")


class _EndOfLifeError(Exception):
    def __init__(self) -> None:
        super().__init__("end of life")


def _consume_exception(fut: asyncio.Future) -> None:
    if not fut.cancelled():
        fut.exception()


def _close_conn(conn: Any) -> None:
    try:
        result = conn.close()
    except Exception:
        return
    if inspect.isawaitable(result):
        asyncio.ensure_future(result)


class _DNSConn:
    """One connection: dialed in the background, then read continuously."""

    def __init__(self, transport: Transport) -> None:
        loop = asyncio.get_running_loop()
        self._t = transport
        self._ready: asyncio.Future = loop.create_future()
        self._ready.add_done_callback(_consume_exception)
        self._queue: dict[int, asyncio.Future] = {}
        self._conn: Any = None
        self._close_err: BaseException | None = None
        self.closed = False
        self.last_read: float | None = None
        self._task = loop.create_task(self._dial_and_read())

    def queue_len(self) -> int:
        return len(self._queue)

    async def _dial_and_read(self) -> None:
        try:
            async with asyncio.timeout(self._t._dial_timeout):
                conn = await self._t._dial()
        except Exception as exc:
            self.close_with_err(exc)
            return
        if self.closed:
            _close_conn(conn)
            return
        self._conn = conn
        self._ready.set_result(None)
        await self._read_loop()

    async def _read_loop(self) -> None:
        while True:
            try:
                async with asyncio.timeout(self._t._idle_timeout):
                    r = await self._t._read(self._conn)
            except Exception as exc:
                self.close_with_err(exc)
                return
            self.last_read = time.monotonic()
            fut = self._queue.get(r.id)
            if fut is not None and not fut.done():
                fut.set_result(r)

    def _error(self) -> BaseException:
        return self._close_err if self._close_err is not None else TransportClosedError()

    async def exchange(self, q: dns.message.Message) -> dns.message.Message:
        await asyncio.shield(self._ready)
        if self.closed:
            raise self._error()

        qid = q.id
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        fut.add_done_callback(_consume_exception)
        self._queue[qid] = fut
        try:
            try:
                async with asyncio.timeout(WRITE_TIMEOUT):
                    await self._t._write(self._conn, q)
            except Exception as exc:
                # A write error is usually fatal for the connection.
                self.close_with_err(exc)
                raise
            return await fut
        finally:
            if self._queue.get(qid) is fut:
                del self._queue[qid]

    async def exchange_pipeline(self, q: dns.message.Message, qid: int) -> dns.message.Message:
        q_send = copy.copy(q)
        q_send.id = qid
        r = await self.exchange(q_send)
        r.id = q.id
        return r

    def close_with_err(self, err: BaseException | None) -> None:
        if self.closed:
            return
        self.closed = True
        self._close_err = err if err is not None else TransportClosedError()
        if not self._ready.done():
            self._ready.set_exception(self._close_err)
        for fut in self._queue.values():
            if not fut.done():
                fut.set_exception(self._close_err)
        if self._conn is not None:
            _close_conn(self._conn)
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if self._task is not current:
            self._task.cancel()


class _PipelineStatus:
    def __init__(self, conn: _DNSConn) -> None:
        self.conn = conn
        self.served = 0
        self.active = 0
        self.eol = False

    def done(self) -> None:
        self.active -= 1
        if self.eol and self.active == 0:
            # Close only after every query on the connection has finished.
            self.conn.close_with_err(_EndOfLifeError())


class Transport:
    """Sends DNS queries to one server and returns its responses."""

    def __init__(
        self,
        dial: DialFunc,
        write: WriteFunc,
        read: ReadFunc,
        dial_timeout: float = DEFAULT_DIAL_TIMEOUT,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        enable_pipeline: bool = False,
        max_conns: int = DEFAULT_MAX_CONNS,
        max_query_per_conn: int = DEFAULT_MAX_QUERY_PER_CONN,
        logger: logging.Logger | None = None,
    ) -> None:
        if dial is None or write is None or read is None:
            raise ValueError("transport is missing required func(s)")
        self._dial = dial
        self._write = write
        self._read = read
        self._dial_timeout = dial_timeout or DEFAULT_DIAL_TIMEOUT
        # A negative idle timeout disables connection reuse.
        self._idle_timeout = idle_timeout or DEFAULT_IDLE_TIMEOUT
        self._enable_pipeline = enable_pipeline
        self._max_conns = max_conns or DEFAULT_MAX_CONNS
        self._max_query_per_conn = max_query_per_conn or DEFAULT_MAX_QUERY_PER_CONN
        self._logger = logger or _logger

        self._closed = False
        self._pipeline_conns: dict[_DNSConn, _PipelineStatus] = {}
        self._idle_reusable_conns: dict[_DNSConn, None] = {}
        self._reusable_conns: dict[_DNSConn, None] = {}

    async def __aenter__(self) -> Transport:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()

    async def exchange(self, q: dns.message.Message) -> dns.message.Message:
        """Send q and return the server's response; q is not modified."""
        if self._closed:
            raise TransportClosedError()
        if self._idle_timeout <= 0:
            return await self._exchange_without_conn_reuse(q)
        if self._enable_pipeline:
            return await self._exchange_with_pipeline_conn(q)
        return await self._exchange_with_reusable_conn(q)

    def close(self) -> None:
        """Close the transport and all its connections; pending queries fail."""
        self._closed = True
        for conn in list(self._pipeline_conns):
            conn.close_with_err(TransportClosedError())
        self._pipeline_conns.clear()
        for conn in list(self._reusable_conns):
            conn.close_with_err(TransportClosedError())
        self._reusable_conns.clear()
        self._idle_reusable_conns.clear()

    async def _exchange_without_conn_reuse(self, q: dns.message.Message) -> dns.message.Message:
        async with asyncio.timeout(self._dial_timeout):
            conn = await self._dial()
        try:
            async with asyncio.timeout(DEFAULT_NO_CONN_REUSE_QUERY_TIMEOUT):
                await self._write(conn, q)
                return await self._read(conn)
        finally:
            _close_conn(conn)

    async def _exchange_with_pipeline_conn(self, q: dns.message.Message) -> dns.message.Message:
        attempt = 0
        latest_err: Exception | None = None
        while True:
            attempt += 1
            if latest_err is not None:
                self._logger.debug(
                    "retrying pipeline connection, previous err: %r, attempt: %d", latest_err, attempt
                )
            conn, qid, is_new, status = self._get_pipeline_conn()
            try:
                return await conn.exchange_pipeline(q, qid)
            except Exception as exc:
                if not is_new and attempt <= _MAX_RETRY:
                    latest_err = exc
                    continue
                raise
            finally:
                status.done()

    async def _exchange_with_reusable_conn(self, q: dns.message.Message) -> dns.message.Message:
        attempt = 0
        latest_err: Exception | None = None
        while True:
            attempt += 1
            if latest_err is not None:
                self._logger.debug(
                    "retrying reusable connection, previous err: %r, attempt: %d", latest_err, attempt
                )
            conn, reused = self._get_reusable_conn()
            try:
                r = await conn.exchange(q)
            except BaseException as exc:
                self._release_reusable_conn(conn, exc)
                if isinstance(exc, Exception) and reused and attempt <= _MAX_RETRY:
                    latest_err = exc
                    continue
                raise
            self._release_reusable_conn(conn, None)
            return r

    def _get_reusable_conn(self) -> tuple[_DNSConn, bool]:
        if self._closed:
            raise TransportClosedError()
        while self._idle_reusable_conns:
            conn = next(iter(self._idle_reusable_conns))
            del self._idle_reusable_conns[conn]
            if conn.closed or self._conn_too_old(conn):
                self._reusable_conns.pop(conn, None)
                continue
            return conn, True
        conn = _DNSConn(self)
        self._reusable_conns[conn] = None
        return conn, False

    def _release_reusable_conn(self, conn: _DNSConn, err: BaseException | None) -> None:
        if err is not None:
            self._reusable_conns.pop(conn, None)
        if not self._closed and err is None:
            self._idle_reusable_conns[conn] = None
        else:
            conn.close_with_err(err)

    def _get_pipeline_conn(self) -> tuple[_DNSConn, int, bool, _PipelineStatus]:
        if self._closed:
            raise TransportClosedError()

        usable: list[_DNSConn] = []
        for conn in list(self._pipeline_conns):
            if conn.closed or self._conn_too_old(conn):
                del self._pipeline_conns[conn]
            else:
                usable.append(conn)

        chosen = random.choice(usable) if usable else None
        is_new = False
        if chosen is None or (
            chosen.queue_len() > 0 and len(self._pipeline_conns) < self._max_conns
        ):
            chosen = _DNSConn(self)
            is_new = True
            self._pipeline_conns[chosen] = _PipelineStatus(chosen)
        status = self._pipeline_conns[chosen]

        status.served += 1
        status.active += 1
        qid = status.served & 0xFFFF
        if status.served >= self._max_query_per_conn:
            # The connection has served enough; it closes once its queries finish.
            del self._pipeline_conns[chosen]
            status.eol = True
        return chosen, qid, is_new, status

    def _conn_too_old(self, conn: _DNSConn) -> bool:
        """Whether conn's last read is close to its idle deadline."""
        if conn.last_read is None:
            return False
        too_old = self._idle_timeout - CONN_TOO_OLD_THRESHOLD
        if too_old > 0:
            return time.monotonic() > conn.last_read + too_old
        return False