"""A DNS server over UDP, TCP, TLS, HTTP and HTTPS built on asyncio.

Every ``serve_*`` coroutine takes a bound socket, owns it from then on and
only ends by raising: ``ServerClosedError`` once the server has been closed.
"""

from __future__ import annotations

import asyncio
import inspect
import ipaddress
import logging
import socket
import ssl
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import NoReturn, Union
from urllib.parse import parse_qs, urlsplit

import dns.exception
import dns.flags
import dns.message
import h11

from dnsroute.dns_handler import DNSHandler
from dnsroute.query_context import IPAddress, RequestMeta

DEFAULT_TCP_IDLE_TIMEOUT = 10.0
TCP_FIRST_READ_TIMEOUT = 0.5
HTTP_READ_HEADER_TIMEOUT = 0.5
HTTP_READ_TIMEOUT = 5.0
HTTP_WRITE_TIMEOUT = 5.0
HTTP_MAX_HEADER_BYTES = 2048
MIN_MSG_SIZE = 512

_logger = logging.getLogger(__name__)


class ServerClosedError(Exception):
    """The server was closed."""

    def __init__(self) -> None:
        super().__init__("server closed")


@dataclass(frozen=True)
class HTTPRequest:
    """An HTTP request as handed to the HTTP handler."""

    method: str
    target: str
    headers: tuple[tuple[str, str], ...] = ()
    body: bytes = b""
    remote_addr: tuple[str, int] | None = None

    @property
    def path(self) -> str:
        return urlsplit(self.target).path

    @property
    def query(self) -> dict[str, list[str]]:
        return parse_qs(urlsplit(self.target).query)

    def header(self, name: str, default: str | None = None) -> str | None:
        """The first value of header name (case-insensitive), or default."""
        name = name.lower()
        for key, value in self.headers:
            if key.lower() == name:
                return value
        return default


@dataclass
class HTTPResponse:
    """An HTTP response returned by the HTTP handler."""

    status: int = 200
    headers: list[tuple[str, str]] = field(default_factory=list)
    body: bytes = b""


HTTPHandler = Callable[[HTTPRequest], Union[Awaitable[HTTPResponse], HTTPResponse]]


def get_udp_size(msg: dns.message.Message) -> int:
    """The largest UDP response the sender of msg accepts."""
    size = msg.payload if msg.edns >= 0 else 0
    return max(size, MIN_MSG_SIZE)


def _parse_ip(host: object) -> IPAddress | None:
    try:
        return ipaddress.ip_address(str(host).split("%", 1)[0])
    except ValueError:
        return None


def _peer_addr(writer: asyncio.StreamWriter) -> IPAddress | None:
    peer = writer.get_extra_info("peername")
    return _parse_ip(peer[0]) if peer else None


def _loop_closer(loop: asyncio.AbstractEventLoop, fn: Callable[[], None]) -> Callable[[], None]:
    """Wrap fn so that it may be called from any thread."""

    def closer() -> None:
        try:
            loop.call_soon_threadsafe(fn)
        except RuntimeError:
            pass

    return closer


def _truncated_wire(msg: dns.message.Message, size: int) -> bytes:
    """Render msg in at most size bytes, dropping records and setting TC if needed."""
    try:
        return msg.to_wire(max_size=size)
    except dns.exception.TooBig:
        pass
    for section in (msg.additional, msg.authority, msg.answer):
        main = section is not msg.additional
        while section:
            section.pop()
            if main:
                msg.flags |= dns.flags.TC
            try:
                return msg.to_wire(max_size=size)
            except dns.exception.TooBig:
                continue
    msg.flags |= dns.flags.TC
    return msg.to_wire(max_size=size)


async def _read_tcp_msg(reader: asyncio.StreamReader) -> dns.message.Message:
    header = await reader.readexactly(2)
    data = await reader.readexactly(int.from_bytes(header, "big"))
    return dns.message.from_wire(data)


async def _next_http_event(conn: h11.Connection, reader: asyncio.StreamReader) -> object:
    while True:
        event = conn.next_event()
        if event is h11.NEED_DATA:
            conn.receive_data(await reader.read(8192))
            continue
        return event


class _UDPServerProtocol(asyncio.DatagramProtocol):
    def __init__(
        self,
        serve: Callable[[dns.message.Message, tuple, asyncio.DatagramTransport], Awaitable[None]],
        logger: logging.Logger,
    ) -> None:
        self._serve = serve
        self._logger = logger
        self._transport: asyncio.DatagramTransport | None = None
        self._tasks: set[asyncio.Task] = set()
        self.lost: asyncio.Future = asyncio.get_running_loop().create_future()

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self._transport = transport  # type: ignore[assignment]

    def datagram_received(self, data: bytes, addr: tuple) -> None:
        try:
            q = dns.message.from_wire(data)
        except Exception as exc:
            self._logger.warning("invalid msg from %s: %r, msg: %s", addr, exc, data.hex())
            return
        assert self._transport is not None
        task = asyncio.get_running_loop().create_task(self._serve(q, addr, self._transport))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def error_received(self, exc: Exception) -> None:
        self._logger.debug("udp socket error: %r", exc)

    def connection_lost(self, exc: Exception | None) -> None:
        if not self.lost.done():
            self.lost.set_result(exc)

    def cancel_tasks(self) -> None:
        for task in list(self._tasks):
            task.cancel()


class Server:
    """A DNS server that can serve on several sockets at once."""

    def __init__(
        self,
        dns_handler: DNSHandler | None = None,
        http_handler: HTTPHandler | None = None,
        tls_context: ssl.SSLContext | None = None,
        cert: str = "",
        key: str = "",
        idle_timeout: float = DEFAULT_TCP_IDLE_TIMEOUT,
        logger: logging.Logger | None = None,
    ) -> None:
        self._dns_handler = dns_handler
        self._http_handler = http_handler
        self._tls_context = tls_context
        self._cert = cert
        self._key = key
        self._idle_timeout = (
            idle_timeout if idle_timeout and idle_timeout > 0 else DEFAULT_TCP_IDLE_TIMEOUT
        )
        self._logger = logger or _logger
        self._lock = threading.Lock()
        self._closed = False
        self._closers: set[Callable[[], None]] = set()

    def closed(self) -> bool:
        """Report whether the server was closed."""
        with self._lock:
            return self._closed

    def close(self) -> None:
        """Close the server, its listeners and its connections."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            closers = list(self._closers)
        for closer in closers:
            closer()

    def _track(self, closer: Callable[[], None], add: bool) -> bool:
        with self._lock:
            if add:
                if self._closed:
                    return False
                self._closers.add(closer)
            else:
                self._closers.discard(closer)
            return True

    def _server_tls_context(self, alpn: list[str] | None = None) -> ssl.SSLContext:
        ctx = self._tls_context
        created = ctx is None
        if created and not (self._cert or self._key):
            raise ValueError("missing certificate for tls listener")
        if ctx is None:
            ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        if self._cert or self._key:
            ctx.load_cert_chain(self._cert, self._key or None)
        if created and alpn:
            ctx.set_alpn_protocols(alpn)
        return ctx

    def _require_dns_handler(self, sock: socket.socket) -> None:
        if self._dns_handler is None:
            sock.close()
            raise ValueError("missing dns handler")

    async def _serve_stream(
        self,
        sock: socket.socket,
        on_conn: Callable[[asyncio.StreamReader, asyncio.StreamWriter], Awaitable[None]],
        ssl_context: ssl.SSLContext | None,
    ) -> NoReturn:
        loop = asyncio.get_running_loop()
        stopped = asyncio.Event()
        closer = _loop_closer(loop, stopped.set)
        if not self._track(closer, True):
            sock.close()
            raise ServerClosedError()

        conn_tasks: set[asyncio.Task] = set()

        async def client_connected(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            task = asyncio.current_task()
            if task is not None:
                conn_tasks.add(task)
            try:
                await on_conn(reader, writer)
            finally:
                if task is not None:
                    conn_tasks.discard(task)

        try:
            server = await asyncio.start_server(client_connected, sock=sock, ssl=ssl_context)
        except BaseException:
            sock.close()
            self._track(closer, False)
            raise
        try:
            await stopped.wait()
        finally:
            server.close()
            for task in list(conn_tasks):
                task.cancel()
            self._track(closer, False)
        raise ServerClosedError()

    async def serve_tcp(self, sock: socket.socket) -> NoReturn:
        """Serve DNS over TCP on the listening socket sock."""
        self._require_dns_handler(sock)
        await self._serve_stream(sock, self._handle_dns_conn, None)

    async def serve_tls(self, sock: socket.socket) -> NoReturn:
        """Serve DNS over TLS on the listening socket sock."""
        try:
            ctx = self._server_tls_context()
        except BaseException:
            sock.close()
            raise
        self._require_dns_handler(sock)
        await self._serve_stream(sock, self._handle_dns_conn, ctx)

    async def serve_http(self, sock: socket.socket) -> NoReturn:
        """Serve HTTP on the listening socket sock."""
        await self._serve_http(sock, tls=False)

    async def serve_https(self, sock: socket.socket) -> NoReturn:
        """Serve HTTPS on the listening socket sock."""
        await self._serve_http(sock, tls=True)

    async def _serve_http(self, sock: socket.socket, tls: bool) -> NoReturn:
        if self._http_handler is None:
            sock.close()
            raise ValueError("missing http handler")
        ctx = None
        if tls:
            try:
                ctx = self._server_tls_context(alpn=["http/1.1"])
            except BaseException:
                sock.close()
                raise
        await self._serve_stream(sock, self._handle_http_conn, ctx)

    async def serve_udp(self, sock: socket.socket) -> NoReturn:
        """Serve DNS over UDP on the bound datagram socket sock."""
        self._require_dns_handler(sock)
        loop = asyncio.get_running_loop()
        stopped = asyncio.Event()
        closer = _loop_closer(loop, stopped.set)
        if not self._track(closer, True):
            sock.close()
            raise ServerClosedError()
        try:
            transport, protocol = await loop.create_datagram_endpoint(
                lambda: _UDPServerProtocol(self._serve_udp_query, self._logger), sock=sock
            )
        except BaseException:
            sock.close()
            self._track(closer, False)
            raise

        stop_wait = asyncio.ensure_future(stopped.wait())
        try:
            await asyncio.wait({stop_wait, protocol.lost}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_wait.cancel()
            transport.close()
            protocol.cancel_tasks()
            self._track(closer, False)
        if protocol.lost.done() and not self.closed():
            raise OSError(f"unexpected read err: {protocol.lost.result()!r}")
        raise ServerClosedError()

    async def _serve_udp_query(
        self, q: dns.message.Message, addr: tuple, transport: asyncio.DatagramTransport
    ) -> None:
        assert self._dns_handler is not None
        meta = RequestMeta(client_addr=_parse_ip(addr[0]))
        try:
            r = await self._dns_handler.serve_dns(q, meta)
        except Exception as exc:
            self._logger.warning("handler err: %r", exc)
            return
        if r is None:
            return
        try:
            wire = _truncated_wire(r, get_udp_size(q))
        except Exception as exc:
            self._logger.error("failed to pack handler's response: %r, msg: %s", exc, r)
            return
        try:
            transport.sendto(wire, addr)
        except Exception as exc:
            self._logger.warning("failed to write response to %s: %r", addr, exc)

    async def _handle_dns_conn(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        closer = _loop_closer(asyncio.get_running_loop(), writer.close)
        if not self._track(closer, True):
            writer.close()
            return
        meta = RequestMeta(client_addr=_peer_addr(writer))
        timeout = min(TCP_FIRST_READ_TIMEOUT, self._idle_timeout)
        queries: set[asyncio.Task] = set()
        try:
            while True:
                try:
                    async with asyncio.timeout(timeout):
                        q = await _read_tcp_msg(reader)
                except Exception:
                    return
                timeout = self._idle_timeout
                task = asyncio.create_task(self._serve_tcp_query(q, meta, writer))
                queries.add(task)
                task.add_done_callback(queries.discard)
        finally:
            for task in list(queries):
                task.cancel()
            writer.close()
            self._track(closer, False)

    async def _serve_tcp_query(
        self, q: dns.message.Message, meta: RequestMeta, writer: asyncio.StreamWriter
    ) -> None:
        assert self._dns_handler is not None
        try:
            r = await self._dns_handler.serve_dns(q, meta)
        except Exception as exc:
            self._logger.warning("handler err: %r", exc)
            writer.close()
            return
        try:
            wire = r.to_wire()
        except Exception as exc:
            self._logger.error("failed to pack handler's response: %r, msg: %s", exc, r)
            return
        try:
            writer.write(len(wire).to_bytes(2, "big") + wire)
            await writer.drain()
        except Exception as exc:
            self._logger.warning(
                "failed to write response to %s: %r", writer.get_extra_info("peername"), exc
            )

    async def _handle_http_conn(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        closer = _loop_closer(asyncio.get_running_loop(), writer.close)
        if not self._track(closer, True):
            writer.close()
            return
        conn = h11.Connection(h11.SERVER, max_incomplete_event_size=HTTP_MAX_HEADER_BYTES)
        peer = writer.get_extra_info("peername")
        remote = (str(peer[0]), int(peer[1])) if peer else None
        header_timeout = HTTP_READ_HEADER_TIMEOUT
        try:
            while True:
                try:
                    request = await self._read_http_request(conn, reader, header_timeout, remote)
                except h11.RemoteProtocolError as exc:
                    await self._send_http_error(conn, writer, exc.error_status_hint)
                    return
                except Exception:
                    return
                if request is None:
                    return
                header_timeout = self._idle_timeout

                try:
                    assert self._http_handler is not None
                    result = self._http_handler(request)
                    if inspect.isawaitable(result):
                        result = await result
                except Exception as exc:
                    self._logger.warning("http handler err from %s: %r", remote, exc)
                    return

                try:
                    await self._write_http_response(conn, writer, request, result)
                except Exception as exc:
                    self._logger.warning("failed to write http response to %s: %r", remote, exc)
                    return

                if conn.our_state is h11.DONE and conn.their_state is h11.DONE:
                    conn.start_next_cycle()
                else:
                    return
        finally:
            writer.close()
            self._track(closer, False)

    async def _read_http_request(
        self,
        conn: h11.Connection,
        reader: asyncio.StreamReader,
        header_timeout: float,
        remote: tuple[str, int] | None,
    ) -> HTTPRequest | None:
        async with asyncio.timeout(header_timeout):
            event = await _next_http_event(conn, reader)
        if not isinstance(event, h11.Request):
            return None
        body = bytearray()
        async with asyncio.timeout(HTTP_READ_TIMEOUT):
            while True:
                part = await _next_http_event(conn, reader)
                if isinstance(part, h11.Data):
                    body += part.data
                elif isinstance(part, h11.EndOfMessage):
                    break
                else:
                    return None
        return HTTPRequest(
            method=event.method.decode("ascii"),
            target=event.target.decode("latin-1"),
            headers=tuple((n.decode("latin-1"), v.decode("latin-1")) for n, v in event.headers),
            body=bytes(body),
            remote_addr=remote,
        )

    async def _write_http_response(
        self,
        conn: h11.Connection,
        writer: asyncio.StreamWriter,
        request: HTTPRequest,
        response: HTTPResponse,
    ) -> None:
        headers = [(n.encode("latin-1"), v.encode("latin-1")) for n, v in response.headers]
        names = {n.lower() for n, _ in headers}
        if b"content-length" not in names and b"transfer-encoding" not in names:
            headers.append((b"content-length", str(len(response.body)).encode("ascii")))
        data = conn.send(h11.Response(status_code=response.status, headers=headers))
        if response.body and request.method != "HEAD":
            data += conn.send(h11.Data(data=response.body))
        data += conn.send(h11.EndOfMessage())
        writer.write(data)
        async with asyncio.timeout(HTTP_WRITE_TIMEOUT):
            await writer.drain()

    async def _send_http_error(self, conn: h11.Connection, writer: asyncio.StreamWriter, status: int) -> None:
        if conn.our_state not in (h11.IDLE, h11.SEND_RESPONSE):
            return
        try:
            data = conn.send(
                h11.Response(
                    status_code=status,
                    headers=[(b"content-length", b"0"), (b"connection", b"close")],
                )
            )
            data += conn.send(h11.EndOfMessage())
            writer.write(data)
            async with asyncio.timeout(HTTP_WRITE_TIMEOUT):
                await writer.drain()
        except Exception:
            pass