"""Building DNS upstreams from addresses such as "tls://1.1.1.1"."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
import ssl
import sys
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import urlsplit

import dns.asyncresolver
import dns.exception
import dns.flags
import dns.message
import httpx

from dnsroute.doh import DoHUpstream
from dnsroute.transport import Transport

TLS_HANDSHAKE_TIMEOUT = 5.0
UDP_READ_SIZE = 4096
_SO_MARK = getattr(socket, "SO_MARK", 36)
_SO_BINDTODEVICE = getattr(socket, "SO_BINDTODEVICE", 25)


class Upstream(Protocol):
    """A DNS upstream."""

    async def exchange(self, q: dns.message.Message) -> dns.message.Message:
        """Send q and return the response; q is neither kept nor modified."""
        ...

    def close(self) -> None:
        """Release the upstream's connections."""
        ...


@dataclass
class UpstreamOptions:
    """Options for new_upstream.

    dial_addr: the address actually dialed instead of the host in the URL.
    socks5: a socks5 proxy for TCP-based upstreams.
    so_mark, bind_to_device: socket options, applied on Linux only.
    idle_timeout: idle timeout of reused connections; negative disables reuse
        for TCP and TLS. Zero means the default (TCP, TLS: 10s, DoH: 30s).
    enable_pipeline: pipeline queries on TCP and TLS connections.
    enable_http3: use HTTP/3 for DoH (not supported).
    max_conns: maximum connections; zero means the default.
    bootstrap: a plain DNS server ("ip" or "ip:port") to resolve the server's name.
    tls_context: the TLS client context for TLS and DoH.
    """

    dial_addr: str = ""
    socks5: str = ""
    so_mark: int = 0
    bind_to_device: str = ""
    idle_timeout: float = 0.0
    enable_pipeline: bool = False
    enable_http3: bool = False
    max_conns: int = 0
    bootstrap: str = ""
    tls_context: ssl.SSLContext | None = None
    logger: logging.Logger | None = None


def _split_host_port(s: str) -> tuple[str, str]:
    if s.startswith("["):
        end = s.find("]")
        if end < 0:
            raise ValueError(f"address {s}: missing ']' in address")
        host, rest = s[1:end], s[end + 1 :]
        if not rest.startswith(":"):
            raise ValueError(f"address {s}: missing port in address")
        return host, rest[1:]
    host, sep, port = s.rpartition(":")
    if not sep:
        raise ValueError(f"address {s}: missing port in address")
    if ":" in host:
        raise ValueError(f"address {s}: too many colons in address")
    return host, port


def _join_host_port(host: str, port: str | int) -> str:
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


def get_dial_addr_with_port(host: str, dial_addr: str, default_port: int) -> str:
    """The address to dial: dial_addr or host, with default_port if it has none."""
    addr = dial_addr or host
    try:
        _split_host_port(addr)
    except ValueError:
        return _join_host_port(addr.strip("[]"), default_port)
    return addr


def try_remove_port(s: str) -> str:
    """Return the host part of s, or s itself if it has no port."""
    try:
        host, _ = _split_host_port(s)
    except ValueError:
        return s
    return host


def _is_ip(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


class _Dialer:
    """Opens sockets with the configured options and name resolution."""

    def __init__(self, bootstrap: str, so_mark: int, bind_to_device: str) -> None:
        if bootstrap:
            try:
                _split_host_port(bootstrap)
            except ValueError:
                bootstrap = _join_host_port(bootstrap.strip("[]"), 53)
        self._bootstrap = bootstrap
        self._so_mark = so_mark
        self._bind_to_device = bind_to_device

    @property
    def has_bootstrap(self) -> bool:
        return bool(self._bootstrap)

    def socket_options(self) -> list[tuple[int, int, Any]]:
        if not sys.platform.startswith("linux"):
            return []
        options: list[tuple[int, int, Any]] = []
        if self._so_mark > 0:
            options.append((socket.SOL_SOCKET, _SO_MARK, self._so_mark))
        if self._bind_to_device:
            options.append((socket.SOL_SOCKET, _SO_BINDTODEVICE, self._bind_to_device.encode()))
        return options

    async def resolve(self, host: str) -> list[str]:
        if _is_ip(host):
            return [host]
        if self._bootstrap:
            ns_host, ns_port = _split_host_port(self._bootstrap)
            resolver = dns.asyncresolver.Resolver(configure=False)
            resolver.nameservers = [ns_host]
            resolver.port = int(ns_port)
            ips: list[str] = []
            for rdtype in ("A", "AAAA"):
                try:
                    answer = await resolver.resolve(host, rdtype)
                except dns.exception.DNSException:
                    continue
                ips.extend(rdata.address for rdata in answer)
            if not ips:
                raise OSError(f"cannot resolve {host} via bootstrap {self._bootstrap}")
            return ips
        infos = await asyncio.get_running_loop().getaddrinfo(host, None, type=socket.SOCK_STREAM)
        return list(dict.fromkeys(str(info[4][0]) for info in infos))

    def _new_socket(self, ip: str, sock_type: int) -> socket.socket:
        family = socket.AF_INET6 if ":" in ip else socket.AF_INET
        sock = socket.socket(family, sock_type)
        try:
            for level, opt, value in self.socket_options():
                try:
                    sock.setsockopt(level, opt, value)
                except OSError as exc:
                    raise OSError(f"failed to set socket option {opt}: {exc}") from exc
            sock.setblocking(False)
        except BaseException:
            sock.close()
            raise
        return sock

    async def connect(self, addr: str, sock_type: int) -> socket.socket:
        host, port = _split_host_port(addr)
        loop = asyncio.get_running_loop()
        last_err: BaseException | None = None
        for ip in await self.resolve(host):
            sock = self._new_socket(ip, sock_type)
            try:
                await loop.sock_connect(sock, (ip, int(port)))
            except OSError as exc:
                sock.close()
                last_err = exc
                continue
            return sock
        raise OSError(f"failed to dial {addr}: {last_err}")


class _StreamConn:
    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.reader = reader
        self.writer = writer

    def close(self) -> None:
        self.writer.close()


async def _write_tcp(conn: _StreamConn, msg: dns.message.Message) -> int:
    wire = msg.to_wire()
    conn.writer.write(len(wire).to_bytes(2, "big") + wire)
    await conn.writer.drain()
    return len(wire) + 2


async def _read_tcp(conn: _StreamConn) -> dns.message.Message:
    header = await conn.reader.readexactly(2)
    data = await conn.reader.readexactly(int.from_bytes(header, "big"))
    return dns.message.from_wire(data)


class _UDPConn(asyncio.DatagramProtocol):
    def __init__(self) -> None:
        self.transport: asyncio.DatagramTransport | None = None
        self.received: asyncio.Queue[bytes | BaseException] = asyncio.Queue()

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = transport  # type: ignore[assignment]

    def datagram_received(self, data: bytes, addr: Any) -> None:
        self.received.put_nowait(data)

    def error_received(self, exc: Exception) -> None:
        self.received.put_nowait(exc)

    def connection_lost(self, exc: Exception | None) -> None:
        self.received.put_nowait(exc or ConnectionError("udp socket closed"))

    def close(self) -> None:
        if self.transport is not None:
            self.transport.close()


async def _write_udp(conn: _UDPConn, msg: dns.message.Message) -> int:
    assert conn.transport is not None
    wire = msg.to_wire()
    conn.transport.sendto(wire)
    return len(wire)


async def _read_udp(conn: _UDPConn) -> dns.message.Message:
    item = await conn.received.get()
    if isinstance(item, BaseException):
        raise item
    if len(item) > UDP_READ_SIZE:
        raise ValueError(f"udp msg of {len(item)} bytes is too large")
    return dns.message.from_wire(item)


async def _socks5_connect(
    dialer: _Dialer, proxy: str, target: str
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    sock = await dialer.connect(proxy, socket.SOCK_STREAM)
    reader, writer = await asyncio.open_connection(sock=sock)
    try:
        writer.write(b"\x05\x01\x00")
        if await reader.readexactly(2) != b"\x05\x00":
            raise ConnectionError("socks5 proxy refused the authentication method")
        host, port = _split_host_port(target)
        if _is_ip(host):
            ip = ipaddress.ip_address(host)
            dest = (b"\x01" if ip.version == 4 else b"\x04") + ip.packed
        else:
            name = host.encode("idna")
            dest = b"\x03" + bytes([len(name)]) + name
        writer.write(b"\x05\x01\x00" + dest + int(port).to_bytes(2, "big"))
        _, rep, _, atyp = await reader.readexactly(4)
        if rep != 0:
            raise ConnectionError(f"socks5 connect failed, reply code {rep}")
        if atyp == 1:
            await reader.readexactly(4)
        elif atyp == 4:
            await reader.readexactly(16)
        elif atyp == 3:
            await reader.readexactly((await reader.readexactly(1))[0])
        else:
            raise ConnectionError(f"socks5 reply has unknown address type {atyp}")
        await reader.readexactly(2)
    except BaseException:
        writer.close()
        raise
    return reader, writer


async def _open_stream(
    dialer: _Dialer, addr: str, socks5: str
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    if socks5:
        return await _socks5_connect(dialer, socks5, addr)
    sock = await dialer.connect(addr, socket.SOCK_STREAM)
    return await asyncio.open_connection(sock=sock)


async def _dial_tls(
    dialer: _Dialer, addr: str, socks5: str, ctx: ssl.SSLContext, server_name: str
) -> _StreamConn:
    if socks5:
        reader, writer = await _socks5_connect(dialer, socks5, addr)
        try:
            await writer.start_tls(
                ctx, server_hostname=server_name, ssl_handshake_timeout=TLS_HANDSHAKE_TIMEOUT
            )
        except BaseException:
            writer.close()
            raise
        return _StreamConn(reader, writer)
    sock = await dialer.connect(addr, socket.SOCK_STREAM)
    reader, writer = await asyncio.open_connection(
        sock=sock,
        ssl=ctx,
        server_hostname=server_name,
        ssl_handshake_timeout=TLS_HANDSHAKE_TIMEOUT,
    )
    return _StreamConn(reader, writer)


class _RedirectTransport(httpx.AsyncBaseTransport):
    """Sends every request to a fixed address, keeping the URL's host for TLS."""

    def __init__(self, inner: httpx.AsyncBaseTransport, dial_addr: str, dialer: _Dialer) -> None:
        self._inner = inner
        self._host, port = _split_host_port(dial_addr)
        self._port = int(port)
        self._dialer = dialer

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        host = self._host
        if self._dialer.has_bootstrap and not _is_ip(host):
            host = (await self._dialer.resolve(host))[0]
        original_host = request.url.host
        request.url = request.url.copy_with(host=host, port=self._port)
        request.extensions = {**request.extensions, "sni_hostname": original_host}
        return await self._inner.handle_async_request(request)

    async def aclose(self) -> None:
        await self._inner.aclose()


@dataclass(eq=False)
class UDPWithFallback:
    """Queries over UDP and repeats truncated queries over TCP."""

    udp: Transport
    tcp: Transport

    async def exchange(self, q: dns.message.Message) -> dns.message.Message:
        m = await self.udp.exchange(q)
        if m.flags & dns.flags.TC:
            return await self.tcp.exchange(q)
        return m

    def close(self) -> None:
        self.udp.close()
        self.tcp.close()


def new_upstream(addr: str, opts: UpstreamOptions | None = None) -> Upstream:
    """Build an upstream from addr; a missing scheme means "udp"."""
    if opts is None:
        opts = UpstreamOptions()
    if "://" not in addr:
        addr = "udp://" + addr
    try:
        parts = urlsplit(addr)
    except ValueError as exc:
        raise ValueError(f"invalid server address, {exc}") from exc
    host = parts.netloc.rpartition("@")[2]
    dialer = _Dialer(opts.bootstrap, opts.so_mark, opts.bind_to_device)
    scheme = parts.scheme

    if scheme in ("", "udp"):
        dial_addr = get_dial_addr_with_port(host, opts.dial_addr, 53)

        async def dial_udp() -> _UDPConn:
            sock = await dialer.connect(dial_addr, socket.SOCK_DGRAM)
            _, protocol = await asyncio.get_running_loop().create_datagram_endpoint(
                _UDPConn, sock=sock
            )
            return protocol

        async def dial_tcp_plain() -> _StreamConn:
            sock = await dialer.connect(dial_addr, socket.SOCK_STREAM)
            return _StreamConn(*await asyncio.open_connection(sock=sock))

        udp = Transport(
            dial=dial_udp,
            write=_write_udp,
            read=_read_udp,
            idle_timeout=60.0,
            enable_pipeline=True,
            max_conns=opts.max_conns,
            logger=opts.logger,
        )
        tcp = Transport(dial=dial_tcp_plain, write=_write_tcp, read=_read_tcp, logger=opts.logger)
        return UDPWithFallback(udp=udp, tcp=tcp)

    if scheme == "tcp":
        dial_addr = get_dial_addr_with_port(host, opts.dial_addr, 53)

        async def dial_tcp() -> _StreamConn:
            return _StreamConn(*await _open_stream(dialer, dial_addr, opts.socks5))

        return Transport(
            dial=dial_tcp,
            write=_write_tcp,
            read=_read_tcp,
            idle_timeout=opts.idle_timeout,
            enable_pipeline=opts.enable_pipeline,
            max_conns=opts.max_conns,
            logger=opts.logger,
        )

    if scheme == "tls":
        ctx = opts.tls_context or ssl.create_default_context()
        server_name = try_remove_port(host).strip("[]")
        dial_addr = get_dial_addr_with_port(host, opts.dial_addr, 853)

        async def dial_tls() -> _StreamConn:
            return await _dial_tls(dialer, dial_addr, opts.socks5, ctx, server_name)

        return Transport(
            dial=dial_tls,
            write=_write_tcp,
            read=_read_tcp,
            idle_timeout=opts.idle_timeout,
            enable_pipeline=opts.enable_pipeline,
            max_conns=opts.max_conns,
            logger=opts.logger,
        )

    if scheme == "https":
        if opts.enable_http3:
            raise ValueError("http/3 is not supported for doh upstreams")
        if opts.socks5:
            raise ValueError("socks5 is not supported for doh upstreams")
        idle = opts.idle_timeout if opts.idle_timeout > 0 else 30.0
        max_conn = opts.max_conns if opts.max_conns > 0 else 2
        dial_addr = get_dial_addr_with_port(host, opts.dial_addr, 443)
        inner = httpx.AsyncHTTPTransport(
            verify=opts.tls_context or True,
            http2=True,
            limits=httpx.Limits(
                max_connections=max_conn,
                max_keepalive_connections=max_conn,
                keepalive_expiry=idle,
            ),
            socket_options=dialer.socket_options() or None,
        )
        client = httpx.AsyncClient(
            transport=_RedirectTransport(inner, dial_addr, dialer),
            timeout=httpx.Timeout(None, connect=TLS_HANDSHAKE_TIMEOUT),
        )
        client.headers.pop("User-Agent", None)
        return DoHUpstream(addr, client)

    raise ValueError(f"unsupported protocol [{scheme}]")