"""A DNS-over-HTTPS (RFC 8484) upstream."""

from __future__ import annotations

import asyncio
import base64
from typing import Any, Protocol

import dns.message
import httpx

DEFAULT_DOH_TIMEOUT = 5.0
MAX_MSG_SIZE = 65535
_DNS_MEDIA_TYPE = "application/dns-message"


class _Closer(Protocol):
    def close(self) -> Any: ...


async def _read_limited(resp: httpx.Response, limit: int) -> bytes:
    """Read at most limit bytes of the response body."""
    body = bytearray()
    async for chunk in resp.aiter_bytes():
        body += chunk
        if len(body) >= limit:
            break
    return bytes(body[:limit])


class DoHUpstream:
    """Sends queries as HTTP GET requests to a DoH endpoint."""

    def __init__(
        self,
        endpoint: str,
        client: httpx.AsyncClient,
        addon_closer: _Closer | None = None,
    ) -> None:
        self.endpoint = endpoint
        self._client = client
        self._addon_closer = addon_closer
        self._closing: asyncio.Task | None = None

    def _query_url(self, q: dns.message.Message) -> str:
        wire = q.to_wire()
        # RFC 8484 4.1: use a DNS ID of 0 for cache friendliness.
        wire = b"\x00\x00" + wire[2:]
        # RFC 8484 6: padding characters must not be included.
        encoded = base64.urlsafe_b64encode(wire).rstrip(b"=").decode("ascii")
        sep = "&" if "?" in self.endpoint else "?"
        return f"{self.endpoint}{sep}dns={encoded}"

    async def exchange(self, q: dns.message.Message) -> dns.message.Message:
        """Send q and return the response, carrying q's id."""
        try:
            url = self._query_url(q)
        except Exception as exc:
            raise ValueError(f"failed to pack query msg, {exc}") from exc

        # The request runs with its own fixed timeout, so that a cancelled
        # caller does not abort it half-way and spoil the connection.
        task = asyncio.ensure_future(self._exchange_with_timeout(url))
        r = await asyncio.shield(task)
        r.id = q.id
        return r

    async def _exchange_with_timeout(self, url: str) -> dns.message.Message:
        async with asyncio.timeout(DEFAULT_DOH_TIMEOUT):
            return await self._do_exchange(url)

    async def _do_exchange(self, url: str) -> dns.message.Message:
        try:
            async with self._client.stream("GET", url, headers={"Accept": _DNS_MEDIA_TYPE}) as resp:
                if resp.status_code != 200:
                    body = await _read_limited(resp, 1024)
                    if body:
                        raise ConnectionError(
                            f"bad http status codes {resp.status_code} with body [{body!r}]"
                        )
                    raise ConnectionError(f"bad http status codes {resp.status_code}")
                try:
                    body = await _read_limited(resp, MAX_MSG_SIZE)
                except httpx.HTTPError as exc:
                    raise ConnectionError(f"failed to read http body: {exc}") from exc
        except httpx.HTTPError as exc:
            raise ConnectionError(f"http request failed: {exc}") from exc

        try:
            return dns.message.from_wire(body)
        except Exception as exc:
            raise ValueError(f"failed to unpack http body: {exc}") from exc

    async def aclose(self) -> None:
        """Close the upstream and wait until its client is closed."""
        if self._addon_closer is not None:
            self._addon_closer.close()
            self._addon_closer = None
        await self._client.aclose()

    def close(self) -> None:
        """Close the upstream; its client is closed in the background."""
        if self._addon_closer is not None:
            self._addon_closer.close()
            self._addon_closer = None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(self._client.aclose())
            return
        self._closing = loop.create_task(self._client.aclose())