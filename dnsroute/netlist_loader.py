"""Helpers to fill IP lists from text and to group IP matchers."""

from __future__ import annotations

import ipaddress
import threading
from collections.abc import Callable, Iterable

from dnsroute.netlist import AddrLike, IPList, IPMatcher


def _remove_comment(s: str, symbol: str) -> str:
    return s.partition(symbol)[0]


class IPMatcherGroup(IPMatcher):
    """IP matchers tried in order; any match wins."""

    def __init__(
        self,
        matchers: Iterable[IPMatcher] | None = None,
        closers: Iterable[Callable[[], None]] | None = None,
    ) -> None:
        self.matchers: list[IPMatcher] = list(matchers or ())
        self.closers: list[Callable[[], None]] = list(closers or ())

    def __len__(self) -> int:
        return sum(len(m) for m in self.matchers)

    def match(self, addr: AddrLike) -> bool:
        return any(m.match(addr) for m in self.matchers)

    def close(self) -> None:
        for closer in self.closers:
            closer()


class DynamicIPMatcher(IPMatcher):
    """An IP matcher whose list is replaced as a whole by ``update``."""

    def __init__(self, parser: Callable[[bytes], IPList]) -> None:
        self._parser = parser
        self._lock = threading.Lock()
        self._list: IPList | None = None

    def _current(self) -> IPList:
        with self._lock:
            current = self._list
        if current is None:
            raise RuntimeError("dynamic ip matcher has no data loaded")
        return current

    def update(self, data: bytes) -> None:
        """Parse data and swap it in; on error the old list stays."""
        new_list = self._parser(data)
        with self._lock:
            self._list = new_list

    def match(self, addr: AddrLike) -> bool:
        return self._current().match(addr)

    def __len__(self) -> int:
        return len(self._current())


def load_from_text(ip_list: IPList, s: str) -> None:
    """Add an address or a CIDR prefix to ip_list; the list becomes unsorted."""
    if "/" in s:
        ip_list.append(ipaddress.ip_network(s, strict=False))
        return
    addr = ipaddress.ip_address(s)
    ip_list.append(ipaddress.ip_network(addr))


def load(ip_list: IPList, ip: str) -> None:
    """Add one entry, ignoring surrounding white space."""
    load_from_text(ip_list, ip.strip())


def load_from_reader(ip_list: IPList, reader: Iterable[str]) -> None:
    """Add one entry per line; text after '#' or the first space is ignored."""
    for line_no, line in enumerate(reader, start=1):
        s = line.strip()
        s = _remove_comment(s, "#")
        s = _remove_comment(s, " ")
        if not s:
            continue
        try:
            load_from_text(ip_list, s)
        except ValueError as exc:
            raise ValueError(f"invalid data at line #{line_no}: {exc}") from exc


def parse_text_ip_file(data: bytes) -> IPList:
    """Build a sorted IPList from a text file."""
    ip_list = IPList()
    load_from_reader(ip_list, data.decode("utf-8").splitlines())
    ip_list.sort()
    return ip_list