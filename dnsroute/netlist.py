"""A sorted list of IP prefixes with binary-search lookup.

IPv4 prefixes are stored as IPv4-mapped IPv6 prefixes, so one list holds
both families.
"""

from __future__ import annotations

import bisect
import ipaddress
from abc import ABC, abstractmethod
from typing import Union

AddrLike = Union[str, ipaddress.IPv4Address, ipaddress.IPv6Address]
NetLike = Union[str, ipaddress.IPv4Network, ipaddress.IPv6Network]

_V4_MAPPED = 0xFFFF << 32


class NotSortedError(RuntimeError):
    """The list was modified and not sorted before a lookup."""

    def __init__(self) -> None:
        super().__init__("list is not sorted")


class InvalidAddrError(ValueError):
    """The address to look up is not a valid IP address."""

    def __init__(self, addr: object = None) -> None:
        super().__init__(f"addr is invalid: {addr!r}")


class IPMatcher(ABC):
    """An IP address matcher."""

    @abstractmethod
    def match(self, addr: AddrLike) -> bool:
        """Report whether addr matches."""

    @abstractmethod
    def __len__(self) -> int:
        """Number of prefixes held by the matcher."""


def _to_v6_network(net: NetLike) -> ipaddress.IPv6Network:
    if isinstance(net, str):
        net = ipaddress.ip_network(net, strict=False)
    if isinstance(net, ipaddress.IPv4Network):
        base = _V4_MAPPED | int(net.network_address)
        return ipaddress.IPv6Network((base, net.prefixlen + 96), strict=False)
    if isinstance(net, ipaddress.IPv6Network):
        return ipaddress.IPv6Network((int(net.network_address), net.prefixlen), strict=False)
    raise TypeError(f"not an ip network: {net!r}")


def _to_v6_int(addr: AddrLike | None) -> int:
    if addr is None:
        raise InvalidAddrError(addr)
    if isinstance(addr, str):
        try:
            addr = ipaddress.ip_address(addr)
        except ValueError:
            raise InvalidAddrError(addr) from None
    if isinstance(addr, ipaddress.IPv4Address):
        return _V4_MAPPED | int(addr)
    if isinstance(addr, ipaddress.IPv6Address):
        return int(addr)
    raise InvalidAddrError(addr)


class IPList(IPMatcher):
    """A list of prefixes for large, static CIDR lookups.

    Call ``sort`` after modifying the list and before looking up addresses.
    """

    def __init__(self) -> None:
        self._nets: list[ipaddress.IPv6Network] = []
        self._starts: list[int] = []
        self._sorted = False

    def append(self, *args: NetLike) -> None:
        """Add prefixes; host bits are masked off. The list becomes unsorted."""
        self._nets.extend(_to_v6_network(n) for n in args)
        self._sorted = False

    def sort(self) -> None:
        """Sort the list and merge prefixes contained by others."""
        if self._sorted:
            return
        merged: list[ipaddress.IPv6Network] = []
        for net in sorted(self._nets, key=lambda n: int(n.network_address)):
            if not merged:
                merged.append(net)
                continue
            last = merged[-1]
            if net.network_address == last.network_address:
                if net.prefixlen < last.prefixlen:
                    merged[-1] = net
            elif net.network_address not in last:
                merged.append(net)
        self._nets = merged
        self._starts = [int(n.network_address) for n in merged]
        self._sorted = True

    def __len__(self) -> int:
        return len(self._nets)

    def match(self, addr: AddrLike) -> bool:
        return self.contains(addr)

    def contains(self, addr: AddrLike) -> bool:
        """Report whether the list includes addr."""
        if not self._sorted:
            raise NotSortedError()
        value = _to_v6_int(addr)
        i = bisect.bisect_right(self._starts, value)
        if i == 0:
            return False
        return ipaddress.IPv6Address(value) in self._nets[i - 1]