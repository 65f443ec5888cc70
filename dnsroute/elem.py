"""Matching of integer values such as record types, classes and rcodes."""

from __future__ import annotations

from collections.abc import Iterable


class IntMatcher:
    """Matches integers against a fixed set."""

    def __init__(self, elems: Iterable[int] | None) -> None:
        self._elems = frozenset(elems or ())

    def match(self, v: int) -> bool:
        return v in self._elems

    def __contains__(self, v: object) -> bool:
        return v in self._elems