"""Helpers to fill domain matchers from text and to group matchers."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Generic, Protocol, TypeVar

from dnsroute.domain_matcher import MATCHER_DOMAIN, Matcher, MixMatcher

T = TypeVar("T")

ParseStringFunc = Callable[[str], "tuple[str, Any]"]


class WriteableMatcher(Protocol):
    """A matcher that accepts new patterns."""

    def add(self, pattern: str, value: Any) -> None: ...


def _remove_comment(s: str, symbol: str) -> str:
    return s.partition(symbol)[0]


def pattern_only(s: str) -> tuple[str, None]:
    """Treat s as a single pattern with no value attached."""
    fields = s.split()
    if len(fields) == 1:
        return fields[0], None
    raise ValueError("string does not only contain pattern")


def load(matcher: WriteableMatcher, s: str, parse_string: ParseStringFunc | None = None) -> None:
    """Parse s into a pattern and a value and add them to matcher."""
    parse = parse_string or pattern_only
    pattern, value = parse(s)
    matcher.add(pattern, value)


def batch_load(
    matcher: WriteableMatcher,
    items: Iterable[str],
    parse_string: ParseStringFunc | None = None,
) -> None:
    """Load every string of items into matcher."""
    for s in items:
        try:
            load(matcher, s, parse_string)
        except ValueError as exc:
            raise ValueError(f"failed to load data {s}: {exc}") from exc


@dataclass(eq=False)
class MatcherGroup(Matcher[T]):
    """Matchers tried in order; the first match wins."""

    matchers: list[Matcher[T]] = field(default_factory=list)
    closers: list[Callable[[], None]] = field(default_factory=list)

    def close(self) -> None:
        for closer in self.closers:
            closer()

    def match(self, s: str) -> tuple[T | None, bool]:
        for sub in self.matchers:
            value, matched = sub.match(s)
            if matched:
                return value, True
        return None, False

    def __len__(self) -> int:
        return sum(len(sub) for sub in self.matchers)

    def append(self, matcher: Matcher[T]) -> None:
        self.matchers.append(matcher)

    def append_closer(self, closer: Callable[[], None]) -> None:
        self.closers.append(closer)


class DynamicMatcher(Matcher[T], Generic[T]):
    """A matcher whose rules are replaced as a whole by ``update``."""

    def __init__(self, parser: Callable[[bytes], Matcher[T]]) -> None:
        self._parser = parser
        self._lock = threading.Lock()
        self._matcher: Matcher[T] | None = None

    def _current(self) -> Matcher[T]:
        with self._lock:
            matcher = self._matcher
        if matcher is None:
            raise RuntimeError("dynamic matcher has no data loaded")
        return matcher

    def match(self, s: str) -> tuple[T | None, bool]:
        return self._current().match(s)

    def __len__(self) -> int:
        return len(self._current())

    def update(self, data: bytes) -> None:
        """Parse data and swap it in; on error the old rules stay."""
        matcher = self._parser(data)
        with self._lock:
            self._matcher = matcher


def load_from_text_reader(
    matcher: WriteableMatcher,
    reader: Iterable[str],
    parse_string: ParseStringFunc | None = None,
) -> None:
    """Load one rule per line; '#' starts a comment and blank lines are skipped."""
    for line_no, line in enumerate(reader, start=1):
        s = _remove_comment(line, "#").strip()
        if not s:
            continue
        try:
            load(matcher, s, parse_string)
        except ValueError as exc:
            raise ValueError(f"line {line_no}: {exc}") from exc


@dataclass
class V2Filter:
    """A tag and optional attributes selecting entries of a geosite file."""

    tag: str
    attrs: list[str] = field(default_factory=list)


def parse_v2_suffix(s: str) -> list[V2Filter]:
    """Parse "tag[@attr@attr...],tag[@attr...]..." into filters."""
    filters: list[V2Filter] = []
    for part in s.split(","):
        part = part.strip()
        if not part:
            continue
        tag, *attrs = part.split("@")
        filters.append(V2Filter(tag=tag, attrs=attrs))
    return filters


def new_domain_mix_matcher() -> MixMatcher[Any]:
    """A MixMatcher whose untyped patterns are sub-domain rules."""
    matcher: MixMatcher[Any] = MixMatcher()
    matcher.set_default_matcher(MATCHER_DOMAIN)
    return matcher


def parse_text_domain_file(data: bytes) -> MixMatcher[Any]:
    """Build a domain MixMatcher from a text rule file."""
    matcher = new_domain_mix_matcher()
    load_from_text_reader(matcher, data.decode("utf-8").splitlines())
    return matcher