"""Domain name matchers: exact, sub-domain, keyword, regexp and a mix of them.

All matchers are case-insensitive and fqdn-insensitive: "Google.com" and
"google.com." give the same outcome. ``match`` returns a ``(value, matched)``
tuple; when nothing matched the value is ``None``.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Generic, Iterator, TypeVar

T = TypeVar("T")

MATCHER_FULL = "full"
MATCHER_DOMAIN = "domain"
MATCHER_REGEXP = "regexp"
MATCHER_KEYWORD = "keyword"


def trim_dot(s: str) -> str:
    """Remove one trailing '.' from s."""
    return s[:-1] if s.endswith(".") else s


def normalize_domain(s: str) -> str:
    """Strip the trailing '.' and lower-case the domain."""
    return trim_dot(s).lower()


class Matcher(ABC, Generic[T]):
    """A domain matcher."""

    @abstractmethod
    def match(self, s: str) -> tuple[T | None, bool]:
        """Match domain s and return (value, matched)."""

    @abstractmethod
    def __len__(self) -> int:
        """Number of rules held by the matcher."""


class ReverseDomainScanner:
    """Walks the labels of a domain from the last one to the first."""

    def __init__(self, s: str) -> None:
        self._s = trim_dot(s)
        self._p = len(self._s)
        self._t = self._p

    def scan(self) -> bool:
        """Advance to the previous label; False when there is none left."""
        if self._p <= 0:
            return False
        self._t = self._p
        self._p = self._s.rfind(".", 0, self._p)
        return True

    def next_label_offset(self) -> int:
        """Offset of the current label in the (dot-trimmed) domain."""
        return self._p + 1

    def next_label(self) -> str:
        """The current label."""
        return self._s[self._p + 1 : self._t]

    def __iter__(self) -> Iterator[str]:
        while self.scan():
            yield self.next_label()


@dataclass(eq=False)
class _LabelNode(Generic[T]):
    children: dict[str, "_LabelNode[T]"] = field(default_factory=dict)
    value: Any = None
    has_value: bool = False

    def store(self, value: T) -> None:
        self.value = value
        self.has_value = True

    def count(self) -> int:
        return sum(child.count() + (1 if child.has_value else 0) for child in self.children.values())


class SubDomainMatcher(Matcher[T]):
    """Matches a domain and all of its sub-domains."""

    def __init__(self) -> None:
        self._root: _LabelNode[T] = _LabelNode()

    def match(self, s: str) -> tuple[T | None, bool]:
        node = self._root
        value: T | None = None
        matched = False
        for label in ReverseDomainScanner(normalize_domain(s)):
            child = node.children.get(label)
            if child is None:
                break
            if child.has_value:
                value, matched = child.value, True
            node = child
        return value, matched

    def add(self, pattern: str, value: T) -> None:
        node = self._root
        for label in ReverseDomainScanner(normalize_domain(pattern)):
            node = node.children.setdefault(label, _LabelNode())
        node.store(value)

    def __len__(self) -> int:
        return self._root.count()


class FullMatcher(Matcher[T]):
    """Matches a domain exactly."""

    def __init__(self) -> None:
        self._domains: dict[str, T] = {}

    def match(self, s: str) -> tuple[T | None, bool]:
        s = normalize_domain(s)
        if s in self._domains:
            return self._domains[s], True
        return None, False

    def add(self, pattern: str, value: T) -> None:
        self._domains[normalize_domain(pattern)] = value

    def __len__(self) -> int:
        return len(self._domains)


class KeywordMatcher(Matcher[T]):
    """Matches a domain that contains a keyword."""

    def __init__(self) -> None:
        self._keywords: dict[str, T] = {}

    def match(self, s: str) -> tuple[T | None, bool]:
        s = normalize_domain(s)
        for keyword, value in self._keywords.items():
            if keyword in s:
                return value, True
        return None, False

    def add(self, pattern: str, value: T) -> None:
        self._keywords[normalize_domain(pattern)] = value

    def __len__(self) -> int:
        return len(self._keywords)


@dataclass
class _RegexRule(Generic[T]):
    regex: re.Pattern[str]
    value: Any


class RegexMatcher(Matcher[T]):
    """Matches a domain against regular expressions.

    The expressions are applied to the lower-case, non-fqdn form of the domain.
    """

    def __init__(self) -> None:
        self._rules: dict[str, _RegexRule[T]] = {}

    def match(self, s: str) -> tuple[T | None, bool]:
        s = normalize_domain(s)
        for rule in self._rules.values():
            if rule.regex.search(s):
                return rule.value, True
        return None, False

    def add(self, pattern: str, value: T) -> None:
        rule = self._rules.get(pattern)
        if rule is not None:
            rule.value = value
            return
        try:
            compiled = re.compile(pattern)
        except re.error as exc:
            raise ValueError(f"invalid regexp {pattern!r}: {exc}") from exc
        self._rules[pattern] = _RegexRule(compiled, value)

    def __len__(self) -> int:
        return len(self._rules)


class MixMatcher(Matcher[T]):
    """Combines the four matchers; patterns are prefixed with their type.

    A pattern such as "domain:example.com" goes to the sub-domain matcher.
    A pattern without a type goes to the default matcher ("full" unless set).
    """

    def __init__(self) -> None:
        self._default = MATCHER_FULL
        self._subs: dict[str, Matcher[T]] = {
            MATCHER_FULL: FullMatcher(),
            MATCHER_DOMAIN: SubDomainMatcher(),
            MATCHER_REGEXP: RegexMatcher(),
            MATCHER_KEYWORD: KeywordMatcher(),
        }

    def set_default_matcher(self, kind: str) -> None:
        self._default = kind

    def get_sub_matcher(self, kind: str) -> Matcher[T] | None:
        """Return the sub matcher for kind, or None if kind is unknown."""
        return self._subs.get(kind)

    def match(self, s: str) -> tuple[T | None, bool]:
        for matcher in self._subs.values():
            value, matched = matcher.match(s)
            if matched:
                return value, True
        return None, False

    def add(self, pattern: str, value: T) -> None:
        kind, sep, rest = pattern.partition(":")
        if not sep:
            kind, rest = "", pattern
        if not kind:
            kind = self._default or MATCHER_FULL
        sub = self.get_sub_matcher(kind)
        if sub is None:
            raise ValueError(f"unsupported match type [{kind}]")
        sub.add(rest, value)  # type: ignore[attr-defined]

    def __len__(self) -> int:
        return sum(len(m) for m in self._subs.values())