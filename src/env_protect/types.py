"""Core types."""

from __future__ import annotations
import enum
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from collections.abc import Iterable, Mapping


class BoundaryMode(enum.Enum):
    """How a rule's text may sit inside the surrounding text."""
    WORD_BOUNDARY = "word_boundary"   # no word char directly before/after
    SUBSTRING = "substring"           # anywhere, even inside a larger token


@dataclass(frozen=True, slots=True)
class SensitiveEntry:
    """A name/value pair flagged as worth protecting."""
    name: str
    value: str


@dataclass(frozen=True, slots=True)
class MatchRule:
    """A compiled replacement rule for one sensitive entry."""
    name: str
    match_text: str                   # re.escape()d value
    boundary_mode: BoundaryMode
    pattern: re.Pattern
    length: int                       # length of the raw value, used for ordering


@dataclass(frozen=True, slots=True)
class RedactionResult:
    """Result of running a redactor over one text blob."""
    text: str
    redacted_names: frozenset[str] = field(default_factory=frozenset)

    def __bool__(self) -> bool:
        return bool(self.redacted_names)


@dataclass(frozen=True, slots=True)
class ConnectionStringMatch:
    """Credential parts parsed out of a database/broker URI."""
    scheme: str
    user: str
    password: str


class SensitiveSet(Mapping[str, str]):
    """Ordered, read-only ``name -> value`` mapping of sensitive entries.

    Built once per configuration load.  Adding the same name twice keeps
    the last value but the first insertion position.
    """

    __slots__ = ("_data",)

    def __init__(self, entries: Iterable[SensitiveEntry] | Mapping[str, str] = ()) -> None:
        data: dict[str, str] = {}
        items = entries.items() if isinstance(entries, Mapping) else (
            (e.name, e.value) for e in entries
        )
        for name, value in items:
            if value:
                data[name] = value
        self._data = MappingProxyType(data)

    def __getitem__(self, name: str) -> str:
        return self._data[name]

    def __iter__(self):
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def entries(self) -> list[SensitiveEntry]:
        return [SensitiveEntry(name, value) for name, value in self._data.items()]

    def __repr__(self) -> str:
        # Never show values.
        return f"SensitiveSet(names={list(self._data)!r})"
