"""Redactor — the main API.  Turns a sensitive set into a reusable transform.

Usage:
    from env_protect import build_engine

    redact = build_engine({"OPENAI_API_KEY": "sk-abc123def456"})

    result = redact("curl -H 'Authorization: Bearer sk-abc123def456'")
    print(result.text)            # "... Bearer [ENV:OPENAI_API_KEY was redacted]'"
    print(result.redacted_names)  # frozenset({'OPENAI_API_KEY'})

Longer values are replaced first so that a shorter value which happens to
be a substring of a longer one can never leave half a secret behind.
Values shorter than ``WORD_BOUNDARY_MAX_LENGTH`` only match as whole
tokens; longer ones match anywhere.
"""

from __future__ import annotations
import logging
import re
import threading
from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence

from .heuristics import DEFAULT_HEURISTICS, ValueHeuristics
from .types import BoundaryMode, MatchRule, RedactionResult, SensitiveEntry, SensitiveSet

logger = logging.getLogger(__name__)

# Downstream consumers look for this exact text.
MARKER_FORMAT = "[ENV:{name} was redacted]"

# Values shorter than this use word-boundary matching.
WORD_BOUNDARY_MAX_LENGTH = 10

_EMPTY: frozenset[str] = frozenset()


@dataclass(frozen=True)
class RedactorConfig:
    """Configuration for building a Redactor."""
    marker_format: str = MARKER_FORMAT
    word_boundary_max_length: int = WORD_BOUNDARY_MAX_LENGTH
    heuristics: ValueHeuristics = DEFAULT_HEURISTICS


class Redactor:
    """Immutable, thread-safe text transform.

    Calling the instance (or ``redact``) returns a ``RedactionResult``.
    """

    __slots__ = ("_rules", "_marker_format")

    def __init__(
        self,
        rules: Sequence[MatchRule] = (),
        marker_format: str = MARKER_FORMAT,
    ) -> None:
        self._rules: tuple[MatchRule, ...] = tuple(rules)
        self._marker_format = marker_format

    @property
    def rules(self) -> tuple[MatchRule, ...]:
        return self._rules

    @property
    def names(self) -> list[str]:
        """Names covered by this redactor, in match order."""
        return [r.name for r in self._rules]

    def __len__(self) -> int:
        return len(self._rules)

    def marker(self, name: str) -> str:
        return self._marker_format.format(name=name)

    def redact(self, text: str) -> RedactionResult:
        """Replace every sensitive value in ``text`` with its marker."""
        if not isinstance(text, str) or not text or not self._rules:
            return RedactionResult(text=text, redacted_names=_EMPTY)

        result = text
        redacted: list[str] = []
        for rule in self._rules:
            marker = self.marker(rule.name)
            # Function replacement so the marker is inserted literally.
            result, count = rule.pattern.subn(lambda _m, _marker=marker: _marker, result)
            if count:
                redacted.append(rule.name)

        if redacted:
            logger.debug(f"Redacted {len(redacted)} variable(s): {', '.join(redacted)}")
        return RedactionResult(text=result, redacted_names=frozenset(redacted))

    __call__ = redact

    def redact_many(self, texts: Iterable[str]) -> tuple[list[str], frozenset[str]]:
        """Redact several texts; return them plus the union of redacted names."""
        results: list[str] = []
        names: set[str] = set()
        for text in texts:
            r = self.redact(text)
            results.append(r.text)
            names.update(r.redacted_names)
        return results, frozenset(names)

    def __repr__(self) -> str:
        return f"<Redactor rules={len(self._rules)}>"


def _iter_entries(entries) -> list[SensitiveEntry]:
    if entries is None:
        return []
    if isinstance(entries, Mapping):
        return [SensitiveEntry(k, v) for k, v in entries.items()]
    out: list[SensitiveEntry] = []
    for e in entries:
        if isinstance(e, SensitiveEntry):
            out.append(e)
        else:
            name, value = e
            out.append(SensitiveEntry(name, value))
    return out


def compile_rule(entry: SensitiveEntry, word_boundary_max_length: int = WORD_BOUNDARY_MAX_LENGTH) -> MatchRule:
    """Build the MatchRule for one entry.  Raises ``re.error`` on a bad pattern."""
    escaped = re.escape(entry.value)
    if len(entry.value) < word_boundary_max_length:
        mode = BoundaryMode.WORD_BOUNDARY
        pattern = re.compile(rf"(?<!\w){escaped}(?!\w)")
    else:
        mode = BoundaryMode.SUBSTRING
        pattern = re.compile(escaped)
    return MatchRule(
        name=entry.name,
        match_text=escaped,
        boundary_mode=mode,
        pattern=pattern,
        length=len(entry.value),
    )


def build_engine(
    entries: Mapping[str, str] | Iterable[SensitiveEntry] | SensitiveSet | None,
    config: RedactorConfig | None = None,
) -> Redactor:
    """Compile a sensitive set into a Redactor.

    Entries whose value fails the value heuristics are dropped.  An entry
    that cannot be compiled is skipped with a warning; it never aborts the
    rest.  Empty or invalid input gives a pass-through redactor.
    """
    config = config or RedactorConfig()
    try:
        candidates = _iter_entries(entries)
    except (TypeError, ValueError) as e:
        logger.warning(f"Ignoring unusable sensitive set ({type(e).__name__}); redaction disabled")
        return Redactor(marker_format=config.marker_format)

    # Last writer wins for a repeated name.
    by_name: dict[str, SensitiveEntry] = {}
    for entry in candidates:
        if not isinstance(entry.name, str) or not isinstance(entry.value, str) or not entry.value:
            continue
        by_name[entry.name] = entry

    kept = [e for e in by_name.values() if config.heuristics.should_redact(e.value)]
    # Stable sort: equal lengths keep insertion order.
    kept.sort(key=lambda e: len(e.value), reverse=True)

    rules: list[MatchRule] = []
    for entry in kept:
        try:
            rules.append(compile_rule(entry, config.word_boundary_max_length))
        except (re.error, OverflowError, RecursionError) as e:
            logger.warning(f"Skipping {entry.name}: value could not be compiled ({type(e).__name__})")

    logger.debug(
        f"Built redactor: {len(rules)} rule(s) from {len(by_name)} candidate(s)"
    )
    return Redactor(rules, marker_format=config.marker_format)


class ReloadableRedactor:
    """Holds the current Redactor and swaps it atomically on reload.

    A new engine is built completely before it is published, so callers
    only ever see the old rules or the new ones.  Calls already running
    keep the instance they started with.
    """

    __slots__ = ("_current", "_lock", "_config")

    def __init__(self, redactor: Redactor | None = None, config: RedactorConfig | None = None) -> None:
        self._config = config or RedactorConfig()
        if redactor is None:
            redactor = Redactor(marker_format=self._config.marker_format)
        self._current = redactor
        self._lock = threading.Lock()

    @property
    def current(self) -> Redactor:
        return self._current

    def reload(self, entries) -> Redactor:
        """Build a fresh engine from ``entries`` and publish it."""
        fresh = build_engine(entries, self._config)
        self.swap(fresh)
        return fresh

    def swap(self, redactor: Redactor) -> Redactor:
        """Publish ``redactor``; returns the previous one."""
        with self._lock:
            previous, self._current = self._current, redactor
        logger.info(f"Redactor reloaded ({len(redactor)} rule(s))")
        return previous

    def redact(self, text: str) -> RedactionResult:
        return self._current.redact(text)

    __call__ = redact
