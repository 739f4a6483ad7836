"""Key classifier — decides whether a variable *name* looks sensitive.

Matching is a case-insensitive search anywhere in the name, so
``STRIPE_SECRET_KEY`` and ``github_token`` both qualify.  The exclusion
set is applied by the caller (see ``collector``), never in here, so it can
be tuned independently of the patterns.
"""

from __future__ import annotations
import logging
import re
from typing import Iterable, Pattern, Union

logger = logging.getLogger(__name__)

KeyPattern = Union[str, Pattern[str]]

# Tokens that indicate a sensitive name.
DEFAULT_KEY_PATTERNS: tuple[str, ...] = (
    "KEY",
    "SECRET",
    "TOKEN",
    "PASSWORD",
    "PASSWD",
    "PRIVATE",
    "CREDENTIAL",
    "AUTH",
    "CERT",
)

# Left out on purpose: "API" matches API_URL, API_VERSION, ...  Names like
# API_KEY / API_SECRET / API_TOKEN are already caught by the tokens above.
OMITTED_KEY_PATTERNS: tuple[str, ...] = ("API",)

# Well-known shell variables that are never secrets.
EXCLUDED_NAMES: frozenset[str] = frozenset({
    "PWD",       # current working directory
    "OLDPWD",    # previous directory
    "PATH",
    "HOME",
    "USER",
    "SHELL",
    "TERM",
    "LANG",
    "EDITOR",
    "PAGER",
})


def compile_key_patterns(patterns: Iterable[KeyPattern]) -> tuple[Pattern[str], ...]:
    """Compile string patterns case-insensitively; compiled ones pass through.

    A pattern that does not compile is skipped with a warning.
    """
    compiled: list[Pattern[str]] = []
    for p in patterns:
        if isinstance(p, re.Pattern):
            compiled.append(p)
            continue
        try:
            compiled.append(re.compile(p, re.IGNORECASE))
        except (re.error, TypeError) as e:
            logger.warning(f"Skipping key pattern {p!r}: {e}")
    return tuple(compiled)


DEFAULT_COMPILED_PATTERNS = compile_key_patterns(DEFAULT_KEY_PATTERNS)


def is_sensitive_key(
    name: str,
    patterns: Iterable[KeyPattern] = DEFAULT_COMPILED_PATTERNS,
) -> bool:
    """True iff any pattern matches anywhere in ``name``."""
    if not isinstance(name, str) or not name:
        return False
    return any(p.search(name) for p in compile_key_patterns(patterns))


classify_key = is_sensitive_key
