"""Collect the sensitive set from ``.env`` files and the live environment.

Two sources feed the redactor:

    1. values parsed from ``.env*`` files found under a project directory
    2. the process environment

They are combined with ``merge_sources`` using an explicit precedence
(file values win by default), then ``collect`` applies the exclusion set
and the key classifier and mines connection-string passwords.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Mapping

from .heuristics import extract_db_password
from .patterns import DEFAULT_COMPILED_PATTERNS, EXCLUDED_NAMES, KeyPattern, compile_key_patterns, is_sensitive_key
from .scanner import DEFAULT_MAX_DEPTH, load_env_files, scan_env_files
from .types import SensitiveSet

logger = logging.getLogger(__name__)

PRECEDENCE_FILES = "files"
PRECEDENCE_ENVIRONMENT = "environment"
PRECEDENCES = (PRECEDENCE_FILES, PRECEDENCE_ENVIRONMENT)

PASSWORD_SUFFIX = "_PASSWORD"


@dataclass(frozen=True)
class Collection:
    """Everything discovered for one configuration load."""
    sensitive: SensitiveSet = field(default_factory=SensitiveSet)
    names: tuple[str, ...] = ()             # every name found in .env files
    file_values: Mapping[str, str] = field(default_factory=dict, repr=False)
    files: tuple[Path, ...] = ()


def merge_sources(
    file_values: Mapping[str, str],
    environ: Mapping[str, str] | None,
    precedence: str = PRECEDENCE_FILES,
) -> dict[str, str]:
    """Merge file and environment values; ``precedence`` names the winner.

    Empty values never override a non-empty one.
    """
    if precedence not in PRECEDENCES:
        raise ValueError(f"unknown precedence {precedence!r}, expected one of {PRECEDENCES}")
    environ = environ or {}
    low, high = (environ, file_values) if precedence == PRECEDENCE_FILES else (file_values, environ)

    merged: dict[str, str] = {}
    for source in (low, high):
        for name, value in source.items():
            if value or name not in merged:
                merged[name] = value
    return merged


def collect(
    file_values: Mapping[str, str],
    environ: Mapping[str, str] | None = None,
    *,
    patterns: Iterable[KeyPattern] = DEFAULT_COMPILED_PATTERNS,
    excluded_names: Iterable[str] = EXCLUDED_NAMES,
    precedence: str = PRECEDENCE_FILES,
) -> Collection:
    """Classify merged values into a SensitiveSet.

    A name is admitted when it is not excluded, the key classifier matches
    and the value is non-empty.  Every file value that is a database URL
    with a real password also contributes ``<NAME>_PASSWORD``.
    """
    compiled = compile_key_patterns(patterns)
    excluded = frozenset(excluded_names)
    merged = merge_sources(file_values, environ, precedence)

    sensitive: dict[str, str] = {}
    for name, value in merged.items():
        if not value or name in excluded:
            continue
        if is_sensitive_key(name, compiled):
            sensitive[name] = value

    # Passwords embedded in connection strings, whatever the variable is called.
    for name, value in file_values.items():
        password = extract_db_password(value)
        if password:
            sensitive[f"{name}{PASSWORD_SUFFIX}"] = password

    logger.debug(f"Collected {len(sensitive)} sensitive name(s): {', '.join(sensitive)}")
    return Collection(
        sensitive=SensitiveSet(sensitive),
        names=tuple(file_values),
        file_values=dict(file_values),
    )


def collect_from_directory(
    directory: str | Path,
    environ: Mapping[str, str] | None = None,
    *,
    max_depth: int = DEFAULT_MAX_DEPTH,
    patterns: Iterable[KeyPattern] = DEFAULT_COMPILED_PATTERNS,
    excluded_names: Iterable[str] = EXCLUDED_NAMES,
    precedence: str = PRECEDENCE_FILES,
) -> Collection:
    """Scan ``directory`` for env files and collect from them plus ``environ``."""
    files = scan_env_files(directory, max_depth)
    file_values = load_env_files(files)
    collection = collect(
        file_values,
        environ,
        patterns=patterns,
        excluded_names=excluded_names,
        precedence=precedence,
    )
    logger.info(
        f"Loaded {len(file_values)} variable(s) from {len(files)} file(s); "
        f"{len(collection.sensitive)} marked sensitive"
    )
    return Collection(
        sensitive=collection.sensitive,
        names=collection.names,
        file_values=collection.file_values,
        files=tuple(files),
    )
