"""Find and parse ``.env*`` files.

Only ``.env`` and ``.env.<suffix>`` files are picked up; ``.env.example``
templates are skipped since they hold placeholders, not real values.
Parsing is delegated to python-dotenv with interpolation turned off, so
values are taken literally.
"""

from __future__ import annotations
import logging
import os
import re
from pathlib import Path
from typing import Iterable

from dotenv import dotenv_values

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 2

IGNORED_DIRS: frozenset[str] = frozenset({
    "node_modules",
    ".git",
    ".svn",
    ".hg",
    "dist",
    "build",
    ".next",
    ".nuxt",
    "__pycache__",
    "venv",
    ".venv",
    "vendor",
})

_VALID_KEY = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def is_env_file(filename: str) -> bool:
    """``.env``, ``.env.local``, ``.env.production``... but not ``*.example``."""
    if filename == ".env":
        return True
    return filename.startswith(".env.") and not filename.endswith(".example")


def is_ignored_dir(dirname: str) -> bool:
    return dirname in IGNORED_DIRS or dirname.startswith(".")


def scan_env_files(directory: str | Path, max_depth: int = DEFAULT_MAX_DEPTH) -> list[Path]:
    """Return ``.env*`` files under ``directory``, at most ``max_depth`` levels down.

    Files directly in ``directory`` are depth 0.  Directories that cannot
    be read are skipped.
    """
    found: list[Path] = []

    def scan(current: Path, depth: int) -> None:
        if depth > max_depth:
            return
        try:
            with os.scandir(current) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as e:
            logger.debug(f"Cannot read {current}: {e}")
            return

        for entry in entries:
            try:
                if entry.is_file() and is_env_file(entry.name):
                    found.append(Path(entry.path))
                elif entry.is_dir(follow_symlinks=False) and not is_ignored_dir(entry.name):
                    scan(Path(entry.path), depth + 1)
            except OSError as e:
                logger.debug(f"Cannot stat {entry.path}: {e}")

    scan(Path(directory), 0)
    logger.debug(f"Found {len(found)} env file(s) under {directory}")
    return found


def parse_env_file(path: str | Path) -> dict[str, str]:
    """Parse one ``.env`` file into ``{name: value}``.

    Handles quoting, inline comments and ``export`` prefixes.  Invalid
    names and lines without ``=`` are dropped; an unreadable file
    yields ``{}``.
    """
    try:
        raw = dotenv_values(path, interpolate=False)
    except (OSError, UnicodeDecodeError) as e:
        logger.debug(f"Cannot parse {path}: {e}")
        return {}

    values: dict[str, str] = {}
    for key, value in raw.items():
        if value is None or not key or not _VALID_KEY.match(key):
            continue
        values[key] = value
    return values


def load_env_files(paths: Iterable[str | Path]) -> dict[str, str]:
    """Parse several files; a name set in a later file overrides an earlier one."""
    merged: dict[str, str] = {}
    for path in paths:
        merged.update(parse_env_file(path))
    return merged
