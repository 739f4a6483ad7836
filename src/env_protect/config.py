"""YAML/dict config loader for env-protect.

Supports loading from a YAML file or a plain dict (for embedding in a
larger host config).

Example YAML:

    env_protect:
      enabled: true
      max_depth: 2
      require_git: true
      include_environ: true
      precedence: files          # "files" or "environment"
      key_patterns:              # replaces the defaults when given
        - KEY
        - SECRET
        - TOKEN
      excluded_names:
        - PATH
        - HOME
      debug: false
      log_file: ~/.env-protect.log
"""

from __future__ import annotations
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

from .collector import PRECEDENCE_FILES, PRECEDENCES, Collection, collect_from_directory
from .middleware import EnvProtectMiddleware
from .patterns import DEFAULT_KEY_PATTERNS, EXCLUDED_NAMES
from .redactor import Redactor

logger = logging.getLogger(__name__)

DEBUG_ENV = "ENV_PROTECT_DEBUG"
DEFAULT_LOG_FILE = str(Path.home() / ".env-protect.log")
_LOG_FORMAT = "[%(asctime)s] %(name)s %(levelname)s: %(message)s"


class ConfigError(ValueError):
    """Raised for configuration that cannot be used."""


@dataclass(frozen=True)
class ProtectConfig:
    """Normalized, immutable settings for one configuration load."""
    enabled: bool = True
    max_depth: int = 2
    require_git: bool = True
    include_environ: bool = True
    precedence: str = PRECEDENCE_FILES
    key_patterns: tuple[str, ...] = DEFAULT_KEY_PATTERNS
    excluded_names: frozenset[str] = EXCLUDED_NAMES
    debug: bool = False
    log_file: str = DEFAULT_LOG_FILE


class _NoopMiddleware:
    """Pass-through middleware when protection is disabled or not applicable."""
    names: tuple[str, ...] = ()
    file_values: Mapping[str, str] = MappingProxyType({})
    redactor = Redactor()
    def reload(self, collection: Collection) -> None:
        return None
    def after_tool(self, output: dict) -> list[str]:
        return []
    def notice(self, names) -> None:
        return None
    def system_instruction(self) -> None:
        return None
    def redact_text(self, text: str) -> str:
        return text
    def export_environment(self, environ=None) -> list[str]:
        return []
    @property
    def stats(self) -> dict:
        return {"rules": 0, "names": [], "sensitive": []}


def _str_list(data: Mapping[str, Any], key: str) -> tuple[str, ...] | None:
    raw = data.get(key)
    if raw is None:
        return None
    if not isinstance(raw, (list, tuple)) or not all(isinstance(x, str) for x in raw):
        raise ConfigError(f"{key} must be a list of strings")
    return tuple(raw)


def load_config(data: Mapping[str, Any] | None) -> ProtectConfig:
    """Normalize a config dict (from YAML or inline)."""
    data = data or {}
    if not isinstance(data, Mapping):
        raise ConfigError("config must be a mapping")
    # Support nested under "env_protect" key or flat
    if "env_protect" in data:
        data = data["env_protect"] or {}
        if not isinstance(data, Mapping):
            raise ConfigError("env_protect section must be a mapping")

    precedence = data.get("precedence", PRECEDENCE_FILES)
    if precedence not in PRECEDENCES:
        raise ConfigError(f"precedence must be one of {PRECEDENCES}, got {precedence!r}")

    max_depth = data.get("max_depth", 2)
    if not isinstance(max_depth, int) or isinstance(max_depth, bool) or max_depth < 0:
        raise ConfigError(f"max_depth must be a non-negative integer, got {max_depth!r}")

    key_patterns = _str_list(data, "key_patterns") or DEFAULT_KEY_PATTERNS
    for p in key_patterns:
        try:
            re.compile(p)
        except re.error as e:
            raise ConfigError(f"invalid key pattern {p!r}: {e}") from e

    excluded = _str_list(data, "excluded_names")

    debug = bool(data.get("debug", False)) or os.environ.get(DEBUG_ENV) == "1"

    return ProtectConfig(
        enabled=bool(data.get("enabled", True)),
        max_depth=max_depth,
        require_git=bool(data.get("require_git", True)),
        include_environ=bool(data.get("include_environ", True)),
        precedence=precedence,
        key_patterns=key_patterns,
        excluded_names=EXCLUDED_NAMES if excluded is None else frozenset(excluded),
        debug=debug,
        log_file=os.path.expanduser(str(data.get("log_file", DEFAULT_LOG_FILE))),
    )


def load_from_yaml(path: str | Path) -> ProtectConfig:
    """Load config from a YAML file."""
    import yaml
    try:
        with open(path) as f:
            return load_config(yaml.safe_load(f))
    except yaml.YAMLError as e:
        raise ConfigError(f"cannot parse {path}: {e}") from e


def setup_logging(config: ProtectConfig) -> logging.Handler | None:
    """Attach a debug file handler to the package logger when debug is on."""
    if not config.debug:
        return None
    pkg_logger = logging.getLogger("env_protect")
    for h in pkg_logger.handlers:
        if isinstance(h, logging.FileHandler) and h.baseFilename == os.path.abspath(config.log_file):
            return h
    handler = logging.FileHandler(config.log_file, encoding="utf-8")
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    pkg_logger.addHandler(handler)
    pkg_logger.setLevel(logging.DEBUG)
    return handler


def load_collection(
    cfg: ProtectConfig,
    directory: str | Path,
    environ: Mapping[str, str] | None = None,
) -> Collection:
    """Scan ``directory`` and collect sensitive values according to ``cfg``."""
    if not cfg.include_environ:
        environ = {}
    elif environ is None:
        environ = dict(os.environ)
    return collect_from_directory(
        directory,
        environ,
        max_depth=cfg.max_depth,
        patterns=cfg.key_patterns,
        excluded_names=cfg.excluded_names,
        precedence=cfg.precedence,
    )


def skip_reason(cfg: ProtectConfig, directory: str | Path) -> str | None:
    """Why protection does not apply to ``directory``, or None if it does."""
    if not cfg.enabled:
        return "disabled by config"
    if cfg.require_git and not (Path(directory) / ".git").exists():
        return f"no .git directory in {directory}"
    return None


def create_middleware(
    config: ProtectConfig | Mapping[str, Any] | None,
    directory: str | Path,
    environ: Mapping[str, str] | None = None,
) -> EnvProtectMiddleware | _NoopMiddleware:
    """Create a fully configured middleware for a project directory.

    The CLI and the sidecar build theirs here too.
    """
    cfg = config if isinstance(config, ProtectConfig) else load_config(config)
    setup_logging(cfg)

    reason = skip_reason(cfg, directory)
    if reason is not None:
        # Pass-through middleware (no redaction)
        logger.info(f"Skipped: {reason}")
        return _NoopMiddleware()

    return EnvProtectMiddleware.create(load_collection(cfg, directory, environ))
