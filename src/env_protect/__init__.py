"""env-protect — keep .env secrets out of text sent to an LLM."""

from .patterns import classify_key, is_sensitive_key, DEFAULT_KEY_PATTERNS, EXCLUDED_NAMES
from .heuristics import should_redact_value, extract_db_password, parse_connection_string, ValueHeuristics
from .redactor import Redactor, RedactorConfig, ReloadableRedactor, build_engine, MARKER_FORMAT
from .collector import Collection, collect, collect_from_directory, merge_sources
from .middleware import EnvProtectMiddleware, ProtectState
from .config import ConfigError, ProtectConfig, create_middleware, load_config, load_from_yaml
from .types import BoundaryMode, MatchRule, RedactionResult, SensitiveEntry, SensitiveSet

__all__ = [
    "classify_key", "is_sensitive_key", "DEFAULT_KEY_PATTERNS", "EXCLUDED_NAMES",
    "should_redact_value", "extract_db_password", "parse_connection_string", "ValueHeuristics",
    "Redactor", "RedactorConfig", "ReloadableRedactor", "build_engine", "MARKER_FORMAT",
    "Collection", "collect", "collect_from_directory", "merge_sources",
    "EnvProtectMiddleware", "ProtectState",
    "ConfigError", "ProtectConfig", "create_middleware", "load_config", "load_from_yaml",
    "BoundaryMode", "MatchRule", "RedactionResult", "SensitiveEntry", "SensitiveSet",
]
__version__ = "0.1.0"
