"""Host middleware — sits between tool execution and the model.

Usage:

    mw = EnvProtectMiddleware.create(collection)

    # After a tool ran, before its output enters the conversation
    names = mw.after_tool(output)          # output["output"] / output["title"] redacted in place
    if names:
        host.notify(mw.notice(names))

    # When the system prompt is assembled
    block = mw.system_instruction()
    if block:
        system.append(block)
"""

from __future__ import annotations
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, MutableMapping

from .collector import Collection
from .redactor import Redactor, RedactorConfig, build_engine

logger = logging.getLogger(__name__)

_TOOL_FIELDS = ("output", "title")

_NOTICE = (
    "[ENV PROTECTED] Environment variables {names} were redacted for security. "
    "Make sure these values don't get hardcoded in logs or code. "
    "If you think this is a mistake, ask the user."
)

_INSTRUCTION = """\
## Environment Variables Protection

The following environment variables are pre-exported and available in shell commands:
{names}

IMPORTANT RULES:
1. Use these variables directly (e.g., `curl -H "Authorization: Bearer $API_KEY"`)
2. NEVER read .env, .env.local, .env.production, .env.development or similar files containing real values
3. You CAN read .env.example files - those are safe templates
4. NEVER use cat, less, head, tail, or any tool to view actual env/secret files
5. NEVER hardcode sensitive values - always use the variable names
6. If you see {marker} in outputs, the actual value was redacted for security
7. To use a redacted value, reference the original variable: $VAR_NAME

The variables are already exported - no need to run `export` or `source .env`."""


def _dollar(names: Iterable[str]) -> str:
    return ", ".join(f"${n}" for n in names)


@dataclass(frozen=True)
class ProtectState:
    """One load's engine, discovered names and file values, published together."""
    engine: Redactor
    names: tuple[str, ...] = ()
    file_values: Mapping[str, str] = field(default_factory=dict, repr=False)

    @classmethod
    def build(cls, collection: Collection, config: RedactorConfig) -> "ProtectState":
        return cls(
            engine=build_engine(collection.sensitive, config),
            names=collection.names,
            file_values=collection.file_values,
        )


@dataclass
class EnvProtectMiddleware:
    """Redacts tool results and renders the host-facing texts.

    ``reload`` replaces the whole ``ProtectState`` in one assignment, so a
    caller never pairs one load's names with another load's rules.
    """

    state: ProtectState
    config: RedactorConfig = field(default_factory=RedactorConfig)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False, compare=False)

    @classmethod
    def create(
        cls,
        collection: Collection,
        *,
        config: RedactorConfig | None = None,
    ) -> "EnvProtectMiddleware":
        """Factory — builds the engine once from a collection."""
        config = config or RedactorConfig()
        return cls(state=ProtectState.build(collection, config), config=config)

    @property
    def redactor(self) -> Redactor:
        return self.state.engine

    @property
    def names(self) -> tuple[str, ...]:
        return self.state.names

    @property
    def file_values(self) -> Mapping[str, str]:
        return self.state.file_values

    @property
    def marker_format(self) -> str:
        return self.config.marker_format

    def reload(self, collection: Collection) -> ProtectState:
        """Build a new state from ``collection`` and publish it."""
        fresh = ProtectState.build(collection, self.config)
        with self._lock:
            self.state = fresh
        logger.info(f"Middleware reloaded ({len(fresh.engine)} rule(s), {len(fresh.names)} name(s))")
        return fresh

    def redact_text(self, text: str) -> str:
        """Redact a single string (convenience)."""
        return self.redactor(text).text

    def after_tool(self, output: MutableMapping[str, Any]) -> list[str]:
        """Redact ``output["output"]`` and ``output["title"]`` in place.

        Returns the sorted names that were redacted in either field.
        """
        engine = self.redactor
        redacted: set[str] = set()
        for key in _TOOL_FIELDS:
            value = output.get(key)
            if isinstance(value, str) and value:
                result = engine(value)
                output[key] = result.text
                redacted.update(result.redacted_names)
        if redacted:
            logger.info(f"Tool output redacted: {_dollar(sorted(redacted))}")
        return sorted(redacted)

    def notice(self, names: Iterable[str]) -> str | None:
        """User-facing note listing redacted variables, or None if there are none."""
        names = sorted(set(names))
        if not names:
            return None
        return _NOTICE.format(names=_dollar(names))

    def system_instruction(self) -> str | None:
        """System prompt block listing the available variables."""
        names = self.names
        if not names:
            return None
        return _INSTRUCTION.format(
            names=_dollar(names),
            marker=self.marker_format.format(name="VAR_NAME"),
        )

    def export_environment(self, environ: MutableMapping[str, str] | None = None) -> list[str]:
        """Copy non-empty file values into ``environ`` without overwriting.

        Lets spawned shells reference ``$NAME`` directly.  Returns the names
        that were exported.
        """
        environ = os.environ if environ is None else environ
        exported: list[str] = []
        for name, value in self.file_values.items():
            if value and not environ.get(name):
                environ[name] = value
                exported.append(name)
        logger.debug(f"Exported {len(exported)} variable(s) to the environment")
        return exported

    @property
    def stats(self) -> dict:
        state = self.state
        return {
            "rules": len(state.engine),
            "names": list(state.names),
            "sensitive": state.engine.names,
        }
