"""HTTP sidecar server for env-protect.

Runs as a lightweight stdlib HTTP server on localhost.  A host that
cannot embed Python calls this via HTTP instead of spawning a process
per tool call.

Endpoints:
    GET  /health       — Health check
    GET  /names        — Discovered and sensitive variable names
    POST /redact       — Redact plain text      {"text": "..."}
    POST /redact-tool  — Redact a tool result   {"output": "...", "title": "..."}
    POST /reload       — Rescan env files and swap in a new engine

All endpoints expect/return JSON.  Raw values are never returned.
"""

from __future__ import annotations
import json
import logging
import os
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any

from .config import ProtectConfig, create_middleware, load_collection, load_config, setup_logging, skip_reason
from .middleware import EnvProtectMiddleware

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = int(os.environ.get("ENV_PROTECT_PORT", "18792"))


class SidecarState:
    """Middleware for one project directory, rebuilt on /reload."""

    def __init__(self, directory: str | Path, config: ProtectConfig | None = None) -> None:
        self.directory = Path(directory)
        self.config = config or load_config({})
        self.middleware = create_middleware(self.config, self.directory)
        self._reload_lock = threading.Lock()

    def reload(self):
        # Serialise reloads; each swap itself is atomic.
        with self._reload_lock:
            if isinstance(self.middleware, EnvProtectMiddleware) and skip_reason(self.config, self.directory) is None:
                self.middleware.reload(load_collection(self.config, self.directory))
            else:
                # Gate state may have changed; rebuild from scratch.
                self.middleware = create_middleware(self.config, self.directory)
        return self.middleware


class EnvProtectHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the env-protect sidecar."""

    server: "SidecarServer"

    def _read_json(self) -> dict[str, Any]:
        """Parse the body as a JSON object.  Raises ValueError otherwise."""
        length = int(self.headers.get("Content-Length", 0))
        body = self.rfile.read(length)
        # JSONDecodeError and UnicodeDecodeError are both ValueErrors.
        data = json.loads(body.decode("utf-8")) if body else {}
        if not isinstance(data, dict):
            raise ValueError("request body must be a JSON object")
        return data

    def _respond(self, status: int, data: Any) -> None:
        body = json.dumps(data, ensure_ascii=False).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: Any) -> None:
        logger.debug(f"{self.address_string()} {format % args}")

    def do_GET(self) -> None:
        mw = self.server.state.middleware
        if self.path == "/health":
            self._respond(200, {"status": "ok", "rules": len(mw.redactor)})
        elif self.path == "/names":
            self._respond(200, {"all": list(mw.names), "sensitive": mw.redactor.names})
        else:
            self._respond(404, {"error": "not found"})

    def do_POST(self) -> None:
        try:
            body = self._read_json()
        except ValueError as e:
            self._respond(400, {"error": f"bad request: {e}"})
            return

        try:
            state = self.server.state
            mw = state.middleware

            if self.path == "/redact":
                text = body.get("text", "")
                result = mw.redactor(text)
                self._respond(200, {
                    "text": result.text,
                    "redacted": sorted(result.redacted_names),
                })

            elif self.path == "/redact-tool":
                output = {k: body[k] for k in ("output", "title") if k in body}
                names = mw.after_tool(output)
                self._respond(200, {**output, "redacted": names, "notice": mw.notice(names)})

            elif self.path == "/reload":
                mw = state.reload()
                self._respond(200, {"status": "reloaded", "rules": len(mw.redactor)})

            else:
                self._respond(404, {"error": "not found"})

        except Exception as e:
            logger.exception(f"Error handling {self.path}")
            self._respond(500, {"error": type(e).__name__})


class SidecarServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address: tuple[str, int], state: SidecarState) -> None:
        super().__init__(address, EnvProtectHandler)
        self.state = state


def make_server(
    directory: str | Path,
    config: ProtectConfig | None = None,
    host: str = DEFAULT_HOST,
    port: int = DEFAULT_PORT,
) -> SidecarServer:
    return SidecarServer((host, port), SidecarState(directory, config))


def serve(
    directory: str | Path,
    config: ProtectConfig | None = None,
    host: str = DEFAULT_HOST,
    port: int = DEFAULT_PORT,
) -> None:
    """Start the env-protect HTTP sidecar."""
    config = config or load_config({})
    setup_logging(config)
    server = make_server(directory, config, host, port)
    print(f"env-protect sidecar listening on http://{host}:{server.server_port}")
    print(f"  directory: {directory}")
    print(f"  rules: {len(server.state.middleware.redactor)}")
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        print("\nShutting down...")
    finally:
        server.server_close()
