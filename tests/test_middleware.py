"""Tests for the host side — middleware, config loading, CLI and HTTP sidecar."""

import io
import json
import logging
import sys, os
import threading
import urllib.error
import urllib.request
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

import pytest

from env_protect import (
    ConfigError, EnvProtectMiddleware, ProtectConfig, ProtectState,
    collect, create_middleware, load_config, load_from_yaml,
)
from env_protect import config as config_mod
from env_protect.cli import _build_config, build_parser, main
from env_protect.config import DEBUG_ENV, setup_logging, skip_reason
from env_protect.server import make_server

API_KEY = "sk-abc123def456"
TOKEN = "mytoken456xyzabc"


@pytest.fixture(autouse=True)
def no_debug_env(monkeypatch):
    monkeypatch.delenv(DEBUG_ENV, raising=False)


@pytest.fixture
def project(tmp_path):
    (tmp_path / ".git").mkdir()
    (tmp_path / ".env").write_text(
        f"API_KEY={API_KEY}\n"
        f"SESSION_TOKEN={TOKEN}\n"
        "API_URL=https://api.example.com\n"
    )
    return tmp_path


@pytest.fixture
def mw():
    return EnvProtectMiddleware.create(collect({
        "API_KEY": API_KEY,
        "SESSION_TOKEN": TOKEN,
        "API_URL": "https://api.example.com",
    }))


# ── Middleware ───────────────────────────────────────────────────────

def test_after_tool_redacts_output_and_title_in_place(mw):
    output = {
        "output": f"curl -H 'Authorization: Bearer {API_KEY}'",
        "title": f"token {TOKEN}",
        "metadata": {"exit": 0},
    }
    names = mw.after_tool(output)
    assert names == ["API_KEY", "SESSION_TOKEN"]
    assert output["output"] == "curl -H 'Authorization: Bearer [ENV:API_KEY was redacted]'"
    assert output["title"] == "token [ENV:SESSION_TOKEN was redacted]"
    assert output["metadata"] == {"exit": 0}


def test_after_tool_ignores_missing_and_non_string_fields(mw):
    output = {"output": None}
    assert mw.after_tool(output) == []
    assert output == {"output": None}


def test_notice(mw):
    assert mw.notice([]) is None
    text = mw.notice(["SESSION_TOKEN", "API_KEY", "API_KEY"])
    assert text.startswith("[ENV PROTECTED] Environment variables $API_KEY, $SESSION_TOKEN were redacted")
    assert API_KEY not in text


def test_system_instruction(mw):
    block = mw.system_instruction()
    assert "$API_KEY, $SESSION_TOKEN, $API_URL" in block
    assert "[ENV:VAR_NAME was redacted]" in block
    assert "NEVER read .env" in block
    assert API_KEY not in block


def test_system_instruction_without_names():
    assert EnvProtectMiddleware.create(collect({})).system_instruction() is None


def test_export_environment_does_not_overwrite(mw):
    environ = {"API_KEY": "already-set"}
    exported = mw.export_environment(environ)
    assert sorted(exported) == ["API_URL", "SESSION_TOKEN"]
    assert environ["API_KEY"] == "already-set"
    assert environ["SESSION_TOKEN"] == TOKEN


def test_middleware_reload(mw):
    mw.reload(collect({"NEW_SECRET": "brand-new-secret-value"}))
    assert mw.redact_text(API_KEY) == API_KEY
    assert mw.redact_text("brand-new-secret-value") == "[ENV:NEW_SECRET was redacted]"
    assert mw.names == ("NEW_SECRET",)


def test_reload_publishes_one_state():
    mw = EnvProtectMiddleware.create(collect({"A_TOKEN": "sk-aaaa1111"}))
    before = mw.state
    after = mw.reload(collect({"B_TOKEN": "sk-bbbb2222"}))
    assert isinstance(after, ProtectState)
    assert mw.state is after
    assert before.names == ("A_TOKEN",)
    assert before.engine.names == ["A_TOKEN"]
    assert after.names == ("B_TOKEN",)
    assert after.engine.names == ["B_TOKEN"]


def test_concurrent_reload_keeps_names_and_rules_paired():
    generations = [
        collect({"A_TOKEN": "sk-aaaa1111"}),
        collect({"B_TOKEN": "sk-bbbb2222"}),
    ]
    mw = EnvProtectMiddleware.create(generations[0])
    errors: list[dict] = []
    stop = threading.Event()

    def reader():
        while not stop.is_set():
            stats = mw.stats
            if stats["names"] != stats["sensitive"]:
                errors.append(stats)

    threads = [threading.Thread(target=reader) for _ in range(4)]
    for t in threads:
        t.start()
    for i in range(200):
        mw.reload(generations[i % 2])
    stop.set()
    for t in threads:
        t.join()
    assert errors == []



# ── Config ───────────────────────────────────────────────────────────

def test_load_config_defaults():
    cfg = load_config({})
    assert cfg == ProtectConfig(log_file=cfg.log_file)
    assert "API" not in cfg.key_patterns
    assert "PATH" in cfg.excluded_names


def test_load_config_nested_and_overrides():
    cfg = load_config({"env_protect": {
        "max_depth": 4,
        "precedence": "environment",
        "key_patterns": ["KEY", "API"],
        "excluded_names": ["PATH"],
        "require_git": False,
    }})
    assert cfg.max_depth == 4
    assert cfg.precedence == "environment"
    assert cfg.key_patterns == ("KEY", "API")
    assert cfg.excluded_names == frozenset({"PATH"})
    assert cfg.require_git is False


@pytest.mark.parametrize("data", [
    {"precedence": "whatever"},
    {"max_depth": -1},
    {"max_depth": "2"},
    {"key_patterns": "KEY"},
    {"key_patterns": ["("]},
    {"excluded_names": [1, 2]},
    {"env_protect": ["not", "a", "mapping"]},
])
def test_load_config_rejects_bad_values(data):
    with pytest.raises(ConfigError):
        load_config(data)


def test_load_from_yaml(tmp_path):
    path = tmp_path / "env-protect.yaml"
    path.write_text("env_protect:\n  max_depth: 1\n  include_environ: false\n")
    cfg = load_from_yaml(path)
    assert cfg.max_depth == 1
    assert cfg.include_environ is False


def test_load_from_yaml_invalid(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text("env_protect: [unclosed\n")
    with pytest.raises(ConfigError):
        load_from_yaml(path)


def test_create_middleware_requires_git(tmp_path):
    (tmp_path / ".env").write_text(f"API_KEY={API_KEY}\n")
    noop = create_middleware({}, tmp_path, environ={})
    output = {"output": API_KEY}
    assert noop.after_tool(output) == []
    assert output["output"] == API_KEY

    mw = create_middleware({"require_git": False}, tmp_path, environ={})
    assert mw.redact_text(API_KEY) == "[ENV:API_KEY was redacted]"


def test_create_middleware_disabled(project):
    noop = create_middleware({"enabled": False}, project, environ={})
    assert noop.redact_text(API_KEY) == API_KEY
    assert noop.system_instruction() is None


def test_noop_middleware_reload(tmp_path):
    noop = create_middleware({"enabled": False}, tmp_path, environ={})
    assert noop.reload(collect({"API_KEY": API_KEY})) is None
    assert noop.redact_text(API_KEY) == API_KEY
    assert noop.redactor(API_KEY).redacted_names == frozenset()
    assert noop.stats == {"rules": 0, "names": [], "sensitive": []}


def test_skip_reason(project, tmp_path):
    assert skip_reason(ProtectConfig(), project) is None
    assert skip_reason(ProtectConfig(enabled=False), project) == "disabled by config"
    bare = tmp_path / "bare"
    bare.mkdir()
    assert "no .git" in skip_reason(ProtectConfig(), bare)
    assert skip_reason(ProtectConfig(require_git=False), bare) is None



def test_create_middleware_uses_environment(project):
    mw = create_middleware({}, project, environ={"GITHUB_TOKEN": "ghp_envonly12345"})
    assert mw.redact_text("ghp_envonly12345") == "[ENV:GITHUB_TOKEN was redacted]"

    mw = create_middleware({"include_environ": False}, project, environ={"GITHUB_TOKEN": "ghp_envonly12345"})
    assert mw.redact_text("ghp_envonly12345") == "ghp_envonly12345"


def test_debug_log_file_has_names_not_values(project, tmp_path):
    log_file = tmp_path / "debug.log"
    cfg = ProtectConfig(debug=True, log_file=str(log_file), include_environ=False)
    pkg_logger = logging.getLogger("env_protect")
    level = pkg_logger.level
    try:
        mw = create_middleware(cfg, project)
        mw.after_tool({"output": f"leak {API_KEY}"})
        handler = setup_logging(cfg)   # returns the handler already attached
        handler.flush()
        content = log_file.read_text()
    finally:
        for h in list(pkg_logger.handlers):
            if isinstance(h, logging.FileHandler):
                pkg_logger.removeHandler(h)
                h.close()
        pkg_logger.setLevel(level)
    assert "API_KEY" in content
    assert API_KEY not in content


def test_debug_env_without_config_file(project, tmp_path, monkeypatch):
    log_file = tmp_path / "env-debug.log"
    monkeypatch.setenv(DEBUG_ENV, "1")
    monkeypatch.setattr(config_mod, "DEFAULT_LOG_FILE", str(log_file))
    assert _build_config(build_parser().parse_args(["scan"])).debug is True

    pkg_logger = logging.getLogger("env_protect")
    level = pkg_logger.level
    try:
        assert main(["--dir", str(project), "--no-environ", "names"]) == 0
        for h in pkg_logger.handlers:
            h.flush()
        content = log_file.read_text()
    finally:
        for h in list(pkg_logger.handlers):
            if isinstance(h, logging.FileHandler):
                pkg_logger.removeHandler(h)
                h.close()
        pkg_logger.setLevel(level)
    assert "SESSION_TOKEN" in content
    assert TOKEN not in content



# ── CLI ──────────────────────────────────────────────────────────────

def test_cli_names(project, capsys):
    assert main(["--dir", str(project), "--no-environ", "names"]) == 0
    out = json.loads(capsys.readouterr().out)
    assert out["all"] == ["API_KEY", "SESSION_TOKEN", "API_URL"]
    assert out["sensitive"] == ["SESSION_TOKEN", "API_KEY"]


def test_cli_scan(project, capsys):
    assert main(["--dir", str(project), "scan"]) == 0
    files = json.loads(capsys.readouterr().out)
    assert [os.path.basename(f) for f in files] == [".env"]


def test_cli_redact(project, capsys, monkeypatch):
    monkeypatch.setattr(sys, "stdin", io.StringIO(f"key={API_KEY}\n"))
    assert main(["--dir", str(project), "--no-environ", "redact"]) == 0
    captured = capsys.readouterr()
    assert captured.out == "key=[ENV:API_KEY was redacted]\n"
    assert "$API_KEY" in captured.err


def test_cli_redact_json(project, capsys, monkeypatch):
    monkeypatch.setattr(sys, "stdin", io.StringIO(f"{TOKEN} and {API_KEY}"))
    assert main(["--dir", str(project), "--no-environ", "redact-json"]) == 0
    out = json.loads(capsys.readouterr().out)
    assert out["redacted"] == ["API_KEY", "SESSION_TOKEN"]
    assert API_KEY not in out["text"]


def test_cli_check_does_not_echo_values(capsys):
    assert main(["check", "sk-abc123", "localhost", "postgres://u:S3cretPass99@db/app"]) == 0
    raw = capsys.readouterr().out
    out = json.loads(raw)
    assert [o["should_redact"] for o in out] == [True, False, True]
    assert [o["db_password_found"] for o in out] == [False, False, True]
    assert "sk-abc123" not in raw


def test_cli_bad_config(tmp_path, capsys):
    assert main(["--config", str(tmp_path / "missing.yaml"), "scan"]) == 2
    assert "env-protect:" in capsys.readouterr().err


def test_cli_disabled_by_config(project, capsys, monkeypatch):
    cfg = project / "env-protect.yaml"
    cfg.write_text("env_protect:\n  enabled: false\n  include_environ: false\n")
    monkeypatch.setattr(sys, "stdin", io.StringIO(f"x {API_KEY}"))
    assert main(["--config", str(cfg), "--dir", str(project), "redact"]) == 0
    captured = capsys.readouterr()
    assert captured.out == f"x {API_KEY}"
    assert captured.err == ""

    assert main(["--config", str(cfg), "--dir", str(project), "names"]) == 0
    assert json.loads(capsys.readouterr().out) == {"all": [], "sensitive": []}


def test_cli_requires_git(tmp_path, capsys, monkeypatch):
    (tmp_path / ".env").write_text(f"API_KEY={API_KEY}\n")
    monkeypatch.setattr(sys, "stdin", io.StringIO(API_KEY))
    assert main(["--dir", str(tmp_path), "--no-environ", "redact-json"]) == 0
    assert json.loads(capsys.readouterr().out) == {"text": API_KEY, "redacted": []}



# ── HTTP sidecar ─────────────────────────────────────────────────────

@pytest.fixture
def start_sidecar():
    servers = []

    def start(directory, config):
        server = make_server(directory, config, port=0)
        threading.Thread(target=server.serve_forever, daemon=True).start()
        servers.append(server)
        return f"http://127.0.0.1:{server.server_port}"

    yield start
    for server in servers:
        server.shutdown()
        server.server_close()


@pytest.fixture
def sidecar(project, start_sidecar):
    return start_sidecar(project, ProtectConfig(include_environ=False)), project


def _call(url, body=None):
    data = None if body is None else json.dumps(body).encode("utf-8")
    req = urllib.request.Request(url, data=data, headers={"Content-Type": "application/json"})
    try:
        with urllib.request.urlopen(req, timeout=5) as resp:
            return resp.status, json.loads(resp.read())
    except urllib.error.HTTPError as e:
        return e.code, json.loads(e.read())


def test_sidecar_health_and_names(sidecar):
    base, _ = sidecar
    assert _call(f"{base}/health") == (200, {"status": "ok", "rules": 2})
    status, body = _call(f"{base}/names")
    assert status == 200
    assert body["sensitive"] == ["SESSION_TOKEN", "API_KEY"]


def test_sidecar_redact(sidecar):
    base, _ = sidecar
    status, body = _call(f"{base}/redact", {"text": f"key {API_KEY}"})
    assert status == 200
    assert body == {"text": "key [ENV:API_KEY was redacted]", "redacted": ["API_KEY"]}


def test_sidecar_redact_tool(sidecar):
    base, _ = sidecar
    status, body = _call(f"{base}/redact-tool", {"output": TOKEN, "title": "ls"})
    assert status == 200
    assert body["output"] == "[ENV:SESSION_TOKEN was redacted]"
    assert body["title"] == "ls"
    assert body["redacted"] == ["SESSION_TOKEN"]
    assert body["notice"].startswith("[ENV PROTECTED]")


def test_sidecar_reload(sidecar):
    base, project = sidecar
    (project / ".env.local").write_text("NEW_SECRET=another-secret-value-123\n")
    assert _call(f"{base}/reload", {}) == (200, {"status": "reloaded", "rules": 3})
    _, body = _call(f"{base}/redact", {"text": "another-secret-value-123"})
    assert body["redacted"] == ["NEW_SECRET"]


def test_sidecar_errors(sidecar):
    base, _ = sidecar
    assert _call(f"{base}/nope")[0] == 404
    req = urllib.request.Request(f"{base}/redact", data=b"{not json", method="POST")
    with pytest.raises(urllib.error.HTTPError) as exc:
        urllib.request.urlopen(req, timeout=5)
    assert exc.value.code == 400


def test_sidecar_rejects_non_object_bodies(sidecar):
    base, _ = sidecar
    for data in (b'["a", "list"]', b"\xff\xfe"):
        req = urllib.request.Request(f"{base}/redact", data=data, method="POST")
        with pytest.raises(urllib.error.HTTPError) as exc:
            urllib.request.urlopen(req, timeout=5)
        assert exc.value.code == 400


def test_sidecar_disabled_passes_through(project, start_sidecar):
    base = start_sidecar(project, ProtectConfig(enabled=False, include_environ=False))
    assert _call(f"{base}/health") == (200, {"status": "ok", "rules": 0})
    assert _call(f"{base}/redact", {"text": API_KEY}) == (200, {"text": API_KEY, "redacted": []})
    assert _call(f"{base}/names") == (200, {"all": [], "sensitive": []})
    assert _call(f"{base}/reload", {}) == (200, {"status": "reloaded", "rules": 0})


def test_sidecar_requires_git(tmp_path, start_sidecar):
    (tmp_path / ".env").write_text(f"API_KEY={API_KEY}\n")
    base = start_sidecar(tmp_path, ProtectConfig(include_environ=False))
    _, body = _call(f"{base}/redact", {"text": API_KEY})
    assert body == {"text": API_KEY, "redacted": []}

    # Once the directory becomes a repository, /reload turns protection on.
    (tmp_path / ".git").mkdir()
    assert _call(f"{base}/reload", {}) == (200, {"status": "reloaded", "rules": 1})
    _, body = _call(f"{base}/redact", {"text": API_KEY})
    assert body["redacted"] == ["API_KEY"]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
