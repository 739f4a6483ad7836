"""CLI interface for env-protect.

Usage:
    # List the .env files that would be read
    env-protect --dir . scan

    # Show discovered and sensitive variable names (never values)
    env-protect --dir . names

    # Redact text (stdin → stdout, redacted names on stderr)
    some-command 2>&1 | env-protect --dir . redact

    # Same, as JSON: {"text": ..., "redacted": [...]}
    some-command 2>&1 | env-protect --dir . redact-json

    # Check how individual values would be classified
    env-protect check "sk-abc123" "localhost" "postgres://u:S3cret99@db/app"

    # Run the HTTP sidecar
    env-protect --dir . serve --port 18792
"""

from __future__ import annotations
import argparse
import dataclasses
import json
import os
import sys
from pathlib import Path
from typing import Sequence

from .config import ConfigError, ProtectConfig, create_middleware, load_config, load_from_yaml, setup_logging
from .heuristics import extract_db_password, should_redact_value
from .scanner import scan_env_files


def _build_config(args: argparse.Namespace) -> ProtectConfig:
    cfg = load_from_yaml(args.config) if args.config else load_config({})
    overrides: dict = {}
    if args.max_depth is not None:
        overrides["max_depth"] = args.max_depth
    if args.no_environ:
        overrides["include_environ"] = False
    if args.debug:
        overrides["debug"] = True
    if overrides:
        cfg = dataclasses.replace(cfg, **overrides)
    return cfg


def _middleware(args: argparse.Namespace):
    return create_middleware(args.cfg, args.dir)


def cmd_scan(args: argparse.Namespace) -> int:
    """List env files under --dir."""
    files = scan_env_files(args.dir, args.cfg.max_depth)
    json.dump([str(f) for f in files], sys.stdout, indent=2)
    sys.stdout.write("\n")
    return 0


def cmd_names(args: argparse.Namespace) -> int:
    """Dump discovered names and the names that would be redacted."""
    stats = _middleware(args).stats
    json.dump({"all": stats["names"], "sensitive": stats["sensitive"]}, sys.stdout, indent=2)
    sys.stdout.write("\n")
    return 0


def cmd_redact(args: argparse.Namespace) -> int:
    """Redact stdin to stdout."""
    result = _middleware(args).redactor(sys.stdin.read())
    sys.stdout.write(result.text)
    if result.redacted_names:
        names = ", ".join(f"${n}" for n in sorted(result.redacted_names))
        sys.stderr.write(f"[ENV PROTECTED] redacted: {names}\n")
    return 0


def cmd_redact_json(args: argparse.Namespace) -> int:
    """Redact stdin and emit JSON with the names that were redacted."""
    result = _middleware(args).redactor(sys.stdin.read())
    json.dump(
        {"text": result.text, "redacted": sorted(result.redacted_names)},
        sys.stdout,
        ensure_ascii=False,
    )
    sys.stdout.write("\n")
    return 0


def cmd_check(args: argparse.Namespace) -> int:
    """Show how each value would be classified (values are not echoed)."""
    out = [
        {
            "index": i,
            "length": len(value),
            "should_redact": should_redact_value(value),
            "db_password_found": extract_db_password(value) is not None,
        }
        for i, value in enumerate(args.values)
    ]
    json.dump(out, sys.stdout, indent=2)
    sys.stdout.write("\n")
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the HTTP sidecar."""
    from .server import serve
    serve(args.dir, args.cfg, host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="env-protect",
        description="Redact .env secrets from text before it reaches an LLM",
    )
    parser.add_argument("--config", default=None, help="YAML config file")
    parser.add_argument("--dir", default=os.getcwd(), type=Path, help="Project directory to scan")
    parser.add_argument("--max-depth", type=int, default=None, help="Directory depth to scan")
    parser.add_argument("--no-environ", action="store_true", help="Ignore the process environment")
    parser.add_argument("--debug", action="store_true", help="Write a debug log")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("scan", help="List env files")
    sub.add_parser("names", help="List discovered and sensitive names")
    sub.add_parser("redact", help="Redact text (stdin)")
    sub.add_parser("redact-json", help="Redact text (stdin), JSON output")
    p_check = sub.add_parser("check", help="Classify values")
    p_check.add_argument("values", nargs="+")
    p_serve = sub.add_parser("serve", help="Run the HTTP sidecar")
    p_serve.add_argument("--host", default="127.0.0.1")
    p_serve.add_argument("--port", type=int, default=18792)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        args.cfg = _build_config(args)
    except (ConfigError, OSError) as e:
        sys.stderr.write(f"env-protect: {e}\n")
        return 2
    setup_logging(args.cfg)

    cmds = {
        "scan": cmd_scan,
        "names": cmd_names,
        "redact": cmd_redact,
        "redact-json": cmd_redact_json,
        "check": cmd_check,
        "serve": cmd_serve,
    }
    return cmds[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
