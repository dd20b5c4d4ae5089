#!/usr/bin/env python3
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Install or update stopgate config at ~/.stopgate/settings.conf"
    )
    parser.add_argument("--enabled", choices=["0", "1"])
    parser.add_argument("--auto-commit", choices=["0", "1"])
    parser.add_argument("--compress", choices=["0", "1"])
    parser.add_argument("--reviewer-model")
    parser.add_argument("--summary-model")
    parser.add_argument("--commit-model")
    parser.add_argument("--log-dir")
    return parser.parse_args(argv)


ARG_KEYS = {
    "enabled": "STOPGATE_ENABLED",
    "auto_commit": "STOPGATE_AUTO_COMMIT",
    "compress": "REVIEWER_COMPRESS",
    "reviewer_model": "REVIEWER_MODEL",
    "summary_model": "SUMMARY_MODEL",
    "commit_model": "COMMIT_MESSAGE_MODEL",
    "log_dir": "STOPGATE_LOG_DIR",
}


def overrides_from_args(args: argparse.Namespace) -> dict[str, str]:
    overrides = {}
    for attr, key in ARG_KEYS.items():
        value = getattr(args, attr, None)
        if value:
            overrides[key] = value
    return overrides


def update_config_lines(lines: list[str], overrides: dict[str, str]) -> list[str]:
    seen = set()
    updated = []
    for line in lines:
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in line:
            updated.append(line)
            continue
        key, _ = line.split("=", 1)
        key = key.strip()
        if key.startswith("export "):
            key = key[len("export ") :].strip()
        if key in overrides:
            updated.append(f"{key}={overrides[key]}")
            seen.add(key)
        else:
            updated.append(line)
    for key, value in overrides.items():
        if key not in seen:
            updated.append(f"{key}={value}")
    return updated


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    env_root = os.environ.get("CLAUDE_PLUGIN_ROOT")
    plugin_root = Path(env_root).expanduser() if env_root else None
    if plugin_root is None or not plugin_root.is_dir():
        plugin_root = Path(__file__).resolve().parents[2]

    src = plugin_root / "config" / "settings.conf"
    if not src.is_file():
        print(f"Missing template config: {src}", file=sys.stderr)
        return 1

    dest = Path.home() / ".stopgate" / "settings.conf"
    dest.parent.mkdir(parents=True, exist_ok=True)

    # An existing install keeps its values; only passed flags change.
    base = dest if dest.is_file() else src
    template_lines = base.read_text(encoding="utf-8").splitlines()
    final_lines = update_config_lines(template_lines, overrides_from_args(args))
    dest.write_text("\n".join(final_lines) + "\n", encoding="utf-8")
    print(f"Wrote config: {dest}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
