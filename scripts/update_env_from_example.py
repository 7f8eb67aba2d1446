#!/usr/bin/env python3
"""Append variables documented in example.env that an existing .env lacks."""
from __future__ import annotations

import os
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
EXAMPLE_ENV_PATH = Path(os.environ.get("EXAMPLE_ENV_PATH", ROOT / "example.env"))
TARGET_ENV_PATH = Path(os.environ.get("ENV_TARGET_PATH", ROOT / ".env"))


def load_lines(path: Path) -> list[str]:
    if not path.exists():
        return []
    return path.read_text().splitlines()


def parse_key(line: str) -> str | None:
    # Commented-out assignments ("# KEY=value") are documented optional keys.
    stripped = line.strip().lstrip("#").strip()
    if "=" not in stripped or " " in stripped.split("=", 1)[0].strip():
        return None
    return stripped.split("=", 1)[0].strip() or None


def merge_env(example_path: Path, target_path: Path) -> list[str]:
    existing_lines = load_lines(target_path)
    existing_keys = {key for key in map(parse_key, existing_lines) if key}

    new_entries: list[str] = []
    for line in load_lines(example_path):
        if line.strip().startswith("#"):
            continue
        key = parse_key(line)
        if key and key not in existing_keys:
            new_entries.append(line)
            existing_keys.add(key)

    if not new_entries:
        return []

    if existing_lines and existing_lines[-1].strip():
        existing_lines.append("")
    existing_lines.append("# Added from example.env")
    existing_lines.extend(new_entries)

    target_path.parent.mkdir(parents=True, exist_ok=True)
    target_path.write_text("\n".join(existing_lines) + "\n")
    return [parse_key(entry) or "" for entry in new_entries]


def main() -> int:
    if not EXAMPLE_ENV_PATH.exists():
        print(f"example.env not found at {EXAMPLE_ENV_PATH}")
        return 1

    added = merge_env(EXAMPLE_ENV_PATH, TARGET_ENV_PATH)
    if not added:
        print("No new variables to add.")
        return 0
    print(f"Added {len(added)} variable(s) to {TARGET_ENV_PATH}: {', '.join(added)}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
