#!/usr/bin/env python3
"""Move Kite, identity and cron secrets from ``.env`` into the OS keychain.

Only keys listed in ``CREDENTIAL_KEYS`` are touched. With ``--clean`` the
moved lines are removed from ``.env``; comments and non-secret settings
stay where they are.

Usage:
    python -m scripts.migrate_env_to_keychain
    python -m scripts.migrate_env_to_keychain --clean --env-file ../.env
"""

import argparse
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import dotenv_values

from services.credential_manager import CREDENTIAL_KEYS, get_credential, set_credential


@dataclass
class MigrationReport:
    stored: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)  # keychain already holds the same value
    missing: list[str] = field(default_factory=list)  # empty or absent in .env
    failed: list[str] = field(default_factory=list)

    @property
    def in_keychain(self) -> list[str]:
        return self.stored + self.unchanged


def collect(env_path: Path) -> MigrationReport:
    """Store every non-empty credential from ``env_path`` in the keychain."""
    values = dotenv_values(env_path)
    report = MigrationReport()

    for key in sorted(CREDENTIAL_KEYS):
        value = values.get(key)
        if not value:
            report.missing.append(key)
        elif get_credential(key) == value:
            report.unchanged.append(key)
        elif set_credential(key, value):
            report.stored.append(key)
        else:
            report.failed.append(key)
    return report


def print_report(report: MigrationReport) -> None:
    sections = [
        ("Stored in keychain", "+", report.stored),
        ("Already in keychain", "=", report.unchanged),
        ("Not set in .env", "-", report.missing),
        ("Failed", "!", report.failed),
    ]
    print()
    print("Keychain migration")
    print("-" * 40)
    for title, marker, keys in sections:
        if keys:
            print(f"  {title} ({len(keys)}):")
            for key in keys:
                print(f"    {marker} {key}")
    print()


def remove_keys(env_path: Path, keys: list[str]) -> int:
    """Drop ``KEY=...`` lines for ``keys`` from ``env_path``.

    Returns:
        Number of lines removed.
    """
    pattern = re.compile(r"^\s*(?:export\s+)?(" + "|".join(map(re.escape, keys)) + r")\s*=")
    lines = env_path.read_text().splitlines(keepends=True)
    kept = [line for line in lines if not pattern.match(line)]
    env_path.write_text("".join(kept))
    return len(lines) - len(kept)


def migrate(env_path: Path, clean: bool = False) -> MigrationReport:
    """Migrate credentials and optionally clean the ``.env`` file."""
    if not env_path.exists():
        print(f"No .env file found at {env_path}")
        sys.exit(1)

    report = collect(env_path)
    print_report(report)

    if clean:
        if report.in_keychain:
            removed = remove_keys(env_path, report.in_keychain)
            print(f"Removed {removed} line(s) from {env_path}")
        else:
            print("Nothing to remove from .env")
    return report


def main():
    parser = argparse.ArgumentParser(description="Move secrets from .env into the OS keychain")
    parser.add_argument("--clean", action="store_true", help="Remove migrated lines from .env")
    parser.add_argument(
        "--env-file",
        type=Path,
        default=Path(__file__).parent.parent / ".env",
        help="Path to the .env file (default: backend/.env)",
    )
    args = parser.parse_args()
    migrate(args.env_file, clean=args.clean)


if __name__ == "__main__":
    main()
