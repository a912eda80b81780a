"""Alembic wrapper for profile store migrations."""

import argparse
import sys
from pathlib import Path

from alembic import command
from alembic.config import Config

ALEMBIC_INI = Path(__file__).resolve().parent.parent / "alembic.ini"


def _config() -> Config:
    config = Config(str(ALEMBIC_INI))
    config.set_main_option("script_location", str(ALEMBIC_INI.parent / "alembic"))
    return config


def main() -> int:
    """Dispatch to the requested Alembic command."""
    parser = argparse.ArgumentParser(description="Manage database migrations")
    subcommands = parser.add_subparsers(dest="command")

    upgrade = subcommands.add_parser("upgrade", help="Upgrade to a revision (default: head)")
    upgrade.add_argument("revision", nargs="?", default="head")

    downgrade = subcommands.add_parser("downgrade", help="Downgrade to a revision")
    downgrade.add_argument("revision")

    create = subcommands.add_parser("create", help="Autogenerate a new revision")
    create.add_argument("message", nargs="+")

    subcommands.add_parser("current", help="Show the current revision")

    args = parser.parse_args()
    config = _config()

    try:
        if args.command == "downgrade":
            print(f"Downgrading to {args.revision}...")
            command.downgrade(config, args.revision)
        elif args.command == "create":
            message = " ".join(args.message)
            print(f"Creating migration: {message}")
            command.revision(config, message=message, autogenerate=True)
        elif args.command == "current":
            command.current(config, verbose=True)
        else:
            revision = getattr(args, "revision", "head")
            print(f"Upgrading to {revision}...")
            command.upgrade(config, revision)
    except Exception as e:
        print(f"✗ Migration command failed: {e}", file=sys.stderr)
        return 1

    print("✓ Done")
    return 0


if __name__ == "__main__":
    sys.exit(main())
