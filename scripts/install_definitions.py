#!/usr/bin/env python3
"""
Install a lifecycle / approval definition set into a database.

Usage:
    python scripts/install_definitions.py TENANT [definition_file] [--create-tables]
    python scripts/install_definitions.py tenant-1 travel_request.yaml --dry-run

The definition file defaults to governance_config/sets/travel_request.yaml.
A bare file name is looked up in governance_config/sets/.  The database
URL comes from GOVERNANCE_DATABASE_URL (or DATABASE_URL).

The script:
  1. Loads and validates the definition file
  2. Prints its set id, version, and checksum
  3. Installs it for the tenant in one transaction (skipped with --dry-run)
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from governance_config.installer import install_definitions
from governance_config.loader import DEFAULT_SETS_DIR, load_definition_set
from governance_config.settings import load_settings
from governance_kernel.db.engine import create_tables, init_engine_from_url, session_scope
from governance_kernel.exceptions import DefinitionValidationError
from governance_kernel.logging_config import configure_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Install governance definitions")
    parser.add_argument("tenant_id", help="Tenant the definitions are installed for")
    parser.add_argument(
        "definition_file",
        nargs="?",
        default=str(DEFAULT_SETS_DIR / "travel_request.yaml"),
        help="YAML definition file (default: travel_request.yaml)",
    )
    parser.add_argument("--actor", default="system", help="Actor recorded on install")
    parser.add_argument("--database-url", help="Override the configured database URL")
    parser.add_argument("--create-tables", action="store_true", help="Create tables first")
    parser.add_argument("--dry-run", action="store_true", help="Validate only")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings()
    configure_logging(level=settings.log_level)

    try:
        definitions = load_definition_set(args.definition_file)
    except FileNotFoundError:
        print(f"Error: definition file not found: {args.definition_file}", file=sys.stderr)
        return 1
    except DefinitionValidationError as exc:
        print("VALIDATION FAILED:", file=sys.stderr)
        for err in exc.errors:
            print(f"  ERROR: {err}", file=sys.stderr)
        return 1

    print(f"set_id:   {definitions.set_id}")
    print(f"version:  {definitions.version}")
    print(f"checksum: {definitions.checksum[:16]}...")
    print(f"lifecycles: {len(definitions.lifecycles)}, "
          f"approval templates: {len(definitions.approval_templates)}")

    if args.dry_run:
        print("Dry run: nothing installed.")
        return 0

    init_engine_from_url(
        args.database_url or settings.database_url,
        echo=settings.echo,
        pool_size=settings.pool_size,
        max_overflow=settings.max_overflow,
    )
    if args.create_tables:
        create_tables()

    with session_scope() as session:
        installed = install_definitions(session, definitions, args.tenant_id, args.actor)

    for code, lifecycle_id in installed.lifecycles.items():
        print(f"  lifecycle {code}: {lifecycle_id}")
    for code, template_id in installed.approval_templates.items():
        print(f"  approval template {code}: {template_id}")
    print("Done.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
