"""Report catalog rows whose download roots no longer line up with the disk.

Flags:
- Account entities whose directory is missing
- Account entities whose directory lacks the marker file
- List entities whose directory is missing

Read-only: nothing in the catalog or on disk is modified.

Usage:
    python -m scripts.audit_catalog [--db-path PATH] [--show-all]
"""
import argparse
import logging
from pathlib import Path

from sqlalchemy import text

from tmd_catalog.config import CatalogSettings, get_catalog_settings
from tmd_catalog.data.entity_store import create_catalog_engine
from tmd_catalog.data.paths import directory_exists, has_marker
from tmd_catalog.logging_utils import setup_catalog_logging

LOGGER = logging.getLogger("scripts.audit_catalog")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Check catalog download roots against the filesystem"
    )
    parser.add_argument(
        "--db-path",
        type=str,
        default=None,
        help="Path to the catalog SQLite database (default: CATALOG_DB_PATH)",
    )
    parser.add_argument(
        "--show-all",
        action="store_true",
        help="List every flagged row (not just the summary)",
    )
    return parser.parse_args(argv)


def audit_catalog(settings: CatalogSettings):
    """Return a dict of flagged rows, keyed by issue."""
    engine = create_catalog_engine(settings)
    issues = {
        "account_missing_dir": [],
        "account_missing_marker": [],
        "list_missing_dir": [],
    }
    with engine.connect() as conn:
        rows = conn.execute(
            text("SELECT id, account_id, name, parent_dir FROM account_entities ORDER BY id")
        ).fetchall()
        for row in rows:
            if not directory_exists(row.parent_dir):
                issues["account_missing_dir"].append(row)
            elif not has_marker(row.parent_dir):
                issues["account_missing_marker"].append(row)

        rows = conn.execute(
            text("SELECT id, list_id, name, parent_dir FROM list_entities ORDER BY id")
        ).fetchall()
        for row in rows:
            if not directory_exists(row.parent_dir):
                issues["list_missing_dir"].append(row)
    engine.dispose()
    return issues


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_catalog_logging(console_level=logging.INFO)

    settings = get_catalog_settings()
    if args.db_path:
        settings = CatalogSettings(
            path=Path(args.db_path).expanduser().resolve(),
            max_attempts=settings.max_attempts,
        )
    if not settings.path.exists():
        LOGGER.error("Catalog database not found: %s", settings.path)
        return 1

    issues = audit_catalog(settings)
    print("=" * 80)
    print("CATALOG AUDIT")
    print("=" * 80)
    print(f"Account entities with missing directory: {len(issues['account_missing_dir']):,}")
    print(f"Account entities without marker file:    {len(issues['account_missing_marker']):,}")
    print(f"List entities with missing directory:    {len(issues['list_missing_dir']):,}")

    if args.show_all:
        for issue, rows in issues.items():
            if not rows:
                continue
            print()
            print(issue)
            print("-" * 80)
            for row in rows:
                owner = row._mapping.get("account_id", row._mapping.get("list_id"))
                print(f"  #{row.id} owner={owner} {row.name!r}: {row.parent_dir}")

    flagged = sum(len(rows) for rows in issues.values())
    LOGGER.info("Audit finished: %s flagged rows", flagged)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
