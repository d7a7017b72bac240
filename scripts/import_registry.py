#!/usr/bin/env python3
"""
Bulk-load donors and recipients from JSON and run matching for each.

The JSON file holds {"donors": [...], "recipients": [...]}; each record uses
the same fields as the register-donor / register-recipient commands.

Usage:
    python scripts/import_registry.py --json data/registry.json --db data/organmatch.db
"""

import argparse
import json
from pathlib import Path
import sys

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from organmatch.app import register_donor, register_recipient
from organmatch.config import load_settings
from organmatch.database import get_session, init_database
from organmatch.errors import MatchingError
from organmatch.ledger import LoggingEventSink
from organmatch.orchestrator import MatchOrchestrator
from organmatch.storage import SqlRegistry


def import_registry(json_path: Path, db_path: Path, dry_run: bool = False) -> bool:
    """
    Import donors first, then recipients, matching each as it is stored.

    Args:
        json_path: Path to JSON file
        db_path: Path to SQLite database file
        dry_run: If True, don't write to database
    """
    print(f"Loading records from {json_path}...")
    with open(json_path) as f:
        data = json.load(f)

    donors = data.get("donors", [])
    recipients = data.get("recipients", [])
    print(f"Found {len(donors)} donors and {len(recipients)} recipients")

    if dry_run:
        print("\n[DRY RUN] Would import:")
        for i, record in enumerate(donors[:5], 1):
            print(f"  donor {i}. {record.get('name')} {record.get('blood_type')} {record.get('organ_type')}")
        for i, record in enumerate(recipients[:5], 1):
            print(f"  recipient {i}. {record.get('name')} {record.get('blood_type')} {record.get('organ_needed')}")
        return True

    print(f"\nInitializing database at {db_path}...")
    init_database(db_path)
    session = get_session(db_path)
    settings = load_settings()
    registry = SqlRegistry(session)
    orchestrator = MatchOrchestrator(
        registry,
        sink=LoggingEventSink(),
        acceptance_threshold=settings.acceptance_threshold,
        fully_waited_days=settings.fully_waited_days,
    )

    imported = 0
    skipped = 0
    matches = 0

    try:
        for kind, records, register in (
            ("donor", donors, register_donor),
            ("recipient", recipients, register_recipient),
        ):
            for record in records:
                try:
                    _, created, errors = register(registry, orchestrator, record)
                except MatchingError as e:
                    print(f"Error importing {kind} {record.get('name')}: {e}")
                    skipped += 1
                    continue
                if errors:
                    print(f"Skipping {kind} {record.get('name')}: {'; '.join(errors)}")
                    skipped += 1
                    continue
                imported += 1
                matches += len(created)
    finally:
        session.close()

    print("\nImport complete!")
    print(f"   Imported: {imported}")
    print(f"   Skipped:  {skipped}")
    print(f"   Matches:  {matches}")
    return True


def main():
    parser = argparse.ArgumentParser(description="Import donors and recipients from JSON")
    parser.add_argument("--json", type=Path, default=Path("data/registry.json"),
                        help="Path to JSON file")
    parser.add_argument("--db", type=Path, default=Path("data/organmatch.db"),
                        help="Path to SQLite database file")
    parser.add_argument("--dry-run", action="store_true",
                        help="Show what would be imported without writing")

    args = parser.parse_args()

    if not args.json.exists():
        print(f"JSON file not found: {args.json}")
        sys.exit(1)

    import_registry(args.json, args.db, dry_run=args.dry_run)


if __name__ == "__main__":
    main()
