#!/usr/bin/env python3
"""
Merge registry gym records with crawled records.

Usage:
    python scripts/run_merge.py --authoritative data/gyms_raw.json --crawled data/crawled.json
    python scripts/run_merge.py --authoritative data/gyms_raw.json --crawled data/crawled.json --dry-run
    python scripts/run_merge.py --from-db --crawled data/crawled.json --save-db
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from config.logging import logger
from processing.fusion import MergeInputError, UnifiedMerger
from processing.store import GymStore, load_json_records, write_json_records


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Merge registry gym records with crawled sources"
    )
    parser.add_argument(
        "--authoritative",
        type=Path,
        help="JSON array of registry records (e.g. gyms_raw.json)",
    )
    parser.add_argument(
        "--from-db",
        action="store_true",
        help="Read registry records from the database instead of a file",
    )
    parser.add_argument(
        "--crawled",
        type=Path,
        required=True,
        help="JSON array of crawled records",
    )
    parser.add_argument(
        "--output",
        type=Path,
        help="Where to write merged records (default: overwrite --authoritative)",
    )
    parser.add_argument(
        "--conflicts",
        type=Path,
        help="Optional JSON file for the conflict log",
    )
    parser.add_argument(
        "--save-db",
        action="store_true",
        help="Replace the database collection with the merged records",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Merge and report without writing anything",
    )

    args = parser.parse_args()

    if not args.from_db and not args.authoritative:
        parser.error("one of --authoritative or --from-db is required")

    db = None
    try:
        if args.from_db or args.save_db:
            from processing.database import SessionLocal, init_db
            init_db()
            db = SessionLocal()

        try:
            if args.from_db:
                authoritative = GymStore(db).load_records()
            else:
                authoritative = load_json_records(args.authoritative)
            crawled = load_json_records(args.crawled)
        except (OSError, ValueError) as e:
            logger.error(f"Could not read input: {e}")
            return 1

        logger.info(f"Mode: {'DRY RUN' if args.dry_run else 'LIVE'}")

        try:
            result = UnifiedMerger().merge(authoritative, crawled)
        except MergeInputError as e:
            logger.error(f"Invalid input: {e}")
            return 1

        result.statistics.log_summary()
        logger.info(f"Conflicts logged: {len(result.conflicts)}")

        if args.dry_run:
            return 0

        payload = result.to_dict()
        output = args.output or args.authoritative
        if output:
            write_json_records(output, payload["merged"])
        if args.conflicts:
            write_json_records(args.conflicts, payload["conflicts"])
        if args.save_db:
            GymStore(db).replace_records(payload["merged"])

        return 0

    finally:
        if db is not None:
            db.close()


if __name__ == "__main__":
    sys.exit(main())
