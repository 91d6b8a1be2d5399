#!/usr/bin/env python3
"""
Import a coach's class schedule into the ledger.

Reads a schedule file with one slot per line:

    # date       start  end    credits  instructor (optional)
    2025-03-03   09:00  10:00  10       Jane Smith
    2025-03-03   10:30  11:30  15

and creates an available class slot for each line through the class
registry, owned by the given coach. Times are wall-clock times in the
configured REFERENCE_TIMEZONE.

Usage:
    python scripts/import_schedule.py --coach-id COACH_ID --file schedule.txt
    python scripts/import_schedule.py --coach-id COACH_ID --file schedule.txt --dry-run

Requires:
    - .env file with Snowflake credentials (or SNOWFLAKE_MOCK_MODE=true)
"""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from courtbook.api.dependencies import build_ledger_from_settings  # noqa: E402
from courtbook.config.settings import get_settings  # noqa: E402
from courtbook.core.ledger import LedgerError  # noqa: E402
from courtbook.core.ledger.schedule import ScheduleEntry, load_timezone, parse_schedule  # noqa: E402

logger = logging.getLogger(__name__)


async def import_schedule(coach_id: str, entries: list[ScheduleEntry], dry_run: bool = False) -> bool:
    """
    Create a class slot for every entry.

    Returns True if every slot was created.
    """
    settings = get_settings()
    tz = load_timezone(settings.reference_timezone)

    if dry_run:
        print("\n=== DRY RUN - No classes will be created ===\n")
        for entry in entries:
            print(
                f"Would create: {entry.day.isoformat()} "
                f"{entry.start.strftime('%H:%M')}-{entry.end.strftime('%H:%M')} "
                f"({entry.credit_cost} credits) {entry.instructor_name or ''}".rstrip()
            )
        print(f"\nTotal: {len(entries)} classes")
        return True

    ledger = build_ledger_from_settings(settings)
    if not settings.snowflake_mock_mode:
        await ledger.store.ensure_table()
    await ledger.start()

    created = 0
    errors = 0
    try:
        for entry in entries:
            try:
                slot = await ledger.registry.create(
                    coach_id,
                    date=entry.day,
                    start_time=entry.start_datetime(tz),
                    end_time=entry.end_datetime(tz),
                    credit_cost=entry.credit_cost,
                    instructor_name=entry.instructor_name,
                )
                created += 1
                print(f"[OK] Created {slot.id}: {entry.day.isoformat()} {slot.class_time}")
            except (LedgerError, ValueError) as e:
                errors += 1
                print(f"[ERR] Error creating {entry.day.isoformat()} {entry.start}: {e}")
    finally:
        await ledger.shutdown()

    print("\n=== Import Complete ===")
    print(f"Created: {created}")
    print(f"Errors: {errors}")

    return errors == 0


def main():
    parser = argparse.ArgumentParser(description='Import a class schedule into the ledger')
    parser.add_argument('--coach-id', required=True, help='User id that will own the classes')
    parser.add_argument('--file', default='schedule.txt', help='Schedule file path')
    parser.add_argument('--dry-run', action='store_true', help='Parse only, don\'t create classes')
    args = parser.parse_args()

    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=get_settings().log_level.upper(),
    )

    # Find the schedule file
    filepath = Path(args.file)
    if not filepath.exists():
        # Try relative to project root
        filepath = Path(__file__).parent.parent / args.file

    if not os.path.exists(filepath):
        print(f"ERROR: Cannot find {args.file}")
        sys.exit(1)

    print(f"Parsing schedule from: {filepath}")
    entries = parse_schedule(filepath.read_text(encoding='utf-8'))
    print(f"Found {len(entries)} classes")

    if not entries:
        print("ERROR: No valid classes found in schedule file")
        sys.exit(1)

    # Show summary by day
    days: dict[str, int] = {}
    for entry in entries:
        key = entry.day.isoformat()
        days[key] = days.get(key, 0) + 1

    print("\nClasses by day:")
    for day, count in sorted(days.items()):
        print(f"  {day}: {count}")

    success = asyncio.run(import_schedule(args.coach_id, entries, dry_run=args.dry_run))

    sys.exit(0 if success else 1)


if __name__ == '__main__':
    main()
