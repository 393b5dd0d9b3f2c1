#!/usr/bin/env python3
"""
Inspect and replay the pending-operation queue.

Mutations made while the CRM API was unreachable wait in the local queue
until the connectivity monitor replays them. This script does the same on
demand, and can drop the queued operations of an entity whose replay keeps
being rejected (it blocks only that entity, but never clears on its own).

Usage:
    python scripts/replay_pending.py --status
    python scripts/replay_pending.py --dry-run
    python scripts/replay_pending.py --execute
    python scripts/replay_pending.py --discard contact <id> [--execute]
"""
import sys
import asyncio
import logging
import argparse
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv
load_dotenv()

from crmsync.services.local_cache import get_local_cache
from crmsync.services.pending_queue import get_pending_queue
from crmsync.services.sync_coordinator import get_sync_coordinator

logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')
logger = logging.getLogger(__name__)


def show_status() -> dict:
    """Print queue and cache statistics."""
    queue_stats = get_pending_queue().get_statistics()
    cache_stats = get_local_cache().get_statistics()

    print(f"\nPending operations: {queue_stats['total_pending']}")
    for op_kind, count in sorted(queue_stats['by_op_kind'].items()):
        print(f"  {op_kind}: {count}")
    for entity_kind, count in sorted(queue_stats['by_entity_kind'].items()):
        print(f"  {entity_kind}: {count}")
    if queue_stats['oldest_enqueued_at']:
        print(f"Oldest queued at: {queue_stats['oldest_enqueued_at']}")

    print(f"\nCached snapshots: {cache_stats['total_snapshots']} "
          f"({cache_stats['tentative_count']} not yet confirmed)")
    for kind, count in sorted(cache_stats['by_kind'].items()):
        print(f"  {kind}: {count}")
    print()

    return {"queue": queue_stats, "cache": cache_stats}


def list_pending() -> int:
    """Print queued operations in replay order."""
    operations = get_pending_queue().all()
    print(f"\n{len(operations)} operation(s) would be replayed, in this order:\n")
    for op in operations:
        print(f"  {op.describe} (queued {op.enqueued_at.isoformat()})")
    print()
    return len(operations)


async def run_replay() -> dict:
    """Replay the queue once and log the report."""
    report = await get_sync_coordinator().replay_pending()

    logger.info(f"Replayed: {report.replayed}")
    logger.info(f"Remaining: {report.remaining}")
    if report.halted:
        logger.warning("Replay halted: CRM API unreachable")
    for entity in report.blocked:
        logger.warning(f"Blocked (rejected by server): {entity}")
    for error in report.errors:
        logger.warning(f"  {error}")

    return report.to_dict()


def discard(kind: str, entity_id: str, dry_run: bool = True) -> int:
    """Drop every queued operation for one entity."""
    operations = get_pending_queue().for_entity(kind, entity_id)
    for op in operations:
        logger.info(f"{'Would drop' if dry_run else 'Dropping'} {op.describe}")

    if dry_run:
        logger.info("DRY RUN - no changes made. Use --execute to apply.")
        return len(operations)

    return get_sync_coordinator().discard_pending(kind, entity_id)


def main():
    parser = argparse.ArgumentParser(description='Inspect and replay queued CRM mutations')
    parser.add_argument('--status', action='store_true', help='Show queue and cache statistics')
    parser.add_argument('--dry-run', action='store_true', help='List operations that would be replayed')
    parser.add_argument('--execute', action='store_true', help='Actually replay (or discard)')
    parser.add_argument('--discard', nargs=2, metavar=('KIND', 'ID'),
                        help='Drop queued operations for one entity')
    args = parser.parse_args()

    if args.status:
        show_status()
        return

    if args.discard:
        kind, entity_id = args.discard
        discard(kind, entity_id, dry_run=not args.execute)
        return

    if args.execute:
        asyncio.run(run_replay())
        return

    if args.dry_run:
        list_pending()
        return

    parser.print_help()
    print("\nExamples:")
    print("  python scripts/replay_pending.py --status")
    print("  python scripts/replay_pending.py --dry-run")
    print("  python scripts/replay_pending.py --execute")
    print("  python scripts/replay_pending.py --discard contact 42 --execute")


if __name__ == '__main__':
    main()
