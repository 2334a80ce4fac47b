#!/usr/bin/env python3
"""
Dead letter administration.

Usage:
    python scripts/dead_letters.py stats
    python scripts/dead_letters.py list                      # oldest first
    python scripts/dead_letters.py list --type rank-update --limit 20
    python scripts/dead_letters.py list --json
    python scripts/dead_letters.py requeue dlq_3f2a...       # fresh attempt budget
"""
import argparse
import asyncio
import json
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv


def _print_entry(entry):
    flags = []
    if entry.reviewed_at:
        flags.append("reviewed")
    if entry.requeued_job_id:
        flags.append(f"requeued→{entry.requeued_job_id}")
    print(f"{entry.entry_id}  {entry.job_type:<20} {entry.original_job.payload.get('recipient', ''):<32} "
          f"attempts={entry.attempts_made}  failed_at={entry.failed_at:%Y-%m-%d %H:%M:%S}  {' '.join(flags)}")
    print(f"    {entry.error_message}")


async def run(args) -> int:
    from config.settings import load_settings
    from utils.logging import configure_logging
    from core.pipeline import NotificationPipeline
    from job_queue.dead_letter import DeadLetterFilter
    from job_queue.errors import QueueError

    settings = load_settings(args.config)
    configure_logging("WARNING", settings.log_json)
    pipeline = NotificationPipeline.from_settings(settings)
    await pipeline.start(workers=False)
    try:
        if args.command == "stats":
            stats = await pipeline.get_queue_stats()
            stats["events"] = await pipeline.get_event_stats()
            print(json.dumps(stats, indent=2, default=str))

        elif args.command == "list":
            entries = await pipeline.list_dead_letters(DeadLetterFilter(job_type=args.type, limit=args.limit))
            if args.json:
                print(json.dumps([e.to_dict() for e in entries], indent=2, default=str))
            elif not entries:
                print("No dead letters.")
            else:
                for entry in entries:
                    _print_entry(entry)

        elif args.command == "requeue":
            try:
                new_job_id = await pipeline.requeue_dead_letter(args.entry_id)
            except QueueError as e:
                print(f"Requeue failed: {e}", file=sys.stderr)
                return 1
            print(f"Requeued {args.entry_id} as {new_job_id}")
    finally:
        await pipeline.stop()
    return 0


def main():
    parser = argparse.ArgumentParser(description="Inspect and requeue dead-lettered notifications")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("stats", help="Queue, dead letter and event counts")

    list_cmd = sub.add_parser("list", help="List dead letters")
    list_cmd.add_argument("--type", default=None, help="Filter by notification type")
    list_cmd.add_argument("--limit", type=int, default=50)
    list_cmd.add_argument("--json", action="store_true", help="Print raw entries as JSON")

    requeue_cmd = sub.add_parser("requeue", help="Re-enqueue a dead letter with a fresh attempt budget")
    requeue_cmd.add_argument("entry_id")

    args = parser.parse_args()
    load_dotenv()
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
