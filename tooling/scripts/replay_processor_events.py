"""Replay processor events whose reconciliation previously failed.

Intended usage: schedule via cron, or run by hand after an upstream outage.

Example:
    python tooling/scripts/replay_processor_events.py --limit 100
    python tooling/scripts/replay_processor_events.py --event-id <uuid> --force
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from uuid import UUID

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Replay failed processor events through the reconciliation engine")
    parser.add_argument(
        "--limit",
        type=int,
        default=50,
        help="Maximum number of flagged events replayed in this sweep.",
    )
    parser.add_argument(
        "--event-id",
        type=UUID,
        default=None,
        help="Replay a single ledger entry instead of sweeping flagged events.",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Replay the event even when its attempt cap is exhausted (requires --event-id).",
    )
    return parser.parse_args()


async def _run(limit: int, event_id: UUID | None, force: bool) -> dict[str, int]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "apps" / "api" / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from policy_billing_api.db.session import async_session  # type: ignore import-position
    from policy_billing_api.workers import ProcessorEventReplayWorker  # type: ignore import-position

    worker = ProcessorEventReplayWorker(async_session)  # type: ignore[arg-type]
    if event_id is not None:
        event = await worker.replay_event(event_id, force=force)
        return {str(event.status.value): 1}
    return await worker.process_pending(limit=limit)


def main() -> int:
    args = parse_args()
    if args.force and args.event_id is None:
        logger.error("--force requires --event-id")
        return 2
    summary = asyncio.run(_run(args.limit, args.event_id, args.force))
    logger.success(
        "Processor event replay completed",
        processed=summary.get("processed", 0),
        ignored=summary.get("ignored", 0),
        failed=summary.get("failed", 0),
        skipped=summary.get("skipped", 0),
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
