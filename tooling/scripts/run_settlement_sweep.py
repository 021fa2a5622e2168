"""Run one deferred-settlement sweep outside the API process.

Expires stale check-in sessions and lapsed pending grants, then re-evaluates
triggers for every outstanding (account, store) pair.

Example:
    python tooling/scripts/run_settlement_sweep.py --trigger cron
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Execute a settlement sweep once")
    parser.add_argument(
        "--trigger",
        default="manual",
        help="Label recorded on the sweep run to describe the invocation source.",
    )
    return parser.parse_args()


async def _run(trigger: str) -> dict[str, int]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from citycircle_api.db.session import async_session  # type: ignore import-position
    from citycircle_api.workers import SettlementSweepWorker  # type: ignore import-position

    worker = SettlementSweepWorker(async_session)  # type: ignore[arg-type]
    return await worker.run_once(triggered_by=trigger)


def main() -> int:
    args = parse_args()
    summary = asyncio.run(_run(args.trigger))
    logger.success(
        "Settlement sweep run completed",
        sessions_expired=summary.get("sessions_expired", 0),
        grants_expired=summary.get("grants_expired", 0),
        pairs_checked=summary.get("pairs_checked", 0),
        grants_unlocked=summary.get("grants_unlocked", 0),
        trigger=args.trigger,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
