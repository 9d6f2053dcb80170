from __future__ import annotations

import argparse
import asyncio
from datetime import timedelta

from contentsync.persistence.db import SessionLocal
from contentsync.services.job_ledger import complete_failure, list_stale_running


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="List job runs stuck in running")
    parser.add_argument("--older-than-minutes", type=int, default=60)
    parser.add_argument(
        "--fail",
        action="store_true",
        help="Mark listed runs failed with JOB_ABANDONED",
    )
    return parser


async def _run(args: argparse.Namespace) -> None:
    async with SessionLocal() as session:
        runs = await list_stale_running(session, older_than=timedelta(minutes=args.older_than_minutes))
        for run in runs:
            print(f"{run.id} job={run.job_name} key={run.idempotency_key} started_at={run.started_at}")
            if args.fail:
                await complete_failure(
                    session,
                    run.id,
                    "JOB_ABANDONED",
                    f"Marked failed by operator after {args.older_than_minutes} minutes in running",
                )
    print(f"stale_running={len(runs)}")


if __name__ == "__main__":
    asyncio.run(_run(_build_parser().parse_args()))
