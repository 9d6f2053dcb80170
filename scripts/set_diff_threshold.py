from __future__ import annotations

import argparse
import asyncio
import sys

from contentsync.persistence.db import SessionLocal
from contentsync.services.admin_settings import (
    DIFF_REBUILD_THRESHOLD_KEY,
    GLOBAL_SCOPE,
    parse_threshold_percent,
    set_admin_setting,
)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Set the content diff full-rebuild threshold")
    parser.add_argument("percent", type=float, help="Threshold percent (0-100); rebuild when diff rate exceeds it")
    parser.add_argument("--org", default=None, help="Organization id for a tenant override (default: global)")
    parser.add_argument("--actor", default="set_diff_threshold", help="Recorded as updated_by")
    return parser


async def _run(args: argparse.Namespace) -> int:
    threshold = parse_threshold_percent(args.percent)
    async with SessionLocal() as session:
        await set_admin_setting(
            session,
            DIFF_REBUILD_THRESHOLD_KEY,
            threshold,
            scope=args.org or GLOBAL_SCOPE,
            updated_by=args.actor,
        )
    print(f"{DIFF_REBUILD_THRESHOLD_KEY}={threshold} scope={args.org or GLOBAL_SCOPE}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_run(args))
    except Exception as exc:  # noqa: BLE001 - surface operator errors clearly
        print(f"set_diff_threshold failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
