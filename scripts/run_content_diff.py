from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
import sys

from contentsync.core.logging import configure_logging
from contentsync.services.jobs.content_diff import ContentDiffJobInput, run_content_diff_job


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Propagate a source snapshot into a public_* read table")
    parser.add_argument("--target", required=True, help="Target table, e.g. posts or organizations")
    parser.add_argument("--source", required=True, help="Path to a JSON array of source rows ('-' for stdin)")
    parser.add_argument("--org", default=None, help="Scope the diff to one organization id")
    parser.add_argument("--request-id", default=None, help="Idempotency key for this run")
    return parser


def _load_rows(source: str) -> list[dict]:
    raw = sys.stdin.read() if source == "-" else Path(source).read_text(encoding="utf-8")
    rows = json.loads(raw)
    if not isinstance(rows, list):
        raise ValueError("source must be a JSON array of objects")
    return rows


async def _run(args: argparse.Namespace) -> int:
    job_input = ContentDiffJobInput(
        target_table=args.target,
        source_data=_load_rows(args.source),
        organization_id=args.org,
        request_id=args.request_id,
    )
    result = await run_content_diff_job(job_input, runner="cli")
    print(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
    return 0 if result.success else 1


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_run(args))
    except Exception as exc:  # noqa: BLE001 - surface operator errors clearly
        print(f"run_content_diff failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
