from __future__ import annotations

import argparse
import asyncio
from datetime import date
import json
import sys

from contentsync.core.logging import configure_logging
from contentsync.services.jobs.citation_aggregation import CitationAggregationInput, run_citation_aggregation_job


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Aggregate AI citations per source for one organization period")
    parser.add_argument("--org", required=True, help="Organization id")
    parser.add_argument("--start", required=True, type=date.fromisoformat, help="Period start (YYYY-MM-DD, inclusive)")
    parser.add_argument("--end", required=True, type=date.fromisoformat, help="Period end (YYYY-MM-DD, exclusive)")
    parser.add_argument("--request-id", default=None, help="Override the default org:start:end idempotency key")
    return parser


async def _run(args: argparse.Namespace) -> int:
    job_input = CitationAggregationInput(
        organization_id=args.org,
        period_start=args.start,
        period_end=args.end,
        request_id=args.request_id,
    )
    result = await run_citation_aggregation_job(job_input, runner="cli")
    print(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
    return 0 if result.success else 1


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_run(args))
    except Exception as exc:  # noqa: BLE001 - surface operator errors clearly
        print(f"aggregate_citations failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
