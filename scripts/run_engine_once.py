#!/usr/bin/env python3
"""Run one engine cycle (poll, follow-ups or reminders) against the configured store.

  python scripts/run_engine_once.py poll
  python scripts/run_engine_once.py follow-ups --tenant <tenant-id> -v

Uses .env / load_settings() for the store, the AI provider and the Gmail OAuth
client. Prints the per-tenant outcome and, with -v, every pipeline step.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dotenv import load_dotenv

load_dotenv(ROOT / ".env")

from inbox_engine.agents.base import RunSummary
from inbox_engine.config import load_settings
from inbox_engine.engine import JOB_NAMES, build_engine


def main() -> None:
    parser = argparse.ArgumentParser(description="Run one inbox engine cycle and print the summary.")
    parser.add_argument("job", choices=JOB_NAMES)
    parser.add_argument("--tenant", default=None, help="Only run this tenant id")
    parser.add_argument("-v", "--verbose", action="store_true", help="Print pipeline steps")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    engine = build_engine(load_settings())
    job = engine.job(args.job)
    try:
        if args.tenant:
            tenant = engine.store.get_tenant(args.tenant)
            if tenant is None:
                print(f"Error: tenant {args.tenant} not found.", file=sys.stderr)
                sys.exit(1)
            summary = RunSummary(job=job.name, results=[job.run_one(tenant)])
        else:
            summary = job.run_all()
    finally:
        engine.close()

    print(f"--- {summary.job} ---")
    print(f"tenants processed: {summary.tenants_processed}  failed: {summary.tenants_failed}")
    for result in summary.results:
        counts = ", ".join(f"{k}={v}" for k, v in sorted(result.counts.items())) or "-"
        line = f"  {result.tenant_id}: {result.status} ({counts})"
        if result.error:
            line += f" error={result.error}"
        print(line)
        if args.verbose:
            for step in result.steps:
                print(f"    [{step.module}] {json.dumps(step.response, default=str)[:200]}")


if __name__ == "__main__":
    main()
