#!/usr/bin/env python3
"""Create or update a tenant row in the configured engine store.

  python scripts/seed_demo_tenant.py --email owner@example.com --refresh-token TOKEN

Without --refresh-token the tenant is stored with its mailbox disconnected and
the poll job ignores it. Automation settings can be given as a JSON file with
the same camelCase keys the tenant settings screen writes.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dotenv import load_dotenv

load_dotenv(ROOT / ".env")

from inbox_engine.config import load_settings
from inbox_engine.schemas import parse_automation_settings
from inbox_engine.services.engine_store import TenantRecord, create_engine_store, new_id, utc_now


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed a tenant for the inbox automation engine.")
    parser.add_argument("--tenant-id", default=None, help="Existing tenant id to update (default: new id)")
    parser.add_argument("--email", required=True, help="Tenant mailbox address")
    parser.add_argument("--business-name", default="Demo Home Services")
    parser.add_argument("--business-type", default="plumbing")
    parser.add_argument("--refresh-token", default=None, help="OAuth refresh token from gmail_oauth_setup.py")
    parser.add_argument("--calendar-connected", action="store_true")
    parser.add_argument("--ai-limit", type=int, default=50, help="Monthly AI conversation limit (0 = unlimited)")
    parser.add_argument("--plan", default="starter")
    parser.add_argument("--settings-file", type=Path, default=None, help="Automation settings JSON file")
    args = parser.parse_args()

    raw_settings: dict = {}
    if args.settings_file is not None:
        raw_settings = json.loads(args.settings_file.read_text(encoding="utf-8"))
    automation = parse_automation_settings(raw_settings)

    settings = load_settings()
    store = create_engine_store(database_url=settings.database_url, sqlite_path=settings.engine_sqlite_path)
    tenant = store.upsert_tenant(
        TenantRecord(
            id=args.tenant_id or new_id(),
            email=args.email.strip().lower(),
            business_name=args.business_name,
            business_type=args.business_type,
            gmail_connected=bool(args.refresh_token),
            gmail_refresh_token=args.refresh_token,
            calendar_connected=args.calendar_connected,
            ai_limit=args.ai_limit or None,
            ai_last_reset_at=utc_now(),
            subscription_plan=args.plan,
            automation_settings_json=automation.model_dump_json(by_alias=True),
        )
    )

    print("Tenant stored:")
    print(f"  id:               {tenant.id}")
    print(f"  email:            {tenant.email}")
    print(f"  mailbox:          {'connected' if tenant.gmail_connected else 'not connected'}")
    print(f"  calendar:         {'connected' if tenant.calendar_connected else 'not connected'}")
    print(f"  ai limit:         {tenant.ai_limit or 'unlimited'}")
    print(f"  auto-approve:     {automation.ai_auto_approve}")
    print(f"  working hours:    {automation.working_hours_start}-{automation.working_hours_end} {automation.timezone}")


if __name__ == "__main__":
    main()
