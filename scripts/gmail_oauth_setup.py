#!/usr/bin/env python3
"""Connect a tenant mailbox (and calendar) through the Google installed-app consent flow.

A browser opens on this machine; the tenant owner signs in and grants the mailbox
scopes. With --tenant-id the resulting tokens are written straight to that tenant
row in the configured engine store (re-enabling a mailbox that was disconnected
after repeated auth failures). Without it the refresh token is printed for
`scripts/seed_demo_tenant.py --refresh-token ...`.

  python scripts/gmail_oauth_setup.py --tenant-id TENANT
  python scripts/gmail_oauth_setup.py --no-calendar

Requires the optional `oauth` extra (google-auth-oauthlib).
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import replace
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dotenv import load_dotenv

load_dotenv(ROOT / ".env")

from inbox_engine.config import load_settings
from inbox_engine.services.calendar_service import CALENDAR_SCOPES
from inbox_engine.services.engine_store import create_engine_store
from inbox_engine.services.gmail_service import GMAIL_SCOPES, TOKEN_URI

AUTH_URI = "https://accounts.google.com/o/oauth2/auth"


def _client_config(client_id: str, client_secret: str, port: int) -> dict:
    return {
        "installed": {
            "client_id": client_id,
            "client_secret": client_secret,
            "redirect_uris": [f"http://localhost:{port}/"],
            "auth_uri": AUTH_URI,
            "token_uri": TOKEN_URI,
        }
    }


def main() -> None:
    settings = load_settings()
    parser = argparse.ArgumentParser(description="Grant mailbox/calendar access for one tenant.")
    parser.add_argument("--tenant-id", default=None, help="Store the tokens on this existing tenant")
    parser.add_argument("--client-id", default=settings.gmail_client_id)
    parser.add_argument("--client-secret", default=settings.gmail_client_secret)
    parser.add_argument("--port", type=int, default=8080, help="Local redirect port")
    parser.add_argument("--no-calendar", action="store_true", help="Request mailbox scopes only")
    args = parser.parse_args()

    client_id = (args.client_id or "").strip()
    client_secret = (args.client_secret or "").strip()
    if not client_id or not client_secret:
        print("Error: GMAIL_CLIENT_ID and GMAIL_CLIENT_SECRET are required.", file=sys.stderr)
        sys.exit(1)

    store = None
    tenant = None
    if args.tenant_id:
        store = create_engine_store(database_url=settings.database_url, sqlite_path=settings.engine_sqlite_path)
        tenant = store.get_tenant(args.tenant_id)
        if tenant is None:
            print(f"Error: tenant {args.tenant_id!r} not found; seed it first.", file=sys.stderr)
            sys.exit(1)

    try:
        from google_auth_oauthlib.flow import InstalledAppFlow
    except ImportError:
        print("Error: install the oauth extra: pip install -e '.[oauth]'", file=sys.stderr)
        sys.exit(1)

    with_calendar = not args.no_calendar
    scopes = GMAIL_SCOPES + CALENDAR_SCOPES if with_calendar else list(GMAIL_SCOPES)
    flow = InstalledAppFlow.from_client_config(
        _client_config(client_id, client_secret, args.port),
        scopes=scopes,
    )
    creds = flow.run_local_server(port=args.port, access_type="offline", prompt="consent")

    refresh_token = getattr(creds, "refresh_token", None)
    if not refresh_token:
        print("Error: Google returned no refresh token; revoke the app grant and retry.", file=sys.stderr)
        sys.exit(1)

    if store is None or tenant is None:
        print("\nConnect the tenant with:\n")
        calendar_flag = " --calendar-connected" if with_calendar else ""
        print(f"python scripts/seed_demo_tenant.py --email <mailbox> --refresh-token {refresh_token}{calendar_flag}\n")
        return

    store.upsert_tenant(
        replace(
            tenant,
            gmail_connected=True,
            gmail_refresh_token=refresh_token,
            gmail_access_token=creds.token,
            mail_failure_count=0,
            calendar_connected=with_calendar or tenant.calendar_connected,
        )
    )
    print(f"Tenant {tenant.id} mailbox connected ({tenant.email}); calendar={'on' if with_calendar else 'unchanged'}.")


if __name__ == "__main__":
    main()
