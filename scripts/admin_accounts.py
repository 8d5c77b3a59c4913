#!/usr/bin/env python3
"""Operator commands for accounts and sessions.

Usage:
    # Clear a lockout (failed-attempt counter, locked flag, lock window):
    python scripts/admin_accounts.py unlock --email user@example.com

    # List an account's active sessions, most recently used first:
    python scripts/admin_accounts.py sessions --email user@example.com

    # Revoke every session of an account:
    python scripts/admin_accounts.py revoke-all --email user@example.com

    # Show recent audit events for an account:
    python scripts/admin_accounts.py audit --email user@example.com --limit 20

    # Delete expired sessions and single-use tokens:
    python scripts/admin_accounts.py purge-expired

Environment Variables:
    JWT_SECRET: Signing key (required, at least 32 characters)
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE / MEMORY_STORE_ROOT: use the JSON-backed memory store instead
"""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _resolve_account_id(runtime, email: str) -> Optional[str]:
    account = runtime.store.get_account_by_email(email)
    if account is None:
        print(f"Error: no account for {email}")
        return None
    return account.id


def cmd_unlock(runtime, args) -> int:
    account_id = _resolve_account_id(runtime, args.email)
    if not account_id:
        return 1
    if args.dry_run:
        print(f"[DRY RUN] Would unlock {args.email} (id: {account_id})")
        return 0
    account = runtime.sessions.unlock_account(account_id, actor_id=args.actor)
    print(
        f"Unlocked {account.email} (id: {account.id}); "
        f"failed attempts now {account.failed_login_attempts}"
    )
    return 0


def cmd_sessions(runtime, args) -> int:
    account_id = _resolve_account_id(runtime, args.email)
    if not account_id:
        return 1
    sessions = runtime.sessions.list_sessions(account_id)
    if not sessions:
        print("No active sessions.")
        return 0
    for session in sessions:
        print(
            f"{session.id}  last_used={session.last_used_at.isoformat()}  "
            f"expires={session.expires_at.isoformat()}  "
            f"ip={session.ip_address or '-'}  agent={session.user_agent or '-'}"
        )
    return 0


def cmd_revoke_all(runtime, args) -> int:
    account_id = _resolve_account_id(runtime, args.email)
    if not account_id:
        return 1
    if args.dry_run:
        count = len(runtime.sessions.list_sessions(account_id))
        print(f"[DRY RUN] Would revoke {count} session(s) for {args.email}")
        return 0
    count = runtime.sessions.revoke_all_other_sessions(account_id, None)
    print(f"Revoked {count} session(s) for {args.email}")
    return 0


def cmd_audit(runtime, args) -> int:
    from keyward.storage.models import AuditQuery

    account_id = _resolve_account_id(runtime, args.email)
    if not account_id:
        return 1
    events = runtime.sessions.list_audit_events(
        AuditQuery(account_id=account_id, limit=args.limit)
    )
    for event in events:
        print(
            json.dumps(
                {
                    "timestamp": event.timestamp.isoformat(),
                    "category": event.category.value,
                    "action": event.action,
                    "status": event.status.value,
                    "session_id": event.session_id,
                    "metadata": event.metadata,
                },
                default=str,
            )
        )
    return 0


def cmd_purge_expired(runtime, args) -> int:
    counts = runtime.sessions.purge_expired()
    print(f"Purged {counts['sessions']} session(s) and {counts['tokens']} token(s)")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Account and session administration for keyward",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    unlock = subparsers.add_parser("unlock", help="Clear an account lockout")
    unlock.add_argument("--email", required=True)
    unlock.add_argument("--actor", default=None, help="Admin account id recorded in the audit trail")
    unlock.add_argument("--dry-run", action="store_true")
    unlock.set_defaults(handler=cmd_unlock)

    sessions = subparsers.add_parser("sessions", help="List active sessions")
    sessions.add_argument("--email", required=True)
    sessions.set_defaults(handler=cmd_sessions)

    revoke_all = subparsers.add_parser("revoke-all", help="Revoke every session of an account")
    revoke_all.add_argument("--email", required=True)
    revoke_all.add_argument("--dry-run", action="store_true")
    revoke_all.set_defaults(handler=cmd_revoke_all)

    audit = subparsers.add_parser("audit", help="Show recent audit events")
    audit.add_argument("--email", required=True)
    audit.add_argument("--limit", type=int, default=50)
    audit.set_defaults(handler=cmd_audit)

    purge = subparsers.add_parser("purge-expired", help="Delete expired sessions and tokens")
    purge.set_defaults(handler=cmd_purge_expired)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    # Import here so configuration errors surface as a clean exit
    from keyward.logging import bind_request_context
    from keyward.service.errors import ServiceError
    from keyward.service.runtime import get_runtime

    bind_request_context(command=args.command)

    try:
        runtime = get_runtime()
    except ValueError as exc:
        print(f"Error: {exc}")
        return 1

    try:
        return args.handler(runtime, args)
    except ServiceError as exc:
        print(f"Error: {exc.message} ({exc.error_code})")
        return 1
    finally:
        runtime.audit.flush()


if __name__ == "__main__":
    sys.exit(main())
