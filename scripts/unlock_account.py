#!/usr/bin/env python3
"""Clear the failed-login counter and lockout of an account.

Usage:
    python scripts/unlock_account.py --email bob@example.com
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def unlock(email: str) -> bool:
    from tessera.service.runtime import get_runtime

    runtime = get_runtime()
    user = await asyncio.to_thread(runtime.store.get_user_by_email, email)
    if user is None:
        print(f"No account found for {email}")
        return False
    if not user.failed_login_attempts and user.locked_until is None:
        print(f"Account {email} is not locked")
        return True
    await runtime.sessions.unlock_account(user.id)
    print(
        f"Unlocked {email} (failed attempts were {user.failed_login_attempts}, "
        f"locked until {user.locked_until.isoformat() if user.locked_until else 'n/a'})"
    )
    return True


def main():
    parser = argparse.ArgumentParser(description="Unlock a Tessera account")
    parser.add_argument("--email", required=True, help="Email of the locked account")
    args = parser.parse_args()

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
    if not asyncio.run(unlock(args.email)):
        sys.exit(1)


if __name__ == "__main__":
    main()
