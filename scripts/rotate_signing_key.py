#!/usr/bin/env python3
"""Retire the active signing key and activate a fresh one.

Tokens signed with the retired key keep verifying until the retention
window (SIGNING_KEY_RETENTION_MINUTES) elapses.

Usage:
    python scripts/rotate_signing_key.py
"""
from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def rotate() -> None:
    from tessera.service.runtime import get_runtime

    runtime = get_runtime()
    previous = await asyncio.to_thread(runtime.keys.get_active_key_pair)
    pair = await runtime.sessions.rotate_signing_key(reason="operator")
    print(f"Rotated signing key {previous.key_id} -> {pair.key_id} ({pair.algorithm})")


def main():
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
    asyncio.run(rotate())


if __name__ == "__main__":
    main()
