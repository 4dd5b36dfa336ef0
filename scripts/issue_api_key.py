#!/usr/bin/env python3
"""
Issue a public API key against the configured key store.

Requires NEXUS_POSTGRES_DSN (or --dsn): keys issued into the in-memory store
would vanish when this process exits. The raw key is printed once and is not
recoverable afterwards; only its hash is stored.
"""

import argparse
import asyncio
import json
import os
import sys
from datetime import datetime, timedelta, timezone
from typing import Optional

sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from shared.config import get_config  # noqa: E402
from service_gateway.app.domain.api_key_gateway import ApiKeyGateway  # noqa: E402
from service_gateway.app.persistence.postgres import (  # noqa: E402
    PostgreSQLApiKeyStore,
    PostgreSQLPersistence,
)
from service_gateway.app.ratelimit.fixed_window import Tier  # noqa: E402


async def issue(
    *,
    dsn: str,
    tier: Tier,
    name: str,
    monthly_limit: Optional[int],
    per_minute_limit: Optional[int],
    expires_in_days: Optional[int],
    key_prefix: str,
) -> dict:
    """Create the key and return a printable summary."""
    persistence = PostgreSQLPersistence(dsn)
    store = PostgreSQLApiKeyStore(persistence)
    gateway = ApiKeyGateway(store, key_prefix=key_prefix)

    expires_at = None
    if expires_in_days is not None:
        expires_at = datetime.now(timezone.utc) + timedelta(days=expires_in_days)

    await store.start()
    try:
        raw_key, record = await gateway.issue_api_key(
            tier,
            name=name,
            monthly_limit=monthly_limit,
            per_minute_limit=per_minute_limit,
            expires_at=expires_at,
        )
    finally:
        await store.stop()

    return {
        "key_id": record.key_id,
        "api_key": raw_key,
        "tier": record.tier.value,
        "name": record.name,
        "monthly_limit": record.monthly_limit,
        "per_minute_limit": record.per_minute_limit,
        "expires_at": record.expires_at.isoformat() if record.expires_at else None,
    }


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Issue a SpaceNexus API key.")
    parser.add_argument("--tier", required=True, choices=[tier.value for tier in Tier], help="Key tier")
    parser.add_argument("--name", default="", help="Human-readable label for the key")
    parser.add_argument("--dsn", default=None, help="PostgreSQL DSN (defaults to NEXUS_POSTGRES_DSN)")
    parser.add_argument("--monthly-limit", type=int, default=None, help="Override the tier's monthly quota")
    parser.add_argument("--per-minute-limit", type=int, default=None, help="Override the tier's per-minute quota")
    parser.add_argument("--expires-in-days", type=int, default=None, help="Expire the key after N days")
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    config = get_config("gateway", 8000)
    dsn = args.dsn or config.postgres_dsn
    if not dsn:
        print("[issue-api-key] NEXUS_POSTGRES_DSN or --dsn is required", file=sys.stderr)
        return 2

    try:
        summary = asyncio.run(
            issue(
                dsn=dsn,
                tier=Tier(args.tier),
                name=args.name,
                monthly_limit=args.monthly_limit,
                per_minute_limit=args.per_minute_limit,
                expires_in_days=args.expires_in_days,
                key_prefix=config.api_key_prefix,
            )
        )
    except KeyboardInterrupt:
        return 130
    except Exception as exc:  # pragma: no cover - CLI surface
        print(f"[issue-api-key] failed: {exc}", file=sys.stderr)
        return 1

    print(json.dumps(summary, indent=2))
    print("[issue-api-key] Store this key now; it cannot be shown again.", file=sys.stderr)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
