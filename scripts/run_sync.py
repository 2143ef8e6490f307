#!/usr/bin/env python3
"""CLI script to run one deal sync without the HTTP server.

Usage:
    uv run python scripts/run_sync.py                      # dry run, first 1000 deals
    uv run python scripts/run_sync.py --write --all-deals  # full sync into deals_cache
    uv run python scripts/run_sync.py --write --clear-first --max-deals 500

Connects directly to the database and CRM using settings from the
environment or .env file. Prints the run summary as JSON and exits 1 if
the run fails or another run holds the sync lease.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys

# Ensure project root is on sys.path so we can import src.dealsync
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def run(args: argparse.Namespace) -> int:
    """Build the sync engine from settings and execute one run."""
    from src.dealsync.api.middleware.logging import configure_structlog
    from src.dealsync.api.v1.sync import execute_sync
    from src.dealsync.config import get_settings
    from src.dealsync.core.database import close_db, get_session, init_db
    from src.dealsync.deals.crm.activecampaign import ActiveCampaignSource
    from src.dealsync.deals.crm.sync import DealSyncEngine
    from src.dealsync.deals.repository import DealCacheRepository
    from src.dealsync.deals.schemas import SyncOptions

    settings = get_settings()
    configure_structlog()

    source = ActiveCampaignSource(
        base_url=settings.AC_BASE_URL,
        api_token=settings.AC_API_TOKEN,
        timeout=settings.SYNC_REQUEST_TIMEOUT_SECONDS,
    )
    try:
        if not args.dry_run:
            await init_db()
        repository = DealCacheRepository(session_factory=get_session)
        engine = DealSyncEngine(
            source=source,
            repository=repository,
            rate_limit=settings.rate_limit_config(),
            upsert=settings.upsert_config(),
            custom_field_map=settings.custom_field_map(),
            page_size=settings.SYNC_PAGE_SIZE,
            lock_ttl_seconds=settings.SYNC_LOCK_TTL_SECONDS,
        )
        options = SyncOptions(
            clear_first=args.clear_first,
            dry_run=args.dry_run,
            all_deals=args.all_deals,
            max_deals=args.max_deals,
        )
        status_code, body = await execute_sync(engine, options)
    finally:
        await source.aclose()
        await close_db()

    print(json.dumps(body, indent=2, ensure_ascii=False))
    return 0 if status_code == 200 else 1


def main() -> None:
    parser = argparse.ArgumentParser(description="Run one deal sync")
    parser.add_argument(
        "--write",
        dest="dry_run",
        action="store_false",
        help="Upsert into deals_cache (default is a dry run that writes nothing)",
    )
    parser.add_argument("--clear-first", action="store_true", help="Delete cached deals before writing")
    parser.add_argument("--all-deals", action="store_true", help="Ignore --max-deals and fetch every deal")
    parser.add_argument("--max-deals", type=int, default=1000, help="Deal cap when not using --all-deals")
    args = parser.parse_args()

    if args.clear_first and args.dry_run:
        parser.error("--clear-first requires --write")
    if args.max_deals < 1:
        parser.error("--max-deals must be at least 1")

    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
