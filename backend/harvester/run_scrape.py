#!/usr/bin/env python3
"""
Run one crawl job from the command line, without the API server.

Usage:
    cd backend
    python -m harvester.run_scrape URL [options]

Examples:
    python -m harvester.run_scrape "https://smartframe.com/search?searchQuery=paris" --max-items 10
    python -m harvester.run_scrape "https://smartframe.com/search?searchQuery=paris" --no-details --output out.json
    python -m harvester.run_scrape --list
"""

import asyncio
import argparse
import logging
import sys

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from api.database import Base
from api.export import ExportError, render_json
from api.jobs import JobStore
from harvester.base import InvalidConfiguration
from harvester.config import build_scrape_config, get_site_summary
from harvester.crawlers import StealthBrowser
from harvester.manager import ScrapeManager


def make_memory_store() -> JobStore:
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return JobStore(sessionmaker(autocommit=False, autoflush=False, bind=engine))


def list_sites():
    print("\nSupported galleries:\n")
    for site in get_site_summary():
        print(f"  {site['key']:12} {site['name']}  ({', '.join(site['hosts'])})")
    print()


async def run(args) -> int:
    try:
        config = build_scrape_config({
            'url': args.url,
            'maxItems': args.max_items,
            'extractDetails': not args.no_details,
            'autoScroll': not args.no_scroll,
            'scrollDelay': args.scroll_delay,
        })
    except InvalidConfiguration as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    store = make_memory_store()
    manager = ScrapeManager(store, StealthBrowser(headless=not args.headed))
    job = manager.start(config)

    try:
        while job.id in manager.list_running():
            await asyncio.sleep(1)
    except (KeyboardInterrupt, asyncio.CancelledError):
        manager.cancel(job.id)
        raise
    finally:
        await manager.shutdown()

    job = store.get(job.id)
    print(f"\n{'='*60}")
    print(f"Status: {job.status.value}  Records: {len(job.records)}")
    if job.error:
        print(f"Error: {job.error}")
    print(f"{'='*60}\n")

    try:
        body = render_json(job)
    except ExportError as e:
        print(str(e), file=sys.stderr)
        return 1

    if args.output:
        with open(args.output, 'w', encoding='utf-8') as f:
            f.write(body)
        print(f"Wrote {args.output}")
    else:
        print(body)
    return 0


def main():
    parser = argparse.ArgumentParser(description='Run one gallery crawl job')
    parser.add_argument('url', nargs='?', help='Listing page URL')
    parser.add_argument('--list', action='store_true', help='List supported galleries')
    parser.add_argument('--max-items', type=int, default=0, help='Stop after N items (0 = unlimited)')
    parser.add_argument('--no-details', action='store_true', help='Skip detail pages (network data only)')
    parser.add_argument('--no-scroll', action='store_true', help='Only sweep the first page')
    parser.add_argument('--scroll-delay', type=int, default=1000, help='Scroll delay in ms (500-5000)')
    parser.add_argument('--output', type=str, help='Write the JSON export to this file')
    parser.add_argument('--headed', action='store_true', help='Show the browser window')

    args = parser.parse_args()

    if args.list:
        list_sites()
        return

    if not args.url:
        parser.print_help()
        return

    sys.exit(asyncio.run(run(args)))


if __name__ == '__main__':
    main()
