"""Command-line entry point for crawl executions.

Usage:
    python -m commitcrawl.cli run
    python -m commitcrawl.cli run --bootstrap --start-repo 100
    python -m commitcrawl.cli init-db
    python -m commitcrawl.cli stats
    python -m commitcrawl.cli sweep-leases

Environment Variables (can be set in .env file):
    GITHUB_API                   - API base URL (default: https://api.github.com)
    GITHUB_TOKEN                 - GitHub personal access token
    COMMITCRAWL_DB_PATH          - Path to SQLite database (default: ./data/commitcrawl.db)
    COMMITCRAWL_BOOTSTRAP        - Start a fresh scan instead of resuming (true/false)
    COMMITCRAWL_START_REPO       - First repository id of a fresh scan
    COMMITCRAWL_MAX_CONCURRENCY  - Ceiling on concurrently running executions
    COMMITCRAWL_RATE_FLOOR       - API calls held back from each execution's budget
    COMMITCRAWL_LEASE_TTL        - Seconds after which an execution lease is orphaned
    COMMITCRAWL_KILL_SWITCH_URL  - Endpoint answering whether to stop
    COMMITCRAWL_ERROR_WEBHOOK    - Endpoint receiving failure alerts
    COMMITCRAWL_REPO_DETAILS     - Fetch each repository object for its counters (true/false)
    COMMITCRAWL_COMMIT_DETAILS   - Fetch each commit object for its file stats (true/false)
"""

import argparse
import asyncio
import logging
import sqlite3
import sys
from pathlib import Path
from typing import List, Optional

from commitcrawl.crawler.config import CrawlerConfig
from commitcrawl.crawler.errors import ConfigError, StorageError


async def cmd_run(args, config: CrawlerConfig) -> int:
    """Run one execution."""
    from commitcrawl.crawler.orchestrator import CrawlOrchestrator

    report = await CrawlOrchestrator(config).run()

    print(f"Execution {report.outcome.value}")
    if report.reason:
        print(f"  Reason:        {report.reason}")
    if report.start is not None:
        print(f"  Started at:    repository {report.start.repository_id}")
    print(f"  API calls:     {report.calls}")
    print(f"  Repositories:  {report.repositories_written}")
    print(f"  New commits:   {report.commits_written}")
    if report.continuation_id:
        print(f"  Continuation:  {report.continuation_id}")

    return report.exit_code


async def cmd_init_db(args, config: CrawlerConfig) -> int:
    """Create (or, with --reset, recreate) the schema."""
    from commitcrawl.crawler.database import CrawlDatabase

    try:
        async with CrawlDatabase(config.db_path) as db:
            if args.reset:
                await db.reset_schema()
                print(f"Recreated all tables in {config.db_path}")
            else:
                print(f"Schema ready in {config.db_path}")
    except (StorageError, sqlite3.Error) as e:
        print(f"Error: {e}")
        return 1
    return 0


async def cmd_stats(args, config: CrawlerConfig) -> int:
    """Show crawl statistics, leases and pending continuations."""
    from commitcrawl.crawler.continuations import ContinuationStore
    from commitcrawl.crawler.database import CrawlDatabase
    from commitcrawl.crawler.leases import ConcurrencyRegistry

    if not config.db_path.exists():
        print(f"No database at {config.db_path}")
        return 1

    try:
        async with CrawlDatabase(config.db_path) as db:
            stats = await db.get_stats()
            leases = await ConcurrencyRegistry(
                db, config.max_concurrency, config.lease_ttl_seconds
            ).active()
            tasks = await ContinuationStore(db).pending()
    except (StorageError, sqlite3.Error) as e:
        print(f"Error: {e}")
        return 1

    print("=" * 60)
    print("CRAWL DATABASE STATISTICS")
    print("=" * 60)
    print(f"Repositories:          {stats['repositories']:,}")
    print(f"Commits:               {stats['commits']:,}")
    print(f"Highest repository id: {stats['highest_repository_id']}")
    print(f"Active leases:         {len(leases)} / {config.max_concurrency}")
    print(f"Pending continuations: {len(tasks)}")
    for task in tasks:
        print(f"  {task.id}  {task.discriminator:12} repository {task.repository_id}  lineage {task.lineage}")
    print("=" * 60)
    return 0


async def cmd_sweep_leases(args, config: CrawlerConfig) -> int:
    """Delete execution leases orphaned by killed executions."""
    from commitcrawl.crawler.database import CrawlDatabase
    from commitcrawl.crawler.leases import ConcurrencyRegistry

    try:
        async with CrawlDatabase(config.db_path) as db:
            registry = ConcurrencyRegistry(db, config.max_concurrency, config.lease_ttl_seconds)
            removed = await registry.sweep_expired()
    except (StorageError, sqlite3.Error) as e:
        print(f"Error: {e}")
        return 1
    print(f"Removed {removed} expired lease(s)")
    return 0


COMMANDS = {
    "run": cmd_run,
    "init-db": cmd_init_db,
    "stats": cmd_stats,
    "sweep-leases": cmd_sweep_leases,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Resumable, rate-bounded GitHub commit crawler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--db",
        default=None,
        help="Path to SQLite database (env: COMMITCRAWL_DB_PATH, default: ./data/commitcrawl.db)",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Run one crawl execution")
    run_parser.add_argument(
        "--bootstrap", action="store_true", default=None,
        help="Start a fresh scan instead of resuming (env: COMMITCRAWL_BOOTSTRAP)",
    )
    run_parser.add_argument(
        "--start-repo", type=int, dest="start_repository_id",
        help="First repository id of a fresh scan (env: COMMITCRAWL_START_REPO)",
    )
    run_parser.add_argument(
        "--max-concurrency", type=int,
        help="Ceiling on concurrently running executions (env: COMMITCRAWL_MAX_CONCURRENCY)",
    )
    run_parser.add_argument(
        "--rate-floor", type=int,
        help="API calls held back for bookkeeping (env: COMMITCRAWL_RATE_FLOOR)",
    )
    run_parser.add_argument(
        "--checkpoint-on-failure", action="store_true", default=None,
        help="Save a continuation at the failing call instead of failing without one",
    )
    run_parser.add_argument(
        "--reset", action="store_true", default=None, dest="reset_on_bootstrap",
        help="With --bootstrap, drop and recreate all tables first",
    )
    run_parser.add_argument(
        "--no-repo-details", action="store_false", default=None, dest="fetch_repo_details",
        help="Keep only the listing summary of each repository (env: COMMITCRAWL_REPO_DETAILS)",
    )
    run_parser.add_argument(
        "--no-commit-details", action="store_false", default=None, dest="fetch_commit_details",
        help="Skip per-commit fetches; file stats stay empty (env: COMMITCRAWL_COMMIT_DETAILS)",
    )

    init_parser = subparsers.add_parser("init-db", help="Create the database schema")
    init_parser.add_argument(
        "--reset", action="store_true", help="Drop and recreate all tables"
    )

    subparsers.add_parser("stats", help="Show statistics")
    subparsers.add_parser("sweep-leases", help="Remove expired execution leases")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    overrides = {"db_path": Path(args.db) if args.db else None}
    if args.command == "run":
        for name in (
            "bootstrap",
            "start_repository_id",
            "max_concurrency",
            "rate_floor",
            "checkpoint_on_failure",
            "reset_on_bootstrap",
            "fetch_repo_details",
            "fetch_commit_details",
        ):
            overrides[name] = getattr(args, name)

    try:
        config = CrawlerConfig.from_env(**overrides)
    except ConfigError as e:
        print(f"Error: {e}")
        return 1

    return asyncio.run(COMMANDS[args.command](args, config))


if __name__ == "__main__":
    sys.exit(main())
