"""CLI entrypoint for the resumable follow-graph crawl."""
from __future__ import annotations

import argparse
import json
import logging
import random
import sys
from pathlib import Path
from typing import List, Optional

from followgraph.config import (
    DEFAULT_RATE_STATE_PATH,
    EDGE_MODES,
    FRONTIER_POLICIES,
    get_api_credentials,
    get_crawl_settings,
)
from followgraph.crawl import CrawlCoordinator, RateLimitedFetcher, crawl_session
from followgraph.logging_utils import setup_crawl_logging
from followgraph.remote import XAPIClient, XAPIClientConfig

LOGGER = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Crawl the follow graph from one or more starting accounts. "
            "Re-running resumes from the store; extra account ids become additional targets."
        )
    )
    parser.add_argument(
        "account_ids",
        nargs="*",
        type=int,
        help="Numeric account ids to start from (required on the first run).",
    )
    parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help="SQLite store path (falls back to CRAWL_DB_PATH env, default db.sqlite3).",
    )
    parser.add_argument(
        "--policy",
        choices=FRONTIER_POLICIES,
        default=None,
        help="Frontier policy for a new store: bfs (level order) or ratio (multi-target balance).",
    )
    parser.add_argument(
        "--edge-mode",
        choices=EDGE_MODES,
        default=None,
        help="BFS edge discipline: mutual (default) or followers.",
    )
    parser.add_argument(
        "--page-size",
        type=int,
        default=None,
        help="Ids requested per API page (falls back to PAGE_SIZE env, default 5000).",
    )
    parser.add_argument(
        "--bearer-token",
        type=str,
        default=None,
        help="X API bearer token (falls back to X_BEARER_TOKEN env or the credentials file).",
    )
    parser.add_argument(
        "--credentials",
        type=Path,
        default=None,
        help="JSON credentials file holding a bearer_token entry (default credentials.json).",
    )
    parser.add_argument(
        "--rate-state",
        type=Path,
        default=DEFAULT_RATE_STATE_PATH,
        help=f"Where the last rate-limit reset is persisted (default {DEFAULT_RATE_STATE_PATH}).",
    )
    parser.add_argument(
        "--max-inspections",
        type=int,
        default=None,
        help="Stop cleanly after this many inspected accounts (the store stays resumable).",
    )
    parser.add_argument(
        "--random-seed",
        type=int,
        default=None,
        help="Seed for the ratio policy's follower sampling (falls back to CRAWL_RANDOM_SEED env).",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Write the JSON crawl summary here instead of stdout.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARN", "ERROR", "CRITICAL"],
        help="Console logging verbosity (default INFO). File always logs DEBUG.",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Suppress console logging; only the log file is written.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    console_log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    setup_crawl_logging(console_level=console_log_level, quiet=args.quiet)

    settings = get_crawl_settings(
        db_path=args.db,
        frontier_policy=args.policy,
        edge_mode=args.edge_mode,
        page_size=args.page_size,
    )
    if args.bearer_token:
        bearer = args.bearer_token
    else:
        bearer = get_api_credentials(args.credentials).bearer_token

    seed = args.random_seed if args.random_seed is not None else settings.random_seed
    client_config = XAPIClientConfig(
        bearer_token=bearer,
        page_size=settings.page_size,
        rate_state_path=args.rate_state,
    )

    with crawl_session(
        settings.db_path,
        args.account_ids,
        frontier_policy=settings.frontier_policy,
        edge_mode=settings.edge_mode,
    ) as session, XAPIClient(client_config) as client:
        coordinator = CrawlCoordinator(
            session.store,
            session.build_frontier(rng=random.Random(seed)),
            RateLimitedFetcher(client),
            edge_mode=session.edge_mode,
        )
        try:
            summary = coordinator.run(max_inspections=args.max_inspections)
        except KeyboardInterrupt:
            LOGGER.warning("Interrupted by user; the store holds every committed inspection")
            coordinator.summary.status = "interrupted"
            _emit_summary(coordinator.summary.as_dict(), args.output)
            return 130

    _emit_summary(summary.as_dict(), args.output)
    return 0


def _emit_summary(summary: dict, output: Optional[Path]) -> None:
    payload = json.dumps(summary, indent=2)
    if output:
        output.write_text(payload)
    else:
        print(payload)


if __name__ == "__main__":
    sys.exit(main())
