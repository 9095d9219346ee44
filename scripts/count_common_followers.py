"""Print, for every pair of targets, how many crawled accounts follow both."""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from followgraph.analysis import count_common_followers, write_tsv
from followgraph.config import get_crawl_settings
from followgraph.data import create_sqlite_engine

LOGGER = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Count common followers for each pair of targets")
    parser.add_argument(
        "targets",
        nargs="*",
        type=int,
        help="Account ids to pair up (defaults to the store's targets).",
    )
    parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help="SQLite store path (falls back to CRAWL_DB_PATH env, default db.sqlite3).",
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")

    db_path = get_crawl_settings(db_path=args.db).db_path
    if not db_path.exists():
        LOGGER.error("No crawl store at %s", db_path)
        return 1

    engine = create_sqlite_engine(db_path)
    try:
        results = count_common_followers(engine, args.targets or None)
    finally:
        engine.dispose()

    write_tsv(results, sys.stdout)
    return 0


if __name__ == "__main__":
    sys.exit(main())
