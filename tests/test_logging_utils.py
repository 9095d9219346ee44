"""Unit tests for logging utilities.

Tests console filters and logging setup.
"""
from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path

import pytest

from followgraph.logging_utils import ColoredFormatter, Colors, ConsoleFilter, setup_crawl_logging


def _record(name: str, level: int, msg: str = "message") -> logging.LogRecord:
    return logging.LogRecord(
        name=name,
        level=level,
        pathname="",
        lineno=0,
        msg=msg,
        args=(),
        exc_info=None,
    )


@pytest.fixture
def restore_root_logger():
    root_logger = logging.getLogger()
    saved_handlers = root_logger.handlers[:]
    saved_level = root_logger.level
    yield root_logger
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()
    for handler in saved_handlers:
        root_logger.addHandler(handler)
    root_logger.setLevel(saved_level)


# ==============================================================================
# ConsoleFilter Tests
# ==============================================================================

@pytest.mark.unit
@pytest.mark.parametrize("level", [logging.WARNING, logging.ERROR, logging.CRITICAL])
def test_console_filter_allows_warnings_and_above(level):
    assert ConsoleFilter().filter(_record("some.random.module", level)) is True


@pytest.mark.unit
@pytest.mark.parametrize(
    "name, msg",
    [
        ("followgraph.crawl.coordinator", "inspecting user: 1, d = 0"),
        ("followgraph.crawl.coordinator", "Crawl exhausted: 5 inspected, 1 inaccessible"),
        ("followgraph.crawl.fetcher", "rate limited on followers of 1; sleeping 901 secs"),
        ("followgraph.crawl.frontier", "BFS level 2 complete"),
        ("followgraph.crawl.bootstrap", "Resuming crawl store db.sqlite3"),
        ("scripts.crawl_follow_graph", "anything from the script"),
        ("__main__.count_common_followers", "anything from the script"),
    ],
)
def test_console_filter_allows_crawl_progress(name, msg):
    """Inspection, throttling and level messages reach the console."""
    assert ConsoleFilter().filter(_record(name, logging.INFO, msg)) is True


@pytest.mark.unit
@pytest.mark.parametrize(
    "name, msg",
    [
        ("followgraph.data.crawl_store", "message"),
        ("followgraph.crawl.fetcher", "Fetched 10 followers of 1 in 2 page(s)"),
        ("followgraph.analysis.common_followers", "Computed common-follower counts"),
    ],
)
def test_console_filter_blocks_other_info(name, msg):
    assert ConsoleFilter().filter(_record(name, logging.INFO, msg)) is False


@pytest.mark.unit
def test_console_filter_blocks_debug():
    assert ConsoleFilter().filter(_record("followgraph.crawl.coordinator", logging.DEBUG)) is False


@pytest.mark.unit
def test_colored_formatter_wraps_line_in_level_color():
    formatter = ColoredFormatter("%(levelname)s %(message)s")

    line = formatter.format(_record("x", logging.WARNING, "slow down"))

    assert line.startswith(Colors.YELLOW)
    assert line.endswith(Colors.RESET)
    assert "WARNING slow down" in line


@pytest.mark.unit
def test_colored_formatter_highlights_level_boundaries():
    formatter = ColoredFormatter("%(message)s")

    line = formatter.format(_record("followgraph.crawl.frontier", logging.INFO, "BFS level 3 complete"))

    assert line == Colors.BOLD + Colors.MAGENTA + "BFS level 3 complete" + Colors.RESET


# ==============================================================================
# setup_crawl_logging() Tests
# ==============================================================================

@pytest.mark.unit
def test_setup_crawl_logging_quiet_mode(tmp_path: Path, restore_root_logger):
    """quiet=True should create only the file handler."""
    setup_crawl_logging(quiet=True, log_dir=tmp_path)

    handlers = restore_root_logger.handlers
    assert len(handlers) == 1
    assert isinstance(handlers[0], logging.handlers.RotatingFileHandler)
    assert handlers[0].level == logging.DEBUG
    assert (tmp_path / "crawl.log").exists()


@pytest.mark.unit
def test_setup_crawl_logging_console_handler_is_filtered(tmp_path: Path, restore_root_logger):
    setup_crawl_logging(console_level=logging.WARNING, log_dir=tmp_path / "logs")

    console = [
        handler
        for handler in restore_root_logger.handlers
        if not isinstance(handler, logging.handlers.RotatingFileHandler)
    ]
    assert len(console) == 1
    assert console[0].level == logging.WARNING
    assert any(isinstance(f, ConsoleFilter) for f in console[0].filters)
    assert isinstance(console[0].formatter, ColoredFormatter)
    assert (tmp_path / "logs").is_dir()


@pytest.mark.unit
def test_setup_crawl_logging_replaces_existing_handlers(tmp_path: Path, restore_root_logger):
    stray = logging.NullHandler()
    restore_root_logger.addHandler(stray)

    setup_crawl_logging(quiet=True, log_dir=tmp_path)

    assert stray not in restore_root_logger.handlers
    assert logging.getLogger("urllib3").level == logging.WARNING
