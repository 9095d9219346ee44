"""Crawl engine: fetching, frontier policies, coordination and bootstrap."""

from __future__ import annotations

from .bootstrap import (
    CrawlConfigurationError,
    CrawlSession,
    add_targets,
    crawl_session,
    open_session,
)
from .coordinator import CrawlCoordinator, CrawlSummary, compute_inspection
from .fetcher import FetchedIds, RateLimitedFetcher
from .frontier import BfsLevelFrontier, CompletionRatioFrontier, FrontierTask

__all__ = [
    "BfsLevelFrontier",
    "CompletionRatioFrontier",
    "CrawlConfigurationError",
    "CrawlCoordinator",
    "CrawlSession",
    "CrawlSummary",
    "FetchedIds",
    "FrontierTask",
    "RateLimitedFetcher",
    "add_targets",
    "compute_inspection",
    "crawl_session",
    "open_session",
]
