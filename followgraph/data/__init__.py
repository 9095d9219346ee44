"""Durable crawl state."""

from .crawl_store import (
    CrawlStore,
    CrawlTransaction,
    LevelBoundary,
    QueueEntry,
    TargetProgress,
    VertexEntry,
    VertexStatus,
    create_sqlite_engine,
    get_crawl_store,
)

__all__ = [
    "CrawlStore",
    "CrawlTransaction",
    "LevelBoundary",
    "QueueEntry",
    "TargetProgress",
    "VertexEntry",
    "VertexStatus",
    "create_sqlite_engine",
    "get_crawl_store",
]
