"""Create or reopen the crawl store and rebuild the frontier from it."""
from __future__ import annotations

import logging
import os
import random
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Optional, Sequence, Tuple

from followgraph.crawl.coordinator import EDGE_MODE_FOLLOWERS, EDGE_MODE_MUTUAL
from followgraph.crawl.frontier import BfsLevelFrontier, CompletionRatioFrontier, Frontier
from followgraph.data.crawl_store import (
    CrawlStore,
    CrawlTransaction,
    LevelBoundary,
    VertexEntry,
    create_sqlite_engine,
)
from followgraph.remote.pages import FOLLOWERS, FRIENDS


LOGGER = logging.getLogger(__name__)

POLICY_BFS = "bfs"
POLICY_RATIO = "ratio"
META_FRONTIER_POLICY = "frontier_policy"
META_EDGE_MODE = "edge_mode"


class CrawlConfigurationError(RuntimeError):
    """Requested crawl settings contradict the store or are incomplete."""


@dataclass(frozen=True)
class CrawlSession:
    """An open store together with the crawl settings it was created with."""

    store: CrawlStore
    frontier_policy: str
    edge_mode: str
    created: bool

    @property
    def directions(self) -> Tuple[str, ...]:
        if self.edge_mode == EDGE_MODE_MUTUAL:
            return (FRIENDS, FOLLOWERS)
        return (FOLLOWERS,)

    def build_frontier(
        self,
        *,
        rng: Optional[random.Random] = None,
        on_level_complete: Optional[Callable[[Optional[int]], None]] = None,
    ) -> Frontier:
        if self.frontier_policy == POLICY_BFS:
            return BfsLevelFrontier(
                self.store, self.directions, on_level_complete=on_level_complete
            )
        return CompletionRatioFrontier(self.store, rng=rng)


def _resolve_settings(frontier_policy: Optional[str], edge_mode: Optional[str]) -> Tuple[str, str]:
    policy = frontier_policy or POLICY_BFS
    if policy == POLICY_RATIO:
        if edge_mode == EDGE_MODE_MUTUAL:
            raise CrawlConfigurationError("The mutual edge mode requires the bfs frontier policy")
        return policy, EDGE_MODE_FOLLOWERS
    return policy, edge_mode or EDGE_MODE_MUTUAL


def _seed_bfs(tx: CrawlTransaction, seeds: Sequence[int], fresh_queue: bool) -> int:
    new_ids = tx.upsert_vertices(seeds, distance=0)
    # With vertices still queued, the frontier starts them once the queue drains.
    if new_ids and fresh_queue:
        tx.clear_queue()
        tx.enqueue([*(VertexEntry(account_id) for account_id in new_ids), LevelBoundary()])
    return len(new_ids)


def _staging_path(path: Path) -> Path:
    return path.with_name(path.name + ".bootstrap")


def create_store(path: Path, seeds: Sequence[int], frontier_policy: str, edge_mode: str) -> CrawlStore:
    """First run: build and seed the store beside ``path``, then move it into place.

    ``path`` only ever holds a fully seeded store. A run killed mid-bootstrap
    leaves at most the staging file, which the next attempt overwrites.
    """

    if not seeds:
        raise CrawlConfigurationError("The first run needs at least one starting account id")

    path.parent.mkdir(parents=True, exist_ok=True)
    staging = _staging_path(path)
    staging.unlink(missing_ok=True)
    engine = create_sqlite_engine(staging)
    try:
        store = CrawlStore(engine)

        def _op(tx: CrawlTransaction) -> None:
            tx.set_meta(META_FRONTIER_POLICY, frontier_policy)
            tx.set_meta(META_EDGE_MODE, edge_mode)
            for account_id in seeds:
                tx.add_target(account_id)
            if frontier_policy == POLICY_BFS:
                _seed_bfs(tx, seeds, fresh_queue=True)
            else:
                tx.upsert_vertices(seeds)

        store.atomic("bootstrap", _op)
        store.close()
        os.replace(staging, path)
    except BaseException:
        engine.dispose()
        LOGGER.error("Bootstrap of %s failed; removing the partial store", path)
        staging.unlink(missing_ok=True)
        raise

    LOGGER.info(
        "Created crawl store %s (%s policy, %s edges) seeded with %s account(s)",
        path,
        frontier_policy,
        edge_mode,
        len(seeds),
    )
    return CrawlStore(create_sqlite_engine(path))


def add_targets(session: CrawlSession, account_ids: Sequence[int]) -> int:
    """Register further crawl targets on an existing store; returns how many were new."""

    if not account_ids:
        return 0
    fresh_queue = (
        session.frontier_policy == POLICY_BFS and session.store.count_queued_vertices() == 0
    )

    def _op(tx: CrawlTransaction) -> int:
        added = sum(1 for account_id in account_ids if tx.add_target(account_id))
        if session.frontier_policy == POLICY_BFS:
            _seed_bfs(tx, account_ids, fresh_queue=fresh_queue)
        else:
            tx.upsert_vertices(account_ids)
        return added

    added = session.store.atomic("add_targets", _op)
    LOGGER.info("Registered %s new target(s) out of %s given", added, len(account_ids))
    return added


def open_session(
    path: Path,
    seeds: Sequence[int] = (),
    *,
    frontier_policy: Optional[str] = None,
    edge_mode: Optional[str] = None,
) -> CrawlSession:
    """Create the store on first run, otherwise reopen it and register ``seeds`` as targets."""

    path = Path(path)
    if not path.exists():
        policy, mode = _resolve_settings(frontier_policy, edge_mode)
        store = create_store(path, seeds, policy, mode)
        return CrawlSession(store=store, frontier_policy=policy, edge_mode=mode, created=True)

    store = CrawlStore(create_sqlite_engine(path))
    try:
        meta = store.get_meta()
        stored_policy = meta.get(META_FRONTIER_POLICY)
        stored_mode = meta.get(META_EDGE_MODE)
        if stored_policy is None or stored_mode is None:
            raise CrawlConfigurationError(f"{path} has no crawl metadata; was it created by this tool?")
        if frontier_policy is not None and frontier_policy != stored_policy:
            raise CrawlConfigurationError(
                f"{path} was created with the {stored_policy} policy, not {frontier_policy}"
            )
        if edge_mode is not None and edge_mode != stored_mode:
            raise CrawlConfigurationError(
                f"{path} was created with the {stored_mode} edge mode, not {edge_mode}"
            )

        session = CrawlSession(
            store=store, frontier_policy=stored_policy, edge_mode=stored_mode, created=False
        )
        add_targets(session, seeds)
    except BaseException:
        store.close()
        raise

    LOGGER.info(
        "Resuming crawl store %s (%s policy, %s edges, %s queued)",
        path,
        stored_policy,
        stored_mode,
        store.count_queued_vertices() if stored_policy == POLICY_BFS else "derived",
    )
    return session


@contextmanager
def crawl_session(
    path: Path,
    seeds: Sequence[int] = (),
    *,
    frontier_policy: Optional[str] = None,
    edge_mode: Optional[str] = None,
) -> Iterator[CrawlSession]:
    """Scoped :func:`open_session`; the store is always closed on exit."""

    session = open_session(path, seeds, frontier_policy=frontier_policy, edge_mode=edge_mode)
    try:
        yield session
    finally:
        session.store.close()
