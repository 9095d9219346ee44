"""Drive the select / fetch / classify / commit cycle over the frontier."""
from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

from followgraph.crawl.fetcher import RateLimitedFetcher
from followgraph.crawl.frontier import Frontier, FrontierTask
from followgraph.data.crawl_store import CrawlStore, CrawlTransaction
from followgraph.remote.pages import FOLLOWERS, FRIENDS, NotFound, Unauthorized


LOGGER = logging.getLogger(__name__)

EDGE_MODE_MUTUAL = "mutual"
EDGE_MODE_FOLLOWERS = "followers"


class CycleState(str, Enum):
    SELECT = "select"
    FETCH = "fetch"
    CLASSIFY = "classify"
    COMMIT = "commit"
    ADVANCE = "advance"
    DONE = "done"


@dataclass
class CrawlSummary:
    """Counters for one crawl process."""

    inspected: int = 0
    inaccessible: int = 0
    edges_added: int = 0
    vertices_discovered: int = 0
    levels_completed: int = 0
    status: str = "running"
    started_at: float = field(default_factory=time.time)
    duration_seconds: float = 0.0

    def as_dict(self) -> Dict[str, object]:
        payload = asdict(self)
        payload.pop("started_at")
        return payload


@dataclass(frozen=True)
class Inspection:
    """What one successful fetch adds to the store."""

    edges: List[Tuple[int, int]]
    neighbours: List[int]
    counts: Dict[str, int]


def compute_inspection(account_id: int, lists: Dict[str, List[int]], edge_mode: str) -> Inspection:
    """Turn the fetched lists of ``account_id`` into edges and newly seen accounts.

    With both directions in ``mutual`` mode only accounts present in both the
    followee and the follower list are kept, recorded as two directed rows.
    Otherwise every listed account yields one directed ``(follower, friend)`` row.
    """

    counts = {direction: len(ids) for direction, ids in lists.items()}
    friends = lists.get(FRIENDS)
    followers = lists.get(FOLLOWERS)

    if edge_mode == EDGE_MODE_MUTUAL and friends is not None and followers is not None:
        follower_set = set(followers)
        mutual = [w for w in dict.fromkeys(friends) if w in follower_set and w != account_id]
        edges: List[Tuple[int, int]] = []
        for w in mutual:
            edges.append((account_id, w))
            edges.append((w, account_id))
        return Inspection(edges=edges, neighbours=mutual, counts=counts)

    edges = []
    neighbours: List[int] = []
    if followers is not None:
        for x in dict.fromkeys(followers):
            if x != account_id:
                edges.append((x, account_id))
                neighbours.append(x)
    if friends is not None:
        for y in dict.fromkeys(friends):
            if y != account_id:
                edges.append((account_id, y))
                neighbours.append(y)
    return Inspection(edges=edges, neighbours=list(dict.fromkeys(neighbours)), counts=counts)


class CrawlCoordinator:
    """Inspect one account at a time until the frontier runs dry.

    Throttling is absorbed by the fetcher. ``Unauthorized``/``NotFound`` mark
    the account inaccessible and the crawl moves on. Every other error
    propagates: the store is consistent as of the last commit, so restarting
    the process resumes the crawl.
    """

    def __init__(
        self,
        store: CrawlStore,
        frontier: Frontier,
        fetcher: RateLimitedFetcher,
        *,
        edge_mode: str = EDGE_MODE_MUTUAL,
        summary: Optional[CrawlSummary] = None,
    ) -> None:
        self._store = store
        self._frontier = frontier
        self._fetcher = fetcher
        self._edge_mode = edge_mode
        self.summary = summary or CrawlSummary()
        self.state = CycleState.SELECT

    def run(self, max_inspections: Optional[int] = None) -> CrawlSummary:
        LOGGER.info("Starting crawl (edge mode: %s)", self._edge_mode)
        cycles = 0
        try:
            while max_inspections is None or cycles < max_inspections:
                if not self.step():
                    self.summary.status = "exhausted"
                    break
                cycles += 1
            else:
                self.summary.status = "limit_reached"
        finally:
            self.summary.levels_completed = getattr(self._frontier, "levels_completed", 0)
            self.summary.duration_seconds = round(time.time() - self.summary.started_at, 3)

        LOGGER.info(
            "Crawl %s: %s inspected, %s inaccessible, %s new accounts, %s new edges",
            self.summary.status,
            self.summary.inspected,
            self.summary.inaccessible,
            self.summary.vertices_discovered,
            self.summary.edges_added,
        )
        return self.summary

    def step(self) -> bool:
        """Run one full cycle; False once there is nothing left to inspect."""

        self.state = CycleState.SELECT
        if self._frontier.is_empty():
            self.state = CycleState.DONE
            return False
        # Stale queue entries can still leave nothing to inspect.
        task = self._frontier.next()
        if task is None:
            self.state = CycleState.DONE
            return False

        if task.distance is None:
            LOGGER.info("inspecting user: %s (%s)", task.account_id, "/".join(task.directions))
        else:
            LOGGER.info("inspecting user: %s, d = %s", task.account_id, task.distance)

        self.state = CycleState.FETCH
        outcome = self._fetcher.fetch_concurrently(task.account_id, task.directions)

        self.state = CycleState.CLASSIFY
        if isinstance(outcome, (Unauthorized, NotFound)):
            self._skip_inaccessible(task, outcome)
        else:
            inspection = compute_inspection(task.account_id, outcome, self._edge_mode)
            self.state = CycleState.COMMIT
            self._commit(task, inspection)

        self.state = CycleState.ADVANCE
        return True

    def _skip_inaccessible(self, task: FrontierTask, outcome) -> None:
        if isinstance(outcome, Unauthorized):
            LOGGER.warning(
                "unauthorized request for user %s; maybe a protected user (%s)",
                task.account_id,
                outcome.reason,
            )
        else:
            LOGGER.warning("user %s not found; maybe deleted (%s)", task.account_id, outcome.reason)

        def _op(tx: CrawlTransaction) -> None:
            tx.mark_accessible(task.account_id, False)
            self._frontier.complete(tx, task, [])

        self.state = CycleState.COMMIT
        self._store.atomic("mark_inaccessible", _op)
        self.summary.inaccessible += 1

    def _commit(self, task: FrontierTask, inspection: Inspection) -> None:
        next_distance = task.distance + 1 if task.distance is not None else None
        inspected_at = datetime.utcnow()

        def _op(tx: CrawlTransaction) -> Tuple[List[int], int]:
            tx.upsert_vertex(task.account_id)
            new_ids = tx.upsert_vertices(inspection.neighbours, distance=next_distance)
            added = tx.upsert_edges(inspection.edges)
            for direction, count in inspection.counts.items():
                tx.set_count(task.account_id, direction, count)
            tx.mark_accessible(task.account_id, True)
            self._frontier.complete(tx, task, new_ids)
            # Stamped last; the whole unit commits together either way.
            for direction in inspection.counts:
                tx.mark_inspected(task.account_id, direction, inspected_at)
            return new_ids, added

        new_ids, added = self._store.atomic("commit_inspection", _op)
        self.summary.inspected += 1
        self.summary.vertices_discovered += len(new_ids)
        self.summary.edges_added += added
        LOGGER.debug(
            "Committed %s: %s new accounts, %s new edges",
            task.account_id,
            len(new_ids),
            added,
        )
