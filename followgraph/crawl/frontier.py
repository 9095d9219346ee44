"""Policies deciding which account the crawl inspects next."""
from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol, Sequence, Tuple

from followgraph.data.crawl_store import (
    CrawlStore,
    CrawlTransaction,
    LevelBoundary,
    TargetProgress,
    VertexEntry,
)
from followgraph.remote.pages import FOLLOWERS, FRIENDS


LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class FrontierTask:
    """One pending inspection: which account, and which of its lists to fetch."""

    account_id: int
    directions: Tuple[str, ...]
    distance: Optional[int] = None
    queue_seq: Optional[int] = None


class Frontier(Protocol):
    def next(self) -> Optional[FrontierTask]:
        """Return the next task without consuming it, or None when exhausted."""

    def is_empty(self) -> bool:
        ...

    def complete(self, tx: CrawlTransaction, task: FrontierTask, discovered: Sequence[int]) -> None:
        """Consume ``task`` and schedule ``discovered`` inside the commit of its inspection."""


class BfsLevelFrontier:
    """Persisted FIFO queue with level boundary tokens.

    The queue holds ``[current level..., LevelBoundary, next level...]``.
    Discoveries are appended at the tail, i.e. into the next level. When the
    boundary reaches the head the current level is finished: the boundary is
    dequeued and a fresh one is appended behind the next level. Targets
    registered on a later run wait until the queue drains and then start a
    new level 0 of their own.
    """

    def __init__(
        self,
        store: CrawlStore,
        directions: Sequence[str],
        *,
        on_level_complete: Optional[Callable[[Optional[int]], None]] = None,
    ) -> None:
        self._store = store
        self._directions = tuple(directions)
        self._on_level_complete = on_level_complete
        self.levels_completed = 0

    def next(self) -> Optional[FrontierTask]:
        while True:
            head = self._store.queue_head(limit=2)
            if not head or (isinstance(head[0].item, LevelBoundary) and len(head) == 1):
                if self._start_late_targets():
                    continue
                return None

            entry = head[0]
            if isinstance(entry.item, LevelBoundary):
                self._rotate_boundary(entry.seq)
                continue

            account_id = entry.item.account_id
            status = self._store.read_status(account_id)
            if status is None:
                raise RuntimeError(f"Queued account {account_id} is missing from the users table")
            if status.terminal or all(status.inspected(d) for d in self._directions):
                LOGGER.debug("Dropping queued account %s; nothing left to inspect", account_id)
                self._store.atomic("drop_queue_entry", lambda tx: tx.dequeue(entry.seq))
                continue

            return FrontierTask(
                account_id=account_id,
                directions=self._directions,
                distance=status.distance,
                queue_seq=entry.seq,
            )

    def _rotate_boundary(self, seq: int) -> None:
        def _op(tx: CrawlTransaction) -> None:
            tx.dequeue(seq)
            tx.enqueue([LevelBoundary()])

        self._store.atomic("rotate_level_boundary", _op)
        self.levels_completed += 1

        completed_level: Optional[int] = None
        upcoming = self._store.queue_head(limit=1)
        if upcoming and isinstance(upcoming[0].item, VertexEntry):
            status = self._store.read_status(upcoming[0].item.account_id)
            if status is not None and status.distance is not None:
                completed_level = status.distance - 1
        if completed_level is None:
            LOGGER.info("BFS level complete")
        else:
            LOGGER.info("BFS level %s complete", completed_level)
        if self._on_level_complete is not None:
            self._on_level_complete(completed_level)

    def _start_late_targets(self) -> bool:
        """Turn targets registered while the queue was busy into a fresh level 0."""

        def _op(tx: CrawlTransaction) -> List[int]:
            pending = tx.uninspected_targets(self._directions)
            if pending:
                tx.clear_queue()
                tx.enqueue([*(VertexEntry(account_id) for account_id in pending), LevelBoundary()])
            return pending

        pending = self._store.atomic("start_late_targets", _op)
        if pending:
            LOGGER.info("BFS level 0 restarted from %s late target(s)", len(pending))
        return bool(pending)

    def is_empty(self) -> bool:
        if self._store.count_queued_vertices():
            return False
        return not self._store.uninspected_targets(self._directions)

    def complete(self, tx: CrawlTransaction, task: FrontierTask, discovered: Sequence[int]) -> None:
        if task.queue_seq is None:
            raise ValueError(f"Task for {task.account_id} did not come from the queue")
        tx.dequeue(task.queue_seq)
        tx.enqueue(VertexEntry(account_id) for account_id in discovered)


class CompletionRatioFrontier:
    """Derived frontier balancing progress across several targets.

    Targets whose follower list is unknown come first. After that, the target
    with the largest share of followers still lacking a followee list wins
    (first one on ties), and one of those followers is drawn uniformly at
    random. Nothing is persisted; the timestamps in the store are the state.
    """

    def __init__(self, store: CrawlStore, rng: Optional[random.Random] = None) -> None:
        self._store = store
        self._rng = rng or random.Random()

    @staticmethod
    def select_target(progress: Sequence[TargetProgress]) -> Optional[TargetProgress]:
        best: Optional[TargetProgress] = None
        for candidate in progress:
            if candidate.uninspected <= 0:
                continue
            if best is None or candidate.ratio > best.ratio:
                best = candidate
        return best

    def next(self) -> Optional[FrontierTask]:
        pending_targets = self._store.targets_pending_followers()
        if pending_targets:
            return FrontierTask(account_id=pending_targets[0], directions=(FOLLOWERS,))

        target = self.select_target(self._store.target_progress())
        if target is None:
            return None

        offset = self._rng.randrange(target.uninspected)
        follower = self._store.uninspected_follower_at(target.target_id, offset)
        if follower is None:
            raise RuntimeError(
                f"Follower #{offset} of target {target.target_id} disappeared between queries"
            )
        LOGGER.debug(
            "Target %s has %s/%s followers pending (%.3f); sampled %s",
            target.target_id,
            target.uninspected,
            target.followers,
            target.ratio,
            follower,
        )
        return FrontierTask(account_id=follower, directions=(FRIENDS,))

    def is_empty(self) -> bool:
        if self._store.targets_pending_followers():
            return False
        return self.select_target(self._store.target_progress()) is None

    def complete(self, tx: CrawlTransaction, task: FrontierTask, discovered: Sequence[int]) -> None:
        # Stamped timestamps and accessibility already move this frontier forward.
        return None
