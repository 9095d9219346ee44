"""Deterministic in-memory stand-in for the remote follow-graph API."""
from __future__ import annotations

import threading
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Set, Tuple

from followgraph.remote.pages import (
    FOLLOWERS,
    FRIENDS,
    IdPage,
    NotFound,
    PageResult,
    RateLimited,
    Unauthorized,
)


class SimulatedOutage(ConnectionError):
    """Raised by the fake once its call budget is spent."""


class FakeFollowGraphAPI:
    """Serve paginated follower/followee ids from a fixed edge list.

    ``follows`` holds ``(follower, friend)`` pairs. Cursors are string offsets.
    ``throttle`` lists ``(direction, user_id, cursor)`` keys answered once with
    ``RateLimited`` before being served normally. ``fail_after_calls`` makes
    every call past that budget raise :class:`SimulatedOutage`.
    """

    def __init__(
        self,
        follows: Iterable[Tuple[int, int]],
        *,
        page_size: int = 2,
        protected: Iterable[int] = (),
        deleted: Iterable[int] = (),
        throttle: Iterable[Tuple[str, int, Optional[str]]] = (),
        retry_after: int = 7,
        fail_after_calls: Optional[int] = None,
    ) -> None:
        lists: Dict[str, Dict[int, Set[int]]] = {FRIENDS: defaultdict(set), FOLLOWERS: defaultdict(set)}
        for follower, friend in follows:
            lists[FRIENDS][follower].add(friend)
            lists[FOLLOWERS][friend].add(follower)
        self._lists = {
            direction: {user: sorted(ids) for user, ids in by_user.items()}
            for direction, by_user in lists.items()
        }
        self.page_size = page_size
        self.protected = set(protected)
        self.deleted = set(deleted)
        self.retry_after = retry_after
        self.fail_after_calls = fail_after_calls
        self._throttle_pending = set(throttle)
        self._lock = threading.Lock()
        self.calls: List[Tuple[str, int, Optional[str]]] = []

    def __enter__(self) -> "FakeFollowGraphAPI":
        return self

    def __exit__(self, *exc_info) -> None:
        return None

    def ids(self, direction: str, user_id: int) -> List[int]:
        return list(self._lists[direction].get(user_id, []))

    def inspected_order(self) -> List[int]:
        """Accounts in the order their lists were first requested."""
        seen: Dict[int, None] = {}
        for _, user_id, _ in self.calls:
            seen.setdefault(user_id, None)
        return list(seen)

    def list_ids(self, direction: str, user_id: int, cursor: Optional[str]) -> PageResult:
        key = (direction, user_id, cursor)
        with self._lock:
            self.calls.append(key)
            call_number = len(self.calls)
            throttled = key in self._throttle_pending
            self._throttle_pending.discard(key)

        if self.fail_after_calls is not None and call_number > self.fail_after_calls:
            raise SimulatedOutage(f"call #{call_number} for {key}")
        if user_id in self.protected:
            return Unauthorized(reason="protected")
        if user_id in self.deleted:
            return NotFound(reason="deleted")
        if throttled:
            return RateLimited(retry_after=self.retry_after)

        ids = self.ids(direction, user_id)
        start = int(cursor or 0)
        end = start + self.page_size
        next_cursor = str(end) if end < len(ids) else None
        return IdPage(ids=ids[start:end], next_cursor=next_cursor)


# Reference graph. Mutual pairs: 1-2, 1-3, 2-4, 3-4, 4-5, 5-7. One-way: 1->6, 8->1, 2->9.
MUTUAL_PAIRS: List[Tuple[int, int]] = [(1, 2), (1, 3), (2, 4), (3, 4), (4, 5), (5, 7)]
ONE_WAY: List[Tuple[int, int]] = [(1, 6), (8, 1), (2, 9)]


def reference_follows() -> List[Tuple[int, int]]:
    follows = list(ONE_WAY)
    for a, b in MUTUAL_PAIRS:
        follows.append((a, b))
        follows.append((b, a))
    return follows
