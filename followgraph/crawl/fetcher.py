"""Rate-limited retrieval of complete follower/followee id lists."""
from __future__ import annotations

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Union

from followgraph.remote.pages import (
    FollowGraphAPI,
    IdCursor,
    IdPage,
    NotFound,
    RateLimited,
    TerminalResult,
    Unauthorized,
)


LOGGER = logging.getLogger(__name__)

# Extra second on top of the server-reported reset delay, for clock skew.
CLOCK_SKEW_MARGIN_SECONDS = 1


class FetchCancelled(Exception):
    """Raised inside a directional fetch whose sibling already decided the outcome."""


@dataclass(frozen=True)
class FetchedIds:
    """Every id of one listing, in the order the API returned them."""

    direction: str
    ids: List[int]


FetchOutcome = Union[FetchedIds, Unauthorized, NotFound]


def _interruptible_wait(seconds: float, cancel_event: threading.Event) -> bool:
    """Sleep for ``seconds`` unless cancelled; True means the wait was cancelled."""
    return cancel_event.wait(timeout=seconds)


class RateLimitedFetcher:
    """Pulls complete id listings, sleeping off throttling and classifying failures.

    Throttling is retried indefinitely: the server dictates the wait, so there
    is no local backoff growth. ``Unauthorized``/``NotFound`` end the fetch and
    are returned to the caller. Any exception raised by the API propagates.
    """

    def __init__(
        self,
        api: FollowGraphAPI,
        *,
        wait_fn: Callable[[float, threading.Event], bool] = _interruptible_wait,
    ) -> None:
        self._api = api
        self._wait = wait_fn

    def fetch_all(
        self,
        direction: str,
        user_id: int,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> FetchOutcome:
        cancel_event = cancel_event or threading.Event()
        cursor = IdCursor(self._api, direction, user_id)
        ids: List[int] = []
        pages = 0

        while not cursor.exhausted:
            if cancel_event.is_set():
                raise FetchCancelled(f"{direction} of {user_id}")

            result = cursor.fetch_next_page()
            if isinstance(result, RateLimited):
                sleep_for = max(result.retry_after, 0) + CLOCK_SKEW_MARGIN_SECONDS
                LOGGER.info(
                    "rate limited on %s of %s; sleeping %s secs", direction, user_id, sleep_for
                )
                if self._wait(sleep_for, cancel_event):
                    raise FetchCancelled(f"{direction} of {user_id}")
                continue
            if isinstance(result, (Unauthorized, NotFound)):
                return result
            if not isinstance(result, IdPage):
                raise TypeError(f"Unexpected page result {result!r}")

            ids.extend(result.ids)
            pages += 1

        LOGGER.debug("Fetched %s %s of %s in %s page(s)", len(ids), direction, user_id, pages)
        return FetchedIds(direction=direction, ids=ids)

    def fetch_concurrently(
        self, user_id: int, directions: Sequence[str]
    ) -> Union[Dict[str, List[int]], TerminalResult]:
        """Fetch several directions of one account at once.

        Returns a mapping of direction to ids, or the first terminal result
        observed; in that case the remaining fetches are cancelled before
        returning. Exceptions from either task propagate after the other task
        has been cancelled and joined.
        """

        if len(directions) == 1:
            outcome = self.fetch_all(directions[0], user_id)
            if isinstance(outcome, FetchedIds):
                return {outcome.direction: outcome.ids}
            return outcome

        cancel_event = threading.Event()
        results: Dict[str, List[int]] = {}
        terminal: Optional[TerminalResult] = None

        with ThreadPoolExecutor(
            max_workers=len(directions), thread_name_prefix=f"fetch-{user_id}"
        ) as pool:
            pending = {
                pool.submit(self.fetch_all, direction, user_id, cancel_event=cancel_event)
                for direction in directions
            }
            try:
                while pending and terminal is None:
                    done, pending = wait(pending, return_when=FIRST_COMPLETED)
                    for future in done:
                        outcome = future.result()
                        if isinstance(outcome, FetchedIds):
                            results[outcome.direction] = outcome.ids
                        elif terminal is None:
                            terminal = outcome
            finally:
                # Leaving the pool joins every task; make sure none is still sleeping.
                cancel_event.set()

        if terminal is not None:
            return terminal
        return results
