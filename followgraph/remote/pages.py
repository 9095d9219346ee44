"""Typed page results and the paginated id cursor used by the crawler."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Union

FOLLOWERS = "followers"
FRIENDS = "friends"
DIRECTIONS = (FRIENDS, FOLLOWERS)


@dataclass(frozen=True)
class IdPage:
    """One page of account ids; ``next_cursor`` is None on the last page."""

    ids: List[int]
    next_cursor: Optional[str] = None


@dataclass(frozen=True)
class RateLimited:
    """The shared rate-limit budget is exhausted for ``retry_after`` seconds."""

    retry_after: int


@dataclass(frozen=True)
class Unauthorized:
    """The account's lists cannot be read (typically a protected account)."""

    reason: str = "unauthorized"


@dataclass(frozen=True)
class NotFound:
    """The account does not exist anymore."""

    reason: str = "not found"


PageResult = Union[IdPage, RateLimited, Unauthorized, NotFound]
TerminalResult = Union[Unauthorized, NotFound]


class FollowGraphAPI(Protocol):
    """Remote operation listing the followees or followers of one account."""

    def list_ids(self, direction: str, user_id: int, cursor: Optional[str]) -> PageResult:
        ...


@dataclass
class IdCursor:
    """Lazy, finite, non-restartable walk over one paginated id listing.

    The position only moves forward when a page is actually received, so a
    rate-limited call can be repeated against the same cursor.
    """

    api: FollowGraphAPI
    direction: str
    user_id: int
    _position: Optional[str] = field(default=None, init=False)
    _exhausted: bool = field(default=False, init=False)

    def __post_init__(self) -> None:
        if self.direction not in DIRECTIONS:
            raise ValueError(f"Unknown direction '{self.direction}'")

    @property
    def exhausted(self) -> bool:
        return self._exhausted

    @property
    def position(self) -> Optional[str]:
        return self._position

    def fetch_next_page(self) -> PageResult:
        if self._exhausted:
            raise RuntimeError(
                f"Cursor over {self.direction} of {self.user_id} is already exhausted"
            )
        result = self.api.list_ids(self.direction, self.user_id, self._position)
        if isinstance(result, IdPage):
            if result.next_cursor is None:
                self._exhausted = True
            else:
                self._position = result.next_cursor
        return result
