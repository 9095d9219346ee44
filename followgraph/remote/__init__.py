"""Remote follow-graph API access."""

from __future__ import annotations

from .pages import (
    DIRECTIONS,
    FOLLOWERS,
    FRIENDS,
    FollowGraphAPI,
    IdCursor,
    IdPage,
    NotFound,
    PageResult,
    RateLimited,
    Unauthorized,
)
from .x_api_client import XAPIClient, XAPIClientConfig, XAPIError

__all__ = [
    "DIRECTIONS",
    "FOLLOWERS",
    "FRIENDS",
    "FollowGraphAPI",
    "IdCursor",
    "IdPage",
    "NotFound",
    "PageResult",
    "RateLimited",
    "Unauthorized",
    "XAPIClient",
    "XAPIClientConfig",
    "XAPIError",
]
