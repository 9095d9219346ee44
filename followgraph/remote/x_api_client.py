"""Thin X API client for follower/followee id listings with rate-limit awareness."""
from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import requests

from followgraph.config import DEFAULT_PAGE_SIZE, DEFAULT_RATE_STATE_PATH
from followgraph.remote.pages import DIRECTIONS, IdPage, NotFound, PageResult, RateLimited, Unauthorized


LOGGER = logging.getLogger(__name__)

API_BASE_URL = "https://api.twitter.com/1.1"
# The API signals "no more pages" with a zero cursor.
LAST_CURSOR = "0"
FIRST_CURSOR = "-1"
DEFAULT_RETRY_AFTER_SECONDS = 900


class XAPIError(RuntimeError):
    """Unexpected response from the X API (neither data nor a classified failure)."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass
class XAPIClientConfig:
    bearer_token: str
    page_size: int = DEFAULT_PAGE_SIZE
    base_url: str = API_BASE_URL
    timeout_seconds: float = 30.0
    rate_state_path: Optional[Path] = DEFAULT_RATE_STATE_PATH


class XAPIClient:
    """Minimal wrapper around the ``friends/ids`` and ``followers/ids`` endpoints.

    Every call returns a classified :class:`PageResult`; throttling and
    account-level failures are values, not exceptions. Anything else raises.
    """

    def __init__(self, config: XAPIClientConfig) -> None:
        self._config = config
        self._rate_state_path = config.rate_state_path
        self._rate_state_lock = threading.Lock()
        self._load_rate_limit_state()

        self._session = requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {config.bearer_token}",
                "User-Agent": "FollowGraphCrawler/1.0",
            }
        )

    def close(self) -> None:
        self._session.close()

    def __enter__(self) -> "XAPIClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Rate limit persistence
    # ------------------------------------------------------------------
    def _load_rate_limit_state(self) -> None:
        self._last_reset_ts = 0
        if self._rate_state_path is None or not self._rate_state_path.exists():
            return
        try:
            data = json.loads(self._rate_state_path.read_text())
        except json.JSONDecodeError:
            return
        self._last_reset_ts = int(data.get("reset_timestamp", 0))

    def _save_rate_limit_state(self, reset_timestamp: int) -> None:
        # Both fetch threads share this client; the later reset always wins.
        with self._rate_state_lock:
            self._last_reset_ts = max(self._last_reset_ts, reset_timestamp)
            if self._rate_state_path is None:
                return
            payload = {
                "reset_timestamp": self._last_reset_ts,
                "persisted_at": int(time.time()),
            }
            self._rate_state_path.parent.mkdir(parents=True, exist_ok=True)
            self._rate_state_path.write_text(json.dumps(payload, indent=2))

    def _pending_reset_seconds(self) -> int:
        if not self._last_reset_ts:
            return 0
        return max(self._last_reset_ts - int(time.time()), 0)

    # ------------------------------------------------------------------
    # Request plumbing
    # ------------------------------------------------------------------
    def _retry_after(self, response: requests.Response) -> int:
        reset_header = response.headers.get("x-rate-limit-reset")
        retry_after = response.headers.get("retry-after")
        now = int(time.time())
        if reset_header:
            reset_ts = int(reset_header)
            self._save_rate_limit_state(reset_ts)
            return max(reset_ts - now, 0)
        if retry_after:
            seconds = int(retry_after)
            self._save_rate_limit_state(now + seconds)
            return seconds
        return DEFAULT_RETRY_AFTER_SECONDS

    def _get(self, path: str, params: Dict[str, Any]) -> requests.Response:
        url = f"{self._config.base_url}/{path}"
        return self._session.get(url, params=params, timeout=self._config.timeout_seconds)

    # ------------------------------------------------------------------
    # Public lookups
    # ------------------------------------------------------------------
    def list_ids(self, direction: str, user_id: int, cursor: Optional[str]) -> PageResult:
        if direction not in DIRECTIONS:
            raise ValueError(f"Unknown direction '{direction}'")

        # A reset persisted by an earlier process is reported as throttling so the
        # caller sleeps it off instead of burning a request.
        pending = self._pending_reset_seconds()
        if pending > 0:
            LOGGER.debug("Persisted rate limit still active for %s seconds", pending)
            return RateLimited(retry_after=pending)

        params = {
            "user_id": user_id,
            "count": self._config.page_size,
            "cursor": cursor or FIRST_CURSOR,
            "stringify_ids": "false",
        }
        response = self._get(f"{direction}/ids.json", params)

        if response.status_code == 200:
            return self._parse_page(response, direction, user_id)
        if response.status_code == 429:
            return RateLimited(retry_after=self._retry_after(response))
        if response.status_code == 401:
            return Unauthorized(reason=f"HTTP 401 listing {direction} of {user_id}")
        if response.status_code == 404:
            return NotFound(reason=f"HTTP 404 listing {direction} of {user_id}")

        LOGGER.error("X API returned %s: %s", response.status_code, response.text)
        raise XAPIError(
            f"X API returned {response.status_code} listing {direction} of {user_id}",
            status_code=response.status_code,
        )

    @staticmethod
    def _parse_page(response: requests.Response, direction: str, user_id: int) -> IdPage:
        try:
            payload = response.json()
        except ValueError as exc:
            raise XAPIError(f"Malformed JSON listing {direction} of {user_id}") from exc

        if not isinstance(payload, dict) or not isinstance(payload.get("ids"), list):
            raise XAPIError(f"Response listing {direction} of {user_id} has no 'ids' array")

        try:
            ids = [int(value) for value in payload["ids"]]
        except (TypeError, ValueError) as exc:
            raise XAPIError(f"Non-numeric id listing {direction} of {user_id}") from exc

        next_cursor = payload.get("next_cursor_str", payload.get("next_cursor"))
        if next_cursor is None or str(next_cursor) == LAST_CURSOR:
            return IdPage(ids=ids, next_cursor=None)
        return IdPage(ids=ids, next_cursor=str(next_cursor))
