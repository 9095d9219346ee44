"""Configuration helpers for the follow-graph crawler."""
from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parents[1]
ENV_PATH = PROJECT_ROOT / ".env"

# Load environment variables early so downstream modules can rely on them.
load_dotenv(ENV_PATH, override=False)

BEARER_TOKEN_ENV = "X_BEARER_TOKEN"
CREDENTIALS_PATH_ENV = "CREDENTIALS_PATH"
CRAWL_DB_ENV = "CRAWL_DB_PATH"
FRONTIER_POLICY_ENV = "FRONTIER_POLICY"
EDGE_MODE_ENV = "EDGE_MODE"
PAGE_SIZE_ENV = "PAGE_SIZE"
RANDOM_SEED_ENV = "CRAWL_RANDOM_SEED"

DEFAULT_CREDENTIALS_PATH = Path("credentials.json")
DEFAULT_CRAWL_DB = Path("db.sqlite3")
DEFAULT_RATE_STATE_PATH = Path("data/x_api_rate_state.json")
DEFAULT_FRONTIER_POLICY = "bfs"
DEFAULT_EDGE_MODE = "mutual"
DEFAULT_PAGE_SIZE = 5000

FRONTIER_POLICIES = ("bfs", "ratio")
EDGE_MODES = ("mutual", "followers")


@dataclass(frozen=True)
class ApiCredentials:
    """Bearer token used to authenticate against the X API."""

    bearer_token: str

    @property
    def headers(self) -> dict:
        return {"Authorization": f"Bearer {self.bearer_token}"}


@dataclass(frozen=True)
class CrawlSettings:
    """Runtime configuration for one crawl process."""

    db_path: Path
    frontier_policy: Optional[str]
    edge_mode: Optional[str]
    page_size: int
    random_seed: Optional[int] = None


def _get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value


def _get_int_env(name: str, default: Optional[int]) -> Optional[int]:
    raw = _get_env(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer; received '{raw}'.") from exc


def get_api_credentials(credentials_path: Optional[Path] = None) -> ApiCredentials:
    """Return API credentials from the environment or a credentials file.

    ``X_BEARER_TOKEN`` wins when set. Otherwise the JSON file at
    ``credentials_path`` (or ``CREDENTIALS_PATH``) must hold a
    ``bearer_token`` key.
    """

    token = _get_env(BEARER_TOKEN_ENV)
    if token:
        return ApiCredentials(bearer_token=token)

    path = credentials_path or Path(
        _get_env(CREDENTIALS_PATH_ENV, str(DEFAULT_CREDENTIALS_PATH))
    )
    path = path.expanduser()
    if not path.exists():
        raise RuntimeError(
            f"{BEARER_TOKEN_ENV} is not configured and no credentials file exists at {path}. "
            "Set it in .env or export the variable before running."
        )
    try:
        payload = json.loads(path.read_text())
    except json.JSONDecodeError as exc:
        raise RuntimeError(f"Credentials file {path} is not valid JSON.") from exc

    token = payload.get("bearer_token") if isinstance(payload, dict) else None
    if not token:
        raise RuntimeError(f"Credentials file {path} has no 'bearer_token' entry.")
    return ApiCredentials(bearer_token=token)


def get_crawl_settings(
    *,
    db_path: Optional[Path] = None,
    frontier_policy: Optional[str] = None,
    edge_mode: Optional[str] = None,
    page_size: Optional[int] = None,
) -> CrawlSettings:
    """Resolve crawl configuration; explicit arguments override the environment."""

    raw_path = db_path or Path(_get_env(CRAWL_DB_ENV, str(DEFAULT_CRAWL_DB)))
    resolved_path = Path(raw_path).expanduser().resolve()

    # Left as None when unset so an existing store keeps the choice it was created with.
    policy = frontier_policy or _get_env(FRONTIER_POLICY_ENV)
    if policy is not None:
        policy = policy.lower()
        if policy not in FRONTIER_POLICIES:
            raise RuntimeError(
                f"{FRONTIER_POLICY_ENV} must be one of {', '.join(FRONTIER_POLICIES)}; received '{policy}'."
            )

    mode = edge_mode or _get_env(EDGE_MODE_ENV)
    if mode is not None:
        mode = mode.lower()
        if mode not in EDGE_MODES:
            raise RuntimeError(
                f"{EDGE_MODE_ENV} must be one of {', '.join(EDGE_MODES)}; received '{mode}'."
            )

    size = page_size if page_size is not None else _get_int_env(PAGE_SIZE_ENV, DEFAULT_PAGE_SIZE)
    if size is None or size <= 0:
        raise RuntimeError(f"{PAGE_SIZE_ENV} must be a positive integer; received '{size}'.")

    return CrawlSettings(
        db_path=resolved_path,
        frontier_policy=policy,
        edge_mode=mode,
        page_size=size,
        random_seed=_get_int_env(RANDOM_SEED_ENV, None),
    )
