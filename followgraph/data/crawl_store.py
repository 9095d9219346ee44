"""Persistence for crawled accounts, follow edges, targets and the BFS queue."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar, Union

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    and_,
    case,
    create_engine,
    delete,
    func,
    or_,
    select,
    update,
)
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import OperationalError

from followgraph.remote.pages import FOLLOWERS, FRIENDS


LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

# Keeps multi-row statements under SQLite's bound-parameter limit.
_CHUNK_SIZE = 400

_INSPECTED_COLUMNS = {
    FOLLOWERS: "got_followers_at",
    FRIENDS: "got_friends_at",
}
_COUNT_COLUMNS = {
    FOLLOWERS: "followers_count",
    FRIENDS: "friends_count",
}


def _chunks(items: Sequence[T], size: int = _CHUNK_SIZE) -> Iterable[Sequence[T]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


@dataclass(frozen=True)
class VertexStatus:
    """Inspection state of one account."""

    account_id: int
    distance: Optional[int]
    friends_count: Optional[int]
    followers_count: Optional[int]
    got_friends_at: Optional[datetime]
    got_followers_at: Optional[datetime]
    accessible: Optional[bool]

    def inspected(self, direction: str) -> bool:
        if direction == FRIENDS:
            return self.got_friends_at is not None
        if direction == FOLLOWERS:
            return self.got_followers_at is not None
        raise ValueError(f"Unknown direction '{direction}'")

    @property
    def terminal(self) -> bool:
        return self.accessible is False


@dataclass(frozen=True)
class LevelBoundary:
    """Queue token separating the BFS level being drained from the next one."""


@dataclass(frozen=True)
class VertexEntry:
    account_id: int


QueueItem = Union[LevelBoundary, VertexEntry]


@dataclass(frozen=True)
class QueueEntry:
    """A persisted queue slot; ``seq`` gives FIFO order."""

    seq: int
    item: QueueItem


@dataclass(frozen=True)
class TargetProgress:
    """Follower coverage of one target whose follower list is known."""

    target_id: int
    followers: int
    uninspected: int

    @property
    def ratio(self) -> float:
        if self.followers == 0:
            return 0.0
        return self.uninspected / self.followers


class CrawlTransaction:
    """Mutations applied inside one atomic unit of work.

    Instances only exist inside :meth:`CrawlStore.atomic`; nothing here is
    durable until that unit commits.
    """

    def __init__(self, store: "CrawlStore", conn: Connection) -> None:
        self._store = store
        self._conn = conn

    @property
    def connection(self) -> Connection:
        return self._conn

    # ------------------------------------------------------------------
    # Vertices
    # ------------------------------------------------------------------
    def upsert_vertex(self, account_id: int, distance: Optional[int] = None) -> bool:
        """Insert the account unless it exists; True if it was new."""
        users = self._store.users
        stmt = insert(users).values(id=account_id, distance=distance)
        result = self._conn.execute(stmt.on_conflict_do_nothing(index_elements=[users.c.id]))
        return result.rowcount == 1

    def upsert_vertices(self, account_ids: Iterable[int], distance: Optional[int] = None) -> List[int]:
        """Insert every unknown account; returns the new ones in first-seen order."""
        unique_ids = list(dict.fromkeys(account_ids))
        if not unique_ids:
            return []
        users = self._store.users

        existing: set[int] = set()
        for chunk in _chunks(unique_ids):
            rows = self._conn.execute(select(users.c.id).where(users.c.id.in_(list(chunk))))
            existing.update(row.id for row in rows)

        new_ids = [account_id for account_id in unique_ids if account_id not in existing]
        for chunk in _chunks(new_ids):
            stmt = insert(users).values([{"id": account_id, "distance": distance} for account_id in chunk])
            self._conn.execute(stmt.on_conflict_do_nothing(index_elements=[users.c.id]))
        return new_ids

    def mark_inspected(self, account_id: int, direction: str, timestamp: Optional[datetime] = None) -> None:
        column = _INSPECTED_COLUMNS.get(direction)
        if column is None:
            raise ValueError(f"Unknown direction '{direction}'")
        users = self._store.users
        self._conn.execute(
            update(users)
            .where(users.c.id == account_id)
            .values({column: timestamp or datetime.utcnow()})
        )

    def set_count(self, account_id: int, direction: str, count: int) -> None:
        users = self._store.users
        self._conn.execute(
            update(users).where(users.c.id == account_id).values({_COUNT_COLUMNS[direction]: count})
        )

    def mark_accessible(self, account_id: int, accessible: bool) -> None:
        """Record accessibility; an account once marked inaccessible stays so."""
        users = self._store.users
        self._conn.execute(
            update(users)
            .where(users.c.id == account_id)
            .where(users.c.accessible.is_not(False))
            .values(accessible=accessible)
        )

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------
    def upsert_edge(self, follower: int, friend: int) -> bool:
        return self.upsert_edges([(follower, friend)]) == 1

    def upsert_edges(self, pairs: Iterable[Tuple[int, int]]) -> int:
        """Record ``(follower, friend)`` pairs; returns how many were new."""
        rows = [
            {"follower": follower, "friend": friend}
            for follower, friend in dict.fromkeys(pairs)
        ]
        friendships = self._store.friendships
        added = 0
        for chunk in _chunks(rows):
            stmt = insert(friendships).values(list(chunk))
            result = self._conn.execute(
                stmt.on_conflict_do_nothing(
                    index_elements=[friendships.c.follower, friendships.c.friend]
                )
            )
            added += max(result.rowcount, 0)
        return added

    # ------------------------------------------------------------------
    # Targets and metadata
    # ------------------------------------------------------------------
    def add_target(self, account_id: int) -> bool:
        targets = self._store.targets_table
        stmt = insert(targets).values(id=account_id, added_at=datetime.utcnow())
        result = self._conn.execute(stmt.on_conflict_do_nothing(index_elements=[targets.c.id]))
        return result.rowcount == 1

    def set_meta(self, key: str, value: str) -> None:
        meta = self._store.meta
        stmt = insert(meta).values(key=key, value=value)
        self._conn.execute(
            stmt.on_conflict_do_update(index_elements=[meta.c.key], set_={"value": value})
        )

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------
    def enqueue(self, items: Iterable[QueueItem]) -> int:
        rows = []
        for item in items:
            if isinstance(item, LevelBoundary):
                rows.append({"kind": CrawlStore.BOUNDARY_KIND, "user_id": None})
            else:
                rows.append({"kind": CrawlStore.VERTEX_KIND, "user_id": item.account_id})
        queue = self._store.queue
        # Row by row so sequence numbers follow the iteration order.
        for row in rows:
            self._conn.execute(queue.insert().values(**row))
        return len(rows)

    def uninspected_targets(self, directions: Sequence[str]) -> List[int]:
        stmt = self._store.uninspected_targets_query(directions)
        return [row.id for row in self._conn.execute(stmt)]

    def clear_queue(self) -> None:
        self._conn.execute(delete(self._store.queue))

    def dequeue(self, seq: int) -> None:
        queue = self._store.queue
        result = self._conn.execute(delete(queue).where(queue.c.seq == seq))
        if result.rowcount != 1:
            raise RuntimeError(f"Queue entry {seq} vanished before it could be dequeued")


class CrawlStore:
    """Typed wrapper around the crawl database.

    Reads run in their own short transactions; all writes go through
    :meth:`atomic` so that one inspection cycle commits as a single unit.
    """

    USERS_TABLE = "users"
    FRIENDSHIPS_TABLE = "friendships"
    TARGETS_TABLE = "targets"
    QUEUE_TABLE = "queue"
    META_TABLE = "crawl_meta"
    VERTEX_KIND = "vertex"
    BOUNDARY_KIND = "boundary"
    _RETRYABLE_SQLITE_ERRORS = ("disk i/o error", "database is locked")

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._metadata = MetaData()
        self.users = Table(
            self.USERS_TABLE,
            self._metadata,
            Column("id", BigInteger, primary_key=True, autoincrement=False),
            Column("distance", Integer, nullable=True),
            Column("friends_count", Integer, nullable=True),
            Column("followers_count", Integer, nullable=True),
            Column("got_followers_at", DateTime(timezone=False), nullable=True),
            Column("got_friends_at", DateTime(timezone=False), nullable=True),
            Column("accessible", Boolean, nullable=True),
        )
        self.friendships = Table(
            self.FRIENDSHIPS_TABLE,
            self._metadata,
            Column("follower", BigInteger, nullable=False),
            Column("friend", BigInteger, nullable=False),
            PrimaryKeyConstraint("follower", "friend", name="pk_friendships"),
        )
        self.targets_table = Table(
            self.TARGETS_TABLE,
            self._metadata,
            Column("id", BigInteger, primary_key=True, autoincrement=False),
            Column("added_at", DateTime(timezone=False), nullable=False),
        )
        self.queue = Table(
            self.QUEUE_TABLE,
            self._metadata,
            Column("seq", Integer, primary_key=True, autoincrement=True),
            Column("kind", String, nullable=False),
            Column("user_id", BigInteger, nullable=True),
            sqlite_autoincrement=True,
        )
        self.meta = Table(
            self.META_TABLE,
            self._metadata,
            Column("key", String, primary_key=True),
            Column("value", String, nullable=False),
        )
        self._metadata.create_all(self._engine, checkfirst=True)

    @property
    def engine(self) -> Engine:
        return self._engine

    def close(self) -> None:
        self._engine.dispose()

    def __enter__(self) -> "CrawlStore":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _execute_with_retry(
        self,
        op_name: str,
        fn: Callable[[Engine], T],
        *,
        max_attempts: int = 3,
        base_delay_seconds: float = 1.0,
    ) -> T:
        last_exc: Optional[OperationalError] = None
        for attempt in range(1, max_attempts + 1):
            try:
                return fn(self._engine)
            except OperationalError as exc:
                if getattr(exc, "orig", None) is not None:
                    message = str(exc.orig).lower()
                else:
                    message = str(exc).lower()

                if not any(token in message for token in self._RETRYABLE_SQLITE_ERRORS):
                    raise

                last_exc = exc
                LOGGER.error(
                    "Retryable SQLite error during %s (attempt %s/%s): %s",
                    op_name,
                    attempt,
                    max_attempts,
                    message or exc,
                )
                self._engine.dispose()

                if attempt == max_attempts:
                    break

                sleep_for = base_delay_seconds * (2 ** (attempt - 1))
                time.sleep(sleep_for)

        assert last_exc is not None
        LOGGER.error(
            "Exhausted retries for %s after %s attempts; re-raising.",
            op_name,
            max_attempts,
        )
        raise last_exc

    def atomic(self, op_name: str, fn: Callable[[CrawlTransaction], T]) -> T:
        """Run ``fn`` inside one transaction; any exception rolls everything back.

        ``fn`` may run more than once when SQLite reports a transient error, so
        it must not depend on side effects of a previous attempt.
        """

        def _op(engine: Engine) -> T:
            with engine.begin() as conn:
                return fn(CrawlTransaction(self, conn))

        return self._execute_with_retry(op_name, _op)

    def _read(self, op_name: str, fn: Callable[[Connection], T]) -> T:
        def _op(engine: Engine) -> T:
            with engine.connect() as conn:
                return fn(conn)

        return self._execute_with_retry(op_name, _op)

    # ------------------------------------------------------------------
    # Vertex reads
    # ------------------------------------------------------------------
    def read_status(self, account_id: int) -> Optional[VertexStatus]:
        def _op(conn: Connection) -> Optional[VertexStatus]:
            row = conn.execute(select(self.users).where(self.users.c.id == account_id)).fetchone()
            if row is None:
                return None
            return self._status_from_row(row)

        return self._read("read_status", _op)

    def fetch_vertices(self, account_ids: Optional[Iterable[int]] = None) -> List[VertexStatus]:
        def _op(conn: Connection) -> List[VertexStatus]:
            stmt = select(self.users).order_by(self.users.c.id)
            if account_ids is not None:
                stmt = stmt.where(self.users.c.id.in_(list(account_ids)))
            return [self._status_from_row(row) for row in conn.execute(stmt)]

        return self._read("fetch_vertices", _op)

    @staticmethod
    def _status_from_row(row) -> VertexStatus:
        accessible = row.accessible
        return VertexStatus(
            account_id=row.id,
            distance=row.distance,
            friends_count=row.friends_count,
            followers_count=row.followers_count,
            got_friends_at=row.got_friends_at,
            got_followers_at=row.got_followers_at,
            accessible=None if accessible is None else bool(accessible),
        )

    # ------------------------------------------------------------------
    # Edge reads
    # ------------------------------------------------------------------
    def fetch_edges(self) -> List[Tuple[int, int]]:
        def _op(conn: Connection) -> List[Tuple[int, int]]:
            stmt = select(self.friendships.c.follower, self.friendships.c.friend).order_by(
                self.friendships.c.follower, self.friendships.c.friend
            )
            return [(row.follower, row.friend) for row in conn.execute(stmt)]

        return self._read("fetch_edges", _op)

    def mutual_edges(self) -> List[Tuple[int, int]]:
        """Unordered pairs ``(a, b)``, ``a < b``, where each follows the other."""
        forward = self.friendships.alias("forward")
        backward = self.friendships.alias("backward")

        def _op(conn: Connection) -> List[Tuple[int, int]]:
            stmt = (
                select(forward.c.follower, forward.c.friend)
                .join(
                    backward,
                    and_(
                        backward.c.follower == forward.c.friend,
                        backward.c.friend == forward.c.follower,
                    ),
                )
                .where(forward.c.follower < forward.c.friend)
                .order_by(forward.c.follower, forward.c.friend)
            )
            return [(row.follower, row.friend) for row in conn.execute(stmt)]

        return self._read("mutual_edges", _op)

    # ------------------------------------------------------------------
    # Targets and metadata
    # ------------------------------------------------------------------
    def targets(self) -> List[int]:
        def _op(conn: Connection) -> List[int]:
            stmt = select(self.targets_table.c.id).order_by(
                self.targets_table.c.added_at, self.targets_table.c.id
            )
            return [row.id for row in conn.execute(stmt)]

        return self._read("targets", _op)

    def get_meta(self) -> Dict[str, str]:
        def _op(conn: Connection) -> Dict[str, str]:
            return {row.key: row.value for row in conn.execute(select(self.meta))}

        return self._read("get_meta", _op)

    # ------------------------------------------------------------------
    # Queue reads
    # ------------------------------------------------------------------
    def queue_entries(self) -> List[QueueEntry]:
        def _op(conn: Connection) -> List[QueueEntry]:
            stmt = select(self.queue).order_by(self.queue.c.seq)
            return [self._queue_entry_from_row(row) for row in conn.execute(stmt)]

        return self._read("queue_entries", _op)

    def queue_head(self, limit: int = 1) -> List[QueueEntry]:
        def _op(conn: Connection) -> List[QueueEntry]:
            stmt = select(self.queue).order_by(self.queue.c.seq).limit(limit)
            return [self._queue_entry_from_row(row) for row in conn.execute(stmt)]

        return self._read("queue_head", _op)

    def count_queued_vertices(self) -> int:
        def _op(conn: Connection) -> int:
            stmt = select(func.count()).select_from(self.queue).where(
                self.queue.c.kind == self.VERTEX_KIND
            )
            return conn.execute(stmt).scalar() or 0

        return self._read("count_queued_vertices", _op)

    def uninspected_targets_query(self, directions: Sequence[str]):
        """Accessible targets still missing one of the ``directions`` lists."""
        targets = self.targets_table
        users = self.users
        missing = or_(*(users.c[_INSPECTED_COLUMNS[d]].is_(None) for d in directions))
        return (
            select(targets.c.id)
            .join(users, users.c.id == targets.c.id)
            .where(users.c.accessible.is_not(False))
            .where(missing)
            .order_by(targets.c.added_at, targets.c.id)
        )

    def uninspected_targets(self, directions: Sequence[str]) -> List[int]:
        def _op(conn: Connection) -> List[int]:
            return [row.id for row in conn.execute(self.uninspected_targets_query(directions))]

        return self._read("uninspected_targets", _op)

    def _queue_entry_from_row(self, row) -> QueueEntry:
        if row.kind == self.BOUNDARY_KIND:
            return QueueEntry(seq=row.seq, item=LevelBoundary())
        if row.kind == self.VERTEX_KIND and row.user_id is not None:
            return QueueEntry(seq=row.seq, item=VertexEntry(account_id=row.user_id))
        raise RuntimeError(f"Corrupt queue entry {row.seq}: kind={row.kind!r} user_id={row.user_id!r}")

    # ------------------------------------------------------------------
    # Derived frontier for the completion-ratio policy
    # ------------------------------------------------------------------
    def targets_pending_followers(self) -> List[int]:
        """Targets whose follower list has not been fetched and that are not terminal."""
        targets = self.targets_table
        users = self.users

        def _op(conn: Connection) -> List[int]:
            stmt = (
                select(targets.c.id)
                .join(users, users.c.id == targets.c.id)
                .where(users.c.got_followers_at.is_(None))
                .where(users.c.accessible.is_not(False))
                .order_by(targets.c.added_at, targets.c.id)
            )
            return [row.id for row in conn.execute(stmt)]

        return self._read("targets_pending_followers", _op)

    def _uninspected_follower_condition(self, follower_users: Table):
        return and_(
            follower_users.c.got_friends_at.is_(None),
            follower_users.c.accessible.is_not(False),
        )

    def target_progress(self) -> List[TargetProgress]:
        """Per-target follower totals and how many still await their followee list."""
        targets = self.targets_table
        target_users = self.users.alias("target_users")
        follower_users = self.users.alias("follower_users")
        friendships = self.friendships
        pending = self._uninspected_follower_condition(follower_users)

        def _op(conn: Connection) -> List[TargetProgress]:
            stmt = (
                select(
                    targets.c.id.label("target_id"),
                    func.count(friendships.c.follower).label("followers"),
                    func.coalesce(func.sum(case((pending, 1), else_=0)), 0).label("uninspected"),
                )
                .select_from(targets)
                .join(target_users, target_users.c.id == targets.c.id)
                .join(friendships, friendships.c.friend == targets.c.id)
                .join(follower_users, follower_users.c.id == friendships.c.follower)
                .where(target_users.c.got_followers_at.is_not(None))
                .group_by(targets.c.id, targets.c.added_at)
                .order_by(targets.c.added_at, targets.c.id)
            )
            return [
                TargetProgress(
                    target_id=row.target_id,
                    followers=row.followers,
                    uninspected=row.uninspected,
                )
                for row in conn.execute(stmt)
            ]

        return self._read("target_progress", _op)

    def uninspected_follower_at(self, target_id: int, offset: int) -> Optional[int]:
        """The ``offset``-th (by id) follower of ``target_id`` still awaiting inspection."""
        follower_users = self.users.alias("follower_users")
        friendships = self.friendships
        pending = self._uninspected_follower_condition(follower_users)

        def _op(conn: Connection) -> Optional[int]:
            stmt = (
                select(friendships.c.follower)
                .join(follower_users, follower_users.c.id == friendships.c.follower)
                .where(friendships.c.friend == target_id)
                .where(pending)
                .order_by(friendships.c.follower)
                .limit(1)
                .offset(offset)
            )
            return conn.execute(stmt).scalar()

        return self._read("uninspected_follower_at", _op)


def create_sqlite_engine(path: Path) -> Engine:
    return create_engine(f"sqlite:///{Path(path)}", future=True)


def get_crawl_store(engine: Engine) -> CrawlStore:
    return CrawlStore(engine)
