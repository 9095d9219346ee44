"""Tests for creating, reopening and seeding the crawl store."""
from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest

from followgraph.crawl.bootstrap import (
    CrawlConfigurationError,
    add_targets,
    crawl_session,
    open_session,
)
from followgraph.crawl.coordinator import EDGE_MODE_FOLLOWERS, EDGE_MODE_MUTUAL
from followgraph.crawl.frontier import BfsLevelFrontier, CompletionRatioFrontier
from followgraph.data.crawl_store import CrawlStore, LevelBoundary, VertexEntry, create_sqlite_engine
from followgraph.remote.pages import FOLLOWERS, FRIENDS


def _queue_items(store):
    return [entry.item for entry in store.queue_entries()]


@pytest.mark.integration
class TestFirstRun:
    def test_creates_store_with_seeds_and_metadata(self, tmp_path: Path):
        path = tmp_path / "nested" / "crawl.sqlite3"

        with crawl_session(path, [5, 3, 5]) as session:
            assert session.created is True
            assert session.frontier_policy == "bfs"
            assert session.edge_mode == EDGE_MODE_MUTUAL
            assert session.directions == (FRIENDS, FOLLOWERS)
            assert session.store.get_meta() == {"frontier_policy": "bfs", "edge_mode": "mutual"}
            assert sorted(session.store.targets()) == [3, 5]
            assert {v.account_id: v.distance for v in session.store.fetch_vertices()} == {3: 0, 5: 0}
            assert _queue_items(session.store) == [VertexEntry(5), VertexEntry(3), LevelBoundary()]
            assert isinstance(session.build_frontier(), BfsLevelFrontier)

        assert path.exists()

    def test_ratio_policy_uses_follower_edges(self, tmp_path: Path):
        with crawl_session(tmp_path / "crawl.sqlite3", [10, 20], frontier_policy="ratio") as session:
            assert session.edge_mode == EDGE_MODE_FOLLOWERS
            assert session.directions == (FOLLOWERS,)
            assert session.store.queue_entries() == []
            assert sorted(session.store.targets()) == [10, 20]
            assert isinstance(session.build_frontier(), CompletionRatioFrontier)

    def test_ratio_policy_rejects_mutual_edges(self, tmp_path: Path):
        path = tmp_path / "crawl.sqlite3"

        with pytest.raises(CrawlConfigurationError):
            open_session(path, [1], frontier_policy="ratio", edge_mode=EDGE_MODE_MUTUAL)
        assert not path.exists()

    def test_requires_seeds(self, tmp_path: Path):
        path = tmp_path / "crawl.sqlite3"

        with pytest.raises(CrawlConfigurationError, match="at least one"):
            open_session(path, [])
        assert not path.exists()

    def test_failed_bootstrap_leaves_no_file(self, tmp_path: Path):
        path = tmp_path / "crawl.sqlite3"

        with patch(
            "followgraph.crawl.bootstrap.CrawlStore.atomic",
            side_effect=RuntimeError("disk full"),
        ):
            with pytest.raises(RuntimeError, match="disk full"):
                open_session(path, [1])

        assert not path.exists()

    def test_interrupted_bootstrap_leaves_no_file(self, tmp_path: Path):
        path = tmp_path / "crawl.sqlite3"

        with patch(
            "followgraph.crawl.bootstrap.CrawlStore.atomic",
            side_effect=KeyboardInterrupt,
        ):
            with pytest.raises(KeyboardInterrupt):
                open_session(path, [1])

        assert not path.exists()

    def test_interrupt_before_move_leaves_no_file(self, tmp_path: Path):
        path = tmp_path / "crawl.sqlite3"

        with patch("followgraph.crawl.bootstrap.os.replace", side_effect=KeyboardInterrupt):
            with pytest.raises(KeyboardInterrupt):
                open_session(path, [1])

        assert list(tmp_path.iterdir()) == []

    def test_store_killed_after_schema_creation_is_rebuilt(self, tmp_path: Path):
        path = tmp_path / "crawl.sqlite3"
        # A process killed between schema creation and seeding leaves this behind.
        CrawlStore(create_sqlite_engine(tmp_path / "crawl.sqlite3.bootstrap")).close()

        with crawl_session(path, [1]) as session:
            assert session.created is True
            assert session.store.get_meta() == {"frontier_policy": "bfs", "edge_mode": "mutual"}
            assert _queue_items(session.store) == [VertexEntry(1), LevelBoundary()]

        assert sorted(p.name for p in tmp_path.iterdir()) == ["crawl.sqlite3"]


@pytest.mark.integration
class TestReopen:
    def test_reopen_keeps_stored_settings(self, tmp_path: Path):
        path = tmp_path / "crawl.sqlite3"
        with crawl_session(path, [1], edge_mode=EDGE_MODE_FOLLOWERS):
            pass

        with crawl_session(path) as session:
            assert session.created is False
            assert session.frontier_policy == "bfs"
            assert session.edge_mode == EDGE_MODE_FOLLOWERS
            assert _queue_items(session.store) == [VertexEntry(1), LevelBoundary()]

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"frontier_policy": "ratio"},
            {"edge_mode": EDGE_MODE_FOLLOWERS},
        ],
    )
    def test_conflicting_settings_are_rejected(self, tmp_path: Path, kwargs):
        path = tmp_path / "crawl.sqlite3"
        with crawl_session(path, [1]):
            pass

        with pytest.raises(CrawlConfigurationError, match="was created with"):
            open_session(path, **kwargs)

    def test_store_without_metadata_is_rejected(self, tmp_path: Path):
        path = tmp_path / "crawl.sqlite3"
        path.write_bytes(b"")

        with pytest.raises(CrawlConfigurationError, match="no crawl metadata"):
            open_session(path)

    def test_new_targets_wait_for_the_queue_to_drain(self, tmp_path: Path):
        path = tmp_path / "crawl.sqlite3"
        with crawl_session(path, [1]) as session:
            session.store.atomic("discover", lambda tx: tx.upsert_vertex(2, distance=1))
            session.store.atomic("enqueue", lambda tx: tx.enqueue([VertexEntry(2)]))

        with crawl_session(path, [9, 1]) as session:
            assert sorted(session.store.targets()) == [1, 9]
            assert session.store.read_status(9).distance == 0
            assert _queue_items(session.store) == [VertexEntry(1), LevelBoundary(), VertexEntry(2)]
            assert session.store.uninspected_targets(session.directions) == [1, 9]

    def test_new_targets_restart_a_drained_queue(self, tmp_path: Path):
        path = tmp_path / "crawl.sqlite3"
        with crawl_session(path, [1]) as session:
            head = session.store.queue_head()[0]
            session.store.atomic("drain", lambda tx: tx.dequeue(head.seq))
            assert _queue_items(session.store) == [LevelBoundary()]

            assert add_targets(session, [7, 8]) == 2
            assert _queue_items(session.store) == [VertexEntry(7), VertexEntry(8), LevelBoundary()]

    def test_known_accounts_are_not_requeued(self, tmp_path: Path):
        path = tmp_path / "crawl.sqlite3"
        with crawl_session(path, [1]) as session:
            assert add_targets(session, [1]) == 0
            assert _queue_items(session.store) == [VertexEntry(1), LevelBoundary()]

    def test_ratio_targets_are_added_without_queue(self, tmp_path: Path):
        path = tmp_path / "crawl.sqlite3"
        with crawl_session(path, [10], frontier_policy="ratio"):
            pass

        with crawl_session(path, [20]) as session:
            assert sorted(session.store.targets()) == [10, 20]
            assert session.store.targets_pending_followers() == [10, 20]
            assert session.store.queue_entries() == []
