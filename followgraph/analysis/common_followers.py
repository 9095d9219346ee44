"""Count, for each pair of targets, the accounts following both of them."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from itertools import combinations
from typing import Dict, Iterable, List, Optional, TextIO, Tuple

from sqlalchemy import bindparam, text
from sqlalchemy.engine import Engine


LOGGER = logging.getLogger(__name__)

TARGET_IDS_SQL = text("SELECT id FROM targets ORDER BY id")

# Followers shared by two accounts of :ids, for pairs with at least one.
PAIR_COUNTS_SQL = text(
    """
    SELECT a.friend AS left_id, b.friend AS right_id, COUNT(*) AS common
      FROM friendships AS a
      JOIN friendships AS b
        ON b.follower = a.follower
     WHERE a.friend < b.friend
       AND a.friend IN :ids
       AND b.friend IN :ids
     GROUP BY a.friend, b.friend
    """
).bindparams(bindparam("ids", expanding=True))


@dataclass(frozen=True)
class CommonFollowerCount:
    left: int
    right: int
    count: int


def count_common_followers(
    engine: Engine, targets: Optional[Iterable[int]] = None
) -> List[CommonFollowerCount]:
    """Read-only pass over the edge table.

    Every unordered pair ``(left, right)`` with ``left < right`` drawn from
    ``targets`` (the store's target set by default) is reported, including
    pairs without any common follower.
    """

    with engine.connect() as conn:
        if targets is None:
            ids = [row.id for row in conn.execute(TARGET_IDS_SQL)]
        else:
            ids = sorted(set(targets))
        if len(ids) < 2:
            return []
        counts: Dict[Tuple[int, int], int] = {
            (row.left_id, row.right_id): row.common
            for row in conn.execute(PAIR_COUNTS_SQL, {"ids": ids})
        }

    results = [
        CommonFollowerCount(left=left, right=right, count=counts.get((left, right), 0))
        for left, right in combinations(sorted(ids), 2)
    ]
    LOGGER.debug("Computed common-follower counts for %s pair(s)", len(results))
    return results


def write_tsv(results: Iterable[CommonFollowerCount], stream: TextIO) -> None:
    for item in results:
        stream.write(f"{item.left}\t{item.right}\t{item.count}\n")
