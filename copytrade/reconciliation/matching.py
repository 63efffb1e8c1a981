"""
Greedy nearest-neighbour matching within tolerance windows.

Shared by history reconciliation, leverage repair and orphan linking. Every
(left, right) pair the caller's ``distance`` function accepts is a
candidate; candidates are consumed smallest distance first, and a record on
either side is matched at most once. Ties break on input order so results
are reproducible.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Generic, Optional, Sequence, TypeVar

L = TypeVar("L")
R = TypeVar("R")


@dataclass
class MatchResult(Generic[L, R]):
    pairs: list[tuple[L, R, float]]
    unmatched_left: list[L]
    unmatched_right: list[R]


def greedy_match(
    left: Sequence[L],
    right: Sequence[R],
    distance: Callable[[L, R], Optional[float]],
) -> MatchResult[L, R]:
    """
    Pair records one-to-one, nearest first.

    Args:
        left: Records to match (e.g. exchange history entries)
        right: Candidates (e.g. stored positions)
        distance: Distance for an acceptable pair, None when the pair is
            outside tolerance or otherwise incompatible

    Returns:
        MatchResult with (left, right, distance) pairs in consumption order
    """
    candidates = []
    for i, a in enumerate(left):
        for j, b in enumerate(right):
            d = distance(a, b)
            if d is not None:
                candidates.append((d, i, j))
    candidates.sort()

    used_left: set[int] = set()
    used_right: set[int] = set()
    pairs: list[tuple[L, R, float]] = []
    for d, i, j in candidates:
        if i in used_left or j in used_right:
            continue
        used_left.add(i)
        used_right.add(j)
        pairs.append((left[i], right[j], d))

    return MatchResult(
        pairs=pairs,
        unmatched_left=[a for i, a in enumerate(left) if i not in used_left],
        unmatched_right=[b for j, b in enumerate(right) if j not in used_right],
    )


def time_distance(a: Optional[datetime], b: Optional[datetime], tolerance: timedelta) -> Optional[float]:
    """Seconds between two timestamps, or None if either is missing or they are too far apart."""
    if a is None or b is None:
        return None
    delta = abs((a - b).total_seconds())
    return delta if delta <= tolerance.total_seconds() else None
