"""Split a file list into balanced work lists for the scan workers.

Balance is driven by how long each file took the last time it was scanned.
Timed files are packed longest-first onto the least-loaded list; a file that
alone exceeds the average per-worker budget gets a list to itself. Files never
timed before are dealt round-robin afterwards.
"""

from __future__ import annotations

import heapq
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence


def split_evenly(files: Sequence[str], k: int) -> list[list[str]]:
    """Naive chunking into at most k non-empty lists of near-equal length."""
    k = max(1, min(k, len(files)))
    size, extra = divmod(len(files), k)
    lists: list[list[str]] = []
    start = 0
    for i in range(k):
        end = start + size + (1 if i < extra else 0)
        lists.append(list(files[start:end]))
        start = end
    return [lst for lst in lists if lst]


def split_balanced(
    files: Sequence[str],
    k: int,
    history: Mapping[str, float],
) -> list[list[str]]:
    """Split files into at most k lists with near-equal summed history.

    Falls back to split_evenly when there are no more files than workers or
    none of the files has a recorded time.
    """
    if not files:
        return []
    timed = [(history[f], f) for f in files if history.get(f) is not None]
    if len(files) <= k or not timed:
        return split_evenly(files, k)

    untimed = [f for f in files if history.get(f) is None]
    budget = sum(t for t, _ in timed) / k
    lists: list[list[str]] = [[] for _ in range(k)]
    loads = [0.0] * k

    # Heap of (load, index) for lists still accepting files.
    open_heap = [(0.0, i) for i in range(k)]
    closed: list[int] = []

    timed.sort(key=lambda item: (-item[0], item[1]))
    for elapsed, f in timed:
        if open_heap:
            load, idx = heapq.heappop(open_heap)
        else:
            # Every list already holds an oversized file.
            idx = min(range(k), key=lambda i: loads[i])
            load = loads[idx]
        lists[idx].append(f)
        loads[idx] = load + elapsed
        if elapsed > budget and load == 0.0:
            closed.append(idx)
        elif idx not in closed:
            heapq.heappush(open_heap, (loads[idx], idx))

    order = sorted(range(k), key=lambda i: (loads[i], i))
    for n, f in enumerate(untimed):
        lists[order[n % k]].append(f)

    return [lst for lst in lists if lst]


def imbalance(lists: Sequence[Sequence[str]], history: Mapping[str, float]) -> float:
    """Difference between the heaviest and lightest list, in seconds."""
    sums = [sum(history.get(f, 0.0) for f in lst) for lst in lists]
    return max(sums) - min(sums) if sums else 0.0
