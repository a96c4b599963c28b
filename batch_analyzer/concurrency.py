from __future__ import annotations

SOLO_CONCURRENCY = 3
SHARED_CONCURRENCY = 2


def decide_concurrency(
    running_jobs: int,
    *,
    solo: int = SOLO_CONCURRENCY,
    shared: int = SHARED_CONCURRENCY,
) -> int:
    """Pick the per-job item concurrency from the number of other jobs already running.

    A static heuristic: overlapping batches share the analysis backend, so each
    one gets a smaller slice of it.
    """
    if running_jobs < 0:
        raise ValueError("running_jobs must be >= 0")
    limit = solo if running_jobs == 0 else shared
    return max(1, limit)
