import threading

import numpy as np
import pytest

from sdrcausal.core.errors import InvalidArgument
from sdrcausal.core.parallel import (
    TILE_SIZE,
    ParallelAggregator,
    resolve_n_threads,
    tile_bounds,
)


def test_tile_bounds_cover_range():
    bounds = tile_bounds(150, 64)
    assert bounds == [(0, 64), (64, 128), (128, 150)]
    assert tile_bounds(5) == [(0, 5)]
    with pytest.raises(InvalidArgument):
        tile_bounds(0)


def test_workers_clamped_to_observations():
    agg = ParallelAggregator(8, 3)
    assert agg.n_workers == 3
    # three rows fit in one tile: a single active worker
    assert agg.n_active == 1
    agg.close()


def test_idle_workers_get_no_thread():
    n = 2 * TILE_SIZE + 1
    with ParallelAggregator(16, n) as agg:
        assert agg.n_active == 3
        assert sum(len(a) for a in agg.assignments) == len(agg.tiles)


@pytest.mark.parametrize("n_threads", [1, 2, 3, 7])
def test_partials_returned_in_tile_order(n_threads):
    n = 500
    with ParallelAggregator(n_threads, n, tile_size=37) as agg:
        parts = agg.map_reduce(lambda s, e: (s, e))
    assert parts == tile_bounds(n, 37)


def test_sum_identical_across_thread_counts(rng):
    v = rng.standard_normal(1000) * 1e3

    def reduce(n_threads):
        with ParallelAggregator(n_threads, v.size) as agg:
            parts = agg.map_reduce(lambda s, e: float(np.sum(v[s:e])))
        total = 0.0
        for p in parts:
            total += p
        return total

    ref = reduce(1)
    for k in (2, 4, 8):
        assert reduce(k) == ref


def test_pool_reused_across_calls():
    names = set()
    with ParallelAggregator(2, 4 * TILE_SIZE) as agg:
        for _ in range(3):
            agg.map_reduce(lambda s, e: names.add(threading.current_thread().name))
    assert len(names) <= 2
    assert all(nm.startswith("sdrcausal") for nm in names)


def test_worker_exception_propagates():
    def boom(start, stop):
        if start >= TILE_SIZE:
            raise FloatingPointError("tile failed")
        return start

    with ParallelAggregator(4, 4 * TILE_SIZE) as agg:
        with pytest.raises(FloatingPointError, match="tile failed"):
            agg.map_reduce(boom)
        # the pool is still usable afterwards
        assert agg.map_reduce(lambda s, e: e - s) == [TILE_SIZE] * 4


def test_resolve_n_threads_env(monkeypatch):
    monkeypatch.setenv("SDRCAUSAL_NUM_THREADS", "3")
    assert resolve_n_threads(None) == 3
    assert resolve_n_threads(5) == 5
    monkeypatch.setenv("SDRCAUSAL_NUM_THREADS", "many")
    with pytest.raises(InvalidArgument):
        resolve_n_threads(None)


@pytest.mark.parametrize("bad", [0, -2, 1.5, True])
def test_resolve_n_threads_rejects_invalid(bad):
    with pytest.raises(InvalidArgument):
        resolve_n_threads(bad)
