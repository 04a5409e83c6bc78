"""Thread-pool evaluation of per-observation contributions.

Observations are cut into fixed-size contiguous tiles. Tiles are handed to
workers in contiguous runs; every worker writes only into its own
:class:`PartialAccumulator`. After all workers have joined, tile partials are
returned in ascending tile order so that the caller's reduction order (and
therefore the floating-point result) does not depend on the worker count or
on scheduling.

A single :class:`ParallelAggregator` is meant to live for a whole estimation
run so the optimiser's repeated objective evaluations reuse one pool.
"""
from __future__ import annotations

import logging
import multiprocessing
import os
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from typing import TYPE_CHECKING, Any, Callable

import numpy as np

from .errors import InvalidArgument

if TYPE_CHECKING:
    from collections.abc import Sequence

__all__ = [
    "TILE_SIZE",
    "PartialAccumulator",
    "ParallelAggregator",
    "resolve_n_threads",
    "tile_bounds",
]

LOGGER = logging.getLogger(__name__)

TILE_SIZE: int = 64

_ENV_THREADS = "SDRCAUSAL_NUM_THREADS"


def resolve_n_threads(n_threads: int | None = None) -> int:
    """Return a validated worker count.

    ``None`` reads ``SDRCAUSAL_NUM_THREADS`` and falls back to
    ``min(cpu_count, 4)``.
    """
    if n_threads is None:
        raw = str(os.environ.get(_ENV_THREADS, "")).strip()
        if raw:
            try:
                n_threads = int(raw)
            except ValueError as exc:
                msg = f"{_ENV_THREADS} must be a positive integer; got {raw!r}"
                raise InvalidArgument(msg) from exc
        else:
            n_threads = min(multiprocessing.cpu_count(), 4)
    if isinstance(n_threads, (bool, np.bool_)) or int(n_threads) != n_threads:
        raise InvalidArgument(f"n_threads must be a positive integer; got {n_threads!r}")
    if int(n_threads) <= 0:
        raise InvalidArgument(f"n_threads must be positive; got {n_threads!r}")
    return int(n_threads)


def tile_bounds(n_items: int, tile_size: int = TILE_SIZE) -> list[tuple[int, int]]:
    """Contiguous ``[start, stop)`` tiles covering ``range(n_items)``."""
    if n_items <= 0:
        raise InvalidArgument("n_items must be positive")
    if tile_size <= 0:
        raise InvalidArgument("tile_size must be positive")
    return [(s, min(s + tile_size, n_items)) for s in range(0, n_items, tile_size)]


class PartialAccumulator:
    """Tile results owned by exactly one worker until the join."""

    def __init__(self, worker: int) -> None:
        self.worker = int(worker)
        self.tiles: list[tuple[int, Any]] = []

    def add(self, tile_index: int, partial: Any) -> None:
        self.tiles.append((int(tile_index), partial))

    def __len__(self) -> int:
        return len(self.tiles)


def _run_worker(
    worker: int,
    assignment: Sequence[int],
    bounds: Sequence[tuple[int, int]],
    func: Callable[[int, int], Any],
) -> PartialAccumulator:
    acc = PartialAccumulator(worker)
    for t in assignment:
        start, stop = bounds[t]
        acc.add(t, func(start, stop))
    return acc


class ParallelAggregator:
    """Fixed worker pool with a deterministic, barrier-based map/reduce.

    Parameters
    ----------
    n_threads : int
        Requested worker count; clamped to ``[1, n_items]``.
    n_items : int
        Number of observations to partition.
    tile_size : int
        Rows per tile. The tiling depends only on ``n_items`` and this value.

    """

    def __init__(self, n_threads: int, n_items: int, *, tile_size: int = TILE_SIZE) -> None:
        requested = resolve_n_threads(n_threads)
        n_items = int(n_items)
        self.tiles = tile_bounds(n_items, int(tile_size))
        self.n_items = n_items
        self.n_workers = max(1, min(requested, n_items))
        blocks = np.array_split(np.arange(len(self.tiles)), self.n_workers)
        self.assignments: list[list[int]] = [b.tolist() for b in blocks]
        # Workers without tiles stay idle and never get a thread.
        self.n_active = sum(1 for a in self.assignments if a)
        self._executor: ThreadPoolExecutor | None = None
        if requested > self.n_workers:
            LOGGER.debug(
                "Requested %d threads for %d observations; using %d workers.",
                requested, n_items, self.n_workers,
            )

    def __enter__(self) -> ParallelAggregator:
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    def _ensure_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            LOGGER.debug("Starting worker pool with %d threads.", self.n_active)
            self._executor = ThreadPoolExecutor(
                max_workers=self.n_active, thread_name_prefix="sdrcausal",
            )
        return self._executor

    def close(self) -> None:
        """Shut the pool down; a later ``map_reduce`` starts a fresh one."""
        if self._executor is not None:
            LOGGER.debug("Shutting down worker pool.")
            self._executor.shutdown(wait=True)
            self._executor = None

    def map_reduce(self, func: Callable[[int, int], Any]) -> list[Any]:
        """Apply ``func(start, stop)`` to every tile and return partials in tile order.

        All workers are joined before anything is returned. If any worker
        raises, outstanding tiles are cancelled and the first exception is
        re-raised once every running worker has finished.
        """
        if self.n_active == 1:
            accumulators = [_run_worker(0, self.assignments[0], self.tiles, func)]
        else:
            executor = self._ensure_executor()
            futures = [
                executor.submit(_run_worker, w, a, self.tiles, func)
                for w, a in enumerate(self.assignments)
                if a
            ]
            done, pending = wait(futures, return_when=FIRST_EXCEPTION)
            failed = [f for f in futures if f in done and f.exception() is not None]
            if failed:
                for f in pending:
                    f.cancel()
                wait(futures)
                raise failed[0].exception()
            accumulators = [f.result() for f in futures]

        out: list[Any] = [None] * len(self.tiles)
        for acc in accumulators:
            for t, partial in acc.tiles:
                out[t] = partial
        return out
