"""Replication layer: many independent runs of one fixed setting.

Fan-out/fan-in over a multiprocessing worker pool:

    batch = run_replicates(SEIRRun(params, p=0.5), n=1000, seed=ss, workers=7)
    batch.values      # successful results, ordered by replicate index
    batch.n_failed    # replicates whose run raised

Each replicate receives its own Generator built from its own child
SeedSequence (see rng.py); no random state is shared between workers.

A replicate that raises is captured as a failed ReplicateResult, never
dropped. ConfigurationError is the exception: it means every replicate
would fail the same way, so it propagates and aborts the batch.
"""

from __future__ import annotations

import logging
import math
import os
import time
from dataclasses import dataclass, field
from multiprocessing import Pool
from typing import Any, Callable, List, Optional, Tuple

import numpy as np

from seirvax.rng import SeedLike, make_generator, replicate_seed_sequences
from seirvax.types import ConfigurationError, SimulationError

logger = logging.getLogger(__name__)


def default_workers() -> int:
    """Available hardware parallelism minus one (at least 1)."""
    return max(1, (os.cpu_count() or 1) - 1)


# ═══════════════════════════════════════════════════════════════════════
# RESULTS
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class ReplicateResult:
    """Outcome of a single replicate."""
    index: int
    value: Any = None
    error: Optional[str] = None   # "ExcType: message" if the run raised
    runtime: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class ReplicationBatch:
    """All replicates of one setting, ordered by index."""
    results: List[ReplicateResult] = field(default_factory=list)

    @property
    def n(self) -> int:
        return len(self.results)

    @property
    def values(self) -> List[Any]:
        return [r.value for r in self.results if r.ok]

    @property
    def n_failed(self) -> int:
        return sum(1 for r in self.results if not r.ok)

    @property
    def n_effective(self) -> int:
        return self.n - self.n_failed

    @property
    def errors(self) -> List[Tuple[int, str]]:
        return [(r.index, r.error) for r in self.results if not r.ok]

    @property
    def total_runtime(self) -> float:
        return float(sum(r.runtime for r in self.results))

    def raise_on_failure(self) -> None:
        """Raise SimulationError if any replicate failed."""
        if self.n_failed:
            first_idx, first_err = self.errors[0]
            raise SimulationError(
                f"{self.n_failed}/{self.n} replicates failed "
                f"(first: replicate {first_idx}: {first_err})"
            )


# ═══════════════════════════════════════════════════════════════════════
# WORKER
# ═══════════════════════════════════════════════════════════════════════

def _run_replicate(task) -> ReplicateResult:
    """Run one replicate. Module-level so worker processes can unpickle it.

    Args:
        task: tuple (index, run_fn, seed_seq)
    """
    index, run_fn, seed_seq = task
    t0 = time.perf_counter()
    try:
        value = run_fn(make_generator(seed_seq))
    except ConfigurationError:
        raise
    except Exception as e:
        return ReplicateResult(
            index=index,
            error=f"{type(e).__name__}: {str(e)[:200]}",
            runtime=time.perf_counter() - t0,
        )
    return ReplicateResult(index=index, value=value,
                           runtime=time.perf_counter() - t0)


# ═══════════════════════════════════════════════════════════════════════
# POOL
# ═══════════════════════════════════════════════════════════════════════

class WorkerPool:
    """Fixed-size process pool, created on first use, reused across batches.

    workers == 1 runs everything serially in the calling process. If the
    pool cannot be created or a dispatch fails with OSError (fork failure,
    out of memory), the batch is retried at half the parallelism, down to
    serial execution.

    Usage:
        with WorkerPool(workers=7) as pool:
            for p in coverages:
                run_replicates(SEIRRun(params, p=p), n, seed, pool=pool)
    """

    def __init__(self, workers: Optional[int] = None):
        workers = default_workers() if workers is None else int(workers)
        if workers < 1:
            raise ConfigurationError(f"workers must be >= 1, got {workers}")
        self.workers = workers
        self._pool = None

    def __enter__(self) -> 'WorkerPool':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close(terminate=exc_type is not None)

    def close(self, terminate: bool = False) -> None:
        if self._pool is None:
            return
        if terminate:
            self._pool.terminate()
        else:
            self._pool.close()
        self._pool.join()
        self._pool = None

    def map(self, fn: Callable, tasks: list) -> list:
        while self.workers > 1:
            try:
                if self._pool is None:
                    self._pool = Pool(processes=self.workers)
                chunksize = max(1, math.ceil(len(tasks) / (self.workers * 4)))
                return self._pool.map(fn, tasks, chunksize=chunksize)
            except OSError as e:
                reduced = max(1, self.workers // 2)
                logger.warning(
                    "worker pool failed with %d workers (%s); retrying with %d",
                    self.workers, e, reduced,
                )
                self.close(terminate=True)
                self.workers = reduced
        return [fn(task) for task in tasks]


# ═══════════════════════════════════════════════════════════════════════
# ENTRY POINT
# ═══════════════════════════════════════════════════════════════════════

def run_replicates(
    run_fn: Callable[[np.random.Generator], Any],
    n: int,
    seed: SeedLike = None,
    workers: Optional[int] = None,
    pool: Optional[WorkerPool] = None,
) -> ReplicationBatch:
    """Run ``run_fn`` n times, each with an independent Generator.

    Args:
        run_fn: Picklable callable taking a numpy Generator (e.g. SEIRRun).
        n: Number of replicates (>= 1).
        seed: Master seed or SeedSequence for this batch.
        workers: Degree of parallelism when no pool is given
            (default: cpu_count − 1).
        pool: Shared WorkerPool; takes precedence over ``workers``.

    Returns:
        ReplicationBatch with one ReplicateResult per replicate.

    Raises:
        ConfigurationError: Invalid n / workers, or raised by run_fn.
    """
    if n < 1:
        raise ConfigurationError(f"replicate count must be >= 1, got {n}")
    tasks = [(i, run_fn, ss) for i, ss in enumerate(replicate_seed_sequences(seed, n))]

    t0 = time.perf_counter()
    if pool is not None:
        results = pool.map(_run_replicate, tasks)
    else:
        with WorkerPool(workers) as own_pool:
            results = own_pool.map(_run_replicate, tasks)

    batch = ReplicationBatch(sorted(results, key=lambda r: r.index))
    elapsed = time.perf_counter() - t0
    if batch.n_failed:
        logger.warning(
            "%s: %d/%d replicates failed (first: %s)",
            run_fn, batch.n_failed, n, batch.errors[0][1],
        )
    logger.debug("%s: %d replicates in %.2fs", run_fn, n, elapsed)
    return batch
