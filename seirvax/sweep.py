"""Vaccination-coverage sweep and aggregation.

For every coverage p in the grid:

  1. run n replicates of the SEIR driver (terminal state only)
  2. epidemic size = final R − round(p × (N − 1))
  3. epidemic iff size > threshold (strictly greater)
  4. prob_epidemic       = n_epidemic / n_effective
     mean_epidemic_size  = mean size over epidemics, NaN if there were none

and emit one row. Rows are sorted by coverage before being returned.

The outer loop over coverage is serial and shares one WorkerPool with the
replication layer, so parallelism is never nested. Each coverage has its
own random stream (rng.coverage_seed_sequence), and completed rows can be
checkpointed after every level.

Undefined means: when no replicate at some p exceeds the threshold,
mean_epidemic_size is NaN, mean_size_defined is False, and the row is kept.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from scipy import stats

from seirvax.checkpoint import (
    checkpoint_seed_entropy,
    load_checkpoint,
    save_checkpoint,
    sweep_fingerprint,
)
from seirvax.config import SweepConfig, validate_config
from seirvax.model import SEIRRun, vaccinated_count
from seirvax.replication import WorkerPool, run_replicates
from seirvax.rng import as_seed_sequence, coverage_seed_sequence
from seirvax.types import ConfigurationError, RunOutcome, SEIRParameters

logger = logging.getLogger(__name__)

RESULT_COLUMNS = [
    'coverage',
    'vaccinated',
    'n_runs',
    'n_failed',
    'n_epidemic',
    'prob_epidemic',
    'prob_ci_low',
    'prob_ci_high',
    'mean_epidemic_size',
    'mean_size_defined',
    'r_effective',
    'branching_prob_epidemic',
]


# ═══════════════════════════════════════════════════════════════════════
# AGGREGATION
# ═══════════════════════════════════════════════════════════════════════

def epidemic_sizes(outcomes: Sequence[RunOutcome]) -> np.ndarray:
    """Net epidemic size of each run."""
    return np.array([o.epidemic_size for o in outcomes], dtype=np.int64)


def classify_epidemics(sizes, threshold: int = 10) -> np.ndarray:
    """Boolean mask: size > threshold (a size equal to threshold is a fade-out)."""
    return np.asarray(sizes) > threshold


def clopper_pearson(k: int, n: int, confidence: float = 0.95) -> Tuple[float, float]:
    """Exact binomial confidence interval for k successes in n trials.

    Returns (nan, nan) when n == 0.
    """
    if n == 0:
        return float('nan'), float('nan')
    alpha = 1.0 - confidence
    lo = 0.0 if k == 0 else float(stats.beta.ppf(alpha / 2, k, n - k + 1))
    hi = 1.0 if k == n else float(stats.beta.ppf(1 - alpha / 2, k + 1, n - k))
    return lo, hi


def effective_reproduction_number(params: SEIRParameters, I0: int, p: float) -> float:
    """R0 scaled by the initially susceptible fraction S0/N."""
    S0 = params.N - I0 - vaccinated_count(params.N, p)
    return params.R0 * S0 / params.N


def branching_probability(r_eff: float, I0: int = 1) -> float:
    """Major-outbreak probability of the linearised branching process.

    1 − (1/R_eff)^I0 for R_eff > 1, else 0. A reference curve for the
    simulated prob_epidemic, not an input to it.
    """
    if r_eff <= 1.0 or I0 == 0:
        return 0.0
    return 1.0 - (1.0 / r_eff) ** I0


def summarize_coverage(
    p: float,
    sizes,
    n_runs: int,
    params: SEIRParameters,
    I0: int = 1,
    threshold: int = 10,
    confidence: float = 0.95,
) -> Dict:
    """Reduce the epidemic sizes of one coverage level to a result row.

    Args:
        p: Coverage.
        sizes: Epidemic sizes of the successful replicates.
        n_runs: Replicates attempted (successful + failed).
        params: Model parameters (for N, R0).
        I0: Initial infectious count.
        threshold: Epidemic iff size > threshold.
        confidence: Level of the Clopper–Pearson interval.
    """
    sizes = np.asarray(sizes, dtype=np.int64)
    n_eff = int(sizes.size)
    if n_eff > n_runs:
        raise ConfigurationError(f"{n_eff} sizes for {n_runs} runs")
    epidemic = classify_epidemics(sizes, threshold)
    k = int(epidemic.sum())
    prob = k / n_eff if n_eff else float('nan')
    mean_size = float(sizes[epidemic].mean()) if k else float('nan')
    lo, hi = clopper_pearson(k, n_eff, confidence)
    r_eff = effective_reproduction_number(params, I0, p)
    return {
        'coverage': float(p),
        'vaccinated': vaccinated_count(params.N, p),
        'n_runs': int(n_runs),
        'n_failed': int(n_runs - n_eff),
        'n_epidemic': k,
        'prob_epidemic': prob,
        'prob_ci_low': lo,
        'prob_ci_high': hi,
        'mean_epidemic_size': mean_size,
        'mean_size_defined': bool(k > 0),
        'r_effective': r_eff,
        'branching_prob_epidemic': branching_probability(r_eff, I0),
    }


def rows_to_table(rows: List[Dict]) -> pd.DataFrame:
    """Rows sorted by coverage, in RESULT_COLUMNS order."""
    if not rows:
        return pd.DataFrame(columns=RESULT_COLUMNS)
    df = pd.DataFrame.from_records(rows)[RESULT_COLUMNS]
    return df.sort_values('coverage').reset_index(drop=True)


# ═══════════════════════════════════════════════════════════════════════
# SWEEP
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class SweepResult:
    """Result table of a coverage sweep plus per-replicate failures."""
    table: pd.DataFrame
    params: SEIRParameters
    errors: Dict[float, List[Tuple[int, str]]] = field(default_factory=dict)
    n_resumed: int = 0           # coverage levels taken from a checkpoint
    runtime_s: float = 0.0

    @property
    def n_failed(self) -> int:
        return int(self.table['n_failed'].sum()) if len(self.table) else 0

    def row(self, coverage: float) -> pd.Series:
        """The row for one coverage value."""
        match = self.table[np.isclose(self.table['coverage'], coverage)]
        if match.empty:
            raise KeyError(f"no row for coverage {coverage}")
        return match.iloc[0]


def run_coverage(
    config: SweepConfig,
    p: float,
    seed,
    pool: Optional[WorkerPool] = None,
):
    """Run the replicates of one coverage level.

    Returns:
        (row dict, ReplicationBatch)
    """
    params = config.parameters()
    I0 = config.model.initial_infectious
    run = SEIRRun(
        params, I0=I0, p=float(p), tf=config.simulation.tf,
        method=config.simulation.method, tau_options=config.tau_options(),
        terminal_only=True,
    )
    batch = run_replicates(run, config.sweep.n_replicates, seed=seed,
                           workers=config.sweep.workers, pool=pool)
    row = summarize_coverage(
        p, epidemic_sizes(batch.values), batch.n, params, I0=I0,
        threshold=config.sweep.threshold, confidence=config.sweep.confidence,
    )
    return row, batch


def run_sweep(
    config: SweepConfig,
    checkpoint_path: Optional[Union[str, Path]] = None,
) -> SweepResult:
    """Estimate outbreak probability and size over the coverage grid.

    Args:
        config: Sweep configuration (validated here before any work starts).
        checkpoint_path: Overrides config.output.checkpoint_file.

    Returns:
        SweepResult with one row per coverage, sorted by coverage.

    Raises:
        ConfigurationError: Invalid configuration or mismatched checkpoint.
        SimulationError: A replicate failed and sweep.on_failure == 'raise'.
    """
    validate_config(config)
    t0 = time.perf_counter()
    params = config.parameters()
    coverages = config.coverage_values()
    ckpt = checkpoint_path if checkpoint_path is not None else config.output.checkpoint_file
    fingerprint = sweep_fingerprint(config)

    seed = config.simulation.seed
    if seed is None and ckpt is not None:
        # an unseeded sweep resumes on the entropy its finished rows used
        seed = checkpoint_seed_entropy(ckpt)
        if seed is not None:
            logger.info("adopting seed entropy %s from checkpoint %s", seed, ckpt)
    master = as_seed_sequence(seed)

    rows: List[Dict] = []
    if ckpt is not None:
        previous = load_checkpoint(ckpt, fingerprint, seed_entropy=master.entropy)
        if previous is not None:
            wanted = previous['coverage'].apply(
                lambda c: bool(np.isclose(coverages, c).any()))
            rows = previous[wanted].to_dict('records')
    n_resumed = len(rows)
    done = np.array([r['coverage'] for r in rows], dtype=np.float64)
    todo = [p for p in coverages if not np.isclose(done, p).any()]

    logger.info(
        "sweep: %d coverage levels (%d resumed), n=%d, N=%d, R0=%.3g, pc=%.4f, "
        "method=%s, seed entropy=%s",
        len(coverages), n_resumed, config.sweep.n_replicates, params.N,
        params.R0, params.critical_coverage, config.simulation.method, master.entropy,
    )

    errors: Dict[float, List[Tuple[int, str]]] = {}
    with WorkerPool(config.sweep.workers) as pool:
        for p in todo:
            t_level = time.perf_counter()
            row, batch = run_coverage(config, p, coverage_seed_sequence(master, p), pool=pool)
            if batch.n_failed:
                errors[float(p)] = batch.errors
                if config.sweep.on_failure == 'raise':
                    batch.raise_on_failure()
            rows.append(row)
            if ckpt is not None:
                save_checkpoint(ckpt, rows_to_table(rows), fingerprint,
                                seed_entropy=master.entropy)
            logger.info(
                "p=%.4f: P(epidemic)=%.3f [%.3f, %.3f], mean size=%s, "
                "%d/%d failed (%.1fs)",
                p, row['prob_epidemic'], row['prob_ci_low'], row['prob_ci_high'],
                f"{row['mean_epidemic_size']:.1f}" if row['mean_size_defined'] else 'undefined',
                row['n_failed'], row['n_runs'], time.perf_counter() - t_level,
            )

    return SweepResult(
        table=rows_to_table(rows),
        params=params,
        errors=errors,
        n_resumed=n_resumed,
        runtime_s=time.perf_counter() - t0,
    )
