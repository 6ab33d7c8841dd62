#!/usr/bin/env python3
"""
Vaccination coverage sweep

Estimate, for each coverage level p, the probability that a single
introduction causes an outbreak (epidemic size > threshold) and the mean
outbreak size given that one occurs. Writes one CSV row per coverage.

Usage:
    python3 scripts/run_sweep.py [--config configs/default.yaml] [--scenario S.yaml]
                                 [--workers 8] [--n-replicates 1000]
                                 [--out results/sweep.csv] [--checkpoint ckpt.csv]

Resuming an interrupted sweep:
    python3 scripts/run_sweep.py --scenario configs/vaccination_sweep.yaml
    # ... interrupted ...
    python3 scripts/run_sweep.py --scenario configs/vaccination_sweep.yaml  # skips done levels
"""

import argparse
import logging
import os
import sys
import time
from pathlib import Path

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from seirvax.config import load_config
from seirvax.sweep import run_sweep
from seirvax.types import ConfigurationError, SimulationError

DEFAULT_CONFIG = Path(__file__).parent.parent / "configs" / "default.yaml"


def build_overrides(args):
    """CLI flags → nested override dict (same shape as the YAML)."""
    overrides = {}
    if args.workers is not None:
        overrides.setdefault('sweep', {})['workers'] = args.workers
    if args.n_replicates is not None:
        overrides.setdefault('sweep', {})['n_replicates'] = args.n_replicates
    if args.seed is not None:
        overrides.setdefault('simulation', {})['seed'] = args.seed
    if args.method is not None:
        overrides.setdefault('simulation', {})['method'] = args.method
    if args.out is not None:
        overrides.setdefault('output', {})['results_file'] = args.out
    if args.checkpoint is not None:
        overrides.setdefault('output', {})['checkpoint_file'] = args.checkpoint
    return overrides


def main(argv=None):
    parser = argparse.ArgumentParser(description="Stochastic SEIR vaccination coverage sweep")
    parser.add_argument("--config", type=str, default=str(DEFAULT_CONFIG),
                        help="Base YAML configuration")
    parser.add_argument("--scenario", type=str, default=None,
                        help="Scenario YAML merged over the base config")
    parser.add_argument("--workers", type=int, default=None,
                        help="Worker processes (default: cpu_count - 1)")
    parser.add_argument("--n-replicates", type=int, default=None,
                        help="Replicates per coverage level")
    parser.add_argument("--seed", type=int, default=None,
                        help="Master RNG seed")
    parser.add_argument("--method", type=str, default=None,
                        choices=["exact", "adaptive_tau"],
                        help="Simulation engine")
    parser.add_argument("--out", type=str, default=None,
                        help="Output CSV path")
    parser.add_argument("--checkpoint", type=str, default=None,
                        help="Checkpoint CSV path (resume if it exists)")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = load_config(args.config, args.scenario, build_overrides(args))
    except (FileNotFoundError, ConfigurationError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    params = config.parameters()
    n_levels = len(config.coverage_values())
    print(f"SEIR sweep: N={params.N}, I0={config.model.initial_infectious}, "
          f"R0={params.R0:.3f}, pc={params.critical_coverage:.4f}")
    print(f"  {n_levels} coverage levels x {config.sweep.n_replicates} replicates, "
          f"method={config.simulation.method}, tf={config.simulation.tf}")

    t0 = time.time()
    try:
        result = run_sweep(config)
    except SimulationError as e:
        print(f"ERROR: sweep aborted: {e}", file=sys.stderr)
        return 1

    out = Path(config.output.results_file)
    out.parent.mkdir(parents=True, exist_ok=True)
    result.table.to_csv(out, index=False)

    elapsed = time.time() - t0
    print(f"\nDone in {elapsed:.1f}s ({result.n_resumed} levels resumed, "
          f"{result.n_failed} failed replicates)")
    print(f"Results: {out}")
    cols = ['coverage', 'prob_epidemic', 'prob_ci_low', 'prob_ci_high',
            'mean_epidemic_size', 'branching_prob_epidemic']
    print(result.table[cols].to_string(index=False, float_format=lambda x: f"{x:.4f}"))
    return 0


if __name__ == "__main__":
    sys.exit(main())
