"""Configuration system for seirvax.

Hierarchical YAML configuration with deep-merge support:
  base.yaml → scenario override → programmatic overrides

Sections map 1:1 to YAML top-level keys:
  model       population and rates (N, I0, beta, sigma, gamma)
  simulation  horizon, engine method, master seed, step bound
  tau_leap    adaptive tau-leaping tolerances
  sweep       coverage grid, replicates, threshold, parallelism
  output      result table and checkpoint paths

Unknown keys are ignored; every loaded config goes through validate_config().
"""

from __future__ import annotations

import dataclasses
import os
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import numpy as np
import yaml

from seirvax.engine import (
    DEFAULT_EPSILON,
    DEFAULT_EXACT_THRESHOLD,
    DEFAULT_MAX_STEPS,
    DEFAULT_N_CRITICAL,
    DEFAULT_N_EXACT_STEPS,
    METHODS,
)
from seirvax.types import ConfigurationError, SEIRParameters


# ═══════════════════════════════════════════════════════════════════════
# CONFIGURATION DATACLASSES
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class ModelSection:
    """Closed SEIR population and rates (per day)."""
    population_size: int = 1_000_000
    initial_infectious: int = 1
    beta: float = 5.0              # contact rate
    sigma: float = 1.0 / 7.0       # 1 / mean latent period
    gamma: float = 1.0 / 7.0       # 1 / mean infectious period


@dataclass
class SimulationSection:
    """Engine settings for a single run."""
    tf: float = 100.0              # horizon (days); sweep studies use 1000
    method: str = 'exact'          # 'exact' or 'adaptive_tau'
    seed: Optional[int] = 42       # master seed; None → OS entropy
    max_steps: int = DEFAULT_MAX_STEPS


@dataclass
class TauLeapSection:
    """Adaptive tau-leaping tolerances (only used when method='adaptive_tau')."""
    epsilon: float = DEFAULT_EPSILON
    n_critical: int = DEFAULT_N_CRITICAL
    exact_threshold: float = DEFAULT_EXACT_THRESHOLD
    n_exact_steps: int = DEFAULT_N_EXACT_STEPS
    max_tau: Optional[float] = None   # None → unbounded


@dataclass
class SweepSection:
    """Vaccination-coverage sweep.

    The grid is coverage_start..coverage_stop (inclusive) in steps of
    coverage_step, unless an explicit ``coverages`` list is given.
    """
    coverage_start: float = 0.0
    coverage_stop: float = 1.0
    coverage_step: float = 0.1
    coverages: Optional[List[float]] = None
    n_replicates: int = 1000
    threshold: int = 10            # epidemic iff size > threshold
    workers: Optional[int] = None  # None → cpu_count − 1
    on_failure: str = 'record'     # 'record' or 'raise'
    confidence: float = 0.95       # Clopper–Pearson level for prob_epidemic


@dataclass
class OutputSection:
    """Output control."""
    results_file: str = 'results/vaccination_sweep.csv'
    checkpoint_file: Optional[str] = None


@dataclass
class SweepConfig:
    """Complete configuration.

    Load from YAML via `load_config()`.
    """
    model: ModelSection = field(default_factory=ModelSection)
    simulation: SimulationSection = field(default_factory=SimulationSection)
    tau_leap: TauLeapSection = field(default_factory=TauLeapSection)
    sweep: SweepSection = field(default_factory=SweepSection)
    output: OutputSection = field(default_factory=OutputSection)

    def parameters(self) -> SEIRParameters:
        """The immutable parameter record for the engine."""
        m = self.model
        return SEIRParameters(beta=m.beta, sigma=m.sigma, gamma=m.gamma,
                              N=m.population_size)

    def tau_options(self) -> Dict[str, Any]:
        """Engine options for make_method()."""
        opts = {
            'epsilon': self.tau_leap.epsilon,
            'n_critical': self.tau_leap.n_critical,
            'exact_threshold': self.tau_leap.exact_threshold,
            'n_exact_steps': self.tau_leap.n_exact_steps,
            'max_steps': self.simulation.max_steps,
        }
        if self.tau_leap.max_tau is not None:
            opts['max_tau'] = self.tau_leap.max_tau
        return opts

    def coverage_values(self) -> np.ndarray:
        """Sorted, de-duplicated coverage grid."""
        s = self.sweep
        if s.coverages is not None:
            return np.unique(np.asarray(s.coverages, dtype=np.float64))
        return coverage_grid(s.coverage_start, s.coverage_stop, s.coverage_step)

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


def coverage_grid(start: float, stop: float, step: float) -> np.ndarray:
    """Inclusive grid start, start+step, …, stop.

    Built with linspace so both endpoints are exact and values carry no
    accumulated float drift (0.1 * 3 → 0.3, not 0.30000000000000004).
    """
    if step <= 0:
        raise ConfigurationError(f"coverage step must be > 0, got {step}")
    if stop < start:
        raise ConfigurationError(f"coverage stop ({stop}) < start ({start})")
    n = int(round((stop - start) / step)) + 1
    return np.round(np.linspace(start, start + (n - 1) * step, n), 12)


# ═══════════════════════════════════════════════════════════════════════
# YAML LOADING & MERGING
# ═══════════════════════════════════════════════════════════════════════

def deep_merge(base: Dict, override: Dict) -> Dict:
    """Recursively merge override into base. Modifies base in place.

    - Dict values are merged recursively
    - Non-dict values are replaced
    - Keys in override but not base are added

    Returns:
        The merged base dictionary.
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _dict_to_section(section_cls, data: Dict) -> Any:
    """Convert a dict to a dataclass, ignoring unknown keys."""
    valid_fields = {f.name for f in dataclasses.fields(section_cls)}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    return section_cls(**filtered)


_SECTIONS = {
    'model': ModelSection,
    'simulation': SimulationSection,
    'tau_leap': TauLeapSection,
    'sweep': SweepSection,
    'output': OutputSection,
}


def _yaml_to_config(data: Dict) -> SweepConfig:
    """Convert a merged YAML dict to a SweepConfig."""
    sections = {}
    for key, cls in _SECTIONS.items():
        if key in data and isinstance(data[key], dict):
            sections[key] = _dict_to_section(cls, data[key])
        else:
            sections[key] = cls()
    return SweepConfig(**sections)


def validate_config(config: SweepConfig) -> None:
    """Validate configuration constraints. Raises ConfigurationError on failure.

    Checks:
      - Population and initial infectious are consistent
      - Rates are finite and non-negative
      - Method name and tau-leaping tolerances are valid
      - Coverage grid lies in [0, 1] and leaves room for I0
      - Replicates, threshold, workers, failure policy, confidence level
    """
    m = config.model
    if m.population_size < 1:
        raise ConfigurationError(
            f"model.population_size must be >= 1, got {m.population_size}"
        )
    if m.initial_infectious < 0:
        raise ConfigurationError(
            f"model.initial_infectious must be >= 0, got {m.initial_infectious}"
        )
    if m.population_size < m.initial_infectious + 1:
        raise ConfigurationError(
            f"model.population_size ({m.population_size}) must be >= "
            f"initial_infectious + 1 ({m.initial_infectious + 1})"
        )
    # Rates: SEIRParameters enforces finite, non-negative values
    config.parameters()

    # Simulation
    sim = config.simulation
    if sim.method not in METHODS:
        raise ConfigurationError(
            f"simulation.method must be one of {sorted(METHODS)}, got '{sim.method}'"
        )
    if np.isnan(sim.tf):
        raise ConfigurationError("simulation.tf must be a number")
    if sim.seed is not None and sim.seed < 0:
        raise ConfigurationError("simulation.seed must be non-negative")
    if sim.max_steps < 1:
        raise ConfigurationError("simulation.max_steps must be >= 1")

    # Tau-leaping
    tl = config.tau_leap
    if not 0.0 < tl.epsilon < 1.0:
        raise ConfigurationError(f"tau_leap.epsilon must be in (0, 1), got {tl.epsilon}")
    if tl.n_critical < 0:
        raise ConfigurationError("tau_leap.n_critical must be >= 0")
    if tl.exact_threshold < 0:
        raise ConfigurationError("tau_leap.exact_threshold must be >= 0")
    if tl.n_exact_steps < 1:
        raise ConfigurationError("tau_leap.n_exact_steps must be >= 1")
    if tl.max_tau is not None and tl.max_tau <= 0:
        raise ConfigurationError("tau_leap.max_tau must be > 0")
    if sim.method == 'adaptive_tau' and m.population_size < 1000:
        warnings.warn(
            f"adaptive_tau with population_size={m.population_size}: "
            f"exact fallback steps will dominate; 'exact' is simpler here.",
            UserWarning,
            stacklevel=2,
        )

    # Sweep
    s = config.sweep
    coverages = config.coverage_values()
    if coverages.size == 0:
        raise ConfigurationError("sweep must contain at least one coverage value")
    if coverages.min() < 0.0 or coverages.max() > 1.0:
        raise ConfigurationError(
            f"sweep coverages must lie in [0, 1], got "
            f"[{coverages.min()}, {coverages.max()}]"
        )
    N, I0 = m.population_size, m.initial_infectious
    max_vacc = int(round(coverages.max() * (N - 1)))
    if N - I0 - max_vacc < 0:
        raise ConfigurationError(
            f"coverage {coverages.max()} vaccinates {max_vacc} of N={N}, "
            f"leaving no room for {I0} initial infectious"
        )
    if s.n_replicates < 1:
        raise ConfigurationError(f"sweep.n_replicates must be >= 1, got {s.n_replicates}")
    if s.threshold < 0:
        raise ConfigurationError(f"sweep.threshold must be >= 0, got {s.threshold}")
    if s.workers is not None and s.workers < 1:
        raise ConfigurationError(f"sweep.workers must be >= 1, got {s.workers}")
    if s.workers is not None and s.workers > (os.cpu_count() or 1):
        warnings.warn(
            f"sweep.workers={s.workers} exceeds the {os.cpu_count()} available CPUs",
            UserWarning,
            stacklevel=2,
        )
    valid_failure_modes = {'record', 'raise'}
    if s.on_failure not in valid_failure_modes:
        raise ConfigurationError(
            f"sweep.on_failure must be one of {valid_failure_modes}, "
            f"got '{s.on_failure}'"
        )
    if not 0.0 < s.confidence < 1.0:
        raise ConfigurationError(f"sweep.confidence must be in (0, 1), got {s.confidence}")


def load_config(
    base_path: Union[str, Path],
    scenario_path: Optional[Union[str, Path]] = None,
    overrides: Optional[Dict] = None,
) -> SweepConfig:
    """Load and merge hierarchical YAML configuration.

    Merge order: base → scenario → overrides. Each layer overrides only the
    fields it specifies.

    Args:
        base_path: Path to base configuration YAML.
        scenario_path: Optional scenario override YAML.
        overrides: Optional dict of overrides (same nesting as the YAML).

    Returns:
        Validated SweepConfig.

    Raises:
        FileNotFoundError: If base_path or scenario_path doesn't exist.
        ConfigurationError: If validation fails.
    """
    base_path = Path(base_path)
    if not base_path.exists():
        raise FileNotFoundError(f"Config file not found: {base_path}")

    with open(base_path) as f:
        config_dict = yaml.safe_load(f) or {}

    if scenario_path is not None:
        scenario_path = Path(scenario_path)
        if not scenario_path.exists():
            raise FileNotFoundError(f"Scenario file not found: {scenario_path}")
        with open(scenario_path) as f:
            scenario = yaml.safe_load(f) or {}
        deep_merge(config_dict, scenario)

    if overrides is not None:
        deep_merge(config_dict, overrides)

    config = _yaml_to_config(config_dict)
    validate_config(config)
    return config


def default_config() -> SweepConfig:
    """Return a SweepConfig with all default values."""
    config = SweepConfig()
    validate_config(config)
    return config
