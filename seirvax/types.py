"""Core data types for seirvax.

This module is the single source of truth for:
  - Compartment enumeration (S, E, I, R) and its column names
  - SEIR_TRANSITIONS: the three delta vectors of the closed SEIR model
  - SEIRParameters: the immutable parameter record (beta, sigma, gamma, N)
  - Trajectory: the time series produced by one engine run
  - Exceptions shared by the engine, driver and sweep

All modules import these types from here.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Tuple

import numpy as np
import pandas as pd


# ═══════════════════════════════════════════════════════════════════════
# EXCEPTIONS
# ═══════════════════════════════════════════════════════════════════════

class ConfigurationError(ValueError):
    """Invalid model, engine or sweep inputs. Raised before any simulation."""


class SimulationError(RuntimeError):
    """A single engine run could not complete (e.g. step bound exceeded)."""


# ═══════════════════════════════════════════════════════════════════════
# COMPARTMENTS & TRANSITIONS
# ═══════════════════════════════════════════════════════════════════════

class Compartment(IntEnum):
    """SEIR compartments, in state-vector order.

    S → E  (infection, rate β·S·I/N)
    E → I  (end of latency, rate σ·E)
    I → R  (recovery, rate γ·I)

    R also holds individuals vaccinated at t=0.
    """
    S = 0   # Susceptible
    E = 1   # Exposed (infected, not yet infectious)
    I = 2   # Infectious
    R = 3   # Recovered or vaccinated


COMPARTMENT_NAMES: Tuple[str, ...] = tuple(c.name for c in Compartment)
N_COMPARTMENTS = len(Compartment)


def _frozen(rows) -> np.ndarray:
    arr = np.array(rows, dtype=np.int64)
    arr.setflags(write=False)
    return arr


# Rows: infection, progression, recovery. Columns: S, E, I, R.
SEIR_TRANSITIONS = _frozen([
    [-1, +1,  0,  0],   # infection    S → E
    [ 0, -1, +1,  0],   # progression  E → I
    [ 0,  0, -1, +1],   # recovery     I → R
])
TRANSITION_NAMES: Tuple[str, ...] = ('infection', 'progression', 'recovery')


# ═══════════════════════════════════════════════════════════════════════
# PARAMETERS
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SEIRParameters:
    """Fixed rates of the SEIR jump process.

    Attributes:
        beta: Contact (transmission) rate per day.
        sigma: Progression rate E → I (1 / mean latent period).
        gamma: Recovery rate I → R (1 / mean infectious period).
        N: Total population size (constant; closed population).
    """
    beta: float = 5.0
    sigma: float = 1.0 / 7.0
    gamma: float = 1.0 / 7.0
    N: int = 1_000_000

    def __post_init__(self):
        for name in ('beta', 'sigma', 'gamma'):
            value = getattr(self, name)
            if not np.isfinite(value) or value < 0:
                raise ConfigurationError(
                    f"{name} must be a finite non-negative rate, got {value}"
                )
        if int(self.N) != self.N or self.N < 1:
            raise ConfigurationError(
                f"N must be a positive integer, got {self.N}"
            )

    @property
    def R0(self) -> float:
        """Basic reproduction number beta / (sigma + gamma)."""
        denom = self.sigma + self.gamma
        return self.beta / denom if denom > 0 else float('inf')

    @property
    def critical_coverage(self) -> float:
        """Critical vaccination threshold pc = 1 − 1/R0 (0 when R0 ≤ 1)."""
        r0 = self.R0
        if r0 <= 1.0:
            return 0.0
        return 1.0 - 1.0 / r0


# ═══════════════════════════════════════════════════════════════════════
# TRAJECTORY
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class Trajectory:
    """Ordered (time, state) samples from one engine run.

    times[0] == 0.0, times strictly increasing, times[-1] ≤ horizon.
    states has shape (n_points, n_compartments), integer counts.
    """
    times: np.ndarray
    states: np.ndarray
    names: Tuple[str, ...] = COMPARTMENT_NAMES
    n_steps: int = 0          # engine steps taken (exact events or leaps)
    absorbed: bool = False    # total rate reached 0 before the horizon

    def __len__(self) -> int:
        return len(self.times)

    @property
    def final_state(self) -> np.ndarray:
        return self.states[-1]

    @property
    def final_time(self) -> float:
        return float(self.times[-1])

    def compartment(self, name: str) -> np.ndarray:
        """Time series of a single compartment by name."""
        return self.states[:, self.names.index(name)]

    def to_frame(self) -> pd.DataFrame:
        """Table with one row per sample: time, then one column per compartment."""
        df = pd.DataFrame(self.states, columns=list(self.names))
        df.insert(0, 'time', self.times)
        return df


@dataclass
class RunOutcome:
    """Terminal summary of one SEIR run (what the sweep aggregates)."""
    final_state: np.ndarray
    vaccinated: int
    final_time: float = 0.0
    n_steps: int = 0

    @property
    def epidemic_size(self) -> int:
        """Net infections beyond those removed by vaccination at t=0."""
        return int(self.final_state[Compartment.R]) - self.vaccinated

    def is_epidemic(self, threshold: int = 10) -> bool:
        return self.epidemic_size > threshold
