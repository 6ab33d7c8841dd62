"""SEIR single-run driver.

Wires the generic jump-process engine to the closed SEIR model with
vaccination at t=0:

  vaccinated = round(p × (N − 1))
  S = N − I0 − vaccinated,  E = 0,  I = I0,  R = vaccinated

  infection    S → E   rate β·S·I/N
  progression  E → I   rate σ·E
  recovery     I → R   rate γ·I

Every call is independent: nothing is cached between runs, and all
randomness comes from the Generator passed in.
"""

from __future__ import annotations

from typing import Optional

import numpy as np
import pandas as pd

from seirvax.engine import make_method, simulate
from seirvax.types import (
    Compartment,
    ConfigurationError,
    RunOutcome,
    SEIR_TRANSITIONS,
    SEIRParameters,
    Trajectory,
)


# g_i for tau-leaping: infection is second order in S and I.
SEIR_REL_RATE_CHANGE = (2.0, 1.0, 2.0, 1.0)


def vaccinated_count(N: int, p: float) -> int:
    """Number vaccinated at t=0: round(p × (N − 1)), half to even."""
    return int(round(p * (N - 1)))


def initial_state(N: int, I0: int, p: float) -> np.ndarray:
    """Initial [S, E, I, R] counts for coverage p.

    Raises:
        ConfigurationError: If p ∉ [0, 1], I0 < 0, N < I0 + 1, or the
            vaccinated count leaves no room for the initial infectious.
    """
    if not (0.0 <= p <= 1.0):
        raise ConfigurationError(f"coverage p must be in [0, 1], got {p}")
    if I0 < 0 or int(I0) != I0:
        raise ConfigurationError(f"I0 must be a non-negative integer, got {I0}")
    if N < I0 + 1:
        raise ConfigurationError(f"N must be >= I0 + 1, got N={N}, I0={I0}")
    vacc = vaccinated_count(N, p)
    S = N - I0 - vacc
    if S < 0:
        raise ConfigurationError(
            f"coverage p={p} vaccinates {vacc} of N={N}, leaving no room "
            f"for I0={I0} initial infectious"
        )
    state = np.zeros(len(Compartment), dtype=np.int64)
    state[Compartment.S] = S
    state[Compartment.I] = I0
    state[Compartment.R] = vacc
    return state


def seir_rates(state: np.ndarray, params: SEIRParameters, t: float):
    """Transition rates (β·S·I/N, σ·E, γ·I) in SEIR_TRANSITIONS order."""
    S, E, I, _ = state
    return (
        params.beta * S * I / params.N,
        params.sigma * E,
        params.gamma * I,
    )


def _method_for(method, tau_options: Optional[dict]):
    if not isinstance(method, str):
        return method
    options = dict(tau_options or {})
    if method == 'adaptive_tau':
        options.setdefault('rel_rate_change', SEIR_REL_RATE_CHANGE)
    elif method == 'exact':
        options = {k: v for k, v in options.items() if k == 'max_steps'}
    return make_method(method, **options)


def run_seir(
    params: SEIRParameters,
    I0: int = 1,
    p: float = 0.0,
    tf: float = 100.0,
    rng: Optional[np.random.Generator] = None,
    method='exact',
    tau_options: Optional[dict] = None,
    keep_path: bool = True,
) -> Trajectory:
    """Simulate one SEIR epidemic with vaccination coverage p.

    Args:
        params: Rates and population size.
        I0: Initial infectious count.
        p: Vaccination coverage in [0, 1].
        tf: Time horizon (days).
        rng: Random source for this run.
        method: 'exact', 'adaptive_tau', or an engine method instance.
        tau_options: Engine options (epsilon, n_critical, max_steps, ...).
        keep_path: Full path (True) or start and end points only (False).

    Returns:
        Trajectory of [S, E, I, R] counts.
    """
    state = initial_state(params.N, I0, p)
    return simulate(
        state, SEIR_TRANSITIONS, seir_rates, params, tf,
        rng=rng, method=_method_for(method, tau_options), keep_path=keep_path,
    )


def run_seir_table(
    params: SEIRParameters,
    I0: int = 1,
    p: float = 0.0,
    tf: float = 100.0,
    rng: Optional[np.random.Generator] = None,
    method='exact',
    tau_options: Optional[dict] = None,
) -> pd.DataFrame:
    """run_seir() as a table with columns time, S, E, I, R."""
    return run_seir(params, I0, p, tf, rng=rng, method=method,
                    tau_options=tau_options).to_frame()


class SEIRRun:
    """Picklable single-run closure for the replication layer.

    Holds the fixed setting (parameters, I0, p, tf, method) and is called
    with the replicate's own Generator.

    Args:
        terminal_only: Return a RunOutcome (final state only, bounded
            memory) instead of the full Trajectory.
    """

    def __init__(
        self,
        params: SEIRParameters,
        I0: int = 1,
        p: float = 0.0,
        tf: float = 100.0,
        method: str = 'exact',
        tau_options: Optional[dict] = None,
        terminal_only: bool = True,
    ):
        # Fail fast on an impossible setting, before anything is dispatched.
        initial_state(params.N, I0, p)
        self.params = params
        self.I0 = I0
        self.p = p
        self.tf = tf
        self.method = _method_for(method, tau_options)
        self.terminal_only = terminal_only

    @property
    def vaccinated(self) -> int:
        return vaccinated_count(self.params.N, self.p)

    def __call__(self, rng: np.random.Generator):
        traj = run_seir(
            self.params, self.I0, self.p, self.tf, rng=rng,
            method=self.method, keep_path=not self.terminal_only,
        )
        if not self.terminal_only:
            return traj
        return RunOutcome(
            final_state=traj.final_state.copy(),
            vaccinated=self.vaccinated,
            final_time=traj.final_time,
            n_steps=traj.n_steps,
        )

    def __repr__(self) -> str:
        method = getattr(self.method, 'name', self.method)
        return (f"SEIRRun(N={self.params.N}, I0={self.I0}, p={self.p}, "
                f"tf={self.tf}, method={method})")

