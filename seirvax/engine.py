"""Stochastic simulation engine for compartmental jump processes.

Implements:
  - JumpProcess: transitions (integer delta rows) + rate function + parameters
  - ExactSSA: Gillespie direct method, one event per step
  - AdaptiveTauLeap: Cao–Gillespie–Petzold adaptive tau-leaping with
    critical-transition handling and fallback to exact steps
  - simulate(): functional entry point used by the SEIR driver

Both methods share the interface

    method.advance(process, state, horizon, rng, keep_path=True) -> Trajectory

so the driver and sweep never depend on which algorithm produced a path.

Rate functions have the signature ``rate_fn(state, params, t)`` and return
one non-negative rate per transition, in transition order. A transition that
would drive any compartment below zero is never fired.

Tau-leaping tolerance policy:
  epsilon=0.05          bound on relative change of each compartment per leap,
                        divided by rel_rate_change[i] (g_i; 2 for compartments
                        in a second-order rate such as S and I in β·S·I/N)
  n_critical=10         transitions within 10 firings of exhausting a
                        reactant are critical: never leapt, at most one fires
  exact_threshold=10    if the leap is shorter than 10/a0, take
  n_exact_steps=100     exact SSA steps instead
  max_tau=inf           upper bound on any single leap

References:
  - Gillespie (1977) J. Phys. Chem. 81:2340 (direct method)
  - Cao, Gillespie & Petzold (2006) J. Chem. Phys. 124:044109 (tau selection)
  - Cao, Gillespie & Petzold (2005) J. Chem. Phys. 123:054104 (critical reactions)
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional, Sequence, Tuple, Type

import numpy as np

from seirvax.types import (
    COMPARTMENT_NAMES,
    ConfigurationError,
    SimulationError,
    Trajectory,
)

logger = logging.getLogger(__name__)

RateFunction = Callable[[np.ndarray, Any, float], Sequence[float]]


# ═══════════════════════════════════════════════════════════════════════
# CONSTANTS
# ═══════════════════════════════════════════════════════════════════════

DEFAULT_MAX_STEPS = 10_000_000

DEFAULT_EPSILON = 0.05
DEFAULT_N_CRITICAL = 10
DEFAULT_EXACT_THRESHOLD = 10.0
DEFAULT_N_EXACT_STEPS = 100
MAX_LEAP_REJECTIONS = 60   # tau halved this many times → give up


# ═══════════════════════════════════════════════════════════════════════
# PROCESS DEFINITION
# ═══════════════════════════════════════════════════════════════════════

class JumpProcess:
    """A continuous-time Markov jump process over integer compartments.

    Args:
        transitions: (n_transitions, n_compartments) integer deltas. Every
            row must sum to zero (closed population).
        rate_fn: ``rate_fn(state, params, t)`` → rates, one per transition.
        params: Passed through to rate_fn unchanged.
        names: Compartment names (defaults to S, E, I, R for 4 columns).

    Raises:
        ConfigurationError: On malformed transitions.
    """

    def __init__(
        self,
        transitions,
        rate_fn: RateFunction,
        params: Any = None,
        names: Optional[Sequence[str]] = None,
    ):
        trans = np.array(transitions, dtype=np.int64)
        if trans.ndim != 2 or trans.shape[0] == 0 or trans.shape[1] == 0:
            raise ConfigurationError(
                f"transitions must be a non-empty 2-D array, got shape {trans.shape}"
            )
        sums = trans.sum(axis=1)
        if np.any(sums != 0):
            bad = np.flatnonzero(sums).tolist()
            raise ConfigurationError(
                f"transitions {bad} do not conserve population (row sums {sums[bad].tolist()})"
            )
        trans.setflags(write=False)
        self.transitions = trans
        self.n_transitions, self.n_compartments = trans.shape
        self.rate_fn = rate_fn
        self.params = params

        if names is None:
            names = (COMPARTMENT_NAMES if self.n_compartments == len(COMPARTMENT_NAMES)
                     else tuple(f"X{i}" for i in range(self.n_compartments)))
        if len(names) != self.n_compartments:
            raise ConfigurationError(
                f"{len(names)} compartment names for {self.n_compartments} compartments"
            )
        self.names = tuple(names)

        # Reactant bookkeeping for tau-leaping: how many units of each
        # compartment one firing consumes.
        self._consumed = np.where(trans < 0, -trans, 0)
        self._has_reactant = self._consumed.any(axis=1)

    def check_state(self, state) -> np.ndarray:
        """Validate and copy an initial state into an int64 vector."""
        arr = np.asarray(state)
        if arr.shape != (self.n_compartments,):
            raise ConfigurationError(
                f"state must have {self.n_compartments} entries, got shape {arr.shape}"
            )
        if not np.all(np.equal(np.mod(arr, 1), 0)):
            raise ConfigurationError(f"state counts must be integers, got {arr.tolist()}")
        out = arr.astype(np.int64)
        if np.any(out < 0):
            raise ConfigurationError(f"state counts must be >= 0, got {out.tolist()}")
        return out

    def rates(self, state: np.ndarray, t: float) -> np.ndarray:
        """Evaluate the rate function and zero any infeasible transition.

        Raises:
            ConfigurationError: If the rate vector has the wrong length or
                contains negative / non-finite values.
        """
        a = np.asarray(self.rate_fn(state, self.params, t), dtype=np.float64)
        if a.shape != (self.n_transitions,):
            raise ConfigurationError(
                f"rate function returned {a.size} rates for "
                f"{self.n_transitions} transitions"
            )
        if not np.all(np.isfinite(a)) or np.any(a < 0):
            raise ConfigurationError(
                f"rates must be finite and non-negative, got {a.tolist()} at t={t}"
            )
        feasible = np.all(state >= self._consumed, axis=1)
        return np.where(feasible, a, 0.0)

    def max_firings(self, state: np.ndarray) -> np.ndarray:
        """Firings of each transition possible before a reactant runs out.

        Transitions with no reactant return +inf.
        """
        per_comp = np.where(
            self._consumed > 0,
            state[None, :] // np.maximum(self._consumed, 1),
            np.iinfo(np.int64).max,
        )
        L = per_comp.min(axis=1).astype(np.float64)
        L[~self._has_reactant] = np.inf
        return L


class _PathRecorder:
    """Accumulates (t, state) samples, or only the last one if keep_path=False."""

    def __init__(self, t0: float, state: np.ndarray, keep_path: bool):
        self.keep_path = keep_path
        self.times = [t0]
        self.states = [state.copy()]

    def record(self, t: float, state: np.ndarray) -> None:
        if self.keep_path or len(self.times) == 1:
            self.times.append(t)
            self.states.append(state.copy())
        else:
            self.times[-1] = t
            self.states[-1] = state.copy()

    def finish(self, names, n_steps: int, absorbed: bool) -> Trajectory:
        return Trajectory(
            times=np.asarray(self.times, dtype=np.float64),
            states=np.vstack(self.states).astype(np.int64),
            names=tuple(names),
            n_steps=n_steps,
            absorbed=absorbed,
        )


def _choose(a: np.ndarray, rng: np.random.Generator) -> int:
    """Pick index j with probability a[j] / sum(a). Assumes sum(a) > 0."""
    cum = np.cumsum(a)
    j = int(np.searchsorted(cum, rng.random() * cum[-1], side='right'))
    if j >= len(a):
        j = int(np.flatnonzero(a)[-1])
    return j


def _check_horizon(horizon: float) -> float:
    horizon = float(horizon)
    if np.isnan(horizon):
        raise ConfigurationError("time horizon must not be NaN")
    return horizon


# ═══════════════════════════════════════════════════════════════════════
# EXACT METHOD
# ═══════════════════════════════════════════════════════════════════════

class ExactSSA:
    """Gillespie direct method.

    Each step: a0 = Σ rates; waiting time ~ Exp(a0); transition j chosen
    with probability a_j / a0. Stops when a0 == 0 (absorbed) or the next
    event would fall past the horizon.
    """

    name = 'exact'

    def __init__(self, max_steps: int = DEFAULT_MAX_STEPS):
        if max_steps < 1:
            raise ConfigurationError(f"max_steps must be >= 1, got {max_steps}")
        self.max_steps = int(max_steps)

    def _step(
        self,
        process: JumpProcess,
        state: np.ndarray,
        t: float,
        horizon: float,
        rng: np.random.Generator,
    ) -> Tuple[float, np.ndarray, bool, bool]:
        """One exact event. Returns (t, state, fired, absorbed)."""
        a = process.rates(state, t)
        a0 = a.sum()
        if a0 <= 0.0:
            return t, state, False, True
        dt = rng.exponential(1.0 / a0)
        if t + dt > horizon:
            return t, state, False, False
        j = _choose(a, rng)
        return t + dt, state + process.transitions[j], True, False

    def advance(
        self,
        process: JumpProcess,
        state,
        horizon: float,
        rng: np.random.Generator,
        keep_path: bool = True,
    ) -> Trajectory:
        """Simulate from t=0 up to ``horizon``."""
        state = process.check_state(state)
        horizon = _check_horizon(horizon)
        rec = _PathRecorder(0.0, state, keep_path)
        t = 0.0
        n_steps = 0
        absorbed = False

        while t < horizon:
            t, state, fired, absorbed = self._step(process, state, t, horizon, rng)
            if not fired:
                break
            n_steps += 1
            rec.record(t, state)
            if n_steps >= self.max_steps:
                raise SimulationError(
                    f"exact SSA exceeded max_steps={self.max_steps} at t={t:.4g}"
                )
        else:
            # horizon <= 0
            absorbed = process.rates(state, t).sum() <= 0.0

        logger.debug("exact SSA: %d events, t=%.4g, absorbed=%s", n_steps, t, absorbed)
        return rec.finish(process.names, n_steps, absorbed)


# ═══════════════════════════════════════════════════════════════════════
# ADAPTIVE TAU-LEAPING
# ═══════════════════════════════════════════════════════════════════════

class AdaptiveTauLeap(ExactSSA):
    """Adaptive tau-leaping (Cao, Gillespie & Petzold 2006).

    Args:
        epsilon: Relative change bound per leap (0 < epsilon < 1).
        n_critical: Firings-to-exhaustion below which a transition is critical.
        exact_threshold: Leap shorter than exact_threshold / a0 → exact steps.
        n_exact_steps: Number of exact steps taken on fallback.
        max_tau: Upper bound on leap length.
        rel_rate_change: Per-compartment g_i (defaults to 1 for all).
        max_steps: Total step bound (leaps + exact steps).
    """

    name = 'adaptive_tau'

    def __init__(
        self,
        epsilon: float = DEFAULT_EPSILON,
        n_critical: int = DEFAULT_N_CRITICAL,
        exact_threshold: float = DEFAULT_EXACT_THRESHOLD,
        n_exact_steps: int = DEFAULT_N_EXACT_STEPS,
        max_tau: float = np.inf,
        rel_rate_change: Optional[Sequence[float]] = None,
        max_steps: int = DEFAULT_MAX_STEPS,
    ):
        super().__init__(max_steps=max_steps)
        if not 0.0 < epsilon < 1.0:
            raise ConfigurationError(f"epsilon must be in (0, 1), got {epsilon}")
        if n_critical < 0:
            raise ConfigurationError(f"n_critical must be >= 0, got {n_critical}")
        if exact_threshold < 0:
            raise ConfigurationError(
                f"exact_threshold must be >= 0, got {exact_threshold}"
            )
        if n_exact_steps < 1:
            raise ConfigurationError(f"n_exact_steps must be >= 1, got {n_exact_steps}")
        if not max_tau > 0:
            raise ConfigurationError(f"max_tau must be > 0, got {max_tau}")
        self.epsilon = float(epsilon)
        self.n_critical = int(n_critical)
        self.exact_threshold = float(exact_threshold)
        self.n_exact_steps = int(n_exact_steps)
        self.max_tau = float(max_tau)
        self.rel_rate_change = (
            None if rel_rate_change is None
            else np.asarray(rel_rate_change, dtype=np.float64)
        )

    def _g(self, process: JumpProcess) -> np.ndarray:
        if self.rel_rate_change is None:
            return np.ones(process.n_compartments)
        if self.rel_rate_change.shape != (process.n_compartments,):
            raise ConfigurationError(
                f"rel_rate_change has {self.rel_rate_change.size} entries for "
                f"{process.n_compartments} compartments"
            )
        if np.any(self.rel_rate_change <= 0):
            raise ConfigurationError("rel_rate_change entries must be > 0")
        return self.rel_rate_change

    def leap_bound(
        self,
        process: JumpProcess,
        state: np.ndarray,
        a: np.ndarray,
        critical: np.ndarray,
        g: np.ndarray,
    ) -> float:
        """Largest tau keeping every reactant's expected relative change ≤ ε/g_i.

        Only non-critical transitions contribute. Returns +inf when no
        non-critical transition can fire.
        """
        a_nc = np.where(critical, 0.0, a)
        if a_nc.sum() <= 0.0:
            return np.inf
        v = process.transitions
        mu = v.T @ a_nc
        sig2 = (v.T ** 2) @ a_nc
        reactants = np.any((v < 0) & (a_nc > 0)[:, None], axis=0)
        bound = np.maximum(self.epsilon * state / g, 1.0)
        with np.errstate(divide='ignore'):
            tau_mu = np.where(np.abs(mu) > 0, bound / np.abs(mu), np.inf)
            tau_sig = np.where(sig2 > 0, bound ** 2 / sig2, np.inf)
        candidates = np.minimum(tau_mu, tau_sig)[reactants]
        return float(candidates.min()) if candidates.size else np.inf

    def advance(
        self,
        process: JumpProcess,
        state,
        horizon: float,
        rng: np.random.Generator,
        keep_path: bool = True,
    ) -> Trajectory:
        """Simulate from t=0 up to ``horizon`` with adaptive leaps."""
        state = process.check_state(state)
        horizon = _check_horizon(horizon)
        g = self._g(process)
        rec = _PathRecorder(0.0, state, keep_path)
        t = 0.0
        n_steps = 0
        n_leaps = 0
        absorbed = False
        done = False

        while t < horizon and not done:
            if n_steps >= self.max_steps:
                raise SimulationError(
                    f"tau-leaping exceeded max_steps={self.max_steps} at t={t:.4g}"
                )
            a = process.rates(state, t)
            a0 = a.sum()
            if a0 <= 0.0:
                absorbed = True
                break

            critical = (a > 0) & (process.max_firings(state) < self.n_critical)
            tau1 = min(self.leap_bound(process, state, a, critical, g),
                       self.max_tau, horizon - t)

            leapt = False
            for _ in range(MAX_LEAP_REJECTIONS):
                if tau1 < self.exact_threshold / a0:
                    break
                a0c = a[critical].sum()
                tau2 = rng.exponential(1.0 / a0c) if a0c > 0 else np.inf
                fire_critical = tau2 <= tau1
                tau = tau2 if fire_critical else tau1

                k = np.zeros(process.n_transitions, dtype=np.int64)
                nc = ~critical
                k[nc] = rng.poisson(a[nc] * tau)
                if fire_critical:
                    k[_choose(np.where(critical, a, 0.0), rng)] += 1
                new_state = state + k @ process.transitions
                if np.all(new_state >= 0):
                    t = min(t + tau, horizon)
                    state = new_state
                    n_steps += 1
                    n_leaps += 1
                    if k.any():
                        rec.record(t, state)
                    leapt = True
                    break
                tau1 /= 2.0
            else:
                raise SimulationError(
                    f"tau-leap rejected {MAX_LEAP_REJECTIONS} times at t={t:.4g}; "
                    f"state={state.tolist()}"
                )

            if leapt:
                continue

            for _ in range(self.n_exact_steps):
                t, state, fired, absorbed = self._step(process, state, t, horizon, rng)
                if not fired:
                    done = True
                    break
                n_steps += 1
                rec.record(t, state)

        if not done and not absorbed:
            absorbed = process.rates(state, t).sum() <= 0.0

        logger.debug(
            "tau-leap: %d steps (%d leaps), t=%.4g, absorbed=%s",
            n_steps, n_leaps, t, absorbed,
        )
        return rec.finish(process.names, n_steps, absorbed)


# ═══════════════════════════════════════════════════════════════════════
# REGISTRY & ENTRY POINT
# ═══════════════════════════════════════════════════════════════════════

METHODS: Dict[str, Type[ExactSSA]] = {
    ExactSSA.name: ExactSSA,
    AdaptiveTauLeap.name: AdaptiveTauLeap,
}


def make_method(name: str = 'exact', **options) -> ExactSSA:
    """Build a simulation method by name ('exact' or 'adaptive_tau').

    Raises:
        ConfigurationError: Unknown method name or invalid options.
    """
    if name not in METHODS:
        raise ConfigurationError(
            f"unknown simulation method '{name}'; expected one of {sorted(METHODS)}"
        )
    try:
        return METHODS[name](**options)
    except TypeError as e:
        raise ConfigurationError(f"invalid options for method '{name}': {e}") from e


def simulate(
    initial_state,
    transitions,
    rate_fn: RateFunction,
    params: Any,
    tf: float,
    rng: Optional[np.random.Generator] = None,
    method='exact',
    keep_path: bool = True,
    names: Optional[Sequence[str]] = None,
    **method_options,
) -> Trajectory:
    """Simulate a jump process from t=0 to the first of {tf, absorption}.

    Args:
        initial_state: Non-negative integer counts, one per compartment.
        transitions: Integer delta rows, one per transition.
        rate_fn: ``rate_fn(state, params, t)`` → one rate per transition.
        params: Parameter record passed to rate_fn.
        tf: Time horizon. tf <= 0 returns the initial point only.
        rng: Random source. A fresh unseeded Generator if None.
        method: 'exact', 'adaptive_tau', or a method instance.
        keep_path: Record every step (True) or only start and end (False).
        names: Compartment names.
        **method_options: Passed to make_method() when method is a name.

    Returns:
        Trajectory.

    Example:
        >>> traj = simulate([990, 0, 10, 0], SEIR_TRANSITIONS, seir_rates,
        ...                 SEIRParameters(N=1000), tf=100,
        ...                 rng=np.random.default_rng(1))
    """
    process = JumpProcess(transitions, rate_fn, params, names=names)
    stepper = method if isinstance(method, ExactSSA) else make_method(method, **method_options)
    if rng is None:
        rng = np.random.default_rng()
    return stepper.advance(process, initial_state, tf, rng, keep_path=keep_path)
