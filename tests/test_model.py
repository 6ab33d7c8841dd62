"""Tests for seirvax.model — SEIR driver and vaccination at t=0."""

import pickle

import numpy as np
import pytest

from seirvax.engine import AdaptiveTauLeap, ExactSSA
from seirvax.model import (
    SEIRRun,
    initial_state,
    run_seir,
    run_seir_table,
    seir_rates,
    vaccinated_count,
)
from seirvax.types import ConfigurationError, RunOutcome, SEIRParameters, Trajectory


@pytest.fixture
def params():
    return SEIRParameters(N=300)


# ── Vaccination & initial state ───────────────────────────────────────

class TestVaccinatedCount:
    @pytest.mark.parametrize('p', [0.0, 0.1, 0.25, 0.5, 0.943, 1.0])
    def test_round_trip(self, p):
        N = 1_000_000
        assert vaccinated_count(N, p) == round(p * (N - 1))

    def test_full_coverage_leaves_one(self):
        assert vaccinated_count(1000, 1.0) == 999

    def test_zero_coverage(self):
        assert vaccinated_count(1000, 0.0) == 0


class TestInitialState:
    def test_layout(self):
        state = initial_state(1000, 1, 0.5)
        vacc = vaccinated_count(1000, 0.5)
        np.testing.assert_array_equal(state, [1000 - 1 - vacc, 0, 1, vacc])

    def test_sums_to_population(self):
        for p in np.linspace(0, 1, 11):
            assert initial_state(500, 1, p).sum() == 500

    def test_full_coverage_no_susceptibles(self):
        np.testing.assert_array_equal(initial_state(100, 1, 1.0), [0, 0, 1, 99])

    @pytest.mark.parametrize('p', [-0.01, 1.01])
    def test_coverage_out_of_range(self, p):
        with pytest.raises(ConfigurationError):
            initial_state(100, 1, p)

    def test_population_too_small(self):
        with pytest.raises(ConfigurationError):
            initial_state(3, 3, 0.0)

    def test_no_room_for_infectious(self):
        with pytest.raises(ConfigurationError, match='no room'):
            initial_state(100, 5, 1.0)

    def test_negative_i0(self):
        with pytest.raises(ConfigurationError):
            initial_state(100, -1, 0.0)


class TestSeirRates:
    def test_values(self):
        params = SEIRParameters(beta=2.0, sigma=0.5, gamma=0.25, N=100)
        a = seir_rates(np.array([50, 10, 4, 36]), params, 0.0)
        np.testing.assert_allclose(a, [2.0 * 50 * 4 / 100, 5.0, 1.0])


# ── Single runs ───────────────────────────────────────────────────────

class TestRunSeir:
    def test_conservation(self, params):
        traj = run_seir(params, I0=1, p=0.2, tf=1000.0, rng=np.random.default_rng(4))
        np.testing.assert_array_equal(traj.states.sum(axis=1), params.N)
        assert np.all(traj.states >= 0)

    def test_vaccinated_start_in_r(self, params):
        traj = run_seir(params, I0=1, p=0.4, tf=0.0, rng=np.random.default_rng(0))
        assert traj.states[0, 3] == vaccinated_count(params.N, 0.4)

    def test_no_initial_infection(self, params):
        traj = run_seir(params, I0=0, p=0.3, tf=100.0, rng=np.random.default_rng(0))
        assert len(traj) == 1
        assert traj.absorbed

    def test_full_coverage_no_spread(self, params):
        """With S=0 the seed case can only recover."""
        for seed in range(5):
            traj = run_seir(params, I0=1, p=1.0, tf=1000.0,
                            rng=np.random.default_rng(seed))
            np.testing.assert_array_equal(traj.final_state, [0, 0, 0, params.N])

    def test_tau_leap_method(self, params):
        traj = run_seir(params, I0=1, p=0.0, tf=1000.0, rng=np.random.default_rng(1),
                        method='adaptive_tau', tau_options={'epsilon': 0.03})
        np.testing.assert_array_equal(traj.states.sum(axis=1), params.N)

    def test_exact_ignores_tau_options(self, params):
        traj = run_seir(params, tf=10.0, rng=np.random.default_rng(1),
                        method='exact', tau_options={'epsilon': 0.03, 'max_steps': 10_000})
        assert len(traj) >= 1

    def test_table(self, params):
        df = run_seir_table(params, I0=2, p=0.1, tf=1000.0, rng=np.random.default_rng(2))
        assert list(df.columns) == ['time', 'S', 'E', 'I', 'R']
        assert df['time'].iloc[0] == 0.0
        assert (df[['S', 'E', 'I', 'R']].sum(axis=1) == params.N).all()


# ── Replicate closure ─────────────────────────────────────────────────

class TestSEIRRun:
    def test_returns_outcome(self, params):
        run = SEIRRun(params, I0=1, p=0.5, tf=1000.0)
        out = run(np.random.default_rng(11))
        assert isinstance(out, RunOutcome)
        assert out.vaccinated == vaccinated_count(params.N, 0.5)
        assert out.final_state.sum() == params.N
        assert out.epidemic_size >= 1

    def test_trajectory_mode(self, params):
        run = SEIRRun(params, I0=1, p=0.5, tf=1000.0, terminal_only=False)
        assert isinstance(run(np.random.default_rng(11)), Trajectory)

    def test_outcome_matches_trajectory(self, params):
        terminal = SEIRRun(params, p=0.3, tf=1000.0)(np.random.default_rng(5))
        full = SEIRRun(params, p=0.3, tf=1000.0, terminal_only=False)(np.random.default_rng(5))
        np.testing.assert_array_equal(terminal.final_state, full.final_state)
        assert terminal.n_steps == full.n_steps

    def test_picklable(self, params):
        run = SEIRRun(params, p=0.2, tf=1000.0, method='adaptive_tau')
        clone = pickle.loads(pickle.dumps(run))
        a = run(np.random.default_rng(3))
        b = clone(np.random.default_rng(3))
        np.testing.assert_array_equal(a.final_state, b.final_state)

    def test_method_resolved_once(self, params):
        assert isinstance(SEIRRun(params).method, ExactSSA)
        run = SEIRRun(params, method='adaptive_tau')
        assert isinstance(run.method, AdaptiveTauLeap)
        np.testing.assert_array_equal(run.method.rel_rate_change, [2.0, 1.0, 2.0, 1.0])

    def test_invalid_setting_fails_fast(self, params):
        with pytest.raises(ConfigurationError):
            SEIRRun(params, p=1.5)
        with pytest.raises(ConfigurationError):
            SEIRRun(params, method='rk4')

    def test_repr(self, params):
        assert 'p=0.2' in repr(SEIRRun(params, p=0.2))
