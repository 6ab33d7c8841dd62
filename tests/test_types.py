"""Tests for seirvax.types — compartments, transitions, parameters, results."""

import dataclasses

import numpy as np
import pytest

from seirvax.types import (
    COMPARTMENT_NAMES,
    N_COMPARTMENTS,
    SEIR_TRANSITIONS,
    TRANSITION_NAMES,
    Compartment,
    ConfigurationError,
    RunOutcome,
    SEIRParameters,
    SimulationError,
    Trajectory,
)


# ── Enum & transition tests ───────────────────────────────────────────

class TestCompartmentEnum:
    def test_values(self):
        assert Compartment.S == 0
        assert Compartment.E == 1
        assert Compartment.I == 2
        assert Compartment.R == 3

    def test_names(self):
        assert COMPARTMENT_NAMES == ('S', 'E', 'I', 'R')
        assert N_COMPARTMENTS == 4

    def test_integer_compatible(self):
        state = np.array([10, 20, 30, 40])
        assert state[Compartment.I] == 30


class TestTransitions:
    def test_shape(self):
        assert SEIR_TRANSITIONS.shape == (3, 4)
        assert len(TRANSITION_NAMES) == 3

    def test_rows_conserve_population(self):
        np.testing.assert_array_equal(SEIR_TRANSITIONS.sum(axis=1), 0)

    def test_infection_moves_s_to_e(self):
        np.testing.assert_array_equal(SEIR_TRANSITIONS[0], [-1, 1, 0, 0])

    def test_read_only(self):
        with pytest.raises(ValueError):
            SEIR_TRANSITIONS[0, 0] = 5


# ── Parameter tests ───────────────────────────────────────────────────

class TestSEIRParameters:
    def test_defaults(self):
        p = SEIRParameters()
        assert p.beta == 5.0
        assert p.sigma == pytest.approx(1 / 7)
        assert p.gamma == pytest.approx(1 / 7)
        assert p.N == 1_000_000

    def test_r0(self):
        assert SEIRParameters().R0 == pytest.approx(17.5)

    def test_critical_coverage(self):
        assert SEIRParameters().critical_coverage == pytest.approx(1 - 1 / 17.5)

    def test_critical_coverage_subcritical(self):
        p = SEIRParameters(beta=0.1)
        assert p.R0 < 1
        assert p.critical_coverage == 0.0

    def test_frozen(self):
        p = SEIRParameters()
        with pytest.raises(dataclasses.FrozenInstanceError):
            p.beta = 1.0

    @pytest.mark.parametrize('field,value', [
        ('beta', -1.0), ('sigma', float('nan')), ('gamma', float('inf')),
    ])
    def test_invalid_rate_raises(self, field, value):
        with pytest.raises(ConfigurationError, match=field):
            SEIRParameters(**{field: value})

    def test_invalid_population_raises(self):
        with pytest.raises(ConfigurationError):
            SEIRParameters(N=0)
        with pytest.raises(ConfigurationError):
            SEIRParameters(N=10.5)

    def test_zero_rates_allowed(self):
        p = SEIRParameters(beta=0.0)
        assert p.R0 == 0.0


class TestExceptions:
    def test_configuration_error_is_value_error(self):
        assert issubclass(ConfigurationError, ValueError)

    def test_simulation_error_is_runtime_error(self):
        assert issubclass(SimulationError, RuntimeError)


# ── Result tests ──────────────────────────────────────────────────────

class TestTrajectory:
    @pytest.fixture
    def traj(self):
        return Trajectory(
            times=np.array([0.0, 0.5, 1.25]),
            states=np.array([[9, 0, 1, 0], [8, 1, 1, 0], [8, 1, 0, 1]]),
            n_steps=2,
        )

    def test_len(self, traj):
        assert len(traj) == 3

    def test_final(self, traj):
        np.testing.assert_array_equal(traj.final_state, [8, 1, 0, 1])
        assert traj.final_time == 1.25

    def test_compartment(self, traj):
        np.testing.assert_array_equal(traj.compartment('I'), [1, 1, 0])

    def test_to_frame(self, traj):
        df = traj.to_frame()
        assert list(df.columns) == ['time', 'S', 'E', 'I', 'R']
        assert len(df) == 3
        assert df['R'].iloc[-1] == 1


class TestRunOutcome:
    def test_epidemic_size_excludes_vaccinated(self):
        out = RunOutcome(final_state=np.array([0, 0, 0, 120]), vaccinated=100)
        assert out.epidemic_size == 20

    def test_threshold_is_strict(self):
        out = RunOutcome(final_state=np.array([0, 0, 0, 110]), vaccinated=100)
        assert out.epidemic_size == 10
        assert not out.is_epidemic(threshold=10)
        assert out.is_epidemic(threshold=9)
