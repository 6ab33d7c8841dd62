"""Tests for seirvax.checkpoint — per-coverage checkpoint files."""

import json

import numpy as np
import pandas as pd
import pytest

from seirvax.checkpoint import (
    CHECKPOINT_VERSION,
    checkpoint_seed_entropy,
    load_checkpoint,
    meta_path,
    save_checkpoint,
    sweep_fingerprint,
)
from seirvax.config import default_config
from seirvax.types import ConfigurationError
from seirvax.utils import config_hash


@pytest.fixture
def rows():
    return pd.DataFrame({
        'coverage': [0.0, 0.5],
        'prob_epidemic': [0.9, 0.4],
        'mean_epidemic_size': [812.5, np.nan],
        'mean_size_defined': [True, False],
    })


class TestFingerprint:
    def test_hash_key_order_and_numpy_scalars(self):
        assert config_hash({'a': 1, 'b': 2}) == config_hash({'b': 2, 'a': 1})
        assert config_hash({'n': np.int64(5)}) == config_hash({'n': 5})

    def test_stable(self):
        assert sweep_fingerprint(default_config()) == sweep_fingerprint(default_config())

    def test_ignores_grid_and_execution(self):
        base = sweep_fingerprint(default_config())
        config = default_config()
        config.sweep.coverage_step = 0.001
        config.sweep.coverages = [0.1, 0.2]
        config.sweep.workers = 3
        config.sweep.on_failure = 'raise'
        config.output.results_file = 'elsewhere.csv'
        assert sweep_fingerprint(config) == base

    @pytest.mark.parametrize('section,key,value', [
        ('model', 'beta', 4.0),
        ('model', 'population_size', 5000),
        ('simulation', 'seed', 7),
        ('simulation', 'method', 'adaptive_tau'),
        ('tau_leap', 'epsilon', 0.03),
        ('sweep', 'threshold', 20),
        ('sweep', 'n_replicates', 10),
    ])
    def test_sensitive_to_row_settings(self, section, key, value):
        config = default_config()
        setattr(getattr(config, section), key, value)
        assert sweep_fingerprint(config) != sweep_fingerprint(default_config())


class TestSaveLoad:
    def test_missing_returns_none(self, tmp_path):
        assert load_checkpoint(tmp_path / 'none.csv', 'abc') is None

    def test_round_trip(self, tmp_path, rows):
        path = tmp_path / 'ckpt.csv'
        save_checkpoint(path, rows, 'abc')
        loaded = load_checkpoint(path, 'abc')
        pd.testing.assert_frame_equal(loaded, rows)

    def test_meta_sidecar(self, tmp_path, rows):
        path = tmp_path / 'ckpt.csv'
        save_checkpoint(path, rows, 'abc')
        assert meta_path(path).name == 'ckpt.csv.meta.json'
        meta = json.loads(meta_path(path).read_text())
        assert meta['version'] == CHECKPOINT_VERSION
        assert meta['fingerprint'] == 'abc'
        assert meta['n_rows'] == 2
        assert 'git_hash' in meta

    def test_creates_parent_dirs(self, tmp_path, rows):
        path = tmp_path / 'a' / 'b' / 'ckpt.csv'
        save_checkpoint(path, rows, 'abc')
        assert path.exists()

    def test_no_temp_files_left(self, tmp_path, rows):
        save_checkpoint(tmp_path / 'ckpt.csv', rows, 'abc')
        assert sorted(p.name for p in tmp_path.iterdir()) == [
            'ckpt.csv', 'ckpt.csv.meta.json',
        ]

    def test_fingerprint_mismatch(self, tmp_path, rows):
        path = tmp_path / 'ckpt.csv'
        save_checkpoint(path, rows, 'abc')
        with pytest.raises(ConfigurationError, match='different configuration'):
            load_checkpoint(path, 'xyz')

    def test_version_mismatch(self, tmp_path, rows):
        path = tmp_path / 'ckpt.csv'
        save_checkpoint(path, rows, 'abc')
        meta = json.loads(meta_path(path).read_text())
        meta['version'] = CHECKPOINT_VERSION + 1
        meta_path(path).write_text(json.dumps(meta))
        with pytest.raises(ConfigurationError, match='version'):
            load_checkpoint(path, 'abc')

    def test_csv_without_meta_ignored(self, tmp_path, rows):
        path = tmp_path / 'ckpt.csv'
        rows.to_csv(path, index=False)
        assert load_checkpoint(path, 'abc') is None


class TestSeedEntropy:
    ENTROPY = 2 ** 100 + 12345

    def test_recorded_in_meta(self, tmp_path, rows):
        path = tmp_path / 'ckpt.csv'
        save_checkpoint(path, rows, 'abc', seed_entropy=self.ENTROPY)
        meta = json.loads(meta_path(path).read_text())
        assert meta['seed_entropy'] == self.ENTROPY
        assert checkpoint_seed_entropy(path) == self.ENTROPY

    def test_missing_checkpoint(self, tmp_path):
        assert checkpoint_seed_entropy(tmp_path / 'none.csv') is None

    def test_matching_entropy_loads(self, tmp_path, rows):
        path = tmp_path / 'ckpt.csv'
        save_checkpoint(path, rows, 'abc', seed_entropy=self.ENTROPY)
        loaded = load_checkpoint(path, 'abc', seed_entropy=self.ENTROPY)
        pd.testing.assert_frame_equal(loaded, rows)

    def test_different_entropy_refused(self, tmp_path, rows):
        path = tmp_path / 'ckpt.csv'
        save_checkpoint(path, rows, 'abc', seed_entropy=self.ENTROPY)
        with pytest.raises(ConfigurationError, match='seed entropy'):
            load_checkpoint(path, 'abc', seed_entropy=self.ENTROPY + 1)
