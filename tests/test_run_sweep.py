"""Tests for scripts/run_sweep.py — command-line entry point."""

import sys
from pathlib import Path

import pandas as pd
import yaml

sys.path.insert(0, str(Path(__file__).parent.parent / "scripts"))

import run_sweep as cli  # noqa: E402


def _scenario(tmp_path):
    path = tmp_path / "tiny.yaml"
    with open(path, 'w') as f:
        yaml.dump({
            'model': {'population_size': 100},
            'simulation': {'tf': 1000.0},
            'sweep': {'coverages': [0.0, 1.0], 'n_replicates': 5, 'workers': 1},
        }, f)
    return path


class TestCli:
    def test_writes_results(self, tmp_path, capsys):
        out = tmp_path / "out.csv"
        code = cli.main(["--scenario", str(_scenario(tmp_path)), "--out", str(out)])
        assert code == 0
        df = pd.read_csv(out)
        assert list(df['coverage']) == [0.0, 1.0]
        assert "Results:" in capsys.readouterr().out

    def test_flags_override_yaml(self, tmp_path):
        out = tmp_path / "out.csv"
        cli.main(["--scenario", str(_scenario(tmp_path)), "--out", str(out),
                  "--n-replicates", "3", "--seed", "9"])
        assert (pd.read_csv(out)['n_runs'] == 3).all()

    def test_checkpoint_flag(self, tmp_path):
        ckpt = tmp_path / "ckpt.csv"
        cli.main(["--scenario", str(_scenario(tmp_path)),
                  "--out", str(tmp_path / "out.csv"), "--checkpoint", str(ckpt)])
        assert ckpt.exists()

    def test_bad_config_exit_code(self, tmp_path, capsys):
        code = cli.main(["--config", str(tmp_path / "missing.yaml")])
        assert code == 2
        assert "ERROR" in capsys.readouterr().err

    def test_build_overrides(self):
        args = cli.argparse.Namespace(
            workers=4, n_replicates=None, seed=1, method=None,
            out=None, checkpoint="c.csv",
        )
        assert cli.build_overrides(args) == {
            'sweep': {'workers': 4},
            'simulation': {'seed': 1},
            'output': {'checkpoint_file': 'c.csv'},
        }
