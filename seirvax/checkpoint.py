"""Per-coverage checkpointing for long sweeps.

After every coverage level the sweep rewrites a CSV of all completed rows
plus a JSON sidecar (``<file>.meta.json``) holding a fingerprint of every
setting that affects a row's value. A rerun with the same fingerprint skips
the coverages already present; a different fingerprint refuses to resume
rather than mixing rows from two configurations. The sidecar also records
the master seed entropy, so an unseeded sweep resumes on the same streams.

Writes go to a temporary file first and are moved into place, so an
interrupted write never leaves a truncated checkpoint.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

import pandas as pd

from seirvax.config import SweepConfig
from seirvax.types import ConfigurationError
from seirvax.utils import config_hash, get_git_hash

logger = logging.getLogger(__name__)

CHECKPOINT_VERSION = 2


def sweep_fingerprint(config: SweepConfig) -> str:
    """Hash of the settings that determine a row's value for a given coverage.

    Excludes the coverage grid (rows are keyed by coverage and each level
    has its own random stream), output paths, worker count and failure
    policy.
    """
    data = config.to_dict()
    data.pop('output', None)
    sweep = data['sweep']
    for key in ('coverage_start', 'coverage_stop', 'coverage_step',
                'coverages', 'workers', 'on_failure'):
        sweep.pop(key, None)
    return config_hash(data)


def meta_path(path: Union[str, Path]) -> Path:
    path = Path(path)
    return path.with_name(path.name + '.meta.json')


def _atomic_write_text(path: Path, text: str) -> None:
    tmp = path.with_name(path.name + '.tmp')
    with open(tmp, 'w') as f:
        f.write(text)
    os.replace(tmp, path)


def save_checkpoint(
    path: Union[str, Path],
    rows: pd.DataFrame,
    fingerprint: str,
    seed_entropy: Optional[int] = None,
) -> None:
    """Write completed rows, their fingerprint and the master seed entropy."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    _atomic_write_text(path, rows.to_csv(index=False))
    meta = {
        'version': CHECKPOINT_VERSION,
        'fingerprint': fingerprint,
        'seed_entropy': seed_entropy,
        'n_rows': int(len(rows)),
        'git_hash': get_git_hash(),
        'written_at': datetime.now(timezone.utc).isoformat(),
    }
    _atomic_write_text(meta_path(path), json.dumps(meta, indent=2))
    logger.debug("checkpoint: %d rows → %s", len(rows), path)


def _read_meta(path: Path) -> Optional[dict]:
    mpath = meta_path(path)
    if not path.exists() or not mpath.exists():
        return None
    with open(mpath) as f:
        return json.load(f)


def checkpoint_seed_entropy(path: Union[str, Path]) -> Optional[int]:
    """Master seed entropy recorded with a checkpoint, or None.

    A sweep configured with ``seed: null`` draws fresh entropy; resuming it
    must reuse the entropy the completed rows were drawn from.
    """
    meta = _read_meta(Path(path))
    return None if meta is None else meta.get('seed_entropy')


def load_checkpoint(
    path: Union[str, Path],
    fingerprint: str,
    seed_entropy: Optional[int] = None,
) -> Optional[pd.DataFrame]:
    """Load completed rows, or None if no checkpoint exists.

    Args:
        path: Checkpoint CSV.
        fingerprint: sweep_fingerprint() of the resuming configuration.
        seed_entropy: Master seed entropy of the resuming sweep; checked
            against the recorded one when given.

    Raises:
        ConfigurationError: If the checkpoint was written by a different
            configuration, random stream or checkpoint version.
    """
    path = Path(path)
    meta = _read_meta(path)
    if meta is None:
        return None
    if meta.get('version') != CHECKPOINT_VERSION:
        raise ConfigurationError(
            f"checkpoint {path} has version {meta.get('version')}, "
            f"expected {CHECKPOINT_VERSION}"
        )
    if meta.get('fingerprint') != fingerprint:
        raise ConfigurationError(
            f"checkpoint {path} was written by a different configuration; "
            f"remove it or point output.checkpoint_file elsewhere"
        )
    recorded = meta.get('seed_entropy')
    if seed_entropy is not None and recorded is not None and recorded != seed_entropy:
        raise ConfigurationError(
            f"checkpoint {path} was drawn from seed entropy {recorded}, "
            f"not {seed_entropy}; resuming would mix random streams"
        )
    rows = pd.read_csv(path)
    logger.info("resuming from %s: %d coverage levels already done", path, len(rows))
    return rows
