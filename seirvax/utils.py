"""Utility functions for seirvax.

Hashing of configuration dicts and provenance stamps for checkpoints.
"""

from __future__ import annotations

import hashlib
import json
import subprocess
from typing import Any, Dict


def _jsonable(obj: Any) -> Any:
    if hasattr(obj, 'tolist'):
        return obj.tolist()
    return repr(obj)


def config_hash(data: Dict[str, Any]) -> str:
    """SHA-256 of a configuration dict, independent of key order.

    NumPy scalars hash like the equivalent Python numbers.
    """
    text = json.dumps(data, sort_keys=True, default=_jsonable)
    return hashlib.sha256(text.encode('utf-8')).hexdigest()


def get_git_hash() -> str:
    """Return the current git commit hash, or 'unknown' if not in a repo."""
    try:
        result = subprocess.run(
            ['git', 'rev-parse', 'HEAD'],
            capture_output=True, text=True, timeout=5,
        )
        return result.stdout.strip() if result.returncode == 0 else 'unknown'
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return 'unknown'
