"""
On-disk cache for the solved trap world.

Priming writes the solved world once; every sampling run afterwards only
reads it. Both files are written to a temporary name and renamed into place,
and the primed marker is written last, so a reader either sees a complete
cache or no marker at all.

One active cache per cache directory. The geometry key stored in the marker
is advisory: a mismatch is reported but never invalidates the cache.
"""

import hashlib
import json
import os
import pathlib
import tempfile
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

import numpy as np

from trap_errors import CacheNotPrimed

SAVED_WORLD_NAME = "savedworld.npz"
MARKER_NAME = "primed.json"


def saved_world_path(cache_dir) -> pathlib.Path:
    return pathlib.Path(cache_dir) / SAVED_WORLD_NAME


def marker_path(cache_dir) -> pathlib.Path:
    return pathlib.Path(cache_dir) / MARKER_NAME


def create_cache_key(layout_fingerprint: str, solver_cfg: dict) -> str:
    """
    Create a cache key from geometry-affecting inputs.

    The layout fingerprint identifies the electrode geometry; solver settings
    (tolerance, refinement, mesh sizes) change the solution too.
    """
    cache_dict = {
        "layout": str(layout_fingerprint),
        "solver": {k: solver_cfg[k] for k in sorted(solver_cfg)},
    }
    cache_str = json.dumps(cache_dict, sort_keys=True, default=str)
    return hashlib.sha256(cache_str.encode()).hexdigest()[:16]


def _atomic_write(target: pathlib.Path, write_fn) -> None:
    # write next to the target so os.replace stays on one filesystem
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(target.parent), prefix=target.name, suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            write_fn(f)
        os.replace(tmp_name, target)
    except BaseException:
        if os.path.exists(tmp_name):
            os.remove(tmp_name)
        raise


def is_primed(cache_dir) -> bool:
    return marker_path(cache_dir).exists() and saved_world_path(cache_dir).exists()


def require_primed(cache_dir) -> None:
    #Sampling only reads the cache; priming is the single writer
    if not is_primed(cache_dir):
        raise CacheNotPrimed(
            f"No solved-world cache in {cache_dir}. Run the priming step "
            "(start == stop) once, to completion, before sampling.")


def read_marker(cache_dir) -> Optional[Dict[str, Any]]:
    path = marker_path(cache_dir)
    if not path.exists():
        return None
    with open(path, "r") as f:
        return json.load(f)


def save_world(cache_dir, arrays: Dict[str, np.ndarray], log=print) -> pathlib.Path:
    target = saved_world_path(cache_dir)
    _atomic_write(target, lambda f: np.savez(f, **arrays))
    log(f"[cache] Solved world written to {target}")
    return target


def load_world(cache_dir) -> Dict[str, np.ndarray]:
    path = saved_world_path(cache_dir)
    if not path.exists():
        raise CacheNotPrimed(f"Solved world {path} is missing.")
    with np.load(path, allow_pickle=False) as data:
        return {k: data[k] for k in data.files}


def write_marker(cache_dir, cache_key: str, electrodes: Iterable[str], log=print) -> pathlib.Path:
    marker = {
        "cache_key": cache_key,
        "electrodes": list(electrodes),
        "primed_at": datetime.now().isoformat(),
    }
    target = marker_path(cache_dir)
    _atomic_write(target, lambda f: f.write(json.dumps(marker, indent=2).encode()))
    log(f"[cache] Marked {cache_dir} as primed")
    return target


def check_cache_key(cache_dir, cache_key: str, log=print) -> bool:
    #Report (but tolerate) a cache primed from different geometry or settings
    marker = read_marker(cache_dir)
    if marker is None:
        return False
    if marker.get("cache_key") != cache_key:
        log("[cache] Warning: solved world was primed from a different layout or "
            "solver settings; results may be stale.")
        return False
    return True


def get_cache_stats(cache_dir) -> Dict[str, Any]:
    marker = read_marker(cache_dir) or {}
    world = saved_world_path(cache_dir)
    return {
        "primed": is_primed(cache_dir),
        "cache_key": marker.get("cache_key"),
        "electrodes": marker.get("electrodes", []),
        "world_bytes": world.stat().st_size if world.exists() else 0,
    }
