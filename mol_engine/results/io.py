from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import numpy as np

from mol_engine.domain import Grid
from mol_engine.results.trajectory_results import TrajectoryResults

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def _check_shapes(time: np.ndarray, data: np.ndarray, grid: Grid, channels) -> None:
    if data.shape[0] != len(channels):
        raise ValueError("Loaded data does not match the channel list")
    if tuple(data.shape[1:-1]) != grid.shape:
        raise ValueError("Loaded data does not match the grid shape")
    if data.shape[-1] != time.shape[0]:
        raise ValueError("Loaded data does not match the time vector")


# ============================================================
# Pair format: <prefix>.npz + <prefix>.json
# ============================================================
def save_results(
    results: TrajectoryResults,
    path_prefix: PathLike,
    *,
    meta: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Save TrajectoryResults to:
      - <path_prefix>.npz  (time, data)
      - <path_prefix>.json (grid, channels, status, stats, user metadata)
    """
    path_prefix = Path(path_prefix)
    path_prefix.parent.mkdir(parents=True, exist_ok=True)

    npz_path = path_prefix.with_suffix(".npz")
    json_path = path_prefix.with_suffix(".json")

    np.savez_compressed(npz_path, time=results.time, data=results.data)

    meta_out: Dict[str, Any] = dict(meta or {})
    meta_out.setdefault("channels", list(results.channels))
    meta_out.setdefault("status", str(results.status))
    meta_out.setdefault("stats", dict(results.stats))
    meta_out.setdefault("grid", results.grid.to_dict())
    meta_out.setdefault(
        "shapes",
        {"time": list(results.time.shape), "data": list(results.data.shape)},
    )

    with open(json_path, "w", encoding="utf-8") as f:
        json.dump(meta_out, f, indent=2)

    logger.info("Results saved to %s and %s", npz_path, json_path)


def load_results(path_prefix: PathLike) -> Tuple[TrajectoryResults, Dict[str, Any]]:
    """
    Load TrajectoryResults saved by save_results().

    Returns
    -------
    (TrajectoryResults, meta_dict)
    """
    path_prefix = Path(path_prefix)
    npz_path = path_prefix.with_suffix(".npz")
    json_path = path_prefix.with_suffix(".json")

    if not npz_path.exists():
        raise FileNotFoundError(f"Missing npz file: {npz_path}")
    if not json_path.exists():
        raise FileNotFoundError(f"Missing json file: {json_path}")

    with open(json_path, "r", encoding="utf-8") as f:
        meta = json.load(f)

    grid = Grid.from_dict(meta["grid"])
    channels = [str(c) for c in meta.get("channels", [])]

    with np.load(npz_path) as data:
        time = data["time"]
        arr = data["data"]
    _check_shapes(time, arr, grid, channels)

    res = TrajectoryResults(
        time=time,
        data=arr,
        grid=grid,
        channels=channels,
        status=str(meta.get("status", "completed")),
        stats=dict(meta.get("stats", {})),
    )
    return res, meta


# ============================================================
# Single-file format: <file>.npz with meta_json
# ============================================================
def save_npz(
    res: TrajectoryResults,
    path: PathLike,
    *,
    meta: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Save TrajectoryResults to one self-contained .npz file: the arrays plus
    JSON strings for the grid, the run summary and user metadata.
    """
    path = str(path)
    payload: Dict[str, Any] = {
        "time": res.time,
        "data": res.data,
        "channels": np.array(list(res.channels), dtype=str),
        "grid_json": json.dumps(res.grid.to_dict()),
        "status": str(res.status),
        "stats_json": json.dumps(dict(res.stats)),
        "meta_json": json.dumps(dict(meta or {})),
    }
    np.savez_compressed(path, **payload)
    logger.info("Results saved to single file: %s", path)


def load_npz(path: PathLike) -> Tuple[TrajectoryResults, Dict[str, Any]]:
    """
    Load a self-contained .npz file produced by save_npz().

    Returns
    -------
    (TrajectoryResults, meta_dict)
    """
    with np.load(str(path)) as data:
        time = data["time"]
        arr = data["data"]
        channels = [str(c) for c in data["channels"].tolist()]
        grid = Grid.from_dict(json.loads(str(data["grid_json"])))
        status = str(data["status"])
        stats = json.loads(str(data["stats_json"]))
        meta_raw = str(data["meta_json"]) if "meta_json" in data.files else "{}"
    _check_shapes(time, arr, grid, channels)

    meta = json.loads(meta_raw)
    if not isinstance(meta, dict):
        meta = {}

    res = TrajectoryResults(time=time, data=arr, grid=grid, channels=channels, status=status, stats=stats)
    return res, meta


# ============================================================
# Convenience wrapper: save BOTH formats with one call
# ============================================================
def save_all(
    results: TrajectoryResults,
    path_prefix: PathLike,
    *,
    meta: Optional[Dict[str, Any]] = None,
    also_write_single_npz: bool = True,
) -> None:
    """
    Save:
      - <prefix>.npz + <prefix>.json
      - optionally also <prefix>.full.npz (single file)
    """
    path_prefix = Path(path_prefix)
    save_results(results, path_prefix, meta=meta)

    if also_write_single_npz:
        save_npz(results, path_prefix.with_suffix(".full.npz"), meta=meta)
