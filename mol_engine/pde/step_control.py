from __future__ import annotations
import math
from typing import Callable

import numpy as np

# Signature: fun(t, y, out) -> None, writes dy/dt into out
InplaceRHS = Callable[[float, np.ndarray, np.ndarray], None]

EPS = float(np.finfo(float).eps)


def all_finite(x: np.ndarray) -> bool:
    """NaN/Inf check without a temporary boolean array."""
    return math.isfinite(float(x.sum()))


def rms_norm(x: np.ndarray, scale: np.ndarray, tmp: np.ndarray) -> float:
    """RMS of x / scale, using tmp as scratch."""
    np.divide(x, scale, out=tmp)
    return math.sqrt(float(np.dot(tmp, tmp)) / tmp.size)


def error_scale(y: np.ndarray, y_new: np.ndarray, rtol: float, atol: float, out: np.ndarray, tmp: np.ndarray) -> np.ndarray:
    """out <- atol + rtol * max(|y|, |y_new|)"""
    np.abs(y, out=out)
    np.abs(y_new, out=tmp)
    np.maximum(out, tmp, out=out)
    np.multiply(out, rtol, out=out)
    np.add(out, atol, out=out)
    return out


def select_initial_step(
    fun: InplaceRHS,
    t0: float,
    y0: np.ndarray,
    f0: np.ndarray,
    interval: float,
    order: int,
    rtol: float,
    atol: float,
) -> float:
    """
    Starting step from the local scale of y and y' (Hairer, Norsett & Wanner,
    Solving ODEs I, sec. II.4). Runs once per run, before stepping, so it may
    allocate.
    """
    if y0.size == 0:
        return interval
    scale = atol + np.abs(y0) * rtol
    d0 = math.sqrt(float(np.mean((y0 / scale) ** 2)))
    d1 = math.sqrt(float(np.mean((f0 / scale) ** 2)))
    if d0 < 1e-5 or d1 < 1e-5:
        h0 = 1e-6
    else:
        h0 = 0.01 * d0 / d1
    h0 = min(h0, interval)

    y1 = y0 + h0 * f0
    f1 = np.empty_like(y0)
    fun(t0 + h0, y1, f1)
    d2 = math.sqrt(float(np.mean(((f1 - f0) / scale) ** 2))) / h0

    if d1 <= 1e-15 and d2 <= 1e-15:
        h1 = max(1e-6, h0 * 1e-3)
    else:
        h1 = (0.01 / max(d1, d2)) ** (1.0 / (order + 1))
    return min(100 * h0, h1, interval)


def min_step_at(t: float, floor: float) -> float:
    """Smallest meaningful step at time t."""
    return max(floor, 10.0 * abs(np.nextafter(t, np.inf) - t))
