from __future__ import annotations
from typing import Mapping, Tuple

import numpy as np

from .reaction_types import PointwiseReaction


# ------------------------------------------------------------------
# Gierer-Meinhardt activator-inhibitor kinetics
#   du/dt = a u^2 / v + ubar - alpha u
#   dv/dt = a u^2 - beta v
# ------------------------------------------------------------------
def _gierer_meinhardt(fields, p, out, scratch) -> None:
    u, v = fields["u"], fields["v"]
    du, dv = out["u"], out["v"]
    u2, tmp = scratch

    np.multiply(u, u, out=u2)

    np.divide(u2, v, out=du)
    np.multiply(du, p["a"], out=du)
    np.add(du, p["ubar"], out=du)
    np.multiply(u, p["alpha"], out=tmp)
    np.subtract(du, tmp, out=du)

    np.multiply(u2, p["a"], out=dv)
    np.multiply(v, p["beta"], out=tmp)
    np.subtract(dv, tmp, out=dv)


def gierer_meinhardt() -> PointwiseReaction:
    """Channels ('u', 'v'); params keys 'a', 'alpha', 'ubar', 'beta'."""
    return PointwiseReaction(
        channels=("u", "v"),
        fn=_gierer_meinhardt,
        n_scratch=2,
        label="gierer-meinhardt",
    )


def gierer_meinhardt_steady_state(params: Mapping[str, float]) -> Tuple[float, float]:
    """Homogeneous steady state: uss = (ubar + beta) / alpha, vss = (a / beta) uss^2."""
    uss = (params["ubar"] + params["beta"]) / params["alpha"]
    vss = params["a"] / params["beta"] * uss ** 2
    return float(uss), float(vss)


# ------------------------------------------------------------------
# Schnakenberg kinetics
#   du/dt = a - u + u^2 v
#   dv/dt = b - u^2 v
# ------------------------------------------------------------------
def _schnakenberg(fields, p, out, scratch) -> None:
    u, v = fields["u"], fields["v"]
    du, dv = out["u"], out["v"]
    (u2v,) = scratch

    np.multiply(u, u, out=u2v)
    np.multiply(u2v, v, out=u2v)

    np.subtract(p["a"], u, out=du)
    np.add(du, u2v, out=du)

    np.subtract(p["b"], u2v, out=dv)


def schnakenberg() -> PointwiseReaction:
    """Channels ('u', 'v'); params keys 'a', 'b'. Steady state (a + b, b / (a + b)^2)."""
    return PointwiseReaction(
        channels=("u", "v"),
        fn=_schnakenberg,
        n_scratch=1,
        label="schnakenberg",
    )


# ------------------------------------------------------------------
# Linear decay du/dt = -k u
# ------------------------------------------------------------------
def linear_decay(channel: str = "u", rate_key: str = "k") -> PointwiseReaction:
    def _decay(fields, p, out, scratch) -> None:
        np.multiply(fields[channel], -p[rate_key], out=out[channel])

    return PointwiseReaction(channels=(channel,), fn=_decay, label="linear-decay")
