from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

import numpy as np

from mol_engine.errors import ConfigurationError


class SolverMethod(str, Enum):
    EXPLICIT = "explicit"
    IMPLICIT = "implicit"
    AUTO = "auto"


MethodLike = Union[SolverMethod, str]


def as_method(method: MethodLike) -> SolverMethod:
    try:
        return SolverMethod(str(getattr(method, "value", method)).lower())
    except ValueError:
        raise ConfigurationError(
            f"method must be one of {[m.value for m in SolverMethod]}, got '{method}'"
        ) from None


@dataclass(frozen=True)
class Tolerances:
    """
    Local error tolerances.

    A step is accepted when the RMS of err / (atol + rtol * |y|) is <= 1.
    """
    rtol: float = 1e-6
    atol: float = 1e-9

    def __post_init__(self):
        if not np.isfinite(self.rtol) or self.rtol <= 0:
            raise ConfigurationError("Tolerances.rtol must be > 0")
        if not np.isfinite(self.atol) or self.atol <= 0:
            raise ConfigurationError("Tolerances.atol must be > 0")


@dataclass(frozen=True)
class SolverOptions:
    """
    Step-size control, retry bounds and implicit-solver settings.

    Step control
    ------------
    first_step : initial step (None -> estimated from the RHS)
    max_step, min_step : bounds on |h|
    safety : factor on the optimal step estimate
    min_factor, max_factor : bounds on one step-size change
    max_rejections : consecutive rejected/failed attempts before the run fails
    max_steps : optional cap on accepted steps

    Implicit (BDF + Newton-Krylov)
    ------------------------------
    max_order : highest BDF order (1..5)
    newton_maxiter : Newton iterations per attempt
    krylov_dim : GMRES restart length
    krylov_restarts : GMRES restart cycles per linear solve
    krylov_tol : relative GMRES residual tolerance

    Stiffness detection (method="auto")
    -----------------------------------
    stiffness_window : accepted explicit steps with h*rho > 3.25 before switching
    stiffness_patience : consecutive severe shrinkages before switching
    shrink_threshold : a rejection shrinking h by less than this factor is "severe"
    """
    first_step: Optional[float] = None
    max_step: float = np.inf
    min_step: float = 0.0
    safety: float = 0.9
    min_factor: float = 0.2
    max_factor: float = 10.0
    max_rejections: int = 50
    max_steps: Optional[int] = None

    max_order: int = 5
    newton_maxiter: int = 4
    krylov_dim: int = 30
    krylov_restarts: int = 4
    krylov_tol: float = 1e-3

    stiffness_window: int = 15
    stiffness_patience: int = 5
    shrink_threshold: float = 0.3

    def __post_init__(self):
        if self.first_step is not None and not self.first_step > 0:
            raise ConfigurationError("SolverOptions.first_step must be > 0")
        if not self.max_step > 0:
            raise ConfigurationError("SolverOptions.max_step must be > 0")
        if self.min_step < 0 or self.min_step >= self.max_step:
            raise ConfigurationError("SolverOptions.min_step must be in [0, max_step)")
        if not 0 < self.safety < 1:
            raise ConfigurationError("SolverOptions.safety must be in (0, 1)")
        if not 0 < self.min_factor < 1:
            raise ConfigurationError("SolverOptions.min_factor must be in (0, 1)")
        if not self.max_factor > 1:
            raise ConfigurationError("SolverOptions.max_factor must be > 1")
        if self.max_rejections < 1:
            raise ConfigurationError("SolverOptions.max_rejections must be >= 1")
        if self.max_steps is not None and self.max_steps < 1:
            raise ConfigurationError("SolverOptions.max_steps must be >= 1")
        if not 1 <= self.max_order <= 5:
            raise ConfigurationError("SolverOptions.max_order must be in 1..5")
        if self.newton_maxiter < 1:
            raise ConfigurationError("SolverOptions.newton_maxiter must be >= 1")
        if self.krylov_dim < 1 or self.krylov_restarts < 1:
            raise ConfigurationError("SolverOptions.krylov_dim and krylov_restarts must be >= 1")
        if not 0 < self.krylov_tol < 1:
            raise ConfigurationError("SolverOptions.krylov_tol must be in (0, 1)")
        if self.stiffness_window < 1 or self.stiffness_patience < 1:
            raise ConfigurationError("SolverOptions stiffness counters must be >= 1")
        if not 0 < self.shrink_threshold < 1:
            raise ConfigurationError("SolverOptions.shrink_threshold must be in (0, 1)")

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for k, v in self.__dict__.items():
            out[k] = None if v is None else (float(v) if isinstance(v, float) else v)
        return out
