from __future__ import annotations
from typing import Any, Optional


class MolEngineError(Exception):
    """Base class for every error raised by mol_engine."""


class ConfigurationError(MolEngineError, ValueError):
    """Invalid grid, spacing, shape or solver options. Raised before stepping."""


class BoundaryConditionError(ConfigurationError):
    """Unsupported or ambiguous combination of boundary policies."""


class _RunFailure(MolEngineError, ArithmeticError):
    """
    Fatal failure of a run.

    Attributes
    ----------
    last_time : float or None
        Time of the last accepted state.
    last_state : FieldState or None
        Copy of the last accepted state.
    partial : TrajectoryResults or None
        Samples emitted before the failure (filled in by Trajectory.collect).
    """

    def __init__(
        self,
        message: str,
        *,
        last_time: Optional[float] = None,
        last_state: Any = None,
    ):
        super().__init__(message)
        self.last_time = last_time
        self.last_state = last_state
        self.partial = None


class NumericalDivergence(_RunFailure):
    """Non-finite derivative at an accepted state, or too many rejected steps."""


class NonconvergenceError(_RunFailure):
    """Newton/Krylov iteration of an implicit step failed beyond the retry bound."""


__all__ = [
    "MolEngineError",
    "ConfigurationError",
    "BoundaryConditionError",
    "NumericalDivergence",
    "NonconvergenceError",
]
