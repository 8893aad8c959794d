from .engine import IntegratorState, RunStatus, Trajectory, integrate
from .ensemble import integrate_ensemble
from .user_api import ReactionDiffusionModel

__all__ = [
    "IntegratorState",
    "RunStatus",
    "Trajectory",
    "integrate",
    "integrate_ensemble",
    "ReactionDiffusionModel",
]
