from .config import SolverMethod, SolverOptions, Tolerances
from .core import IntegratorState, ReactionDiffusionModel, RunStatus, Trajectory, integrate, integrate_ensemble
from .domain import BoundaryCondition, Grid, dirichlet, neumann, no_flux, periodic
from .errors import (
    BoundaryConditionError,
    ConfigurationError,
    MolEngineError,
    NonconvergenceError,
    NumericalDivergence,
)
from .pde import ReactionDiffusionSystem, build_operators, classify_points, laplacian_matrix
from .reactions import PointwiseReaction
from .results import TrajectoryResults, load_npz, load_results, save_npz, save_results
from .state import FieldState, Workspace

__all__ = [
    "SolverMethod",
    "SolverOptions",
    "Tolerances",
    "IntegratorState",
    "ReactionDiffusionModel",
    "RunStatus",
    "Trajectory",
    "integrate",
    "integrate_ensemble",
    "BoundaryCondition",
    "Grid",
    "dirichlet",
    "neumann",
    "no_flux",
    "periodic",
    "BoundaryConditionError",
    "ConfigurationError",
    "MolEngineError",
    "NonconvergenceError",
    "NumericalDivergence",
    "ReactionDiffusionSystem",
    "build_operators",
    "classify_points",
    "laplacian_matrix",
    "PointwiseReaction",
    "TrajectoryResults",
    "load_npz",
    "load_results",
    "save_npz",
    "save_results",
    "FieldState",
    "Workspace",
]
