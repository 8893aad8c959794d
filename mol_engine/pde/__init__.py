from .spatial_operators import (
    StencilOperator,
    build_operators,
    apply_laplacian,
    laplacian_matrix,
    laplacian_source,
    laplacian_diagonal,
)
from .rhs import EVALUATION_MODES, ReactionDiffusionSystem, classify_points
from .rk_integrator import DormandPrinceStepper
from .bdf_integrator import BDFStepper
from .krylov import GMRESSolver

__all__ = [
    "StencilOperator",
    "build_operators",
    "apply_laplacian",
    "laplacian_matrix",
    "laplacian_source",
    "laplacian_diagonal",
    "EVALUATION_MODES",
    "ReactionDiffusionSystem",
    "classify_points",
    "DormandPrinceStepper",
    "BDFStepper",
    "GMRESSolver",
]
