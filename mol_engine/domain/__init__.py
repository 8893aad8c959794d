from .boundary import (
    BCKind,
    BoundaryCondition,
    StencilRow,
    as_boundary,
    dirichlet,
    neumann,
    no_flux,
    periodic,
    stencil_row,
    validate_boundaries,
)
from .grid import Grid

__all__ = [
    "BCKind",
    "BoundaryCondition",
    "StencilRow",
    "Grid",
    "as_boundary",
    "dirichlet",
    "neumann",
    "no_flux",
    "periodic",
    "stencil_row",
    "validate_boundaries",
]
