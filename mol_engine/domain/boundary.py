from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from itertools import combinations
from typing import Any, Dict, Sequence, Tuple, Union

from mol_engine.errors import BoundaryConditionError, ConfigurationError


class BCKind(str, Enum):
    DIRICHLET = "dirichlet"
    NEUMANN = "neumann"
    NO_FLUX = "no-flux"
    PERIODIC = "periodic"


@dataclass(frozen=True)
class BoundaryCondition:
    """
    Boundary policy for one axis end.

    value
      - Dirichlet: the prescribed boundary value
      - Neumann:   the outward normal derivative (flux)
      - ignored for NoFlux and Periodic
    """
    kind: BCKind
    value: float = 0.0

    def __post_init__(self):
        object.__setattr__(self, "kind", BCKind(self.kind))
        object.__setattr__(self, "value", float(self.value))
        if self.kind in (BCKind.NO_FLUX, BCKind.PERIODIC) and self.value != 0.0:
            raise ConfigurationError(f"{self.kind.value} boundary takes no value")

    @property
    def is_periodic(self) -> bool:
        return self.kind is BCKind.PERIODIC

    @property
    def is_reflecting(self) -> bool:
        """True when the ghost point is eliminated by reflection."""
        return self.kind in (BCKind.NEUMANN, BCKind.NO_FLUX)

    @property
    def is_dirichlet(self) -> bool:
        return self.kind is BCKind.DIRICHLET

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "value": self.value}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "BoundaryCondition":
        return cls(BCKind(d["kind"]), float(d.get("value", 0.0)))


def dirichlet(value: float = 0.0) -> BoundaryCondition:
    return BoundaryCondition(BCKind.DIRICHLET, value)


def neumann(flux: float = 0.0) -> BoundaryCondition:
    return BoundaryCondition(BCKind.NEUMANN, flux)


def no_flux() -> BoundaryCondition:
    return BoundaryCondition(BCKind.NO_FLUX)


def periodic() -> BoundaryCondition:
    return BoundaryCondition(BCKind.PERIODIC)


BoundaryLike = Union[BoundaryCondition, str]
AxisBoundaries = Tuple[BoundaryCondition, BoundaryCondition]

_ALIASES = {
    "dirichlet": BCKind.DIRICHLET,
    "neumann": BCKind.NEUMANN,
    "no-flux": BCKind.NO_FLUX,
    "noflux": BCKind.NO_FLUX,
    "zero-flux": BCKind.NO_FLUX,
    "periodic": BCKind.PERIODIC,
}


def as_boundary(bc: BoundaryLike) -> BoundaryCondition:
    """Accept a BoundaryCondition or one of the names 'dirichlet', 'zero-flux', 'periodic', ..."""
    if isinstance(bc, BoundaryCondition):
        return bc
    if isinstance(bc, str):
        key = bc.strip().lower()
        if key not in _ALIASES:
            raise ConfigurationError(f"Unknown boundary condition '{bc}'")
        return BoundaryCondition(_ALIASES[key])
    raise ConfigurationError(f"Cannot interpret {bc!r} as a boundary condition")


# ------------------------------------------------------------------
# Policy table
# ------------------------------------------------------------------
@dataclass(frozen=True)
class StencilRow:
    """
    One row of the 1D second-difference operator, in units of 1/dx^2.

    row value = diag * u[i] + sum(coef * u[j] for j, coef in neighbours) + source
    """
    diag: float
    neighbours: Tuple[Tuple[int, float], ...]
    source: float = 0.0


def stencil_row(left: BoundaryCondition, right: BoundaryCondition, i: int, n: int, dx: float) -> StencilRow:
    """
    Row i of the second-difference operator on an axis with n points.

    Both the operator builder and the loop-mode evaluator read this table,
    so the two evaluation strategies agree on every boundary row.
    """
    if n < 2:
        raise ConfigurationError("an axis needs at least 2 points")
    if not 0 <= i < n:
        raise IndexError(f"row {i} out of range for n={n}")

    if 0 < i < n - 1:
        return StencilRow(-2.0, ((i - 1, 1.0), (i + 1, 1.0)))

    if i == 0:
        bc, inner, ghost_wrap = left, 1, n - 1
    else:
        bc, inner, ghost_wrap = right, n - 2, 0

    if bc.is_periodic:
        # for n == 2 both neighbours are the same point; keep both entries
        return StencilRow(-2.0, ((ghost_wrap, 1.0), (inner, 1.0)))
    if bc.is_dirichlet:
        return StencilRow(-2.0, ((inner, 1.0),), source=bc.value)
    # reflection: u_ghost = u_inner + 2 dx q
    return StencilRow(-2.0, ((inner, 2.0),), source=2.0 * dx * bc.value)


def validate_boundaries(boundaries: Sequence[AxisBoundaries]) -> None:
    """
    Reject boundary combinations without well-defined semantics.

    - a periodic end must face a periodic end on the same axis
    - in >= 2D, a Dirichlet end meeting a reflecting end of another axis
      shares a corner whose stencil is undefined
    """
    for axis, (left, right) in enumerate(boundaries):
        if left.is_periodic != right.is_periodic:
            raise BoundaryConditionError(
                f"axis {axis}: periodic boundary must be used on both ends "
                f"(got {left.kind.value} / {right.kind.value})"
            )

    for a, b in combinations(range(len(boundaries)), 2):
        for side_a, bc_a in zip(("left", "right"), boundaries[a]):
            for side_b, bc_b in zip(("left", "right"), boundaries[b]):
                if bc_a.is_periodic or bc_b.is_periodic:
                    continue
                mixed = (bc_a.is_dirichlet and bc_b.is_reflecting) or (
                    bc_a.is_reflecting and bc_b.is_dirichlet
                )
                if mixed:
                    raise BoundaryConditionError(
                        f"corner of axis {a} ({side_a}: {bc_a.kind.value}) and "
                        f"axis {b} ({side_b}: {bc_b.kind.value}) mixes Dirichlet "
                        "and reflecting policies; corner semantics are undefined"
                    )
