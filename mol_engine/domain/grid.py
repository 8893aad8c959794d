from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence, Tuple, Union

import numpy as np

from mol_engine.errors import ConfigurationError
from .boundary import (
    AxisBoundaries,
    BoundaryCondition,
    BoundaryLike,
    as_boundary,
    no_flux,
    validate_boundaries,
)

BoundarySpec = Union[BoundaryLike, Sequence[Any]]


def _normalize_boundaries(boundaries: BoundarySpec, ndim: int) -> Tuple[AxisBoundaries, ...]:
    """
    Accepted forms
    --------------
    - one policy                     -> every axis end
    - (left, right) when ndim == 1   -> the single axis
    - one entry per axis, each either a policy (both ends) or a (left, right) pair
    """
    if isinstance(boundaries, (BoundaryCondition, str)):
        bc = as_boundary(boundaries)
        return tuple((bc, bc) for _ in range(ndim))

    items = list(boundaries)
    if ndim == 1 and len(items) == 2 and all(isinstance(b, (BoundaryCondition, str)) for b in items):
        return ((as_boundary(items[0]), as_boundary(items[1])),)
    if len(items) != ndim:
        raise ConfigurationError(f"expected boundary policies for {ndim} axes, got {len(items)}")

    out = []
    for item in items:
        if isinstance(item, (BoundaryCondition, str)):
            bc = as_boundary(item)
            out.append((bc, bc))
        else:
            pair = list(item)
            if len(pair) != 2:
                raise ConfigurationError("per-axis boundaries must be a (left, right) pair")
            out.append((as_boundary(pair[0]), as_boundary(pair[1])))
    return tuple(out)


@dataclass(frozen=True)
class Grid:
    """
    Uniform Cartesian grid in 1, 2 or 3 dimensions.

    Attributes
    ----------
    shape : tuple of int
        Points per axis (each >= 2).
    spacing : tuple of float
        Grid spacing per axis (each > 0).
    boundaries : tuple of (left, right) BoundaryCondition pairs, one per axis.
    origin : tuple of float
        Coordinate of the domain start on each axis.

    Points sit at origin + (i + 1) * dx on non-periodic axes (boundary values
    live at origin and origin + (n + 1) * dx), and at origin + i * dx on
    periodic axes.
    """
    shape: Tuple[int, ...]
    spacing: Tuple[float, ...]
    boundaries: Any = field(default_factory=no_flux)
    origin: Optional[Tuple[float, ...]] = None

    def __post_init__(self):
        shape = tuple(int(n) for n in np.atleast_1d(self.shape))
        spacing = tuple(float(h) for h in np.atleast_1d(self.spacing))

        if not 1 <= len(shape) <= 3:
            raise ConfigurationError("Grid supports 1, 2 or 3 dimensions")
        if len(spacing) == 1 and len(shape) > 1:
            spacing = spacing * len(shape)
        if len(spacing) != len(shape):
            raise ConfigurationError("spacing must have one entry per axis")
        if any(n < 2 for n in shape):
            raise ConfigurationError(f"every axis needs at least 2 points, got shape {shape}")
        if any(not np.isfinite(h) or h <= 0 for h in spacing):
            raise ConfigurationError(f"grid spacing must be > 0, got {spacing}")

        origin = (0.0,) * len(shape) if self.origin is None else tuple(float(o) for o in np.atleast_1d(self.origin))
        if len(origin) != len(shape):
            raise ConfigurationError("origin must have one entry per axis")

        boundaries = _normalize_boundaries(self.boundaries, len(shape))
        validate_boundaries(boundaries)

        object.__setattr__(self, "shape", shape)
        object.__setattr__(self, "spacing", spacing)
        object.__setattr__(self, "origin", origin)
        object.__setattr__(self, "boundaries", boundaries)

    @classmethod
    def from_length(
        cls,
        shape: Union[int, Sequence[int]],
        length: Union[float, Sequence[float]] = 1.0,
        boundaries: BoundarySpec = "zero-flux",
        origin: Optional[Sequence[float]] = None,
    ) -> "Grid":
        """
        Derive spacing from the domain length: length / (n + 1), or length / n
        on periodic axes so that one period spans the domain.
        """
        shape_t = tuple(int(n) for n in np.atleast_1d(shape))
        lengths = np.broadcast_to(np.asarray(length, dtype=float), (len(shape_t),))
        if np.any(lengths <= 0):
            raise ConfigurationError("domain length must be > 0")
        bcs = _normalize_boundaries(boundaries, len(shape_t))

        spacing = []
        for n, L, (left, _right) in zip(shape_t, lengths, bcs):
            spacing.append(float(L) / (n if left.is_periodic else n + 1))
        return cls(shape=shape_t, spacing=tuple(spacing), boundaries=bcs, origin=origin)

    # ------------------------------------------------------------------
    # basic properties
    # ------------------------------------------------------------------
    @property
    def ndim(self) -> int:
        return len(self.shape)

    @property
    def size(self) -> int:
        """Total number of grid points."""
        return int(np.prod(self.shape))

    @property
    def dx(self) -> float:
        """Spacing of the first axis (the only one in 1D)."""
        return self.spacing[0]

    @property
    def cell_volume(self) -> float:
        return float(np.prod(self.spacing))

    def is_periodic(self, axis: int) -> bool:
        return self.boundaries[axis][0].is_periodic

    def coordinates(self, axis: int = 0) -> np.ndarray:
        n = self.shape[axis]
        offset = 0 if self.is_periodic(axis) else 1
        return self.origin[axis] + (np.arange(n, dtype=float) + offset) * self.spacing[axis]

    def meshgrid(self) -> Tuple[np.ndarray, ...]:
        return tuple(np.meshgrid(*[self.coordinates(a) for a in range(self.ndim)], indexing="ij"))

    # ------------------------------------------------------------------
    # quadrature
    # ------------------------------------------------------------------
    def axis_weights(self, axis: int) -> np.ndarray:
        """
        Quadrature weights along one axis: 1/2 on reflecting end points, 1 elsewhere.

        With these weights the discrete Laplacian has zero weighted column
        sums under NoFlux, so the weighted sum is the conserved mass.
        """
        w = np.ones(self.shape[axis], dtype=float)
        left, right = self.boundaries[axis]
        if left.is_reflecting:
            w[0] = 0.5
        if right.is_reflecting:
            w[-1] = 0.5
        return w

    def quadrature_weights(self) -> np.ndarray:
        w = self.axis_weights(0)
        for axis in range(1, self.ndim):
            w = np.multiply.outer(w, self.axis_weights(axis))
        return w

    def integrate(self, field: np.ndarray) -> float:
        """Weighted discrete integral of a field with the grid shape."""
        field = np.asarray(field, dtype=float)
        if field.shape != self.shape:
            raise ConfigurationError(f"field shape {field.shape} does not match grid {self.shape}")
        return float(np.sum(self.quadrature_weights() * field) * self.cell_volume)

    # ------------------------------------------------------------------
    # serialisation (used by results.io)
    # ------------------------------------------------------------------
    def to_dict(self) -> Dict[str, Any]:
        return {
            "shape": list(self.shape),
            "spacing": list(self.spacing),
            "origin": list(self.origin),
            "boundaries": [[left.to_dict(), right.to_dict()] for left, right in self.boundaries],
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Grid":
        bcs = [
            (BoundaryCondition.from_dict(left), BoundaryCondition.from_dict(right))
            for left, right in d["boundaries"]
        ]
        return cls(
            shape=tuple(d["shape"]),
            spacing=tuple(d["spacing"]),
            boundaries=bcs,
            origin=tuple(d.get("origin", [0.0] * len(d["shape"]))),
        )
