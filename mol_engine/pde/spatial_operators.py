from __future__ import annotations
from dataclasses import dataclass
from functools import cached_property, reduce
from typing import Dict, Sequence, Tuple

import numpy as np
import scipy.sparse as sp

from mol_engine.domain import BoundaryCondition, Grid, StencilRow, stencil_row
from mol_engine.errors import ConfigurationError


@dataclass(frozen=True)
class StencilOperator:
    """
    Discrete second derivative along one axis of a `ndim`-dimensional field.

    Stored compactly: the interior band [1, -2, 1] / dx^2 plus the first and
    last rows taken from the boundary policy table. Never materialised
    unless `to_sparse()` is called.
    """
    n: int
    dx: float
    left: BoundaryCondition
    right: BoundaryCondition
    axis: int = 0
    ndim: int = 1

    def __post_init__(self):
        if self.n < 2:
            raise ConfigurationError(f"StencilOperator needs n >= 2, got {self.n}")
        if not np.isfinite(self.dx) or self.dx <= 0:
            raise ConfigurationError(f"StencilOperator needs dx > 0, got {self.dx}")
        if not 0 <= self.axis < self.ndim:
            raise ConfigurationError(f"axis {self.axis} out of range for ndim={self.ndim}")

    @property
    def inv_dx2(self) -> float:
        return 1.0 / (self.dx * self.dx)

    @cached_property
    def first(self) -> StencilRow:
        return stencil_row(self.left, self.right, 0, self.n, self.dx)

    @cached_property
    def last(self) -> StencilRow:
        return stencil_row(self.left, self.right, self.n - 1, self.n, self.dx)

    @cached_property
    def _index(self) -> Dict[str, object]:
        # slice tuples built once so that apply() creates no index objects
        lead = (slice(None),) * self.axis
        n = self.n
        faces = {i: lead + (slice(i, i + 1),) for i in {0, 1, n - 2, n - 1}}
        return {
            "inner": lead + (slice(1, n - 1),),
            "below": lead + (slice(0, n - 2),),
            "above": lead + (slice(2, n),),
            "faces": faces,
        }

    # ------------------------------------------------------------------
    # application
    # ------------------------------------------------------------------
    def apply_linear(self, u: np.ndarray, out: np.ndarray, work: np.ndarray) -> None:
        """
        out <- homogeneous part of the operator applied along `axis`.

        `work` is caller-owned scratch of the same shape; `out` must not alias `u`.
        """
        if u.shape[self.axis] != self.n:
            raise ValueError(f"field has {u.shape[self.axis]} points on axis {self.axis}, expected {self.n}")
        idx = self._index
        faces = idx["faces"]

        if self.n > 2:
            inner = idx["inner"]
            o = out[inner]
            w = work[inner]
            np.add(u[idx["below"]], u[idx["above"]], out=o)
            np.multiply(u[inner], -2.0, out=w)
            np.add(o, w, out=o)

        for i, row in ((0, self.first), (self.n - 1, self.last)):
            face = faces[i]
            o = out[face]
            w = work[face]
            np.multiply(u[face], row.diag, out=o)
            for j, coef in row.neighbours:
                np.multiply(u[faces[j]], coef, out=w)
                np.add(o, w, out=o)

        np.multiply(out, self.inv_dx2, out=out)

    def add_source(self, out: np.ndarray, scale: float = 1.0) -> None:
        """out += affine boundary contribution (Dirichlet values, Neumann fluxes)."""
        faces = self._index["faces"]
        for i, row in ((0, self.first), (self.n - 1, self.last)):
            if row.source != 0.0:
                o = out[faces[i]]
                np.add(o, scale * row.source * self.inv_dx2, out=o)

    def apply(self, u: np.ndarray, out: np.ndarray, work: np.ndarray) -> None:
        """out <- full (affine) operator applied along `axis`."""
        self.apply_linear(u, out, work)
        self.add_source(out)

    # ------------------------------------------------------------------
    # materialisation
    # ------------------------------------------------------------------
    def rows(self) -> Tuple[StencilRow, ...]:
        return tuple(stencil_row(self.left, self.right, i, self.n, self.dx) for i in range(self.n))

    def to_sparse(self) -> sp.csr_matrix:
        """1D operator (homogeneous part) as an (n, n) sparse matrix."""
        data, ii, jj = [], [], []
        for i, row in enumerate(self.rows()):
            ii.append(i)
            jj.append(i)
            data.append(row.diag)
            for j, coef in row.neighbours:
                ii.append(i)
                jj.append(j)
                data.append(coef)
        # duplicate (i, j) entries are summed on conversion
        M = sp.coo_matrix((data, (ii, jj)), shape=(self.n, self.n))
        return (M * self.inv_dx2).tocsr()

    def source_vector(self) -> np.ndarray:
        s = np.zeros(self.n, dtype=float)
        s[0] += self.first.source * self.inv_dx2
        s[-1] += self.last.source * self.inv_dx2
        return s

    def diagonal(self) -> np.ndarray:
        return np.array([row.diag for row in self.rows()], dtype=float) * self.inv_dx2


def build_operators(grid: Grid) -> Tuple[StencilOperator, ...]:
    """One immutable StencilOperator per axis of the grid."""
    return tuple(
        StencilOperator(
            n=grid.shape[axis],
            dx=grid.spacing[axis],
            left=grid.boundaries[axis][0],
            right=grid.boundaries[axis][1],
            axis=axis,
            ndim=grid.ndim,
        )
        for axis in range(grid.ndim)
    )


def apply_laplacian(
    operators: Sequence[StencilOperator],
    u: np.ndarray,
    out: np.ndarray,
    acc: np.ndarray,
    work: np.ndarray,
) -> None:
    """
    Kronecker-sum Laplacian: out <- sum over axes of operator_k applied along axis k.

    `acc` and `work` are caller-owned scratch arrays with the field shape.
    """
    operators[0].apply(u, out, work)
    for op in operators[1:]:
        op.apply(u, acc, work)
        np.add(out, acc, out=out)


def _broadcast_axis(vec: np.ndarray, axis: int, ndim: int) -> np.ndarray:
    shape = [1] * ndim
    shape[axis] = vec.shape[0]
    return vec.reshape(shape)


def laplacian_matrix(grid: Grid) -> sp.csr_matrix:
    """
    Homogeneous Laplacian on the flattened (C-order) grid as a sparse matrix.

    Kronecker sum: sum_k I (x) ... (x) L_k (x) ... (x) I.
    """
    ops = build_operators(grid)
    total = None
    for axis, op in enumerate(ops):
        factors = [sp.identity(n, format="csr") for n in grid.shape]
        factors[axis] = op.to_sparse()
        term = reduce(lambda a, b: sp.kron(a, b, format="csr"), factors)
        total = term if total is None else total + term
    return total.tocsr()


def laplacian_source(grid: Grid) -> np.ndarray:
    """Affine boundary contribution of the Laplacian, with the grid shape."""
    out = np.zeros(grid.shape, dtype=float)
    for op in build_operators(grid):
        out += _broadcast_axis(op.source_vector(), op.axis, grid.ndim)
    return out


def laplacian_diagonal(grid: Grid) -> np.ndarray:
    """Diagonal of the Laplacian, with the grid shape."""
    out = np.zeros(grid.shape, dtype=float)
    for op in build_operators(grid):
        out += _broadcast_axis(op.diagonal(), op.axis, grid.ndim)
    return out
