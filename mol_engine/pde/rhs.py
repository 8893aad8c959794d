from __future__ import annotations
from dataclasses import dataclass, field
from functools import cached_property
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import scipy.sparse as sp

from mol_engine.domain import Grid, StencilRow
from mol_engine.errors import ConfigurationError
from mol_engine.reactions import PointwiseReaction
from mol_engine.state import FieldState, Workspace
from .spatial_operators import StencilOperator, apply_laplacian, build_operators, laplacian_diagonal, laplacian_matrix

EVALUATION_MODES = ("composed", "loop")


# ------------------------------------------------------------------
# Point classification for loop mode
# ------------------------------------------------------------------
@dataclass(frozen=True)
class PointPlan:
    """
    Every grid point exactly once, split by how many axes it sits on the
    first/last row of: interior (none), edge (one), corner (two or more).
    """
    interior: Tuple[int, ...]
    edges: Tuple[Tuple[int, Tuple[int, ...]], ...]
    corners: Tuple[Tuple[int, Tuple[int, ...]], ...]


def _point_plan(grid: Grid) -> PointPlan:
    interior: List[int] = []
    edges: List[Tuple[int, Tuple[int, ...]]] = []
    corners: List[Tuple[int, Tuple[int, ...]]] = []
    for flat, idx in enumerate(np.ndindex(*grid.shape)):
        n_boundary = sum(1 for i, n in zip(idx, grid.shape) if i == 0 or i == n - 1)
        if n_boundary == 0:
            interior.append(flat)
        elif n_boundary == 1:
            edges.append((flat, tuple(int(i) for i in idx)))
        else:
            corners.append((flat, tuple(int(i) for i in idx)))
    return PointPlan(tuple(interior), tuple(edges), tuple(corners))


def classify_points(grid: Grid) -> Dict[str, int]:
    plan = _point_plan(grid)
    return {
        "interior": len(plan.interior),
        "edge": len(plan.edges),
        "corner": len(plan.corners),
    }


# ------------------------------------------------------------------
# Per-workspace scratch
# ------------------------------------------------------------------
@dataclass
class _Scratch:
    acc: np.ndarray
    work: np.ndarray
    react: np.ndarray
    react_out: Dict[str, np.ndarray]
    react_scratch: Tuple[np.ndarray, ...]
    point_in: Dict[str, np.ndarray] = field(default_factory=dict)
    point_out: Dict[str, np.ndarray] = field(default_factory=dict)
    point_scratch: Tuple[np.ndarray, ...] = ()


@dataclass(eq=False)
class ReactionDiffusionSystem:
    """
    Method-of-lines ODE system

        d state[c] / dt = D[c] * Laplacian(state[c]) + reaction(state at each point)[c]

    The ODE state vector is the flattened (n_channels, *grid.shape) array.

    Parameters
    ----------
    grid : Grid
    channels : list of channel names
    diffusion : {channel: D >= 0}
    reaction : PointwiseReaction or None
    params : anything the reaction needs; forwarded unchanged
    mode : "composed" (axis-wise operator application) or "loop" (per-point stencil)
    """
    grid: Grid
    channels: Sequence[str]
    diffusion: Mapping[str, float]
    reaction: Optional[PointwiseReaction] = None
    params: Any = None
    mode: str = "composed"

    def __post_init__(self):
        self.channels = [str(c) for c in self.channels]
        if len(self.channels) == 0:
            raise ConfigurationError("channels must be non-empty")
        if len(set(self.channels)) != len(self.channels):
            raise ConfigurationError("channels must be unique")
        if set(self.channels) != set(self.diffusion.keys()):
            raise ConfigurationError("diffusion keys must match channels")
        for c in self.channels:
            D = float(self.diffusion[c])
            if not np.isfinite(D) or D < 0:
                raise ConfigurationError(f"diffusion coefficient for '{c}' must be >= 0")
        if self.reaction is not None:
            unknown = [c for c in self.reaction.channels if c not in self.channels]
            if unknown:
                raise ConfigurationError(f"reaction uses unknown channel(s) {unknown}")
        if self.mode not in EVALUATION_MODES:
            raise ConfigurationError(f"mode must be one of {EVALUATION_MODES}, got '{self.mode}'")

        self.operators: Tuple[StencilOperator, ...] = build_operators(self.grid)
        self._D = [float(self.diffusion[c]) for c in self.channels]
        self._ch_index = {c: i for i, c in enumerate(self.channels)}
        self._reaction_index = (
            [self._ch_index[c] for c in self.reaction.channels] if self.reaction is not None else []
        )
        self._bundle_key = f"rhs:{id(self)}"

    # ------------------------------------------------------------------
    # shapes
    # ------------------------------------------------------------------
    @property
    def n_channels(self) -> int:
        return len(self.channels)

    @property
    def state_shape(self) -> Tuple[int, ...]:
        return (self.n_channels,) + self.grid.shape

    @property
    def size(self) -> int:
        """Length of the ODE state vector."""
        return self.n_channels * self.grid.size

    def with_mode(self, mode: str) -> "ReactionDiffusionSystem":
        return ReactionDiffusionSystem(
            grid=self.grid,
            channels=list(self.channels),
            diffusion=dict(self.diffusion),
            reaction=self.reaction,
            params=self.params,
            mode=mode,
        )

    def pack(self, state: FieldState) -> np.ndarray:
        """Copy a FieldState (channels in any order) into a new ODE vector."""
        state.assert_consistent(self.grid)
        y = np.empty(self.state_shape, dtype=float)
        for i, c in enumerate(self.channels):
            y[i] = state[c]
        return y.reshape(-1)

    def unpack(self, y: np.ndarray) -> FieldState:
        """FieldState holding a copy of the ODE vector."""
        return FieldState(list(self.channels), np.array(y, dtype=float).reshape(self.state_shape))

    # ------------------------------------------------------------------
    # scratch
    # ------------------------------------------------------------------
    def _make_scratch(self, ws: Workspace) -> _Scratch:
        shape = self.grid.shape
        react = ws.get("rhs.react", self.state_shape)
        n_scratch = self.reaction.n_scratch if self.reaction is not None else 0
        react_scratch_buf = ws.get("rhs.react_scratch", (n_scratch,) + shape)
        s = _Scratch(
            acc=ws.get("rhs.acc", shape),
            work=ws.get("rhs.work", shape),
            react=react,
            react_out={c: react[self._ch_index[c]] for c in (self.reaction.channels if self.reaction else ())},
            react_scratch=tuple(react_scratch_buf[k] for k in range(n_scratch)),
        )
        if self.mode == "loop" and self.reaction is not None:
            pin = ws.get("rhs.point_in", (self.reaction.n_channels, 1))
            pout = ws.get("rhs.point_out", (self.reaction.n_channels, 1))
            pscr = ws.get("rhs.point_scratch", (n_scratch, 1))
            s.point_in = {c: pin[k] for k, c in enumerate(self.reaction.channels)}
            s.point_out = {c: pout[k] for k, c in enumerate(self.reaction.channels)}
            s.point_scratch = tuple(pscr[k] for k in range(n_scratch))
        return s

    # ------------------------------------------------------------------
    # evaluation
    # ------------------------------------------------------------------
    def evaluate(self, t: float, y: np.ndarray, out: np.ndarray, workspace: Optional[Workspace] = None) -> None:
        """
        out <- d y / dt at time t.

        `y` and `out` are flat ODE vectors or (n_channels, *grid.shape) arrays.
        `out` is written exclusively and must not share memory with `y`.
        Scratch comes from `workspace` (one per run); after the first call
        nothing is allocated. Without a workspace every call builds fresh
        scratch, so concurrent callers never share buffers.
        """
        if np.may_share_memory(y, out):
            raise ValueError("out must not share memory with y")
        Y = y.reshape(self.state_shape)
        OUT = out.reshape(self.state_shape)
        ws = Workspace() if workspace is None else workspace
        s = ws.bundle(self._bundle_key, self._make_scratch)

        if self.mode == "composed":
            self._evaluate_composed(Y, OUT, s)
        else:
            self._evaluate_loop(Y, OUT, s)

    def __call__(self, t: float, y: np.ndarray) -> np.ndarray:
        """Allocating convenience form, e.g. for scipy.integrate.solve_ivp."""
        y = np.asarray(y, dtype=float)
        out = np.empty_like(y)
        self.evaluate(t, y, out)
        return out

    def _evaluate_composed(self, Y: np.ndarray, OUT: np.ndarray, s: _Scratch) -> None:
        for i, D in enumerate(self._D):
            o = OUT[i]
            if D == 0.0:
                o.fill(0.0)
                continue
            apply_laplacian(self.operators, Y[i], o, s.acc, s.work)
            np.multiply(o, D, out=o)

        if self.reaction is None:
            return
        fields = {c: Y[i] for c, i in zip(self.reaction.channels, self._reaction_index)}
        self.reaction.evaluate(fields, self.params, s.react_out, s.react_scratch)
        for c, i in zip(self.reaction.channels, self._reaction_index):
            np.add(OUT[i], s.react_out[c], out=OUT[i])

    # ------------------------------------------------------------------
    # devectorised loop mode
    # ------------------------------------------------------------------
    @cached_property
    def _plan(self) -> PointPlan:
        return _point_plan(self.grid)

    @cached_property
    def _axis_rows(self) -> Tuple[Tuple[StencilRow, ...], ...]:
        return tuple(op.rows() for op in self.operators)

    @cached_property
    def _strides(self) -> Tuple[int, ...]:
        shape = self.grid.shape
        return tuple(int(np.prod(shape[k + 1:])) for k in range(len(shape)))

    def _boundary_point(self, u: np.ndarray, flat: int, idx: Tuple[int, ...]) -> float:
        # each axis closes its own ghost point; at corners the axis
        # contributions are summed, never substituted
        total = 0.0
        for k, op in enumerate(self.operators):
            i = idx[k]
            row = self._axis_rows[k][i]
            st = self._strides[k]
            base = flat - i * st
            val = row.diag * u[flat]
            for j, coef in row.neighbours:
                val += coef * u[base + j * st]
            total += (val + row.source) * op.inv_dx2
        return total

    def _evaluate_loop(self, Y: np.ndarray, OUT: np.ndarray, s: _Scratch) -> None:
        nc = self.n_channels
        Yf = Y.reshape(nc, -1)
        OUTf = OUT.reshape(nc, -1)
        plan = self._plan
        steps = [(st, op.inv_dx2) for st, op in zip(self._strides, self.operators)]

        for ch, D in enumerate(self._D):
            u = Yf[ch]
            o = OUTf[ch]
            if D == 0.0:
                o.fill(0.0)
                continue

            for flat in plan.interior:
                c = u[flat]
                acc = 0.0
                for st, inv in steps:
                    acc += (u[flat - st] - 2.0 * c + u[flat + st]) * inv
                o[flat] = D * acc

            for flat, idx in plan.edges:
                o[flat] = D * self._boundary_point(u, flat, idx)

            for flat, idx in plan.corners:
                o[flat] = D * self._boundary_point(u, flat, idx)

        if self.reaction is None:
            return
        rch = list(zip(self.reaction.channels, self._reaction_index))
        for flat in range(self.grid.size):
            for c, i in rch:
                s.point_in[c][0] = Yf[i, flat]
            self.reaction.evaluate(s.point_in, self.params, s.point_out, s.point_scratch)
            for c, i in rch:
                OUTf[i, flat] += s.point_out[c][0]

    # ------------------------------------------------------------------
    # structure
    # ------------------------------------------------------------------
    def laplacian_diagonal(self) -> np.ndarray:
        """Diagonal of the diffusion part of the Jacobian, shape (n_channels, *grid.shape)."""
        diag = laplacian_diagonal(self.grid)
        return np.stack([D * diag for D in self._D], axis=0)

    def jacobian_sparsity(self) -> sp.csr_matrix:
        """
        Sparsity pattern of d rhs / d y on the flat state vector.

        Diffusion couples neighbours within a channel; the reaction couples
        channels at the same point only.
        """
        n = self.grid.size
        L = laplacian_matrix(self.grid)
        L.data[:] = 1.0
        active = sp.diags(np.array([1.0 if D != 0.0 else 0.0 for D in self._D]), 0)
        coupling = np.eye(self.n_channels)
        for a in self._reaction_index:
            for b in self._reaction_index:
                coupling[a, b] = 1.0
        pattern = sp.kron(active, L) + sp.kron(sp.csr_matrix(coupling), sp.identity(n))
        pattern = pattern.tocsr()
        pattern.eliminate_zeros()
        pattern.data[:] = 1.0
        return pattern
