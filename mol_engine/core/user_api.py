from __future__ import annotations

import numbers
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import numpy as np

from ..config import MethodLike, SolverOptions, Tolerances
from ..domain import Grid
from ..domain.grid import BoundarySpec
from ..errors import ConfigurationError
from ..pde import ReactionDiffusionSystem
from ..reactions import PointwiseReaction, describe_reaction
from ..results import TrajectoryResults
from ..state import FieldState
from .engine import integrate
from .ensemble import integrate_ensemble


# User-facing reaction terms:
#   lambda U, V, p: (dU, dV)
UserReactionFn = Callable[..., Union[Sequence[np.ndarray], np.ndarray]]


@dataclass
class ReactionDiffusionModel:
    """
    User-friendly wrapper around ReactionDiffusionSystem and integrate().

    Users only specify:
      - channels
      - grid / boundaries / diffusion
      - reaction terms (a lambda, or a PointwiseReaction)
      - numpy initial conditions

    Example:
        m = (ReactionDiffusionModel(["u", "v"])
             .grid(shape=64, length=1.0)
             .boundary("no-flux")
             .diffusion(u=0.001, v=0.1)
             .reaction_terms(lambda U, V, p: (p["a"] - U, U - V))
             .build(params={"a": 1.0}))
        res = m.run({"u": u0, "v": v0}, t_span=(0, 1), save_points=np.linspace(0, 1, 11))
    """

    channels: List[str]

    def __post_init__(self):
        if not self.channels:
            raise ConfigurationError("channels must be non-empty")
        if len(set(self.channels)) != len(self.channels):
            raise ConfigurationError("channels must be unique")
        self.channels = [str(c) for c in self.channels]

        self._shape: Optional[Sequence[int]] = None
        self._length: Any = 1.0
        self._origin: Optional[Sequence[float]] = None
        self._boundaries: BoundarySpec = "no-flux"
        self._diffusion: Optional[Dict[str, float]] = None
        self._reaction: Optional[PointwiseReaction] = None

        self._system: Optional[ReactionDiffusionSystem] = None
        self._params: Any = None

    # ------------------------------------------------------------------
    # configuration
    # ------------------------------------------------------------------
    def grid(
        self,
        *,
        shape: Union[int, Sequence[int]],
        length: Union[float, Sequence[float]] = 1.0,
        origin: Optional[Sequence[float]] = None,
    ) -> "ReactionDiffusionModel":
        self._shape = shape
        self._length = length
        self._origin = origin
        return self

    def boundary(self, boundaries: BoundarySpec) -> "ReactionDiffusionModel":
        """One policy for every end, a (left, right) pair, or one entry per axis."""
        self._boundaries = boundaries
        return self

    def diffusion(self, **rates: float) -> "ReactionDiffusionModel":
        for c in self.channels:
            if c not in rates:
                raise ConfigurationError(f"Missing diffusion coefficient for channel '{c}'")
        self._diffusion = {c: float(rates[c]) for c in self.channels}
        return self

    def reaction_terms(self, fn: Union[UserReactionFn, PointwiseReaction]) -> "ReactionDiffusionModel":
        """
        Register the pointwise reaction.

        Example:
            m.reaction_terms(lambda U, V, p: (
                p["a"] * U**2 / V + p["ubar"] - p["alpha"] * U,
                p["a"] * U**2 - p["beta"] * V,
            ))
        """
        if isinstance(fn, PointwiseReaction):
            self._reaction = fn
        else:
            self._reaction = PointwiseReaction.from_function(self.channels, fn)
        return self

    # ------------------------------------------------------------------
    # build
    # ------------------------------------------------------------------
    def build(self, *, params: Any = None, mode: str = "composed") -> "ReactionDiffusionModel":
        if self._shape is None:
            raise ConfigurationError("grid() not set")
        if self._diffusion is None:
            raise ConfigurationError("diffusion() not set")

        grid = Grid.from_length(self._shape, self._length, self._boundaries, self._origin)
        self._params = params
        self._system = ReactionDiffusionSystem(
            grid=grid,
            channels=list(self.channels),
            diffusion=self._diffusion,
            reaction=self._reaction,
            params=params,
            mode=mode,
        )
        return self

    # ------------------------------------------------------------------
    # running
    # ------------------------------------------------------------------
    def _initial_state(self, initial: Union[FieldState, Dict[str, np.ndarray], np.ndarray]) -> FieldState:
        grid = self.system.grid
        if isinstance(initial, FieldState):
            state = initial
        elif isinstance(initial, dict):
            state = FieldState.from_fields(
                {c: np.broadcast_to(np.asarray(initial[c], dtype=float), grid.shape) for c in initial},
                channels=self.channels,
            )
        else:
            arr = np.asarray(initial, dtype=float)
            if arr.shape != (len(self.channels),) + grid.shape:
                raise ConfigurationError("initial state has wrong shape")
            state = FieldState(list(self.channels), arr)
        state.assert_consistent(grid)
        return state

    def run(
        self,
        initial: Union[FieldState, Dict[str, np.ndarray], np.ndarray],
        *,
        t_span: Sequence[float],
        save_points: Optional[Sequence[float]] = None,
        method: MethodLike = "auto",
        tolerances: Optional[Tolerances] = None,
        options: Optional[SolverOptions] = None,
        progress: bool = False,
    ) -> TrajectoryResults:
        traj = integrate(
            self.system,
            self._initial_state(initial),
            t_span,
            method=method,
            tolerances=tolerances,
            save_points=save_points,
            options=options,
            progress=progress,
        )
        return traj.collect()

    def run_ensemble(
        self,
        make_initial: Callable[[np.random.Generator], Any],
        *,
        t_span: Sequence[float],
        save_points: Sequence[float],
        repeats: int,
        seed: int = 0,
        method: MethodLike = "auto",
        tolerances: Optional[Tolerances] = None,
        options: Optional[SolverOptions] = None,
        n_jobs: int = 1,
        progress: bool = True,
        reduce: Optional[str] = "mean",
    ):
        """Independent runs from make_initial(rng); mean trajectory by default."""
        return integrate_ensemble(
            self.system,
            lambda rng: self._initial_state(make_initial(rng)),
            t_span,
            repeats=int(repeats),
            seed=int(seed),
            method=method,
            tolerances=tolerances,
            save_points=save_points,
            options=options,
            n_jobs=int(n_jobs),
            progress=bool(progress),
            reduce=reduce,
        )

    def metadata(self) -> dict:
        system = self.system
        grid = system.grid
        params = self._params
        if isinstance(params, dict):
            params = {str(k): float(v) if isinstance(v, numbers.Real) else repr(v) for k, v in params.items()}
        else:
            params = None if params is None else repr(params)

        return {
            "model": "Reaction-diffusion (method of lines)",
            "channels": list(self.channels),
            "grid": grid.to_dict(),
            "diffusion": dict(self._diffusion or {}),
            "reaction": describe_reaction(self._reaction),
            "params": params,
            "mode": system.mode,
        }

    # ------------------------------------------------------------------
    # convenience
    # ------------------------------------------------------------------
    @property
    def system(self) -> ReactionDiffusionSystem:
        if self._system is None:
            raise RuntimeError("Model not built yet. Call build(params=...) first.")
        return self._system
