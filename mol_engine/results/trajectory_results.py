from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List

import numpy as np

from mol_engine.domain import Grid
from mol_engine.state import FieldState


@dataclass(frozen=True)
class TrajectoryResults:
    """
    Sampled trajectory of a method-of-lines run.

    Shapes
    ------
    time : (n_steps,)
    data : (n_channels, *grid.shape, n_steps)
    """
    time: np.ndarray
    data: np.ndarray
    grid: Grid
    channels: List[str]
    status: str = "completed"
    stats: Dict[str, Any] = field(default_factory=dict)

    @property
    def n_channels(self) -> int:
        return int(self.data.shape[0])

    @property
    def n_steps(self) -> int:
        return int(self.time.shape[0])

    def channel(self, name: str) -> np.ndarray:
        """Time series of one channel, shape (*grid.shape, n_steps)."""
        try:
            return self.data[self.channels.index(name)]
        except ValueError:
            raise KeyError(f"Unknown channel '{name}'. Known: {self.channels}") from None

    def state_at(self, i: int) -> FieldState:
        return FieldState(list(self.channels), self.data[..., i].copy())

    def final_state(self) -> FieldState:
        if self.n_steps == 0:
            raise IndexError("trajectory has no samples")
        return self.state_at(-1)

    def mass(self) -> np.ndarray:
        """
        Weighted integral of every channel at every sample, shape (n_channels, n_steps).
        Conserved under no-flux boundaries without reactions.
        """
        w = self.grid.quadrature_weights() * self.grid.cell_volume
        axes = tuple(range(1, 1 + self.grid.ndim))
        return np.sum(self.data * w[None, ..., None], axis=axes)
