from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Iterator, Mapping, Optional, Sequence, Tuple

import numpy as np

from mol_engine.domain import Grid
from mol_engine.errors import ConfigurationError


@dataclass(eq=False)
class FieldState:
    """
    Multi-channel field container.

    Conventions
    ----------
    - data: (n_channels, *grid.shape) float array, C-contiguous
    - state["u"] is a view of data[channel index]
    """
    channels: Sequence[str]
    data: np.ndarray

    def __post_init__(self):
        self.channels = [str(c) for c in self.channels]
        if len(self.channels) == 0:
            raise ConfigurationError("channels must be non-empty")
        if len(set(self.channels)) != len(self.channels):
            raise ConfigurationError("channels must be unique")
        self.data = np.ascontiguousarray(self.data, dtype=float)
        if self.data.ndim < 2:
            raise ConfigurationError("data must have shape (n_channels, *grid_shape)")
        if self.data.shape[0] != len(self.channels):
            raise ConfigurationError(
                f"data has {self.data.shape[0]} channels, names given for {len(self.channels)}"
            )
        self._index = {c: i for i, c in enumerate(self.channels)}

    # ------------------------------------------------------------------
    # construction
    # ------------------------------------------------------------------
    @classmethod
    def from_fields(cls, fields: Mapping[str, np.ndarray], channels: Optional[Sequence[str]] = None) -> "FieldState":
        names = list(fields.keys()) if channels is None else list(channels)
        missing = [c for c in names if c not in fields]
        if missing:
            raise ConfigurationError(f"missing initial field(s) for {missing}")
        arrays = [np.asarray(fields[c], dtype=float) for c in names]
        shapes = {a.shape for a in arrays}
        if len(shapes) != 1:
            raise ConfigurationError(f"all channels must share one shape, got {sorted(shapes)}")
        return cls(names, np.stack(arrays, axis=0))

    @classmethod
    def zeros(cls, grid: Grid, channels: Sequence[str]) -> "FieldState":
        return cls(list(channels), np.zeros((len(channels),) + grid.shape, dtype=float))

    @classmethod
    def full(cls, grid: Grid, values: Mapping[str, float]) -> "FieldState":
        state = cls.zeros(grid, list(values.keys()))
        for c, v in values.items():
            state[c][...] = float(v)
        return state

    # ------------------------------------------------------------------
    # access
    # ------------------------------------------------------------------
    @property
    def n_channels(self) -> int:
        return int(self.data.shape[0])

    @property
    def shape(self) -> Tuple[int, ...]:
        """Shape of one channel (the grid shape)."""
        return tuple(self.data.shape[1:])

    def index(self, channel: str) -> int:
        try:
            return self._index[channel]
        except KeyError:
            raise KeyError(f"Unknown channel '{channel}'. Known: {self.channels}") from None

    def __getitem__(self, channel: str) -> np.ndarray:
        return self.data[self.index(channel)]

    def __setitem__(self, channel: str, value) -> None:
        self.data[self.index(channel)] = value

    def __iter__(self) -> Iterator[str]:
        return iter(self.channels)

    def __contains__(self, channel: object) -> bool:
        return channel in self._index

    def ravel(self) -> np.ndarray:
        """Flat view of all channels (the ODE state vector)."""
        return self.data.reshape(-1)

    def copy(self) -> "FieldState":
        return FieldState(list(self.channels), self.data.copy())

    def is_finite(self) -> bool:
        return bool(np.all(np.isfinite(self.data)))

    def assert_consistent(self, grid: Grid, channels: Optional[Sequence[str]] = None) -> None:
        if self.shape != grid.shape:
            raise ConfigurationError(f"state shape {self.shape} does not match grid {grid.shape}")
        if channels is not None and list(channels) != list(self.channels):
            raise ConfigurationError(f"state channels {self.channels} do not match {list(channels)}")
