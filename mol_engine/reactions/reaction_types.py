from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple

import numpy as np

from mol_engine.errors import ConfigurationError


# In-place signature:
#   fn(fields, params, out, scratch) -> None
#   fields:  {"u": U, "v": V, ...} arrays (read only)
#   params:  opaque, forwarded unchanged from the system
#   out:     {"u": dU, "v": dV, ...} arrays to overwrite
#   scratch: tuple of n_scratch arrays with the field shape
InplaceReactionFn = Callable[[Mapping[str, np.ndarray], Any, Mapping[str, np.ndarray], Tuple[np.ndarray, ...]], None]

# Functional signature (allocates on every call):
#   fn(U, V, ..., params) -> (dU, dV, ...)
FunctionalReactionFn = Callable[..., Any]


@dataclass(frozen=True)
class PointwiseReaction:
    """
    Local reaction term of a reaction-diffusion system.

    The function sees the values of every channel at the same grid point
    and nothing else: it is applied elementwise over whole arrays, so any
    expression built from numpy ufuncs is pointwise by construction. It
    must never index neighbouring points.

    Only the in-place form keeps RHS evaluation free of allocations.
    """
    channels: Tuple[str, ...]
    fn: Callable[..., Any]
    n_scratch: int = 0
    inplace: bool = True
    label: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "channels", tuple(str(c) for c in self.channels))
        if len(self.channels) == 0:
            raise ConfigurationError("channels must be non-empty")
        if len(set(self.channels)) != len(self.channels):
            raise ConfigurationError("channels must be unique")
        if self.n_scratch < 0:
            raise ConfigurationError("n_scratch must be >= 0")

    @classmethod
    def from_function(cls, channels: Sequence[str], fn: FunctionalReactionFn, label: Optional[str] = None) -> "PointwiseReaction":
        """Wrap `lambda U, V, p: (dU, dV)` style functions."""
        return cls(channels=tuple(channels), fn=fn, n_scratch=0, inplace=False, label=label)

    @property
    def n_channels(self) -> int:
        return len(self.channels)

    def evaluate(
        self,
        fields: Mapping[str, np.ndarray],
        params: Any,
        out: Mapping[str, np.ndarray],
        scratch: Tuple[np.ndarray, ...] = (),
    ) -> None:
        if self.inplace:
            self.fn(fields, params, out, scratch)
            return

        result = self.fn(*[fields[c] for c in self.channels], params)
        if self.n_channels == 1 and not isinstance(result, (tuple, list)):
            parts = [result]
        else:
            parts = list(result)
        if len(parts) != self.n_channels:
            raise ValueError(
                f"reaction returned {len(parts)} terms for {self.n_channels} channels"
            )
        for c, part in zip(self.channels, parts):
            np.copyto(out[c], part)

    def evaluate_point(self, values: Sequence[float], params: Any) -> np.ndarray:
        """Reaction vector at a single grid point (diagnostic helper, allocates)."""
        fields = {c: np.array([float(v)]) for c, v in zip(self.channels, values)}
        out = {c: np.zeros(1) for c in self.channels}
        scratch = tuple(np.zeros(1) for _ in range(self.n_scratch))
        self.evaluate(fields, params, out, scratch)
        return np.array([out[c][0] for c in self.channels])


ReactionLike = Optional[PointwiseReaction]


def describe_reaction(reaction: ReactionLike) -> Dict[str, Any]:
    if reaction is None:
        return {"label": None, "channels": []}
    return {
        "label": reaction.label,
        "channels": list(reaction.channels),
        "inplace": bool(reaction.inplace),
        "n_scratch": int(reaction.n_scratch),
    }
