from __future__ import annotations
from typing import Any, Callable, Dict, Tuple

import numpy as np


class Workspace:
    """
    Scratch buffers exclusively owned by one run.

    Buffers are requested by name; the first request allocates, later
    requests return the same array. `n_allocations` counts allocations so
    that callers can check that a run stops allocating after warm-up.
    """

    def __init__(self, dtype=float):
        self.dtype = np.dtype(dtype)
        self._buffers: Dict[str, np.ndarray] = {}
        self._bundles: Dict[str, Any] = {}
        self.n_allocations = 0

    def get(self, name: str, shape: Tuple[int, ...]) -> np.ndarray:
        shape = tuple(int(s) for s in shape)
        buf = self._buffers.get(name)
        if buf is None or buf.shape != shape:
            buf = np.zeros(shape, dtype=self.dtype)
            self._buffers[name] = buf
            self.n_allocations += 1
        return buf

    def bundle(self, key: str, factory: Callable[["Workspace"], Any]) -> Any:
        """
        Memoised object built from this workspace's buffers (views, dicts of
        views), so hot loops can fetch everything with one lookup.
        """
        obj = self._bundles.get(key)
        if obj is None:
            obj = factory(self)
            self._bundles[key] = obj
        return obj

    def __contains__(self, name: str) -> bool:
        return name in self._buffers

    def __len__(self) -> int:
        return len(self._buffers)

    @property
    def nbytes(self) -> int:
        return int(sum(b.nbytes for b in self._buffers.values()))

    def names(self) -> list[str]:
        return sorted(self._buffers)
