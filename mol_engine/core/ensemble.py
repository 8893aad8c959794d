from __future__ import annotations
import logging
import os
from typing import Callable, List, Optional, Sequence, Union

import numpy as np
from joblib import Parallel, delayed
from tqdm.auto import tqdm

from mol_engine.config import MethodLike, SolverOptions, Tolerances
from mol_engine.errors import ConfigurationError
from mol_engine.pde import ReactionDiffusionSystem
from mol_engine.results import TrajectoryResults
from .engine import StateLike, integrate

logger = logging.getLogger(__name__)

InitialFactory = Callable[[np.random.Generator], StateLike]
# signature: make_initial(rng) -> initial state of one run


def integrate_ensemble(
    system: ReactionDiffusionSystem,
    initial_states: Union[Sequence[StateLike], InitialFactory],
    t_span: Sequence[float],
    *,
    repeats: Optional[int] = None,
    seed: int = 0,
    method: MethodLike = "auto",
    tolerances: Optional[Tolerances] = None,
    save_points: Optional[Sequence[float]] = None,
    options: Optional[SolverOptions] = None,
    n_jobs: int = 1,
    progress: bool = True,
    reduce: Optional[str] = None,
) -> Union[List[TrajectoryResults], TrajectoryResults]:
    """
    Run independent trajectories of one system.

    initial_states is either a sequence of initial states (one run each) or
    a factory called with np.random.default_rng(seed + r) for r in
    range(repeats). Runs share only the immutable grid and operators; each
    has its own workspace. n_jobs > 1 (or -1) uses joblib thread workers.

    reduce=None returns the list of results in run order; reduce="mean"
    returns their pointwise mean (save_points required so the time vectors
    agree).
    """
    if reduce not in (None, "mean"):
        raise ConfigurationError(f"reduce must be None or 'mean', got '{reduce}'")
    if reduce == "mean" and save_points is None:
        raise ConfigurationError("reduce='mean' needs explicit save_points")

    if callable(initial_states):
        if repeats is None or repeats <= 0:
            raise ConfigurationError("repeats must be > 0 when initial_states is a factory")
        states = [initial_states(np.random.default_rng(seed + r)) for r in range(repeats)]
    else:
        states = list(initial_states)
        if len(states) == 0:
            raise ConfigurationError("initial_states must be non-empty")

    # validate every run before launching any of them
    trajectories = [
        integrate(system, s, t_span, method, tolerances, save_points, options)
        for s in states
    ]

    def one(r: int) -> TrajectoryResults:
        return trajectories[r].collect()

    tasks = (delayed(one)(r) for r in range(len(trajectories)))
    if n_jobs == 1:
        results_iter = (one(r) for r in range(len(trajectories)))
    else:
        n_workers = (os.cpu_count() or 1) if n_jobs == -1 else n_jobs
        logger.info("Running %d trajectories on %d thread(s)", len(trajectories), n_workers)
        results_iter = Parallel(n_jobs=n_jobs, prefer="threads", return_as="generator")(tasks)

    results_iter = tqdm(
        results_iter,
        total=len(trajectories),
        desc="MOL ensemble",
        unit="run",
        dynamic_ncols=True,
        disable=not progress,
    )
    results = list(results_iter)

    if reduce is None:
        return results

    first = results[0]
    data_sum = first.data.astype(float)
    for res in results[1:]:
        data_sum += res.data
    return TrajectoryResults(
        time=first.time,
        data=data_sum / len(results),
        grid=first.grid,
        channels=list(first.channels),
        status=first.status,
        stats={"repeats": len(results)},
    )
