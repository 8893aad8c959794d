from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
import logging
import threading
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np
from tqdm.auto import tqdm

from mol_engine.config import MethodLike, SolverMethod, SolverOptions, Tolerances, as_method
from mol_engine.errors import ConfigurationError, NumericalDivergence, _RunFailure
from mol_engine.pde import BDFStepper, DormandPrinceStepper, ReactionDiffusionSystem
from mol_engine.results import TrajectoryResults
from mol_engine.state import FieldState, Workspace

logger = logging.getLogger(__name__)

StateLike = Union[FieldState, np.ndarray]
Sample = Tuple[float, FieldState]


class RunStatus(str, Enum):
    INITIALIZING = "initializing"
    STEPPING = "stepping"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class IntegratorState:
    """
    Live state of one run.

    `y` is the stepper's own buffer (flat ODE vector); copy it to keep it.
    """
    t: float
    y: Optional[np.ndarray] = None
    h: float = 0.0
    error_norm: float = 0.0
    stiff: bool = False
    method: SolverMethod = SolverMethod.EXPLICIT
    status: RunStatus = RunStatus.INITIALIZING
    n_steps: int = 0
    n_rejected: int = 0
    nfev: int = 0
    switch_time: Optional[float] = None
    workspace: Optional[Workspace] = field(default=None, repr=False)

    def stats(self) -> Dict[str, Any]:
        return {
            "method": self.method.value,
            "n_steps": int(self.n_steps),
            "n_rejected": int(self.n_rejected),
            "nfev": int(self.nfev),
            "stiff": bool(self.stiff),
            "switch_time": None if self.switch_time is None else float(self.switch_time),
            "final_step": float(self.h),
        }


# ------------------------------------------------------------------
# argument checking
# ------------------------------------------------------------------
def _initial_vector(system: ReactionDiffusionSystem, initial_state: StateLike) -> np.ndarray:
    if isinstance(initial_state, FieldState):
        missing = [c for c in system.channels if c not in initial_state]
        if missing:
            raise ConfigurationError(f"initial state lacks channel(s) {missing}")
        return system.pack(initial_state)
    y0 = np.array(initial_state, dtype=float)
    if y0.size != system.size:
        raise ConfigurationError(
            f"initial state has {y0.size} values, system expects {system.size} {system.state_shape}"
        )
    return y0.reshape(-1)


def _time_grid(t_span: Sequence[float], save_points: Optional[Sequence[float]]) -> Tuple[float, float, Optional[np.ndarray]]:
    if len(t_span) != 2:
        raise ConfigurationError("t_span must be (t0, t1)")
    t0, t1 = float(t_span[0]), float(t_span[1])
    if not (np.isfinite(t0) and np.isfinite(t1)) or t1 <= t0:
        raise ConfigurationError(f"t_span must satisfy t0 < t1, got ({t0}, {t1})")
    if save_points is None:
        return t0, t1, None
    pts = np.asarray(save_points, dtype=float).reshape(-1)
    if pts.size == 0:
        raise ConfigurationError("save_points must be non-empty")
    if np.any(np.diff(pts) <= 0):
        raise ConfigurationError("save_points must be strictly increasing")
    if pts[0] < t0 or pts[-1] > t1:
        raise ConfigurationError(f"save_points must lie in [{t0}, {t1}]")
    return t0, t1, pts


# ------------------------------------------------------------------
# the driver
# ------------------------------------------------------------------
def _drive(
    system: ReactionDiffusionSystem,
    y0: np.ndarray,
    t0: float,
    t1: float,
    save_points: Optional[np.ndarray],
    method: SolverMethod,
    tol: Tolerances,
    options: SolverOptions,
    stop_event: Optional[threading.Event],
    progress: bool,
    run_state: IntegratorState,
) -> Iterator[Sample]:
    ws = Workspace()
    run_state.workspace = ws

    def fun(t: float, y: np.ndarray, out: np.ndarray) -> None:
        system.evaluate(t, y, out, ws)

    def snapshot(stepper) -> Sample:
        return float(stepper.t), system.unpack(stepper.y)

    logger.info(
        "integrate: method=%s, %d unknowns, t in [%g, %g], rtol=%g, atol=%g",
        method.value, y0.size, t0, t1, tol.rtol, tol.atol,
    )
    interval = t1 - t0
    try:
        if method is SolverMethod.IMPLICIT:
            stepper = BDFStepper(
                fun, t0, y0, tol, options, ws, interval,
                jacobian_diagonal=system.laplacian_diagonal(),
            )
            run_state.method = SolverMethod.IMPLICIT
            run_state.stiff = True
        else:
            stepper = DormandPrinceStepper(fun, t0, y0, tol, options, ws, interval)
            run_state.method = SolverMethod.EXPLICIT
    except _RunFailure as err:
        run_state.status = RunStatus.FAILED
        if isinstance(err.last_state, np.ndarray):
            err.last_state = system.unpack(err.last_state)
        raise

    run_state.t = t0
    run_state.y = stepper.y
    run_state.h = stepper.h_abs
    run_state.status = RunStatus.STEPPING

    targets = [t1] if save_points is None else [float(p) for p in save_points]
    idx = 0
    if save_points is None or targets[0] == t0:
        yield snapshot(stepper)
        if save_points is not None:
            idx = 1

    retired_rejected = 0
    retired_nfev = 0
    bar = tqdm(total=interval, disable=not progress, desc="MOL integrate", unit="t", dynamic_ncols=True)
    try:
        while idx < len(targets):
            if stop_event is not None and stop_event.is_set():
                run_state.status = RunStatus.CANCELLED
                logger.info("integrate: cancelled at t=%g after %d steps", stepper.t, run_state.n_steps)
                return
            if options.max_steps is not None and run_state.n_steps >= options.max_steps:
                raise NumericalDivergence(
                    f"max_steps={options.max_steps} reached at t={stepper.t:g}",
                    last_time=stepper.t,
                    last_state=stepper.y.copy(),
                )

            t_prev = stepper.t
            target = targets[idx]
            stepper.step(target)

            run_state.n_steps += 1
            run_state.t = stepper.t
            run_state.h = stepper.h_abs
            run_state.error_norm = stepper.last_error_norm
            run_state.n_rejected = retired_rejected + stepper.n_rejected
            run_state.nfev = retired_nfev + stepper.nfev
            bar.update(stepper.t - t_prev)

            if (
                method is SolverMethod.AUTO
                and run_state.method is SolverMethod.EXPLICIT
                and stepper.stiffness_detected()
            ):
                logger.info(
                    "integrate: stiffness detected at t=%g (%s); switching to implicit BDF",
                    stepper.t, stepper.stiffness_reason,
                )
                implicit = BDFStepper(
                    fun, stepper.t, stepper.y, tol, options, ws, t1 - stepper.t,
                    jacobian_diagonal=system.laplacian_diagonal(),
                    first_step=stepper.h_abs,
                )
                retired_rejected += stepper.n_rejected
                retired_nfev += stepper.nfev
                stepper = implicit
                run_state.method = SolverMethod.IMPLICIT
                run_state.stiff = True
                run_state.switch_time = stepper.t
                run_state.y = stepper.y

            if save_points is None:
                yield snapshot(stepper)
                if stepper.t >= t1:
                    idx += 1
            elif stepper.t >= target:
                yield snapshot(stepper)
                idx += 1

        run_state.status = RunStatus.COMPLETED
        logger.info(
            "integrate: completed t=%g in %d steps (%d rejected), final method=%s",
            stepper.t, run_state.n_steps, run_state.n_rejected, run_state.method.value,
        )
    except _RunFailure as err:
        run_state.status = RunStatus.FAILED
        if isinstance(err.last_state, np.ndarray):
            err.last_state = system.unpack(err.last_state)
        logger.info("integrate: failed at t=%s: %s", err.last_time, err)
        raise
    finally:
        run_state.n_rejected = retired_rejected + stepper.n_rejected
        run_state.nfev = retired_nfev + stepper.nfev
        bar.close()


class Trajectory:
    """
    Lazy sequence of (t, FieldState) samples.

    Every iteration re-runs the integration from the initial state; with
    cache=True the first complete run is stored and replayed. Emitted states
    are independent copies.
    """

    def __init__(self, runner: Callable[[IntegratorState], Iterator[Sample]], system: ReactionDiffusionSystem, t0: float, cache: bool = False):
        self._runner = runner
        self.system = system
        self._t0 = t0
        self.cache = cache
        self._samples: Optional[List[Sample]] = None
        self.run_state: Optional[IntegratorState] = None

    def __iter__(self) -> Iterator[Sample]:
        if self._samples is not None:
            for t, s in self._samples:
                yield t, s.copy()
            return

        self.run_state = IntegratorState(t=self._t0)
        stored: List[Sample] = []
        for t, s in self._runner(self.run_state):
            if self.cache:
                stored.append((t, s.copy()))
            yield t, s
        if self.cache and self.run_state.status is RunStatus.COMPLETED:
            self._samples = stored

    @property
    def status(self) -> Optional[RunStatus]:
        return None if self.run_state is None else self.run_state.status

    def _results(self, times: List[float], states: List[FieldState], status: RunStatus) -> TrajectoryResults:
        grid = self.system.grid
        if states:
            data = np.stack([s.data for s in states], axis=-1)
        else:
            data = np.zeros(self.system.state_shape + (0,), dtype=float)
        return TrajectoryResults(
            time=np.asarray(times, dtype=float),
            data=data,
            grid=grid,
            channels=list(self.system.channels),
            status=status.value,
            stats=self.run_state.stats() if self.run_state is not None else {},
        )

    def collect(self) -> TrajectoryResults:
        """
        Run to the end and stack the samples.

        On failure the typed error is re-raised with the samples emitted so
        far attached as `err.partial`.
        """
        times: List[float] = []
        states: List[FieldState] = []
        try:
            for t, s in self:
                times.append(t)
                states.append(s)
        except _RunFailure as err:
            err.partial = self._results(times, states, RunStatus.FAILED)
            raise
        status = self.run_state.status if self.run_state is not None else RunStatus.COMPLETED
        return self._results(times, states, status)


def integrate(
    system: ReactionDiffusionSystem,
    initial_state: StateLike,
    t_span: Sequence[float],
    method: MethodLike = "auto",
    tolerances: Optional[Tolerances] = None,
    save_points: Optional[Sequence[float]] = None,
    options: Optional[SolverOptions] = None,
    *,
    stop_event: Optional[threading.Event] = None,
    progress: bool = False,
    cache: bool = False,
) -> Trajectory:
    """
    Integrate a ReactionDiffusionSystem over t_span.

    Parameters
    ----------
    system : ReactionDiffusionSystem
    initial_state : FieldState, or array of shape (n_channels, *grid.shape) / flat
    t_span : (t0, t1) with t0 < t1
    method : "explicit" (Dormand-Prince 5(4)), "implicit" (BDF, Newton-Krylov)
        or "auto" (explicit, switching once to implicit when stiffness shows)
    tolerances : Tolerances, default Tolerances()
    save_points : increasing times in [t0, t1]; None samples every accepted step
    options : SolverOptions, default SolverOptions()
    stop_event : threading.Event checked before every step
    progress : show a tqdm bar over simulated time
    cache : replay the first complete run on later iterations

    Configuration problems raise ConfigurationError here, before any stepping.
    """
    if not isinstance(system, ReactionDiffusionSystem):
        raise ConfigurationError("system must be a ReactionDiffusionSystem")
    method = as_method(method)
    tol = Tolerances() if tolerances is None else tolerances
    opts = SolverOptions() if options is None else options
    t0, t1, pts = _time_grid(t_span, save_points)
    y0 = _initial_vector(system, initial_state)

    def runner(run_state: IntegratorState) -> Iterator[Sample]:
        return _drive(system, y0, t0, t1, pts, method, tol, opts, stop_event, progress, run_state)

    return Trajectory(runner, system, t0, cache=cache)
