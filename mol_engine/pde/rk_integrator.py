from __future__ import annotations
import logging
import math
from typing import Optional

import numpy as np

from mol_engine.config import SolverOptions, Tolerances
from mol_engine.errors import NumericalDivergence
from mol_engine.state import Workspace
from .step_control import InplaceRHS, all_finite, error_scale, min_step_at, rms_norm, select_initial_step

logger = logging.getLogger(__name__)

# Dormand-Prince 5(4) tableau
C = np.array([0, 1 / 5, 3 / 10, 4 / 5, 8 / 9, 1])
A = np.array([
    [0, 0, 0, 0, 0],
    [1 / 5, 0, 0, 0, 0],
    [3 / 40, 9 / 40, 0, 0, 0],
    [44 / 45, -56 / 15, 32 / 9, 0, 0],
    [19372 / 6561, -25360 / 2187, 64448 / 6561, -212 / 729, 0],
    [9017 / 3168, -355 / 33, 46732 / 5247, 49 / 176, -5103 / 18656],
])
B = np.array([35 / 384, 0, 500 / 1113, 125 / 192, -2187 / 6784, 11 / 84])
E = np.array([-71 / 57600, 0, 71 / 16695, -71 / 1920, 17253 / 339200, -22 / 525, 1 / 40])

N_STAGES = 6
# |h * lambda| beyond which DOPRI5 is outside its stability region (Hairer & Wanner)
STIFF_BOUND = 3.25


class DormandPrinceStepper:
    """
    Adaptive explicit Runge-Kutta 5(4) with FSAL and embedded error estimate.

    All stage vectors live in `workspace`; `step` allocates nothing.

    Besides stepping it watches for stiffness two ways:
      * Hairer's test: h * |lambda| estimated from the last two stages stays
        above the stability bound for `stiffness_window` accepted steps;
      * `stiffness_patience` consecutive rejections that each shrink h by
        more than `shrink_threshold`.
    """
    order = 5
    error_estimator_order = 4

    def __init__(
        self,
        fun: InplaceRHS,
        t0: float,
        y0: np.ndarray,
        tol: Tolerances,
        options: SolverOptions,
        workspace: Workspace,
        interval: float,
        first_step: Optional[float] = None,
    ):
        self.fun = fun
        self.tol = tol
        self.options = options
        n = y0.size
        self.n = n

        self.K = workspace.get("dopri.K", (N_STAGES + 1, n))
        self.y = workspace.get("dopri.y", (n,))
        self.y_new = workspace.get("dopri.y_new", (n,))
        self.y_stage = workspace.get("dopri.y_stage", (n,))
        self.err = workspace.get("dopri.err", (n,))
        self.scale = workspace.get("dopri.scale", (n,))
        self.tmp = workspace.get("dopri.tmp", (n,))

        self.t = float(t0)
        np.copyto(self.y, y0.reshape(-1))
        self._eval(self.t, self.y, self.K[0])
        if not all_finite(self.K[0]):
            raise NumericalDivergence(
                f"right-hand side is not finite at t={self.t:g}",
                last_time=self.t,
                last_state=self.y.copy(),
            )

        h0 = first_step if first_step is not None else options.first_step
        if h0 is None:
            h0 = select_initial_step(
                self._eval, self.t, self.y, self.K[0], interval, self.error_estimator_order, tol.rtol, tol.atol
            )
        self.h_abs = min(float(h0), options.max_step)
        self.last_error_norm = 0.0

        self.nfev = 1
        self.n_accepted = 0
        self.n_rejected = 0

        # stiffness bookkeeping
        self._stiff_count = 0
        self._nonstiff_count = 0
        self._severe_shrinks = 0
        self.stiffness_reason: Optional[str] = None

    def _eval(self, t: float, y: np.ndarray, out: np.ndarray) -> None:
        self.fun(t, y, out)

    # ------------------------------------------------------------------
    def _attempt(self, h: float) -> float:
        """One trial step of size h from (t, y). Returns the error norm."""
        t, y, K, tmp = self.t, self.y, self.K, self.tmp
        for s in range(1, N_STAGES):
            np.dot(A[s, :s], K[:s], out=tmp)
            np.multiply(tmp, h, out=tmp)
            np.add(y, tmp, out=self.y_stage)
            self._eval(t + C[s] * h, self.y_stage, K[s])

        np.dot(B, K[:N_STAGES], out=tmp)
        np.multiply(tmp, h, out=tmp)
        np.add(y, tmp, out=self.y_new)
        self._eval(t + h, self.y_new, K[N_STAGES])
        self.nfev += N_STAGES

        np.dot(E, K, out=self.err)
        np.multiply(self.err, h, out=self.err)
        error_scale(y, self.y_new, self.tol.rtol, self.tol.atol, self.scale, tmp)
        norm = rms_norm(self.err, self.scale, tmp)
        if not math.isfinite(norm) or not all_finite(K[N_STAGES]):
            return math.inf
        return norm

    def _stiffness_test(self, h: float) -> None:
        np.subtract(self.K[N_STAGES], self.K[N_STAGES - 1], out=self.tmp)
        num = float(np.dot(self.tmp, self.tmp))
        np.subtract(self.y_new, self.y_stage, out=self.tmp)
        den = float(np.dot(self.tmp, self.tmp))
        if den <= 0.0:
            return
        h_lambda = h * math.sqrt(num / den)
        if h_lambda > STIFF_BOUND:
            self._nonstiff_count = 0
            self._stiff_count += 1
            if self._stiff_count >= self.options.stiffness_window and self.stiffness_reason is None:
                self.stiffness_reason = f"h*|lambda|={h_lambda:.3g} > {STIFF_BOUND} for {self._stiff_count} steps"
        else:
            self._nonstiff_count += 1
            if self._nonstiff_count >= 6:
                self._stiff_count = 0

    def stiffness_detected(self) -> bool:
        return self.stiffness_reason is not None

    # ------------------------------------------------------------------
    def step(self, t_target: float) -> None:
        """
        Advance by one accepted step without passing t_target.

        Raises NumericalDivergence when the step size collapses or
        `max_rejections` consecutive attempts are rejected.
        """
        opts = self.options
        exponent = -1.0 / (self.error_estimator_order + 1)
        h_abs = min(self.h_abs, opts.max_step)
        rejections = 0
        shrank_severely = False

        while True:
            min_step = min_step_at(self.t, opts.min_step)
            if h_abs < min_step:
                raise NumericalDivergence(
                    f"step size {h_abs:.3g} fell below {min_step:.3g} at t={self.t:g}",
                    last_time=self.t,
                    last_state=self.y.copy(),
                )

            remaining = t_target - self.t
            clipped = h_abs >= remaining
            h = remaining if clipped else h_abs
            t_new = t_target if clipped else self.t + h

            error_norm = self._attempt(h)

            if error_norm < 1.0:
                if error_norm == 0.0:
                    factor = opts.max_factor
                else:
                    factor = min(opts.max_factor, opts.safety * error_norm ** exponent)
                if rejections:
                    factor = min(1.0, factor)
                break

            factor = opts.min_factor if not math.isfinite(error_norm) else max(
                opts.min_factor, opts.safety * error_norm ** exponent
            )
            if factor < opts.shrink_threshold:
                shrank_severely = True
                self._severe_shrinks += 1
                if self._severe_shrinks >= opts.stiffness_patience and self.stiffness_reason is None:
                    self.stiffness_reason = f"{self._severe_shrinks} consecutive severe step shrinkages"
            h_abs = h * factor
            rejections += 1
            self.n_rejected += 1
            logger.debug("explicit step rejected at t=%g, err=%.3g, h -> %.3g", self.t, error_norm, h_abs)
            if rejections >= opts.max_rejections:
                raise NumericalDivergence(
                    f"{rejections} consecutive rejected steps at t={self.t:g}",
                    last_time=self.t,
                    last_state=self.y.copy(),
                )

        if not shrank_severely:
            self._severe_shrinks = 0
        self._stiffness_test(h)

        self.t = t_new
        np.copyto(self.y, self.y_new)
        np.copyto(self.K[0], self.K[N_STAGES])
        self.last_error_norm = error_norm
        self.n_accepted += 1
        # landing on a save point must not shrink the next proposal
        self.h_abs = max(h * factor, h_abs) if clipped else h * factor
