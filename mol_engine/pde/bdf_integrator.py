from __future__ import annotations
import logging
import math
from typing import Optional

import numpy as np

from mol_engine.config import SolverOptions, Tolerances
from mol_engine.errors import NonconvergenceError, NumericalDivergence
from mol_engine.state import Workspace
from .krylov import GMRESSolver
from .step_control import EPS, InplaceRHS, all_finite, min_step_at, rms_norm, select_initial_step

logger = logging.getLogger(__name__)

MAX_ORDER = 5
ORDERS = np.arange(1, MAX_ORDER + 1)
GAMMA = np.hstack((0.0, np.cumsum(1.0 / ORDERS)))
ERROR_CONST = 1.0 / np.arange(1, MAX_ORDER + 2)


def compute_R(order: int, factor: float) -> np.ndarray:
    """Matrix that rescales backward differences when h -> factor * h."""
    I = np.arange(1, order + 1)[:, None]
    J = np.arange(1, order + 1)
    M = np.zeros((order + 1, order + 1))
    M[1:, 1:] = (I - 1 - factor * J) / I
    M[0] = 1
    return np.cumprod(M, axis=0)


_U = [compute_R(k, 1.0) for k in range(MAX_ORDER + 1)]


def change_D(D: np.ndarray, order: int, factor: float, tmp: np.ndarray) -> None:
    """Rescale the difference array in place for a step change by `factor`."""
    RU = compute_R(order, factor).dot(_U[order])
    np.dot(RU.T, D[:order + 1], out=tmp[:order + 1])
    D[:order + 1] = tmp[:order + 1]


class BDFStepper:
    """
    Variable-order (1..5), variable-step BDF in backward-difference form,
    with Newton-Krylov corrector iterations.

    The Newton matrix I - c J is never formed: GMRES only needs products
    (I - c J) v, and J v is a forward difference of the right-hand side
    around a reference state. The reference is refreshed when Newton fails
    to converge with a stale one. A Jacobi preconditioner 1 - c * diag(L)
    is built from the diffusion part of the Jacobian.
    """

    def __init__(
        self,
        fun: InplaceRHS,
        t0: float,
        y0: np.ndarray,
        tol: Tolerances,
        options: SolverOptions,
        workspace: Workspace,
        interval: float,
        jacobian_diagonal: Optional[np.ndarray] = None,
        first_step: Optional[float] = None,
    ):
        self.fun = fun
        self.tol = tol
        self.options = options
        self.max_order = int(options.max_order)
        n = y0.size
        self.n = n

        self.D = workspace.get("bdf.D", (MAX_ORDER + 3, n))
        self._Dtmp = workspace.get("bdf.D_tmp", (MAX_ORDER + 3, n))
        self.y_predict = workspace.get("bdf.y_predict", (n,))
        self.y_new = workspace.get("bdf.y_new", (n,))
        self.psi = workspace.get("bdf.psi", (n,))
        self.d = workspace.get("bdf.d", (n,))
        self.dy = workspace.get("bdf.dy", (n,))
        self.f = workspace.get("bdf.f", (n,))
        self.rhs = workspace.get("bdf.rhs", (n,))
        self.scale = workspace.get("bdf.scale", (n,))
        self.err = workspace.get("bdf.err", (n,))
        self.tmp = workspace.get("bdf.tmp", (n,))
        # Jacobian-vector products
        self.y_ref = workspace.get("bdf.y_ref", (n,))
        self.f_ref = workspace.get("bdf.f_ref", (n,))
        self.y_pert = workspace.get("bdf.y_pert", (n,))
        self.jv = workspace.get("bdf.jv", (n,))
        self.diag = workspace.get("bdf.jac_diag", (n,))
        self.minv = workspace.get("bdf.precond", (n,))

        self.gmres = GMRESSolver(n, options.krylov_dim, options.krylov_restarts, options.krylov_tol, workspace)
        self.newton_tol = max(10 * EPS / tol.rtol, min(0.03, tol.rtol ** 0.5))

        self.t = float(t0)
        y0 = y0.reshape(-1)
        np.copyto(self.y_ref, y0)
        self.fun(self.t, self.y_ref, self.f_ref)
        if not all_finite(self.f_ref):
            raise NumericalDivergence(
                f"right-hand side is not finite at t={self.t:g}",
                last_time=self.t,
                last_state=y0.copy(),
            )
        self._t_ref = self.t
        self._ref_scale = 1.0 + math.sqrt(float(np.dot(self.y_ref, self.y_ref)))
        # False when the last refresh hit a non-finite derivative
        self._ref_ok = True

        if jacobian_diagonal is not None:
            np.copyto(self.diag, np.asarray(jacobian_diagonal, dtype=float).reshape(-1))

        h0 = first_step if first_step is not None else options.first_step
        if h0 is None:
            h0 = select_initial_step(self.fun, self.t, y0, self.f_ref, interval, 1, tol.rtol, tol.atol)
        self.h_abs = min(float(h0), options.max_step)

        self.D.fill(0.0)
        self.D[0] = y0
        np.multiply(self.f_ref, self.h_abs, out=self.D[1])
        self.order = 1
        self.n_equal_steps = 0
        self.last_error_norm = 0.0
        self._c = 0.0

        self.nfev = 1
        self.njev = 1
        self.n_accepted = 0
        self.n_rejected = 0
        self.n_newton_failures = 0
        self.n_newton_iter = 0
        self.n_linear_iter = 0

    @property
    def y(self) -> np.ndarray:
        return self.D[0]

    # ------------------------------------------------------------------
    # matrix-free Newton matrix
    # ------------------------------------------------------------------
    def _refresh_reference(self, t: float, y: np.ndarray) -> bool:
        np.copyto(self.y_ref, y)
        self.fun(t, self.y_ref, self.f_ref)
        self.nfev += 1
        self.njev += 1
        self._t_ref = t
        self._ref_scale = 1.0 + math.sqrt(float(np.dot(self.y_ref, self.y_ref)))
        return all_finite(self.f_ref)

    def _jvp(self, v: np.ndarray, out: np.ndarray) -> None:
        vnorm = math.sqrt(float(np.dot(v, v)))
        if vnorm == 0.0:
            out.fill(0.0)
            return
        eps = math.sqrt(EPS) * self._ref_scale / vnorm
        np.multiply(v, eps, out=self.y_pert)
        np.add(self.y_pert, self.y_ref, out=self.y_pert)
        self.fun(self._t_ref, self.y_pert, out)
        self.nfev += 1
        np.subtract(out, self.f_ref, out=out)
        np.divide(out, eps, out=out)

    def _newton_matvec(self, v: np.ndarray, out: np.ndarray) -> None:
        self._jvp(v, self.jv)
        np.multiply(self.jv, -self._c, out=out)
        np.add(out, v, out=out)

    def _set_newton_matrix(self, c: float) -> None:
        self._c = c
        np.multiply(self.diag, -c, out=self.minv)
        np.add(self.minv, 1.0, out=self.minv)
        np.reciprocal(self.minv, out=self.minv)

    def _solve_bdf_system(self, t_new: float, c: float):
        """Newton iterations on y = y_predict + d. Returns (converged, n_iter, non_finite)."""
        maxiter = self.options.newton_maxiter
        np.copyto(self.y_new, self.y_predict)
        self.d.fill(0.0)
        dy_norm_old = None
        converged = False
        non_finite = False
        k = 0
        for k in range(maxiter):
            self.fun(t_new, self.y_new, self.f)
            self.nfev += 1
            if not all_finite(self.f):
                non_finite = True
                break
            np.multiply(self.f, c, out=self.rhs)
            np.subtract(self.rhs, self.psi, out=self.rhs)
            np.subtract(self.rhs, self.d, out=self.rhs)

            self.dy.fill(0.0)
            _, n_lin = self.gmres.solve(self._newton_matvec, self.rhs, self.dy, precond=self.minv)
            self.n_linear_iter += n_lin
            if not all_finite(self.dy):
                non_finite = True
                break

            dy_norm = rms_norm(self.dy, self.scale, self.tmp)
            rate = None if dy_norm_old is None else dy_norm / dy_norm_old
            if rate is not None and (rate >= 1 or rate ** (maxiter - k) / (1 - rate) * dy_norm > self.newton_tol):
                break

            np.add(self.y_new, self.dy, out=self.y_new)
            np.add(self.d, self.dy, out=self.d)

            if dy_norm == 0 or (rate is not None and rate / (1 - rate) * dy_norm < self.newton_tol):
                converged = True
                break
            dy_norm_old = dy_norm

        self.n_newton_iter += k + 1
        return converged, k + 1, non_finite

    # ------------------------------------------------------------------
    def _fail(self, reason: str, newton: bool, non_finite: bool):
        cls = NonconvergenceError if newton and not non_finite else NumericalDivergence
        return cls(reason, last_time=self.t, last_state=self.D[0].copy())

    def step(self, t_target: float) -> None:
        """Advance by one accepted step without passing t_target."""
        opts = self.options
        tol = self.tol
        D = self.D
        t = self.t
        min_step = min_step_at(t, opts.min_step)

        if self.h_abs > opts.max_step:
            change_D(D, self.order, opts.max_step / self.h_abs, self._Dtmp)
            h_abs = opts.max_step
            self.n_equal_steps = 0
        elif self.h_abs < min_step:
            change_D(D, self.order, min_step / self.h_abs, self._Dtmp)
            h_abs = min_step
            self.n_equal_steps = 0
        else:
            h_abs = self.h_abs

        order = self.order
        current_jac = self._t_ref == t and self.n_accepted == 0
        failures = 0
        last_newton = False
        last_non_finite = False

        while True:
            if h_abs < min_step:
                raise self._fail(
                    f"step size {h_abs:.3g} fell below {min_step:.3g} at t={t:g}", last_newton, last_non_finite
                )
            t_new = t + h_abs
            if t_new >= t_target:
                t_new = t_target
                change_D(D, order, (t_new - t) / h_abs, self._Dtmp)
                self.n_equal_steps = 0
            h = t_new - t
            h_abs = h

            np.sum(D[:order + 1], axis=0, out=self.y_predict)
            np.abs(self.y_predict, out=self.scale)
            np.multiply(self.scale, tol.rtol, out=self.scale)
            np.add(self.scale, tol.atol, out=self.scale)
            np.dot(GAMMA[1:order + 1], D[1:order + 1], out=self.psi)
            np.divide(self.psi, GAMMA[order], out=self.psi)

            c = h / GAMMA[order]
            self._set_newton_matrix(c)
            converged, non_finite = False, False
            while True:
                if not self._ref_ok:
                    current_jac = True
                    self._ref_ok = self._refresh_reference(t_new, self.y_predict)
                    if not self._ref_ok:
                        non_finite = True
                        break
                converged, n_iter, non_finite = self._solve_bdf_system(t_new, c)
                if converged or current_jac:
                    break
                current_jac = True
                self._ref_ok = self._refresh_reference(t_new, self.y_predict)
                if not self._ref_ok:
                    non_finite = True
                    break

            if not converged:
                failures += 1
                self.n_newton_failures += 1
                last_newton, last_non_finite = True, non_finite
                logger.debug("Newton failed at t=%g (h=%.3g, order %d); halving step", t, h_abs, order)
                if failures >= opts.max_rejections:
                    raise self._fail(
                        f"Newton iteration failed {failures} times in a row at t={t:g}", True, non_finite
                    )
                h_abs *= 0.5
                change_D(D, order, 0.5, self._Dtmp)
                self.n_equal_steps = 0
                continue

            safety = opts.safety * (2 * opts.newton_maxiter + 1) / (2 * opts.newton_maxiter + n_iter)
            np.abs(self.y_new, out=self.scale)
            np.multiply(self.scale, tol.rtol, out=self.scale)
            np.add(self.scale, tol.atol, out=self.scale)
            np.multiply(self.d, ERROR_CONST[order], out=self.err)
            error_norm = rms_norm(self.err, self.scale, self.tmp)

            if error_norm <= 1:
                break

            factor = max(opts.min_factor, safety * error_norm ** (-1.0 / (order + 1)))
            failures += 1
            self.n_rejected += 1
            last_newton, last_non_finite = False, False
            if failures >= opts.max_rejections:
                raise self._fail(f"{failures} consecutive rejected steps at t={t:g}", False, False)
            h_abs *= factor
            change_D(D, order, factor, self._Dtmp)
            self.n_equal_steps = 0

        self.n_accepted += 1
        self.n_equal_steps += 1
        self.t = t_new
        self.h_abs = h_abs
        self.last_error_norm = error_norm

        # D^{j+1} y_n = D^j y_n - D^j y_{n-1}, and d = D^{k+1} y_n
        np.subtract(self.d, D[order + 1], out=D[order + 2])
        np.copyto(D[order + 1], self.d)
        for i in reversed(range(order + 1)):
            np.add(D[i], D[i + 1], out=D[i])

        if self.n_equal_steps < order + 1:
            return

        if order > 1:
            np.multiply(D[order], ERROR_CONST[order - 1], out=self.err)
            error_m_norm = rms_norm(self.err, self.scale, self.tmp)
        else:
            error_m_norm = math.inf
        if order < self.max_order:
            np.multiply(D[order + 2], ERROR_CONST[order + 1], out=self.err)
            error_p_norm = rms_norm(self.err, self.scale, self.tmp)
        else:
            error_p_norm = math.inf

        factors = [_order_factor(e, p) for e, p in ((error_m_norm, order), (error_norm, order + 1), (error_p_norm, order + 2))]
        best = max(range(3), key=lambda i: factors[i])
        self.order = order + best - 1
        factor = min(opts.max_factor, safety * factors[best])
        self.h_abs *= factor
        change_D(D, self.order, factor, self._Dtmp)
        self.n_equal_steps = 0


def _order_factor(error_norm: float, exponent: int) -> float:
    if math.isinf(error_norm):
        return 0.0
    if error_norm == 0.0:
        return math.inf
    return error_norm ** (-1.0 / exponent)
