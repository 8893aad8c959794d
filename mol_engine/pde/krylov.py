from __future__ import annotations
import math
from typing import Callable, Optional, Tuple

import numpy as np

from mol_engine.state import Workspace

# Signature: matvec(v, out) -> None, writes A @ v into out
MatVec = Callable[[np.ndarray, np.ndarray], None]


class GMRESSolver:
    """
    Restarted GMRES(m) with an optional right diagonal preconditioner.

    The Krylov basis, Hessenberg matrix and Givens rotations are taken from
    `workspace` once, so repeated solves of the same size allocate nothing.
    """

    def __init__(self, n: int, restart: int, max_restarts: int, tol: float, workspace: Workspace):
        self.n = int(n)
        self.m = max(1, min(int(restart), self.n))
        self.max_restarts = int(max_restarts)
        self.tol = float(tol)

        m = self.m
        self.V = workspace.get("gmres.V", (m + 1, self.n))
        self.H = workspace.get("gmres.H", (m + 1, m))
        self.cs = workspace.get("gmres.cs", (m,))
        self.sn = workspace.get("gmres.sn", (m,))
        self.g = workspace.get("gmres.g", (m + 1,))
        self.yk = workspace.get("gmres.y", (m,))
        self.w = workspace.get("gmres.w", (self.n,))
        self.z = workspace.get("gmres.z", (self.n,))

        self.n_matvec = 0

    def _norm(self, v: np.ndarray) -> float:
        return math.sqrt(float(np.dot(v, v)))

    def solve(
        self,
        matvec: MatVec,
        b: np.ndarray,
        x: np.ndarray,
        precond: Optional[np.ndarray] = None,
    ) -> Tuple[bool, int]:
        """
        Solve A x = b in place, starting from the current x.

        `precond` holds the inverse of a diagonal approximation of A; the
        system actually iterated on is (A M^-1)(M x) = b.

        Returns (converged, n_iterations).
        """
        V, H, cs, sn, g, yk, w, z = self.V, self.H, self.cs, self.sn, self.g, self.yk, self.w, self.z
        m = self.m

        bnorm = self._norm(b)
        if bnorm == 0.0:
            x.fill(0.0)
            return True, 0
        target = self.tol * bnorm
        iters = 0

        for _ in range(self.max_restarts):
            matvec(x, w)
            self.n_matvec += 1
            np.subtract(b, w, out=V[0])
            beta = self._norm(V[0])
            if not math.isfinite(beta):
                return False, iters
            if beta <= target:
                return True, iters
            np.divide(V[0], beta, out=V[0])
            g.fill(0.0)
            g[0] = beta
            H.fill(0.0)

            k = 0
            for j in range(m):
                if precond is not None:
                    np.multiply(V[j], precond, out=z)
                    matvec(z, w)
                else:
                    matvec(V[j], w)
                self.n_matvec += 1

                # modified Gram-Schmidt
                for i in range(j + 1):
                    hij = float(np.dot(w, V[i]))
                    H[i, j] = hij
                    np.multiply(V[i], hij, out=z)
                    np.subtract(w, z, out=w)
                h_next = self._norm(w)
                H[j + 1, j] = h_next
                if h_next > 0.0:
                    np.divide(w, h_next, out=V[j + 1])

                for i in range(j):
                    a, c = H[i, j], H[i + 1, j]
                    H[i, j] = cs[i] * a + sn[i] * c
                    H[i + 1, j] = -sn[i] * a + cs[i] * c

                a, c = H[j, j], H[j + 1, j]
                denom = math.hypot(a, c)
                if denom == 0.0:
                    cs[j], sn[j] = 1.0, 0.0
                else:
                    cs[j], sn[j] = a / denom, c / denom
                H[j, j] = denom
                H[j + 1, j] = 0.0
                g[j + 1] = -sn[j] * g[j]
                g[j] = cs[j] * g[j]

                iters += 1
                k = j + 1
                if abs(g[j + 1]) <= target or h_next == 0.0:
                    break

            # back substitution on the triangular k x k block
            for i in range(k - 1, -1, -1):
                s = g[i]
                for l in range(i + 1, k):
                    s -= H[i, l] * yk[l]
                yk[i] = s / H[i, i] if H[i, i] != 0.0 else 0.0

            np.dot(yk[:k], V[:k], out=w)
            if precond is not None:
                np.multiply(w, precond, out=w)
            np.add(x, w, out=x)

            if not math.isfinite(float(g[k])):
                return False, iters
            if abs(g[k]) <= target:
                return True, iters

        return False, iters
