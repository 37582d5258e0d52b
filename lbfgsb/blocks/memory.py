"""
Limited-memory BFGS correction store (compact representation).

Holds the last `maxcor` correction pairs s_i = x_{i+1} - x_i,
y_i = g_{i+1} - g_i and applies the implicit matrices

    B = θ I - W M Wᵀ,                      W = [Y, θ S]
    M = [[-D, Lᵀ], [L, θ SᵀS]]^{-1}
    H = (1/θ) I + [S, Y/θ] N [Sᵀ; Yᵀ/θ]
    N = [[R⁻ᵀ (D + YᵀY/θ) R⁻¹, -R⁻ᵀ], [-R⁻¹, 0]]

where D = diag(sᵢᵀyᵢ), L / R are the strictly-lower / upper triangles of
SᵀY (Byrd, Nocedal & Schnabel 1994). Nothing of size n x n is ever formed:
one application costs O(n·k + k²) with k <= maxcor stored pairs.

The Gram blocks SᵀY, SᵀS and YᵀY are kept across pushes: an admitted pair
adds one row and column, an eviction drops the first ones.
"""

from __future__ import annotations

import copy
import logging

import numpy as np
import scipy.linalg as la
from scipy.sparse.linalg import LinearOperator

from .aux import DBL_EPSILON, InvalidConfig


class CorrectionStore:
    """
    Rolling (s, y) history with cached compact factors.

    Parameters
    ----------
    n : int
        Problem dimension.
    maxcor : int
        Capacity (>= 1); the oldest pair is evicted when full.
    curvature_eps : float
        A pair is admitted only if sᵀy > curvature_eps · yᵀy.

    Attributes
    ----------
    n_admitted, n_skipped : int
        Counters of accepted and curvature-rejected pushes.
    """

    def __init__(self, n: int, maxcor: int, curvature_eps: float = DBL_EPSILON):
        if int(maxcor) < 1:
            raise InvalidConfig(f"maxcor must be positive, got {maxcor}")
        self.n = int(n)
        self.maxcor = int(maxcor)
        self.curvature_eps = float(curvature_eps)
        self.n_admitted = 0
        self.n_skipped = 0
        self.reset()

    # ------------------------------------------------------------------ #
    # State
    # ------------------------------------------------------------------ #
    def reset(self) -> None:
        """Forget every stored pair (θ returns to 1)."""
        n = self.n
        self._S = np.empty((n, 0))
        self._Y = np.empty((n, 0))
        self._SY = np.empty((0, 0))
        self._SS = np.empty((0, 0))
        self._YY = np.empty((0, 0))
        self._theta = 1.0
        self._W = np.empty((n, 0))
        self._M = np.empty((0, 0))

    def __len__(self) -> int:
        return int(self._S.shape[1])

    @property
    def theta(self) -> float:
        return self._theta

    @property
    def rank(self) -> int:
        """Number of columns of W (2 · stored pairs)."""
        return int(self._W.shape[1])

    def copy(self) -> "CorrectionStore":
        return copy.deepcopy(self)

    # ------------------------------------------------------------------ #
    # Updates
    # ------------------------------------------------------------------ #
    def push(self, s: np.ndarray, y: np.ndarray) -> bool:
        """
        Admit (s, y) if the curvature condition holds.

        Returns True when the pair was stored. A rejected pair leaves the
        store untouched.
        """
        s = np.asarray(s, dtype=float).reshape(-1)
        y = np.asarray(y, dtype=float).reshape(-1)
        sy = float(s @ y)
        yy = float(y @ y)
        if not (np.isfinite(sy) and np.isfinite(yy)) or not sy > self.curvature_eps * yy:
            self.n_skipped += 1
            logging.debug(f"[memory] skipped update: s'y={sy:.3e}, y'y={yy:.3e}")
            return False

        S, Y = self._S, self._Y
        SY, SS, YY = self._SY, self._SS, self._YY
        if len(self) == self.maxcor:
            S, Y = S[:, 1:], Y[:, 1:]
            SY, SS, YY = SY[1:, 1:], SS[1:, 1:], YY[1:, 1:]

        Sts, Sty = S.T @ s, S.T @ y
        Yts, Yty = Y.T @ s, Y.T @ y
        self._SY = np.block([[SY, Sty[:, None]], [Yts[None, :], np.array([[sy]])]])
        self._SS = np.block([[SS, Sts[:, None]], [Sts[None, :], np.array([[float(s @ s)]])]])
        self._YY = np.block([[YY, Yty[:, None]], [Yty[None, :], np.array([[yy]])]])
        self._S = np.column_stack([S, s])
        self._Y = np.column_stack([Y, y])
        self._theta = yy / sy

        if not self._rebuild():
            logging.warning("[memory] middle matrix is singular; discarding stored corrections")
            self.reset()
            return False
        self.n_admitted += 1
        return True

    def _rebuild(self) -> bool:
        theta = self._theta
        SY = self._SY
        L = np.tril(SY, -1)
        K = np.block([[-np.diag(np.diag(SY)), L.T], [L, theta * self._SS]])
        try:
            M = la.inv(K, check_finite=True)
        except (la.LinAlgError, ValueError):
            return False
        if not np.all(np.isfinite(M)):
            return False
        self._M = M
        self._W = np.hstack([self._Y, theta * self._S])
        return True

    # ------------------------------------------------------------------ #
    # Compact-matrix products
    # ------------------------------------------------------------------ #
    def apply_forward(self, v: np.ndarray) -> np.ndarray:
        """B v = θ v - W M Wᵀ v."""
        v = np.asarray(v, dtype=float)
        if len(self) == 0:
            return self._theta * v
        return self._theta * v - self._W @ (self._M @ (self._W.T @ v))

    def apply_inverse(self, v: np.ndarray) -> np.ndarray:
        """H v via two k x k triangular solves with R = triu(SᵀY)."""
        v = np.asarray(v, dtype=float)
        gamma = 1.0 / self._theta
        if len(self) == 0:
            return gamma * v
        R = np.triu(self._SY)
        D = np.diag(np.diag(self._SY))
        a = self._S.T @ v
        b = gamma * (self._Y.T @ v)
        q = la.solve_triangular(R, a, lower=False)
        top = la.solve_triangular(R, (D + gamma * self._YY) @ q - b, lower=False, trans="T")
        return gamma * v + self._S @ top - gamma * (self._Y @ q)

    def project(self, v: np.ndarray) -> np.ndarray:
        """Wᵀ v (length 2k)."""
        return self._W.T @ v

    def rows(self, idx) -> np.ndarray:
        """Rows of W for the given variable indices."""
        return self._W[idx]

    def middle(self, v: np.ndarray) -> np.ndarray:
        """M v."""
        return self._M @ v

    def expand(self, u: np.ndarray) -> np.ndarray:
        """W u (length n)."""
        return self._W @ u

    def inverse_operator(self) -> LinearOperator:
        """Frozen snapshot of H as a scipy LinearOperator."""
        snap = self.copy()
        return LinearOperator(
            (self.n, self.n),
            matvec=snap.apply_inverse,
            rmatvec=snap.apply_inverse,
            dtype=float,
        )
