"""
Subspace minimization over the free variables at the Cauchy point.

Direct primal method (Byrd, Lu, Nocedal & Zhu 1995, section 5.1): with Z the
free-variable selector, minimize the quadratic model over z = xc + Z du
ignoring the bounds,

    r  = Zᵀ (g + θ (xc - x) - W M c)
    du = -(1/θ) r - (1/θ²) ZᵀW (I - (1/θ) M WᵀZ ZᵀW)⁻¹ M WᵀZ r

which only needs a 2k x 2k solve. The unconstrained step is then truncated
once so that the free variables stay inside the box.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import scipy.linalg as la

from .bounds import Box
from .cauchy import CauchyPoint
from .memory import CorrectionStore


@dataclass
class SubspaceStep:
    d: np.ndarray  # search direction x_bar - x
    x_bar: np.ndarray  # candidate point
    alpha: float  # truncation factor applied to du (1 = untruncated)
    n_free: int
    fallback: bool  # steepest descent used instead of the reduced Newton step


def _reduced_newton_step(
    r: np.ndarray, WZ: np.ndarray, memory: CorrectionStore, max_cond: float
) -> np.ndarray:
    theta = memory.theta
    WtZ = WZ.T
    v = memory.middle(WtZ @ r)
    N = np.eye(memory.rank) - memory.middle(WtZ @ WZ) / theta
    if np.linalg.cond(N) > max_cond:
        raise la.LinAlgError("subspace system is ill-conditioned")
    u = la.solve(N, v, check_finite=True)
    du = -r / theta - (WZ @ u) / (theta * theta)
    if not np.all(np.isfinite(du)):
        raise la.LinAlgError("subspace step is not finite")
    return du


def minimize_subspace(
    x: np.ndarray,
    g: np.ndarray,
    cauchy: CauchyPoint,
    box: Box,
    memory: CorrectionStore,
    max_cond: float = 1e12,
) -> SubspaceStep:
    xc = cauchy.xc
    free = np.flatnonzero(cauchy.free)
    if free.size == 0:
        return SubspaceStep(xc - x, xc.copy(), 0.0, 0, False)

    theta = memory.theta
    r = g + theta * (xc - x)
    if len(memory):
        r = r - memory.expand(memory.middle(cauchy.c))
    r = r[free]

    fallback = False
    if len(memory):
        try:
            du = _reduced_newton_step(r, memory.rows(free), memory, max_cond)
        except (la.LinAlgError, ValueError) as e:
            logging.debug(f"[subspace] falling back to steepest descent: {e}")
            du = -r / theta
            fallback = True
    else:
        du = -r / theta

    # single truncation pass: largest alpha <= 1 keeping xc_F + alpha du feasible
    xf = xc[free]
    lo, hi = box.lower[free], box.upper[free]
    steps = np.full(free.size, np.inf)
    up = (du > 0.0) & box.has_upper[free]
    steps[up] = (hi[up] - xf[up]) / du[up]
    down = (du < 0.0) & box.has_lower[free]
    steps[down] = (lo[down] - xf[down]) / du[down]
    alpha = 1.0
    x_new = xf + du
    if steps.min() < 1.0:
        b = int(np.argmin(steps))
        alpha = max(float(steps[b]), 0.0)
        x_new = xf + alpha * du
        # the limiting variable lands on its bound exactly
        x_new[b] = hi[b] if du[b] > 0.0 else lo[b]

    x_bar = xc.copy()
    x_bar[free] = x_new
    x_bar = box.project(x_bar)
    d = x_bar - x

    if float(g @ d) >= 0.0:
        logging.debug("[subspace] step is not a descent direction; using the Cauchy direction")
        x_bar = xc.copy()
        d = xc - x

    return SubspaceStep(d, x_bar, alpha, int(free.size), fallback)
