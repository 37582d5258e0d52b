"""
Generalized Cauchy point (GCP).

Follows the projected steepest-descent path x(t) = P(x - t g) and returns the
first local minimizer of the quadratic model

    m(z) = f + gᵀ(z - x) + ½ (z - x)ᵀ B (z - x)

along it (Byrd, Lu, Nocedal & Zhu 1995, algorithm CP). The path is linear
between breakpoints, i.e. the values of t at which a variable reaches its
bound. The walk visits breakpoints in increasing order and keeps the 1-D
derivative f' and curvature f'' of the model up to date in O(k²) per
breakpoint, using only the compact factors of `CorrectionStore`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterator, Tuple

import numpy as np

from .aux import DBL_EPSILON
from .bounds import Box
from .memory import CorrectionStore


@dataclass
class CauchyPoint:
    """
    xc : the generalized Cauchy point (feasible).
    c : Wᵀ(xc - x), reused by the subspace minimization.
    free : mask of variables not fixed at a bound at xc.
    t : path parameter of xc.
    n_breaks : number of breakpoints crossed before the minimizer.
    """

    xc: np.ndarray
    c: np.ndarray
    free: np.ndarray
    t: float
    n_breaks: int

    @property
    def active(self) -> np.ndarray:
        return ~self.free


def compute_breakpoints(x: np.ndarray, g: np.ndarray, box: Box) -> Tuple[np.ndarray, np.ndarray]:
    """
    Per-variable breakpoints t_i and the initial path direction d = -g.

    t_i is +inf for variables the path never stops (no bound in the descent
    direction, or zero gradient). Variables already on the bound the path
    would cross (t_i == 0) and fixed variables get d_i = 0.
    """
    t = np.full(x.shape, np.inf)
    d = -np.asarray(g, dtype=float).copy()

    to_upper = (g < 0.0) & box.has_upper
    to_lower = (g > 0.0) & box.has_lower
    t[to_upper] = (x[to_upper] - box.upper[to_upper]) / g[to_upper]
    t[to_lower] = (x[to_lower] - box.lower[to_lower]) / g[to_lower]

    blocked = (t <= 0.0) | box.fixed
    t[blocked] = 0.0
    d[blocked] = 0.0
    return t, d


def iter_breakpoints(t: np.ndarray) -> Iterator[Tuple[int, float]]:
    """Yield (index, t_i) for finite positive breakpoints, ascending, ties by index."""
    order = np.argsort(t, kind="stable")
    for i in order:
        ti = float(t[i])
        if not np.isfinite(ti):
            return
        if ti > 0.0:
            yield int(i), ti


class PathModel:
    """
    Running 1-D restriction of the quadratic model along the current segment.

    fp  : derivative f' of m along d at the segment start
    fpp : curvature f'' = dᵀ B d
    p   : Wᵀ d
    c   : Wᵀ (z - x) for the segment start z
    t   : path parameter of the segment start
    """

    def __init__(self, d: np.ndarray, memory: CorrectionStore):
        self.memory = memory
        self.theta = memory.theta
        self.p = memory.project(d)
        self.c = np.zeros_like(self.p)
        self.fp = -float(d @ d)
        self.fpp = -self.theta * self.fp - float(self.p @ memory.middle(self.p))
        self.fpp0 = self.fpp
        self.t = 0.0

    def dt_min(self) -> float:
        """Step to the minimizer of the current segment's parabola."""
        if self.fpp > 0.0:
            return -self.fp / self.fpp
        return -self.fp / DBL_EPSILON

    def cross(self, gb: float, zb: float, wb: np.ndarray, dt: float, tb: float) -> None:
        """Move the segment start to breakpoint tb, where variable b stops."""
        mem = self.memory
        theta = self.theta
        self.c = self.c + dt * self.p
        self.fp = (
            self.fp
            + dt * self.fpp
            + gb * gb
            + theta * gb * zb
            - gb * float(wb @ mem.middle(self.c))
        )
        self.fpp = (
            self.fpp
            - theta * gb * gb
            - 2.0 * gb * float(wb @ mem.middle(self.p))
            - gb * gb * float(wb @ mem.middle(wb))
        )
        self.fpp = max(DBL_EPSILON * self.fpp0, self.fpp)
        self.p = self.p + gb * wb
        self.t = tb


def generalized_cauchy_point(
    x: np.ndarray, g: np.ndarray, box: Box, memory: CorrectionStore
) -> CauchyPoint:
    t, d = compute_breakpoints(x, g, box)
    active = t == 0.0
    if not np.any(d):
        # projected gradient vanishes: x itself is the Cauchy point
        return CauchyPoint(x.copy(), np.zeros(memory.rank), ~active, 0.0, 0)

    xc = x.copy()
    path = PathModel(d, memory)
    dt_min = path.dt_min()
    n_breaks = 0

    for b, tb in iter_breakpoints(t):
        dt = tb - path.t
        if dt_min < dt:
            break
        xc[b] = box.upper[b] if d[b] > 0.0 else box.lower[b]
        zb = xc[b] - x[b]
        path.cross(float(g[b]), float(zb), memory.rows(b), dt, tb)
        d[b] = 0.0
        active[b] = True
        n_breaks += 1
        dt_min = path.dt_min()

    dt_min = max(dt_min, 0.0)
    t_cp = path.t + dt_min
    moving = d != 0.0
    xc[moving] = x[moving] + t_cp * d[moving]
    xc = box.project(xc)
    c = path.c + dt_min * path.p

    logging.debug(f"[cauchy] t={t_cp:.3e}, breakpoints crossed={n_breaks}, active={int(active.sum())}")
    return CauchyPoint(xc, c, ~active, t_cp, n_breaks)
