import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import numpy as np

from .aux import DBL_EPSILON, LBFGSBConfig, Model
from .bounds import Box


class LSStatus(Enum):
    CONVERGED = "converged"  # strong Wolfe point (or sufficient decrease at the box edge)
    STALLED = "stalled"  # budget spent / bracket collapsed; best point returned
    NOT_DESCENT = "not_descent"  # g'd >= 0, nothing evaluated
    NON_FINITE = "non_finite"  # no trial produced finite values


@dataclass
class LineSearchResult:
    status: LSStatus
    alpha: float
    x: np.ndarray
    f: float
    g: np.ndarray
    n_evals: int

    @property
    def ok(self) -> bool:
        return self.status is LSStatus.CONVERGED


def _cubic_interpolate(x1, f1, g1, x2, f2, g2, bounds=None):
    # minimizer of the cubic through (x1, f1, g1) and (x2, f2, g2), clamped to bounds
    if bounds is not None:
        xmin_bound, xmax_bound = bounds
    else:
        xmin_bound, xmax_bound = (x1, x2) if x1 <= x2 else (x2, x1)
    if x1 == x2:
        return (xmin_bound + xmax_bound) / 2.0

    d1 = g1 + g2 - 3 * (f1 - f2) / (x1 - x2)
    d2_square = d1**2 - g1 * g2
    if d2_square >= 0:
        d2 = math.sqrt(d2_square)
        if x1 <= x2:
            min_pos = x2 - (x2 - x1) * ((g2 + d2 - d1) / (g2 - g1 + 2 * d2))
        else:
            min_pos = x1 - (x1 - x2) * ((g1 + d2 - d1) / (g1 - g2 + 2 * d2))
        if math.isfinite(min_pos):
            return min(max(min_pos, xmin_bound), xmax_bound)
    return (xmin_bound + xmax_bound) / 2.0


class _Point:
    __slots__ = ("alpha", "f", "g", "x", "gtd")

    def __init__(self, alpha, f, g, x, gtd):
        self.alpha = alpha
        self.f = f
        self.g = g
        self.x = x
        self.gtd = gtd


class LineSearcher:
    """Feasible strong-Wolfe line search for L-BFGS-B.

    - `search(...)`: bracketing with safeguarded cubic extrapolation, then a
                     zoom phase with safeguarded cubic interpolation.
    The step never exceeds `alpha_max`, the largest step that keeps
    x + alpha d inside the box, and every trial point is clipped to the box.
    """

    def __init__(self, cfg: LBFGSBConfig):
        self.cfg = cfg

        # basic param guards
        self.c1 = float(max(1e-12, cfg.ls_armijo_f))
        self.c2 = float(max(self.c1, min(0.999, cfg.ls_wolfe_c)))
        self.max_iter = int(max(1, cfg.ls_max_iter))
        self.min_iter = int(max(1, min(cfg.ls_min_iter, self.max_iter)))
        self.backtrack = float(max(1e-4, min(0.99, cfg.ls_backtrack)))
        self.extrapolate = float(max(1.1, cfg.ls_extrapolate))
        self.min_alpha = float(max(0.0, cfg.ls_min_alpha))

    def search(
        self,
        model: Model,
        box: Box,
        x: np.ndarray,
        d: np.ndarray,
        f0: float,
        g0: np.ndarray,
        alpha_max: float,
        alpha0: float = 1.0,
    ) -> LineSearchResult:
        gtd0 = float(g0 @ d)
        if not gtd0 < 0.0:
            logging.debug(f"Line search skipped: not a descent direction (g'd={gtd0:.3e})")
            return LineSearchResult(LSStatus.NOT_DESCENT, 0.0, x.copy(), f0, g0.copy(), 0)

        c1, c2 = self.c1, self.c2
        base = _Point(0.0, f0, g0, x, gtd0)
        best: Optional[_Point] = None
        n_evals = 0
        n_finite = 0

        def trial(alpha: float) -> Optional[_Point]:
            nonlocal n_evals, n_finite, best
            xt = box.project(x + alpha * d)
            ft, gt = model.eval_all(xt)
            n_evals += 1
            if not (np.isfinite(ft) and np.all(np.isfinite(gt))):
                return None
            n_finite += 1
            pt = _Point(alpha, ft, gt, xt, float(gt @ d))
            if best is None or ft < best.f:
                best = pt
            return pt

        def armijo(pt: _Point) -> bool:
            return pt.f <= f0 + c1 * pt.alpha * gtd0

        def curvature(pt: _Point) -> bool:
            return abs(pt.gtd) <= -c2 * gtd0

        def finish(status: LSStatus, pt: Optional[_Point]) -> LineSearchResult:
            if pt is None:
                pt = base
            return LineSearchResult(status, pt.alpha, pt.x.copy(), pt.f, pt.g.copy(), n_evals)

        def zoom(lo: _Point, hi: _Point) -> LineSearchResult:
            # invariant: lo satisfies sufficient decrease with the lowest f seen
            # in the bracket, and (hi - lo) * lo.gtd < 0
            while n_evals < self.max_iter:
                width = abs(hi.alpha - lo.alpha)
                if n_evals >= self.min_iter and width <= DBL_EPSILON * max(1.0, hi.alpha, lo.alpha):
                    break
                a_min, a_max = min(lo.alpha, hi.alpha), max(lo.alpha, hi.alpha)
                margin = 0.1 * width
                if hi.f is not None and np.isfinite(hi.f):
                    a = _cubic_interpolate(
                        lo.alpha, lo.f, lo.gtd, hi.alpha, hi.f, hi.gtd,
                        bounds=(a_min + margin, a_max - margin),
                    )
                else:
                    a = 0.5 * (lo.alpha + hi.alpha)
                pt = trial(a)
                if pt is None:
                    # treat as a failed decrease test
                    hi = _Point(a, None, None, None, None)
                    continue
                if not armijo(pt) or pt.f >= lo.f:
                    hi = pt
                    continue
                if curvature(pt):
                    return finish(LSStatus.CONVERGED, pt)
                if pt.gtd * (hi.alpha - lo.alpha) >= 0.0:
                    hi = lo
                lo = pt
            logging.debug(
                f"Line search stalled in zoom after {n_evals} evals "
                f"(bracket=[{min(lo.alpha, hi.alpha):.3e}, {max(lo.alpha, hi.alpha):.3e}])"
            )
            keep = lo if lo.alpha > 0.0 else best
            return finish(LSStatus.STALLED, keep)

        # --- bracketing phase
        alpha_max = float(alpha_max)
        alpha = float(min(alpha0, alpha_max))
        prev = base
        while n_evals < self.max_iter:
            if alpha <= self.min_alpha:
                break
            pt = trial(alpha)
            if pt is None:
                # pull back toward the last finite point and never go past here again
                alpha_max = alpha
                alpha = prev.alpha + self.backtrack * (alpha - prev.alpha)
                continue
            if not armijo(pt) or (prev.alpha > 0.0 and pt.f >= prev.f):
                return zoom(prev, pt)
            if curvature(pt):
                return finish(LSStatus.CONVERGED, pt)
            if pt.gtd >= 0.0:
                return zoom(pt, prev)
            if alpha >= alpha_max * (1.0 - DBL_EPSILON):
                # the box stops us before the curvature condition holds
                return finish(LSStatus.CONVERGED, pt)
            lo_b = min(alpha + 0.01 * (alpha - prev.alpha), alpha_max)
            hi_b = min(self.extrapolate * alpha, alpha_max)
            nxt = _cubic_interpolate(
                prev.alpha, prev.f, prev.gtd, alpha, pt.f, pt.gtd, bounds=(lo_b, hi_b)
            )
            prev = pt
            alpha = nxt

        if n_evals > 0 and n_finite == 0:
            logging.debug(f"Line search failed: no finite trial in {n_evals} evals")
            return finish(LSStatus.NON_FINITE, None)
        if alpha <= self.min_alpha:
            logging.debug(f"Line search failed: step {alpha:.3e} below ls_min_alpha (iters={n_evals})")
        else:
            logging.debug(f"Line search failed: max iterations reached (iters={n_evals})")
        return finish(LSStatus.STALLED, best)
