# lbfgsb.py
# L-BFGS-B driver: bound-constrained limited-memory quasi-Newton minimization.
# - Generalized Cauchy point along the projected steepest-descent path
# - Subspace minimization over the free variables (compact L-BFGS matrices)
# - Feasible strong-Wolfe line search
# - Memory refresh + single retry when the line search fails
from __future__ import annotations

import logging
import math
import sys
import time
from typing import Any, Callable, Optional

import numpy as np
from scipy.optimize import OptimizeResult

from .blocks.aux import DBL_EPSILON, InvalidConfig, LBFGSBConfig, Model, Status
from .blocks.bounds import BoundsLike, classify_bounds
from .blocks.cauchy import generalized_cauchy_point
from .blocks.linesearch import LineSearcher, LSStatus
from .blocks.memory import CorrectionStore
from .blocks.subspace import minimize_subspace

MESSAGES = {
    "pgtol": "CONVERGENCE: NORM_OF_PROJECTED_GRADIENT_<=_PGTOL",
    "factr": "CONVERGENCE: REL_REDUCTION_OF_F_<=_FACTR*EPSMCH",
    "maxiter": "STOP: TOTAL NO. of ITERATIONS REACHED LIMIT",
    "lnsrch": "ABNORMAL_TERMINATION_IN_LNSRCH",
    "nonfinite": "ERROR: NON-FINITE FUNCTION VALUE",
}


# =============================================================================
# Progress output
# =============================================================================
class ConsolePrinter:
    """Tabular progress printer, usable as a progress sink.

    every : print a row every `every` iterations (0 = summary only).
    """

    def __init__(self, every: int = 1, stream=None):
        self.every = int(every)
        self.stream = stream if stream is not None else sys.stdout
        self.t0 = time.perf_counter()
        self.last_header = -1
        self.best_f = math.inf
        self.rows = 0

    def _emit(self, line: str) -> None:
        print(line, file=self.stream)

    def on_iteration(self, k: int, f: float, proj_grad_norm: float) -> None:
        if f < self.best_f:
            self.best_f = f
        if self.every <= 0 or k % self.every != 0:
            return
        t = time.perf_counter() - self.t0
        HDR = f"{'k':>6} {'f':>16} {'|proj g|':>10} {'best_f':>13} {'time':>8}"
        ROW = (
            f"{k:>6} "
            f"{f:>16.8e} "
            f"{proj_grad_norm:>10.2e} "
            f"{self.best_f:>13.5e} "
            f"{t:>7.2f}s"
        )
        # periodic header
        if self.rows == 0 or self.rows - self.last_header >= 20:
            self.last_header = self.rows
            self._emit(HDR)
        self._emit(ROW)
        self.rows += 1

    def summary(self, result: OptimizeResult) -> None:
        self._emit(
            f"{result.message}  f={result.fun:.8e}  nit={result.nit}  "
            f"nfev={result.nfev}  status={result.status.value}"
        )


# =============================================================================
# Main Solver
# =============================================================================
class LBFGSBSolver:
    def __init__(
        self,
        fnc: Callable,
        x_init: np.ndarray,
        jcb: Optional[Callable] = None,
        args: Any = None,
        bounds: BoundsLike = None,
        config: Optional[LBFGSBConfig] = None,
        progress_sink: Any = None,
    ):
        # fail fast: nothing below calls the evaluator
        self.cfg = (config if config is not None else LBFGSBConfig()).validate()
        x0 = np.asarray(x_init, dtype=float).reshape(-1)
        self.n = int(x0.size)
        if self.n == 0:
            raise InvalidConfig("x_init must contain at least one variable")
        if not np.all(np.isfinite(x0)):
            raise InvalidConfig("x_init must be finite")

        self.box = classify_bounds(bounds, self.n)
        self.x = self.box.project(x0)
        if not np.array_equal(self.x, x0):
            logging.warning("x_init is infeasible; projected onto the bounds")

        self.model = Model(fnc, self.n, jcb=jcb, args=args)
        self.memory = CorrectionStore(self.n, self.cfg.maxcor, self.cfg.curvature_eps)
        self.ls = LineSearcher(self.cfg)

        self.sinks = []
        verbose = self.cfg.verbose
        self.printer = ConsolePrinter(every=verbose) if verbose is not None and verbose >= 0 else None
        if self.printer is not None:
            self.sinks.append(self.printer)
        if progress_sink is not None:
            self.sinks.append(progress_sink)

        # iteration state
        self.f = math.nan
        self.g = np.full(self.n, math.nan)
        self.nit = 0
        self.status: Optional[Status] = None
        self.message = ""
        self.history = []

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------
    def solve(self) -> OptimizeResult:
        cfg = self.cfg
        box = self.box

        self.f, self.g = self.model.eval_all(self.x)
        if not self._finite(self.f, self.g):
            return self._terminate(Status.NUMERICAL_ERROR, MESSAGES["nonfinite"])

        pg_norm = box.projected_gradient_norm(self.x, self.g)
        self._report(0, self.f, pg_norm)
        if pg_norm <= cfg.pgtol:
            return self._terminate(Status.CONVERGED, MESSAGES["pgtol"])

        while True:
            if self.nit >= cfg.maxiter:
                return self._terminate(Status.MAX_ITER_REACHED, MESSAGES["maxiter"])

            res = self._step()
            if res.status is LSStatus.NON_FINITE:
                return self._terminate(Status.NUMERICAL_ERROR, MESSAGES["nonfinite"])
            if not res.ok:
                if len(self.memory):
                    logging.debug(
                        f"[iter {self.nit}] line search {res.status.value}; refreshing memory and retrying"
                    )
                    self.memory.reset()
                    res = self._step()
                if res.status is LSStatus.NON_FINITE:
                    return self._terminate(Status.NUMERICAL_ERROR, MESSAGES["nonfinite"])
                if not res.ok:
                    if res.f < self.f:
                        self.x, self.f, self.g = res.x, res.f, res.g
                    return self._terminate(Status.LINE_SEARCH_FAILED, MESSAGES["lnsrch"])

            f_prev = self.f
            s = res.x - self.x
            y = res.g - self.g
            self.x, self.f, self.g = res.x, res.f, res.g
            self.nit += 1
            self.memory.push(s, y)

            pg_norm = box.projected_gradient_norm(self.x, self.g)
            self._report(self.nit, self.f, pg_norm)
            self.history.append(
                {"k": self.nit, "f": self.f, "pg_norm": pg_norm, "alpha": res.alpha, "ls_evals": res.n_evals}
            )

            if pg_norm <= cfg.pgtol:
                return self._terminate(Status.CONVERGED, MESSAGES["pgtol"])
            scale = max(abs(f_prev), abs(self.f), 1.0)
            if (f_prev - self.f) / scale <= cfg.factr * DBL_EPSILON:
                return self._terminate(Status.CONVERGED, MESSAGES["factr"])

    # -------------------------------------------------------------------------
    # One GCP -> subspace -> line search pass from the current point
    # -------------------------------------------------------------------------
    def _step(self):
        x, g, box, mem = self.x, self.g, self.box, self.memory

        cp = generalized_cauchy_point(x, g, box, mem)
        sub = minimize_subspace(x, g, cp, box, mem, self.cfg.subspace_max_cond)
        d = sub.d

        if box.constrained and self.nit == 0:
            alpha_max = 1.0
        else:
            alpha_max = min(box.max_step(x, d), self.cfg.max_step)
        if self.nit == 0 and not box.boxed:
            dnorm = float(np.linalg.norm(d))
            alpha0 = min(1.0 / dnorm, alpha_max) if dnorm > 0.0 else alpha_max
        else:
            alpha0 = 1.0

        res = self.ls.search(self.model, box, x, d, self.f, g, alpha_max, alpha0)
        logging.debug(
            f"[iter {self.nit}] free={sub.n_free} breaks={cp.n_breaks} "
            f"trunc={sub.alpha:.2e} ls={res.status.value} alpha={res.alpha:.3e} evals={res.n_evals}"
        )
        return res

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------
    @staticmethod
    def _finite(f: float, g: np.ndarray) -> bool:
        return bool(np.isfinite(f) and np.all(np.isfinite(g)))

    def _report(self, k: int, f: float, pg_norm: float) -> None:
        for sink in self.sinks:
            try:
                if hasattr(sink, "on_iteration"):
                    sink.on_iteration(k, f, pg_norm)
                else:
                    sink(k, f, pg_norm)
            except Exception as e:
                logging.warning(f"progress sink raised {type(e).__name__}: {e}")

    def _terminate(self, status: Status, message: str) -> OptimizeResult:
        self.status = status
        self.message = message
        result = OptimizeResult(
            x=self.x.copy(),
            fun=self.f,
            f=self.f,
            jac=self.g.copy(),
            status=status,
            success=status is Status.CONVERGED,
            message=message,
            nit=self.nit,
            nfev=self.model.nfev,
            njev=self.model.njev,
            hess_inv=self.memory.inverse_operator(),
            active=self.box.active_mask(self.x, self.g),
        )
        logging.info(f"L-BFGS-B finished: {message} (nit={self.nit}, nfev={self.model.nfev})")
        if self.printer is not None:
            self.printer.summary(result)
        return result


def minimize(
    fnc: Callable,
    x_init,
    jcb: Optional[Callable] = None,
    args: Any = None,
    bounds: BoundsLike = None,
    factr: Optional[float] = None,
    pgtol: Optional[float] = None,
    maxcor: Optional[int] = None,
    maxiter: Optional[int] = None,
    verbose: Optional[int] = None,
    progress_sink: Any = None,
    config: Optional[LBFGSBConfig] = None,
) -> OptimizeResult:
    """
    Minimize a function using the L-BFGS-B algorithm.

    Parameters
    ----------
    fnc : callable
        `fnc(x, *args) -> (f, g)` when `jcb` is None, otherwise `fnc(x, *args) -> f`.
    x_init : array_like, shape (n,)
        Initial point (projected onto the bounds if outside them).
    jcb : callable, optional
        `jcb(x, *args) -> g`, the gradient of `fnc`.
    args : tuple, dict or object, optional
        Extra arguments forwarded to `fnc` and `jcb`.
    bounds : (n, 2) array_like, optional
        [lower, upper] per variable; non-finite or None entries mean no bound.
    factr : float, optional
        Stop when `(f^k - f^{k+1}) / max{|f^k|, |f^{k+1}|, 1} <= factr * DBL_EPSILON`.
        Typical values: 1e12 low accuracy, 1e7 moderate (default), 1e1 extremely high.
    pgtol : float, optional
        Stop when `max{|pg_i| i = 1, ..., n} <= pgtol`, pg being the projected gradient
        (default 1e-5).
    maxcor : int, optional
        Number of variable metric corrections kept in the limited-memory matrix (default 10).
    maxiter : int, optional
        Maximum number of iterations (default 15000).
    verbose : int, optional
        None or negative: silent. 0: final summary only. k > 0: a table row every k iterations.
    progress_sink : object or callable, optional
        Receives `on_iteration(k, f, proj_grad_norm)` (or is called with those arguments).
    config : LBFGSBConfig, optional
        Full configuration. Each of `factr`, `pgtol`, `maxcor`, `maxiter`, `verbose`
        given explicitly (not None) overrides the matching field; the others keep
        the config value, or the `LBFGSBConfig` default when no config is passed.

    Returns
    -------
    OptimizeResult
        `x`, `fun` (alias `f`), `jac`, `status` (`Status`), `success`, `message`,
        `nit`, `nfev`, `njev`, `hess_inv` (LinearOperator), `active`.

    Raises
    ------
    InvalidBounds, InvalidConfig
        Before any evaluation, for malformed bounds or controls.
    """
    base = config if config is not None else LBFGSBConfig()
    given = {"factr": factr, "pgtol": pgtol, "maxcor": maxcor, "maxiter": maxiter, "verbose": verbose}
    cfg = LBFGSBConfig(**{**vars(base), **{k: v for k, v in given.items() if v is not None}})
    solver = LBFGSBSolver(fnc, x_init, jcb=jcb, args=args, bounds=bounds,
                          config=cfg, progress_sink=progress_sink)
    return solver.solve()
