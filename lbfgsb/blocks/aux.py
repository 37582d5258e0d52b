# aux.py
# Shared infrastructure for the L-BFGS-B blocks: configuration, terminal
# statuses, error taxonomy and the objective/gradient model wrapper.

from __future__ import annotations

# =========================
# Standard library
# =========================
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Tuple

# =========================
# Third-party
# =========================
import numpy as np

DBL_EPSILON = float(np.finfo(float).eps)


# ======================================
# Errors
# ======================================
class InvalidBounds(ValueError):
    """Bounds do not match the problem size, or some lower bound exceeds its upper bound."""


class InvalidConfig(ValueError):
    """A solver control is out of range (raised before the first evaluation)."""


# ======================================
# Enums
# ======================================
class Status(Enum):
    """Terminal states of one minimization run."""

    CONVERGED = "converged"
    MAX_ITER_REACHED = "max_iter_reached"
    LINE_SEARCH_FAILED = "line_search_failed"
    NUMERICAL_ERROR = "numerical_error"


# ======================================
# Global configuration
# ======================================
@dataclass
class LBFGSBConfig:
    """
    Configuration for one L-BFGS-B run.

    Notes
    -----
    • The first block mirrors the public `minimize` keywords.
    • Line-search constants default to ftol=1e-3, gtol=0.9, maxls=20 (as in
      L-BFGS-B 3.0), not to the textbook c1=1e-4.
    • Nothing here is global: every solver instance owns its config value.
    """

    # ---------------- Core controls ----------------
    factr: float = 1e7  # stop when rel. reduction of f <= factr * DBL_EPSILON
    pgtol: float = 1e-5  # stop when max |proj g_i| <= pgtol
    maxcor: int = 10  # number of stored correction pairs
    maxiter: int = 15000

    # ---------------- Output ----------------
    verbose: Optional[int] = None  # None/<0 silent, 0 summary, k>0 every k iters

    # ---------------- Line search ----------------
    ls_armijo_f: float = 1e-3  # c1, sufficient decrease
    ls_wolfe_c: float = 0.9  # c2, curvature
    ls_max_iter: int = 20  # evaluations per line search
    # evaluations before a collapsed zoom bracket counts as stalled; the other
    # stalled exits (ls_max_iter spent, step below ls_min_alpha) ignore it
    ls_min_iter: int = 3
    ls_backtrack: float = 0.5  # shrink factor after a non-finite trial
    ls_extrapolate: float = 4.0  # max growth of the trial step while bracketing
    ls_min_alpha: float = 1e-20  # bracketing gives up below this step
    max_step: float = 1e10  # cap on the step when no bound limits it

    # ---------------- Memory ----------------
    curvature_eps: float = DBL_EPSILON  # admit (s, y) iff s'y > eps * y'y

    # ---------------- Subspace ----------------
    subspace_max_cond: float = 1e12  # fall back to steepest descent above this

    def validate(self) -> "LBFGSBConfig":
        if int(self.maxcor) < 1:
            raise InvalidConfig(f"maxcor must be positive, got {self.maxcor}")
        if int(self.maxiter) < 1:
            raise InvalidConfig(f"maxiter must be positive, got {self.maxiter}")
        if not self.pgtol > 0.0:
            raise InvalidConfig(f"pgtol must be positive, got {self.pgtol}")
        if not self.factr > 0.0:
            raise InvalidConfig(f"factr must be positive, got {self.factr}")
        if not 0.0 < self.ls_armijo_f < self.ls_wolfe_c < 1.0:
            raise InvalidConfig(
                f"line search needs 0 < ls_armijo_f < ls_wolfe_c < 1, "
                f"got {self.ls_armijo_f}, {self.ls_wolfe_c}"
            )
        if int(self.ls_max_iter) < 1:
            raise InvalidConfig(f"ls_max_iter must be positive, got {self.ls_max_iter}")
        if not 0.0 < self.ls_backtrack < 1.0:
            raise InvalidConfig(f"ls_backtrack must lie in (0, 1), got {self.ls_backtrack}")
        if not self.ls_extrapolate > 1.0:
            raise InvalidConfig(f"ls_extrapolate must exceed 1, got {self.ls_extrapolate}")
        if not self.max_step > 0.0:
            raise InvalidConfig(f"max_step must be positive, got {self.max_step}")
        if self.curvature_eps < 0.0:
            raise InvalidConfig(f"curvature_eps must be non-negative, got {self.curvature_eps}")
        self.maxcor = int(self.maxcor)
        self.maxiter = int(self.maxiter)
        self.ls_max_iter = int(self.ls_max_iter)
        self.ls_min_iter = int(max(1, self.ls_min_iter))
        return self


# ======================================
# Objective model
# ======================================


def _as_float_array(a, shape=None) -> np.ndarray:
    out = np.asarray(a, dtype=float)
    if shape is not None and out.shape != shape:
        out = out.reshape(shape)
    return out


def _as_scalar(v) -> float:
    arr = np.asarray(v, dtype=float)
    if arr.size != 1:
        raise ValueError(f"Objective must return a scalar, got shape {arr.shape}")
    return float(arr.reshape(-1)[0])


class Model:
    """
    Encapsulates the caller's objective and gradient.

    Two calling conventions are supported:
      • `jcb is None`: `fnc(x, *args)` returns `(f, g)`;
      • otherwise `fnc(x, *args)` returns f and `jcb(x, *args)` returns g.

    `args` is forwarded as positional arguments (tuple/list), keyword
    arguments (dict), or a single extra positional argument (anything else).
    The last evaluated point is cached, so re-requesting it costs nothing.
    """

    __slots__ = (
        "n",
        "fnc",
        "jcb",
        "args",
        "nfev",
        "njev",
        "_cache_x",
        "_cache",
    )

    def __init__(
        self,
        fnc: Callable,
        n: int,
        jcb: Optional[Callable] = None,
        args: Any = None,
    ):
        if n is None or n <= 0:
            raise ValueError(f"Number of variables n must be positive, got {n}")
        if not callable(fnc):
            raise ValueError("Objective function fnc must be callable")
        if jcb is not None and not callable(jcb):
            raise ValueError("Gradient function jcb must be callable")

        self.n = int(n)
        self.fnc = fnc
        self.jcb = jcb
        self.args = args
        self.nfev = 0
        self.njev = 0
        self._cache_x: Optional[np.ndarray] = None
        self._cache: Optional[Tuple[float, np.ndarray]] = None

    def _call(self, fun: Callable, x: np.ndarray):
        args = self.args
        if args is None:
            return fun(x)
        if isinstance(args, dict):
            return fun(x, **args)
        if isinstance(args, (tuple, list)):
            return fun(x, *args)
        return fun(x, args)

    # ---------- fused evaluation ----------
    def eval_all(self, x: np.ndarray) -> Tuple[float, np.ndarray]:
        """
        Returns (f, g) at x. Non-finite values are passed through untouched;
        deciding what to do with them is the caller's business.
        """
        if self._cache_x is not None and np.array_equal(x, self._cache_x):
            f, g = self._cache
            return f, g.copy()

        # hand the caller a private copy so in-place edits cannot leak back
        xq = np.array(x, dtype=float)
        if self.jcb is None:
            out = self._call(self.fnc, xq)
            try:
                f_raw, g_raw = out
            except (TypeError, ValueError):
                raise ValueError(
                    "fnc must return (f, g) when no separate gradient function is given"
                ) from None
            self.nfev += 1
            self.njev += 1
        else:
            f_raw = self._call(self.fnc, xq)
            self.nfev += 1
            g_raw = self._call(self.jcb, xq)
            self.njev += 1

        f = _as_scalar(f_raw)
        g = _as_float_array(g_raw).reshape(-1)
        if g.size != self.n:
            raise ValueError(f"Gradient has {g.size} entries, expected {self.n}")

        self._cache_x = np.array(x, dtype=float)
        self._cache = (f, g.copy())
        if not (np.isfinite(f) and np.all(np.isfinite(g))):
            logging.debug(f"Non-finite evaluation: f={f}, finite(g)={bool(np.all(np.isfinite(g)))}")
        return f, g
