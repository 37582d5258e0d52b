"""
Box handling for L-BFGS-B.

`classify_bounds` turns the caller's (lower, upper) pairs into a `Box`:
per-variable bound-type tags plus finite bound values, and the small set of
box operations the solver needs (projection, projected gradient, largest
feasible step along a direction).

Bound-type codes follow the classic `nbd` convention:

    0  UNBOUNDED   no finite bound on either side
    1  LOWER       finite lower bound only
    2  BOTH        finite lower and upper bounds
    3  UPPER       finite upper bound only

Non-finite entries (±inf, NaN) and `None` mean "no bound on that side".
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, Sequence, Union

import numpy as np

from .aux import InvalidBounds

BoundsLike = Union[None, np.ndarray, Sequence[Sequence[Optional[float]]]]


class BoundType(IntEnum):
    UNBOUNDED = 0
    LOWER = 1
    BOTH = 2
    UPPER = 3


def _side(values) -> np.ndarray:
    out = np.array([np.nan if v is None else v for v in values], dtype=float)
    return out


@dataclass(frozen=True)
class Box:
    """
    Feasible region l <= x <= u. Missing sides are stored as -inf / +inf so
    that `np.clip` and comparisons work without masking.
    """

    lower: np.ndarray
    upper: np.ndarray
    nbd: np.ndarray

    @property
    def n(self) -> int:
        return int(self.nbd.size)

    @property
    def has_lower(self) -> np.ndarray:
        return (self.nbd == BoundType.LOWER) | (self.nbd == BoundType.BOTH)

    @property
    def has_upper(self) -> np.ndarray:
        return (self.nbd == BoundType.UPPER) | (self.nbd == BoundType.BOTH)

    @property
    def fixed(self) -> np.ndarray:
        return (self.nbd == BoundType.BOTH) & (self.upper - self.lower <= 0.0)

    @property
    def constrained(self) -> bool:
        return bool(np.any(self.nbd != BoundType.UNBOUNDED))

    @property
    def boxed(self) -> bool:
        return bool(np.all(self.nbd == BoundType.BOTH))

    # ---- feasibility ---- #
    def project(self, x: np.ndarray) -> np.ndarray:
        return np.clip(x, self.lower, self.upper)

    def is_feasible(self, x: np.ndarray) -> bool:
        return bool(np.all(x >= self.lower) and np.all(x <= self.upper))

    def projected_gradient(self, x: np.ndarray, g: np.ndarray) -> np.ndarray:
        """x - P(x - g): zero where a bound blocks the steepest-descent move."""
        return x - self.project(x - g)

    def projected_gradient_norm(self, x: np.ndarray, g: np.ndarray) -> float:
        pg = self.projected_gradient(x, g)
        return float(np.max(np.abs(pg))) if pg.size else 0.0

    def active_mask(self, x: np.ndarray, g: np.ndarray) -> np.ndarray:
        """Variables sitting on a bound with the gradient pushing outward."""
        at_lower = self.has_lower & (x <= self.lower) & (g > 0.0)
        at_upper = self.has_upper & (x >= self.upper) & (g < 0.0)
        return at_lower | at_upper | self.fixed

    def max_step(self, x: np.ndarray, d: np.ndarray) -> float:
        """Largest alpha >= 0 with l <= x + alpha d <= u (inf when unlimited)."""
        amax = np.inf
        up = (d > 0.0) & self.has_upper
        if np.any(up):
            amax = min(amax, float(np.min((self.upper[up] - x[up]) / d[up])))
        down = (d < 0.0) & self.has_lower
        if np.any(down):
            amax = min(amax, float(np.min((self.lower[down] - x[down]) / d[down])))
        return max(0.0, amax)


def classify_bounds(bounds: BoundsLike, n: int) -> Box:
    """
    Build the per-variable bound representation.

    Parameters
    ----------
    bounds : None, (n, 2) array-like, or sequence of n (lower, upper) pairs
        `None` means every variable is unbounded.
    n : int
        Number of variables.

    Raises
    ------
    InvalidBounds
        If the shape does not match `n`, or `lower > upper` for a variable
        bounded on both sides.
    """
    n = int(n)
    if bounds is None:
        return Box(
            lower=np.full(n, -np.inf),
            upper=np.full(n, np.inf),
            nbd=np.zeros(n, dtype=np.int8),
        )

    try:
        pairs = list(bounds)
    except TypeError:
        raise InvalidBounds("bounds must be a sequence of (lower, upper) pairs") from None
    if len(pairs) != n:
        raise InvalidBounds(f"length of bounds ({len(pairs)}) != length of x_init ({n})")
    for i, pair in enumerate(pairs):
        if pair is None or np.ndim(pair) != 1 or len(pair) != 2:
            raise InvalidBounds(f"bounds[{i}] must be a (lower, upper) pair, got {pair!r}")

    lo = _side(p[0] for p in pairs)
    hi = _side(p[1] for p in pairs)
    lo_fin = np.isfinite(lo)
    hi_fin = np.isfinite(hi)

    nbd = np.zeros(n, dtype=np.int8)
    nbd[lo_fin & ~hi_fin] = BoundType.LOWER
    nbd[lo_fin & hi_fin] = BoundType.BOTH
    nbd[~lo_fin & hi_fin] = BoundType.UPPER

    both = nbd == BoundType.BOTH
    bad = np.flatnonzero(both & (lo > hi))
    if bad.size:
        i = int(bad[0])
        raise InvalidBounds(f"lower bound exceeds upper bound for variable {i}: {lo[i]} > {hi[i]}")

    lower = np.where(lo_fin, lo, -np.inf)
    upper = np.where(hi_fin, hi, np.inf)
    return Box(lower=lower, upper=upper, nbd=nbd)
