import numpy as np

from lbfgsb import minimize
from lbfgsb.solverdash.client import with_run


def rosen_fg(x: np.ndarray):
    """Extended Rosenbrock, value and gradient in one pass."""
    a, b = x[:-1], x[1:]
    f = float(np.sum(100.0 * (b - a**2) ** 2 + (1.0 - a) ** 2))
    g = np.zeros_like(x)
    g[:-1] = -400.0 * a * (b - a**2) - 2.0 * (1.0 - a)
    g[1:] += 200.0 * (b - a**2)
    return f, g


n = 25
x0 = np.full(n, 3.0)
# odd variables in [1, 100], even ones in [-100, 100]
bounds = [(1.0, 100.0) if i % 2 == 0 else (-100.0, 100.0) for i in range(n)]

with with_run(project="lbfgsb", name=f"rosenbrock-{n}", config={"n": n, "maxcor": 5}) as rec:
    res = minimize(rosen_fg, x0, bounds=bounds, maxcor=5, factr=1e7, pgtol=1e-5,
                   verbose=10, progress_sink=rec)
    rec.log_event(res.message)
    rec.finish(res.status.value)

print("x* =", res.x)
print("active =", np.flatnonzero(res.active))
