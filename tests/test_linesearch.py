import numpy as np
import pytest
from numpy.testing import assert_allclose

from lbfgsb import LBFGSBConfig, classify_bounds
from lbfgsb.blocks.aux import Model
from lbfgsb.blocks.linesearch import LineSearcher, LSStatus
from problems import rosen_fg


def bowl(x):
    return 0.5 * float(x @ x), x.copy()


def run(fg, x, d, bounds=None, alpha_max=np.inf, alpha0=1.0, **cfg):
    x = np.asarray(x, dtype=float)
    d = np.asarray(d, dtype=float)
    box = classify_bounds(bounds, x.size)
    model = Model(fg, x.size)
    f0, g0 = fg(x)
    ls = LineSearcher(LBFGSBConfig(**cfg).validate())
    return ls.search(model, box, x, d, f0, g0, alpha_max, alpha0), model


def test_exact_step_on_quadratic():
    res, model = run(bowl, [1.0, 1.0], [-1.0, -1.0])
    assert res.status is LSStatus.CONVERGED
    assert res.ok
    assert res.alpha == pytest.approx(1.0)
    assert_allclose(res.x, [0.0, 0.0])
    assert res.n_evals == 1 == model.nfev


def test_not_descent_evaluates_nothing():
    res, model = run(bowl, [1.0, 1.0], [1.0, 0.0])
    assert res.status is LSStatus.NOT_DESCENT
    assert res.n_evals == 0
    assert model.nfev == 0
    assert_allclose(res.x, [1.0, 1.0])


def test_step_capped_at_box_edge():
    bounds = [(0.5, None)]
    box = classify_bounds(bounds, 1)
    x, d = np.array([2.0]), np.array([-2.0])
    amax = box.max_step(x, d)
    res, _ = run(bowl, x, d, bounds=bounds, alpha_max=amax)
    assert res.ok
    assert res.alpha <= amax
    assert res.x[0] >= 0.5


def test_extrapolates_short_initial_step():
    res, _ = run(bowl, [10.0], [-1.0], alpha0=0.1)
    assert res.ok
    assert res.alpha > 0.1
    f0, g0 = 50.0, -10.0
    assert res.f <= f0 + 1e-3 * res.alpha * g0
    assert abs(res.g[0] * -1.0) <= 0.9 * abs(g0)


def test_strong_wolfe_on_rosenbrock():
    x = np.array([-1.2, 1.0])
    f0, g0 = rosen_fg(x)
    d = -g0 / np.linalg.norm(g0)
    res, _ = run(rosen_fg, x, d)
    assert res.ok
    gtd0 = g0 @ d
    assert res.f <= f0 + 1e-3 * res.alpha * gtd0
    assert abs(res.g @ d) <= 0.9 * abs(gtd0)


def test_recovers_from_non_finite_trial():
    def fg(x):
        if x[0] < -1.0:
            return np.nan, np.full_like(x, np.nan)
        return bowl(x)

    res, _ = run(fg, [1.0], [-1.0], alpha0=4.0)
    assert res.ok
    assert np.isfinite(res.f)
    assert res.x[0] >= -1.0


def test_all_trials_non_finite():
    def fg(x):
        return np.inf, np.zeros_like(x)

    x = np.array([1.0])
    res = LineSearcher(LBFGSBConfig()).search(
        Model(fg, 1), classify_bounds(None, 1), x, np.array([-1.0]), 0.5, np.array([1.0]), np.inf
    )
    assert res.status is LSStatus.NON_FINITE
    assert res.n_evals == 20
    assert_allclose(res.x, x)


def test_stalls_on_inconsistent_gradient():
    # gradient claims descent but f increases along d
    def fg(x):
        return float(x @ x), -2.0 * x

    res, _ = run(fg, [1.0], [2.0], alpha0=0.5, ls_max_iter=8)
    assert res.status is LSStatus.STALLED
    assert not res.ok
    assert res.n_evals <= 8
    assert res.f > 1.0


def test_initial_step_below_minimum_stalls_without_evaluating():
    res, model = run(bowl, [1.0], [-1.0], alpha0=1e-25)
    assert res.status is LSStatus.STALLED
    assert res.n_evals == 0
    assert model.nfev == 0
    assert_allclose(res.x, [1.0])

