import numpy as np
import pytest
import scipy.optimize as so
from numpy.testing import assert_allclose
from scipy.sparse.linalg import LinearOperator

from lbfgsb import InvalidBounds, InvalidConfig, LBFGSBConfig, LBFGSBSolver, Status, minimize
from lbfgsb.blocks.linesearch import LineSearchResult, LSStatus
from problems import rosen_fg, spd_matrix


def square(x):
    return float(x @ x), 2.0 * x


# ---------------------------------------------------------------------------
# Convergence
# ---------------------------------------------------------------------------
@pytest.mark.parametrize("n", [1, 2, 10, 100])
def test_quadratic_bowl(n):
    c = np.linspace(-1.0, 1.0, n)

    def fg(x):
        r = x - c
        return 0.5 * float(r @ r), r

    res = minimize(fg, np.full(n, 5.0))
    assert res.status is Status.CONVERGED
    assert res.success
    assert_allclose(res.x, c, atol=1e-5)
    assert res.nit < 10


def test_lower_bound_active_with_nonzero_gradient():
    res = minimize(square, [3.0], bounds=[(1.0, 5.0)])
    assert res.status is Status.CONVERGED
    assert res.message == "CONVERGENCE: NORM_OF_PROJECTED_GRADIENT_<=_PGTOL"
    assert_allclose(res.x, [1.0])
    assert_allclose(res.jac, [2.0])
    assert res.active[0]
    assert res.fun == res.f == pytest.approx(1.0)


def test_infeasible_start_is_projected():
    seen = []

    def fg(x):
        seen.append(x.copy())
        return square(x)

    res = minimize(fg, [10.0], bounds=[(1.0, 5.0)])
    assert_allclose(seen[0], [5.0])
    assert_allclose(res.x, [1.0])


def test_rosenbrock_matches_scipy():
    n = 10
    x0 = np.full(n, 3.0)
    bounds = [(1.0, 100.0) if i % 2 == 0 else (-100.0, 100.0) for i in range(n)]
    res = minimize(rosen_fg, x0, bounds=bounds, factr=10.0, pgtol=1e-8)
    ref = so.minimize(rosen_fg, x0, jac=True, method="L-BFGS-B", bounds=bounds,
                      options={"ftol": 10.0 * np.finfo(float).eps, "gtol": 1e-8})
    assert res.status in (Status.CONVERGED, Status.LINE_SEARCH_FAILED)
    assert_allclose(res.x, np.ones(n), atol=1e-4)
    assert_allclose(res.x, ref.x, atol=1e-4)
    assert res.fun == pytest.approx(ref.fun, abs=1e-8)


def test_shifted_quadratic_active_set():
    a = np.linspace(1.0, 100.0, 8)
    c = np.array([-1.0, 2.0, -3.0, 0.5, 4.0, -0.1, 1.0, -2.0])

    def fg(x):
        r = x - c
        return 0.5 * float(r @ (a * r)), a * r

    res = minimize(fg, np.ones(8), bounds=[(0.0, None)] * 8, pgtol=1e-9, factr=1e3)
    assert res.status in (Status.CONVERGED, Status.LINE_SEARCH_FAILED)
    assert_allclose(res.x, np.maximum(c, 0.0), atol=1e-5)
    assert np.array_equal(res.active, c < 0.0)


@pytest.mark.parametrize("seed", range(4))
def test_every_evaluation_is_feasible(seed):
    rng = np.random.default_rng(seed)
    n = 15
    A = spd_matrix(rng, n)
    b = rng.standard_normal(n) * 3.0
    lo = rng.uniform(-1.0, 0.0, n)
    hi = lo + rng.uniform(0.1, 1.0, n)
    bounds = [(lo[i], hi[i]) if i % 4 else (lo[i], None) for i in range(n)]
    evaluated = []

    def fg(x):
        evaluated.append(x.copy())
        return 0.5 * float(x @ A @ x) + float(b @ x), A @ x + b

    res = minimize(fg, rng.uniform(-2.0, 2.0, n), bounds=bounds)
    upper = np.array([hi[i] if i % 4 else np.inf for i in range(n)])
    for x in evaluated:
        assert np.all(x >= lo) and np.all(x <= upper)
    assert res.success
    pg = res.x - np.clip(res.x - res.jac, lo, upper)
    assert np.max(np.abs(pg)) < 1e-3


def test_fixed_variable_never_moves():
    seen = []

    def fg(x):
        seen.append(x[1])
        return rosen_fg(x)

    res = minimize(fg, [0.0, 0.3, 0.0], bounds=[(None, None), (0.3, 0.3), (None, None)])
    assert all(v == 0.3 for v in seen)
    assert res.x[1] == 0.3
    assert res.active[1]


def test_converged_at_start_evaluates_once():
    res = minimize(square, [1.0], bounds=[(1.0, 2.0)])
    assert res.success
    assert res.nit == 0
    assert res.nfev == 1


# ---------------------------------------------------------------------------
# Termination
# ---------------------------------------------------------------------------
def test_iteration_limit():
    res = minimize(rosen_fg, np.array([-1.2, 1.0]), maxiter=2)
    assert res.status is Status.MAX_ITER_REACHED
    assert res.message == "STOP: TOTAL NO. of ITERATIONS REACHED LIMIT"
    assert res.nit == 2
    assert not res.success


def test_loose_factr_stops_on_relative_reduction():
    res = minimize(rosen_fg, np.array([-1.2, 1.0]), factr=1e15, pgtol=1e-12)
    assert res.status is Status.CONVERGED
    assert res.message == "CONVERGENCE: REL_REDUCTION_OF_F_<=_FACTR*EPSMCH"


def test_line_search_failure_keeps_start():
    # gradient with the wrong sign: every trial step increases f
    def fg(x):
        return float(x @ x), -2.0 * x

    res = minimize(fg, [1.0])
    assert res.status is Status.LINE_SEARCH_FAILED
    assert res.message == "ABNORMAL_TERMINATION_IN_LNSRCH"
    assert_allclose(res.x, [1.0])
    assert res.nit == 0


def test_non_finite_initial_value():
    res = minimize(lambda x: (np.nan, np.zeros_like(x)), [1.0, 2.0])
    assert res.status is Status.NUMERICAL_ERROR
    assert not res.success
    assert res.nfev == 1
    assert_allclose(res.x, [1.0, 2.0])


def test_non_finite_region_is_avoided():
    def fg(x):
        if x[0] < 0.5:
            return np.inf, np.full_like(x, np.nan)
        return float((x[0] - 1.0) ** 2), np.array([2.0 * (x[0] - 1.0)])

    res = minimize(fg, [4.0])
    assert np.isfinite(res.fun)
    assert res.x[0] >= 0.5
    assert res.status in (Status.CONVERGED, Status.LINE_SEARCH_FAILED)


# ---------------------------------------------------------------------------
# Evaluator conventions
# ---------------------------------------------------------------------------
def test_separate_gradient():
    res = minimize(lambda x: float(x @ x), [3.0, -4.0], jcb=lambda x: 2.0 * x)
    assert res.success
    assert_allclose(res.x, [0.0, 0.0], atol=1e-6)
    assert res.nfev == res.njev


@pytest.mark.parametrize(
    "args, expected",
    [((2.0,), 2.0), ([3.0], 3.0), ({"shift": -1.0}, -1.0), (0.5, 0.5)],
)
def test_args_forwarding(args, expected):
    def fg(x, shift):
        r = x - shift
        return float(r @ r), 2.0 * r

    res = minimize(fg, [0.0, 0.0], args=args)
    assert_allclose(res.x, [expected, expected], atol=1e-6)


def test_args_forwarded_to_gradient():
    calls = []

    def f(x, a, b):
        return float(a * x @ x + b)

    def g(x, a, b):
        calls.append((a, b))
        return 2.0 * a * x

    minimize(f, [1.0], jcb=g, args=(2.0, 7.0))
    assert calls and all(c == (2.0, 7.0) for c in calls)


def test_evaluator_gets_a_private_copy():
    def fg(x):
        out = square(x)
        x[:] = 1e6
        return out

    res = minimize(fg, [2.0, 2.0], bounds=[(-5.0, 5.0)] * 2)
    assert res.success
    assert np.all(np.abs(res.x) <= 5.0)


def test_evaluator_exception_propagates():
    def fg(x):
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError, match="boom"):
        minimize(fg, [1.0])


def test_wrong_gradient_length():
    with pytest.raises(ValueError, match="Gradient"):
        minimize(lambda x: (0.0, np.zeros(3)), [1.0, 2.0])


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
@pytest.mark.parametrize(
    "kwargs",
    [
        {"maxcor": 0},
        {"maxiter": 0},
        {"pgtol": 0.0},
        {"factr": -1.0},
        {"config": LBFGSBConfig(ls_armijo_f=0.9, ls_wolfe_c=0.1)},
        {"config": LBFGSBConfig(ls_max_iter=0)},
    ],
)
def test_invalid_config(kwargs):
    calls = []

    def fg(x):
        calls.append(1)
        return square(x)

    with pytest.raises(InvalidConfig):
        minimize(fg, [1.0], **kwargs)
    assert not calls


def test_non_finite_start_rejected():
    with pytest.raises(InvalidConfig):
        minimize(square, [np.nan, 1.0])


def test_bounds_length_mismatch():
    with pytest.raises(InvalidBounds):
        minimize(square, [1.0, 2.0], bounds=[(0.0, 1.0)])


def test_inverted_bounds():
    with pytest.raises(InvalidBounds):
        minimize(square, [1.0], bounds=[(2.0, 1.0)])


# ---------------------------------------------------------------------------
# Result and reporting
# ---------------------------------------------------------------------------
def test_hess_inv_operator():
    res = minimize(rosen_fg, np.array([-1.2, 1.0]))
    assert isinstance(res.hess_inv, LinearOperator)
    assert res.hess_inv.shape == (2, 2)
    H = res.hess_inv @ np.eye(2)
    assert_allclose(H, H.T, rtol=1e-8, atol=1e-12)
    assert np.all(np.linalg.eigvalsh(0.5 * (H + H.T)) > 0.0)
    assert_allclose(res.hess_inv.matvec(res.jac), H @ res.jac)


def test_deterministic():
    a = minimize(rosen_fg, np.full(6, 3.0), maxcor=3)
    b = minimize(rosen_fg, np.full(6, 3.0), maxcor=3)
    assert np.array_equal(a.x, b.x)
    assert (a.nit, a.nfev) == (b.nit, b.nfev)


def test_progress_sink_object():
    class Sink:
        def __init__(self):
            self.rows = []

        def on_iteration(self, k, f, proj_grad_norm):
            self.rows.append((k, f, proj_grad_norm))

    sink = Sink()
    res = minimize(rosen_fg, np.array([-1.2, 1.0]), progress_sink=sink)
    assert len(sink.rows) == res.nit + 1
    assert [r[0] for r in sink.rows] == list(range(res.nit + 1))
    fs = [r[1] for r in sink.rows]
    assert all(b <= a for a, b in zip(fs, fs[1:]))
    assert sink.rows[-1][1] == res.fun


def test_progress_sink_callable_and_errors_ignored(caplog):
    ks = []

    def sink(k, f, pg):
        ks.append(k)
        raise RuntimeError("sink failure")

    res = minimize(square, [3.0, 1.0], progress_sink=sink)
    assert res.success
    assert ks == list(range(res.nit + 1))
    assert "sink failure" in caplog.text


def test_silent_by_default(capsys):
    minimize(square, [3.0])
    assert capsys.readouterr().out == ""


def test_verbose_summary_only(capsys):
    res = minimize(square, [3.0], verbose=0)
    out = capsys.readouterr().out.strip().splitlines()
    assert len(out) == 1
    assert res.message in out[0]


def test_verbose_table(capsys):
    res = minimize(rosen_fg, np.array([-1.2, 1.0]), verbose=1)
    out = capsys.readouterr().out.splitlines()
    assert "|proj g|" in out[0]
    rows = [line for line in out if line.split() and line.split()[0].isdigit()]
    assert len(rows) == res.nit + 1
    assert res.message in out[-1]


def test_solver_object_exposes_history():
    solver = LBFGSBSolver(rosen_fg, np.array([-1.2, 1.0]), config=LBFGSBConfig(maxcor=5))
    res = solver.solve()
    assert solver.status is res.status
    assert len(solver.history) == res.nit
    assert solver.history[-1]["f"] == res.fun


# ---------------------------------------------------------------------------
# Config precedence
# ---------------------------------------------------------------------------
def test_config_alone_is_respected():
    cfg = LBFGSBConfig(maxiter=2, pgtol=1e-12, factr=1.0)
    res = minimize(rosen_fg, np.array([-1.2, 1.0]), config=cfg)
    assert res.status is Status.MAX_ITER_REACHED
    assert res.nit == 2


def test_explicit_keyword_overrides_config():
    cfg = LBFGSBConfig(maxiter=2, pgtol=1e-12, factr=1.0)
    res = minimize(rosen_fg, np.array([-1.2, 1.0]), config=cfg, maxiter=3)
    assert res.status is Status.MAX_ITER_REACHED
    assert res.nit == 3
    # the caller's config value is left alone
    assert cfg.maxiter == 2


def test_config_verbose_kept_when_keyword_omitted(capsys):
    minimize(square, [3.0], config=LBFGSBConfig(verbose=0))
    assert len(capsys.readouterr().out.strip().splitlines()) == 1


# ---------------------------------------------------------------------------
# Memory refresh after a failed line search
# ---------------------------------------------------------------------------
def stall_after_first_iteration(solver, times):
    """Report `times` line-search stalls once the first iteration is accepted."""
    search = solver.ls.search
    store_sizes = []
    remaining = [times]

    def stalled_search(model, box, x, d, f0, g0, alpha_max, alpha0=1.0):
        store_sizes.append(len(solver.memory))
        if solver.nit >= 1 and remaining[0] > 0:
            remaining[0] -= 1
            return LineSearchResult(LSStatus.STALLED, 0.0, x.copy(), f0, g0.copy(), 0)
        return search(model, box, x, d, f0, g0, alpha_max, alpha0)

    solver.ls.search = stalled_search
    return store_sizes


def test_stall_refreshes_memory_and_retries():
    solver = LBFGSBSolver(rosen_fg, np.array([-1.2, 1.0]))
    store_sizes = stall_after_first_iteration(solver, times=1)
    res = solver.solve()

    # second search stalls with one stored pair, the retry runs on an empty store
    assert store_sizes[:3] == [0, 1, 0]
    assert res.status is Status.CONVERGED
    assert_allclose(res.x, [1.0, 1.0], atol=1e-4)


def test_stall_after_retry_ends_the_run():
    solver = LBFGSBSolver(rosen_fg, np.array([-1.2, 1.0]))
    store_sizes = stall_after_first_iteration(solver, times=2)
    res = solver.solve()

    assert store_sizes == [0, 1, 0]
    assert res.status is Status.LINE_SEARCH_FAILED
    assert res.message == "ABNORMAL_TERMINATION_IN_LNSRCH"
    assert res.nit == 1
    assert len(solver.memory) == 0
    # the point accepted by the first iteration is kept
    assert res.fun == solver.history[-1]["f"]
