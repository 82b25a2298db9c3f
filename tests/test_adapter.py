"""Tests for the solver adapter and the convenience entry point."""

import logging
import math

import jax
import jax.numpy as jnp
import numpy as np
import pytest
import scipy.sparse as sps

from nlpdiff_jax import (
    CentralFD,
    ConfigurationError,
    DensePattern,
    EvaluationMemo,
    ForwardAD,
    ForwardFD,
    NLPProblem,
    Options,
    ReverseAD,
    ScipySolver,
    SparsePattern,
    UserSupplied,
    create_cache,
    detect_sparsity_in_bounds,
    minimize,
)

# Enable 64-bit precision for numerical accuracy
jax.config.update("jax_enable_x64", True)

X = np.array([1.0, 2.0])
SPARSE_PATTERN = SparsePattern([0, 2, 0, 1], [0, 0, 1, 1])


def example(x):
    return x[0] ** 2 - x[1], jnp.array([x[1] - 2 * x[0], -x[1], x[0] ** 2])


class TestEvaluationMemo:
    def test_same_point_evaluates_once(self):
        cache = create_cache(DensePattern(), ForwardAD(), example, 2, 3)
        memo = EvaluationMemo(cache)

        memo.update(X)
        memo.update(X.copy())
        memo.update(jnp.array([1.0, 2.0]))

        assert memo.n_evaluations == 1
        assert memo.f == pytest.approx(-1.0)
        np.testing.assert_allclose(memo.df, [2.0, -1.0])

    def test_exact_comparison(self):
        cache = create_cache(DensePattern(), ForwardAD(), example, 2, 3)
        memo = EvaluationMemo(cache)

        memo.update(X)
        memo.update(X + np.array([1e-15, 0.0]))

        assert memo.n_evaluations == 2

    def test_solver_mutating_its_x(self):
        cache = create_cache(DensePattern(), ForwardAD(), example, 2, 3)
        memo = EvaluationMemo(cache)
        x = X.copy()

        memo.update(x)
        x[0] = 3.0
        memo.update(x)

        assert memo.n_evaluations == 2
        assert memo.f == pytest.approx(7.0)

    def test_failed_evaluation_invalidates(self):
        def user(g, df, dg, x):
            if x[0] < 0:
                raise RuntimeError("outside the domain")
            g[:] = x[0]
            df[:] = 1.0
            dg[:] = 1.0
            return float(x[0])

        cache = create_cache(DensePattern(), UserSupplied(), user, 1, 1)
        memo = EvaluationMemo(cache)

        memo.update(np.array([2.0]))
        with pytest.raises(RuntimeError):
            memo.update(np.array([-1.0]))
        memo.update(np.array([2.0]))

        assert memo.n_evaluations == 2
        assert memo.f == 2.0

    def test_wrong_shape(self):
        cache = create_cache(DensePattern(), ForwardAD(), example, 2, 3)
        memo = EvaluationMemo(cache)
        with pytest.raises(ConfigurationError):
            memo.update(np.ones(3))


class TestNLPProblem:
    def test_callbacks_share_one_evaluation(self):
        cache = create_cache(SPARSE_PATTERN, (ReverseAD(), ForwardAD()), example, 2, 3)
        problem = NLPProblem(cache, SPARSE_PATTERN)

        assert problem.objective(X) == pytest.approx(-1.0)
        np.testing.assert_allclose(problem.gradient(X), [2.0, -1.0])
        np.testing.assert_allclose(problem.constraints(X), [0.0, -2.0, 1.0])
        np.testing.assert_allclose(problem.jacobian(X), [-2.0, 2.0, 1.0, -1.0])
        assert problem.memo.n_evaluations == 1

    def test_jacobian_structure_dense(self):
        cache = create_cache(DensePattern(), ForwardFD(), example, 2, 3)
        problem = NLPProblem(cache, DensePattern())

        rows, cols = problem.jacobianstructure()

        np.testing.assert_array_equal(rows, [0, 1, 2, 0, 1, 2])
        np.testing.assert_array_equal(cols, [0, 0, 0, 1, 1, 1])

    def test_structure_matches_values(self):
        expected = np.array([[-2.0, 1.0], [0.0, -1.0], [2.0, 0.0]])
        for pattern, method in [
            (DensePattern(), ForwardAD()),
            (SPARSE_PATTERN, (ReverseAD(), ForwardAD())),
        ]:
            problem = NLPProblem(create_cache(pattern, method, example, 2, 3), pattern)
            rows, cols = problem.jacobianstructure()
            np.testing.assert_allclose(problem.jacobian(X), expected[rows, cols])
            np.testing.assert_allclose(problem.dense_jacobian(X), expected)

    def test_sparse_jacobian(self):
        cache = create_cache(SPARSE_PATTERN, ForwardAD(), example, 2, 3)
        problem = NLPProblem(cache, SPARSE_PATTERN)

        J = problem.sparse_jacobian(X)

        assert sps.issparse(J)
        assert J.nnz == 4
        np.testing.assert_allclose(
            J.toarray(), [[-2.0, 1.0], [0.0, -1.0], [2.0, 0.0]]
        )

    def test_returned_arrays_are_copies(self):
        cache = create_cache(DensePattern(), ForwardAD(), example, 2, 3)
        problem = NLPProblem(cache, DensePattern())

        df = problem.gradient(X)
        df[:] = 0.0

        np.testing.assert_allclose(problem.gradient(X), [2.0, -1.0])

    def test_pattern_cache_mismatch(self):
        cache = create_cache(SPARSE_PATTERN, ForwardAD(), example, 2, 3)
        with pytest.raises(ConfigurationError):
            NLPProblem(cache, DensePattern())

    def test_slsqp_constraints(self):
        cache = create_cache(DensePattern(), ForwardAD(), example, 2, 3)
        problem = NLPProblem(cache, DensePattern())
        lg = np.array([0.0, -np.inf, -1.0])
        ug = np.array([0.0, 1.0, np.inf])

        eq, upper, lower = problem.slsqp_constraints(lg, ug)

        assert eq["type"] == "eq"
        np.testing.assert_allclose(eq["fun"](X), [0.0])
        np.testing.assert_allclose(eq["jac"](X), [[-2.0, 1.0]])
        assert upper["type"] == "ineq"
        np.testing.assert_allclose(upper["fun"](X), [3.0])
        np.testing.assert_allclose(upper["jac"](X), [[0.0, 1.0]])
        assert lower["type"] == "ineq"
        np.testing.assert_allclose(lower["fun"](X), [2.0])
        np.testing.assert_allclose(lower["jac"](X), [[2.0, 0.0]])
        assert problem.memo.n_evaluations == 1


def shifted_quadratic(x):
    """min (x0-1)^2 + (x1-2)^2  s.t.  x0 + x1 - 1 <= 0  =>  (0, 1)."""
    return (x[0] - 1) ** 2 + (x[1] - 2) ** 2, jnp.array([x[0] + x[1] - 1.0])


def circle(x):
    """min (x0-2)^2 + (x1-2)^2  s.t.  x0^2 + x1^2 = 1  =>  (1/sqrt2, 1/sqrt2)."""
    return (x[0] - 2) ** 2 + (x[1] - 2) ** 2, jnp.array([x[0] ** 2 + x[1] ** 2])


class TestMinimize:
    @pytest.mark.parametrize("method", [ForwardAD(), ReverseAD(), CentralFD()])
    def test_inequality(self, method):
        options = Options(derivatives=method)
        xopt, fopt, info, result = minimize(
            shifted_quadratic, [0.0, 0.0], 1, options=options
        )
        assert result.success, info
        np.testing.assert_allclose(xopt, [0.0, 1.0], atol=1e-4)
        assert fopt == pytest.approx(2.0, abs=1e-5)

    def test_default_options(self):
        xopt, _, _, result = minimize(shifted_quadratic, [0.0, 0.0], 1)
        assert result.success
        np.testing.assert_allclose(xopt, [0.0, 1.0], atol=1e-4)

    def test_equality(self):
        options = Options(derivatives=ForwardAD())
        xopt, _, _, result = minimize(
            circle, [0.5, 0.5], 1, lg=1.0, ug=1.0, options=options
        )
        assert result.success
        np.testing.assert_allclose(xopt, [1 / np.sqrt(2), 1 / np.sqrt(2)], rtol=1e-4)

    def test_bounds(self):
        options = Options(derivatives=ReverseAD())
        xopt, _, _, result = minimize(
            shifted_quadratic,
            [0.0, 0.0],
            1,
            lx=-1.0,
            ux=0.5,
            ug=np.inf,
            options=options,
        )
        assert result.success
        np.testing.assert_allclose(xopt, [0.5, 0.5], atol=1e-6)

    def test_sparse_trust_constr(self):
        def chain(x):
            return jnp.sum((x - 2.0) ** 2), x[:-1] + x[1:]

        n = 4
        sp = detect_sparsity_in_bounds(
            ForwardAD(), chain, n - 1, -np.ones(n), np.ones(n)
        )
        options = Options(
            sparsity=sp,
            derivatives=(ReverseAD(), ForwardAD()),
            solver=ScipySolver(method="trust-constr"),
        )
        xopt, _, _, _ = minimize(chain, np.zeros(n), n - 1, ug=3.0, options=options)
        np.testing.assert_allclose(xopt, 1.5 * np.ones(n), atol=1e-3)

    def test_unknown_scipy_method(self):
        with pytest.raises(ConfigurationError):
            ScipySolver(method="Nelder-Mead")

    def test_sizes_checked_at_x0(self, caplog):
        def log_utility(x):
            return -math.log(x[0]) - math.log(x[1]), np.array([x[0] + x[1] - 2.0])

        with caplog.at_level(logging.WARNING, logger="nlpdiff_jax.cache"):
            xopt, _, _, result = minimize(
                log_utility, [0.5, 0.5], 1, lx=0.01, ux=10.0, options=Options()
            )
        assert "x_probe" not in caplog.text
        assert result.success
        np.testing.assert_allclose(xopt, [1.0, 1.0], atol=1e-3)
