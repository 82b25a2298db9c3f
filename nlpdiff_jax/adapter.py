"""Solver adapter: one cache evaluation serving several solver callbacks.

NLP solvers ask for the objective, its gradient, the constraints and the
constraint Jacobian through separate callbacks, in any order and often
repeatedly at the same point. A single ``evaluate`` call produces all four,
so the adapter keeps the most recent result and only re-evaluates when the
requested point differs from the stored one by exact value equality.
Solvers re-query the identical stored ``x``, so no tolerance is applied.
"""

import logging

import numpy as np
import scipy.sparse as sps
from scipy.optimize import BFGS, NonlinearConstraint

from nlpdiff_jax.cache import AbstractEvaluationCache
from nlpdiff_jax.sparsity import AbstractSparsityPattern, get_sparsity
from nlpdiff_jax.types import ConfigurationError

logger = logging.getLogger(__name__)


class EvaluationMemo:
    """Most recent evaluation of a cache, keyed on the exact point.

    Attributes:
        cache: Evaluation cache used to recompute.
        last_x: Point of the stored evaluation.
        f: Objective value at ``last_x``.
        g: Constraint values at ``last_x``.
        df: Objective gradient at ``last_x``.
        dg: Flattened constraint Jacobian at ``last_x``.
        n_evaluations: Number of cache evaluations performed.
    """

    def __init__(self, cache: AbstractEvaluationCache):
        self.cache = cache
        self.last_x = np.zeros(cache.nx)
        self.f = 0.0
        self.g = np.zeros(cache.ng)
        self.df = np.zeros(cache.nx)
        self.dg = np.zeros(cache.jacobian_size)
        self.n_evaluations = 0
        self._valid = False

    def update(self, x) -> None:
        """Evaluate at ``x`` unless it equals the stored point exactly."""
        x = np.asarray(x, dtype=float)
        if x.shape != self.last_x.shape:
            raise ConfigurationError(
                f"x must have shape {self.last_x.shape}, got {x.shape}"
            )
        if self._valid and np.array_equal(x, self.last_x):
            return

        # a failed evaluation leaves the buffers half written
        self._valid = False
        self.f = self.cache.evaluate_into(self.g, self.df, self.dg, x)
        np.copyto(self.last_x, x)
        self._valid = True
        self.n_evaluations += 1


class NLPProblem:
    """Callback interface over an evaluation cache.

    Exposes the callbacks of a cyipopt problem (``objective``,
    ``gradient``, ``constraints``, ``jacobianstructure``, ``jacobian``)
    and helpers that build ``scipy.optimize.minimize`` arguments. Every
    callback shares one ``EvaluationMemo``.

    Example:
        >>> import jax.numpy as jnp
        >>> from nlpdiff_jax import DensePattern, ForwardAD, NLPProblem, create_cache
        >>>
        >>> def func(x):
        ...     return x[0] ** 2 - x[1], jnp.array([x[1] - 2 * x[0]])
        >>>
        >>> cache = create_cache(DensePattern(), ForwardAD(), func, 2, 1)
        >>> problem = NLPProblem(cache, DensePattern())
        >>> problem.objective(jnp.array([1.0, 2.0]))
        -1.0
    """

    def __init__(
        self, cache: AbstractEvaluationCache, pattern: AbstractSparsityPattern
    ):
        self.nx = cache.nx
        self.ng = cache.ng
        self.memo = EvaluationMemo(cache)
        self.rows, self.cols = get_sparsity(pattern, self.nx, self.ng)
        if self.rows.size != cache.jacobian_size:
            raise ConfigurationError(
                f"pattern has {self.rows.size} entries but the cache produces "
                f"{cache.jacobian_size} Jacobian values"
            )

    # cyipopt-shaped callbacks

    def objective(self, x) -> float:
        self.memo.update(x)
        return self.memo.f

    def gradient(self, x) -> np.ndarray:
        self.memo.update(x)
        return self.memo.df.copy()

    def constraints(self, x) -> np.ndarray:
        self.memo.update(x)
        return self.memo.g.copy()

    def jacobianstructure(self) -> tuple[np.ndarray, np.ndarray]:
        return self.rows, self.cols

    def jacobian(self, x) -> np.ndarray:
        self.memo.update(x)
        return self.memo.dg.copy()

    # scipy.optimize helpers

    def fun_and_grad(self, x) -> tuple[float, np.ndarray]:
        """Objective and gradient, for ``minimize(..., jac=True)``."""
        self.memo.update(x)
        return self.memo.f, self.memo.df.copy()

    def dense_jacobian(self, x) -> np.ndarray:
        """Constraint Jacobian as a dense ``(ng, nx)`` array."""
        self.memo.update(x)
        J = np.zeros((self.ng, self.nx))
        J[self.rows, self.cols] = self.memo.dg
        return J

    def sparse_jacobian(self, x) -> sps.csr_matrix:
        """Constraint Jacobian as a CSR matrix."""
        self.memo.update(x)
        return sps.csr_matrix(
            (self.memo.dg.copy(), (self.rows, self.cols)), shape=(self.ng, self.nx)
        )

    def slsqp_constraints(self, lg, ug) -> list[dict]:
        """Constraint dicts for scipy's SLSQP from ``lg <= g(x) <= ug``.

        SLSQP only knows ``c(x) = 0`` and ``c(x) >= 0``, so rows with
        ``lg == ug`` become equalities and every other finite bound becomes
        one inequality.
        """
        lg = np.asarray(lg, dtype=float)
        ug = np.asarray(ug, dtype=float)
        eq = lg == ug
        upper = np.isfinite(ug) & ~eq
        lower = np.isfinite(lg) & ~eq

        constraints = []
        if np.any(eq):
            constraints.append(
                {
                    "type": "eq",
                    "fun": lambda x: self.constraints(x)[eq] - lg[eq],
                    "jac": lambda x: self.dense_jacobian(x)[eq],
                }
            )
        if np.any(upper):
            constraints.append(
                {
                    "type": "ineq",
                    "fun": lambda x: ug[upper] - self.constraints(x)[upper],
                    "jac": lambda x: -self.dense_jacobian(x)[upper],
                }
            )
        if np.any(lower):
            constraints.append(
                {
                    "type": "ineq",
                    "fun": lambda x: self.constraints(x)[lower] - lg[lower],
                    "jac": lambda x: self.dense_jacobian(x)[lower],
                }
            )
        return constraints

    def trust_constr_constraints(self, lg, ug) -> list[NonlinearConstraint]:
        """``NonlinearConstraint`` for scipy's trust-constr method."""
        if self.ng == 0:
            return []
        return [
            NonlinearConstraint(
                self.constraints, lg, ug, jac=self.sparse_jacobian, hess=BFGS()
            )
        ]
