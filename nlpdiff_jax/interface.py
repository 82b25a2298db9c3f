"""Convenience entry point: build the cache and hand it to a scipy solver.

Solves::

    min     f(x)
    s.t.    lx <= x <= ux
            lg <= g(x) <= ug

with ``f, g = func(x)`` (or ``f = func(g, df, dg, x)`` for user-supplied
derivatives). Equality constraints are expressed as ``lg == ug``.
"""

import logging
from typing import Any, Optional

import equinox as eqx
import numpy as np
from scipy.optimize import BFGS, Bounds, OptimizeResult
from scipy.optimize import minimize as scipy_minimize

from nlpdiff_jax.adapter import NLPProblem
from nlpdiff_jax.cache import MethodSpec, create_cache
from nlpdiff_jax.methods import ForwardFD
from nlpdiff_jax.sparsity import AbstractSparsityPattern, DensePattern
from nlpdiff_jax.types import ConfigurationError
from nlpdiff_jax.utils import resize_bounds

logger = logging.getLogger(__name__)

SCIPY_METHODS = ("SLSQP", "trust-constr")


class ScipySolver(eqx.Module):
    """Use ``scipy.optimize.minimize`` as the optimizer.

    Attributes:
        method: ``"SLSQP"`` or ``"trust-constr"``.
        options: Solver options forwarded to ``scipy.optimize.minimize``.
    """

    method: str = eqx.field(static=True, default="SLSQP")
    options: dict[str, Any] = eqx.field(default_factory=dict)

    def __check_init__(self):
        if self.method not in SCIPY_METHODS:
            raise ConfigurationError(
                f"unsupported scipy method {self.method!r}, "
                f"expected one of {SCIPY_METHODS}"
            )

    def optimize(
        self,
        problem: NLPProblem,
        x0: np.ndarray,
        lx: np.ndarray,
        ux: np.ndarray,
        lg: np.ndarray,
        ug: np.ndarray,
    ) -> tuple[np.ndarray, float, str, OptimizeResult]:
        bounds = Bounds(lx, ux)
        if self.method == "SLSQP":
            result = scipy_minimize(
                problem.fun_and_grad,
                x0,
                jac=True,
                method="SLSQP",
                bounds=bounds,
                constraints=problem.slsqp_constraints(lg, ug),
                options=self.options,
            )
        else:
            result = scipy_minimize(
                problem.fun_and_grad,
                x0,
                jac=True,
                hess=BFGS(),
                method="trust-constr",
                bounds=bounds,
                constraints=problem.trust_constr_constraints(lg, ug),
                options=self.options,
            )
        return result.x, float(result.fun), str(result.message), result


class Options(eqx.Module):
    """Options for ``minimize``.

    Default is a dense Jacobian, forward finite differencing and scipy's
    SLSQP.

    Attributes:
        sparsity: Sparsity pattern of the constraint Jacobian.
        derivatives: Differentiation method, or for a sparse pattern a
            ``(gradient, jacobian)`` pair of methods.
        solver: Optimizer to use.
    """

    sparsity: AbstractSparsityPattern = eqx.field(default_factory=DensePattern)
    derivatives: MethodSpec = eqx.field(default_factory=ForwardFD)
    solver: ScipySolver = eqx.field(default_factory=ScipySolver)


def minimize(
    func,
    x0,
    ng: int,
    lx=-np.inf,
    ux=np.inf,
    lg=-np.inf,
    ug=0.0,
    options: Optional[Options] = None,
) -> tuple[np.ndarray, float, str, OptimizeResult]:
    """Minimize ``f`` subject to bounds and constraints.

    Scalar bounds are broadcast to the number of variables or constraints.

    Args:
        func: ``f, g = func(x)``; with ``UserSupplied`` derivatives
            ``f = func(g, df, dg, x)``.
        x0: Starting point.
        ng: Number of constraints.
        lx, ux: Variable bounds.
        lg, ug: Constraint bounds; default is ``g(x) <= 0``.
        options: Sparsity, derivatives and solver.

    Returns:
        Tuple ``(xopt, fopt, info, result)`` with the solver message as
        ``info`` and the raw solver result.
    """
    if options is None:
        options = Options()

    x0 = np.atleast_1d(np.asarray(x0, dtype=float))
    nx = x0.size
    lx = resize_bounds(lx, nx)
    ux = resize_bounds(ux, nx)
    lg = resize_bounds(lg, ng)
    ug = resize_bounds(ug, ng)

    cache = create_cache(
        options.sparsity, options.derivatives, func, nx, ng, x_probe=x0
    )
    problem = NLPProblem(cache, options.sparsity)

    xopt, fopt, info, result = options.solver.optimize(problem, x0, lx, ux, lg, ug)
    logger.info(
        "%s finished after %d evaluations: %s",
        options.solver.method,
        problem.memo.n_evaluations,
        info,
    )
    return xopt, fopt, info, result
