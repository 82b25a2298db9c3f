"""nlpdiff-jax: objective, constraint and derivative evaluation for NLP solvers.

This package gives gradient-based optimizers one uniform way to obtain the
objective value, its gradient, the constraint vector and its Jacobian,
whatever the differentiation method (forward- or reverse-mode automatic
differentiation with JAX, finite differences with scipy, or user-supplied
derivatives) and whether the constraint Jacobian is dense or sparse. Sparse
Jacobians are compressed by column coloring, and their sparsity pattern can
be detected automatically.
"""

from nlpdiff_jax.adapter import EvaluationMemo, NLPProblem
from nlpdiff_jax.cache import (
    AbstractEvaluationCache,
    DenseCache,
    SparseCache,
    UserDenseCache,
    UserSparseCache,
    create_cache,
    evaluate,
)
from nlpdiff_jax.interface import Options, ScipySolver, minimize
from nlpdiff_jax.methods import (
    DEFAULT_CAPABILITIES,
    AbstractDiffMethod,
    CentralFD,
    ComplexStep,
    ForwardAD,
    ForwardFD,
    ReverseAD,
    UserSupplied,
)
from nlpdiff_jax.sparsity import (
    DensePattern,
    SparsePattern,
    build_sparsity_pattern,
    detect_sparsity,
    detect_sparsity_in_bounds,
    get_sparsity,
    pattern_from_matrix,
)
from nlpdiff_jax.types import ConfigurationError

__all__ = [
    # Differentiation methods
    "AbstractDiffMethod",
    "ForwardAD",
    "ReverseAD",
    "ForwardFD",
    "CentralFD",
    "ComplexStep",
    "UserSupplied",
    "DEFAULT_CAPABILITIES",
    # Sparsity
    "DensePattern",
    "SparsePattern",
    "build_sparsity_pattern",
    "detect_sparsity",
    "detect_sparsity_in_bounds",
    "get_sparsity",
    "pattern_from_matrix",
    # Evaluation caches
    "AbstractEvaluationCache",
    "DenseCache",
    "SparseCache",
    "UserDenseCache",
    "UserSparseCache",
    "create_cache",
    "evaluate",
    # Solver adapter
    "EvaluationMemo",
    "NLPProblem",
    # Convenience entry point
    "Options",
    "ScipySolver",
    "minimize",
    # Errors
    "ConfigurationError",
]
