"""Type definitions for nlpdiff-jax.

This module contains the callable signatures and the error type used
throughout the package.
"""

from collections.abc import Callable
from typing import Any

import numpy as np

# Combined residual: f, g = func(x)
# f is the scalar objective, g the vector of ng constraint values.
CombinedFn = Callable[[Any], tuple[Any, Any]]

# User-supplied derivatives: f = func(g, df, dg, x)
# g, df and dg are numpy buffers the function fills in place. For a dense
# pattern dg is an (ng, nx) matrix, for a sparse pattern a vector ordered
# like the pattern's (rows, cols).
UserDerivativeFn = Callable[
    [np.ndarray, np.ndarray, np.ndarray, np.ndarray], float
]


class ConfigurationError(ValueError):
    """Raised when an evaluation cache or sparsity pattern cannot be built.

    Covers mismatched sizes (``nx``/``ng`` disagreeing with the function),
    pattern entries outside the Jacobian, unsupported combinations of
    sparsity pattern and differentiation method, and missing backend
    capabilities.
    """
