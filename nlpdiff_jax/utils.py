from typing import Any, Callable, Union

import jax.numpy as jnp
import numpy as np

from nlpdiff_jax.types import CombinedFn, ConfigurationError


def combined_residual(func: CombinedFn, xp: Any = jnp) -> Callable[[Any], Any]:
    """Pack ``f, g = func(x)`` into one vector ``[f, g_1, ..., g_ng]``.

    ``xp`` is the array namespace used for packing: ``jax.numpy`` when the
    result is traced by an AD backend, ``numpy`` for finite differencing so
    that complex and float64 inputs keep their dtype.
    """

    def combined(x):
        f, g = func(x)
        return xp.concatenate(
            [xp.reshape(xp.asarray(f), (1,)), xp.ravel(xp.asarray(g))]
        )

    return combined


def objective_only(func: CombinedFn) -> Callable[[Any], Any]:
    def objective(x):
        return func(x)[0]

    return objective


def constraints_only(func: CombinedFn, xp: Any = jnp) -> Callable[[Any], Any]:
    def constraints(x):
        return xp.ravel(xp.asarray(func(x)[1]))

    return constraints


def resize_bounds(bound: Union[float, Any], n: int) -> np.ndarray:
    """Expand a scalar (or length-1) bound to a vector of length ``n``."""
    bound = np.atleast_1d(np.asarray(bound, dtype=float))
    if bound.size == 1 and n != 1:
        return np.full(n, bound[0])
    if bound.size != n:
        raise ConfigurationError(f"expected {n} bounds, got {bound.size}")
    return bound.copy()
