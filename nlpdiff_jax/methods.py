"""Differentiation method tags.

A tag names the backend an evaluation cache is built for. Tags carry no
data: they are compared by type and consumed exactly once, when
``create_cache`` picks the concrete cache and backend functions. Nothing on
the evaluation path inspects a tag again.

Backends are grouped by the capability they need:

- ``"jax"``: forward-mode (``jax.jacfwd`` / ``jax.jvp``) and reverse-mode
  (``jax.jacrev`` / ``jax.grad``) automatic differentiation, compiled
  ahead of time.
- ``"scipy"``: forward, central and complex-step finite differences via
  ``scipy.optimize._numdiff.approx_derivative``, with column coloring from
  ``group_columns`` for sparse Jacobians.

User-supplied derivatives need no capability.
"""

from typing import ClassVar, Optional

import equinox as eqx

from nlpdiff_jax.types import ConfigurationError

JAX = "jax"
SCIPY = "scipy"

DEFAULT_CAPABILITIES: frozenset[str] = frozenset({JAX, SCIPY})


class AbstractDiffMethod(eqx.Module):
    """Base class of all differentiation method tags."""

    requires: ClassVar[Optional[str]] = None


class ForwardAD(AbstractDiffMethod):
    """Forward-mode automatic differentiation with JAX."""

    requires: ClassVar[Optional[str]] = JAX


class ReverseAD(AbstractDiffMethod):
    """Reverse-mode automatic differentiation with JAX.

    Only supported for dense Jacobians and for objective gradients; a sparse
    constraint Jacobian cannot be compressed by column coloring in reverse
    mode.
    """

    requires: ClassVar[Optional[str]] = JAX


class AbstractFiniteDifference(AbstractDiffMethod):
    """Finite-difference family, evaluated with scipy's ``approx_derivative``."""

    requires: ClassVar[Optional[str]] = SCIPY
    scheme: ClassVar[str] = "2-point"


class ForwardFD(AbstractFiniteDifference):
    scheme: ClassVar[str] = "2-point"


class CentralFD(AbstractFiniteDifference):
    scheme: ClassVar[str] = "3-point"


class ComplexStep(AbstractFiniteDifference):
    """Complex-step differentiation.

    The user function must accept complex input and propagate the imaginary
    part analytically (``jax.numpy`` and ``numpy`` functions do).
    """

    scheme: ClassVar[str] = "cs"


class UserSupplied(AbstractDiffMethod):
    """Derivatives computed by the user function itself.

    The function has the form ``f = func(g, df, dg, x)`` and fills the
    constraint values, the objective gradient and the constraint Jacobian
    in place.
    """


def finite_difference_type(method: AbstractDiffMethod) -> str:
    """Return the ``approx_derivative`` scheme string for a finite-difference tag."""
    if not isinstance(method, AbstractFiniteDifference):
        raise ConfigurationError(
            f"{type(method).__name__} is not a finite-difference method"
        )
    return method.scheme


def check_capability(
    method: AbstractDiffMethod, capabilities: frozenset[str]
) -> None:
    """Raise if the backend required by ``method`` is not available."""
    if method.requires is not None and method.requires not in capabilities:
        raise ConfigurationError(
            f"{type(method).__name__} requires the {method.requires!r} "
            f"capability, available capabilities: {sorted(capabilities)}"
        )
