"""Constraint Jacobian sparsity patterns and their automatic discovery.

A pattern names the (row, column) entries of the ``ng x nx`` constraint
Jacobian that may be nonzero. The position ``k`` of an entry in the
pattern is its permanent position in every flattened Jacobian the
evaluation cache produces, so the structure reported to a solver and the
values delivered later always line up.

Entries are enumerated in column-major order: increasing column, and
increasing row within a column. This is the order of a compressed sparse
column matrix, and the order in which the dense layout is flattened.

Automatic discovery evaluates the dense constraint Jacobian at three points
and keeps every entry that is nonzero at any of them::

    S = |J(x1)| + |J(x2)| + |J(x3)|

This is a heuristic: an entry that is generically nonzero but happens to
vanish at all three probes is treated as a structural zero.
"""

import abc
import logging
from typing import Any, Optional, Union

import equinox as eqx
import jax
import jax.numpy as jnp
import numpy as np
import scipy.sparse as sps
from beartype import beartype
from jaxtyping import Float, Int, jaxtyped
# private scipy module, no public equivalent; scipy is pinned below 2.0
from scipy.optimize._numdiff import approx_derivative

from nlpdiff_jax.methods import (
    AbstractDiffMethod,
    AbstractFiniteDifference,
    ForwardAD,
    ReverseAD,
    finite_difference_type,
)
from nlpdiff_jax.types import CombinedFn, ConfigurationError
from nlpdiff_jax.utils import constraints_only

logger = logging.getLogger(__name__)


def _as_index_array(a: Any) -> np.ndarray:
    return np.asarray(a, dtype=np.int64)


class AbstractSparsityPattern(eqx.Module):
    """Base class of the dense and sparse Jacobian patterns."""

    @abc.abstractmethod
    def indices(self, nx: int, ng: int) -> tuple[np.ndarray, np.ndarray]:
        """Return the (rows, cols) enumeration for an ng x nx Jacobian."""

    @abc.abstractmethod
    def size(self, nx: int, ng: int) -> int:
        """Return the length of the flattened Jacobian values."""


class DensePattern(AbstractSparsityPattern):
    """Every entry of the ``ng x nx`` constraint Jacobian is tracked."""

    def indices(self, nx: int, ng: int) -> tuple[np.ndarray, np.ndarray]:
        # row index cycles fastest
        rows = np.tile(np.arange(ng, dtype=np.int64), nx)
        cols = np.repeat(np.arange(nx, dtype=np.int64), ng)
        return rows, cols

    def size(self, nx: int, ng: int) -> int:
        return nx * ng


class SparsePattern(AbstractSparsityPattern):
    """Explicit list of tracked constraint Jacobian entries.

    Attributes:
        rows: 0-based constraint index of each tracked entry.
        cols: 0-based variable index of each tracked entry.

    Example:
        >>> import numpy as np
        >>> from nlpdiff_jax import SparsePattern
        >>>
        >>> sp = SparsePattern.from_matrix(np.array([[1.0, 0.0], [0.0, 2.0]]))
        >>> sp.rows, sp.cols
        (array([0, 1]), array([0, 1]))
    """

    rows: np.ndarray = eqx.field(converter=_as_index_array)
    cols: np.ndarray = eqx.field(converter=_as_index_array)

    def __check_init__(self):
        if self.rows.ndim != 1 or self.cols.ndim != 1:
            raise ConfigurationError("rows and cols must be one-dimensional")
        if self.rows.shape != self.cols.shape:
            raise ConfigurationError(
                f"rows and cols must have the same length, got "
                f"{self.rows.size} and {self.cols.size}"
            )
        if np.any(self.rows < 0) or np.any(self.cols < 0):
            raise ConfigurationError("sparsity indices must be non-negative")

    @classmethod
    def from_matrix(cls, A: Any) -> "SparsePattern":
        """Build a pattern from a representative dense or scipy sparse matrix."""
        return pattern_from_matrix(A)

    @property
    def nnz(self) -> int:
        return int(self.rows.size)

    def indices(self, nx: int, ng: int) -> tuple[np.ndarray, np.ndarray]:
        return self.rows, self.cols

    def size(self, nx: int, ng: int) -> int:
        return self.nnz

    def validate(self, nx: int, ng: int) -> None:
        """Check that every entry lies inside ``ng x nx`` and appears once."""
        if self.nnz == 0:
            return
        if self.rows.max() >= ng or self.cols.max() >= nx:
            raise ConfigurationError(
                f"sparsity pattern entry outside the {ng} x {nx} Jacobian"
            )
        linear = self.cols * ng + self.rows
        if np.unique(linear).size != linear.size:
            raise ConfigurationError("sparsity pattern contains duplicate entries")

    def to_sparse(self, nx: int, ng: int) -> sps.csc_matrix:
        """Skeleton matrix with ones at the tracked entries."""
        return sps.csc_matrix(
            (np.ones(self.nnz), (self.rows, self.cols)), shape=(ng, nx)
        )


def get_sparsity(
    pattern: AbstractSparsityPattern, nx: int, ng: int
) -> tuple[np.ndarray, np.ndarray]:
    """Return the ``(rows, cols)`` the flattened Jacobian values follow."""
    return pattern.indices(nx, ng)


@jaxtyped(typechecker=beartype)
def _column_major_nonzeros(
    S: Float[np.ndarray, "m n"],
) -> tuple[Int[np.ndarray, " nnz"], Int[np.ndarray, " nnz"]]:
    cols, rows = np.nonzero(S.T)
    return rows.astype(np.int64), cols.astype(np.int64)


def pattern_from_matrix(A: Any) -> SparsePattern:
    """Derive a sparsity pattern from a representative Jacobian.

    For a dense matrix every nonzero entry is tracked. For a scipy sparse
    matrix every stored entry is tracked, including explicitly stored zeros.
    Duplicate stored entries are merged.
    """
    if sps.issparse(A):
        A = sps.csc_matrix(A, copy=True)
        A.sum_duplicates()
        rows = A.indices.astype(np.int64)
        cols = np.repeat(np.arange(A.shape[1], dtype=np.int64), np.diff(A.indptr))
        return SparsePattern(rows, cols)

    A = np.asarray(A, dtype=float)
    if A.ndim != 2:
        raise ConfigurationError(f"expected a 2-D matrix, got shape {A.shape}")
    rows, cols = _column_major_nonzeros(A)
    return SparsePattern(rows, cols)


def _dense_constraint_jacobian_fn(method: AbstractDiffMethod, func: CombinedFn):
    """Return ``x -> J`` for the constraint block, built once per discovery."""
    if isinstance(method, ForwardAD):
        jac = jax.jit(jax.jacfwd(constraints_only(func)))
        return lambda x: np.asarray(jac(jnp.asarray(x)))
    if isinstance(method, ReverseAD):
        jac = jax.jit(jax.jacrev(constraints_only(func)))
        return lambda x: np.asarray(jac(jnp.asarray(x)))
    if isinstance(method, AbstractFiniteDifference):
        constraints = constraints_only(func, xp=np)
        scheme = finite_difference_type(method)
        return lambda x: approx_derivative(
            constraints, np.asarray(x, dtype=float), method=scheme
        )
    raise ConfigurationError(
        f"sparsity cannot be detected with {type(method).__name__}"
    )


def detect_sparsity(
    method: AbstractDiffMethod,
    func: CombinedFn,
    ng: int,
    x1: Any,
    x2: Any,
    x3: Any,
) -> SparsePattern:
    """Detect the constraint Jacobian sparsity by probing at three points.

    Entries that are zero at all three points are assumed to always be
    zero.

    Args:
        method: Differentiation method used for the probes.
        func: Combined residual ``f, g = func(x)``.
        ng: Number of constraints.
        x1, x2, x3: Probe points, each of length ``nx``.

    Returns:
        The detected SparsePattern, in column-major order.
    """
    jacobian = _dense_constraint_jacobian_fn(method, func)
    nx = np.size(x1)

    S = np.zeros((ng, nx))
    for x in (x1, x2, x3):
        J = np.asarray(jacobian(x))
        if J.size != ng * nx:
            raise ConfigurationError(
                f"constraint Jacobian has {J.size} entries, expected "
                f"{ng} x {nx}; check ng"
            )
        S += np.abs(np.reshape(J, (ng, nx)))

    pattern = pattern_from_matrix(S)
    logger.debug(
        "detected %d of %d Jacobian entries as nonzero with %s",
        pattern.nnz,
        ng * nx,
        type(method).__name__,
    )
    return pattern


def detect_sparsity_in_bounds(
    method: AbstractDiffMethod,
    func: CombinedFn,
    ng: int,
    lx: Any,
    ux: Any,
    key: Optional[jax.Array] = None,
) -> SparsePattern:
    """Detect sparsity at three random points inside the box ``[lx, ux]``.

    Each point is ``(1 - r) * lx + r * ux`` with ``r ~ U(0, 1)`` drawn
    independently per point. The draws come from ``key``, which defaults to
    ``jax.random.PRNGKey(0)`` so repeated calls give the same pattern.
    """
    lx = np.asarray(lx, dtype=float)
    ux = np.asarray(ux, dtype=float)
    if not (np.all(np.isfinite(lx)) and np.all(np.isfinite(ux))):
        raise ConfigurationError("sparsity detection needs finite bounds lx and ux")

    if key is None:
        key = jax.random.PRNGKey(0)
    r = np.asarray(jax.random.uniform(key, (3,)), dtype=float)

    x1, x2, x3 = ((1 - rk) * lx + rk * ux for rk in r)
    return detect_sparsity(method, func, ng, x1, x2, x3)


def build_sparsity_pattern(
    method_or_matrix: Union[AbstractDiffMethod, Any],
    func: Optional[CombinedFn] = None,
    ng: Optional[int] = None,
    *points: Any,
    key: Optional[jax.Array] = None,
) -> SparsePattern:
    """Build a sparsity pattern.

    Three call forms are supported::

        build_sparsity_pattern(A)                          # representative matrix
        build_sparsity_pattern(method, func, ng, lx, ux)   # random points in a box
        build_sparsity_pattern(method, func, ng, x1, x2, x3)
    """
    if not isinstance(method_or_matrix, AbstractDiffMethod):
        if func is not None or points:
            raise ConfigurationError(
                "a representative matrix takes no further arguments"
            )
        return pattern_from_matrix(method_or_matrix)

    if func is None or ng is None:
        raise ConfigurationError("sparsity detection needs func and ng")
    if len(points) == 2:
        return detect_sparsity_in_bounds(
            method_or_matrix, func, ng, points[0], points[1], key=key
        )
    if len(points) == 3:
        return detect_sparsity(method_or_matrix, func, ng, *points)
    raise ConfigurationError(
        f"expected bounds (lx, ux) or three points, got {len(points)} arrays"
    )
