"""Evaluation caches for objective, constraints and their derivatives.

A cache is built once, before optimization starts, for a given sparsity
pattern, differentiation method, user function and problem size. Building
it selects the backend, compiles the JAX derivative functions ahead of
time, computes the column coloring of a sparse Jacobian and allocates every
work buffer. After that, each call of ``evaluate`` (or the in-place
``evaluate_into``) runs the selected backend and writes into the
pre-allocated buffers, without looking at the method tag again.

The objective and the constraints are differentiated together as one
combined residual ``[f, g_1, ..., g_ng]`` on the dense path: row 0 of its
Jacobian is the objective gradient, rows ``1..ng`` are the constraint
Jacobian. On the sparse path the objective gradient and the constraint
Jacobian are computed separately, so that a reverse-mode gradient can be
paired with a colored forward-mode or finite-difference Jacobian.

Flattened constraint Jacobians follow ``get_sparsity(pattern, nx, ng)``:
column-major over the ``ng x nx`` matrix for a dense pattern, the
``(rows, cols)`` order of the pattern for a sparse one.
"""

import abc
import logging
from collections.abc import Callable, Sequence
from typing import Any, Optional, Union

import equinox as eqx
import jax
import jax.numpy as jnp
import numpy as np
import scipy.sparse as sps
from beartype import beartype
from jaxtyping import Float, Int, jaxtyped
# private scipy module, no public equivalent; scipy is pinned below 2.0
from scipy.optimize._numdiff import approx_derivative, group_columns

from nlpdiff_jax.methods import (
    DEFAULT_CAPABILITIES,
    AbstractDiffMethod,
    AbstractFiniteDifference,
    ComplexStep,
    ForwardAD,
    ReverseAD,
    UserSupplied,
    check_capability,
    finite_difference_type,
)
from nlpdiff_jax.sparsity import AbstractSparsityPattern, DensePattern, SparsePattern
from nlpdiff_jax.types import CombinedFn, ConfigurationError, UserDerivativeFn
from nlpdiff_jax.utils import combined_residual, constraints_only, objective_only

logger = logging.getLogger(__name__)

MethodSpec = Union[AbstractDiffMethod, Sequence[AbstractDiffMethod]]


# ---------------------------------------------------------------------------
# Caches
# ---------------------------------------------------------------------------


class AbstractEvaluationCache(eqx.Module):
    """Pre-allocated state for repeated function and derivative evaluation.

    Attributes:
        nx: Number of design variables.
        ng: Number of constraints.
    """

    nx: int = eqx.field(static=True)
    ng: int = eqx.field(static=True)

    @property
    @abc.abstractmethod
    def jacobian_size(self) -> int:
        """Length of the flattened constraint Jacobian."""

    @abc.abstractmethod
    def evaluate_into(
        self,
        g: np.ndarray,
        df: np.ndarray,
        dg: np.ndarray,
        x: np.ndarray,
    ) -> float:
        """Fill ``g``, ``df`` and ``dg`` in place and return the objective.

        This is the per-iteration hot path; buffer sizes are not checked
        here (``evaluate`` does that). ``dg`` must be contiguous.
        """


class DenseCache(AbstractEvaluationCache):
    """Dense Jacobian of the combined residual with an AD or FD backend.

    Attributes:
        method: Differentiation method the cache was built for.
        fg_work: Combined residual values, shape (1 + ng,).
        jac_work: Combined residual Jacobian, shape (1 + ng, nx).
        jacobian_fn: Backend function ``(x, fg_work, jac_work) -> None``
            filling both work buffers.
    """

    method: AbstractDiffMethod = eqx.field(static=True)
    fg_work: np.ndarray
    jac_work: np.ndarray
    jacobian_fn: Callable[[np.ndarray, np.ndarray, np.ndarray], None] = eqx.field(
        static=True
    )

    @property
    def jacobian_size(self) -> int:
        return self.nx * self.ng

    def evaluate_into(self, g, df, dg, x):
        self.jacobian_fn(x, self.fg_work, self.jac_work)
        g[:] = self.fg_work[1:]
        df[:] = self.jac_work[0]
        dg.reshape((self.ng, self.nx), order="F")[...] = self.jac_work[1:]
        return float(self.fg_work[0])


class UserDenseCache(AbstractEvaluationCache):
    """User-supplied derivatives with a dense ``(ng, nx)`` Jacobian matrix."""

    func: UserDerivativeFn = eqx.field(static=True)
    jac_work: np.ndarray

    @property
    def jacobian_size(self) -> int:
        return self.nx * self.ng

    def evaluate_into(self, g, df, dg, x):
        f = self.func(g, df, self.jac_work, x)
        dg.reshape((self.ng, self.nx), order="F")[...] = self.jac_work
        return float(f)


class GradientCache(eqx.Module):
    """Objective-only gradient, used for the sparse path.

    Attributes:
        method: Differentiation method for the gradient.
        value_fn: Backend function ``(x, fg_work) -> None`` evaluating the
            combined residual.
        gradient_fn: Backend function ``(x, f, df) -> None``.
    """

    method: AbstractDiffMethod = eqx.field(static=True)
    value_fn: Callable[[np.ndarray, np.ndarray], None] = eqx.field(static=True)
    gradient_fn: Callable[[np.ndarray, float, np.ndarray], None] = eqx.field(
        static=True
    )


class SparseJacobianCache(eqx.Module):
    """Column-colored constraint Jacobian for a sparse pattern.

    Attributes:
        method: Differentiation method for the Jacobian.
        pattern: The tracked entries; ``dg[k]`` is ``J[rows[k], cols[k]]``.
        skeleton: CSC matrix with ones at the tracked entries.
        colors: Color of each variable; variables of one color never share
            a constraint row.
        n_colors: Number of colors, i.e. of perturbation directions per
            evaluation.
        jacobian_fn: Backend function ``(x, dg) -> None``.
    """

    method: AbstractDiffMethod = eqx.field(static=True)
    pattern: SparsePattern
    skeleton: sps.csc_matrix
    colors: np.ndarray
    n_colors: int = eqx.field(static=True)
    jacobian_fn: Callable[[np.ndarray, np.ndarray], None] = eqx.field(static=True)


class SparseCache(AbstractEvaluationCache):
    """Separate objective gradient and colored sparse constraint Jacobian."""

    gradient: GradientCache
    jacobian: SparseJacobianCache
    fg_work: np.ndarray

    @property
    def jacobian_size(self) -> int:
        return self.jacobian.pattern.nnz

    def evaluate_into(self, g, df, dg, x):
        self.gradient.value_fn(x, self.fg_work)
        f = float(self.fg_work[0])
        g[:] = self.fg_work[1:]
        self.gradient.gradient_fn(x, f, df)
        self.jacobian.jacobian_fn(x, dg)
        return f


class UserSparseCache(AbstractEvaluationCache):
    """User-supplied derivatives with ``dg`` already in pattern order."""

    func: UserDerivativeFn = eqx.field(static=True)
    pattern: SparsePattern

    @property
    def jacobian_size(self) -> int:
        return self.pattern.nnz

    def evaluate_into(self, g, df, dg, x):
        return float(self.func(g, df, dg, x))


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


def _float_dtype():
    return jax.dtypes.canonicalize_dtype(jnp.float64)


def _compile(fn: Callable, nx: int) -> Callable:
    """Trace and compile ``fn`` for a length-``nx`` float input."""
    spec = jax.ShapeDtypeStruct((nx,), _float_dtype())
    return jax.jit(fn).lower(spec).compile()


def _require_finite(name: str, values: np.ndarray) -> None:
    if not np.all(np.isfinite(values)):
        raise FloatingPointError(f"complex-step {name} contains non-finite values")


def _dense_ad_backend(method: AbstractDiffMethod, func: CombinedFn, nx: int):
    combined = combined_residual(func)

    def value_and_aux(x):
        y = combined(x)
        return y, y

    transform = jax.jacfwd if isinstance(method, ForwardAD) else jax.jacrev
    compiled = _compile(transform(value_and_aux, has_aux=True), nx)
    dtype = _float_dtype()

    def jacobian_fn(x, fg_work, jac_work):
        J, fg = compiled(jnp.asarray(x, dtype=dtype))
        fg_work[:] = fg
        jac_work[:] = J

    return jacobian_fn


def _dense_fd_backend(method: AbstractFiniteDifference, func: CombinedFn):
    combined = combined_residual(func, xp=np)
    scheme = finite_difference_type(method)

    def jacobian_fn(x, fg_work, jac_work):
        fg_work[:] = combined(x)
        J = approx_derivative(combined, x, method=scheme, f0=fg_work)
        jac_work[:] = np.reshape(J, jac_work.shape)

    if not isinstance(method, ComplexStep):
        return jacobian_fn

    def checked_jacobian_fn(x, fg_work, jac_work):
        jacobian_fn(x, fg_work, jac_work)
        _require_finite("Jacobian", jac_work)

    return checked_jacobian_fn


def _gradient_backend(method: AbstractDiffMethod, func: CombinedFn, nx: int):
    """Return ``(value_fn, gradient_fn)`` for the objective of the sparse path."""
    if isinstance(method, (ForwardAD, ReverseAD)):
        dtype = _float_dtype()
        value = _compile(combined_residual(func), nx)
        transform = jax.grad if isinstance(method, ReverseAD) else jax.jacfwd
        gradient = _compile(transform(objective_only(func)), nx)

        def value_fn(x, fg_work):
            fg_work[:] = value(jnp.asarray(x, dtype=dtype))

        def gradient_fn(x, f, df):
            df[:] = gradient(jnp.asarray(x, dtype=dtype))

        return value_fn, gradient_fn

    if isinstance(method, AbstractFiniteDifference):
        combined = combined_residual(func, xp=np)
        objective = objective_only(func)
        scheme = finite_difference_type(method)
        check = isinstance(method, ComplexStep)

        def value_fn(x, fg_work):
            fg_work[:] = combined(x)

        def gradient_fn(x, f, df):
            df[:] = np.ravel(approx_derivative(objective, x, method=scheme, f0=f))
            if check:
                _require_finite("gradient", df)

        return value_fn, gradient_fn

    raise ConfigurationError(
        f"{type(method).__name__} cannot be used for the objective gradient"
    )


@jaxtyped(typechecker=beartype)
def seed_matrix(
    colors: Int[np.ndarray, " n"], n_colors: int
) -> Float[np.ndarray, "n c"]:
    """Perturbation directions of a column coloring, one column per color."""
    seeds = np.zeros((colors.size, n_colors))
    seeds[np.arange(colors.size), colors] = 1.0
    return seeds


def _sparse_forward_ad_backend(
    func: CombinedFn,
    pattern: SparsePattern,
    colors: np.ndarray,
    n_colors: int,
    nx: int,
):
    dtype = _float_dtype()
    constraints = constraints_only(func)
    seeds = jnp.asarray(seed_matrix(colors, n_colors), dtype=dtype)

    def compressed_jacobian(x):
        def directional_derivative(s):
            return jax.jvp(constraints, (x,), (s,))[1]

        return jax.vmap(directional_derivative, in_axes=1, out_axes=1)(seeds)

    compiled = _compile(compressed_jacobian, nx)
    # position of J[rows[k], cols[k]] in the flattened (ng, n_colors) result
    gather = pattern.rows * n_colors + colors[pattern.cols]

    def jacobian_fn(x, dg):
        B = np.asarray(compiled(jnp.asarray(x, dtype=dtype)), dtype=dg.dtype)
        np.take(B, gather, out=dg, mode="clip")

    return jacobian_fn


def _sparse_fd_backend(
    method: AbstractFiniteDifference,
    func: CombinedFn,
    pattern: SparsePattern,
    skeleton: sps.csc_matrix,
    colors: np.ndarray,
    ng: int,
    nx: int,
):
    constraints = constraints_only(func, xp=np)
    scheme = finite_difference_type(method)
    # approx_derivative returns a canonical CSR matrix with the skeleton's
    # structure; label each CSR slot with its position in the pattern.
    labels = sps.csr_matrix(
        (np.arange(1, pattern.nnz + 1), (pattern.rows, pattern.cols)),
        shape=(ng, nx),
    )
    labels.sum_duplicates()
    order = labels.data - 1
    check = isinstance(method, ComplexStep)

    def jacobian_fn(x, dg):
        J = approx_derivative(
            constraints, x, method=scheme, sparsity=(skeleton, colors)
        )
        dg[order] = J.data
        if check:
            _require_finite("Jacobian", dg)

    return jacobian_fn


def _build_sparse_jacobian(
    method: AbstractDiffMethod,
    func: CombinedFn,
    pattern: SparsePattern,
    nx: int,
    ng: int,
) -> SparseJacobianCache:
    if not isinstance(method, (ForwardAD, AbstractFiniteDifference)):
        raise ConfigurationError(
            f"{type(method).__name__} is not supported for sparse Jacobians, "
            "use ForwardAD or a finite-difference method"
        )

    skeleton = pattern.to_sparse(nx, ng)
    if pattern.nnz > 0:
        colors = np.asarray(group_columns(skeleton), dtype=np.int64)
        n_colors = int(colors.max()) + 1
    else:
        colors = np.zeros(nx, dtype=np.int64)
        n_colors = 1

    if isinstance(method, ForwardAD):
        jacobian_fn = _sparse_forward_ad_backend(func, pattern, colors, n_colors, nx)
    else:
        jacobian_fn = _sparse_fd_backend(
            method, func, pattern, skeleton, colors, ng, nx
        )

    logger.debug(
        "colored %d variables into %d groups for %d Jacobian entries",
        nx,
        n_colors,
        pattern.nnz,
    )
    return SparseJacobianCache(
        method=method,
        pattern=pattern,
        skeleton=skeleton,
        colors=colors,
        n_colors=n_colors,
        jacobian_fn=jacobian_fn,
    )


# ---------------------------------------------------------------------------
# Construction-time checks
# ---------------------------------------------------------------------------


def _check_sizes(f_size: int, g_size: int, nx: int, ng: int) -> None:
    if f_size != 1:
        raise ConfigurationError(
            f"the objective must be a scalar, got {f_size} values"
        )
    if g_size != ng:
        raise ConfigurationError(
            f"the function returns {g_size} constraints with nx={nx}, "
            f"expected ng={ng}"
        )


def _size_and_dtypes(tree: Any) -> tuple[int, list[np.dtype]]:
    leaves = [
        leaf if isinstance(leaf, jax.ShapeDtypeStruct) else np.asarray(leaf)
        for leaf in jax.tree_util.tree_leaves(tree)
    ]
    size = sum(int(np.prod(leaf.shape)) for leaf in leaves)
    return size, [np.dtype(leaf.dtype) for leaf in leaves]


def _check_output(out: Any, nx: int, ng: int) -> list[np.dtype]:
    """Check the ``(f, g)`` sizes and return the dtypes of every output leaf."""
    if not isinstance(out, (tuple, list)) or len(out) != 2:
        raise ConfigurationError("the function must return a pair (f, g)")
    f_size, f_dtypes = _size_and_dtypes(out[0])
    g_size, g_dtypes = _size_and_dtypes(out[1])
    _check_sizes(f_size, g_size, nx, ng)
    return f_dtypes + g_dtypes


def _check_double_precision(dtypes: Sequence[np.dtype]) -> None:
    for dtype in dtypes:
        single = (dtype.kind == "f" and dtype.itemsize < 8) or (
            dtype.kind == "c" and dtype.itemsize < 16
        )
        if single:
            raise ConfigurationError(
                f"the function returns {dtype} values; finite differences need "
                "double precision. Call jax.config.update('jax_enable_x64', "
                "True) or return float64 arrays."
            )


def _trace(func: CombinedFn, nx: int) -> Any:
    """Output shapes of ``func`` from an abstract trace, without any FLOPs."""
    try:
        return jax.eval_shape(func, jax.ShapeDtypeStruct((nx,), _float_dtype()))
    except jax.errors.TracerIntegerConversionError:
        raise
    except IndexError as e:
        raise ConfigurationError(f"the function indexes past nx={nx}: {e}") from e


def _call_at(func: CombinedFn, nx: int, x_probe: Optional[np.ndarray]) -> Any:
    """Call ``func`` once; ``None`` if it fails at the default point."""
    x = np.zeros(nx) if x_probe is None else x_probe.copy()
    try:
        with np.errstate(all="ignore"):
            return func(x)
    except IndexError as e:
        raise ConfigurationError(f"the function indexes past nx={nx}: {e}") from e
    except Exception as e:
        if x_probe is not None:
            raise
        logger.warning(
            "the function cannot be evaluated at x = 0 (%s: %s); its output "
            "sizes are not checked. Pass x_probe to create_cache to check them "
            "at a point where it is defined.",
            type(e).__name__,
            e,
        )
        return None


def _check_function(
    methods: Sequence[AbstractDiffMethod],
    func: CombinedFn,
    nx: int,
    ng: int,
    x_probe: Optional[np.ndarray],
) -> None:
    if any(isinstance(m, (ForwardAD, ReverseAD)) for m in methods):
        _check_output(_trace(func, nx), nx, ng)

    if any(isinstance(m, AbstractFiniteDifference) for m in methods):
        # finite differences also take plain numpy functions, which cannot
        # be traced; those are called once instead
        try:
            out = _trace(func, nx)
        except (TypeError, jax.errors.TracerIntegerConversionError):
            out = _call_at(func, nx, x_probe)
        if out is not None:
            _check_double_precision(_check_output(out, nx, ng))


def _check_user_function(
    func: UserDerivativeFn,
    nx: int,
    ng: int,
    dg_shape: tuple[int, ...],
    x_probe: Optional[np.ndarray],
) -> None:
    g, df, dg = np.zeros(ng), np.zeros(nx), np.zeros(dg_shape)
    x = np.zeros(nx) if x_probe is None else x_probe.copy()
    try:
        with np.errstate(all="ignore"):
            f = func(g, df, dg, x)
    except (ValueError, IndexError) as e:
        # numpy raises these for writes that do not fit the buffers
        where = "x = 0" if x_probe is None else "x_probe"
        raise ConfigurationError(
            f"user derivative function does not fit nx={nx}, ng={ng} "
            f"(evaluated at {where}): {e}"
        ) from e
    except Exception as e:
        if x_probe is not None:
            raise
        logger.warning(
            "the user derivative function cannot be evaluated at x = 0 "
            "(%s: %s); its output sizes are not checked. Pass x_probe to "
            "create_cache to check them at a point where it is defined.",
            type(e).__name__,
            e,
        )
        return
    _check_sizes(int(np.size(f)), ng, nx, ng)


def _warn_if_single_precision(methods: Sequence[AbstractDiffMethod]) -> None:
    uses_jax = any(isinstance(m, (ForwardAD, ReverseAD)) for m in methods)
    if uses_jax and _float_dtype() != np.float64:
        logger.warning(
            "jax_enable_x64 is disabled: derivatives will be computed in "
            "float32. Call jax.config.update('jax_enable_x64', True) for "
            "double precision."
        )


def _split_methods(method: MethodSpec) -> tuple[AbstractDiffMethod, ...]:
    if isinstance(method, AbstractDiffMethod):
        return (method,)
    methods = tuple(method)
    if len(methods) != 2:
        raise ConfigurationError(
            "expected one method or a (gradient, jacobian) pair of methods, "
            f"got {len(methods)}"
        )
    for m in methods:
        if not isinstance(m, AbstractDiffMethod):
            raise ConfigurationError(f"{m!r} is not a differentiation method")
    return methods


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def create_cache(
    pattern: AbstractSparsityPattern,
    method: MethodSpec,
    func: Union[CombinedFn, UserDerivativeFn],
    nx: int,
    ng: int,
    capabilities: frozenset[str] = DEFAULT_CAPABILITIES,
    x_probe: Optional[Any] = None,
) -> AbstractEvaluationCache:
    """Build the evaluation cache for a problem.

    Args:
        pattern: ``DensePattern()`` or a ``SparsePattern``.
        method: A differentiation method, or for a sparse pattern a
            ``(gradient_method, jacobian_method)`` pair. A single method
            with a sparse pattern is used for both roles.
        func: Combined residual ``f, g = func(x)``, or for
            ``UserSupplied()`` a function ``f = func(g, df, dg, x)``
            filling its arguments in place.
        nx: Number of design variables.
        ng: Number of constraints.
        capabilities: Backends available to this cache; a method whose
            backend is missing is rejected.
        x_probe: Point, shape (nx,), at which the output sizes of a function
            that JAX cannot trace are checked (by one call). Defaults to
            the origin; if the function fails there the check is skipped
            with a warning.

    Returns:
        The evaluation cache, to be passed to ``evaluate``.

    Raises:
        ConfigurationError: If the sizes do not match the function, the
            pattern does not fit the Jacobian, or the combination of
            pattern and methods is unsupported.
    """
    methods = _split_methods(method)
    if x_probe is not None:
        x_probe = np.asarray(x_probe, dtype=float)
        if x_probe.shape != (nx,):
            raise ConfigurationError(
                f"x_probe must have shape ({nx},), got {x_probe.shape}"
            )
    for m in methods:
        check_capability(m, capabilities)
    _warn_if_single_precision(methods)

    if isinstance(pattern, DensePattern):
        if len(methods) != 1:
            raise ConfigurationError(
                "a (gradient, jacobian) method pair needs a SparsePattern"
            )
        (method,) = methods
        if isinstance(method, UserSupplied):
            _check_user_function(func, nx, ng, (ng, nx), x_probe)
            cache = UserDenseCache(
                nx=nx, ng=ng, func=func, jac_work=np.zeros((ng, nx))
            )
        else:
            _check_function(methods, func, nx, ng, x_probe)
            if isinstance(method, (ForwardAD, ReverseAD)):
                jacobian_fn = _dense_ad_backend(method, func, nx)
            elif isinstance(method, AbstractFiniteDifference):
                jacobian_fn = _dense_fd_backend(method, func)
            else:
                raise ConfigurationError(
                    f"unsupported differentiation method {type(method).__name__}"
                )
            cache = DenseCache(
                nx=nx,
                ng=ng,
                method=method,
                fg_work=np.zeros(1 + ng),
                jac_work=np.zeros((1 + ng, nx)),
                jacobian_fn=jacobian_fn,
            )

    elif isinstance(pattern, SparsePattern):
        pattern.validate(nx, ng)
        if len(methods) == 1 and isinstance(methods[0], UserSupplied):
            _check_user_function(func, nx, ng, (pattern.nnz,), x_probe)
            cache = UserSparseCache(nx=nx, ng=ng, func=func, pattern=pattern)
        else:
            grad_method, jac_method = methods if len(methods) == 2 else methods * 2
            if isinstance(grad_method, UserSupplied) or isinstance(
                jac_method, UserSupplied
            ):
                raise ConfigurationError(
                    "UserSupplied cannot be combined with another method"
                )
            _check_function((grad_method, jac_method), func, nx, ng, x_probe)
            value_fn, gradient_fn = _gradient_backend(grad_method, func, nx)
            cache = SparseCache(
                nx=nx,
                ng=ng,
                gradient=GradientCache(
                    method=grad_method, value_fn=value_fn, gradient_fn=gradient_fn
                ),
                jacobian=_build_sparse_jacobian(jac_method, func, pattern, nx, ng),
                fg_work=np.zeros(1 + ng),
            )

    else:
        raise ConfigurationError(f"unsupported sparsity pattern {pattern!r}")

    logger.debug(
        "built %s for nx=%d, ng=%d with %s",
        type(cache).__name__,
        nx,
        ng,
        ", ".join(type(m).__name__ for m in methods),
    )
    return cache


def _output_buffer(name: str, buf: Optional[np.ndarray], n: int) -> np.ndarray:
    if buf is None:
        return np.zeros(n)
    if not isinstance(buf, np.ndarray) or buf.shape != (n,):
        raise ConfigurationError(
            f"{name} must be a numpy array of shape ({n},), got "
            f"{getattr(buf, 'shape', type(buf).__name__)}"
        )
    if not (buf.flags.c_contiguous and buf.flags.writeable):
        raise ConfigurationError(f"{name} must be a contiguous, writeable array")
    return buf


def evaluate(
    cache: AbstractEvaluationCache,
    x: Any,
    g: Optional[np.ndarray] = None,
    df: Optional[np.ndarray] = None,
    dg: Optional[np.ndarray] = None,
) -> tuple[float, np.ndarray, np.ndarray, np.ndarray]:
    """Evaluate objective, constraints and their derivatives at ``x``.

    Output arrays that are passed in are filled in place; the others are
    allocated.

    Args:
        cache: Cache built by ``create_cache``.
        x: Design variables, shape (nx,).
        g: Constraint values, shape (ng,).
        df: Objective gradient, shape (nx,).
        dg: Flattened constraint Jacobian, ordered like
            ``get_sparsity(pattern, nx, ng)``.

    Returns:
        Tuple ``(f, g, df, dg)``.
    """
    x = np.asarray(x, dtype=float)
    if x.shape != (cache.nx,):
        raise ConfigurationError(f"x must have shape ({cache.nx},), got {x.shape}")
    g = _output_buffer("g", g, cache.ng)
    df = _output_buffer("df", df, cache.nx)
    dg = _output_buffer("dg", dg, cache.jacobian_size)
    f = cache.evaluate_into(g, df, dg, x)
    return f, g, df, dg
