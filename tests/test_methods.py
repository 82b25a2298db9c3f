"""Tests for differentiation method tags and small helpers."""

import jax.numpy as jnp
import numpy as np
import pytest

from nlpdiff_jax import (
    DEFAULT_CAPABILITIES,
    CentralFD,
    ComplexStep,
    ConfigurationError,
    ForwardAD,
    ForwardFD,
    ReverseAD,
    UserSupplied,
)
from nlpdiff_jax.methods import check_capability, finite_difference_type
from nlpdiff_jax.utils import combined_residual, resize_bounds


class TestMethodTags:
    def test_tags_compare_by_type(self):
        assert ForwardAD() == ForwardAD()
        assert ForwardAD() != ReverseAD()
        assert ForwardFD() != CentralFD()

    @pytest.mark.parametrize(
        "method,scheme",
        [(ForwardFD(), "2-point"), (CentralFD(), "3-point"), (ComplexStep(), "cs")],
    )
    def test_finite_difference_type(self, method, scheme):
        assert finite_difference_type(method) == scheme

    @pytest.mark.parametrize("method", [ForwardAD(), ReverseAD(), UserSupplied()])
    def test_not_finite_difference(self, method):
        with pytest.raises(ConfigurationError):
            finite_difference_type(method)

    def test_default_capabilities(self):
        for method in [ForwardAD(), ReverseAD(), ForwardFD(), UserSupplied()]:
            check_capability(method, DEFAULT_CAPABILITIES)

    def test_missing_capability(self):
        with pytest.raises(ConfigurationError, match="jax"):
            check_capability(ReverseAD(), frozenset({"scipy"}))
        with pytest.raises(ConfigurationError, match="scipy"):
            check_capability(CentralFD(), frozenset({"jax"}))


class TestHelpers:
    def test_combined_residual(self):
        def func(x):
            return x[0] * x[1], jnp.array([x[0], x[1] ** 2])

        y = combined_residual(func)(jnp.array([2.0, 3.0]))
        np.testing.assert_allclose(y, [6.0, 2.0, 9.0])

    def test_combined_residual_numpy_keeps_complex(self):
        def func(x):
            return np.sum(x), x

        y = combined_residual(func, xp=np)(np.array([1.0 + 1j, 2.0]))
        assert np.iscomplexobj(y)
        assert y.shape == (3,)

    def test_resize_scalar_bound(self):
        np.testing.assert_array_equal(resize_bounds(-np.inf, 3), [-np.inf] * 3)
        np.testing.assert_array_equal(resize_bounds([0.5], 2), [0.5, 0.5])

    def test_resize_vector_bound(self):
        bound = np.array([1.0, 2.0])
        resized = resize_bounds(bound, 2)
        np.testing.assert_array_equal(resized, bound)
        assert resized is not bound

    def test_resize_empty(self):
        assert resize_bounds(0.0, 0).shape == (0,)

    def test_resize_mismatch(self):
        with pytest.raises(ConfigurationError):
            resize_bounds([1.0, 2.0], 3)
