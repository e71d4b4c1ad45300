"""
Unit tests for the scalar and vector minimizers.
"""

import math

import numpy as np
import pytest

from phylopt.errors import (
    ERROR_LBFGSB_UNKNOWN,
    ERROR_NEWTON_DERIV,
    LBFGSBError,
    NewtonDerivativeError,
    NewtonLimitError,
    PartitionError,
)
from phylopt.optimize.brent import BrentMinimizer
from phylopt.optimize.em import EMMinimizer
from phylopt.optimize.lbfgsb import LBFGSBMinimizer, forward_difference_gradient, scipy_bounds
from phylopt.optimize.newton import NewtonMinimizer
from phylopt.optimize.params import BoundType


class TestNewton:
    """Test safeguarded Newton-Raphson."""

    def test_linear_root(self):
        """A linear function is solved in one Newton step."""
        newton = NewtonMinimizer(tolerance=1e-6, max_iters=10)
        root = newton.minimize(0.0, 1.0, 5.0, lambda x: (x - 2.0, 1.0))
        assert root == pytest.approx(2.0, abs=1e-9)

    def test_guess_is_clamped(self):
        """A guess outside the bounds starts from the nearest bound."""
        seen = []

        def deriv(x):
            seen.append(x)
            return x - 2.0, 1.0

        root = NewtonMinimizer(tolerance=1e-6).minimize(0.0, 10.0, 5.0, deriv)
        assert seen[0] == 5.0
        assert root == pytest.approx(2.0, abs=1e-9)

    def test_square_root(self):
        """Converge to sqrt(2) from f(x) = x^2 - 2."""
        newton = NewtonMinimizer(tolerance=1e-8, max_iters=50)
        root = newton.minimize(0.0, 1.0, 3.0, lambda x: (x * x - 2.0, 2.0 * x))
        assert root == pytest.approx(math.sqrt(2.0), abs=1e-6)

    def test_nan_derivative_raises(self):
        """A non-finite oracle value is reported with its error code."""
        newton = NewtonMinimizer()
        with pytest.raises(NewtonDerivativeError) as excinfo:
            newton.minimize(0.0, 1.0, 5.0, lambda x: (math.nan, 1.0))
        assert excinfo.value.code == ERROR_NEWTON_DERIV

    def test_no_iterations_raises(self):
        """With no iteration budget and no initial convergence, the limit error is raised."""
        newton = NewtonMinimizer(tolerance=1e-6, max_iters=0)
        with pytest.raises(NewtonLimitError):
            newton.minimize(0.0, 1.0, 5.0, lambda x: (x - 2.0, 1.0))

    def test_result_stays_in_bounds(self):
        """A root beyond the upper bound ends at the bound."""
        newton = NewtonMinimizer(tolerance=1e-6, max_iters=50)
        root = newton.minimize(0.0, 1.0, 3.0, lambda x: (x - 10.0, 1.0))
        assert 0.0 <= root <= 3.0
        assert root == pytest.approx(3.0, abs=1e-5)


class TestBrent:
    """Test bounded Brent minimization."""

    def test_parabola(self):
        """Find the vertex of a parabola with positive curvature."""
        result = BrentMinimizer(xtol=1e-6).minimize(0.1, 1.0, 10.0, lambda x: (x - 3.0) ** 2)
        assert result.x == pytest.approx(3.0, abs=1e-4)
        assert result.fx == pytest.approx(0.0, abs=1e-7)
        assert result.f2x > 0

    def test_non_quadratic(self):
        """Minimum of x - log(x) is at x = 1."""
        result = BrentMinimizer(xtol=1e-6).minimize(0.1, 0.5, 10.0, lambda x: x - math.log(x))
        assert result.x == pytest.approx(1.0, abs=1e-4)
        assert result.fx == pytest.approx(1.0, abs=1e-7)

    def test_guess_out_of_range(self):
        """A guess beyond the upper bound is clamped and the search still succeeds."""
        result = BrentMinimizer(xtol=1e-6).minimize(0.1, 20.0, 10.0, lambda x: (x - 3.0) ** 2)
        assert result.x == pytest.approx(3.0, abs=1e-3)

    def test_minimum_at_guess(self):
        """A guess already at the minimum is kept."""
        result = BrentMinimizer(xtol=1e-6).minimize(0.1, 3.0, 10.0, lambda x: (x - 3.0) ** 2)
        assert result.x == pytest.approx(3.0, abs=1e-4)
        assert result.fx <= 1e-8


class TestLBFGSB:
    """Test the bounded quasi-Newton wrapper."""

    def test_quadratic_2d(self):
        """Unconstrained optimum inside the box."""
        func = lambda x: (x[0] - 1.0) ** 2 + (x[1] + 2.0) ** 2
        result = LBFGSBMinimizer().minimize(
            np.array([3.0, 3.0]), [-5.0, -5.0], [5.0, 5.0], [BoundType.BOTH] * 2, func
        )
        np.testing.assert_allclose(result.x, [1.0, -2.0], atol=1e-3)
        assert result.score == pytest.approx(func(result.x))
        assert result.n_evaluations > 0

    def test_active_upper_bound(self):
        """An optimum outside the box ends on the bound."""
        result = LBFGSBMinimizer().minimize(
            np.array([0.5]), [0.0], [2.0], [BoundType.BOTH], lambda x: (x[0] - 5.0) ** 2
        )
        assert result.x[0] == pytest.approx(2.0, abs=1e-8)
        assert result.score == pytest.approx(9.0)

    def test_nan_score_raises(self):
        """A NaN objective with no stored cause raises the generic error."""
        with pytest.raises(LBFGSBError) as excinfo:
            LBFGSBMinimizer().minimize(
                np.array([1.0]), [0.0], [2.0], [BoundType.BOTH], lambda x: math.nan
            )
        assert excinfo.value.code == ERROR_LBFGSB_UNKNOWN

    def test_stored_error_is_raised(self):
        """The objective's own error replaces the generic one."""

        class Failing:
            last_error = None

            def __call__(self, x):
                self.last_error = PartitionError("rejected")
                return math.nan

        with pytest.raises(PartitionError, match="rejected"):
            LBFGSBMinimizer().minimize(
                np.array([1.0]), [0.0], [2.0], [BoundType.BOTH], Failing()
            )

    def test_earlier_error_not_reported(self):
        """An error stored by a rejected trial point does not explain a later NaN."""

        class RejectsOnce:
            last_error = None
            calls = 0

            def __call__(self, x):
                self.calls += 1
                if self.calls == 1:
                    self.last_error = PartitionError("rejected")
                    return math.inf
                return math.nan

        with pytest.raises(LBFGSBError) as excinfo:
            LBFGSBMinimizer().minimize(
                np.array([1.0]), [0.0], [2.0], [BoundType.BOTH], RejectsOnce()
            )
        assert excinfo.value.code == ERROR_LBFGSB_UNKNOWN

    def test_scipy_bounds(self):
        """Bound types select which limits are passed on."""
        bounds = scipy_bounds(
            [0.0, 1.0, 2.0, 3.0],
            [10.0, 11.0, 12.0, 13.0],
            [BoundType.NONE, BoundType.LOWER, BoundType.BOTH, BoundType.UPPER],
        )
        assert bounds == [(None, None), (1.0, None), (2.0, 12.0), (None, 13.0)]

    def test_forward_difference_gradient(self):
        """Gradient of a sum of squares, with the input left untouched."""
        func = lambda x: float(np.sum(x ** 2))
        x = np.array([1.0, 2.0, 0.0])
        grad = forward_difference_gradient(func, x, func(x))
        np.testing.assert_allclose(grad, [2.0, 4.0, 0.0], atol=1e-5)
        np.testing.assert_array_equal(x, [1.0, 2.0, 0.0])


class TestEM:
    """Test EM updates of mixture weights."""

    def test_fixed_point(self):
        """Equal category likelihoods leave the weights unchanged after one round."""
        calls = []

        def update():
            calls.append(1)
            return np.array([[1.0, 1.0], [2.0, 2.0]])

        weights = np.array([0.5, 0.5])
        converged = EMMinimizer().minimize(weights, np.array([1.0, 1.0]), update)
        assert converged
        assert len(calls) == 1
        np.testing.assert_allclose(weights, [0.5, 0.5])

    def test_site_weights(self):
        """Each site votes for its category in proportion to its weight."""
        lk = np.array([[1.0, 0.0], [0.0, 1.0]])
        weights = np.array([0.5, 0.5])
        converged = EMMinimizer().minimize(weights, np.array([3.0, 1.0]), lambda: lk)
        assert converged
        np.testing.assert_allclose(weights, [0.75, 0.25])
        assert weights.sum() == pytest.approx(1.0)

    def test_step_limit(self):
        """Running out of rounds before convergence reports failure."""
        lk = np.array([[1.0, 0.0], [0.0, 1.0]])
        weights = np.array([0.5, 0.5])
        converged = EMMinimizer(max_steps=1).minimize(weights, np.array([3.0, 1.0]), lambda: lk)
        assert not converged
        np.testing.assert_allclose(weights, [0.75, 0.25])
