"""
Safeguarded Newton-Raphson root finding on a bounded interval.
"""

import logging
import math
from typing import Callable

from ..errors import NewtonDerivativeError, NewtonLimitError

logger = logging.getLogger(__name__)

DerivativeFunc = Callable[[float], tuple[float, float]]


class NewtonMinimizer:
    """
    Find a root of ``f`` in ``[x1, x2]`` from an oracle returning ``(f, df)``.

    Used to minimize a function through its derivative: the oracle returns
    the first derivative as ``f`` and the second as ``df``. A Newton step is
    taken while ``df > 0`` and the step stays inside the current bracket;
    otherwise the bracket is bisected. The bracket ``[xl, xh]`` keeps
    ``f(xl) < 0 <= f(xh)``.

    Parameters
    ----------
    tolerance : float
        Step size (and ``|f|``) below which the search stops
    max_iters : int
        Maximum number of iterations

    Examples
    --------
    >>> newton = NewtonMinimizer(tolerance=1e-8, max_iters=50)
    >>> root = newton.minimize(0.0, 1.0, 3.0, lambda x: (x * x - 2.0, 2.0 * x))
    >>> round(root, 6)
    1.414214
    """

    def __init__(self, tolerance: float = 1e-4, max_iters: int = 10):
        self.tolerance = tolerance
        self.max_iters = max_iters

    def _evaluate(self, deriv_func: DerivativeFunc, x: float) -> tuple[float, float]:
        f, df = deriv_func(x)
        if not (math.isfinite(f) and math.isfinite(df)):
            raise NewtonDerivativeError(
                f"Wrong likelihood derivatives at x={x}: f={f}, df={df}"
            )
        return f, df

    def minimize(
        self,
        x1: float,
        xguess: float,
        x2: float,
        deriv_func: DerivativeFunc,
    ) -> float:
        """
        Run the search.

        Parameters
        ----------
        x1, x2 : float
            Lower and upper bound
        xguess : float
            Starting point, clamped into ``[x1, x2]``
        deriv_func : callable
            ``x -> (f, df)``

        Returns
        -------
        float
            The root, or the best point found when the iteration cap is hit

        Raises
        ------
        NewtonDerivativeError
            If the oracle returns a non-finite value
        NewtonLimitError
            If no iteration could be performed
        """
        tolerance = self.tolerance
        rts = min(max(xguess, x1), x2)

        f, df = self._evaluate(deriv_func, rts)
        logger.debug("Newton start x=%f f=%f df=%f", rts, f, df)

        if df >= 0.0 and abs(f) < tolerance:
            return rts
        if f < 0.0:
            xl, xh = rts, x2
        else:
            xl, xh = x1, rts

        dx = abs(xh - xl)
        for i in range(1, self.max_iters + 1):
            rts_old = rts
            if df <= 0.0 or ((rts - xh) * df - f) * ((rts - xl) * df - f) >= 0.0:
                # not convex here, or the Newton step leaves the bracket
                dx = 0.5 * (xh - xl)
                rts = xl + dx
                if xl == rts:
                    return rts
            else:
                dx = f / df
                temp = rts
                rts -= dx
                if temp == rts:
                    return rts

            if abs(dx) < tolerance or i == self.max_iters:
                return rts_old

            if rts < x1:
                rts = x1

            f, df = self._evaluate(deriv_func, rts)
            logger.debug("Newton iter %d x=%f f=%f df=%f", i, rts, f, df)

            if df > 0.0 and abs(f) < tolerance:
                return rts

            if f < 0.0:
                xl = rts
            else:
                xh = rts

        raise NewtonLimitError("Exceeded maximum number of iterations")
