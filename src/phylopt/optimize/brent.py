"""
Brent's method for bounded scalar minimization.

Inverse parabolic interpolation combined with golden-section steps, after
Numerical Recipes ``brent`` and the bracketing used by IQ-TREE.
"""

import logging
import math
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)

ITMAX = 100
CGOLD = 0.3819660
ZEPS = 1.0e-7

ScalarFunc = Callable[[float], float]


def _sign(a: float, b: float) -> float:
    return abs(a) if b >= 0.0 else -abs(a)


def _curvature(x: float, w: float, v: float, fx: float, fw: float, fv: float) -> float:
    """Second derivative of the parabola through the last three points."""
    xw = x - w
    wv = w - v
    vx = v - x
    denominator = v * v * xw + x * x * wv + w * w * vx
    if denominator == 0.0:
        return math.nan
    return 2.0 * (fv * xw + fx * wv + fw * vx) / denominator


@dataclass
class BrentResult:
    """
    Outcome of a Brent minimization.

    Attributes
    ----------
    x : float
        Location of the minimum
    fx : float
        Objective value at ``x``
    f2x : float
        Curvature estimate at the minimum (positive at a proper minimum)
    """

    x: float
    fx: float
    f2x: float


class BrentMinimizer:
    """
    Bounded derivative-free minimizer for a scalar objective.

    Parameters
    ----------
    xtol : float
        Relative tolerance on the location of the minimum

    Examples
    --------
    >>> result = BrentMinimizer(xtol=1e-6).minimize(0.0, 1.0, 10.0, lambda x: (x - 3.0) ** 2)
    >>> round(result.x, 4)
    3.0
    """

    def __init__(self, xtol: float = 1e-5):
        self.xtol = xtol

    def minimize(self, xmin: float, xguess: float, xmax: float, func: ScalarFunc) -> BrentResult:
        """
        Minimize ``func`` on ``[xmin, xmax]`` starting from ``xguess``.

        A narrow bracket around the guess is tried first. If either end of
        it scores lower than the guess, the whole domain is used instead.
        When the search ends on a point worse than the guess, the guess is
        returned.
        """
        xguess = min(max(xguess, xmin), xmax)
        eps = xguess * self.xtol * 50.0

        ax = xguess - eps
        ax_clamped = ax < xmin
        if ax_clamped:
            ax = xmin
        bx = xguess
        cx = xguess + eps
        cx_clamped = cx > xmax
        if cx_clamped:
            cx = xmax

        fa = func(ax)
        fb = func(bx)
        fc = func(cx)

        if fa < fb or fc < fb:
            if not ax_clamped:
                fa = func(xmin)
            if not cx_clamped:
                fc = func(xmax)
            ax = xmin
            cx = xmax

        x, fx, f2x = self._search(ax, bx, cx, fa, fb, fc, func)
        logger.debug("Brent x=%f fx=%f f2x=%f (guess %f, f=%f)", x, fx, f2x, bx, fb)

        if fx > fb:
            return BrentResult(x=bx, fx=func(bx), f2x=f2x)
        return BrentResult(x=x, fx=fx, f2x=f2x)

    def _search(
        self,
        ax: float,
        bx: float,
        cx: float,
        fax: float,
        fbx: float,
        fcx: float,
        func: ScalarFunc,
    ) -> tuple[float, float, float]:
        tol = self.xtol
        a = min(ax, cx)
        b = max(ax, cx)
        x = bx
        fx = fbx
        if fax < fcx:
            w, fw = ax, fax
            v, fv = cx, fcx
        else:
            w, fw = cx, fcx
            v, fv = ax, fax

        d = 0.0
        e = 0.0
        for _ in range(ITMAX):
            xm = 0.5 * (a + b)
            tol1 = tol * abs(x) + ZEPS
            tol2 = 2.0 * tol1
            if abs(x - xm) <= tol2 - 0.5 * (b - a):
                return x, fx, _curvature(x, w, v, fx, fw, fv)

            if abs(e) > tol1:
                r = (x - w) * (fx - fv)
                q = (x - v) * (fx - fw)
                p = (x - v) * q - (x - w) * r
                q = 2.0 * (q - r)
                if q > 0.0:
                    p = -p
                q = abs(q)
                etemp = e
                e = d
                if abs(p) >= abs(0.5 * q * etemp) or p <= q * (a - x) or p >= q * (b - x):
                    e = a - x if x >= xm else b - x
                    d = CGOLD * e
                else:
                    d = p / q
                    u = x + d
                    if u - a < tol2 or b - u < tol2:
                        d = _sign(tol1, xm - x)
            else:
                e = a - x if x >= xm else b - x
                d = CGOLD * e

            u = x + d if abs(d) >= tol1 else x + _sign(tol1, d)
            fu = func(u)
            if fu <= fx:
                if u >= x:
                    a = x
                else:
                    b = x
                v, w, x = w, x, u
                fv, fw, fx = fw, fx, fu
            else:
                if u < x:
                    a = u
                else:
                    b = u
                if fu <= fw or w == x:
                    v, w = w, u
                    fv, fw = fw, fu
                elif fu <= fv or v == x or v == w:
                    v = u
                    fv = fu

        return x, fx, _curvature(x, w, v, fx, fw, fv)
