"""
Box-constrained quasi-Newton minimization with finite-difference gradients.
"""

import logging
import math
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

import numpy as np
from scipy.optimize import minimize

from ..errors import LBFGSBError
from .params import LBFGSB_ERROR, BoundType

logger = logging.getLogger(__name__)

VectorFunc = Callable[[np.ndarray], float]


class _StopEvaluation(Exception):
    """Raised inside the solver callback to end the run early."""


def forward_difference_gradient(
    func: VectorFunc, x: np.ndarray, score: float, relative_step: float = LBFGSB_ERROR
) -> np.ndarray:
    """
    Forward-difference gradient of ``func`` at ``x``.

    Each coordinate is perturbed by ``relative_step * |x_i|`` (or by
    ``relative_step`` itself when that is below 1e-12). The difference is
    divided by the perturbation actually represented in floating point.

    Parameters
    ----------
    func : callable
        Objective over the full vector
    x : ndarray
        Point of evaluation; restored before returning
    score : float
        ``func(x)``, already computed by the caller
    """
    grad = np.empty(len(x))
    for i in range(len(x)):
        temp = x[i]
        h = relative_step * abs(temp)
        if h < 1e-12:
            h = relative_step
        x[i] = temp + h
        h = x[i] - temp
        grad[i] = (func(x) - score) / h
        x[i] = temp
    return grad


def scipy_bounds(
    lower: Sequence[float], upper: Sequence[float], bound_types: Sequence[BoundType]
) -> list[tuple[Optional[float], Optional[float]]]:
    """Translate per-coordinate bound types into ``scipy.optimize`` bounds."""
    bounds = []
    for lo, hi, kind in zip(lower, upper, bound_types):
        if kind == BoundType.NONE:
            bounds.append((None, None))
        elif kind == BoundType.LOWER:
            bounds.append((float(lo), None))
        elif kind == BoundType.UPPER:
            bounds.append((None, float(hi)))
        else:
            bounds.append((float(lo), float(hi)))
    return bounds


@dataclass
class LBFGSBResult:
    """
    Outcome of an L-BFGS-B run.

    Attributes
    ----------
    x : ndarray
        Final point
    score : float
        Objective re-evaluated at ``x``
    n_evaluations : int
        Number of objective evaluations, gradients included
    """

    x: np.ndarray
    score: float
    n_evaluations: int


class LBFGSBMinimizer:
    """
    Minimize a vector objective under box constraints.

    Wraps ``scipy.optimize.minimize(method='L-BFGS-B')`` with a gradient
    estimated by forward differences, since the objective mixes parameter
    kinds with no shared closed-form derivative.

    Parameters
    ----------
    factr : float
        Stop when the relative reduction of the objective falls below
        ``factr * machine epsilon``
    pgtol : float
        Stop when the largest projected gradient component falls below this
    max_corrections : int
        Limited-memory history size

    Examples
    --------
    >>> lbfgsb = LBFGSBMinimizer()
    >>> result = lbfgsb.minimize(
    ...     np.array([5.0]), [0.0], [10.0], [BoundType.BOTH],
    ...     lambda x: (x[0] - 2.0) ** 2)
    >>> round(result.x[0], 3)
    2.0
    """

    def __init__(self, factr: float = 1e7, pgtol: float = 1e-5, max_corrections: int = 5):
        self.factr = factr
        self.pgtol = pgtol
        self.max_corrections = max_corrections

    def minimize(
        self,
        x: np.ndarray,
        lower: Sequence[float],
        upper: Sequence[float],
        bound_types: Sequence[BoundType],
        func: VectorFunc,
    ) -> LBFGSBResult:
        """
        Run L-BFGS-B from ``x``.

        The run stops early if the objective returns NaN or ``-inf``. The
        objective is evaluated once more at the final point so that the
        returned score matches the returned ``x``.

        Raises
        ------
        LBFGSBError
            If the final score is not finite. When ``func`` exposes a
            ``last_error`` attribute and the final evaluation stores an
            exception there, that exception is raised instead.
        """
        x = np.array(x, dtype=float)
        n_evaluations = [0]
        last_x = [x.copy()]

        def counted(point: np.ndarray) -> float:
            n_evaluations[0] += 1
            return float(func(point))

        def fun_and_grad(point: np.ndarray) -> tuple[float, np.ndarray]:
            point = np.array(point, dtype=float)
            last_x[0] = point.copy()
            score = counted(point)
            if math.isnan(score) or score == -math.inf:
                raise _StopEvaluation
            if score == math.inf:
                # infeasible trial point; the line search backs off
                return score, np.zeros(len(point))
            grad = forward_difference_gradient(counted, point, score)
            logger.debug("L-BFGS-B eval %d score=%f", n_evaluations[0], score)
            return score, grad

        bounds = scipy_bounds(lower, upper, bound_types)
        try:
            result = minimize(
                fun_and_grad,
                x,
                method="L-BFGS-B",
                jac=True,
                bounds=bounds,
                options={
                    "maxcor": self.max_corrections,
                    "ftol": self.factr * np.finfo(float).eps,
                    "gtol": self.pgtol,
                },
            )
            final_x = np.array(result.x, dtype=float)
            logger.debug("L-BFGS-B finished: %s", result.message)
        except _StopEvaluation:
            final_x = last_x[0]
            logger.debug("L-BFGS-B stopped on a non-finite score")

        if hasattr(func, "last_error"):
            # only a failure of the final evaluation is reported
            func.last_error = None
        score = counted(final_x)
        if not math.isfinite(score):
            error = getattr(func, "last_error", None)
            if isinstance(error, Exception):
                raise error
            raise LBFGSBError("Unknown LBFGSB error")

        return LBFGSBResult(x=final_x, score=score, n_evaluations=n_evaluations[0])
