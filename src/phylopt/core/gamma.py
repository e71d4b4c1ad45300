"""
Discrete Gamma model of rate heterogeneity among sites.
"""

import numpy as np
from scipy.special import gammainc
from scipy.stats import gamma

from ..errors import PartitionError


def discrete_gamma_rates(alpha: float, n_cats: int, median: bool = False) -> np.ndarray:
    """
    Compute category rates for the discrete Gamma model (Yang 1994).

    The Gamma distribution with shape ``alpha`` and mean 1 is cut into
    ``n_cats`` equiprobable intervals; each category is represented by the
    mean (default) or the median of its interval.

    Parameters
    ----------
    alpha : float
        Shape parameter, must be positive
    n_cats : int
        Number of rate categories
    median : bool, default=False
        Use interval medians rescaled to mean 1 instead of interval means

    Returns
    -------
    ndarray, shape (n_cats,)
        Category rates with mean 1

    Raises
    ------
    PartitionError
        If alpha is not positive or n_cats < 1
    """
    if not np.isfinite(alpha) or alpha <= 0:
        raise PartitionError(f"Gamma shape must be positive, got {alpha}")
    if n_cats < 1:
        raise PartitionError(f"Number of rate categories must be >= 1, got {n_cats}")
    if n_cats == 1:
        return np.ones(1)

    if median:
        points = gamma.ppf((2 * np.arange(n_cats) + 1) / (2.0 * n_cats), a=alpha, scale=1.0 / alpha)
        return points * n_cats / np.sum(points)

    cuts = gamma.ppf(np.arange(1, n_cats) / n_cats, a=alpha, scale=1.0 / alpha)
    cdf = np.concatenate(([0.0], gammainc(alpha + 1.0, cuts * alpha), [1.0]))
    rates = n_cats * np.diff(cdf)

    if not np.all(np.isfinite(rates)):
        raise PartitionError(f"Cannot discretize Gamma distribution for alpha={alpha}")
    return rates
