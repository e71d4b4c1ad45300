"""
Expectation-Maximization of rate-category weights.

Wang, Li, Susko and Roger (2008), BMC Evolutionary Biology 8:331.
"""

import logging
from typing import Callable

import numpy as np

logger = logging.getLogger(__name__)

SiteCategoryFunc = Callable[[], np.ndarray]


class EMMinimizer:
    """
    Fixed-point iteration for mixture weights.

    Parameters
    ----------
    max_steps : int
        Maximum number of EM rounds
    tolerance : float
        Largest per-category weight change counted as converged
    """

    def __init__(self, max_steps: int = 10, tolerance: float = 1e-4):
        self.max_steps = max_steps
        self.tolerance = tolerance

    def minimize(
        self,
        weights: np.ndarray,
        site_weights: np.ndarray,
        update_sitecat_lk: SiteCategoryFunc,
    ) -> bool:
        """
        Update ``weights`` in place.

        Parameters
        ----------
        weights : ndarray, shape (n_cats,)
            Current category weights, overwritten with the new estimate
        site_weights : ndarray, shape (n_sites,)
            Pattern counts
        update_sitecat_lk : callable
            Returns the current ``(n_sites, n_cats)`` per-site per-category
            likelihoods

        Returns
        -------
        bool
            Whether the weights converged before the round cap
        """
        site_weights = np.asarray(site_weights, dtype=float)
        total = site_weights.sum()
        ratio = None

        for step in range(1, self.max_steps + 1):
            sitecat_lk = np.array(update_sitecat_lk(), dtype=float)
            if ratio is not None:
                sitecat_lk = sitecat_lk * ratio[np.newaxis, :]

            # expectation
            posterior = sitecat_lk / sitecat_lk.sum(axis=1, keepdims=True)
            new_weights = (site_weights[:, np.newaxis] * posterior).sum(axis=0)

            # maximization
            new_weights /= total
            converged = bool(np.all(np.abs(weights - new_weights) < self.tolerance))
            ratio = new_weights / weights
            weights[:] = new_weights
            logger.debug("EM step %d weights=%s", step, weights)

            if converged:
                return True

        return False
