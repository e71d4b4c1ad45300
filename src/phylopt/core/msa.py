"""
Empirical starting values estimated from the tip data of a partition.

These are plain aggregations over site patterns and serve as starting
points for the iterative optimizers.
"""

import numpy as np

from .partition import Partition

MIN_EMPIRICAL_RATE = 0.01
MAX_EMPIRICAL_RATE = 50.0


def _tip_clvs(partition: Partition) -> np.ndarray:
    """Tip partial likelihoods of the first rate category, ``(tips, sites, states)``."""
    return partition.clv[: partition.tips, :, 0, :]


def empirical_frequencies(partition: Partition) -> np.ndarray:
    """
    Observed state frequencies over all tips and sites.

    Ambiguous characters contribute equally to every compatible state, and
    each pattern counts as many times as its weight.

    Returns
    -------
    ndarray, shape (states,)
        Frequencies summing to 1
    """
    tips = _tip_clvs(partition)
    weights = partition.pattern_weights
    site_sums = tips.sum(axis=2, keepdims=True)
    contributions = tips / site_sums * weights[np.newaxis, :, np.newaxis]
    frequencies = contributions.sum(axis=(0, 1))
    return frequencies / (np.sum(weights) * partition.tips)


def empirical_subst_rates(partition: Partition) -> np.ndarray:
    """
    Pairwise substitution rates from state co-occurrence within columns.

    For every column the number of tips showing each state is counted
    (fully undetermined tips are skipped), and each state pair accumulates
    the product of its counts. Rates are relative to the last pair, clamped
    to ``[0.01, 50]``, and the last rate is fixed at 1.

    Returns
    -------
    ndarray, shape (states * (states - 1) / 2,)
    """
    states = partition.states
    tips = _tip_clvs(partition)
    weights = partition.pattern_weights

    undetermined = np.all(tips >= 1e-7, axis=2)
    present = (tips > 0) & ~undetermined[:, :, np.newaxis]
    state_counts = present.sum(axis=0).astype(float)

    pair_counts = np.einsum("si,sj,s->ij", state_counts, state_counts, weights)
    rows, cols = np.triu_indices(states, k=1)
    pair_rates = pair_counts[rows, cols]

    last_rate = pair_rates[-1]
    if last_rate < 1e-7:
        last_rate = 1.0
    subst_rates = np.clip(pair_rates / last_rate, MIN_EMPIRICAL_RATE, MAX_EMPIRICAL_RATE)
    subst_rates[-1] = 1.0
    return subst_rates


def empirical_invariant_sites(partition: Partition) -> float:
    """Weighted fraction of columns in which every tip can share one state."""
    weights = partition.pattern_weights
    invariant = partition.invariant_states().any(axis=1)
    return float(np.sum(weights[invariant]) / np.sum(weights))
