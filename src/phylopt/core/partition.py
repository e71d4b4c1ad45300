"""
Likelihood state of one alignment partition.

A :class:`Partition` owns the numeric buffers used by Felsenstein's pruning
algorithm: conditional likelihood vectors (CLVs), transition probability
matrices, per-site scale counters, and the substitution model parameters.
The optimizers never touch these arrays directly; they go through the
update and evaluation methods below.

Conventions
-----------
- CLVs have shape ``(sites, rate_cats, states)``. Tips occupy CLV indices
  ``0 .. tips - 1``.
- ``params_indices`` maps each rate category to the substitution model
  (rate matrix) used for it.
- Scale counters record how many times a site was multiplied by
  ``SCALE_FACTOR`` below a node; log-likelihoods subtract
  ``count * log(SCALE_FACTOR)``.
"""

from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from ..errors import PartitionError
from .matrix import (
    create_reversible_Q,
    eigen_decompose_rev,
    exchangeability_matrix,
    n_subst_rates,
)

SCALE_EXPONENT = 256
SCALE_FACTOR = 2.0 ** SCALE_EXPONENT
SCALE_THRESHOLD = 1.0 / SCALE_FACTOR
LOG_SCALE_FACTOR = SCALE_EXPONENT * np.log(2.0)


@dataclass
class Operation:
    """
    One pruning step: recompute a parent CLV from two children.

    Scaler indices are ``None`` for nodes without a scale buffer (tips).
    """

    parent_clv_index: int
    parent_scaler_index: Optional[int]
    child1_clv_index: int
    child1_matrix_index: int
    child1_scaler_index: Optional[int]
    child2_clv_index: int
    child2_matrix_index: int
    child2_scaler_index: Optional[int]


class Partition:
    """
    Numeric model state for one partition.

    Parameters
    ----------
    tips : int
        Number of tip sequences
    clv_buffers : int
        Number of CLVs (tips + inner nodes)
    states : int
        Number of character states (4 for DNA, 20 for proteins)
    sites : int
        Number of site patterns
    rate_matrices : int
        Number of substitution models
    prob_matrices : int
        Number of probability matrices (one per edge)
    rate_cats : int
        Number of rate categories
    scale_buffers : int
        Number of scale counter buffers (one per inner node)
    pattern_weights : array-like, optional
        Multiplicity of each site pattern (default all ones)

    Examples
    --------
    >>> p = Partition(tips=2, clv_buffers=2, states=4, sites=3,
    ...               rate_matrices=1, prob_matrices=1, rate_cats=1,
    ...               scale_buffers=0)
    >>> p.set_tip_states(0, [0, 1, 2])
    """

    def __init__(
        self,
        tips: int,
        clv_buffers: int,
        states: int,
        sites: int,
        rate_matrices: int,
        prob_matrices: int,
        rate_cats: int,
        scale_buffers: int,
        pattern_weights: Optional[Sequence[float]] = None,
    ):
        if tips < 2:
            raise ValueError(f"Partition needs at least 2 tips, got {tips}")
        if clv_buffers < tips:
            raise ValueError("clv_buffers must be at least the number of tips")
        if states < 2 or sites < 1 or rate_cats < 1 or rate_matrices < 1:
            raise ValueError("states >= 2, sites >= 1, rate_cats >= 1 and rate_matrices >= 1 required")

        self.tips = tips
        self.clv_buffers = clv_buffers
        self.states = states
        self.sites = sites
        self.rate_matrices = rate_matrices
        self.prob_matrices = prob_matrices
        self.rate_cats = rate_cats
        self.scale_buffers = scale_buffers

        self.clv = np.zeros((clv_buffers, sites, rate_cats, states))
        self.clv[:tips] = 1.0
        self.pmatrix = np.tile(np.eye(states), (prob_matrices, rate_cats, 1, 1))
        self.scale_buffer = np.zeros((scale_buffers, sites), dtype=np.int64)

        self.subst_params = np.ones((rate_matrices, n_subst_rates(states)))
        self.frequencies = np.full((rate_matrices, states), 1.0 / states)
        self.prop_invar = np.zeros(rate_matrices)
        self.rates = np.ones(rate_cats)
        self.rate_weights = np.full(rate_cats, 1.0 / rate_cats)

        if pattern_weights is None:
            self.pattern_weights = np.ones(sites)
        else:
            self.set_pattern_weights(pattern_weights)

        self._eigen: list[Optional[tuple[np.ndarray, np.ndarray, np.ndarray]]] = [None] * rate_matrices
        self._tip_masks: Optional[np.ndarray] = None

    # ------------------------------------------------------------------
    # tip data
    # ------------------------------------------------------------------

    def set_tip_states(self, tip_index: int, encoded: Sequence[int]) -> None:
        """
        Set a tip CLV from integer-encoded states.

        Codes outside ``0 .. states - 1`` (e.g. -1 for gaps) are treated as
        fully ambiguous.
        """
        self._check_tip(tip_index)
        encoded = np.asarray(encoded, dtype=int)
        if encoded.shape != (self.sites,):
            raise ValueError(f"Expected {self.sites} tip states, got {encoded.shape}")

        tip_clv = np.zeros((self.sites, self.states))
        known = (encoded >= 0) & (encoded < self.states)
        tip_clv[np.flatnonzero(known), encoded[known]] = 1.0
        tip_clv[~known] = 1.0
        self.set_tip_clv(tip_index, tip_clv)

    def set_tip_clv(self, tip_index: int, tip_clv: np.ndarray) -> None:
        """Set a tip CLV from a ``(sites, states)`` array of partial likelihoods."""
        self._check_tip(tip_index)
        tip_clv = np.asarray(tip_clv, dtype=float)
        if tip_clv.shape != (self.sites, self.states):
            raise ValueError(
                f"Tip CLV has shape {tip_clv.shape}, expected ({self.sites}, {self.states})"
            )
        self.clv[tip_index] = tip_clv[:, np.newaxis, :]
        self._tip_masks = None

    def set_pattern_weights(self, pattern_weights: Sequence[float]) -> None:
        weights = np.asarray(pattern_weights, dtype=float)
        if weights.shape != (self.sites,):
            raise ValueError(f"Expected {self.sites} pattern weights, got {weights.shape}")
        if np.any(weights < 0):
            raise ValueError("Pattern weights must be non-negative")
        self.pattern_weights = weights

    def _check_tip(self, tip_index: int) -> None:
        if not 0 <= tip_index < self.tips:
            raise IndexError(f"Tip index {tip_index} out of range [0, {self.tips})")

    # ------------------------------------------------------------------
    # model parameters
    # ------------------------------------------------------------------

    def set_subst_params(self, params_index: int, subst_rates: Sequence[float]) -> None:
        """Set the pairwise substitution rates of one model."""
        rates = np.asarray(subst_rates, dtype=float)
        if rates.shape != (n_subst_rates(self.states),):
            raise PartitionError(
                f"Expected {n_subst_rates(self.states)} substitution rates, got {rates.shape}"
            )
        if not np.all(np.isfinite(rates)) or np.any(rates <= 0):
            raise PartitionError(f"Substitution rates must be positive and finite: {rates}")
        self.subst_params[params_index] = rates
        self._eigen[params_index] = None

    def set_frequencies(self, params_index: int, frequencies: Sequence[float]) -> None:
        """Set the stationary frequencies of one model."""
        freqs = np.asarray(frequencies, dtype=float)
        if freqs.shape != (self.states,):
            raise PartitionError(f"Expected {self.states} frequencies, got {freqs.shape}")
        if not np.all(np.isfinite(freqs)) or np.any(freqs <= 0):
            raise PartitionError(f"Frequencies must be positive and finite: {freqs}")
        if abs(np.sum(freqs) - 1.0) > 1e-6:
            raise PartitionError(f"Frequencies must sum to 1, got {np.sum(freqs)}")
        self.frequencies[params_index] = freqs
        self._eigen[params_index] = None

    def update_invariant_sites_proportion(self, params_index: int, prop_invar: float) -> None:
        """Set the proportion of invariant sites of one model."""
        if not np.isfinite(prop_invar) or prop_invar < 0 or prop_invar >= 1:
            raise PartitionError(f"Invalid proportion of invariant sites: {prop_invar}")
        self.prop_invar[params_index] = prop_invar

    def set_category_rates(self, rates: Sequence[float]) -> None:
        rates = np.asarray(rates, dtype=float)
        if rates.shape != (self.rate_cats,):
            raise PartitionError(f"Expected {self.rate_cats} category rates, got {rates.shape}")
        if not np.all(np.isfinite(rates)) or np.any(rates <= 0):
            raise PartitionError(f"Category rates must be positive and finite: {rates}")
        self.rates = rates.copy()

    def set_category_weights(self, weights: Sequence[float]) -> None:
        weights = np.asarray(weights, dtype=float)
        if weights.shape != (self.rate_cats,):
            raise PartitionError(f"Expected {self.rate_cats} category weights, got {weights.shape}")
        if not np.all(np.isfinite(weights)) or np.any(weights <= 0):
            raise PartitionError(f"Category weights must be positive and finite: {weights}")
        self.rate_weights = weights.copy()

    def eigen_decomposition(self, params_index: int) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Eigenvalues and eigenvectors of the normalized rate matrix (cached)."""
        if self._eigen[params_index] is None:
            R = exchangeability_matrix(self.subst_params[params_index], self.states)
            pi = self.frequencies[params_index]
            Q = create_reversible_Q(R, pi, normalize=True)
            self._eigen[params_index] = eigen_decompose_rev(Q, pi)
        return self._eigen[params_index]

    def _check_params_indices(self, params_indices: Sequence[int]) -> np.ndarray:
        params_indices = np.asarray(params_indices, dtype=int)
        if params_indices.shape != (self.rate_cats,):
            raise ValueError(
                f"Expected {self.rate_cats} params indices, got {params_indices.shape}"
            )
        return params_indices

    # ------------------------------------------------------------------
    # likelihood machinery
    # ------------------------------------------------------------------

    def update_prob_matrices(
        self,
        params_indices: Sequence[int],
        matrix_indices: Sequence[int],
        branch_lengths: Sequence[float],
    ) -> None:
        """
        Recompute P(t) = U diag(exp(lambda * r_c * t)) V for the given matrices.

        Raises
        ------
        PartitionError
            If a branch length is negative or not finite
        """
        params_indices = self._check_params_indices(params_indices)
        for matrix_index, length in zip(matrix_indices, branch_lengths):
            if not np.isfinite(length) or length < 0:
                raise PartitionError(f"Invalid branch length: {length}")
            for c in range(self.rate_cats):
                eigenvalues, U, V = self.eigen_decomposition(params_indices[c])
                self.pmatrix[matrix_index, c] = (
                    U * np.exp(eigenvalues * self.rates[c] * length)
                ) @ V

    def update_partials(self, operations: Sequence[Operation]) -> None:
        """Apply pruning operations in order, rescaling sites that underflow."""
        for op in operations:
            left = np.einsum(
                "cij,scj->sci", self.pmatrix[op.child1_matrix_index], self.clv[op.child1_clv_index]
            )
            right = np.einsum(
                "cij,scj->sci", self.pmatrix[op.child2_matrix_index], self.clv[op.child2_clv_index]
            )
            parent = left * right

            if op.parent_scaler_index is not None:
                counts = self._scale_counts(op.child1_scaler_index, op.child2_scaler_index)
                underflow = parent.max(axis=(1, 2)) < SCALE_THRESHOLD
                parent[underflow] *= SCALE_FACTOR
                self.scale_buffer[op.parent_scaler_index] = counts + underflow

            self.clv[op.parent_clv_index] = parent

    def _scale_counts(self, *scaler_indices: Optional[int]) -> np.ndarray:
        counts = np.zeros(self.sites, dtype=np.int64)
        for index in scaler_indices:
            if index is not None:
                counts += self.scale_buffer[index]
        return counts

    def invariant_states(self) -> np.ndarray:
        """Boolean ``(sites, states)`` mask of states compatible with every tip."""
        if self._tip_masks is None:
            self._tip_masks = np.all(self.clv[: self.tips, :, 0, :] > 0, axis=0)
        return self._tip_masks

    def _site_log_likelihoods(
        self, cat_lk: np.ndarray, counts: np.ndarray, params_indices: np.ndarray
    ) -> np.ndarray:
        """Combine scaled per-category likelihoods into per-site log-likelihoods."""
        pinv = self.prop_invar[params_indices]
        site_lk = cat_lk @ (self.rate_weights * (1.0 - pinv))

        with np.errstate(divide="ignore"):
            log_lk = np.log(site_lk) - counts * LOG_SCALE_FACTOR
            if np.any(pinv > 0):
                masks = self.invariant_states().astype(float)
                inv_lk = (masks @ self.frequencies[params_indices].T) @ (self.rate_weights * pinv)
                log_lk = np.logaddexp(log_lk, np.log(inv_lk))
        return log_lk

    def _reduce(self, site_log_lk: np.ndarray, persite: bool):
        if persite:
            return site_log_lk
        return float(np.sum(self.pattern_weights * site_log_lk))

    def compute_edge_loglikelihood(
        self,
        parent_clv_index: int,
        parent_scaler_index: Optional[int],
        child_clv_index: int,
        child_scaler_index: Optional[int],
        matrix_index: int,
        params_indices: Sequence[int],
        persite: bool = False,
    ):
        """
        Log-likelihood evaluated at an edge whose two CLVs face each other.

        Returns a float, or per-site log-likelihoods when ``persite`` is set.
        """
        params_indices = self._check_params_indices(params_indices)
        cat_lk = self._edge_category_likelihoods(
            parent_clv_index, child_clv_index, matrix_index, params_indices
        )
        counts = self._scale_counts(parent_scaler_index, child_scaler_index)
        return self._reduce(self._site_log_likelihoods(cat_lk, counts, params_indices), persite)

    def compute_root_loglikelihood(
        self,
        clv_index: int,
        scaler_index: Optional[int],
        params_indices: Sequence[int],
        persite: bool = False,
    ):
        """Log-likelihood at the root CLV of a rooted tree."""
        params_indices = self._check_params_indices(params_indices)
        freqs = self.frequencies[params_indices]
        cat_lk = np.sum(freqs[np.newaxis] * self.clv[clv_index], axis=2)
        counts = self._scale_counts(scaler_index)
        return self._reduce(self._site_log_likelihoods(cat_lk, counts, params_indices), persite)

    def _edge_category_likelihoods(
        self,
        parent_clv_index: int,
        child_clv_index: int,
        matrix_index: int,
        params_indices: np.ndarray,
    ) -> np.ndarray:
        freqs = self.frequencies[params_indices]
        right = np.einsum("cij,scj->sci", self.pmatrix[matrix_index], self.clv[child_clv_index])
        return np.sum(freqs[np.newaxis] * self.clv[parent_clv_index] * right, axis=2)

    def compute_site_category_likelihoods(
        self,
        parent_clv_index: int,
        child_clv_index: int,
        matrix_index: int,
        params_indices: Sequence[int],
    ) -> np.ndarray:
        """
        Weighted per-site, per-category likelihoods at an edge.

        Entry ``[s, c]`` is ``rate_weights[c] * L(s | c)`` without the
        invariant-site component. Scaling is shared by all categories of a
        site, so the values are only meaningful relative to each other.
        """
        params_indices = self._check_params_indices(params_indices)
        cat_lk = self._edge_category_likelihoods(
            parent_clv_index, child_clv_index, matrix_index, params_indices
        )
        return cat_lk * self.rate_weights[np.newaxis, :]

    def update_sumtable(
        self,
        parent_clv_index: int,
        child_clv_index: int,
        params_indices: Sequence[int],
    ) -> np.ndarray:
        """
        Project the two CLVs of an edge onto the model eigenvectors.

        With ``S[s, c, k] = (pi * L_parent) U[:, k] * (V L_child)[k]`` the site
        likelihood for branch length t is ``sum_k S[s, c, k] exp(lambda_k r_c t)``,
        so derivatives cost O(sites) per evaluation.
        """
        params_indices = self._check_params_indices(params_indices)
        parent = self.clv[parent_clv_index]
        child = self.clv[child_clv_index]
        sumtable = np.empty((self.sites, self.rate_cats, self.states))
        for c in range(self.rate_cats):
            m = params_indices[c]
            _, U, V = self.eigen_decomposition(m)
            left = (parent[:, c, :] * self.frequencies[m]) @ U
            right = child[:, c, :] @ V.T
            sumtable[:, c, :] = left * right
        return sumtable

    def compute_likelihood_derivatives(
        self,
        parent_scaler_index: Optional[int],
        child_scaler_index: Optional[int],
        branch_length: float,
        params_indices: Sequence[int],
        sumtable: np.ndarray,
    ) -> tuple[float, float]:
        """
        First and second derivative of the negative log-likelihood.

        Parameters
        ----------
        branch_length : float
            Proposed length of the edge the sumtable was built for
        sumtable : ndarray
            Output of :meth:`update_sumtable`

        Returns
        -------
        tuple
            ``(d(-lnL)/dt, d2(-lnL)/dt2)``
        """
        params_indices = self._check_params_indices(params_indices)
        pinv = self.prop_invar[params_indices]
        weights = self.rate_weights * (1.0 - pinv)

        exponents = np.stack(
            [self.eigen_decomposition(m)[0] for m in params_indices]
        ) * self.rates[:, np.newaxis]
        expo = np.exp(exponents * branch_length)

        terms = sumtable * expo[np.newaxis]
        site_lk = np.einsum("sck,c->s", terms, weights)
        site_d1 = np.einsum("sck,ck,c->s", terms, exponents, weights)
        site_d2 = np.einsum("sck,ck,c->s", terms, exponents ** 2, weights)

        with np.errstate(over="ignore", divide="ignore", invalid="ignore"):
            if np.any(pinv > 0):
                counts = self._scale_counts(parent_scaler_index, child_scaler_index)
                masks = self.invariant_states().astype(float)
                inv_lk = (masks @ self.frequencies[params_indices].T) @ (self.rate_weights * pinv)
                inv_scaled = np.where(inv_lk > 0, inv_lk * np.exp(counts * LOG_SCALE_FACTOR), 0.0)
                site_lk = site_lk + inv_scaled
            ratio1 = site_d1 / site_lk
            ratio2 = site_d2 / site_lk

        d_f = -float(np.sum(self.pattern_weights * ratio1))
        dd_f = float(np.sum(self.pattern_weights * (ratio1 * ratio1 - ratio2)))
        return d_f, dd_f
