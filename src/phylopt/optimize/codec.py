"""
Mapping between model parameters and the flat optimization vector.

:class:`ParameterCodec` lays out the selected parameter groups in
``LAYOUT_ORDER`` and translates in both directions: ``encode`` reads the
current partition state into a starting vector with bounds, ``decode``
writes a trial vector back onto the partition and refreshes the likelihood
buffers that depend on it.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Optional, Sequence

import numpy as np

from ..core.gamma import discrete_gamma_rates
from ..core.matrix import n_subst_rates
from ..core.partition import Operation, Partition
from ..errors import PartitionError, UnsupportedParameterError
from ..io.trees import UNode, UTree
from .params import (
    DEFAULT_ALPHA,
    LBFGSB_ERROR,
    MAX_ALPHA,
    MAX_BRANCH_LEN,
    MAX_FREQ,
    MAX_PINV,
    MAX_RATE,
    MAX_RATE_WEIGHT,
    MAX_SUBST_RATE,
    MIN_ALPHA,
    MIN_BRANCH_LEN,
    MIN_FREQ,
    MIN_PINV,
    MIN_RATE,
    MIN_RATE_WEIGHT,
    MIN_SUBST_RATE,
    BoundType,
    ParameterKind,
    ordered_kinds,
)

logger = logging.getLogger(__name__)


@dataclass
class LikelihoodContext:
    """
    Where and how the log-likelihood of a partition is evaluated.

    Attributes
    ----------
    partition : Partition
        Numeric model state
    operations : list[Operation]
        Pruning operations that orient every CLV toward the evaluation point
    branch_lengths : ndarray
        Branch lengths, aligned with ``matrix_indices``
    matrix_indices : ndarray
        Probability matrix of each branch
    params_indices : ndarray
        Substitution model of each rate category
    rooted : bool
        Evaluate at ``root_clv_index`` instead of at an edge
    parent_clv_index, child_clv_index : int
        CLVs facing each other across the evaluation edge
    parent_scaler_index, child_scaler_index : Optional[int]
        Their scale buffers
    edge_pmatrix_index : int
        Probability matrix of the evaluation edge
    params_index : int
        Model whose substitution rates and frequencies are optimized
    alpha_value : float
        Current Gamma shape
    """

    partition: Partition
    operations: list[Operation]
    branch_lengths: np.ndarray
    matrix_indices: np.ndarray
    params_indices: np.ndarray
    rooted: bool = False
    root_clv_index: int = 0
    root_scaler_index: Optional[int] = None
    parent_clv_index: int = 0
    parent_scaler_index: Optional[int] = None
    child_clv_index: int = 0
    child_scaler_index: Optional[int] = None
    edge_pmatrix_index: int = 0
    params_index: int = 0
    alpha_value: float = DEFAULT_ALPHA
    _edge_position: Optional[int] = field(default=None, repr=False)

    @classmethod
    def from_utree(
        cls,
        partition: Partition,
        tree: UTree,
        edge: Optional[UNode] = None,
        params_indices: Optional[Sequence[int]] = None,
        alpha_value: float = DEFAULT_ALPHA,
    ) -> "LikelihoodContext":
        """Context evaluating an unrooted tree at ``edge`` (default: tree.default_edge())."""
        if edge is None:
            edge = tree.default_edge()
        back = tree[edge.back]
        if params_indices is None:
            params_indices = np.zeros(partition.rate_cats, dtype=int)
        return cls(
            partition=partition,
            operations=tree.traverse_operations(edge),
            branch_lengths=tree.branch_lengths(),
            matrix_indices=tree.matrix_indices(),
            params_indices=np.asarray(params_indices, dtype=int),
            parent_clv_index=edge.clv_index,
            parent_scaler_index=edge.scaler_index,
            child_clv_index=back.clv_index,
            child_scaler_index=back.scaler_index,
            edge_pmatrix_index=edge.pmatrix_index,
            alpha_value=alpha_value,
        )

    @property
    def n_branches(self) -> int:
        return len(self.branch_lengths)

    def _position(self) -> int:
        if self._edge_position is None:
            matches = np.flatnonzero(np.asarray(self.matrix_indices) == self.edge_pmatrix_index)
            if len(matches) == 0:
                raise ValueError(
                    f"Edge matrix {self.edge_pmatrix_index} is not among the context branches"
                )
            self._edge_position = int(matches[0])
        return self._edge_position

    @property
    def edge_length(self) -> float:
        """Length of the evaluation edge."""
        return float(self.branch_lengths[self._position()])

    @edge_length.setter
    def edge_length(self, value: float) -> None:
        self.branch_lengths[self._position()] = value

    def update_all(self) -> None:
        """Recompute every probability matrix and every partial."""
        self.partition.update_prob_matrices(
            self.params_indices, self.matrix_indices, self.branch_lengths
        )
        self.partition.update_partials(self.operations)

    def loglikelihood(self) -> float:
        """Log-likelihood at the root (rooted) or at the evaluation edge."""
        if self.rooted:
            return self.partition.compute_root_loglikelihood(
                self.root_clv_index, self.root_scaler_index, self.params_indices
            )
        return self.partition.compute_edge_loglikelihood(
            self.parent_clv_index,
            self.parent_scaler_index,
            self.child_clv_index,
            self.child_scaler_index,
            self.edge_pmatrix_index,
            self.params_indices,
        )


def _dominant_index(values: np.ndarray) -> int:
    """Index of the largest value; ties go to the highest index."""
    values = np.asarray(values)
    return int(len(values) - 1 - np.argmax(values[::-1]))


class ParameterCodec:
    """
    Encode and decode the flat vector for a selection of parameter groups.

    Parameters
    ----------
    context : LikelihoodContext
        Partition and evaluation point the parameters are applied to
    parameters : ParameterKind
        Selected groups. ``BRANCHES_ITERATIVE`` occupies no coordinates.
    symmetries : Sequence[int], optional
        Equivalence class of each pairwise substitution rate
    lower_bounds, upper_bounds : Sequence[float], optional
        One override per free coordinate, in layout order

    Raises
    ------
    UnsupportedParameterError
        For topology, or single-branch and all-branch modes together

    Examples
    --------
    >>> codec = ParameterCodec(context, ParameterKind.SUBST_RATES)
    >>> codec.decode(np.array([2.0, 1.0, 1.0, 1.0, 3.0]))
    >>> context.partition.subst_params[0]
    array([2., 1., 1., 1., 3., 1.])
    """

    def __init__(
        self,
        context: LikelihoodContext,
        parameters: ParameterKind,
        symmetries: Optional[Sequence[int]] = None,
        lower_bounds: Optional[Sequence[float]] = None,
        upper_bounds: Optional[Sequence[float]] = None,
    ):
        parameters = ParameterKind(parameters)
        if parameters & ParameterKind.TOPOLOGY:
            raise UnsupportedParameterError("Topology optimization is not implemented")
        if (parameters & ParameterKind.BRANCHES_SINGLE) and (parameters & ParameterKind.BRANCHES_ALL):
            raise UnsupportedParameterError(
                "Single-branch and all-branch optimization cannot be combined"
            )

        self.context = context
        self.parameters = parameters
        self.kinds = ordered_kinds(parameters)

        partition = context.partition
        self.n_subst_rates = n_subst_rates(partition.states)
        if symmetries is not None:
            symmetries = [int(s) for s in symmetries]
            if len(symmetries) != self.n_subst_rates:
                raise ValueError(
                    f"Expected {self.n_subst_rates} symmetry classes, got {len(symmetries)}"
                )
        self.symmetries = symmetries

        # chosen once so that decode and encode agree on the implied slot
        self.highest_freq_state = _dominant_index(partition.frequencies[context.params_index])
        self.highest_weight_state = _dominant_index(partition.rate_weights)

        n = self.n_free
        for name, bounds in (("lower_bounds", lower_bounds), ("upper_bounds", upper_bounds)):
            if bounds is not None and len(bounds) != n:
                raise ValueError(f"{name} must have {n} entries, got {len(bounds)}")
        self.lower_bounds = lower_bounds
        self.upper_bounds = upper_bounds

    # ------------------------------------------------------------------
    # layout
    # ------------------------------------------------------------------

    @property
    def n_subst_free(self) -> int:
        if self.symmetries is not None:
            return max(self.symmetries)
        return self.n_subst_rates - 1

    def group_size(self, kind: ParameterKind) -> int:
        """Number of coordinates used by one parameter group."""
        partition = self.context.partition
        if kind == ParameterKind.SUBST_RATES:
            return self.n_subst_free
        if kind == ParameterKind.FREQUENCIES:
            return partition.states - 1
        if kind in (ParameterKind.PINV, ParameterKind.ALPHA, ParameterKind.BRANCHES_SINGLE):
            return 1
        if kind == ParameterKind.FREE_RATES:
            return partition.rate_cats
        if kind == ParameterKind.RATE_WEIGHTS:
            return partition.rate_cats - 1
        if kind == ParameterKind.BRANCHES_ALL:
            return self.context.n_branches
        raise UnsupportedParameterError(f"No vector layout for {kind!r}")

    @property
    def n_free(self) -> int:
        return sum(self.group_size(kind) for kind in self.kinds)

    # ------------------------------------------------------------------
    # encode
    # ------------------------------------------------------------------

    def _subst_representatives(self) -> list[int]:
        """Index of the rate read for each free substitution coordinate."""
        if self.symmetries is None:
            return list(range(self.n_subst_rates - 1))
        symm = self.symmetries
        representatives = []
        current_rate = 0
        for _ in range(self.n_subst_free):
            if symm[-1] == current_rate:
                current_rate += 1
            representatives.append(symm.index(current_rate))
            current_rate += 1
        return representatives

    def _group_values(self, kind: ParameterKind) -> tuple[list[float], float, float, BoundType]:
        """Current values, default bounds and bound type of one group."""
        context = self.context
        partition = context.partition
        both = BoundType.BOTH

        if kind == ParameterKind.SUBST_RATES:
            rates = partition.subst_params[context.params_index]
            values = [float(rates[j]) for j in self._subst_representatives()]
            return values, MIN_SUBST_RATE, MAX_SUBST_RATE, both

        if kind == ParameterKind.FREQUENCIES:
            freqs = partition.frequencies[context.params_index]
            dominant = freqs[self.highest_freq_state]
            values = [float(freqs[i] / dominant) for i in range(partition.states)
                      if i != self.highest_freq_state]
            return values, MIN_FREQ, MAX_FREQ, both

        if kind == ParameterKind.PINV:
            value = float(partition.prop_invar[context.params_index])
            return [value], MIN_PINV + LBFGSB_ERROR, MAX_PINV, both

        if kind == ParameterKind.ALPHA:
            return [float(context.alpha_value)], MIN_ALPHA, MAX_ALPHA, both

        if kind == ParameterKind.FREE_RATES:
            return [float(r) for r in partition.rates], MIN_RATE, MAX_RATE, both

        if kind == ParameterKind.RATE_WEIGHTS:
            weights = partition.rate_weights
            dominant = weights[self.highest_weight_state]
            values = [float(weights[i] / dominant) for i in range(partition.rate_cats)
                      if i != self.highest_weight_state]
            return values, MIN_RATE_WEIGHT, MAX_RATE_WEIGHT, both

        if kind == ParameterKind.BRANCHES_SINGLE:
            return [context.edge_length], MIN_BRANCH_LEN, MAX_BRANCH_LEN, BoundType.LOWER

        if kind == ParameterKind.BRANCHES_ALL:
            values = [float(t) for t in context.branch_lengths]
            return values, MIN_BRANCH_LEN, MAX_BRANCH_LEN, BoundType.LOWER

        raise UnsupportedParameterError(f"No vector layout for {kind!r}")

    def encode(self) -> tuple[np.ndarray, np.ndarray, np.ndarray, list[BoundType]]:
        """
        Read the current parameter values.

        Returns
        -------
        x : ndarray
            Starting vector
        lower, upper : ndarray
            Per-coordinate bounds (overrides where given)
        bound_types : list[BoundType]
            Which bounds each coordinate enforces
        """
        x: list[float] = []
        lower: list[float] = []
        upper: list[float] = []
        bound_types: list[BoundType] = []
        for kind in self.kinds:
            values, lo, hi, bound_type = self._group_values(kind)
            x.extend(values)
            lower.extend([lo] * len(values))
            upper.extend([hi] * len(values))
            bound_types.extend([bound_type] * len(values))

        if self.lower_bounds is not None:
            lower = list(self.lower_bounds)
        if self.upper_bounds is not None:
            upper = list(self.upper_bounds)

        return np.array(x, dtype=float), np.array(lower, dtype=float), np.array(upper, dtype=float), bound_types

    # ------------------------------------------------------------------
    # decode
    # ------------------------------------------------------------------

    def _decode_subst_rates(self, values: np.ndarray) -> np.ndarray:
        rates = np.empty(self.n_subst_rates)
        if self.symmetries is None:
            rates[:-1] = values
            rates[-1] = 1.0
            return rates
        symm = np.asarray(self.symmetries)
        k = 0
        for i in range(self.n_subst_free + 1):
            if i == symm[-1]:
                next_value = 1.0
            else:
                next_value = values[k]
                k += 1
            rates[symm == i] = next_value
        return rates

    @staticmethod
    def _decode_ratios(values: np.ndarray, dominant: int) -> np.ndarray:
        sum_ratios = 1.0 + float(np.sum(values))
        result = np.empty(len(values) + 1)
        result[np.arange(len(result)) != dominant] = values / sum_ratios
        result[dominant] = 1.0 / sum_ratios
        return result

    def decode(self, x: Sequence[float]) -> None:
        """
        Apply ``x`` to the partition and refresh dependent buffers.

        A single-branch-only selection updates just that edge's probability
        matrix; any other selection recomputes every probability matrix and
        partial.

        Raises
        ------
        PartitionError
            If the partition rejects a value
        """
        context = self.context
        partition = context.partition
        x = np.asarray(x, dtype=float)
        if len(x) != self.n_free:
            raise ValueError(f"Expected {self.n_free} values, got {len(x)}")

        offset = 0
        for kind in self.kinds:
            size = self.group_size(kind)
            values = x[offset:offset + size]
            offset += size
            if np.any(np.isnan(values)):
                raise PartitionError(f"NaN in {kind.name} parameters: {values}")

            if kind == ParameterKind.SUBST_RATES:
                partition.set_subst_params(context.params_index, self._decode_subst_rates(values))
            elif kind == ParameterKind.FREQUENCIES:
                partition.set_frequencies(
                    context.params_index, self._decode_ratios(values, self.highest_freq_state)
                )
            elif kind == ParameterKind.PINV:
                for params_index in context.params_indices:
                    partition.update_invariant_sites_proportion(int(params_index), float(values[0]))
            elif kind == ParameterKind.ALPHA:
                context.alpha_value = float(values[0])
                partition.set_category_rates(discrete_gamma_rates(values[0], partition.rate_cats))
            elif kind == ParameterKind.FREE_RATES:
                partition.set_category_rates(values)
            elif kind == ParameterKind.RATE_WEIGHTS:
                partition.set_category_weights(
                    self._decode_ratios(values, self.highest_weight_state)
                )
            elif kind == ParameterKind.BRANCHES_ALL:
                context.branch_lengths[:] = values
            elif kind == ParameterKind.BRANCHES_SINGLE:
                context.edge_length = float(values[0])

        if self.kinds == [ParameterKind.BRANCHES_SINGLE]:
            partition.update_prob_matrices(
                context.params_indices, [context.edge_pmatrix_index], [context.edge_length]
            )
        else:
            context.update_all()

    def objective(self) -> "NegativeLogLikelihood":
        return NegativeLogLikelihood(self)


class NegativeLogLikelihood:
    """
    Objective ``x -> -lnL`` for the minimizers.

    A :class:`PartitionError` raised while decoding is stored in
    ``last_error`` and the evaluation returns ``+inf``.
    """

    def __init__(self, codec: ParameterCodec):
        self.codec = codec
        self.last_error: Optional[PartitionError] = None
        self.n_evaluations = 0

    def evaluate(self, x: Optional[Sequence[float]] = None) -> float:
        """Decode ``x`` (when given) and return the negative log-likelihood."""
        self.n_evaluations += 1
        if x is not None:
            try:
                self.codec.decode(x)
            except PartitionError as e:
                logger.debug("Rejected parameters %s: %s", np.asarray(x), e.message)
                self.last_error = e
                return math.inf
        return -self.codec.context.loglikelihood()

    def evaluate_scalar(self, x: float) -> float:
        return self.evaluate([x])

    def __call__(self, x: Optional[Sequence[float]] = None) -> float:
        return self.evaluate(x)
