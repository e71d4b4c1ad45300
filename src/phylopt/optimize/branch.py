"""
Branch-length optimization by Newton-Raphson over a tree walk.

Each visited edge gets its length optimized from the first and second
derivative of the log-likelihood, computed from a sumtable. The walk then
moves into the subtrees hanging off the edge, re-orienting the CLV of the
inner node it passes through so that the next edge again sees two CLVs
facing each other.
"""

import logging
import math
from typing import Optional, Sequence

import numpy as np

from ..core.partition import Partition
from ..io.trees import UNode, UTree
from .newton import NewtonMinimizer
from .params import (
    DEFAULT_BRANCH_LEN,
    DEFAULT_LNL_TOLERANCE,
    DEFAULT_SMOOTHINGS,
    MAX_BRANCH_LEN,
    MIN_BRANCH_LEN,
    TOL_BRANCH_LEN,
)

logger = logging.getLogger(__name__)

# Smallest length change worth a probability matrix update
MIN_LENGTH_CHANGE = 1e-10


class TreePivot:
    """
    Reversible re-orientation of one inner node's CLV.

    On entry the CLV of ``node``'s inner node faces ``node.back``. Calling
    :meth:`toward` with another record of the same inner node recomputes the
    CLV from the two remaining subtrees so it faces that record's edge.
    Leaving the ``with`` block recomputes it toward ``node`` again, also
    when the block raised.

    Examples
    --------
    >>> with TreePivot(tree, partition, node) as pivot:
    ...     pivot.toward(left)
    ...     walk(tree[left.back])
    """

    def __init__(self, tree: UTree, partition: Partition, node: UNode):
        if node.is_tip:
            raise ValueError("Only inner nodes can be pivoted")
        self.tree = tree
        self.partition = partition
        self.node = node

    def toward(self, record: UNode) -> None:
        """Recompute the shared CLV so it faces ``record.back``."""
        left = self.tree[record.next]
        right = self.tree[left.next]
        self.partition.update_partials([self.tree.pivot_operation(record, left, right)])

    def restore(self) -> None:
        self.toward(self.node)

    def __enter__(self) -> "TreePivot":
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.restore()


class BranchOptimizer:
    """
    Optimize branch lengths around an edge of an unrooted tree.

    Preconditions: every CLV is oriented toward the starting edge (see
    :meth:`UTree.traverse_operations`), probability matrices match the
    current branch lengths, and each edge has its own probability matrix.

    Parameters
    ----------
    partition : Partition
        Likelihood state
    tree : UTree
        Tree whose branch lengths are optimized in place
    params_indices : Sequence[int], optional
        Substitution model of each rate category (default all 0)
    branch_length_min, branch_length_max : float
        Domain of branch lengths; non-positive values select the defaults
    tolerance : float
        Stop smoothing once a round gains less log-likelihood than this
    smoothings : int
        Maximum number of smoothing rounds
    radius : int
        How many edges away from the starting edge to walk; negative means
        the whole tree
    keep_update : bool
        Update the probability matrix right after each new length
    check_improvement : bool
        With ``keep_update``, keep a new length only if the log-likelihood
        does not decrease
    verbose : bool
        Print the log-likelihood after each smoothing round
    """

    def __init__(
        self,
        partition: Partition,
        tree: UTree,
        params_indices: Optional[Sequence[int]] = None,
        branch_length_min: float = MIN_BRANCH_LEN,
        branch_length_max: float = MAX_BRANCH_LEN,
        tolerance: float = DEFAULT_LNL_TOLERANCE,
        smoothings: int = DEFAULT_SMOOTHINGS,
        radius: int = -1,
        keep_update: bool = True,
        check_improvement: bool = True,
        verbose: bool = False,
    ):
        self.partition = partition
        self.tree = tree
        if params_indices is None:
            params_indices = np.zeros(partition.rate_cats, dtype=int)
        self.params_indices = np.asarray(params_indices, dtype=int)
        self.branch_length_min = branch_length_min if branch_length_min > 0 else MIN_BRANCH_LEN
        self.branch_length_max = branch_length_max if branch_length_max > 0 else MAX_BRANCH_LEN
        self.tolerance = tolerance
        self.smoothings = smoothings
        self.radius = radius
        self.keep_update = keep_update
        self.check_improvement = check_improvement
        self.verbose = verbose

        newton_tolerance = branch_length_min / 10.0 if branch_length_min > 0 else TOL_BRANCH_LEN
        self.newton = NewtonMinimizer(tolerance=newton_tolerance, max_iters=10)
        self._loglikelihood = -math.inf

    def edge_loglikelihood(self, node: UNode) -> float:
        back = self.tree[node.back]
        return self.partition.compute_edge_loglikelihood(
            back.clv_index,
            back.scaler_index,
            node.clv_index,
            node.scaler_index,
            node.pmatrix_index,
            self.params_indices,
        )

    def _update_pmatrix(self, node: UNode, length: float) -> None:
        self.partition.update_prob_matrices(self.params_indices, [node.pmatrix_index], [length])

    def optimize_edge(self, node: UNode) -> float:
        """
        Newton-optimize the length of ``node``'s edge and commit it.

        Returns the committed length.
        """
        tree = self.tree
        back = tree[node.back]
        assert node.length == back.length, (
            f"Edge {node.pmatrix_index} has lengths {node.length} and {back.length}"
        )

        sumtable = self.partition.update_sumtable(
            node.clv_index, back.clv_index, self.params_indices
        )

        def derivatives(proposal: float) -> tuple[float, float]:
            return self.partition.compute_likelihood_derivatives(
                node.scaler_index, back.scaler_index, proposal, self.params_indices, sumtable
            )

        xmin = self.branch_length_min
        xmax = self.branch_length_max
        xguess = node.length
        if xguess < xmin or xguess > xmax:
            xguess = DEFAULT_BRANCH_LEN

        xres = self.newton.minimize(xmin, xguess, xmax, derivatives)

        if self.keep_update and abs(node.length - xres) > MIN_LENGTH_CHANGE:
            self._update_pmatrix(node, xres)
            if self.check_improvement:
                new_loglikelihood = self.edge_loglikelihood(node)
                if new_loglikelihood >= self._loglikelihood:
                    self._loglikelihood = new_loglikelihood
                    tree.set_branch_length(node, xres)
                else:
                    # worse: put back the matrix of the old length
                    self._update_pmatrix(node, node.length)
            else:
                tree.set_branch_length(node, xres)
        else:
            tree.set_branch_length(node, xres)

        logger.debug(
            "Optimized branch %d - %d (%.6f)", node.clv_index, back.clv_index, node.length
        )
        return node.length

    def walk(self, node: UNode, radius: int) -> None:
        """Optimize ``node``'s edge, then the edges behind its inner node up to ``radius``."""
        self.optimize_edge(node)

        if radius == 0 or node.is_tip:
            return

        q, z = self.tree.children(node)
        with TreePivot(self.tree, self.partition, node) as pivot:
            pivot.toward(q)
            self.walk(self.tree[q.back], radius - 1)
            pivot.toward(z)
            self.walk(self.tree[z.back], radius - 1)

    def optimize(self, edge: Optional[UNode] = None) -> float:
        """
        Run smoothing rounds starting at ``edge``.

        Each round walks from both ends of ``edge``. The loop ends after
        ``smoothings`` rounds or once a round improves the log-likelihood by
        less than ``tolerance``.

        Returns
        -------
        float
            Negative log-likelihood after the last round
        """
        tree = self.tree
        if edge is None:
            edge = tree.default_edge()
        back = tree[edge.back]

        loglikelihood = self.edge_loglikelihood(edge)
        if self.radius < 0:
            back_radius = self.radius
        else:
            back_radius = max(self.radius - 1, 0)

        for round_index in range(1, self.smoothings + 1):
            self._loglikelihood = loglikelihood

            self.walk(edge, self.radius)
            self.walk(back, back_radius)

            new_loglikelihood = self.edge_loglikelihood(edge)
            logger.debug(
                "Smoothing round %d: old %f, new %f", round_index, loglikelihood, new_loglikelihood
            )
            if self.verbose:
                print(f"  Smoothing round {round_index}: lnL = {new_loglikelihood:.6f}")

            slack = 1e-8 * max(1.0, abs(loglikelihood))
            assert new_loglikelihood >= loglikelihood - slack, (
                f"Log-likelihood decreased during smoothing: {loglikelihood} -> {new_loglikelihood}"
            )

            converged = abs(new_loglikelihood - loglikelihood) < self.tolerance
            loglikelihood = new_loglikelihood
            if converged:
                break

        return -loglikelihood
