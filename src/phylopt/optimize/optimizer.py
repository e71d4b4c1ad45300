"""
High-level optimization drivers for a partition on an unrooted tree.
"""

import logging
import math
from typing import Optional, Sequence

import numpy as np

from ..core.partition import Partition
from ..errors import UnsupportedParameterError
from ..io.trees import UNode, UTree
from .branch import BranchOptimizer
from .brent import BrentMinimizer
from .codec import LikelihoodContext, ParameterCodec
from .em import EMMinimizer
from .lbfgsb import LBFGSBMinimizer
from .params import (
    DEFAULT_ALPHA,
    DEFAULT_FACTR,
    DEFAULT_LNL_TOLERANCE,
    DEFAULT_PGTOL,
    DEFAULT_SMOOTHINGS,
    MAX_ALPHA,
    MAX_BRANCH_LEN,
    MAX_PINV,
    MIN_ALPHA,
    MIN_BRANCH_LEN,
    MIN_PINV,
    OptimizationRequest,
    ParameterKind,
)

logger = logging.getLogger(__name__)

# Groups handled by L-BFGS-B in the full model loop
MULTIDIM_KINDS = (
    ParameterKind.SUBST_RATES
    | ParameterKind.FREQUENCIES
    | ParameterKind.FREE_RATES
    | ParameterKind.RATE_WEIGHTS
    | ParameterKind.BRANCHES_SINGLE
    | ParameterKind.BRANCHES_ALL
)


class ModelOptimizer:
    """
    Optimize model parameters and branch lengths by maximum likelihood.

    The optimizer evaluates the likelihood at one edge of the tree. All
    drivers return the negative log-likelihood of the final state, except
    :meth:`optimize`, which returns the log-likelihood.

    Parameters
    ----------
    partition : Partition
        Likelihood state with tip data and model parameters set
    tree : UTree
        Tree whose branch lengths are optimized in place
    params_indices : Sequence[int], optional
        Substitution model of each rate category (default all 0)
    edge : UNode, optional
        Edge at which the likelihood is evaluated (default ``tree.default_edge()``)
    alpha_value : float
        Current Gamma shape
    symmetries : Sequence[int], optional
        Equivalence class of each pairwise substitution rate
    factr, pgtol : float
        L-BFGS-B tolerances; ``pgtol`` is also Brent's tolerance
    verbose : bool
        Print progress

    Examples
    --------
    >>> optimizer = ModelOptimizer(partition, tree)
    >>> lnL = optimizer.optimize(OptimizationRequest(
    ...     parameters=ParameterKind.SUBST_RATES | ParameterKind.BRANCHES_ITERATIVE))
    """

    def __init__(
        self,
        partition: Partition,
        tree: UTree,
        params_indices: Optional[Sequence[int]] = None,
        edge: Optional[UNode] = None,
        alpha_value: float = DEFAULT_ALPHA,
        symmetries: Optional[Sequence[int]] = None,
        factr: float = DEFAULT_FACTR,
        pgtol: float = DEFAULT_PGTOL,
        verbose: bool = False,
    ):
        self.partition = partition
        self.tree = tree
        self.edge = edge if edge is not None else tree.default_edge()
        self.context = LikelihoodContext.from_utree(
            partition, tree, self.edge, params_indices, alpha_value=alpha_value
        )
        self.symmetries = symmetries
        self.factr = factr
        self.pgtol = pgtol
        self.verbose = verbose
        self.sumtable: Optional[np.ndarray] = None

        # Store optimization history
        self.history: list[dict] = []

    @property
    def params_index(self) -> int:
        return self.context.params_index

    # ------------------------------------------------------------------
    # likelihood state
    # ------------------------------------------------------------------

    def update_likelihood(self) -> float:
        """Copy branch lengths from the tree, recompute every buffer and return lnL."""
        self.context.branch_lengths = self.tree.branch_lengths()
        self.context.update_all()
        self.sumtable = None
        return self.context.loglikelihood()

    def loglikelihood(self) -> float:
        return self.context.loglikelihood()

    def _push_branch_lengths(self) -> None:
        self.tree.set_branch_lengths(self.context.branch_lengths)

    def _codec(
        self,
        parameters: ParameterKind,
        lower_bounds: Optional[Sequence[float]] = None,
        upper_bounds: Optional[Sequence[float]] = None,
    ) -> ParameterCodec:
        return ParameterCodec(
            self.context,
            parameters,
            symmetries=self.symmetries,
            lower_bounds=lower_bounds,
            upper_bounds=upper_bounds,
        )

    # ------------------------------------------------------------------
    # one-dimensional
    # ------------------------------------------------------------------

    def optimize_onedim(self, parameter: ParameterKind, umin: float = 0.0, umax: float = 0.0) -> float:
        """
        Brent optimization of alpha, p-inv or the evaluation edge's length.

        Bounds ``umin``/``umax`` replace the defaults when positive.

        Raises
        ------
        UnsupportedParameterError
            For any other selection, including combinations
        """
        parameter = ParameterKind(parameter)
        if parameter == ParameterKind.ALPHA:
            xguess = self.context.alpha_value
            xmin = umin if umin > 0 else MIN_ALPHA
            xmax = umax if umax > 0 else MAX_ALPHA
        elif parameter == ParameterKind.PINV:
            xguess = float(self.partition.prop_invar[self.params_index])
            xmin = umin if umin > 0 else MIN_PINV
            xmax = umax if umax > 0 else MAX_PINV
        elif parameter == ParameterKind.BRANCHES_SINGLE:
            xguess = self.context.edge_length
            xmin = umin if umin > 0 else MIN_BRANCH_LEN
            xmax = umax if umax > 0 else MAX_BRANCH_LEN
        else:
            raise UnsupportedParameterError(
                f"One-dimensional optimization is not available for {parameter!r}"
            )
        return self._brent(parameter, xmin, xguess, xmax)

    def optimize_brent_ranged(
        self, parameter: ParameterKind, xmin: float, xguess: float, xmax: float
    ) -> float:
        """Brent optimization of a single coordinate over an explicit range."""
        if not xmin <= xguess <= xmax:
            raise ValueError(f"Guess {xguess} outside [{xmin}, {xmax}]")
        codec = self._codec(ParameterKind(parameter))
        if codec.n_free != 1:
            raise UnsupportedParameterError(
                f"{parameter!r} has {codec.n_free} coordinates; Brent needs exactly one"
            )
        return self._brent(parameter, xmin, xguess, xmax, codec)

    def _brent(
        self,
        parameter: ParameterKind,
        xmin: float,
        xguess: float,
        xmax: float,
        codec: Optional[ParameterCodec] = None,
    ) -> float:
        if codec is None:
            codec = self._codec(parameter)
        objective = codec.objective()
        result = BrentMinimizer(xtol=self.pgtol).minimize(
            xmin, xguess, xmax, objective.evaluate_scalar
        )
        if not math.isfinite(result.fx) and objective.last_error is not None:
            raise objective.last_error

        codec.decode([result.x])
        self.sumtable = None
        if parameter & (ParameterKind.BRANCHES_SINGLE | ParameterKind.BRANCHES_ALL):
            self._push_branch_lengths()

        logger.debug("Brent %s: x=%f score=%f", parameter.name, result.x, result.fx)
        if self.verbose:
            print(f"  {parameter.name}: {result.x:.6f}  -lnL = {result.fx:.6f}")
        return result.fx

    # ------------------------------------------------------------------
    # multi-dimensional
    # ------------------------------------------------------------------

    def optimize_multidim(
        self,
        parameters: ParameterKind,
        umin: Optional[Sequence[float]] = None,
        umax: Optional[Sequence[float]] = None,
    ) -> float:
        """
        L-BFGS-B optimization of several parameter groups at once.

        Parameters
        ----------
        parameters : ParameterKind
            Selected groups
        umin, umax : Sequence[float], optional
            Per-coordinate bound overrides, in layout order

        Raises
        ------
        UnsupportedParameterError
            For topology, or single-branch and all-branch modes together
        LBFGSBError
            If the run ends on a non-finite score
        """
        codec = self._codec(ParameterKind(parameters), umin, umax)
        x, lower, upper, bound_types = codec.encode()
        if len(x) == 0:
            return -self.loglikelihood()

        lbfgsb = LBFGSBMinimizer(factr=self.factr, pgtol=self.pgtol)
        result = lbfgsb.minimize(x, lower, upper, bound_types, codec.objective())
        self.sumtable = None

        if codec.parameters & (ParameterKind.BRANCHES_SINGLE | ParameterKind.BRANCHES_ALL):
            self._push_branch_lengths()

        logger.debug(
            "L-BFGS-B %s: score=%f after %d evaluations",
            codec.parameters, result.score, result.n_evaluations,
        )
        if self.verbose:
            names = ", ".join(kind.name for kind in codec.kinds)
            print(f"  {names}: -lnL = {result.score:.6f} ({result.n_evaluations} evaluations)")
        return result.score

    # ------------------------------------------------------------------
    # rate weights
    # ------------------------------------------------------------------

    def optimize_rate_weights_em(self, max_steps: int = 10) -> float:
        """
        EM update of the rate-category weights at the evaluation edge.

        The invariant-site component is not part of the per-category
        likelihoods.
        """
        context = self.context
        partition = self.partition
        weights = partition.rate_weights.copy()
        applied: list[np.ndarray] = []

        def update_sitecat_lk() -> np.ndarray:
            # the EM rescales by new/old weights, so hand it the likelihoods
            # under the weights of one round earlier
            lk = partition.compute_site_category_likelihoods(
                context.parent_clv_index,
                context.child_clv_index,
                context.edge_pmatrix_index,
                context.params_indices,
            ) / partition.rate_weights
            base = applied[-1] if applied else weights
            applied.append(weights.copy())
            return lk * base

        converged = EMMinimizer(max_steps=max_steps).minimize(
            weights, partition.pattern_weights, update_sitecat_lk
        )
        partition.set_category_weights(weights)
        self.sumtable = None
        score = -self.loglikelihood()

        logger.debug("EM weights=%s converged=%s", weights, converged)
        if self.verbose:
            print(f"  Rate weights: {np.round(weights, 4)}  -lnL = {score:.6f}")
        return score

    # ------------------------------------------------------------------
    # branch lengths
    # ------------------------------------------------------------------

    def optimize_branch_lengths_local(
        self,
        radius: int,
        branch_length_min: float = MIN_BRANCH_LEN,
        branch_length_max: float = MAX_BRANCH_LEN,
        tolerance: float = DEFAULT_LNL_TOLERANCE,
        smoothings: int = DEFAULT_SMOOTHINGS,
        keep_update: bool = True,
        check_improvement: bool = True,
    ) -> float:
        """Newton branch-length smoothing around the evaluation edge, up to ``radius`` edges away."""
        self.update_likelihood()
        branch_optimizer = BranchOptimizer(
            self.partition,
            self.tree,
            self.context.params_indices,
            branch_length_min=branch_length_min,
            branch_length_max=branch_length_max,
            tolerance=tolerance,
            smoothings=smoothings,
            radius=radius,
            keep_update=keep_update,
            check_improvement=check_improvement,
            verbose=self.verbose,
        )
        score = branch_optimizer.optimize(self.edge)
        if not keep_update:
            # new lengths are only in the tree, the matrices still hold the old ones
            return -self.update_likelihood()
        self.context.branch_lengths = self.tree.branch_lengths()
        self.sumtable = None
        return score

    def optimize_branch_lengths_iterative(
        self,
        branch_length_min: float = MIN_BRANCH_LEN,
        branch_length_max: float = MAX_BRANCH_LEN,
        tolerance: float = DEFAULT_LNL_TOLERANCE,
        smoothings: int = DEFAULT_SMOOTHINGS,
        keep_update: bool = True,
        check_improvement: bool = True,
    ) -> float:
        """Newton branch-length smoothing over the whole tree."""
        return self.optimize_branch_lengths_local(
            -1,
            branch_length_min=branch_length_min,
            branch_length_max=branch_length_max,
            tolerance=tolerance,
            smoothings=smoothings,
            keep_update=keep_update,
            check_improvement=check_improvement,
        )

    def derivative_func(self, proposal: float) -> tuple[float, float]:
        """
        First and second derivative of -lnL for a proposed evaluation-edge length.

        The sumtable is built on first use and reset by every driver that
        changes the likelihood state.
        """
        context = self.context
        if self.sumtable is None:
            self.sumtable = self.partition.update_sumtable(
                context.parent_clv_index, context.child_clv_index, context.params_indices
            )
        return self.partition.compute_likelihood_derivatives(
            context.parent_scaler_index,
            context.child_scaler_index,
            proposal,
            context.params_indices,
            self.sumtable,
        )

    # ------------------------------------------------------------------
    # full model
    # ------------------------------------------------------------------

    def optimize(self, request: OptimizationRequest) -> float:
        """
        Alternate over the selected parameter groups until lnL stops improving.

        Each round runs, in order: L-BFGS-B over substitution rates,
        frequencies, free rates, rate weights and L-BFGS-B branch modes
        (with the request's bound overrides); Brent over p-inv and alpha;
        and Newton smoothing when ``BRANCHES_ITERATIVE`` is selected.

        Returns
        -------
        float
            Final log-likelihood
        """
        parameters = ParameterKind(request.parameters)
        if parameters & ParameterKind.TOPOLOGY:
            raise UnsupportedParameterError("Topology optimization is not implemented")
        if request.symmetries is not None:
            self.symmetries = request.symmetries
        self.factr = request.factr
        self.pgtol = request.pgtol

        loglikelihood = self.update_likelihood()
        if self.verbose:
            print(f"Initial lnL = {loglikelihood:.6f}")
        self.history.append({"round": 0, "lnL": loglikelihood})

        multidim = parameters & MULTIDIM_KINDS
        for round_index in range(1, request.max_rounds + 1):
            previous = loglikelihood

            if multidim:
                self.optimize_multidim(multidim, request.lower_bounds, request.upper_bounds)
            if parameters & ParameterKind.PINV:
                self.optimize_onedim(ParameterKind.PINV)
            if parameters & ParameterKind.ALPHA:
                self.optimize_onedim(ParameterKind.ALPHA)
            if parameters & ParameterKind.BRANCHES_ITERATIVE:
                self.optimize_branch_lengths_local(
                    request.radius,
                    branch_length_min=request.branch_length_min,
                    branch_length_max=request.branch_length_max,
                    tolerance=request.tolerance,
                    smoothings=request.smoothings,
                    keep_update=request.keep_update,
                    check_improvement=request.check_improvement,
                )

            loglikelihood = self.update_likelihood()
            self.history.append({"round": round_index, "lnL": loglikelihood})
            if self.verbose:
                print(f"Round {round_index}: lnL = {loglikelihood:.6f}")

            if loglikelihood - previous < request.tolerance:
                break

        return loglikelihood
