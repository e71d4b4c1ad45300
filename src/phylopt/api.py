"""
High-level API for maximum-likelihood model and branch-length optimization.

This module loads an alignment and a tree, builds a GTR+G(+I) partition
with empirical starting values, runs the optimization loop and wraps the
outcome in a :class:`ModelResult`.
"""

from dataclasses import dataclass
from typing import Dict, Any, Optional, List, Union
from pathlib import Path
import json

import numpy as np

from .core.gamma import discrete_gamma_rates
from .core.msa import empirical_frequencies, empirical_invariant_sites, empirical_subst_rates
from .core.partition import Partition
from .io.sequences import Alignment
from .io.trees import UTree
from .optimize.optimizer import ModelOptimizer
from .optimize.params import (
    DEFAULT_ALPHA,
    DEFAULT_BRANCH_LEN,
    DEFAULT_LNL_TOLERANCE,
    DEFAULT_PINV,
    DEFAULT_SMOOTHINGS,
    MAX_PINV,
    MIN_BRANCH_LEN,
    MIN_FREQ,
    OptimizationRequest,
    ParameterKind,
)


@dataclass
class ModelResult:
    """
    Result of a model optimization.

    Attributes
    ----------
    lnL : float
        Final log-likelihood
    subst_rates : List[float]
        Pairwise substitution rates (last rate fixed to 1)
    frequencies : List[float]
        Stationary frequencies
    alpha : Optional[float]
        Gamma shape, None without rate heterogeneity
    pinv : Optional[float]
        Proportion of invariant sites, None when not modelled
    category_rates : List[float]
        Rate of each Gamma category
    tree : UTree
        Tree with optimized branch lengths
    alignment : Alignment
        Alignment used for optimization
    n_params : int
        Number of free parameters
    convergence_info : Optional[Dict[str, Any]]
        Per-round log-likelihoods

    Examples
    --------
    >>> from phylopt import optimize_model
    >>> result = optimize_model("alignment.phy", "tree.nwk")
    >>> print(result.summary())
    >>> result.to_json("results.json")
    """

    lnL: float
    subst_rates: List[float]
    frequencies: List[float]
    alpha: Optional[float]
    pinv: Optional[float]
    category_rates: List[float]
    tree: UTree
    alignment: Alignment
    n_params: int
    convergence_info: Optional[Dict[str, Any]] = None

    @property
    def newick(self) -> str:
        """Tree with optimized branch lengths in Newick format."""
        return self.tree.to_newick()

    @property
    def tree_length(self) -> float:
        return float(np.sum(self.tree.branch_lengths()))

    @property
    def model_name(self) -> str:
        name = "GTR" if self.alignment.seqtype == "dna" else "Poisson"
        if self.pinv is not None:
            name += "+I"
        if self.alpha is not None:
            name += f"+G{len(self.category_rates)}"
        return name

    def summary(self) -> str:
        """
        Generate human-readable summary of optimization results.

        Returns
        -------
        str
            Formatted multi-line summary
        """
        lines = []
        lines.append("=" * 70)
        lines.append(f"MODEL: {self.model_name}")
        lines.append("=" * 70)
        lines.append("")
        lines.append(f"Log-likelihood:       {self.lnL:.6f}")
        lines.append(f"Number of parameters: {self.n_params}")
        lines.append("")
        lines.append("PARAMETERS:")
        if self.alignment.seqtype == "dna":
            pairs = ["A<->C", "A<->G", "A<->T", "C<->G", "C<->T", "G<->T"]
            lines.append("  Substitution rates:")
            for pair, rate in zip(pairs, self.subst_rates):
                lines.append(f"    {pair} = {rate:.4f}")
            lines.append("  Frequencies:")
            for state, freq in zip("ACGT", self.frequencies):
                lines.append(f"    pi({state}) = {freq:.4f}")
        if self.alpha is not None:
            lines.append(f"  alpha (Gamma shape) = {self.alpha:.4f}")
        if self.pinv is not None:
            lines.append(f"  p-inv = {self.pinv:.4f}")

        lines.append("")
        lines.append("TREE:")
        lines.append(f"  {self.tree.n_tips} sequences")
        lines.append(f"  {self.tree.n_edges} branches (optimized)")
        lines.append(f"  tree length = {self.tree_length:.6f}")
        lines.append(f"  {self.newick}")

        lines.append("")
        lines.append("=" * 70)

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """
        Export results as a dictionary.

        The alignment is not included; the tree is exported as Newick.
        """
        return {
            'model_name': self.model_name,
            'lnL': float(self.lnL),
            'subst_rates': [float(r) for r in self.subst_rates],
            'frequencies': [float(f) for f in self.frequencies],
            'alpha': None if self.alpha is None else float(self.alpha),
            'pinv': None if self.pinv is None else float(self.pinv),
            'category_rates': [float(r) for r in self.category_rates],
            'n_params': int(self.n_params),
            'tree': self.newick,
            'convergence_info': self.convergence_info,
        }

    def to_json(self, filepath: Optional[str] = None, indent: int = 2) -> str:
        """
        Export results as JSON.

        Parameters
        ----------
        filepath : str, optional
            If provided, write JSON to this file
        indent : int, default=2
            Indentation level for pretty printing
        """
        json_str = json.dumps(self.to_dict(), indent=indent)

        if filepath:
            with open(filepath, 'w') as f:
                f.write(json_str)

        return json_str

    def __str__(self) -> str:
        return self.summary()

    def __repr__(self) -> str:
        return f"ModelResult(model='{self.model_name}', lnL={self.lnL:.2f})"


def _load_alignment(alignment: Union[str, Path, Alignment], seqtype: str) -> Alignment:
    if isinstance(alignment, Alignment):
        return alignment
    return Alignment.from_file(alignment, seqtype=seqtype)


def _load_tree(tree: Union[str, Path, UTree]) -> UTree:
    if isinstance(tree, UTree):
        return tree
    if isinstance(tree, str) and tree.lstrip().startswith("("):
        return UTree.from_newick(tree)
    return UTree.from_file(tree)


def build_partition(alignment: Alignment, tree: UTree, categories: int = 4) -> Partition:
    """
    Create a partition for ``tree`` holding the compressed ``alignment``.

    Tip ``i`` of the tree receives the sequence with the same name.

    Raises
    ------
    ValueError
        If tree and alignment taxa differ
    """
    if sorted(tree.tip_names) != sorted(alignment.names):
        missing = set(tree.tip_names) ^ set(alignment.names)
        raise ValueError(f"Tree and alignment taxa differ: {sorted(missing)}")

    patterns, weights = alignment.compress_patterns()
    partition = Partition(
        tips=tree.n_tips,
        clv_buffers=tree.n_clv,
        states=alignment.n_states,
        sites=patterns.shape[1],
        rate_matrices=1,
        prob_matrices=tree.n_edges,
        rate_cats=categories,
        scale_buffers=tree.n_inner,
        pattern_weights=weights,
    )
    row = {name: i for i, name in enumerate(alignment.names)}
    for tip, name in enumerate(tree.tip_names):
        partition.set_tip_states(tip, patterns[row[name]])
    return partition


def optimize_model(
    alignment: Union[str, Path, Alignment],
    tree: Union[str, Path, UTree],
    seqtype: str = "dna",
    categories: int = 4,
    pinv: bool = False,
    optimize_frequencies: bool = False,
    tolerance: float = DEFAULT_LNL_TOLERANCE,
    smoothings: int = DEFAULT_SMOOTHINGS,
    max_rounds: int = 20,
    verbose: bool = False,
) -> ModelResult:
    """
    Optimize a substitution model and branch lengths on a fixed tree.

    DNA data use GTR with empirical starting rates; protein data use equal
    exchangeabilities. Rate heterogeneity is a discrete Gamma with
    ``categories`` classes (none when 1).

    Parameters
    ----------
    alignment : str, Path, or Alignment
        Alignment file (FASTA or PHYLIP, auto-detected) or object
    tree : str, Path, or UTree
        Newick file, Newick string or tree object
    seqtype : str, default="dna"
        'dna' or 'aa'
    categories : int, default=4
        Number of Gamma rate categories
    pinv : bool, default=False
        Model a proportion of invariant sites
    optimize_frequencies : bool, default=False
        Optimize stationary frequencies instead of keeping empirical ones
    tolerance : float
        Log-likelihood improvement below which rounds stop
    smoothings : int
        Maximum branch-length smoothing rounds per model round
    max_rounds : int
        Maximum model rounds
    verbose : bool
        Print optimization progress

    Returns
    -------
    ModelResult

    Raises
    ------
    ValueError
        If the inputs cannot be parsed or do not match

    Notes
    -----
    The tree object is modified in-place with optimized branch lengths.
    """
    if categories < 1:
        raise ValueError(f"categories must be at least 1, got {categories}")

    aln = _load_alignment(alignment, seqtype)
    utree = _load_tree(tree)
    partition = build_partition(aln, utree, categories)

    lengths = utree.branch_lengths()
    utree.set_branch_lengths(np.where(lengths < MIN_BRANCH_LEN, DEFAULT_BRANCH_LEN, lengths))

    freqs = np.maximum(empirical_frequencies(partition), MIN_FREQ)
    partition.set_frequencies(0, freqs / freqs.sum())

    parameters = ParameterKind.BRANCHES_ITERATIVE
    n_params = utree.n_edges
    if aln.seqtype == "dna":
        partition.set_subst_params(0, empirical_subst_rates(partition))
        parameters |= ParameterKind.SUBST_RATES
        n_params += len(partition.subst_params[0]) - 1
    if optimize_frequencies:
        parameters |= ParameterKind.FREQUENCIES
        n_params += partition.states - 1
    if categories > 1:
        partition.set_category_rates(discrete_gamma_rates(DEFAULT_ALPHA, categories))
        parameters |= ParameterKind.ALPHA
        n_params += 1
    if pinv:
        start = min(empirical_invariant_sites(partition) / 2.0, MAX_PINV)
        partition.update_invariant_sites_proportion(0, start if start > 0 else DEFAULT_PINV)
        parameters |= ParameterKind.PINV
        n_params += 1

    optimizer = ModelOptimizer(partition, utree, alpha_value=DEFAULT_ALPHA, verbose=verbose)
    request = OptimizationRequest(
        parameters=parameters,
        tolerance=tolerance,
        smoothings=smoothings,
        max_rounds=max_rounds,
    )
    lnL = optimizer.optimize(request)

    return ModelResult(
        lnL=lnL,
        subst_rates=partition.subst_params[0].tolist(),
        frequencies=partition.frequencies[0].tolist(),
        alpha=optimizer.context.alpha_value if categories > 1 else None,
        pinv=float(partition.prop_invar[0]) if pinv else None,
        category_rates=partition.rates.tolist(),
        tree=utree,
        alignment=aln,
        n_params=n_params,
        convergence_info={'history': optimizer.history},
    )
