"""
Core algorithms for phylogenetic likelihood calculation.

This module provides low-level computational routines:

- **Likelihood state**: Felsenstein's pruning algorithm with per-site scaling
- **Matrix operations**: Eigendecomposition and matrix exponential
- **Rate heterogeneity**: Discrete Gamma categories
- **Empirical estimates**: Starting values from the tip data

These are expert-level functions typically not needed by end users.
The high-level API (:mod:`phylopt.api`) provides easier access.
"""

from phylopt.core.partition import Operation, Partition
from phylopt.core.matrix import eigen_decompose_rev, matrix_exponential
from phylopt.core.gamma import discrete_gamma_rates

__all__ = [
    "Operation",
    "Partition",
    "matrix_exponential",
    "eigen_decompose_rev",
    "discrete_gamma_rates",
]
