"""
phylopt: maximum-likelihood optimization for phylogenetic models.

Numerical optimizers (Newton-Raphson, Brent, L-BFGS-B, EM) driving the
substitution model parameters and branch lengths of a likelihood partition
on an unrooted tree.

Quick Start
-----------
Optimize GTR+G4 and branch lengths:

>>> from phylopt import optimize_model
>>> result = optimize_model("alignment.phy", "tree.nwk")
>>> print(result.summary())
>>> print(result.newick)

Examples
--------
>>> # Drive the optimizers directly
>>> from phylopt import ModelOptimizer, OptimizationRequest, ParameterKind
>>> optimizer = ModelOptimizer(partition, tree)
>>> lnL = optimizer.optimize(OptimizationRequest(
...     parameters=ParameterKind.ALPHA | ParameterKind.BRANCHES_ITERATIVE))
"""

__version__ = "0.1.0"

# High-level API (simple interface)
from .api import optimize_model, ModelResult

# Optimization drivers and settings
from .optimize.optimizer import ModelOptimizer
from .optimize.params import OptimizationRequest, ParameterKind

# Errors
from .errors import (
    PhyloptError,
    PartitionError,
    UnsupportedParameterError,
    LBFGSBError,
    NewtonDerivativeError,
    NewtonLimitError,
)

# I/O classes (for advanced users)
from .io.sequences import Alignment
from .io.trees import Tree, UTree

# Likelihood engine (expert use)
from .core.partition import Partition

__all__ = [
    # Simple API - Start here!
    "optimize_model",
    "ModelResult",

    # Optimization
    "ModelOptimizer",
    "OptimizationRequest",
    "ParameterKind",

    # Errors
    "PhyloptError",
    "PartitionError",
    "UnsupportedParameterError",
    "LBFGSBError",
    "NewtonDerivativeError",
    "NewtonLimitError",

    # I/O (advanced)
    "Alignment",
    "Tree",
    "UTree",

    # Core (expert)
    "Partition",

    # Version
    "__version__",
]
