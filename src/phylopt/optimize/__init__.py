"""
Optimization routines for maximum likelihood parameter estimation.

This module provides:

- **Minimizers**: Newton-Raphson, Brent, L-BFGS-B and EM
- **Parameter codec**: model parameters <-> flat optimization vector
- **Branch lengths**: Newton smoothing over a tree walk
- **Drivers**: :class:`ModelOptimizer`, combining all of the above
"""

from phylopt.optimize.newton import NewtonMinimizer
from phylopt.optimize.brent import BrentMinimizer, BrentResult
from phylopt.optimize.lbfgsb import LBFGSBMinimizer, LBFGSBResult
from phylopt.optimize.em import EMMinimizer
from phylopt.optimize.params import BoundType, OptimizationRequest, ParameterKind
from phylopt.optimize.codec import LikelihoodContext, ParameterCodec
from phylopt.optimize.branch import BranchOptimizer, TreePivot
from phylopt.optimize.optimizer import ModelOptimizer

__all__ = [
    "NewtonMinimizer",
    "BrentMinimizer",
    "BrentResult",
    "LBFGSBMinimizer",
    "LBFGSBResult",
    "EMMinimizer",
    "BoundType",
    "OptimizationRequest",
    "ParameterKind",
    "LikelihoodContext",
    "ParameterCodec",
    "BranchOptimizer",
    "TreePivot",
    "ModelOptimizer",
]
