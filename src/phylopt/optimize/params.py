"""
Parameter kinds, bound types, limits and the optimization request.

The order of ``LAYOUT_ORDER`` is the order in which parameter groups are
laid out in the flat optimization vector. Encoding and decoding both
iterate it, so it must never change independently on one side.
"""

from dataclasses import dataclass, field
from enum import IntEnum, IntFlag
from typing import Optional, Sequence


class ParameterKind(IntFlag):
    """Free-parameter groups that can be selected for optimization."""

    SUBST_RATES = 1 << 0
    ALPHA = 1 << 1
    PINV = 1 << 2
    FREQUENCIES = 1 << 3
    BRANCHES_SINGLE = 1 << 4
    BRANCHES_ALL = 1 << 5
    BRANCHES_ITERATIVE = 1 << 6
    TOPOLOGY = 1 << 7
    FREE_RATES = 1 << 8
    RATE_WEIGHTS = 1 << 9


LAYOUT_ORDER = (
    ParameterKind.SUBST_RATES,
    ParameterKind.FREQUENCIES,
    ParameterKind.PINV,
    ParameterKind.ALPHA,
    ParameterKind.FREE_RATES,
    ParameterKind.RATE_WEIGHTS,
    ParameterKind.BRANCHES_SINGLE,
    ParameterKind.BRANCHES_ALL,
)


def ordered_kinds(selection: ParameterKind) -> list[ParameterKind]:
    """Selected groups that occupy the flat vector, in layout order."""
    return [kind for kind in LAYOUT_ORDER if selection & kind]


class BoundType(IntEnum):
    """Which bounds L-BFGS-B enforces on a coordinate."""

    NONE = 0
    LOWER = 1
    BOTH = 2
    UPPER = 3


# Parameter defaults
DEFAULT_PINV = 0.01
DEFAULT_ALPHA = 0.5
DEFAULT_BRANCH_LEN = 0.1

# Forward-difference step for L-BFGS-B gradients (relative, and the floor
# used when the relative step collapses near zero)
LBFGSB_ERROR = 1.0e-7

# Parameter limits
MIN_BRANCH_LEN = 1.0e-4
MAX_BRANCH_LEN = 100.0
TOL_BRANCH_LEN = 1.0e-4
MIN_SUBST_RATE = 1.0e-3
MAX_SUBST_RATE = 1000.0
MIN_FREQ = 1.0e-3
MAX_FREQ = 100.0
MIN_ALPHA = 0.0201 + LBFGSB_ERROR
MAX_ALPHA = 100.0
MIN_PINV = 0.0
MAX_PINV = 0.99

# Mixture model limits
MIN_RATE = 0.02
MAX_RATE = 100.0
MIN_RATE_WEIGHT = 1.0e-3
MAX_RATE_WEIGHT = 100.0

# Default solver settings
DEFAULT_FACTR = 1e7
DEFAULT_PGTOL = 1e-5
DEFAULT_SMOOTHINGS = 32
DEFAULT_LNL_TOLERANCE = 0.1


@dataclass
class OptimizationRequest:
    """
    What to optimize and how.

    Attributes
    ----------
    parameters : ParameterKind
        Selected free-parameter groups
    lower_bounds, upper_bounds : Optional[Sequence[float]]
        Per-coordinate bound overrides, consumed in layout order
    symmetries : Optional[Sequence[int]]
        Equivalence class of each pairwise substitution rate
    tolerance : float
        Log-likelihood improvement below which loops stop
    smoothings : int
        Maximum rounds of branch-length smoothing
    radius : int
        Branch-walk radius (negative means the whole tree)
    keep_update : bool
        Update probability matrices after each branch
    check_improvement : bool
        Roll back single-branch changes that lower the likelihood
    branch_length_min, branch_length_max : float
        Branch-length domain (non-positive values select the defaults)
    factr, pgtol : float
        L-BFGS-B tolerances; ``pgtol`` is also Brent's ``xtol``
    max_rounds : int
        Cap on rounds of the full model loop
    """

    parameters: ParameterKind = ParameterKind.BRANCHES_ITERATIVE
    lower_bounds: Optional[Sequence[float]] = None
    upper_bounds: Optional[Sequence[float]] = None
    symmetries: Optional[Sequence[int]] = None
    tolerance: float = DEFAULT_LNL_TOLERANCE
    smoothings: int = DEFAULT_SMOOTHINGS
    radius: int = -1
    keep_update: bool = True
    check_improvement: bool = True
    branch_length_min: float = MIN_BRANCH_LEN
    branch_length_max: float = MAX_BRANCH_LEN
    factr: float = DEFAULT_FACTR
    pgtol: float = DEFAULT_PGTOL
    max_rounds: int = field(default=20)
