"""
Exceptions raised by the optimization core.

Each exception carries a numeric code so callers can switch on the kind
of failure without matching on classes.
"""

from typing import Optional

ERROR_PARAMETER = 2000
ERROR_LBFGSB_UNKNOWN = 2100
ERROR_NEWTON_DERIV = 2210
ERROR_NEWTON_LIMIT = 2220


class PhyloptError(Exception):
    """
    Base class for recoverable optimization failures.

    Attributes
    ----------
    code : int
        Numeric error code
    message : str
        Human-readable description
    """

    code = ERROR_PARAMETER

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class PartitionError(PhyloptError):
    """A partition update rejected its input (bad rates, frequencies, p-inv...)."""

    code = ERROR_PARAMETER


class UnsupportedParameterError(PhyloptError):
    """The requested parameter combination cannot be optimized."""

    code = ERROR_PARAMETER


class LBFGSBError(PhyloptError):
    """L-BFGS-B ended on a non-finite score with no more specific cause."""

    code = ERROR_LBFGSB_UNKNOWN


class NewtonDerivativeError(PhyloptError):
    """The derivative oracle returned a non-finite value."""

    code = ERROR_NEWTON_DERIV


class NewtonLimitError(PhyloptError):
    """Newton-Raphson exhausted its iterations without converging."""

    code = ERROR_NEWTON_LIMIT
