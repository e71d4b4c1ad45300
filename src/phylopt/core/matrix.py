"""
Rate matrix construction and decomposition for reversible models.

Substitution rates are stored as the upper triangle of the exchangeability
matrix in row order: (0,1), (0,2), ..., (0,n-1), (1,2), ..., (n-2,n-1).
"""

import numpy as np
from scipy.linalg import expm


def n_subst_rates(states: int) -> int:
    """Number of pairwise substitution rates for a model with ``states`` states."""
    return states * (states - 1) // 2


def exchangeability_matrix(subst_rates: np.ndarray, states: int) -> np.ndarray:
    """
    Expand a pairwise rate vector into a symmetric exchangeability matrix.

    Parameters
    ----------
    subst_rates : ndarray, shape (states * (states - 1) / 2,)
        Upper-triangle rates in row order
    states : int
        Number of states

    Returns
    -------
    R : ndarray, shape (states, states)
        Symmetric matrix with zero diagonal
    """
    subst_rates = np.asarray(subst_rates, dtype=float)
    if subst_rates.shape != (n_subst_rates(states),):
        raise ValueError(
            f"Expected {n_subst_rates(states)} substitution rates, "
            f"got {subst_rates.shape[0] if subst_rates.ndim else 0}"
        )
    R = np.zeros((states, states))
    rows, cols = np.triu_indices(states, k=1)
    R[rows, cols] = subst_rates
    R[cols, rows] = subst_rates
    return R


def create_reversible_Q(
    rates: np.ndarray, pi: np.ndarray, normalize: bool = True
) -> np.ndarray:
    """
    Create a reversible rate matrix from exchangeabilities and frequencies.

    Q[i,j] = r[i,j] * pi[j] for i != j and rows sum to zero. With
    ``normalize`` the matrix is scaled to one expected substitution per
    unit of branch length.

    Parameters
    ----------
    rates : ndarray, shape (n, n)
        Symmetric exchangeability matrix
    pi : ndarray, shape (n,)
        Stationary frequencies
    normalize : bool, default=True
        Scale Q to unit mean rate

    Returns
    -------
    Q : ndarray, shape (n, n)
    """
    Q = rates * pi[np.newaxis, :]
    np.fill_diagonal(Q, 0.0)
    np.fill_diagonal(Q, -np.sum(Q, axis=1))

    if normalize:
        expected_rate = -np.dot(pi, Q.diagonal())
        Q /= expected_rate

    return Q


def eigen_decompose_rev(
    Q: np.ndarray, pi: np.ndarray
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Eigendecompose a reversible rate matrix, Q = U @ diag(eigenvalues) @ V.

    The matrix is symmetrised with sqrt(pi) so that ``np.linalg.eigh`` can be
    used, then transformed back.

    Returns
    -------
    eigenvalues : ndarray, shape (n,)
        Ascending; the largest is 0
    U : ndarray, shape (n, n)
        Right eigenvectors (columns)
    V : ndarray, shape (n, n)
        Left eigenvectors (rows), V = U^-1
    """
    sqrt_pi = np.sqrt(pi)
    Q_sym = Q * sqrt_pi[:, np.newaxis] / sqrt_pi[np.newaxis, :]
    # guard against asymmetric round-off before eigh
    Q_sym = 0.5 * (Q_sym + Q_sym.T)

    eigenvalues, eigenvectors = np.linalg.eigh(Q_sym)

    U = eigenvectors / sqrt_pi[:, np.newaxis]
    V = eigenvectors.T * sqrt_pi[np.newaxis, :]

    return eigenvalues, U, V


def matrix_exponential(Q: np.ndarray, t: float) -> np.ndarray:
    """
    Transition probability matrix P(t) = exp(Q t) via scipy's Padé expm.

    Used as an independent check on the eigendecomposition path.
    """
    return expm(Q * t)
