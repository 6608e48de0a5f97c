"""
Library for linear algebra used by GTM partial volume correction.
"""
from dataclasses import dataclass
import logging
import numpy as np

from .errors import DimensionMismatchError, SingularMatrixError


logger = logging.getLogger(__name__)

DEFAULT_CONDITION_THRESHOLD = 1e8
DEFAULT_RCOND = 1e-10


@dataclass(frozen=True)
class LinearSolution:
    """Solution of the GTM linear system.

    Attributes:
        values (np.ndarray): Corrected regional values, shape ``(K,)``.
        condition_number (float): 2-norm condition number of the transfer matrix.
        method (str): ``'direct'`` for an LU solve, ``'lstsq'`` for the least-squares fallback.
    """
    values: np.ndarray
    condition_number: float
    method: str


def solve_gtm_system(transfer_matrix: np.ndarray,
                     regional_means: np.ndarray,
                     condition_threshold: float = DEFAULT_CONDITION_THRESHOLD,
                     rcond: float = DEFAULT_RCOND) -> LinearSolution:
    r"""
    Solve :math:`G c = m` for the corrected regional values :math:`c`.

    A direct LU solve is used when :math:`G` is well conditioned. When its condition number
    exceeds ``condition_threshold``, including a singular :math:`G`, the minimum-norm
    least-squares solution from :func:`numpy.linalg.lstsq` is used instead. Regions with
    identical maps, for example, share their value equally.

    Args:
        transfer_matrix (np.ndarray): The ``(K, K)`` geometric transfer matrix.
        regional_means (np.ndarray): Observed regional means, shape ``(K,)``.
        condition_threshold (float): Largest condition number for which a direct solve is used.
        rcond (float): Relative cutoff for small singular values in the least-squares solve.

    Returns:
        LinearSolution: Corrected values, condition number and the method used.

    Raises:
        DimensionMismatchError: If the matrix is not square or does not match the means.
        SingularMatrixError: If the matrix or means have non-finite entries, the matrix has an
            all-zero row or column, or the least-squares solution is not finite.
    """
    transfer_matrix = np.asarray(transfer_matrix, dtype=float)
    regional_means = np.asarray(regional_means, dtype=float)

    if transfer_matrix.ndim != 2 or transfer_matrix.shape[0] != transfer_matrix.shape[1]:
        raise DimensionMismatchError(f"Transfer matrix must be square. "
                                     f"Got shape {transfer_matrix.shape}.")
    n_regions = transfer_matrix.shape[0]
    if regional_means.shape != (n_regions,):
        raise DimensionMismatchError(f"Expected {n_regions} regional means. "
                                     f"Got shape {regional_means.shape}.")
    if not np.all(np.isfinite(transfer_matrix)) or not np.all(np.isfinite(regional_means)):
        raise SingularMatrixError("Transfer matrix or regional means contain non-finite values.")

    zero_rows = np.flatnonzero(~transfer_matrix.any(axis=1))
    zero_cols = np.flatnonzero(~transfer_matrix.any(axis=0))
    if zero_rows.size > 0 or zero_cols.size > 0:
        raise SingularMatrixError(f"Transfer matrix has all-zero rows {zero_rows.tolist()} or "
                                  f"columns {zero_cols.tolist()}.")

    condition_number = float(np.linalg.cond(transfer_matrix))
    logger.info(f"Transfer matrix condition number: {condition_number:.4g}")

    if np.isfinite(condition_number) and condition_number <= condition_threshold:
        values = np.linalg.solve(transfer_matrix, regional_means)
        return LinearSolution(values=values,
                              condition_number=condition_number,
                              method='direct')

    logger.warning(f"Condition number {condition_number:.4g} exceeds threshold "
                   f"{condition_threshold:.4g}; using least squares.")
    values, _residuals, rank, _singular_values = np.linalg.lstsq(transfer_matrix,
                                                                 regional_means,
                                                                 rcond=rcond)
    if rank < n_regions:
        logger.warning(f"Transfer matrix is rank deficient (rank {rank} of {n_regions}); "
                       f"returning the minimum-norm least-squares solution.")
    if not np.all(np.isfinite(values)):
        raise SingularMatrixError("Least-squares solution of the GTM system is not finite.")

    return LinearSolution(values=values,
                          condition_number=condition_number,
                          method='lstsq')
