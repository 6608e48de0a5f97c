"""
Observed regional means of a PET image, the right-hand side of the GTM linear system.
"""
from concurrent.futures import ThreadPoolExecutor
import logging
import numpy as np

from .region_set import RegionSet
from ..utils.errors import DimensionMismatchError, EmptyRegionError, InvalidImageError


logger = logging.getLogger(__name__)


def weighted_region_mean(pet_numpy: np.ndarray, indicator: np.ndarray) -> float:
    """
    Indicator-weighted mean of a PET image over one region.

    Only voxels with a positive weight contribute, so values outside the region, including NaN
    outside the scanner field of view, do not affect the mean.

    Args:
        pet_numpy (np.ndarray): 3D PET image array.
        indicator (np.ndarray): 3D indicator or probability map for the region.

    Returns:
        float: :math:`\\sum_v w(v) p(v) / \\sum_v w(v)`, or NaN if the region is empty. Callers
        are expected to check for empty regions first.
    """
    support = indicator > 0
    weights = indicator[support]
    if weights.sum() <= 0:
        return np.nan
    return float(np.sum(weights * pet_numpy[support]) / weights.sum())


def compute_regional_means(pet_numpy: np.ndarray,
                           regions: RegionSet,
                           n_jobs: int = 1) -> np.ndarray:
    """
    Compute the indicator-weighted mean PET intensity in every region.

    Args:
        pet_numpy (np.ndarray): 3D PET image array.
        regions (RegionSet): Regions over which means are computed.
        n_jobs (int): Number of worker threads. Each region is computed independently.

    Returns:
        np.ndarray: Array of shape ``(K,)`` with the mean of each region.

    Raises:
        DimensionMismatchError: If the PET image is not on the region grid.
        EmptyRegionError: If any region's indicator map sums to zero.
        InvalidImageError: If the PET image has non-finite values inside any region.
    """
    pet_numpy = np.asarray(pet_numpy, dtype=float)
    if pet_numpy.ndim != 3:
        raise DimensionMismatchError(f"PET image must be 3D. Got {pet_numpy.ndim} dimensions.")
    regions.check_matches(pet_shape=pet_numpy.shape)

    empty = regions.empty_regions()
    if empty.size > 0:
        raise EmptyRegionError(f"Region '{regions.names[empty[0]]}' (index {empty[0]}) has no "
                               f"voxels; its mean is undefined.", region_index=int(empty[0]))

    n_non_finite = np.count_nonzero(~np.isfinite(pet_numpy[regions.maps.sum(axis=-1) > 0]))
    if n_non_finite > 0:
        raise InvalidImageError(f"PET image has {n_non_finite} non-finite voxels inside the "
                                f"regions.")

    if n_jobs > 1:
        with ThreadPoolExecutor(max_workers=n_jobs) as executor:
            futures = [executor.submit(weighted_region_mean, pet_numpy, indicator)
                       for _, indicator in regions]
            means = [future.result() for future in futures]
    else:
        means = [weighted_region_mean(pet_numpy, indicator) for _, indicator in regions]

    regional_means = np.asarray(means, dtype=float)
    logger.debug(f"Regional means: {regional_means}")
    return regional_means
