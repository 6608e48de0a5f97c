"""
Regions of interest used by GTM partial volume correction.

A :class:`RegionSet` holds K same-shaped 3D indicator (or probability) maps, stacked along a
fourth axis. It can be built directly from a 4D mask image, where each volume along the last
axis is one region, or from a discrete 3D segmentation in which every unique label becomes a
binary region map.
"""
import logging
import numpy as np

from ..utils.errors import DimensionMismatchError, InvalidImageError


logger = logging.getLogger(__name__)

SPACING_TOLERANCE_MM = 1e-4


def unique_segmentation_labels(segmentation_numpy: np.ndarray,
                               zeroth_roi: bool = False) -> np.ndarray:
    """
    Get the unique region labels present in a discrete segmentation.

    Args:
        segmentation_numpy (np.ndarray): Discrete segmentation image array.
        zeroth_roi (bool): If False, the zero label is dropped, as it usually marks background.

    Returns:
        np.ndarray: Sorted array of unique labels.
    """
    unique_labels = np.unique(segmentation_numpy)
    if not zeroth_roi:
        unique_labels = unique_labels[unique_labels != 0]
    return unique_labels


class RegionSet:
    """
    Stack of K indicator maps defining the regions for GTM.

    Attributes:
        maps (np.ndarray): Read-only float array of shape ``(X, Y, Z, K)``.
        names (list[str]): Name of each region.
        labels (np.ndarray): Label value of each region in the segmentation it was built from, or
            ``0..K-1`` when built from a 4D mask.

    Example:
        .. code-block:: python

            regions = RegionSet(mask_numpy)
            for region_index, indicator in regions:
                print(region_index, indicator.sum())
    """
    def __init__(self,
                 maps: np.ndarray,
                 names: list[str] = None,
                 labels: np.ndarray = None):
        """
        Args:
            maps (np.ndarray): 4D mask array with the region axis last.
            names (list[str], optional): One name per region. Defaults to ``region_<k>``.
            labels (np.ndarray, optional): One label value per region.

        Raises:
            DimensionMismatchError: If ``maps`` is not 4D, has no regions, or ``names`` or
                ``labels`` do not have one entry per region.
            InvalidImageError: If ``maps`` holds non-finite or negative values.
        """
        maps = np.array(maps, dtype=float)
        if maps.ndim != 4:
            raise DimensionMismatchError(f"Region mask must be 4D (x, y, z, region). "
                                         f"Got {maps.ndim} dimensions.")
        if maps.shape[-1] < 1:
            raise DimensionMismatchError("Region mask has no regions along its last axis.")
        if not np.all(np.isfinite(maps)):
            raise InvalidImageError("Region mask contains non-finite values.")
        if np.any(maps < 0):
            raise InvalidImageError(f"Region mask contains negative values (min {maps.min()}).")
        maps.setflags(write=False)
        self.maps = maps

        n_regions = maps.shape[-1]
        if names is None:
            names = [f'region_{k}' for k in range(n_regions)]
        if len(names) != n_regions:
            raise DimensionMismatchError(f"Got {len(names)} region names for {n_regions} regions.")
        self.names = list(names)

        if labels is None:
            labels = np.arange(n_regions)
        labels = np.asarray(labels)
        if labels.shape != (n_regions,):
            raise DimensionMismatchError(f"Got {labels.size} labels for {n_regions} regions.")
        self.labels = labels

    @classmethod
    def from_segmentation(cls,
                          segmentation_numpy: np.ndarray,
                          zeroth_roi: bool = False,
                          names: list[str] = None) -> 'RegionSet':
        """
        Expand a discrete 3D segmentation into one binary map per unique label.

        Args:
            segmentation_numpy (np.ndarray): 3D array of integer region labels.
            zeroth_roi (bool): If False, label zero is treated as background and gets no region.
            names (list[str], optional): Names for the regions, in ascending label order.

        Returns:
            RegionSet: Binary region maps, one for each label.

        Raises:
            DimensionMismatchError: If the segmentation is not 3D or has no labels to use.
        """
        segmentation_numpy = np.asarray(segmentation_numpy)
        if segmentation_numpy.ndim != 3:
            raise DimensionMismatchError(f"Segmentation must be 3D. "
                                         f"Got {segmentation_numpy.ndim} dimensions.")
        labels = unique_segmentation_labels(segmentation_numpy=segmentation_numpy,
                                            zeroth_roi=zeroth_roi)
        if labels.size == 0:
            raise DimensionMismatchError("Segmentation contains no region labels.")

        maps = np.zeros(segmentation_numpy.shape + (labels.size,), dtype=float)
        for i, label in enumerate(labels):
            maps[..., i] = segmentation_numpy == label
        logger.debug(f"Expanded segmentation into {labels.size} regions.")
        return cls(maps=maps, names=names, labels=labels)

    def __len__(self):
        return self.n_regions

    def __getitem__(self, region_index: int) -> np.ndarray:
        return self.maps[..., region_index]

    def __iter__(self):
        for region_index in range(self.n_regions):
            yield region_index, self.maps[..., region_index]

    def __repr__(self):
        return f"{self.__class__.__name__}(n_regions={self.n_regions}, shape={self.spatial_shape})"

    @property
    def n_regions(self) -> int:
        """Number of regions, K."""
        return self.maps.shape[-1]

    @property
    def spatial_shape(self) -> tuple[int, int, int]:
        """Shape of each region map."""
        return self.maps.shape[:3]

    @property
    def voxel_counts(self) -> np.ndarray:
        """Sum of each indicator map, i.e. the number of voxels in a binary region."""
        return self.maps.sum(axis=(0, 1, 2))

    def empty_regions(self) -> np.ndarray:
        """
        Indices of regions whose indicator map sums to zero.
        """
        return np.flatnonzero(self.voxel_counts <= 0)

    def flat_maps(self) -> np.ndarray:
        """
        Region maps reshaped to a voxel-by-region matrix of shape ``(X*Y*Z, K)``.
        """
        return self.maps.reshape(-1, self.n_regions)

    def check_matches(self,
                      pet_shape: tuple[int, ...],
                      pet_spacing: tuple[float, float, float] = None,
                      mask_spacing: tuple[float, float, float] = None):
        """
        Check that the regions are defined on the same grid as the PET image.

        Args:
            pet_shape (tuple[int, ...]): Shape of the 3D PET image.
            pet_spacing (tuple[float, float, float], optional): PET voxel spacing in mm.
            mask_spacing (tuple[float, float, float], optional): Mask voxel spacing in mm. Spacing
                is only compared when both are given.

        Raises:
            DimensionMismatchError: If shapes differ, or spacings differ by more than
                ``SPACING_TOLERANCE_MM``.
        """
        if tuple(pet_shape) != tuple(self.spatial_shape):
            raise DimensionMismatchError(f"PET shape {tuple(pet_shape)} does not match region "
                                         f"mask shape {tuple(self.spatial_shape)}.")
        if pet_spacing is None or mask_spacing is None:
            return
        pet_spacing = np.asarray(pet_spacing, dtype=float)[:3]
        mask_spacing = np.asarray(mask_spacing, dtype=float)[:3]
        if not np.allclose(pet_spacing, mask_spacing, rtol=0, atol=SPACING_TOLERANCE_MM):
            raise DimensionMismatchError(f"PET spacing {tuple(pet_spacing)} does not match "
                                         f"region mask spacing {tuple(mask_spacing)}.")
