r"""
Module to run partial volume correction on a PET image using the Geometric Transfer Matrix (GTM)
method of Rousset, Ma and Evans (1998).

Each region :math:`j` is described by an indicator map :math:`w_j`. Blurring :math:`w_j` with the
scanner PSF gives the fraction of uniform activity in region :math:`j` that is observed at each
voxel. The transfer matrix entry

.. math::

    G_{ij} = \frac{\sum_v w_i(v)\,(h * w_j)(v)}{\sum_v w_i(v)}

is the mean of that blurred map over region :math:`i`. Observed regional means :math:`m` are
related to the true regional activities :math:`c` by :math:`G c = m`, which is solved for
:math:`c`.

References:
    Rousset, O. G., Ma, Y. and Evans, A. C. (1998). Correction for partial volume effects in PET:
    principle and validation. Journal of Nuclear Medicine, 39(5):904-11.
"""
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
import logging
import os
import warnings
import numpy as np
import pandas as pd
from scipy.ndimage import gaussian_filter1d

from .psf import PsfModel, broadcast_to_three_axes
from .region_set import RegionSet
from .regional_means import compute_regional_means
from ..utils import image_io
from ..utils.base_image import VolumeGeometry
from ..utils.errors import (DimensionMismatchError, EmptyRegionError, GtmError,
                            InvalidParameterError)
from ..utils.math_lib import DEFAULT_CONDITION_THRESHOLD, DEFAULT_RCOND, solve_gtm_system


logger = logging.getLogger(__name__)

DEFAULT_TRUNCATE = 3.0
COMPOSITION_POLICIES = ('dominant', 'weighted')


def blur_region(indicator: np.ndarray,
                sigma_voxels: np.ndarray,
                truncate: float = DEFAULT_TRUNCATE) -> np.ndarray:
    """
    Blur a region map with a separable anisotropic Gaussian, one 1D pass per axis.

    Axes with zero sigma are left untouched. Values blurred past the image border are lost,
    as activity leaving the field of view is not observed.

    Args:
        indicator (np.ndarray): 3D indicator or probability map.
        sigma_voxels (np.ndarray): Gaussian standard deviation in voxels along each axis.
        truncate (float): Kernel half-width in standard deviations.

    Returns:
        np.ndarray: The blurred map, as a new float array.
    """
    blurred = np.array(indicator, dtype=float)
    for axis, sigma in enumerate(sigma_voxels):
        if sigma > 0:
            blurred = gaussian_filter1d(blurred,
                                        sigma=float(sigma),
                                        axis=axis,
                                        mode='constant',
                                        cval=0.0,
                                        truncate=truncate)
    return blurred


def build_transfer_matrix(regions: RegionSet,
                          sigma_voxels: np.ndarray,
                          truncate: float = DEFAULT_TRUNCATE,
                          n_jobs: int = 1) -> np.ndarray:
    """
    Compute the K x K geometric transfer matrix.

    Column ``j`` is obtained by blurring region ``j`` and averaging the result, weighted by each
    region's indicator, over every region ``i``. Columns are independent and are computed on
    ``n_jobs`` threads; the matrix is assembled once all of them have finished.

    Args:
        regions (RegionSet): Regions defining rows and columns of the matrix.
        sigma_voxels (np.ndarray): PSF standard deviation in voxels along each axis.
        truncate (float): Kernel half-width in standard deviations.
        n_jobs (int): Number of worker threads.

    Returns:
        np.ndarray: The transfer matrix ``G`` with ``G[i, j]`` the fraction of region ``j``'s
        activity observed in region ``i``.

    Raises:
        EmptyRegionError: If a region's indicator map sums to zero.
    """
    empty = regions.empty_regions()
    if empty.size > 0:
        raise EmptyRegionError(f"Region '{regions.names[empty[0]]}' (index {empty[0]}) has no "
                               f"voxels; its row of the transfer matrix is undefined.",
                               region_index=int(empty[0]))

    weights = regions.flat_maps()
    region_sizes = weights.sum(axis=0)

    def transfer_column(region_index: int) -> np.ndarray:
        blurred = blur_region(indicator=regions[region_index],
                              sigma_voxels=sigma_voxels,
                              truncate=truncate)
        return (weights.T @ blurred.ravel()) / region_sizes

    if n_jobs > 1:
        with ThreadPoolExecutor(max_workers=n_jobs) as executor:
            columns = list(executor.map(transfer_column, range(regions.n_regions)))
    else:
        columns = [transfer_column(j) for j in range(regions.n_regions)]

    transfer_matrix = np.column_stack(columns)
    logger.debug(f"Transfer matrix:\n{transfer_matrix}")
    return transfer_matrix


def compose_output(values: np.ndarray,
                   regions: RegionSet,
                   geometry: VolumeGeometry,
                   policy: str = 'dominant',
                   background_value: float = 0.0,
                   background_image: np.ndarray = None) -> np.ndarray:
    """
    Paint corrected regional values back onto the image grid.

    Two policies handle voxels covered by several regions:

    * ``'dominant'``: the voxel takes the value of the region with the largest indicator at that
      voxel. Ties go to the region with the lowest index.
    * ``'weighted'``: the voxel takes the indicator-weighted average of the regional values.

    Voxels where every indicator is zero belong to no region and are set to ``background_value``,
    or to the matching voxel of ``background_image`` when that is given.

    Args:
        values (np.ndarray): Corrected value of each region, shape ``(K,)``.
        regions (RegionSet): Regions the values belong to.
        geometry (VolumeGeometry): Grid of the output image.
        policy (str): ``'dominant'`` or ``'weighted'``.
        background_value (float): Value for voxels outside every region.
        background_image (np.ndarray, optional): Image supplying background voxels instead,
            usually the uncorrected PET image.

    Returns:
        np.ndarray: Corrected 3D image of shape ``geometry.shape``.

    Raises:
        InvalidParameterError: If ``policy`` is unknown.
        DimensionMismatchError: If the values, regions, geometry or background image disagree.
    """
    values = np.asarray(values, dtype=float)
    if values.shape != (regions.n_regions,):
        raise DimensionMismatchError(f"Expected {regions.n_regions} regional values. "
                                     f"Got shape {values.shape}.")
    if tuple(geometry.shape) != tuple(regions.spatial_shape):
        raise DimensionMismatchError(f"Output shape {geometry.shape} does not match region mask "
                                     f"shape {regions.spatial_shape}.")

    maps = regions.maps
    if policy == 'dominant':
        owner = np.argmax(maps, axis=-1)
        assigned = np.max(maps, axis=-1) > 0
        out_numpy = values[owner]
    elif policy == 'weighted':
        total_weight = maps.sum(axis=-1)
        assigned = total_weight > 0
        out_numpy = np.zeros(geometry.shape, dtype=float)
        out_numpy[assigned] = (maps[assigned] @ values) / total_weight[assigned]
    else:
        raise InvalidParameterError(f"Unknown composition policy '{policy}'. "
                                    f"Use one of {COMPOSITION_POLICIES}.")

    if background_image is not None:
        background_image = np.asarray(background_image, dtype=float)
        if background_image.shape != tuple(geometry.shape):
            raise DimensionMismatchError(f"Background image shape {background_image.shape} does "
                                         f"not match output shape {geometry.shape}.")
        out_numpy[~assigned] = background_image[~assigned]
    else:
        out_numpy[~assigned] = background_value
    return out_numpy


@dataclass(frozen=True)
class GtmConfig:
    """Settings for one GTM run.

    Attributes:
        fwhm_mm (float | tuple[float, float, float]): PSF FWHM in mm along x, y and z. A single
            value is used for all axes.
        truncate (float): Gaussian kernel half-width in standard deviations.
        condition_threshold (float): Largest condition number of the transfer matrix for which a
            direct solve is used before falling back to least squares.
        rcond (float): Cutoff for small singular values in the least-squares fallback.
        n_jobs (int): Worker threads for per-region computations.
        composition (str): Policy for painting values back onto the grid. See
            :func:`compose_output`.
        background_value (float): Output value for voxels outside every region.
        keep_background (bool): If True, voxels outside every region keep their PET value instead
            of ``background_value``.
    """
    fwhm_mm: float | tuple[float, float, float]
    truncate: float = DEFAULT_TRUNCATE
    condition_threshold: float = DEFAULT_CONDITION_THRESHOLD
    rcond: float = DEFAULT_RCOND
    n_jobs: int = 1
    composition: str = 'dominant'
    background_value: float = 0.0
    keep_background: bool = False

    def __post_init__(self):
        fwhm_vec = broadcast_to_three_axes(self.fwhm_mm, 'FWHM')
        if not np.all(np.isfinite(fwhm_vec)) or np.any(fwhm_vec < 0):
            raise InvalidParameterError(f"FWHM components must be finite and non-negative. "
                                        f"Got {tuple(fwhm_vec)}.")
        object.__setattr__(self, 'fwhm_mm', tuple(float(f) for f in fwhm_vec))
        if not self.truncate > 0:
            raise InvalidParameterError(f"truncate must be positive. Got {self.truncate}.")
        if not self.condition_threshold >= 1:
            raise InvalidParameterError(f"condition_threshold must be at least 1. "
                                        f"Got {self.condition_threshold}.")
        if not self.rcond > 0:
            raise InvalidParameterError(f"rcond must be positive. Got {self.rcond}.")
        if int(self.n_jobs) != self.n_jobs or self.n_jobs < 1:
            raise InvalidParameterError(f"n_jobs must be a positive integer. Got {self.n_jobs}.")
        if self.composition not in COMPOSITION_POLICIES:
            raise InvalidParameterError(f"Unknown composition policy '{self.composition}'. "
                                        f"Use one of {COMPOSITION_POLICIES}.")


@dataclass(frozen=True)
class GtmResult:
    """Outputs of a GTM run.

    Attributes:
        transfer_matrix (np.ndarray): The ``(K, K)`` transfer matrix.
        measured_means (np.ndarray): Observed regional means, shape ``(K,)``.
        corrected_means (np.ndarray): Partial volume corrected regional values, shape ``(K,)``.
        condition_number (float): Condition number of the transfer matrix.
        solver_method (str): ``'direct'`` or ``'lstsq'``.
        corrected_image (np.ndarray): Corrected 3D image on the PET grid.
        region_names (list[str]): Name of each region.
        region_labels (np.ndarray): Label value of each region.
        voxel_counts (np.ndarray): Indicator sum of each region.
    """
    transfer_matrix: np.ndarray
    measured_means: np.ndarray
    corrected_means: np.ndarray
    condition_number: float
    solver_method: str
    corrected_image: np.ndarray = field(repr=False)
    region_names: list[str]
    region_labels: np.ndarray
    voxel_counts: np.ndarray

    @property
    def n_regions(self) -> int:
        """Number of regions, K."""
        return self.corrected_means.size

    def to_dataframe(self) -> pd.DataFrame:
        """
        Regional results as a table with one row per region.
        """
        return pd.DataFrame({'index': np.arange(self.n_regions),
                             'label': self.region_labels,
                             'name': self.region_names,
                             'voxels': self.voxel_counts,
                             'measured_mean': self.measured_means,
                             'corrected_mean': self.corrected_means})


def run_gtm(pet_numpy: np.ndarray,
            pet_geometry: VolumeGeometry,
            regions: RegionSet,
            config: GtmConfig,
            mask_geometry: VolumeGeometry = None) -> GtmResult:
    """
    Run GTM partial volume correction on an in-memory PET image.

    All inputs are validated before any blurring is done. Nothing is written to disk.

    Args:
        pet_numpy (np.ndarray): 3D PET image array.
        pet_geometry (VolumeGeometry): Grid of the PET image.
        regions (RegionSet): Regions to correct.
        config (GtmConfig): Settings for the run.
        mask_geometry (VolumeGeometry, optional): Grid the regions were defined on. If given, its
            spacing must match the PET spacing.

    Returns:
        GtmResult: Transfer matrix, regional means, corrected values and corrected image.

    Raises:
        DimensionMismatchError: If the PET image and regions are not on the same grid.
        InvalidParameterError: If the PSF cannot be expressed on the PET grid.
        EmptyRegionError: If a region has no voxels.
        InvalidImageError: If the PET image has non-finite values inside a region.
        SingularMatrixError: If the transfer matrix has an all-zero row or column, or no finite
            solution exists.
    """
    pet_numpy = np.asarray(pet_numpy, dtype=float)
    if pet_numpy.ndim != 3:
        raise DimensionMismatchError(f"PET image must be 3D. Got {pet_numpy.ndim} dimensions.")
    if pet_numpy.shape != tuple(pet_geometry.shape):
        raise DimensionMismatchError(f"PET data shape {pet_numpy.shape} does not match its "
                                     f"geometry {pet_geometry.shape}.")
    regions.check_matches(pet_shape=pet_numpy.shape,
                          pet_spacing=pet_geometry.spacing,
                          mask_spacing=None if mask_geometry is None else mask_geometry.spacing)
    if mask_geometry is not None and not np.allclose(pet_geometry.affine, mask_geometry.affine,
                                                     atol=1e-3):
        warnings.warn("PET and region mask affines differ; regions are assumed to be on the PET "
                      "grid.", stacklevel=2)

    empty = regions.empty_regions()
    if empty.size > 0:
        raise EmptyRegionError(f"Region '{regions.names[empty[0]]}' (index {empty[0]}) has no "
                               f"voxels.", region_index=int(empty[0]))

    psf = PsfModel.from_fwhm(fwhm=config.fwhm_mm, spacing=pet_geometry.spacing)
    logger.info(f"Running GTM on {regions.n_regions} regions with FWHM {psf.fwhm_mm} mm "
                f"(sigma {np.round(psf.sigma_voxels, 4)} voxels).")

    measured_means = compute_regional_means(pet_numpy=pet_numpy,
                                            regions=regions,
                                            n_jobs=config.n_jobs)
    transfer_matrix = build_transfer_matrix(regions=regions,
                                            sigma_voxels=psf.sigma_voxels,
                                            truncate=config.truncate,
                                            n_jobs=config.n_jobs)
    solution = solve_gtm_system(transfer_matrix=transfer_matrix,
                                regional_means=measured_means,
                                condition_threshold=config.condition_threshold,
                                rcond=config.rcond)
    logger.info(f"Solved GTM system ({solution.method}); corrected values: {solution.values}")

    corrected_image = compose_output(values=solution.values,
                                     regions=regions,
                                     geometry=pet_geometry,
                                     policy=config.composition,
                                     background_value=config.background_value,
                                     background_image=pet_numpy if config.keep_background else None)

    return GtmResult(transfer_matrix=transfer_matrix,
                     measured_means=measured_means,
                     corrected_means=solution.values,
                     condition_number=solution.condition_number,
                     solver_method=solution.method,
                     corrected_image=corrected_image,
                     region_names=list(regions.names),
                     region_labels=regions.labels,
                     voxel_counts=regions.voxel_counts)


class Gtm:
    """
    Handle GTM partial volume correction of PET images stored on disk.

    Example:
        .. code-block:: python

            gtm = Gtm(input_image_path='sub-001_pet.nii.gz',
                      mask_image_path='sub-001_desc-regions_mask.nii.gz',
                      config=GtmConfig(fwhm_mm=(6.0, 6.0, 6.0)))
            gtm(out_image_path='sub-001_desc-gtm_pet.nii.gz', out_tsv_path='sub-001_gtm.tsv')
    """
    def __init__(self,
                 input_image_path: str,
                 mask_image_path: str,
                 config: GtmConfig,
                 is_segmentation: bool = False,
                 zeroth_roi: bool = False,
                 label_map_path: str = None):
        """
        Initialize running GTM. Images are loaded here, so read errors surface before any
        computation.

        Args:
            input_image_path (str): Path to the 3D PET image to correct.
            mask_image_path (str): Path to a 4D region mask, or to a 3D discrete segmentation if
                ``is_segmentation`` is True.
            config (GtmConfig): Settings for the run.
            is_segmentation (bool): Treat the mask as a discrete segmentation with one region per
                unique label.
            zeroth_roi (bool): If False, label zero of a segmentation is treated as background.
            label_map_path (str, optional): Path to a ``dseg.tsv`` label map naming the regions.
        """
        self.input_image_path = input_image_path
        self.mask_image_path = mask_image_path
        self.config = config
        self.pet_numpy, self.pet_geometry, self.pet_header = image_io.load_pet_image(
            input_image_path)

        if is_segmentation:
            seg_numpy, self.mask_geometry = image_io.load_segmentation_image(mask_image_path)
            self.regions = RegionSet.from_segmentation(segmentation_numpy=seg_numpy,
                                                       zeroth_roi=zeroth_roi)
        else:
            mask_numpy, self.mask_geometry = image_io.load_mask_image(mask_image_path)
            self.regions = RegionSet(maps=mask_numpy)

        if label_map_path is not None:
            label_map = image_io.read_label_map_tsv(label_map_path)
            names = image_io.region_names_from_label_map(
                label_map=label_map,
                labels=self.regions.labels if is_segmentation else None)
            self.regions = RegionSet(maps=self.regions.maps,
                                     names=names,
                                     labels=self.regions.labels)
        self.result = None

    def __call__(self, out_image_path: str = None, out_tsv_path: str = None) -> GtmResult:
        """
        Run GTM and save whichever outputs were requested. Output locations are checked before
        running, so an unwritable path fails without any computation.
        """
        self.check_outputs(out_image_path=out_image_path, out_tsv_path=out_tsv_path)
        result = self.run()
        self.save_results(out_image_path=out_image_path, out_tsv_path=out_tsv_path)
        return result

    @staticmethod
    def check_outputs(out_image_path: str = None, out_tsv_path: str = None):
        """
        Check that the requested output files can be created.

        Raises:
            OutputWriteError: If an output has the wrong extension or its directory is missing or
                not writable.
        """
        if out_image_path is not None:
            image_io.check_output_path(out_image_path, extensions=('.nii', '.nii.gz'))
        if out_tsv_path is not None:
            image_io.check_output_path(out_tsv_path)

    def run(self) -> GtmResult:
        """
        Run GTM on the loaded images. See :func:`run_gtm`.
        """
        self.result = run_gtm(pet_numpy=self.pet_numpy,
                              pet_geometry=self.pet_geometry,
                              regions=self.regions,
                              config=self.config,
                              mask_geometry=self.mask_geometry)
        return self.result

    def save_results(self, out_image_path: str = None, out_tsv_path: str = None):
        """
        Save the corrected image and/or the table of regional values.

        Outputs are written together: if any of them fails, the files already written by this
        call are removed before the error is raised.

        Args:
            out_image_path (str, optional): Path to a .nii or .nii.gz file for the corrected
                image. The PET metadata sidecar is copied alongside it if one exists.
            out_tsv_path (str, optional): Path to a .tsv file for the regional values.

        Raises:
            RuntimeError: If GTM has not been run yet.
            OutputWriteError: If an output cannot be written.
            InputReadError: If the PET metadata sidecar exists but cannot be read.
        """
        if self.result is None:
            raise RuntimeError("GTM has not been run; call run() before saving results.")
        written = []
        try:
            if out_image_path is not None:
                image_io.save_volume(image_numpy=self.result.corrected_image,
                                     geometry=self.pet_geometry,
                                     out_image_path=out_image_path,
                                     header=self.pet_header)
                written.append(out_image_path)
                meta_path = image_io.safe_copy_meta(input_image_path=self.input_image_path,
                                                    out_image_path=out_image_path)
                if meta_path is not None:
                    written.append(meta_path)
            if out_tsv_path is not None:
                image_io.write_regional_values_tsv(regional_values=self.result.to_dataframe(),
                                                   out_tsv_path=out_tsv_path)
        except GtmError:
            for path in written:
                logger.warning(f"Removing {path} after a failed write.")
                os.remove(path)
            raise
