r"""
Point spread function (PSF) model used to blur region maps for GTM partial volume correction.

The scanner PSF is modelled as an anisotropic Gaussian specified by its full width at half
maximum (FWHM) in millimetres along each axis. Blurring is applied on the voxel grid, so the
Gaussian spread is converted to voxel units using the image spacing:

.. math::

    \sigma_{mm} = \frac{\mathrm{FWHM}}{2\sqrt{2\ln 2}}, \qquad
    \sigma^2_{vox} = \left(\frac{\sigma_{mm}}{s}\right)^2

where :math:`s` is the voxel spacing along the axis.
"""
from dataclasses import dataclass
import numpy as np

from ..utils.errors import InvalidParameterError


FWHM_TO_SIGMA = 1.0 / (2.0 * np.sqrt(2.0 * np.log(2.0)))


def broadcast_to_three_axes(value: float | tuple[float, float, float], name: str) -> np.ndarray:
    """
    Broadcast a scalar or a length-3 sequence to a float array of shape ``(3,)``.

    Raises:
        InvalidParameterError: If ``value`` is neither a scalar nor has three components.
    """
    vector = np.asarray(value, dtype=float)
    if vector.ndim == 0:
        vector = np.full(3, float(vector))
    if vector.shape != (3,):
        raise InvalidParameterError(f"{name} must be a scalar or have three components. "
                                    f"Got shape {vector.shape}.")
    return vector


def fwhm_to_sigma(fwhm: float | np.ndarray) -> float | np.ndarray:
    """
    Convert a Gaussian full width at half maximum to its standard deviation.

    Args:
        fwhm (float | np.ndarray): FWHM value(s), in any length unit.

    Returns:
        float | np.ndarray: Standard deviation(s) in the same unit as ``fwhm``.
    """
    return np.asarray(fwhm, dtype=float) * FWHM_TO_SIGMA


def compute_variance_in_voxels(fwhm: float | tuple[float, float, float],
                               spacing: tuple[float, float, float]) -> np.ndarray:
    r"""
    Compute the per-axis Gaussian variance of the PSF in voxel units.

    Args:
        fwhm (float | tuple[float, float, float]): FWHM of the PSF in mm along x, y and z. A
            single value is used for all three axes.
        spacing (tuple[float, float, float]): Voxel spacing in mm along x, y and z.

    Returns:
        np.ndarray: Array of shape ``(3,)`` containing :math:`(\sigma_{mm}/s)^2` for each axis.

    Raises:
        InvalidParameterError: If any FWHM component is negative or not finite, or if any spacing
            component is not strictly positive and finite.

    Example:
        .. code-block:: python

            variance = compute_variance_in_voxels(fwhm=(4.0, 4.0, 4.0), spacing=(2.0, 2.0, 2.0))
            # array([0.7213, 0.7213, 0.7213])
    """
    fwhm_vec = broadcast_to_three_axes(fwhm, 'FWHM')
    spacing_vec = broadcast_to_three_axes(spacing, 'Voxel spacing')

    if not np.all(np.isfinite(fwhm_vec)) or np.any(fwhm_vec < 0):
        raise InvalidParameterError(f"FWHM components must be finite and non-negative. "
                                    f"Got {tuple(fwhm_vec)}.")
    if not np.all(np.isfinite(spacing_vec)) or np.any(spacing_vec <= 0):
        raise InvalidParameterError(f"Voxel spacing components must be finite and positive. "
                                    f"Got {tuple(spacing_vec)}.")

    sigma_mm = fwhm_to_sigma(fwhm_vec)
    return (sigma_mm / spacing_vec) ** 2


@dataclass(frozen=True)
class PsfModel:
    """
    Anisotropic Gaussian PSF expressed on a particular voxel grid.

    Attributes:
        fwhm_mm (tuple[float, float, float]): FWHM of the PSF in mm along x, y and z.
        spacing_mm (tuple[float, float, float]): Voxel spacing of the grid in mm.
    """
    fwhm_mm: tuple[float, float, float]
    spacing_mm: tuple[float, float, float]

    def __post_init__(self):
        # Raises InvalidParameterError for out-of-range values.
        compute_variance_in_voxels(fwhm=self.fwhm_mm, spacing=self.spacing_mm)

    @classmethod
    def from_fwhm(cls,
                  fwhm: float | tuple[float, float, float],
                  spacing: tuple[float, float, float]) -> 'PsfModel':
        """
        Build a PSF model, broadcasting a scalar FWHM to all three axes.
        """
        fwhm_vec = broadcast_to_three_axes(fwhm, 'FWHM')
        spacing_vec = broadcast_to_three_axes(spacing, 'Voxel spacing')
        return cls(fwhm_mm=tuple(float(f) for f in fwhm_vec),
                   spacing_mm=tuple(float(s) for s in spacing_vec))

    @property
    def sigma_mm(self) -> np.ndarray:
        """Standard deviation of the PSF in mm along each axis."""
        return fwhm_to_sigma(self.fwhm_mm)

    @property
    def variance_voxels(self) -> np.ndarray:
        """Variance of the PSF in voxel² along each axis."""
        return compute_variance_in_voxels(fwhm=self.fwhm_mm, spacing=self.spacing_mm)

    @property
    def sigma_voxels(self) -> np.ndarray:
        """Standard deviation of the PSF in voxels along each axis."""
        return np.sqrt(self.variance_voxels)
