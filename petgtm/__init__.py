"""
petgtm: Geometric Transfer Matrix partial volume correction for PET images.
"""
__version__ = '0.1.0'

from .preproc.geometric_transfer_matrix import (Gtm, GtmConfig, GtmResult, build_transfer_matrix,
                                                compose_output, run_gtm)
from .preproc.psf import PsfModel, compute_variance_in_voxels
from .preproc.region_set import RegionSet
from .preproc.regional_means import compute_regional_means
from .utils.base_image import VolumeGeometry
from .utils.math_lib import solve_gtm_system
