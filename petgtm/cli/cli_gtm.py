"""
Command-line interface (CLI) for Geometric Transfer Matrix (GTM) partial volume correction (PVC).

This module provides a CLI to apply GTM PVC to a 3D PET image using a set of anatomical regions.
It uses argparse to handle command-line arguments and runs :class:`petgtm.preproc.geometric_transfer_matrix.Gtm`.

The user must provide:
    * PET image file path
    * Mask image file path: a 4D image with one region per volume, or a 3D discrete segmentation
      when ``--segmentation`` is given
    * Output image file path
    * FWHM of the scanner PSF in mm along x, y and z

Example usage:
    .. code-block:: bash

        petgtm-gtm /path/to/pet.nii.gz /path/to/mask.nii.gz /path/to/out.nii.gz -x 6.0 -y 6.0 -z 6.0

    Using a FreeSurfer-style segmentation, with a table of corrected regional values:

    .. code-block:: bash

        petgtm-gtm pet.nii.gz aparc+aseg.nii.gz out.nii.gz -x 6 -y 6 -z 6 --segmentation --label-map dseg.tsv --out-tsv gtm.tsv

See Also:
    :mod:`petgtm.preproc.geometric_transfer_matrix` - module performing GTM PVC.
"""
import argparse
import logging
import sys

from .. import __version__
from ..preproc.geometric_transfer_matrix import COMPOSITION_POLICIES, Gtm, GtmConfig
from ..utils.errors import GtmError


logger = logging.getLogger(__name__)

APP_TITLE = "Geometric Transfer Matrix (GTM) PVC"

_ACKNOWLEDGMENTS_ = (r"""
This program implements the Geometric Transfer Matrix (GTM) partial volume correction (PVC) technique.
The method is described in:
    Rousset, O. G. and Ma, Y. and Evans, A. C. (1998). "Correction for
    partial volume effects in PET: principle and validation". Journal of
    Nuclear Medicine, 39(5):904-11.

Examples:
  - 4D region mask:
    petgtm-gtm pet.nii.gz mask.nii.gz out.nii.gz -x 6.0 -y 6.0 -z 6.0
  - Discrete segmentation with a regional table:
    petgtm-gtm pet.nii.gz aparc+aseg.nii.gz out.nii.gz -x 6 -y 6 -z 6 --segmentation --out-tsv gtm.tsv
""")


def _generate_args(argv: list[str] = None) -> argparse.Namespace:
    """
    Generates command line arguments for method :func:`main`.

    Args:
        argv (list[str], optional): Arguments to parse instead of ``sys.argv``.

    Returns:
        args (argparse.Namespace): Arguments used in the command line and their corresponding values.
    """
    parser = argparse.ArgumentParser(prog='petgtm-gtm',
                                     description='Performs Geometric Transfer Matrix (GTM) partial '
                                                 'volume correction.',
                                     epilog=_ACKNOWLEDGMENTS_,
                                     formatter_class=argparse.RawTextHelpFormatter)

    parser.add_argument('petfile', help='PET filename (.nii or .nii.gz).')
    parser.add_argument('maskfile', help='Mask filename: 4D image with one region per volume, or a '
                                         '3D segmentation with --segmentation.')
    parser.add_argument('outputfile', help='Output filename for the corrected image.')

    parser.add_argument('-x', '--fwhm-x', required=True, type=float,
                        help='The full-width at half maximum in mm along x-axis.')
    parser.add_argument('-y', '--fwhm-y', required=True, type=float,
                        help='The full-width at half maximum in mm along y-axis.')
    parser.add_argument('-z', '--fwhm-z', required=True, type=float,
                        help='The full-width at half maximum in mm along z-axis.')

    parser.add_argument('-s', '--segmentation', action='store_true',
                        help='Treat maskfile as a discrete 3D segmentation; each unique label is a '
                             'region.')
    parser.add_argument('--zeroth-roi', action='store_true',
                        help='Include label 0 of a segmentation as a region.')
    parser.add_argument('-l', '--label-map', default=None,
                        help='Path to a dseg.tsv label map used to name regions.')
    parser.add_argument('-t', '--out-tsv', default=None,
                        help='Path to a .tsv file for measured and corrected regional values.')
    parser.add_argument('--composition', choices=COMPOSITION_POLICIES, default='dominant',
                        help='How corrected values are painted onto voxels covered by several '
                             'regions.')

    background = parser.add_mutually_exclusive_group()
    background.add_argument('--background', type=float, default=0.0,
                            help='Value for voxels outside every region.')
    background.add_argument('--keep-background', action='store_true',
                            help='Keep the PET value for voxels outside every region.')

    parser.add_argument('--truncate', type=float, default=3.0,
                        help='Gaussian kernel half-width in standard deviations.')
    parser.add_argument('--condition-threshold', type=float, default=1e8,
                        help='Largest transfer matrix condition number solved directly before '
                             'falling back to least squares.')
    parser.add_argument('-n', '--n-jobs', type=int, default=1,
                        help='Number of threads for per-region computations.')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Print processing information during computation.')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    args = parser.parse_args(argv)
    if args.zeroth_roi and not args.segmentation:
        parser.error("--zeroth-roi requires --segmentation.")
    return args


def main(argv: list[str] = None) -> int:
    """
    GTM command line interface.

    Returns:
        int: Exit status, 0 on success and 1 if any stage failed.
    """
    args = _generate_args(argv)

    logging.basicConfig(format='(%(name)s) %(levelname)s: %(message)s')
    logging.getLogger('petgtm').setLevel(logging.INFO if args.verbose else logging.WARNING)
    logger.info(f"{APP_TITLE} {__version__}")

    try:
        config = GtmConfig(fwhm_mm=(args.fwhm_x, args.fwhm_y, args.fwhm_z),
                           truncate=args.truncate,
                           condition_threshold=args.condition_threshold,
                           n_jobs=args.n_jobs,
                           composition=args.composition,
                           background_value=args.background,
                           keep_background=args.keep_background)
        gtm = Gtm(input_image_path=args.petfile,
                  mask_image_path=args.maskfile,
                  config=config,
                  is_segmentation=args.segmentation,
                  zeroth_roi=args.zeroth_roi,
                  label_map_path=args.label_map)
        result = gtm(out_image_path=args.outputfile, out_tsv_path=args.out_tsv)
    except GtmError as err:
        print(f"[Error]\t{err.stage}: {err}", file=sys.stderr)
        return 1

    if args.verbose:
        print(result.to_dataframe().to_string(index=False))
        print(f"Condition number: {result.condition_number:.4g} ({result.solver_method})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
