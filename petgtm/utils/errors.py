"""
Exceptions raised while running Geometric Transfer Matrix (GTM) partial volume correction.

Every error derives from :class:`GtmError` and carries a ``stage`` naming the part of the
computation that failed, so that callers such as :mod:`petgtm.cli.cli_gtm` can report a
diagnostic without inspecting the message text.
"""


class GtmError(Exception):
    """
    Base class for errors raised by petgtm.

    Attributes:
        stage (str): Name of the processing stage at which the error was detected.
    """
    stage = 'gtm'


class InputReadError(GtmError):
    """An image or table could not be loaded from disk."""
    stage = 'read'


class DimensionMismatchError(GtmError, ValueError):
    """
    Spatial extents, spacing or region counts of the inputs disagree, or the mask has no
    regions.
    """
    stage = 'validation'


class InvalidParameterError(GtmError, ValueError):
    """A PSF, spacing or configuration value is outside its allowed range."""
    stage = 'configuration'


class InvalidImageError(GtmError, ValueError):
    """A region map or the PET image holds values the correction cannot use, such as NaN."""
    stage = 'validation'


class NumericalError(GtmError, ArithmeticError):
    """The transfer matrix could not be built from the given regions."""
    stage = 'transfer matrix'


class EmptyRegionError(NumericalError):
    """
    A region's indicator map sums to zero, so its mean and its row of the transfer matrix are
    undefined.

    Attributes:
        region_index (int): Index of the first empty region along the region axis.
    """
    stage = 'regions'

    def __init__(self, message: str, region_index: int = None):
        super().__init__(message)
        self.region_index = region_index


class SingularMatrixError(GtmError, ArithmeticError):
    """The transfer matrix cannot be inverted or stably pseudo-inverted."""
    stage = 'solve'


class OutputWriteError(GtmError):
    """An output image, table or metadata sidecar could not be written."""
    stage = 'write'
