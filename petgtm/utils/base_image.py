"""
Class for managing image geometry.
"""
from dataclasses import dataclass, field
import numpy as np
import nibabel


@dataclass(frozen=True)
class VolumeGeometry:
    """Grid on which a 3D image is defined.

    Attributes:
        shape (tuple[int, int, int]): Number of voxels along x, y and z.
        spacing (tuple[float, float, float]): Voxel spacing in mm along x, y and z.
        affine (np.ndarray): 4x4 voxel-to-world affine. Identity scaled by ``spacing`` if not
            given.
    """
    shape: tuple[int, int, int]
    spacing: tuple[float, float, float]
    affine: np.ndarray = field(default=None, compare=False)

    def __post_init__(self):
        object.__setattr__(self, 'shape', tuple(int(n) for n in self.shape[:3]))
        object.__setattr__(self, 'spacing', tuple(float(s) for s in self.spacing[:3]))
        if self.affine is None:
            object.__setattr__(self, 'affine', np.diag(list(self.spacing) + [1.0]))

    @classmethod
    def from_nifti(cls, image: nibabel.Nifti1Image) -> 'VolumeGeometry':
        """
        Geometry of the first three axes of a NIfTI image.
        """
        return cls(shape=image.shape[:3],
                   spacing=image.header.get_zooms()[:3],
                   affine=np.asarray(image.affine))

