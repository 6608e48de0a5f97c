"""Synthetic images shared by the GTM tests."""
import nibabel
import numpy as np
import pytest

from petgtm.preproc.region_set import RegionSet
from petgtm.utils.base_image import VolumeGeometry


SHAPE = (30, 20, 20)
SPACING = (2.0, 2.0, 2.0)
TRUE_VALUES = np.array([100.0, 50.0])


def two_cube_maps(shape=SHAPE) -> np.ndarray:
    """Two adjacent 10x10x10 cubes along x, surrounded by background."""
    maps = np.zeros(shape + (2,))
    maps[5:15, 5:15, 5:15, 0] = 1.0
    maps[15:25, 5:15, 5:15, 1] = 1.0
    return maps


@pytest.fixture
def geometry():
    return VolumeGeometry(shape=SHAPE, spacing=SPACING)


@pytest.fixture
def two_cubes():
    return RegionSet(maps=two_cube_maps(), names=['hot', 'warm'])


@pytest.fixture
def three_regions():
    maps = np.zeros(SHAPE + (3,))
    maps[2:10, 4:16, 4:16, 0] = 1.0
    maps[10:20, 4:16, 4:16, 1] = 1.0
    maps[20:28, 4:16, 4:16, 2] = 1.0
    return RegionSet(maps=maps)


@pytest.fixture
def true_image():
    maps = two_cube_maps()
    return maps @ TRUE_VALUES


@pytest.fixture
def nifti_inputs(tmp_path, true_image):
    """PET image and 4D mask written as NIfTI files."""
    affine = np.diag(list(SPACING) + [1.0])
    pet_path = tmp_path / 'sub-01_pet.nii.gz'
    mask_path = tmp_path / 'sub-01_mask.nii.gz'
    nibabel.save(nibabel.Nifti1Image(true_image.astype(np.float32), affine), str(pet_path))
    nibabel.save(nibabel.Nifti1Image(two_cube_maps().astype(np.float32), affine), str(mask_path))
    return str(pet_path), str(mask_path)
