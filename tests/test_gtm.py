import numpy as np
import pytest

from conftest import SPACING, TRUE_VALUES
from petgtm.preproc.geometric_transfer_matrix import (GtmConfig, blur_region,
                                                      build_transfer_matrix, run_gtm)
from petgtm.preproc.psf import PsfModel
from petgtm.preproc.region_set import RegionSet
from petgtm.utils.base_image import VolumeGeometry
from petgtm.utils.errors import (DimensionMismatchError, EmptyRegionError, InvalidParameterError,
                                 SingularMatrixError)
from petgtm.utils.math_lib import solve_gtm_system


def simulate_scan(true_image, fwhm):
    sigma = PsfModel.from_fwhm(fwhm=fwhm, spacing=SPACING).sigma_voxels
    return blur_region(true_image, sigma_voxels=sigma)


def test_two_cube_scenario(two_cubes, geometry, true_image):
    pet = simulate_scan(true_image, fwhm=(4.0, 4.0, 4.0))
    result = run_gtm(pet, geometry, two_cubes, GtmConfig(fwhm_mm=(4.0, 4.0, 4.0)))

    assert result.transfer_matrix[0, 1] > 0
    assert result.transfer_matrix[1, 0] > 0
    assert result.measured_means[0] < TRUE_VALUES[0]
    assert np.all(np.abs(result.corrected_means - TRUE_VALUES)
                  < np.abs(result.measured_means - TRUE_VALUES))
    np.testing.assert_allclose(result.corrected_means, TRUE_VALUES, rtol=1e-6)
    assert result.corrected_means[0] > result.measured_means[0]
    assert result.solver_method == 'direct'


def test_corrected_image_holds_regional_values(two_cubes, geometry, true_image):
    pet = simulate_scan(true_image, fwhm=6.0)
    result = run_gtm(pet, geometry, two_cubes, GtmConfig(fwhm_mm=6.0))
    np.testing.assert_allclose(result.corrected_image[two_cubes[0] > 0], TRUE_VALUES[0],
                               rtol=1e-6)
    np.testing.assert_allclose(result.corrected_image[two_cubes[1] > 0], TRUE_VALUES[1],
                               rtol=1e-6)
    assert result.corrected_image[0, 0, 0] == 0.0


def test_keep_background_uses_pet_values(two_cubes, geometry, true_image):
    pet = simulate_scan(true_image, fwhm=6.0)
    result = run_gtm(pet, geometry, two_cubes, GtmConfig(fwhm_mm=6.0, keep_background=True))
    outside = (two_cubes[0] + two_cubes[1]) == 0
    np.testing.assert_array_equal(result.corrected_image[outside], pet[outside])


def test_identity_psf_returns_measured_means(three_regions, geometry):
    pet = np.random.default_rng(2).uniform(1, 5, size=geometry.shape)
    result = run_gtm(pet, geometry, three_regions, GtmConfig(fwhm_mm=0.0))
    np.testing.assert_allclose(result.transfer_matrix, np.eye(3), atol=1e-12)
    np.testing.assert_allclose(result.corrected_means, result.measured_means)


def test_round_trip_recovers_true_activity(three_regions):
    sigma = PsfModel.from_fwhm(fwhm=(5.0, 7.0, 9.0), spacing=SPACING).sigma_voxels
    transfer_matrix = build_transfer_matrix(three_regions, sigma_voxels=sigma)
    true_values = np.array([12.0, 3.5, 40.0])
    solution = solve_gtm_system(transfer_matrix, transfer_matrix @ true_values)
    np.testing.assert_allclose(solution.values, true_values, rtol=1e-8)


def test_region_count_consistency(three_regions, geometry):
    pet = np.ones(geometry.shape)
    result = run_gtm(pet, geometry, three_regions, GtmConfig(fwhm_mm=4.0, n_jobs=2))
    assert result.transfer_matrix.shape == (3, 3)
    assert result.measured_means.shape == (3,)
    assert result.corrected_means.shape == (3,)
    assert result.n_regions == three_regions.n_regions


def test_region_outside_volume_is_reported(geometry):
    maps = np.zeros(geometry.shape + (2,))
    maps[5:15, 5:15, 5:15, 0] = 1.0
    with pytest.raises((EmptyRegionError, SingularMatrixError)):
        run_gtm(np.ones(geometry.shape), geometry, RegionSet(maps), GtmConfig(fwhm_mm=4.0))


def test_shape_mismatch_is_rejected(two_cubes):
    small = VolumeGeometry(shape=(30, 20, 10), spacing=SPACING)
    with pytest.raises(DimensionMismatchError):
        run_gtm(np.ones(small.shape), small, two_cubes, GtmConfig(fwhm_mm=4.0))


def test_spacing_mismatch_is_rejected(two_cubes, geometry):
    mask_geometry = VolumeGeometry(shape=geometry.shape, spacing=(1.0, 1.0, 1.0))
    with pytest.raises(DimensionMismatchError):
        run_gtm(np.ones(geometry.shape), geometry, two_cubes, GtmConfig(fwhm_mm=4.0),
                mask_geometry=mask_geometry)


def test_affine_mismatch_warns(two_cubes, geometry):
    shifted = np.diag(list(SPACING) + [1.0])
    shifted[:3, 3] = 10.0
    mask_geometry = VolumeGeometry(shape=geometry.shape, spacing=SPACING, affine=shifted)
    with pytest.warns(UserWarning):
        run_gtm(np.ones(geometry.shape), geometry, two_cubes, GtmConfig(fwhm_mm=4.0),
                mask_geometry=mask_geometry)


def test_non_positive_spacing_is_rejected(two_cubes):
    bad_geometry = VolumeGeometry(shape=(30, 20, 20), spacing=(2.0, 0.0, 2.0))
    with pytest.raises(InvalidParameterError):
        run_gtm(np.ones(bad_geometry.shape), bad_geometry, two_cubes, GtmConfig(fwhm_mm=4.0))


@pytest.mark.parametrize('kwargs', [{'fwhm_mm': -1.0},
                                    {'fwhm_mm': (4.0, 4.0)},
                                    {'fwhm_mm': 4.0, 'truncate': 0.0},
                                    {'fwhm_mm': 4.0, 'condition_threshold': 0.5},
                                    {'fwhm_mm': 4.0, 'n_jobs': 0},
                                    {'fwhm_mm': 4.0, 'composition': 'median'}])
def test_invalid_config_raises(kwargs):
    with pytest.raises(InvalidParameterError):
        GtmConfig(**kwargs)


def test_config_broadcasts_scalar_fwhm():
    assert GtmConfig(fwhm_mm=5).fwhm_mm == (5.0, 5.0, 5.0)


def test_results_table(two_cubes, geometry, true_image):
    result = run_gtm(true_image, geometry, two_cubes, GtmConfig(fwhm_mm=4.0))
    table = result.to_dataframe()
    assert list(table.columns) == ['index', 'label', 'name', 'voxels', 'measured_mean',
                                   'corrected_mean']
    assert list(table['name']) == ['hot', 'warm']
    np.testing.assert_allclose(table['voxels'], [1000, 1000])


def test_nan_outside_field_of_view_does_not_spoil_means(two_cubes, geometry, true_image):
    pet = true_image.copy()
    pet[0, 0, 0] = np.nan
    result = run_gtm(pet, geometry, two_cubes, GtmConfig(fwhm_mm=0.0))
    np.testing.assert_allclose(result.measured_means, TRUE_VALUES)
    np.testing.assert_allclose(result.corrected_means, TRUE_VALUES)


def test_identical_regions_use_minimum_norm_solution(geometry):
    maps = np.zeros(geometry.shape + (2,))
    maps[5:15, 5:15, 5:15, :] = 1.0
    pet = np.zeros(geometry.shape)
    pet[5:15, 5:15, 5:15] = 80.0
    result = run_gtm(pet, geometry, RegionSet(maps), GtmConfig(fwhm_mm=4.0))
    assert result.solver_method == 'lstsq'
    assert result.corrected_means[0] == pytest.approx(result.corrected_means[1])
    np.testing.assert_allclose(result.transfer_matrix @ result.corrected_means,
                               result.measured_means, rtol=1e-8)
