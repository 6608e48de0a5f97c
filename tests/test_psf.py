import numpy as np
import pytest

from petgtm.preproc.psf import PsfModel, compute_variance_in_voxels, fwhm_to_sigma
from petgtm.utils.errors import InvalidParameterError


def test_fwhm_to_sigma_matches_closed_form():
    assert fwhm_to_sigma(2.0 * np.sqrt(2.0 * np.log(2.0))) == pytest.approx(1.0)


def test_variance_isotropic():
    variance = compute_variance_in_voxels(fwhm=(4.0, 4.0, 4.0), spacing=(2.0, 2.0, 2.0))
    expected = (4.0 / (2.0 * np.sqrt(2.0 * np.log(2.0))) / 2.0) ** 2
    np.testing.assert_allclose(variance, [expected] * 3)
    assert variance[0] == pytest.approx(0.72135, abs=1e-4)


def test_variance_accounts_for_non_cubic_voxels():
    variance = compute_variance_in_voxels(fwhm=(6.0, 6.0, 6.0), spacing=(1.0, 2.0, 3.0))
    assert variance[0] > variance[1] > variance[2]
    np.testing.assert_allclose(variance[0] / variance[1], 4.0)
    np.testing.assert_allclose(variance[0] / variance[2], 9.0)


def test_scalar_fwhm_is_broadcast():
    np.testing.assert_allclose(compute_variance_in_voxels(fwhm=5.0, spacing=(2.0, 2.0, 2.0)),
                               compute_variance_in_voxels(fwhm=(5.0, 5.0, 5.0),
                                                          spacing=(2.0, 2.0, 2.0)))


def test_zero_fwhm_gives_zero_variance():
    np.testing.assert_array_equal(compute_variance_in_voxels(fwhm=0.0, spacing=(1.0, 1.0, 1.0)),
                                  np.zeros(3))


@pytest.mark.parametrize('fwhm, spacing', [((-1.0, 4.0, 4.0), (2.0, 2.0, 2.0)),
                                           ((4.0, np.nan, 4.0), (2.0, 2.0, 2.0)),
                                           ((4.0, 4.0, 4.0), (2.0, 0.0, 2.0)),
                                           ((4.0, 4.0, 4.0), (2.0, 2.0, -1.0)),
                                           ((4.0, 4.0), (2.0, 2.0, 2.0))])
def test_invalid_parameters_raise(fwhm, spacing):
    with pytest.raises(InvalidParameterError):
        compute_variance_in_voxels(fwhm=fwhm, spacing=spacing)


def test_psf_model_properties():
    psf = PsfModel.from_fwhm(fwhm=4.0, spacing=(2.0, 1.0, 4.0))
    assert psf.fwhm_mm == (4.0, 4.0, 4.0)
    np.testing.assert_allclose(psf.sigma_voxels ** 2, psf.variance_voxels)
    np.testing.assert_allclose(psf.sigma_voxels, psf.sigma_mm / np.array([2.0, 1.0, 4.0]))


def test_psf_model_rejects_bad_spacing():
    with pytest.raises(InvalidParameterError):
        PsfModel(fwhm_mm=(4.0, 4.0, 4.0), spacing_mm=(0.0, 1.0, 1.0))
