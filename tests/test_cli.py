import nibabel
import numpy as np
import pandas as pd
import pytest

from petgtm.cli import cli_gtm


def test_cli_writes_corrected_image(tmp_path, nifti_inputs):
    pet_path, mask_path = nifti_inputs
    out_path = str(tmp_path / 'out.nii.gz')
    tsv_path = str(tmp_path / 'out.tsv')
    status = cli_gtm.main([pet_path, mask_path, out_path, '-x', '4', '-y', '4', '-z', '4',
                           '--out-tsv', tsv_path])
    assert status == 0
    assert nibabel.load(out_path).shape == (30, 20, 20)
    table = pd.read_csv(tsv_path, sep='\t')
    np.testing.assert_allclose(table['voxels'], [1000, 1000])


def test_cli_verbose_prints_table(tmp_path, nifti_inputs, capsys):
    pet_path, mask_path = nifti_inputs
    status = cli_gtm.main([pet_path, mask_path, str(tmp_path / 'out.nii'),
                           '-x', '0', '-y', '0', '-z', '0', '-v', '-n', '2'])
    assert status == 0
    assert 'corrected_mean' in capsys.readouterr().out


def test_cli_reports_read_failure(tmp_path, capsys):
    out_path = tmp_path / 'out.nii.gz'
    status = cli_gtm.main([str(tmp_path / 'missing.nii.gz'), str(tmp_path / 'mask.nii.gz'),
                           str(out_path), '-x', '4', '-y', '4', '-z', '4'])
    assert status == 1
    assert '[Error]\tread' in capsys.readouterr().err
    assert not out_path.exists()


def test_cli_reports_invalid_fwhm(tmp_path, nifti_inputs, capsys):
    out_path = tmp_path / 'out.nii.gz'
    status = cli_gtm.main([*nifti_inputs, str(out_path), '-x', '-4', '-y', '4', '-z', '4'])
    assert status == 1
    assert '[Error]\tconfiguration' in capsys.readouterr().err
    assert not out_path.exists()


def test_cli_reports_empty_region_without_writing(tmp_path, capsys):
    affine = np.diag([2.0, 2.0, 2.0, 1.0])
    mask = np.zeros((8, 8, 8, 2), dtype=np.float32)
    mask[2:6, 2:6, 2:6, 0] = 1
    pet_path, mask_path = str(tmp_path / 'pet.nii.gz'), str(tmp_path / 'mask.nii.gz')
    nibabel.save(nibabel.Nifti1Image(np.ones((8, 8, 8), dtype=np.float32), affine), pet_path)
    nibabel.save(nibabel.Nifti1Image(mask, affine), mask_path)
    out_path = tmp_path / 'out.nii.gz'
    status = cli_gtm.main([pet_path, mask_path, str(out_path), '-x', '4', '-y', '4', '-z', '4'])
    assert status == 1
    assert '[Error]\tregions' in capsys.readouterr().err
    assert not out_path.exists()


def test_cli_reports_unwritable_table_without_writing(tmp_path, nifti_inputs, capsys):
    out_path = tmp_path / 'out.nii.gz'
    status = cli_gtm.main([*nifti_inputs, str(out_path), '-x', '4', '-y', '4', '-z', '4',
                           '--out-tsv', str(tmp_path / 'missing_dir' / 'gtm.tsv')])
    assert status == 1
    assert '[Error]\twrite' in capsys.readouterr().err
    assert not out_path.exists()


def test_cli_rejects_zeroth_roi_without_segmentation(tmp_path, nifti_inputs):
    with pytest.raises(SystemExit):
        cli_gtm.main([*nifti_inputs, str(tmp_path / 'out.nii.gz'),
                      '-x', '4', '-y', '4', '-z', '4', '--zeroth-roi'])
