"""
Image IO

Reading of PET images, region masks, segmentations and label maps, and writing of the
corrected image and regional value tables. Every loader converts failures from the file system
or nibabel into :class:`petgtm.utils.errors.InputReadError`, so the GTM core never sees a
partially loaded input.
"""
import json
import logging
import os
import re
import nibabel
from nibabel.filebasedimages import ImageFileError
import numpy as np
import pandas as pd

from .base_image import VolumeGeometry
from .errors import DimensionMismatchError, InputReadError, OutputWriteError


logger = logging.getLogger(__name__)


def write_dict_to_json(meta_data_dict: dict, out_path: str):
    """
    Save a metadata dictionary to a JSON file.

    Args:
        meta_data_dict (dict): A dictionary with imaging metadata, to be saved to file.
        out_path (str): Path of the JSON file to write.

    Raises:
        OutputWriteError: If the file cannot be written.
    """
    try:
        with open(out_path, 'w', encoding='utf-8') as copy_file:
            json.dump(meta_data_dict, copy_file, indent=4)
    except OSError as exc:
        raise OutputWriteError(f"Cannot write metadata file {out_path}: {exc}") from exc


def _gen_meta_data_filepath_for_nifti(nifty_path: str):
    """
    Generates the corresponding metadata file path for a given nifti file path by replacing the
    `.nii` or `.nii.gz` extension with `.json`.
    """
    meta_data_path = re.sub(r'\.nii\.gz$|\.nii$', '.json', nifty_path)
    return meta_data_path


def safe_load_meta(input_metadata_file: str) -> dict:
    """
    Function to load a generic metadata json file.

    Args:
        input_metadata_file (str): Metadata file to be read.

    Returns:
        metadata (dict): The metadata in dictionary format.

    Raises:
        InputReadError: If the file is missing or is not valid JSON.
    """
    if not os.path.exists(input_metadata_file):
        raise InputReadError(f"Metadata file {input_metadata_file} not found.")

    try:
        with open(input_metadata_file, 'r', encoding='utf-8') as meta_file:
            metadata = json.load(meta_file)
    except (OSError, json.JSONDecodeError) as exc:
        raise InputReadError(f"Cannot read metadata file {input_metadata_file}: {exc}") from exc
    return metadata


def safe_copy_meta(input_image_path: str,
                   out_image_path: str) -> str | None:
    """
    Copy the metadata sidecar of the input image to one with the same name as the output image,
    if the input has a sidecar.

    Args:
        input_image_path (str): Path to the image the output was computed from.
        out_image_path (str): Path to the output image.

    Returns:
        str | None: Path of the copied sidecar, or None if the input has no sidecar.
    """
    input_meta_path = _gen_meta_data_filepath_for_nifti(input_image_path)
    if not os.path.exists(input_meta_path):
        return None
    copy_meta_path = _gen_meta_data_filepath_for_nifti(out_image_path)
    meta_data_dict = safe_load_meta(input_metadata_file=input_meta_path)
    write_dict_to_json(meta_data_dict=meta_data_dict, out_path=copy_meta_path)
    logger.debug(f"Copied metadata {input_meta_path} to {copy_meta_path}")
    return copy_meta_path


def safe_load_nifti(filename: str) -> nibabel.nifti1.Nifti1Image:
    """
    Safely load a NIfTI file.

    Args:
        filename (str): The path of the NIfTI file to be loaded.

    Returns:
        Nifti1Image: The loaded NIfTI image.

    Raises:
        InputReadError: If the file does not exist, does not have a '.nii' or '.nii.gz'
            extension, or cannot be decoded by nibabel.
    """
    if not str(filename).endswith(('.nii', '.nii.gz')):
        raise InputReadError(f"Invalid file extension for {filename}. Only '.nii' and '.nii.gz' "
                             f"are supported.")
    if not os.path.exists(filename):
        raise InputReadError(f"Image file {filename} not found.")

    try:
        image = nibabel.load(filename)
    except (OSError, ValueError, ImageFileError) as exc:
        raise InputReadError(f"Cannot read image file {filename}: {exc}") from exc
    logger.debug(f"Loaded {filename} with shape {image.shape}")
    return image


def _get_data(image: nibabel.nifti1.Nifti1Image, filename: str) -> np.ndarray:
    try:
        return image.get_fdata()
    except (OSError, ValueError, EOFError) as exc:
        raise InputReadError(f"Cannot read image data from {filename}: {exc}") from exc


def load_pet_image(filename: str
                   ) -> tuple[np.ndarray, VolumeGeometry, nibabel.nifti1.Nifti1Header]:
    """
    Load a 3D PET image, its geometry and its header.

    A 4D image with a single frame is accepted and squeezed to 3D.

    Args:
        filename (str): Path to the PET NIfTI image.

    Returns:
        tuple[np.ndarray, VolumeGeometry, nibabel.nifti1.Nifti1Header]: PET data, the grid it is
        defined on, and the header to carry over to the corrected image.

    Raises:
        InputReadError: If the image cannot be read.
        DimensionMismatchError: If the image is not 3D.
    """
    image = safe_load_nifti(filename)
    pet_numpy = _get_data(image, filename)
    if pet_numpy.ndim == 4 and pet_numpy.shape[3] == 1:
        pet_numpy = pet_numpy[..., 0]
    if pet_numpy.ndim != 3:
        raise DimensionMismatchError(f"PET image {filename} must be 3D. "
                                     f"Got shape {pet_numpy.shape}.")
    return pet_numpy, VolumeGeometry.from_nifti(image), image.header


def load_mask_image(filename: str) -> tuple[np.ndarray, VolumeGeometry]:
    """
    Load a 4D region mask, one region per volume along the fourth axis.

    Args:
        filename (str): Path to the mask NIfTI image.

    Returns:
        tuple[np.ndarray, VolumeGeometry]: Mask data of shape ``(X, Y, Z, K)`` and the spatial
        grid of the mask.

    Raises:
        InputReadError: If the image cannot be read.
        DimensionMismatchError: If the image is not 4D.
    """
    image = safe_load_nifti(filename)
    mask_numpy = _get_data(image, filename)
    if mask_numpy.ndim != 4:
        raise DimensionMismatchError(f"Mask image {filename} must be 4D (x, y, z, region). "
                                     f"Got shape {mask_numpy.shape}.")
    return mask_numpy, VolumeGeometry.from_nifti(image)


def load_segmentation_image(filename: str) -> tuple[np.ndarray, VolumeGeometry]:
    """
    Load a discrete 3D segmentation, rounding values to integer labels.

    Args:
        filename (str): Path to the segmentation NIfTI image.

    Returns:
        tuple[np.ndarray, VolumeGeometry]: Integer label array and its grid.

    Raises:
        InputReadError: If the image cannot be read.
        DimensionMismatchError: If the image is not 3D.
    """
    image = safe_load_nifti(filename)
    seg_numpy = _get_data(image, filename)
    if seg_numpy.ndim != 3:
        raise DimensionMismatchError(f"Segmentation image {filename} must be 3D. "
                                     f"Got shape {seg_numpy.shape}.")
    return np.rint(seg_numpy).astype(int), VolumeGeometry.from_nifti(image)


def read_label_map_tsv(label_map_file: str) -> pd.DataFrame:
    """
    Read a BIDS ``dseg.tsv`` label map translating region labels to names.

    Args:
        label_map_file (str): Path to a tab separated label map with at least a ``name``
            column, and a ``mapping`` column giving the label value of each region.

    Returns:
        label_map (pd.DataFrame): Dataframe matching region indices, names, abbreviations, and
            mappings.

    Raises:
        InputReadError: If the file is missing, unreadable, or has no ``name`` column.
    """
    if not os.path.exists(label_map_file):
        raise InputReadError(f"Label map file {label_map_file} not found.")

    try:
        label_map = pd.read_csv(label_map_file, sep='\t')
    except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as exc:
        raise InputReadError(f"Cannot read label map {label_map_file}: {exc}") from exc

    if 'name' not in label_map.columns:
        raise InputReadError(f"Label map {label_map_file} has no 'name' column.")
    return label_map


def region_names_from_label_map(label_map: pd.DataFrame,
                                labels: np.ndarray = None) -> list[str]:
    """
    Look up region names for a set of labels.

    Args:
        label_map (pd.DataFrame): Label map as read by :func:`read_label_map_tsv`.
        labels (np.ndarray, optional): Label value of each region. If given, each label is looked
            up in the ``mapping`` column; otherwise the rows of the label map are taken in order.

    Returns:
        list[str]: One name per region. Labels missing from the map are named ``label_<value>``.
    """
    name_column = 'abbreviation' if 'abbreviation' in label_map.columns else 'name'
    if labels is None or 'mapping' not in label_map.columns:
        return [str(name) for name in label_map[name_column]]

    names_by_label = dict(zip(label_map['mapping'], label_map[name_column]))
    return [str(names_by_label.get(label, f'label_{label}')) for label in labels]


def check_output_path(out_path: str, extensions: tuple[str, ...] = None):
    """
    Check that an output file can be created before any computation starts.

    Args:
        out_path (str): Path of the file that will be written.
        extensions (tuple[str, ...], optional): Allowed file name endings.

    Raises:
        OutputWriteError: If the extension is not allowed, or the parent directory is missing or
            not writable.
    """
    if extensions is not None and not str(out_path).endswith(extensions):
        raise OutputWriteError(f"Invalid file extension for {out_path}. Use one of {extensions}.")
    out_dir = os.path.dirname(os.path.abspath(out_path))
    if not os.path.isdir(out_dir):
        raise OutputWriteError(f"Output directory {out_dir} does not exist.")
    if not os.access(out_dir, os.W_OK):
        raise OutputWriteError(f"Output directory {out_dir} is not writable.")


def save_volume(image_numpy: np.ndarray,
                geometry: VolumeGeometry,
                out_image_path: str,
                header: nibabel.nifti1.Nifti1Header = None):
    """
    Write a 3D image to a NIfTI file on the given grid.

    Args:
        image_numpy (np.ndarray): 3D image data.
        geometry (VolumeGeometry): Grid, providing the affine of the output.
        out_image_path (str): Path to a .nii or .nii.gz file.
        header (nibabel.nifti1.Nifti1Header, optional): Header to copy, e.g. from the PET input.

    Raises:
        OutputWriteError: If nibabel cannot write the file.
    """
    out_image = nibabel.nifti1.Nifti1Image(dataobj=np.asarray(image_numpy, dtype=np.float32),
                                           affine=geometry.affine,
                                           header=header)
    out_image.set_data_dtype(np.float32)
    try:
        nibabel.save(out_image, out_image_path)
    except (OSError, ImageFileError) as exc:
        raise OutputWriteError(f"Cannot write image {out_image_path}: {exc}") from exc
    logger.info(f"Image saved to {out_image_path}")


def write_regional_values_tsv(regional_values: pd.DataFrame, out_tsv_path: str):
    """
    Write a per-region results table as tab separated values.

    Raises:
        OutputWriteError: If the table cannot be written.
    """
    try:
        regional_values.to_csv(out_tsv_path, sep='\t', index=False)
    except OSError as exc:
        raise OutputWriteError(f"Cannot write regional values to {out_tsv_path}: {exc}") from exc
    logger.info(f"Regional values saved to {out_tsv_path}")
