import cv2
import numpy as np
import pytest
from astropy.io import fits

from photalign.exceptions import NotFoundError, FormatError
from photalign.file_loader import FileLoader


def _write_fits(path, data, cards):
    header = fits.Header()
    for key, value in cards.items():
        header[key] = value
    fits.PrimaryHDU(data=data, header=header).writeto(path)


def test_load_fits_image(tmp_path):
    path = tmp_path / "frame.fits"
    _write_fits(path, np.arange(12, dtype=np.int16).reshape(3, 4), {'DATE-OBS': '2024-03-01T00:00:00', 'EXPTIME': 5.0})

    record = FileLoader().load_image(path)

    assert record.shape == (3, 4)
    assert record.data.dtype == np.float64
    assert record.data[2, 3] == 11.0
    assert record.header['EXPTIME'] == 5.0
    assert record.source == str(path)


def test_fits_cube_reduced_to_grayscale(tmp_path):
    path = tmp_path / "cube.fits"
    cube = np.stack([np.full((4, 4), v, dtype=np.float32) for v in (1.0, 2.0, 6.0)])
    _write_fits(path, cube, {'DATE-OBS': '2024-03-01T00:00:00'})

    record = FileLoader().load_image(path)

    assert record.shape == (4, 4)
    assert np.allclose(record.data, 3.0)


def test_missing_file_raises_not_found(tmp_path):
    with pytest.raises(NotFoundError):
        FileLoader().load_image(tmp_path / "absent.fits")


def test_not_found_is_a_file_not_found_error(tmp_path):
    with pytest.raises(FileNotFoundError):
        FileLoader().load_image(tmp_path / "absent.fits")


def test_unsupported_extension_raises_format_error(tmp_path):
    path = tmp_path / "notes.txt"
    path.write_text("not an image")

    with pytest.raises(FormatError):
        FileLoader().load_image(path)


def test_corrupt_fits_raises_format_error(tmp_path):
    path = tmp_path / "broken.fits"
    path.write_bytes(b"definitely not a FITS file" * 10)

    with pytest.raises(FormatError):
        FileLoader().load_image(path)


def test_fits_without_date_obs_raises_format_error(tmp_path):
    path = tmp_path / "undated.fits"
    fits.PrimaryHDU(data=np.zeros((3, 3))).writeto(path)

    with pytest.raises(FormatError, match="DATE-OBS"):
        FileLoader().load_image(path)


def test_png_without_exif_timestamp_raises_format_error(tmp_path):
    path = tmp_path / "frame.png"
    cv2.imwrite(str(path), np.zeros((8, 8), dtype=np.uint8))

    with pytest.raises(FormatError, match="timestamp"):
        FileLoader().load_image(path)


def test_load_collection_sorted_by_date_obs(fits_dir):
    records = FileLoader().load_collection(fits_dir)

    times = [record.timestamp for record in records]
    assert len(records) == 3
    assert times == sorted(times)
    # File names run opposite to the observation order
    assert records[0].source.endswith("frame_2.fits")


def test_load_collection_empty_directory(tmp_path):
    with pytest.raises(NotFoundError):
        FileLoader().load_collection(tmp_path)


def test_load_collection_missing_directory(tmp_path):
    with pytest.raises(NotFoundError):
        FileLoader().load_collection(tmp_path / "nowhere")
