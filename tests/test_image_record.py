from datetime import datetime

import numpy as np
import pytest
from astropy.io import fits
from astropy.time import Time

from photalign.exceptions import FormatError
from photalign.image_record import ImageRecord, parse_timestamp


def test_from_array_sets_header_and_timestamp():
    record = ImageRecord.from_array(np.zeros((4, 5)), "2024-03-01T00:00:10", exptime=5.0)

    assert record.shape == (4, 5)
    assert record.header['EXPTIME'] == 5.0
    assert record.timestamp == Time("2024-03-01T00:00:10", scale='utc')


def test_data_is_read_only_float64_copy():
    source = np.ones((3, 3), dtype=np.int16)
    record = ImageRecord.from_array(source, "2024-03-01T00:00:00")
    source[0, 0] = 7

    assert record.data.dtype == np.float64
    assert record.data[0, 0] == 1.0
    with pytest.raises(ValueError):
        record.data[0, 0] = 2.0


def test_missing_date_obs_rejected():
    with pytest.raises(FormatError, match="DATE-OBS"):
        ImageRecord(data=np.zeros((3, 3)), header=fits.Header())


def test_unparseable_date_obs_rejected():
    header = fits.Header()
    header['DATE-OBS'] = 'yesterday evening'

    with pytest.raises(FormatError):
        ImageRecord(data=np.zeros((3, 3)), header=header)


@pytest.mark.parametrize("shape", [(5,), (2, 3, 4), (0, 4)])
def test_non_2d_data_rejected(shape):
    with pytest.raises(FormatError):
        ImageRecord.from_array(np.zeros(shape), "2024-03-01T00:00:00")


def test_with_data_keeps_header():
    record = ImageRecord.from_array(np.zeros((3, 3)), "2024-03-01T00:00:00", instrume='SIM')
    resampled = record.with_data(np.ones((6, 6)))

    assert resampled.shape == (6, 6)
    assert resampled.header['INSTRUME'] == 'SIM'
    assert resampled.timestamp == record.timestamp
    # The original is untouched
    assert record.shape == (3, 3)


def test_header_mapping_accepted():
    record = ImageRecord(data=np.zeros((2, 2)), header={'DATE-OBS': '2024-03-01T00:00:00'})

    assert isinstance(record.header, fits.Header)


def test_parse_timestamp_accepts_datetime():
    parsed = parse_timestamp(datetime(2024, 3, 1, 12, 0, 0))

    assert parsed.isot.startswith("2024-03-01T12:00:00")
