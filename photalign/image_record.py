from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional, Tuple, Union

import numpy as np
from astropy.io import fits
from astropy.time import Time

from photalign.config import DATE_OBS_KEY
from photalign.exceptions import FormatError


def parse_timestamp(value: Any) -> Time:
    """
    Parses a header timestamp (ISO string, datetime or astropy Time) into a UTC Time.

    Raises:
        FormatError: If the value cannot be interpreted as a timestamp.
    """
    if isinstance(value, Time):
        return value
    try:
        if isinstance(value, datetime):
            return Time(value, scale='utc')
        return Time(str(value).strip(), scale='utc')
    except (ValueError, TypeError) as e:
        raise FormatError(f"Unparseable {DATE_OBS_KEY} value {value!r}: {e}") from e


@dataclass(frozen=True, eq=False)
class ImageRecord:
    """
    A 2D pixel grid paired with its observation header.

    Records are never mutated in place: transformations such as alignment
    produce a new record through `with_data`, which keeps the header.
    The pixel array is made read-only on construction.

    Attributes:
        data (np.ndarray): float64 grid of shape (rows, columns).
        header (fits.Header): Observation metadata; must hold a parseable DATE-OBS.
        source (Optional[str]): Path or label the record was loaded from.
    """
    data: np.ndarray
    header: fits.Header
    source: Optional[str] = None

    def __post_init__(self):
        data = np.array(self.data, dtype=np.float64, copy=True)
        if data.ndim != 2 or data.size == 0:
            raise FormatError(f"Image data must be a non-empty 2D array, got shape {data.shape}")
        data.setflags(write=False)
        object.__setattr__(self, 'data', data)

        header = self.header
        if not isinstance(header, fits.Header):
            header = fits.Header(dict(header) if isinstance(header, Mapping) else header)
        else:
            header = header.copy()
        if DATE_OBS_KEY not in header:
            raise FormatError(f"Header of {self.source or 'image'} has no {DATE_OBS_KEY} keyword")
        object.__setattr__(self, 'header', header)
        # Fail at construction, not deep inside the pipeline
        object.__setattr__(self, '_timestamp', parse_timestamp(header[DATE_OBS_KEY]))

    @property
    def timestamp(self) -> Time:
        return self._timestamp

    @property
    def shape(self) -> Tuple[int, int]:
        return self.data.shape

    def with_data(self, data: np.ndarray) -> "ImageRecord":
        """Returns a new record carrying `data` and this record's header."""
        return ImageRecord(data=data, header=self.header, source=self.source)

    @classmethod
    def from_array(cls, data: np.ndarray, timestamp: Union[str, datetime, Time], **header_cards) -> "ImageRecord":
        """Convenience constructor for in-memory frames."""
        header = fits.Header()
        if isinstance(timestamp, Time):
            timestamp = timestamp.isot
        elif isinstance(timestamp, datetime):
            timestamp = timestamp.isoformat()
        header[DATE_OBS_KEY] = timestamp
        for key, value in header_cards.items():
            header[key.upper()] = value
        return cls(data=data, header=header)

    def __repr__(self) -> str:
        return f"ImageRecord(shape={self.shape}, {DATE_OBS_KEY}={self.timestamp.isot}, source={self.source!r})"
