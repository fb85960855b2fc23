from typing import Any, Dict, List, Optional, Sequence

import numpy as np
from astropy.io import fits

from photalign.logger.backend_logger import backend_logger
from photalign.config import EXPTIME_KEYS, INSTRUMENT_KEYS, EXPTIME_RTOL
from photalign.image_record import ImageRecord


def _first_card(header: fits.Header, keys: Sequence[str]) -> Optional[Any]:
    for key in keys:
        if key in header:
            return header[key]
    return None


class InputValidator:
    """
    Validates the consistency of a frame sequence against its first frame
    (exposure time, instrument, grid shape and timestamp order).

    Problems are reported, never raised: a light curve from a slightly
    inconsistent sequence is still worth producing.
    """

    @staticmethod
    def validate_sequence(frames: Sequence[ImageRecord]) -> List[Dict]:
        """
        Checks every frame against frames[0] and its predecessor.

        Args:
            frames (Sequence[ImageRecord]): Frames in input order.

        Returns:
            List[Dict]: A list of dictionaries, each representing a warning.
                        Example: [{'level': 'warning', 'message': '...'}]
        """
        warnings = []
        if len(frames) < 2:
            return warnings

        backend_logger.info(f"Validating consistency of {len(frames)} frames.")
        reference = frames[0]
        ref_exptime = _first_card(reference.header, EXPTIME_KEYS)
        ref_instrument = _first_card(reference.header, INSTRUMENT_KEYS)

        if ref_exptime is None:
            warnings.append({
                'level': 'info',
                'message': "Exposure time not found in reference frame header. Cannot validate exposure times."
            })

        for i, frame in enumerate(frames[1:], start=1):
            # Check Exposure Time
            exptime = _first_card(frame.header, EXPTIME_KEYS)
            if ref_exptime is not None and exptime is not None:
                if not np.isclose(float(ref_exptime), float(exptime), rtol=EXPTIME_RTOL):
                    warnings.append({
                        'level': 'warning',
                        'message': f"Exposure time mismatch: frame 0 ({float(ref_exptime):.3f}s) "
                                   f"and frame {i} ({float(exptime):.3f}s)."
                    })

            # Check Instrument
            instrument = _first_card(frame.header, INSTRUMENT_KEYS)
            if ref_instrument is not None and instrument is not None and str(ref_instrument).strip() != str(instrument).strip():
                warnings.append({
                    'level': 'warning',
                    'message': f"Instrument mismatch: frame 0 ({ref_instrument}) and frame {i} ({instrument})."
                })

            # Check Shape
            if frame.shape != reference.shape:
                warnings.append({
                    'level': 'warning',
                    'message': f"Shape mismatch: frame 0 {reference.shape} and frame {i} {frame.shape}. "
                               f"Frame {i} will be resampled onto the reference grid."
                })

            # Check Timestamp order
            previous = frames[i - 1]
            if frame.timestamp <= previous.timestamp:
                warnings.append({
                    'level': 'warning',
                    'message': f"Timestamps not increasing: frame {i - 1} ({previous.timestamp.isot}) "
                               f"and frame {i} ({frame.timestamp.isot})."
                })

        for warning in warnings:
            if warning['level'] == 'warning':
                backend_logger.warning(warning['message'])
        backend_logger.info(f"Sequence validation completed with {len(warnings)} warnings.")
        return warnings
