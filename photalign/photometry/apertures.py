from dataclasses import dataclass, field
from functools import partial
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from astropy.time import Time
from photutils.aperture import CircularAperture, aperture_photometry

from photalign.logger.backend_logger import backend_logger
from photalign.config import PipelineConfig
from photalign.exceptions import OutOfBoundsWarning, FrameError
from photalign.image_record import ImageRecord
from photalign.parallel import map_frames
from photalign.utils import ImageUtils

# Coverage below 1 - COVERAGE_ATOL counts as partially out of bounds
COVERAGE_ATOL = 1e-9


@dataclass(frozen=True)
class Aperture:
    """
    A named circular aperture in reference-frame pixel coordinates.

    Pixel (i, j) covers [i - 0.5, i + 0.5] x [j - 0.5, j + 0.5], so a star
    centred on pixel (10, 20) has x=10.0, y=20.0.
    """
    name: str
    x: float
    y: float
    radius: float

    def __post_init__(self):
        if not self.radius > 0:
            raise ValueError(f"Aperture '{self.name}' needs a positive radius, got {self.radius}")

    @property
    def area(self) -> float:
        return float(np.pi * self.radius ** 2)

    def to_photutils(self) -> CircularAperture:
        return CircularAperture((self.x, self.y), r=self.radius)

    def coverage(self, shape: Tuple[int, int], valid: Optional[np.ndarray] = None) -> float:
        """
        Fraction of the aperture's area that lies on the grid (and on `valid` pixels, if given).
        """
        mask_image = self.to_photutils().to_mask(method='exact').to_image(shape)
        if mask_image is None:
            return 0.0
        if valid is not None:
            mask_image = mask_image * valid
        return float(mask_image.sum() / self.area)


@dataclass(frozen=True)
class FluxSample:
    """
    Fluxes measured through every aperture on one frame.

    Attributes:
        frame_index (int): Position of the frame in the sequence.
        timestamp (Time): Observation time copied from the frame header.
        fluxes (Dict[str, float]): Aperture name -> summed flux. NaN when the frame failed.
        warnings (Tuple[OutOfBoundsWarning, ...]): Apertures that were clipped by the grid edge.
    """
    frame_index: int
    timestamp: Time
    fluxes: Dict[str, float]
    warnings: Tuple[OutOfBoundsWarning, ...] = field(default_factory=tuple)

    @property
    def failed(self) -> bool:
        return bool(self.fluxes) and all(np.isnan(value) for value in self.fluxes.values())

    @classmethod
    def missing(cls, frame_index: int, timestamp: Time, apertures: Sequence[Aperture]) -> "FluxSample":
        """Placeholder for a frame that could not be measured."""
        return cls(frame_index=frame_index, timestamp=timestamp, fluxes={ap.name: np.nan for ap in apertures})


def measure_frame(record: ImageRecord, apertures: Sequence[Aperture], frame_index: int = 0) -> FluxSample:
    """
    Sums pixel values inside each aperture with exact fractional overlap.

    Each pixel contributes value * (area of pixel inside circle). NaN pixels,
    such as the fill left by resampling, contribute nothing. Apertures that leave
    the grid are summed over their in-bounds part and an OutOfBoundsWarning is
    recorded on the sample.

    Args:
        record (ImageRecord): Frame on the reference grid.
        apertures (Sequence[Aperture]): Apertures to measure.
        frame_index (int): Sequence position, copied onto the sample.

    Returns:
        FluxSample: One flux per aperture, keyed by aperture name.
    """
    data = record.data
    invalid = ImageUtils.finite_mask(data)
    valid = (~invalid).astype(np.float64)

    fluxes = {}
    warnings_found: List[OutOfBoundsWarning] = []
    for aperture in apertures:
        coverage = aperture.coverage(data.shape, valid)
        if coverage < 1 - COVERAGE_ATOL:
            warning = OutOfBoundsWarning(aperture.name, frame_index, coverage)
            backend_logger.warning(str(warning))
            warnings_found.append(warning)

        if coverage == 0:
            fluxes[aperture.name] = 0.0
            continue

        table = aperture_photometry(data, aperture.to_photutils(), method='exact', mask=invalid)
        fluxes[aperture.name] = float(table['aperture_sum'][0])

    return FluxSample(frame_index=frame_index, timestamp=record.timestamp, fluxes=fluxes,
                      warnings=tuple(warnings_found))


def _measure_indexed(apertures: Sequence[Aperture], item: Tuple[int, ImageRecord]) -> FluxSample:
    frame_index, record = item
    return measure_frame(record, apertures, frame_index)


def measure_sequence(
    frames: Sequence[Optional[ImageRecord]],
    apertures: Sequence[Aperture],
    config: Optional[PipelineConfig] = None,
    timestamps: Optional[Sequence[Time]] = None,
) -> Tuple[List[FluxSample], List[FrameError]]:
    """
    Measures every frame of an aligned sequence through the same apertures.

    Args:
        frames (Sequence[Optional[ImageRecord]]): Aligned frames. None marks a frame that
                                                  failed earlier; it yields a NaN sample.
        apertures (Sequence[Aperture]): Fixed aperture set, in reference coordinates.
        config (PipelineConfig): Worker pool and failure policy settings.
        timestamps (Sequence[Time]): Times for the None entries. Required if any frame is None.

    Returns:
        Tuple[List[FluxSample], List[FrameError]]: One sample per frame in input order,
                                                   and any per-frame errors.
    """
    config = config if config is not None else PipelineConfig()
    apertures = tuple(apertures)
    present = [(i, frame) for i, frame in enumerate(frames) if frame is not None]

    results, errors = map_frames(
        partial(_measure_indexed, apertures),
        present,
        config,
        indices=[i for i, _ in present],
        timestamps=[frame.timestamp for _, frame in present],
    )
    by_index = {i: sample for (i, _), sample in zip(present, results) if sample is not None}

    samples = []
    for i, frame in enumerate(frames):
        if i in by_index:
            samples.append(by_index[i])
            continue
        if frame is not None:
            timestamp = frame.timestamp
        elif timestamps is not None:
            timestamp = timestamps[i]
        else:
            raise ValueError(f"Frame {i} is missing and no timestamp was supplied for it")
        samples.append(FluxSample.missing(i, timestamp, apertures))

    backend_logger.info(f"Measured {len(by_index)}/{len(frames)} frames through {len(apertures)} apertures.")
    return samples, errors
