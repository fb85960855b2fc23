import warnings
from dataclasses import dataclass
from typing import Optional

import numpy as np
from astropy.table import Table
from astropy.utils.exceptions import AstropyUserWarning
from photutils.detection import find_peaks
from photutils.utils.exceptions import NoDetectionsWarning

from photalign.logger.backend_logger import backend_logger
from photalign.config import DEFAULT_BOX_SIZE, DETECTION_THRESHOLD_SIGMA, MAX_SOURCES, BORDER_WIDTH
from photalign.background.background_estimator import BackgroundEstimator
from photalign.alignment.centroid_refiner import CentroidRefiner

# Relative floor on the detection threshold, as a fraction of the frame's peak absolute value
NOISE_FLOOR = 1e-9


@dataclass(frozen=True, eq=False)
class PointSet:
    """
    Ranked source positions detected on one frame.

    Attributes:
        xy (np.ndarray): (N, 2) array of (x, y) pixel coordinates, brightest first.
        flux (np.ndarray): (N,) background-subtracted peak values, same order.
    """
    xy: np.ndarray
    flux: np.ndarray

    def __post_init__(self):
        xy = np.asarray(self.xy, dtype=np.float64).reshape(-1, 2)
        flux = np.asarray(self.flux, dtype=np.float64).reshape(-1)
        if len(xy) != len(flux):
            raise ValueError(f"PointSet needs one flux per position, got {len(xy)} positions and {len(flux)} fluxes")
        object.__setattr__(self, 'xy', xy)
        object.__setattr__(self, 'flux', flux)

    def __len__(self) -> int:
        return len(self.xy)

    def to_table(self) -> Table:
        return Table({'xcentroid': self.xy[:, 0], 'ycentroid': self.xy[:, 1], 'flux': self.flux})


class StarDetector:
    """
    Finds candidate star positions for cross-frame matching:
    background removal, local-maximum detection above `threshold_sigma`
    times the local noise, brightness ranking and sub-pixel refinement.
    """

    def __init__(
        self,
        box_size: int = DEFAULT_BOX_SIZE,
        threshold_sigma: float = DETECTION_THRESHOLD_SIGMA,
        max_sources: Optional[int] = MAX_SOURCES,
        refine: bool = True,
    ):
        self.box_size = int(box_size)
        self.threshold_sigma = threshold_sigma
        self.max_sources = max_sources
        self.background_estimator = BackgroundEstimator(box_size=self.box_size)
        self.centroid_refiner = CentroidRefiner() if refine else None

    def detect_stars(self, image: np.ndarray) -> PointSet:
        """
        Detects stars in a 2D image.

        Args:
            image (np.ndarray): Image in detector units.

        Returns:
            PointSet: Sources ranked by descending peak value; ties are broken by
                      y then x so the result is reproducible. Empty if nothing
                      clears the threshold.
        """
        estimate = self.background_estimator.estimate(image)
        subtracted = estimate.subtract_from(image)
        subtracted = np.where(np.isfinite(subtracted), subtracted, 0.0)
        threshold = self.threshold_sigma * estimate.rms
        # Noise-free frames: keep floating-point residue of the subtraction out of the detections
        finite = image[np.isfinite(image)]
        level = float(np.max(np.abs(finite))) if finite.size else 0.0
        threshold = np.maximum(threshold, NOISE_FLOOR * max(level, 1.0))
        backend_logger.debug(f"Peak threshold: {self.threshold_sigma} sigma, median {np.median(threshold):.4g}")

        # Footprint no larger than the frame
        footprint = min(self.box_size, *image.shape)
        border = min(BORDER_WIDTH, (min(image.shape) - 1) // 2)

        with warnings.catch_warnings():
            # find_peaks warns (and returns None) when nothing is found
            warnings.simplefilter('ignore', AstropyUserWarning)
            warnings.simplefilter('ignore', NoDetectionsWarning)
            peaks = find_peaks(subtracted, threshold, box_size=footprint, border_width=border)

        if peaks is None or len(peaks) == 0:
            backend_logger.warning("No stars detected above threshold.")
            return PointSet(xy=np.empty((0, 2)), flux=np.empty(0))

        x_peak = np.asarray(peaks['x_peak'], dtype=np.float64)
        y_peak = np.asarray(peaks['y_peak'], dtype=np.float64)
        peak_value = np.asarray(peaks['peak_value'], dtype=np.float64)

        # Sort by brightness (descending); lexsort uses the last key as primary
        order = np.lexsort((x_peak, y_peak, -peak_value))
        if self.max_sources is not None and len(order) > self.max_sources:
            backend_logger.debug(f"Capping detections to {self.max_sources} brightest of {len(order)}.")
            order = order[:self.max_sources]

        xy = np.column_stack([x_peak[order], y_peak[order]])
        if self.centroid_refiner is not None:
            xy = self.centroid_refiner.refine_centroids(subtracted, xy)

        backend_logger.info(f"Detected {len(xy)} stars.")
        return PointSet(xy=xy, flux=peak_value[order])
