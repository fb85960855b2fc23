import numpy as np
from scipy.optimize import curve_fit, OptimizeWarning
from typing import Optional, Tuple
import warnings

from photalign.logger.backend_logger import backend_logger
from photalign.config import STAR_STAMP_SIZE

# A fit whose centre lands further than this from the peak pixel is rejected
MAX_CENTROID_SHIFT = 1.5


class CentroidRefiner:
    """
    Refines integer peak positions to subpixel accuracy by fitting a 2D
    Gaussian to a small stamp around each peak. A failed fit falls back to
    the intensity-weighted centroid of the stamp, and that to the peak pixel.
    """

    def __init__(self, stamp_size: int = STAR_STAMP_SIZE):
        if stamp_size % 2 == 0:
            stamp_size += 1
            backend_logger.warning(f"Stamp size must be odd. Adjusted to {stamp_size}.")
        self.stamp_size = stamp_size

    @staticmethod
    def _gaussian_2d(xy, amplitude, xo, yo, sigma_x, sigma_y, offset):
        """
        Axis-aligned 2D Gaussian evaluated on flattened (x, y) coordinates.
        """
        x, y = xy
        g = offset + amplitude * np.exp(-((x - xo) ** 2 / (2 * sigma_x ** 2) + (y - yo) ** 2 / (2 * sigma_y ** 2)))
        return g.ravel()

    def _fit_single_star(self, stamp: np.ndarray) -> Optional[Tuple[float, float]]:
        """
        Fits one stamp. Returns the centre in stamp coordinates, or None on failure.
        """
        if min(stamp.shape) < 3 or not np.all(np.isfinite(stamp)) or np.ptp(stamp) == 0:
            return None

        y_local, x_local = np.mgrid[0:stamp.shape[0], 0:stamp.shape[1]]
        amplitude_guess = np.max(stamp) - np.min(stamp)
        offset_guess = np.min(stamp)
        yo_guess, xo_guess = np.unravel_index(np.argmax(stamp), stamp.shape)
        sigma_guess = max(stamp.shape[0] / 6.0, 0.5)

        # (amplitude, xo, yo, sigma_x, sigma_y, offset)
        lower_bounds = [0, 0, 0, 0.3, 0.3, -np.inf]
        upper_bounds = [np.inf, stamp.shape[1] - 1, stamp.shape[0] - 1, stamp.shape[1], stamp.shape[0], np.inf]
        p0 = [amplitude_guess, xo_guess, yo_guess, sigma_guess, sigma_guess, offset_guess]

        try:
            with warnings.catch_warnings():
                warnings.simplefilter('ignore', OptimizeWarning)
                popt, _ = curve_fit(self._gaussian_2d, (x_local.ravel(), y_local.ravel()), stamp.ravel(),
                                    p0=p0, bounds=(lower_bounds, upper_bounds), maxfev=2000)
        except (RuntimeError, ValueError):
            # Expected for noisy or blended sources
            return None

        _, xo_fit, yo_fit = popt[:3]
        if np.hypot(xo_fit - xo_guess, yo_fit - yo_guess) > MAX_CENTROID_SHIFT:
            return None
        return float(xo_fit), float(yo_fit)

    @staticmethod
    def _moment_centroid(stamp: np.ndarray) -> Optional[Tuple[float, float]]:
        weights = np.clip(np.where(np.isfinite(stamp), stamp, 0.0), 0.0, None)
        total = weights.sum()
        if total <= 0:
            return None
        y_local, x_local = np.mgrid[0:stamp.shape[0], 0:stamp.shape[1]]
        return float((weights * x_local).sum() / total), float((weights * y_local).sum() / total)

    def refine_centroids(self, image: np.ndarray, peaks: np.ndarray) -> np.ndarray:
        """
        Refines the centroids of detected peaks.

        Args:
            image (np.ndarray): Background-subtracted image the peaks were found on.
            peaks (np.ndarray): (N, 2) integer (x, y) peak positions.

        Returns:
            np.ndarray: (N, 2) refined (x, y) positions in the same order.
        """
        img_height, img_width = image.shape
        half_stamp = self.stamp_size // 2
        refined = np.array(peaks, dtype=np.float64, copy=True)
        n_fallback = 0

        for i, (x_peak, y_peak) in enumerate(refined):
            x_min = max(0, int(x_peak) - half_stamp)
            x_max = min(img_width, int(x_peak) + half_stamp + 1)
            y_min = max(0, int(y_peak) - half_stamp)
            y_max = min(img_height, int(y_peak) + half_stamp + 1)
            stamp = image[y_min:y_max, x_min:x_max]

            centre = self._fit_single_star(stamp)
            if centre is None:
                n_fallback += 1
                centre = self._moment_centroid(stamp)
            if centre is None:
                continue # Keep the peak pixel
            refined[i] = (x_min + centre[0], y_min + centre[1])

        if n_fallback:
            backend_logger.warning(f"Gaussian fit failed for {n_fallback}/{len(refined)} stars; used moment centroids.")
        return refined
