from dataclasses import dataclass

import numpy as np
from astropy.stats import SigmaClip, sigma_clipped_stats
from photutils.background import Background2D, MedianBackground, StdBackgroundRMS

from photalign.logger.backend_logger import backend_logger
from photalign.config import DEFAULT_BOX_SIZE, BACKGROUND_CLIP_SIGMA
from photalign.utils import ImageUtils


@dataclass(frozen=True)
class BackgroundEstimate:
    """Per-pixel background level and noise maps, same shape as the image."""
    background: np.ndarray
    rms: np.ndarray

    def subtract_from(self, image: np.ndarray) -> np.ndarray:
        return image - self.background


class BackgroundEstimator:
    """
    Estimates the sky background and its noise over tiles of side `box_size`,
    using sigma-clipped medians so that stars do not bias the estimate.
    """

    def __init__(self, box_size: int = DEFAULT_BOX_SIZE, clip_sigma: float = BACKGROUND_CLIP_SIGMA):
        self.box_size = int(box_size)
        self.clip_sigma = clip_sigma

    def estimate(self, image: np.ndarray) -> BackgroundEstimate:
        """
        Builds background and rms maps for a 2D image.

        Falls back to a single global sigma-clipped level when the image is
        too small or too masked for tiling.

        Args:
            image (np.ndarray): 2D image in detector units. NaN pixels are ignored.

        Returns:
            BackgroundEstimate: background and rms arrays with the image's shape.
        """
        mask = ImageUtils.finite_mask(image)
        # Tiles larger than the frame are meaningless
        box_size = min(self.box_size, *image.shape)

        try:
            bkg = Background2D(
                image,
                box_size,
                mask=mask,
                filter_size=(3, 3),
                sigma_clip=SigmaClip(sigma=self.clip_sigma),
                bkg_estimator=MedianBackground(),
                bkg_rms_estimator=StdBackgroundRMS(),
                exclude_percentile=50.0,
            )
            background = np.asarray(bkg.background, dtype=np.float64)
            rms = np.asarray(bkg.background_rms, dtype=np.float64)
            backend_logger.debug(f"Tiled background: box={box_size}, median level {bkg.background_median:.4g}, "
                                 f"median rms {bkg.background_rms_median:.4g}")
        except ValueError as e:
            backend_logger.warning(f"Tiled background estimation failed ({e}). Using global sigma-clipped statistics.")
            _, median_bkg, std_bkg = sigma_clipped_stats(image, mask=mask, sigma=self.clip_sigma)
            background = np.full(image.shape, median_bkg, dtype=np.float64)
            rms = np.full(image.shape, std_bkg, dtype=np.float64)

        return BackgroundEstimate(background=background, rms=rms)
