import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

# Supported file formats for input
FITS_FORMATS = {'.fits', '.fit', '.fts'}
STANDARD_IMAGE_FORMATS = {'.jpg', '.jpeg', '.png', '.tiff', '.tif'}
SUPPORTED_INPUT_FORMATS = FITS_FORMATS | STANDARD_IMAGE_FORMATS

# Header keys. The observation timestamp must be present on every frame.
DATE_OBS_KEY = "DATE-OBS"
EXPTIME_KEYS = ["EXPTIME", "EXPOSURE"]
INSTRUMENT_KEYS = ["INSTRUME", "CAMERA"]

# Relative tolerance when comparing exposure times between frames (1%)
EXPTIME_RTOL = 1e-2

# Source extraction
DEFAULT_BOX_SIZE = 9               # Background tile side and peak-finding footprint, in pixels
DETECTION_THRESHOLD_SIGMA = 3.0    # Peaks must exceed this many local noise sigmas
BACKGROUND_CLIP_SIGMA = 3.0        # Sigma used when clipping each background tile
MAX_SOURCES = 50                   # Brightest N candidates kept per frame
BORDER_WIDTH = 2                   # Peaks closer than this to the frame edge are ignored

# Centroid refinement
STAR_STAMP_SIZE = 7                # Side of the square stamp fitted around each peak. Must be odd.

# Correspondence search
PIXEL_TOLERANCE = 2.0              # Max residual (pixels) for a correspondence to count as inlier
MIN_MATCHES = 3                    # Non-collinear correspondences needed for a fit
MAX_CONDITION_NUMBER = 1e6         # Design matrices worse than this are rejected as degenerate

# Resampling
INTERPOLATION_MODES = ('bilinear', 'nearest')
TRANSFORM_TYPES = ('similarity', 'affine')
FILL_VALUE = float('nan')          # Value written where the resampled frame has no source pixel

# Sequence processing
FAILURE_POLICIES = ('fail_fast', 'best_effort')
EXECUTOR_KINDS = ('thread', 'process')
MAX_WORKERS = os.cpu_count() or 4


@dataclass(frozen=True)
class PipelineConfig:
    """
    Every tunable of the alignment + photometry pipeline in one place.

    The object is passed explicitly into each entry point; nothing in the
    package reads module-level mutable state at run time.

    Attributes:
        box_size (int): Background tile side and peak footprint in pixels.
        threshold_sigma (float): Detection threshold in local-noise sigmas.
        max_sources (int): Number of brightest candidates kept per frame; also the
                           control-point cap of the correspondence search.
        apertures (tuple): `photalign.photometry.Aperture` instances, fixed for all frames.
        target (str): Name of the target aperture used for the divided light curve.
        comparison (str): Name of the comparison aperture.
        interpolation (str): 'bilinear' or 'nearest'.
        transform_type (str): 'similarity' (rotation, scale, shift) or 'affine'.
        failure_policy (str): 'fail_fast' aborts on the first failed frame,
                              'best_effort' collects per-frame errors.
        max_workers (int): Worker pool size. 1 processes frames inline.
        executor (str): 'thread' or 'process' worker pool.
        time_limit (float): Optional wall-clock budget in seconds for the correspondence
                            search of one frame.
    """
    box_size: int = DEFAULT_BOX_SIZE
    threshold_sigma: float = DETECTION_THRESHOLD_SIGMA
    max_sources: int = MAX_SOURCES
    apertures: Tuple = field(default_factory=tuple)
    target: Optional[str] = None
    comparison: Optional[str] = None
    interpolation: str = 'bilinear'
    transform_type: str = 'similarity'
    failure_policy: str = 'best_effort'
    max_workers: int = 1
    executor: str = 'thread'
    time_limit: Optional[float] = None

    def __post_init__(self):
        if int(self.box_size) != self.box_size or self.box_size < 3:
            raise ValueError(f"box_size must be an integer >= 3, got {self.box_size}")
        if not self.threshold_sigma > 0:
            raise ValueError(f"threshold_sigma must be positive, got {self.threshold_sigma}")
        if self.max_sources < MIN_MATCHES:
            raise ValueError(f"max_sources must be at least {MIN_MATCHES}, got {self.max_sources}")
        if self.interpolation not in INTERPOLATION_MODES:
            raise ValueError(f"Unsupported interpolation: {self.interpolation}. Supported: {', '.join(INTERPOLATION_MODES)}")
        if self.transform_type not in TRANSFORM_TYPES:
            raise ValueError(f"Unsupported transform type: {self.transform_type}. Supported: {', '.join(TRANSFORM_TYPES)}")
        if self.failure_policy not in FAILURE_POLICIES:
            raise ValueError(f"Unsupported failure policy: {self.failure_policy}. Supported: {', '.join(FAILURE_POLICIES)}")
        if self.executor not in EXECUTOR_KINDS:
            raise ValueError(f"Unsupported executor: {self.executor}. Supported: {', '.join(EXECUTOR_KINDS)}")
        if self.max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {self.max_workers}")
        if self.time_limit is not None and not self.time_limit > 0:
            raise ValueError(f"time_limit must be positive when set, got {self.time_limit}")

        # Frozen dataclass: normalise the aperture list through object.__setattr__
        object.__setattr__(self, 'apertures', tuple(self.apertures))
        names = [ap.name for ap in self.apertures]
        if len(set(names)) != len(names):
            raise ValueError(f"Aperture names must be unique, got {names}")
        for role, name in (('target', self.target), ('comparison', self.comparison)):
            if name is not None and name not in names:
                raise ValueError(f"{role} aperture '{name}' is not among the configured apertures {names}")

    @property
    def fail_fast(self) -> bool:
        return self.failure_policy == 'fail_fast'
