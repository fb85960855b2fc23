"""
photalign: star-field registration and aperture photometry for time-series imaging.
"""
__version__ = "0.1.0"

from .config import PipelineConfig
from .exceptions import (
    PhotAlignError,
    NotFoundError,
    FormatError,
    InsufficientFeaturesError,
    ReferenceFrameError,
    DegenerateGeometryError,
    RegistrationTimeoutError,
    FrameError,
    OutOfBoundsWarning,
)
from .image_record import ImageRecord
from .file_loader import FileLoader
from .pipeline import LightCurvePipeline, PipelineResult
