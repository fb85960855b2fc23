"""
Error taxonomy for the alignment and photometry pipeline.

Loading errors propagate unchanged to the caller. Per-frame registration
errors are wrapped in FrameError by the sequence orchestrator so that the
offending frame can be identified. OutOfBoundsWarning is never raised: it is
recorded on the FluxSample it belongs to.
"""
from typing import Any, Optional


class PhotAlignError(Exception):
    """Base class for every error raised by photalign."""


class NotFoundError(PhotAlignError, FileNotFoundError):
    """The image path (or collection directory) does not exist or holds no images."""


class FormatError(PhotAlignError, ValueError):
    """The file could not be parsed as a supported image container, or its header is unusable."""


class InsufficientFeaturesError(PhotAlignError):
    """Fewer than three reliable point correspondences were found."""


class ReferenceFrameError(InsufficientFeaturesError):
    """The reference frame itself has too few sources to anchor a sequence."""


class DegenerateGeometryError(PhotAlignError):
    """Correspondences exist but are collinear or the fit is ill-conditioned."""


class RegistrationTimeoutError(PhotAlignError, TimeoutError):
    """The correspondence search exceeded its iteration or time budget."""


class FrameError(PhotAlignError):
    """
    A per-frame failure tagged with the frame's position in the sequence.

    Attributes:
        frame_index (int): Index of the frame in the input sequence.
        timestamp (Any): Observation timestamp of the frame, if known.
        cause (Exception): The underlying error.
    """

    def __init__(self, frame_index: int, cause: Exception, timestamp: Optional[Any] = None):
        self.frame_index = frame_index
        self.timestamp = timestamp
        self.cause = cause
        super().__init__(f"Frame {frame_index} ({timestamp}): {type(cause).__name__}: {cause}")

    def __reduce__(self):
        return type(self), (self.frame_index, self.cause, self.timestamp)


class OutOfBoundsWarning(UserWarning):
    """An aperture extends past the image grid; only in-bounds pixels were summed."""

    def __init__(self, aperture_name: str, frame_index: Optional[int] = None, coverage: float = 0.0):
        self.aperture_name = aperture_name
        self.frame_index = frame_index
        self.coverage = coverage
        super().__init__(
            f"Aperture '{aperture_name}' exits the image grid on frame {frame_index} "
            f"({coverage:.1%} of its area in bounds)"
        )

    def __reduce__(self):
        return type(self), (self.aperture_name, self.frame_index, self.coverage)
