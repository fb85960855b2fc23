from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from functools import partial
from typing import List, Optional, Sequence, Tuple

import astroalign
import cv2
import numpy as np
from sklearn.neighbors import KDTree

from photalign.logger.backend_logger import backend_logger
from photalign.config import PipelineConfig, MIN_MATCHES, FILL_VALUE
from photalign.exceptions import (
    InsufficientFeaturesError,
    ReferenceFrameError,
    RegistrationTimeoutError,
    FrameError,
)
from photalign.image_record import ImageRecord
from photalign.parallel import map_frames
from photalign.alignment.star_detector import StarDetector, PointSet
from photalign.alignment.matcher import StarMatcher
from photalign.alignment.transform_solver import Transform, TransformSolver

INTERPOLATION_FLAGS = {
    'bilinear': cv2.INTER_LINEAR,
    'nearest': cv2.INTER_NEAREST,
}


@dataclass(frozen=True, eq=False)
class Registration:
    """
    Outcome of registering one frame onto the reference grid.

    Attributes:
        image (ImageRecord): Resampled frame, reference shape, original header and timestamp.
        transform (Transform): Map from the frame's pixel coordinates to the reference grid.
        matches (np.ndarray): (K, 2) indices (reference source, frame source) used in the final fit.
        rms_residual (float): RMS distance in pixels of the matched sources after the fit.
    """
    image: ImageRecord
    transform: Transform
    matches: np.ndarray
    rms_residual: float = 0.0


@dataclass
class AlignmentResult:
    """Aligned frames in input order; None (and a FrameError) where a frame could not be registered."""
    frames: List[Optional[ImageRecord]] = field(default_factory=list)
    registrations: List[Optional[Registration]] = field(default_factory=list)
    errors: List[FrameError] = field(default_factory=list)
    reference_points: Optional[PointSet] = None


def _search_correspondences(reference_points: PointSet, target_points: PointSet,
                            config: PipelineConfig) -> Tuple[np.ndarray, np.ndarray]:
    """
    Runs astroalign's asterism search on the two point sets.

    Returns:
        Tuple[np.ndarray, np.ndarray]: Matched (target_xy, reference_xy) coordinates.

    Raises:
        InsufficientFeaturesError: astroalign found fewer than 3 control points.
        RegistrationTimeoutError: the triangle list ran out without an acceptable
                                  model, or no model was returned within `time_limit`.
    """
    search = partial(astroalign.find_transform, target_points.xy, reference_points.xy,
                     max_control_points=config.max_sources)
    try:
        if config.time_limit is None:
            _, (target_xy, reference_xy) = search()
        else:
            executor = ThreadPoolExecutor(max_workers=1)
            future = executor.submit(search)
            try:
                _, (target_xy, reference_xy) = future.result(timeout=config.time_limit)
            except FutureTimeoutError as e:
                raise RegistrationTimeoutError(f"No model returned within {config.time_limit}s") from e
            finally:
                # The search cannot be interrupted; a late result is discarded
                executor.shutdown(wait=False)
    except astroalign.MaxIterError as e:
        raise RegistrationTimeoutError(f"Triangle search exhausted without an acceptable model: {e}") from e
    except ValueError as e:
        raise InsufficientFeaturesError(str(e)) from e
    return np.asarray(target_xy, dtype=np.float64), np.asarray(reference_xy, dtype=np.float64)


def find_transform(
    reference_points: PointSet,
    target_points: PointSet,
    config: PipelineConfig,
) -> Tuple[Transform, np.ndarray]:
    """
    Finds the target -> reference transform from two unordered source lists.

    astroalign pairs the sources through matching triangle asterisms. Those
    pairs are refitted by least squares with the configured transform type,
    then every source the fit brings within the pixel tolerance of a reference
    source joins a final refit.

    Args:
        reference_points (PointSet): Sources on the reference frame.
        target_points (PointSet): Sources on the frame being registered.
        config (PipelineConfig): Supplies transform_type, max_sources and time_limit.

    Returns:
        Tuple[Transform, np.ndarray]: The fitted transform and the (K, 2) index pairs
                                      (reference, target) it was fitted on.

    Raises:
        InsufficientFeaturesError: fewer than 3 reliable correspondences.
        DegenerateGeometryError: the correspondences are collinear or ill-conditioned.
        RegistrationTimeoutError: the search gave up or ran past the time limit.
    """
    n_ref, n_target = len(reference_points), len(target_points)
    if min(n_ref, n_target) < MIN_MATCHES:
        raise InsufficientFeaturesError(f"{n_target} sources on frame, {n_ref} on reference; at least {MIN_MATCHES} needed")

    matcher = StarMatcher()
    solver = TransformSolver(config.transform_type)
    ref_tree = KDTree(reference_points.xy)

    target_xy, reference_xy = _search_correspondences(reference_points, target_points, config)
    pairs = np.column_stack([matcher.locate(reference_points.xy, reference_xy, kdtree=ref_tree),
                             matcher.locate(target_points.xy, target_xy)])
    pairs = np.unique(pairs, axis=0)
    if len(pairs) < MIN_MATCHES:
        raise InsufficientFeaturesError(f"Asterism search paired only {len(pairs)} sources; {MIN_MATCHES} needed")
    backend_logger.debug(f"Asterism search paired {len(pairs)} of {n_target} frame sources.")

    transform = solver.estimate_transform(reference_points.xy[pairs[:, 0]], target_points.xy[pairs[:, 1]])

    # One-to-one refit on every source the least-squares model explains
    matches = matcher.match_points(reference_points.xy, transform.apply(target_points.xy), kdtree=ref_tree)
    if len(matches) >= MIN_MATCHES:
        transform = solver.estimate_transform(reference_points.xy[matches[:, 0]], target_points.xy[matches[:, 1]])
    else:
        matches = pairs

    backend_logger.debug(f"Accepted {transform} with {len(matches)} correspondences.")
    return transform, matches


def resample(record: ImageRecord, transform: Transform, shape: Tuple[int, int], interpolation: str = 'bilinear') -> ImageRecord:
    """
    Warps a frame onto the reference grid.

    Output pixels with no source pixel behind them are filled with NaN, so
    photometry can tell them apart from real sky.

    Args:
        record (ImageRecord): Frame to warp.
        transform (Transform): Frame -> reference map.
        shape (Tuple[int, int]): (height, width) of the reference grid.
        interpolation (str): 'bilinear' or 'nearest'.

    Returns:
        ImageRecord: New record on the reference grid with the frame's header and timestamp.
    """
    height, width = shape
    warped = cv2.warpAffine(
        record.data.astype(np.float32),
        transform.to_affine(),
        (width, height),
        flags=INTERPOLATION_FLAGS[interpolation],
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=FILL_VALUE,
    )
    return record.with_data(warped.astype(np.float64))


def register_frame(
    reference_points: PointSet,
    reference_shape: Tuple[int, int],
    config: PipelineConfig,
    target: ImageRecord,
) -> Registration:
    """
    Detects sources on `target`, matches them against the reference sources and
    resamples the frame onto the reference grid.

    Module-level so it can be shipped to a process pool.
    """
    detector = StarDetector(box_size=config.box_size, threshold_sigma=config.threshold_sigma,
                            max_sources=config.max_sources)
    target_points = detector.detect_stars(target.data)
    transform, matches = find_transform(reference_points, target_points, config)

    residuals = TransformSolver.residuals(transform, reference_points.xy[matches[:, 0]], target_points.xy[matches[:, 1]])
    rms = float(np.sqrt(np.mean(residuals ** 2)))

    aligned = resample(target, transform, reference_shape, config.interpolation)
    backend_logger.info(f"Registered frame at {target.timestamp.isot}: {transform}, "
                        f"{len(matches)} matches, rms {rms:.3f} px")
    return Registration(image=aligned, transform=transform, matches=matches, rms_residual=rms)


class StarAligner:
    """
    Aligns a time-ordered sequence of frames onto the first one.

    1. Source extraction on the reference frame (once).
    2. Per frame: source extraction, triangle matching, transform fit.
    3. Resampling onto the reference grid, NaN where the frame has no data.
    """

    def __init__(self, config: Optional[PipelineConfig] = None):
        self.config = config if config is not None else PipelineConfig()
        self.star_detector = StarDetector(box_size=self.config.box_size, threshold_sigma=self.config.threshold_sigma,
                                          max_sources=self.config.max_sources)

    def extract_reference(self, reference: ImageRecord) -> PointSet:
        """
        Raises:
            ReferenceFrameError: the reference frame has fewer than 3 sources.
        """
        points = self.star_detector.detect_stars(reference.data)
        if len(points) < MIN_MATCHES:
            raise ReferenceFrameError(f"Reference frame has {len(points)} sources; at least {MIN_MATCHES} needed")
        return points

    def register(self, reference: ImageRecord, target: ImageRecord) -> Registration:
        """Registers a single frame against a reference frame."""
        return register_frame(self.extract_reference(reference), reference.shape, self.config, target)

    def align_sequence(self, frames: Sequence[ImageRecord]) -> AlignmentResult:
        """
        Aligns every frame to frames[0].

        Args:
            frames (Sequence[ImageRecord]): Frames in observation order.

        Returns:
            AlignmentResult: frames[0] is passed through unchanged; the others are
                             resampled onto its grid. Output order matches input order.

        Raises:
            ReferenceFrameError: always, regardless of failure policy.
            FrameError: on the first failed frame under the fail-fast policy.
        """
        frames = list(frames)
        if not frames:
            backend_logger.warning("No frames provided for alignment.")
            return AlignmentResult()

        reference = frames[0]
        backend_logger.info(f"Aligning {len(frames)} frames to reference at {reference.timestamp.isot}.")
        reference_points = self.extract_reference(reference)

        identity = Registration(image=reference, transform=Transform.identity(),
                                matches=np.column_stack([np.arange(len(reference_points))] * 2))
        task = partial(register_frame, reference_points, reference.shape, self.config)
        registrations, errors = map_frames(
            task,
            frames[1:],
            self.config,
            indices=range(1, len(frames)),
            timestamps=[frame.timestamp for frame in frames[1:]],
        )
        registrations = [identity] + registrations

        aligned = [registration.image if registration is not None else None for registration in registrations]
        backend_logger.info(f"Alignment finished: {len(frames) - len(errors)}/{len(frames)} frames registered.")
        return AlignmentResult(frames=aligned, registrations=registrations, errors=errors,
                               reference_points=reference_points)
