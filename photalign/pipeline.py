from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

from astropy.table import Table

from photalign.file_loader import FileLoader
from photalign.logger.backend_logger import backend_logger
from photalign.config import PipelineConfig
from photalign.exceptions import FrameError
from photalign.image_record import ImageRecord
from photalign.alignment.star_aligner import StarAligner, Registration
from photalign.photometry.apertures import FluxSample, measure_sequence
from photalign.photometry.light_curve import flux_table, divided_light_curve
from photalign.validation.input_validator import InputValidator

FrameInput = Union[ImageRecord, str, Path]


@dataclass
class PipelineResult:
    """
    Everything produced by one pipeline run, indexed like the input sequence.

    Attributes:
        frames (List[Optional[ImageRecord]]): Aligned frames; None where registration failed.
        registrations (List[Optional[Registration]]): Transform and matches per frame.
        samples (List[FluxSample]): One sample per input frame. Failed frames carry NaN
                                    fluxes and their own timestamp.
        errors (List[FrameError]): Per-frame failures, sorted by frame index.
        warnings (List[Dict]): Sequence consistency warnings.
        light_curve (Optional[Table]): Divided light curve when target and comparison are configured.
        config (PipelineConfig): Settings used for the run.
    """
    frames: List[Optional[ImageRecord]] = field(default_factory=list)
    registrations: List[Optional[Registration]] = field(default_factory=list)
    samples: List[FluxSample] = field(default_factory=list)
    errors: List[FrameError] = field(default_factory=list)
    warnings: List[Dict] = field(default_factory=list)
    light_curve: Optional[Table] = None
    config: PipelineConfig = field(default_factory=PipelineConfig)

    def flux_table(self) -> Table:
        return flux_table(self.samples, self.config.apertures)

    def save(self, output_dir: Path) -> List[Path]:
        """
        Writes the flux table (and the light curve, if any) as ECSV files.

        Returns:
            List[Path]: Paths written.
        """
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        written = []

        fluxes_path = output_dir / "fluxes.ecsv"
        self.flux_table().write(fluxes_path, format='ascii.ecsv', overwrite=True)
        written.append(fluxes_path)

        if self.light_curve is not None:
            curve_path = output_dir / "light_curve.ecsv"
            self.light_curve.write(curve_path, format='ascii.ecsv', overwrite=True)
            written.append(curve_path)

        backend_logger.info(f"Saved results to {output_dir}")
        return written


class LightCurvePipeline:
    """
    Core engine for time-series photometry.
    Orchestrates file loading, validation, alignment, aperture photometry and the light curve.
    """

    def __init__(self, config: Optional[PipelineConfig] = None):
        self.config = config if config is not None else PipelineConfig()
        self.file_loader = FileLoader()
        self.star_aligner = StarAligner(self.config)
        self.input_validator = InputValidator()

    def load_frames(self, inputs: Union[FrameInput, Sequence[FrameInput]]) -> List[ImageRecord]:
        """
        Resolves the run's input into image records.

        A single directory is loaded as a collection (sorted by timestamp);
        a sequence of paths and/or records keeps the order given.
        """
        if isinstance(inputs, (str, Path)):
            path = Path(inputs)
            if path.is_dir():
                return self.file_loader.load_collection(path)
            inputs = [path]
        if isinstance(inputs, ImageRecord):
            inputs = [inputs]

        frames = []
        for item in inputs:
            if isinstance(item, ImageRecord):
                frames.append(item)
            else:
                frame = self.file_loader.load_image(Path(item))
                frames.append(frame)
                backend_logger.debug(f"Loaded frame: {Path(item).name}, shape: {frame.shape}")
        return frames

    def run(self, inputs: Union[FrameInput, Sequence[FrameInput]]) -> PipelineResult:
        """
        Runs the full pipeline.

        Args:
            inputs: A directory, a list of image paths, or a list of ImageRecords.

        Returns:
            PipelineResult: Aligned frames, flux samples, errors, warnings and light curve.

        Raises:
            ValueError: no frames.
            NotFoundError, FormatError: a file could not be loaded.
            ReferenceFrameError: the first frame has too few sources.
            FrameError: a frame failed under the fail-fast policy.
        """
        # --- 1. Load Images ---
        frames = self.load_frames(inputs)
        if not frames:
            backend_logger.error("No frames provided to the pipeline.")
            raise ValueError("No frames provided.")
        backend_logger.info(f"Loaded {len(frames)} frames.")

        # --- 2. Validate ---
        warnings = self.input_validator.validate_sequence(frames)

        # --- 3. Align ---
        alignment = self.star_aligner.align_sequence(frames)

        # --- 4. Photometry ---
        samples, photometry_errors = measure_sequence(
            alignment.frames,
            self.config.apertures,
            self.config,
            timestamps=[frame.timestamp for frame in frames],
        )
        errors = sorted(alignment.errors + photometry_errors, key=lambda error: error.frame_index)

        # --- 5. Light curve ---
        light_curve = None
        if self.config.target is not None and self.config.comparison is not None:
            light_curve = divided_light_curve(samples, self.config.apertures, self.config.target, self.config.comparison)

        backend_logger.info(f"Pipeline finished: {len(frames) - len(errors)}/{len(frames)} frames measured, "
                            f"{len(errors)} errors, {len(warnings)} warnings.")
        return PipelineResult(
            frames=alignment.frames,
            registrations=alignment.registrations,
            samples=samples,
            errors=errors,
            warnings=warnings,
            light_curve=light_curve,
            config=self.config,
        )
