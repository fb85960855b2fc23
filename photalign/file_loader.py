import numpy as np
import cv2
from pathlib import Path
from typing import Dict, Any, List, Union
import exifread # For reading EXIF timestamps from non-FITS images
from astropy.io import fits

from photalign.logger.backend_logger import backend_logger
from photalign.config import SUPPORTED_INPUT_FORMATS, FITS_FORMATS, DATE_OBS_KEY
from photalign.exceptions import NotFoundError, FormatError
from photalign.image_record import ImageRecord
from photalign.utils import ImageUtils

# EXIF tags that can stand in for DATE-OBS, in order of preference
EXIF_TIMESTAMP_TAGS = ['EXIF DateTimeOriginal', 'EXIF DateTimeDigitized', 'Image DateTime']


class FileLoader:
    """
    Loads science frames (FITS or standard images) into ImageRecords,
    keeping the observation header alongside the pixel grid.
    """

    def load_image(self, file_path: Union[str, Path]) -> ImageRecord:
        """
        Loads an image and its header from the given file path.

        Args:
            file_path (Path): The path to the image file.

        Returns:
            ImageRecord: The pixel grid (float64, detector units) and header.

        Raises:
            NotFoundError: If the path does not exist.
            FormatError: If the file format is unsupported or parsing fails.
        """
        file_path = Path(file_path)
        if not file_path.is_file():
            backend_logger.error(f"Image not found: {file_path}")
            raise NotFoundError(f"Image not found: {file_path}")

        file_ext = file_path.suffix.lower()
        if file_ext not in SUPPORTED_INPUT_FORMATS:
            backend_logger.error(f"Unsupported file format: {file_path.name}")
            raise FormatError(f"Unsupported file format: {file_path.name}")

        if file_ext in FITS_FORMATS:
            return self._load_fits_image(file_path)
        return self._load_standard_image(file_path)

    def load_collection(self, directory: Union[str, Path], pattern: str = "*.fit*") -> List[ImageRecord]:
        """
        Loads every matching image in a directory, ordered by observation time.

        Args:
            directory (Path): Folder holding the science frames.
            pattern (str): Glob pattern selecting files inside the folder.

        Returns:
            List[ImageRecord]: Records sorted by DATE-OBS (ties broken by file name).

        Raises:
            NotFoundError: If the directory is missing or no file matches.
        """
        directory = Path(directory)
        if not directory.is_dir():
            raise NotFoundError(f"Image directory not found: {directory}")

        paths = sorted(p for p in directory.glob(pattern) if p.suffix.lower() in SUPPORTED_INPUT_FORMATS)
        if not paths:
            raise NotFoundError(f"No images matching '{pattern}' in {directory}")

        records = [self.load_image(p) for p in paths]
        records.sort(key=lambda r: (r.timestamp.mjd, r.source or ''))
        backend_logger.info(f"Loaded {len(records)} frames from {directory} "
                            f"spanning {records[0].timestamp.isot} to {records[-1].timestamp.isot}.")
        return records

    def _load_fits_image(self, file_path: Path) -> ImageRecord:
        """
        Loads the first HDU holding image data using astropy.io.fits.
        """
        backend_logger.info(f"Loading FITS image: {file_path.name}")
        try:
            with fits.open(file_path) as hdul:
                hdu = next((h for h in hdul if h.data is not None and h.data.ndim >= 2), None)
                if hdu is None:
                    raise FormatError(f"No image data found in {file_path.name}")
                # Copy out of the memory map before the file closes
                data = np.array(hdu.data)
                header = hdu.header.copy()
                if DATE_OBS_KEY not in header and DATE_OBS_KEY in hdul[0].header:
                    header[DATE_OBS_KEY] = hdul[0].header[DATE_OBS_KEY]
        except FormatError:
            raise
        except (OSError, ValueError) as e:
            backend_logger.error(f"Error loading FITS image {file_path.name}: {e}")
            raise FormatError(f"Failed to load FITS image {file_path.name}: {e}") from e

        if data.ndim == 3:
            # Colour cubes are stored channel-first in FITS
            data = np.moveaxis(data, 0, -1)
        elif data.ndim > 3:
            raise FormatError(f"Unsupported {data.ndim}D image data in {file_path.name}")
        data = ImageUtils.to_grayscale(ImageUtils.convert_to_float(data))

        record = ImageRecord(data=data, header=header, source=str(file_path))
        backend_logger.info(f"Successfully loaded FITS image: {file_path.name}, shape {record.shape}")
        return record

    def _load_standard_image(self, file_path: Path) -> ImageRecord:
        """
        Loads a standard image (JPG, PNG, TIFF) using OpenCV. The EXIF
        capture time stands in for DATE-OBS.
        """
        backend_logger.info(f"Loading standard image: {file_path.name}")
        img = cv2.imread(str(file_path), cv2.IMREAD_UNCHANGED | cv2.IMREAD_ANYDEPTH)

        if img is None:
            raise FormatError(f"Could not read image file: {file_path.name}")

        if img.ndim == 3 and img.shape[2] == 4:
            img = img[:, :, :3] # Drop alpha
        # Channel order does not matter once channels are averaged
        data = ImageUtils.to_grayscale(ImageUtils.convert_to_float(img))

        metadata = self.extract_metadata(file_path)
        if DATE_OBS_KEY not in metadata:
            raise FormatError(f"No capture timestamp found in EXIF data of {file_path.name}")

        header = fits.Header()
        for key, value in metadata.items():
            header[key] = value

        backend_logger.info(f"Successfully loaded standard image: {file_path.name}")
        return ImageRecord(data=data, header=header, source=str(file_path))

    def extract_metadata(self, file_path: Path) -> Dict[str, Any]:
        """
        Extracts FITS-style header cards (DATE-OBS, EXPTIME, INSTRUME) from the
        EXIF block of a standard image.

        Args:
            file_path (Path): Path to the image file.

        Returns:
            Dict[str, Any]: Dictionary of extracted cards; empty if no EXIF block.
        """
        metadata = {}
        with open(file_path, 'rb') as f:
            tags = exifread.process_file(f, details=False)

        for tag in EXIF_TIMESTAMP_TAGS:
            if tag in tags:
                # EXIF uses 'YYYY:MM:DD HH:MM:SS'
                date_part, _, time_part = str(tags[tag]).strip().partition(' ')
                metadata[DATE_OBS_KEY] = f"{date_part.replace(':', '-')}T{time_part}"
                break

        if 'EXIF ExposureTime' in tags:
            exposure = tags['EXIF ExposureTime'].values[0]
            metadata['EXPTIME'] = float(exposure.num) / exposure.den
        if 'Image Model' in tags:
            metadata['INSTRUME'] = str(tags['Image Model']).strip()

        if not metadata:
            backend_logger.warning(f"No usable EXIF metadata in {file_path.name}")
        return metadata
