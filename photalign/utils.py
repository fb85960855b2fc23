import numpy as np


class ImageUtils:
    """
    A collection of static utility methods for common image processing tasks.
    These functions operate on NumPy arrays representing image data.
    """

    @staticmethod
    def convert_to_float(img: np.ndarray) -> np.ndarray:
        """
        Converts an image array to native-endian float64 without rescaling.
        Photometry needs the detector counts as they are, so unlike display
        code no normalisation to a 0-1 range is applied.

        Args:
            img (np.ndarray): The input image array, any numeric dtype or byte order.

        Returns:
            np.ndarray: The image as a float64 array.
        """
        return np.asarray(img, dtype=np.float64)

    @staticmethod
    def to_grayscale(img: np.ndarray) -> np.ndarray:
        """
        Reduces a colour image (H, W, C) to a single channel by averaging channels.
        Two-dimensional input is returned unchanged.

        Args:
            img (np.ndarray): Image of shape (H, W) or (H, W, C).

        Returns:
            np.ndarray: Image of shape (H, W).
        """
        if img.ndim == 3:
            return np.mean(img, axis=2)
        if img.ndim != 2:
            raise ValueError(f"Expected a 2D or 3D image array, got shape {img.shape}")
        return img

    @staticmethod
    def finite_mask(img: np.ndarray) -> np.ndarray:
        """Boolean mask that is True where pixels are NaN or infinite (i.e. unusable)."""
        return ~np.isfinite(img)
