from dataclasses import dataclass

import numpy as np

from photalign.logger.backend_logger import backend_logger
from photalign.config import MIN_MATCHES, MAX_CONDITION_NUMBER, TRANSFORM_TYPES
from photalign.exceptions import InsufficientFeaturesError, DegenerateGeometryError

# Smallest/largest singular value ratio of the centred points below which they count as collinear
COLLINEARITY_RATIO = 1e-3


@dataclass(frozen=True, eq=False)
class Transform:
    """
    A 2D similarity or affine map stored as a 3x3 homogeneous matrix.

    The matrix maps target pixel coordinates (x, y) onto the reference grid.
    """
    matrix: np.ndarray

    def __post_init__(self):
        matrix = np.array(self.matrix, dtype=np.float64)
        if matrix.shape == (2, 3):
            matrix = np.vstack([matrix, [0.0, 0.0, 1.0]])
        if matrix.shape != (3, 3):
            raise ValueError(f"Transform matrix must be 2x3 or 3x3, got {matrix.shape}")
        matrix.setflags(write=False)
        object.__setattr__(self, 'matrix', matrix)

    @classmethod
    def identity(cls) -> "Transform":
        return cls(np.eye(3))

    def apply(self, xy: np.ndarray) -> np.ndarray:
        """Maps (N, 2) points through the transform."""
        xy = np.asarray(xy, dtype=np.float64).reshape(-1, 2)
        return xy @ self.matrix[:2, :2].T + self.matrix[:2, 2]

    def inverse(self) -> "Transform":
        if abs(np.linalg.det(self.matrix[:2, :2])) < 1e-12:
            raise DegenerateGeometryError("Transform is not invertible")
        return Transform(np.linalg.inv(self.matrix))

    def to_affine(self) -> np.ndarray:
        """Top two rows, in the layout cv2.warpAffine expects."""
        return self.matrix[:2].copy()

    @property
    def translation(self) -> np.ndarray:
        return self.matrix[:2, 2].copy()

    @property
    def scale(self) -> float:
        return float(np.sqrt(abs(np.linalg.det(self.matrix[:2, :2]))))

    @property
    def rotation_deg(self) -> float:
        return float(np.degrees(np.arctan2(self.matrix[1, 0], self.matrix[0, 0])))

    def is_identity(self, atol: float = 1e-6) -> bool:
        return bool(np.allclose(self.matrix, np.eye(3), atol=atol))

    def __repr__(self) -> str:
        tx, ty = self.translation
        return f"Transform(rotation={self.rotation_deg:.3f} deg, scale={self.scale:.5f}, shift=({tx:.2f}, {ty:.2f}))"


class TransformSolver:
    """
    Least-squares estimation of the map from target to reference coordinates.

    'similarity' solves for rotation, uniform scale and translation (4 unknowns);
    'affine' adds shear and anisotropic scale (6 unknowns). Both refuse collinear
    or ill-conditioned point sets instead of returning an unstable solution.
    """

    def __init__(self, transform_type: str = 'similarity'):
        if transform_type not in TRANSFORM_TYPES:
            raise ValueError(f"Unsupported transform type: {transform_type}. Supported: {', '.join(TRANSFORM_TYPES)}")
        self.transform_type = transform_type

    @staticmethod
    def _normalization(points: np.ndarray) -> np.ndarray:
        """
        Similarity that moves the points' centroid to the origin and their mean
        distance to sqrt(2), so the condition number reflects geometry only.
        """
        centroid = points.mean(axis=0)
        mean_dist = np.mean(np.linalg.norm(points - centroid, axis=1))
        s = np.sqrt(2) / mean_dist if mean_dist > 0 else 1.0
        return np.array([[s, 0, -s * centroid[0]],
                         [0, s, -s * centroid[1]],
                         [0, 0, 1]])

    def _check_geometry(self, target_points: np.ndarray):
        centred = target_points - target_points.mean(axis=0)
        singular_values = np.linalg.svd(centred, compute_uv=False)
        if singular_values[0] == 0 or singular_values[-1] / singular_values[0] < COLLINEARITY_RATIO:
            raise DegenerateGeometryError(f"{len(target_points)} correspondences are collinear")

    def estimate_transform(self, ref_points: np.ndarray, target_points: np.ndarray) -> Transform:
        """
        Fits the transform that maps `target_points` onto `ref_points`.

        Args:
            ref_points (np.ndarray): (N, 2) matched coordinates on the reference frame.
            target_points (np.ndarray): (N, 2) matched coordinates on the target frame.

        Returns:
            Transform: target -> reference map.

        Raises:
            InsufficientFeaturesError: fewer than 3 correspondences.
            DegenerateGeometryError: collinear points, ill-conditioned or singular solution.
        """
        ref_points = np.asarray(ref_points, dtype=np.float64).reshape(-1, 2)
        target_points = np.asarray(target_points, dtype=np.float64).reshape(-1, 2)
        if len(ref_points) != len(target_points):
            raise ValueError(f"Point sets differ in length: {len(ref_points)} vs {len(target_points)}")
        if len(ref_points) < MIN_MATCHES:
            raise InsufficientFeaturesError(f"{len(ref_points)} correspondences, at least {MIN_MATCHES} required")

        self._check_geometry(target_points)

        # Solve in normalised coordinates, then undo the normalisation
        t_norm = self._normalization(target_points)
        r_norm = self._normalization(ref_points)
        tgt = Transform(t_norm).apply(target_points)
        ref = Transform(r_norm).apply(ref_points)

        n = len(tgt)
        if self.transform_type == 'similarity':
            # x' = a*x - b*y + tx ; y' = b*x + a*y + ty
            design = np.zeros((2 * n, 4))
            design[0::2] = np.column_stack([tgt[:, 0], -tgt[:, 1], np.ones(n), np.zeros(n)])
            design[1::2] = np.column_stack([tgt[:, 1], tgt[:, 0], np.zeros(n), np.ones(n)])
            rhs = ref.reshape(-1)
        else:
            design = np.column_stack([tgt, np.ones(n)])
            rhs = ref

        condition = np.linalg.cond(design)
        if not np.isfinite(condition) or condition > MAX_CONDITION_NUMBER:
            raise DegenerateGeometryError(f"Ill-conditioned {self.transform_type} fit (condition number {condition:.3g})")

        solution, *_ = np.linalg.lstsq(design, rhs, rcond=None)
        if self.transform_type == 'similarity':
            a, b, tx, ty = solution
            normalized = np.array([[a, -b, tx], [b, a, ty], [0, 0, 1]])
        else:
            normalized = np.vstack([solution.T, [0, 0, 1]])

        matrix = np.linalg.inv(r_norm) @ normalized @ t_norm
        if abs(np.linalg.det(matrix[:2, :2])) < 1e-12:
            raise DegenerateGeometryError(f"Estimated {self.transform_type} transform is singular")

        transform = Transform(matrix)
        backend_logger.debug(f"Estimated {self.transform_type} transform from {n} correspondences: {transform}")
        return transform

    @staticmethod
    def residuals(transform: Transform, ref_points: np.ndarray, target_points: np.ndarray) -> np.ndarray:
        """Per-correspondence distance (pixels) between projected target and reference points."""
        return np.linalg.norm(transform.apply(target_points) - np.asarray(ref_points, dtype=np.float64), axis=1)
