import numpy as np
from sklearn.neighbors import KDTree

from photalign.config import PIXEL_TOLERANCE


class StarMatcher:
    """
    Pairs individual stars between a reference and a target frame with a KD-Tree,
    once a transform has projected the target sources onto the reference grid.
    """

    def __init__(self, pixel_tolerance: float = PIXEL_TOLERANCE):
        self.pixel_tolerance = pixel_tolerance

    def locate(self, points: np.ndarray, coordinates: np.ndarray, kdtree: KDTree = None) -> np.ndarray:
        """
        Index into `points` of the point nearest to each of `coordinates`.

        Used to turn coordinates handed back by the correspondence search into
        indices of the detected point set.
        """
        if len(coordinates) == 0:
            return np.empty(0, dtype=int)
        if kdtree is None:
            kdtree = KDTree(points)
        _, indices = kdtree.query(np.asarray(coordinates, dtype=np.float64).reshape(-1, 2), k=1)
        return indices[:, 0].astype(int)

    def match_points(self, ref_points: np.ndarray, projected_points: np.ndarray, kdtree: KDTree = None) -> np.ndarray:
        """
        One-to-one nearest-neighbour matching of projected target points onto reference points.

        Args:
            ref_points (np.ndarray): (N, 2) reference coordinates.
            projected_points (np.ndarray): (M, 2) target coordinates already mapped
                                           into the reference frame.
            kdtree (KDTree): Optional prebuilt tree over `ref_points`.

        Returns:
            np.ndarray: (K, 2) array of (ref_idx, target_idx). When several target points
                        claim the same reference point only the closest is kept.
        """
        if len(ref_points) == 0 or len(projected_points) == 0:
            return np.empty((0, 2), dtype=int)

        if kdtree is None:
            kdtree = KDTree(ref_points)
        distances, indices = kdtree.query(projected_points, k=1)
        distances, indices = distances[:, 0], indices[:, 0]

        close = np.flatnonzero(distances <= self.pixel_tolerance)
        # Closest first, so ambiguous claims on a reference star are dropped
        close = close[np.lexsort((close, distances[close]))]

        matches = []
        taken = set()
        for target_idx in close:
            ref_idx = int(indices[target_idx])
            if ref_idx in taken:
                continue
            taken.add(ref_idx)
            matches.append((ref_idx, int(target_idx)))

        if not matches:
            return np.empty((0, 2), dtype=int)
        return np.array(sorted(matches), dtype=int)
