# Orchestrator
from .star_aligner import StarAligner, Registration, AlignmentResult, register_frame, find_transform, resample

# Building blocks
from .star_detector import StarDetector, PointSet
from .centroid_refiner import CentroidRefiner
from .matcher import StarMatcher
from .transform_solver import Transform, TransformSolver
