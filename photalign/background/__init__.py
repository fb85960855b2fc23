from .background_estimator import BackgroundEstimator, BackgroundEstimate
