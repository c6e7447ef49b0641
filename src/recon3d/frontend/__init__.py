"""Real-time frontend: features, matching, initialization and tracking."""

from .feature_extractor import Feature, FeatureExtractor, Features, grid_suppression, to_grayscale
from .feature_matcher import FeatureMatch, FeatureMatcher, Matches
from .frame import Frame
from .imu_integrator import IMUIntegrator, IMUMeasurement, IMUState
from .initializer import InitializationResult, TwoViewInitializer
from .motion_estimator import MotionEstimator, PoseEstimate, reprojection_errors
from .pose_estimator import FrameResult, FrameStatus, PoseEstimator, TrackingQuality
from .ransac import GeometricModel, RansacResult, ransac, ransac_best_model
from .tracking_state import ALLOWED_TRANSITIONS, TrackingState, TrackingStateMachine

__all__ = [
    # Frames
    "Frame",
    # Features
    "Feature",
    "Features",
    "FeatureExtractor",
    "grid_suppression",
    "to_grayscale",
    # Matching
    "FeatureMatch",
    "FeatureMatcher",
    "Matches",
    # Robust estimation
    "GeometricModel",
    "RansacResult",
    "ransac",
    "ransac_best_model",
    # IMU
    "IMUIntegrator",
    "IMUMeasurement",
    "IMUState",
    # Initialization and tracking
    "TwoViewInitializer",
    "InitializationResult",
    "MotionEstimator",
    "PoseEstimate",
    "reprojection_errors",
    "PoseEstimator",
    "FrameResult",
    "FrameStatus",
    "TrackingQuality",
    "TrackingState",
    "TrackingStateMachine",
    "ALLOWED_TRANSITIONS",
]
