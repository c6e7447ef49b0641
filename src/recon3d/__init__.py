"""recon3d - monocular SLAM and dense reconstruction in Python."""

__version__ = "0.1.0"

# Re-export main classes for convenient imports
from .config import (
    BundleAdjustmentConfig,
    DenseConfig,
    FeatureConfig,
    KeyframeConfig,
    LoopClosureConfig,
    MappingConfig,
    MatcherConfig,
    SLAMConfig,
    TrackingConfig,
)
from .errors import ConfigError, GeometryError, IllegalTransitionError, Recon3DError
from .geometry import SE3, Camera, CameraIntrinsics, DistortionCoeffs, Mesh, PointCloud
from .frontend import (
    FeatureExtractor,
    FeatureMatcher,
    Frame,
    FrameResult,
    FrameStatus,
    IMUIntegrator,
    IMUMeasurement,
    PoseEstimator,
    TrackingQuality,
    TrackingState,
)
from .backend import BackgroundWorker, BundleAdjuster, KeyFrame, LocalMapping, MapManager, MapPoint
from .loop_closure import LoopCloser, PoseGraph, VisualVocabulary
from .dense import MeshBuilder, TSDFVolume
from .io import DatasetReader, IMUReader, write_mesh_ply, write_point_cloud_ply
from .slam_system import SLAMStats, SLAMSystem

__all__ = [
    "__version__",
    # Configuration
    "SLAMConfig",
    "FeatureConfig",
    "MatcherConfig",
    "TrackingConfig",
    "KeyframeConfig",
    "MappingConfig",
    "BundleAdjustmentConfig",
    "LoopClosureConfig",
    "DenseConfig",
    # Errors
    "Recon3DError",
    "ConfigError",
    "GeometryError",
    "IllegalTransitionError",
    # Geometry
    "SE3",
    "Camera",
    "CameraIntrinsics",
    "DistortionCoeffs",
    "PointCloud",
    "Mesh",
    # Frontend
    "Frame",
    "FeatureExtractor",
    "FeatureMatcher",
    "IMUIntegrator",
    "IMUMeasurement",
    "PoseEstimator",
    "FrameResult",
    "FrameStatus",
    "TrackingQuality",
    "TrackingState",
    # Backend
    "MapManager",
    "KeyFrame",
    "MapPoint",
    "BundleAdjuster",
    "LocalMapping",
    "BackgroundWorker",
    # Loop Closure
    "LoopCloser",
    "PoseGraph",
    "VisualVocabulary",
    # Dense
    "TSDFVolume",
    "MeshBuilder",
    # I/O
    "DatasetReader",
    "IMUReader",
    "write_point_cloud_ply",
    "write_mesh_ply",
    # SLAM System
    "SLAMSystem",
    "SLAMStats",
]
