"""Configuration for the reconstruction and tracking pipeline.

Each component gets its own dataclass; SLAMConfig groups them and can be
loaded from a YAML file whose top-level sections are named after the
component configs:

    features:
      n_features: 1500
    matcher:
      ratio_threshold: 0.75
    dense:
      voxel_size: 0.02
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError


@dataclass
class FeatureConfig:
    """Feature extraction parameters."""

    n_features: int = 1000  # Max features per frame
    scale_factor: float = 1.2  # ORB pyramid scale
    n_levels: int = 8  # ORB pyramid levels
    fast_threshold: int = 20  # ORB FAST threshold
    grid_cell_size: int = 30  # NMS grid cell (pixels)
    max_per_cell: int = 4  # Features kept per grid cell
    min_image_size: int = 64  # Smaller images are unusable
    min_contrast: float = 4.0  # Intensity std below this is unusable
    min_features: int = 20  # Fewer features marks the frame unusable


@dataclass
class MatcherConfig:
    """Descriptor matching and geometric check parameters."""

    ratio_threshold: float = 0.8  # Lowe ratio test
    max_hamming_distance: int = 80  # Absolute descriptor distance cap
    ransac_threshold_px: float = 2.0  # Inlier threshold (pixels)
    ransac_max_iterations: int = 500  # RANSAC iteration cap
    ransac_confidence: float = 0.999  # Early-exit confidence
    ransac_seed: int = 0  # Seed for hypothesis sampling
    geometric_model: str = "auto"  # "fundamental", "homography" or "auto"


@dataclass
class TrackingConfig:
    """Pose estimator and state machine parameters."""

    min_init_matches: int = 100  # Matches required to bootstrap
    min_init_parallax_deg: float = 1.0  # Median parallax required to bootstrap
    min_init_points: int = 50  # Triangulated points required to bootstrap
    init_baseline_m: float = 0.1  # Bootstrap baseline when no inertial data
    homography_ratio_threshold: float = 0.45  # H/(H+F) score above this picks H
    min_tracking_inliers: int = 15  # Below this tracking is lost
    min_inlier_ratio: float = 0.1  # Inliers / attempted matches
    search_radius_px: float = 15.0  # Projection search window
    pnp_iterations: int = 100  # PnP RANSAC iterations
    pnp_reprojection_px: float = 3.0  # PnP inlier threshold
    pose_refine_iterations: int = 20  # Pose-only optimization cap
    prior_weight: float = 1.0  # Inertial prior weight (before confidence scaling)
    max_relocalization_attempts: int = 30  # Attempts before permanent loss
    relocalization_candidates: int = 5  # Keyframes tried per attempt


@dataclass
class KeyframeConfig:
    """Keyframe insertion thresholds."""

    min_translation: float = 0.1  # meters
    min_rotation_deg: float = 10.0  # degrees
    max_interval_s: float = 1.0  # seconds
    min_tracked_ratio: float = 0.6  # tracked / reference-keyframe points
    min_frames_between: int = 2  # frames


@dataclass
class MappingConfig:
    """Map maintenance parameters."""

    covisibility_min_shared: int = 15  # Shared points for a covisibility edge
    n_covisible_for_triangulation: int = 5  # Neighbours used for new points
    min_parallax_deg: float = 1.0  # Triangulation parallax gate
    max_reprojection_px: float = 4.0  # Triangulation/culling reprojection gate
    redundancy_ratio: float = 0.9  # Keyframe culling redundancy
    redundancy_min_observers: int = 3  # Other observers needed for redundancy
    point_grace_keyframes: int = 2  # Keyframes before a new point is checked
    min_point_observations: int = 2  # Viability threshold
    min_found_ratio: float = 0.25  # found / visible ratio
    high_error_strikes: int = 3  # BA passes with high error before culling


@dataclass
class BundleAdjustmentConfig:
    """Bundle adjustment parameters."""

    window_size: int = 10  # Local BA keyframes
    max_iterations: int = 50  # Local BA evaluation cap
    global_max_iterations: int = 100  # Global BA evaluation cap
    loss: str = "huber"  # Robust loss function
    loss_scale: float = 2.0  # Pixels
    min_observations: int = 20  # Below this BA is skipped


@dataclass
class LoopClosureConfig:
    """Place recognition and loop verification parameters."""

    enabled: bool = True
    n_candidates: int = 3  # Candidates verified per query
    min_score: float = 0.05  # BoW similarity floor
    min_keyframe_gap: int = 10  # Exclude this many recent keyframes
    check_every_n_keyframes: int = 1  # Detection cadence
    min_inliers: int = 30  # Verification gate: PnP inliers
    min_inlier_ratio: float = 0.3  # Verification gate: inliers / matches
    ransac_threshold_px: float = 3.0  # Verification PnP threshold
    vocabulary_words: int = 500  # Online vocabulary size
    vocabulary_min_keyframes: int = 10  # Keyframes before online training
    run_global_ba: bool = True


@dataclass
class DenseConfig:
    """Dense fusion and meshing parameters."""

    voxel_size: float = 0.02  # meters
    truncation_voxels: float = 3.0  # Truncation distance in voxels
    max_weight: float = 64.0  # Voxel weight cap
    agreement_voxels: float = 1.0  # Larger disagreement reduces confidence
    min_weight: float = 0.5  # Voxels below this are treated as unknown
    margin_voxels: int = 4  # Padding around the map bounds
    max_voxels: int = 8_000_000  # Refuse volumes larger than this
    smoothing_iterations: int = 0  # Laplacian smoothing passes
    texture_size: int = 1024  # Texture atlas side (pixels)


_SECTIONS: dict[str, type] = {
    "features": FeatureConfig,
    "matcher": MatcherConfig,
    "tracking": TrackingConfig,
    "keyframes": KeyframeConfig,
    "mapping": MappingConfig,
    "bundle_adjustment": BundleAdjustmentConfig,
    "loop_closure": LoopClosureConfig,
    "dense": DenseConfig,
}


@dataclass
class SLAMConfig:
    """Complete pipeline configuration."""

    features: FeatureConfig = field(default_factory=FeatureConfig)
    matcher: MatcherConfig = field(default_factory=MatcherConfig)
    tracking: TrackingConfig = field(default_factory=TrackingConfig)
    keyframes: KeyframeConfig = field(default_factory=KeyframeConfig)
    mapping: MappingConfig = field(default_factory=MappingConfig)
    bundle_adjustment: BundleAdjustmentConfig = field(
        default_factory=BundleAdjustmentConfig
    )
    loop_closure: LoopClosureConfig = field(default_factory=LoopClosureConfig)
    dense: DenseConfig = field(default_factory=DenseConfig)
    synchronous: bool = False  # Run background tasks inline

    def __post_init__(self) -> None:
        """Validate option ranges."""
        if self.features.n_features <= 0:
            raise ConfigError("features.n_features must be positive")
        if not 0.0 < self.matcher.ratio_threshold <= 1.0:
            raise ConfigError("matcher.ratio_threshold must be in (0, 1]")
        if self.matcher.ransac_threshold_px <= 0:
            raise ConfigError("matcher.ransac_threshold_px must be positive")
        if self.matcher.ransac_max_iterations <= 0:
            raise ConfigError("matcher.ransac_max_iterations must be positive")
        if self.matcher.geometric_model not in ("fundamental", "homography", "auto"):
            raise ConfigError(
                f"Unknown matcher.geometric_model: {self.matcher.geometric_model}"
            )
        if self.bundle_adjustment.window_size < 2:
            raise ConfigError("bundle_adjustment.window_size must be >= 2")
        if self.bundle_adjustment.max_iterations <= 0:
            raise ConfigError("bundle_adjustment.max_iterations must be positive")
        if self.loop_closure.n_candidates <= 0:
            raise ConfigError("loop_closure.n_candidates must be positive")
        if self.dense.voxel_size <= 0:
            raise ConfigError("dense.voxel_size must be positive")
        if self.tracking.max_relocalization_attempts <= 0:
            raise ConfigError("tracking.max_relocalization_attempts must be positive")

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> SLAMConfig:
        """Build a config from nested dictionaries.

        Args:
            data: Mapping of section name to option mapping

        Returns:
            SLAMConfig with defaults for anything not given

        Raises:
            ConfigError: On unknown sections, unknown keys or invalid values
        """
        data = dict(data or {})
        synchronous = bool(data.pop("synchronous", False))

        sections: dict[str, Any] = {}
        for name, values in data.items():
            section_cls = _SECTIONS.get(name)
            if section_cls is None:
                raise ConfigError(f"Unknown config section: {name}")
            if not isinstance(values, dict):
                raise ConfigError(f"Config section {name} must be a mapping")

            known = {f.name for f in fields(section_cls)}
            unknown = set(values) - known
            if unknown:
                raise ConfigError(
                    f"Unknown keys in section {name}: {sorted(unknown)}"
                )
            sections[name] = section_cls(**values)

        return cls(synchronous=synchronous, **sections)

    @classmethod
    def from_yaml(cls, path: str | Path) -> SLAMConfig:
        """Load a config from a YAML file.

        Args:
            path: Path to the YAML file

        Returns:
            Loaded configuration

        Raises:
            FileNotFoundError: If the file doesn't exist
            ConfigError: If the contents are invalid
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path, "r") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {path}: {e}") from e

        if data is not None and not isinstance(data, dict):
            raise ConfigError(f"Top level of {path} must be a mapping")
        return cls.from_dict(data)

    def to_dict(self) -> dict[str, Any]:
        """Return the config as nested plain dictionaries."""
        return asdict(self)

    def to_yaml(self, path: str | Path) -> None:
        """Write the config to a YAML file."""
        with open(path, "w") as f:
            yaml.safe_dump(self.to_dict(), f, sort_keys=False)
