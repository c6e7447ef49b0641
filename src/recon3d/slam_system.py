"""SLAM system joining real-time tracking and background optimization.

SLAMSystem combines:
- Pose Estimator (real-time): feature extraction, matching, tracking
- Local Mapping (worker): windowed bundle adjustment after each keyframe
- Loop Closer (worker): place recognition and global drift correction
- Mesh Builder (worker): on-demand dense fusion and surface extraction

Tracking runs on the caller's thread at frame rate. Workers only read
map snapshots; their corrections are applied between frames on the
tracking thread, and only if no newer correction made them stale.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import numpy as np

from .backend import (
    BackgroundWorker,
    BundleAdjuster,
    LocalMapping,
    LoopRequest,
    MapManager,
    MapSnapshot,
)
from .config import SLAMConfig
from .dense import MeshBuilder
from .errors import ConfigError
from .frontend.feature_matcher import FeatureMatcher
from .frontend.frame import Frame
from .frontend.imu_integrator import IMUIntegrator
from .frontend.pose_estimator import FrameResult, PoseEstimator
from .frontend.tracking_state import TrackingState
from .geometry import SE3, CameraIntrinsics, Mesh, PointCloud
from .io.dataset_reader import DatasetReader
from .loop_closure import LoopCloser, VisualVocabulary

logger = logging.getLogger(__name__)


@dataclass
class SLAMStats:
    """Statistics from the SLAM system.

    The degraded counters count applied corrections whose optimization
    stopped at its iteration cap before converging.
    """

    num_frames: int = 0
    num_tracked: int = 0
    num_keyframes: int = 0
    num_map_points: int = 0
    num_ba_applied: int = 0
    num_ba_discarded: int = 0
    num_ba_degraded: int = 0
    num_loop_closures: int = 0
    num_loops_discarded: int = 0
    num_loops_degraded: int = 0
    total_distance: float = 0.0
    total_processing_ms: float = 0.0

    @property
    def mean_fps(self) -> float:
        """Frames per second of tracking time (0 before the first frame)."""
        if self.total_processing_ms <= 0:
            return 0.0
        return 1000.0 * self.num_frames / self.total_processing_ms


@dataclass
class _MeshRequest:
    snapshot: MapSnapshot
    depth_maps: dict[int, np.ndarray] | None = None


class SLAMSystem:
    """Complete pipeline: tracking, local BA, loop closure and meshing.

    Example:
        >>> with SLAMSystem(intrinsics) as system:
        ...     for frame in DatasetReader(path):
        ...         result = system.process_frame(frame)
        ...     mesh = system.build_mesh()
    """

    def __init__(
        self,
        intrinsics: CameraIntrinsics,
        config: SLAMConfig | None = None,
        vocabulary: VisualVocabulary | None = None,
        imu_integrator: IMUIntegrator | None = None,
    ) -> None:
        """Initialize SLAM system.

        Args:
            intrinsics: Camera calibration (undistorted images)
            config: Pipeline configuration
            vocabulary: Pretrained vocabulary; trained online when None
            imu_integrator: Integrator for frames carrying IMU samples
        """
        self._config = config or SLAMConfig()
        self._intrinsics = intrinsics
        cfg = self._config

        self._map = MapManager(intrinsics, cfg.mapping, matcher=FeatureMatcher(cfg.matcher))
        self._tracker = PoseEstimator(self._map, cfg, imu_integrator)
        self._local_mapping = LocalMapping(cfg.bundle_adjustment, cfg.mapping)
        self._loop_closer = LoopCloser(
            camera_matrix=self._map.camera_matrix,
            config=cfg.loop_closure,
            matcher=FeatureMatcher(cfg.matcher),
            vocabulary=vocabulary,
            bundle_adjuster=BundleAdjuster(
                max_iterations=cfg.bundle_adjustment.global_max_iterations,
                loss=cfg.bundle_adjustment.loss,
                loss_scale=cfg.bundle_adjustment.loss_scale,
                min_observations=cfg.bundle_adjustment.min_observations,
            ),
            covisibility_min_shared=cfg.mapping.covisibility_min_shared,
            global_max_iterations=cfg.bundle_adjustment.global_max_iterations,
        )
        self._mesh_builder = MeshBuilder(intrinsics, cfg.dense)

        sync = cfg.synchronous
        self._ba_worker = BackgroundWorker(
            "bundle_adjustment", self._local_mapping.run, supersede=True, synchronous=sync
        )
        # The loop closer keeps its place database, so every keyframe is processed
        self._loop_worker = BackgroundWorker(
            "loop_closure", self._run_loop_closure, supersede=False, synchronous=sync
        )
        self._mesh_worker = BackgroundWorker(
            "mesh", self._run_mesh, supersede=True, synchronous=sync
        )
        self._workers = (self._ba_worker, self._loop_worker, self._mesh_worker)

        self._ba_keyframes: dict[int, int] = {}  # request id -> keyframe id
        self._latest_mesh: Mesh | None = None
        self._stats = SLAMStats()
        self._prev_position: np.ndarray | None = None

    @classmethod
    def from_dataset(
        cls,
        reader: DatasetReader,
        config: SLAMConfig | None = None,
        vocabulary_path: str | Path | None = None,
    ) -> SLAMSystem:
        """Create a SLAMSystem for a EuRoC sequence.

        Args:
            reader: Dataset reader (its cam0 sensor.yaml gives the intrinsics)
            config: Pipeline configuration
            vocabulary_path: Pretrained vocabulary (.npz), optional

        Returns:
            Configured SLAMSystem

        Raises:
            ConfigError: If the dataset has no camera calibration
        """
        if reader.intrinsics is None:
            raise ConfigError(f"No cam0/sensor.yaml in {reader.dataset_path}")
        if not reader.distortion.is_zero:
            logger.warning("[SLAM] Images are distorted; open the reader with undistort=True")
        vocabulary = None
        if vocabulary_path is not None:
            vocabulary = VisualVocabulary.load(vocabulary_path)
        imu = IMUIntegrator(R_camera_imu=reader.R_camera_imu) if reader.has_imu else None
        return cls(reader.intrinsics, config=config, vocabulary=vocabulary, imu_integrator=imu)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the background workers."""
        for worker in self._workers:
            worker.start()

    def stop(self) -> None:
        """Stop the background workers; pending results are dropped."""
        for worker in self._workers:
            worker.stop()
            worker.poll_results()
        self._ba_keyframes.clear()

    def __enter__(self) -> SLAMSystem:
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    def reset(self) -> None:
        """Clear the map and restart tracking from INITIALIZING."""
        for worker in self._workers:
            worker.wait_idle(timeout=10.0)
            worker.poll_results()
        self._ba_keyframes.clear()
        self._map.reset()
        self._tracker.reset()
        self._loop_closer.reset()
        self._latest_mesh = None
        self._prev_position = None
        logger.info("[SLAM] Reset")

    # ------------------------------------------------------------------
    # Real-time path
    # ------------------------------------------------------------------

    def process_frame(self, frame: Frame) -> FrameResult:
        """Track one frame and schedule background work.

        Finished background corrections are applied before tracking, so
        the frame is tracked against the most recent map.

        Args:
            frame: Camera frame (with optional IMU samples and depth)

        Returns:
            FrameResult with status, tracking state and pose
        """
        self._ensure_started()
        self._apply_background_results()

        result = self._tracker.process_frame(frame)
        self._update_stats(result)
        if result.is_keyframe:
            self._on_keyframe(result.keyframe_id)
            # In synchronous mode the results are ready right away
            self._apply_background_results()
        return result

    def _on_keyframe(self, keyframe_id: int) -> None:
        """Schedule local BA and loop detection for a new keyframe."""
        request = self._local_mapping.build_request(self._map, keyframe_id)
        if request is not None:
            request_id = self._ba_worker.submit(request)
            self._ba_keyframes[request_id] = keyframe_id
        if self._config.loop_closure.enabled:
            # Only the new keyframe; the closer copies the full map when it searches
            self._loop_worker.submit(LoopRequest(self._map.snapshot([keyframe_id]), keyframe_id))

    def _run_loop_closure(self, request: LoopRequest, is_cancelled) -> object:
        if is_cancelled():
            return None
        return self._loop_closer.process_keyframe(
            request.snapshot, request.keyframe_id, full_map=self._map.snapshot
        )

    def _run_mesh(self, request: _MeshRequest, is_cancelled) -> Mesh | None:
        if is_cancelled():
            return None
        return self._mesh_builder.build(request.snapshot, request.depth_maps)

    def _apply_background_results(self) -> None:
        """Apply finished corrections on the tracking thread."""
        for result in self._ba_worker.poll_results():
            keyframe_id = self._ba_keyframes.pop(result.request_id, None)
            if not result.ok or result.value is None:
                continue
            outcome = self._local_mapping.apply(self._map, result.value, keyframe_id)
            if outcome.applied:
                self._stats.num_ba_applied += 1
                if outcome.degraded:
                    self._stats.num_ba_degraded += 1
            else:
                self._stats.num_ba_discarded += 1

        for result in self._loop_worker.poll_results():
            if not result.ok or result.value is None:
                continue
            if self._map.apply_loop_correction(result.value):
                self._stats.num_loop_closures += 1
                if result.value.degraded:
                    self._stats.num_loops_degraded += 1
                    logger.warning("[SLAM] Applied a loop correction that did not converge")
                self._map.cull_map_points()
            else:
                self._stats.num_loops_discarded += 1

        for result in self._mesh_worker.poll_results():
            if result.ok and result.value is not None:
                self._latest_mesh = result.value

    def _update_stats(self, result: FrameResult) -> None:
        stats = self._stats
        stats.num_frames += 1
        stats.total_processing_ms += result.processing_time_ms
        if result.is_tracked:
            stats.num_tracked += 1
            position = result.pose.translation
            if self._prev_position is not None:
                stats.total_distance += float(np.linalg.norm(position - self._prev_position))
            self._prev_position = position.copy()
        elif result.state != TrackingState.TRACKING:
            self._prev_position = None

    def _ensure_started(self) -> None:
        if not self._config.synchronous and not all(w.is_running for w in self._workers):
            self.start()

    # ------------------------------------------------------------------
    # Outputs
    # ------------------------------------------------------------------

    @property
    def state(self) -> TrackingState:
        """Current tracking state."""
        return self._tracker.state

    @property
    def map(self) -> MapManager:
        """The live map (hold map.lock to read several structures)."""
        return self._map

    @property
    def tracker(self) -> PoseEstimator:
        """Real-time pose estimator."""
        return self._tracker

    @property
    def loop_closer(self) -> LoopCloser:
        """Loop closer (used from the loop worker thread)."""
        return self._loop_closer

    @property
    def config(self) -> SLAMConfig:
        """Pipeline configuration."""
        return self._config

    @property
    def latest_mesh(self) -> Mesh | None:
        """Most recent mesh built in the background."""
        return self._latest_mesh

    def current_pose(self) -> SE3 | None:
        """Latest T_world_camera, with applied corrections."""
        return self._tracker.current_pose()

    def export_point_cloud(self) -> PointCloud:
        """Snapshot of map points, colors, normals and keyframe cameras."""
        return self._map.export_point_cloud()

    def build_mesh(
        self,
        wait: bool = True,
        depth_maps: dict[int, np.ndarray] | None = None,
        timeout: float | None = None,
    ) -> Mesh | None:
        """Build a mesh from the current map, off the tracking thread.

        Args:
            wait: Block until the mesh is ready
            depth_maps: Optional depth maps by keyframe id
            timeout: Maximum wait in seconds

        Returns:
            The mesh if wait is True and it finished in time, else None
            (the result later appears in latest_mesh)
        """
        self._ensure_started()
        self._mesh_worker.submit(_MeshRequest(self._map.snapshot(), depth_maps))
        if not wait:
            return None
        if not self._mesh_worker.wait_idle(timeout):
            logger.warning("[SLAM] Mesh not ready after %.1fs", timeout)
            return None
        for result in self._mesh_worker.poll_results():
            if result.ok and result.value is not None:
                self._latest_mesh = result.value
        return self._latest_mesh

    def wait_for_background(self, timeout: float | None = None) -> bool:
        """Block until queued background work is done, then apply it.

        Returns:
            False if a worker was still busy when the timeout expired
        """
        idle = all(worker.wait_idle(timeout) for worker in self._workers)
        self._apply_background_results()
        return idle

    def get_stats(self) -> SLAMStats:
        """Return a copy of the statistics, with current map sizes."""
        self._stats.num_keyframes = self._map.num_keyframes
        self._stats.num_map_points = self._map.num_points
        return SLAMStats(**vars(self._stats))
