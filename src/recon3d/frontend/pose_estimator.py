"""Real-time pose estimation: bootstrap, tracking, loss and relocalization.

PoseEstimator drives the tracking state machine one frame at a time:

    INITIALIZING: keep a reference frame until a second frame has enough
        matches and parallax to bootstrap the map.
    TRACKING: predict the pose (constant velocity or IMU), match the local
        map by projection, solve PnP + refinement, insert keyframes.
    LOST / RELOCALIZING: search each usable frame in the local map of the
        last reference keyframe, then against the whole keyframe database,
        until a pose is recovered or the attempt budget runs out.

The current pose is stored relative to a reference keyframe, so map
corrections applied by bundle adjustment or loop closure carry over to
the live pose without further bookkeeping.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum

import numpy as np
from scipy.spatial import cKDTree

from ..backend.keyframe import KeyFrame, KeyframeSelector
from ..backend.map_manager import MapManager
from ..backend.map_point import hamming_distances
from ..config import SLAMConfig
from ..geometry import SE3, project_points
from .feature_extractor import FeatureExtractor, Features
from .feature_matcher import FeatureMatcher
from .frame import Frame
from .imu_integrator import IMUIntegrator, IMUMeasurement
from .initializer import TwoViewInitializer
from .motion_estimator import MotionEstimator, PoseEstimate
from .tracking_state import TrackingState, TrackingStateMachine

logger = logging.getLogger(__name__)


class FrameStatus(Enum):
    """Outcome of processing one frame."""

    INITIALIZED = "initialized"  # Map bootstrapped on this frame
    TRACKED = "tracked"
    FRAME_UNUSABLE = "frame_unusable"  # Too few features, frame skipped
    INITIALIZATION_FAILED = "initialization_failed"  # Retried on next frame
    TRACKING_LOST = "tracking_lost"
    RELOCALIZED = "relocalized"
    RELOCALIZATION_FAILED = "relocalization_failed"
    LOST_PERMANENT = "lost_permanent"  # Requires reset()


class TrackingQuality(Enum):
    """Tracking quality from the number of pose inliers."""

    NOT_AVAILABLE = "not_available"
    POOR = "poor"
    LIMITED = "limited"
    GOOD = "good"
    EXCELLENT = "excellent"

    @classmethod
    def from_inliers(cls, num_inliers: int) -> TrackingQuality:
        """Map an inlier count to a quality level."""
        if num_inliers <= 0:
            return cls.NOT_AVAILABLE
        if num_inliers <= 20:
            return cls.POOR
        if num_inliers <= 50:
            return cls.LIMITED
        if num_inliers <= 100:
            return cls.GOOD
        return cls.EXCELLENT


@dataclass
class FrameResult:
    """Result of processing a single frame.

    Attributes:
        frame_id: Sequence number of the frame
        timestamp_ns: Frame timestamp
        status: What happened to the frame
        state: Tracking state after the frame
        pose: Estimated T_world_camera (None if not tracked)
        quality: Tracking quality
        num_features: Features extracted
        num_matches: Correspondences attempted
        num_inliers: Correspondences supporting the pose
        keyframe_id: Id of the keyframe created from this frame, -1 if none
        message: Human-readable detail
        processing_time_ms: Time spent in the estimator
    """

    frame_id: int
    timestamp_ns: int
    status: FrameStatus
    state: TrackingState
    pose: SE3 | None = None
    quality: TrackingQuality = TrackingQuality.NOT_AVAILABLE
    num_features: int = 0
    num_matches: int = 0
    num_inliers: int = 0
    keyframe_id: int = -1
    message: str = ""
    processing_time_ms: float = 0.0

    @property
    def is_tracked(self) -> bool:
        """True if the frame has a pose."""
        return self.pose is not None

    @property
    def is_keyframe(self) -> bool:
        """True if the frame was inserted as a keyframe."""
        return self.keyframe_id >= 0


@dataclass
class _InitReference:
    frame: Frame
    features: Features
    imu: list[IMUMeasurement] = field(default_factory=list)


@dataclass
class _TrackOutcome:
    estimate: PoseEstimate
    point_ids: np.ndarray  # map point id per correspondence
    keypoints: np.ndarray  # keypoint index per correspondence
    visible_ids: np.ndarray  # local map points predicted in view

    def matched_points(self) -> dict[int, int]:
        """keypoint index -> map point id for the inliers."""
        mask = self.estimate.inliers
        return {int(k): int(p) for k, p in zip(self.keypoints[mask], self.point_ids[mask])}


class PoseEstimator:
    """Tracks the camera against the map, frame by frame."""

    def __init__(
        self,
        map_manager: MapManager,
        config: SLAMConfig | None = None,
        imu_integrator: IMUIntegrator | None = None,
    ) -> None:
        """Initialize the pose estimator.

        Args:
            map_manager: Map to bootstrap, track against and extend
            config: Pipeline configuration
            imu_integrator: Integrator used when frames carry IMU samples
        """
        self._config = config or SLAMConfig()
        self._map = map_manager
        self._K = map_manager.camera_matrix
        intrinsics = map_manager.intrinsics
        self._image_size = (intrinsics.width, intrinsics.height)

        tcfg = self._config.tracking
        self._extractor = FeatureExtractor(self._config.features)
        self._matcher = FeatureMatcher(self._config.matcher)
        self._initializer = TwoViewInitializer(
            tcfg, self._config.mapping, self._config.matcher.ransac_threshold_px
        )
        self._motion = MotionEstimator(
            reprojection_threshold=tcfg.pnp_reprojection_px,
            max_iterations=tcfg.pnp_iterations,
            min_inliers=tcfg.min_tracking_inliers,
            refine_iterations=tcfg.pose_refine_iterations,
            prior_weight=tcfg.prior_weight,
        )
        self._keyframe_selector = KeyframeSelector(self._config.keyframes)
        self._imu = imu_integrator or IMUIntegrator()
        self._state_machine = TrackingStateMachine(tcfg.max_relocalization_attempts)

        self._init_reference: _InitReference | None = None
        self._reference_kf_id = -1
        self._T_ref_cur = SE3.identity()
        self._velocity = SE3.identity()  # T_prev_cur
        self._world_velocity = np.zeros(3)
        self._last_timestamp_ns: int | None = None
        self._last_pose: SE3 | None = None
        self._frame_counter = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> TrackingState:
        """Current tracking state."""
        return self._state_machine.state

    @property
    def state_machine(self) -> TrackingStateMachine:
        """Underlying state machine."""
        return self._state_machine

    @property
    def reference_keyframe_id(self) -> int:
        """Keyframe the live pose is expressed against (-1 before bootstrap)."""
        return self._reference_kf_id

    @property
    def matcher(self) -> FeatureMatcher:
        """Feature matcher shared with the map."""
        return self._matcher

    @property
    def extractor(self) -> FeatureExtractor:
        """Feature extractor."""
        return self._extractor

    def current_pose(self) -> SE3 | None:
        """Latest T_world_camera, including corrections applied to the map."""
        reference = self._map.get_keyframe(self._reference_kf_id)
        if reference is not None and self.state == TrackingState.TRACKING:
            return reference.pose.compose(self._T_ref_cur)
        return None if self._last_pose is None else self._last_pose.copy()

    def process_frame(self, frame: Frame) -> FrameResult:
        """Process one frame and return what happened to it.

        Never raises for runtime conditions; everything is reported through
        FrameResult.status.
        """
        start = time.perf_counter()
        if frame.frame_id < 0:
            frame.frame_id = self._frame_counter
        self._frame_counter = max(self._frame_counter, frame.frame_id) + 1

        result = self._dispatch(frame)
        result.processing_time_ms = (time.perf_counter() - start) * 1000.0
        logger.debug(
            "[Tracking] frame %d: %s, %d/%d inliers, %.1f ms",
            frame.frame_id,
            result.status.value,
            result.num_inliers,
            result.num_matches,
            result.processing_time_ms,
        )
        return result

    def reset(self) -> None:
        """Forget all tracking state and return to INITIALIZING."""
        self._state_machine.reset()
        self._init_reference = None
        self._reference_kf_id = -1
        self._T_ref_cur = SE3.identity()
        self._velocity = SE3.identity()
        self._world_velocity = np.zeros(3)
        self._last_timestamp_ns = None
        self._last_pose = None

    # ------------------------------------------------------------------
    # State handlers
    # ------------------------------------------------------------------

    def _dispatch(self, frame: Frame) -> FrameResult:
        state = self.state
        if state == TrackingState.LOST_PERMANENT:
            return self._result(frame, FrameStatus.LOST_PERMANENT, message="Reset required")

        features = self._extractor.extract(frame.image)
        if len(features) < self._config.features.min_features:
            return self._handle_unusable(frame, len(features))

        if state == TrackingState.INITIALIZING:
            return self._initialize(frame, features)
        if state == TrackingState.TRACKING:
            return self._track(frame, features)
        return self._relocalize(frame, features)

    def _handle_unusable(self, frame: Frame, num_features: int) -> FrameResult:
        if self.state == TrackingState.TRACKING:
            self._state_machine.transition(TrackingState.LOST)
            self._last_pose = self._pose_from_reference()
        if self.state == TrackingState.INITIALIZING and self._init_reference is not None:
            self._init_reference.imu.extend(frame.imu)
        return self._result(
            frame,
            FrameStatus.FRAME_UNUSABLE,
            num_features=num_features,
            message=f"Only {num_features} features",
        )

    def _pose_from_reference(self) -> SE3 | None:
        """Pose implied by the reference keyframe, ignoring the tracking state."""
        reference = self._map.get_keyframe(self._reference_kf_id)
        if reference is None:
            return self._last_pose
        return reference.pose.compose(self._T_ref_cur)

    def _initialize(self, frame: Frame, features: Features) -> FrameResult:
        tcfg = self._config.tracking
        ref = self._init_reference
        if ref is None:
            self._set_init_reference(frame, features)
            return self._result(
                frame,
                FrameStatus.INITIALIZATION_FAILED,
                num_features=len(features),
                message="Reference frame stored",
            )

        ref.imu.extend(frame.imu)
        matches = self._matcher.match(ref.features, features)
        baseline, expected_rotation = self._bootstrap_motion(ref, frame)
        init = self._initializer.initialize(
            ref.features, features, matches, self._K, baseline, expected_rotation
        )
        if not init.success:
            if len(matches) < tcfg.min_init_matches:
                # Too little overlap left with the reference; start over from here
                self._set_init_reference(frame, features)
            logger.debug("[Init] Failed: %s", init.message)
            return self._result(
                frame,
                FrameStatus.INITIALIZATION_FAILED,
                num_features=len(features),
                num_matches=len(matches),
                message=init.message,
            )

        kf_ref = self._map.create_keyframe(
            ref.frame.frame_id, ref.frame.timestamp_ns, SE3.identity(), ref.features,
            ref.frame.image, ref.frame.depth,
        )
        kf_cur = self._map.create_keyframe(
            frame.frame_id, frame.timestamp_ns, init.pose, features, frame.image, frame.depth
        )
        self._map.initialize(kf_ref, kf_cur, init.points, init.indices_ref, init.indices_cur)
        self._state_machine.transition(TrackingState.TRACKING)

        elapsed_s = (frame.timestamp_ns - ref.frame.timestamp_ns) * 1e-9
        self._reference_kf_id = kf_cur.id
        self._T_ref_cur = SE3.identity()
        self._velocity = SE3.identity()
        self._world_velocity = init.pose.position / elapsed_s if elapsed_s > 0 else np.zeros(3)
        self._last_timestamp_ns = frame.timestamp_ns
        self._last_pose = init.pose.copy()
        self._init_reference = None

        num_points = len(init.points)
        return self._result(
            frame,
            FrameStatus.INITIALIZED,
            pose=init.pose,
            num_features=len(features),
            num_matches=len(matches),
            num_inliers=num_points,
            keyframe_id=kf_cur.id,
            message=f"{init.model} bootstrap, {num_points} points",
        )

    def _set_init_reference(self, frame: Frame, features: Features) -> None:
        self._init_reference = _InitReference(frame, features, [])
        if frame.imu:
            self._imu.align_gravity(frame.imu, SE3.identity())

    def _bootstrap_motion(
        self, ref: _InitReference, frame: Frame
    ) -> tuple[float, np.ndarray | None]:
        """Return (baseline, expected rotation cam1 -> cam2) for the bootstrap."""
        baseline = self._config.tracking.init_baseline_m
        if not ref.imu or self._imu.gravity is None:
            return baseline, None

        predicted = self._imu.predict(
            SE3.identity(), np.zeros(3), ref.frame.timestamp_ns, ref.imu
        )
        if predicted is None:
            return baseline, None
        travelled = float(np.linalg.norm(predicted.pose.position))
        if travelled > 1e-3:
            baseline = travelled
        return baseline, predicted.pose.rotation.T

    def _track(self, frame: Frame, features: Features) -> FrameResult:
        tcfg = self._config.tracking
        reference = self._map.get_keyframe(self._reference_kf_id)
        if reference is None:
            reference = self._map.last_keyframe
            if reference is None:
                self._state_machine.transition(TrackingState.LOST)
                return self._result(frame, FrameStatus.TRACKING_LOST, message="Empty map")
            # The anchor was culled; express the last pose against the new one
            if self._last_pose is not None:
                self._T_ref_cur = reference.pose.inverse().compose(self._last_pose)
            logger.debug(
                "[Tracking] Reference keyframe %d gone, anchoring to %d",
                self._reference_kf_id,
                reference.id,
            )
            self._reference_kf_id = reference.id

        last_pose = self._pose_from_reference()
        predicted, prior = self._predict(frame, last_pose)

        outcome = self._track_local_map(features, reference.id, predicted, prior)
        if outcome is None or not self._is_good(outcome.estimate):
            logger.debug("[Tracking] Local map search failed, matching reference keyframe")
            outcome = self._track_keyframe(features, reference, predicted, prior)

        if outcome is None or not self._is_good(outcome.estimate):
            self._state_machine.transition(TrackingState.LOST)
            self._last_pose = last_pose
            estimate = None if outcome is None else outcome.estimate
            return self._result(
                frame,
                FrameStatus.TRACKING_LOST,
                num_features=len(features),
                num_matches=0 if estimate is None else len(estimate.inliers),
                num_inliers=0 if estimate is None else estimate.num_inliers,
                message="Too few pose inliers"
                f" (min {tcfg.min_tracking_inliers}, ratio {tcfg.min_inlier_ratio})",
            )

        pose = outcome.estimate.pose
        self._update_motion(frame, last_pose, pose)
        matched = outcome.matched_points()
        self._map.record_visibility(outcome.visible_ids, np.array(list(matched.values())))
        self._choose_reference(matched, pose)

        keyframe_id = self._maybe_insert_keyframe(frame, features, pose, matched)
        return self._result(
            frame,
            FrameStatus.TRACKED,
            pose=pose,
            num_features=len(features),
            num_matches=len(outcome.estimate.inliers),
            num_inliers=outcome.estimate.num_inliers,
            keyframe_id=keyframe_id,
        )

    def _relocalize(self, frame: Frame, features: Features) -> FrameResult:
        if self.state == TrackingState.LOST:
            self._state_machine.transition(TrackingState.RELOCALIZING)

        outcome, keyframe = self._relocalize_against_reference(features)
        if outcome is None:
            outcome, keyframe = self._relocalize_against_database(features)
        if outcome is not None:
            pose = outcome.estimate.pose
            self._state_machine.transition(TrackingState.TRACKING)
            self._reference_kf_id = keyframe.id
            self._T_ref_cur = keyframe.pose.inverse().compose(pose)
            self._velocity = SE3.identity()
            self._world_velocity = np.zeros(3)
            self._last_timestamp_ns = frame.timestamp_ns
            self._last_pose = pose.copy()
            logger.info("[Tracking] Relocalized against keyframe %d", keyframe.id)
            return self._result(
                frame,
                FrameStatus.RELOCALIZED,
                pose=pose,
                num_features=len(features),
                num_matches=len(outcome.estimate.inliers),
                num_inliers=outcome.estimate.num_inliers,
                message=f"Anchored to keyframe {keyframe.id}",
            )

        exhausted = self._state_machine.record_failed_attempt()
        if exhausted:
            self._state_machine.transition(TrackingState.LOST_PERMANENT)
            logger.warning(
                "[Tracking] Relocalization failed %d times, tracking permanently lost",
                self._state_machine.relocalization_attempts,
            )
            return self._result(
                frame,
                FrameStatus.LOST_PERMANENT,
                num_features=len(features),
                message="Relocalization attempts exhausted",
            )

        self._state_machine.transition(TrackingState.LOST)
        return self._result(
            frame,
            FrameStatus.RELOCALIZATION_FAILED,
            num_features=len(features),
            message=f"Attempt {self._state_machine.relocalization_attempts} failed",
        )

    # ------------------------------------------------------------------
    # Tracking helpers
    # ------------------------------------------------------------------

    def _predict(self, frame: Frame, last_pose: SE3) -> tuple[SE3, SE3 | None]:
        """Return (predicted pose, inertial prior or None)."""
        predicted = last_pose.compose(self._velocity)
        if not frame.imu or self._last_timestamp_ns is None:
            return predicted, None

        state = self._imu.predict(
            last_pose, self._world_velocity, self._last_timestamp_ns, frame.imu
        )
        if state is None:
            return predicted, None
        return state.pose, state.pose

    def _is_good(self, estimate: PoseEstimate) -> bool:
        tcfg = self._config.tracking
        return (
            estimate.success
            and estimate.num_inliers >= tcfg.min_tracking_inliers
            and estimate.inlier_ratio >= tcfg.min_inlier_ratio
        )

    def _search_by_projection(
        self,
        features: Features,
        point_ids: np.ndarray,
        positions: np.ndarray,
        descriptors: np.ndarray,
        pose: SE3,
        radius: float,
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Match map points to keypoints near their projection.

        Returns:
            (map point ids, keypoint indices, ids of points predicted in view)
        """
        empty = np.empty(0, dtype=np.int64)
        if len(point_ids) == 0 or len(features) == 0:
            return empty, empty, empty

        uv, depth = project_points(self._K, pose.inverse(), positions)
        width, height = self._image_size
        in_view = depth > 0
        if width > 0 and height > 0:
            in_view &= (uv[:, 0] >= 0) & (uv[:, 0] < width) & (uv[:, 1] >= 0) & (uv[:, 1] < height)
        view_idx = np.flatnonzero(in_view)
        if len(view_idx) == 0:
            return empty, empty, empty

        tree = cKDTree(features.points)
        neighbours = tree.query_ball_point(uv[view_idx], r=radius)
        max_dist = self._config.matcher.max_hamming_distance

        cand_point, cand_kp, cand_dist = [], [], []
        for i, candidates in zip(view_idx, neighbours):
            if not candidates:
                continue
            candidates = np.asarray(candidates, dtype=np.int64)
            dists = hamming_distances(features.descriptors[candidates], descriptors[i])
            best = int(np.argmin(dists))
            if dists[best] <= max_dist:
                cand_point.append(i)
                cand_kp.append(candidates[best])
                cand_dist.append(dists[best])

        if not cand_point:
            return empty, empty, point_ids[view_idx]

        cand_point = np.asarray(cand_point)
        cand_kp = np.asarray(cand_kp)
        # One map point per keypoint: keep the closest descriptor
        order = np.lexsort((cand_point, np.asarray(cand_dist)))
        _, first = np.unique(cand_kp[order], return_index=True)
        keep = order[first]
        return point_ids[cand_point[keep]], cand_kp[keep], point_ids[view_idx]

    def _track_local_map(
        self, features: Features, reference_id: int, predicted: SE3, prior: SE3 | None
    ) -> _TrackOutcome | None:
        local = self._map.local_map(reference_id)
        point_ids, keypoints, visible = self._search_by_projection(
            features,
            local.point_ids,
            local.positions,
            local.descriptors,
            predicted,
            self._config.tracking.search_radius_px,
        )
        if len(point_ids) < self._config.tracking.min_tracking_inliers:
            return None
        index = {int(p): i for i, p in enumerate(local.point_ids)}
        positions = local.positions[[index[int(p)] for p in point_ids]]
        estimate = self._motion.estimate_pose(
            positions,
            features.points[keypoints],
            self._K,
            initial_pose=predicted,
            prior_pose=prior,
        )
        return _TrackOutcome(estimate, point_ids, keypoints, visible)

    def _track_keyframe(
        self,
        features: Features,
        keyframe: KeyFrame,
        initial_pose: SE3 | None,
        prior: SE3 | None,
    ) -> _TrackOutcome | None:
        """Match descriptors against a keyframe's mapped keypoints and solve PnP."""
        with self._map.lock:
            mapped = [
                (kp, pid)
                for kp, pid in sorted(keyframe.keypoint_to_point.items())
                if self._map.get_point(pid) is not None
            ]
            if len(mapped) < self._config.tracking.min_tracking_inliers:
                return None
            kf_kps = np.array([kp for kp, _ in mapped], dtype=np.int64)
            kf_pids = np.array([pid for _, pid in mapped], dtype=np.int64)
            positions = np.array([self._map.get_point(int(p)).position for p in kf_pids])

        matches = self._matcher.match_descriptors(
            keyframe.features.descriptors[kf_kps], features.descriptors
        )
        if len(matches) < self._config.tracking.min_tracking_inliers:
            return None

        estimate = self._motion.estimate_pose(
            positions[matches.indices_a],
            features.points[matches.indices_b],
            self._K,
            initial_pose=initial_pose,
            prior_pose=prior,
        )
        return _TrackOutcome(
            estimate,
            kf_pids[matches.indices_a],
            matches.indices_b,
            kf_pids[matches.indices_a],
        )

    def _relocalize_against_reference(
        self, features: Features
    ) -> tuple[_TrackOutcome | None, KeyFrame | None]:
        """Search the last reference keyframe's local map around the last pose."""
        reference = self._map.get_keyframe(self._reference_kf_id)
        if reference is None or self._last_pose is None:
            return None, None
        outcome = self._track_local_map(features, reference.id, self._last_pose, None)
        if outcome is None or not self._is_good(outcome.estimate):
            return None, None
        return outcome, reference

    def _relocalize_against_database(
        self, features: Features
    ) -> tuple[_TrackOutcome | None, KeyFrame | None]:
        """Try keyframes sharing the most descriptor matches with the frame."""
        tcfg = self._config.tracking
        keyframes = self._map.keyframes()
        if not keyframes:
            return None, None

        scored = []
        for keyframe in keyframes:
            matches = self._matcher.match_descriptors(
                keyframe.features.descriptors, features.descriptors
            )
            mapped = sum(1 for i in matches.indices_a if int(i) in keyframe.keypoint_to_point)
            if mapped >= tcfg.min_tracking_inliers:
                scored.append((mapped, keyframe.id, keyframe))
        scored.sort(key=lambda s: (-s[0], s[1]))

        for _, _, keyframe in scored[: tcfg.relocalization_candidates]:
            outcome = self._track_keyframe(features, keyframe, None, None)
            if outcome is None or not self._is_good(outcome.estimate):
                continue
            # Extend to the candidate's neighbourhood for a better-supported pose
            refined = self._track_local_map(
                features, keyframe.id, outcome.estimate.pose, None
            )
            if refined is not None and self._is_good(refined.estimate):
                outcome = refined
            return outcome, keyframe
        return None, None

    def _update_motion(self, frame: Frame, last_pose: SE3, pose: SE3) -> None:
        self._velocity = last_pose.inverse().compose(pose)
        if self._last_timestamp_ns is not None:
            dt = (frame.timestamp_ns - self._last_timestamp_ns) * 1e-9
            if dt > 0:
                self._world_velocity = (pose.position - last_pose.position) / dt
        self._last_timestamp_ns = frame.timestamp_ns
        self._last_pose = pose.copy()

    def _choose_reference(self, matched: dict[int, int], pose: SE3) -> None:
        """Re-anchor to the keyframe sharing the most tracked points."""
        counts: dict[int, int] = {}
        with self._map.lock:
            for pid in matched.values():
                point = self._map.get_point(pid)
                if point is None:
                    continue
                for kf_id in point.observations:
                    counts[kf_id] = counts.get(kf_id, 0) + 1
        if counts:
            self._reference_kf_id = min(counts, key=lambda k: (-counts[k], -k))
        reference = self._map.get_keyframe(self._reference_kf_id)
        if reference is not None:
            self._T_ref_cur = reference.pose.inverse().compose(pose)

    def _maybe_insert_keyframe(
        self, frame: Frame, features: Features, pose: SE3, matched: dict[int, int]
    ) -> int:
        last = self._map.last_keyframe
        num_tracked = None
        if last is not None:
            observed = last.observed_point_ids()
            num_tracked = sum(1 for pid in matched.values() if pid in observed)

        insert, reason = self._keyframe_selector.should_insert(
            frame.frame_id, frame.timestamp_ns, pose, last, num_tracked
        )
        if not insert:
            return -1

        keyframe = self._map.create_keyframe(
            frame.frame_id, frame.timestamp_ns, pose, features, frame.image, frame.depth
        )
        inserted = self._map.insert_keyframe(keyframe, matched)
        if inserted.keyframe_id < 0:
            return -1
        logger.debug("[Tracking] Keyframe %d inserted (%s)", inserted.keyframe_id, reason)
        self._reference_kf_id = inserted.keyframe_id
        self._T_ref_cur = SE3.identity()
        return inserted.keyframe_id

    def _result(self, frame: Frame, status: FrameStatus, **kwargs) -> FrameResult:
        num_inliers = kwargs.get("num_inliers", 0)
        quality = TrackingQuality.NOT_AVAILABLE
        if kwargs.get("pose") is not None:
            quality = TrackingQuality.from_inliers(num_inliers)
        return FrameResult(
            frame_id=frame.frame_id,
            timestamp_ns=frame.timestamp_ns,
            status=status,
            state=self.state,
            quality=quality,
            **kwargs,
        )
