"""Loop closer combining place recognition, geometric verification and correction.

This module orchestrates the full loop closure pipeline for each new
keyframe:
1. Place Recognition: find visually similar, non-neighbouring keyframes
2. Geometric Verification: confirm a candidate with matching + PnP
3. Pose Graph: redistribute the drift along the trajectory
4. Global Bundle Adjustment: refine poses and points after the correction

The closer only reads map snapshots. Its output is a ``LoopCorrection``
that the map applies atomically on the tracking thread.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable

import numpy as np

from ..backend.map_manager import MapSnapshot
from ..backend.messages import LoopCorrection
from ..backend.optimizer import BundleAdjuster
from ..config import LoopClosureConfig
from ..frontend.feature_matcher import FeatureMatcher
from ..geometry import SE3
from .geometric_verification import GeometricVerifier, VerificationResult
from .place_recognition import PlaceDatabase
from .pose_graph import PoseGraph
from .vocabulary import VisualVocabulary

logger = logging.getLogger(__name__)


class LoopCloser:
    """Detects loop closures and computes the trajectory correction."""

    def __init__(
        self,
        camera_matrix: np.ndarray,
        config: LoopClosureConfig | None = None,
        matcher: FeatureMatcher | None = None,
        vocabulary: VisualVocabulary | None = None,
        bundle_adjuster: BundleAdjuster | None = None,
        covisibility_min_shared: int = 15,
        global_max_iterations: int = 100,
    ) -> None:
        """Initialize loop closer.

        Args:
            camera_matrix: 3x3 camera intrinsics
            config: Detection and verification parameters
            matcher: Feature matcher used for verification
            vocabulary: Pretrained vocabulary; trained online from the first
                keyframes when None
            bundle_adjuster: Used for the global pass after the pose graph
            covisibility_min_shared: Covisibility weight for pose graph edges
            global_max_iterations: Evaluation cap of the global pass
        """
        self._config = config or LoopClosureConfig()
        self._camera_matrix = np.asarray(camera_matrix, dtype=np.float64)
        self._verifier = GeometricVerifier(
            camera_matrix=self._camera_matrix,
            matcher=matcher,
            min_inliers=self._config.min_inliers,
            min_inlier_ratio=self._config.min_inlier_ratio,
            ransac_threshold=self._config.ransac_threshold_px,
        )
        self._bundle_adjuster = bundle_adjuster
        self._covisibility_min_shared = covisibility_min_shared
        self._global_max_iterations = global_max_iterations

        self._database = None if vocabulary is None else PlaceDatabase(vocabulary)
        self._pending: dict[int, np.ndarray] = {}
        self._num_processed = 0
        self._num_loops = 0

    @classmethod
    def from_vocabulary_path(
        cls, vocabulary_path: str | Path, camera_matrix: np.ndarray, **kwargs
    ) -> LoopCloser:
        """Create a loop closer with a vocabulary loaded from disk."""
        vocabulary = VisualVocabulary.load(vocabulary_path)
        return cls(camera_matrix=camera_matrix, vocabulary=vocabulary, **kwargs)

    @property
    def vocabulary(self) -> VisualVocabulary | None:
        """Vocabulary in use (None until trained)."""
        return None if self._database is None else self._database.vocabulary

    @property
    def database(self) -> PlaceDatabase | None:
        """Place database (None until a vocabulary exists)."""
        return self._database

    @property
    def num_loops(self) -> int:
        """Number of verified loop closures."""
        return self._num_loops

    def reset(self) -> None:
        """Forget every place; a trained vocabulary is kept."""
        vocabulary = self.vocabulary
        self._database = None if vocabulary is None else PlaceDatabase(vocabulary)
        self._pending.clear()
        self._num_processed = 0

    def process_keyframe(
        self,
        snapshot: MapSnapshot,
        keyframe_id: int,
        full_map: Callable[[], MapSnapshot] | None = None,
    ) -> LoopCorrection | None:
        """Look for a loop closing at keyframe_id and compute its correction.

        Most keyframes only add their descriptors to the place database, so
        the caller may pass a local snapshot and a way to copy the whole map;
        the copy is made only when the vocabulary is trained or a detection
        runs.

        Args:
            snapshot: Map snapshot containing keyframe_id
            keyframe_id: Newly inserted keyframe
            full_map: Returns a global snapshot; snapshot must be global
                when this is None

        Returns:
            LoopCorrection, or None if no verified loop was found
        """
        if not self._config.enabled:
            return None
        query = snapshot.keyframes.get(keyframe_id)
        if query is None:
            return None
        descriptors = query.features.descriptors

        if self._database is None:
            self._pending[keyframe_id] = descriptors
            if len(self._pending) >= self._config.vocabulary_min_keyframes:
                self._train(self._global(snapshot, full_map))
            return None

        self._num_processed += 1
        detection = None
        if self._num_processed % self._config.check_every_n_keyframes == 0:
            snapshot = self._global(snapshot, full_map)
            self._forget_culled(snapshot, keyframe_id)
            if keyframe_id in snapshot.keyframes:
                detection = self.detect(snapshot, keyframe_id)
        self._database.add(keyframe_id, descriptors)

        if detection is None:
            return None
        match_id, verification = detection
        self._num_loops += 1
        logger.info(
            "[LoopCloser] Loop %d <-> %d verified (%d inliers)",
            keyframe_id,
            match_id,
            verification.num_inliers,
        )
        return self.correct(snapshot, keyframe_id, match_id, verification)

    def detect(
        self, snapshot: MapSnapshot, keyframe_id: int
    ) -> tuple[int, VerificationResult] | None:
        """Return (match keyframe id, verification) for the first verified candidate."""
        if self._database is None:
            return None
        query = snapshot.keyframes[keyframe_id]
        neighbours = {
            k for k, _ in snapshot.covisibility.get_connected_keyframes(keyframe_id, 1)
        }
        candidates = self._database.query(
            query.features.descriptors,
            n_candidates=self._config.n_candidates,
            min_score=self._config.min_score,
            exclude_ids=neighbours | {keyframe_id},
            max_keyframe_id=keyframe_id - self._config.min_keyframe_gap,
        )

        for candidate in candidates:
            match_kf = snapshot.keyframes.get(candidate.keyframe_id)
            if match_kf is None:
                continue
            verification = self._verifier.verify(query, match_kf, snapshot.points)
            logger.debug(
                "[LoopCloser] Candidate %d (score %.3f): %s",
                candidate.keyframe_id,
                candidate.similarity,
                "valid" if verification.is_valid else verification.reason,
            )
            if verification.is_valid:
                return candidate.keyframe_id, verification
        return None

    def correct(
        self,
        snapshot: MapSnapshot,
        query_id: int,
        match_id: int,
        verification: VerificationResult,
    ) -> LoopCorrection:
        """Distribute the loop error over the trajectory and move the points."""
        old_poses = {k: kf.pose.copy() for k, kf in snapshot.keyframes.items()}
        graph = self._build_pose_graph(snapshot)
        graph.add_loop_edge(match_id, query_id, verification.relative_pose)
        result = graph.optimize(
            fixed_ids={snapshot.first_keyframe_id},
            max_iterations=self._global_max_iterations,
        )
        poses = result.poses
        degraded = result.degraded

        points = {}
        for pid, point in snapshot.points.items():
            ref = point.reference_kf_id
            if ref not in poses:
                observers = [k for k in point.observations if k in poses]
                if not observers:
                    continue
                ref = min(observers)
            delta = poses[ref].compose(old_poses[ref].inverse())
            points[pid] = delta.transform_point(point.position)

        if self._config.run_global_ba and self._bundle_adjuster is not None:
            poses, points, ba_degraded = self._global_bundle_adjustment(
                snapshot, poses, points
            )
            degraded = degraded or ba_degraded

        fused: list[tuple[int, int]] = []
        removed: set[int] = set()
        for keep_id, remove_id in verification.point_pairs:
            if keep_id in removed or remove_id in removed or keep_id == remove_id:
                continue
            fused.append((keep_id, remove_id))
            removed.add(remove_id)

        return LoopCorrection(
            base_version=snapshot.version,
            query_kf_id=query_id,
            match_kf_id=match_id,
            relative_pose=verification.relative_pose,
            poses=poses,
            old_poses={k: old_poses[k] for k in poses},
            points=points,
            fused_points=fused,
            degraded=degraded,
        )

    def _build_pose_graph(self, snapshot: MapSnapshot) -> PoseGraph:
        """Pose graph over all keyframes with sequential, covisibility and loop edges."""
        graph = PoseGraph()
        ids = snapshot.keyframe_ids
        for kf_id in ids:
            graph.add_keyframe(kf_id, snapshot.keyframes[kf_id].pose)

        def relative(a: int, b: int) -> SE3:
            return snapshot.keyframes[a].pose.inverse().compose(snapshot.keyframes[b].pose)

        edges = set(zip(ids[:-1], ids[1:]))
        for kf_id in ids:
            for other, _ in snapshot.covisibility.get_connected_keyframes(
                kf_id, self._covisibility_min_shared
            ):
                if other > kf_id and other in snapshot.keyframes:
                    edges.add((kf_id, other))
        for a, b in sorted(edges):
            graph.add_odometry_edge(a, b, relative(a, b))
        for a, b, T_a_b in snapshot.loop_edges:
            graph.add_loop_edge(a, b, T_a_b)
        return graph

    def _global_bundle_adjustment(
        self,
        snapshot: MapSnapshot,
        poses: dict[int, SE3],
        points: dict[int, np.ndarray],
    ) -> tuple[dict[int, SE3], dict[int, np.ndarray], bool]:
        keyframes = []
        for kf_id, kf in snapshot.keyframes.items():
            corrected = kf.copy()
            corrected.pose = poses[kf_id]
            keyframes.append(corrected)
        map_points = []
        for pid, point in snapshot.points.items():
            if pid in points:
                corrected = point.copy()
                corrected.position = points[pid]
                map_points.append(corrected)

        result = self._bundle_adjuster.optimize(
            keyframes,
            map_points,
            self._camera_matrix,
            fixed_keyframe_ids={snapshot.first_keyframe_id},
            max_iterations=self._global_max_iterations,
        )
        if not result.success:
            return poses, points, False
        poses = {**poses, **result.poses}
        points = {**points, **result.points}
        return poses, points, result.degraded

    @staticmethod
    def _global(
        snapshot: MapSnapshot, full_map: Callable[[], MapSnapshot] | None
    ) -> MapSnapshot:
        if full_map is None or snapshot.is_global:
            return snapshot
        logger.debug("[LoopCloser] Copying the full map")
        return full_map()

    def _train(self, snapshot: MapSnapshot) -> None:
        """Train the online vocabulary from the buffered keyframes."""
        descriptors = np.vstack(list(self._pending.values()))
        vocabulary = VisualVocabulary.train(descriptors, self._config.vocabulary_words)
        self._database = PlaceDatabase(vocabulary)
        for kf_id in sorted(self._pending):
            if kf_id in snapshot.keyframes:
                self._database.add(kf_id, self._pending[kf_id])
        self._database.update_idf()
        self._pending.clear()

    def _forget_culled(self, snapshot: MapSnapshot, keyframe_id: int) -> None:
        for kf_id in self._database.keyframe_ids:
            if kf_id < keyframe_id and kf_id not in snapshot.keyframes:
                self._database.remove(kf_id)
