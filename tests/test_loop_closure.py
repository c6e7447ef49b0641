"""Tests for loop verification, detection and correction on a synthetic loop."""

import numpy as np
import pytest

from recon3d.backend import CovisibilityGraph, KeyFrame, MapPoint, MapSnapshot
from recon3d.config import LoopClosureConfig
from recon3d.geometry import SE3, project_points
from recon3d.loop_closure import GeometricVerifier, LoopCloser, VisualVocabulary

from conftest import FOCAL, HEIGHT, WIDTH, make_features, random_descriptors

N_KEYFRAMES = 12
LAST = N_KEYFRAMES - 1
DRIFT_STEP = np.array([0.0, 0.01, 0.02])  # per keyframe
REVISIT_OFFSET = 1000
CHAIN_OFFSET = 2000


def _box(n: int, rng: np.random.Generator) -> np.ndarray:
    return np.column_stack(
        [rng.uniform(-1.0, 1.0, n), rng.uniform(-0.7, 0.7, n), rng.uniform(3.0, 5.0, n)]
    )


class SyntheticLoop:
    """A trajectory that leaves a place and returns to it with drift.

    The camera moves 1.2 m along +x and comes back 0.3 m higher. Every
    estimated pose is off by DRIFT_STEP per keyframe. Keyframe 0 and the
    last keyframe see the same landmarks, but the last keyframe has mapped
    them again as separate points placed with its own drifted pose, so the
    two keyframes share no map points. Consecutive keyframes share a set
    of chain points with their own random descriptors.
    """

    def __init__(self, n_landmarks: int = 150, n_chain: int = 20, n_overlap: int = 20):
        rng = np.random.default_rng(0)
        self.K = np.array([[FOCAL, 0, WIDTH / 2], [0, FOCAL, HEIGHT / 2], [0, 0, 1]])
        self.true_poses = []
        for i in range(N_KEYFRAMES):
            x, y = (0.2 * i, 0.0) if i <= 6 else (0.2 * (N_KEYFRAMES - i), 0.3)
            self.true_poses.append(SE3.from_Rt(np.eye(3), np.array([x, y, 0.0])))
        self.estimated_poses = [
            SE3.from_Rt(pose.rotation, pose.translation + i * DRIFT_STEP)
            for i, pose in enumerate(self.true_poses)
        ]
        self.landmarks = _box(n_landmarks, rng)
        landmark_descriptors = random_descriptors(n_landmarks, seed=11)

        self._seen: dict[int, list[int]] = {k: [] for k in range(N_KEYFRAMES)}
        self._world: dict[int, np.ndarray] = {}
        self._descriptor: dict[int, np.ndarray] = {}
        self._reference: dict[int, int] = {}

        # The neighbour of each end sees too few landmarks to verify on its own
        for j in range(n_landmarks):
            shared = j < n_overlap
            self._observe(j, self.landmarks[j], landmark_descriptors[j], [0] + [1] * shared)
            self._observe(
                REVISIT_OFFSET + j,
                self.landmarks[j],
                landmark_descriptors[j],
                [LAST] + [LAST - 1] * shared,
            )
        for i in range(N_KEYFRAMES - 1):
            chain = _box(n_chain, rng)
            descriptors = random_descriptors(n_chain, seed=50 + i)
            for j in range(n_chain):
                self._observe(CHAIN_OFFSET + n_chain * i + j, chain[j], descriptors[j], [i, i + 1])

        self.keyframes: dict[int, KeyFrame] = {}
        observations: dict[int, dict[int, int]] = {pid: {} for pid in self._world}
        for kf_id, point_ids in self._seen.items():
            world = np.array([self._world[p] for p in point_ids])
            uv, _ = project_points(self.K, self.true_poses[kf_id].inverse(), world)
            descriptors = np.array([self._descriptor[p] for p in point_ids])
            self.keyframes[kf_id] = KeyFrame(
                id=kf_id,
                frame_id=kf_id,
                timestamp_ns=kf_id * 100_000_000,
                pose=self.estimated_poses[kf_id],
                features=make_features(uv, descriptors),
                keypoint_to_point=dict(enumerate(point_ids)),
            )
            for kp_idx, pid in enumerate(point_ids):
                observations[pid][kf_id] = kp_idx

        self.points: dict[int, MapPoint] = {}
        for pid, world in self._world.items():
            ref = self._reference[pid]
            drift = self.estimated_poses[ref].compose(self.true_poses[ref].inverse())
            self.points[pid] = MapPoint(
                id=pid,
                position=drift.transform_point(world),
                descriptor=self._descriptor[pid],
                observations=observations[pid],
                reference_kf_id=ref,
            )

        self.covisibility = CovisibilityGraph(15)
        for kf_id, point_ids in self._seen.items():
            self.covisibility.add_keyframe(kf_id, point_ids)

    def _observe(self, pid: int, world, descriptor, observers: list[int]) -> None:
        self._world[pid] = np.asarray(world, dtype=np.float64)
        self._descriptor[pid] = descriptor
        self._reference[pid] = observers[0]
        for kf_id in observers:
            self._seen[kf_id].append(pid)

    def snapshot(self) -> MapSnapshot:
        return MapSnapshot(
            version=1,
            keyframes=dict(self.keyframes),
            points=dict(self.points),
            covisibility=self.covisibility,
            first_keyframe_id=0,
            local_keyframe_ids=frozenset(self.keyframes),
        )

    def local_snapshot(self, kf_id: int) -> MapSnapshot:
        """A keyframe, its points, and the other keyframes observing them."""
        point_ids = set(self._seen[kf_id])
        kf_ids = {k for p in point_ids for k in self.points[p].observations}
        return MapSnapshot(
            version=1,
            keyframes={k: self.keyframes[k] for k in kf_ids},
            points={p: self.points[p] for p in point_ids},
            covisibility=self.covisibility,
            first_keyframe_id=0,
            local_keyframe_ids=frozenset({kf_id}),
        )

    def vocabulary(self) -> VisualVocabulary:
        descriptors = np.vstack([kf.features.descriptors for kf in self.keyframes.values()])
        return VisualVocabulary.train(descriptors, n_words=100, seed=0)

    def drift_of(self, kf_id: int, pose: SE3) -> float:
        return float(np.linalg.norm(pose.translation - self.true_poses[kf_id].translation))


REJECTIONS = {
    "too few feature matches",
    "too few mapped matches",
    "PnP failed",
    "too few PnP inliers",
    "reprojection error too high",
}


@pytest.fixture(scope="module")
def loop() -> SyntheticLoop:
    return SyntheticLoop()


@pytest.fixture
def verifier(loop) -> GeometricVerifier:
    return GeometricVerifier(loop.K)


def _config(**overrides) -> LoopClosureConfig:
    return LoopClosureConfig(min_keyframe_gap=5, run_global_ba=False, **overrides)


class TestGeometricVerifier:
    """Test suite for GeometricVerifier."""

    def test_accepts_revisit(self, loop, verifier):
        """A keyframe seeing the same landmarks is localized against the old map."""
        query, match = loop.keyframes[LAST], loop.keyframes[0]

        result = verifier.verify(query, match, loop.points)

        assert result.is_valid, result.reason
        assert result.num_inliers >= 140
        assert result.inlier_ratio > 0.9
        truth = loop.true_poses[0].inverse().compose(loop.true_poses[LAST])
        np.testing.assert_allclose(result.relative_pose.translation, truth.translation, atol=1e-3)
        np.testing.assert_allclose(result.relative_pose.rotation, np.eye(3), atol=1e-4)
        np.testing.assert_allclose(
            result.corrected_pose.translation, loop.true_poses[LAST].translation, atol=1e-3
        )

    def test_point_pairs_link_duplicates(self, loop, verifier):
        """Inliers pair each old landmark with its re-mapped copy."""
        result = verifier.verify(loop.keyframes[LAST], loop.keyframes[0], loop.points)

        assert len(result.point_pairs) >= 140
        assert all(query == match + REVISIT_OFFSET for match, query in result.point_pairs)

    def test_rejects_unrelated_place(self, loop, verifier):
        """A keyframe from the far end of the trajectory shares no descriptors."""
        result = verifier.verify(loop.keyframes[6], loop.keyframes[0], loop.points)

        assert not result.is_valid
        assert result.reason == "too few feature matches"

    def test_rejects_lookalike_with_wrong_layout(self, loop, verifier):
        """Matching descriptors in an inconsistent image layout do not verify."""
        match = loop.keyframes[0]
        rng = np.random.default_rng(3)
        scrambled = make_features(
            match.features.points[rng.permutation(len(match.features))],
            match.features.descriptors,
        )
        lookalike = KeyFrame(
            id=0,
            frame_id=0,
            timestamp_ns=0,
            pose=match.pose,
            features=scrambled,
            keypoint_to_point=dict(match.keypoint_to_point),
        )

        result = verifier.verify(loop.keyframes[LAST], lookalike, loop.points)

        assert not result.is_valid
        assert result.reason in REJECTIONS

    def test_rejects_candidate_without_map_points(self, loop, verifier):
        """Matches to keypoints that carry no map point cannot be localized."""
        match = loop.keyframes[0]
        unmapped = KeyFrame(
            id=0, frame_id=0, timestamp_ns=0, pose=match.pose, features=match.features
        )

        result = verifier.verify(loop.keyframes[LAST], unmapped, loop.points)

        assert not result.is_valid
        assert result.reason == "too few mapped matches"

    def test_rejects_inconsistent_structure(self, loop, verifier):
        """Landmarks whose positions do not explain the query view are rejected."""
        rng = np.random.default_rng(4)
        shuffled = {}
        ids = [pid for pid in loop.points if pid < REVISIT_OFFSET]
        for pid, other in zip(ids, rng.permutation(ids)):
            moved = loop.points[pid].copy()
            moved.position = loop.points[int(other)].position.copy()
            shuffled[pid] = moved

        result = verifier.verify(loop.keyframes[LAST], loop.keyframes[0], shuffled)

        assert not result.is_valid
        assert result.reason in {"PnP failed", "too few PnP inliers", "reprojection error too high"}


class TestLoopCloser:
    """Test suite for LoopCloser."""

    def test_detects_loop_only_at_revisit(self, loop):
        """Only the returning keyframe closes a loop, against the first keyframe."""
        closer = LoopCloser(loop.K, config=_config(), vocabulary=loop.vocabulary())
        snapshot = loop.snapshot()

        results = [closer.process_keyframe(snapshot, kf_id) for kf_id in range(N_KEYFRAMES)]

        assert all(r is None for r in results[:-1])
        correction = results[-1]
        assert correction is not None
        assert (correction.query_kf_id, correction.match_kf_id) == (LAST, 0)
        assert closer.num_loops == 1
        assert closer.database.keyframe_ids == list(range(N_KEYFRAMES))

    def test_correction_reduces_drift(self, loop):
        """The pose graph pulls the trajectory and its points back towards the truth."""
        closer = LoopCloser(loop.K, config=_config(), vocabulary=loop.vocabulary())
        snapshot = loop.snapshot()
        for kf_id in range(LAST):
            closer.process_keyframe(snapshot, kf_id)

        correction = closer.process_keyframe(snapshot, LAST)

        assert correction is not None
        assert not correction.degraded
        assert correction.base_version == snapshot.version
        before = loop.drift_of(LAST, loop.estimated_poses[LAST])
        after = loop.drift_of(LAST, correction.poses[LAST])
        assert before == pytest.approx(LAST * np.linalg.norm(DRIFT_STEP))
        assert after < 0.2 * before
        # The gauge keyframe stays put
        np.testing.assert_allclose(
            correction.poses[0].to_matrix(), loop.estimated_poses[0].to_matrix()
        )
        np.testing.assert_allclose(
            correction.old_poses[LAST].translation, loop.estimated_poses[LAST].translation
        )

        revisit = [pid for pid in loop.points if REVISIT_OFFSET <= pid < CHAIN_OFFSET]
        error_before = np.mean(
            [np.linalg.norm(loop.points[p].position - loop.landmarks[p - REVISIT_OFFSET])
             for p in revisit]
        )
        error_after = np.mean(
            [np.linalg.norm(correction.points[p] - loop.landmarks[p - REVISIT_OFFSET])
             for p in revisit]
        )
        assert error_after < 0.2 * error_before

    def test_correction_fuses_duplicate_points(self, loop):
        """Re-mapped landmarks are scheduled for fusion into the originals."""
        closer = LoopCloser(loop.K, config=_config(), vocabulary=loop.vocabulary())
        snapshot = loop.snapshot()
        detection = closer.detect(snapshot, LAST)
        assert detection is not None
        match_id, verification = detection

        correction = closer.correct(snapshot, LAST, match_id, verification)

        assert len(correction.fused_points) >= 140
        assert all(remove == keep + REVISIT_OFFSET for keep, remove in correction.fused_points)

    def test_disabled(self, loop):
        """A disabled closer ignores keyframes."""
        closer = LoopCloser(
            loop.K, config=_config(enabled=False), vocabulary=loop.vocabulary()
        )

        assert closer.process_keyframe(loop.snapshot(), LAST) is None
        assert closer.database.size == 0

    def test_full_map_copied_only_for_detection(self, loop):
        """Keyframes that are only added to the database never copy the whole map."""
        closer = LoopCloser(
            loop.K, config=_config(check_every_n_keyframes=3), vocabulary=loop.vocabulary()
        )
        copies = []

        def full_map() -> MapSnapshot:
            copies.append(1)
            return loop.snapshot()

        results = [
            closer.process_keyframe(loop.local_snapshot(kf_id), kf_id, full_map)
            for kf_id in range(N_KEYFRAMES)
        ]

        # Detection runs on the 3rd, 6th, 9th and 12th keyframe
        assert len(copies) == 4
        assert results[-1] is not None
        assert results[-1].match_kf_id == 0

    def test_online_vocabulary_copies_map_once(self, loop):
        """Training the vocabulary is the only full copy before detection starts."""
        closer = LoopCloser(
            loop.K,
            config=_config(vocabulary_min_keyframes=4, vocabulary_words=50,
                           check_every_n_keyframes=100),
        )
        copies = []

        def full_map() -> MapSnapshot:
            copies.append(1)
            return loop.snapshot()

        for kf_id in range(4):
            assert closer.vocabulary is None
            closer.process_keyframe(loop.local_snapshot(kf_id), kf_id, full_map)
        for kf_id in range(4, N_KEYFRAMES):
            closer.process_keyframe(loop.local_snapshot(kf_id), kf_id, full_map)

        assert closer.vocabulary is not None
        assert len(copies) == 1
        assert closer.database.keyframe_ids == list(range(N_KEYFRAMES))
