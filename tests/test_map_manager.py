"""Tests for MapManager: insertion, culling, snapshots and corrections."""

import numpy as np
import pytest

from recon3d.backend import BACorrection, LoopCorrection, MapManager
from recon3d.frontend import FeatureMatcher
from recon3d.geometry import SE3

from conftest import SyntheticScene, make_features, random_descriptors


def _build_map(intrinsics, scene: SyntheticScene, n_keyframes: int = 3, matcher=None):
    manager = MapManager(intrinsics, matcher=matcher)
    keyframes = [
        manager.create_keyframe(
            i,
            i * 100_000_000,
            scene.poses[i],
            make_features(scene.project(scene.poses[i]), scene.descriptors),
        )
        for i in range(n_keyframes)
    ]
    indices = np.arange(len(scene.points))
    manager.initialize(keyframes[0], keyframes[1], scene.points, indices, indices)
    for keyframe in keyframes[2:]:
        manager.insert_keyframe(keyframe, {int(i): int(i) for i in indices})
    return manager, keyframes


def _shifted(pose: SE3, offset) -> SE3:
    return SE3.from_Rt(pose.rotation, pose.translation + np.asarray(offset, dtype=float))


class TestMapConstruction:
    """Test suite for initialization and keyframe insertion."""

    def test_initialize(self, intrinsics, synthetic_scene):
        """Bootstrap inserts two keyframes and one point per correspondence."""
        manager, _ = _build_map(intrinsics, synthetic_scene, n_keyframes=2)

        assert manager.num_keyframes == 2
        assert manager.num_points == len(synthetic_scene.points)
        assert manager.version == 1
        assert manager.check_invariants() == []

    def test_insert_keyframe_associates_points(self, intrinsics, synthetic_scene):
        """Tracked points gain an observation from the new keyframe."""
        manager, keyframes = _build_map(intrinsics, synthetic_scene, n_keyframes=3)

        point = manager.get_point(0)
        assert set(point.observations) == {kf.id for kf in keyframes}
        assert manager.covisibility.weight(keyframes[0].id, keyframes[2].id) == 150
        assert manager.check_invariants() == []

    def test_keyframe_without_shared_points_is_dropped(self, intrinsics, synthetic_scene):
        """A keyframe that observes nothing is not kept."""
        manager, _ = _build_map(intrinsics, synthetic_scene, n_keyframes=2)
        orphan = manager.create_keyframe(
            9, 0, synthetic_scene.poses[2], make_features(np.zeros((0, 2)), np.zeros((0, 32)))
        )

        result = manager.insert_keyframe(orphan, {})

        assert result.keyframe_id == -1
        assert manager.num_keyframes == 2
        assert manager.check_invariants() == []

    def test_new_points_are_triangulated(self, intrinsics, synthetic_scene):
        """Unmatched keypoints seen by a neighbour become new map points."""
        rng = np.random.default_rng(5)
        extra = np.column_stack(
            [rng.uniform(-0.8, 0.8, 50), rng.uniform(-0.5, 0.5, 50), rng.uniform(3.0, 4.0, 50)]
        )
        extra_desc = random_descriptors(50, seed=99)
        all_points = np.vstack([synthetic_scene.points, extra])
        all_desc = np.vstack([synthetic_scene.descriptors, extra_desc])
        K = intrinsics.to_matrix()

        def features_at(pose):
            uv = (K @ pose.inverse().transform_points(all_points).T).T
            return make_features(uv[:, :2] / uv[:, 2:], all_desc)

        manager = MapManager(intrinsics, matcher=FeatureMatcher())
        poses = synthetic_scene.poses
        kf0 = manager.create_keyframe(0, 0, poses[0], features_at(poses[0]))
        kf1 = manager.create_keyframe(1, 1, poses[1], features_at(poses[1]))
        n = len(synthetic_scene.points)
        manager.initialize(kf0, kf1, synthetic_scene.points, np.arange(n), np.arange(n))

        kf2 = manager.create_keyframe(2, 2, poses[2], features_at(poses[2]))
        result = manager.insert_keyframe(kf2, {i: i for i in range(n)})

        assert result.num_associated == n
        assert len(result.new_point_ids) == 50
        new_positions = np.array([manager.get_point(p).position for p in result.new_point_ids])
        errors = np.min(
            np.linalg.norm(new_positions[:, None, :] - extra[None, :, :], axis=2), axis=1
        )
        assert errors.max() < 1e-2
        assert manager.check_invariants() == []


class TestMapMaintenance:
    """Test suite for culling and fusion."""

    def test_cull_high_error_points(self, intrinsics, synthetic_scene):
        """Points with repeated high BA error are removed."""
        manager, _ = _build_map(intrinsics, synthetic_scene)
        manager.get_point(7).high_error_strikes = 3

        removed = manager.cull_map_points()

        assert removed == [7]
        assert manager.get_point(7) is None
        assert manager.check_invariants() == []

    def test_cull_redundant_keyframes(self, intrinsics, synthetic_scene):
        """A keyframe whose points are all seen by three others is culled."""
        manager, keyframes = _build_map(intrinsics, synthetic_scene, n_keyframes=4)

        removed = manager.cull_keyframes()

        assert removed == [keyframes[1].id]
        assert manager.num_keyframes == 3
        assert manager.check_invariants() == []

    def test_first_and_newest_keyframes_survive(self, intrinsics, synthetic_scene):
        """The gauge keyframe and the newest keyframe are never culled."""
        manager, keyframes = _build_map(intrinsics, synthetic_scene, n_keyframes=5)

        manager.cull_keyframes()

        assert manager.get_keyframe(keyframes[0].id) is not None
        assert manager.get_keyframe(keyframes[-1].id) is not None

    def test_fuse_points(self, intrinsics, synthetic_scene):
        """Fusing removes the duplicate and keeps the map consistent."""
        manager, _ = _build_map(intrinsics, synthetic_scene)
        version = manager.version

        assert manager.fuse_points(0, 1)

        assert manager.get_point(1) is None
        assert manager.num_points == len(synthetic_scene.points) - 1
        assert manager.version == version + 1
        assert manager.check_invariants() == []

    def test_fuse_missing_point(self, intrinsics, synthetic_scene):
        """Fusing with an unknown id is refused."""
        manager, _ = _build_map(intrinsics, synthetic_scene)
        assert not manager.fuse_points(0, 10_000)
        assert not manager.fuse_points(3, 3)


class TestSnapshotsAndCorrections:
    """Test suite for versioned snapshots and correction staleness."""

    def test_snapshot_is_independent(self, intrinsics, synthetic_scene):
        """Changing a snapshot never changes the map."""
        manager, keyframes = _build_map(intrinsics, synthetic_scene)
        snapshot = manager.snapshot()

        snapshot.keyframes[keyframes[1].id].pose = SE3.identity()
        snapshot.points[0].position[:] = 0.0

        assert snapshot.version == manager.version
        assert snapshot.is_global
        np.testing.assert_allclose(
            manager.get_keyframe(keyframes[1].id).pose.translation, [0.15, 0.0, 0.0]
        )
        assert np.linalg.norm(manager.get_point(0).position) > 1.0

    def test_local_snapshot_includes_observers(self, intrinsics, synthetic_scene):
        """A local snapshot carries every keyframe observing its points."""
        manager, keyframes = _build_map(intrinsics, synthetic_scene)
        snapshot = manager.snapshot([keyframes[2].id])

        assert snapshot.local_keyframe_ids == frozenset({keyframes[2].id})
        assert set(snapshot.keyframes) == {kf.id for kf in keyframes}
        assert not snapshot.is_global

    def test_ba_correction_applied(self, intrinsics, synthetic_scene):
        """A current correction moves poses and points and bumps the version."""
        manager, keyframes = _build_map(intrinsics, synthetic_scene)
        base = manager.version
        new_pose = _shifted(keyframes[2].pose, [0.0, 0.01, 0.0])

        applied = manager.apply_ba_correction(
            BACorrection(
                base_version=base,
                poses={keyframes[2].id: new_pose},
                points={0: np.array([0.0, 0.0, 4.0])},
                high_error_point_ids={5},
            )
        )

        assert applied
        assert manager.version == base + 1
        np.testing.assert_allclose(manager.get_keyframe(keyframes[2].id).pose.translation[1], 0.01)
        np.testing.assert_allclose(manager.get_point(0).position, [0.0, 0.0, 4.0])
        assert manager.get_point(5).high_error_strikes == 1

    def test_older_ba_correction_discarded(self, intrinsics, synthetic_scene):
        """A correction older than one already applied is stale."""
        manager, keyframes = _build_map(intrinsics, synthetic_scene)
        old_base = manager.version
        manager.fuse_points(0, 1)
        new_base = manager.version

        assert manager.apply_ba_correction(BACorrection(base_version=new_base))
        pose_before = manager.get_keyframe(keyframes[2].id).pose.copy()
        stale = BACorrection(
            base_version=old_base,
            poses={keyframes[2].id: _shifted(pose_before, [1.0, 0.0, 0.0])},
        )

        assert not manager.accepts("ba", old_base)
        assert not manager.apply_ba_correction(stale)
        np.testing.assert_allclose(
            manager.get_keyframe(keyframes[2].id).pose.translation, pose_before.translation
        )

    def test_loop_correction_invalidates_pending_work(self, intrinsics, synthetic_scene):
        """After a loop closure, older BA and loop results are discarded."""
        manager, keyframes = _build_map(intrinsics, synthetic_scene)
        base = manager.version

        loop = LoopCorrection(
            base_version=base,
            query_kf_id=keyframes[2].id,
            match_kf_id=keyframes[0].id,
            relative_pose=keyframes[0].pose.inverse().compose(keyframes[2].pose),
        )
        assert manager.apply_loop_correction(loop)

        assert not manager.accepts("ba", base)
        assert not manager.accepts("loop", base)
        assert manager.accepts("ba", manager.version)
        assert not manager.apply_ba_correction(BACorrection(base_version=base))
        assert len(manager.loop_edges) == 1

    def test_later_keyframes_follow_loop_correction(self, intrinsics, synthetic_scene):
        """Keyframes newer than the corrected ones move with the newest correction."""
        manager, keyframes = _build_map(intrinsics, synthetic_scene)
        offset = [0.0, 0.2, 0.0]
        corrected = {kf.id: _shifted(kf.pose, offset) for kf in keyframes[:2]}
        old = {kf.id: kf.pose.copy() for kf in keyframes[:2]}

        manager.apply_loop_correction(
            LoopCorrection(
                base_version=manager.version,
                query_kf_id=keyframes[1].id,
                match_kf_id=keyframes[0].id,
                relative_pose=SE3.identity(),
                poses=corrected,
                old_poses=old,
            )
        )

        np.testing.assert_allclose(
            manager.get_keyframe(keyframes[2].id).pose.translation, [0.3, 0.2, 0.0], atol=1e-12
        )

    def test_reset(self, intrinsics, synthetic_scene):
        """Reset empties the map and invalidates outstanding corrections."""
        manager, _ = _build_map(intrinsics, synthetic_scene)
        base = manager.version

        manager.reset()

        assert manager.num_keyframes == 0
        assert manager.num_points == 0
        assert manager.version > base
        assert not manager.accepts("ba", base)


class TestExport:
    """Test suite for map export."""

    def test_export_point_cloud(self, intrinsics, synthetic_scene):
        """Export carries every point, a camera per keyframe and unit normals."""
        manager, keyframes = _build_map(intrinsics, synthetic_scene)
        cloud = manager.export_point_cloud()

        assert len(cloud) == len(synthetic_scene.points)
        assert len(cloud.cameras) == len(keyframes)
        np.testing.assert_allclose(np.linalg.norm(cloud.normals, axis=1), 1.0, atol=1e-9)
        np.testing.assert_array_equal(np.sort(cloud.point_ids), np.arange(len(cloud)))

    def test_mapped_area(self, intrinsics, synthetic_scene):
        """Mapped area is the ground-plane hull of the points."""
        manager, _ = _build_map(intrinsics, synthetic_scene)
        # Points span x in [-1, 1] and z in [3, 5]
        assert 0.0 < manager.mapped_area() <= 4.0 + 1e-9

    def test_empty_map_area(self, intrinsics):
        """An empty map covers no area."""
        assert MapManager(intrinsics).mapped_area() == pytest.approx(0.0)
