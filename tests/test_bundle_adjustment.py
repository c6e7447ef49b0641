"""Tests for bundle adjustment and local mapping."""

import numpy as np
import pytest

from recon3d.backend import BundleAdjuster, LocalMapping, LoopCorrection, MapManager
from recon3d.config import BundleAdjustmentConfig
from recon3d.errors import OptimizationCancelled
from recon3d.geometry import SE3

from conftest import SyntheticScene, make_features


@pytest.fixture
def wide_scene() -> SyntheticScene:
    """Cameras spread over 2 m and turned towards points 2-4 m away."""
    return SyntheticScene(baseline=0.5, depth_range=(2.0, 4.0), converge=True)


@pytest.fixture
def noisy_problem(wide_scene: SyntheticScene):
    keyframes, points = wide_scene.build(pose_noise=0.02, point_noise=0.03)
    return keyframes, points


class TestBundleAdjuster:
    """Test suite for BundleAdjuster."""

    def test_exact_problem_has_zero_cost(self, synthetic_scene, camera_matrix):
        """Noise-free input stays put with (near) zero cost."""
        keyframes, points = synthetic_scene.build()
        result = BundleAdjuster().optimize(keyframes, points, camera_matrix)

        assert result.success
        assert result.initial_cost < 1e-3
        assert result.final_cost <= result.initial_cost

    def test_cost_decreases_monotonically(self, noisy_problem, camera_matrix):
        """The best-so-far cost never increases and ends well below the start."""
        keyframes, points = noisy_problem
        result = BundleAdjuster(max_iterations=200).optimize(keyframes, points, camera_matrix)

        assert result.success
        assert result.final_cost < 0.01 * result.initial_cost
        assert np.all(np.diff(result.cost_history) <= 0)
        assert result.cost_history[0] == pytest.approx(result.initial_cost)

    def test_fixed_keyframes_are_not_returned(self, noisy_problem, camera_matrix):
        """Only free keyframes appear in the optimized poses."""
        keyframes, points = noisy_problem
        result = BundleAdjuster().optimize(
            keyframes, points, camera_matrix, fixed_keyframe_ids={0, 1}
        )
        assert set(result.poses) == {kf.id for kf in keyframes} - {0, 1}
        assert set(result.points) == {mp.id for mp in points}

    def test_recovers_structure_with_scale_fixed(
        self, wide_scene, noisy_problem, camera_matrix
    ):
        """Fixing two keyframes pins the scale and the truth is recovered."""
        keyframes, points = noisy_problem
        result = BundleAdjuster(max_iterations=200).optimize(
            keyframes, points, camera_matrix, fixed_keyframe_ids={0, 1}
        )

        optimized = np.array([result.points[mp.id] for mp in points])
        initial = np.array([mp.position for mp in points])
        before = np.linalg.norm(initial - wide_scene.points, axis=1)
        after = np.linalg.norm(optimized - wide_scene.points, axis=1)
        assert np.median(after) < 0.2 * np.median(before)
        for kf_id, pose in result.poses.items():
            truth = wide_scene.poses[kf_id].translation
            assert np.linalg.norm(pose.translation - truth) < 0.01
        assert max(result.point_errors.values()) < 0.5

    def test_iteration_cap_marks_degraded(self, noisy_problem, camera_matrix):
        """Stopping at the cap returns the best state, flagged degraded."""
        keyframes, points = noisy_problem
        result = BundleAdjuster().optimize(keyframes, points, camera_matrix, max_iterations=1)

        assert result.success
        assert result.degraded
        assert not result.converged
        assert result.final_cost <= result.initial_cost

    def test_too_few_observations(self, noisy_problem, camera_matrix):
        """Small problems are skipped."""
        keyframes, points = noisy_problem
        result = BundleAdjuster(min_observations=10_000).optimize(keyframes, points, camera_matrix)

        assert not result.success
        assert result.num_observations == len(keyframes) * len(points)
        assert "Too few" in result.message

    def test_empty_problem(self, camera_matrix):
        """No keyframes, no optimization."""
        assert not BundleAdjuster().optimize([], [], camera_matrix).success

    def test_cancellation(self, noisy_problem, camera_matrix):
        """A superseded pass stops with OptimizationCancelled."""
        keyframes, points = noisy_problem
        with pytest.raises(OptimizationCancelled):
            BundleAdjuster().optimize(
                keyframes, points, camera_matrix, should_cancel=lambda: True
            )

    def test_inputs_untouched(self, noisy_problem, camera_matrix):
        """Optimization reads keyframes and points but never writes them."""
        keyframes, points = noisy_problem
        poses_before = [kf.pose.to_matrix() for kf in keyframes]
        positions_before = np.array([mp.position for mp in points])

        BundleAdjuster().optimize(keyframes, points, camera_matrix)

        for kf, before in zip(keyframes, poses_before):
            np.testing.assert_array_equal(kf.pose.to_matrix(), before)
        np.testing.assert_array_equal(np.array([mp.position for mp in points]), positions_before)


def _map_with_perturbed_keyframe(intrinsics, scene: SyntheticScene):
    manager = MapManager(intrinsics)
    keyframes = [
        manager.create_keyframe(
            i, i, scene.poses[i], make_features(scene.project(scene.poses[i]), scene.descriptors)
        )
        for i in range(4)
    ]
    indices = np.arange(len(scene.points))
    manager.initialize(keyframes[0], keyframes[1], scene.points, indices, indices)
    for keyframe in keyframes[2:]:
        manager.insert_keyframe(keyframe, {int(i): int(i) for i in indices})
    live = manager.get_keyframe(keyframes[3].id)
    live.pose = SE3.from_Rt(live.pose.rotation, live.pose.translation + [0.0, 0.03, -0.02])
    return manager, keyframes


class TestLocalMapping:
    """Test suite for LocalMapping."""

    def test_request_covers_covisible_window(self, intrinsics, synthetic_scene):
        """The request snapshot frees the keyframe and its neighbours."""
        manager, keyframes = _map_with_perturbed_keyframe(intrinsics, synthetic_scene)
        request = LocalMapping(BundleAdjustmentConfig(window_size=3)).build_request(
            manager, keyframes[3].id
        )

        assert request is not None
        assert len(request.snapshot.local_keyframe_ids) == 3
        assert keyframes[3].id in request.snapshot.local_keyframe_ids
        assert request.snapshot.version == manager.version

    def test_run_and_apply(self, intrinsics, synthetic_scene):
        """A local pass reduces the cost and its correction is applied."""
        manager, keyframes = _map_with_perturbed_keyframe(intrinsics, synthetic_scene)
        mapping = LocalMapping()

        correction = mapping.run(mapping.build_request(manager, keyframes[3].id))

        assert correction is not None
        assert correction.final_cost < correction.initial_cost
        result = mapping.apply(manager, correction, around_keyframe_id=keyframes[3].id)
        assert result.applied
        assert manager.check_invariants() == []

    def test_correction_after_loop_is_stale(self, intrinsics, synthetic_scene):
        """A pass computed before a loop closure is discarded."""
        manager, keyframes = _map_with_perturbed_keyframe(intrinsics, synthetic_scene)
        mapping = LocalMapping()
        correction = mapping.run(mapping.build_request(manager, keyframes[3].id))
        pose_before = manager.get_keyframe(keyframes[3].id).pose.copy()

        manager.apply_loop_correction(
            LoopCorrection(
                base_version=manager.version,
                query_kf_id=keyframes[3].id,
                match_kf_id=keyframes[0].id,
                relative_pose=SE3.identity(),
            )
        )
        result = mapping.apply(manager, correction)

        assert not result.applied
        assert result.message == "stale"
        np.testing.assert_array_equal(
            manager.get_keyframe(keyframes[3].id).pose.translation, pose_before.translation
        )

    def test_single_keyframe_window(self, intrinsics):
        """No request is built for an isolated keyframe."""
        manager = MapManager(intrinsics)
        assert LocalMapping().build_request(manager, 0) is None
        assert LocalMapping().build_global_request(manager) is None

    def test_global_request(self, intrinsics, synthetic_scene):
        """A global request snapshots every keyframe."""
        manager, _ = _map_with_perturbed_keyframe(intrinsics, synthetic_scene)
        request = LocalMapping().build_global_request(manager)

        assert request.is_global
        assert request.snapshot.is_global
        assert len(request.snapshot.keyframes) == manager.num_keyframes
