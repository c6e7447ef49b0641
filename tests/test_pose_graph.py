"""Tests for pose graph optimization."""

import numpy as np
import pytest

from recon3d.geometry import SE3
from recon3d.loop_closure import PoseGraph
from recon3d.loop_closure.pose_graph import relative_error


def _translation(x: float, y: float = 0.0, z: float = 0.0) -> SE3:
    return SE3.from_Rt(np.eye(3), np.array([x, y, z]))


def _drifting_chain(n: int = 6, drift: float = 0.05) -> PoseGraph:
    """Poses along x where each odometry step also drifts sideways."""
    graph = PoseGraph()
    step = _translation(1.0, drift)
    pose = SE3.identity()
    graph.add_keyframe(0, pose)
    for i in range(1, n):
        pose = pose.compose(step)
        graph.add_keyframe(i, pose)
        graph.add_odometry_edge(i - 1, i, step)
    return graph


class TestRelativeError:
    """Test suite for relative_error."""

    def test_zero_for_consistent_measurement(self):
        """A measurement matching the poses has zero error."""
        a = _translation(1.0)
        rotation = SE3.exp(np.array([0.0, 0.2, 0.0, 0.0, 0.0, 0.0])).rotation
        b = SE3.from_Rt(rotation, np.array([2.0, 0.5, 0.0]))
        error = relative_error(a, b, a.inverse().compose(b))
        np.testing.assert_allclose(error, np.zeros(6), atol=1e-12)

    def test_translation_offset(self):
        """A translation mismatch shows up in the last three components."""
        error = relative_error(SE3.identity(), _translation(1.0), _translation(1.5))
        np.testing.assert_allclose(error, [0, 0, 0, 0.5, 0, 0], atol=1e-12)


class TestPoseGraph:
    """Test suite for PoseGraph."""

    def test_loop_edge_removes_drift(self):
        """Closing the loop pulls the last pose back towards the truth."""
        graph = _drifting_chain()
        truth_end = _translation(5.0)
        drift_before = np.linalg.norm(graph.get_pose(5).translation - truth_end.translation)

        graph.add_loop_edge(0, 5, truth_end)
        result = graph.optimize()

        drift_after = np.linalg.norm(result.poses[5].translation - truth_end.translation)
        assert drift_before == pytest.approx(0.25)
        assert drift_after < 0.05
        assert result.final_cost < result.initial_cost
        assert result.converged
        assert not result.degraded

    def test_fixed_pose_does_not_move(self):
        """The anchor keyframe keeps its pose."""
        graph = _drifting_chain()
        graph.add_loop_edge(0, 5, _translation(5.0))

        result = graph.optimize(fixed_ids={0})

        np.testing.assert_allclose(result.poses[0].to_matrix(), np.eye(4))

    def test_consistent_graph_is_unchanged(self):
        """Without contradicting edges the poses stay where they are."""
        graph = _drifting_chain(drift=0.0)
        before = graph.poses

        result = graph.optimize()

        assert result.final_cost == pytest.approx(0.0, abs=1e-12)
        for kf_id, pose in result.poses.items():
            np.testing.assert_allclose(pose.translation, before[kf_id].translation, atol=1e-9)

    def test_graph_without_edges(self):
        """Optimization without constraints is a no-op."""
        graph = PoseGraph()
        graph.add_keyframe(0, SE3.identity())
        graph.add_keyframe(1, _translation(1.0))

        result = graph.optimize()

        assert result.converged
        assert set(result.poses) == {0, 1}

    def test_counters(self):
        """Edge and pose counters track what was added."""
        graph = _drifting_chain(n=4)
        graph.add_loop_edge(0, 3, _translation(3.0))

        assert graph.num_poses == 4
        assert graph.num_edges == 4
        assert graph.num_loop_edges == 1

    def test_poses_are_copies(self):
        """Mutating the returned poses does not change the graph."""
        graph = _drifting_chain(n=2)
        graph.poses[1].translation[:] = 100.0
        assert graph.get_pose(1).translation[0] == pytest.approx(1.0)
