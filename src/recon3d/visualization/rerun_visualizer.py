"""Rerun-based visualization for the reconstruction pipeline."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import rerun as rr
import rerun.blueprint as rrb

if TYPE_CHECKING:
    from ..frontend.frame import Frame
    from ..frontend.pose_estimator import FrameResult
    from ..geometry import SE3, CameraIntrinsics, Mesh, PointCloud


class RerunVisualizer:
    """Rerun-based visualization of tracking, map and mesh.

    Entity hierarchy:
        camera/
            image       - Input image
            features    - Detected features (green)
        world/
            camera      - Live camera pose and pinhole
            trajectory  - Tracked camera positions (yellow)
            map         - Sparse map points
            keyframes   - Keyframe positions
            loop_closures - Accepted loop edges (red)
            mesh        - Extracted surface
    """

    def __init__(
        self,
        app_name: str = "recon3d",
        spawn: bool = True,
        intrinsics: CameraIntrinsics | None = None,
    ) -> None:
        """Initialize Rerun visualization.

        Args:
            app_name: Name for the Rerun application window
            spawn: If True, automatically spawn the Rerun viewer
            intrinsics: Calibration used to draw the camera frustum
        """
        rr.init(app_name, spawn=spawn)
        self._intrinsics = intrinsics
        self._trajectory: list[np.ndarray] = []
        self._setup_coordinate_system()
        self._setup_layout()

    def _setup_coordinate_system(self) -> None:
        """Camera convention: X-right, Y-down, Z-forward."""
        rr.log("world", rr.ViewCoordinates.RDF, static=True)

    def _setup_layout(self) -> None:
        blueprint = rrb.Blueprint(
            rrb.Horizontal(
                contents=[
                    rrb.Spatial2DView(name="Camera", origin="camera"),
                    rrb.Spatial3DView(name="Map", origin="world"),
                ]
            )
        )
        rr.send_blueprint(blueprint)

    def log_frame(
        self,
        frame: Frame,
        result: FrameResult,
        keypoints: np.ndarray | None = None,
    ) -> None:
        """Log an input frame, its features and the tracked pose.

        Args:
            frame: Processed frame
            result: Tracking result for the frame
            keypoints: Nx2 feature locations to overlay
        """
        rr.set_time("timestamp", duration=frame.timestamp_ns / 1e9)
        rr.log("camera/image", rr.Image(frame.image))
        if keypoints is not None and len(keypoints) > 0:
            rr.log(
                "camera/features",
                rr.Points2D(keypoints, colors=[[0, 255, 0]], radii=3.0),
            )
        rr.log(
            "status",
            rr.TextLog(
                f"{result.status.name} {result.state.name} inliers={result.num_inliers}"
            ),
        )
        if result.pose is not None:
            self.log_camera_pose(result.pose)
            self._trajectory.append(result.pose.translation.copy())
            self.log_trajectory(np.array(self._trajectory))

    def log_camera_pose(self, pose: SE3, entity_path: str = "world/camera") -> None:
        """Log a T_world_camera pose (with a frustum when intrinsics are known)."""
        rr.log(
            entity_path,
            rr.Transform3D(translation=pose.translation, mat3x3=pose.rotation),
        )
        if self._intrinsics is not None and self._intrinsics.width > 0:
            rr.log(
                entity_path,
                rr.Pinhole(
                    image_from_camera=self._intrinsics.to_matrix(),
                    resolution=[self._intrinsics.width, self._intrinsics.height],
                ),
            )

    def log_trajectory(
        self,
        positions: np.ndarray,
        entity_path: str = "world/trajectory",
    ) -> None:
        """Log camera trajectory as a 3D line strip.

        Args:
            positions: Nx3 array of camera positions in world frame
            entity_path: Rerun entity path for the trajectory
        """
        if len(positions) < 2:
            return
        rr.log(
            entity_path,
            rr.LineStrips3D([positions], colors=[[255, 255, 0]], radii=0.01),
        )

    def log_point_cloud(self, cloud: PointCloud, entity_path: str = "world/map") -> None:
        """Log map points (own colors, or colored by height) and keyframe positions."""
        positions = cloud.positions
        valid = np.isfinite(positions).all(axis=1)
        if not np.any(valid):
            return
        positions = positions[valid]

        if cloud.colors is not None:
            colors = cloud.colors[valid]
        else:
            # Purple to white by height (y points down)
            heights = positions[:, 1]
            h_min, h_max = np.percentile(heights, [5, 95])
            normalized = np.clip((heights - h_min) / max(h_max - h_min, 0.1), 0, 1)
            colors = np.zeros((len(positions), 3), dtype=np.uint8)
            colors[:, 0] = (128 + normalized * 127).astype(np.uint8)
            colors[:, 1] = (normalized * 255).astype(np.uint8)
            colors[:, 2] = (255 - normalized * 127).astype(np.uint8)

        rr.log(entity_path, rr.Points3D(positions, colors=colors, radii=0.02))
        if cloud.cameras:
            rr.log(
                "world/keyframes",
                rr.Points3D(
                    np.array([c.position for c in cloud.cameras]),
                    colors=[[0, 255, 255]],
                    radii=0.04,
                ),
            )

    def log_loop_closure(
        self,
        from_position: np.ndarray,
        to_position: np.ndarray,
        entity_path: str = "world/loop_closures",
    ) -> None:
        """Log a loop closure edge as a red line between two keyframes."""
        rr.log(
            entity_path,
            rr.LineStrips3D(
                [[from_position, to_position]], colors=[[255, 0, 0]], radii=0.02
            ),
        )

    def log_mesh(self, mesh: Mesh, entity_path: str = "world/mesh") -> None:
        """Log a triangle mesh with its vertex colors and normals."""
        if mesh.num_triangles == 0:
            return
        rr.log(
            entity_path,
            rr.Mesh3D(
                vertex_positions=mesh.vertices,
                triangle_indices=mesh.triangles,
                vertex_normals=mesh.vertex_normals,
                vertex_colors=mesh.vertex_colors,
            ),
        )
