"""Mesh building from a map snapshot.

The builder fuses keyframe depth maps (or, without depth, the sparse map
points along their viewing rays) into a TSDF volume, extracts the
surface and textures it from the keyframe images. It only reads the
snapshot it is given and never touches the live map.
"""

from __future__ import annotations

import logging

import cv2
import numpy as np

from ..backend.keyframe import KeyFrame
from ..backend.map_manager import MapSnapshot
from ..config import DenseConfig
from ..geometry import CameraIntrinsics, Mesh
from .mesh_ops import (
    laplacian_smooth,
    remove_degenerate_triangles,
    remove_unreferenced_vertices,
    triangle_normals,
    vertex_normals,
)
from .tsdf import TSDFVolume

logger = logging.getLogger(__name__)

# Strip below the atlas tiles for triangles no keyframe sees
BLANK_ROWS = 4
BLANK_RGB = (128, 128, 128)


class MeshBuilder:
    """Builds a textured triangle mesh from keyframes and map points."""

    def __init__(self, intrinsics: CameraIntrinsics, config: DenseConfig | None = None) -> None:
        """Initialize mesh builder.

        Args:
            intrinsics: Calibration of every keyframe image and depth map
            config: Volume resolution, fusion and texturing parameters
        """
        self._intrinsics = intrinsics
        self._K = intrinsics.to_matrix()
        self._config = config or DenseConfig()

    def build(
        self,
        snapshot: MapSnapshot,
        depth_maps: dict[int, np.ndarray] | None = None,
    ) -> Mesh:
        """Build a mesh from a map snapshot.

        Args:
            snapshot: Map snapshot (keyframes with poses, images and points)
            depth_maps: Optional depth maps by keyframe id; keyframe depth
                maps are used for keyframes not listed here

        Returns:
            Mesh, empty if there was nothing to fuse
        """
        keyframes = [snapshot.keyframes[k] for k in snapshot.keyframe_ids]
        depth_maps = dict(depth_maps or {})
        for kf in keyframes:
            if kf.id not in depth_maps and kf.depth is not None:
                depth_maps[kf.id] = kf.depth

        volume = self._allocate(snapshot, keyframes, depth_maps)
        if volume is None:
            logger.warning("[MeshBuilder] Nothing to fuse, returning an empty mesh")
            return Mesh.empty()

        if depth_maps:
            for kf in keyframes:
                depth = depth_maps.get(kf.id)
                if depth is not None:
                    volume.integrate_depth(depth, self._K, kf.pose, color=kf.image)
        else:
            self._integrate_map_points(volume, snapshot)

        surface = volume.extract_mesh(self._config.min_weight)
        if surface.num_triangles == 0:
            return surface

        vertices = np.array(surface.vertices)
        triangles = np.array(surface.triangles)
        colors = None if surface.vertex_colors is None else np.array(surface.vertex_colors)
        if self._config.smoothing_iterations > 0:
            vertices = laplacian_smooth(vertices, triangles, self._config.smoothing_iterations)
            triangles = remove_degenerate_triangles(vertices, triangles)
        vertices, triangles, colors = remove_unreferenced_vertices(vertices, triangles, colors)

        mesh = self._texture(vertices, triangles, colors, keyframes)
        logger.info(
            "[MeshBuilder] Built mesh from %d keyframes: %d vertices, %d triangles%s",
            len(keyframes),
            mesh.num_vertices,
            mesh.num_triangles,
            " (textured)" if mesh.texture is not None else "",
        )
        return mesh

    def _allocate(
        self,
        snapshot: MapSnapshot,
        keyframes: list[KeyFrame],
        depth_maps: dict[int, np.ndarray],
    ) -> TSDFVolume | None:
        """Size the volume to the observed geometry."""
        samples = [np.array([p.position for p in snapshot.points.values()]).reshape(-1, 3)]
        for kf in keyframes:
            depth = depth_maps.get(kf.id)
            if depth is not None:
                samples.append(self._backproject(depth, kf, stride=8))
        samples = np.concatenate(samples)
        samples = samples[np.all(np.isfinite(samples), axis=1)]
        if len(samples) < 4:
            return None

        # Robust bounds, a few outlier points must not blow up the volume
        bounds_min = np.percentile(samples, 1, axis=0)
        bounds_max = np.percentile(samples, 99, axis=0)

        voxel_size = self._config.voxel_size
        margin = self._config.margin_voxels
        extent = bounds_max - bounds_min + 2 * margin * voxel_size
        n_voxels = np.prod(np.ceil(extent / voxel_size) + 1)
        if n_voxels > self._config.max_voxels:
            voxel_size = float(np.cbrt(np.prod(extent) / self._config.max_voxels)) * 1.01
            logger.warning(
                "[MeshBuilder] Volume too large at %.3f m, using %.3f m voxels",
                self._config.voxel_size,
                voxel_size,
            )

        return TSDFVolume.from_bounds(
            bounds_min,
            bounds_max,
            voxel_size,
            margin_voxels=margin,
            truncation_voxels=self._config.truncation_voxels,
            max_weight=self._config.max_weight,
            agreement_voxels=self._config.agreement_voxels,
        )

    def _backproject(self, depth: np.ndarray, kf: KeyFrame, stride: int = 1) -> np.ndarray:
        """World points of a (subsampled) depth map."""
        h, w = depth.shape[:2]
        v, u = np.mgrid[0:h:stride, 0:w:stride]
        z = np.asarray(depth, dtype=np.float64)[v, u]
        valid = np.isfinite(z) & (z > 0)
        u, v, z = u[valid], v[valid], z[valid]
        x = (u - self._K[0, 2]) / self._K[0, 0] * z
        y = (v - self._K[1, 2]) / self._K[1, 1] * z
        return kf.pose.transform_points(np.stack([x, y, z], axis=1))

    def _integrate_map_points(self, volume: TSDFVolume, snapshot: MapSnapshot) -> None:
        """Fuse every (point, observing keyframe) pair of the sparse map."""
        for kf_id in snapshot.keyframe_ids:
            kf = snapshot.keyframes[kf_id]
            point_ids = [p for p in kf.observed_point_ids() if p in snapshot.points]
            if not point_ids:
                continue
            positions = np.array([snapshot.points[p].position for p in point_ids])
            colors = None
            if all(snapshot.points[p].color is not None for p in point_ids):
                colors = np.array([snapshot.points[p].color for p in point_ids], dtype=np.float64)
            volume.integrate_points(positions, kf.pose.translation, colors)

    def _texture(
        self,
        vertices: np.ndarray,
        triangles: np.ndarray,
        colors: np.ndarray | None,
        keyframes: list[KeyFrame],
    ) -> Mesh:
        """Texture every triangle from its best keyframe.

        The best keyframe sees the whole triangle in front of it and
        maximizes (facing angle cosine / distance). Keyframe images are
        tiled into one atlas; vertices used by triangles textured from
        different keyframes are duplicated so each copy has its own UV.
        Triangles no keyframe sees keep their fused vertex colors and map
        onto a blank strip below the tiles.
        """
        textured = [kf for kf in keyframes if kf.image is not None]
        if not textured:
            return Mesh(
                vertices=vertices,
                triangles=triangles,
                vertex_colors=colors,
                vertex_normals=vertex_normals(vertices, triangles),
            )

        normals = triangle_normals(vertices, triangles)
        normals /= np.maximum(np.linalg.norm(normals, axis=1, keepdims=True), 1e-12)
        centroids = vertices[triangles].mean(axis=1)

        best_score = np.full(len(triangles), -np.inf)
        best_kf = np.full(len(triangles), -1, dtype=np.int64)
        for slot, kf in enumerate(textured):
            uv, depth = self._project(vertices, kf)
            tri_depth = depth[triangles]
            tri_uv = uv[triangles]
            h, w = kf.image.shape[:2]
            visible = np.all(tri_depth > 1e-6, axis=1) & np.all(
                (tri_uv[..., 0] >= 0)
                & (tri_uv[..., 0] <= w - 1)
                & (tri_uv[..., 1] >= 0)
                & (tri_uv[..., 1] <= h - 1),
                axis=1,
            )
            to_camera = kf.pose.translation - centroids
            distance = np.linalg.norm(to_camera, axis=1)
            facing = np.einsum("ij,ij->i", normals, to_camera) / np.maximum(distance, 1e-12)
            score = np.where(visible & (facing > 0), facing / np.maximum(distance, 1e-6), -np.inf)
            better = score > best_score
            best_score[better] = score[better]
            best_kf[better] = slot

        # Split vertices shared by triangles textured from different keyframes
        corner_vertex = triangles.ravel()
        corner_kf = np.repeat(best_kf, 3)
        keys = np.stack([corner_vertex, corner_kf], axis=1)
        unique_keys, inverse = np.unique(keys, axis=0, return_inverse=True)
        new_triangles = inverse.reshape(-1, 3).astype(np.int64)
        source_vertex = unique_keys[:, 0]
        source_kf = unique_keys[:, 1]
        new_vertices = vertices[source_vertex]

        atlas, tiles = self._atlas(textured)
        atlas_h, atlas_w = atlas.shape[:2]
        uvs = np.zeros((len(new_vertices), 2))
        new_colors = np.empty((len(new_vertices), 3), dtype=np.uint8)
        new_colors[:] = BLANK_RGB if colors is None else colors[source_vertex]

        unseen = source_kf < 0
        if unseen.any():
            logger.debug("[MeshBuilder] %d vertices seen by no keyframe", int(unseen.sum()))
            uvs[unseen] = (0.5, (atlas_h - BLANK_ROWS / 2) / atlas_h)

        for slot, kf in enumerate(textured):
            rows = np.flatnonzero(source_kf == slot)
            if len(rows) == 0:
                continue
            uv, _ = self._project(new_vertices[rows], kf)
            h, w = kf.image.shape[:2]
            x0, y0, tile_w, tile_h = tiles[slot]
            uvs[rows, 0] = (x0 + uv[:, 0] / w * tile_w) / atlas_w
            uvs[rows, 1] = (y0 + uv[:, 1] / h * tile_h) / atlas_h
            px = np.clip(np.round(uv).astype(int), 0, [w - 1, h - 1])
            pixels = kf.image[px[:, 1], px[:, 0]]
            if pixels.ndim == 1:
                new_colors[rows] = np.repeat(pixels[:, None], 3, axis=1)
            else:
                new_colors[rows] = pixels[:, 2::-1]

        return Mesh(
            vertices=new_vertices,
            triangles=new_triangles,
            uvs=np.clip(uvs, 0.0, 1.0),
            texture=atlas,
            vertex_colors=new_colors,
            vertex_normals=vertex_normals(new_vertices, new_triangles),
        )

    def _project(self, points: np.ndarray, kf: KeyFrame) -> tuple[np.ndarray, np.ndarray]:
        p_cam = kf.pose.inverse().transform_points(points)
        z = p_cam[:, 2]
        safe = np.where(np.abs(z) < 1e-9, 1e-9, z)
        u = self._K[0, 0] * p_cam[:, 0] / safe + self._K[0, 2]
        v = self._K[1, 1] * p_cam[:, 1] / safe + self._K[1, 2]
        return np.stack([u, v], axis=1), z

    def _atlas(
        self, keyframes: list[KeyFrame]
    ) -> tuple[np.ndarray, list[tuple[int, int, int, int]]]:
        """Tile keyframe images into a square-ish RGB atlas.

        The last BLANK_ROWS rows are a uniform BLANK_RGB strip.

        Returns:
            Tuple of (atlas image, per keyframe (x0, y0, tile_w, tile_h))
        """
        n = len(keyframes)
        cols = int(np.ceil(np.sqrt(n)))
        rows = int(np.ceil(n / cols))
        h, w = keyframes[0].image.shape[:2]
        tile_w = max(self._config.texture_size // cols, 1)
        tile_h = max(int(round(tile_w * h / w)), 1)

        atlas = np.zeros((rows * tile_h + BLANK_ROWS, cols * tile_w, 3), dtype=np.uint8)
        atlas[rows * tile_h :] = BLANK_RGB
        tiles = []
        for i, kf in enumerate(keyframes):
            image = kf.image
            if image.ndim == 2:
                rgb = cv2.cvtColor(image, cv2.COLOR_GRAY2RGB)
            else:
                rgb = cv2.cvtColor(np.ascontiguousarray(image[..., :3]), cv2.COLOR_BGR2RGB)
            x0, y0 = (i % cols) * tile_w, (i // cols) * tile_h
            atlas[y0 : y0 + tile_h, x0 : x0 + tile_w] = cv2.resize(
                rgb, (tile_w, tile_h), interpolation=cv2.INTER_AREA
            )
            tiles.append((x0, y0, tile_w, tile_h))
        return atlas, tiles
