"""Truncated signed distance volume.

The volume stores, per voxel, a truncated signed distance normalized to
[-1, 1] (positive in front of the surface, towards the cameras), an
integration weight and an optional color. Observations are fused with a
weighted running average. An observation that disagrees with the stored
distance by more than the agreement band lowers the voxel weight instead
of replacing the value, so a few outliers cannot overwrite a well
observed surface.
"""

from __future__ import annotations

import logging

import numpy as np

from ..errors import GeometryError
from ..geometry import SE3, Mesh
from .marching_tetrahedra import marching_tetrahedra
from .mesh_ops import vertex_normals

logger = logging.getLogger(__name__)

_CHUNK = 1 << 20  # Voxels projected per batch in integrate_depth


class TSDFVolume:
    """Dense voxel grid of truncated signed distances."""

    def __init__(
        self,
        origin: np.ndarray,
        shape: tuple[int, int, int],
        voxel_size: float,
        truncation_voxels: float = 3.0,
        max_weight: float = 64.0,
        agreement_voxels: float = 1.0,
    ) -> None:
        """Initialize an empty (unobserved) volume.

        Args:
            origin: World position of the center of voxel (0, 0, 0)
            shape: Number of voxels along x, y, z
            voxel_size: Voxel edge length in meters
            truncation_voxels: Truncation distance in voxels
            max_weight: Upper bound of a voxel weight
            agreement_voxels: Disagreement (in voxels) that counts as a conflict
        """
        if voxel_size <= 0:
            raise GeometryError("voxel_size must be positive")
        if len(shape) != 3 or min(shape) < 2:
            raise GeometryError(f"Volume shape must be 3D with >= 2 voxels per axis, got {shape}")

        self._origin = np.asarray(origin, dtype=np.float64).reshape(3)
        self._shape = tuple(int(s) for s in shape)
        self._voxel_size = float(voxel_size)
        self._truncation = float(truncation_voxels) * self._voxel_size
        self._max_weight = float(max_weight)
        self._agreement = float(agreement_voxels) * self._voxel_size

        self._tsdf = np.ones(self._shape, dtype=np.float32)
        self._weight = np.zeros(self._shape, dtype=np.float32)
        self._color: np.ndarray | None = None

    @classmethod
    def from_bounds(
        cls,
        bounds_min: np.ndarray,
        bounds_max: np.ndarray,
        voxel_size: float,
        margin_voxels: int = 4,
        **kwargs,
    ) -> TSDFVolume:
        """Create a volume covering an axis-aligned box plus a margin."""
        bounds_min = np.asarray(bounds_min, dtype=np.float64)
        bounds_max = np.asarray(bounds_max, dtype=np.float64)
        origin = bounds_min - margin_voxels * voxel_size
        extent = bounds_max - bounds_min
        shape = np.ceil(extent / voxel_size).astype(int) + 2 * margin_voxels + 1
        return cls(origin, tuple(np.maximum(shape, 2)), voxel_size, **kwargs)

    @classmethod
    def from_sdf(
        cls,
        sdf: np.ndarray,
        origin: np.ndarray,
        voxel_size: float,
        truncation_voxels: float = 3.0,
    ) -> TSDFVolume:
        """Create a fully observed volume from a metric signed distance grid."""
        sdf = np.asarray(sdf, dtype=np.float64)
        volume = cls(origin, sdf.shape, voxel_size, truncation_voxels=truncation_voxels)
        volume._tsdf[:] = np.clip(sdf / volume._truncation, -1.0, 1.0)
        volume._weight[:] = 1.0
        return volume

    @property
    def origin(self) -> np.ndarray:
        """World position of voxel (0, 0, 0)."""
        return self._origin.copy()

    @property
    def shape(self) -> tuple[int, int, int]:
        """Voxel counts along x, y, z."""
        return self._shape

    @property
    def voxel_size(self) -> float:
        """Voxel edge length in meters."""
        return self._voxel_size

    @property
    def truncation(self) -> float:
        """Truncation distance in meters."""
        return self._truncation

    @property
    def num_voxels(self) -> int:
        """Total voxel count."""
        return int(np.prod(self._shape))

    @property
    def tsdf(self) -> np.ndarray:
        """Normalized distances (read-only view)."""
        view = self._tsdf.view()
        view.setflags(write=False)
        return view

    @property
    def weights(self) -> np.ndarray:
        """Integration weights (read-only view)."""
        view = self._weight.view()
        view.setflags(write=False)
        return view

    def observed_fraction(self, min_weight: float = 0.5) -> float:
        """Fraction of voxels with weight >= min_weight."""
        return float(np.mean(self._weight >= min_weight))

    def voxel_centers(self, flat_idx: np.ndarray) -> np.ndarray:
        """World positions of the given flat voxel indices."""
        ijk = np.stack(np.unravel_index(flat_idx, self._shape), axis=1)
        return self._origin + ijk.astype(np.float64) * self._voxel_size

    def integrate_depth(
        self,
        depth: np.ndarray,
        camera_matrix: np.ndarray,
        pose: SE3,
        color: np.ndarray | None = None,
        weight: float = 1.0,
    ) -> int:
        """Fuse a metric depth map taken from pose.

        Args:
            depth: HxW depth in meters (0 or non-finite = no measurement)
            camera_matrix: 3x3 intrinsics of the depth map
            pose: T_world_camera of the depth camera
            color: Optional HxW(x3) image aligned with depth (BGR or gray)
            weight: Weight of this observation

        Returns:
            Number of voxels updated
        """
        depth = np.asarray(depth, dtype=np.float64)
        h, w = depth.shape[:2]
        K = np.asarray(camera_matrix, dtype=np.float64)
        T_cw = pose.inverse()

        updated = 0
        for start in range(0, self.num_voxels, _CHUNK):
            flat_idx = np.arange(start, min(start + _CHUNK, self.num_voxels))
            p_cam = T_cw.transform_points(self.voxel_centers(flat_idx))
            z = p_cam[:, 2]
            in_front = z > 1e-6
            safe_z = np.where(in_front, z, 1.0)
            u = np.round(K[0, 0] * p_cam[:, 0] / safe_z + K[0, 2]).astype(np.int64)
            v = np.round(K[1, 1] * p_cam[:, 1] / safe_z + K[1, 2]).astype(np.int64)
            valid = in_front & (u >= 0) & (u < w) & (v >= 0) & (v < h)
            if not np.any(valid):
                continue

            flat_idx, z, u, v = flat_idx[valid], z[valid], u[valid], v[valid]
            measured = depth[v, u]
            sdf = measured - z
            keep = np.isfinite(measured) & (measured > 0) & (sdf >= -self._truncation)
            if not np.any(keep):
                continue

            colors = None
            if color is not None:
                colors = _rgb(color[v[keep], u[keep]])
            self._update(
                flat_idx[keep],
                np.clip(sdf[keep] / self._truncation, -1.0, 1.0),
                np.full(int(keep.sum()), weight),
                colors,
            )
            updated += int(keep.sum())
        return updated

    def integrate_points(
        self,
        points: np.ndarray,
        camera_centers: np.ndarray,
        colors: np.ndarray | None = None,
        weight: float = 1.0,
    ) -> int:
        """Fuse sparse surface points seen from known camera centers.

        Each point carves a short band along its viewing ray: voxels
        within the truncation distance receive their signed distance to
        the point, measured along the ray.

        Args:
            points: Nx3 world points on the surface
            camera_centers: Nx3 (or 3,) world positions of the observing cameras
            colors: Optional Nx3 uint8 RGB colors
            weight: Weight of each observation

        Returns:
            Number of voxel updates (before merging)
        """
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        if len(points) == 0:
            return 0
        centers = np.broadcast_to(np.asarray(camera_centers, dtype=np.float64), points.shape)
        rays = points - centers
        lengths = np.linalg.norm(rays, axis=1)
        ok = lengths > 1e-9
        points, rays, lengths = points[ok], rays[ok], lengths[ok]
        if colors is not None:
            colors = np.asarray(colors)[ok]
        directions = rays / lengths[:, None]

        step = 0.5 * self._voxel_size
        offsets = np.arange(-self._truncation, self._truncation + step, step)
        samples = points[:, None, :] + offsets[None, :, None] * directions[:, None, :]
        ijk = np.round((samples - self._origin) / self._voxel_size).astype(np.int64)
        inside = np.all((ijk >= 0) & (ijk < np.array(self._shape)), axis=2)

        owner = np.broadcast_to(np.arange(len(points))[:, None], inside.shape)[inside]
        ijk = ijk[inside]
        flat_idx = np.ravel_multi_index((ijk[:, 0], ijk[:, 1], ijk[:, 2]), self._shape)
        centers_v = self.voxel_centers(flat_idx)
        sdf = np.einsum("ij,ij->i", points[owner] - centers_v, directions[owner])
        band = np.abs(sdf) <= self._truncation
        if not np.any(band):
            return 0

        # One observation per (point, voxel) pair
        pair_keys = owner[band] * self.num_voxels + flat_idx[band]
        _, first = np.unique(pair_keys, return_index=True)
        selected = np.flatnonzero(band)[first]

        sample_colors = None if colors is None else colors[owner[selected]]
        self._update(
            flat_idx[selected],
            sdf[selected] / self._truncation,
            np.full(len(selected), weight),
            sample_colors,
        )
        return len(selected)

    def _update(
        self,
        flat_idx: np.ndarray,
        observed: np.ndarray,
        obs_weight: np.ndarray,
        colors: np.ndarray | None,
    ) -> None:
        """Weighted running average with conflict-aware weight updates."""
        # Merge repeated voxels into one weighted observation
        voxels, inverse = np.unique(flat_idx, return_inverse=True)
        w_sum = np.bincount(inverse, weights=obs_weight)
        obs = np.bincount(inverse, weights=obs_weight * observed) / w_sum

        tsdf = self._tsdf.reshape(-1)
        weight = self._weight.reshape(-1)
        old_d = tsdf[voxels].astype(np.float64)
        old_w = weight[voxels].astype(np.float64)

        conflict = (old_w > 0) & (np.abs(obs - old_d) * self._truncation > self._agreement)
        total = old_w + w_sum
        new_d = (old_w * old_d + w_sum * obs) / total
        new_w = np.where(conflict, np.abs(old_w - w_sum), np.minimum(total, self._max_weight))
        tsdf[voxels] = new_d
        weight[voxels] = new_w

        if colors is not None:
            if self._color is None:
                self._color = np.zeros(self._shape + (3,), dtype=np.float32)
            color = self._color.reshape(-1, 3)
            obs_color = np.stack(
                [
                    np.bincount(inverse, weights=obs_weight * colors[:, c]) / w_sum
                    for c in range(3)
                ],
                axis=1,
            )
            old_color = color[voxels].astype(np.float64)
            color[voxels] = (old_w[:, None] * old_color + w_sum[:, None] * obs_color) / total[
                :, None
            ]

    def extract_mesh(self, min_weight: float = 0.5) -> Mesh:
        """Extract the zero level set as a triangle mesh.

        Voxels with weight below min_weight are unknown; no surface is
        produced next to them.
        """
        field = np.where(self._weight >= min_weight, self._tsdf, np.nan)
        vertices, triangles = marching_tetrahedra(
            field, 0.0, spacing=self._voxel_size, origin=self._origin
        )
        if len(triangles) == 0:
            logger.info("[TSDF] No surface found")
            return Mesh.empty()

        vertex_colors = None
        if self._color is not None:
            ijk = np.round((vertices - self._origin) / self._voxel_size).astype(np.int64)
            ijk = np.clip(ijk, 0, np.array(self._shape) - 1)
            vertex_colors = np.clip(
                self._color[ijk[:, 0], ijk[:, 1], ijk[:, 2]], 0, 255
            ).astype(np.uint8)

        mesh = Mesh(
            vertices=vertices,
            triangles=triangles,
            vertex_colors=vertex_colors,
            vertex_normals=vertex_normals(vertices, triangles),
        )
        logger.info(
            "[TSDF] Extracted mesh: %d vertices, %d triangles",
            mesh.num_vertices,
            mesh.num_triangles,
        )
        return mesh


def _rgb(pixels: np.ndarray) -> np.ndarray:
    """BGR or gray pixel samples -> Nx3 RGB floats."""
    pixels = np.asarray(pixels, dtype=np.float64)
    if pixels.ndim == 1:
        return np.repeat(pixels[:, None], 3, axis=1)
    return pixels[:, 2::-1]
