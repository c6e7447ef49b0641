"""Exported reconstruction products: point clouds and meshes."""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from ..errors import GeometryError
from .camera import Camera


def _readonly(array: np.ndarray | None, dtype: type, ncols: int | None) -> np.ndarray | None:
    if array is None:
        return None
    array = np.array(array, dtype=dtype)
    if ncols is not None:
        if array.size == 0:
            array = array.reshape(0, ncols)
        if array.ndim != 2 or array.shape[1] != ncols:
            raise GeometryError(f"Expected Nx{ncols} array, got {array.shape}")
    array.setflags(write=False)
    return array


@dataclass(frozen=True)
class PointCloud:
    """Ordered point positions with optional colors and normals.

    An exported view of the map; it is never mutated after construction.
    """

    positions: np.ndarray  # Nx3 float
    colors: np.ndarray | None = None  # Nx3 uint8 RGB
    normals: np.ndarray | None = None  # Nx3 unit vectors
    cameras: tuple[Camera, ...] = field(default_factory=tuple)
    point_ids: np.ndarray | None = None  # (N,) source map point ids

    def __post_init__(self) -> None:
        """Freeze arrays and check lengths."""
        positions = _readonly(self.positions, np.float64, 3)
        object.__setattr__(self, "positions", positions)
        object.__setattr__(self, "colors", _readonly(self.colors, np.uint8, 3))
        object.__setattr__(self, "normals", _readonly(self.normals, np.float64, 3))
        object.__setattr__(self, "point_ids", _readonly(self.point_ids, np.int64, None))
        object.__setattr__(self, "cameras", tuple(self.cameras))

        n = len(positions)
        for name in ("colors", "normals", "point_ids"):
            value = getattr(self, name)
            if value is not None and len(value) != n:
                raise GeometryError(f"{name} has {len(value)} rows, expected {n}")

    def __len__(self) -> int:
        """Return number of points."""
        return len(self.positions)

    def bounds(self) -> tuple[np.ndarray, np.ndarray]:
        """Return (min corner, max corner) of the points."""
        if len(self) == 0:
            return np.zeros(3), np.zeros(3)
        return self.positions.min(axis=0), self.positions.max(axis=0)


@dataclass(frozen=True)
class Mesh:
    """Indexed triangle mesh with optional per-vertex UVs and a texture.

    Meshes are built once and never patched; regenerate instead.
    """

    vertices: np.ndarray  # Vx3 float
    triangles: np.ndarray  # Fx3 int vertex indices
    uvs: np.ndarray | None = None  # Vx2 texture coordinates in [0, 1]
    texture: np.ndarray | None = None  # HxWx3 uint8 image
    vertex_colors: np.ndarray | None = None  # Vx3 uint8 RGB
    vertex_normals: np.ndarray | None = None  # Vx3

    def __post_init__(self) -> None:
        """Freeze arrays and validate triangle indices."""
        vertices = _readonly(self.vertices, np.float64, 3)
        triangles = _readonly(self.triangles, np.int64, 3)
        object.__setattr__(self, "vertices", vertices)
        object.__setattr__(self, "triangles", triangles)
        object.__setattr__(self, "uvs", _readonly(self.uvs, np.float64, 2))
        object.__setattr__(
            self, "vertex_colors", _readonly(self.vertex_colors, np.uint8, 3)
        )
        object.__setattr__(
            self, "vertex_normals", _readonly(self.vertex_normals, np.float64, 3)
        )
        if self.texture is not None:
            texture = np.array(self.texture, dtype=np.uint8)
            texture.setflags(write=False)
            object.__setattr__(self, "texture", texture)

        if len(triangles) and (
            triangles.min() < 0 or triangles.max() >= len(vertices)
        ):
            raise GeometryError(
                f"Triangle indices out of range for {len(vertices)} vertices"
            )
        for name in ("uvs", "vertex_colors", "vertex_normals"):
            value = getattr(self, name)
            if value is not None and len(value) != len(vertices):
                raise GeometryError(
                    f"{name} has {len(value)} rows, expected {len(vertices)}"
                )

    @classmethod
    def empty(cls) -> Mesh:
        """Return a mesh with no geometry."""
        return cls(vertices=np.empty((0, 3)), triangles=np.empty((0, 3), dtype=np.int64))

    @property
    def num_vertices(self) -> int:
        """Number of vertices."""
        return len(self.vertices)

    @property
    def num_triangles(self) -> int:
        """Number of triangles."""
        return len(self.triangles)

    def edges(self) -> tuple[np.ndarray, np.ndarray]:
        """Return (unique undirected edges Ex2, use count per edge)."""
        if self.num_triangles == 0:
            return np.empty((0, 2), dtype=np.int64), np.empty(0, dtype=np.int64)
        t = self.triangles
        all_edges = np.concatenate([t[:, [0, 1]], t[:, [1, 2]], t[:, [2, 0]]])
        all_edges.sort(axis=1)
        return np.unique(all_edges, axis=0, return_counts=True)

    def is_closed_manifold(self) -> bool:
        """Return True if every edge is shared by exactly two triangles
        and every directed edge appears once (consistent orientation)."""
        if self.num_triangles == 0:
            return False
        _, counts = self.edges()
        if not np.all(counts == 2):
            return False
        t = self.triangles
        directed = np.concatenate([t[:, [0, 1]], t[:, [1, 2]], t[:, [2, 0]]])
        unique_directed = np.unique(directed, axis=0)
        return len(unique_directed) == len(directed)

    def euler_characteristic(self) -> int:
        """Return V - E + F over vertices referenced by triangles."""
        used = np.unique(self.triangles) if self.num_triangles else np.empty(0)
        edges, _ = self.edges()
        return int(len(used) - len(edges) + self.num_triangles)

    def surface_area(self) -> float:
        """Return total triangle area."""
        if self.num_triangles == 0:
            return 0.0
        v = self.vertices[self.triangles]
        cross = np.cross(v[:, 1] - v[:, 0], v[:, 2] - v[:, 0])
        return float(0.5 * np.linalg.norm(cross, axis=1).sum())
