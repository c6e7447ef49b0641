"""Dense fusion and surface extraction.

Key components:
- TSDFVolume: Weighted truncated signed distance fusion
- marching_tetrahedra: Crack-free isosurface extraction
- MeshBuilder: Snapshot -> textured Mesh
"""

from .marching_tetrahedra import marching_tetrahedra
from .mesh_builder import MeshBuilder
from .mesh_ops import (
    laplacian_smooth,
    remove_degenerate_triangles,
    remove_unreferenced_vertices,
    triangle_normals,
    vertex_normals,
)
from .tsdf import TSDFVolume

__all__ = [
    "TSDFVolume",
    "marching_tetrahedra",
    "MeshBuilder",
    "laplacian_smooth",
    "remove_degenerate_triangles",
    "remove_unreferenced_vertices",
    "triangle_normals",
    "vertex_normals",
]
