"""ASCII PLY export of point clouds and meshes."""

from __future__ import annotations

from pathlib import Path

import cv2
import numpy as np

from ..geometry import Mesh, PointCloud


def write_point_cloud_ply(cloud: PointCloud, path: str | Path) -> None:
    """Write positions, and colors/normals when present, as ASCII PLY."""
    n = len(cloud)
    header = ["ply", "format ascii 1.0", f"element vertex {n}"]
    header += ["property float x", "property float y", "property float z"]
    columns = [cloud.positions]
    formats = ["%.6f"] * 3
    if cloud.normals is not None:
        header += ["property float nx", "property float ny", "property float nz"]
        columns.append(cloud.normals)
        formats += ["%.6f"] * 3
    if cloud.colors is not None:
        header += ["property uchar red", "property uchar green", "property uchar blue"]
        columns.append(cloud.colors)
        formats += ["%d"] * 3
    header.append("end_header")

    _write(path, header, np.hstack([c.astype(np.float64) for c in columns]), formats, None)


def write_mesh_ply(mesh: Mesh, path: str | Path, write_texture: bool = True) -> None:
    """Write a triangle mesh as ASCII PLY.

    Vertex colors and normals are written when present. With a texture,
    per-vertex (s, t) coordinates are written and the texture is saved as
    a PNG next to the PLY and referenced by a ``comment TextureFile`` line.
    """
    path = Path(path)
    header = ["ply", "format ascii 1.0"]
    if write_texture and mesh.texture is not None:
        texture_path = path.with_suffix(".png")
        bgr = cv2.cvtColor(np.ascontiguousarray(mesh.texture), cv2.COLOR_RGB2BGR)
        cv2.imwrite(str(texture_path), bgr)
        header.append(f"comment TextureFile {texture_path.name}")

    header += [f"element vertex {mesh.num_vertices}"]
    header += ["property float x", "property float y", "property float z"]
    columns = [mesh.vertices]
    formats = ["%.6f"] * 3
    if mesh.vertex_normals is not None:
        header += ["property float nx", "property float ny", "property float nz"]
        columns.append(mesh.vertex_normals)
        formats += ["%.6f"] * 3
    if mesh.vertex_colors is not None:
        header += ["property uchar red", "property uchar green", "property uchar blue"]
        columns.append(mesh.vertex_colors)
        formats += ["%d"] * 3
    if write_texture and mesh.uvs is not None:
        header += ["property float s", "property float t"]
        # PLY texture coordinates have t pointing up
        columns.append(np.column_stack([mesh.uvs[:, 0], 1.0 - mesh.uvs[:, 1]]))
        formats += ["%.6f"] * 2
    header += [f"element face {mesh.num_triangles}", "property list uchar int vertex_indices"]
    header.append("end_header")

    vertex_rows = np.hstack([c.astype(np.float64) for c in columns])
    _write(path, header, vertex_rows, formats, mesh.triangles)


def _write(
    path: str | Path,
    header: list[str],
    vertex_rows: np.ndarray,
    formats: list[str],
    triangles: np.ndarray | None,
) -> None:
    with open(path, "w") as f:
        f.write("\n".join(header) + "\n")
        if len(vertex_rows):
            np.savetxt(f, vertex_rows, fmt=" ".join(formats))
        if triangles is not None and len(triangles):
            faces = np.column_stack([np.full(len(triangles), 3), triangles])
            np.savetxt(f, faces, fmt="%d")


def read_ply_header(path: str | Path) -> dict[str, int]:
    """Return element counts declared in a PLY header (e.g. {"vertex": 10, "face": 4})."""
    counts = {}
    with open(path, "r") as f:
        for line in f:
            line = line.strip()
            if line.startswith("element"):
                _, name, count = line.split()
                counts[name] = int(count)
            elif line == "end_header":
                break
    return counts
