"""Mesh post-processing on raw vertex/triangle arrays."""

from __future__ import annotations

import numpy as np
from scipy.sparse import coo_matrix, diags


def triangle_normals(vertices: np.ndarray, triangles: np.ndarray) -> np.ndarray:
    """Unnormalized triangle normals (length = 2 x area)."""
    if len(triangles) == 0:
        return np.empty((0, 3))
    v0, v1, v2 = (vertices[triangles[:, i]] for i in range(3))
    return np.cross(v1 - v0, v2 - v0)


def vertex_normals(vertices: np.ndarray, triangles: np.ndarray) -> np.ndarray:
    """Area-weighted unit vertex normals (zero for unreferenced vertices)."""
    normals = np.zeros((len(vertices), 3))
    face_normals = triangle_normals(vertices, triangles)
    for i in range(3):
        np.add.at(normals, triangles[:, i], face_normals)
    norms = np.linalg.norm(normals, axis=1, keepdims=True)
    return np.divide(normals, norms, out=np.zeros_like(normals), where=norms > 0)


def remove_degenerate_triangles(
    vertices: np.ndarray, triangles: np.ndarray, min_area: float = 1e-12
) -> np.ndarray:
    """Drop triangles with repeated indices or (near) zero area."""
    if len(triangles) == 0:
        return triangles
    t = triangles
    distinct = (t[:, 0] != t[:, 1]) & (t[:, 1] != t[:, 2]) & (t[:, 0] != t[:, 2])
    areas = 0.5 * np.linalg.norm(triangle_normals(vertices, t), axis=1)
    return t[distinct & (areas > min_area)]


def remove_unreferenced_vertices(
    vertices: np.ndarray, triangles: np.ndarray, *attributes: np.ndarray | None
) -> tuple:
    """Compact the vertex list to the vertices used by triangles.

    Per-vertex attribute arrays (None allowed) are compacted alongside.

    Returns:
        Tuple of (vertices, remapped triangles, *attributes)
    """
    used = np.unique(triangles)
    remap = np.full(len(vertices), -1, dtype=np.int64)
    remap[used] = np.arange(len(used))
    compacted = [None if attr is None else attr[used] for attr in attributes]
    return (vertices[used], remap[triangles], *compacted)


def laplacian_smooth(
    vertices: np.ndarray,
    triangles: np.ndarray,
    iterations: int = 1,
    lam: float = 0.5,
) -> np.ndarray:
    """Uniform Laplacian smoothing.

    Each pass moves every vertex a fraction lam towards the mean of its
    edge neighbours. Topology is unchanged.
    """
    if iterations <= 0 or len(triangles) == 0:
        return vertices.copy()
    n = len(vertices)
    t = triangles
    rows = np.concatenate([t[:, 0], t[:, 1], t[:, 2], t[:, 1], t[:, 2], t[:, 0]])
    cols = np.concatenate([t[:, 1], t[:, 2], t[:, 0], t[:, 0], t[:, 1], t[:, 2]])
    adjacency = coo_matrix((np.ones(len(rows)), (rows, cols)), shape=(n, n)).tocsr()
    adjacency.data[:] = 1.0  # duplicate edges count once
    degree = np.asarray(adjacency.sum(axis=1)).ravel()
    inv_degree = diags(np.divide(1.0, degree, out=np.zeros(n), where=degree > 0))
    averaging = inv_degree @ adjacency

    smoothed = vertices.astype(np.float64, copy=True)
    isolated = degree == 0
    for _ in range(iterations):
        neighbour_mean = averaging @ smoothed
        neighbour_mean[isolated] = smoothed[isolated]
        smoothed = smoothed + lam * (neighbour_mean - smoothed)
    return smoothed
