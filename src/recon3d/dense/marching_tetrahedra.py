"""Isosurface extraction by marching tetrahedra.

Each grid cube is split into six tetrahedra sharing the cube diagonal
(0 -> 7). Every cube is split the same way, so neighbouring cubes agree
on the diagonals of their shared faces and the extracted surface has no
cracks. A tetrahedron crossed by the isosurface yields one triangle (one
or three corners inside) or a quad split into two triangles (two corners
inside).

Vertices are welded by the grid edge they lie on, so triangles of
neighbouring cells share vertex indices and a closed surface comes out
as a closed manifold mesh. Where the surface passes through a sample,
every vertex on an edge ending there is welded to the sample itself, and
triangles collapsed by the weld are dropped. Triangles are wound
counter-clockwise when seen from the positive side of the field.
"""

from __future__ import annotations

import numpy as np

# Corner offsets, bit 0 = x, bit 1 = y, bit 2 = z
_CUBE_CORNERS = np.array(
    [[(c >> 0) & 1, (c >> 1) & 1, (c >> 2) & 1] for c in range(8)], dtype=np.int64
)

# Six tetrahedra around the 0-7 diagonal, one per axis ordering
_TETRAHEDRA = np.array(
    [
        [0, 1, 3, 7],
        [0, 1, 5, 7],
        [0, 2, 3, 7],
        [0, 2, 6, 7],
        [0, 4, 5, 7],
        [0, 4, 6, 7],
    ],
    dtype=np.int64,
)


def marching_tetrahedra(
    field: np.ndarray,
    level: float = 0.0,
    spacing: float = 1.0,
    origin: np.ndarray | None = None,
    snap_tolerance: float = 1e-6,
) -> tuple[np.ndarray, np.ndarray]:
    """Extract the level set of a sampled scalar field.

    Non-finite samples mark unknown space; cells touching one are skipped.

    Args:
        field: (nx, ny, nz) samples on a regular grid
        level: Isovalue to extract
        spacing: Grid spacing (same units as the output vertices)
        origin: World position of sample (0, 0, 0)
        snap_tolerance: Samples within this fraction of the largest
            field magnitude of the level are treated as lying on it

    Returns:
        Tuple of (Vx3 vertices, Fx3 triangles)
    """
    values = np.asarray(field, dtype=np.float64) - level
    if values.ndim != 3 or min(values.shape) < 2:
        return np.empty((0, 3)), np.empty((0, 3), dtype=np.int64)
    origin = np.zeros(3) if origin is None else np.asarray(origin, dtype=np.float64)

    # Samples on the level count as outside and carry their own vertex
    finite = np.isfinite(values)
    scale = np.abs(values[finite]).max() if finite.any() else 0.0
    values = np.where(np.abs(values) <= snap_tolerance * scale, 0.0, values)
    flat_values = values.ravel()
    shape = values.shape
    n_samples = flat_values.size

    # Cubes with all corners known and a sign change, from shifted views
    nx, ny, nz = shape
    known = np.ones((nx - 1, ny - 1, nz - 1), dtype=bool)
    has_neg = np.zeros_like(known)
    has_pos = np.zeros_like(known)
    for dx, dy, dz in _CUBE_CORNERS:
        view = values[dx : nx - 1 + dx, dy : ny - 1 + dy, dz : nz - 1 + dz]
        known &= finite[dx : nx - 1 + dx, dy : ny - 1 + dy, dz : nz - 1 + dz]
        has_neg |= view < 0
        has_pos |= view >= 0
    cubes = np.argwhere(known & has_neg & has_pos)
    if len(cubes) == 0:
        return np.empty((0, 3)), np.empty((0, 3), dtype=np.int64)

    # Flat sample index of every corner of every active cube
    corners = cubes[:, None, :] + _CUBE_CORNERS[None, :, :]
    corner_idx = np.ravel_multi_index(
        (corners[..., 0], corners[..., 1], corners[..., 2]), shape
    )

    tets = corner_idx[:, _TETRAHEDRA].reshape(-1, 4)
    inside = flat_values[tets] < 0
    n_inside = inside.sum(axis=1)
    active = (n_inside > 0) & (n_inside < 4)
    tets, inside, n_inside = tets[active], inside[active], n_inside[active]

    # Inside corners first, so every case reads (a, b, c, d)
    order = np.argsort(~inside, axis=1, kind="stable")
    tets = np.take_along_axis(tets, order, axis=1)
    a, b, c, d = tets.T

    tri_edges = []
    tri_owner = []
    one = np.flatnonzero(n_inside == 1)
    tri_edges.append(_edges(((a, b), (a, c), (a, d)), one))
    tri_owner.append(one)
    three = np.flatnonzero(n_inside == 3)
    tri_edges.append(_edges(((a, d), (b, d), (c, d)), three))
    tri_owner.append(three)
    two = np.flatnonzero(n_inside == 2)
    tri_edges.append(_edges(((a, c), (a, d), (b, d)), two))
    tri_owner.append(two)
    tri_edges.append(_edges(((a, c), (b, d), (b, c)), two))
    tri_owner.append(two)

    # (T, 3, 2) sample indices, inside end first
    edges = np.concatenate(tri_edges)
    owners = np.concatenate(tri_owner)

    # An edge ending on a level sample is keyed by that sample alone
    on_level = flat_values[edges[..., 1]] == 0.0
    edges[..., 0] = np.where(on_level, edges[..., 1], edges[..., 0])

    # Weld by undirected grid edge; drop triangles collapsed by the snap
    lo = np.minimum(edges[..., 0], edges[..., 1])
    hi = np.maximum(edges[..., 0], edges[..., 1])
    keys = lo * n_samples + hi
    distinct = (
        (keys[:, 0] != keys[:, 1]) & (keys[:, 1] != keys[:, 2]) & (keys[:, 0] != keys[:, 2])
    )
    keys, owners = keys[distinct], owners[distinct]
    if len(keys) == 0:
        return np.empty((0, 3)), np.empty((0, 3), dtype=np.int64)
    unique_keys, inverse = np.unique(keys.ravel(), return_inverse=True)
    triangles = inverse.reshape(-1, 3).astype(np.int64)

    v_lo = unique_keys // n_samples
    v_hi = unique_keys % n_samples
    f_lo, f_hi = flat_values[v_lo], flat_values[v_hi]
    crossing = v_lo != v_hi
    t = np.zeros(len(unique_keys))
    t[crossing] = f_lo[crossing] / (f_lo[crossing] - f_hi[crossing])
    p_lo = _sample_positions(v_lo, shape, spacing, origin)
    p_hi = _sample_positions(v_hi, shape, spacing, origin)
    vertices = p_lo + t[:, None] * (p_hi - p_lo)

    # Orient each triangle towards the positive corners of its tetrahedron
    tet_pos = _sample_positions(tets.ravel(), shape, spacing, origin).reshape(-1, 4, 3)
    sorted_inside = np.take_along_axis(inside, order, axis=1)
    w_in = sorted_inside / sorted_inside.sum(axis=1, keepdims=True)
    w_out = ~sorted_inside / (~sorted_inside).sum(axis=1, keepdims=True)
    towards_positive = np.einsum("tk,tkj->tj", w_out - w_in, tet_pos)[owners]

    v0, v1, v2 = (vertices[triangles[:, i]] for i in range(3))
    normals = np.cross(v1 - v0, v2 - v0)
    flip = np.einsum("ij,ij->i", normals, towards_positive) < 0
    triangles[flip] = triangles[flip][:, [0, 2, 1]]

    return vertices, triangles


def _edges(pairs: tuple, rows: np.ndarray) -> np.ndarray:
    """Stack three (start, end) corner arrays into (len(rows), 3, 2)."""
    return np.stack(
        [np.stack([start[rows], end[rows]], axis=1) for start, end in pairs], axis=1
    )


def _sample_positions(
    flat_idx: np.ndarray, shape: tuple[int, ...], spacing: float, origin: np.ndarray
) -> np.ndarray:
    ijk = np.stack(np.unravel_index(flat_idx, shape), axis=1)
    return origin + ijk.astype(np.float64) * spacing
