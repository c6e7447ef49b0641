"""Tests for TSDF fusion, surface extraction and mesh building."""

import numpy as np
import pytest

from recon3d.backend import KeyFrame, MapManager
from recon3d.config import DenseConfig
from recon3d.dense import (
    MeshBuilder,
    TSDFVolume,
    laplacian_smooth,
    marching_tetrahedra,
    remove_degenerate_triangles,
    remove_unreferenced_vertices,
    triangle_normals,
    vertex_normals,
)
from recon3d.dense.mesh_builder import BLANK_RGB, BLANK_ROWS
from recon3d.errors import GeometryError
from recon3d.geometry import SE3

from conftest import HEIGHT, PLANE_DEPTH, WIDTH, make_features, random_descriptors, render_plane

SPHERE_CENTER = np.array([0.013, -0.021, 0.017])
SPHERE_RADIUS = 0.6


def _sphere_volume(voxel_size: float = 0.05, n: int = 40) -> TSDFVolume:
    origin = np.full(3, -0.5 * (n - 1) * voxel_size)
    axes = [origin[i] + np.arange(n) * voxel_size for i in range(3)]
    x, y, z = np.meshgrid(*axes, indexing="ij")
    grid = np.stack([x, y, z], axis=-1)
    sdf = np.linalg.norm(grid - SPHERE_CENTER, axis=-1) - SPHERE_RADIUS
    return TSDFVolume.from_sdf(sdf, origin, voxel_size)


def _constant_depth(value: float) -> np.ndarray:
    return np.full((HEIGHT, WIDTH), value, dtype=np.float32)


class TestMarchingTetrahedra:
    """Test suite for marching_tetrahedra."""

    def test_plane_through_cell(self):
        """A linear field gives a flat unit square facing the positive side."""
        field = np.zeros((2, 2, 2))
        field[0] = -0.5
        field[1] = 0.5

        vertices, triangles = marching_tetrahedra(field)

        np.testing.assert_allclose(vertices[:, 0], 0.5)
        normals = triangle_normals(vertices, triangles)
        assert np.all(normals[:, 0] > 0)
        assert 0.5 * np.linalg.norm(normals, axis=1).sum() == pytest.approx(1.0)

    def test_spacing_and_origin(self):
        """Vertices are placed in world units."""
        field = np.zeros((2, 2, 2))
        field[0] = -0.5
        field[1] = 0.5

        vertices, _ = marching_tetrahedra(field, spacing=2.0, origin=np.ones(3))

        np.testing.assert_allclose(vertices[:, 0], 2.0)
        assert vertices[:, 1].min() == pytest.approx(1.0)
        assert vertices[:, 1].max() == pytest.approx(3.0)

    def test_level(self):
        """The isovalue shifts the extracted surface."""
        field = np.zeros((2, 2, 2))
        field[1] = 1.0
        vertices, _ = marching_tetrahedra(field, level=0.25)
        np.testing.assert_allclose(vertices[:, 0], 0.25)

    def test_unknown_samples_are_skipped(self):
        """A cell touching a NaN sample produces nothing."""
        field = np.zeros((2, 2, 2))
        field[0] = -0.5
        field[1] = 0.5
        field[1, 1, 1] = np.nan

        vertices, triangles = marching_tetrahedra(field)

        assert len(vertices) == 0
        assert len(triangles) == 0

    def test_surface_through_samples(self):
        """A level passing through a layer of samples welds to those samples."""
        field = np.zeros((3, 2, 2))
        field[0] = -1.0
        field[2] = 1.0

        vertices, triangles = marching_tetrahedra(field)

        assert len(vertices) == 4
        np.testing.assert_allclose(vertices[:, 0], 1.0)
        assert len(np.unique(triangles)) == 4
        normals = triangle_normals(vertices, triangles)
        assert np.all(normals[:, 0] > 0)
        assert 0.5 * np.linalg.norm(normals, axis=1).sum() == pytest.approx(1.0)

    @pytest.mark.parametrize(
        "field",
        [np.ones((4, 4, 4)), np.zeros((1, 4, 4)), np.zeros((4, 4))],
        ids=["no-crossing", "flat-grid", "2d"],
    )
    def test_empty(self, field):
        """Fields without a crossing or without cells give an empty mesh."""
        vertices, triangles = marching_tetrahedra(field)
        assert vertices.shape == (0, 3)
        assert triangles.shape == (0, 3)


class TestTSDFVolume:
    """Test suite for TSDFVolume."""

    @pytest.mark.parametrize(
        "voxel_size, shape",
        [(0.0, (4, 4, 4)), (-0.1, (4, 4, 4)), (0.1, (1, 4, 4)), (0.1, (4, 4))],
    )
    def test_invalid_volume(self, voxel_size, shape):
        """Non-positive voxels and degenerate grids are rejected."""
        with pytest.raises(GeometryError):
            TSDFVolume(np.zeros(3), shape, voxel_size)

    def test_new_volume_is_unobserved(self):
        """A fresh volume is all free space with zero weight."""
        volume = TSDFVolume(np.zeros(3), (4, 5, 6), 0.1)

        assert volume.num_voxels == 120
        assert volume.truncation == pytest.approx(0.3)
        assert volume.observed_fraction() == 0.0
        assert np.all(volume.tsdf == 1.0)
        assert volume.extract_mesh().num_triangles == 0
        with pytest.raises(ValueError):
            volume.weights[0, 0, 0] = 1.0

    def test_from_bounds_covers_box(self):
        """The volume spans the requested box plus the margin."""
        volume = TSDFVolume.from_bounds([0.0, 0.0, 0.0], [1.0, 0.5, 0.2], 0.1, margin_voxels=2)

        np.testing.assert_allclose(volume.origin, [-0.2, -0.2, -0.2])
        assert volume.shape == (15, 10, 7)

    def test_sphere_is_closed_manifold(self):
        """A sphere extracts as a closed, consistently oriented genus-0 mesh."""
        mesh = _sphere_volume().extract_mesh()

        assert mesh.num_triangles > 0
        assert mesh.is_closed_manifold()
        assert mesh.euler_characteristic() == 2

    def test_sphere_geometry(self):
        """Vertices lie on the sphere with outward normals."""
        mesh = _sphere_volume().extract_mesh()

        offsets = mesh.vertices - SPHERE_CENTER
        radii = np.linalg.norm(offsets, axis=1)
        np.testing.assert_allclose(radii, SPHERE_RADIUS, atol=0.01)
        assert mesh.surface_area() == pytest.approx(4 * np.pi * SPHERE_RADIUS**2, rel=0.05)
        assert np.all(np.einsum("ij,ij->i", mesh.vertex_normals, offsets) > 0)
        assert mesh.vertex_colors is None

    def test_sphere_through_samples_is_closed_manifold(self):
        """A sphere touching grid samples exactly still extracts a clean closed mesh."""
        voxel_size, n = 0.05, 25
        origin = np.full(3, -0.6)
        center = origin + 12 * voxel_size  # on a sample
        axes = [origin[i] + np.arange(n) * voxel_size for i in range(3)]
        grid = np.stack(np.meshgrid(*axes, indexing="ij"), axis=-1)
        sdf = np.linalg.norm(grid - center, axis=-1) - 10 * voxel_size

        mesh = TSDFVolume.from_sdf(sdf, origin, voxel_size).extract_mesh()

        assert mesh.is_closed_manifold()
        assert mesh.euler_characteristic() == 2
        assert len(np.unique(mesh.triangles)) == mesh.num_vertices
        assert len(np.unique(np.round(mesh.vertices, 9), axis=0)) == mesh.num_vertices
        np.testing.assert_allclose(np.linalg.norm(mesh.vertex_normals, axis=1), 1.0)

    def test_low_weight_voxels_are_unknown(self):
        """Raising min_weight above every weight removes the surface."""
        assert _sphere_volume().extract_mesh(min_weight=2.0).num_triangles == 0

    def test_integrate_depth_plane(self, camera_matrix):
        """A fronto-parallel depth map produces a flat colored surface."""
        volume = TSDFVolume.from_bounds([-0.3, -0.3, 0.8], [0.3, 0.3, 1.2], 0.02)
        color = np.zeros((HEIGHT, WIDTH, 3), dtype=np.uint8)
        color[..., 2] = 255  # red in BGR

        updated = volume.integrate_depth(
            _constant_depth(1.0), camera_matrix, SE3.identity(), color
        )
        mesh = volume.extract_mesh()

        assert updated > 0
        assert mesh.num_triangles > 0
        np.testing.assert_allclose(mesh.vertices[:, 2], 1.0, atol=1e-3)
        assert len(np.unique(mesh.triangles)) == mesh.num_vertices
        assert len(np.unique(np.round(mesh.vertices, 6), axis=0)) == mesh.num_vertices
        expected = np.tile([255, 0, 0], (mesh.num_vertices, 1))
        np.testing.assert_array_equal(mesh.vertex_colors, expected)
        # Normals face the camera
        assert np.all(mesh.vertex_normals[:, 2] < 0)

    def test_space_behind_surface_stays_unknown(self, camera_matrix):
        """Voxels further than the truncation behind the surface are not updated."""
        volume = TSDFVolume(np.array([0.0, 0.0, 0.5]), (2, 2, 41), 0.025)
        volume.integrate_depth(_constant_depth(1.0), camera_matrix, SE3.identity())

        weights = volume.weights[0, 0]
        z = 0.5 + np.arange(41) * 0.025
        assert np.all(weights[z <= 1.0 + volume.truncation - 1e-9] == 1.0)
        assert np.all(weights[z > 1.0 + volume.truncation + 1e-9] == 0.0)

    def test_invisible_volume(self, camera_matrix):
        """A volume behind the camera receives no updates."""
        volume = TSDFVolume(np.array([0.0, 0.0, -2.0]), (4, 4, 4), 0.05)
        assert volume.integrate_depth(_constant_depth(1.0), camera_matrix, SE3.identity()) == 0

    def test_agreeing_observations_accumulate(self, camera_matrix):
        """Consistent observations add up to the weight cap."""
        volume = TSDFVolume(np.array([-0.1, -0.1, 0.9]), (11, 11, 11), 0.02, max_weight=3.0)
        for _ in range(5):
            volume.integrate_depth(_constant_depth(1.0), camera_matrix, SE3.identity())

        assert volume.weights[5, 5, 5] == pytest.approx(3.0)
        assert volume.tsdf[5, 5, 5] == pytest.approx(0.0, abs=1e-6)

    def test_conflicting_observation_reduces_weight(self, camera_matrix):
        """A disagreeing observation lowers confidence instead of adding to it."""
        volume = TSDFVolume(np.array([-0.1, -0.1, 0.9]), (11, 11, 11), 0.02)
        volume.integrate_depth(_constant_depth(1.0), camera_matrix, SE3.identity())
        volume.integrate_depth(_constant_depth(1.0), camera_matrix, SE3.identity())

        volume.integrate_depth(_constant_depth(1.1), camera_matrix, SE3.identity())

        # At the old surface the new reading disagrees by a full truncation
        assert volume.weights[5, 5, 5] == pytest.approx(1.0)
        assert volume.tsdf[5, 5, 5] == pytest.approx(1.0 / 3.0, abs=1e-5)
        # Far in front both readings say free space
        assert volume.weights[5, 5, 0] == pytest.approx(3.0)

    def test_integrate_points(self):
        """Sparse surface points carve a surface along their rays."""
        volume = TSDFVolume.from_bounds([-0.5, -0.5, 1.9], [0.5, 0.5, 2.1], 0.05)
        xs, ys = np.meshgrid(np.arange(-0.5, 0.501, 0.025), np.arange(-0.5, 0.501, 0.025))
        points = np.column_stack([xs.ravel(), ys.ravel(), np.full(xs.size, 2.0)])

        assert volume.integrate_points(points, np.zeros(3)) > 0
        mesh = volume.extract_mesh()

        assert mesh.num_triangles > 0
        assert np.median(np.abs(mesh.vertices[:, 2] - 2.0)) < 0.02

    def test_integrate_no_points(self):
        """Nothing to integrate means no updates."""
        volume = TSDFVolume(np.zeros(3), (4, 4, 4), 0.1)
        assert volume.integrate_points(np.empty((0, 3)), np.zeros(3)) == 0


class TestMeshOps:
    """Test suite for mesh post-processing helpers."""

    @pytest.fixture
    def fan(self):
        """A raised center vertex surrounded by four rim vertices, plus an isolated vertex."""
        vertices = np.array(
            [
                [0.0, 0.0, 1.0],
                [1.0, 0.0, 0.0],
                [0.0, 1.0, 0.0],
                [-1.0, 0.0, 0.0],
                [0.0, -1.0, 0.0],
                [5.0, 5.0, 5.0],
            ]
        )
        triangles = np.array([[0, 1, 2], [0, 2, 3], [0, 3, 4], [0, 4, 1]])
        return vertices, triangles

    def test_triangle_normals(self, fan):
        """Normal length is twice the triangle area."""
        vertices, triangles = fan
        normals = triangle_normals(vertices, triangles)
        np.testing.assert_allclose(np.linalg.norm(normals, axis=1), np.sqrt(3.0))
        assert triangle_normals(vertices, triangles[:0]).shape == (0, 3)

    def test_vertex_normals(self, fan):
        """Vertex normals are unit length, zero for unused vertices."""
        vertices, triangles = fan
        normals = vertex_normals(vertices, triangles)

        np.testing.assert_allclose(normals[0], [0.0, 0.0, 1.0], atol=1e-12)
        np.testing.assert_allclose(np.linalg.norm(normals[:5], axis=1), 1.0)
        np.testing.assert_array_equal(normals[5], 0.0)

    def test_remove_degenerate_triangles(self, fan):
        """Repeated indices and zero-area triangles are dropped."""
        vertices, triangles = fan
        vertices = np.vstack([vertices, [2.0, 0.0, 0.0]])
        bad = np.array([[0, 0, 1], [1, 3, 6]])  # repeated index, collinear

        kept = remove_degenerate_triangles(vertices, np.vstack([triangles, bad]))

        np.testing.assert_array_equal(kept, triangles)

    def test_remove_unreferenced_vertices(self):
        """Unused vertices and their attributes are compacted away."""
        vertices = np.arange(15, dtype=float).reshape(5, 3)
        colors = np.arange(5, dtype=np.uint8)[:, None].repeat(3, axis=1)
        triangles = np.array([[0, 2, 4]])

        new_vertices, new_triangles, new_colors, missing = remove_unreferenced_vertices(
            vertices, triangles, colors, None
        )

        np.testing.assert_array_equal(new_vertices, vertices[[0, 2, 4]])
        np.testing.assert_array_equal(new_triangles, [[0, 1, 2]])
        np.testing.assert_array_equal(new_colors[:, 0], [0, 2, 4])
        assert missing is None

    def test_laplacian_smooth(self, fan):
        """Smoothing moves vertices towards their neighbours' mean."""
        vertices, triangles = fan

        smoothed = laplacian_smooth(vertices, triangles, iterations=1, lam=0.5)

        np.testing.assert_allclose(smoothed[0], [0.0, 0.0, 0.5])
        np.testing.assert_allclose(smoothed[1], [0.5, 0.0, 1.0 / 6.0])
        np.testing.assert_array_equal(smoothed[5], vertices[5])

    def test_laplacian_without_iterations(self, fan):
        """Zero iterations return an unchanged copy."""
        vertices, triangles = fan
        smoothed = laplacian_smooth(vertices, triangles, iterations=0)
        np.testing.assert_array_equal(smoothed, vertices)
        assert smoothed is not vertices


def _plane_map(intrinsics, plane_texture=None, spacing: float = 0.1) -> MapManager:
    """Two keyframes observing a grid of points on the plane z = PLANE_DEPTH."""
    xs, ys = np.meshgrid(np.arange(-0.5, 0.501, spacing), np.arange(-0.4, 0.401, spacing))
    points = np.column_stack([xs.ravel(), ys.ravel(), np.full(xs.size, PLANE_DEPTH)])
    descriptors = random_descriptors(len(points), seed=11)
    K = intrinsics.to_matrix()

    manager = MapManager(intrinsics)
    keyframes = []
    for i, x in enumerate([0.0, 0.1]):
        pose = SE3.from_Rt(np.eye(3), np.array([x, 0.0, 0.0]))
        uv = (K @ pose.inverse().transform_points(points).T).T
        image = None if plane_texture is None else render_plane(plane_texture, pose.translation)
        keyframes.append(
            manager.create_keyframe(
                i, i, pose, make_features(uv[:, :2] / uv[:, 2:], descriptors), image=image
            )
        )
    indices = np.arange(len(points))
    manager.initialize(keyframes[0], keyframes[1], points, indices, indices)
    return manager


class TestMeshBuilder:
    """Test suite for MeshBuilder."""

    def test_textured_mesh_from_depth(self, intrinsics, plane_texture):
        """Depth maps fuse into a flat mesh textured from the keyframe images."""
        manager = _plane_map(intrinsics, plane_texture)
        snapshot = manager.snapshot()
        depth_maps = {k: _constant_depth(PLANE_DEPTH) for k in snapshot.keyframe_ids}

        mesh = MeshBuilder(intrinsics, DenseConfig(voxel_size=0.05, texture_size=256)).build(
            snapshot, depth_maps
        )

        assert mesh.num_triangles > 0
        np.testing.assert_allclose(mesh.vertices[:, 2], PLANE_DEPTH, atol=1e-3)
        assert mesh.texture is not None
        assert mesh.texture.shape == (96 + BLANK_ROWS, 256, 3)
        assert mesh.uvs.min() >= 0.0 and mesh.uvs.max() <= 1.0
        assert mesh.vertex_colors.shape == (mesh.num_vertices, 3)
        # Gray images give gray vertex colors
        np.testing.assert_array_equal(mesh.vertex_colors[:, 0], mesh.vertex_colors[:, 1])

    def test_unseen_triangles_use_blank_texel(self, intrinsics, plane_texture):
        """A triangle behind every camera keeps its fused colors and a blank texel."""
        keyframe = KeyFrame(
            id=0,
            frame_id=0,
            timestamp_ns=0,
            pose=SE3.identity(),
            features=make_features(np.zeros((0, 2)), np.zeros((0, 32))),
            image=render_plane(plane_texture, np.zeros(3)),
        )
        vertices = np.array(
            [
                [0.0, 0.0, 2.0], [0.0, 0.1, 2.0], [0.1, 0.0, 2.0],  # facing the camera
                [0.0, 0.0, -2.0], [0.1, 0.0, -2.0], [0.0, 0.1, -2.0],  # behind it
            ]
        )
        triangles = np.array([[0, 1, 2], [3, 4, 5]])
        colors = np.tile(np.array([[10, 20, 30]], dtype=np.uint8), (6, 1))

        mesh = MeshBuilder(intrinsics, DenseConfig(texture_size=256))._texture(
            vertices, triangles, colors, [keyframe]
        )

        atlas_h, atlas_w = mesh.texture.shape[:2]
        seen, unseen = mesh.triangles[0], mesh.triangles[1]
        assert np.all(mesh.uvs[seen, 1] * atlas_h < atlas_h - BLANK_ROWS)
        np.testing.assert_array_equal(mesh.vertex_colors[unseen], colors[3:])
        for u, v in mesh.uvs[unseen]:
            texel = mesh.texture[int(v * atlas_h), int(u * atlas_w)]
            np.testing.assert_array_equal(texel, BLANK_RGB)

    def test_keyframe_depth_is_used(self, intrinsics):
        """Depth stored on keyframes is fused without explicit depth maps."""
        manager = _plane_map(intrinsics)
        for keyframe in manager.keyframes():
            keyframe.depth = _constant_depth(PLANE_DEPTH)

        mesh = MeshBuilder(intrinsics, DenseConfig(voxel_size=0.05)).build(manager.snapshot())

        assert mesh.num_triangles > 0
        assert mesh.texture is None
        np.testing.assert_allclose(mesh.vertices[:, 2], PLANE_DEPTH, atol=1e-3)

    def test_mesh_from_sparse_points(self, intrinsics):
        """Without depth the sparse map points are fused along their rays."""
        manager = _plane_map(intrinsics, spacing=0.025)

        mesh = MeshBuilder(intrinsics, DenseConfig(voxel_size=0.05)).build(manager.snapshot())

        assert mesh.num_triangles > 0
        assert np.median(np.abs(mesh.vertices[:, 2] - PLANE_DEPTH)) < 0.02

    def test_smoothing_keeps_plane_flat(self, intrinsics):
        """Smoothing a flat surface leaves it on the plane."""
        manager = _plane_map(intrinsics)
        snapshot = manager.snapshot()
        depth_maps = {k: _constant_depth(PLANE_DEPTH) for k in snapshot.keyframe_ids}
        config = DenseConfig(voxel_size=0.05, smoothing_iterations=3)

        mesh = MeshBuilder(intrinsics, config).build(snapshot, depth_maps)

        assert mesh.num_triangles > 0
        np.testing.assert_allclose(mesh.vertices[:, 2], PLANE_DEPTH, atol=1e-3)
        assert len(np.unique(mesh.triangles)) == mesh.num_vertices

    def test_empty_map(self, intrinsics):
        """An empty snapshot gives an empty mesh."""
        mesh = MeshBuilder(intrinsics).build(MapManager(intrinsics).snapshot())
        assert mesh.num_vertices == 0
        assert mesh.num_triangles == 0
