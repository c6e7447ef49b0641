"""Authoritative map: keyframes, map points and the covisibility graph.

Keyframes and map points live in id-keyed arenas; every cross reference
(point -> observing keyframes, keyframe -> observed points, covisibility
edges) is an integer id. A re-entrant lock guards every structural change.
Background workers never touch the live structures: they read a
``MapSnapshot`` and hand back corrections that are applied atomically,
and only if they are not stale with respect to the map version.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np
from scipy.spatial import ConvexHull, QhullError, cKDTree

from ..config import MappingConfig
from ..geometry import SE3, Camera, CameraIntrinsics, PointCloud, triangulate_and_check
from ..geometry.epipolar import fundamental_from_poses, sampson_error
from .covisibility import CovisibilityGraph
from .keyframe import KeyFrame
from .map_point import MapPoint

if TYPE_CHECKING:
    from ..frontend.feature_extractor import Features
    from ..frontend.feature_matcher import FeatureMatcher
    from .messages import BACorrection, LoopCorrection

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MapSnapshot:
    """Immutable, versioned copy of (part of) the map.

    Attributes:
        version: Map version the copy was taken at
        keyframes: Copied keyframes by id
        points: Copied map points by id
        covisibility: Copied covisibility graph
        first_keyframe_id: Gauge keyframe of the map
        local_keyframe_ids: Keyframes requested by the caller (all if global)
        loop_edges: Accepted loop constraints as (kf_a, kf_b, T_a_b)
    """

    version: int
    keyframes: dict[int, KeyFrame]
    points: dict[int, MapPoint]
    covisibility: CovisibilityGraph
    first_keyframe_id: int
    local_keyframe_ids: frozenset[int] = field(default_factory=frozenset)
    loop_edges: tuple[tuple[int, int, SE3], ...] = ()

    @property
    def keyframe_ids(self) -> list[int]:
        """Keyframe ids in insertion order."""
        return sorted(self.keyframes)

    @property
    def is_global(self) -> bool:
        """True if the snapshot covers every keyframe."""
        return len(self.local_keyframe_ids) == len(self.keyframes)


@dataclass
class InsertResult:
    """Outcome of a keyframe insertion."""

    keyframe_id: int
    num_associated: int = 0
    new_point_ids: list[int] = field(default_factory=list)


@dataclass
class LocalMap:
    """Map points around a keyframe, as arrays for matching."""

    point_ids: np.ndarray  # (N,) int64
    positions: np.ndarray  # Nx3
    descriptors: np.ndarray  # Nx32 uint8

    def __len__(self) -> int:
        return len(self.point_ids)


class MapManager:
    """Owns keyframes and map points and keeps them consistent.

    Invariants maintained:
    - every map point is observed by at least two keyframes
    - observations are mirrored on both sides (point and keyframe)
    - every keyframe but the first shares points with another keyframe
    """

    def __init__(
        self,
        intrinsics: CameraIntrinsics,
        config: MappingConfig | None = None,
        matcher: FeatureMatcher | None = None,
    ) -> None:
        """Initialize an empty map.

        Args:
            intrinsics: Camera calibration shared by every keyframe
            config: Map maintenance parameters
            matcher: Descriptor matcher used to triangulate new points
        """
        self._intrinsics = intrinsics
        self._K = intrinsics.to_matrix()
        self._config = config or MappingConfig()
        self._matcher = matcher

        self._lock = threading.RLock()
        self._version = 0
        self._keyframes: dict[int, KeyFrame] = {}
        self._points: dict[int, MapPoint] = {}
        self._covisibility = CovisibilityGraph(self._config.covisibility_min_shared)
        self._next_keyframe_id = 0
        self._next_point_id = 0
        self._num_inserted = 0
        self._first_keyframe_id = -1
        self._loop_edges: list[tuple[int, int, SE3]] = []

        # Results computed from snapshots older than these are stale
        self._accept_floor: dict[str, int] = {"ba": 0, "loop": 0}

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def lock(self) -> threading.RLock:
        """Map lock; hold it to read several structures consistently."""
        return self._lock

    @property
    def version(self) -> int:
        """Incremented on every structural change or applied correction."""
        return self._version

    @property
    def camera_matrix(self) -> np.ndarray:
        """3x3 intrinsic matrix."""
        return self._K.copy()

    @property
    def intrinsics(self) -> CameraIntrinsics:
        """Camera calibration."""
        return self._intrinsics

    @property
    def covisibility(self) -> CovisibilityGraph:
        """Live covisibility graph (hold the lock while reading)."""
        return self._covisibility

    @property
    def num_keyframes(self) -> int:
        """Number of keyframes."""
        return len(self._keyframes)

    @property
    def num_points(self) -> int:
        """Number of map points."""
        return len(self._points)

    @property
    def first_keyframe_id(self) -> int:
        """Id of the keyframe defining the world frame (-1 if empty)."""
        return self._first_keyframe_id

    @property
    def loop_edges(self) -> list[tuple[int, int, SE3]]:
        """Accepted loop constraints as (kf_a, kf_b, T_a_b)."""
        with self._lock:
            return list(self._loop_edges)

    def get_keyframe(self, kf_id: int) -> KeyFrame | None:
        """Return a keyframe by id."""
        return self._keyframes.get(kf_id)

    def get_point(self, point_id: int) -> MapPoint | None:
        """Return a map point by id."""
        return self._points.get(point_id)

    def keyframes(self) -> list[KeyFrame]:
        """Return keyframes in insertion order."""
        with self._lock:
            return [self._keyframes[k] for k in sorted(self._keyframes)]

    def points(self) -> list[MapPoint]:
        """Return all map points."""
        with self._lock:
            return list(self._points.values())

    @property
    def last_keyframe(self) -> KeyFrame | None:
        """Most recently inserted keyframe."""
        with self._lock:
            if not self._keyframes:
                return None
            return self._keyframes[max(self._keyframes)]

    def covisible_keyframes(self, kf_id: int, n: int = 10) -> list[int]:
        """Return kf_id and its n-1 most covisible keyframes."""
        with self._lock:
            return self._covisibility.get_local_keyframes(kf_id, n)

    # ------------------------------------------------------------------
    # Structural changes
    # ------------------------------------------------------------------

    def create_keyframe(
        self,
        frame_id: int,
        timestamp_ns: int,
        pose: SE3,
        features: Features,
        image: np.ndarray | None = None,
        depth: np.ndarray | None = None,
    ) -> KeyFrame:
        """Allocate a keyframe id and build a keyframe (not yet inserted)."""
        with self._lock:
            kf_id = self._next_keyframe_id
            self._next_keyframe_id += 1
        return KeyFrame(
            id=kf_id,
            frame_id=frame_id,
            timestamp_ns=timestamp_ns,
            pose=pose,
            features=features,
            image=image,
            depth=depth,
        )

    def _add_keyframe(self, keyframe: KeyFrame) -> None:
        self._keyframes[keyframe.id] = keyframe
        self._covisibility.add_keyframe(keyframe.id)
        if self._first_keyframe_id < 0:
            self._first_keyframe_id = keyframe.id
        self._num_inserted += 1

    def _create_point(
        self,
        position: np.ndarray,
        observations: dict[int, int],
        reference_kf_id: int,
    ) -> MapPoint:
        point_id = self._next_point_id
        self._next_point_id += 1

        ref_kf = self._keyframes[reference_kf_id]
        kp_idx = observations[reference_kf_id]
        point = MapPoint(
            id=point_id,
            position=position,
            descriptor=ref_kf.features.descriptors[kp_idx],
            reference_kf_id=reference_kf_id,
            created_at_keyframe=self._num_inserted,
        )
        colors = ref_kf.sample_colors(np.array([kp_idx]))
        if colors is not None:
            point.color = colors[0]

        self._points[point_id] = point
        for kf_id, idx in observations.items():
            self._associate(kf_id, idx, point_id)
        self._refresh_point(point)
        return point

    def _associate(self, kf_id: int, keypoint_idx: int, point_id: int) -> bool:
        """Link keypoint keypoint_idx of kf_id to point_id (both sides)."""
        keyframe = self._keyframes[kf_id]
        point = self._points[point_id]
        if kf_id in point.observations or keypoint_idx in keyframe.keypoint_to_point:
            return False
        point.add_observation(kf_id, keypoint_idx)
        keyframe.keypoint_to_point[keypoint_idx] = point_id
        self._covisibility.add_observation(kf_id, point_id)
        return True

    def _refresh_point(self, point: MapPoint) -> None:
        centers = [self._keyframes[k].pose.position for k in point.observations]
        point.update_normal(centers)
        descriptors = np.array(
            [
                self._keyframes[k].features.descriptors[idx]
                for k, idx in point.observations.items()
            ]
        )
        point.update_descriptor(descriptors)

    def initialize(
        self,
        keyframe_ref: KeyFrame,
        keyframe_cur: KeyFrame,
        positions: np.ndarray,
        indices_ref: np.ndarray,
        indices_cur: np.ndarray,
    ) -> list[int]:
        """Insert the two bootstrap keyframes and their triangulated points.

        Returns:
            Ids of the created map points
        """
        with self._lock:
            self._add_keyframe(keyframe_ref)
            self._add_keyframe(keyframe_cur)
            new_ids = []
            for pos, i_ref, i_cur in zip(positions, indices_ref, indices_cur):
                point = self._create_point(
                    pos,
                    {keyframe_ref.id: int(i_ref), keyframe_cur.id: int(i_cur)},
                    keyframe_ref.id,
                )
                new_ids.append(point.id)
            self._version += 1

        logger.info("[Map] Initialized with %d points", len(new_ids))
        return new_ids

    def insert_keyframe(
        self,
        keyframe: KeyFrame,
        matched_points: dict[int, int],
    ) -> InsertResult:
        """Insert a keyframe, associate its tracked points and triangulate new ones.

        Args:
            keyframe: Keyframe from create_keyframe
            matched_points: keypoint index -> map point id from tracking

        Returns:
            InsertResult with the ids of newly created points
        """
        with self._lock:
            self._add_keyframe(keyframe)
            associated = 0
            for kp_idx, point_id in matched_points.items():
                if point_id in self._points and self._associate(
                    keyframe.id, int(kp_idx), point_id
                ):
                    associated += 1
            for point_id in set(keyframe.keypoint_to_point.values()):
                self._refresh_point(self._points[point_id])

            new_ids = self._triangulate_new_points(keyframe)

            if not self._covisibility.has_shared_points(keyframe.id):
                # A keyframe must connect to the observation graph
                self._remove_keyframe(keyframe.id)
                self._version += 1
                logger.warning("[Map] Keyframe %d shares no points, dropped", keyframe.id)
                return InsertResult(keyframe_id=-1)

            self._version += 1

        logger.info(
            "[Map] Keyframe %d: %d tracked, %d new points",
            keyframe.id,
            associated,
            len(new_ids),
        )
        return InsertResult(
            keyframe_id=keyframe.id, num_associated=associated, new_point_ids=new_ids
        )

    def _neighbour_keyframes(self, kf_id: int) -> list[int]:
        n = self._config.n_covisible_for_triangulation
        neighbours = [
            other
            for other, _ in self._covisibility.get_connected_keyframes(kf_id, min_shared=1)
        ][:n]
        if len(neighbours) < n:
            recent = sorted((k for k in self._keyframes if k != kf_id), reverse=True)
            for other in recent:
                if other not in neighbours:
                    neighbours.append(other)
                if len(neighbours) >= n:
                    break
        return neighbours

    def _triangulate_new_points(self, keyframe: KeyFrame) -> list[int]:
        """Triangulate unmatched keypoints of keyframe against its neighbours."""
        if self._matcher is None:
            return []

        cfg = self._config
        new_ids: list[int] = []
        for other_id in self._neighbour_keyframes(keyframe.id):
            other = self._keyframes[other_id]
            free_a = keyframe.unmatched_keypoints()
            free_b = other.unmatched_keypoints()
            if len(free_a) == 0 or len(free_b) == 0:
                continue

            baseline = np.linalg.norm(keyframe.pose.position - other.pose.position)
            depth = self._median_depth(other)
            if depth is not None and baseline / depth < 0.01:
                continue

            matches = self._matcher.match_descriptors(
                keyframe.features.descriptors[free_a], other.features.descriptors[free_b]
            )
            if len(matches) == 0:
                continue

            idx_a = free_a[matches.indices_a]
            idx_b = free_b[matches.indices_b]
            pts_a = keyframe.features.points[idx_a].astype(np.float64)
            pts_b = other.features.points[idx_b].astype(np.float64)

            epipolar_ok = self._epipolar_check(keyframe.pose, other.pose, pts_a, pts_b)
            if not epipolar_ok.any():
                continue
            idx_a, idx_b = idx_a[epipolar_ok], idx_b[epipolar_ok]

            tri = triangulate_and_check(
                self._K,
                keyframe.pose,
                other.pose,
                pts_a[epipolar_ok],
                pts_b[epipolar_ok],
                max_reprojection_error=cfg.max_reprojection_px,
                min_parallax_deg=cfg.min_parallax_deg,
            )
            for pos, ia, ib in zip(
                tri.points[tri.valid], idx_a[tri.valid], idx_b[tri.valid]
            ):
                if int(ia) in keyframe.keypoint_to_point or int(ib) in other.keypoint_to_point:
                    continue
                point = self._create_point(
                    pos, {keyframe.id: int(ia), other.id: int(ib)}, keyframe.id
                )
                new_ids.append(point.id)
        return new_ids

    def _epipolar_check(
        self, pose_a: SE3, pose_b: SE3, pts_a: np.ndarray, pts_b: np.ndarray
    ) -> np.ndarray:
        """Return a mask of pairs consistent with the known relative pose."""
        F = fundamental_from_poses(self._K, pose_a, pose_b)
        threshold = self._config.max_reprojection_px
        return sampson_error(F, pts_a, pts_b) < threshold**2

    def _median_depth(self, keyframe: KeyFrame) -> float | None:
        ids = keyframe.observed_point_ids()
        if not ids:
            return None
        positions = np.array([self._points[p].position for p in ids if p in self._points])
        if len(positions) == 0:
            return None
        depths = keyframe.pose.inverse().transform_points(positions)[:, 2]
        return float(np.median(depths))

    def _remove_point(self, point_id: int) -> None:
        point = self._points.pop(point_id, None)
        if point is None:
            return
        for kf_id, kp_idx in point.observations.items():
            keyframe = self._keyframes.get(kf_id)
            if keyframe is not None and keyframe.keypoint_to_point.get(kp_idx) == point_id:
                del keyframe.keypoint_to_point[kp_idx]
        self._covisibility.remove_point(point_id)

    def _remove_keyframe(self, kf_id: int) -> list[int]:
        """Remove a keyframe; returns ids of points that fell below two observations."""
        keyframe = self._keyframes.pop(kf_id, None)
        if keyframe is None:
            return []
        dropped = []
        for point_id in list(keyframe.keypoint_to_point.values()):
            point = self._points.get(point_id)
            if point is None:
                continue
            point.remove_observation(kf_id)
            if point.num_observations < 2:
                self._remove_point(point_id)
                dropped.append(point_id)
            else:
                if point.reference_kf_id == kf_id:
                    point.reference_kf_id = min(point.observations)
                self._refresh_point(point)
        self._covisibility.remove_keyframe(kf_id)
        self._loop_edges = [e for e in self._loop_edges if kf_id not in e[:2]]
        return dropped

    def cull_map_points(self) -> list[int]:
        """Remove points that are unreliable.

        A point is removed when it has fewer than two observations, or once
        its grace period is over and it is rarely found when predicted
        visible, is still seen by fewer than min_point_observations
        keyframes, or has had persistently high reprojection error.

        Returns:
            Ids of removed points
        """
        cfg = self._config
        with self._lock:
            removed = []
            for point in list(self._points.values()):
                age = self._num_inserted - point.created_at_keyframe
                mature = age >= cfg.point_grace_keyframes
                if (
                    point.num_observations < 2
                    or point.high_error_strikes >= cfg.high_error_strikes
                    or (mature and point.found_ratio < cfg.min_found_ratio)
                    or (mature and point.num_observations < cfg.min_point_observations)
                ):
                    self._remove_point(point.id)
                    removed.append(point.id)
            if removed:
                self._version += 1

        if removed:
            logger.debug("[Map] Culled %d points", len(removed))
        return removed

    def cull_keyframes(self, around_kf_id: int | None = None) -> list[int]:
        """Remove keyframes whose observations are redundant with neighbours.

        A keyframe is redundant if more than redundancy_ratio of its points
        are seen by at least redundancy_min_observers other keyframes. The
        first keyframe and the newest keyframe are never culled.

        Args:
            around_kf_id: Only consider this keyframe's covisible neighbours
                (every keyframe if None)

        Returns:
            Ids of removed keyframes
        """
        cfg = self._config
        with self._lock:
            if not self._keyframes:
                return []
            newest = max(self._keyframes)
            if around_kf_id is None:
                candidates = sorted(self._keyframes)
            else:
                candidates = [
                    k for k, _ in self._covisibility.get_connected_keyframes(around_kf_id, 1)
                ]

            removed = []
            for kf_id in candidates:
                if kf_id in (self._first_keyframe_id, newest) or kf_id not in self._keyframes:
                    continue
                point_ids = self._keyframes[kf_id].observed_point_ids()
                if not point_ids:
                    continue
                redundant = sum(
                    1
                    for p in point_ids
                    if self._points[p].num_observations - 1 >= cfg.redundancy_min_observers
                )
                if redundant / len(point_ids) <= cfg.redundancy_ratio:
                    continue
                if not self._safe_to_remove(kf_id):
                    continue
                self._remove_keyframe(kf_id)
                removed.append(kf_id)

            if removed:
                self._version += 1

        if removed:
            logger.info("[Map] Culled redundant keyframes %s", removed)
        return removed

    def _safe_to_remove(self, kf_id: int) -> bool:
        """True if removing kf_id leaves every neighbour connected to another keyframe."""
        for other, _ in self._covisibility.get_connected_keyframes(kf_id, 1):
            if other == self._first_keyframe_id:
                continue
            others = [
                k for k, _ in self._covisibility.get_connected_keyframes(other, 1) if k != kf_id
            ]
            if not others:
                return False
        return True

    def fuse_points(self, keep_id: int, remove_id: int) -> bool:
        """Merge remove_id into keep_id.

        Observations of the removed point move to the kept one unless the
        keyframe already observes the kept point.

        Returns:
            True if both points existed and were merged
        """
        with self._lock:
            if keep_id == remove_id:
                return False
            keep = self._points.get(keep_id)
            gone = self._points.get(remove_id)
            if keep is None or gone is None:
                return False
            moved = dict(gone.observations)
            self._remove_point(remove_id)
            for kf_id, kp_idx in moved.items():
                if kf_id in self._keyframes:
                    self._associate(kf_id, kp_idx, keep_id)
            keep.visible_count += gone.visible_count
            keep.found_count += gone.found_count
            self._refresh_point(keep)
            self._version += 1
        return True

    # ------------------------------------------------------------------
    # Tracking statistics
    # ------------------------------------------------------------------

    def record_visibility(self, visible_ids: np.ndarray, found_ids: np.ndarray) -> None:
        """Count predicted sightings and successful matches of points."""
        with self._lock:
            for pid in visible_ids:
                point = self._points.get(int(pid))
                if point is not None:
                    point.visible_count += 1
            for pid in found_ids:
                point = self._points.get(int(pid))
                if point is not None:
                    point.found_count += 1

    def local_map(self, kf_id: int, n_keyframes: int = 10) -> LocalMap:
        """Return points observed by kf_id and its most covisible keyframes."""
        with self._lock:
            ids: set[int] = set()
            for k in self._covisibility.get_local_keyframes(kf_id, n_keyframes):
                keyframe = self._keyframes.get(k)
                if keyframe is not None:
                    ids.update(keyframe.observed_point_ids())
            ids = {p for p in ids if p in self._points}
            point_ids = np.array(sorted(ids), dtype=np.int64)
            if len(point_ids) == 0:
                return LocalMap(point_ids, np.empty((0, 3)), np.empty((0, 32), dtype=np.uint8))
            positions = np.array([self._points[p].position for p in point_ids])
            descriptors = np.array([self._points[p].descriptor for p in point_ids])
        return LocalMap(point_ids, positions, descriptors)

    # ------------------------------------------------------------------
    # Snapshots and corrections
    # ------------------------------------------------------------------

    def snapshot(self, keyframe_ids: list[int] | None = None) -> MapSnapshot:
        """Copy the map (or a neighbourhood of it) for a background task.

        With keyframe_ids given, the snapshot holds those keyframes, every
        point they observe, and every other keyframe observing those points
        (useful as fixed constraints).
        """
        with self._lock:
            if keyframe_ids is None:
                kf_ids = set(self._keyframes)
                local = frozenset(kf_ids)
                point_ids = set(self._points)
            else:
                local = frozenset(k for k in keyframe_ids if k in self._keyframes)
                point_ids = set()
                for k in local:
                    point_ids.update(self._keyframes[k].observed_point_ids())
                point_ids &= set(self._points)
                kf_ids = set(local)
                for p in point_ids:
                    kf_ids.update(self._points[p].observations)

            return MapSnapshot(
                version=self._version,
                keyframes={k: self._keyframes[k].copy() for k in kf_ids},
                points={p: self._points[p].copy() for p in point_ids},
                covisibility=self._covisibility.copy(),
                first_keyframe_id=self._first_keyframe_id,
                local_keyframe_ids=local,
                loop_edges=tuple(
                    (a, b, T.copy()) for a, b, T in self._loop_edges if a in kf_ids and b in kf_ids
                ),
            )

    def accepts(self, kind: str, base_version: int) -> bool:
        """Return True if a correction of kind computed at base_version is current."""
        with self._lock:
            return base_version >= self._accept_floor[kind]

    def apply_ba_correction(self, correction: BACorrection) -> bool:
        """Apply optimized poses and positions if the correction is not stale.

        Keyframes or points deleted since the snapshot are skipped.

        Returns:
            True if applied, False if discarded as stale
        """
        with self._lock:
            if correction.base_version < self._accept_floor["ba"]:
                logger.warning(
                    "[Map] Discarding stale BA correction (base v%d < v%d)",
                    correction.base_version,
                    self._accept_floor["ba"],
                )
                return False

            for kf_id, pose in correction.poses.items():
                keyframe = self._keyframes.get(kf_id)
                if keyframe is not None:
                    keyframe.pose = pose
            for point_id, position in correction.points.items():
                point = self._points.get(point_id)
                if point is not None:
                    point.position = np.asarray(position, dtype=np.float64)
            for point_id in correction.high_error_point_ids:
                point = self._points.get(point_id)
                if point is not None:
                    point.high_error_strikes += 1
            for point_id in correction.points:
                point = self._points.get(point_id)
                if point is not None and point_id not in correction.high_error_point_ids:
                    point.high_error_strikes = 0

            self._accept_floor["ba"] = correction.base_version
            self._version += 1
        return True

    def apply_loop_correction(self, correction: LoopCorrection) -> bool:
        """Apply a loop closure: corrected poses, moved points and fused duplicates.

        Keyframes created after the snapshot follow the correction of the
        newest corrected keyframe; their points move with them.

        Returns:
            True if applied, False if discarded as stale
        """
        with self._lock:
            if correction.base_version < self._accept_floor["loop"]:
                logger.warning(
                    "[Map] Discarding stale loop correction (base v%d < v%d)",
                    correction.base_version,
                    self._accept_floor["loop"],
                )
                return False

            anchor_id = max(correction.poses) if correction.poses else None
            delta = SE3.identity()
            if anchor_id is not None and anchor_id in correction.old_poses:
                delta = correction.poses[anchor_id].compose(
                    correction.old_poses[anchor_id].inverse()
                )

            for kf_id, keyframe in self._keyframes.items():
                if kf_id in correction.poses:
                    keyframe.pose = correction.poses[kf_id]
                elif anchor_id is not None and kf_id > anchor_id:
                    keyframe.pose = delta.compose(keyframe.pose)

            for point_id, point in self._points.items():
                if point_id in correction.points:
                    point.position = np.asarray(correction.points[point_id], dtype=np.float64)
                elif anchor_id is not None and point.reference_kf_id > anchor_id:
                    point.position = delta.transform_point(point.position)

            fused = 0
            for keep_id, remove_id in correction.fused_points:
                if self.fuse_points(keep_id, remove_id):
                    fused += 1

            self._loop_edges.append(
                (correction.match_kf_id, correction.query_kf_id, correction.relative_pose)
            )
            self._version += 1
            # Everything computed before the closure is now stale
            self._accept_floor["ba"] = self._version
            self._accept_floor["loop"] = self._version

        logger.info(
            "[Map] Loop %d<->%d applied: %d poses, %d fused points",
            correction.query_kf_id,
            correction.match_kf_id,
            len(correction.poses),
            fused,
        )
        return True

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def export_point_cloud(self, with_normals: bool = True, k_neighbors: int = 10) -> PointCloud:
        """Export map points, colors, normals and keyframe cameras."""
        with self._lock:
            points = sorted(self._points.values(), key=lambda p: p.id)
            cameras = tuple(
                Camera.from_pose(kf.pose, self._intrinsics)
                for kf in (self._keyframes[k] for k in sorted(self._keyframes))
            )
            positions = np.array([p.position for p in points]).reshape(-1, 3)
            view_dirs = np.array(
                [p.normal if p.normal is not None else np.zeros(3) for p in points]
            ).reshape(-1, 3)
            colors = None
            if points and all(p.color is not None for p in points):
                colors = np.array([p.color for p in points], dtype=np.uint8)
            ids = np.array([p.id for p in points], dtype=np.int64)

        normals = None
        if with_normals and len(positions) > k_neighbors:
            normals = estimate_normals(positions, k_neighbors, view_dirs)
        return PointCloud(
            positions=positions,
            colors=colors,
            normals=normals,
            cameras=cameras,
            point_ids=ids,
        )

    def mapped_area(self) -> float:
        """Area (m^2) of the convex hull of map points on the ground (x-z) plane."""
        with self._lock:
            xz = np.array([p.position[[0, 2]] for p in self._points.values()])
        if len(xz) < 3:
            return 0.0
        try:
            # In 2D, ConvexHull.volume is the enclosed area
            return float(ConvexHull(xz).volume)
        except QhullError:
            return 0.0

    def check_invariants(self) -> list[str]:
        """Return descriptions of violated map invariants (empty if consistent)."""
        problems = []
        with self._lock:
            for point in self._points.values():
                if point.num_observations < 2:
                    problems.append(f"point {point.id} has {point.num_observations} observations")
                for kf_id, kp_idx in point.observations.items():
                    keyframe = self._keyframes.get(kf_id)
                    if keyframe is None:
                        problems.append(f"point {point.id} observed by missing keyframe {kf_id}")
                    elif keyframe.keypoint_to_point.get(kp_idx) != point.id:
                        problems.append(f"point {point.id} not mirrored in keyframe {kf_id}")
            for keyframe in self._keyframes.values():
                for kp_idx, point_id in keyframe.keypoint_to_point.items():
                    if point_id not in self._points:
                        problems.append(
                            f"keyframe {keyframe.id} references missing point {point_id}"
                        )
                if (
                    keyframe.id != self._first_keyframe_id
                    and not self._covisibility.has_shared_points(keyframe.id)
                ):
                    problems.append(f"keyframe {keyframe.id} is orphaned")
                if not keyframe.pose.is_valid():
                    problems.append(f"keyframe {keyframe.id} has an invalid pose")
        return problems

    def reset(self) -> None:
        """Remove everything from the map."""
        with self._lock:
            self._keyframes.clear()
            self._points.clear()
            self._covisibility = CovisibilityGraph(self._config.covisibility_min_shared)
            self._first_keyframe_id = -1
            self._num_inserted = 0
            self._loop_edges.clear()
            self._version += 1
            self._accept_floor = {"ba": self._version, "loop": self._version}


def estimate_normals(
    positions: np.ndarray, k: int = 10, view_dirs: np.ndarray | None = None
) -> np.ndarray:
    """Estimate unit normals by PCA over the k nearest neighbours.

    Normals are flipped to agree with view_dirs (point -> camera) when given.
    """
    tree = cKDTree(positions)
    k = min(k, len(positions))
    _, neighbours = tree.query(positions, k=k)
    patches = positions[neighbours]  # N x k x 3
    centered = patches - patches.mean(axis=1, keepdims=True)
    cov = np.einsum("nki,nkj->nij", centered, centered)
    _, eigvecs = np.linalg.eigh(cov)
    normals = eigvecs[:, :, 0]
    if view_dirs is not None:
        flip = np.sum(normals * view_dirs, axis=1) < 0
        normals[flip] *= -1
    return normals / np.maximum(np.linalg.norm(normals, axis=1, keepdims=True), 1e-12)
