"""Covisibility graph for tracking shared observations between keyframes.

The covisibility graph is a weighted undirected graph where:
- Nodes are keyframes
- Edge weights count the map points both keyframes observe
- An edge "exists" once its weight reaches min_shared_points

All references are integer ids into the map's arenas. Weights are kept
for every pair (not only edges) so they can be updated incrementally as
single observations are added or removed.
"""

from __future__ import annotations

import copy
from collections import defaultdict


class CovisibilityGraph:
    """Graph of keyframes connected by shared map point observations.

    Used to bound the neighbourhood of local bundle adjustment, to pick
    keyframes for triangulation and to exclude neighbours from loop queries.
    """

    def __init__(self, min_shared_points: int = 15) -> None:
        """Initialize covisibility graph.

        Args:
            min_shared_points: Minimum shared points for an edge
        """
        self._min_shared = min_shared_points

        # kf_id -> {other_kf_id: shared count}, symmetric
        self._weights: dict[int, dict[int, int]] = defaultdict(dict)

        # Inverted index: point_id -> kf_ids observing it
        self._point_to_keyframes: dict[int, set[int]] = defaultdict(set)

        # kf_id -> observed point_ids
        self._keyframe_points: dict[int, set[int]] = {}

    def add_keyframe(self, kf_id: int, point_ids: set[int] | list[int] = ()) -> None:
        """Add a keyframe node with its initial observations."""
        self._keyframe_points.setdefault(kf_id, set())
        self._weights.setdefault(kf_id, {})
        for point_id in point_ids:
            self.add_observation(kf_id, point_id)

    def add_observation(self, kf_id: int, point_id: int) -> None:
        """Record that kf_id observes point_id."""
        observed = self._keyframe_points.setdefault(kf_id, set())
        if point_id in observed:
            return
        observed.add(point_id)

        observers = self._point_to_keyframes[point_id]
        for other in observers:
            self._bump(kf_id, other, 1)
        observers.add(kf_id)

    def remove_observation(self, kf_id: int, point_id: int) -> None:
        """Forget that kf_id observes point_id."""
        observed = self._keyframe_points.get(kf_id)
        if observed is None or point_id not in observed:
            return
        observed.discard(point_id)

        observers = self._point_to_keyframes.get(point_id, set())
        observers.discard(kf_id)
        for other in observers:
            self._bump(kf_id, other, -1)
        if not observers:
            self._point_to_keyframes.pop(point_id, None)

    def remove_point(self, point_id: int) -> None:
        """Remove a map point and every observation of it."""
        for kf_id in list(self._point_to_keyframes.get(point_id, ())):
            self.remove_observation(kf_id, point_id)
        self._point_to_keyframes.pop(point_id, None)

    def remove_keyframe(self, kf_id: int) -> None:
        """Remove a keyframe and its observations."""
        for point_id in list(self._keyframe_points.get(kf_id, ())):
            self.remove_observation(kf_id, point_id)
        self._keyframe_points.pop(kf_id, None)
        for other in list(self._weights.get(kf_id, {})):
            self._weights[other].pop(kf_id, None)
        self._weights.pop(kf_id, None)

    def _bump(self, a: int, b: int, delta: int) -> None:
        weight = self._weights[a].get(b, 0) + delta
        if weight <= 0:
            self._weights[a].pop(b, None)
            self._weights[b].pop(a, None)
        else:
            self._weights[a][b] = weight
            self._weights[b][a] = weight

    def get_connected_keyframes(
        self,
        kf_id: int,
        min_shared: int | None = None,
    ) -> list[tuple[int, int]]:
        """Get keyframes connected to a given keyframe.

        Args:
            kf_id: Keyframe ID
            min_shared: Minimum shared points (uses default if None)

        Returns:
            List of (kf_id, weight) tuples, heaviest first, ties by id
        """
        min_shared = self._min_shared if min_shared is None else min_shared
        connections = [
            (other_id, weight)
            for other_id, weight in self._weights.get(kf_id, {}).items()
            if weight >= min_shared
        ]
        return sorted(connections, key=lambda x: (-x[1], x[0]))

    def get_local_keyframes(self, kf_id: int, n: int = 10) -> list[int]:
        """Return kf_id followed by its n-1 most covisible keyframes."""
        connected = self.get_connected_keyframes(kf_id, min_shared=1)
        return [kf_id] + [other for other, _ in connected[: max(n - 1, 0)]]

    def get_shared_points(self, kf1_id: int, kf2_id: int) -> set[int]:
        """Return map point ids observed by both keyframes."""
        obs1 = self._keyframe_points.get(kf1_id, set())
        obs2 = self._keyframe_points.get(kf2_id, set())
        return obs1 & obs2

    def get_keyframes_observing(self, point_id: int) -> set[int]:
        """Return ids of keyframes observing a map point."""
        return set(self._point_to_keyframes.get(point_id, ()))

    def get_points(self, kf_id: int) -> set[int]:
        """Return ids of map points observed by a keyframe."""
        return set(self._keyframe_points.get(kf_id, ()))

    def weight(self, kf1_id: int, kf2_id: int) -> int:
        """Return the number of shared points (0 if none)."""
        return self._weights.get(kf1_id, {}).get(kf2_id, 0)

    def has_shared_points(self, kf_id: int) -> bool:
        """Return True if kf_id shares at least one point with another keyframe."""
        return bool(self._weights.get(kf_id))

    def copy(self) -> CovisibilityGraph:
        """Return an independent deep copy."""
        return copy.deepcopy(self)

    @property
    def min_shared_points(self) -> int:
        """Edge threshold."""
        return self._min_shared

    @property
    def num_keyframes(self) -> int:
        """Return number of keyframes in the graph."""
        return len(self._keyframe_points)

    @property
    def num_edges(self) -> int:
        """Return number of edges at or above the threshold."""
        return (
            sum(
                1
                for adj in self._weights.values()
                for w in adj.values()
                if w >= self._min_shared
            )
            // 2
        )
