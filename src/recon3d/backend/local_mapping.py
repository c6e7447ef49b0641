"""Local mapping with covisibility-window bundle adjustment.

After a keyframe is inserted, LocalMapping picks the keyframe and its most
covisible neighbours, snapshots that part of the map and optimizes it. The
optimization runs on a snapshot (usually in a worker thread); its
correction is applied to the live map afterwards, then unreliable points
and redundant keyframes are culled.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from ..config import BundleAdjustmentConfig, MappingConfig
from .map_manager import MapManager
from .messages import BACorrection, BARequest
from .optimizer import BAResult, BundleAdjuster

logger = logging.getLogger(__name__)


@dataclass
class LocalMappingResult:
    """Result of applying a bundle adjustment correction."""

    applied: bool
    num_culled_points: int = 0
    num_culled_keyframes: int = 0
    degraded: bool = False
    message: str = ""


class LocalMapping:
    """Builds bundle adjustment requests and applies their corrections."""

    def __init__(
        self,
        config: BundleAdjustmentConfig | None = None,
        mapping_config: MappingConfig | None = None,
    ) -> None:
        """Initialize local mapping.

        Args:
            config: Bundle adjustment parameters
            mapping_config: Map maintenance parameters (error thresholds)
        """
        self._config = config or BundleAdjustmentConfig()
        self._mapping_config = mapping_config or MappingConfig()
        self._optimizer = BundleAdjuster(
            max_iterations=self._config.max_iterations,
            loss=self._config.loss,
            loss_scale=self._config.loss_scale,
            min_observations=self._config.min_observations,
            high_error_px=self._mapping_config.max_reprojection_px,
        )

    @property
    def optimizer(self) -> BundleAdjuster:
        """Underlying bundle adjuster."""
        return self._optimizer

    def build_request(self, map_manager: MapManager, keyframe_id: int) -> BARequest | None:
        """Snapshot the covisibility window around keyframe_id.

        Returns:
            Request, or None if the window has fewer than two keyframes
        """
        window = map_manager.covisible_keyframes(keyframe_id, self._config.window_size)
        if len(window) < 2:
            return None
        snapshot = map_manager.snapshot(window)
        return BARequest(snapshot=snapshot, camera_matrix=map_manager.camera_matrix)

    def build_global_request(self, map_manager: MapManager) -> BARequest | None:
        """Snapshot the whole map for a global pass."""
        if map_manager.num_keyframes < 2:
            return None
        return BARequest(
            snapshot=map_manager.snapshot(),
            camera_matrix=map_manager.camera_matrix,
            is_global=True,
            max_iterations=self._config.global_max_iterations,
        )

    def run(
        self, request: BARequest, is_cancelled: Callable[[], bool] | None = None
    ) -> BACorrection | None:
        """Optimize a request's snapshot.

        Safe to call from a worker thread: only the snapshot is read.

        Returns:
            Correction, or None if the problem was too small to optimize
        """
        result = self._optimizer.optimize_snapshot(
            request.snapshot,
            request.camera_matrix,
            max_iterations=request.max_iterations,
            should_cancel=is_cancelled,
        )
        if not result.success:
            logger.debug("[LocalMapping] Skipped BA: %s", result.message)
            return None

        logger.info(
            "[LocalMapping] %s BA on %d keyframes, %d points: cost %.2f -> %.2f%s",
            "Global" if request.is_global else "Local",
            len(request.snapshot.local_keyframe_ids),
            len(result.points),
            result.initial_cost,
            result.final_cost,
            " (degraded)" if result.degraded else "",
        )
        return self._to_correction(request, result)

    def _to_correction(self, request: BARequest, result: BAResult) -> BACorrection:
        threshold = self._optimizer.high_error_px
        high_error = {pid for pid, err in result.point_errors.items() if err > threshold}
        return BACorrection(
            base_version=request.snapshot.version,
            poses=result.poses,
            points=result.points,
            high_error_point_ids=high_error,
            initial_cost=result.initial_cost,
            final_cost=result.final_cost,
            degraded=result.degraded,
            is_global=request.is_global,
        )

    def apply(
        self,
        map_manager: MapManager,
        correction: BACorrection,
        around_keyframe_id: int | None = None,
    ) -> LocalMappingResult:
        """Apply a correction to the live map and cull what it exposed.

        Args:
            map_manager: Live map
            correction: Correction returned by run()
            around_keyframe_id: Restrict keyframe culling to this neighbourhood

        Returns:
            LocalMappingResult; applied is False for stale corrections
        """
        if not map_manager.apply_ba_correction(correction):
            return LocalMappingResult(applied=False, message="stale")

        culled_points = map_manager.cull_map_points()
        culled_keyframes = []
        if around_keyframe_id is not None and map_manager.get_keyframe(around_keyframe_id):
            culled_keyframes = map_manager.cull_keyframes(around_keyframe_id)

        return LocalMappingResult(
            applied=True,
            num_culled_points=len(culled_points),
            num_culled_keyframes=len(culled_keyframes),
            degraded=correction.degraded,
        )
