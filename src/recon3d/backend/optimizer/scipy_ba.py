"""Bundle adjustment using scipy.optimize.least_squares.

Bundle adjustment jointly optimizes camera poses and 3D point positions
by minimizing the sum of (robustified) squared reprojection errors:

    minimize sum_i rho(||observed_i - project(pose_j, point_k)||^2)

Poses are parameterized as T_camera_world (Rodrigues vector + translation);
at least one keyframe is held fixed to remove the gauge freedom. The
Jacobian sparsity (each residual touches one pose and one point) is passed
to the trust-region solver.

The solver is not guaranteed to end at its lowest-cost iterate, so every
residual evaluation is scored and the best parameter vector seen is the
one returned. The result can therefore never be worse than the input.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

import cv2
import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix

from ...errors import OptimizationCancelled
from ...geometry import SE3

if TYPE_CHECKING:
    from ..keyframe import KeyFrame
    from ..map_manager import MapSnapshot
    from ..map_point import MapPoint

logger = logging.getLogger(__name__)


@dataclass
class BAResult:
    """Result of bundle adjustment optimization.

    Attributes:
        success: True if an optimization was run and produced finite values
        poses: Optimized T_world_camera by keyframe id (free keyframes only)
        points: Optimized positions by map point id
        initial_cost: Objective at the input state
        final_cost: Objective at the returned state (<= initial_cost)
        cost_history: Best objective after each residual evaluation
        iterations: Residual evaluations performed
        converged: Solver met a tolerance before the iteration cap
        degraded: Returned the best state after hitting the cap
        point_errors: Mean reprojection error (pixels) by map point id
        num_observations: Observations in the problem
        message: Solver or failure message
    """

    success: bool
    poses: dict[int, SE3] = field(default_factory=dict)
    points: dict[int, np.ndarray] = field(default_factory=dict)
    initial_cost: float = 0.0
    final_cost: float = 0.0
    cost_history: list[float] = field(default_factory=list)
    iterations: int = 0
    converged: bool = False
    degraded: bool = False
    point_errors: dict[int, float] = field(default_factory=dict)
    num_observations: int = 0
    message: str = ""


def _robust_cost(residuals: np.ndarray, loss: str, f_scale: float) -> float:
    """Return 0.5 * sum(rho(r^2)) matching scipy's loss definitions."""
    z = (residuals / f_scale) ** 2
    if loss == "linear":
        rho = z
    elif loss == "huber":
        rho = np.where(z <= 1, z, 2 * np.sqrt(z) - 1)
    elif loss == "soft_l1":
        rho = 2 * (np.sqrt(1 + z) - 1)
    elif loss == "cauchy":
        rho = np.log1p(z)
    elif loss == "arctan":
        rho = np.arctan(z)
    else:
        raise ValueError(f"Unknown loss: {loss}")
    return float(0.5 * f_scale**2 * np.sum(rho))


class BundleAdjuster:
    """Sparse bundle adjustment over keyframes and map points."""

    def __init__(
        self,
        max_iterations: int = 50,
        ftol: float = 1e-6,
        xtol: float = 1e-6,
        loss: str = "huber",
        loss_scale: float = 2.0,
        min_observations: int = 20,
        high_error_px: float = 4.0,
    ) -> None:
        """Initialize bundle adjustment optimizer.

        Args:
            max_iterations: Cap on residual evaluations
            ftol: Function tolerance for convergence
            xtol: Parameter tolerance for convergence
            loss: Loss function ("linear", "huber", "soft_l1", "cauchy")
            loss_scale: Inlier scale of the robust loss (pixels)
            min_observations: Problems with fewer observations are skipped
            high_error_px: Points whose mean error exceeds this are reported
        """
        self._max_iterations = max_iterations
        self._ftol = ftol
        self._xtol = xtol
        self._loss = loss
        self._loss_scale = loss_scale
        self._min_observations = min_observations
        self._high_error_px = high_error_px

    @property
    def high_error_px(self) -> float:
        """Threshold above which a point's mean error is considered high."""
        return self._high_error_px

    def optimize_snapshot(
        self,
        snapshot: MapSnapshot,
        camera_matrix: np.ndarray,
        max_iterations: int | None = None,
        should_cancel: Callable[[], bool] | None = None,
    ) -> BAResult:
        """Optimize a snapshot.

        For a local snapshot only the requested keyframes move; the other
        keyframes observing the same points are fixed. The map's first
        keyframe is always fixed.
        """
        fixed = {snapshot.first_keyframe_id}
        fixed.update(k for k in snapshot.keyframes if k not in snapshot.local_keyframe_ids)
        return self.optimize(
            list(snapshot.keyframes.values()),
            list(snapshot.points.values()),
            camera_matrix,
            fixed_keyframe_ids=fixed,
            max_iterations=max_iterations,
            should_cancel=should_cancel,
        )

    def optimize(
        self,
        keyframes: list[KeyFrame],
        map_points: list[MapPoint],
        camera_matrix: np.ndarray,
        fixed_keyframe_ids: set[int] | None = None,
        max_iterations: int | None = None,
        should_cancel: Callable[[], bool] | None = None,
    ) -> BAResult:
        """Run bundle adjustment.

        Args:
            keyframes: Keyframes in the problem
            map_points: Map points to optimize
            camera_matrix: 3x3 intrinsic matrix
            fixed_keyframe_ids: Keyframes whose pose is held fixed. If none of
                them is in the problem, the lowest id keyframe is fixed.
            max_iterations: Overrides the configured cap
            should_cancel: Polled on every residual evaluation; when it
                returns True the pass stops with OptimizationCancelled

        Returns:
            BAResult

        Raises:
            OptimizationCancelled: If should_cancel returned True
        """
        if len(keyframes) == 0 or len(map_points) == 0:
            return BAResult(success=False, message="No keyframes or map points")

        keyframes = sorted(keyframes, key=lambda kf: kf.id)
        fixed_ids = set(fixed_keyframe_ids or ()) & {kf.id for kf in keyframes}
        if not fixed_ids:
            fixed_ids = {keyframes[0].id}

        point_index = {mp.id: i for i, mp in enumerate(map_points)}
        obs_kf, obs_pt, obs_px = self._collect_observations(keyframes, point_index)
        if len(obs_kf) < self._min_observations:
            return BAResult(
                success=False,
                num_observations=len(obs_kf),
                message=f"Too few observations: {len(obs_kf)}",
            )

        free = [i for i, kf in enumerate(keyframes) if kf.id not in fixed_ids]
        n_free = len(free)

        # Fixed poses as T_camera_world
        R_base = np.empty((len(keyframes), 3, 3))
        t_base = np.empty((len(keyframes), 3))
        for i, kf in enumerate(keyframes):
            T_cw = kf.pose.inverse()
            R_base[i] = T_cw.rotation
            t_base[i] = T_cw.translation

        x0 = self._pack_parameters(keyframes, free, map_points)
        fx, fy = camera_matrix[0, 0], camera_matrix[1, 1]
        cx, cy = camera_matrix[0, 2], camera_matrix[1, 2]

        def residuals(x: np.ndarray) -> np.ndarray:
            R_all = R_base.copy()
            t_all = t_base.copy()
            pose_params = x[: 6 * n_free].reshape(-1, 6)
            for slot, i in enumerate(free):
                R_all[i], _ = cv2.Rodrigues(pose_params[slot, :3])
                t_all[i] = pose_params[slot, 3:]
            pts = x[6 * n_free :].reshape(-1, 3)

            p_cam = np.einsum("mij,mj->mi", R_all[obs_kf], pts[obs_pt]) + t_all[obs_kf]
            z = np.maximum(p_cam[:, 2], 1e-6)
            u = fx * p_cam[:, 0] / z + cx
            v = fy * p_cam[:, 1] / z + cy
            return np.column_stack([u - obs_px[:, 0], v - obs_px[:, 1]]).ravel()

        initial_residuals = residuals(x0)
        initial_cost = _robust_cost(initial_residuals, self._loss, self._loss_scale)
        best = {"cost": initial_cost, "x": x0.copy()}
        history = [initial_cost]

        def tracked_residuals(x: np.ndarray) -> np.ndarray:
            if should_cancel is not None and should_cancel():
                raise OptimizationCancelled("Bundle adjustment superseded")
            res = residuals(x)
            cost = _robust_cost(res, self._loss, self._loss_scale)
            if np.isfinite(cost) and cost < best["cost"]:
                best["cost"] = cost
                best["x"] = x.copy()
            history.append(best["cost"])
            return res

        sparsity = self._build_sparsity_matrix(obs_kf, obs_pt, free, len(map_points))
        cap = max_iterations or self._max_iterations

        converged = False
        message = ""
        try:
            result = least_squares(
                fun=tracked_residuals,
                x0=x0,
                jac_sparsity=sparsity,
                method="trf",
                loss=self._loss,
                f_scale=self._loss_scale,
                ftol=self._ftol,
                xtol=self._xtol,
                max_nfev=cap,
                x_scale="jac",
                verbose=0,
            )
            converged = result.status > 0
            message = result.message
        except (ValueError, np.linalg.LinAlgError) as e:
            # Keep whatever the best evaluated state was
            message = f"Optimization failed: {e}"
            logger.warning("[BA] %s", message)

        x_best = best["x"]
        final_residuals = residuals(x_best)
        poses, points = self._unpack_parameters(x_best, keyframes, free, map_points)
        point_errors = self._point_errors(final_residuals, obs_pt, map_points)

        degraded = not converged
        if degraded:
            logger.warning(
                "[BA] Not converged within %d evaluations, keeping best state "
                "(cost %.3f -> %.3f)",
                cap,
                initial_cost,
                best["cost"],
            )

        return BAResult(
            success=bool(np.isfinite(x_best).all()),
            poses=poses,
            points=points,
            initial_cost=initial_cost,
            final_cost=best["cost"],
            cost_history=history,
            iterations=len(history) - 1,
            converged=converged,
            degraded=degraded,
            point_errors=point_errors,
            num_observations=len(obs_kf),
            message=message,
        )

    @staticmethod
    def _collect_observations(
        keyframes: list[KeyFrame], point_index: dict[int, int]
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Return (keyframe slot, point slot, pixel) arrays for all observations."""
        kf_slots, pt_slots, pixels = [], [], []
        for slot, kf in enumerate(keyframes):
            for kp_idx, mp_id in kf.keypoint_to_point.items():
                pt = point_index.get(mp_id)
                if pt is None:
                    continue
                kf_slots.append(slot)
                pt_slots.append(pt)
                pixels.append(kf.features.points[kp_idx])
        return (
            np.array(kf_slots, dtype=np.int64),
            np.array(pt_slots, dtype=np.int64),
            np.array(pixels, dtype=np.float64).reshape(-1, 2),
        )

    @staticmethod
    def _pack_parameters(
        keyframes: list[KeyFrame], free: list[int], map_points: list[MapPoint]
    ) -> np.ndarray:
        """Pack free poses (T_camera_world) then points into one vector."""
        params = [keyframes[i].pose.inverse().log() for i in free]
        params.extend(mp.position for mp in map_points)
        if not params:
            return np.empty(0)
        return np.concatenate(params).astype(np.float64)

    @staticmethod
    def _unpack_parameters(
        x: np.ndarray,
        keyframes: list[KeyFrame],
        free: list[int],
        map_points: list[MapPoint],
    ) -> tuple[dict[int, SE3], dict[int, np.ndarray]]:
        """Unpack the vector into T_world_camera poses and point positions."""
        n_free = len(free)
        pose_params = x[: 6 * n_free].reshape(-1, 6)
        poses = {
            keyframes[i].id: SE3.exp(pose_params[slot]).inverse()
            for slot, i in enumerate(free)
        }
        pts = x[6 * n_free :].reshape(-1, 3)
        points = {mp.id: pts[i].copy() for i, mp in enumerate(map_points)}
        return poses, points

    @staticmethod
    def _point_errors(
        residuals: np.ndarray, obs_pt: np.ndarray, map_points: list[MapPoint]
    ) -> dict[int, float]:
        """Mean reprojection error per map point."""
        errors = np.linalg.norm(residuals.reshape(-1, 2), axis=1)
        sums = np.bincount(obs_pt, weights=errors, minlength=len(map_points))
        counts = np.bincount(obs_pt, minlength=len(map_points))
        return {
            mp.id: float(sums[i] / counts[i])
            for i, mp in enumerate(map_points)
            if counts[i] > 0
        }

    @staticmethod
    def _build_sparsity_matrix(
        obs_kf: np.ndarray,
        obs_pt: np.ndarray,
        free: list[int],
        n_points: int,
    ) -> lil_matrix:
        """Build the Jacobian sparsity pattern.

        Each observation's two residual rows depend on the 6 parameters of
        its keyframe (if free) and the 3 parameters of its point.
        """
        n_free = len(free)
        n_obs = len(obs_kf)
        sparsity = lil_matrix((2 * n_obs, 6 * n_free + 3 * n_points), dtype=int)

        slot_of = np.full(int(obs_kf.max()) + 1 if n_obs else 1, -1, dtype=np.int64)
        for slot, i in enumerate(free):
            if i < len(slot_of):
                slot_of[i] = slot

        rows = np.arange(n_obs)
        pose_slot = slot_of[obs_kf]
        has_pose = pose_slot >= 0
        for r in (0, 1):
            for j in range(6):
                sparsity[2 * rows[has_pose] + r, 6 * pose_slot[has_pose] + j] = 1
            for j in range(3):
                sparsity[2 * rows + r, 6 * n_free + 3 * obs_pt + j] = 1

        return sparsity
