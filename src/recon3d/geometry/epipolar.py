"""Epipolar and homography error measures."""

from __future__ import annotations

import numpy as np

from .pose import SE3


def _homogeneous(pts: np.ndarray) -> np.ndarray:
    return np.hstack([pts, np.ones((len(pts), 1))])


def fundamental_from_poses(K: np.ndarray, pose_a: SE3, pose_b: SE3) -> np.ndarray:
    """Return F with x_b^T F x_a = 0 for two T_world_camera poses."""
    T_ba = pose_b.inverse().compose(pose_a)
    t = T_ba.translation
    tx = np.array([[0, -t[2], t[1]], [t[2], 0, -t[0]], [-t[1], t[0], 0]])
    K_inv = np.linalg.inv(K)
    return K_inv.T @ tx @ T_ba.rotation @ K_inv


def sampson_error(F: np.ndarray, pts1: np.ndarray, pts2: np.ndarray) -> np.ndarray:
    """First-order geometric error of x2^T F x1 = 0, in squared pixels."""
    x1 = _homogeneous(pts1)
    x2 = _homogeneous(pts2)
    Fx1 = x1 @ F.T
    Ftx2 = x2 @ F
    num = np.sum(x2 * Fx1, axis=1) ** 2
    den = Fx1[:, 0] ** 2 + Fx1[:, 1] ** 2 + Ftx2[:, 0] ** 2 + Ftx2[:, 1] ** 2
    return num / np.maximum(den, 1e-12)


def transfer_error(H: np.ndarray, pts1: np.ndarray, pts2: np.ndarray) -> np.ndarray:
    """Symmetric transfer error of x2 ~ H x1 (max over both directions), pixels."""
    try:
        H_inv = np.linalg.inv(H)
    except np.linalg.LinAlgError:
        return np.full(len(pts1), np.inf)

    def _transfer(M: np.ndarray, src: np.ndarray) -> np.ndarray:
        p = _homogeneous(src) @ M.T
        w = np.where(np.abs(p[:, 2]) < 1e-12, 1e-12, p[:, 2])
        return p[:, :2] / w[:, None]

    forward = np.linalg.norm(_transfer(H, pts1) - pts2, axis=1)
    backward = np.linalg.norm(_transfer(H_inv, pts2) - pts1, axis=1)
    return np.maximum(forward, backward)
