"""IMU integration used to predict camera motion between frames.

The IMU is assumed to be rigidly attached to the camera; measurements are
rotated into the camera frame with the configured extrinsic rotation before
integration. Mid-point integration is used for the rotation applied to the
accelerometer.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from ..geometry import SE3

GRAVITY_MAGNITUDE = 9.81


@dataclass
class IMUMeasurement:
    """Single IMU measurement at a given timestamp.

    Attributes:
        timestamp_ns: Measurement timestamp in nanoseconds
        gyroscope: Angular velocity (wx, wy, wz) in rad/s
        accelerometer: Specific force (ax, ay, az) in m/s²
    """

    timestamp_ns: int
    gyroscope: np.ndarray  # (3,) rad/s
    accelerometer: np.ndarray  # (3,) m/s²

    def __post_init__(self) -> None:
        """Ensure arrays have correct shape."""
        self.gyroscope = np.asarray(self.gyroscope, dtype=np.float64).flatten()
        self.accelerometer = np.asarray(self.accelerometer, dtype=np.float64).flatten()


@dataclass
class IMUState:
    """Integrated state at a given time.

    Attributes:
        timestamp_ns: State timestamp in nanoseconds
        pose: T_world_camera
        velocity: Linear velocity in world frame (3,)
    """

    timestamp_ns: int
    pose: SE3
    velocity: np.ndarray  # (3,) world frame

    def __post_init__(self) -> None:
        """Ensure velocity is a float (3,) array."""
        self.velocity = np.asarray(self.velocity, dtype=np.float64).flatten()


def skew(v: np.ndarray) -> np.ndarray:
    """Return the skew-symmetric matrix [v]x."""
    return np.array([[0, -v[2], v[1]], [v[2], 0, -v[0]], [-v[1], v[0], 0]])


def exp_so3(omega: np.ndarray) -> np.ndarray:
    """Exponential map from so(3) to SO(3) (Rodrigues formula)."""
    theta = np.linalg.norm(omega)
    if theta < 1e-10:
        return np.eye(3) + skew(omega)

    K = skew(omega / theta)
    return np.eye(3) + np.sin(theta) * K + (1 - np.cos(theta)) * (K @ K)


class IMUIntegrator:
    """Integrates gyroscope and accelerometer samples into a pose prediction.

    Gravity in the world frame is unknown for a monocular map whose world
    frame is the first camera. It is estimated once from the first samples,
    assuming the device is close to static when tracking starts, unless
    given explicitly.
    """

    def __init__(
        self,
        gravity: np.ndarray | None = None,
        R_camera_imu: np.ndarray | None = None,
        max_dt: float = 0.1,
    ) -> None:
        """Initialize integrator.

        Args:
            gravity: Gravity vector in world frame, estimated when None
            R_camera_imu: Rotation from IMU frame to camera frame
            max_dt: Larger gaps between samples are skipped as discontinuities
        """
        self._gravity = None if gravity is None else np.asarray(gravity, dtype=np.float64)
        self._R_camera_imu = np.eye(3) if R_camera_imu is None else np.asarray(R_camera_imu)
        self._max_dt = max_dt

    def align_gravity(self, measurements: list[IMUMeasurement], pose: SE3) -> bool:
        """Estimate world gravity from accelerometer samples taken at rest.

        Args:
            measurements: Samples close in time to pose
            pose: T_world_camera when the samples were taken

        Returns:
            True if gravity is (now) known
        """
        if self._gravity is not None:
            return True
        if not measurements:
            return False

        mean_accel = np.mean(
            [self._R_camera_imu @ m.accelerometer for m in measurements], axis=0
        )
        norm = np.linalg.norm(mean_accel)
        if norm < 1e-6:
            return False
        # A static accelerometer measures the reaction to gravity
        self._gravity = -pose.rotation @ (mean_accel / norm) * GRAVITY_MAGNITUDE
        return True

    def integrate(
        self,
        measurements: list[IMUMeasurement],
        initial_state: IMUState,
    ) -> IMUState:
        """Integrate a chronological sequence of IMU measurements.

        Samples that do not advance time, or follow a gap larger than
        max_dt, are skipped.

        Args:
            measurements: Samples after initial_state.timestamp_ns
            initial_state: Starting pose and velocity

        Returns:
            State at the last integrated sample
        """
        if self._gravity is None:
            raise RuntimeError("Gravity not aligned; call align_gravity first")

        state = initial_state
        for measurement in measurements:
            dt = (measurement.timestamp_ns - state.timestamp_ns) * 1e-9
            if dt <= 0 or dt > self._max_dt:
                continue
            state = self.integrate_single(state, measurement, dt)
        return state

    def integrate_single(
        self,
        prev_state: IMUState,
        measurement: IMUMeasurement,
        dt: float,
    ) -> IMUState:
        """Advance the state by one sample using mid-point integration.

        Args:
            prev_state: State at previous timestep
            measurement: Current IMU measurement
            dt: Time step in seconds

        Returns:
            Updated state at measurement timestamp
        """
        omega = self._R_camera_imu @ measurement.gyroscope
        accel = self._R_camera_imu @ measurement.accelerometer

        delta_angle = omega * dt
        R_new = prev_state.pose.rotation @ exp_so3(delta_angle)
        R_mid = prev_state.pose.rotation @ exp_so3(delta_angle / 2)
        accel_world = R_mid @ accel + self._gravity

        v_new = prev_state.velocity + accel_world * dt
        p_new = (
            prev_state.pose.translation
            + prev_state.velocity * dt
            + 0.5 * accel_world * dt**2
        )

        return IMUState(
            timestamp_ns=measurement.timestamp_ns,
            pose=SE3(rotation=R_new, translation=p_new),
            velocity=v_new,
        )

    def predict(
        self,
        pose: SE3,
        velocity: np.ndarray,
        timestamp_ns: int,
        measurements: list[IMUMeasurement],
    ) -> IMUState | None:
        """Predict the pose after measurements, starting from pose/velocity.

        Returns:
            Predicted state, or None if gravity is unknown or no sample applies
        """
        if not self.align_gravity(measurements, pose) or not measurements:
            return None
        start = IMUState(timestamp_ns=timestamp_ns, pose=pose, velocity=velocity)
        end = self.integrate(measurements, start)
        if end.timestamp_ns == start.timestamp_ns:
            return None
        return end

    @property
    def gravity(self) -> np.ndarray | None:
        """Gravity vector in world frame, or None if not yet aligned."""
        return None if self._gravity is None else self._gravity.copy()
