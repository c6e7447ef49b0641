"""Tests for IMU integration and the EuRoC IMU reader."""

from pathlib import Path

import numpy as np
import pytest

from recon3d.frontend import IMUIntegrator, IMUMeasurement, IMUState
from recon3d.geometry import SE3
from recon3d.io import IMUReader

GRAVITY = np.array([0.0, 0.0, -9.81])


def _samples(n: int, accel, gyro=(0.0, 0.0, 0.0), dt_ns: int = 10_000_000, start_ns: int = 0):
    return [
        IMUMeasurement(
            timestamp_ns=start_ns + (i + 1) * dt_ns,
            gyroscope=np.array(gyro),
            accelerometer=np.array(accel),
        )
        for i in range(n)
    ]


class TestIMUIntegrator:
    """Test suite for IMUIntegrator."""

    def test_constant_acceleration(self):
        """20 m/s^2 along x for 0.1 s moves 0.1 m."""
        integrator = IMUIntegrator(gravity=GRAVITY)
        start = IMUState(timestamp_ns=0, pose=SE3.identity(), velocity=np.zeros(3))

        end = integrator.integrate(_samples(10, accel=(20.0, 0.0, 9.81)), start)

        assert end.timestamp_ns == 100_000_000
        np.testing.assert_allclose(end.pose.translation, [0.1, 0.0, 0.0], atol=1e-9)
        np.testing.assert_allclose(end.velocity, [2.0, 0.0, 0.0], atol=1e-9)

    def test_static_device_does_not_move(self):
        """Accelerometer reading -g keeps the device still."""
        integrator = IMUIntegrator(gravity=GRAVITY)
        start = IMUState(timestamp_ns=0, pose=SE3.identity(), velocity=np.zeros(3))

        end = integrator.integrate(_samples(50, accel=(0.0, 0.0, 9.81)), start)

        np.testing.assert_allclose(end.pose.translation, np.zeros(3), atol=1e-12)

    def test_gyroscope_rotates(self):
        """Constant yaw rate integrates to rate * time."""
        integrator = IMUIntegrator(gravity=GRAVITY)
        start = IMUState(timestamp_ns=0, pose=SE3.identity(), velocity=np.zeros(3))

        end = integrator.integrate(
            _samples(100, accel=(0.0, 0.0, 9.81), gyro=(0.0, 0.0, 0.5)), start
        )

        _, angle = SE3.identity().distance_to(end.pose)
        assert angle == pytest.approx(0.5, abs=1e-6)

    def test_gaps_are_skipped(self):
        """Samples after a gap larger than max_dt are ignored."""
        integrator = IMUIntegrator(gravity=GRAVITY, max_dt=0.1)
        start = IMUState(timestamp_ns=0, pose=SE3.identity(), velocity=np.zeros(3))
        late = _samples(1, accel=(20.0, 0.0, 9.81), start_ns=1_000_000_000)

        end = integrator.integrate(late, start)

        assert end is start

    def test_requires_gravity(self):
        """Integrating before gravity alignment is an error."""
        integrator = IMUIntegrator()
        start = IMUState(timestamp_ns=0, pose=SE3.identity(), velocity=np.zeros(3))
        with pytest.raises(RuntimeError):
            integrator.integrate(_samples(1, accel=(0.0, 0.0, 9.81)), start)

    def test_align_gravity_from_static_samples(self):
        """Gravity opposes the mean static specific force."""
        integrator = IMUIntegrator()
        assert integrator.gravity is None

        assert integrator.align_gravity(_samples(20, accel=(0.0, 9.81, 0.0)), SE3.identity())

        np.testing.assert_allclose(integrator.gravity, [0.0, -9.81, 0.0])

    def test_extrinsic_rotation_applied(self):
        """Measurements are rotated into the camera frame."""
        # IMU x axis is the camera y axis
        R_camera_imu = np.array([[0.0, -1.0, 0.0], [1.0, 0.0, 0.0], [0.0, 0.0, 1.0]])
        integrator = IMUIntegrator(gravity=GRAVITY, R_camera_imu=R_camera_imu)
        start = IMUState(timestamp_ns=0, pose=SE3.identity(), velocity=np.zeros(3))

        end = integrator.integrate(_samples(10, accel=(20.0, 0.0, 9.81)), start)

        np.testing.assert_allclose(end.pose.translation, [0.0, 0.1, 0.0], atol=1e-9)

    def test_predict_without_samples(self):
        """No measurements, no prediction."""
        integrator = IMUIntegrator(gravity=GRAVITY)
        assert integrator.predict(SE3.identity(), np.zeros(3), 0, []) is None


@pytest.fixture
def imu_dataset(tmp_path: Path) -> Path:
    imu_dir = tmp_path / "mav0" / "imu0"
    imu_dir.mkdir(parents=True)
    rows = ["#timestamp [ns],w_x,w_y,w_z,a_x,a_y,a_z"]
    for i in range(10):
        rows.append(f"{1000 + i * 5},0.01,0.02,0.03,0.0,0.0,9.81")
    rows.append("not,a,valid,row")
    (imu_dir / "data.csv").write_text("\n".join(rows) + "\n")
    (imu_dir / "sensor.yaml").write_text(
        "rate_hz: 200\n"
        "gyroscope_noise_density: 1.0e-4\n"
        "T_BS:\n"
        "  cols: 4\n"
        "  rows: 4\n"
        "  data: [1.0, 0.0, 0.0, 0.5, 0.0, 1.0, 0.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 0.0, 1.0]\n"
    )
    return tmp_path / "mav0"


class TestIMUReader:
    """Test suite for IMUReader."""

    def test_loads_measurements(self, imu_dataset: Path):
        """Valid rows load and malformed rows are skipped."""
        reader = IMUReader(imu_dataset)
        assert len(reader) == 10
        assert reader.start_timestamp == 1000
        assert reader.end_timestamp == 1045

    def test_measurements_between(self, imu_dataset: Path):
        """The window excludes its start and includes its end."""
        reader = IMUReader(imu_dataset)
        window = reader.get_measurements_between(1005, 1020)
        assert [m.timestamp_ns for m in window] == [1010, 1015, 1020]
        np.testing.assert_allclose(window[0].gyroscope, [0.01, 0.02, 0.03])

    def test_calibration(self, imu_dataset: Path):
        """Noise parameters and extrinsics are read from sensor.yaml."""
        calibration = IMUReader(imu_dataset).calibration
        assert calibration.gyro_noise_density == pytest.approx(1.0e-4)
        assert calibration.T_body_imu[0, 3] == pytest.approx(0.5)

    def test_missing_data(self, tmp_path: Path):
        """A sequence without imu0/data.csv is rejected."""
        with pytest.raises(FileNotFoundError):
            IMUReader(tmp_path)
