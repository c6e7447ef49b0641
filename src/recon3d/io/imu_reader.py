"""EuRoC IMU data reader.

Loads IMU measurements (gyroscope and accelerometer) from imu0/data.csv and
the noise parameters and body extrinsics from imu0/sensor.yaml.
"""

from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
import yaml

from ..frontend.imu_integrator import IMUMeasurement

logger = logging.getLogger(__name__)


@dataclass
class IMUCalibration:
    """IMU noise parameters from sensor calibration.

    Attributes:
        gyro_noise_density: Gyroscope white noise (rad/s/√Hz)
        gyro_random_walk: Gyroscope bias random walk (rad/s²/√Hz)
        accel_noise_density: Accelerometer white noise (m/s²/√Hz)
        accel_random_walk: Accelerometer bias random walk (m/s³/√Hz)
        T_body_imu: 4x4 pose of the IMU in the body frame
        rate_hz: IMU sampling rate in Hz
    """

    gyro_noise_density: float = 1.6968e-04
    gyro_random_walk: float = 1.9393e-05
    accel_noise_density: float = 2.0000e-3
    accel_random_walk: float = 3.0000e-3
    T_body_imu: np.ndarray = field(default_factory=lambda: np.eye(4))
    rate_hz: float = 200.0


def read_sensor_extrinsics(sensor_yaml: str | Path) -> np.ndarray:
    """Return the 4x4 T_BS (sensor pose in the body frame) of a EuRoC sensor.yaml.

    Identity if the file or the entry is missing.
    """
    path = Path(sensor_yaml)
    if not path.exists():
        return np.eye(4)
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}
    values = (data.get("T_BS") or {}).get("data")
    if values is None or len(values) != 16:
        logger.warning("No valid T_BS in %s, using identity", path)
        return np.eye(4)
    return np.array(values, dtype=np.float64).reshape(4, 4)


class IMUReader:
    """Reader for EuRoC IMU data.

    Example usage:
        reader = IMUReader("data/euroc/MH_01_easy/mav0")
        measurements = reader.get_measurements_between(t_start, t_end)
    """

    def __init__(self, dataset_path: str | Path) -> None:
        """Initialize IMU reader.

        Args:
            dataset_path: Path to EuRoC mav0 directory

        Raises:
            FileNotFoundError: If imu0/data.csv is missing
        """
        self._dataset_path = Path(dataset_path)
        self._imu_data_path = self._dataset_path / "imu0" / "data.csv"
        self._imu_sensor_path = self._dataset_path / "imu0" / "sensor.yaml"

        if not self._imu_data_path.exists():
            raise FileNotFoundError(
                f"IMU data not found: {self._imu_data_path}\n"
                f"Expected EuRoC format with imu0/data.csv"
            )

        self._calibration = self._load_calibration()

        # EuRoC sequences hold ~40k samples, small enough to keep in memory
        self._measurements: list[IMUMeasurement] = []
        self._timestamps: list[int] = []
        self._load_measurements()

    def _load_calibration(self) -> IMUCalibration:
        """Load IMU calibration from sensor.yaml (defaults if missing)."""
        if not self._imu_sensor_path.exists():
            return IMUCalibration()

        with open(self._imu_sensor_path, "r") as f:
            data = yaml.safe_load(f) or {}

        defaults = IMUCalibration()
        return IMUCalibration(
            gyro_noise_density=float(
                data.get("gyroscope_noise_density", defaults.gyro_noise_density)
            ),
            gyro_random_walk=float(data.get("gyroscope_random_walk", defaults.gyro_random_walk)),
            accel_noise_density=float(
                data.get("accelerometer_noise_density", defaults.accel_noise_density)
            ),
            accel_random_walk=float(
                data.get("accelerometer_random_walk", defaults.accel_random_walk)
            ),
            T_body_imu=read_sensor_extrinsics(self._imu_sensor_path),
            rate_hz=float(data.get("rate_hz", defaults.rate_hz)),
        )

    def _load_measurements(self) -> None:
        """Load all IMU measurements from the CSV file, skipping malformed rows."""
        skipped = 0
        with open(self._imu_data_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith("#"):
                    continue

                parts = line.split(",")
                try:
                    timestamp_ns = int(parts[0])
                    values = [float(p) for p in parts[1:7]]
                except (ValueError, IndexError):
                    skipped += 1
                    continue
                if len(values) < 6:
                    skipped += 1
                    continue

                self._measurements.append(
                    IMUMeasurement(
                        timestamp_ns=timestamp_ns,
                        gyroscope=np.array(values[:3]),
                        accelerometer=np.array(values[3:6]),
                    )
                )
                self._timestamps.append(timestamp_ns)

        if skipped:
            logger.warning("Skipped %d malformed rows in %s", skipped, self._imu_data_path)

    def get_measurements_between(self, start_ns: int, end_ns: int) -> list[IMUMeasurement]:
        """Get measurements with start_ns < timestamp <= end_ns.

        Args:
            start_ns: Start timestamp in nanoseconds (exclusive)
            end_ns: End timestamp in nanoseconds (inclusive)
        """
        start_idx = bisect.bisect_right(self._timestamps, start_ns)
        end_idx = bisect.bisect_right(self._timestamps, end_ns)
        return self._measurements[start_idx:end_idx]

    @property
    def calibration(self) -> IMUCalibration:
        """Return IMU calibration parameters."""
        return self._calibration

    @property
    def start_timestamp(self) -> int | None:
        """First IMU timestamp in nanoseconds."""
        return self._timestamps[0] if self._timestamps else None

    @property
    def end_timestamp(self) -> int | None:
        """Last IMU timestamp in nanoseconds."""
        return self._timestamps[-1] if self._timestamps else None

    def __len__(self) -> int:
        """Number of IMU measurements."""
        return len(self._measurements)
