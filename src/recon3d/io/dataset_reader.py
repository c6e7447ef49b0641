"""EuRoC MAV dataset reader for monocular (+ IMU) sequences."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterator

import cv2
import numpy as np

from ..frontend.frame import Frame
from ..geometry import Camera, CameraIntrinsics, DistortionCoeffs
from .imu_reader import IMUReader, read_sensor_extrinsics

logger = logging.getLogger(__name__)


class DatasetReader:
    """Reader for EuRoC-style monocular sequences.

    Expected layout::

        mav0/
            cam0/data.csv          #timestamp [ns],filename
            cam0/data/*.png
            cam0/sensor.yaml       optional calibration
            imu0/data.csv          optional inertial samples

    Each yielded Frame carries the IMU samples recorded since the previous
    frame (the first frame gets the samples of a short window before it,
    enough to estimate gravity).
    """

    def __init__(
        self,
        dataset_path: str | Path = "data/euroc/MH_01_easy/mav0",
        use_imu: bool = True,
        undistort: bool = False,
        first_frame_imu_window_ns: int = 100_000_000,
    ) -> None:
        """Initialize reader with path to dataset.

        Args:
            dataset_path: Path to mav0 directory
            use_imu: Attach imu0 samples to frames when available
            undistort: Undistort images with the cam0 calibration
            first_frame_imu_window_ns: IMU history attached to the first frame

        Raises:
            FileNotFoundError: If dataset path or required files don't exist
            ValueError: If data.csv is empty or invalid
        """
        self.dataset_path = Path(dataset_path)
        self.cam0_path = self.dataset_path / "cam0"
        self.cam0_data_path = self.cam0_path / "data"
        self._undistort = undistort
        self._first_window_ns = first_frame_imu_window_ns

        self._validate_paths()
        self._image_list = self._load_image_list()
        if not self._image_list:
            raise ValueError(f"No images found in {self.cam0_path / 'data.csv'}")

        self._intrinsics: CameraIntrinsics | None = None
        self._distortion = DistortionCoeffs()
        sensor_yaml = self.cam0_path / "sensor.yaml"
        if sensor_yaml.exists():
            self._intrinsics, self._distortion = Camera.load_calibration(sensor_yaml)

        self._imu: IMUReader | None = None
        self._R_camera_imu = np.eye(3)
        if use_imu and (self.dataset_path / "imu0" / "data.csv").exists():
            self._imu = IMUReader(self.dataset_path)
            T_body_cam = read_sensor_extrinsics(sensor_yaml)
            T_cam_imu = np.linalg.inv(T_body_cam) @ self._imu.calibration.T_body_imu
            self._R_camera_imu = T_cam_imu[:3, :3]

        self._current_idx = 0
        logger.info(
            "Opened %s: %d frames%s",
            self.dataset_path,
            len(self._image_list),
            f", {len(self._imu)} IMU samples" if self._imu is not None else "",
        )

    def _validate_paths(self) -> None:
        """Validate that all required paths exist."""
        if not self.dataset_path.exists():
            raise FileNotFoundError(f"Dataset path does not exist: {self.dataset_path}")
        if not self.cam0_data_path.exists():
            raise FileNotFoundError(
                f"cam0/data directory not found: {self.cam0_data_path}\n"
                f"Expected structure: {self.dataset_path}/cam0/data/"
            )
        csv_path = self.cam0_path / "data.csv"
        if not csv_path.exists():
            raise FileNotFoundError(
                f"cam0/data.csv not found: {csv_path}\n"
                f"This file is required to list image timestamps and filenames."
            )

    def _load_image_list(self) -> list[tuple[int, str]]:
        """Parse cam0/data.csv.

        CSV format:
            #timestamp [ns],filename
            1403636579763555584,1403636579763555584.png

        Returns:
            List of (timestamp_ns, filename) tuples in chronological order
        """
        csv_path = self.cam0_path / "data.csv"
        image_list = []
        with open(csv_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith("#"):
                    continue
                try:
                    timestamp_str, filename = line.split(",")
                    image_list.append((int(timestamp_str.strip()), filename.strip()))
                except ValueError as e:
                    raise ValueError(
                        f"Invalid line in {csv_path}: '{line}'\n"
                        f"Expected format: timestamp,filename"
                    ) from e
        image_list.sort()
        return image_list

    @property
    def intrinsics(self) -> CameraIntrinsics | None:
        """cam0 intrinsics, if sensor.yaml was present."""
        return self._intrinsics

    @property
    def distortion(self) -> DistortionCoeffs:
        """cam0 radial distortion (zero when images are undistorted)."""
        return DistortionCoeffs() if self._undistort else self._distortion

    @property
    def has_imu(self) -> bool:
        """True if frames carry inertial samples."""
        return self._imu is not None

    @property
    def R_camera_imu(self) -> np.ndarray:
        """Rotation from the IMU frame to the camera frame."""
        return self._R_camera_imu.copy()

    def _load_image(self, filename: str) -> np.ndarray:
        path = self.cam0_data_path / filename
        if not path.exists():
            raise FileNotFoundError(f"Camera image not found: {path}")
        image = cv2.imread(str(path), cv2.IMREAD_GRAYSCALE)
        if image is None:
            raise ValueError(f"Failed to load image: {path}")
        if self._undistort and self._intrinsics is not None and not self._distortion.is_zero:
            K = self._intrinsics.to_matrix()
            image = cv2.undistort(image, K, self._distortion.to_array())
        return image

    def get_next_frame(self) -> Frame | None:
        """Get the next frame, or None at the end of the sequence."""
        if self._current_idx >= len(self._image_list):
            return None

        timestamp_ns, filename = self._image_list[self._current_idx]
        imu = []
        if self._imu is not None:
            if self._current_idx == 0:
                start_ns = timestamp_ns - self._first_window_ns
            else:
                start_ns = self._image_list[self._current_idx - 1][0]
            imu = self._imu.get_measurements_between(start_ns, timestamp_ns)

        frame = Frame(
            image=self._load_image(filename),
            timestamp_ns=timestamp_ns,
            imu=list(imu),
            frame_id=self._current_idx,
        )
        self._current_idx += 1
        return frame

    def reset(self) -> None:
        """Reset iterator to beginning of dataset."""
        self._current_idx = 0

    def __len__(self) -> int:
        """Return total number of frames in the sequence."""
        return len(self._image_list)

    def __iter__(self) -> Iterator[Frame]:
        """Iterate over frames from the beginning.

        Example:
            >>> reader = DatasetReader('data/euroc/MH_01_easy/mav0')
            >>> for frame in reader:
            ...     result = system.process_frame(frame)
        """
        self.reset()
        return self

    def __next__(self) -> Frame:
        frame = self.get_next_frame()
        if frame is None:
            raise StopIteration
        return frame
