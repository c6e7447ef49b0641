"""I/O utilities: dataset readers and PLY export."""

from .dataset_reader import DatasetReader
from .imu_reader import IMUCalibration, IMUReader, read_sensor_extrinsics
from .ply import read_ply_header, write_mesh_ply, write_point_cloud_ply

__all__ = [
    "DatasetReader",
    "IMUReader",
    "IMUCalibration",
    "read_sensor_extrinsics",
    "write_point_cloud_ply",
    "write_mesh_ply",
    "read_ply_header",
]
