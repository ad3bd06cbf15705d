"""
Utility functions for IMU-camera calibration.
"""

import logging

import numpy as np
from typing import Tuple
from scipy.spatial.transform import Rotation


logger = logging.getLogger(__name__)


def quaternion_from_matrix(R: np.ndarray) -> np.ndarray:
    """
    Convert a 3x3 rotation matrix to quaternion [x, y, z, w].

    The sign is chosen so that w >= 0.
    """
    q = Rotation.from_matrix(R).as_quat()
    return -q if q[3] < 0 else q


def matrix_from_quaternion(q: np.ndarray) -> np.ndarray:
    """
    Convert quaternion [x, y, z, w] to 3x3 rotation matrix.

    The quaternion is normalized first.
    """
    q = np.asarray(q, dtype=float)
    norm = np.linalg.norm(q)
    if norm == 0.0:
        raise ValueError("Zero-norm quaternion")
    return Rotation.from_quat(q / norm).as_matrix()


def transform_to_matrix(rotation: np.ndarray, translation: np.ndarray) -> np.ndarray:
    """
    Create 4x4 transformation matrix from a rotation matrix and translation.
    """
    T = np.eye(4)
    T[:3, :3] = rotation
    T[:3, 3] = translation
    return T


def matrix_to_transform(T: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Extract translation and quaternion [x, y, z, w] from a 4x4 transformation matrix.
    """
    return T[:3, 3].copy(), quaternion_from_matrix(T[:3, :3])


def invert_transform(T: np.ndarray) -> np.ndarray:
    """
    Invert a 4x4 transformation matrix.
    """
    R = T[:3, :3]
    t = T[:3, 3]
    return transform_to_matrix(R.T, -R.T @ t)


def rotation_angle(R_a: np.ndarray, R_b: np.ndarray) -> float:
    """Angle in radians of the relative rotation R_a^T R_b."""
    return float(np.linalg.norm(Rotation.from_matrix(R_a.T @ R_b).as_rotvec()))


def _format_vector(v) -> str:
    return "[" + ", ".join(f"{x:.9f}" for x in np.asarray(v, dtype=float).ravel()) + "]"


def save_calibration_yaml(result, output_path: str):
    """
    Save an IMU-camera calibration result to a YAML file.

    The transform is written as the camera pose in the IMU frame,
    [x_m, y_m, z_m, qx, qy, qz, qw], followed by time offset, biases,
    gravity and the optimizer summary.

    Args:
        result: CalibrationResult from ImuCameraCalibrationSolver
        output_path: Path to save the YAML file
    """
    t, q = matrix_to_transform(result.T_i_c)
    summary = result.summary

    lines = [
        "# IMU-camera calibration computed by imu_camera_calibration package",
        "# T_i_c: camera pose in the IMU frame",
        "# Position xyz; Quaternions xyzw",
        "# [ x_m, y_m, z_m, qx, qy, qz, qw]",
        f"T_i_c: {_format_vector(np.concatenate([t, q]))}",
        "# camera time = IMU time + time_offset_s",
        f"time_offset_s: {result.time_offset_s:.9f}",
        f"gyro_bias: {_format_vector(result.gyro_bias)}",
        f"accel_bias: {_format_vector(result.accel_bias)}",
        f"gravity: {_format_vector(result.gravity)}",
        f"gravity_magnitude: {result.gravity_magnitude:.6f}",
        f"mean_reprojection_error_px: {result.mean_reprojection_error:.6f}",
        "optimization:",
        f"  termination: {summary.termination.value}",
        f"  iterations: {summary.iterations}",
        f"  initial_cost: {summary.initial_cost:.9e}",
        f"  final_cost: {summary.final_cost:.9e}",
        "measurements:",
        f"  frames: {result.num_frames}",
        f"  corners: {result.num_corners}",
        f"  gyroscope: {result.num_gyro}",
        f"  accelerometer: {result.num_accel}",
        f"  duration_s: {result.duration_s:.6f}",
    ]

    with open(output_path, 'w') as f:
        f.write('\n'.join(lines) + '\n')

    logger.info("Saved calibration to %s", output_path)
