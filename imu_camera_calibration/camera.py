"""
Locked camera intrinsics and calibration target geometry.

Neither is estimated here: both come from the prior intrinsic calibration
and stay fixed during the IMU-camera optimization.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import cv2
import numpy as np


# Landmarks closer than this along the optical axis do not project
MIN_DEPTH = 1e-6

# ArUco dictionary mapping
ARUCO_DICT_MAP = {
    "DICT_4X4_50": cv2.aruco.DICT_4X4_50,
    "DICT_4X4_250": cv2.aruco.DICT_4X4_250,
    "DICT_5X5_250": cv2.aruco.DICT_5X5_250,
    "DICT_6X6_250": cv2.aruco.DICT_6X6_250,
    "DICT_7X7_250": cv2.aruco.DICT_7X7_250,
    "DICT_ARUCO_ORIGINAL": cv2.aruco.DICT_ARUCO_ORIGINAL,
}


@dataclass(frozen=True, eq=False)
class CameraIntrinsics:
    """
    OpenCV pinhole intrinsics with optional plumb_bob distortion.

    readout_time_s is the rolling-shutter frame readout time (0 for a
    global shutter camera).
    """
    camera_matrix: np.ndarray
    dist_coeffs: np.ndarray = field(default_factory=lambda: np.zeros(0))
    image_size: Tuple[int, int] = (0, 0)
    readout_time_s: float = 0.0

    def __post_init__(self):
        K = np.array(self.camera_matrix, dtype=np.float64).reshape(3, 3)
        dist = np.array(self.dist_coeffs, dtype=np.float64).ravel()
        if dist.size not in (0, 4, 5, 8, 12, 14):
            raise ValueError(f"Unsupported number of distortion coefficients: {dist.size}")
        K.setflags(write=False)
        dist.setflags(write=False)
        object.__setattr__(self, 'camera_matrix', K)
        object.__setattr__(self, 'dist_coeffs', dist)

    @classmethod
    def from_dict(cls, intrinsics: Dict[str, Any], readout_time_s: float = 0.0):
        """Build from the dictionary returned by config.load_intrinsics."""
        if intrinsics.get('is_fisheye', False):
            raise ValueError(
                f"Fisheye model '{intrinsics.get('distortion_model')}' is not supported")
        return cls(
            camera_matrix=intrinsics['camera_matrix'],
            dist_coeffs=intrinsics['dist_coeffs'],
            image_size=tuple(intrinsics.get('image_size', (0, 0))),
            readout_time_s=readout_time_s,
        )

    @property
    def line_delay_s(self) -> float:
        """Time between the exposure of consecutive image rows."""
        height = self.image_size[1]
        if self.readout_time_s <= 0.0 or height <= 0:
            return 0.0
        return self.readout_time_s / height

    def project(self, points_c: np.ndarray,
                with_jacobian: bool = False) -> Tuple[np.ndarray, Optional[np.ndarray]]:
        """
        Project camera-frame points to pixels.

        Returns (pixels (K, 2), d_pixels/d_points (K, 2, 3) or None). Points
        at or behind the image plane yield NaN pixels.
        """
        points = np.ascontiguousarray(points_c, dtype=np.float64).reshape(-1, 3)
        if len(points) == 0:
            return np.zeros((0, 2)), (np.zeros((0, 2, 3)) if with_jacobian else None)

        dist = self.dist_coeffs if self.dist_coeffs.size else None
        image_points, jacobian = cv2.projectPoints(
            points, np.zeros(3), np.zeros(3), self.camera_matrix, dist)
        pixels = image_points.reshape(-1, 2)

        behind = points[:, 2] <= MIN_DEPTH
        if np.any(behind):
            pixels = pixels.copy()
            pixels[behind] = np.nan

        if not with_jacobian:
            return pixels, None

        # Columns 3:6 are the derivatives with respect to the translation
        # vector, which equal the derivatives with respect to the point.
        return pixels, jacobian[:, 3:6].reshape(-1, 2, 3)


@dataclass
class CalibrationTarget:
    """
    Known 3D landmarks (by track id) observed through locked intrinsics.

    line_delay_s > 0 enables per-row rolling-shutter timing of corners.
    """
    landmarks: Dict[int, np.ndarray]
    intrinsics: CameraIntrinsics
    line_delay_s: float = 0.0

    def __post_init__(self):
        self.landmarks = {int(k): np.asarray(v, dtype=float).reshape(3)
                          for k, v in self.landmarks.items()}

    @classmethod
    def from_charuco_board(cls, config: Dict[str, Any], intrinsics: CameraIntrinsics,
                           line_delay_s: float = 0.0):
        """
        Landmarks from the chessboard corners of a ChArUco board.

        Track id i is the i-th ChArUco corner id.

        Args:
            config: ChArUco board configuration dictionary
            intrinsics: Locked camera intrinsics
            line_delay_s: Rolling-shutter line delay
        """
        dict_name = config.get('aruco_dictionary', 'DICT_6X6_250')
        if dict_name not in ARUCO_DICT_MAP:
            raise ValueError(f"Unknown ArUco dictionary: {dict_name}")

        board = cv2.aruco.CharucoBoard(
            (config['squares_x'], config['squares_y']),
            config['square_length'],
            config['marker_length'],
            cv2.aruco.getPredefinedDictionary(ARUCO_DICT_MAP[dict_name])
        )
        corners = np.asarray(board.getChessboardCorners(), dtype=float).reshape(-1, 3)
        return cls({i: p for i, p in enumerate(corners)}, intrinsics, line_delay_s)

    def points(self, track_ids: np.ndarray) -> np.ndarray:
        """3D landmark positions (K, 3) for the given track ids."""
        try:
            return np.array([self.landmarks[int(t)] for t in track_ids]).reshape(-1, 3)
        except KeyError as e:
            raise ValueError(f"Unknown landmark track id {e.args[0]}") from None
