"""
Configuration artifacts and their YAML loaders.

JSON is a subset of YAML, so every loader also accepts the JSON artifacts
written by the upstream reconstruction and telemetry extraction tools.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import yaml

from .camera import CalibrationTarget, CameraIntrinsics
from .observations import (
    CornerObservation, IMUSample, SensorKind, TimestampedPose, seconds_to_ns
)
from .spline import NS_PER_SECOND
from .utils import matrix_from_quaternion


logger = logging.getLogger(__name__)

Variance = Union[float, Sequence[float]]


@dataclass
class SplineWeighting:
    """Knot spacings (s) and IMU noise variances weighting the residuals."""
    dt_so3: float = 0.1
    dt_r3: float = 0.1
    var_so3: Variance = 1.0
    var_r3: Variance = 1.0

    def __post_init__(self):
        if self.dt_so3 <= 0.0 or self.dt_r3 <= 0.0:
            raise ValueError(f"Knot spacings must be positive, got {self.dt_so3}, {self.dt_r3}")

    @property
    def dt_so3_ns(self) -> int:
        return seconds_to_ns(self.dt_so3)

    @property
    def dt_r3_ns(self) -> int:
        return seconds_to_ns(self.dt_r3)


@dataclass
class RoughAlignment:
    """
    Coarse IMU-camera alignment.

    R_c_i rotates IMU-frame vectors into the camera frame. camera_position
    is the camera centre in the IMU frame (zero when unknown).
    """
    R_c_i: np.ndarray = field(default_factory=lambda: np.eye(3))
    time_offset_s: float = 0.0
    camera_position: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self):
        self.R_c_i = np.asarray(self.R_c_i, dtype=float).reshape(3, 3)
        self.camera_position = np.asarray(self.camera_position, dtype=float).reshape(3)

    @property
    def R_i_c(self) -> np.ndarray:
        return self.R_c_i.T


@dataclass
class ImuBias:
    gyro: np.ndarray = field(default_factory=lambda: np.zeros(3))
    accel: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self):
        self.gyro = np.asarray(self.gyro, dtype=float).reshape(3)
        self.accel = np.asarray(self.accel, dtype=float).reshape(3)


@dataclass
class CalibrationOptions:
    spline_order: int = 5
    max_duration_s: float = 1000.0
    gravity_tolerance_ms: float = 3.0
    pixel_noise: float = 1.0
    rolling_shutter: bool = False
    imu_subsample: int = 1
    # IMU samples within this margin of the window edges are dropped
    imu_time_margin_s: float = 0.01
    max_iterations: int = 100
    num_workers: int = 1
    fixed_blocks: Tuple[str, ...] = ()

    def __post_init__(self):
        if self.imu_subsample < 1:
            raise ValueError(f"imu_subsample must be at least 1, got {self.imu_subsample}")
        if self.max_duration_s <= 0.0:
            raise ValueError(f"max_duration_s must be positive, got {self.max_duration_s}")
        if self.imu_time_margin_s < 0.0:
            raise ValueError(f"imu_time_margin_s must be non-negative, got {self.imu_time_margin_s}")
        self.fixed_blocks = tuple(self.fixed_blocks)

    @property
    def gravity_tolerance_ns(self) -> int:
        return int(round(self.gravity_tolerance_ms * 1e6))


@dataclass
class Reconstruction:
    """Output of the intrinsic calibration: poses, corners and the target."""
    target: CalibrationTarget
    poses: List[TimestampedPose]
    corners: List[CornerObservation]


@dataclass
class Telemetry:
    gyroscope: List[IMUSample]
    accelerometer: List[IMUSample]


def load_yaml(path: str) -> Dict[str, Any]:
    """Load a YAML (or JSON) mapping."""
    if not os.path.exists(path):
        raise FileNotFoundError(f"Configuration file not found: {path}")
    with open(path, 'r') as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a mapping at the top level of {path}")
    return data


def _require(data: Dict[str, Any], key: str, source: str):
    try:
        return data[key]
    except KeyError:
        raise ValueError(f"Missing '{key}' in {source}") from None


def parse_intrinsics(data: Dict[str, Any], source: str = 'intrinsics') -> Dict[str, Any]:
    """
    Parse camera intrinsics in the Main Street Autonomy / ROS calibration format.

    Returns dict with:
        - camera_matrix: 3x3 numpy array
        - dist_coeffs: distortion coefficients
        - distortion_model: string
        - image_size: (width, height)
        - is_fisheye: bool
    """
    camera_matrix = np.array(_require(data, 'camera_matrix', source)['data'], dtype=float).reshape(3, 3)

    dist = data.get('distortion_coefficients', {'data': []})
    dist_coeffs = np.array(dist['data'] if isinstance(dist, dict) else dist, dtype=float)

    distortion_model = data.get('distortion_model', 'plumb_bob')
    fisheye_models = ['equidistant', 'fisheye', 'kb4', 'kannala_brandt']

    return {
        'camera_matrix': camera_matrix,
        'dist_coeffs': dist_coeffs,
        'distortion_model': distortion_model,
        'image_size': (int(data.get('image_width', 0)), int(data.get('image_height', 0))),
        'camera_name': data.get('camera_name', 'unknown'),
        'is_fisheye': distortion_model.lower() in fisheye_models,
        'readout_time_s': float(data.get('readout_time_s', 0.0)),
    }


def load_intrinsics(intrinsics_path: str) -> Dict[str, Any]:
    """Load camera intrinsics from a YAML file (see parse_intrinsics)."""
    return parse_intrinsics(load_yaml(intrinsics_path), intrinsics_path)


def load_spline_weighting(path: str) -> SplineWeighting:
    data = load_yaml(path)
    return SplineWeighting(
        dt_so3=float(_require(data, 'dt_so3', path)),
        dt_r3=float(_require(data, 'dt_r3', path)),
        var_so3=data.get('var_so3', 1.0),
        var_r3=data.get('var_r3', 1.0),
    )


def load_rough_alignment(path: str) -> RoughAlignment:
    """
    Load the rough IMU-to-camera alignment.

    imu_to_camera_quaternion is [x, y, z, w] and rotates IMU-frame vectors
    into the camera frame.
    """
    data = load_yaml(path)
    q = _require(data, 'imu_to_camera_quaternion', path)
    return RoughAlignment(
        R_c_i=matrix_from_quaternion(q),
        time_offset_s=float(data.get('time_offset_s', 0.0)),
        camera_position=data.get('camera_position_in_imu', [0.0, 0.0, 0.0]),
    )


def load_imu_bias(path: Optional[str]) -> ImuBias:
    """Load gyroscope/accelerometer biases; a missing path means zero bias."""
    if path is None:
        return ImuBias()
    data = load_yaml(path)
    accel = data.get('accel_bias', data.get('accl_bias', [0.0, 0.0, 0.0]))
    return ImuBias(gyro=data.get('gyro_bias', [0.0, 0.0, 0.0]), accel=accel)


def load_calibration_options(path: Optional[str]) -> CalibrationOptions:
    if path is None:
        return CalibrationOptions()
    data = load_yaml(path)
    known = CalibrationOptions.__dataclass_fields__.keys()
    unknown = sorted(set(data) - set(known))
    if unknown:
        logger.warning("Ignoring unknown calibration options: %s", ", ".join(unknown))
    return CalibrationOptions(**{k: v for k, v in data.items() if k in known})


def _parse_imu_stream(data: Dict[str, Any], key: str, kind: SensorKind,
                      source: str) -> List[IMUSample]:
    stream = _require(data, key, source)
    timestamps = np.asarray(_require(stream, 'timestamps_ms', source), dtype=float)
    samples = np.asarray(_require(stream, 'samples', source), dtype=float).reshape(-1, 3)
    if len(timestamps) != len(samples):
        raise ValueError(
            f"{source}: {key} has {len(timestamps)} timestamps for {len(samples)} samples")
    return [IMUSample.from_milliseconds(t, v, kind) for t, v in zip(timestamps, samples)]


def load_telemetry(path: str) -> Telemetry:
    """Load accelerometer and gyroscope streams (timestamps in milliseconds)."""
    data = load_yaml(path)
    telemetry = Telemetry(
        gyroscope=_parse_imu_stream(data, 'gyroscope', SensorKind.GYROSCOPE, path),
        accelerometer=_parse_imu_stream(data, 'accelerometer', SensorKind.ACCELEROMETER, path),
    )
    logger.info("Loaded %d gyroscope and %d accelerometer samples from %s",
                len(telemetry.gyroscope), len(telemetry.accelerometer), path)
    return telemetry


def load_reconstruction(path: str, line_delay_s: Optional[float] = None) -> Reconstruction:
    """
    Load camera poses, corner observations and landmarks.

    Views carry a world-to-camera rvec/tvec and their timestamp in seconds.
    Landmarks are listed explicitly or generated from a charuco_board
    block (inline, or a board file relative to the reconstruction file).
    Intrinsics are given inline or via intrinsics_file (relative to the
    reconstruction file). line_delay_s overrides the rolling-shutter line
    delay derived from readout_time_s.
    """
    data = load_yaml(path)

    if 'intrinsics' in data:
        intrinsics_dict = parse_intrinsics(data['intrinsics'], path)
    else:
        intrinsics_file = _require(data, 'intrinsics_file', path)
        if not os.path.isabs(intrinsics_file):
            intrinsics_file = os.path.join(os.path.dirname(path), intrinsics_file)
        intrinsics_dict = load_intrinsics(intrinsics_file)

    intrinsics = CameraIntrinsics.from_dict(intrinsics_dict, intrinsics_dict['readout_time_s'])
    if line_delay_s is None:
        line_delay_s = intrinsics.line_delay_s

    if 'landmarks' in data:
        landmarks = {int(k): v for k, v in data['landmarks'].items()}
        target = CalibrationTarget(landmarks, intrinsics, line_delay_s)
    elif 'charuco_board' in data:
        board_cfg = data['charuco_board']
        if isinstance(board_cfg, str):
            if not os.path.isabs(board_cfg):
                board_cfg = os.path.join(os.path.dirname(path), board_cfg)
            board_cfg = load_yaml(board_cfg)
        target = CalibrationTarget.from_charuco_board(board_cfg, intrinsics, line_delay_s)
    else:
        raise ValueError(f"{path}: expected either 'landmarks' or 'charuco_board'")

    poses = []
    corners = []
    for view in _require(data, 'views', path):
        timestamp_ns = int(round(float(_require(view, 'timestamp', path)) * NS_PER_SECOND))
        camera_id = int(view.get('camera_id', 0))
        poses.append(TimestampedPose.from_rvec_tvec(
            timestamp_ns, _require(view, 'rvec', path), _require(view, 'tvec', path), camera_id))
        if view.get('track_ids'):
            corners.append(CornerObservation(
                timestamp_ns, view['track_ids'], view['corners'], camera_id))

    logger.info("Loaded %d views with %d corners from %s",
                len(poses), sum(c.num_corners for c in corners), path)
    return Reconstruction(target, poses, corners)
