"""
Timestamped inputs consumed by the calibration core.

All of these are produced by external collaborators (intrinsic calibration,
telemetry extraction) and are immutable once ingested.
"""

import enum
from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np

from .utils import transform_to_matrix


NS_PER_MS = 1_000_000


def seconds_to_ns(t: float) -> int:
    return int(round(t * 1e9))


def _frozen(values, dtype=float, shape: Optional[Tuple[int, ...]] = None) -> np.ndarray:
    arr = np.array(values, dtype=dtype)
    if shape is not None and arr.shape != shape:
        raise ValueError(f"Expected shape {shape}, got {arr.shape}")
    arr.setflags(write=False)
    return arr


class SensorKind(enum.Enum):
    GYROSCOPE = "gyroscope"
    ACCELEROMETER = "accelerometer"


@dataclass(frozen=True, eq=False)
class TimestampedPose:
    """
    Camera pose T_w_c from the intrinsic calibration.

    rotation maps camera-frame vectors into the world (board) frame and
    position is the camera centre in the world frame.
    """
    timestamp_ns: int
    rotation: np.ndarray
    position: np.ndarray
    camera_id: int = 0

    def __post_init__(self):
        object.__setattr__(self, 'timestamp_ns', int(self.timestamp_ns))
        object.__setattr__(self, 'rotation', _frozen(self.rotation, shape=(3, 3)))
        object.__setattr__(self, 'position', _frozen(self.position, shape=(3,)))

    @classmethod
    def from_matrix(cls, timestamp_ns: int, T_w_c: np.ndarray, camera_id: int = 0):
        return cls(timestamp_ns, T_w_c[:3, :3], T_w_c[:3, 3], camera_id)

    @classmethod
    def from_rvec_tvec(cls, timestamp_ns: int, rvec: np.ndarray, tvec: np.ndarray,
                       camera_id: int = 0):
        """
        Build from a world-to-camera solvePnP result (x_c = R(rvec) x_w + tvec).
        """
        R_c_w, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64).reshape(3, 1))
        R_w_c = R_c_w.T
        return cls(timestamp_ns, R_w_c, -R_w_c @ np.asarray(tvec, dtype=float).reshape(3), camera_id)

    @property
    def timestamp_s(self) -> float:
        return self.timestamp_ns * 1e-9

    def matrix(self) -> np.ndarray:
        return transform_to_matrix(self.rotation, self.position)


@dataclass(frozen=True, eq=False)
class CornerObservation:
    """Fiducial corners detected in one frame, keyed by landmark track id."""
    timestamp_ns: int
    track_ids: np.ndarray
    corners: np.ndarray
    camera_id: int = 0

    def __post_init__(self):
        track_ids = _frozen(np.asarray(self.track_ids).ravel(), dtype=np.int64)
        corners = _frozen(np.asarray(self.corners, dtype=float).reshape(-1, 2))
        if len(track_ids) != len(corners):
            raise ValueError(
                f"Got {len(track_ids)} track ids for {len(corners)} corners")
        object.__setattr__(self, 'timestamp_ns', int(self.timestamp_ns))
        object.__setattr__(self, 'track_ids', track_ids)
        object.__setattr__(self, 'corners', corners)

    @property
    def num_corners(self) -> int:
        return len(self.track_ids)


@dataclass(frozen=True, eq=False)
class IMUSample:
    """One gyroscope (rad/s) or accelerometer (m/s^2, specific force) reading."""
    timestamp_ns: int
    value: np.ndarray
    kind: SensorKind

    def __post_init__(self):
        object.__setattr__(self, 'timestamp_ns', int(self.timestamp_ns))
        object.__setattr__(self, 'value', _frozen(self.value, shape=(3,)))

    @classmethod
    def from_milliseconds(cls, timestamp_ms: float, value, kind: SensorKind):
        return cls(int(round(timestamp_ms * NS_PER_MS)), value, kind)
