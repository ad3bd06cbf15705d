"""
Free parameters of the joint IMU-camera optimization.
"""

from dataclasses import dataclass, field
from typing import Dict

import numpy as np

from .lie import so3_exp
from .trajectory import Trajectory
from .utils import transform_to_matrix


# Parameter blocks in the order they appear in the tangent vector
PARAMETER_BLOCKS = (
    'so3_knots',
    'r3_knots',
    'extrinsic_rotation',
    'extrinsic_translation',
    'time_offset',
    'gyro_bias',
    'accel_bias',
    'gravity',
)

_BLOCK_SIZES = {
    'extrinsic_rotation': 3,
    'extrinsic_translation': 3,
    'time_offset': 1,
    'gyro_bias': 3,
    'accel_bias': 3,
    'gravity': 3,
}


@dataclass(frozen=True)
class ParameterLayout:
    """Column offsets of every parameter block in the tangent vector."""
    num_knots_so3: int
    num_knots_r3: int

    @property
    def offsets(self) -> Dict[str, int]:
        sizes = dict(_BLOCK_SIZES,
                     so3_knots=3 * self.num_knots_so3,
                     r3_knots=3 * self.num_knots_r3)
        offsets = {}
        position = 0
        for name in PARAMETER_BLOCKS:
            offsets[name] = position
            position += sizes[name]
        offsets['end'] = position
        return offsets

    @property
    def size(self) -> int:
        return 3 * (self.num_knots_so3 + self.num_knots_r3) + sum(_BLOCK_SIZES.values())

    def so3_knot(self, index: int) -> int:
        return 3 * index

    def r3_knot(self, index: int) -> int:
        return 3 * (self.num_knots_so3 + index)

    def block(self, name: str) -> int:
        return self.offsets[name]

    def block_slice(self, name: str) -> slice:
        offsets = self.offsets
        start = offsets[name]
        following = PARAMETER_BLOCKS.index(name) + 1
        stop = offsets[PARAMETER_BLOCKS[following]] if following < len(PARAMETER_BLOCKS) else offsets['end']
        return slice(start, stop)


@dataclass
class CalibrationState:
    """
    Trajectory knots plus the IMU-camera calibration parameters.

    R_i_c / p_i_c: camera pose in the IMU frame (T_i_c).
    time_offset_s: camera time = IMU time + time_offset_s.
    gyro_bias, accel_bias: measured = true + bias.
    gravity: specific force of a resting body, world frame.
    """
    trajectory: Trajectory
    R_i_c: np.ndarray = field(default_factory=lambda: np.eye(3))
    p_i_c: np.ndarray = field(default_factory=lambda: np.zeros(3))
    time_offset_s: float = 0.0
    gyro_bias: np.ndarray = field(default_factory=lambda: np.zeros(3))
    accel_bias: np.ndarray = field(default_factory=lambda: np.zeros(3))
    gravity: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self):
        self.R_i_c = np.asarray(self.R_i_c, dtype=float).reshape(3, 3)
        self.p_i_c = np.asarray(self.p_i_c, dtype=float).reshape(3)
        self.time_offset_s = float(self.time_offset_s)
        self.gyro_bias = np.asarray(self.gyro_bias, dtype=float).reshape(3)
        self.accel_bias = np.asarray(self.accel_bias, dtype=float).reshape(3)
        self.gravity = np.asarray(self.gravity, dtype=float).reshape(3)

    @property
    def T_i_c(self) -> np.ndarray:
        return transform_to_matrix(self.R_i_c, self.p_i_c)

    def layout(self) -> ParameterLayout:
        return ParameterLayout(self.trajectory.num_knots_so3, self.trajectory.num_knots_r3)

    def imu_time_ns(self, timestamp_ns: float) -> float:
        """IMU timestamp mapped onto the camera (trajectory) clock."""
        return timestamp_ns + self.time_offset_s * 1e9

    def norm(self) -> float:
        """Euclidean norm of all stored parameter values."""
        traj = self.trajectory
        parts = [traj.so3.knots.ravel(), traj.r3.knots.ravel(), self.R_i_c.ravel(),
                 self.p_i_c, [self.time_offset_s], self.gyro_bias, self.accel_bias, self.gravity]
        return float(np.linalg.norm(np.concatenate(parts)))

    def retract(self, delta: np.ndarray, layout: ParameterLayout = None) -> 'CalibrationState':
        """
        New state moved along a tangent vector.

        Rotations are updated by right multiplication with exp(delta), all
        other blocks additively. self is left untouched.
        """
        layout = layout or self.layout()
        delta = np.asarray(delta, dtype=float)
        if delta.shape != (layout.size,):
            raise ValueError(f"Expected tangent vector of size {layout.size}, got {delta.shape}")

        def part(name):
            return delta[layout.block_slice(name)]

        return CalibrationState(
            trajectory=self.trajectory.retract(part('so3_knots'), part('r3_knots')),
            R_i_c=self.R_i_c @ so3_exp(part('extrinsic_rotation')),
            p_i_c=self.p_i_c + part('extrinsic_translation'),
            time_offset_s=self.time_offset_s + part('time_offset')[0],
            gyro_bias=self.gyro_bias + part('gyro_bias'),
            accel_bias=self.accel_bias + part('accel_bias'),
            gravity=self.gravity + part('gravity'),
        )

    def copy(self) -> 'CalibrationState':
        return CalibrationState(
            trajectory=self.trajectory.copy(),
            R_i_c=self.R_i_c.copy(),
            p_i_c=self.p_i_c.copy(),
            time_offset_s=self.time_offset_s,
            gyro_bias=self.gyro_bias.copy(),
            accel_bias=self.accel_bias.copy(),
            gravity=self.gravity.copy(),
        )
