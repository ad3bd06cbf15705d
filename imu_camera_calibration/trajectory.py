"""
Continuous-time rig trajectory built from a split SO(3) / R^3 spline pair.
"""

import math
from typing import Optional, Tuple

import numpy as np

from .spline import UniformSO3Spline, UniformR3Spline, OutOfDomainError
from .utils import transform_to_matrix


class Trajectory:
    """
    Pose T_w_i(t) of the IMU in the world (board) frame.

    Rotation and translation are independent uniform splines that share a
    start time and order but may use different knot spacings.
    """

    def __init__(self, so3: UniformSO3Spline, r3: UniformR3Spline):
        if so3.start_time_ns != r3.start_time_ns:
            raise ValueError("Rotation and translation splines must share a start time")
        if so3.order != r3.order:
            raise ValueError("Rotation and translation splines must share an order")
        self.so3 = so3
        self.r3 = r3

    @classmethod
    def initialize(cls, start_time_ns: int, end_time_ns: int,
                   dt_so3_ns: int, dt_r3_ns: int, order: int = 5,
                   rotation: Optional[np.ndarray] = None,
                   position: Optional[np.ndarray] = None) -> 'Trajectory':
        """
        Allocate the minimum knots covering [start_time_ns, end_time_ns].

        Each spline gets ceil((end - start) / dt) + order knots, all set to
        the given rotation / position (identity and zero by default).
        """
        if end_time_ns < start_time_ns:
            raise ValueError(f"End time {end_time_ns} ns precedes start time {start_time_ns} ns")
        if dt_so3_ns <= 0 or dt_r3_ns <= 0:
            raise ValueError("Knot spacings must be positive")

        duration = end_time_ns - start_time_ns
        num_so3 = math.ceil(duration / dt_so3_ns) + order
        num_r3 = math.ceil(duration / dt_r3_ns) + order

        rotation = np.eye(3) if rotation is None else np.asarray(rotation, dtype=float)
        position = np.zeros(3) if position is None else np.asarray(position, dtype=float)

        so3 = UniformSO3Spline(np.tile(rotation, (num_so3, 1, 1)), start_time_ns, dt_so3_ns, order)
        r3 = UniformR3Spline(np.tile(position, (num_r3, 1)), start_time_ns, dt_r3_ns, order)
        return cls(so3, r3)

    @property
    def order(self) -> int:
        return self.so3.order

    @property
    def start_time_ns(self) -> int:
        return self.so3.start_time_ns

    @property
    def num_knots_so3(self) -> int:
        return self.so3.num_knots

    @property
    def num_knots_r3(self) -> int:
        return self.r3.num_knots

    @property
    def min_time_ns(self) -> int:
        return max(self.so3.min_time_ns, self.r3.min_time_ns)

    @property
    def max_time_ns(self) -> int:
        return min(self.so3.max_time_ns, self.r3.max_time_ns)

    def contains(self, time_ns: float) -> bool:
        return self.min_time_ns <= time_ns <= self.max_time_ns

    def check_domain(self, time_ns: float):
        if not self.contains(time_ns):
            raise OutOfDomainError(
                f"Time {time_ns} ns outside trajectory domain "
                f"[{self.min_time_ns}, {self.max_time_ns}] ns")

    def extend_to(self, time_ns: float,
                  default_pose: Optional[Tuple[np.ndarray, np.ndarray]] = None) -> int:
        """
        Grow both splines until the domain covers time_ns.

        default_pose is a (rotation, position) pair for the new knots; by
        default the last knots are repeated. Returns the number of knots added.
        """
        rotation, position = (None, None) if default_pose is None else default_pose
        added = self.so3.extend_to(time_ns, rotation)
        added += self.r3.extend_to(time_ns, position)
        return added

    def evaluate_pose(self, time_ns: float) -> np.ndarray:
        """4x4 pose T_w_i at time_ns."""
        self.check_domain(time_ns)
        rotation = self.so3.evaluate(time_ns).rotation
        return transform_to_matrix(rotation, self.r3.evaluate(time_ns))

    def evaluate_rotation(self, time_ns: float) -> np.ndarray:
        return self.so3.evaluate(time_ns).rotation

    def evaluate_position(self, time_ns: float) -> np.ndarray:
        return self.r3.evaluate(time_ns)

    def evaluate_angular_velocity(self, time_ns: float) -> np.ndarray:
        """Angular velocity in the body frame (rad/s)."""
        self.check_domain(time_ns)
        return self.so3.evaluate(time_ns).angular_velocity

    def evaluate_linear_velocity(self, time_ns: float) -> np.ndarray:
        """Linear velocity in the world frame (m/s)."""
        self.check_domain(time_ns)
        return self.r3.evaluate(time_ns, derivative=1)

    def evaluate_linear_acceleration(self, time_ns: float) -> np.ndarray:
        """Linear acceleration in the world frame (m/s^2)."""
        self.check_domain(time_ns)
        return self.r3.evaluate(time_ns, derivative=2)

    def retract(self, delta_so3: np.ndarray, delta_r3: np.ndarray) -> 'Trajectory':
        return Trajectory(self.so3.retract(delta_so3), self.r3.retract(delta_r3))

    def copy(self) -> 'Trajectory':
        return Trajectory(self.so3.copy(), self.r3.copy())
