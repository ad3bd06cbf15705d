"""
Residual models of the joint estimator.

Every measurement evaluates to a weighted residual vector and, on request,
its Jacobian with respect to the tangent vector of a CalibrationState. The
Jacobian is returned as dense blocks placed at (row, column) offsets so the
estimator can assemble a sparse matrix without knowing the model.

Conventions:
    trajectory: T_w_i(t) on the camera clock
    camera:     T_w_c(t) = T_w_i(t) * T_i_c
    IMU sample at t_imu is evaluated at t_imu + time_offset_s
    gyroscope:     m = omega_i + b_g
    accelerometer: m = R_w_i^T (a_w + g) + b_a
"""

import enum
from dataclasses import dataclass, field
from typing import Callable, ClassVar, Dict, List, Tuple

import numpy as np

from .camera import CalibrationTarget, CameraIntrinsics
from .lie import skew
from .observations import CornerObservation, IMUSample, SensorKind
from .spline import NS_PER_SECOND
from .state import CalibrationState, ParameterLayout


class MeasurementKind(enum.Enum):
    REPROJECTION = "reprojection"
    GYROSCOPE = "gyroscope"
    ACCELEROMETER = "accelerometer"


def noise_weight(variance):
    """
    Square-root information of a noise variance.

    A scalar gives a scalar weight, a per-axis variance a per-axis weight.
    """
    variance = np.asarray(variance, dtype=float)
    if not (np.all(variance > 0.0) and np.all(np.isfinite(variance))):
        raise ValueError(f"Noise variance must be positive and finite, got {variance}")
    weight = 1.0 / np.sqrt(variance)
    return float(weight) if weight.ndim == 0 else weight


@dataclass
class ResidualBlock:
    """Weighted residual with Jacobian blocks (row_start, col_start, block)."""
    residual: np.ndarray
    jacobian: List[Tuple[int, int, np.ndarray]] = field(default_factory=list)

    @property
    def dimension(self) -> int:
        return len(self.residual)

    def add(self, row_start: int, col_start: int, block: np.ndarray):
        self.jacobian.append((row_start, col_start, block))


@dataclass(frozen=True, eq=False)
class ReprojectionMeasurement:
    """
    Corners of one frame against known landmarks.

    line_delay_s > 0 evaluates each corner at frame time + row * line_delay_s.
    """
    kind: ClassVar[MeasurementKind] = MeasurementKind.REPROJECTION

    timestamp_ns: int
    track_ids: np.ndarray
    corners: np.ndarray
    points_w: np.ndarray
    intrinsics: CameraIntrinsics
    weight: float = 1.0
    line_delay_s: float = 0.0

    @classmethod
    def from_observation(cls, observation: CornerObservation, target: CalibrationTarget,
                         pixel_noise: float = 1.0) -> 'ReprojectionMeasurement':
        return cls(
            timestamp_ns=observation.timestamp_ns,
            track_ids=observation.track_ids,
            corners=observation.corners,
            points_w=target.points(observation.track_ids),
            intrinsics=target.intrinsics,
            weight=noise_weight(pixel_noise ** 2),
            line_delay_s=target.line_delay_s,
        )

    @property
    def num_corners(self) -> int:
        return len(self.corners)

    @property
    def dimension(self) -> int:
        return 2 * self.num_corners

    def corner_times_ns(self) -> np.ndarray:
        if self.line_delay_s <= 0.0:
            return np.full(self.num_corners, float(self.timestamp_ns))
        return self.timestamp_ns + self.corners[:, 1] * self.line_delay_s * NS_PER_SECOND

    def evaluation_times_ns(self, time_offset_s: float = 0.0) -> Tuple[float, float]:
        """Earliest and latest trajectory query time."""
        if self.num_corners == 0 or self.line_delay_s <= 0.0:
            return float(self.timestamp_ns), float(self.timestamp_ns)
        times = self.corner_times_ns()
        return float(times.min()), float(times.max())


@dataclass(frozen=True, eq=False)
class _InertialMeasurement:
    timestamp_ns: int
    value: np.ndarray
    weight: np.ndarray = 1.0

    def __post_init__(self):
        weight = np.broadcast_to(np.asarray(self.weight, dtype=float), (3,)).copy()
        weight.setflags(write=False)
        object.__setattr__(self, "weight", weight)

    @classmethod
    def from_sample(cls, sample: IMUSample, variance):
        if sample.kind is not cls.sensor:
            raise ValueError(f"Expected a {cls.sensor.value} sample, got {sample.kind.value}")
        return cls(sample.timestamp_ns, sample.value, noise_weight(variance))

    @property
    def dimension(self) -> int:
        return 3

    def query_time_ns(self, time_offset_s: float) -> float:
        return self.timestamp_ns + time_offset_s * NS_PER_SECOND

    def evaluation_times_ns(self, time_offset_s: float = 0.0) -> Tuple[float, float]:
        t = self.query_time_ns(time_offset_s)
        return t, t


@dataclass(frozen=True, eq=False)
class GyroscopeMeasurement(_InertialMeasurement):
    """Body angular velocity in rad/s."""
    kind: ClassVar[MeasurementKind] = MeasurementKind.GYROSCOPE
    sensor: ClassVar[SensorKind] = SensorKind.GYROSCOPE


@dataclass(frozen=True, eq=False)
class AccelerometerMeasurement(_InertialMeasurement):
    """Specific force in m/s^2."""
    kind: ClassVar[MeasurementKind] = MeasurementKind.ACCELEROMETER
    sensor: ClassVar[SensorKind] = SensorKind.ACCELEROMETER


def _add_so3_knots(block: ResidualBlock, layout: ParameterLayout, row: int,
                   start_index: int, left: np.ndarray, d_knots: np.ndarray):
    for j, d in enumerate(d_knots):
        block.add(row, layout.so3_knot(start_index + j), left @ d)


def _add_r3_knots(block: ResidualBlock, layout: ParameterLayout, row: int,
                  start_index: int, left: np.ndarray, weights: np.ndarray):
    for j, w in enumerate(weights):
        if w != 0.0:
            block.add(row, layout.r3_knot(start_index + j), w * left)


def _reproject_group(m: ReprojectionMeasurement, state: CalibrationState,
                     layout: ParameterLayout, time_ns: float, rows: slice,
                     block: ResidualBlock, with_jacobian: bool):
    """Residuals of the corners in rows evaluated at a single time."""
    trajectory = state.trajectory
    sample = trajectory.so3.evaluate(time_ns, jacobians=with_jacobian)
    r3_index, r3_weights = trajectory.r3.weights(time_ns)
    position = r3_weights @ trajectory.r3.knots[r3_index:r3_index + trajectory.order]
    R = sample.rotation

    points = m.points_w[rows]
    # Row-vector forms of y = R^T (X - p) and x_c = R_i_c^T (y - p_i_c)
    y = (points - position) @ R
    x_c = (y - state.p_i_c) @ state.R_i_c
    pixels, d_pixels = m.intrinsics.project(x_c, with_jacobian=with_jacobian)
    block.residual[2 * rows.start:2 * rows.stop] = (m.weight * (pixels - m.corners[rows])).ravel()

    if not with_jacobian:
        return

    row = 2 * rows.start
    count = len(points)
    d_pixels = m.weight * d_pixels
    d_y = d_pixels @ state.R_i_c.T

    for j, d in enumerate(sample.d_rotation):
        jac = (d_y @ skew(y) @ d).reshape(2 * count, 3)
        block.add(row, layout.so3_knot(sample.start_index + j), jac)
    _add_r3_knots(block, layout, row, r3_index, (d_y @ -R.T).reshape(2 * count, 3), r3_weights)

    block.add(row, layout.block('extrinsic_rotation'), (d_pixels @ skew(x_c)).reshape(2 * count, 3))
    block.add(row, layout.block('extrinsic_translation'), (-d_y).reshape(2 * count, 3))


def evaluate_reprojection(m: ReprojectionMeasurement, state: CalibrationState,
                          layout: ParameterLayout, with_jacobian: bool = True) -> ResidualBlock:
    block = ResidualBlock(np.zeros(m.dimension))
    if m.num_corners == 0:
        return block

    if m.line_delay_s <= 0.0:
        _reproject_group(m, state, layout, m.timestamp_ns, slice(0, m.num_corners),
                         block, with_jacobian)
    else:
        for k, time_ns in enumerate(m.corner_times_ns()):
            _reproject_group(m, state, layout, time_ns, slice(k, k + 1), block, with_jacobian)
    return block


def evaluate_gyroscope(m: GyroscopeMeasurement, state: CalibrationState,
                       layout: ParameterLayout, with_jacobian: bool = True) -> ResidualBlock:
    time_ns = m.query_time_ns(state.time_offset_s)
    sample = state.trajectory.so3.evaluate(time_ns, jacobians=with_jacobian)
    block = ResidualBlock(m.weight * (sample.angular_velocity + state.gyro_bias - m.value))

    if with_jacobian:
        W = np.diag(m.weight)
        _add_so3_knots(block, layout, 0, sample.start_index, W, sample.d_angular_velocity)
        block.add(0, layout.block('time_offset'), (m.weight * sample.angular_acceleration)[:, None])
        block.add(0, layout.block('gyro_bias'), W)
    return block


def evaluate_accelerometer(m: AccelerometerMeasurement, state: CalibrationState,
                           layout: ParameterLayout, with_jacobian: bool = True) -> ResidualBlock:
    time_ns = m.query_time_ns(state.time_offset_s)
    trajectory = state.trajectory
    sample = trajectory.so3.evaluate(time_ns, jacobians=with_jacobian)
    r3_index, acc_weights = trajectory.r3.weights(time_ns, derivative=2)
    r3_knots = trajectory.r3.knots[r3_index:r3_index + trajectory.order]

    R = sample.rotation
    specific_force = R.T @ (acc_weights @ r3_knots + state.gravity)
    block = ResidualBlock(m.weight * (specific_force + state.accel_bias - m.value))

    if with_jacobian:
        W = np.diag(m.weight)
        _add_so3_knots(block, layout, 0, sample.start_index, W @ skew(specific_force),
                       sample.d_rotation)
        _add_r3_knots(block, layout, 0, r3_index, W @ R.T, acc_weights)

        _, jerk_weights = trajectory.r3.weights(time_ns, derivative=3)
        jerk = jerk_weights @ r3_knots
        d_time = skew(specific_force) @ sample.angular_velocity + R.T @ jerk
        block.add(0, layout.block('time_offset'), (m.weight * d_time)[:, None])
        block.add(0, layout.block('accel_bias'), W)
        block.add(0, layout.block('gravity'), W @ R.T)
    return block


_EVALUATORS: Dict[MeasurementKind, Callable[..., ResidualBlock]] = {
    MeasurementKind.REPROJECTION: evaluate_reprojection,
    MeasurementKind.GYROSCOPE: evaluate_gyroscope,
    MeasurementKind.ACCELEROMETER: evaluate_accelerometer,
}


def evaluate_measurement(measurement, state: CalibrationState, layout: ParameterLayout = None,
                         with_jacobian: bool = True) -> ResidualBlock:
    """
    Weighted residual of any measurement.

    Raises spline.OutOfDomainError when the measurement queries the
    trajectory outside its valid interval.
    """
    try:
        evaluator = _EVALUATORS[measurement.kind]
    except (AttributeError, KeyError):
        raise TypeError(f"Unsupported measurement type: {type(measurement).__name__}") from None
    return evaluator(measurement, state, layout or state.layout(), with_jacobian)
