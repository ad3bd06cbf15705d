"""
Initial state and measurement set of the joint estimator.

Builds the knot sequences from the camera poses and the rough IMU-camera
alignment, seeds gravity from the accelerometer and turns the raw inputs
into measurements.
"""

import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np
from scipy.spatial.transform import Rotation, Slerp

from .camera import CalibrationTarget
from .config import CalibrationOptions, ImuBias, RoughAlignment, SplineWeighting
from .estimator import JointEstimator, OptimizerOptions
from .measurements import (
    AccelerometerMeasurement, GyroscopeMeasurement, ReprojectionMeasurement
)
from .observations import CornerObservation, IMUSample, SensorKind, TimestampedPose
from .spline import NS_PER_SECOND
from .state import CalibrationState
from .trajectory import Trajectory


logger = logging.getLogger(__name__)

GRAVITY_SEED_TOLERANCE_NS = 3_000_000


class InitializationError(ValueError):
    """Raised when the inputs cannot produce an initial calibration state."""


def select_time_window(poses: Sequence[TimestampedPose],
                       max_duration_s: Optional[float] = None) -> Tuple[int, int]:
    """
    Calibration window [t0, tend] in ns.

    t0 is the first pose time, tend the last one, capped at t0 + max_duration_s.
    """
    if len(poses) == 0:
        raise InitializationError("No camera poses to calibrate against")
    times = [p.timestamp_ns for p in poses]
    t0, tend = min(times), max(times)
    if max_duration_s is not None:
        tend = min(tend, t0 + int(round(max_duration_s * NS_PER_SECOND)))
    return t0, tend


def imu_poses(poses: Sequence[TimestampedPose], R_i_c: np.ndarray,
              p_i_c: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Time-sorted IMU poses T_w_i = T_w_c * T_i_c^-1.

    Returns (timestamps_ns, rotations (n, 3, 3), positions (n, 3)). Only the
    first pose of a repeated timestamp is kept.
    """
    ordered = sorted(poses, key=lambda p: p.timestamp_ns)
    times, rotations, positions = [], [], []
    for pose in ordered:
        if times and pose.timestamp_ns == times[-1]:
            continue
        R_w_i = pose.rotation @ R_i_c.T
        times.append(pose.timestamp_ns)
        rotations.append(R_w_i)
        positions.append(pose.position - R_w_i @ p_i_c)
    return np.array(times, dtype=np.int64), np.array(rotations), np.array(positions)


def seed_trajectory(poses: Sequence[TimestampedPose], start_ns: int, end_ns: int,
                    weighting: SplineWeighting, R_i_c: np.ndarray, p_i_c: np.ndarray,
                    order: int = 5) -> Trajectory:
    """
    Knots covering [start_ns, end_ns] seeded from the camera poses.

    Knots start at identity / zero and are then overwritten with the IMU pose
    interpolated at the time each knot has the most influence, clamped to the
    span of the poses.
    """
    trajectory = Trajectory.initialize(start_ns, end_ns, weighting.dt_so3_ns,
                                       weighting.dt_r3_ns, order)
    times, rotations, positions = imu_poses(poses, R_i_c, p_i_c)
    if len(times) == 0:
        raise InitializationError("No camera poses inside the calibration window")

    def clamp(t):
        return np.clip(t, times[0], times[-1])

    so3 = trajectory.so3
    knot_times = clamp([so3.knot_time_ns(k) for k in range(so3.num_knots)])
    if len(times) == 1:
        knot_rotations = np.repeat(rotations[:1], len(knot_times), axis=0)
    else:
        slerp = Slerp(times.astype(float), Rotation.from_matrix(rotations))
        knot_rotations = slerp(knot_times).as_matrix()
    for k, R in enumerate(knot_rotations):
        so3.set_knot(k, R)

    r3 = trajectory.r3
    knot_times = clamp([r3.knot_time_ns(k) for k in range(r3.num_knots)])
    for k, t in enumerate(knot_times):
        r3.set_knot(k, [np.interp(t, times, positions[:, axis]) for axis in range(3)])

    logger.info("Seeded %d rotation and %d translation knots from %d poses",
                trajectory.num_knots_so3, trajectory.num_knots_r3, len(times))
    return trajectory


def seed_gravity(poses: Sequence[TimestampedPose], accelerometer: Sequence[IMUSample],
                 R_i_c: np.ndarray, accel_bias: Optional[np.ndarray] = None,
                 time_offset_s: float = 0.0,
                 tolerance_ns: int = GRAVITY_SEED_TOLERANCE_NS) -> np.ndarray:
    """
    Gravity in the world frame from the first pose with a nearby accelerometer sample.

    The accelerometer sample closest to the pose (strictly within tolerance_ns,
    after applying the time offset) is bias-corrected and rotated into the
    world frame with the IMU orientation of that pose.
    """
    if len(accelerometer) == 0:
        raise InitializationError("No accelerometer samples to seed gravity from")
    accel_bias = np.zeros(3) if accel_bias is None else np.asarray(accel_bias, dtype=float)

    samples = sorted(accelerometer, key=lambda s: s.timestamp_ns)
    times = np.array([s.timestamp_ns for s in samples], dtype=float) + time_offset_s * NS_PER_SECOND

    for pose in sorted(poses, key=lambda p: p.timestamp_ns):
        index = int(np.searchsorted(times, pose.timestamp_ns))
        candidates = [i for i in (index - 1, index) if 0 <= i < len(times)]
        nearest = min(candidates, key=lambda i: abs(times[i] - pose.timestamp_ns))
        if abs(times[nearest] - pose.timestamp_ns) < tolerance_ns:
            R_w_i = pose.rotation @ R_i_c.T
            gravity = R_w_i @ (samples[nearest].value - accel_bias)
            logger.info("Seeded gravity %s (|g| = %.4f) from pose at %d ns",
                        np.array2string(gravity, precision=4), np.linalg.norm(gravity),
                        pose.timestamp_ns)
            return gravity

    raise InitializationError(
        f"No accelerometer sample within {tolerance_ns / 1e6:.1f} ms of any camera pose")


def _in_window(samples: Sequence[IMUSample], start_ns: float, end_ns: float,
               offset_ns: float, subsample: int) -> List[IMUSample]:
    return [s for i, s in enumerate(samples)
            if i % subsample == 0 and start_ns <= s.timestamp_ns + offset_ns < end_ns]


class CalibrationInitializer:
    """
    Produces the seeded JointEstimator from the external inputs.

    Extrinsic rotation, camera position and time offset come from the rough
    alignment as given; biases from the IMU bias artifact.
    """

    def __init__(self, weighting: SplineWeighting, alignment: RoughAlignment,
                 bias: Optional[ImuBias] = None, options: Optional[CalibrationOptions] = None):
        self.weighting = weighting
        self.alignment = alignment
        self.bias = bias or ImuBias()
        self.options = options or CalibrationOptions()
        self.window: Optional[Tuple[int, int]] = None

    def initialize(self, poses: Sequence[TimestampedPose],
                   accelerometer: Sequence[IMUSample]) -> CalibrationState:
        """Seed trajectory, extrinsic, time offset, biases and gravity."""
        t0, tend = select_time_window(poses, self.options.max_duration_s)
        self.window = (t0, tend)
        poses = [p for p in poses if t0 <= p.timestamp_ns <= tend]
        logger.info("Calibration window %.3f s (%d poses)", (tend - t0) / NS_PER_SECOND, len(poses))

        R_i_c = self.alignment.R_i_c
        p_i_c = self.alignment.camera_position
        trajectory = seed_trajectory(poses, t0, tend, self.weighting, R_i_c, p_i_c,
                                     self.options.spline_order)
        gravity = seed_gravity(poses, accelerometer, R_i_c, self.bias.accel,
                               self.alignment.time_offset_s, self.options.gravity_tolerance_ns)

        return CalibrationState(
            trajectory=trajectory,
            R_i_c=R_i_c,
            p_i_c=p_i_c,
            time_offset_s=self.alignment.time_offset_s,
            gyro_bias=self.bias.gyro,
            accel_bias=self.bias.accel,
            gravity=gravity,
        )

    def build_measurements(self, target: CalibrationTarget,
                           corners: Sequence[CornerObservation],
                           gyroscope: Sequence[IMUSample],
                           accelerometer: Sequence[IMUSample]) -> List:
        """Measurements for the inputs inside the calibration window."""
        if self.window is None:
            raise InitializationError("initialize() must run before build_measurements()")
        t0, tend = self.window
        offset_ns = self.alignment.time_offset_s * NS_PER_SECOND
        margin_ns = self.options.imu_time_margin_s * NS_PER_SECOND
        subsample = self.options.imu_subsample

        reprojection = [ReprojectionMeasurement.from_observation(c, target, self.options.pixel_noise)
                        for c in corners if t0 <= c.timestamp_ns <= tend and c.num_corners > 0]
        gyro = [GyroscopeMeasurement.from_sample(s, self.weighting.var_so3)
                for s in _in_window(gyroscope, t0 + margin_ns, tend - margin_ns, offset_ns, subsample)
                if s.kind is SensorKind.GYROSCOPE]
        accel = [AccelerometerMeasurement.from_sample(s, self.weighting.var_r3)
                 for s in _in_window(accelerometer, t0 + margin_ns, tend - margin_ns, offset_ns, subsample)
                 if s.kind is SensorKind.ACCELEROMETER]

        if not gyro and not accel:
            raise InitializationError("No IMU samples inside the calibration window")

        logger.info("Built %d reprojection (%d corners), %d gyroscope and %d accelerometer measurements",
                    len(reprojection), sum(m.num_corners for m in reprojection), len(gyro), len(accel))
        return reprojection + gyro + accel

    def create_estimator(self, target: CalibrationTarget,
                         poses: Sequence[TimestampedPose],
                         corners: Sequence[CornerObservation],
                         gyroscope: Sequence[IMUSample],
                         accelerometer: Sequence[IMUSample],
                         optimizer_options: Optional[OptimizerOptions] = None) -> JointEstimator:
        """Seeded estimator with every measurement registered."""
        state = self.initialize(poses, accelerometer)
        measurements = self.build_measurements(target, corners, gyroscope, accelerometer)

        if optimizer_options is None:
            optimizer_options = OptimizerOptions(
                max_iterations=self.options.max_iterations,
                num_workers=self.options.num_workers,
                fixed_blocks=self.options.fixed_blocks,
            )
        estimator = JointEstimator(target, optimizer_options)
        estimator.seed(state)
        estimator.add_measurements(measurements, extend=True)
        return estimator
