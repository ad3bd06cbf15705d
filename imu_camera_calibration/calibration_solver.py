"""
End-to-end IMU-camera calibration.

Combines the intrinsic calibration output (camera poses and corner
observations) with the IMU telemetry and runs initialization, joint
optimization and diagnostics.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import numpy as np

from .camera import CalibrationTarget
from .config import (
    CalibrationOptions, ImuBias, Reconstruction, RoughAlignment, SplineWeighting, Telemetry
)
from .diagnostics import check_gravity
from .estimator import (
    EstimatorStatus, JointEstimator, OptimizationSummary, TerminationReason
)
from .initializer import CalibrationInitializer
from .measurements import MeasurementKind
from .observations import CornerObservation, IMUSample, TimestampedPose
from .spline import NS_PER_SECOND


logger = logging.getLogger(__name__)


@dataclass
class CalibrationResult:
    """Result of an IMU-camera calibration run."""
    success: bool
    T_i_c: Optional[np.ndarray] = None            # 4x4 camera pose in the IMU frame
    time_offset_s: float = 0.0                    # camera time = IMU time + offset
    gyro_bias: Optional[np.ndarray] = None
    accel_bias: Optional[np.ndarray] = None
    gravity: Optional[np.ndarray] = None          # world (board) frame
    gravity_magnitude: float = float('nan')
    mean_reprojection_error: float = float('inf')
    summary: Optional[OptimizationSummary] = None
    num_frames: int = 0
    num_corners: int = 0
    num_gyro: int = 0
    num_accel: int = 0
    duration_s: float = 0.0


class ImuCameraCalibrationSolver:
    """
    Solver for continuous-time IMU-camera calibration.

    Poses, corners and IMU samples are collected first, then calibrate()
    runs the whole pipeline once.
    """

    def __init__(self, target: CalibrationTarget,
                 weighting: SplineWeighting,
                 alignment: RoughAlignment,
                 bias: Optional[ImuBias] = None,
                 options: Optional[CalibrationOptions] = None):
        """
        Initialize the calibration solver.

        Args:
            target: Locked landmarks and camera intrinsics
            weighting: Knot spacings and IMU noise variances
            alignment: Rough IMU-camera rotation, position and time offset
            bias: Initial IMU biases (zero when omitted)
            options: Calibration options
        """
        self.options = options or CalibrationOptions()
        if not self.options.rolling_shutter and target.line_delay_s > 0.0:
            target = CalibrationTarget(target.landmarks, target.intrinsics, 0.0)
        self.target = target
        self.initializer = CalibrationInitializer(weighting, alignment, bias, self.options)

        self.poses: List[TimestampedPose] = []
        self.corners: List[CornerObservation] = []
        self.gyroscope: List[IMUSample] = []
        self.accelerometer: List[IMUSample] = []
        self.estimator: Optional[JointEstimator] = None

    @classmethod
    def from_artifacts(cls, reconstruction: Reconstruction, telemetry: Telemetry,
                       weighting: SplineWeighting, alignment: RoughAlignment,
                       bias: Optional[ImuBias] = None,
                       options: Optional[CalibrationOptions] = None) -> 'ImuCameraCalibrationSolver':
        solver = cls(reconstruction.target, weighting, alignment, bias, options)
        solver.add_camera_data(reconstruction.poses, reconstruction.corners)
        solver.add_imu_data(telemetry.gyroscope, telemetry.accelerometer)
        return solver

    def add_camera_data(self, poses: List[TimestampedPose], corners: List[CornerObservation]):
        self.poses.extend(poses)
        self.corners.extend(corners)

    def add_imu_data(self, gyroscope: List[IMUSample], accelerometer: List[IMUSample]):
        self.gyroscope.extend(gyroscope)
        self.accelerometer.extend(accelerometer)

    def calibrate(self) -> CalibrationResult:
        """
        Run initialization, optimization and diagnostics.

        Initialization errors propagate; a numerical failure of the optimizer
        or an iteration budget exhausted before convergence yields an
        unsuccessful result with the state reached so far.
        """
        self.estimator = self.initializer.create_estimator(
            self.target, self.poses, self.corners, self.gyroscope, self.accelerometer)
        estimator = self.estimator

        summary = estimator.optimize()
        if summary.termination is TerminationReason.NUMERICAL_FAILURE:
            logger.error("Calibration failed: %s", summary.message)
        elif summary.termination is not TerminationReason.CONVERGED:
            logger.warning("Optimizer stopped before converging: %s", summary.message)

        t0, tend = self.initializer.window
        corners = [c for c in self.corners if t0 <= c.timestamp_ns <= tend]
        mean_error = estimator.mean_reprojection(corners)
        state = estimator.state
        check_gravity(state.gravity)

        counts = {kind: 0 for kind in MeasurementKind}
        num_corners = 0
        for m in estimator.measurements:
            counts[m.kind] += 1
            if m.kind is MeasurementKind.REPROJECTION:
                num_corners += m.num_corners

        result = CalibrationResult(
            success=summary.termination is TerminationReason.CONVERGED,
            T_i_c=state.T_i_c,
            time_offset_s=state.time_offset_s,
            gyro_bias=state.gyro_bias,
            accel_bias=state.accel_bias,
            gravity=state.gravity,
            gravity_magnitude=float(np.linalg.norm(state.gravity)),
            mean_reprojection_error=mean_error,
            summary=summary,
            num_frames=counts[MeasurementKind.REPROJECTION],
            num_corners=num_corners,
            num_gyro=counts[MeasurementKind.GYROSCOPE],
            num_accel=counts[MeasurementKind.ACCELEROMETER],
            duration_s=(tend - t0) / NS_PER_SECOND,
        )

        logger.info("Mean reprojection error %.4f px over %d corners", mean_error, num_corners)
        return result

    def get_statistics(self) -> Dict[str, Any]:
        """Get statistics about collected calibration data."""
        stats = {
            'num_poses': len(self.poses),
            'num_corner_frames': len(self.corners),
            'avg_corners_per_frame': (np.mean([c.num_corners for c in self.corners])
                                      if self.corners else 0),
            'num_gyro': len(self.gyroscope),
            'num_accel': len(self.accelerometer),
        }
        if self.estimator is not None and self.estimator.status is not EstimatorStatus.UNINITIALIZED:
            residuals = self.estimator.residual_statistics()
            stats['residuals'] = {
                kind.value: {'count': s.count, 'cost': s.cost, 'rms': s.rms}
                for kind, s in residuals.kinds.items()
            }
        return stats

    def clear_data(self):
        """Clear all collected calibration data."""
        self.poses.clear()
        self.corners.clear()
        self.gyroscope.clear()
        self.accelerometer.clear()
        self.estimator = None
