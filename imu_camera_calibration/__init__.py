# imu_camera_calibration package
"""
Continuous-time IMU-to-camera calibration.

This package fits a spline trajectory to camera poses and IMU samples and
jointly estimates the IMU-camera transform, time offset, IMU biases and
gravity.
"""

from .calibration_solver import CalibrationResult, ImuCameraCalibrationSolver
from .camera import CalibrationTarget, CameraIntrinsics
from .estimator import (
    EstimatorStateError, EstimatorStatus, JointEstimator, OptimizationSummary,
    OptimizerOptions, TerminationReason
)
from .initializer import CalibrationInitializer, InitializationError
from .spline import OutOfDomainError
from .trajectory import Trajectory

__all__ = [
    'CalibrationInitializer',
    'CalibrationResult',
    'CalibrationTarget',
    'CameraIntrinsics',
    'EstimatorStateError',
    'EstimatorStatus',
    'ImuCameraCalibrationSolver',
    'InitializationError',
    'JointEstimator',
    'OptimizationSummary',
    'OptimizerOptions',
    'OutOfDomainError',
    'TerminationReason',
    'Trajectory',
]
