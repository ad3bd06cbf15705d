"""
Fit-quality diagnostics of a calibration state.

All functions are read-only with respect to the state they inspect.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Sequence

import numpy as np

from .camera import CalibrationTarget
from .measurements import MeasurementKind, ReprojectionMeasurement, evaluate_measurement
from .observations import CornerObservation
from .spline import OutOfDomainError
from .state import CalibrationState


logger = logging.getLogger(__name__)

STANDARD_GRAVITY = 9.80665


@dataclass
class ReprojectionStatistics:
    """Pixel distances between observed and reprojected corners."""
    mean: float
    median: float
    rms: float
    max: float
    num_corners: int
    num_frames: int
    skipped_frames: int = 0
    invalid_corners: int = 0


@dataclass
class KindStatistics:
    count: int = 0
    cost: float = 0.0
    skipped: int = 0
    squared_sum: float = 0.0
    dimension: int = 0

    @property
    def rms(self) -> float:
        return float(np.sqrt(self.squared_sum / self.dimension)) if self.dimension else float('nan')


@dataclass
class ResidualStatistics:
    kinds: Dict[MeasurementKind, KindStatistics] = field(default_factory=dict)

    @property
    def total_cost(self) -> float:
        return sum(s.cost for s in self.kinds.values())


def reprojection_errors(state: CalibrationState, observation: CornerObservation,
                        target: CalibrationTarget) -> np.ndarray:
    """Per-corner pixel error of one frame; NaN for corners behind the camera."""
    measurement = ReprojectionMeasurement.from_observation(observation, target, pixel_noise=1.0)
    block = evaluate_measurement(measurement, state, with_jacobian=False)
    return np.linalg.norm(block.residual.reshape(-1, 2), axis=1)


def reprojection_statistics(state: CalibrationState, corners: Sequence[CornerObservation],
                            target: CalibrationTarget) -> ReprojectionStatistics:
    """
    Reprojection error statistics over a set of corner observations.

    Frames outside the trajectory domain and corners that do not project
    are excluded and counted. With no valid corner all values are NaN.
    """
    errors = []
    skipped = 0
    invalid = 0
    frames = 0
    for observation in corners:
        try:
            frame_errors = reprojection_errors(state, observation, target)
        except OutOfDomainError:
            skipped += 1
            continue
        valid = np.isfinite(frame_errors)
        invalid += int(np.count_nonzero(~valid))
        if np.any(valid):
            frames += 1
            errors.append(frame_errors[valid])

    if skipped or invalid:
        logger.warning("Reprojection: skipped %d frames outside the trajectory and %d corners "
                       "that do not project", skipped, invalid)

    if not errors:
        nan = float('nan')
        return ReprojectionStatistics(nan, nan, nan, nan, 0, 0, skipped, invalid)

    errors = np.concatenate(errors)
    return ReprojectionStatistics(
        mean=float(np.mean(errors)),
        median=float(np.median(errors)),
        rms=float(np.sqrt(np.mean(errors ** 2))),
        max=float(np.max(errors)),
        num_corners=len(errors),
        num_frames=frames,
        skipped_frames=skipped,
        invalid_corners=invalid,
    )


def mean_reprojection_error(state: CalibrationState, corners: Sequence[CornerObservation],
                            target: CalibrationTarget) -> float:
    return reprojection_statistics(state, corners, target).mean


def residual_statistics(measurements: Sequence, state: CalibrationState) -> ResidualStatistics:
    """Weighted cost and RMS residual per measurement kind."""
    stats = ResidualStatistics({kind: KindStatistics() for kind in MeasurementKind})
    layout = state.layout()
    for m in measurements:
        entry = stats.kinds[m.kind]
        try:
            residual = evaluate_measurement(m, state, layout, with_jacobian=False).residual
        except OutOfDomainError:
            entry.skipped += 1
            continue
        squared = float(residual @ residual)
        entry.count += 1
        entry.cost += 0.5 * squared
        entry.squared_sum += squared
        entry.dimension += len(residual)
    return stats


def check_gravity(gravity: np.ndarray, tolerance: float = 0.5) -> float:
    """
    Deviation of the gravity magnitude from standard gravity.

    Logs a warning when it exceeds tolerance (m/s^2).
    """
    deviation = float(np.linalg.norm(gravity)) - STANDARD_GRAVITY
    if abs(deviation) > tolerance:
        logger.warning("Gravity magnitude %.4f m/s^2 deviates %.4f from %.5f",
                       np.linalg.norm(gravity), deviation, STANDARD_GRAVITY)
    return deviation
