"""
Joint estimator for the continuous-time IMU-camera calibration.

Levenberg-Marquardt on the sparse normal equations of all registered
measurements. The estimator owns exactly one CalibrationState; residual
evaluation only reads it and the accepted step is the single writer.
"""

import enum
import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np
import scipy.sparse
import scipy.sparse.linalg

from .camera import CalibrationTarget
from .diagnostics import (
    ReprojectionStatistics, reprojection_statistics, residual_statistics
)
from .measurements import evaluate_measurement
from .observations import CornerObservation
from .spline import OutOfDomainError
from .state import PARAMETER_BLOCKS, CalibrationState, ParameterLayout


logger = logging.getLogger(__name__)


class EstimatorStatus(enum.Enum):
    UNINITIALIZED = "uninitialized"
    SEEDED = "seeded"
    OPTIMIZING = "optimizing"
    CONVERGED = "converged"
    FAILED = "failed"


class TerminationReason(enum.Enum):
    CONVERGED = "converged"
    MAX_ITERATIONS = "max_iterations"
    NUMERICAL_FAILURE = "numerical_failure"


class EstimatorStateError(RuntimeError):
    """Raised when an operation is not allowed in the current estimator status."""


@dataclass
class OptimizerOptions:
    max_iterations: int = 100
    function_tolerance: float = 1e-10
    gradient_tolerance: float = 1e-10
    parameter_tolerance: float = 1e-10
    initial_damping: float = 1e-4
    min_damping: float = 1e-12
    max_damping: float = 1e16
    # Damping divisor applied after an accepted step
    damping_decrease: float = 10.0
    # Bounds on the Marquardt scaling diagonal
    min_diagonal: float = 1e-6
    max_diagonal: float = 1e32
    min_gain_ratio: float = 1e-3
    max_consecutive_invalid_steps: int = 5
    num_workers: int = 1
    chunk_size: int = 256
    fixed_blocks: Tuple[str, ...] = ()

    def __post_init__(self):
        self.fixed_blocks = tuple(self.fixed_blocks)
        unknown = [b for b in self.fixed_blocks if b not in PARAMETER_BLOCKS]
        if unknown:
            raise ValueError(f"Unknown parameter blocks: {', '.join(unknown)}")
        if self.max_iterations < 0:
            raise ValueError(f"max_iterations must be non-negative, got {self.max_iterations}")
        if self.num_workers < 1 or self.chunk_size < 1:
            raise ValueError("num_workers and chunk_size must be at least 1")
        if self.damping_decrease <= 1.0:
            raise ValueError(f"damping_decrease must exceed 1, got {self.damping_decrease}")
        if self.max_consecutive_invalid_steps < 1:
            raise ValueError("max_consecutive_invalid_steps must be at least 1")


@dataclass
class OptimizationSummary:
    iterations: int
    initial_cost: float
    final_cost: float
    termination: TerminationReason
    message: str = ""
    cost_history: List[float] = field(default_factory=list)
    num_residuals: int = 0
    num_parameters: int = 0

    @property
    def converged(self) -> bool:
        return self.termination is TerminationReason.CONVERGED


class JointEstimator:
    """
    Refines trajectory knots, extrinsic, time offset, biases and gravity.

    Status: UNINITIALIZED -> SEEDED (seed) -> OPTIMIZING (optimize)
    -> CONVERGED | FAILED.
    """

    def __init__(self, target: Optional[CalibrationTarget] = None,
                 options: Optional[OptimizerOptions] = None):
        self.target = target
        self.options = options or OptimizerOptions()
        self._state: Optional[CalibrationState] = None
        self._status = EstimatorStatus.UNINITIALIZED
        self._measurements = []
        self._summary: Optional[OptimizationSummary] = None

    @property
    def status(self) -> EstimatorStatus:
        return self._status

    @property
    def state(self) -> CalibrationState:
        """Copy of the owned calibration state."""
        if self._state is None:
            raise EstimatorStateError("Estimator has not been seeded")
        return self._state.copy()

    @property
    def measurements(self) -> Tuple:
        return tuple(self._measurements)

    @property
    def summary(self) -> Optional[OptimizationSummary]:
        return self._summary

    @property
    def T_i_c(self) -> np.ndarray:
        return self.state.T_i_c

    @property
    def time_offset_s(self) -> float:
        return self.state.time_offset_s

    @property
    def gravity(self) -> np.ndarray:
        return self.state.gravity

    @property
    def gyro_bias(self) -> np.ndarray:
        return self.state.gyro_bias

    @property
    def accel_bias(self) -> np.ndarray:
        return self.state.accel_bias

    def _require(self, *allowed: EstimatorStatus):
        if self._status not in allowed:
            names = ", ".join(s.name for s in allowed)
            raise EstimatorStateError(
                f"Operation requires status {names}, estimator is {self._status.name}")

    def seed(self, state: CalibrationState):
        """Take ownership of an initial state."""
        self._require(EstimatorStatus.UNINITIALIZED)
        self._state = state.copy()
        self._status = EstimatorStatus.SEEDED

    def add_measurement(self, measurement, extend: bool = False):
        """
        Register one measurement.

        Its evaluation times must lie inside the trajectory domain, otherwise
        OutOfDomainError is raised, unless extend is set, in which case the
        trajectory grows to cover them.
        """
        self._require(EstimatorStatus.SEEDED)
        trajectory = self._state.trajectory
        first, last = measurement.evaluation_times_ns(self._state.time_offset_s)
        if extend:
            if first < trajectory.min_time_ns:
                raise OutOfDomainError(
                    f"Measurement at {first} ns precedes trajectory start {trajectory.min_time_ns} ns")
            added = trajectory.extend_to(last)
            if added:
                logger.debug("Extended trajectory by %d knots to cover %d ns", added, last)
        else:
            trajectory.check_domain(first)
            trajectory.check_domain(last)
        self._measurements.append(measurement)

    def add_measurements(self, measurements: Sequence, extend: bool = False):
        for m in measurements:
            self.add_measurement(m, extend)

    def _row_offsets(self) -> np.ndarray:
        dims = [m.dimension for m in self._measurements]
        return np.concatenate([[0], np.cumsum(dims, dtype=np.int64)])

    @staticmethod
    def _evaluate_chunk(measurements, row_offsets, state, layout, with_jacobian):
        residuals = []
        rows, cols, vals = [], [], []
        for m, row0 in zip(measurements, row_offsets):
            block = evaluate_measurement(m, state, layout, with_jacobian)
            residuals.append(block.residual)
            for row_start, col_start, jac in block.jacobian:
                jac = np.asarray(jac, dtype=float)
                r_idx = row0 + row_start + np.arange(jac.shape[0])
                c_idx = col_start + np.arange(jac.shape[1])
                rows.append(np.repeat(r_idx, jac.shape[1]))
                cols.append(np.tile(c_idx, jac.shape[0]))
                vals.append(jac.ravel())
        return residuals, rows, cols, vals

    def _evaluate(self, state: CalibrationState, layout: ParameterLayout,
                  with_jacobian: bool = True, pool: Optional[ThreadPoolExecutor] = None):
        """
        Residual vector and sparse Jacobian of all measurements at state.

        Chunks of measurements are evaluated independently, on the worker
        pool when one is given, and concatenated afterwards.
        """
        offsets = self._row_offsets()
        size = self.options.chunk_size
        chunks = [(self._measurements[i:i + size], offsets[i:i + size])
                  for i in range(0, len(self._measurements), size)]

        if pool is not None and len(chunks) > 1:
            futures = [pool.submit(self._evaluate_chunk, ms, rs, state, layout, with_jacobian)
                       for ms, rs in chunks]
            results = [f.result() for f in futures]
        else:
            results = [self._evaluate_chunk(ms, rs, state, layout, with_jacobian)
                       for ms, rs in chunks]

        num_residuals = int(offsets[-1])
        residual = np.concatenate([r for res in results for r in res[0]]) if num_residuals else np.zeros(0)
        if not with_jacobian:
            return residual, None

        rows = [a for res in results for a in res[1]]
        cols = [a for res in results for a in res[2]]
        vals = [a for res in results for a in res[3]]
        if rows:
            rows, cols, vals = np.concatenate(rows), np.concatenate(cols), np.concatenate(vals)
        else:
            rows = cols = np.zeros(0, dtype=np.int64)
            vals = np.zeros(0)
        jacobian = scipy.sparse.coo_matrix(
            (vals, (rows, cols)), shape=(num_residuals, layout.size)).tocsr()
        return residual, jacobian

    def _free_columns(self, layout: ParameterLayout) -> np.ndarray:
        free = np.ones(layout.size, dtype=bool)
        for name in self.options.fixed_blocks:
            free[layout.block_slice(name)] = False
        return np.flatnonzero(free)

    def _fail(self, summary: OptimizationSummary) -> OptimizationSummary:
        logger.error("Optimization failed: %s", summary.message)
        self._status = EstimatorStatus.FAILED
        self._summary = summary
        return summary

    def optimize(self, max_iterations: Optional[int] = None) -> OptimizationSummary:
        """
        Minimize the sum of squared weighted residuals.

        Returns an OptimizationSummary. Numerical failure is reported through
        its termination reason and the FAILED status, never raised.
        """
        self._require(EstimatorStatus.SEEDED)
        self._status = EstimatorStatus.OPTIMIZING
        max_iterations = self.options.max_iterations if max_iterations is None else max_iterations

        if self.options.num_workers > 1:
            with ThreadPoolExecutor(max_workers=self.options.num_workers) as pool:
                return self._minimize(max_iterations, pool)
        return self._minimize(max_iterations)

    def _minimize(self, max_iterations: int,
                  pool: Optional[ThreadPoolExecutor] = None) -> OptimizationSummary:
        opts = self.options
        layout = self._state.layout()
        free = self._free_columns(layout)
        residual, jacobian = self._evaluate(self._state, layout, pool=pool)
        cost = 0.5 * float(residual @ residual)

        summary = OptimizationSummary(
            iterations=0, initial_cost=cost, final_cost=cost,
            termination=TerminationReason.MAX_ITERATIONS, cost_history=[cost],
            num_residuals=len(residual), num_parameters=len(free))

        if not np.isfinite(cost) or not np.all(np.isfinite(jacobian.data)):
            summary.termination = TerminationReason.NUMERICAL_FAILURE
            summary.message = "Non-finite residual or Jacobian at the initial state"
            return self._fail(summary)

        logger.info("Optimizing %d residuals over %d parameters, initial cost %.6e",
                    summary.num_residuals, summary.num_parameters, cost)

        damping = opts.initial_damping
        nu = 2.0
        J = jacobian[:, free]
        iteration = 0
        invalid_steps = 0

        while True:
            if cost == 0.0:
                summary.termination = TerminationReason.CONVERGED
                summary.message = "Zero cost"
                break

            gradient = J.T @ residual
            if np.max(np.abs(gradient), initial=0.0) <= opts.gradient_tolerance:
                summary.termination = TerminationReason.CONVERGED
                summary.message = "Gradient tolerance reached"
                break

            if iteration >= max_iterations:
                summary.termination = TerminationReason.MAX_ITERATIONS
                summary.message = f"Reached {max_iterations} iterations"
                break
            iteration += 1

            H = (J.T @ J).tocsc()
            diagonal = np.clip(H.diagonal(), opts.min_diagonal, opts.max_diagonal)
            A = (H + scipy.sparse.diags(damping * diagonal)).tocsc()
            try:
                step = -scipy.sparse.linalg.splu(A).solve(gradient)
            except RuntimeError as e:
                logger.debug("Iteration %d: linear solve failed (%s)", iteration, e)
                step = None

            new_cost = math.nan
            if step is not None and np.all(np.isfinite(step)):
                step_norm = float(np.linalg.norm(step))
                x_norm = self._state.norm()
                if step_norm <= opts.parameter_tolerance * (x_norm + opts.parameter_tolerance):
                    summary.termination = TerminationReason.CONVERGED
                    summary.message = "Parameter tolerance reached"
                    summary.cost_history.append(cost)
                    break

                delta = np.zeros(layout.size)
                delta[free] = step
                candidate = self._state.retract(delta, layout)
                try:
                    new_residual, _ = self._evaluate(candidate, layout, with_jacobian=False, pool=pool)
                    new_cost = 0.5 * float(new_residual @ new_residual)
                except OutOfDomainError as e:
                    logger.debug("Iteration %d: step left the trajectory domain (%s)", iteration, e)

            if not np.isfinite(new_cost):
                # No usable step: solver failure, non-finite step or trial residual, or out of domain
                invalid_steps += 1
                summary.cost_history.append(cost)
                if invalid_steps >= opts.max_consecutive_invalid_steps:
                    summary.termination = TerminationReason.NUMERICAL_FAILURE
                    summary.message = f"{invalid_steps} consecutive invalid steps at iteration {iteration}"
                    summary.iterations = iteration
                    summary.final_cost = cost
                    return self._fail(summary)
                damping *= nu
                nu *= 2.0
                logger.debug("Iteration %d: invalid step, damping %.3e", iteration, damping)
                continue
            invalid_steps = 0

            predicted = -float(gradient @ step) - 0.5 * float(step @ (H @ step))
            rho = (cost - new_cost) / predicted if predicted > 0.0 else -1.0

            if rho > opts.min_gain_ratio:
                new_residual, new_jacobian = self._evaluate(candidate, layout, pool=pool)
                if not np.all(np.isfinite(new_jacobian.data)):
                    summary.termination = TerminationReason.NUMERICAL_FAILURE
                    summary.message = f"Non-finite Jacobian at iteration {iteration}"
                    summary.iterations = iteration
                    summary.final_cost = cost
                    summary.cost_history.append(cost)
                    return self._fail(summary)

                relative_decrease = (cost - new_cost) / cost
                self._state = candidate
                residual, J = new_residual, new_jacobian[:, free]
                cost = new_cost
                summary.cost_history.append(cost)
                damping = max(damping / opts.damping_decrease, opts.min_damping)
                nu = 2.0
                logger.debug("Iteration %d: accepted, cost %.6e, rho %.3f, damping %.3e",
                             iteration, cost, rho, damping)

                if relative_decrease <= opts.function_tolerance:
                    summary.termination = TerminationReason.CONVERGED
                    summary.message = "Function tolerance reached"
                    break
            else:
                summary.cost_history.append(cost)
                damping *= nu
                nu *= 2.0
                logger.debug("Iteration %d: rejected, rho %.3f, damping %.3e", iteration, rho, damping)
                if damping > opts.max_damping:
                    summary.termination = TerminationReason.CONVERGED
                    summary.message = "No further decrease possible"
                    break

        summary.iterations = iteration
        summary.final_cost = cost
        self._summary = summary
        self._status = EstimatorStatus.CONVERGED
        logger.info("Optimization finished after %d iterations (%s): cost %.6e -> %.6e",
                    iteration, summary.termination.value, summary.initial_cost, cost)
        return summary

    def _reprojection_statistics(self, corners: Sequence[CornerObservation]) -> ReprojectionStatistics:
        self._require(EstimatorStatus.CONVERGED, EstimatorStatus.FAILED)
        if self.target is None:
            raise EstimatorStateError("Estimator has no calibration target for reprojection")
        return reprojection_statistics(self._state, corners, self.target)

    def mean_reprojection(self, corners: Sequence[CornerObservation]) -> float:
        """Mean pixel distance between observed and reprojected corners."""
        return self._reprojection_statistics(corners).mean

    def reprojection_statistics(self, corners: Sequence[CornerObservation]) -> ReprojectionStatistics:
        return self._reprojection_statistics(corners)

    def residual_statistics(self):
        """Cost contributed by each measurement kind at the current state."""
        self._require(EstimatorStatus.SEEDED, EstimatorStatus.CONVERGED, EstimatorStatus.FAILED)
        return residual_statistics(self._measurements, self._state)
