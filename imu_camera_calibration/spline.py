"""
Uniform cumulative B-splines on SO(3) and R^3.

A spline of order N with start time t_s and knot spacing dt blends knots
i .. i+N-1 on the segment [t_s + i*dt, t_s + (i+1)*dt). With n knots the
valid evaluation interval is therefore [t_s, t_s + (n - N + 1) * dt].

Knots are stored as contiguous numpy arrays that only ever grow at the end,
so a segment lookup is a slice.
"""

import math
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from .lie import skew, so3_exp, so3_log, right_jacobian, right_jacobian_inv


NS_PER_SECOND = 1e9


class OutOfDomainError(ValueError):
    """Raised when a spline is queried outside its valid time interval."""


def blending_matrix(order: int, cumulative: bool = False) -> np.ndarray:
    """
    Blending matrix M of a uniform B-spline.

    Row j holds the polynomial coefficients (in powers of u) of the weight of
    the j-th knot of a segment, so the weights are M @ [1, u, u^2, ...].
    The cumulative variant sums rows j..N-1 into row j.
    """
    m = np.zeros((order, order))
    for i in range(order):
        for j in range(order):
            total = 0.0
            for s in range(j, order):
                total += ((-1.0) ** (s - j) * math.comb(order, s - j)
                          * (order - s - 1.0) ** (order - 1 - i))
            m[j, i] = math.comb(order - 1, order - 1 - i) * total

    if cumulative:
        m = np.cumsum(m[::-1], axis=0)[::-1]

    return m / math.factorial(order - 1)


def basis_vector(u: float, order: int, derivative: int = 0) -> np.ndarray:
    """Derivative of the monomial vector [1, u, ..., u^(N-1)] with respect to u."""
    p = np.zeros(order)
    for i in range(derivative, order):
        p[i] = math.factorial(i) / math.factorial(i - derivative) * u ** (i - derivative)
    return p


class _UniformSpline:
    """Shared knot storage and time bookkeeping."""

    _knot_shape: Tuple[int, ...] = ()

    def __init__(self, knots: np.ndarray, start_time_ns: int, dt_ns: int, order: int):
        if order < 2:
            raise ValueError(f"Spline order must be at least 2, got {order}")
        if dt_ns <= 0:
            raise ValueError(f"Knot spacing must be positive, got {dt_ns} ns")

        knots = np.array(knots, dtype=float)
        if knots.shape[1:] != self._knot_shape:
            raise ValueError(f"Expected knots of shape (n, {self._knot_shape}), got {knots.shape}")
        if len(knots) < order:
            raise ValueError(f"Order {order} spline needs at least {order} knots, got {len(knots)}")

        self.start_time_ns = int(start_time_ns)
        self.dt_ns = int(dt_ns)
        self.order = order
        self._knots = knots

    @property
    def dt_s(self) -> float:
        return self.dt_ns / NS_PER_SECOND

    @property
    def num_knots(self) -> int:
        return len(self._knots)

    @property
    def knots(self) -> np.ndarray:
        """Read-only view of the knot array."""
        view = self._knots.view()
        view.setflags(write=False)
        return view

    @property
    def min_time_ns(self) -> int:
        return self.start_time_ns

    @property
    def max_time_ns(self) -> int:
        return self.start_time_ns + (self.num_knots - self.order + 1) * self.dt_ns

    def contains(self, time_ns: float) -> bool:
        return self.min_time_ns <= time_ns <= self.max_time_ns

    def knot_time_ns(self, index: int) -> float:
        """Time at which the basis function of a knot peaks."""
        return self.start_time_ns + (index - (self.order - 2) / 2.0) * self.dt_ns

    def set_knot(self, index: int, value: np.ndarray):
        self._knots[index] = value

    def extend_to(self, time_ns: float, default: Optional[np.ndarray] = None) -> int:
        """
        Append knots until the valid interval covers time_ns.

        New knots take the given default value, or repeat the last knot.
        Existing knots are never modified. Returns the number of knots added.
        """
        if time_ns < self.start_time_ns:
            raise OutOfDomainError(
                f"Cannot extend backwards to {time_ns} ns, spline starts at {self.start_time_ns} ns")
        if time_ns <= self.max_time_ns:
            return 0

        needed = math.ceil((time_ns - self.start_time_ns) / self.dt_ns) + self.order - 1
        count = needed - self.num_knots
        value = self._knots[-1] if default is None else np.asarray(default, dtype=float)
        self._knots = np.concatenate([self._knots, np.repeat(value[None], count, axis=0)])
        return count

    def _locate(self, time_ns: float) -> Tuple[int, float]:
        if not self.contains(time_ns):
            raise OutOfDomainError(
                f"Time {time_ns} ns outside spline domain "
                f"[{self.min_time_ns}, {self.max_time_ns}] ns")

        s = (time_ns - self.start_time_ns) / self.dt_ns
        index = int(math.floor(s))
        u = s - index
        last = self.num_knots - self.order
        if index > last:
            index, u = last, 1.0
        return index, u

    def _with_knots(self, knots: np.ndarray):
        return type(self)(knots, self.start_time_ns, self.dt_ns, self.order)

    def copy(self):
        return self._with_knots(self._knots.copy())


@dataclass
class SO3SplineSample:
    """
    Rotation spline evaluated at one time.

    Jacobians are 3x3 blocks per segment knot, mapping a right perturbation
    of knot start_index + j to a right (body-frame) perturbation of the
    rotation, or to a change of the body angular velocity.
    """
    start_index: int
    rotation: np.ndarray
    angular_velocity: np.ndarray
    angular_acceleration: np.ndarray
    d_rotation: Optional[np.ndarray] = None
    d_angular_velocity: Optional[np.ndarray] = None


class UniformSO3Spline(_UniformSpline):
    """Cumulative B-spline of rotation matrices, blended in the Lie algebra."""

    _knot_shape = (3, 3)

    def __init__(self, knots: np.ndarray, start_time_ns: int, dt_ns: int, order: int = 5):
        super().__init__(knots, start_time_ns, dt_ns, order)
        self._blending = blending_matrix(order, cumulative=True)

    @classmethod
    def identity(cls, num_knots: int, start_time_ns: int, dt_ns: int, order: int = 5):
        return cls(np.tile(np.eye(3), (num_knots, 1, 1)), start_time_ns, dt_ns, order)

    def retract(self, delta: np.ndarray) -> 'UniformSO3Spline':
        """New spline with every knot right-multiplied by exp(delta_k)."""
        delta = np.asarray(delta, dtype=float).reshape(self.num_knots, 3)
        return self._with_knots(self._knots @ so3_exp(delta))

    def evaluate(self, time_ns: float, jacobians: bool = False) -> SO3SplineSample:
        index, u = self._locate(time_ns)
        N = self.order
        dt = self.dt_s

        lam = self._blending @ basis_vector(u, N, 0)
        dlam = self._blending @ basis_vector(u, N, 1) / dt
        ddlam = self._blending @ basis_vector(u, N, 2) / (dt * dt)

        knots = self._knots[index:index + N]
        rotation = knots[0].copy()
        omega = np.zeros(3)
        alpha = np.zeros(3)

        if jacobians:
            # Sensitivities to the right perturbation of knot 0 (slot 0) and to
            # the increments d_j = log(R_{j-1}^T R_j) (slots 1..N-1).
            rot_d = np.zeros((N, 3, 3))
            rot_d[0] = np.eye(3)
            vel_d = np.zeros((N, 3, 3))
            inc_inv = np.zeros((N, 3, 3))
            inc_rel = np.zeros((N, 3, 3))

        for j in range(1, N):
            rel = knots[j - 1].T @ knots[j]
            d = so3_log(rel)
            A = so3_exp(lam[j] * d)
            At = A.T
            rate = dlam[j] * d

            omega_prev = At @ omega
            omega = omega_prev + rate
            alpha = At @ alpha - skew(rate) @ omega_prev + ddlam[j] * d
            rotation = rotation @ A

            if jacobians:
                J_inc = lam[j] * right_jacobian(lam[j] * d)
                rot_d[:j] = At @ rot_d[:j]
                rot_d[j] = J_inc
                vel_d[:j] = At @ vel_d[:j]
                vel_d[j] = skew(omega_prev) @ J_inc + dlam[j] * np.eye(3)
                inc_inv[j] = right_jacobian_inv(d)
                inc_rel[j] = rel

        sample = SO3SplineSample(index, rotation, omega, alpha)
        if not jacobians:
            return sample

        # d_j depends on knots j-1 and j:
        #   delta d_j = Jr^-1(d_j) (eps_j - rel_j^T eps_{j-1})
        d_rotation = np.zeros((N, 3, 3))
        d_velocity = np.zeros((N, 3, 3))
        d_rotation[0] = rot_d[0]
        for j in range(1, N):
            to_next = inc_inv[j]
            to_prev = -inc_inv[j] @ inc_rel[j].T
            d_rotation[j] += rot_d[j] @ to_next
            d_rotation[j - 1] += rot_d[j] @ to_prev
            d_velocity[j] += vel_d[j] @ to_next
            d_velocity[j - 1] += vel_d[j] @ to_prev

        sample.d_rotation = d_rotation
        sample.d_angular_velocity = d_velocity
        return sample


class UniformR3Spline(_UniformSpline):
    """Uniform B-spline of 3-vectors."""

    _knot_shape = (3,)

    def __init__(self, knots: np.ndarray, start_time_ns: int, dt_ns: int, order: int = 5):
        super().__init__(knots, start_time_ns, dt_ns, order)
        self._blending = blending_matrix(order)

    @classmethod
    def zeros(cls, num_knots: int, start_time_ns: int, dt_ns: int, order: int = 5):
        return cls(np.zeros((num_knots, 3)), start_time_ns, dt_ns, order)

    def retract(self, delta: np.ndarray) -> 'UniformR3Spline':
        return self._with_knots(self._knots + np.asarray(delta, dtype=float).reshape(self.num_knots, 3))

    def weights(self, time_ns: float, derivative: int = 0) -> Tuple[int, np.ndarray]:
        """
        Segment start index and per-knot weights of a derivative.

        The value is weights @ knots[index:index + N]; the weights are also the
        (scalar times identity) Jacobian with respect to those knots.
        """
        index, u = self._locate(time_ns)
        weights = self._blending @ basis_vector(u, self.order, derivative)
        return index, weights / self.dt_s ** derivative

    def evaluate(self, time_ns: float, derivative: int = 0) -> np.ndarray:
        index, weights = self.weights(time_ns, derivative)
        return weights @ self._knots[index:index + self.order]
