"""
SO(3) helpers for spline blending and residual Jacobians.

Perturbations follow the right-multiplicative convention used throughout
the package: R <- R * exp(delta).
"""

import numpy as np
from scipy.spatial.transform import Rotation


_SMALL_ANGLE = 1e-8


def skew(v: np.ndarray) -> np.ndarray:
    """
    Skew-symmetric (cross product) matrix of a 3-vector.

    Accepts a single vector (3,) or a stack (..., 3) and returns (..., 3, 3).
    """
    v = np.asarray(v, dtype=float)
    S = np.zeros(v.shape[:-1] + (3, 3))
    S[..., 0, 1] = -v[..., 2]
    S[..., 0, 2] = v[..., 1]
    S[..., 1, 0] = v[..., 2]
    S[..., 1, 2] = -v[..., 0]
    S[..., 2, 0] = -v[..., 1]
    S[..., 2, 1] = v[..., 0]
    return S


def so3_exp(phi: np.ndarray) -> np.ndarray:
    """Rotation matrix of a rotation vector."""
    return Rotation.from_rotvec(phi).as_matrix()


def so3_log(R: np.ndarray) -> np.ndarray:
    """Rotation vector of a rotation matrix."""
    return Rotation.from_matrix(R).as_rotvec()


def right_jacobian(phi: np.ndarray) -> np.ndarray:
    """
    Right Jacobian of SO(3).

    exp(phi + d) ~= exp(phi) * exp(Jr(phi) d)
    """
    theta = np.linalg.norm(phi)
    K = skew(phi)
    if theta < _SMALL_ANGLE:
        return np.eye(3) - 0.5 * K + K @ K / 6.0
    theta2 = theta * theta
    return (np.eye(3)
            - (1.0 - np.cos(theta)) / theta2 * K
            + (theta - np.sin(theta)) / (theta2 * theta) * K @ K)


def right_jacobian_inv(phi: np.ndarray) -> np.ndarray:
    """
    Inverse of the right Jacobian of SO(3).

    log(exp(phi) * exp(d)) ~= phi + Jr^-1(phi) d
    """
    theta = np.linalg.norm(phi)
    K = skew(phi)
    if theta < _SMALL_ANGLE:
        return np.eye(3) + 0.5 * K + K @ K / 12.0
    coeff = 1.0 / (theta * theta) - (1.0 + np.cos(theta)) / (2.0 * theta * np.sin(theta))
    return np.eye(3) + 0.5 * K + coeff * K @ K


def orthogonality_error(R: np.ndarray) -> float:
    """Max absolute deviation of R^T R from identity."""
    return float(np.max(np.abs(R.T @ R - np.eye(3))))
