"""Two-view geometry used when creating map points: epipolar constraints,
linear triangulation and reprojection checks."""

from __future__ import annotations

import numpy as np

from semslam.descriptors import KeyPoint

# Chi-square thresholds at 95% for 2 (monocular) and 3 (stereo) degrees of freedom.
CHI2_MONO = 5.991
CHI2_STEREO = 7.8


def _vec3(v) -> np.ndarray:
    arr = np.asarray(v, dtype=np.float64).reshape(-1)
    if arr.shape != (3,):
        raise ValueError(f"expected a 3-vector, got shape {arr.shape}")
    return arr


def _pose_parts(pose) -> tuple[np.ndarray, np.ndarray]:
    arr = np.asarray(pose, dtype=np.float64)
    if arr.shape not in ((3, 4), (4, 4)):
        raise ValueError(f"expected a 3x4 or 4x4 pose, got shape {arr.shape}")
    return arr[:3, :3], arr[:3, 3]


def skew_symmetric(v) -> np.ndarray:
    """The matrix ``[v]x`` with ``[v]x @ w == cross(v, w)``."""
    x, y, z = _vec3(v)
    return np.array(
        [[0.0, -z, y],
         [z, 0.0, -x],
         [-y, x, 0.0]]
    )


def fundamental_matrix(pose1, pose2, k) -> np.ndarray:
    """Fundamental matrix F12 between two world-to-camera poses sharing the
    intrinsics ``k``, such that ``x1^T F12 x2 = 0`` for matching pixels."""
    r1w, t1w = _pose_parts(pose1)
    r2w, t2w = _pose_parts(pose2)
    kmat = np.asarray(k, dtype=np.float64)
    if kmat.shape != (3, 3):
        raise ValueError(f"expected 3x3 intrinsics, got shape {kmat.shape}")

    r12 = r1w @ r2w.T
    t12 = -r1w @ r2w.T @ t2w + t1w
    k_inv = np.linalg.inv(kmat)
    return k_inv.T @ skew_symmetric(t12) @ r12 @ k_inv


def triangulate(xn1, xn2, tcw1, tcw2) -> np.ndarray | None:
    """Linear (DLT) triangulation of two normalised image points seen from
    two poses. Returns the 3D world point, or None at infinity."""
    a1 = np.asarray(xn1, dtype=np.float64).reshape(-1)
    a2 = np.asarray(xn2, dtype=np.float64).reshape(-1)
    if a1.size < 2 or a2.size < 2:
        raise ValueError("normalised points need at least two coordinates")
    p1 = np.asarray(tcw1, dtype=np.float64)[:3]
    p2 = np.asarray(tcw2, dtype=np.float64)[:3]
    if p1.shape != (3, 4) or p2.shape != (3, 4):
        raise ValueError("poses must be 3x4 or 4x4")

    a = np.vstack(
        [
            a1[0] * p1[2] - p1[0],
            a1[1] * p1[2] - p1[1],
            a2[0] * p2[2] - p2[0],
            a2[1] * p2[2] - p2[1],
        ]
    )
    _, _, vt = np.linalg.svd(a, full_matrices=True)
    x = vt[3]
    if x[3] == 0:
        return None
    return x[:3] / x[3]


def reprojection_ok(
    point_camera,
    keypoint: KeyPoint,
    sigma_square: float,
    k,
    right_u: float = -1.0,
    bf: float = 0.0,
) -> bool:
    """Whether a point in camera coordinates lies in front of the camera and
    reprojects onto ``keypoint`` within the chi-square bound. A non-negative
    ``right_u`` adds the right-image coordinate of a stereo observation."""
    x, y, z = _vec3(point_camera)
    if z <= 0:
        return False
    kmat = np.asarray(k, dtype=np.float64)
    fx, fy, cx, cy = kmat[0, 0], kmat[1, 1], kmat[0, 2], kmat[1, 2]
    inv_z = 1.0 / z
    u = fx * x * inv_z + cx
    v = fy * y * inv_z + cy
    err_x = u - keypoint.x
    err_y = v - keypoint.y
    if right_u < 0:
        return err_x * err_x + err_y * err_y <= CHI2_MONO * sigma_square
    err_r = (u - bf * inv_z) - right_u
    return err_x * err_x + err_y * err_y + err_r * err_r <= CHI2_STEREO * sigma_square