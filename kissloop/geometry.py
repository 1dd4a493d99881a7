"""Rigid-body transforms, rotation conversions and point-cloud helpers.

Point clouds are ``numpy`` arrays of shape ``(N, C)`` with ``C >= 3``; the
first three columns are x, y, z and any further columns (such as intensity)
are carried along untouched by the transforms.
"""

from __future__ import annotations

import math

import numpy as np


def _as_cloud(points) -> np.ndarray:
    pts = np.asarray(points, dtype=float)
    if pts.size == 0:
        width = pts.shape[1] if pts.ndim == 2 else 3
        return np.empty((0, max(width, 3)))
    if pts.ndim != 2 or pts.shape[1] < 3:
        raise ValueError("points must be an (N, C) array with C >= 3")
    return pts


def rpy_from_rotation(rotation) -> tuple[float, float, float]:
    """Return (roll, pitch, yaw) of a rotation matrix R = Rz(yaw) Ry(pitch) Rx(roll)."""
    r = np.asarray(rotation, dtype=float)
    if abs(r[2, 0]) >= 1.0:
        yaw = 0.0
        roll = math.atan2(r[2, 1], r[2, 2])
        pitch = math.pi / 2.0 if r[2, 0] < 0 else -math.pi / 2.0
        return roll, pitch, yaw
    pitch = -math.asin(r[2, 0])
    cos_pitch = math.cos(pitch)
    roll = math.atan2(r[2, 1] / cos_pitch, r[2, 2] / cos_pitch)
    yaw = math.atan2(r[1, 0] / cos_pitch, r[0, 0] / cos_pitch)
    return roll, pitch, yaw


def rotation_from_rpy(roll: float, pitch: float, yaw: float) -> np.ndarray:
    """Return the rotation matrix Rz(yaw) @ Ry(pitch) @ Rx(roll)."""
    cr, sr = math.cos(roll), math.sin(roll)
    cp, sp = math.cos(pitch), math.sin(pitch)
    cy, sy = math.cos(yaw), math.sin(yaw)
    rx = np.array([[1.0, 0.0, 0.0], [0.0, cr, -sr], [0.0, sr, cr]])
    ry = np.array([[cp, 0.0, sp], [0.0, 1.0, 0.0], [-sp, 0.0, cp]])
    rz = np.array([[cy, -sy, 0.0], [sy, cy, 0.0], [0.0, 0.0, 1.0]])
    return rz @ ry @ rx


def _quaternion_from_rpy(roll: float, pitch: float, yaw: float) -> np.ndarray:
    cr, sr = math.cos(roll / 2.0), math.sin(roll / 2.0)
    cp, sp = math.cos(pitch / 2.0), math.sin(pitch / 2.0)
    cy, sy = math.cos(yaw / 2.0), math.sin(yaw / 2.0)
    return np.array(
        [
            sr * cp * cy - cr * sp * sy,
            cr * sp * cy + sr * cp * sy,
            cr * cp * sy - sr * sp * cy,
            cr * cp * cy + sr * sp * sy,
        ]
    )


def quaternion_from_rotation(rotation) -> np.ndarray:
    """Return the unit quaternion (x, y, z, w) of a rotation matrix."""
    r = np.asarray(rotation, dtype=float)
    q = np.zeros(4)
    trace = r[0, 0] + r[1, 1] + r[2, 2]
    if trace > 0.0:
        t = math.sqrt(trace + 1.0)
        q[3] = 0.5 * t
        t = 0.5 / t
        q[0] = (r[2, 1] - r[1, 2]) * t
        q[1] = (r[0, 2] - r[2, 0]) * t
        q[2] = (r[1, 0] - r[0, 1]) * t
        return q
    i = 0
    if r[1, 1] > r[0, 0]:
        i = 1
    if r[2, 2] > r[i, i]:
        i = 2
    j = (i + 1) % 3
    k = (j + 1) % 3
    t = math.sqrt(r[i, i] - r[j, j] - r[k, k] + 1.0)
    q[i] = 0.5 * t
    t = 0.5 / t
    q[3] = (r[k, j] - r[j, k]) * t
    q[j] = (r[j, i] + r[i, j]) * t
    q[k] = (r[k, i] + r[i, k]) * t
    return q


def rotation_from_quaternion(quaternion) -> np.ndarray:
    """Return the rotation matrix of a quaternion (x, y, z, w); it need not be unit length."""
    x, y, z, w = (float(v) for v in quaternion)
    norm_sq = x * x + y * y + z * z + w * w
    if norm_sq == 0.0:
        raise ValueError("quaternion has zero length")
    s = 2.0 / norm_sq
    xs, ys, zs = x * s, y * s, z * s
    wx, wy, wz = w * xs, w * ys, w * zs
    xx, xy, xz = x * xs, x * ys, x * zs
    yy, yz, zz = y * ys, y * zs, z * zs
    return np.array(
        [
            [1.0 - (yy + zz), xy - wz, xz + wy],
            [xy + wz, 1.0 - (xx + zz), yz - wx],
            [xz - wy, yz + wx, 1.0 - (xx + yy)],
        ]
    )


def make_pose(rotation, translation) -> np.ndarray:
    """Build a 4x4 homogeneous transform from a 3x3 rotation and a 3-vector."""
    pose = np.eye(4)
    pose[:3, :3] = np.asarray(rotation, dtype=float)
    pose[:3, 3] = np.asarray(translation, dtype=float).reshape(3)
    return pose


def pose_to_position_quaternion(pose) -> tuple[np.ndarray, np.ndarray]:
    """Split a 4x4 pose into its position and an (x, y, z, w) quaternion via roll-pitch-yaw."""
    p = np.asarray(pose, dtype=float)
    roll, pitch, yaw = rpy_from_rotation(p[:3, :3])
    return p[:3, 3].copy(), _quaternion_from_rpy(roll, pitch, yaw)


def transform_points(points, pose) -> np.ndarray:
    """Apply a 4x4 transform to the xyz columns of a cloud; other columns are kept."""
    pts = _as_cloud(points)
    if len(pts) == 0:
        return pts.copy()
    p = np.asarray(pose, dtype=float)
    out = pts.copy()
    out[:, :3] = pts[:, :3] @ p[:3, :3].T + p[:3, 3]
    return out


def finite_points(points) -> np.ndarray:
    """Drop every point whose x, y or z is not finite."""
    pts = _as_cloud(points)
    if len(pts) == 0:
        return pts.copy()
    return pts[np.isfinite(pts[:, :3]).all(axis=1)]


def voxelize(points, voxel_size: float) -> np.ndarray:
    """Replace the points in each cubic voxel by their centroid (all columns averaged).

    Voxels come out ordered by z index, then y, then x.
    """
    if voxel_size <= 0:
        raise ValueError("voxel_size must be positive")
    pts = finite_points(points)
    if len(pts) == 0:
        return pts
    inverse_leaf = 1.0 / voxel_size
    keys = np.floor(pts[:, :3] * inverse_leaf).astype(np.int64)
    _, inverse = np.unique(keys[:, ::-1], axis=0, return_inverse=True)
    inverse = np.asarray(inverse).reshape(-1)
    counts = np.bincount(inverse)
    sums = np.zeros((len(counts), pts.shape[1]))
    np.add.at(sums, inverse, pts)
    return sums / counts[:, None]


def seconds_to_stamp(timestamp: float) -> tuple[int, int]:
    """Split a time in seconds into whole seconds and nanoseconds."""
    sec = int(timestamp)
    nanosec = int((timestamp - sec) * 1e9)
    return sec, nanosec