"""Animated playback of a registration result: rotate about the centroid, then translate."""

from __future__ import annotations

import math
from typing import Iterator

import numpy as np

from kissloop.geometry import (
    finite_points,
    quaternion_from_rotation,
    rotation_from_quaternion,
    transform_points,
)

_SLERP_EPS = 1e-12


def slerp_quaternion(q0, q1, t: float) -> np.ndarray:
    """Spherical interpolation between quaternions (x, y, z, w) along the shorter arc."""
    a = np.asarray(q0, dtype=float)
    b = np.asarray(q1, dtype=float)
    d = float(np.dot(a, b))
    abs_d = abs(d)
    if abs_d >= 1.0 - _SLERP_EPS:
        scale0 = 1.0 - t
        scale1 = t
    else:
        theta = math.acos(abs_d)
        sin_theta = math.sin(theta)
        scale0 = math.sin((1.0 - t) * theta) / sin_theta
        scale1 = math.sin(t * theta) / sin_theta
    if d < 0.0:
        scale1 = -scale1
    return scale0 * a + scale1 * b


def animation_transforms(centroid, transform, moving_rate: float) -> list[np.ndarray]:
    """Per-frame 4x4 transforms animating ``transform`` applied to a cloud.

    There are ``int(2 * moving_rate) + 1`` frames. In the first half the rotation
    is interpolated about ``centroid``; in the second half the translation moves
    from where the rotation left it to the translation of ``transform``.
    """
    num_total_steps = int(2 * moving_rate)
    half = num_total_steps // 2
    if half == 0:
        raise ValueError("moving_rate must be at least 1")

    goal = np.asarray(transform, dtype=float)
    c = np.asarray(centroid, dtype=float).reshape(-1)[:3]
    to_origin = np.eye(4)
    to_origin[:3, 3] = -c
    back = np.eye(4)
    back[:3, 3] = c

    start_rotation = np.array([0.0, 0.0, 0.0, 1.0])
    goal_rotation = quaternion_from_rotation(goal[:3, :3])

    accumulated = np.eye(4)
    frames = []
    for step in range(num_total_steps + 1):
        if step <= half:
            progress = step / half
            q = slerp_quaternion(start_rotation, goal_rotation, progress)
            rotation_transform = np.eye(4)
            rotation_transform[:3, :3] = rotation_from_quaternion(q)
            frame = back @ rotation_transform @ to_origin
            accumulated = frame
        else:
            ratio = (step - half) / half
            start_translation = accumulated[:3, 3]
            goal_translation = goal[:3, 3]
            frame = accumulated.copy()
            frame[:3, 3] = start_translation + ratio * (goal_translation - start_translation)
        frames.append(frame.copy())
    return frames


def animate_cloud(points, transform, moving_rate: float) -> Iterator[np.ndarray]:
    """Yield the cloud moved by each animation frame, ending at ``transform``."""
    pts = finite_points(points)
    if len(pts) == 0:
        raise ValueError("cannot animate an empty cloud")
    centroid = pts[:, :3].mean(axis=0)
    for frame in animation_transforms(centroid, transform, moving_rate):
        yield transform_points(pts, frame)