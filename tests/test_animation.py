import math

import numpy as np
import pytest

from kissloop.animation import animate_cloud, animation_transforms, slerp_quaternion
from kissloop.geometry import (
    make_pose,
    quaternion_from_rotation,
    rotation_from_quaternion,
    rotation_from_rpy,
    transform_points,
)

IDENTITY_Q = np.array([0.0, 0.0, 0.0, 1.0])


def _goal_transform():
    return make_pose(rotation_from_rpy(0.3, -0.2, 1.1), [2.0, -1.0, 0.5])


def test_slerp_endpoints():
    q1 = quaternion_from_rotation(rotation_from_rpy(0.1, 0.2, 0.3))
    np.testing.assert_allclose(slerp_quaternion(IDENTITY_Q, q1, 0.0), IDENTITY_Q, atol=1e-12)
    np.testing.assert_allclose(slerp_quaternion(IDENTITY_Q, q1, 1.0), q1, atol=1e-12)


def test_slerp_midpoint_is_half_angle():
    q1 = quaternion_from_rotation(rotation_from_rpy(0.0, 0.0, math.pi / 2))
    expected = quaternion_from_rotation(rotation_from_rpy(0.0, 0.0, math.pi / 4))
    np.testing.assert_allclose(slerp_quaternion(IDENTITY_Q, q1, 0.5), expected, atol=1e-12)


def test_slerp_takes_shorter_arc():
    q1 = quaternion_from_rotation(rotation_from_rpy(0.0, 0.0, 1.0))
    a = rotation_from_quaternion(slerp_quaternion(IDENTITY_Q, q1, 0.5))
    b = rotation_from_quaternion(slerp_quaternion(IDENTITY_Q, -q1, 0.5))
    np.testing.assert_allclose(a, b, atol=1e-12)


def test_slerp_result_is_unit_length():
    q0 = quaternion_from_rotation(rotation_from_rpy(0.4, 0.1, -0.7))
    q1 = quaternion_from_rotation(rotation_from_rpy(-0.2, 0.5, 2.0))
    for t in np.linspace(0.0, 1.0, 7):
        assert np.linalg.norm(slerp_quaternion(q0, q1, t)) == pytest.approx(1.0)


def test_animation_frame_count_and_start():
    frames = animation_transforms([1.0, 2.0, 3.0], _goal_transform(), 10.0)
    assert len(frames) == 21
    np.testing.assert_allclose(frames[0], np.eye(4), atol=1e-12)


def test_rotation_phase_keeps_centroid_fixed():
    centroid = np.array([1.0, 2.0, 3.0])
    frames = animation_transforms(centroid, _goal_transform(), 5.0)
    for frame in frames[:6]:
        moved = frame[:3, :3] @ centroid + frame[:3, 3]
        np.testing.assert_allclose(moved, centroid, atol=1e-9)


def test_final_frame_equals_transform():
    goal = _goal_transform()
    frames = animation_transforms([1.0, 2.0, 3.0], goal, 4.0)
    np.testing.assert_allclose(frames[-1], goal, atol=1e-9)


def test_translation_phase_keeps_rotation():
    goal = _goal_transform()
    frames = animation_transforms([0.5, 0.5, 0.5], goal, 3.0)
    half = len(frames) // 2
    for frame in frames[half:]:
        np.testing.assert_allclose(frame[:3, :3], goal[:3, :3], atol=1e-9)


def test_too_small_moving_rate_raises():
    with pytest.raises(ValueError):
        animation_transforms([0.0, 0.0, 0.0], np.eye(4), 0.5)


def test_animate_cloud_starts_and_ends_correctly():
    rng = np.random.default_rng(3)
    points = rng.normal(size=(40, 3))
    goal = _goal_transform()
    clouds = list(animate_cloud(points, goal, 2.0))
    assert len(clouds) == 5
    np.testing.assert_allclose(clouds[0], points, atol=1e-9)
    np.testing.assert_allclose(clouds[-1], transform_points(points, goal), atol=1e-9)


def test_animate_cloud_drops_non_finite_points():
    points = np.array([[0.0, 0.0, 0.0], [np.nan, 1.0, 1.0], [1.0, 1.0, 1.0]])
    clouds = list(animate_cloud(points, np.eye(4), 1.0))
    assert all(len(cloud) == 2 for cloud in clouds)


def test_animate_empty_cloud_raises():
    with pytest.raises(ValueError):
        list(animate_cloud(np.empty((0, 3)), np.eye(4), 2.0))