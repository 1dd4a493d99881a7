import math

import numpy as np
import pytest

from kissloop import geometry as g


@pytest.mark.parametrize(
    "rpy",
    [(0.0, 0.0, 0.0), (0.1, -0.2, 0.3), (-1.0, 0.5, 2.5), (3.0, -1.2, -3.0)],
)
def test_rpy_round_trip(rpy):
    rotation = g.rotation_from_rpy(*rpy)
    recovered = g.rpy_from_rotation(rotation)
    assert np.allclose(g.rotation_from_rpy(*recovered), rotation)
    assert np.allclose(recovered, rpy)


def test_yaw_rotates_x_towards_y():
    rotation = g.rotation_from_rpy(0.0, 0.0, math.pi / 2)
    assert np.allclose(rotation @ np.array([1.0, 0.0, 0.0]), [0.0, 1.0, 0.0])


def test_gimbal_lock_keeps_rotation():
    rotation = g.rotation_from_rpy(0.4, math.pi / 2, 0.0)
    roll, pitch, yaw = g.rpy_from_rotation(rotation)
    assert yaw == 0.0
    assert pitch == pytest.approx(math.pi / 2)
    assert np.allclose(g.rotation_from_rpy(roll, pitch, yaw), rotation)


def test_identity_quaternion():
    assert np.allclose(g.quaternion_from_rotation(np.eye(3)), [0.0, 0.0, 0.0, 1.0])


@pytest.mark.parametrize(
    "rpy",
    [(0.2, 0.1, -0.4), (math.pi, 0.0, 0.0), (0.0, math.pi, 0.0), (0.0, 0.0, math.pi), (2.8, 0.3, -2.9)],
)
def test_quaternion_round_trip(rpy):
    rotation = g.rotation_from_rpy(*rpy)
    q = g.quaternion_from_rotation(rotation)
    assert np.linalg.norm(q) == pytest.approx(1.0)
    assert np.allclose(g.rotation_from_quaternion(q), rotation)


def test_rotation_from_unnormalised_quaternion_is_orthonormal():
    rotation = g.rotation_from_quaternion([0.0, 0.0, 2.0, 2.0])
    assert np.allclose(rotation @ rotation.T, np.eye(3))
    assert np.linalg.det(rotation) == pytest.approx(1.0)


def test_zero_quaternion_raises():
    with pytest.raises(ValueError):
        g.rotation_from_quaternion([0.0, 0.0, 0.0, 0.0])


def test_make_pose_blocks():
    rotation = g.rotation_from_rpy(0.1, 0.2, 0.3)
    pose = g.make_pose(rotation, [1.0, 2.0, 3.0])
    assert np.allclose(pose[:3, :3], rotation)
    assert np.allclose(pose[:3, 3], [1.0, 2.0, 3.0])
    assert np.allclose(pose[3], [0.0, 0.0, 0.0, 1.0])


def test_pose_to_position_quaternion():
    rotation = g.rotation_from_rpy(-0.3, 0.4, 1.7)
    pose = g.make_pose(rotation, [4.0, -5.0, 6.0])
    position, q = g.pose_to_position_quaternion(pose)
    assert np.allclose(position, [4.0, -5.0, 6.0])
    assert np.allclose(g.rotation_from_quaternion(q), rotation)


def test_transform_points_round_trip_keeps_intensity():
    pose = g.make_pose(g.rotation_from_rpy(0.3, -0.2, 1.1), [1.0, -2.0, 0.5])
    cloud = np.array([[1.0, 2.0, 3.0, 7.0], [-1.0, 0.0, 4.0, 9.0]])
    moved = g.transform_points(cloud, pose)
    assert np.allclose(moved[:, 3], cloud[:, 3])
    back = g.transform_points(moved, np.linalg.inv(pose))
    assert np.allclose(back, cloud)


def test_transform_empty_cloud():
    assert g.transform_points(np.empty((0, 4)), np.eye(4)).shape == (0, 4)


def test_bad_cloud_shape_raises():
    with pytest.raises(ValueError):
        g.transform_points(np.zeros((3, 2)), np.eye(4))


def test_finite_points_drops_nan_rows():
    cloud = np.array([[1.0, 2.0, 3.0], [np.nan, 0.0, 0.0], [0.0, np.inf, 1.0], [4.0, 5.0, 6.0]])
    result = g.finite_points(cloud)
    assert np.array_equal(result, cloud[[0, 3]])


def test_voxelize_merges_points_into_centroid():
    cloud = np.array([[0.1, 0.1, 0.1, 2.0], [0.3, 0.2, 0.4, 4.0], [5.2, 0.1, 0.1, 1.0]])
    result = g.voxelize(cloud, 1.0)
    assert result.shape == (2, 4)
    assert np.allclose(result[0], cloud[:2].mean(axis=0))
    assert np.allclose(result[1], cloud[2])


def test_voxelize_orders_by_z_then_y_then_x():
    cloud = np.array([[0.5, 0.5, 3.5], [2.5, 0.5, 0.5], [0.5, 2.5, 0.5]])
    result = g.voxelize(cloud, 1.0)
    assert np.allclose(result, cloud[[1, 2, 0]])


def test_voxelize_never_grows_and_ignores_nan():
    rng = np.random.default_rng(3)
    cloud = rng.uniform(-5, 5, size=(200, 3))
    cloud[0] = np.nan
    result = g.voxelize(cloud, 2.0)
    assert 0 < len(result) <= 199
    assert np.isfinite(result).all()


def test_voxelize_rejects_non_positive_size():
    with pytest.raises(ValueError):
        g.voxelize(np.zeros((1, 3)), 0.0)


def test_seconds_to_stamp():
    assert g.seconds_to_stamp(12.5) == (12, 500000000)
    sec, nanosec = g.seconds_to_stamp(1700000000.123)
    assert sec + nanosec * 1e-9 == pytest.approx(1700000000.123, abs=1e-6)