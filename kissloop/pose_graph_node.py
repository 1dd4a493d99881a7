"""Keyframes stored in the pose graph."""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from kissloop.geometry import make_pose, rotation_from_quaternion, transform_points, voxelize


def _empty_cloud() -> np.ndarray:
    return np.empty((0, 4))


@dataclass(eq=False)
class PoseGraphNode:
    """A keyframe: a scan in the sensor frame with its odometry and corrected poses."""

    scan: np.ndarray = field(default_factory=_empty_cloud)
    voxelized_scan: np.ndarray = field(default_factory=_empty_cloud)
    pose: np.ndarray = field(default_factory=lambda: np.eye(4))
    pose_corrected: np.ndarray = field(default_factory=lambda: np.eye(4))
    timestamp: float = 0.0
    idx: int = 0
    nnsearch_processed: bool = False
    loop_detector_processed: bool = False

    @classmethod
    def from_odometry(
        cls,
        position,
        orientation,
        scan,
        idx: int,
        stamp,
        voxel_size: float,
        store_voxelized_scan: bool = False,
        is_wrt_lidar_frame: bool = False,
    ) -> "PoseGraphNode":
        """Build a keyframe from an odometry pose and a scan.

        ``orientation`` is a quaternion (x, y, z, w); ``stamp`` is either seconds
        or a (sec, nanosec) pair. Unless ``is_wrt_lidar_frame`` is set, the scan is
        taken to be in the world frame and is moved into the sensor frame.
        """
        pose = make_pose(rotation_from_quaternion(orientation), position)
        cloud = np.asarray(scan, dtype=float)
        if cloud.size == 0:
            cloud = cloud.reshape(0, cloud.shape[1] if cloud.ndim == 2 else 4)
        if store_voxelized_scan:
            cloud = voxelize(cloud, voxel_size)
        if not is_wrt_lidar_frame:
            cloud = transform_points(cloud, np.linalg.inv(pose))

        if isinstance(stamp, (tuple, list)):
            sec, nanosec = stamp
            timestamp = sec + 1e-9 * nanosec
        else:
            timestamp = float(stamp)

        return cls(
            scan=cloud,
            pose=pose,
            pose_corrected=pose.copy(),
            timestamp=timestamp,
            idx=idx,
        )