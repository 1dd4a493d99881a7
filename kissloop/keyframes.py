"""Keyframe selection, real-time pose correction and incremental map building."""

from __future__ import annotations

from typing import Optional, Sequence

import numpy as np

from kissloop.geometry import transform_points, voxelize
from kissloop.pose_graph_node import PoseGraphNode


def is_keyframe(query_node: PoseGraphNode, latest_node: PoseGraphNode, threshold: float) -> bool:
    """True when the query has moved farther than ``threshold`` from the latest keyframe."""
    delta = (
        np.asarray(latest_node.pose_corrected, dtype=float)[:3, 3]
        - np.asarray(query_node.pose_corrected, dtype=float)[:3, 3]
    )
    return threshold < float(np.linalg.norm(delta))


class RealtimePoseTracker:
    """Applies the latest graph correction to incoming odometry between keyframes.

    The motion since the last optimization is accumulated as an odometry delta
    and stacked on top of the last corrected keyframe pose.
    """

    def __init__(self, corrected_pose=None) -> None:
        self.last_corrected_pose = np.eye(4)
        self.odom_delta = np.eye(4)
        if corrected_pose is not None:
            self.reset(corrected_pose)

    def update(self, previous_odom, current_odom) -> np.ndarray:
        """Accumulate the motion from ``previous_odom`` to ``current_odom``; return the corrected pose."""
        previous = np.asarray(previous_odom, dtype=float)
        current = np.asarray(current_odom, dtype=float)
        self.odom_delta = self.odom_delta @ np.linalg.inv(previous) @ current
        return self.last_corrected_pose @ self.odom_delta

    def reset(self, corrected_pose) -> None:
        """Start again from a freshly optimized pose, with no accumulated motion."""
        self.last_corrected_pose = np.array(corrected_pose, dtype=float)
        self.odom_delta = np.eye(4)


class MapBuilder:
    """Builds the global map from keyframes, only adding keyframes not yet included.

    Scans are voxelized once per keyframe (cached on the keyframe) unless they
    were stored voxelized already; the accumulated map is voxelized again at
    ``map_voxel_res`` each time it is requested.
    """

    def __init__(
        self,
        scan_voxel_res: float,
        map_voxel_res: float,
        store_voxelized_scan: bool = False,
    ) -> None:
        self.scan_voxel_res = scan_voxel_res
        self.map_voxel_res = map_voxel_res
        self.store_voxelized_scan = store_voxelized_scan
        self._chunks: list[np.ndarray] = []
        self._start_idx = 0

    @property
    def map_cloud(self) -> np.ndarray:
        """The accumulated, not yet voxelized, world-frame map."""
        if not self._chunks:
            return np.empty((0, 4))
        return np.vstack(self._chunks)

    def _scan_of(self, keyframe: PoseGraphNode) -> np.ndarray:
        if self.store_voxelized_scan:
            return keyframe.scan
        if len(keyframe.voxelized_scan) == 0:
            keyframe.voxelized_scan = voxelize(keyframe.scan, self.scan_voxel_res)
        return keyframe.voxelized_scan

    def update(self, keyframes: Sequence[PoseGraphNode], rebuild: bool = False) -> np.ndarray:
        """Add new keyframes to the map (all of them when ``rebuild``) and return it voxelized."""
        if rebuild:
            self._chunks = []
            self._start_idx = 0
        if not keyframes:
            return np.empty((0, 4))
        for keyframe in list(keyframes)[self._start_idx :]:
            scan = self._scan_of(keyframe)
            if len(scan):
                self._chunks.append(transform_points(scan, keyframe.pose_corrected))
        self._start_idx = len(keyframes)
        cloud: Optional[np.ndarray] = self.map_cloud
        return voxelize(cloud, self.map_voxel_res)