"""Exporting optimized keyframes: KITTI/TUM pose files, scan files and the corrected map."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Sequence

import numpy as np

from kissloop.geometry import pose_to_position_quaternion, transform_points, voxelize
from kissloop.pointcloud_io import write_pcd_ascii
from kissloop.pose_graph_node import PoseGraphNode

TUM_HEADER = "#timestamp x y z qx qy qz qw"


def kitti_pose_line(pose) -> str:
    """The top three rows of a 4x4 pose, row by row, as one KITTI pose line."""
    p = np.asarray(pose, dtype=float)
    if p.shape != (4, 4):
        raise ValueError("pose must be a 4x4 matrix")
    return " ".join(format(float(v), "g") for v in p[:3, :4].reshape(-1))


def tum_pose_line(timestamp: float, pose) -> str:
    """A TUM line: timestamp, position and (x, y, z, w) quaternion, eight decimals each."""
    p = np.asarray(pose, dtype=float)
    if p.shape != (4, 4):
        raise ValueError("pose must be a 4x4 matrix")
    position, quaternion = pose_to_position_quaternion(p)
    values = [float(timestamp), *position.tolist(), *quaternion.tolist()]
    return " ".join(f"{v:.8f}" for v in values)


def accumulate_map(keyframes: Sequence[PoseGraphNode], voxel_res: float) -> np.ndarray:
    """All keyframe scans moved by their corrected poses, merged and voxelized."""
    clouds = [
        transform_points(keyframe.scan, keyframe.pose_corrected)
        for keyframe in keyframes
        if len(keyframe.scan)
    ]
    if not clouds:
        width = keyframes[0].scan.shape[1] if keyframes else 4
        return np.empty((0, width))
    return voxelize(np.vstack(clouds), voxel_res)


def save_trajectory(keyframes: Sequence[PoseGraphNode], save_dir, seq_name: str) -> Path:
    """Write scans and KITTI/TUM pose files under ``save_dir/seq_name``.

    Any existing sequence directory is removed first. Scans go to
    ``scans/NNNNNN.pcd`` in the sensor frame; poses are the corrected ones.
    Returns the sequence directory.
    """
    seq_directory = Path(save_dir) / seq_name
    scans_directory = seq_directory / "scans"
    if seq_directory.exists():
        shutil.rmtree(seq_directory)
    scans_directory.mkdir(parents=True, exist_ok=True)

    kitti_lines = []
    tum_lines = [TUM_HEADER]
    for i, keyframe in enumerate(keyframes):
        write_pcd_ascii(scans_directory / f"{i:06d}.pcd", keyframe.scan)
        kitti_lines.append(kitti_pose_line(keyframe.pose_corrected))
        tum_lines.append(tum_pose_line(keyframe.timestamp, keyframe.pose_corrected))

    (seq_directory / "poses_kitti.txt").write_text(
        "".join(line + "\n" for line in kitti_lines), encoding="ascii"
    )
    (seq_directory / "poses_tum.txt").write_text(
        "".join(line + "\n" for line in tum_lines), encoding="ascii"
    )
    return seq_directory


def loop_edge_segments(edges, positions) -> np.ndarray:
    """Line segments ``(M, 2, 3)`` joining the positions of each loop edge.

    Edges that refer to a position that does not exist are skipped.
    """
    pts = np.asarray(positions, dtype=float)
    if pts.size == 0:
        pts = pts.reshape(0, 3)
    if pts.ndim != 2 or pts.shape[1] < 3:
        raise ValueError("positions must be an (N, 3) array")
    count = len(pts)
    segments = [
        (pts[a, :3], pts[b, :3])
        for a, b in edges
        if 0 <= a < count and 0 <= b < count
    ]
    if not segments:
        return np.empty((0, 2, 3))
    return np.array(segments)