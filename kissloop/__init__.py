"""Point-cloud I/O, voxelizing, keyframes, loop closure and trajectory export for LiDAR SLAM."""

__version__ = "0.1.0"

__all__ = [
    "animation",
    "geometry",
    "keyframes",
    "loop_closure",
    "pointcloud_io",
    "pose_graph_node",
    "tf_stamps",
    "timing",
    "trajectory",
]