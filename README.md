# kissloop

`kissloop` is a small, NumPy-based toolkit for the bookkeeping around LiDAR
SLAM with point clouds: rigid-pose helpers, voxel-grid downsampling, reading
and writing point-cloud files, keyframe selection, loop-candidate search and
loop-closure alignment, map accumulation, trajectory export in KITTI and TUM
formats, and helpers for animating and time-stamping registration results.

Point clouds are `numpy` arrays of shape `(N, C)` with `C >= 3`: the first
three columns are x, y, z and any further columns (such as intensity) are
carried along by the transforms. Keyframe scans use four columns
(x, y, z, intensity). Poses are 4×4 homogeneous matrices and quaternions are
ordered (x, y, z, w).

## Installation

```
pip install .
pip install ".[test]"   # with pytest, for running the tests
```

## Modules

| Module | What it gives you |
| --- | --- |
| `kissloop.timing` | `TicToc`, a stopwatch reporting milliseconds or seconds |
| `kissloop.geometry` | `rpy_from_rotation`, `rotation_from_rpy`, `quaternion_from_rotation`, `rotation_from_quaternion`, `make_pose`, `pose_to_position_quaternion`, `transform_points`, `finite_points`, `voxelize`, `seconds_to_stamp` |
| `kissloop.pointcloud_io` | `read_bin`, `read_pcd`, `read_ply`, `write_pcd_ascii`, `load_point_cloud`, `colorize`, `warped_output_path`, `augmentation_rotation` |
| `kissloop.pose_graph_node` | `PoseGraphNode`, a keyframe holding a sensor-frame scan with its odometry and corrected poses |
| `kissloop.loop_closure` | `LoopClosure`, `LoopDetector`, `LoopClosureConfig`, `GICPConfig`, `LoopCandidate`, `RegOutput`, `LocalRegistrationResult`, `GlobalRegistrationResult` |
| `kissloop.keyframes` | `is_keyframe`, `RealtimePoseTracker`, `MapBuilder` |
| `kissloop.trajectory` | `kitti_pose_line`, `tum_pose_line`, `accumulate_map`, `save_trajectory`, `loop_edge_segments` |
| `kissloop.animation` | `slerp_quaternion`, `animation_transforms`, `animate_cloud` |
| `kissloop.tf_stamps` | `TransformStamped`, `pose_to_transform`, `StampExtrapolator` |

## Examples

### Timing a step

```python
from kissloop.timing import TicToc

timer = TicToc()
# ... work ...
print(f"{timer.toc('msec'):.1f} ms")
```

`toc` accepts `"msec"` (the default) or `"sec"`; any other unit raises
`ValueError`.

### Loading, transforming and downsampling a cloud

```python
import numpy as np
from kissloop.geometry import make_pose, rotation_from_rpy, transform_points, voxelize
from kissloop.pointcloud_io import load_point_cloud, write_pcd_ascii

points = load_point_cloud("scan.pcd")          # .pcd, .ply or KITTI-style .bin
pose = make_pose(rotation_from_rpy(0.0, 0.0, np.pi / 4), [1.0, 2.0, 0.0])
moved = transform_points(points, pose)
downsampled = voxelize(moved, 0.3)
write_pcd_ascii("scan_moved.pcd", downsampled)
```

`load_point_cloud` picks the reader by file extension and raises `ValueError`
for any other extension. `voxelize` drops points with non-finite coordinates
and replaces the points of each voxel by their centroid. `write_pcd_ascii`
writes clouds with three (xyz) or four (xyz + intensity) columns.

### Building keyframes and deciding when a new one is due

```python
import numpy as np
from kissloop.keyframes import is_keyframe
from kissloop.pose_graph_node import PoseGraphNode

node = PoseGraphNode.from_odometry(
    position=[1.0, 0.0, 0.0],
    orientation=[0.0, 0.0, 0.0, 1.0],
    scan=np.zeros((10, 4)),
    idx=len(keyframes),
    stamp=(12, 500_000_000),
    voxel_size=0.3,
)
if is_keyframe(node, keyframes[-1], 1.0):
    keyframes.append(node)
```

Unless `is_wrt_lidar_frame=True`, the scan is taken to be in the world frame
and is moved into the sensor frame. A frame becomes a keyframe once its
corrected position is farther than the threshold from the latest keyframe.

### Loop closure

```python
from kissloop.loop_closure import LoopClosure, LoopClosureConfig

config = LoopClosureConfig(enable_global_registration=False, voxel_res=0.3)
loop_closure = LoopClosure(config)

for query_idx, match_idx in loop_closure.fetch_loop_candidates(keyframes[-1], keyframes):
    result = loop_closure.perform_loop_closure(keyframes, query_idx, match_idx)
    if result.is_valid:
        print(query_idx, match_idx, result.overlapness)
```

Candidates are keyframes (other than the last) within
`loop_detection_radius` of the query — on the XY plane unless
`is_multilayer_env` is set — and older than
`loop_detection_timediff_threshold` seconds. Shortly after a successful fine
registration only the nearest candidate is returned; otherwise up to
`num_max_candidates` are drawn at random.

Fine registration uses a built-in point-to-point ICP unless a
`local_registration` callable is passed; a result is valid when the
percentage of source points with a target point within `max_corr_dist`
exceeds `gicp_config.overlap_threshold`. Coarse-to-fine alignment
(`enable_global_registration=True`) needs a `global_registration` callable
returning a `GlobalRegistrationResult`; without one,
`coarse_to_fine_alignment` raises `RuntimeError`.

`LoopDetector` proposes loops from an optional `candidate_source` callable;
without one it proposes none.

### Correcting poses in real time and building the map

```python
from kissloop.keyframes import MapBuilder, RealtimePoseTracker

tracker = RealtimePoseTracker()
corrected = tracker.update(previous_odom, current_odom)
tracker.reset(optimized_pose)          # after a graph optimization

builder = MapBuilder(scan_voxel_res=0.3, map_voxel_res=1.0)
global_map = builder.update(keyframes)               # adds only new keyframes
global_map = builder.update(keyframes, rebuild=True) # after poses change
```

### Exporting a trajectory

```python
from kissloop.trajectory import accumulate_map, save_trajectory
from kissloop.pointcloud_io import write_pcd_ascii

seq_dir = save_trajectory(keyframes, "results", "sequence_00")
write_pcd_ascii(seq_dir / "sequence_00_map.pcd", accumulate_map(keyframes, 0.3))
```

`save_trajectory` removes any existing `results/sequence_00` directory, then
writes each keyframe scan as `scans/000000.pcd`, `scans/000001.pcd`, …,
`poses_kitti.txt` (the top three rows of each corrected pose, twelve numbers
per line) and `poses_tum.txt` (`#timestamp x y z qx qy qz qw` header, eight
decimals per value).

### Animating a registration result

```python
from kissloop.animation import animate_cloud

for frame_cloud in animate_cloud(source_points, estimated_transform, moving_rate=10):
    draw(frame_cloud)
```

The first half of the `int(2 * moving_rate) + 1` frames rotates the cloud
about its centroid; the second half moves it to the final translation.

### Stamped transforms

`pose_to_transform(pose, "world", "source", stamp)` gives a
`TransformStamped`. `StampExtrapolator.update(source_stamp, target_stamp, now)`
returns both stamps advanced by the time elapsed since either last changed
(all in nanoseconds), or `None` while a stamp is missing.

## What it does not do

- It has no pose-graph optimizer: corrected poses must come from your own
  solver, and `RealtimePoseTracker.reset` and `MapBuilder.update(rebuild=True)`
  are the hooks for feeding them back.
- It ships no global (coarse) registration algorithm; supply one as the
  `global_registration` callable.
- It has no command-line program, viewer or messaging layer; it works on
  arrays and files only.

## Tests

The test suite uses `pytest`, available through the `test` extra:

```
pytest
```