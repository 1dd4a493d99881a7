"""Loop-closure candidate search and coarse-to-fine registration between keyframes.

Registration is done by two pluggable back ends:

* a *global* registration callable ``(src_xyz, tgt_xyz) -> GlobalRegistrationResult``
  that finds a coarse alignment without any initial guess, and
* a *local* registration callable ``(src, tgt, gicp_config) -> LocalRegistrationResult``
  that refines an alignment which is already close.

A point-to-point ICP is used as the local back end when none is given.
"""

from __future__ import annotations

import copy
import logging
import math
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional, Sequence

import numpy as np

from kissloop.geometry import finite_points, make_pose, transform_points, voxelize
from kissloop.pose_graph_node import PoseGraphNode

LoopIdxPair = tuple[int, int]

_DEFAULT_LOGGER = logging.getLogger(__name__)


@dataclass
class LoopCandidate:
    """A keyframe close enough to a query keyframe to be tried as a loop."""

    found: bool = False
    idx: Optional[int] = None
    distance: float = math.inf


@dataclass
class GICPConfig:
    """Settings of the local (fine) registration."""

    num_threads: int = 4
    correspondence_randomness: int = 20
    max_num_iter: int = 20
    max_corr_dist: float = 1.0
    scale_factor_for_corr_dist: float = 5.0
    overlap_threshold: float = 90.0


@dataclass
class LoopClosureConfig:
    """Settings of loop-candidate search and loop registration."""

    verbose: bool = False
    enable_global_registration: bool = True
    is_multilayer_env: bool = False
    num_submap_keyframes: int = 11
    num_inliers_threshold: int = 100
    voxel_res: float = 0.1
    loop_detection_radius: float = 15.0
    loop_detection_timediff_threshold: float = 10.0
    gicp_config: GICPConfig = field(default_factory=GICPConfig)


@dataclass
class RegOutput:
    """Outcome of a loop registration; ``pose`` maps the source onto the target."""

    is_valid: bool = False
    is_converged: bool = False
    num_final_inliers: int = 0
    overlapness: float = 0.0
    pose: np.ndarray = field(default_factory=lambda: np.eye(4))


@dataclass
class LocalRegistrationResult:
    """What a local registration back end reports."""

    transformation: np.ndarray
    num_inliers: int


@dataclass
class GlobalRegistrationResult:
    """What a global registration back end reports."""

    rotation: np.ndarray
    translation: np.ndarray
    valid: bool = True
    num_final_inliers: int = 0


LocalRegistration = Callable[[np.ndarray, np.ndarray, GICPConfig], LocalRegistrationResult]
GlobalRegistration = Callable[[np.ndarray, np.ndarray], GlobalRegistrationResult]
CandidateSource = Callable[[PoseGraphNode, Sequence[PoseGraphNode]], Iterable[int]]


def _nearest_neighbours(src: np.ndarray, tgt: np.ndarray, chunk: int = 1024):
    """Index of and squared distance to the nearest target point for every source point."""
    indices = np.empty(len(src), dtype=np.int64)
    sq_dists = np.empty(len(src))
    for start in range(0, len(src), chunk):
        block = src[start : start + chunk]
        dist = ((block[:, None, :] - tgt[None, :, :]) ** 2).sum(axis=2)
        nearest = dist.argmin(axis=1)
        indices[start : start + chunk] = nearest
        sq_dists[start : start + chunk] = dist[np.arange(len(block)), nearest]
    return indices, sq_dists


def _best_fit_transform(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Rigid transform that best maps points ``a`` onto ``b`` in the least-squares sense."""
    centroid_a = a.mean(axis=0)
    centroid_b = b.mean(axis=0)
    h = (a - centroid_a).T @ (b - centroid_b)
    u, _, vt = np.linalg.svd(h)
    sign = np.sign(np.linalg.det(vt.T @ u.T)) or 1.0
    rotation = vt.T @ np.diag([1.0, 1.0, sign]) @ u.T
    return make_pose(rotation, centroid_b - rotation @ centroid_a)


def _point_to_point_icp(src, tgt, config: GICPConfig) -> LocalRegistrationResult:
    """Point-to-point ICP; inliers are pairs closer than ``config.max_corr_dist``."""
    src_xyz = finite_points(src)[:, :3]
    tgt_xyz = finite_points(tgt)[:, :3]
    transformation = np.eye(4)
    if len(src_xyz) == 0 or len(tgt_xyz) == 0:
        return LocalRegistrationResult(transformation=transformation, num_inliers=0)

    max_sq_dist = config.max_corr_dist**2
    for _ in range(config.max_num_iter):
        moved = src_xyz @ transformation[:3, :3].T + transformation[:3, 3]
        nearest, sq_dists = _nearest_neighbours(moved, tgt_xyz)
        mask = sq_dists < max_sq_dist
        if mask.sum() < 3:
            break
        delta = _best_fit_transform(moved[mask], tgt_xyz[nearest[mask]])
        transformation = delta @ transformation
        if (
            np.linalg.norm(delta[:3, 3]) < 1e-8
            and np.abs(delta[:3, :3] - np.eye(3)).max() < 1e-10
        ):
            break

    moved = src_xyz @ transformation[:3, :3].T + transformation[:3, 3]
    _, sq_dists = _nearest_neighbours(moved, tgt_xyz)
    num_inliers = int((sq_dists < max_sq_dist).sum())
    return LocalRegistrationResult(transformation=transformation, num_inliers=num_inliers)


def _empty_cloud(width: int = 4) -> np.ndarray:
    return np.empty((0, width))


class LoopClosure:
    """Finds loop candidates among keyframes and registers them coarse-to-fine."""

    def __init__(
        self,
        config: Optional[LoopClosureConfig] = None,
        *,
        global_registration: Optional[GlobalRegistration] = None,
        local_registration: Optional[LocalRegistration] = None,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = copy.deepcopy(config) if config is not None else LoopClosureConfig()
        gc = self.config.gicp_config
        gc.max_corr_dist = self.config.voxel_res * gc.scale_factor_for_corr_dist

        self._global_registration = global_registration
        self._local_registration = local_registration or _point_to_point_icp
        self._logger = logger or _DEFAULT_LOGGER
        self._clock = clock
        self._rng = rng or random.Random()
        self._last_success_icp_time: Optional[float] = None

        self.source_cloud = _empty_cloud()
        self.target_cloud = _empty_cloud()
        self.coarse_aligned_cloud = _empty_cloud()
        self.final_aligned_cloud = _empty_cloud()
        self.debug_cloud = _empty_cloud()

    def calculate_distance(self, pose1, pose2) -> float:
        """Distance between two poses: 3D in multi-layer scenes, otherwise on the XY plane."""
        p1 = np.asarray(pose1, dtype=float)
        p2 = np.asarray(pose2, dtype=float)
        dims = 3 if self.config.is_multilayer_env else 2
        return float(np.linalg.norm(p1[:dims, 3] - p2[:dims, 3]))

    def get_loop_candidates_from_query(
        self, query_frame: PoseGraphNode, keyframes: Sequence[PoseGraphNode]
    ) -> list[LoopCandidate]:
        """All keyframes but the last that are near the query and old enough."""
        radius = self.config.loop_detection_radius
        timediff_threshold = self.config.loop_detection_timediff_threshold
        candidates = []
        for keyframe in list(keyframes)[:-1]:
            dist = self.calculate_distance(keyframe.pose_corrected, query_frame.pose_corrected)
            time_diff = query_frame.timestamp - keyframe.timestamp
            if dist < radius and time_diff > timediff_threshold:
                candidates.append(LoopCandidate(found=True, idx=keyframe.idx, distance=dist))
        return candidates

    def get_closest_candidate(self, candidates: Sequence[LoopCandidate]) -> LoopCandidate:
        """The candidate with the smallest distance, or an unfound candidate if none."""
        if not candidates:
            return LoopCandidate()
        return min(candidates, key=lambda candidate: candidate.distance)

    def fetch_closest_loop_candidate(
        self, query_frame: PoseGraphNode, keyframes: Sequence[PoseGraphNode]
    ) -> list[LoopIdxPair]:
        """At most one (query index, match index) pair: the nearest candidate."""
        candidates = self.get_loop_candidates_from_query(query_frame, keyframes)
        if not candidates:
            return []
        return [(query_frame.idx, self.get_closest_candidate(candidates).idx)]

    def fetch_loop_candidates(
        self,
        query_frame: PoseGraphNode,
        keyframes: Sequence[PoseGraphNode],
        num_max_candidates: int = 3,
        reliable_window_sec: float = 30.0,
    ) -> list[LoopIdxPair]:
        """Loop index pairs to try for ``query_frame``.

        Shortly after a successful fine registration the poses are trusted and only
        the nearest candidate is returned; otherwise up to ``num_max_candidates``
        candidates are drawn at random.
        """
        if self._last_success_icp_time is not None:
            elapsed = self._clock() - self._last_success_icp_time
            if elapsed < reliable_window_sec:
                if self.config.verbose:
                    self._logger.info("The nearest loop candidate is returned.")
                return self.fetch_closest_loop_candidate(query_frame, keyframes)

        candidates = self.get_loop_candidates_from_query(query_frame, keyframes)
        if not candidates:
            return []
        self._rng.shuffle(candidates)
        return [
            (query_frame.idx, candidate.idx) for candidate in candidates[:num_max_candidates]
        ]

    def build_submap_clouds(
        self,
        keyframes: Sequence[PoseGraphNode],
        src_idx: int,
        tgt_idx: int,
        num_submap_keyframes: int,
        voxel_res: float,
        enable_global_registration: bool,
    ) -> tuple[np.ndarray, np.ndarray]:
        """World-frame, voxelized source and target clouds for a loop pair."""
        submap_range = num_submap_keyframes // 2

        def accumulate(center_idx: int) -> np.ndarray:
            start = max(center_idx - submap_range, 0)
            end = min(center_idx + submap_range + 1, len(keyframes))
            clouds = [
                transform_points(keyframe.scan, keyframe.pose_corrected)
                for keyframe in keyframes[start:end]
            ]
            return np.vstack(clouds) if clouds else _empty_cloud()

        def single(idx: int) -> np.ndarray:
            return transform_points(keyframes[idx].scan, keyframes[idx].pose_corrected)

        if num_submap_keyframes > 1:
            src_accum = accumulate(src_idx)
            tgt_accum = accumulate(tgt_idx)
        else:
            src_accum = single(src_idx)
            # Scan-to-submap works better than scan-to-scan when only ICP is used.
            tgt_accum = single(tgt_idx) if enable_global_registration else accumulate(tgt_idx)
        return voxelize(src_accum, voxel_res), voxelize(tgt_accum, voxel_res)

    def set_src_and_tgt_cloud(self, src_cloud, tgt_cloud) -> None:
        """Keep the clouds of the latest registration for visualization."""
        self.source_cloud = np.array(src_cloud, dtype=float)
        self.target_cloud = np.array(tgt_cloud, dtype=float)

    def icp_alignment(self, src, tgt) -> RegOutput:
        """Fine registration; valid when the inlier ratio exceeds the overlap threshold."""
        src_cloud = np.asarray(src, dtype=float)
        tgt_cloud = np.asarray(tgt, dtype=float)
        gc = self.config.gicp_config
        result = self._local_registration(src_cloud, tgt_cloud, gc)
        transformation = np.asarray(result.transformation, dtype=float)
        self.final_aligned_cloud = (
            transform_points(src_cloud, transformation) if len(src_cloud) else _empty_cloud()
        )

        if len(src_cloud):
            overlapness = result.num_inliers / len(src_cloud) * 100.0
        else:
            overlapness = math.nan
        output = RegOutput(overlapness=overlapness, pose=transformation.copy())

        accepted = overlapness > gc.overlap_threshold
        if accepted:
            output.is_valid = True
            output.is_converged = True
            self._last_success_icp_time = self._clock()
        if self.config.verbose:
            if accepted:
                self._logger.info(
                    "Overlapness: %.2f%% > %.2f%%", overlapness, gc.overlap_threshold
                )
            else:
                self._logger.warning(
                    "Overlapness: %.2f%% < %.2f%%", overlapness, gc.overlap_threshold
                )
        return output

    def coarse_to_fine_alignment(self, src, tgt) -> RegOutput:
        """Global registration followed by fine registration when enough inliers remain."""
        if self._global_registration is None:
            raise RuntimeError("no global registration back end is configured")
        src_cloud = np.asarray(src, dtype=float)
        tgt_cloud = np.asarray(tgt, dtype=float)

        solution = self._global_registration(
            finite_points(src_cloud)[:, :3], finite_points(tgt_cloud)[:, :3]
        )
        coarse_alignment = make_pose(solution.rotation, solution.translation)
        self.coarse_aligned_cloud = transform_points(src_cloud, coarse_alignment)

        num_inliers = int(solution.num_final_inliers)
        threshold = self.config.num_inliers_threshold
        if self.config.verbose:
            if num_inliers > threshold:
                self._logger.info("# final inliers: %d > %d", num_inliers, threshold)
            else:
                self._logger.warning("# final inliers: %d < %d", num_inliers, threshold)

        # Too few inliers means the coarse alignment likely failed; refining is pointless.
        if not solution.valid or num_inliers < threshold:
            return RegOutput(num_final_inliers=num_inliers)

        fine_output = self.icp_alignment(self.coarse_aligned_cloud, tgt_cloud)
        fine_output.pose = fine_output.pose @ coarse_alignment
        return fine_output

    def perform_loop_closure(
        self, keyframes: Sequence[PoseGraphNode], query_idx: int, match_idx: int
    ) -> RegOutput:
        """Register the query keyframe (or submap) against the matched one."""
        if match_idx < 0:
            return RegOutput()
        src_cloud, tgt_cloud = self.build_submap_clouds(
            keyframes,
            query_idx,
            match_idx,
            self.config.num_submap_keyframes,
            self.config.voxel_res,
            self.config.enable_global_registration,
        )
        self.set_src_and_tgt_cloud(src_cloud, tgt_cloud)

        if self.config.enable_global_registration:
            self._logger.info(
                "Execute coarse-to-fine alignment: # src = %d, # tgt = %d",
                len(src_cloud),
                len(tgt_cloud),
            )
            return self.coarse_to_fine_alignment(src_cloud, tgt_cloud)
        self._logger.info("Execute GICP: # src = %d, # tgt = %d", len(src_cloud), len(tgt_cloud))
        return self.icp_alignment(src_cloud, tgt_cloud)

    def perform_loop_closure_for_query(
        self, query_keyframe: PoseGraphNode, keyframes: Sequence[PoseGraphNode]
    ) -> RegOutput:
        """Register the query keyframe against its nearest loop candidate, if any."""
        pairs = self.fetch_closest_loop_candidate(query_keyframe, keyframes)
        if not pairs:
            return RegOutput()
        query_idx, match_idx = pairs[0]
        return self.perform_loop_closure(keyframes, query_idx, match_idx)


class LoopDetector:
    """Extension point for an appearance-based loop detector.

    A detector is given an optional ``candidate_source`` callable
    ``(query_frame, keyframes) -> iterable of keyframe indices``. Without one it
    proposes no loops.
    """

    def __init__(
        self,
        verbose: bool = False,
        logger: Optional[logging.Logger] = None,
        *,
        candidate_source: Optional[CandidateSource] = None,
    ) -> None:
        self.verbose = verbose
        self._logger = logger or _DEFAULT_LOGGER
        self._candidate_source = candidate_source

    def fetch_loop_candidates(
        self, query_frame: PoseGraphNode, keyframes: Sequence[PoseGraphNode]
    ) -> list[LoopIdxPair]:
        """Loop index pairs proposed for ``query_frame`` by the candidate source.

        Proposed indices outside the keyframe list, equal to the query itself or
        repeated are dropped; the order of the source is kept.
        """
        if self._candidate_source is None:
            pairs: list[LoopIdxPair] = []
        else:
            seen: set[int] = set()
            pairs = []
            for match in self._candidate_source(query_frame, keyframes):
                match_idx = int(match)
                if not 0 <= match_idx < len(keyframes):
                    continue
                if match_idx == query_frame.idx or match_idx in seen:
                    continue
                seen.add(match_idx)
                pairs.append((query_frame.idx, match_idx))
        if self.verbose:
            self._logger.info(
                "Loop detector proposed %d candidate(s) for keyframe %s",
                len(pairs),
                query_frame.idx,
            )
        return pairs