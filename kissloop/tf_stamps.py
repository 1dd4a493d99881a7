"""Stamped transforms between frames and time stamps that keep advancing between updates."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from kissloop.geometry import quaternion_from_rotation

_DEFAULT_LOGGER = logging.getLogger(__name__)


@dataclass
class TransformStamped:
    """A transform from ``frame_id`` to ``child_frame_id`` at time ``stamp`` (nanoseconds)."""

    stamp: int
    frame_id: str
    child_frame_id: str
    translation: tuple[float, float, float]
    rotation: tuple[float, float, float, float]


def pose_to_transform(pose, parent_frame: str, child_frame: str, stamp: int) -> TransformStamped:
    """Describe a 4x4 pose as a stamped transform with an (x, y, z, w) rotation."""
    p = np.asarray(pose, dtype=float)
    if p.shape != (4, 4):
        raise ValueError("pose must be a 4x4 matrix")
    q = quaternion_from_rotation(p[:3, :3])
    return TransformStamped(
        stamp=stamp,
        frame_id=parent_frame,
        child_frame_id=child_frame,
        translation=tuple(float(v) for v in p[:3, 3]),
        rotation=tuple(float(v) for v in q),
    )


class StampExtrapolator:
    """Advances the stamps of two static clouds with wall time.

    Real-time data can only be shown against transforms whose stamps keep up,
    so the last received stamps are pushed forward by the time elapsed since
    either of them last changed. All times are in nanoseconds.
    """

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or _DEFAULT_LOGGER
        self._source_base: Optional[int] = None
        self._target_base: Optional[int] = None
        self._last_real_time = 0
        self._has_warned = False

    def update(
        self, source_stamp: Optional[int], target_stamp: Optional[int], now: int
    ) -> Optional[tuple[int, int]]:
        """Stamps to publish the source and target frames with, or None while a cloud is missing."""
        if source_stamp is None or target_stamp is None:
            if not self._has_warned:
                self._logger.warning("Waiting for map clouds...")
                self._has_warned = True
            return None

        if self._source_base is None or source_stamp != self._source_base:
            self._source_base = source_stamp
            self._last_real_time = now
        if self._target_base is None or target_stamp != self._target_base:
            self._target_base = target_stamp
            self._last_real_time = now

        elapsed = max(now - self._last_real_time, 0)
        return self._source_base + elapsed, self._target_base + elapsed