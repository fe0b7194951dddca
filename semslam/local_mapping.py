"""Local mapping: the queue of keyframes waiting to be integrated into the
map, the culling of weak map points and redundant keyframes, and the
stop/release/reset/finish handshake with the other threads."""

from __future__ import annotations

import threading
from collections import deque
from typing import Iterable, Protocol, Sequence

from semslam.descriptors import KeyPoint
from semslam.map_point import MapPoint

# A keyframe is redundant when this share of its points is seen elsewhere.
REDUNDANCY_RATIO = 0.9
# Observations (besides the keyframe itself) that make a point redundant.
REDUNDANT_OBSERVATIONS = 3
# Recent points seen in fewer frames than predicted by this ratio are culled.
MIN_FOUND_RATIO = 0.25


class CullableKeyFrame(Protocol):
    """What keyframe culling needs from a keyframe."""

    id: int
    map_points: Sequence[MapPoint | None]
    depths: Sequence[float]
    th_depth: float
    keys_un: Sequence[KeyPoint]

    def set_bad_flag(self) -> None: ...


class LocalMapping:
    """State and maintenance steps of the local mapping thread."""

    def __init__(self, slam_map, monocular: bool) -> None:
        self.slam_map = slam_map
        self.monocular = bool(monocular)

        self._new_kfs_lock = threading.Lock()
        self._new_keyframes: deque = deque()
        self._recent_points: list[MapPoint] = []
        self._abort_ba = False

        self._stop_lock = threading.Lock()
        self._stopped = False
        self._stop_requested = False
        self._not_stop = False

        self._accept_lock = threading.Lock()
        self._accept_keyframes = True

        self._reset_cond = threading.Condition()
        self._reset_requested = False

        self._finish_lock = threading.Lock()
        self._finish_requested = False
        self._finished = True

    @property
    def abort_ba(self) -> bool:
        """Whether a running local bundle adjustment should give up."""
        return self._abort_ba

    @property
    def pending_keyframes(self) -> list:
        with self._new_kfs_lock:
            return list(self._new_keyframes)

    @property
    def recent_map_points(self) -> list[MapPoint]:
        return list(self._recent_points)

    def insert_keyframe(self, keyframe) -> None:
        """Queue a keyframe and ask any running bundle adjustment to stop."""
        with self._new_kfs_lock:
            self._new_keyframes.append(keyframe)
            self._abort_ba = True

    def has_new_keyframes(self) -> bool:
        with self._new_kfs_lock:
            return bool(self._new_keyframes)

    def add_recent_map_point(self, point: MapPoint) -> None:
        """Put a freshly created point under probation."""
        self._recent_points.append(point)

    def map_point_culling(self, current_kf_id: int) -> None:
        """Drop recent points that are bad, rarely found or observed by too
        few keyframes; points that survive three keyframes leave probation."""
        th_obs = 2 if self.monocular else 3
        kept: list[MapPoint] = []
        for point in self._recent_points:
            age = current_kf_id - point.first_kf_id
            if point.bad:
                continue
            if point.found_ratio() < MIN_FOUND_RATIO:
                point.set_bad_flag()
            elif age >= 2 and point.n_observations <= th_obs:
                point.set_bad_flag()
            elif age >= 3:
                continue
            else:
                kept.append(point)
        self._recent_points = kept

    def keyframe_culling(self, keyframes: Iterable[CullableKeyFrame]) -> list:
        """Mark as bad each keyframe whose points are mostly seen by at least
        three other keyframes at the same or a finer scale. Only close points
        count when not monocular. Returns the keyframes marked bad."""
        culled = []
        for keyframe in keyframes:
            if keyframe.id == 0:
                continue
            n_points = 0
            n_redundant = 0
            for i, point in enumerate(keyframe.map_points):
                if point is None or point.bad:
                    continue
                if not self.monocular:
                    depth = keyframe.depths[i]
                    if depth > keyframe.th_depth or depth < 0:
                        continue
                n_points += 1
                if point.n_observations <= REDUNDANT_OBSERVATIONS:
                    continue
                scale_level = keyframe.keys_un[i].octave
                n_obs = 0
                for other, idx in point.observations.items():
                    if other is keyframe:
                        continue
                    if other.keys_un[idx].octave <= scale_level + 1:
                        n_obs += 1
                        if n_obs >= REDUNDANT_OBSERVATIONS:
                            break
                if n_obs >= REDUNDANT_OBSERVATIONS:
                    n_redundant += 1
            if n_redundant > REDUNDANCY_RATIO * n_points:
                keyframe.set_bad_flag()
                culled.append(keyframe)
        return culled

    def request_stop(self) -> None:
        with self._stop_lock:
            self._stop_requested = True
            with self._new_kfs_lock:
                self._abort_ba = True

    def stop(self) -> bool:
        """Stop if a stop was requested and stopping is allowed."""
        with self._stop_lock:
            if self._stop_requested and not self._not_stop:
                self._stopped = True
                return True
            return False

    def is_stopped(self) -> bool:
        with self._stop_lock:
            return self._stopped

    def stop_requested(self) -> bool:
        with self._stop_lock:
            return self._stop_requested

    def release(self) -> None:
        """Resume after a stop, discarding queued keyframes."""
        with self._stop_lock, self._finish_lock:
            if self._finished:
                return
            self._stopped = False
            self._stop_requested = False
            with self._new_kfs_lock:
                self._new_keyframes.clear()

    def accept_keyframes(self) -> bool:
        with self._accept_lock:
            return self._accept_keyframes

    def set_accept_keyframes(self, flag: bool) -> None:
        with self._accept_lock:
            self._accept_keyframes = bool(flag)

    def set_not_stop(self, flag: bool) -> bool:
        """Forbid or allow stopping; forbidding fails once already stopped."""
        with self._stop_lock:
            if flag and self._stopped:
                return False
            self._not_stop = bool(flag)
            return True

    def interrupt_ba(self) -> None:
        self._abort_ba = True

    def request_reset(self, timeout: float | None = None) -> None:
        """Ask for a reset and wait until the mapping loop has performed it.

        Raises TimeoutError, withdrawing the request, if it is not done
        within ``timeout`` seconds.
        """
        with self._reset_cond:
            self._reset_requested = True
            done = self._reset_cond.wait_for(
                lambda: not self._reset_requested, timeout=timeout
            )
            if not done:
                self._reset_requested = False
                raise TimeoutError("local mapping did not reset in time")

    def reset_if_requested(self) -> bool:
        """Perform a pending reset; returns whether one was done."""
        with self._reset_cond:
            if not self._reset_requested:
                return False
            with self._new_kfs_lock:
                self._new_keyframes.clear()
            self._recent_points = []
            self._reset_requested = False
            self._reset_cond.notify_all()
            return True

    def request_finish(self) -> None:
        with self._finish_lock:
            self._finish_requested = True

    def check_finish(self) -> bool:
        with self._finish_lock:
            return self._finish_requested

    def set_finish(self) -> None:
        with self._finish_lock:
            self._finished = True
            with self._stop_lock:
                self._stopped = True

    def is_finished(self) -> bool:
        with self._finish_lock:
            return self._finished