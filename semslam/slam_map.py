"""The map: the sets of keyframes and map points, shared between threads."""

from __future__ import annotations

import threading
from typing import Any, Iterable


class SlamMap:
    """Keyframes and map points with the locks that guard their updates."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.map_update_lock = threading.RLock()
        self.point_creation_lock = threading.Lock()
        self._keyframes: dict[Any, None] = {}
        self._map_points: dict[Any, None] = {}
        self._reference_points: list[Any] = []
        self._max_kf_id = 0
        self.keyframe_origins: list[Any] = []

    def add_keyframe(self, keyframe) -> None:
        with self._lock:
            self._keyframes[keyframe] = None
            if keyframe.id > self._max_kf_id:
                self._max_kf_id = keyframe.id

    def add_map_point(self, point) -> None:
        with self._lock:
            self._map_points[point] = None

    def erase_map_point(self, point) -> None:
        with self._lock:
            self._map_points.pop(point, None)

    def erase_keyframe(self, keyframe) -> None:
        with self._lock:
            self._keyframes.pop(keyframe, None)

    def set_reference_map_points(self, points: Iterable) -> None:
        with self._lock:
            self._reference_points = list(points)

    def all_keyframes(self) -> list:
        with self._lock:
            return list(self._keyframes)

    def all_map_points(self) -> list:
        with self._lock:
            return list(self._map_points)

    def map_points_in_map(self) -> int:
        with self._lock:
            return len(self._map_points)

    def keyframes_in_map(self) -> int:
        with self._lock:
            return len(self._keyframes)

    def reference_map_points(self) -> list:
        with self._lock:
            return list(self._reference_points)

    def max_kf_id(self) -> int:
        with self._lock:
            return self._max_kf_id

    def clear(self) -> None:
        """Drop every keyframe, map point and reference."""
        with self._lock:
            self._map_points.clear()
            self._keyframes.clear()
            self._max_kf_id = 0
            self._reference_points = []
            self.keyframe_origins = []