"""Map points: 3D landmarks observed by keyframes, with their viewing
direction, scale-invariance range and representative descriptor."""

from __future__ import annotations

import math
import threading
from typing import TYPE_CHECKING, ClassVar, Protocol, Sequence

import numpy as np

from semslam.descriptors import KeyPoint, descriptor_distance

if TYPE_CHECKING:
    from semslam.slam_map import SlamMap


class KeyFrameLike(Protocol):
    """What a map point needs from a keyframe that observes it."""

    id: int
    frame_id: int
    right_u: Sequence[float]
    descriptors: np.ndarray
    keys_un: Sequence[KeyPoint]
    scale_factors: Sequence[float]
    n_scale_levels: int
    is_bad: bool
    camera_center: np.ndarray

    def erase_map_point_match(self, idx: int) -> None: ...

    def replace_map_point_match(self, idx: int, point: "MapPoint") -> None: ...


def _vector(position) -> np.ndarray:
    arr = np.array(position, dtype=np.float32).reshape(-1)
    if arr.shape != (3,):
        raise ValueError(f"expected a 3-vector, got shape {arr.shape}")
    return arr


class MapPoint:
    """A landmark in the map together with the keyframes that observe it."""

    next_id: ClassVar[int] = 0
    global_lock: ClassVar[threading.Lock] = threading.Lock()

    def __init__(
        self,
        position,
        slam_map: "SlamMap",
        reference_keyframe: KeyFrameLike | None = None,
        first_kf_id: int | None = None,
        first_frame: int | None = None,
    ) -> None:
        if first_kf_id is None:
            first_kf_id = reference_keyframe.id if reference_keyframe is not None else 0
        if first_frame is None:
            first_frame = reference_keyframe.frame_id if reference_keyframe is not None else 0
        self.first_kf_id = first_kf_id
        self.first_frame = first_frame
        self.reference_keyframe = reference_keyframe
        self.slam_map = slam_map

        self.track_reference_for_frame = 0
        self.last_frame_seen = 0
        self.ba_local_for_kf = 0
        self.fuse_candidate_for_kf = 0
        self.loop_point_for_kf = 0
        self.corrected_by_kf = 0
        self.corrected_reference = 0
        self.ba_global_for_kf = 0
        self.pos_gba: np.ndarray | None = None

        self._lock = threading.RLock()
        self._world_pos = _vector(position)
        self._normal = np.zeros(3, dtype=np.float32)
        self._descriptor = np.zeros(0, dtype=np.uint8)
        self._observations: dict[KeyFrameLike, int] = {}
        self._n_obs = 0
        self._visible = 1
        self._found = 1
        self._bad = False
        self._replaced: MapPoint | None = None
        self._min_distance = 0.0
        self._max_distance = 0.0

        with slam_map.point_creation_lock:
            self.id = MapPoint.next_id
            MapPoint.next_id += 1

    def __repr__(self) -> str:
        return f"MapPoint(id={self.id}, pos={self.world_pos.tolist()})"

    @property
    def world_pos(self) -> np.ndarray:
        with self._lock:
            return self._world_pos.copy()

    def set_world_pos(self, position) -> None:
        """Move the point; the position is copied."""
        value = _vector(position)
        with MapPoint.global_lock, self._lock:
            self._world_pos = value

    @property
    def normal(self) -> np.ndarray:
        with self._lock:
            return self._normal.copy()

    @property
    def descriptor(self) -> np.ndarray:
        with self._lock:
            return self._descriptor.copy()

    @property
    def observations(self) -> dict[KeyFrameLike, int]:
        with self._lock:
            return dict(self._observations)

    @property
    def n_observations(self) -> int:
        """Observation count; a stereo observation counts twice."""
        with self._lock:
            return self._n_obs

    @property
    def bad(self) -> bool:
        with self._lock:
            return self._bad

    @property
    def replaced(self) -> "MapPoint | None":
        with self._lock:
            return self._replaced

    def add_observation(self, keyframe: KeyFrameLike, idx: int) -> None:
        """Record that ``keyframe`` sees this point as its feature ``idx``."""
        with self._lock:
            if keyframe in self._observations:
                return
            self._observations[keyframe] = idx
            self._n_obs += 2 if keyframe.right_u[idx] >= 0 else 1

    def erase_observation(self, keyframe: KeyFrameLike) -> None:
        """Forget an observation; the point turns bad when two or fewer remain."""
        became_bad = False
        with self._lock:
            if keyframe in self._observations:
                idx = self._observations.pop(keyframe)
                self._n_obs -= 2 if keyframe.right_u[idx] >= 0 else 1
                if self.reference_keyframe is keyframe:
                    self.reference_keyframe = next(iter(self._observations), None)
                became_bad = self._n_obs <= 2
        if became_bad:
            self.set_bad_flag()

    def set_bad_flag(self) -> None:
        """Mark as bad, detach from every observing keyframe and leave the map."""
        with self._lock:
            self._bad = True
            obs = self._observations
            self._observations = {}
        for keyframe, idx in obs.items():
            keyframe.erase_map_point_match(idx)
        self.slam_map.erase_map_point(self)

    def replace(self, other: "MapPoint") -> None:
        """Hand all observations and counters over to ``other`` and retire."""
        if other.id == self.id:
            return
        with self._lock:
            obs = self._observations
            self._observations = {}
            self._bad = True
            visible, found = self._visible, self._found
            self._replaced = other

        for keyframe, idx in obs.items():
            if not other.is_in_keyframe(keyframe):
                keyframe.replace_map_point_match(idx, other)
                other.add_observation(keyframe, idx)
            else:
                keyframe.erase_map_point_match(idx)
        other.increase_found(found)
        other.increase_visible(visible)
        other.compute_distinctive_descriptors()
        self.slam_map.erase_map_point(self)

    def increase_visible(self, n: int = 1) -> None:
        with self._lock:
            self._visible += n

    def increase_found(self, n: int = 1) -> None:
        with self._lock:
            self._found += n

    def found_ratio(self) -> float:
        """Times found over times predicted visible."""
        with self._lock:
            return self._found / self._visible

    def compute_distinctive_descriptors(self) -> None:
        """Keep the observed descriptor with the least median distance to the others."""
        with self._lock:
            if self._bad:
                return
            obs = dict(self._observations)
        descriptors = [
            np.asarray(kf.descriptors[idx], dtype=np.uint8)
            for kf, idx in obs.items()
            if not kf.is_bad
        ]
        if not descriptors:
            return

        n = len(descriptors)
        distances = np.zeros((n, n), dtype=np.int64)
        for i in range(n):
            for j in range(i + 1, n):
                d = descriptor_distance(descriptors[i], descriptors[j])
                distances[i, j] = distances[j, i] = d

        median_pos = int(0.5 * (n - 1))
        medians = np.sort(distances, axis=1)[:, median_pos]
        best = int(np.argmin(medians))
        with self._lock:
            self._descriptor = descriptors[best].copy()

    def index_in_keyframe(self, keyframe: KeyFrameLike) -> int:
        """Feature index of this point in ``keyframe``, or -1."""
        with self._lock:
            return self._observations.get(keyframe, -1)

    def is_in_keyframe(self, keyframe: KeyFrameLike) -> bool:
        with self._lock:
            return keyframe in self._observations

    def update_normal_and_depth(self) -> None:
        """Recompute the mean viewing direction and the distance range over
        which the point can be recognised."""
        with self._lock:
            if self._bad:
                return
            obs = dict(self._observations)
            ref = self.reference_keyframe
            pos = self._world_pos.astype(np.float64)
        if not obs or ref is None:
            return

        normal = np.zeros(3)
        for keyframe in obs:
            direction = pos - np.asarray(keyframe.camera_center, dtype=np.float64).reshape(3)
            normal += direction / np.linalg.norm(direction)

        dist = float(np.linalg.norm(pos - np.asarray(ref.camera_center, dtype=np.float64).reshape(3)))
        level = ref.keys_un[obs.get(ref, 0)].octave
        level_scale = ref.scale_factors[level]
        top_scale = ref.scale_factors[ref.n_scale_levels - 1]

        with self._lock:
            self._max_distance = dist * level_scale
            self._min_distance = self._max_distance / top_scale
            self._normal = (normal / len(obs)).astype(np.float32)

    def min_distance_invariance(self) -> float:
        with self._lock:
            return 0.8 * self._min_distance

    def max_distance_invariance(self) -> float:
        with self._lock:
            return 1.2 * self._max_distance

    def predict_scale(self, current_dist: float, log_scale_factor: float) -> int:
        """Pyramid level at which the point should appear from ``current_dist``."""
        with self._lock:
            ratio = self._max_distance / current_dist
        return math.ceil(math.log(ratio) / log_scale_factor)