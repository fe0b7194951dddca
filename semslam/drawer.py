"""Geometry for drawing the map: camera matrices in OpenGL layout, camera
frustum wireframes, map point layers and graph edges between keyframes."""

from __future__ import annotations

from typing import Iterable, Protocol, Sequence

import numpy as np

Vertex = tuple[float, float, float]
Segment = tuple[Vertex, Vertex]


class DrawableKeyFrame(Protocol):
    """What drawing the keyframe graph needs from a keyframe."""

    id: int
    camera_center: np.ndarray
    parent: "DrawableKeyFrame | None"
    loop_edges: Iterable["DrawableKeyFrame"]

    def covisibles_by_weight(self, weight: int) -> Sequence["DrawableKeyFrame"]: ...


def opengl_camera_matrix(pose) -> np.ndarray:
    """Camera-to-world transform of a world-to-camera pose as 16 values in
    column-major order; the identity when there is no pose."""
    if pose is None:
        return np.eye(4).reshape(-1)
    arr = np.asarray(pose, dtype=np.float64)
    if arr.size == 0:
        return np.eye(4).reshape(-1)
    if arr.shape not in ((3, 4), (4, 4)):
        raise ValueError(f"expected a 3x4 or 4x4 pose, got shape {arr.shape}")
    rwc = arr[:3, :3].T
    twc = -rwc @ arr[:3, 3]
    twc_full = np.eye(4)
    twc_full[:3, :3] = rwc
    twc_full[:3, 3] = twc
    return twc_full.reshape(-1, order="F")


def frustum_segments(size: float) -> list[Segment]:
    """Line segments of a camera pyramid of half-width ``size`` with its apex
    at the origin, looking along +z."""
    w = float(size)
    h = w * 0.75
    z = w * 0.6
    origin = (0.0, 0.0, 0.0)
    corners = [(w, h, z), (w, -h, z), (-w, -h, z), (-w, h, z)]
    segments: list[Segment] = [(origin, corner) for corner in corners]
    segments += [
        ((w, h, z), (w, -h, z)),
        ((-w, h, z), (-w, -h, z)),
        ((-w, h, z), (w, h, z)),
        ((-w, -h, z), (w, -h, z)),
    ]
    return segments


def _vertex(position) -> Vertex:
    x, y, z = np.asarray(position, dtype=np.float64).reshape(-1)[:3]
    return (float(x), float(y), float(z))


def map_point_layers(slam_map) -> tuple[list[Vertex], list[Vertex]]:
    """Positions of the good map points, split into ordinary points and the
    current reference points."""
    points = slam_map.all_map_points()
    if not points:
        return [], []
    references = list(dict.fromkeys(slam_map.reference_map_points()))
    reference_set = set(references)

    ordinary = [
        _vertex(p.world_pos) for p in points if not p.bad and p not in reference_set
    ]
    highlighted = [_vertex(p.world_pos) for p in references if not p.bad]
    return ordinary, highlighted


def graph_edges(keyframes: Iterable[DrawableKeyFrame], min_weight: int = 100) -> list[Segment]:
    """Segments between camera centres for strong covisibility links, the
    spanning tree and loop closures; each covisibility or loop link is drawn
    once, from the keyframe with the smaller id."""
    edges: list[Segment] = []
    for kf in keyframes:
        center = _vertex(kf.camera_center)
        for other in kf.covisibles_by_weight(min_weight):
            if other.id < kf.id:
                continue
            edges.append((center, _vertex(other.camera_center)))
        if kf.parent is not None:
            edges.append((center, _vertex(kf.parent.camera_center)))
        for other in kf.loop_edges:
            if other.id < kf.id:
                continue
            edges.append((center, _vertex(other.camera_center)))
    return edges