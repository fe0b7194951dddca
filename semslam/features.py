"""Low-level image and keypoint operations used by the feature extractor:
FAST corner detection, quadtree keypoint distribution, bilinear resizing,
Gaussian smoothing and reflective border padding."""

from __future__ import annotations

import dataclasses
import math
from collections import deque
from dataclasses import dataclass, field
from typing import Iterable, Sequence

import numpy as np

from semslam.descriptors import KeyPoint

Point = tuple[int, int]

# Bresenham circle of radius 3 as (dx, dy), in contiguous order.
_CIRCLE = (
    (0, 3), (1, 3), (2, 2), (3, 1), (3, 0), (3, -1), (2, -2), (1, -3),
    (0, -3), (-1, -3), (-2, -2), (-3, -1), (-3, 0), (-3, 1), (-2, 2), (-1, 3),
)
_ARC = 9
_FAST_KEYPOINT_SIZE = 7.0


@dataclass(eq=False)
class ExtractorNode:
    """A rectangular cell of the keypoint quadtree and the keypoints inside it."""

    ul: Point
    ur: Point
    bl: Point
    br: Point
    keys: list[KeyPoint] = field(default_factory=list)
    no_more: bool = False

    def divide(self) -> tuple["ExtractorNode", "ExtractorNode", "ExtractorNode", "ExtractorNode"]:
        """Split into four quadrants (upper-left, upper-right, lower-left,
        lower-right) and share the keypoints between them."""
        half_x = math.ceil((self.ur[0] - self.ul[0]) / 2)
        half_y = math.ceil((self.br[1] - self.ul[1]) / 2)
        ux, uy = self.ul

        n1 = ExtractorNode(
            ul=self.ul,
            ur=(ux + half_x, uy),
            bl=(ux, uy + half_y),
            br=(ux + half_x, uy + half_y),
        )
        n2 = ExtractorNode(ul=n1.ur, ur=self.ur, bl=n1.br, br=(self.ur[0], uy + half_y))
        n3 = ExtractorNode(ul=n1.bl, ur=n1.br, bl=self.bl, br=(n1.br[0], self.bl[1]))
        n4 = ExtractorNode(ul=n3.ur, ur=n2.br, bl=n3.br, br=self.br)

        split_x, split_y = n1.ur[0], n1.br[1]
        for kp in self.keys:
            if kp.x < split_x:
                (n1 if kp.y < split_y else n3).keys.append(kp)
            elif kp.y < split_y:
                n2.keys.append(kp)
            else:
                n4.keys.append(kp)

        for child in (n1, n2, n3, n4):
            if len(child.keys) == 1:
                child.no_more = True
        return n1, n2, n3, n4


def _round_half_away(value: float) -> int:
    return int(math.floor(abs(value) + 0.5)) * (1 if value >= 0 else -1)


def _push_children(nodes: deque, children: Iterable[ExtractorNode], expand: list) -> int:
    added = 0
    for child in children:
        if child.keys:
            nodes.appendleft(child)
            if len(child.keys) > 1:
                expand.append((len(child.keys), child))
                added += 1
    return added


def distribute_oct_tree(
    keypoints: Sequence[KeyPoint],
    min_x: int,
    max_x: int,
    min_y: int,
    max_y: int,
    n: int,
) -> list[KeyPoint]:
    """Spread keypoints evenly by subdividing the region until about ``n``
    cells hold keypoints, then keep the strongest keypoint of each cell.

    Keypoint coordinates are relative to ``(min_x, min_y)``. The returned
    keypoints are copies.
    """
    width = max_x - min_x
    height = max_y - min_y
    if width <= 0 or height <= 0:
        raise ValueError(f"empty region: {width}x{height}")

    n_ini = max(1, _round_half_away(width / height))
    h_x = width / n_ini

    initial = [
        ExtractorNode(
            ul=(int(h_x * i), 0),
            ur=(int(h_x * (i + 1)), 0),
            bl=(int(h_x * i), height),
            br=(int(h_x * (i + 1)), height),
        )
        for i in range(n_ini)
    ]
    for kp in keypoints:
        index = min(max(int(kp.x / h_x), 0), n_ini - 1)
        initial[index].keys.append(kp)

    nodes: list[ExtractorNode] = []
    for node in initial:
        if len(node.keys) == 1:
            node.no_more = True
        if node.keys:
            nodes.append(node)

    finished = False
    while not finished:
        prev_size = len(nodes)
        front: deque = deque()
        kept: list[ExtractorNode] = []
        to_expand: list[tuple[int, ExtractorNode]] = []
        n_to_expand = 0

        for node in nodes:
            if node.no_more:
                kept.append(node)
            else:
                n_to_expand += _push_children(front, node.divide(), to_expand)
        nodes = list(front) + kept

        if len(nodes) >= n or len(nodes) == prev_size:
            finished = True
        elif len(nodes) + n_to_expand * 3 > n:
            while not finished:
                prev_size = len(nodes)
                previous = sorted(to_expand, key=lambda pair: pair[0])
                to_expand = []
                work = deque(nodes)
                for _, node in reversed(previous):
                    _push_children(work, node.divide(), to_expand)
                    work.remove(node)
                    if len(work) >= n:
                        break
                nodes = list(work)
                if len(nodes) >= n or len(nodes) == prev_size:
                    finished = True

    result = []
    for node in nodes:
        best = node.keys[0]
        for kp in node.keys[1:]:
            if kp.response > best.response:
                best = kp
        result.append(dataclasses.replace(best))
    return result


def fast_detect(image, threshold: int, nonmax: bool = True) -> list[KeyPoint]:
    """FAST-9 corners of a single-channel image, in row-major order.

    A pixel is a corner when nine contiguous pixels of the radius-3 circle
    are all brighter than it by more than ``threshold`` or all darker by more
    than ``threshold``. The response is the largest threshold that still
    detects it.
    """
    arr = np.asarray(image)
    if arr.ndim != 2:
        raise ValueError("expected a single-channel image")
    threshold = min(max(int(threshold), 0), 255)
    img = arr.astype(np.int32)
    rows, cols = img.shape
    if rows < 7 or cols < 7:
        return []

    center = img[3:rows - 3, 3:cols - 3]
    diffs = np.stack(
        [img[3 + dy:rows - 3 + dy, 3 + dx:cols - 3 + dx] - center for dx, dy in _CIRCLE]
    )
    ring = len(_CIRCLE)
    extended = np.concatenate([diffs, diffs[:_ARC - 1]])

    bright = extended[0:ring]
    dark = -extended[0:ring]
    for k in range(1, _ARC):
        bright = np.minimum(bright, extended[k:k + ring])
        dark = np.minimum(dark, -extended[k:k + ring])
    score = np.maximum(bright.max(axis=0), dark.max(axis=0)) - 1
    corner = score >= threshold

    if nonmax:
        score_map = np.zeros((rows + 2, cols + 2), dtype=np.int64)
        score_map[4:rows - 2, 4:cols - 2] = np.where(corner, score, 0)
        inner = score_map[4:rows - 2, 4:cols - 2]
        for dy in (-1, 0, 1):
            for dx in (-1, 0, 1):
                if dx == 0 and dy == 0:
                    continue
                neighbour = score_map[4 + dy:rows - 2 + dy, 4 + dx:cols - 2 + dx]
                corner &= inner > neighbour

    ys, xs = np.nonzero(corner)
    return [
        KeyPoint(
            x=float(x + 3),
            y=float(y + 3),
            size=_FAST_KEYPOINT_SIZE,
            response=float(score[y, x]),
        )
        for y, x in zip(ys.tolist(), xs.tolist())
    ]


def _to_dtype(values: np.ndarray, dtype: np.dtype) -> np.ndarray:
    if np.issubdtype(dtype, np.integer):
        info = np.iinfo(dtype)
        return np.clip(np.rint(values), info.min, info.max).astype(dtype)
    return values.astype(dtype)


def _bilinear_axis(dst: int, src: int) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    scale = src / dst
    f = (np.arange(dst) + 0.5) * scale - 0.5
    i0 = np.floor(f).astype(np.int64)
    a = f - i0
    low = i0 < 0
    a[low] = 0.0
    i0[low] = 0
    high = i0 >= src - 1
    a[high] = 0.0
    i0[high] = src - 1
    i1 = np.minimum(i0 + 1, src - 1)
    return i0, i1, a


def resize_bilinear(image, width: int, height: int) -> np.ndarray:
    """Resize a single-channel image with bilinear interpolation on pixel centres."""
    src = np.asarray(image)
    if src.ndim != 2:
        raise ValueError("expected a single-channel image")
    if width <= 0 or height <= 0:
        raise ValueError(f"invalid target size {width}x{height}")
    if src.size == 0:
        raise ValueError("cannot resize an empty image")

    x0, x1, ax = _bilinear_axis(width, src.shape[1])
    y0, y1, ay = _bilinear_axis(height, src.shape[0])
    data = src.astype(np.float64)

    top = data[y0][:, x0] * (1 - ax) + data[y0][:, x1] * ax
    bottom = data[y1][:, x0] * (1 - ax) + data[y1][:, x1] * ax
    out = top * (1 - ay)[:, None] + bottom * ay[:, None]
    return _to_dtype(out, src.dtype)


def pad_reflect101(image, border: int) -> np.ndarray:
    """Pad on all sides by mirroring about the edge pixels (edge not repeated)."""
    arr = np.asarray(image)
    if border < 0:
        raise ValueError("border must not be negative")
    if border == 0:
        return arr.copy()
    if min(arr.shape[:2]) < 2:
        raise ValueError("reflective padding needs at least two pixels per axis")
    widths = [(border, border), (border, border)] + [(0, 0)] * (arr.ndim - 2)
    return np.pad(arr, widths, mode="reflect")


def _gaussian_kernel(ksize: int, sigma: float) -> np.ndarray:
    if sigma <= 0:
        sigma = 0.3 * ((ksize - 1) * 0.5 - 1) + 0.8
    x = np.arange(ksize) - (ksize - 1) / 2
    kernel = np.exp(-(x * x) / (2 * sigma * sigma))
    return kernel / kernel.sum()


def gaussian_blur(image, ksize: int, sigma: float) -> np.ndarray:
    """Separable Gaussian smoothing of a single-channel image with
    reflect-101 borders. A non-positive ``sigma`` is derived from ``ksize``."""
    src = np.asarray(image)
    if src.ndim != 2:
        raise ValueError("expected a single-channel image")
    if ksize <= 0 or ksize % 2 == 0:
        raise ValueError("ksize must be a positive odd number")
    kernel = _gaussian_kernel(ksize, sigma)
    radius = ksize // 2
    rows, cols = src.shape

    padded = pad_reflect101(src.astype(np.float64), radius) if radius else src.astype(np.float64)
    horizontal = sum(w * padded[:, i:i + cols] for i, w in enumerate(kernel))
    out = sum(w * horizontal[i:i + rows, :] for i, w in enumerate(kernel))
    return _to_dtype(out, src.dtype)