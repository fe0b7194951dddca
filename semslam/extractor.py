"""Multi-scale ORB feature extraction: image pyramid, FAST detection spread
over a quadtree, orientation, descriptors and removal of keypoints that lie
on moving (people) regions of a semantic label image."""

from __future__ import annotations

import dataclasses
import math
from typing import Sequence

import numpy as np

from semslam.descriptors import (
    DESCRIPTOR_BYTES,
    EDGE_THRESHOLD,
    PATCH_SIZE,
    KeyPoint,
    compute_descriptors,
    ic_angle,
    umax_table,
)
from semslam.features import (
    distribute_oct_tree,
    fast_detect,
    gaussian_blur,
    resize_bilinear,
)

PEOPLE_LABEL = 15
_CELL_SIZE = 30.0
_SEARCH_HALF_WINDOW = 15


class ORBExtractor:
    """Detects and describes ORB features over a scale pyramid."""

    def __init__(
        self,
        n_features: int,
        scale_factor: float,
        n_levels: int,
        ini_th_fast: int,
        min_th_fast: int,
    ) -> None:
        if n_levels < 1:
            raise ValueError("n_levels must be at least 1")
        if scale_factor <= 1.0:
            raise ValueError("scale_factor must be greater than 1")
        if n_features < 0:
            raise ValueError("n_features must not be negative")

        self.n_features = n_features
        self.scale_factor = scale_factor
        self.n_levels = n_levels
        self.ini_th_fast = ini_th_fast
        self.min_th_fast = min_th_fast

        self.scale_factors = [scale_factor ** level for level in range(n_levels)]
        self.level_sigma2 = [s * s for s in self.scale_factors]
        self.inv_scale_factors = [1.0 / s for s in self.scale_factors]
        self.inv_level_sigma2 = [1.0 / s2 for s2 in self.level_sigma2]

        factor = 1.0 / scale_factor
        desired = n_features * (1 - factor) / (1 - factor ** n_levels)
        per_level = []
        for _ in range(n_levels - 1):
            per_level.append(int(np.rint(desired)))
            desired *= factor
        per_level.append(max(n_features - sum(per_level), 0))
        self.features_per_level = per_level

        self.umax = umax_table()
        self.pyramid: list[np.ndarray] = []

    def compute_pyramid(self, image) -> list[np.ndarray]:
        """Build the scale pyramid of a grey image; each level is the previous
        one resized by the inverse scale factor."""
        img = np.asarray(image)
        if img.ndim != 2:
            raise ValueError("expected a single-channel image")
        rows, cols = img.shape
        pyramid: list[np.ndarray] = []
        for level, scale in enumerate(self.inv_scale_factors):
            width = int(np.rint(cols * scale))
            height = int(np.rint(rows * scale))
            if level == 0:
                pyramid.append(img.copy())
            else:
                pyramid.append(resize_bilinear(pyramid[-1], width, height))
        self.pyramid = pyramid
        return pyramid

    def detect(self, image) -> list[list[KeyPoint]]:
        """Detect oriented keypoints on every pyramid level; coordinates are
        in each level's own pixel frame."""
        img = np.asarray(image)
        if img.size == 0:
            return [[] for _ in range(self.n_levels)]
        if img.ndim != 2 or img.dtype != np.uint8:
            raise ValueError("expected an 8-bit single-channel image")
        self.compute_pyramid(img)
        all_keypoints = [self._detect_level(level) for level in range(self.n_levels)]
        for level, keypoints in enumerate(all_keypoints):
            level_image = self.pyramid[level]
            for kp in keypoints:
                kp.angle = ic_angle(level_image, kp.x, kp.y, self.umax)
        return all_keypoints

    def _detect_level(self, level: int) -> list[KeyPoint]:
        image = self.pyramid[level]
        rows, cols = image.shape
        min_border_x = EDGE_THRESHOLD - 3
        min_border_y = min_border_x
        max_border_x = cols - EDGE_THRESHOLD + 3
        max_border_y = rows - EDGE_THRESHOLD + 3

        width = float(max_border_x - min_border_x)
        height = float(max_border_y - min_border_y)
        n_cols = int(width / _CELL_SIZE) if width > 0 else 0
        n_rows = int(height / _CELL_SIZE) if height > 0 else 0
        if n_cols <= 0 or n_rows <= 0:
            raise ValueError(
                f"pyramid level {level} of size {cols}x{rows} is too small for detection"
            )
        w_cell = math.ceil(width / n_cols)
        h_cell = math.ceil(height / n_rows)

        candidates: list[KeyPoint] = []
        for i in range(n_rows):
            ini_y = min_border_y + i * h_cell
            if ini_y >= max_border_y - 3:
                continue
            max_y = min(ini_y + h_cell + 6, max_border_y)
            for j in range(n_cols):
                ini_x = min_border_x + j * w_cell
                if ini_x >= max_border_x - 6:
                    continue
                max_x = min(ini_x + w_cell + 6, max_border_x)
                cell = image[ini_y:max_y, ini_x:max_x]
                found = fast_detect(cell, self.ini_th_fast, True)
                if not found:
                    found = fast_detect(cell, self.min_th_fast, True)
                for kp in found:
                    kp.x += j * w_cell
                    kp.y += i * h_cell
                    candidates.append(kp)

        keypoints = distribute_oct_tree(
            candidates,
            min_border_x,
            max_border_x,
            min_border_y,
            max_border_y,
            self.features_per_level[level],
        )
        patch_size = int(PATCH_SIZE * self.scale_factors[level])
        for kp in keypoints:
            kp.x += min_border_x
            kp.y += min_border_y
            kp.octave = level
            kp.size = patch_size
        return keypoints

    def describe(
        self, all_keypoints: Sequence[Sequence[KeyPoint]]
    ) -> tuple[list[KeyPoint], np.ndarray]:
        """Descriptors of the per-level keypoints, computed on a smoothed copy
        of each level, and the keypoints scaled back to the base image."""
        if not self.pyramid:
            raise RuntimeError("no pyramid: call detect() first")
        if len(all_keypoints) != self.n_levels:
            raise ValueError(
                f"expected keypoints for {self.n_levels} levels, got {len(all_keypoints)}"
            )
        keypoints_out: list[KeyPoint] = []
        blocks: list[np.ndarray] = []
        for level, keypoints in enumerate(all_keypoints):
            if not keypoints:
                continue
            working = gaussian_blur(self.pyramid[level], 7, 2.0)
            blocks.append(compute_descriptors(working, keypoints))
            scale = self.scale_factors[level] if level != 0 else 1.0
            keypoints_out.extend(
                dataclasses.replace(kp, x=kp.x * scale, y=kp.y * scale) for kp in keypoints
            )
        if not blocks:
            return [], np.zeros((0, DESCRIPTOR_BYTES), dtype=np.uint8)
        return keypoints_out, np.vstack(blocks)

    def remove_moving_keypoints(
        self,
        semantic,
        all_keypoints: list[list[KeyPoint]],
        points: Sequence[tuple[float, float]],
        width: int,
        height: int,
    ) -> bool:
        """If a people label lies near any of ``points``, drop in place every
        keypoint that falls on a people label and return True."""
        labels = np.asarray(semantic)
        offsets = np.arange(-_SEARCH_HALF_WINDOW, _SEARCH_HALF_WINDOW)

        def clamp(coords: np.ndarray, limit: int) -> np.ndarray:
            coords = coords.copy()
            coords[coords > limit - 1] = limit - 1
            coords[coords < 1] = 0
            return coords

        moving = False
        for x, y in points:
            xs = clamp(int(x) + offsets, width)
            ys = clamp(int(y) + offsets, height)
            if np.any(labels[np.ix_(ys, xs)] == PEOPLE_LABEL):
                moving = True
                break

        if not moving:
            return False

        for level, keypoints in enumerate(all_keypoints):
            if not keypoints:
                continue
            scale = self.scale_factors[level] if level != 0 else 1.0

            def on_person(kp: KeyPoint) -> bool:
                sx = min(kp.x * scale, width - 1)
                sy = min(kp.y * scale, height - 1)
                return int(labels[int(sy), int(sx)]) == PEOPLE_LABEL

            keypoints[:] = [kp for kp in keypoints if not on_person(kp)]
        return True


def delete_row(array, index: int) -> np.ndarray:
    """A copy of ``array`` without row ``index``."""
    arr = np.asarray(array)
    if index < 0 or index >= arr.shape[0]:
        raise IndexError(f"row {index} out of range for {arr.shape[0]} rows")
    return np.delete(arr, index, axis=0)