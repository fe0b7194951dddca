# semslam

Building blocks for a semantic visual SLAM pipeline, written with NumPy.

## What is in the package

- `semslam.descriptors`: the `KeyPoint` dataclass, `descriptor_distance`
  (Hamming distance between binary descriptors), `umax_table`, `ic_angle`
  (orientation by intensity centroid, in degrees), `compute_orb_descriptor`
  and `compute_descriptors` (32-byte rotated BRIEF descriptors).
- `semslam.features`: `fast_detect` (FAST-9 corners with optional
  non-maximum suppression), `distribute_oct_tree` and `ExtractorNode`
  (quadtree spreading of keypoints, keeping the strongest in each cell),
  `resize_bilinear`, `gaussian_blur` and `pad_reflect101`.
- `semslam.extractor`: `ORBExtractor`, which builds a scale pyramid
  (`compute_pyramid`), detects oriented keypoints on every level (`detect`)
  and computes descriptors on a smoothed copy of each level, returning the
  keypoints scaled back to the base image (`describe`).
  `remove_moving_keypoints` drops keypoints lying on pixels labelled as
  people (label 15) in a semantic label image, when such a label is found
  near any of the given points. `delete_row` returns an array without one
  row.
- `semslam.map_point`: `MapPoint`, a 3D landmark with its observing
  keyframes, observation count (stereo observations count twice),
  found/visible ratio, representative descriptor
  (`compute_distinctive_descriptors`), mean viewing direction and
  scale-invariance distances (`update_normal_and_depth`,
  `min_distance_invariance`, `max_distance_invariance`, `predict_scale`),
  and `set_bad_flag` / `replace`.
- `semslam.slam_map`: `SlamMap`, the thread-safe set of keyframes and map
  points, with reference points and the largest keyframe id.
- `semslam.geometry`: `skew_symmetric`, `fundamental_matrix` between two
  poses sharing intrinsics, `triangulate` (linear DLT) and
  `reprojection_ok` (chi-square reprojection check, monocular or stereo).
- `semslam.local_mapping`: `LocalMapping`, holding the queue of incoming
  keyframes, culling of recently added map points (`map_point_culling`)
  and of redundant keyframes (`keyframe_culling`), and the
  stop/release/reset/finish handshake between threads.
- `semslam.drawer`: renderer-independent drawing data:
  `opengl_camera_matrix` (camera-to-world, column-major),
  `frustum_segments`, `map_point_layers` and `graph_edges`.

Keyframes are not defined by the package. `MapPoint`, `LocalMapping` and
the drawer functions accept any object with the attributes and methods
described by the `KeyFrameLike`, `CullableKeyFrame` and
`DrawableKeyFrame` protocols.

## Installation

```
pip install .
```

For the test suite:

```
pip install ".[test]"
pytest
```

## Examples

Feature extraction:

```python
import numpy as np
from semslam.extractor import ORBExtractor
from semslam.descriptors import descriptor_distance

image = (np.random.default_rng(0).random((240, 320)) * 255).astype(np.uint8)

extractor = ORBExtractor(n_features=500, scale_factor=1.2, n_levels=4,
                         ini_th_fast=20, min_th_fast=7)
levels = extractor.detect(image)
keypoints, descriptors = extractor.describe(levels)

if len(descriptors) > 1:
    print(descriptor_distance(descriptors[0], descriptors[1]))
```

Map bookkeeping:

```python
from semslam.slam_map import SlamMap
from semslam.map_point import MapPoint

slam_map = SlamMap()
point = MapPoint([0.0, 0.0, 1.0], slam_map)
slam_map.add_map_point(point)
assert slam_map.map_points_in_map() == 1

point.set_bad_flag()
assert point.bad and slam_map.map_points_in_map() == 0
```

Geometry:

```python
import numpy as np
from semslam.geometry import skew_symmetric

v = np.array([1.0, 2.0, 3.0])
assert np.allclose(skew_symmetric(v) @ v, 0.0)
```

## What the package does not do

It offers no running SLAM system: there is no camera tracking, no
relocalisation, no loop closing or pose-graph optimisation, no bundle
adjustment, and no mapping thread loop that triangulates new map points
on its own; `LocalMapping` provides the culling steps and thread
handshakes only. It has no keyframe class, no semantic segmentation
model (label images must come from elsewhere), no saving or loading of
maps, no command-line program and no viewer window: `semslam.drawer`
only produces the vertices and matrices a renderer would draw.