"""ORB features, map points, map container, two-view geometry, local mapping
maintenance and drawing data for semantic visual SLAM."""

__version__ = "0.1.0"
__all__ = [
    "descriptors",
    "features",
    "extractor",
    "map_point",
    "slam_map",
    "geometry",
    "drawer",
    "local_mapping",
]