"""Map, map point, keyframe, two-view geometry, place recognition and local mapping components for visual SLAM."""

__version__ = "0.1.0"

__all__ = [
    "geometry",
    "keyframe",
    "keyframe_database",
    "local_mapping",
    "loop_consistency",
    "map",
    "map_point",
]