"""Landmarks of the reconstruction: 3D points with their keyframe observations."""

from __future__ import annotations

import itertools
import math
import threading
from typing import Any

import numpy as np


def hamming_distance(a, b) -> int:
    """Number of differing bits between two binary descriptors."""
    xa = np.asarray(a, dtype=np.uint8).ravel()
    xb = np.asarray(b, dtype=np.uint8).ravel()
    if xa.shape != xb.shape:
        raise ValueError("descriptors must have the same length")
    return int(np.unpackbits(np.bitwise_xor(xa, xb)).sum())


class MapPoint:
    """A 3D point observed by one or more keyframes.

    Keyframes used as observers are expected to provide ``id``, ``frame_id``,
    ``u_right``, ``descriptors``, ``keys_un``, ``scale_factors``,
    ``scale_levels``, ``log_scale_factor``, ``is_bad()``, ``camera_center()``,
    ``erase_map_point_match(index)`` and ``replace_map_point_match(index, point)``.

    A point is created either from a reference keyframe, or from a frame and
    the index of the feature in that frame.
    """

    _ids = itertools.count()
    _global_lock = threading.Lock()

    def __init__(
        self,
        position,
        map_: Any,
        reference_keyframe: Any = None,
        frame: Any = None,
        frame_index: int | None = None,
    ) -> None:
        self._map = map_
        self._feature_lock = threading.RLock()
        self._pos_lock = threading.RLock()
        self._world_pos = np.array(position, dtype=float).reshape(3)
        self._observations: dict[Any, int] = {}
        self._n_obs = 0
        self._visible = 1
        self._found = 1
        self._bad = False
        self._replaced: MapPoint | None = None
        self._descriptor: np.ndarray | None = None

        self.track_in_view = False
        self.track_reference_for_frame = 0
        self.last_frame_seen = 0
        self.ba_local_for_kf = 0
        self.fuse_candidate_for_kf = 0
        self.loop_point_for_kf = 0
        self.corrected_by_kf = 0
        self.corrected_reference = 0
        self.ba_global_for_kf = 0
        self.position_gba: np.ndarray | None = None

        if reference_keyframe is not None:
            self.first_keyframe_id = reference_keyframe.id
            self.first_frame = reference_keyframe.frame_id
            self._ref_kf = reference_keyframe
            self._normal = np.zeros(3)
            self._min_distance = 0.0
            self._max_distance = 0.0
        elif frame is not None and frame_index is not None:
            self.first_keyframe_id = -1
            self.first_frame = frame.id
            self._ref_kf = None
            center = np.asarray(frame.camera_center(), dtype=float).reshape(3)
            offset = self._world_pos - center
            dist = float(np.linalg.norm(offset))
            self._normal = offset / dist
            level = frame.keys_un[frame_index].octave
            self._max_distance = dist * frame.scale_factors[level]
            self._min_distance = self._max_distance / frame.scale_factors[frame.scale_levels - 1]
            self._descriptor = np.array(frame.descriptors[frame_index], copy=True)
        else:
            raise ValueError("a map point needs a reference keyframe or a frame and feature index")

        with map_.point_creation_lock:
            self.id = next(MapPoint._ids)

    def __repr__(self) -> str:
        return f"MapPoint(id={self.id})"

    def world_pos(self) -> np.ndarray:
        with self._pos_lock:
            return self._world_pos.copy()

    def set_world_pos(self, position) -> None:
        with MapPoint._global_lock, self._pos_lock:
            self._world_pos = np.array(position, dtype=float).reshape(3)

    def normal(self) -> np.ndarray:
        with self._pos_lock:
            return self._normal.copy()

    def reference_keyframe(self) -> Any:
        with self._feature_lock:
            return self._ref_kf

    def add_observation(self, keyframe: Any, index: int) -> None:
        """Record that ``keyframe`` sees this point at feature ``index``."""
        with self._feature_lock:
            if keyframe in self._observations:
                return
            self._observations[keyframe] = index
            self._n_obs += 2 if keyframe.u_right[index] >= 0 else 1

    def erase_observation(self, keyframe: Any) -> None:
        """Drop an observation; the point turns bad with two or fewer left."""
        bad = False
        with self._feature_lock:
            if keyframe in self._observations:
                index = self._observations.pop(keyframe)
                self._n_obs -= 2 if keyframe.u_right[index] >= 0 else 1
                if self._ref_kf is keyframe:
                    self._ref_kf = next(iter(self._observations), None)
                bad = self._n_obs <= 2
        if bad:
            self.set_bad_flag()

    def observations(self) -> dict[Any, int]:
        with self._feature_lock:
            return dict(self._observations)

    def observation_count(self) -> int:
        with self._feature_lock:
            return self._n_obs

    def set_bad_flag(self) -> None:
        """Mark the point bad, detach it from its keyframes and the map."""
        with self._feature_lock, self._pos_lock:
            self._bad = True
            observations = self._observations
            self._observations = {}
        for keyframe, index in observations.items():
            keyframe.erase_map_point_match(index)
        self._map.erase_map_point(self)

    def replaced(self) -> MapPoint | None:
        with self._feature_lock, self._pos_lock:
            return self._replaced

    def replace(self, other: MapPoint) -> None:
        """Merge this point into ``other`` and retire this one."""
        if other.id == self.id:
            return
        with self._feature_lock, self._pos_lock:
            observations = self._observations
            self._observations = {}
            self._bad = True
            visible, found = self._visible, self._found
            self._replaced = other

        for keyframe, index in observations.items():
            if not other.is_in_keyframe(keyframe):
                keyframe.replace_map_point_match(index, other)
                other.add_observation(keyframe, index)
            else:
                keyframe.erase_map_point_match(index)

        other.increase_found(found)
        other.increase_visible(visible)
        other.compute_distinctive_descriptors()
        self._map.erase_map_point(self)

    def is_bad(self) -> bool:
        with self._feature_lock, self._pos_lock:
            return self._bad

    def increase_visible(self, n: int = 1) -> None:
        with self._feature_lock:
            self._visible += n

    def increase_found(self, n: int = 1) -> None:
        with self._feature_lock:
            self._found += n

    def found_ratio(self) -> float:
        with self._feature_lock:
            return self._found / self._visible

    def compute_distinctive_descriptors(self) -> None:
        """Keep the observed descriptor with the least median distance to the others."""
        with self._feature_lock:
            if self._bad:
                return
            observations = dict(self._observations)
        if not observations:
            return

        descriptors = [
            np.asarray(kf.descriptors[index], dtype=np.uint8)
            for kf, index in observations.items()
            if not kf.is_bad()
        ]
        if not descriptors:
            return

        n = len(descriptors)
        distances = np.zeros((n, n), dtype=int)
        for i, j in itertools.combinations(range(n), 2):
            distances[i, j] = distances[j, i] = hamming_distance(descriptors[i], descriptors[j])

        median_pos = int(0.5 * (n - 1))
        best_median = math.inf
        best_idx = 0
        for i, row in enumerate(distances):
            median = int(np.sort(row)[median_pos])
            if median < best_median:
                best_median = median
                best_idx = i

        with self._feature_lock:
            self._descriptor = descriptors[best_idx].copy()

    def descriptor(self) -> np.ndarray | None:
        with self._feature_lock:
            return None if self._descriptor is None else self._descriptor.copy()

    def index_in_keyframe(self, keyframe: Any) -> int:
        """Feature index of this point in ``keyframe``, or -1 if not observed there."""
        with self._feature_lock:
            return self._observations.get(keyframe, -1)

    def is_in_keyframe(self, keyframe: Any) -> bool:
        with self._feature_lock:
            return keyframe in self._observations

    def update_normal_and_depth(self) -> None:
        """Recompute the mean viewing direction and the scale-invariance distances."""
        with self._feature_lock, self._pos_lock:
            if self._bad:
                return
            observations = dict(self._observations)
            ref_kf = self._ref_kf
            pos = self._world_pos.copy()
        if not observations:
            return

        normal = np.zeros(3)
        for keyframe in observations:
            direction = pos - np.asarray(keyframe.camera_center(), dtype=float).reshape(3)
            normal += direction / np.linalg.norm(direction)

        offset = pos - np.asarray(ref_kf.camera_center(), dtype=float).reshape(3)
        dist = float(np.linalg.norm(offset))
        level = ref_kf.keys_un[observations.get(ref_kf, 0)].octave
        level_scale = ref_kf.scale_factors[level]
        n_levels = ref_kf.scale_levels

        with self._pos_lock:
            self._max_distance = dist * level_scale
            self._min_distance = self._max_distance / ref_kf.scale_factors[n_levels - 1]
            self._normal = normal / len(observations)

    def min_distance_invariance(self) -> float:
        with self._pos_lock:
            return 0.8 * self._min_distance

    def max_distance_invariance(self) -> float:
        with self._pos_lock:
            return 1.2 * self._max_distance

    def predict_scale(self, current_dist: float, frame: Any) -> int:
        """Pyramid level at which the point should appear at ``current_dist``."""
        with self._pos_lock:
            max_distance = self._max_distance
        if current_dist <= 0:
            return frame.scale_levels - 1
        ratio = max_distance / current_dist
        if ratio <= 0:
            return 0
        scale = math.ceil(math.log(ratio) / frame.log_scale_factor)
        return max(0, min(scale, frame.scale_levels - 1))