"""Local mapping: integrates new keyframes and prunes points and redundant keyframes."""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Any

import numpy as np

log = logging.getLogger(__name__)

_MIN_FOUND_RATIO = 0.25
_REDUNDANT_OBSERVERS = 3
_REDUNDANT_FRACTION = 0.9


def skew_symmetric(v) -> np.ndarray:
    """Cross-product matrix ``[v]x`` so that ``skew_symmetric(v) @ w == v x w``."""
    x, y, z = np.asarray(v, dtype=float).reshape(3)
    return np.array(
        [
            [0.0, -z, y],
            [z, 0.0, -x],
            [-y, x, 0.0],
        ]
    )


def compute_f12(keyframe1: Any, keyframe2: Any) -> np.ndarray:
    """Fundamental matrix with ``x1^T F12 x2 = 0`` between two posed keyframes."""
    r1w = keyframe1.rotation()
    t1w = keyframe1.translation()
    r2w = keyframe2.rotation()
    t2w = keyframe2.translation()

    r12 = r1w @ r2w.T
    t12 = -r12 @ t2w + t1w

    k1 = np.asarray(keyframe1.k, dtype=float)
    k2 = np.asarray(keyframe2.k, dtype=float)
    return np.linalg.inv(k1.T) @ skew_symmetric(t12) @ r12 @ np.linalg.inv(k2)


class LocalMapper:
    """Keeps the local map around the newest keyframes in shape.

    ``map_`` provides ``add_keyframe(keyframe)``. When ``vocabulary`` is given,
    each processed keyframe computes its bag-of-words vectors with it.
    Keyframes provide ``id``, ``compute_bow(vocabulary)``,
    ``map_point_matches()``, ``update_connections()``,
    ``covisible_keyframes()``, ``keys_un``, ``depth``, ``th_depth`` and
    ``set_bad_flag()``.
    """

    def __init__(self, map_: Any, monocular: bool, vocabulary: Any = None) -> None:
        self._map = map_
        self.monocular = monocular
        self._vocabulary = vocabulary

        self._new_keyframes: deque[Any] = deque()
        self._new_kf_lock = threading.Lock()
        self.abort_ba = False

        self.current_keyframe: Any = None
        self.recent_added_map_points: list[Any] = []

        self._reset_cond = threading.Condition()
        self._reset_requested = False

        self._finish_lock = threading.Lock()
        self._finish_requested = False
        self._finished = True

        self._stop_lock = threading.Lock()
        self._stopped = False
        self._stop_requested = False
        self._not_stop = False

        self._accept_lock = threading.Lock()
        self._accept_keyframes = True

    # Keyframe queue

    def insert_keyframe(self, keyframe: Any) -> None:
        """Queue a keyframe and ask any running local optimisation to abort."""
        with self._new_kf_lock:
            self._new_keyframes.append(keyframe)
            self.abort_ba = True

    def has_new_keyframes(self) -> bool:
        with self._new_kf_lock:
            return bool(self._new_keyframes)

    def process_new_keyframe(self) -> Any:
        """Take the oldest queued keyframe, link its map points and add it to the map."""
        with self._new_kf_lock:
            if not self._new_keyframes:
                raise IndexError("no keyframe is queued for local mapping")
            keyframe = self._new_keyframes.popleft()
        self.current_keyframe = keyframe

        if self._vocabulary is not None:
            keyframe.compute_bow(self._vocabulary)

        for index, point in enumerate(keyframe.map_point_matches()):
            if point is None or point.is_bad():
                continue
            if not point.is_in_keyframe(keyframe):
                point.add_observation(keyframe, index)
                point.update_normal_and_depth()
                point.compute_distinctive_descriptors()
            else:
                # Only new stereo points inserted by tracking get here.
                self.recent_added_map_points.append(point)

        keyframe.update_connections()
        self._map.add_keyframe(keyframe)
        return keyframe

    # Culling

    def _require_current(self) -> Any:
        if self.current_keyframe is None:
            raise RuntimeError("no keyframe has been processed yet")
        return self.current_keyframe

    def map_point_culling(self) -> None:
        """Discard recently created points that are rarely found or poorly observed."""
        current_id = self._require_current().id
        th_obs = 2 if self.monocular else 3

        kept = []
        for point in self.recent_added_map_points:
            age = current_id - point.first_keyframe_id
            if point.is_bad():
                continue
            if point.found_ratio() < _MIN_FOUND_RATIO:
                point.set_bad_flag()
            elif age >= 2 and point.observation_count() <= th_obs:
                point.set_bad_flag()
            elif age >= 3:
                continue
            else:
                kept.append(point)
        self.recent_added_map_points = kept

    def _is_redundant(self, keyframe: Any) -> bool:
        n_redundant = 0
        n_points = 0
        for index, point in enumerate(keyframe.map_point_matches()):
            if point is None or point.is_bad():
                continue
            if not self.monocular:
                depth = keyframe.depth[index]
                if depth > keyframe.th_depth or depth < 0:
                    continue
            n_points += 1
            if point.observation_count() <= _REDUNDANT_OBSERVERS:
                continue
            level = keyframe.keys_un[index].octave
            observers = 0
            for other, other_index in point.observations().items():
                if other is keyframe:
                    continue
                if other.keys_un[other_index].octave <= level + 1:
                    observers += 1
                    if observers >= _REDUNDANT_OBSERVERS:
                        break
            if observers >= _REDUNDANT_OBSERVERS:
                n_redundant += 1
        return n_redundant > _REDUNDANT_FRACTION * n_points

    def keyframe_culling(self) -> None:
        """Remove local keyframes whose points are nearly all seen by three others."""
        for keyframe in self._require_current().covisible_keyframes():
            if keyframe.id == 0:
                continue
            if self._is_redundant(keyframe):
                keyframe.set_bad_flag()

    # Stop handling

    def request_stop(self) -> None:
        with self._stop_lock:
            self._stop_requested = True
        with self._new_kf_lock:
            self.abort_ba = True

    def stop(self) -> bool:
        """Stop if a stop was requested and stopping is allowed."""
        with self._stop_lock:
            if self._stop_requested and not self._not_stop:
                self._stopped = True
                log.info("Local Mapping STOP")
                return True
            return False

    def is_stopped(self) -> bool:
        with self._stop_lock:
            return self._stopped

    def stop_requested(self) -> bool:
        with self._stop_lock:
            return self._stop_requested

    def release(self) -> None:
        """Resume after a stop, dropping queued keyframes; ignored once finished."""
        with self._stop_lock, self._finish_lock:
            if self._finished:
                return
            self._stopped = False
            self._stop_requested = False
            with self._new_kf_lock:
                self._new_keyframes.clear()
            log.info("Local Mapping RELEASE")

    def accept_keyframes(self) -> bool:
        with self._accept_lock:
            return self._accept_keyframes

    def set_accept_keyframes(self, flag: bool) -> None:
        with self._accept_lock:
            self._accept_keyframes = flag

    def set_not_stop(self, flag: bool) -> bool:
        """Forbid or allow stopping; forbidding fails when already stopped."""
        with self._stop_lock:
            if flag and self._stopped:
                return False
            self._not_stop = flag
            return True

    def interrupt_ba(self) -> None:
        self.abort_ba = True

    # Reset and finish

    def request_reset(self) -> None:
        """Ask for a reset and block until ``reset_if_requested`` carries it out."""
        with self._reset_cond:
            self._reset_requested = True
            self._reset_cond.wait_for(lambda: not self._reset_requested)

    def reset_if_requested(self) -> None:
        with self._reset_cond:
            if not self._reset_requested:
                return
            with self._new_kf_lock:
                self._new_keyframes.clear()
            self.recent_added_map_points = []
            self._reset_requested = False
            self._reset_cond.notify_all()

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