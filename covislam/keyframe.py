"""Keyframes: posed images with features, map point links and graph connections."""

from __future__ import annotations

import itertools
import math
import threading
from typing import Any, Sequence

import numpy as np

from covislam.geometry import KeyPoint

_CONNECTION_THRESHOLD = 15
_BOW_LEVELS_UP = 4


class KeyFrame:
    """A frame promoted to the map.

    It holds the camera pose, the undistorted keypoints arranged in a grid,
    the map point seen at each keypoint, and its place in the covisibility
    graph, the spanning tree and the loop edges.

    ``keys`` are the raw keypoints, ``keys_un`` the undistorted ones (defaults
    to ``keys``), ``pose`` the 4x4 world-to-camera transform and ``k`` the 3x3
    calibration matrix. ``u_right`` and ``depth`` hold stereo data, with
    negative values where there is none. ``image_bounds`` is
    ``(min_x, max_x, min_y, max_y)``.
    """

    _ids = itertools.count()

    def __init__(
        self,
        *,
        keys: Sequence[KeyPoint],
        pose,
        k,
        map_: Any = None,
        database: Any = None,
        keys_un: Sequence[KeyPoint] | None = None,
        u_right: Sequence[float] | None = None,
        depth: Sequence[float] | None = None,
        descriptors=None,
        bf: float = 0.0,
        th_depth: float = 0.0,
        scale_factor: float = 1.2,
        scale_levels: int = 8,
        image_bounds: tuple[float, float, float, float] = (0.0, 640.0, 0.0, 480.0),
        grid_cols: int = 64,
        grid_rows: int = 48,
        frame_id: int = 0,
        timestamp: float = 0.0,
        bow_vec: dict | None = None,
        feat_vec: dict | None = None,
        map_points: Sequence[Any] | None = None,
        keyframe_id: int | None = None,
    ) -> None:
        self.id = next(KeyFrame._ids) if keyframe_id is None else keyframe_id
        self.frame_id = frame_id
        self.timestamp = timestamp

        self.keys = list(keys)
        self.keys_un = list(keys_un) if keys_un is not None else list(self.keys)
        self.n = len(self.keys)
        self.u_right = list(u_right) if u_right is not None else [-1.0] * self.n
        self.depth = list(depth) if depth is not None else [-1.0] * self.n
        if descriptors is None:
            self.descriptors = np.zeros((self.n, 32), dtype=np.uint8)
        else:
            self.descriptors = np.array(descriptors, dtype=np.uint8, copy=True)
        if not (len(self.keys_un) == len(self.u_right) == len(self.depth) == self.n):
            raise ValueError("keypoint, stereo and depth data must have the same length")

        self.k = np.array(k, dtype=float)
        self.fx, self.fy = self.k[0, 0], self.k[1, 1]
        self.cx, self.cy = self.k[0, 2], self.k[1, 2]
        self.invfx, self.invfy = 1.0 / self.fx, 1.0 / self.fy
        self.bf = bf
        self.b = bf / self.fx
        self.th_depth = th_depth
        self._half_baseline = self.b / 2

        self.scale_levels = scale_levels
        self.scale_factor = scale_factor
        self.log_scale_factor = math.log(scale_factor)
        self.scale_factors = [scale_factor**i for i in range(scale_levels)]
        self.level_sigma2 = [s * s for s in self.scale_factors]
        self.inv_level_sigma2 = [1.0 / s for s in self.level_sigma2]

        self.min_x, self.max_x, self.min_y, self.max_y = image_bounds
        self.grid_cols = grid_cols
        self.grid_rows = grid_rows
        self.grid_element_width_inv = grid_cols / (self.max_x - self.min_x)
        self.grid_element_height_inv = grid_rows / (self.max_y - self.min_y)
        self._grid = self._build_grid()

        self.bow_vec: dict = dict(bow_vec) if bow_vec else {}
        self.feat_vec: dict = dict(feat_vec) if feat_vec else {}

        self._map = map_
        self._database = database

        # Bookkeeping used by tracking, local mapping and loop closing.
        self.track_reference_for_frame = 0
        self.fuse_target_for_kf = 0
        self.ba_local_for_kf = 0
        self.ba_fixed_for_kf = 0
        self.loop_query = 0
        self.loop_words = 0
        self.loop_score = 0.0
        self.reloc_query = 0
        self.reloc_words = 0
        self.reloc_score = 0.0
        self.ba_global_for_kf = 0
        self.tcw_gba: np.ndarray | None = None
        self.tcw_bef_gba: np.ndarray | None = None
        self.tcp: np.ndarray | None = None

        self._pose_lock = threading.RLock()
        self._conn_lock = threading.RLock()
        self._feat_lock = threading.RLock()

        if map_points is None:
            self._map_points: list[Any] = [None] * self.n
        else:
            self._map_points = list(map_points)
            if len(self._map_points) != self.n:
                raise ValueError("one map point slot per keypoint is required")

        self._connections: dict[KeyFrame, int] = {}
        self._ordered: list[KeyFrame] = []
        self._ordered_weights: list[int] = []
        self._first_connection = True
        self._parent: KeyFrame | None = None
        self._children: dict[KeyFrame, None] = {}
        self._loop_edges: dict[KeyFrame, None] = {}
        self._not_erase = False
        self._to_be_erased = False
        self._bad = False

        self.set_pose(pose)

    def __repr__(self) -> str:
        return f"KeyFrame(id={self.id})"

    def _build_grid(self) -> list[list[list[int]]]:
        grid: list[list[list[int]]] = [[[] for _ in range(self.grid_rows)] for _ in range(self.grid_cols)]
        for i, kp in enumerate(self.keys_un):
            cx = math.floor((kp.x - self.min_x) * self.grid_element_width_inv + 0.5)
            cy = math.floor((kp.y - self.min_y) * self.grid_element_height_inv + 0.5)
            if 0 <= cx < self.grid_cols and 0 <= cy < self.grid_rows:
                grid[cx][cy].append(i)
        return grid

    def compute_bow(self, vocabulary: Any) -> None:
        """Fill the bag-of-words vectors unless they are already present.

        ``vocabulary.transform(descriptors, levels_up)`` must return the pair
        ``(bow_vec, feat_vec)``.
        """
        if not self.bow_vec or not self.feat_vec:
            rows = [row for row in self.descriptors]
            self.bow_vec, self.feat_vec = vocabulary.transform(rows, _BOW_LEVELS_UP)

    # Pose

    def set_pose(self, tcw) -> None:
        tcw = np.array(tcw, dtype=float).reshape(4, 4)
        with self._pose_lock:
            self._tcw = tcw
            rwc = tcw[:3, :3].T
            self._ow = -rwc @ tcw[:3, 3]
            twc = np.eye(4)
            twc[:3, :3] = rwc
            twc[:3, 3] = self._ow
            self._twc = twc
            self._cw = (twc @ np.array([self._half_baseline, 0.0, 0.0, 1.0]))[:3]

    def pose(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw.copy()

    def pose_inverse(self) -> np.ndarray:
        with self._pose_lock:
            return self._twc.copy()

    def camera_center(self) -> np.ndarray:
        with self._pose_lock:
            return self._ow.copy()

    def stereo_center(self) -> np.ndarray:
        """World position of the midpoint of the stereo baseline."""
        with self._pose_lock:
            return self._cw.copy()

    def rotation(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw[:3, :3].copy()

    def translation(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw[:3, 3].copy()

    # Covisibility graph

    @staticmethod
    def _order(weights: dict[KeyFrame, int]) -> tuple[list[KeyFrame], list[int]]:
        pairs = sorted(weights.items(), key=lambda kv: (kv[1], kv[0].id), reverse=True)
        return [kf for kf, _ in pairs], [w for _, w in pairs]

    def add_connection(self, keyframe: KeyFrame, weight: int) -> None:
        with self._conn_lock:
            if self._connections.get(keyframe) == weight:
                return
            self._connections[keyframe] = weight
        self.update_best_covisibles()

    def update_best_covisibles(self) -> None:
        """Re-sort the connected keyframes by decreasing weight."""
        with self._conn_lock:
            self._ordered, self._ordered_weights = self._order(self._connections)

    def connected_keyframes(self) -> set[KeyFrame]:
        with self._conn_lock:
            return set(self._connections)

    def covisible_keyframes(self) -> list[KeyFrame]:
        with self._conn_lock:
            return list(self._ordered)

    def best_covisibility_keyframes(self, n: int) -> list[KeyFrame]:
        with self._conn_lock:
            return list(self._ordered[:n])

    def covisibles_by_weight(self, weight: int) -> list[KeyFrame]:
        """Keyframes ahead of the first connection weighing less than ``weight``.

        When no connection weighs less than ``weight`` the result is empty.
        """
        with self._conn_lock:
            for n, w in enumerate(self._ordered_weights):
                if w < weight:
                    return list(self._ordered[:n])
            return []

    def weight(self, keyframe: KeyFrame) -> int:
        with self._conn_lock:
            return self._connections.get(keyframe, 0)

    # Map point associations

    def add_map_point(self, point: Any, index: int) -> None:
        with self._feat_lock:
            self._map_points[index] = point

    def erase_map_point_match(self, index: int) -> None:
        with self._feat_lock:
            self._map_points[index] = None

    def erase_map_point(self, point: Any) -> None:
        """Remove ``point`` from the slot it is observed at, if any."""
        index = point.index_in_keyframe(self)
        if index >= 0:
            with self._feat_lock:
                self._map_points[index] = None

    def replace_map_point_match(self, index: int, point: Any) -> None:
        with self._feat_lock:
            self._map_points[index] = point

    def map_points(self) -> set[Any]:
        """All associated map points that are not bad."""
        with self._feat_lock:
            return {p for p in self._map_points if p is not None and not p.is_bad()}

    def tracked_map_points(self, min_obs: int) -> int:
        """Count good map points, requiring ``min_obs`` observations when positive."""
        with self._feat_lock:
            count = 0
            for p in self._map_points:
                if p is None or p.is_bad():
                    continue
                if min_obs > 0 and p.observation_count() < min_obs:
                    continue
                count += 1
            return count

    def map_point_matches(self) -> list[Any]:
        with self._feat_lock:
            return list(self._map_points)

    def map_point(self, index: int) -> Any:
        with self._feat_lock:
            return self._map_points[index]

    def update_connections(self) -> None:
        """Rebuild covisibility links from the keyframes sharing map points."""
        with self._feat_lock:
            points = list(self._map_points)

        counter: dict[KeyFrame, int] = {}
        for point in points:
            if point is None or point.is_bad():
                continue
            for keyframe in point.observations():
                if keyframe.id == self.id:
                    continue
                counter[keyframe] = counter.get(keyframe, 0) + 1

        if not counter:
            return

        n_max = 0
        kf_max: KeyFrame | None = None
        strong: dict[KeyFrame, int] = {}
        for keyframe, count in counter.items():
            if count > n_max:
                n_max, kf_max = count, keyframe
            if count >= _CONNECTION_THRESHOLD:
                strong[keyframe] = count
                keyframe.add_connection(self, count)

        if not strong and kf_max is not None:
            strong[kf_max] = n_max
            kf_max.add_connection(self, n_max)

        ordered, weights = self._order(strong)
        with self._conn_lock:
            self._connections = counter
            self._ordered = ordered
            self._ordered_weights = weights
            if self._first_connection and self.id != 0:
                self._parent = ordered[0]
                self._parent.add_child(self)
                self._first_connection = False

    # Spanning tree and loop edges

    def add_child(self, keyframe: KeyFrame) -> None:
        with self._conn_lock:
            self._children[keyframe] = None

    def erase_child(self, keyframe: KeyFrame) -> None:
        with self._conn_lock:
            self._children.pop(keyframe, None)

    def change_parent(self, keyframe: KeyFrame) -> None:
        with self._conn_lock:
            self._parent = keyframe
        keyframe.add_child(self)

    def children(self) -> set[KeyFrame]:
        with self._conn_lock:
            return set(self._children)

    def parent(self) -> KeyFrame | None:
        with self._conn_lock:
            return self._parent

    def has_child(self, keyframe: KeyFrame) -> bool:
        with self._conn_lock:
            return keyframe in self._children

    def add_loop_edge(self, keyframe: KeyFrame) -> None:
        """Link to a keyframe across a closed loop; such keyframes are never erased."""
        with self._conn_lock:
            self._not_erase = True
            self._loop_edges[keyframe] = None

    def loop_edges(self) -> set[KeyFrame]:
        with self._conn_lock:
            return set(self._loop_edges)

    # Erasure

    def set_not_erase(self) -> None:
        with self._conn_lock:
            self._not_erase = True

    def set_erase(self) -> None:
        """Allow erasure again and carry out any erasure that was deferred."""
        with self._conn_lock:
            if not self._loop_edges:
                self._not_erase = False
        if self._to_be_erased:
            self.set_bad_flag()

    def set_bad_flag(self) -> None:
        """Remove this keyframe from the graph, the spanning tree and the map.

        The first keyframe is never removed; a protected keyframe is only
        marked for removal.
        """
        with self._conn_lock:
            if self.id == 0:
                return
            if self._not_erase:
                self._to_be_erased = True
                return
            if self._parent is None:
                raise RuntimeError(f"keyframe {self.id} has no parent in the spanning tree")
            connected = list(self._connections)

        for keyframe in connected:
            keyframe.erase_connection(self)

        with self._feat_lock:
            points = [p for p in self._map_points if p is not None]
        for point in points:
            point.erase_observation(self)

        with self._conn_lock, self._feat_lock:
            self._connections.clear()
            self._ordered = []
            self._ordered_weights = []

            candidates: dict[KeyFrame, None] = {self._parent: None}
            while self._children:
                best_weight = -1
                best_child: KeyFrame | None = None
                best_parent: KeyFrame | None = None
                for child in self._children:
                    if child.is_bad():
                        continue
                    for neighbour in child.covisible_keyframes():
                        for candidate in candidates:
                            if neighbour.id == candidate.id:
                                w = child.weight(neighbour)
                                if w > best_weight:
                                    best_weight = w
                                    best_child, best_parent = child, neighbour
                if best_child is None or best_parent is None:
                    break
                best_child.change_parent(best_parent)
                candidates[best_child] = None
                del self._children[best_child]

            for child in list(self._children):
                child.change_parent(self._parent)

            self._parent.erase_child(self)
            self.tcp = self._tcw @ self._parent.pose_inverse()
            self._bad = True

        if self._map is not None:
            self._map.erase_keyframe(self)
        if self._database is not None:
            self._database.erase(self)

    def is_bad(self) -> bool:
        with self._conn_lock:
            return self._bad

    def erase_connection(self, keyframe: KeyFrame) -> None:
        with self._conn_lock:
            if keyframe not in self._connections:
                return
            del self._connections[keyframe]
        self.update_best_covisibles()

    # Image queries

    def features_in_area(self, x: float, y: float, r: float) -> list[int]:
        """Indices of undistorted keypoints strictly within ``r`` of ``(x, y)`` on both axes."""
        min_cx = max(0, math.floor((x - self.min_x - r) * self.grid_element_width_inv))
        if min_cx >= self.grid_cols:
            return []
        max_cx = min(self.grid_cols - 1, math.ceil((x - self.min_x + r) * self.grid_element_width_inv))
        if max_cx < 0:
            return []
        min_cy = max(0, math.floor((y - self.min_y - r) * self.grid_element_height_inv))
        if min_cy >= self.grid_rows:
            return []
        max_cy = min(self.grid_rows - 1, math.ceil((y - self.min_y + r) * self.grid_element_height_inv))
        if max_cy < 0:
            return []

        found = []
        for ix in range(min_cx, max_cx + 1):
            for iy in range(min_cy, max_cy + 1):
                for index in self._grid[ix][iy]:
                    kp = self.keys_un[index]
                    if abs(kp.x - x) < r and abs(kp.y - y) < r:
                        found.append(index)
        return found

    def is_in_image(self, x: float, y: float) -> bool:
        return self.min_x <= x < self.max_x and self.min_y <= y < self.max_y

    def unproject_stereo(self, index: int) -> np.ndarray | None:
        """World position of keypoint ``index`` from its depth, or ``None`` without depth."""
        z = self.depth[index]
        if z <= 0:
            return None
        kp = self.keys[index]
        x3dc = np.array([(kp.x - self.cx) * z * self.invfx, (kp.y - self.cy) * z * self.invfy, z])
        with self._pose_lock:
            return self._twc[:3, :3] @ x3dc + self._twc[:3, 3]

    def compute_scene_median_depth(self, q: int) -> float:
        """The ``1/q`` quantile of the depths of the associated map points."""
        with self._feat_lock, self._pose_lock:
            points = [p for p in self._map_points if p is not None]
            tcw = self._tcw.copy()
        if not points:
            raise ValueError(f"keyframe {self.id} has no map points to measure depth from")
        rcw2 = tcw[2, :3]
        zcw = tcw[2, 3]
        depths = sorted(float(rcw2 @ p.world_pos() + zcw) for p in points)
        return depths[(len(depths) - 1) // q]