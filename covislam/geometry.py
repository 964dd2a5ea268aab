"""Two-view geometry helpers: normalisation, triangulation and pose checks."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

import numpy as np

_PARALLAX_COS_LIMIT = 0.99998
_PARALLAX_INDEX = 50


@dataclass(frozen=True)
class KeyPoint:
    """An image feature position with its pyramid level."""

    x: float
    y: float
    octave: int = 0

    @property
    def pt(self) -> np.ndarray:
        return np.array([self.x, self.y], dtype=float)


@dataclass
class TriangulationResult:
    """Outcome of checking one relative pose against a set of matches.

    ``points`` and ``good`` are indexed by keypoint of the first view.
    """

    n_good: int
    points: np.ndarray
    good: list[bool] = field(default_factory=list)
    parallax: float = 0.0


def normalize(keys: Sequence[KeyPoint]) -> tuple[np.ndarray, np.ndarray]:
    """Centre keypoints and scale them to unit mean absolute deviation.

    Returns the normalised ``(N, 2)`` points and the 3x3 transform that maps
    homogeneous pixel coordinates onto them.
    """
    if not keys:
        raise ValueError("cannot normalise an empty set of keypoints")
    pts = np.array([(k.x, k.y) for k in keys], dtype=float)
    mean = pts.mean(axis=0)
    centred = pts - mean
    with np.errstate(divide="ignore"):
        scale = 1.0 / np.abs(centred).mean(axis=0)
    normalized = centred * scale
    t = np.eye(3)
    t[0, 0], t[1, 1] = scale
    t[0, 2] = -mean[0] * scale[0]
    t[1, 2] = -mean[1] * scale[1]
    return normalized, t


def triangulate(kp1: KeyPoint, kp2: KeyPoint, p1: np.ndarray, p2: np.ndarray) -> np.ndarray:
    """Linear (DLT) triangulation of one correspondence from two 3x4 projections."""
    p1 = np.asarray(p1, dtype=float)
    p2 = np.asarray(p2, dtype=float)
    a = np.vstack(
        [
            kp1.x * p1[2] - p1[0],
            kp1.y * p1[2] - p1[1],
            kp2.x * p2[2] - p2[0],
            kp2.y * p2[2] - p2[1],
        ]
    )
    _, _, vt = np.linalg.svd(a)
    x = vt[3]
    with np.errstate(divide="ignore", invalid="ignore"):
        return x[:3] / x[3]


def decompose_e(e: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Split an essential matrix into its two rotations and unit translation."""
    u, _, vt = np.linalg.svd(np.asarray(e, dtype=float))
    t = u[:, 2] / np.linalg.norm(u[:, 2])
    w = np.array([[0.0, -1.0, 0.0], [1.0, 0.0, 0.0], [0.0, 0.0, 1.0]])
    r1 = u @ w @ vt
    if np.linalg.det(r1) < 0:
        r1 = -r1
    r2 = u @ w.T @ vt
    if np.linalg.det(r2) < 0:
        r2 = -r2
    return r1, r2, t


def check_rt(
    r: np.ndarray,
    t: np.ndarray,
    keys1: Sequence[KeyPoint],
    keys2: Sequence[KeyPoint],
    matches12: Sequence[tuple[int, int]],
    inliers: Sequence[bool],
    k: np.ndarray,
    th2: float,
) -> TriangulationResult:
    """Triangulate inlier matches under pose ``[r|t]`` and count the good ones.

    A point is counted when it lies in front of both cameras (unless its
    parallax is tiny) and reprojects within ``th2`` squared pixels in both
    images. It is marked good only if its parallax is also large enough.
    """
    r = np.asarray(r, dtype=float)
    t = np.asarray(t, dtype=float).reshape(3)
    k = np.asarray(k, dtype=float)
    fx, fy, cx, cy = k[0, 0], k[1, 1], k[0, 2], k[1, 2]

    good = [False] * len(keys1)
    points = np.zeros((len(keys1), 3))
    cos_parallaxes: list[float] = []

    p1 = np.zeros((3, 4))
    p1[:, :3] = k
    p2 = k @ np.hstack([r, t.reshape(3, 1)])
    o2 = -r.T @ t

    n_good = 0
    with np.errstate(divide="ignore", invalid="ignore"):
        for (i1, i2), is_inlier in zip(matches12, inliers):
            if not is_inlier:
                continue
            kp1, kp2 = keys1[i1], keys2[i2]
            x1 = triangulate(kp1, kp2, p1, p2)
            if not np.all(np.isfinite(x1)):
                good[i1] = False
                continue

            normal2 = x1 - o2
            cos_parallax = float(x1 @ normal2 / (np.linalg.norm(x1) * np.linalg.norm(normal2)))

            if x1[2] <= 0 and cos_parallax < _PARALLAX_COS_LIMIT:
                continue
            x2 = r @ x1 + t
            if x2[2] <= 0 and cos_parallax < _PARALLAX_COS_LIMIT:
                continue

            inv_z1 = 1.0 / x1[2]
            u1 = fx * x1[0] * inv_z1 + cx
            v1 = fy * x1[1] * inv_z1 + cy
            if (u1 - kp1.x) ** 2 + (v1 - kp1.y) ** 2 > th2:
                continue

            inv_z2 = 1.0 / x2[2]
            u2 = fx * x2[0] * inv_z2 + cx
            v2 = fy * x2[1] * inv_z2 + cy
            if (u2 - kp2.x) ** 2 + (v2 - kp2.y) ** 2 > th2:
                continue

            cos_parallaxes.append(cos_parallax)
            points[i1] = x1
            n_good += 1
            if cos_parallax < _PARALLAX_COS_LIMIT:
                good[i1] = True

    if n_good > 0:
        cos_parallaxes.sort()
        idx = min(_PARALLAX_INDEX, len(cos_parallaxes) - 1)
        parallax = float(np.degrees(np.arccos(np.clip(cos_parallaxes[idx], -1.0, 1.0))))
    else:
        parallax = 0.0

    return TriangulationResult(n_good=n_good, points=points, good=good, parallax=parallax)