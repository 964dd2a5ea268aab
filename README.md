# covislam

Building blocks for the mapping side of a feature-based visual SLAM system.
The only dependency is `numpy`.

## What is in the package

- **`covislam.map.Map`** holds the keyframes and map points of a reconstruction.
  It also keeps:
  - a list of reference map points;
  - the largest keyframe id added;
  - a counter of big changes (`inform_new_big_change`, `last_big_change_index`).

  All access goes through a lock. Listings come back in insertion order.
- **`covislam.map_point.MapPoint`** is a 3D landmark. It keeps:
  - its keyframe observations, counted twice when the observation has stereo data;
  - found and visible counters, and `found_ratio`;
  - a distinctive descriptor: the observed descriptor with the least median
    Hamming distance (`hamming_distance`) to the others;
  - its mean viewing normal and its scale-invariance distances;
  - `predict_scale`, which gives the pyramid level for a distance.

  A point can be merged into another with `replace`, and retired with
  `set_bad_flag`.
- **`covislam.keyframe.KeyFrame`** is a posed frame in the map. It has:
  - its pose, inverse pose, camera centre and stereo centre;
  - the map point at each keypoint;
  - covisibility connections ordered by weight, rebuilt by `update_connections`
    from shared map points;
  - its spanning-tree parent and children, and its loop edges;
  - erasure that can be deferred, and `set_bad_flag`, which reassigns its
    children before removing it from the map and the database;
  - a grid search over keypoints (`features_in_area`), stereo unprojection and
    the scene median depth.
- **`covislam.geometry`** has two-view helpers:
  - `normalize`, `triangulate` (linear DLT) and `decompose_e`;
  - `check_rt`, which triangulates inlier matches under a relative pose and
    counts the points in front of both cameras with small reprojection error;
  - the types `KeyPoint` and `TriangulationResult`.
- **`covislam.keyframe_database.KeyFrameDatabase`** is an inverted index from
  visual words to keyframes. `detect_loop_candidates` and
  `detect_relocalization_candidates` rank keyframes by bag-of-words score,
  summed over their covisible neighbours. The vocabulary you pass in must
  provide `score(bow1, bow2)`.
- **`covislam.loop_consistency`** provides `check_consistency`. It carries
  `ConsistentGroup`s of loop candidates from one keyframe to the next and
  returns a `ConsistencyResult` listing the candidates that have stayed
  consistent long enough.
- **`covislam.local_mapping.LocalMapper`** keeps the local map in shape. It:
  - queues and processes new keyframes (`insert_keyframe`,
    `process_new_keyframe`);
  - culls recently added map points (`map_point_culling`);
  - culls redundant covisible keyframes (`keyframe_culling`);
  - handles stop, release, reset and finish requests.

  The module also has `skew_symmetric` and `compute_f12`, which gives the
  fundamental matrix between two posed keyframes.

## Installation

```
pip install .
```

With the test dependencies:

```
pip install ".[test]"
```

## Example

```python
import numpy as np

from covislam.geometry import KeyPoint, normalize, triangulate

keys = [KeyPoint(10.0, 20.0), KeyPoint(30.0, 5.0), KeyPoint(50.0, 60.0), KeyPoint(70.0, 15.0)]
points, transform = normalize(keys)   # zero mean, unit mean absolute deviation

k = np.array([[500.0, 0.0, 320.0], [0.0, 500.0, 240.0], [0.0, 0.0, 1.0]])
p1 = np.hstack([k, np.zeros((3, 1))])
p2 = k @ np.hstack([np.eye(3), [[-0.1], [0.0], [0.0]]])

x = triangulate(KeyPoint(320.0, 240.0), KeyPoint(310.0, 240.0), p1, p2)
# x is close to [0, 0, 5]
```

## What the package does not do

The package manages the map and its graphs. It does not produce them from
images. In particular, it has none of the following:

- feature extraction or matching;
- frame-to-frame tracking;
- homography and fundamental-matrix fitting for monocular initialisation;
- Sim3 estimation and loop correction;
- pose-graph or bundle-adjustment optimisation;
- visualisation;
- saving or loading maps.

`LocalMapper` does not triangulate new points or fuse duplicates across
neighbouring keyframes. There is no command-line program. Bag-of-words
vectors and similarity scores come from a vocabulary object that you supply.

## Running the tests

```
pytest
```