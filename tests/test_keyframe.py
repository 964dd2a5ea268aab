import numpy as np
import pytest

from covislam.geometry import KeyPoint
from covislam.keyframe import KeyFrame
from covislam.map import Map
from covislam.map_point import MapPoint

K = np.array([[100.0, 0.0, 320.0], [0.0, 100.0, 240.0], [0.0, 0.0, 1.0]])


def make_kf(kid, n=20, pose=None, map_=None, keys=None, **kwargs):
    if keys is None:
        keys = [KeyPoint(10.0 + 15.0 * i, 15.0) for i in range(n)]
    return KeyFrame(
        keys=keys,
        pose=np.eye(4) if pose is None else pose,
        k=K,
        map_=map_,
        keyframe_id=kid,
        **kwargs,
    )


def pose_with_translation(t):
    pose = np.eye(4)
    pose[:3, 3] = t
    return pose


def test_pose_accessors_round_trip():
    angle = 0.3
    pose = np.eye(4)
    pose[:3, :3] = [
        [np.cos(angle), -np.sin(angle), 0.0],
        [np.sin(angle), np.cos(angle), 0.0],
        [0.0, 0.0, 1.0],
    ]
    pose[:3, 3] = [1.0, -2.0, 0.5]
    kf = make_kf(1, pose=pose)
    assert np.allclose(kf.pose(), pose)
    assert np.allclose(kf.pose_inverse() @ kf.pose(), np.eye(4))
    assert np.allclose(kf.rotation(), pose[:3, :3])
    assert np.allclose(kf.translation(), pose[:3, 3])
    center = kf.camera_center()
    assert np.allclose(kf.rotation() @ center + kf.translation(), np.zeros(3))


def test_stereo_center_without_baseline_is_camera_center():
    kf = make_kf(1, pose=pose_with_translation([0.0, 0.0, -1.0]))
    assert np.allclose(kf.stereo_center(), kf.camera_center())
    assert np.allclose(kf.camera_center(), [0.0, 0.0, 1.0])


def test_stereo_center_offsets_half_baseline():
    kf = make_kf(1, bf=20.0)
    assert kf.b == pytest.approx(0.2)
    assert np.allclose(kf.stereo_center(), [kf.b / 2, 0.0, 0.0])


def test_connections_are_ordered_by_weight():
    kf = make_kf(1)
    a, b, c = make_kf(2), make_kf(3), make_kf(4)
    kf.add_connection(a, 5)
    kf.add_connection(b, 20)
    kf.add_connection(c, 10)
    assert kf.covisible_keyframes() == [b, c, a]
    assert kf.best_covisibility_keyframes(2) == [b, c]
    assert kf.best_covisibility_keyframes(10) == [b, c, a]
    assert kf.weight(c) == 10
    assert kf.weight(make_kf(5)) == 0
    assert kf.connected_keyframes() == {a, b, c}


def test_covisibles_by_weight():
    kf = make_kf(1)
    a, b, c = make_kf(2), make_kf(3), make_kf(4)
    kf.add_connection(a, 5)
    kf.add_connection(b, 20)
    kf.add_connection(c, 10)
    assert kf.covisibles_by_weight(8) == [b, c]
    assert kf.covisibles_by_weight(100) == []
    # No connection weighs less than 1, so nothing is returned.
    assert kf.covisibles_by_weight(1) == []
    assert make_kf(9).covisibles_by_weight(1) == []


def test_erase_connection_reorders():
    kf = make_kf(1)
    a, b = make_kf(2), make_kf(3)
    kf.add_connection(a, 5)
    kf.add_connection(b, 20)
    kf.erase_connection(b)
    assert kf.covisible_keyframes() == [a]
    assert kf.weight(b) == 0
    kf.add_connection(a, 30)
    assert kf.weight(a) == 30


def test_map_point_slots():
    map_ = Map()
    kf = make_kf(1, n=5, map_=map_)
    p = MapPoint([0.0, 0.0, 1.0], map_, reference_keyframe=kf)
    kf.add_map_point(p, 2)
    assert kf.map_point(2) is p
    assert kf.map_point_matches() == [None, None, p, None, None]
    assert kf.map_points() == {p}
    kf.erase_map_point_match(2)
    assert kf.map_point(2) is None
    kf.replace_map_point_match(4, p)
    assert kf.map_point(4) is p


def test_erase_map_point_uses_observation_index():
    map_ = Map()
    kf = make_kf(1, n=5, map_=map_)
    p = MapPoint([0.0, 0.0, 1.0], map_, reference_keyframe=kf)
    kf.add_map_point(p, 3)
    kf.erase_map_point(p)
    assert kf.map_point(3) is p  # not observed yet, nothing erased
    p.add_observation(kf, 3)
    kf.erase_map_point(p)
    assert kf.map_point(3) is None


def test_tracked_map_points_respects_min_obs():
    map_ = Map()
    kf0, kf1 = make_kf(0, map_=map_), make_kf(1, map_=map_)
    shared = MapPoint([0.0, 0.0, 1.0], map_, reference_keyframe=kf1)
    single = MapPoint([0.0, 0.0, 2.0], map_, reference_keyframe=kf1)
    for kf in (kf0, kf1):
        shared.add_observation(kf, 0)
        kf.add_map_point(shared, 0)
    single.add_observation(kf1, 1)
    kf1.add_map_point(single, 1)
    assert kf1.tracked_map_points(0) == 2
    assert kf1.tracked_map_points(2) == 1
    assert kf1.tracked_map_points(3) == 0


def _share_points(map_, kfs, count):
    for i in range(count):
        p = MapPoint([0.0, 0.0, 1.0 + i], map_, reference_keyframe=kfs[0])
        for kf in kfs:
            p.add_observation(kf, i)
            kf.add_map_point(p, i)


def test_update_connections_builds_links_and_parent():
    map_ = Map()
    kf0, kf1 = make_kf(0, map_=map_), make_kf(1, map_=map_)
    _share_points(map_, [kf0, kf1], 16)
    kf1.update_connections()
    assert kf1.weight(kf0) == 16
    assert kf0.weight(kf1) == 16
    assert kf1.parent() is kf0
    assert kf0.has_child(kf1)
    assert kf0.children() == {kf1}


def test_update_connections_below_threshold_keeps_best():
    map_ = Map()
    kf0, kf1 = make_kf(0, map_=map_), make_kf(1, map_=map_)
    _share_points(map_, [kf0, kf1], 3)
    kf1.update_connections()
    assert kf1.covisible_keyframes() == [kf0]
    assert kf0.covisible_keyframes() == [kf1]
    assert kf1.parent() is kf0


def test_update_connections_without_shared_points_is_noop():
    kf = make_kf(1)
    kf.update_connections()
    assert kf.covisible_keyframes() == []
    assert kf.parent() is None


def test_first_keyframe_is_never_erased():
    map_ = Map()
    kf0 = make_kf(0, map_=map_)
    map_.add_keyframe(kf0)
    kf0.set_bad_flag()
    assert not kf0.is_bad()
    assert map_.all_keyframes() == [kf0]


def test_protected_keyframe_is_erased_after_set_erase():
    map_ = Map()
    kf0, kf1 = make_kf(0, map_=map_), make_kf(1, map_=map_)
    map_.add_keyframe(kf0)
    map_.add_keyframe(kf1)
    kf1.change_parent(kf0)
    kf1.set_not_erase()
    kf1.set_bad_flag()
    assert not kf1.is_bad()
    kf1.set_erase()
    assert kf1.is_bad()
    assert not kf0.has_child(kf1)
    assert map_.all_keyframes() == [kf0]
    assert np.allclose(kf1.tcp, np.eye(4))


def test_loop_edges_keep_keyframe_protected():
    kf0, kf1 = make_kf(0), make_kf(1)
    kf1.change_parent(kf0)
    kf1.add_loop_edge(kf0)
    assert kf1.loop_edges() == {kf0}
    kf1.set_erase()
    kf1.set_bad_flag()
    assert not kf1.is_bad()


def test_set_bad_flag_without_parent_raises():
    kf = make_kf(1)
    with pytest.raises(RuntimeError):
        kf.set_bad_flag()


def test_set_bad_flag_reparents_children():
    map_ = Map()
    kf0, kf1, kf2 = (make_kf(i, map_=map_) for i in range(3))
    for kf in (kf0, kf1, kf2):
        map_.add_keyframe(kf)
    kf1.change_parent(kf0)
    kf2.change_parent(kf1)
    for a, b, w in ((kf0, kf1, 30), (kf1, kf2, 20), (kf2, kf0, 25)):
        a.add_connection(b, w)
        b.add_connection(a, w)

    kf1.set_bad_flag()

    assert kf1.is_bad()
    assert kf2.parent() is kf0
    assert kf0.children() == {kf2}
    assert kf0.weight(kf1) == 0
    assert kf2.covisible_keyframes() == [kf0]
    assert kf1 not in map_.all_keyframes()


def test_set_bad_flag_notifies_database():
    class Database:
        def __init__(self):
            self.erased = []

        def erase(self, keyframe):
            self.erased.append(keyframe)

    database = Database()
    kf0 = make_kf(0)
    kf1 = make_kf(1, database=database)
    kf1.change_parent(kf0)
    kf1.set_bad_flag()
    assert database.erased == [kf1]


def test_bad_map_point_leaves_keyframe():
    map_ = Map()
    kf = make_kf(1, map_=map_)
    p = MapPoint([0.0, 0.0, 1.0], map_, reference_keyframe=kf)
    p.add_observation(kf, 4)
    kf.add_map_point(p, 4)
    p.set_bad_flag()
    assert kf.map_point(4) is None
    assert kf.map_points() == set()


def test_features_in_area():
    keys = [KeyPoint(10.0, 10.0), KeyPoint(12.0, 11.0), KeyPoint(100.0, 100.0)]
    kf = make_kf(1, keys=keys)
    assert sorted(kf.features_in_area(11.0, 10.0, 3.0)) == [0, 1]
    assert kf.features_in_area(100.0, 100.0, 1.0) == [2]
    assert kf.features_in_area(-100.0, -100.0, 5.0) == []
    assert kf.features_in_area(2000.0, 10.0, 5.0) == []


def test_is_in_image():
    kf = make_kf(1)
    assert kf.is_in_image(0.0, 0.0)
    assert kf.is_in_image(639.0, 479.0)
    assert not kf.is_in_image(640.0, 10.0)
    assert not kf.is_in_image(10.0, -1.0)


def test_unproject_stereo():
    keys = [KeyPoint(320.0, 240.0), KeyPoint(330.0, 250.0)]
    kf = make_kf(1, keys=keys, depth=[2.0, -1.0], pose=pose_with_translation([0.0, 0.0, -1.0]))
    world = kf.unproject_stereo(0)
    assert np.allclose(world, [0.0, 0.0, 3.0])
    camera = kf.rotation() @ world + kf.translation()
    assert camera[2] == pytest.approx(2.0)
    assert kf.unproject_stereo(1) is None


def test_compute_scene_median_depth():
    map_ = Map()
    kf = make_kf(1, n=3, map_=map_)
    for i, z in enumerate((3.0, 1.0, 2.0)):
        kf.add_map_point(MapPoint([0.0, 0.0, z], map_, reference_keyframe=kf), i)
    assert kf.compute_scene_median_depth(2) == pytest.approx(2.0)
    assert kf.compute_scene_median_depth(1) == pytest.approx(3.0)


def test_compute_scene_median_depth_without_points():
    kf = make_kf(1)
    with pytest.raises(ValueError):
        kf.compute_scene_median_depth(2)


def test_compute_bow_only_when_missing():
    class Vocabulary:
        def __init__(self):
            self.calls = []

        def transform(self, descriptors, levels_up):
            self.calls.append((len(descriptors), levels_up))
            return {7: 0.5}, {1: [0]}

    vocabulary = Vocabulary()
    kf = make_kf(1, n=4)
    kf.compute_bow(vocabulary)
    assert kf.bow_vec == {7: 0.5}
    assert kf.feat_vec == {1: [0]}
    kf.compute_bow(vocabulary)
    assert vocabulary.calls == [(4, 4)]


def test_mismatched_inputs_rejected():
    with pytest.raises(ValueError):
        make_kf(1, n=3, depth=[1.0])
    with pytest.raises(ValueError):
        make_kf(1, n=3, map_points=[None])