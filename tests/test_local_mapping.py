import threading

import numpy as np
import pytest

from semslam.descriptors import KeyPoint
from semslam.local_mapping import LocalMapping
from semslam.map_point import MapPoint
from semslam.slam_map import SlamMap


class FakeKeyFrame:
    def __init__(self, kf_id, n=4, octave=0, depth=1.0, th_depth=5.0):
        self.id = kf_id
        self.frame_id = kf_id
        self.right_u = [-1.0] * n
        self.descriptors = np.zeros((n, 32), dtype=np.uint8)
        self.keys_un = [KeyPoint(x=0.0, y=0.0, octave=octave) for _ in range(n)]
        self.scale_factors = [1.2 ** i for i in range(8)]
        self.n_scale_levels = 8
        self.is_bad = False
        self.camera_center = np.zeros(3)
        self.map_points = [None] * n
        self.depths = [depth] * n
        self.th_depth = th_depth
        self.bad_flag_set = False

    def erase_map_point_match(self, idx):
        self.map_points[idx] = None

    def replace_map_point_match(self, idx, point):
        self.map_points[idx] = point

    def set_bad_flag(self):
        self.bad_flag_set = True


def _point(slam_map, first_kf_id=0):
    point = MapPoint([0.0, 0.0, 1.0], slam_map, first_kf_id=first_kf_id, first_frame=0)
    slam_map.add_map_point(point)
    return point


def _observe(point, keyframes, idx=0):
    for kf in keyframes:
        point.add_observation(kf, idx)
        kf.map_points[idx] = point


def test_insert_keyframe_queues_and_aborts_ba():
    lm = LocalMapping(SlamMap(), monocular=True)
    assert not lm.has_new_keyframes()
    kf = FakeKeyFrame(1)
    lm.insert_keyframe(kf)
    assert lm.has_new_keyframes()
    assert lm.abort_ba is True
    assert lm.pending_keyframes == [kf]


def test_culling_removes_bad_point_without_flagging():
    slam_map = SlamMap()
    lm = LocalMapping(slam_map, monocular=True)
    point = _point(slam_map)
    point.set_bad_flag()
    lm.add_recent_map_point(point)
    lm.map_point_culling(1)
    assert lm.recent_map_points == []


def test_culling_low_found_ratio_sets_bad():
    slam_map = SlamMap()
    lm = LocalMapping(slam_map, monocular=True)
    point = _point(slam_map)
    point.increase_visible(10)
    lm.add_recent_map_point(point)
    lm.map_point_culling(0)
    assert point.bad
    assert point not in slam_map.all_map_points()
    assert lm.recent_map_points == []


def test_culling_few_observations_after_two_keyframes():
    slam_map = SlamMap()
    lm = LocalMapping(slam_map, monocular=False)
    point = _point(slam_map, first_kf_id=3)
    _observe(point, [FakeKeyFrame(3), FakeKeyFrame(4)])
    lm.add_recent_map_point(point)
    lm.map_point_culling(5)
    assert point.bad
    assert lm.recent_map_points == []


def test_culling_keeps_young_point_and_releases_old_one():
    slam_map = SlamMap()
    lm = LocalMapping(slam_map, monocular=True)
    young = _point(slam_map, first_kf_id=9)
    old = _point(slam_map, first_kf_id=2)
    _observe(old, [FakeKeyFrame(i) for i in range(2, 6)])
    lm.add_recent_map_point(young)
    lm.add_recent_map_point(old)
    lm.map_point_culling(10)
    assert lm.recent_map_points == [young]
    assert not old.bad
    assert old in slam_map.all_map_points()


def test_keyframe_culling_marks_redundant_keyframe():
    slam_map = SlamMap()
    lm = LocalMapping(slam_map, monocular=True)
    target = FakeKeyFrame(5, n=1)
    others = [FakeKeyFrame(i, n=1) for i in (6, 7, 8)]
    point = _point(slam_map)
    _observe(point, [target] + others)
    culled = lm.keyframe_culling([target])
    assert culled == [target]
    assert target.bad_flag_set


def test_keyframe_culling_skips_first_keyframe():
    slam_map = SlamMap()
    lm = LocalMapping(slam_map, monocular=True)
    target = FakeKeyFrame(0, n=1)
    point = _point(slam_map)
    _observe(point, [target] + [FakeKeyFrame(i, n=1) for i in (6, 7, 8)])
    assert lm.keyframe_culling([target]) == []
    assert not target.bad_flag_set


def test_keyframe_culling_ignores_far_points_in_stereo():
    slam_map = SlamMap()
    lm = LocalMapping(slam_map, monocular=False)
    target = FakeKeyFrame(5, n=1, depth=50.0, th_depth=5.0)
    point = _point(slam_map)
    _observe(point, [target] + [FakeKeyFrame(i, n=1) for i in (6, 7, 8)])
    # No close points: nothing counts, so nothing is redundant.
    assert lm.keyframe_culling([target]) == []
    assert not target.bad_flag_set


def test_keyframe_culling_coarser_observations_do_not_count():
    slam_map = SlamMap()
    lm = LocalMapping(slam_map, monocular=True)
    target = FakeKeyFrame(5, n=1, octave=0)
    others = [FakeKeyFrame(i, n=1, octave=4) for i in (6, 7, 8)]
    point = _point(slam_map)
    _observe(point, [target] + others)
    assert lm.keyframe_culling([target]) == []


def test_stop_and_release_cycle():
    lm = LocalMapping(SlamMap(), monocular=True)
    assert lm.stop() is False
    lm.request_stop()
    assert lm.stop_requested()
    assert lm.abort_ba is True
    assert lm.stop() is True
    assert lm.is_stopped()
    # Still "finished" from construction: release does nothing.
    lm.release()
    assert lm.is_stopped()


def test_release_clears_queue_when_running():
    lm = LocalMapping(SlamMap(), monocular=True)
    lm._finished = False
    lm.insert_keyframe(FakeKeyFrame(1))
    lm.request_stop()
    lm.stop()
    lm.release()
    assert not lm.is_stopped()
    assert not lm.stop_requested()
    assert not lm.has_new_keyframes()


def test_set_not_stop_blocks_stopping():
    lm = LocalMapping(SlamMap(), monocular=True)
    assert lm.set_not_stop(True) is True
    lm.request_stop()
    assert lm.stop() is False
    assert lm.set_not_stop(False) is True
    assert lm.stop() is True
    assert lm.set_not_stop(True) is False


def test_accept_keyframes_flag():
    lm = LocalMapping(SlamMap(), monocular=True)
    assert lm.accept_keyframes() is True
    lm.set_accept_keyframes(False)
    assert lm.accept_keyframes() is False


def test_interrupt_ba():
    lm = LocalMapping(SlamMap(), monocular=True)
    assert lm.abort_ba is False
    lm.interrupt_ba()
    assert lm.abort_ba is True


def test_reset_if_requested_without_request():
    lm = LocalMapping(SlamMap(), monocular=True)
    lm.insert_keyframe(FakeKeyFrame(1))
    assert lm.reset_if_requested() is False
    assert lm.has_new_keyframes()


def test_request_reset_waits_for_mapping_loop():
    slam_map = SlamMap()
    lm = LocalMapping(slam_map, monocular=True)
    lm.insert_keyframe(FakeKeyFrame(1))
    lm.add_recent_map_point(_point(slam_map))
    done = threading.Event()

    def loop():
        while not done.is_set():
            if lm.reset_if_requested():
                done.set()
            done.wait(0.001)

    worker = threading.Thread(target=loop)
    worker.start()
    lm.request_reset(timeout=5.0)
    done.set()
    worker.join()
    assert not lm.has_new_keyframes()
    assert lm.recent_map_points == []


def test_request_reset_times_out():
    lm = LocalMapping(SlamMap(), monocular=True)
    lm.insert_keyframe(FakeKeyFrame(1))
    with pytest.raises(TimeoutError):
        lm.request_reset(timeout=0.01)
    assert lm.reset_if_requested() is False
    assert lm.has_new_keyframes()


def test_finish_handshake():
    lm = LocalMapping(SlamMap(), monocular=True)
    assert lm.check_finish() is False
    lm.request_finish()
    assert lm.check_finish() is True
    lm._finished = False
    lm.set_finish()
    assert lm.is_finished()
    assert lm.is_stopped()