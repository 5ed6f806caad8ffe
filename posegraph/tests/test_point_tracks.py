import numpy as np
import pytest

from posegraph.cam import CameraIntrinsics
from posegraph.errors import InvariantViolation
from posegraph.frames import KeypointInfo
from posegraph.point_tracks import PointTrackClassifier, build_point_tracks, collect_keypoint_infos
from posegraph.poses import get_SE3_pose, identity_pose


def _info(frame: int, local: int, depth: float = 2.0) -> KeypointInfo:
    return KeypointInfo(x=100.0 + local, y=50.0 + frame, scale=1.5, depth=depth, frame_index=frame)


def _group(*observations):
    return [((frame, local), _info(frame, local)) for frame, local in observations]


def _get_test_setup():
    groups = [
        _group((0, 0), (1, 3)),
        _group((1, 3), (2, 1)),
        _group((0, 1), (2, 2)),
        _group((1, 4), (2, 0)),
        _group((0, 0), (2, 1)),
    ]
    return groups


def _connected_components_by_union_find(groups):
    parent = {}

    def find(x):
        while parent.setdefault(x, x) != x:
            x = parent[x]
        return x

    for group in groups:
        keys = [key for key, _ in group]
        for a, b in zip(keys, keys[1:]):
            parent[find(a)] = find(b)

    components = {}
    for key in parent:
        components.setdefault(find(key), set()).add(key)
    return sorted(sorted(c) for c in components.values())


def test_classes_are_connected_components():
    groups = _get_test_setup()
    classifier = PointTrackClassifier()
    for group in groups:
        classifier.insert_observation_group([key for key, _ in group])

    classes = classifier.assign_classes()

    by_class = {}
    for global_index, class_number in enumerate(classes):
        by_class.setdefault(class_number, set()).add(classifier.get_frame_and_local_index(global_index))

    assert sorted(sorted(c) for c in by_class.values()) == _connected_components_by_union_find(groups)
    assert classifier.number_of_classes == 3
    assert classifier.number_of_observations == 7
    # numbered in order of first appearance
    assert classifier.class_of(0, 0) == 0
    assert classifier.class_of(0, 0) == classifier.class_of(2, 1) == classifier.class_of(1, 3)
    assert classifier.class_of(0, 1) == 1
    assert classifier.class_of(1, 4) == 2


def test_insertion_is_idempotent():
    classifier = PointTrackClassifier()
    classifier.insert_observation_group([(0, 5), (1, 7)])
    classifier.insert_observation_group([(0, 5), (1, 7)])

    assert classifier.number_of_observations == 2
    assert classifier.number_of_classes == 1
    assert classifier.get_frame_and_local_index(1) == (1, 7)


def test_classes_refresh_after_new_groups():
    classifier = PointTrackClassifier()
    classifier.insert_observation_group([(0, 0), (1, 0)])
    classifier.insert_observation_group([(2, 0), (3, 0)])
    assert classifier.number_of_classes == 2

    classifier.insert_observation_group([(1, 0), (2, 0)])
    assert classifier.number_of_classes == 1


def test_conflicting_metadata_raises():
    groups = _get_test_setup()
    groups.append([((0, 0), _info(0, 0, depth=3.0)), ((1, 9), _info(1, 9))])

    with pytest.raises(InvariantViolation):
        collect_keypoint_infos(groups, number_of_frames=3)


def test_build_point_tracks():
    intrinsics = CameraIntrinsics.tum_fr1()
    point_world = np.array([0.3, -0.2, 3.0])
    poses = [identity_pose(), get_SE3_pose(x=0.1, yaw=0.05), get_SE3_pose(x=0.2, pitch=0.02)]

    groups = []
    observations = []
    for frame, pose in enumerate(poses):
        in_cam = np.linalg.inv(pose) @ np.append(point_world, 1.0)
        px = intrinsics.project(in_cam[None, :3])[0]
        observations.append(((frame, frame + 10), KeypointInfo(px[0], px[1], 1.0, in_cam[2], frame)))
    groups.append([observations[2], observations[1]])
    groups.append([observations[1], observations[0]])

    tracks = build_point_tracks(groups, poses, [intrinsics] * 3)

    assert tracks.number_of_points == 1
    assert tracks.number_of_observations() == 3
    assert np.allclose(tracks.positions[0], point_world)
    assert [list(obs.keys()) for obs in tracks.observations_by_frame] == [[0], [0], [0]]
    assert tracks.observations_by_frame[2][0].frame_index == 2


def test_build_point_tracks_keeps_one_observation_per_frame():
    intrinsics = CameraIntrinsics.tum_fr1()
    groups = [
        _group((0, 0), (1, 0)),
        _group((1, 0), (0, 1)),    # two keypoints of frame 0 end up in one class
    ]

    tracks = build_point_tracks(groups, [identity_pose(), identity_pose()], [intrinsics] * 2)

    assert tracks.number_of_points == 1
    assert tracks.observations_by_frame[0][0] == _info(0, 0)
    assert tracks.number_of_observations() == 2
