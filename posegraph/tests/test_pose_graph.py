import attr
import numpy as np
import pytest

from posegraph.cam import CameraIntrinsics
from posegraph.errors import InvariantViolation
from posegraph.frames import Frame, KeypointInfo
from posegraph.pose_graph import PoseGraph, RelativeTransform
from posegraph.poses import get_SE3_pose
from posegraph.transforms import SE3_inverse


def _frames(n: int):
    intrinsics = CameraIntrinsics.tum_fr1()
    return [
        Frame(index=i, keypoints=np.zeros((0, 2)), scales=np.zeros(0), depths=np.zeros(0), intrinsics=intrinsics)
        for i in range(n)
    ]


def _get_test_setup():
    """ 0-1-2 chain with a chord 0-2, 3-4 pair, 5 alone. Edges are exact for the absolute poses. """
    absolute = [
        get_SE3_pose(),
        get_SE3_pose(x=0.5, yaw=0.1),
        get_SE3_pose(x=1.0, y=0.2, yaw=0.15, pitch=0.05),
        get_SE3_pose(z=2.0),
        get_SE3_pose(z=2.5, roll=0.2),
        get_SE3_pose(y=-1.0),
    ]
    graph = PoseGraph.from_frames(_frames(len(absolute)))
    for i, j in [(0, 1), (1, 2), (0, 2), (3, 4)]:
        graph.add_edge_pair(i, j, SE3_inverse(absolute[i]) @ absolute[j])

    info = lambda frame, local: KeypointInfo(float(local), float(frame), 1.0, 2.0, frame)
    graph.add_inlier_groups([
        [((0, 1), info(0, 1)), ((2, 4), info(2, 4))],
        [((3, 0), info(3, 0)), ((4, 7), info(4, 7))],
    ])
    return graph, absolute


def test_add_edge_stores_inverse():
    graph, absolute = _get_test_setup()

    forward = graph.get_edge(0, 1)
    backward = graph.get_edge(1, 0)

    assert np.allclose(forward.transform @ backward.transform, np.eye(4))
    assert graph.number_of_edges() == 4
    assert graph.get_edge(0, 3) is None
    assert len(graph.connections_from(2)) == 2


def test_add_edge_validation():
    graph, _ = _get_test_setup()

    with pytest.raises(InvariantViolation):
        graph.add_edge_pair(0, 1, np.eye(4))
    with pytest.raises(InvariantViolation):
        graph.add_edge_pair(1, 0, np.eye(4))
    with pytest.raises(InvariantViolation):
        graph.add_edge(RelativeTransform(2, 2, np.eye(4)))
    with pytest.raises(InvariantViolation):
        graph.add_edge_pair(0, 6, np.eye(4))


def test_connected_components():
    graph, _ = _get_test_setup()

    components, component_by_vertex = graph.connected_components()

    assert components == [[0, 1, 2], [3, 4], [5]]
    assert component_by_vertex == [0, 0, 0, 1, 1, 2]
    assert sum(len(c) for c in components) == graph.number_of_poses
    assert sorted(v for c in components for v in c) == list(range(graph.number_of_poses))


def test_bfs_propagation_full_poses():
    graph, absolute = _get_test_setup()
    for vertex in graph.vertices:
        vertex.pose = get_SE3_pose(x=7.0)

    visited = graph.bfs_propagate_absolute_poses(root=0)

    assert visited == {0, 1, 2}
    for i in visited:
        assert np.allclose(graph.vertices[i].pose, absolute[i])
    # unreachable vertices untouched
    for i in (3, 4, 5):
        assert np.allclose(graph.vertices[i].pose, get_SE3_pose(x=7.0))


def test_bfs_propagation_translations_only():
    graph, absolute = _get_test_setup()
    for i, vertex in enumerate(graph.vertices):
        vertex.pose = absolute[i].copy()
        vertex.pose[:3, 3] = 100.

    visited = graph.bfs_propagate_absolute_poses(root=3, translations_only=True)

    assert visited == {3, 4}
    assert np.allclose(graph.vertices[3].pose[:3, 3], 0.)
    assert np.allclose(graph.vertices[4].pose[:3, :3], absolute[4][:3, :3])
    assert np.allclose(graph.vertices[4].pose[:3, 3], absolute[4][:3, 3] - absolute[3][:3, 3])
    assert np.allclose(graph.vertices[0].pose[:3, 3], 100.)


def test_relative_measurements_only_forward():
    graph, absolute = _get_test_setup()

    rotations = graph.relative_rotation_measurements()
    translations = graph.relative_translation_measurements()

    assert sorted((m.index_from, m.index_to) for m in rotations) == [(0, 1), (0, 2), (1, 2), (3, 4)]
    assert sorted((m.index_from, m.index_to) for m in translations) == [(0, 1), (0, 2), (1, 2), (3, 4)]

    for m in rotations:
        assert np.allclose(m.rotation, absolute[m.index_from][:3, :3].T @ absolute[m.index_to][:3, :3])
    for m in translations:
        R_i, t_i, t_j = absolute[m.index_from][:3, :3], absolute[m.index_from][:3, 3], absolute[m.index_to][:3, 3]
        assert np.allclose(m.translation, R_i.T @ (t_j - t_i))


def test_split_reindexes_components(tmp_path):
    graph, _ = _get_test_setup()

    components = graph.split(work_dir=str(tmp_path))

    assert [c.initial_indices for c in components] == [[0, 1, 2], [3, 4], [5]]
    assert [c.component_number for c in components] == [0, 1, 2]

    second = components[1]
    assert [v.index for v in second.vertices] == [0, 1]
    assert second.number_of_edges() == 1
    assert np.allclose(second.get_edge(0, 1).transform, graph.get_edge(3, 4).transform)
    assert second.inlier_groups == [[
        ((0, 0), KeypointInfo(0.0, 3.0, 1.0, 2.0, 0)),
        ((1, 7), KeypointInfo(7.0, 4.0, 1.0, 2.0, 1)),
    ]]
    assert components[2].number_of_edges() == 0
    assert components[2].inlier_groups == []

    assert second.relative_poses_path == str(tmp_path / 'component_1_relative_poses.txt')
    assert second.absolute_rotations_path == str(tmp_path / 'component_1_absolute_rotations.txt')


def test_split_does_not_share_poses():
    graph, absolute = _get_test_setup()
    components = graph.split()

    components[0].set_translation(1, np.array([9., 9., 9.]))
    components[0].set_rotation(2, np.eye(3))

    assert np.allclose(graph.vertices[1].pose[:3, 3], 0.)
    assert np.allclose(components[0].poses()[1][:3, 3], 9.)


def test_split_orders_components_by_size():
    graph = PoseGraph.from_frames(_frames(5))
    graph.add_edge_pair(2, 3, np.eye(4))
    graph.add_edge_pair(3, 4, np.eye(4))
    graph.add_edge_pair(0, 1, np.eye(4))

    components = graph.split()

    assert [c.initial_indices for c in components] == [[2, 3, 4], [0, 1]]


def test_inlier_group_across_components_raises():
    graph, _ = _get_test_setup()
    info = KeypointInfo(0.0, 0.0, 1.0, 1.0, 0)
    graph.add_inlier_groups([[((0, 0), info), ((5, 0), attr.evolve(info, frame_index=5))]])

    with pytest.raises(InvariantViolation):
        graph.split()