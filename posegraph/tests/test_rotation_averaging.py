import numpy as np
import pytest

from posegraph.config import RotationRefinementParameters
from posegraph.interchange import write_pose_graph_file
from posegraph.measurements import RotationMeasurement
from posegraph.poses import get_SE3_pose, rotation_angle_between, rotation_exp, rotation_log
from posegraph.rotation_averaging import (
    ChordalRotationAverager, RobustRotationOptimizer, chordal_rotation_averaging, robust_cost
)
from posegraph.transforms import make_SE3


def _get_test_setup(number_of_poses: int = 6):
    rng = np.random.default_rng(7)
    rotations = [np.eye(3)] + [
        get_SE3_pose(yaw=rng.uniform(-0.5, 0.5), pitch=rng.uniform(-0.5, 0.5), roll=rng.uniform(-0.5, 0.5))[:3, :3]
        for _ in range(number_of_poses - 1)
    ]
    edges = [(i, j) for i in range(number_of_poses) for j in range(i + 1, number_of_poses) if j - i <= 2]
    measurements = [
        RotationMeasurement(rotation=rotations[i].T @ rotations[j], index_from=i, index_to=j)
        for i, j in edges
    ]
    return rotations, measurements


def test_chordal_averaging_exact():
    rotations, measurements = _get_test_setup()

    estimated = chordal_rotation_averaging(
        len(rotations), [(m.index_from, m.index_to, m.rotation) for m in measurements], index_fixed=0
    )

    for expected, got in zip(rotations, estimated):
        assert rotation_angle_between(expected, got) < 1e-8


def test_chordal_averaging_up_to_global_rotation():
    rotations, measurements = _get_test_setup()

    estimated = chordal_rotation_averaging(
        len(rotations), [(m.index_from, m.index_to, m.rotation) for m in measurements], index_fixed=3
    )

    # anchored at vertex 3, so everything is off by the rotation of vertex 3
    assert np.allclose(estimated[3], np.eye(3))
    for expected, got in zip(rotations, estimated):
        assert rotation_angle_between(rotations[3].T @ expected, got) < 1e-8


def test_chordal_averager_through_files(tmp_path):
    rotations, measurements = _get_test_setup()
    relative_poses_path = str(tmp_path / 'relative_poses.txt')
    absolute_rotations_path = str(tmp_path / 'absolute_rotations.txt')

    write_pose_graph_file(
        relative_poses_path,
        len(rotations),
        [(m.index_from, m.index_to, make_SE3(m.rotation, np.zeros(3))) for m in measurements],
    )

    estimated = ChordalRotationAverager().average(relative_poses_path, absolute_rotations_path)

    assert len(estimated) == len(rotations)
    for expected, got in zip(rotations, estimated):
        assert rotation_angle_between(expected, got) < 1e-6


def test_robust_refinement_resists_a_corrupted_edge():
    rotations, measurements = _get_test_setup()
    rng = np.random.default_rng(1)

    noisy = []
    for m in measurements:
        rotation = m.rotation @ rotation_exp(rng.normal(0.0, 0.002, 3))
        if (m.index_from, m.index_to) == (2, 3):
            rotation = rotation @ rotation_exp(np.array([0.0, 0.6, 0.0]))
        noisy.append(RotationMeasurement(rotation=rotation, index_from=m.index_from, index_to=m.index_to))

    initial = chordal_rotation_averaging(len(rotations), [(m.index_from, m.index_to, m.rotation) for m in noisy])
    initial_error = max(rotation_angle_between(e, g) for e, g in zip(rotations, initial))

    result = RobustRotationOptimizer(RotationRefinementParameters(loss_scale=0.05)).optimize(initial, noisy)
    refined_error = max(rotation_angle_between(e, g) for e, g in zip(rotations, result.rotations))

    # the corrupted edge residual grows, only the robust cost has to go down
    assert result.final_cost < result.initial_cost
    assert np.isclose(result.final_cost, robust_cost(
        np.concatenate([
            rotation_log(m.rotation.T @ result.rotations[m.index_from].T @ result.rotations[m.index_to]) for m in noisy
        ]),
        loss='cauchy',
        loss_scale=0.05,
    ))
    assert refined_error < initial_error
    assert refined_error < 0.02
    assert np.allclose(result.rotations[0], initial[0])


def test_robust_refinement_trivial_inputs():
    optimizer = RobustRotationOptimizer(RotationRefinementParameters())

    result = optimizer.optimize([np.eye(3)], [])
    assert result.converged
    assert np.allclose(result.rotations[0], np.eye(3))


def test_robust_cost():
    residuals = np.array([0.0, 0.1, -0.2])

    assert np.isclose(robust_cost(residuals, 'linear', 1.0), 0.5 * np.sum(residuals ** 2))
    assert np.isclose(robust_cost(residuals, 'cauchy', 0.1), 0.5 * 0.01 * (np.log(2.) + np.log(5.)))
    # an outlier costs far less than its square under the cauchy loss
    assert robust_cost(np.array([10.0]), 'cauchy', 0.1) < 0.01 * robust_cost(np.array([10.0]), 'linear', 0.1)

    with pytest.raises(ValueError):
        robust_cost(residuals, 'tukey', 1.0)
