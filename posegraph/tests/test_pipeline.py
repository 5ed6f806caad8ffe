import numpy as np
import pytest

from posegraph.absolute_poses import AbsolutePoseOptimizer, OptimizationState
from posegraph.config import PipelineConfig, RobustEstimationParameters
from posegraph.correspondence_graph import estimate_relative_poses
from posegraph.datasets.synthetic import SyntheticRgbdScene
from posegraph.errors import InputDegenerate, InvariantViolation
from posegraph.poses import rotation_angle_between
from posegraph.relative_pose import RelativePoseEstimator
from posegraph.running import run_reconstruction


def _get_test_setup(tmp_path, **scene_kwargs):
    scene_params = dict(number_of_frames=6, px_noise=0.3, depth_noise=0.0005, outlier_ratio=0.1, seed=1)
    scene_params.update(scene_kwargs)
    scene = SyntheticRgbdScene.generate(**scene_params)
    config = PipelineConfig(
        ransac=RobustEstimationParameters(random_seed=0),
        work_dir=str(tmp_path),
        num_workers=2,
        show_progress=False,
    )
    return scene, config


def _assert_close_to_ground_truth(scene, first_frame, frame, pose, max_angle=1e-2, max_distance=2e-2):
    expected = scene.gt_relative_pose(first_frame, frame)
    assert rotation_angle_between(expected[:3, :3], pose[:3, :3]) < max_angle
    assert np.linalg.norm(expected[:3, 3] - pose[:3, 3]) < max_distance


def test_end_to_end_single_component(tmp_path):
    scene, config = _get_test_setup(tmp_path)

    result = run_reconstruction(config, data_provider=scene)
    statistics = result.statistics

    assert statistics.pairs_considered == 15
    assert statistics.poses_measured == 15
    assert statistics.component_sizes == [6]
    assert len(result.components) == 1

    report = statistics.component_reports[0]
    assert report.reached_bundle_adjustment
    assert report.failure_reason is None
    assert report.translation_converged
    assert report.median_reprojection_after <= report.median_reprojection_before

    component = result.components[0]
    assert component.state == OptimizationState.BUNDLE_ADJUSTED
    assert np.allclose(component.poses[0], np.eye(4))
    for frame in range(6):
        _assert_close_to_ground_truth(scene, 0, frame, result.poses_by_frame[frame][1])

    assert (tmp_path / 'relative_poses.txt').exists()
    assert (tmp_path / 'component_0_relative_poses.txt').exists()
    assert (tmp_path / 'component_0_absolute_rotations.txt').exists()

    df = statistics.to_df()
    assert len(df) == 1
    assert bool(df['reached_bundle_adjustment'].iloc[0])


def test_end_to_end_two_components(tmp_path):
    scene, config = _get_test_setup(tmp_path, number_of_components=2, outlier_ratio=0.0)

    result = run_reconstruction(config, data_provider=scene)

    assert result.statistics.component_sizes == [3, 3]
    assert [c.initial_indices for c in result.components] == [[0, 1, 2], [3, 4, 5]]
    assert result.component_of_frame(1) == 0
    assert result.component_of_frame(4) == 1

    for component in result.components:
        first_frame = component.initial_indices[0]
        for local_index, frame in enumerate(component.initial_indices):
            _assert_close_to_ground_truth(scene, first_frame, frame, component.poses[local_index])


def test_small_components_are_recorded_not_optimized(tmp_path):
    scene, config = _get_test_setup(tmp_path, number_of_frames=5, number_of_components=2, outlier_ratio=0.0)
    config = PipelineConfig(
        ransac=config.ransac, work_dir=config.work_dir, show_progress=False, min_component_size=3
    )

    result = run_reconstruction(config, data_provider=scene)

    assert result.statistics.component_sizes == [3, 2]
    assert len(result.components) == 1
    reports = result.statistics.component_reports
    assert reports[0].reached_bundle_adjustment
    assert not reports[1].reached_bundle_adjustment
    assert reports[1].failure_reason == 'below minimum component size'
    assert result.component_of_frame(4) is None


def test_failed_component_does_not_abort_the_run(tmp_path):
    scene, config = _get_test_setup(tmp_path, number_of_components=2, outlier_ratio=0.0)

    class _BrokenRotationAverager:
        def __init__(self):
            self.calls = 0

        def average(self, relative_poses_path, absolute_rotations_path):
            self.calls += 1
            if self.calls == 1:
                return []
            return [np.eye(3)] * 3

    result = run_reconstruction(config, data_provider=scene, rotation_averager=_BrokenRotationAverager())

    reports = result.statistics.component_reports
    assert len(reports) == 2
    assert reports[0].failure_reason.startswith('InvariantViolation')
    assert not reports[0].reached_bundle_adjustment
    assert reports[1].reached_bundle_adjustment
    assert len(result.components) == 1


def test_parallel_estimation_is_deterministic(tmp_path):
    scene, config = _get_test_setup(tmp_path)
    estimator = RelativePoseEstimator.from_params(config.ransac, config.icp)

    graphs = []
    for num_workers in (1, 4):
        graph, outcomes = estimate_relative_poses(
            scene.get_frames(), scene.get_matches(), estimator, num_workers=num_workers, show_progress=False
        )
        assert [(o.frame_from, o.frame_to) for o in outcomes] == sorted((o.frame_from, o.frame_to) for o in outcomes)
        graphs.append(graph)

    sequential, parallel = graphs
    assert sequential.number_of_edges() == parallel.number_of_edges()
    for edge_a, edge_b in zip(sequential.forward_edges(), parallel.forward_edges()):
        assert (edge_a.index_from, edge_a.index_to) == (edge_b.index_from, edge_b.index_to)
        assert np.array_equal(edge_a.transform, edge_b.transform)
    assert sequential.inlier_groups == parallel.inlier_groups


def test_optimizer_stages_must_run_in_order(tmp_path):
    scene, config = _get_test_setup(tmp_path)
    estimator = RelativePoseEstimator.from_params(config.ransac, config.icp)
    graph, _ = estimate_relative_poses(scene.get_frames(), scene.get_matches(), estimator, show_progress=False)
    component = graph.split(work_dir=str(tmp_path))[0]

    optimizer = AbsolutePoseOptimizer.from_config(component, config)

    with pytest.raises(InvariantViolation):
        optimizer.perform_translation_averaging()

    optimizer.perform_rotation_averaging()
    assert optimizer.state == OptimizationState.ROTATIONS_AVERAGED
    with pytest.raises(InvariantViolation):
        optimizer.perform_rotation_averaging()
    with pytest.raises(InvariantViolation):
        optimizer.perform_bundle_adjustment()

    optimizer.perform_rotation_robust_optimization()
    optimizer.perform_translation_averaging()
    assert optimizer.state == OptimizationState.TRANSLATIONS_AVERAGED
    for frame in range(6):
        _assert_close_to_ground_truth(scene, 0, frame, component.vertices[frame].pose)


def test_optimizer_rejects_degenerate_components(tmp_path):
    scene, config = _get_test_setup(tmp_path, number_of_frames=2, outlier_ratio=0.0)
    estimator = RelativePoseEstimator.from_params(config.ransac, config.icp)
    graph, _ = estimate_relative_poses(scene.get_frames(), scene.get_matches(), estimator, show_progress=False)
    component = graph.split()[0]

    with pytest.raises(InputDegenerate):
        AbsolutePoseOptimizer.from_config(component, PipelineConfig(min_component_size=3))
    with pytest.raises(InputDegenerate):
        AbsolutePoseOptimizer.from_config(component, PipelineConfig(index_fixed=2))
