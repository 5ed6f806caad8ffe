import logging
import os
from typing import Dict, List, Optional, Sequence, Tuple

import attr

from posegraph.absolute_poses import AbsolutePoseOptimizer, ComponentResult
from posegraph.bundle_adjustment import DeviationDividers, Optimizer
from posegraph.config import PipelineConfig
from posegraph.correspondence_graph import estimate_relative_poses, write_relative_poses_file
from posegraph.datasets.provider import DataProvider
from posegraph.errors import PoseGraphError
from posegraph.features import FeatureMatcher
from posegraph.frames import Frame
from posegraph.matches import KeypointMatchStore
from posegraph.pose_graph import PoseGraph
from posegraph.relative_pose import RelativePoseEstimator
from posegraph.rotation_averaging import RotationAverager
from posegraph.statistics import ComponentReport, RunStatistics
from posegraph.types import CameraPoseSE3
from utils.file_utils import mkdir_p
from utils.profiling import just_time

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s %(levelname)s %(name)s: %(message)s'


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)


@attr.define
class ReconstructionResult:
    graph: PoseGraph = attr.ib(repr=False)
    components: List[ComponentResult] = attr.ib(repr=False)
    statistics: RunStatistics
    # frame index in the input -> (component number, pose in that component's coordinates)
    poses_by_frame: Dict[int, Tuple[int, CameraPoseSE3]] = attr.ib(factory=dict, repr=False)

    def component_of_frame(self, frame_index: int) -> Optional[int]:
        entry = self.poses_by_frame.get(frame_index)
        return entry[0] if entry is not None else None


def _gather_inputs(
    data_provider: Optional[DataProvider],
    frames: Optional[Sequence[Frame]],
    match_store: Optional[KeypointMatchStore],
    feature_matcher: Optional[FeatureMatcher],
) -> Tuple[List[Frame], KeypointMatchStore]:
    if data_provider is not None:
        return data_provider.get_frames(), data_provider.get_matches()

    if frames is None:
        raise ValueError("Either a data provider or frames are needed")

    if match_store is None:
        if feature_matcher is None:
            raise ValueError("Frames without matches need a feature matcher")
        with just_time('matching all frame pairs'):
            match_store = KeypointMatchStore.from_feature_matcher(frames, feature_matcher)

    return list(frames), match_store


def _optimize_component(
    component,
    config: PipelineConfig,
    rotation_averager: Optional[RotationAverager],
    optimizer: Optional[Optimizer],
    dividers: Optional[DeviationDividers],
) -> ComponentResult:
    absolute_pose_optimizer = AbsolutePoseOptimizer.from_config(
        component=component,
        config=config,
        rotation_averager=rotation_averager,
        optimizer=optimizer,
        dividers=dividers,
    )
    return absolute_pose_optimizer.run()


def run_reconstruction(
    config: PipelineConfig,
    data_provider: Optional[DataProvider] = None,
    frames: Optional[Sequence[Frame]] = None,
    match_store: Optional[KeypointMatchStore] = None,
    feature_matcher: Optional[FeatureMatcher] = None,
    rotation_averager: Optional[RotationAverager] = None,
    optimizer: Optional[Optimizer] = None,
    dividers: Optional[DeviationDividers] = None,
) -> ReconstructionResult:
    frames, match_store = _gather_inputs(data_provider, frames, match_store, feature_matcher)
    statistics = RunStatistics()

    match_store.bound_degree(config.max_degree)

    estimator = RelativePoseEstimator.from_params(config.ransac, config.icp, config.use_icp_refinement)
    with just_time('relative pose estimation'):
        graph, outcomes = estimate_relative_poses(
            frames, match_store, estimator, num_workers=config.num_workers, show_progress=config.show_progress
        )
    statistics.record_pairs(outcomes)

    mkdir_p(config.work_dir)
    write_relative_poses_file(graph, os.path.join(config.work_dir, 'relative_poses.txt'))

    components = graph.split(work_dir=config.work_dir)
    statistics.component_sizes = [component.number_of_poses for component in components]

    results = []
    poses_by_frame = {}

    for component in components:
        if component.number_of_poses < config.min_component_size:
            logger.info(f"Component {component.component_number} of {component.number_of_poses} poses "
                        f"is below {config.min_component_size=}, not optimized")
            statistics.record_component(ComponentReport.from_failure(
                component.component_number, component.number_of_poses, 'below minimum component size'
            ))
            continue

        try:
            result = _optimize_component(component, config, rotation_averager, optimizer, dividers)
        except PoseGraphError as exc:
            logger.warning(f"Component {component.component_number} aborted: {type(exc).__name__}: {exc}")
            statistics.record_component(ComponentReport.from_failure(
                component.component_number, component.number_of_poses, f'{type(exc).__name__}: {exc}'
            ))
            continue

        results.append(result)
        statistics.record_component(ComponentReport.from_component_result(component.number_of_poses, result))

        for local_index, initial_index in enumerate(result.initial_indices):
            poses_by_frame[initial_index] = (result.component_number, result.poses[local_index])

    logger.info(statistics.summary())

    return ReconstructionResult(
        graph=graph,
        components=results,
        statistics=statistics,
        poses_by_frame=poses_by_frame,
    )
