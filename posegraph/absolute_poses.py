""" Absolute poses of one connected component from its relative ones.

    rotation averaging -> robust rotation refinement -> translation averaging -> bundle adjustment

Each stage reads what the previous one wrote into the component vertices, so they have to run in order.
"""
import enum
import logging
from typing import List, Optional

import attr
import numpy as np

from posegraph.bundle_adjustment import BundleAdjustmentResult, DepthBundleAdjuster, Optimizer, DeviationDividers
from posegraph.config import PipelineConfig
from posegraph.errors import InputDegenerate, InvariantViolation
from posegraph.interchange import write_pose_graph_file
from posegraph.point_tracks import PointTracks, build_point_tracks
from posegraph.pose_graph import ConnectedComponent
from posegraph.poses import project_to_SO3
from posegraph.rotation_averaging import (
    ChordalRotationAverager, RobustRotationOptimizer, RotationAverager, RotationRefinementResult
)
from posegraph.translation_averaging import TranslationAverager, TranslationAveragingResult
from posegraph.types import CameraPoseSE3
from utils.profiling import just_time

logger = logging.getLogger(__name__)


class OptimizationState(enum.IntEnum):
    RAW_GRAPH = 0
    ROTATIONS_AVERAGED = 1
    ROTATIONS_ROBUST = 2
    TRANSLATIONS_AVERAGED = 3
    BUNDLE_ADJUSTED = 4


@attr.define
class ComponentResult:
    component_number: int
    initial_indices: List[int]      # vertex index in the full graph of every component pose
    poses: List[CameraPoseSE3]
    points: np.ndarray
    point_classes: List[int]
    state: OptimizationState
    rotation_refinement: Optional[RotationRefinementResult] = attr.ib(default=None, repr=False)
    translation_averaging: Optional[TranslationAveragingResult] = attr.ib(default=None, repr=False)
    bundle_adjustment: Optional[BundleAdjustmentResult] = attr.ib(default=None, repr=False)


@attr.define
class AbsolutePoseOptimizer:
    component: ConnectedComponent
    config: PipelineConfig
    rotation_averager: RotationAverager
    rotation_optimizer: RobustRotationOptimizer
    translation_averager: TranslationAverager
    bundle_adjuster: DepthBundleAdjuster
    state: OptimizationState = OptimizationState.RAW_GRAPH

    rotation_refinement: Optional[RotationRefinementResult] = attr.ib(default=None, repr=False)
    translation_averaging: Optional[TranslationAveragingResult] = attr.ib(default=None, repr=False)
    bundle_adjustment: Optional[BundleAdjustmentResult] = attr.ib(default=None, repr=False)
    tracks: Optional[PointTracks] = attr.ib(default=None, repr=False)

    @classmethod
    def from_config(
        cls,
        component: ConnectedComponent,
        config: PipelineConfig,
        rotation_averager: Optional[RotationAverager] = None,
        optimizer: Optional[Optimizer] = None,
        dividers: Optional[DeviationDividers] = None,
    ) -> 'AbsolutePoseOptimizer':
        if component.number_of_poses == 0:
            raise InputDegenerate("Empty component")
        if component.number_of_poses < config.min_component_size:
            raise InputDegenerate(
                f"Component {component.component_number} has {component.number_of_poses} poses, "
                f"{config.min_component_size} needed"
            )
        if not 0 <= config.index_fixed < component.number_of_poses:
            raise InputDegenerate(f"{config.index_fixed=} outside a component of {component.number_of_poses} poses")

        bundle_adjuster = DepthBundleAdjuster.from_params(config.bundle_adjustment)
        if optimizer is not None:
            bundle_adjuster.optimizer = optimizer
        if dividers is not None:
            bundle_adjuster.dividers = dividers

        return cls(
            component=component,
            config=config,
            rotation_averager=rotation_averager or ChordalRotationAverager(index_fixed=config.index_fixed),
            rotation_optimizer=RobustRotationOptimizer(config.rotation_refinement, index_fixed=config.index_fixed),
            translation_averager=TranslationAverager(config.translation_averaging, index_fixed=config.index_fixed),
            bundle_adjuster=bundle_adjuster,
        )

    def _require(self, expected: OptimizationState, stage: str) -> None:
        if self.state != expected:
            raise InvariantViolation(f"{stage} needs state {expected.name}, component is at {self.state.name}")

    def write_relative_poses_file(self) -> str:
        path = self.component.relative_poses_path
        write_pose_graph_file(
            path,
            self.component.number_of_poses,
            [(edge.index_from, edge.index_to, edge.transform) for edge in self.component.forward_edges()],
        )
        return path

    def perform_rotation_averaging(self) -> None:
        self._require(OptimizationState.RAW_GRAPH, 'rotation averaging')

        visited = self.component.bfs_propagate_absolute_poses(root=self.config.index_fixed)
        if len(visited) != self.component.number_of_poses:
            raise InvariantViolation(
                f"Component {self.component.component_number}: {len(visited)} of "
                f"{self.component.number_of_poses} vertices reachable"
            )

        relative_poses_path = self.write_relative_poses_file()
        rotations = self.rotation_averager.average(relative_poses_path, self.component.absolute_rotations_path)

        if len(rotations) != self.component.number_of_poses:
            raise InvariantViolation(
                f"Rotation averaging returned {len(rotations)} rotations for {self.component.number_of_poses} poses"
            )

        for i, rotation in enumerate(rotations):
            self.component.set_rotation(i, project_to_SO3(rotation))

        self.state = OptimizationState.ROTATIONS_AVERAGED

    def perform_rotation_robust_optimization(self) -> None:
        self._require(OptimizationState.ROTATIONS_AVERAGED, 'robust rotation refinement')

        result = self.rotation_optimizer.optimize(
            initial_rotations=[v.rotation.copy() for v in self.component.vertices],
            measurements=self.component.relative_rotation_measurements(),
        )
        if not result.converged:
            logger.warning(f"Component {self.component.component_number}: robust rotation refinement "
                           f"stopped before convergence, using the last iterate")

        for i, rotation in enumerate(result.rotations):
            self.component.set_rotation(i, rotation)

        self.rotation_refinement = result
        self.state = OptimizationState.ROTATIONS_ROBUST

    def perform_translation_averaging(self) -> None:
        self._require(OptimizationState.ROTATIONS_ROBUST, 'translation averaging')

        result = self.translation_averager.average(
            measurements=self.component.relative_translation_measurements(),
            rotations=[v.rotation.copy() for v in self.component.vertices],
        )

        for i, translation in enumerate(result.translations):
            self.component.set_translation(i, translation)

        self.translation_averaging = result
        self.state = OptimizationState.TRANSLATIONS_AVERAGED

    def perform_bundle_adjustment(self) -> None:
        self._require(OptimizationState.TRANSLATIONS_AVERAGED, 'bundle adjustment')

        cameras = [v.intrinsics for v in self.component.vertices]
        self.tracks = build_point_tracks(self.component.inlier_groups, self.component.poses(), cameras)
        logger.info(f"Component {self.component.component_number}: {self.tracks.number_of_points} point tracks "
                    f"from {self.tracks.number_of_observations()} observations")

        result = self.bundle_adjuster.adjust(
            poses=self.component.poses(),
            cameras=cameras,
            tracks=self.tracks,
            index_fixed=self.config.index_fixed,
        )

        for i, pose in enumerate(result.poses):
            self.component.set_pose(i, pose)
        self.tracks.positions = result.points

        self.bundle_adjustment = result
        self.state = OptimizationState.BUNDLE_ADJUSTED

    def result(self) -> ComponentResult:
        return ComponentResult(
            component_number=self.component.component_number,
            initial_indices=list(self.component.initial_indices),
            poses=self.component.poses(),
            points=self.tracks.positions.copy() if self.tracks is not None else np.zeros((0, 3)),
            point_classes=list(self.tracks.classes) if self.tracks is not None else [],
            state=self.state,
            rotation_refinement=self.rotation_refinement,
            translation_averaging=self.translation_averaging,
            bundle_adjustment=self.bundle_adjustment,
        )

    def run(self) -> ComponentResult:
        number = self.component.component_number
        with just_time(f'component {number} rotation averaging'):
            self.perform_rotation_averaging()
        with just_time(f'component {number} robust rotation refinement'):
            self.perform_rotation_robust_optimization()
        with just_time(f'component {number} translation averaging'):
            self.perform_translation_averaging()
        with just_time(f'component {number} bundle adjustment'):
            self.perform_bundle_adjustment()
        return self.result()
