""" Joint refinement of absolute poses and point positions against reprojection and depth.

Every observation contributes a 2D reprojection residual and a 1D depth residual. Each is divided by
a per observation deviation divider (coarser keypoints and farther points are noisier) and by a
robust noise scale sigma estimated from the inliers before optimization, then goes through a Cauchy loss.
"""
import logging
from typing import Callable, List, Protocol, Sequence, runtime_checkable

import attr
import numpy as np
import scipy.sparse as sp
from scipy.optimize import least_squares
from scipy.spatial.transform import Rotation as R

from posegraph.cam import CameraIntrinsics
from posegraph.config import BundleAdjustmentParameters
from posegraph.errors import InputDegenerate, InvariantViolation, SolverNonConvergence
from posegraph.math import get_quantile, initial_scale_from_median, rms
from posegraph.point_tracks import PointTracks
from posegraph.poses import rotation_to_quaternion, quaternion_to_rotation
from posegraph.transforms import make_SE3
from posegraph.types import CameraPoseSE3
from utils.profiling import just_time

logger = logging.getLogger(__name__)

DeviationDivider = Callable[[float, float], float]


def reprojection_divider_by_scale(scale: float, noise_parameter: float) -> float:
    return noise_parameter * scale


def depth_divider_by_squared_depth(depth: float, noise_parameter: float) -> float:
    """ structured light depth noise grows quadratically with distance """
    return noise_parameter * depth ** 2


@attr.define
class DeviationDividers:
    reprojection: DeviationDivider = reprojection_divider_by_scale
    depth: DeviationDivider = depth_divider_by_squared_depth


@attr.define
class ParameterBlocks:
    translations: np.ndarray    # (P, 3)
    orientations: np.ndarray    # (P, 4) unit quaternions, xyzw
    points: np.ndarray          # (K, 3)
    index_fixed: int

    @classmethod
    def from_poses(cls, poses: Sequence[CameraPoseSE3], points: np.ndarray, index_fixed: int) -> 'ParameterBlocks':
        return cls(
            translations=np.array([pose[:3, 3] for pose in poses], dtype=np.float64).reshape(-1, 3),
            orientations=np.array([rotation_to_quaternion(pose[:3, :3]) for pose in poses]).reshape(-1, 4),
            points=np.array(points, dtype=np.float64).reshape(-1, 3),
            index_fixed=index_fixed,
        )

    def poses(self) -> List[CameraPoseSE3]:
        return [
            make_SE3(quaternion_to_rotation(q / np.linalg.norm(q)), t)
            for t, q in zip(self.translations, self.orientations)
        ]

    @property
    def number_of_poses(self) -> int:
        return len(self.translations)


@attr.define
class ResidualSpecification:
    """ One row per observation, arrays aligned """
    pose_indices: np.ndarray       # (M,)
    point_indices: np.ndarray      # (M,)
    observed_px: np.ndarray        # (M, 2)
    observed_depths: np.ndarray    # (M,)
    scales: np.ndarray             # (M,) keypoint detector scale
    intrinsics: np.ndarray         # (M, 4) fx, fy, cx, cy of the observing camera
    reprojection_deviation: np.ndarray = None   # (M,) divider * sigma, filled before optimization
    depth_deviation: np.ndarray = None

    def __len__(self) -> int:
        return len(self.pose_indices)


def _project_observations(
    translations: np.ndarray,
    rotations: np.ndarray,
    points: np.ndarray,
    spec: ResidualSpecification,
):
    """ local = R_p^T (X_k - t_p), then pinhole. Returns (px (M, 2), local depth (M,), local (M, 3)) """
    offsets = points[spec.point_indices] - translations[spec.pose_indices]
    local = np.einsum('mji,mj->mi', rotations[spec.pose_indices], offsets)
    fx, fy, cx, cy = spec.intrinsics.T
    px = np.column_stack([fx * local[:, 0] / local[:, 2] + cx, fy * local[:, 1] / local[:, 2] + cy])
    return px, local[:, 2], local


@attr.define
class ResidualSummary:
    median_reprojection: float
    median_depth: float
    median_l2: float
    mean_reprojection: float
    mean_depth: float

    @classmethod
    def compute(cls, blocks: ParameterBlocks, spec: ResidualSpecification) -> 'ResidualSummary':
        rotations = R.from_quat(blocks.orientations).as_matrix()
        px, depth, local = _project_observations(blocks.translations, rotations, blocks.points, spec)
        reprojection = np.linalg.norm(px - spec.observed_px, axis=1)
        depth_errors = np.abs(depth - spec.observed_depths)

        fx, fy, cx, cy = spec.intrinsics.T
        observed_local = np.column_stack([
            (spec.observed_px[:, 0] - cx) * spec.observed_depths / fx,
            (spec.observed_px[:, 1] - cy) * spec.observed_depths / fy,
            spec.observed_depths,
        ])
        l2 = np.linalg.norm(local - observed_local, axis=1)

        return cls(
            median_reprojection=get_quantile(reprojection),
            median_depth=get_quantile(depth_errors),
            median_l2=get_quantile(l2),
            mean_reprojection=float(np.mean(reprojection)),
            mean_depth=float(np.mean(depth_errors)),
        )


@attr.define
class SigmaEstimate:
    sigma: float
    initial_scale: float
    number_of_inliers: int


def estimate_sigma(normalized_errors: np.ndarray, inlier_threshold: float, min_sigma: float) -> SigmaEstimate:
    """ RMS of the errors within inlier_threshold robust scales, s_0 = 1.4826 * median. """
    if len(normalized_errors) == 0:
        raise InputDegenerate("No residuals to estimate the noise scale from")

    initial_scale = initial_scale_from_median(get_quantile(normalized_errors, 0.5))

    if initial_scale <= 0:
        # at least half of the errors are exactly zero
        inliers = normalized_errors[normalized_errors <= 0]
    else:
        inliers = normalized_errors[np.abs(normalized_errors / initial_scale) < inlier_threshold]

    if len(inliers) == 0:
        raise InvariantViolation("No inlier residuals below the robust threshold")

    return SigmaEstimate(
        sigma=max(rms(inliers), min_sigma),
        initial_scale=initial_scale,
        number_of_inliers=len(inliers),
    )


@attr.define
class OptimizerOutcome:
    blocks: ParameterBlocks
    success: bool
    message: str
    initial_cost: float
    final_cost: float


@runtime_checkable
class Optimizer(Protocol):
    """ Nonlinear least squares over the bundle adjustment parameter blocks. The fixed pose stays put. """
    def solve(self, blocks: ParameterBlocks, spec: ResidualSpecification) -> OptimizerOutcome:
        ...


@attr.define
class ScipyLeastSquaresOptimizer(Optimizer):
    """ Trust region reflective least squares with a Cauchy loss on the sigma normalized residuals.
    Orientations are optimized on the rotation manifold: q = q0 * exp(delta), delta starts at zero. """
    max_iterations: int = 1000
    verbose: bool = False

    def _residual_function(self, blocks: ParameterBlocks, spec: ResidualSpecification):
        number_of_poses = blocks.number_of_poses
        free_poses = np.array([p for p in range(number_of_poses) if p != blocks.index_fixed], dtype=np.int64)
        initial_rotations = R.from_quat(blocks.orientations)
        pose_block = 6 * len(free_poses)

        def _unpack(x: np.ndarray):
            translations = blocks.translations.copy()
            deltas = np.zeros((number_of_poses, 3))
            pose_params = x[:pose_block].reshape(-1, 6)
            translations[free_poses] = pose_params[:, :3]
            deltas[free_poses] = pose_params[:, 3:]
            rotations = initial_rotations * R.from_rotvec(deltas)
            points = x[pose_block:].reshape(-1, 3)
            return translations, rotations, points

        def _residuals(x: np.ndarray) -> np.ndarray:
            translations, rotations, points = _unpack(x)
            px, depth, _ = _project_observations(translations, rotations.as_matrix(), points, spec)
            residuals = np.column_stack([
                (px - spec.observed_px) / spec.reprojection_deviation[:, None],
                (depth - spec.observed_depths) / spec.depth_deviation,
            ])
            return residuals.ravel()

        x0 = np.concatenate([
            np.column_stack([blocks.translations[free_poses], np.zeros((len(free_poses), 3))]).ravel(),
            blocks.points.ravel(),
        ])

        return _residuals, _unpack, x0, free_poses

    @staticmethod
    def _jacobian_sparsity(
        spec: ResidualSpecification,
        free_poses: np.ndarray,
        number_of_poses: int,
        number_of_points: int,
    ):
        variable_of_pose = np.full(number_of_poses, -1, dtype=np.int64)
        variable_of_pose[free_poses] = np.arange(len(free_poses))
        pose_block = 6 * len(free_poses)

        sparsity = sp.lil_matrix((3 * len(spec), pose_block + 3 * number_of_points), dtype=int)
        for m, (pose, point) in enumerate(zip(spec.pose_indices, spec.point_indices)):
            rows = slice(3 * m, 3 * m + 3)
            if variable_of_pose[pose] >= 0:
                start = 6 * variable_of_pose[pose]
                sparsity[rows, start:start + 6] = 1
            start = pose_block + 3 * point
            sparsity[rows, start:start + 3] = 1
        return sparsity

    def solve(self, blocks: ParameterBlocks, spec: ResidualSpecification) -> OptimizerOutcome:
        residuals, unpack, x0, free_poses = self._residual_function(blocks, spec)
        sparsity = self._jacobian_sparsity(spec, free_poses, blocks.number_of_poses, len(blocks.points))

        solution = least_squares(
            residuals,
            x0,
            jac_sparsity=sparsity,
            method='trf',
            loss='cauchy',
            f_scale=1.0,
            x_scale='jac',
            max_nfev=self.max_iterations,
            verbose=2 if self.verbose else 0,
        )

        translations, rotations, points = unpack(solution.x)
        optimized = ParameterBlocks(
            translations=translations,
            orientations=rotations.as_quat(),
            points=points.copy(),
            index_fixed=blocks.index_fixed,
        )

        return OptimizerOutcome(
            blocks=optimized,
            success=bool(solution.success),
            message=str(solution.message),
            initial_cost=float(0.5 * np.sum(residuals(x0) ** 2)),
            final_cost=float(0.5 * np.sum(solution.fun ** 2)),
        )


@attr.define
class BundleAdjustmentResult:
    poses: List[CameraPoseSE3]
    points: np.ndarray
    sigma_reprojection: SigmaEstimate
    sigma_depth: SigmaEstimate
    errors_before: ResidualSummary
    errors_after: ResidualSummary
    converged: bool


def build_residual_specification(
    tracks: PointTracks,
    cameras: Sequence[CameraIntrinsics],
) -> ResidualSpecification:
    pose_indices, point_indices, px, depths, scales, intrinsics = [], [], [], [], [], []

    for pose_index, observations in enumerate(tracks.observations_by_frame):
        camera = cameras[pose_index]
        for point_index, info in sorted(observations.items()):
            pose_indices.append(pose_index)
            point_indices.append(point_index)
            px.append((info.x, info.y))
            depths.append(info.depth)
            scales.append(info.scale)
            intrinsics.append((camera.fx, camera.fy, camera.cx, camera.cy))

    return ResidualSpecification(
        pose_indices=np.array(pose_indices, dtype=np.int64),
        point_indices=np.array(point_indices, dtype=np.int64),
        observed_px=np.array(px, dtype=np.float64).reshape(-1, 2),
        observed_depths=np.array(depths, dtype=np.float64),
        scales=np.array(scales, dtype=np.float64),
        intrinsics=np.array(intrinsics, dtype=np.float64).reshape(-1, 4),
    )


@attr.define
class DepthBundleAdjuster:
    params: BundleAdjustmentParameters
    optimizer: Optimizer
    dividers: DeviationDividers = attr.Factory(DeviationDividers)

    @classmethod
    def from_params(cls, params: BundleAdjustmentParameters) -> 'DepthBundleAdjuster':
        return cls(params=params, optimizer=ScipyLeastSquaresOptimizer(max_iterations=params.max_iterations))

    def _dividers(self, spec: ResidualSpecification):
        reprojection = np.array([self.dividers.reprojection(s, self.params.reprojection_noise) for s in spec.scales])
        depth = np.array([self.dividers.depth(d, self.params.depth_noise) for d in spec.observed_depths])
        if np.any(reprojection <= 0) or np.any(depth <= 0):
            raise InvariantViolation("Deviation dividers must be positive")
        return reprojection, depth

    def normalized_errors(self, blocks: ParameterBlocks, spec: ResidualSpecification):
        """ reprojection L2 and absolute depth errors, each divided by its deviation divider """
        rotations = R.from_quat(blocks.orientations).as_matrix()
        px, depth, _ = _project_observations(blocks.translations, rotations, blocks.points, spec)
        reprojection_divider, depth_divider = self._dividers(spec)
        return (
            np.linalg.norm(px - spec.observed_px, axis=1) / reprojection_divider,
            np.abs(depth - spec.observed_depths) / depth_divider,
        )

    def adjust(
        self,
        poses: Sequence[CameraPoseSE3],
        cameras: Sequence[CameraIntrinsics],
        tracks: PointTracks,
        index_fixed: int = 0,
    ) -> BundleAdjustmentResult:
        if len(poses) == 0:
            raise InputDegenerate("No poses to adjust")

        spec = build_residual_specification(tracks, cameras)
        if len(spec) == 0:
            raise InputDegenerate("No observations for bundle adjustment")

        blocks = ParameterBlocks.from_poses(poses, tracks.positions, index_fixed)

        errors_reprojection, errors_depth = self.normalized_errors(blocks, spec)
        sigma_reprojection = estimate_sigma(errors_reprojection, self.params.inlier_threshold, self.params.min_sigma)
        sigma_depth = estimate_sigma(errors_depth, self.params.inlier_threshold, self.params.min_sigma)
        logger.info(f"Deviation estimation sigmas: {sigma_reprojection.sigma:.4g} (normalized px) "
                    f"and {sigma_depth.sigma:.4g} (normalized m)")

        reprojection_divider, depth_divider = self._dividers(spec)
        spec.reprojection_deviation = reprojection_divider * sigma_reprojection.sigma
        spec.depth_deviation = depth_divider * sigma_depth.sigma

        errors_before = ResidualSummary.compute(blocks, spec)

        with just_time(f'bundle adjustment of {len(poses)} poses, {len(blocks.points)} points, {len(spec)} observations'):
            outcome = self.optimizer.solve(blocks, spec)

        if not outcome.success:
            if self.params.fail_on_non_convergence:
                raise SolverNonConvergence(f"Bundle adjustment failed: {outcome.message}")
            logger.warning(f"Bundle adjustment solver did not report success ({outcome.message}), using last iterate")

        errors_after = ResidualSummary.compute(outcome.blocks, spec)
        logger.info(f"Median reprojection error {errors_before.median_reprojection:.4g} -> "
                    f"{errors_after.median_reprojection:.4g} px, depth {errors_before.median_depth:.4g} -> "
                    f"{errors_after.median_depth:.4g} m, L2 {errors_before.median_l2:.4g} -> {errors_after.median_l2:.4g} m")

        return BundleAdjustmentResult(
            poses=outcome.blocks.poses(),
            points=outcome.blocks.points,
            sigma_reprojection=sigma_reprojection,
            sigma_depth=sigma_depth,
            errors_before=errors_before,
            errors_after=errors_after,
            converged=outcome.success,
        )
