""" Pairwise relative pose from keypoints with depth.

Both frames' matched keypoints are lifted to 3D, LO-RANSAC over closed form rigid alignments
gives a first transform and then ICP over the full keypoint clouds competes with it.
Whichever has more inliers under the same criterion is kept.
"""
import logging
from typing import List, Optional, Protocol, Tuple, runtime_checkable

import attr
import numpy as np
from scipy.spatial import cKDTree

from posegraph.cam import CameraIntrinsics
from posegraph.config import RobustEstimationParameters, IcpParameters
from posegraph.frames import Frame, KeypointInfo
from posegraph.math import lp_norms
from posegraph.matches import Match
from posegraph.transforms import apply_SE3
from posegraph.types import CamCoords3d, TransformSE3
from posegraph.umeyama import umeyama
from utils.custom_types import ObservationKey

logger = logging.getLogger(__name__)

MINIMAL_SAMPLE_SIZE = 3

ObservationGroup = List[Tuple[ObservationKey, KeypointInfo]]


class RobustEstimate:
    @attr.define
    class Failure:
        reason: str

    @attr.define
    class Success:
        transform: TransformSE3
        inlier_indices: np.ndarray


class RefinementResult:
    @attr.define
    class Failure:
        reason: str

    @attr.define
    class Success:
        transform: TransformSE3
        iterations: int
        mean_squared_error: float


class RelativePoseResult:
    @attr.define
    class Failure:
        reason: str

    @attr.define
    class Success:
        transform: TransformSE3     # carries frame_to coordinates into frame_from coordinates
        inlier_indices: np.ndarray  # positions inside the match list
        inlier_groups: List[ObservationGroup] = attr.ib(repr=False)
        refined_by_icp: bool
        ransac_inliers: int
        icp_inliers: Optional[int]


@attr.define
class InlierCounter:
    """ Scores a transform over all correspondences of a pair """
    params: RobustEstimationParameters

    def errors(
        self,
        transform: TransformSE3,
        to_be_transformed: CamCoords3d,
        destination: CamCoords3d,
        camera_destination: CameraIntrinsics,
    ) -> np.ndarray:
        transformed = apply_SE3(transform, to_be_transformed)

        if not self.params.use_projection_error:
            return np.linalg.norm(destination - transformed, axis=1)

        in_front = (transformed[:, 2] > 0) & (destination[:, 2] > 0)
        errors = np.full(len(destination), np.inf)
        if in_front.any():
            px_destination = camera_destination.project(destination[in_front])
            px_transformed = camera_destination.project(transformed[in_front])
            errors[in_front] = lp_norms(px_transformed - px_destination, self.params.lp_metric)
        return errors

    def threshold(self) -> float:
        if self.params.use_projection_error:
            return self.params.max_projection_error_px
        return self.params.max_3d_error

    def inliers(
        self,
        transform: TransformSE3,
        to_be_transformed: CamCoords3d,
        destination: CamCoords3d,
        camera_destination: CameraIntrinsics,
    ) -> np.ndarray:
        errors = self.errors(transform, to_be_transformed, destination, camera_destination)
        return np.flatnonzero(errors < self.threshold())


@runtime_checkable
class RobustRelativePoseEstimator(Protocol):
    def estimate(
        self,
        to_be_transformed: CamCoords3d,
        destination: CamCoords3d,
        camera_to_be_transformed: CameraIntrinsics,
        camera_destination: CameraIntrinsics,
    ) -> RobustEstimate:
        ...


@runtime_checkable
class RelativePoseRefiner(Protocol):
    def refine(
        self,
        frame_to_be_transformed: Frame,
        frame_destination: Frame,
        initial_transform: TransformSE3,
    ) -> RefinementResult:
        ...


def clamp_inlier_coeff(inlier_coeff: float) -> Optional[float]:
    """ None means the coefficient is unusable """
    if inlier_coeff < 0:
        return None
    return min(inlier_coeff, 1.0)


@attr.define
class LoRansacEstimator(RobustRelativePoseEstimator):
    params: RobustEstimationParameters
    inlier_counter: InlierCounter
    max_local_optimization_steps: int = 10

    @classmethod
    def from_params(cls, params: RobustEstimationParameters) -> 'LoRansacEstimator':
        return cls(params=params, inlier_counter=InlierCounter(params))

    def _count(self, transform, src, dst, camera) -> np.ndarray:
        return self.inlier_counter.inliers(transform, src, dst, camera)

    def _local_optimization(
        self,
        transform: TransformSE3,
        inliers: np.ndarray,
        src: CamCoords3d,
        dst: CamCoords3d,
        camera: CameraIntrinsics,
    ) -> Tuple[TransformSE3, np.ndarray]:
        """ Refit the hypothesis over its own inliers while that keeps growing the inlier set """
        for _ in range(self.max_local_optimization_steps):
            if len(inliers) < MINIMAL_SAMPLE_SIZE:
                break
            refit = umeyama(src[inliers], dst[inliers])
            refit_inliers = self._count(refit, src, dst, camera)
            if len(refit_inliers) < len(inliers):
                break
            converged = np.array_equal(refit_inliers, inliers)
            transform, inliers = refit, refit_inliers
            if converged:
                break

        return transform, inliers

    def _non_minimal_refit(
        self,
        transform: TransformSE3,
        inliers: np.ndarray,
        src: CamCoords3d,
        dst: CamCoords3d,
        camera: CameraIntrinsics,
        refit_sample_size: int,
        rng: np.random.Generator,
    ) -> Tuple[TransformSE3, np.ndarray]:
        """ Alignment over a random subset of the best inliers, kept only if it finds more inliers """
        sample_size = min(len(inliers), refit_sample_size)
        if sample_size < MINIMAL_SAMPLE_SIZE:
            return transform, inliers

        sample = rng.choice(inliers, size=sample_size, replace=False)
        refit = umeyama(src[sample], dst[sample])
        refit_inliers = self._count(refit, src, dst, camera)
        if len(refit_inliers) > len(inliers):
            return refit, refit_inliers
        return transform, inliers

    def estimate(
        self,
        to_be_transformed: CamCoords3d,
        destination: CamCoords3d,
        camera_to_be_transformed: CameraIntrinsics,
        camera_destination: CameraIntrinsics,
    ) -> RobustEstimate:
        inlier_coeff = clamp_inlier_coeff(self.params.inlier_coeff)
        if inlier_coeff is None:
            return RobustEstimate.Failure(reason=f'negative inlier coefficient {self.params.inlier_coeff=}')

        n = len(to_be_transformed)
        if n < MINIMAL_SAMPLE_SIZE or n * inlier_coeff < self.params.min_inliers:
            return RobustEstimate.Failure(
                reason=f'not enough correspondences {n=} for {self.params.min_inliers=} at {inlier_coeff=}'
            )

        rng = np.random.default_rng(self.params.random_seed)
        refit_sample_size = max(MINIMAL_SAMPLE_SIZE, int(inlier_coeff * n))

        best_transform = None
        best_inliers = np.empty(0, dtype=np.int64)

        for _ in range(self.params.num_iterations):
            sample = rng.choice(n, size=MINIMAL_SAMPLE_SIZE, replace=False)
            hypothesis = umeyama(to_be_transformed[sample], destination[sample])
            inliers = self._count(hypothesis, to_be_transformed, destination, camera_destination)

            if len(inliers) > len(best_inliers):
                best_transform, best_inliers = self._local_optimization(
                    hypothesis, inliers, to_be_transformed, destination, camera_destination
                )

            if best_transform is not None:
                best_transform, best_inliers = self._non_minimal_refit(
                    best_transform, best_inliers, to_be_transformed, destination, camera_destination,
                    refit_sample_size, rng
                )

        if best_transform is None:
            return RobustEstimate.Failure(reason='no hypothesis had any inlier')

        final_inliers = self._count(best_transform, to_be_transformed, destination, camera_destination)

        if len(final_inliers) < self.params.min_inliers or len(final_inliers) < inlier_coeff * n:
            return RobustEstimate.Failure(
                reason=f'{len(final_inliers)} inliers of {n}, need {self.params.min_inliers} and {inlier_coeff=}'
            )

        return RobustEstimate.Success(transform=best_transform, inlier_indices=final_inliers)


@attr.define
class IcpRefiner(RelativePoseRefiner):
    """ Point to point ICP over all keypoints with depth of both frames """
    params: IcpParameters

    def refine(
        self,
        frame_to_be_transformed: Frame,
        frame_destination: Frame,
        initial_transform: TransformSE3,
    ) -> RefinementResult:
        src = frame_to_be_transformed.points_3d()
        dst = frame_destination.points_3d()

        if len(src) < self.params.min_correspondences or len(dst) < self.params.min_correspondences:
            return RefinementResult.Failure(reason=f'too few points for ICP {len(src)=} {len(dst)=}')

        tree = cKDTree(dst)
        transform = initial_transform.copy()
        previous_error = np.inf
        mean_squared_error = np.inf
        iteration = 0

        for iteration in range(1, self.params.max_iterations + 1):
            moved = apply_SE3(transform, src)
            distances, nearest = tree.query(moved, distance_upper_bound=self.params.max_correspondence_distance)
            associated = np.isfinite(distances)

            if associated.sum() < self.params.min_correspondences:
                return RefinementResult.Failure(
                    reason=f'{associated.sum()} associations within {self.params.max_correspondence_distance}m'
                )

            mean_squared_error = float(np.mean(distances[associated] ** 2))
            if previous_error - mean_squared_error < self.params.convergence_tolerance:
                break

            transform = umeyama(src[associated], dst[nearest[associated]])
            previous_error = mean_squared_error

        return RefinementResult.Success(
            transform=transform,
            iterations=iteration,
            mean_squared_error=mean_squared_error
        )


class NoRefinement(RelativePoseRefiner):
    def refine(self, frame_to_be_transformed, frame_destination, initial_transform) -> RefinementResult:
        return RefinementResult.Failure(reason='refinement disabled')


def _inlier_groups(match: Match, frame_from: Frame, frame_to: Frame, inliers: np.ndarray) -> List[ObservationGroup]:
    groups = []
    for k in inliers:
        local_from, local_to = match.index_pairs[k]
        groups.append([
            ((frame_from.index, int(local_from)), frame_from.keypoint_info(local_from)),
            ((frame_to.index, int(local_to)), frame_to.keypoint_info(local_to)),
        ])
    return groups


@attr.define
class RelativePoseEstimator:
    """ Groups up the robust estimator, the competing refiner and the inlier criterion they share """
    robust_estimator: RobustRelativePoseEstimator
    refiner: RelativePoseRefiner
    inlier_counter: InlierCounter

    @classmethod
    def from_params(
        cls,
        ransac_params: RobustEstimationParameters,
        icp_params: Optional[IcpParameters] = None,
        use_icp_refinement: bool = True,
    ) -> 'RelativePoseEstimator':
        refiner = IcpRefiner(icp_params or IcpParameters()) if use_icp_refinement else NoRefinement()
        return cls(
            robust_estimator=LoRansacEstimator.from_params(ransac_params),
            refiner=refiner,
            inlier_counter=InlierCounter(ransac_params),
        )

    def estimate_pair(self, frame_from: Frame, frame_to: Frame, pair_match: Match) -> RelativePoseResult:
        if (pair_match.frame_from, pair_match.frame_to) != (frame_from.index, frame_to.index):
            raise ValueError(
                f"Match {pair_match.frame_from}-{pair_match.frame_to} does not belong to frames "
                f"{frame_from.index}-{frame_to.index}"
            )

        if len(pair_match) == 0:
            return RelativePoseResult.Failure(reason='empty match')

        local_from, local_to = pair_match.local_indices()
        destination = frame_from.points_3d(local_from)
        to_be_transformed = frame_to.points_3d(local_to)

        robust = self.robust_estimator.estimate(
            to_be_transformed, destination, frame_to.intrinsics, frame_from.intrinsics
        )

        match robust:
            case RobustEstimate.Failure(reason=reason):
                return RelativePoseResult.Failure(reason=reason)
            case RobustEstimate.Success():
                pass
            case _:
                raise ValueError("Unhandled robust estimate", robust)

        ransac_inliers = self.inlier_counter.inliers(
            robust.transform, to_be_transformed, destination, frame_from.intrinsics
        )

        chosen_transform, chosen_inliers = robust.transform, ransac_inliers
        refined_by_icp = False
        icp_inlier_count = None

        refinement = self.refiner.refine(frame_to, frame_from, robust.transform)

        match refinement:
            case RefinementResult.Success(transform=refined):
                icp_inliers = self.inlier_counter.inliers(refined, to_be_transformed, destination, frame_from.intrinsics)
                icp_inlier_count = len(icp_inliers)
                # ties go to the refined transform
                if len(ransac_inliers) <= icp_inlier_count:
                    chosen_transform, chosen_inliers = refined, icp_inliers
                    refined_by_icp = True
            case RefinementResult.Failure(reason=reason):
                logger.debug(f"{frame_from.index}-{frame_to.index}: refinement skipped, {reason}")
            case _:
                raise ValueError("Unhandled refinement result", refinement)

        logger.debug(
            f"{frame_from.index}-{frame_to.index}: ransac {len(ransac_inliers)}/{len(pair_match)} "
            f"vs icp {icp_inlier_count}, {refined_by_icp=}"
        )

        return RelativePoseResult.Success(
            transform=chosen_transform,
            inlier_indices=chosen_inliers,
            inlier_groups=_inlier_groups(pair_match, frame_from, frame_to, chosen_inliers),
            refined_by_icp=refined_by_icp,
            ransac_inliers=len(ransac_inliers),
            icp_inliers=icp_inlier_count,
        )
