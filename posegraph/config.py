from typing import Optional

import attr

from utils.serialization import save_to_msgpack_file, load_from_msgpack_file


@attr.frozen
class RobustEstimationParameters:
    max_3d_error: float = 0.05            # meters
    max_projection_error_px: float = 2.0
    inlier_coeff: float = 0.5             # expected share of inliers, also sizes the non-minimal refit sample
    min_inliers: int = 10
    num_iterations: int = 100
    use_projection_error: bool = True     # False: 3d euclidean residual
    lp_metric: int = 1                    # only used for projection error, 1 or 2
    random_seed: Optional[int] = None


@attr.frozen
class IcpParameters:
    max_iterations: int = 20
    max_correspondence_distance: float = 0.05   # meters
    convergence_tolerance: float = 1e-8
    min_correspondences: int = 6


@attr.frozen
class RotationRefinementParameters:
    loss: str = 'cauchy'
    loss_scale: float = 0.1    # radians
    max_iterations: int = 100


@attr.frozen
class TranslationAveragingParameters:
    irls_iterations: int = 20
    weight_scale: float = 0.05    # meters, residual at which an edge weight halves
    tolerance: float = 1e-10
    fail_on_non_convergence: bool = False


@attr.frozen
class BundleAdjustmentParameters:
    max_iterations: int = 1000        # least_squares function evaluations
    inlier_threshold: float = 2.5     # in units of the robust initial scale
    reprojection_noise: float = 1.0   # multiplies keypoint scale
    depth_noise: float = 1.0          # multiplies squared depth
    min_sigma: float = 1e-6
    fail_on_non_convergence: bool = False


@attr.frozen
class PipelineConfig:
    ransac: RobustEstimationParameters = attr.Factory(RobustEstimationParameters)
    icp: IcpParameters = attr.Factory(IcpParameters)
    rotation_refinement: RotationRefinementParameters = attr.Factory(RotationRefinementParameters)
    translation_averaging: TranslationAveragingParameters = attr.Factory(TranslationAveragingParameters)
    bundle_adjustment: BundleAdjustmentParameters = attr.Factory(BundleAdjustmentParameters)

    max_degree: int = 10
    min_component_size: int = 2
    num_workers: int = 4
    index_fixed: int = 0
    use_icp_refinement: bool = True
    work_dir: str = 'posegraph_output'
    show_progress: bool = True

    @classmethod
    def from_defaults(cls) -> 'PipelineConfig':
        return cls()

    @classmethod
    def from_file(cls, path: str) -> 'PipelineConfig':
        return load_from_msgpack_file(path, cls)

    def to_file(self, path: str) -> None:
        save_to_msgpack_file(self, path)
