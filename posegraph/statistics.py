from typing import Dict, List, Optional

import attr
import pandas as pd

from posegraph.absolute_poses import ComponentResult, OptimizationState
from posegraph.correspondence_graph import PairOutcome
from posegraph.relative_pose import RelativePoseResult


@attr.define
class ComponentReport:
    component_number: int
    number_of_poses: int
    reached_bundle_adjustment: bool = False
    final_state: Optional[str] = None
    failure_reason: Optional[str] = None
    translation_converged: Optional[bool] = None
    sigma_reprojection: Optional[float] = None
    sigma_depth: Optional[float] = None
    median_reprojection_before: Optional[float] = None
    median_reprojection_after: Optional[float] = None
    median_depth_before: Optional[float] = None
    median_depth_after: Optional[float] = None

    @classmethod
    def from_component_result(cls, number_of_poses: int, result: ComponentResult) -> 'ComponentReport':
        report = cls(
            component_number=result.component_number,
            number_of_poses=number_of_poses,
            reached_bundle_adjustment=result.state == OptimizationState.BUNDLE_ADJUSTED,
            final_state=result.state.name,
        )

        if result.translation_averaging is not None:
            report.translation_converged = result.translation_averaging.converged

        ba = result.bundle_adjustment
        if ba is not None:
            report.sigma_reprojection = ba.sigma_reprojection.sigma
            report.sigma_depth = ba.sigma_depth.sigma
            report.median_reprojection_before = ba.errors_before.median_reprojection
            report.median_reprojection_after = ba.errors_after.median_reprojection
            report.median_depth_before = ba.errors_before.median_depth
            report.median_depth_after = ba.errors_after.median_depth

        return report

    @classmethod
    def from_failure(cls, component_number: int, number_of_poses: int, reason: str) -> 'ComponentReport':
        return cls(component_number=component_number, number_of_poses=number_of_poses, failure_reason=reason)


@attr.define
class RunStatistics:
    """ What happened during one reconstruction, passed along explicitly from stage to stage """
    pairs_considered: int = 0
    poses_measured: int = 0     # accepted pairs
    poses_refined: int = 0      # accepted pairs where ICP beat RANSAC
    failed_pairs: Dict[str, str] = attr.Factory(dict)   # "from-to" -> reason
    component_sizes: List[int] = attr.Factory(list)
    component_reports: List[ComponentReport] = attr.Factory(list)

    def record_pairs(self, outcomes: List[PairOutcome]) -> None:
        for outcome in outcomes:
            self.pairs_considered += 1
            match outcome.result:
                case RelativePoseResult.Success(refined_by_icp=refined_by_icp):
                    self.poses_measured += 1
                    self.poses_refined += int(refined_by_icp)
                case RelativePoseResult.Failure(reason=reason):
                    self.failed_pairs[f'{outcome.frame_from}-{outcome.frame_to}'] = reason
                case _:
                    raise ValueError("Unhandled relative pose result", outcome.result)

    def record_component(self, report: ComponentReport) -> None:
        self.component_reports.append(report)

    @property
    def number_of_components(self) -> int:
        return len(self.component_sizes)

    def components_reaching_bundle_adjustment(self) -> int:
        return sum(report.reached_bundle_adjustment for report in self.component_reports)

    def summary(self) -> str:
        return (
            f"pairs: {self.pairs_considered} considered, {self.poses_measured} accepted, "
            f"{self.poses_refined} refined by ICP; components: {self.component_sizes}; "
            f"bundle adjusted: {self.components_reaching_bundle_adjustment()} of {self.number_of_components}"
        )

    def to_df(self) -> pd.DataFrame:
        return pd.DataFrame([attr.asdict(report) for report in self.component_reports])
