""" Pairwise pose estimation over every kept match list, assembled into one pose graph.

Workers only ever fill their own result slot, the graph is touched by a single thread afterwards
in (frame_from, frame_to) order. The result does not depend on how the pool schedules the pairs.
"""
import concurrent.futures
import logging
from typing import List, Optional, Sequence

import attr
import tqdm

from posegraph.frames import Frame
from posegraph.interchange import write_pose_graph_file
from posegraph.matches import KeypointMatchStore, Match
from posegraph.pose_graph import PoseGraph
from posegraph.relative_pose import RelativePoseEstimator, RelativePoseResult

logger = logging.getLogger(__name__)


@attr.define
class PairOutcome:
    frame_from: int
    frame_to: int
    number_of_matches: int
    result: RelativePoseResult


def _estimate_slot(
    slot: int,
    slots: List[Optional[PairOutcome]],
    frames: Sequence[Frame],
    pair_match: Match,
    estimator: RelativePoseEstimator,
) -> int:
    result = estimator.estimate_pair(frames[pair_match.frame_from], frames[pair_match.frame_to], pair_match)
    slots[slot] = PairOutcome(
        frame_from=pair_match.frame_from,
        frame_to=pair_match.frame_to,
        number_of_matches=len(pair_match),
        result=result,
    )
    return slot


def estimate_pairwise_outcomes(
    frames: Sequence[Frame],
    match_store: KeypointMatchStore,
    estimator: RelativePoseEstimator,
    num_workers: int = 4,
    show_progress: bool = True,
) -> List[PairOutcome]:
    """ One outcome per match list, sorted by (frame_from, frame_to) """
    pair_matches = list(match_store.iter_matches())
    slots: List[Optional[PairOutcome]] = [None] * len(pair_matches)

    with concurrent.futures.ThreadPoolExecutor(max_workers=max(1, num_workers)) as executor:
        futures = [
            executor.submit(_estimate_slot, slot, slots, frames, pair_match, estimator)
            for slot, pair_match in enumerate(pair_matches)
        ]
        for future in tqdm.tqdm(
            concurrent.futures.as_completed(futures),
            total=len(futures),
            desc='relative poses',
            disable=not show_progress,
        ):
            # re-raises whatever the worker raised
            future.result()

    return sorted(slots, key=lambda outcome: (outcome.frame_from, outcome.frame_to))


def merge_into_pose_graph(frames: Sequence[Frame], outcomes: Sequence[PairOutcome]) -> PoseGraph:
    graph = PoseGraph.from_frames(list(frames))

    for outcome in outcomes:
        match outcome.result:
            case RelativePoseResult.Success(transform=transform, inlier_groups=groups):
                graph.add_edge_pair(outcome.frame_from, outcome.frame_to, transform)
                graph.add_inlier_groups(groups)
            case RelativePoseResult.Failure(reason=reason):
                logger.debug(f"{outcome.frame_from}-{outcome.frame_to}: no edge, {reason}")
            case _:
                raise ValueError("Unhandled relative pose result", outcome.result)

    return graph


def estimate_relative_poses(
    frames: Sequence[Frame],
    match_store: KeypointMatchStore,
    estimator: RelativePoseEstimator,
    num_workers: int = 4,
    show_progress: bool = True,
):
    """ Returns (pose graph, outcome of every pair) """
    outcomes = estimate_pairwise_outcomes(frames, match_store, estimator, num_workers, show_progress)
    graph = merge_into_pose_graph(frames, outcomes)

    logger.info(f"{graph.number_of_edges()} relative poses accepted out of {len(outcomes)} pairs, "
                f"{len(graph.inlier_groups)} inlier correspondences")
    return graph, outcomes


def write_relative_poses_file(graph: PoseGraph, path: str) -> None:
    write_pose_graph_file(
        path,
        graph.number_of_poses,
        [(edge.index_from, edge.index_to, edge.transform) for edge in graph.forward_edges()],
    )
