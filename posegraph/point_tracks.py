import collections
import logging
from typing import Dict, List, Sequence, Tuple

import attr
import numpy as np

from posegraph.errors import InvariantViolation
from posegraph.frames import KeypointInfo
from posegraph.cam import CameraIntrinsics
from posegraph.transforms import apply_SE3
from posegraph.types import CameraPoseSE3, Vector3d
from utils.custom_types import ObservationKey

logger = logging.getLogger(__name__)


@attr.define
class PointTrackClassifier:
    """ Resolves (frame, local keypoint index) observations into global point identities.

    Every inserted group is a set of observations believed to see the same physical point.
    Observations get a dense global index on first sight, groups become undirected edges
    between those indices and classes are the connected components of the resulting graph.
    """
    global_index_by_observation: Dict[ObservationKey, int] = attr.Factory(dict)
    observation_by_global_index: List[ObservationKey] = attr.Factory(list)
    adjacency: Dict[int, List[int]] = attr.Factory(lambda: collections.defaultdict(list))
    _classes: List[int] = attr.Factory(list)

    def _get_or_create_global_index(self, observation: ObservationKey) -> int:
        observation = (int(observation[0]), int(observation[1]))
        if observation not in self.global_index_by_observation:
            self.global_index_by_observation[observation] = len(self.observation_by_global_index)
            self.observation_by_global_index.append(observation)
        return self.global_index_by_observation[observation]

    def insert_observation_group(self, observations: Sequence[ObservationKey]) -> None:
        global_indices = [self._get_or_create_global_index(obs) for obs in observations]

        for a, b in zip(global_indices, global_indices[1:]):
            self.adjacency[a].append(b)
            self.adjacency[b].append(a)

        # classes from a previous assign_classes call are stale now
        self._classes = []

    def assign_classes(self) -> List[int]:
        """ class id per global observation index, BFS over the undirected adjacency """
        number_of_observations = len(self.observation_by_global_index)
        classes = [-1] * number_of_observations
        visited = [False] * number_of_observations
        class_number = 0

        for start in range(number_of_observations):
            if visited[start]:
                continue

            visited[start] = True
            queue = collections.deque([start])

            while queue:
                current = queue.popleft()
                classes[current] = class_number

                for neighbour in self.adjacency.get(current, []):
                    if not visited[neighbour]:
                        visited[neighbour] = True
                        queue.append(neighbour)

            class_number += 1

        if any(c < 0 for c in classes):
            raise InvariantViolation("An observation was left without a point class")

        self._classes = classes
        logger.debug(f"{number_of_observations} observations resolved into {class_number} point classes")
        return classes

    def get_frame_and_local_index(self, global_index: int) -> ObservationKey:
        return self.observation_by_global_index[global_index]

    def class_of(self, frame: int, local_index: int) -> int:
        if not self._classes:
            self.assign_classes()
        return self._classes[self.global_index_by_observation[(frame, local_index)]]

    @property
    def number_of_observations(self) -> int:
        return len(self.observation_by_global_index)

    @property
    def number_of_classes(self) -> int:
        if not self._classes:
            self.assign_classes()
        return max(self._classes, default=-1) + 1


@attr.define
class PointTracks:
    """ Point classes with their observations and an initial 3D position each. """
    positions: np.ndarray    # (number of classes, 3) in world coordinates
    # per frame: class id -> the observation of that class in that frame
    observations_by_frame: List[Dict[int, KeypointInfo]]
    classes: List[int]

    @property
    def number_of_points(self) -> int:
        return len(self.positions)

    def number_of_observations(self) -> int:
        return sum(len(obs) for obs in self.observations_by_frame)


def collect_keypoint_infos(
    groups: Sequence[Sequence[Tuple[ObservationKey, KeypointInfo]]],
    number_of_frames: int,
) -> List[Dict[int, KeypointInfo]]:
    """ frame -> local index -> metadata, checking duplicates agree with each other """
    infos: List[Dict[int, KeypointInfo]] = [dict() for _ in range(number_of_frames)]

    for group in groups:
        for (frame, local_index), info in group:
            known = infos[frame].get(local_index)
            if known is None:
                infos[frame][local_index] = info
            elif known != info:
                raise InvariantViolation(f"Observation {(frame, local_index)} registered as {known} and as {info}")

    return infos


def build_point_tracks(
    groups: Sequence[Sequence[Tuple[ObservationKey, KeypointInfo]]],
    poses: Sequence[CameraPoseSE3],
    cameras: Sequence[CameraIntrinsics],
) -> PointTracks:
    """ Classify the inlier groups and place every class at the back-projection of its
    observation from the lowest frame index, moved to world with that frame's absolute pose. """
    assert len(poses) == len(cameras)
    classifier = PointTrackClassifier()
    for group in groups:
        classifier.insert_observation_group([key for key, _ in group])

    infos = collect_keypoint_infos(groups, len(poses))
    classes = classifier.assign_classes()

    observations_by_frame: List[Dict[int, KeypointInfo]] = [dict() for _ in range(len(poses))]
    positions: List[Vector3d] = [None] * classifier.number_of_classes

    # frames are visited in ascending order, so the first observation placed wins
    order = sorted(range(len(classes)), key=lambda g: classifier.get_frame_and_local_index(g))
    for global_index in order:
        frame, local_index = classifier.get_frame_and_local_index(global_index)
        class_number = classes[global_index]
        info = infos[frame][local_index]

        if class_number in observations_by_frame[frame]:
            # two keypoints of one frame ended up in one class, the first one is kept
            logger.debug(f"Frame {frame} observes class {class_number} twice, dropping local index {local_index}")
            continue
        observations_by_frame[frame][class_number] = info

        if positions[class_number] is None:
            point_in_cam = cameras[frame].back_project(np.array([[info.x, info.y]]), np.array([info.depth]))
            positions[class_number] = apply_SE3(poses[frame], point_in_cam)[0]

    return PointTracks(
        positions=np.array(positions, dtype=np.float64).reshape(-1, 3),
        observations_by_frame=observations_by_frame,
        classes=classes,
    )
