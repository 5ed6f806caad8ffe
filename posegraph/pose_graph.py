""" Frames as vertices, accepted pairwise transforms as edges.

Vertices live in a list addressed by their index (vertices[i].index == i),
edges only ever refer to vertices through those indices.
"""
import collections
import logging
import os
from typing import Dict, List, Optional, Set, Tuple

import attr
import numpy as np

from posegraph.errors import InvariantViolation
from posegraph.frames import Frame
from posegraph.measurements import RotationMeasurement, TranslationMeasurement
from posegraph.poses import identity_pose
from posegraph.relative_pose import ObservationGroup
from posegraph.transforms import SE3_inverse
from posegraph.types import TransformSE3, CameraRotationSO3, Vector3d, CameraPoseSE3

logger = logging.getLogger(__name__)


@attr.define
class RelativeTransform:
    """ Carries coordinates of frame index_to into coordinates of frame index_from. """
    index_from: int
    index_to: int
    transform: TransformSE3

    @property
    def rotation(self) -> CameraRotationSO3:
        return self.transform[:3, :3]

    @property
    def translation(self) -> Vector3d:
        return self.transform[:3, 3]

    def inverse(self) -> 'RelativeTransform':
        return RelativeTransform(
            index_from=self.index_to,
            index_to=self.index_from,
            transform=SE3_inverse(self.transform)
        )


@attr.define
class PoseGraph:
    vertices: List[Frame]
    edges: List[List[RelativeTransform]] = attr.ib(repr=False)
    inlier_groups: List[ObservationGroup] = attr.ib(factory=list, repr=False)

    @classmethod
    def from_frames(cls, frames: List[Frame]) -> 'PoseGraph':
        for i, frame in enumerate(frames):
            if frame.index != i:
                raise InvariantViolation(f"Vertex at position {i} has index {frame.index}")
        return cls(vertices=list(frames), edges=[[] for _ in frames])

    @property
    def number_of_poses(self) -> int:
        return len(self.vertices)

    def number_of_edges(self) -> int:
        """ undirected """
        return sum(len(edges) for edges in self.edges) // 2

    def _check_vertex(self, index: int) -> None:
        if not 0 <= index < self.number_of_poses:
            raise InvariantViolation(f"Vertex {index} not in graph of {self.number_of_poses} vertices")

    def add_edge(self, edge: RelativeTransform) -> None:
        """ Inserts the edge and its inverse as the reverse edge. """
        self._check_vertex(edge.index_from)
        self._check_vertex(edge.index_to)
        if edge.index_from == edge.index_to:
            raise InvariantViolation(f"Self loop on vertex {edge.index_from}")
        if any(e.index_to == edge.index_to for e in self.edges[edge.index_from]):
            raise InvariantViolation(f"Edge {edge.index_from}-{edge.index_to} inserted twice")

        self.edges[edge.index_from].append(edge)
        self.edges[edge.index_to].append(edge.inverse())

    def add_edge_pair(self, index_from: int, index_to: int, transform: TransformSE3) -> None:
        self.add_edge(RelativeTransform(index_from, index_to, np.array(transform, dtype=np.float64)))

    def add_inlier_groups(self, groups: List[ObservationGroup]) -> None:
        self.inlier_groups.extend(groups)

    def connections_from(self, index: int) -> List[RelativeTransform]:
        return self.edges[index]

    def get_edge(self, index_from: int, index_to: int) -> Optional[RelativeTransform]:
        for edge in self.edges[index_from]:
            if edge.index_to == index_to:
                return edge
        return None

    def connected_components(self) -> Tuple[List[List[int]], List[int]]:
        """ BFS over the (symmetric) edge lists.
        Returns the components in discovery order and the component number of every vertex. """
        component_by_vertex = [-1] * self.number_of_poses
        components = []

        for start in range(self.number_of_poses):
            if component_by_vertex[start] >= 0:
                continue

            component_number = len(components)
            component = []
            component_by_vertex[start] = component_number
            queue = collections.deque([start])

            while queue:
                current = queue.popleft()
                component.append(current)
                for edge in self.edges[current]:
                    if component_by_vertex[edge.index_to] < 0:
                        component_by_vertex[edge.index_to] = component_number
                        queue.append(edge.index_to)

            components.append(sorted(component))

        if sum(len(c) for c in components) != self.number_of_poses:
            raise InvariantViolation("Connected components do not cover the graph exactly once")

        return components, component_by_vertex

    def bfs_propagate_absolute_poses(self, root: int = 0, translations_only: bool = False) -> Set[int]:
        """ Initialize absolute poses by chaining relative transforms outward from root.

        translations_only keeps every vertex rotation already set (e.g. after rotation averaging)
        and only chains translations: t_v = R_p @ t_pv + t_p.
        Otherwise T_v = T_p @ T_pv with root at identity.
        Vertices not reachable from root are left untouched, the visited set is returned.
        """
        self._check_vertex(root)
        if translations_only:
            self.vertices[root].pose[:3, 3] = 0.
        else:
            self.vertices[root].pose = identity_pose()

        visited = {root}
        queue = collections.deque([root])

        while queue:
            predecessor = queue.popleft()
            predecessor_pose = self.vertices[predecessor].pose

            for edge in self.edges[predecessor]:
                v = edge.index_to
                if v in visited:
                    continue
                visited.add(v)

                if translations_only:
                    self.vertices[v].pose[:3, 3] = predecessor_pose[:3, :3] @ edge.translation + predecessor_pose[:3, 3]
                else:
                    self.vertices[v].pose = predecessor_pose @ edge.transform

                queue.append(v)

        return visited

    def relative_rotation_measurements(self) -> List[RotationMeasurement]:
        """ one per undirected edge, the index_from < index_to direction """
        return [
            RotationMeasurement(rotation=edge.rotation.copy(), index_from=edge.index_from, index_to=edge.index_to)
            for edges in self.edges for edge in edges
            if edge.index_from < edge.index_to
        ]

    def relative_translation_measurements(self) -> List[TranslationMeasurement]:
        return [
            TranslationMeasurement(translation=edge.translation.copy(), index_from=edge.index_from, index_to=edge.index_to)
            for edges in self.edges for edge in edges
            if edge.index_from < edge.index_to
        ]

    def forward_edges(self) -> List[RelativeTransform]:
        return [edge for edges in self.edges for edge in edges if edge.index_from < edge.index_to]

    def set_rotation(self, index: int, rotation: CameraRotationSO3) -> None:
        self.vertices[index].pose[:3, :3] = rotation

    def set_translation(self, index: int, translation: Vector3d) -> None:
        self.vertices[index].pose[:3, 3] = translation

    def set_pose(self, index: int, pose: CameraPoseSE3) -> None:
        self.vertices[index].pose = np.array(pose, dtype=np.float64)

    def poses(self) -> List[CameraPoseSE3]:
        return [v.pose.copy() for v in self.vertices]

    def split(self, work_dir: Optional[str] = None) -> List['ConnectedComponent']:
        """ One independent graph per connected component, largest first.
        Vertices are re-indexed densely inside each component, edges and inlier groups
        are kept only when all their vertices are inside. """
        components, component_by_vertex = self.connected_components()

        groups_by_component: Dict[int, List[ObservationGroup]] = collections.defaultdict(list)
        for group in self.inlier_groups:
            owners = {component_by_vertex[frame] for (frame, _), _ in group}
            if len(owners) != 1:
                raise InvariantViolation(f"Inlier group spans components {owners}")
            groups_by_component[owners.pop()].append(group)

        order = sorted(range(len(components)), key=lambda c: (-len(components[c]), components[c][0]))

        result = []
        for component_id in order:
            result.append(ConnectedComponent.from_vertex_subset(
                graph=self,
                initial_indices=components[component_id],
                groups=groups_by_component[component_id],
                component_number=len(result),
                work_dir=work_dir,
            ))

        logger.info(f"Graph split into {len(result)} components of sizes {[c.number_of_poses for c in result]}")
        return result


@attr.define
class ConnectedComponent(PoseGraph):
    """ A pose graph whose vertices reach each other, optimized on its own. """
    initial_indices: List[int] = attr.Factory(list)
    component_number: int = 0
    work_dir: Optional[str] = None

    @classmethod
    def from_vertex_subset(
        cls,
        graph: PoseGraph,
        initial_indices: List[int],
        groups: List[ObservationGroup],
        component_number: int = 0,
        work_dir: Optional[str] = None,
    ) -> 'ConnectedComponent':
        new_index = {old: new for new, old in enumerate(initial_indices)}

        vertices = [
            attr.evolve(graph.vertices[old], index=new, pose=graph.vertices[old].pose.copy())
            for old, new in new_index.items()
        ]
        edges = [
            [
                RelativeTransform(new_index[e.index_from], new_index[e.index_to], e.transform.copy())
                for e in graph.edges[old] if e.index_to in new_index
            ]
            for old in initial_indices
        ]
        remapped_groups = [
            [
                ((new_index[frame], local), attr.evolve(info, frame_index=new_index[frame]))
                for (frame, local), info in group
            ]
            for group in groups
        ]

        return cls(
            vertices=vertices,
            edges=edges,
            inlier_groups=remapped_groups,
            initial_indices=list(initial_indices),
            component_number=component_number,
            work_dir=work_dir,
        )

    def _path(self, name: str) -> str:
        file_name = f'component_{self.component_number}_{name}.txt'
        return os.path.join(self.work_dir, file_name) if self.work_dir is not None else file_name

    @property
    def relative_poses_path(self) -> str:
        return self._path('relative_poses')

    @property
    def absolute_rotations_path(self) -> str:
        return self._path('absolute_rotations')
