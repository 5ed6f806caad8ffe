""" Plain text pose graph files in the g2o SE3:QUAT flavour.

    VERTEX_SE3:QUAT <id> x y z qx qy qz qw
    EDGE_SE3:QUAT <from> <to> x y z qx qy qz qw <upper triangle of the 6x6 information matrix>

Edges are only written for from < to, every undirected edge once.
"""
import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np

from posegraph.errors import InterchangeFileError, InvariantViolation
from posegraph.poses import rotation_to_quaternion, quaternion_to_rotation, project_to_SO3
from posegraph.transforms import make_SE3
from posegraph.types import CameraRotationSO3, TransformSE3
from utils.file_utils import ensure_parent_dir_exists

logger = logging.getLogger(__name__)

VERTEX_TAG = 'VERTEX_SE3:QUAT'
EDGE_TAG = 'EDGE_SE3:QUAT'

INFORMATION_DIAGONAL = 10000.0
INFORMATION_VALUES = 21


def _information_block() -> List[float]:
    values = []
    for row in range(6):
        for col in range(row, 6):
            values.append(INFORMATION_DIAGONAL if row == col else 0.0)
    return values


def _format_pose(transform: TransformSE3) -> str:
    t = transform[:3, 3]
    q = rotation_to_quaternion(transform[:3, :3])
    return f'{t[0]:.6f} {t[1]:.6f} {t[2]:.6f} {q[0]:.9f} {q[1]:.9f} {q[2]:.9f} {q[3]:.9f}'


def format_vertex_line(index: int, pose: Optional[TransformSE3] = None) -> str:
    if pose is None:
        return f'{VERTEX_TAG} {index} 0.000000 0.000000 0.000000 0.0 0.0 0.0 1.0'
    return f'{VERTEX_TAG} {index} {_format_pose(pose)}'


def format_edge_line(index_from: int, index_to: int, transform: TransformSE3) -> str:
    information = ' '.join(f'{v:.6f}' for v in _information_block())
    return f'{EDGE_TAG} {index_from} {index_to} {_format_pose(transform)} {information}'


def _write_lines(path: str, lines: Sequence[str]) -> None:
    try:
        ensure_parent_dir_exists(path)
        with open(path, 'w') as f:
            for line in lines:
                f.write(line + '\n')
    except OSError as exc:
        raise InterchangeFileError(f"Could not write pose graph file {path}") from exc


def _read_lines(path: str) -> List[str]:
    try:
        with open(path, 'r') as f:
            return [line.strip() for line in f if line.strip()]
    except OSError as exc:
        raise InterchangeFileError(f"Could not read pose graph file {path}") from exc


def write_pose_graph_file(
    path: str,
    number_of_vertices: int,
    edges: Sequence[Tuple[int, int, TransformSE3]],
) -> None:
    """ Identity vertices and one edge line per (from, to, transform) with from < to. """
    lines = [format_vertex_line(i) for i in range(number_of_vertices)]
    seen = set()

    for index_from, index_to, transform in edges:
        if index_from >= index_to:
            continue
        line = format_edge_line(index_from, index_to, transform)
        if line in seen or (index_from, index_to) in seen:
            raise InvariantViolation(f"Duplicate edge {index_from}-{index_to} in pose graph file")
        seen.add(line)
        seen.add((index_from, index_to))
        lines.append(line)

    _write_lines(path, lines)
    logger.debug(f"Wrote {number_of_vertices} vertices and {len(lines) - number_of_vertices} edges to {path}")


def _parse_id(value: str) -> int:
    try:
        return int(value)
    except ValueError as exc:
        raise InterchangeFileError(f"Not a vertex id: {value}") from exc


def _parse_pose(values: Sequence[str]) -> TransformSE3:
    try:
        numbers = np.array([float(v) for v in values], dtype=np.float64)
    except ValueError as exc:
        raise InterchangeFileError(f"Not a pose: {values}") from exc
    q = numbers[3:7]
    norm = np.linalg.norm(q)
    if norm == 0:
        raise InterchangeFileError("Zero quaternion in pose graph file")
    return make_SE3(quaternion_to_rotation(q / norm), numbers[:3])


def read_pose_graph_file(path: str) -> Tuple[List[int], List[Tuple[int, int, TransformSE3]]]:
    vertex_ids = []
    edges = []

    for line_number, line in enumerate(_read_lines(path)):
        tokens = line.split()
        match tokens[0]:
            case 'VERTEX_SE3:QUAT':
                if len(tokens) != 9:
                    raise InterchangeFileError(f"{path}:{line_number}: malformed vertex line")
                vertex_ids.append(_parse_id(tokens[1]))
            case 'EDGE_SE3:QUAT':
                if len(tokens) != 10 + INFORMATION_VALUES:
                    raise InterchangeFileError(f"{path}:{line_number}: malformed edge line")
                edges.append((_parse_id(tokens[1]), _parse_id(tokens[2]), _parse_pose(tokens[3:10])))
            case _:
                raise InterchangeFileError(f"{path}:{line_number}: unknown record {tokens[0]}")

    return vertex_ids, edges


def write_absolute_rotations_file(path: str, rotations: Sequence[CameraRotationSO3]) -> None:
    lines = [format_vertex_line(i, make_SE3(rotation, np.zeros(3))) for i, rotation in enumerate(rotations)]
    _write_lines(path, lines)


def read_absolute_rotations_file(path: str) -> List[CameraRotationSO3]:
    """ rotations in the order the vertices were written """
    vertex_ids = []
    rotations = []

    for line_number, line in enumerate(_read_lines(path)):
        tokens = line.split()
        if tokens[0] != VERTEX_TAG or len(tokens) != 9:
            raise InterchangeFileError(f"{path}:{line_number}: expected a vertex line")
        vertex_ids.append(_parse_id(tokens[1]))
        rotations.append(project_to_SO3(_parse_pose(tokens[2:9])[:3, :3]))

    if vertex_ids != list(range(len(vertex_ids))):
        raise InterchangeFileError(f"{path}: vertices are not numbered 0..{len(vertex_ids) - 1} in order")

    return rotations
