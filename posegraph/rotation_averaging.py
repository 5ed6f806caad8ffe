import logging
from typing import List, Protocol, Sequence, Tuple, runtime_checkable

import attr
import numpy as np
import scipy.sparse as sp
from scipy.optimize import least_squares
from scipy.sparse.linalg import spsolve
from scipy.spatial.transform import Rotation as R

from posegraph.config import RotationRefinementParameters
from posegraph.errors import InputDegenerate, InterchangeFileError
from posegraph.interchange import read_pose_graph_file, write_absolute_rotations_file, read_absolute_rotations_file
from posegraph.measurements import RotationMeasurement
from posegraph.poses import project_to_SO3
from posegraph.types import CameraRotationSO3

logger = logging.getLogger(__name__)


@runtime_checkable
class RotationAverager(Protocol):
    """ Global rotation averaging behind the pose graph file boundary.
    Reads relative rotations from the relative poses file, returns one absolute rotation per vertex
    in the order the vertices appear in that file. """
    def average(self, relative_poses_path: str, absolute_rotations_path: str) -> List[CameraRotationSO3]:
        ...


def chordal_rotation_averaging(
    number_of_vertices: int,
    relative_rotations: Sequence[Tuple[int, int, CameraRotationSO3]],
    index_fixed: int = 0,
) -> List[CameraRotationSO3]:
    """ Linear relaxation: with Y_i = R_i^T every edge says Y_j = R_ij^T @ Y_i, the three columns
    of Y are independent problems sharing one sparse matrix. Y_fixed is pinned to identity and the
    least squares solution is projected back onto SO(3) block by block. """
    n = number_of_vertices
    rows, cols, values = [], [], []
    rhs = []

    def _put_block(row: int, vertex: int, block: np.ndarray):
        for a in range(3):
            for b in range(3):
                if block[a, b] != 0.:
                    rows.append(row + a)
                    cols.append(3 * vertex + b)
                    values.append(block[a, b])

    row = 0
    for i, j, rotation_ij in relative_rotations:
        _put_block(row, j, np.eye(3))
        _put_block(row, i, -rotation_ij.T)
        rhs.append(np.zeros((3, 3)))
        row += 3

    _put_block(row, index_fixed, np.eye(3))
    rhs.append(np.eye(3))
    row += 3

    A = sp.csr_matrix((values, (rows, cols)), shape=(row, 3 * n))
    B = np.vstack(rhs)

    Y = spsolve((A.T @ A).tocsc(), A.T @ B)
    Y = np.asarray(Y).reshape(n, 3, 3)

    return [project_to_SO3(Y[i].T) for i in range(n)]


@attr.define
class ChordalRotationAverager(RotationAverager):
    index_fixed: int = 0

    def average(self, relative_poses_path: str, absolute_rotations_path: str) -> List[CameraRotationSO3]:
        vertex_ids, edges = read_pose_graph_file(relative_poses_path)

        if vertex_ids != list(range(len(vertex_ids))):
            raise InterchangeFileError(f"{relative_poses_path}: vertices must be numbered 0..n-1 in order")
        if len(vertex_ids) == 0:
            raise InputDegenerate("No vertices to average rotations over")

        rotations = chordal_rotation_averaging(
            number_of_vertices=len(vertex_ids),
            relative_rotations=[(i, j, transform[:3, :3]) for i, j, transform in edges],
            index_fixed=self.index_fixed,
        )

        write_absolute_rotations_file(absolute_rotations_path, rotations)
        return read_absolute_rotations_file(absolute_rotations_path)


@attr.define
class RotationRefinementResult:
    rotations: List[CameraRotationSO3]
    converged: bool
    initial_cost: float     # robust cost, the quantity least_squares minimizes
    final_cost: float


def robust_cost(residuals: np.ndarray, loss: str, loss_scale: float) -> float:
    """ 0.5 * sum of loss_scale^2 * rho((r / loss_scale)^2), the cost least_squares reports """
    z = (np.asarray(residuals, dtype=np.float64) / loss_scale) ** 2
    match loss:
        case 'linear':
            rho = z
        case 'soft_l1':
            rho = 2 * (np.sqrt(1 + z) - 1)
        case 'huber':
            rho = np.where(z <= 1, z, 2 * np.sqrt(z) - 1)
        case 'cauchy':
            rho = np.log1p(z)
        case 'arctan':
            rho = np.arctan(z)
        case _:
            raise ValueError("Unhandled loss", loss)
    return float(0.5 * loss_scale ** 2 * np.sum(rho))


@attr.define
class RobustRotationOptimizer:
    """ Geodesic residuals log(R_ij^T R_i^T R_j) under a robust loss, so that a few wrong relative
    rotations stop pulling on the chordal solution. Absolute rotations are updated on the right,
    R_i = R_i^0 @ exp(phi_i), and the fixed one is not a variable at all. """
    params: RotationRefinementParameters
    index_fixed: int = 0

    def optimize(
        self,
        initial_rotations: Sequence[CameraRotationSO3],
        measurements: Sequence[RotationMeasurement],
    ) -> RotationRefinementResult:
        n = len(initial_rotations)
        if n == 0:
            raise InputDegenerate("No rotations to refine")
        if n == 1 or len(measurements) == 0:
            return RotationRefinementResult(list(initial_rotations), converged=True, initial_cost=0., final_cost=0.)

        initial = R.from_matrix(np.array(initial_rotations))
        free = [i for i in range(n) if i != self.index_fixed]
        variable_of_vertex = {v: k for k, v in enumerate(free)}

        index_from = np.array([m.index_from for m in measurements])
        index_to = np.array([m.index_to for m in measurements])
        measured_inv = R.from_matrix(np.array([m.rotation for m in measurements])).inv()

        def _absolute(x: np.ndarray) -> R:
            deltas = np.zeros((n, 3))
            deltas[free] = x.reshape(-1, 3)
            return initial * R.from_rotvec(deltas)

        def _residuals(x: np.ndarray) -> np.ndarray:
            absolute = _absolute(x)
            return (measured_inv * absolute[index_from].inv() * absolute[index_to]).as_rotvec().ravel()

        sparsity = sp.lil_matrix((3 * len(measurements), 3 * len(free)), dtype=int)
        for k, (i, j) in enumerate(zip(index_from, index_to)):
            for v in (i, j):
                if v in variable_of_vertex:
                    sparsity[3 * k:3 * k + 3, 3 * variable_of_vertex[v]:3 * variable_of_vertex[v] + 3] = 1

        x0 = np.zeros(3 * len(free))
        solution = least_squares(
            _residuals,
            x0,
            jac_sparsity=sparsity,
            method='trf',
            loss=self.params.loss,
            f_scale=self.params.loss_scale,
            max_nfev=self.params.max_iterations,
        )

        initial_cost = robust_cost(_residuals(x0), self.params.loss, self.params.loss_scale)
        final_cost = robust_cost(_residuals(solution.x), self.params.loss, self.params.loss_scale)
        logger.info(f"Robust rotation refinement: robust cost {initial_cost:.4g} -> {final_cost:.4g}, "
                    f"{solution.nfev} evaluations, {solution.message}")

        return RotationRefinementResult(
            rotations=list(_absolute(solution.x).as_matrix()),
            converged=bool(solution.success),
            initial_cost=initial_cost,
            final_cost=final_cost,
        )
