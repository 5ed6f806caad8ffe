import numpy as np
from liegroups.numpy.so3 import SO3Matrix
from scipy.spatial.transform import Rotation as R

from posegraph.types import CameraRotationSO3, TransformSE3, QuaternionXYZW, RotationVector


def identity_rotation() -> CameraRotationSO3:
    return np.eye(3, dtype=np.float64)


def identity_pose() -> TransformSE3:
    return np.eye(4, dtype=np.float64)


def get_SE3_pose(
    x: float = 0.0,
    y: float = 0.0,
    z: float = 0.0,
    yaw: float = 0.0,
    pitch: float = 0.0,
    roll: float = 0.0
) -> TransformSE3:
    pose = np.eye(4, dtype=np.float64)
    pose[0:3, 0:3] = R.from_euler('zyx', [yaw, pitch, roll]).as_matrix()
    pose[0:3, 3] = np.array([x, y, z], dtype=np.float64)

    return pose


def project_to_SO3(M: np.ndarray) -> CameraRotationSO3:
    """ Closest rotation in Frobenius norm, used after the linear chordal relaxation """
    U, _, Vt = np.linalg.svd(M)
    D = np.diag([1., 1., np.sign(np.linalg.det(U @ Vt))])
    return U @ D @ Vt


def rotation_to_quaternion(rot: CameraRotationSO3) -> QuaternionXYZW:
    return R.from_matrix(rot).as_quat()


def quaternion_to_rotation(q: QuaternionXYZW) -> CameraRotationSO3:
    return R.from_quat(q).as_matrix()


def rotation_log(rot: CameraRotationSO3) -> RotationVector:
    return SO3Matrix.from_matrix(rot, normalize=True).log()


def rotation_exp(phi: RotationVector) -> CameraRotationSO3:
    return SO3Matrix.exp(phi).as_matrix()


def rotation_angle_between(rot_a: CameraRotationSO3, rot_b: CameraRotationSO3) -> float:
    """ geodesic distance in radians """
    return float(np.linalg.norm(rotation_log(rot_a.T @ rot_b)))
