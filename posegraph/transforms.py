import numpy as np

from posegraph.types import TransformSE3, CameraRotationSO3, Vector3d, CamCoords3d, WorldCoords3D


def SE3_inverse(T: TransformSE3) -> TransformSE3:
    """Returns the inverse of the transformation."""
    tf = np.eye(4, dtype=np.float64)
    R_inv = T[:3, :3].T
    t = T[:3, 3]
    tf[0:3, 0:3] = R_inv
    tf[0:3, 3] = - R_inv @ t
    return tf


def make_SE3(R: CameraRotationSO3, t: Vector3d) -> TransformSE3:
    tf = np.eye(4, dtype=np.float64)
    tf[0:3, 0:3] = R
    tf[0:3, 3] = t
    return tf


def apply_SE3(T: TransformSE3, xs: CamCoords3d) -> WorldCoords3D:
    """ (N, 3) points through the transform, row-vector convention """
    return xs @ T[:3, :3].T + T[:3, 3]


def relative_SE3(pose_from: TransformSE3, pose_to: TransformSE3) -> TransformSE3:
    """ The transform carrying frame `to` coordinates into frame `from` coordinates. """
    return SE3_inverse(pose_from) @ pose_to
