import numpy as np

from posegraph.transforms import make_SE3
from posegraph.types import CamCoords3d, TransformSE3


def umeyama(src: CamCoords3d, dst: CamCoords3d) -> TransformSE3:
    """ Least squares rigid alignment, no scale: argmin_{R, t} sum ||dst_i - (R @ src_i + t)||^2

    Umeyama, "Least-squares estimation of transformation parameters between two point patterns", 1991.
    The sign correction keeps R a proper rotation when the points are (nearly) coplanar.
    """
    src = np.asarray(src, dtype=np.float64)
    dst = np.asarray(dst, dtype=np.float64)
    assert src.shape == dst.shape and src.shape[1] == 3, f'{src.shape=} {dst.shape=}'

    src_mean = src.mean(axis=0)
    dst_mean = dst.mean(axis=0)

    sigma = (dst - dst_mean).T @ (src - src_mean) / len(src)
    U, _, Vt = np.linalg.svd(sigma)

    S = np.eye(3, dtype=np.float64)
    if np.linalg.det(U) * np.linalg.det(Vt) < 0:
        S[2, 2] = -1.

    R = U @ S @ Vt
    t = dst_mean - R @ src_mean

    return make_SE3(R, t)
