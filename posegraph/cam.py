import attr
import numpy as np

from posegraph.types import CamCoords3d, Depths, PxCoords2d


@attr.s(auto_attribs=True)
class CameraIntrinsics:
    fx: float
    fy: float
    cx: float
    cy: float
    screen_h: int   # traditionally not contained in intrinsics
    screen_w: int

    @classmethod
    def tum_fr1(cls) -> 'CameraIntrinsics':
        """ Intrinsics of the RGB-D benchmark freiburg1 sensor """
        return cls(fx=517.3, fy=516.5, cx=318.6, cy=255.3, screen_h=480, screen_w=640)

    def as_matrix(self) -> np.ndarray:
        return np.array([
            [self.fx, 0., self.cx],
            [0., self.fy, self.cy],
            [0., 0., 1.],
        ], dtype=np.float64)

    def back_project(self, px: PxCoords2d, depths: Depths) -> CamCoords3d:
        """ pinhole inverse projection, no undistortion """
        px = np.asarray(px, dtype=np.float64)
        depths = np.asarray(depths, dtype=np.float64)
        xs = (px[:, 0] - self.cx) * depths / self.fx
        ys = (px[:, 1] - self.cy) * depths / self.fy
        return np.column_stack([xs, ys, depths])

    def project(self, points: CamCoords3d) -> PxCoords2d:
        points = np.asarray(points, dtype=np.float64)
        xs = self.fx * points[:, 0] / points[:, 2] + self.cx
        ys = self.fy * points[:, 1] / points[:, 2] + self.cy
        return np.column_stack([xs, ys])

    def is_inside(self, px: PxCoords2d) -> np.ndarray:
        return (
            (px[:, 0] >= 0) & (px[:, 0] < self.screen_w) &
            (px[:, 1] >= 0) & (px[:, 1] < self.screen_h)
        )
