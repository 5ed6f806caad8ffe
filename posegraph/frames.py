from typing import Optional

import attr
import numpy as np

from posegraph.cam import CameraIntrinsics
from posegraph.poses import identity_pose
from posegraph.types import PxCoords2d, Depths, CamCoords3d, CameraPoseSE3
from utils.custom_types import Array, DepthImageArray


@attr.frozen
class KeypointInfo:
    """ Everything the residual models need to know about one observation. """
    x: float
    y: float
    scale: float
    depth: float
    frame_index: int


@attr.define
class Frame:
    """ One RGB-D image reduced to keypoints with known depth.
    Its absolute pose is written by the optimizer only. """
    index: int
    keypoints: PxCoords2d
    scales: Array['N', np.float64]
    depths: Depths
    intrinsics: CameraIntrinsics
    pose: CameraPoseSE3 = attr.Factory(identity_pose)
    descriptors: Optional[Array['N,D', np.float32]] = attr.ib(default=None, repr=False)
    rgb_path: Optional[str] = None
    depth_path: Optional[str] = None

    def __attrs_post_init__(self):
        self.keypoints = np.asarray(self.keypoints, dtype=np.float64).reshape(-1, 2)
        self.scales = np.asarray(self.scales, dtype=np.float64)
        self.depths = np.asarray(self.depths, dtype=np.float64)
        assert len(self.keypoints) == len(self.scales) == len(self.depths), \
            f'{len(self.keypoints)=} {len(self.scales)=} {len(self.depths)=}'

    @classmethod
    def from_keypoints_and_depth_image(
        cls,
        index: int,
        keypoints: PxCoords2d,
        scales: Array['N', np.float64],
        depth_image: DepthImageArray,
        intrinsics: CameraIntrinsics,
        depth_scale: float = 5000.0,    # raw depth units per meter, 5000 for 16 bit png depth maps
        descriptors: Optional[Array['N,D', np.float32]] = None,
        rgb_path: Optional[str] = None,
        depth_path: Optional[str] = None,
    ) -> 'Frame':
        """ Keeps only the keypoints that have a valid depth reading under them. """
        keypoints = np.asarray(keypoints, dtype=np.float64).reshape(-1, 2)
        cols = np.clip(np.round(keypoints[:, 0]).astype(np.int64), 0, depth_image.shape[1] - 1)
        rows = np.clip(np.round(keypoints[:, 1]).astype(np.int64), 0, depth_image.shape[0] - 1)
        depths = depth_image[rows, cols].astype(np.float64) / depth_scale

        known_depth = np.isfinite(depths) & (depths > 0)

        return cls(
            index=index,
            keypoints=keypoints[known_depth],
            scales=np.asarray(scales, dtype=np.float64)[known_depth],
            depths=depths[known_depth],
            intrinsics=intrinsics,
            descriptors=descriptors[known_depth] if descriptors is not None else None,
            rgb_path=rgb_path,
            depth_path=depth_path,
        )

    def __len__(self) -> int:
        return len(self.keypoints)

    def points_3d(self, local_indices: Optional[np.ndarray] = None) -> CamCoords3d:
        if local_indices is None:
            return self.intrinsics.back_project(self.keypoints, self.depths)
        return self.intrinsics.back_project(self.keypoints[local_indices], self.depths[local_indices])

    def keypoint_info(self, local_index: int) -> KeypointInfo:
        return KeypointInfo(
            x=float(self.keypoints[local_index, 0]),
            y=float(self.keypoints[local_index, 1]),
            scale=float(self.scales[local_index]),
            depth=float(self.depths[local_index]),
            frame_index=self.index,
        )

    @property
    def rotation(self):
        return self.pose[:3, :3]

    @property
    def translation(self):
        return self.pose[:3, 3]
