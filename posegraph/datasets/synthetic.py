from typing import List, Optional

import attr
import numpy as np

from posegraph.cam import CameraIntrinsics
from posegraph.datasets.provider import DataProvider
from posegraph.frames import Frame
from posegraph.matches import KeypointMatchStore
from posegraph.poses import get_SE3_pose
from posegraph.transforms import SE3_inverse, apply_SE3
from posegraph.types import CameraPoseSE3, TransformSE3, WorldCoords3D


def copy_frames(frames: List[Frame]) -> List[Frame]:
    return [attr.evolve(frame, pose=frame.pose.copy()) for frame in frames]


def copy_match_store(store: KeypointMatchStore) -> KeypointMatchStore:
    return KeypointMatchStore(
        number_of_frames=store.number_of_frames,
        matches={frame_from: list(matches) for frame_from, matches in store.matches.items()},
    )


@attr.define
class SyntheticRgbdScene(DataProvider):
    """ A camera sliding sideways in front of a random point cloud.

    Keypoints are the projections of the visible points, matches come from shared point ids,
    so the correspondences are exact unless noise or outliers are asked for. """
    frames: List[Frame]
    match_store: KeypointMatchStore
    gt_poses: List[CameraPoseSE3]
    points_world: WorldCoords3D
    point_ids_by_frame: List[np.ndarray]    # world point id of every local keypoint

    @classmethod
    def generate(
        cls,
        number_of_frames: int = 6,
        number_of_points: int = 300,
        number_of_components: int = 1,     # frames are cut into this many groups that share no matches
        intrinsics: Optional[CameraIntrinsics] = None,
        step: float = 0.05,                # meters between consecutive frames
        pitch_step: float = 0.02,          # radians between consecutive frames
        px_noise: float = 0.0,             # pixel std
        depth_noise: float = 0.0,          # depth std is depth_noise * depth ** 2
        outlier_ratio: float = 0.0,        # share of every match list with a random frame_to keypoint
        seed: int = 0,
    ) -> 'SyntheticRgbdScene':
        rng = np.random.default_rng(seed)
        intrinsics = intrinsics or CameraIntrinsics.tum_fr1()

        points_world = np.column_stack([
            rng.uniform(-1.5, 1.5, number_of_points),
            rng.uniform(-1.0, 1.0, number_of_points),
            rng.uniform(2.5, 5.0, number_of_points),
        ])

        gt_poses = [
            get_SE3_pose(x=step * i, y=0.2 * step * np.sin(i), pitch=pitch_step * i, roll=0.5 * pitch_step * np.cos(i))
            for i in range(number_of_frames)
        ]

        frames = []
        point_ids_by_frame = []
        for i, pose in enumerate(gt_poses):
            in_cam = apply_SE3(SE3_inverse(pose), points_world)
            in_front = in_cam[:, 2] > 0.1
            px = np.full((number_of_points, 2), -1.0)
            px[in_front] = intrinsics.project(in_cam[in_front])
            visible = np.flatnonzero(in_front & intrinsics.is_inside(px))

            point_ids = rng.permutation(visible)
            depths = in_cam[point_ids, 2]
            depths = depths + rng.normal(0.0, 1.0, len(point_ids)) * depth_noise * depths ** 2
            keypoints = px[point_ids] + rng.normal(0.0, px_noise, (len(point_ids), 2))

            frames.append(Frame(
                index=i,
                keypoints=keypoints,
                scales=rng.uniform(1.0, 2.0, len(point_ids)),
                depths=np.maximum(depths, 1e-3),
                intrinsics=intrinsics,
            ))
            point_ids_by_frame.append(point_ids)

        match_store = KeypointMatchStore(number_of_frames=number_of_frames)
        group_of_frame = [i * number_of_components // number_of_frames for i in range(number_of_frames)]

        for i in range(number_of_frames):
            local_in_i = {point_id: local for local, point_id in enumerate(point_ids_by_frame[i])}
            matches_to = []

            for j in range(i + 1, number_of_frames):
                if group_of_frame[i] != group_of_frame[j]:
                    continue

                index_pairs = [
                    (local_in_i[point_id], local_j)
                    for local_j, point_id in enumerate(point_ids_by_frame[j])
                    if point_id in local_in_i
                ]
                index_pairs.sort()

                number_of_outliers = int(outlier_ratio * len(index_pairs))
                if number_of_outliers > 0:
                    for k in rng.choice(len(index_pairs), size=number_of_outliers, replace=False):
                        index_pairs[k] = (index_pairs[k][0], int(rng.integers(len(frames[j]))))

                if index_pairs:
                    matches_to.append((j, index_pairs))

            match_store.add_matches(i, matches_to)

        return cls(
            frames=frames,
            match_store=match_store,
            gt_poses=gt_poses,
            points_world=points_world,
            point_ids_by_frame=point_ids_by_frame,
        )

    def get_frames(self) -> List[Frame]:
        return copy_frames(self.frames)

    def get_matches(self) -> KeypointMatchStore:
        return copy_match_store(self.match_store)

    def gt_relative_pose(self, index_from: int, index_to: int) -> TransformSE3:
        """ carries index_to coordinates into index_from coordinates """
        return SE3_inverse(self.gt_poses[index_from]) @ self.gt_poses[index_to]
