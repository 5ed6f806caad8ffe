""" RGB-D frames stored as rgb/*.png and depth/*.png (16 bit, 5000 units per meter), paired by sorted file name. """
import glob
import logging
import os

import cv2

from posegraph.cam import CameraIntrinsics
from posegraph.config import PipelineConfig
from posegraph.features import SiftFeatureMatcher
from posegraph.running import configure_logging, run_reconstruction
from utils.file_utils import expand_path

logger = logging.getLogger(__name__)


def read_frames(dataset_dir: str, matcher: SiftFeatureMatcher, intrinsics: CameraIntrinsics, max_frames: int = 50):
    rgb_paths = sorted(glob.glob(os.path.join(dataset_dir, 'rgb', '*.png')))[:max_frames]
    depth_paths = sorted(glob.glob(os.path.join(dataset_dir, 'depth', '*.png')))[:max_frames]
    assert len(rgb_paths) == len(depth_paths), f'{len(rgb_paths)=} != {len(depth_paths)=}'

    frames = []
    for index, (rgb_path, depth_path) in enumerate(zip(rgb_paths, depth_paths)):
        img = cv2.imread(rgb_path, cv2.IMREAD_COLOR)
        depth_img = cv2.imread(depth_path, cv2.IMREAD_ANYDEPTH)
        frames.append(matcher.frame_from_images(index, img, depth_img, intrinsics, rgb_path=rgb_path, depth_path=depth_path))

    return frames


if __name__ == '__main__':
    configure_logging(logging.INFO)

    dataset_dir = expand_path('~/data/rgbd_dataset_freiburg1_desk')
    matcher = SiftFeatureMatcher.build(max_features=1000)
    frames = read_frames(dataset_dir, matcher, CameraIntrinsics.tum_fr1())

    result = run_reconstruction(
        PipelineConfig(work_dir=os.path.join(dataset_dir, 'posegraph_output')),
        frames=frames,
        feature_matcher=matcher,
    )

    print(result.statistics.to_df().round(4).T)
