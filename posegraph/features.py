import logging
from typing import List, Optional, Protocol, Tuple, runtime_checkable

import attr
import cv2
import numpy as np

from posegraph.cam import CameraIntrinsics
from posegraph.frames import Frame
from utils.custom_types import Array, BGRImageArray, DepthImageArray, IndexPair
from utils.profiling import just_time

logger = logging.getLogger(__name__)


@runtime_checkable
class FeatureMatcher(Protocol):
    """ Keypoint correspondences (local index in frame_from, local index in frame_to) """
    def match(self, frame_from: Frame, frame_to: Frame) -> List[IndexPair]:
        ...


@attr.define
class SiftDetections:
    keypoints: Array['N,2', np.float64]     # x, y in pixels
    scales: Array['N', np.float64]
    descriptors: Array['N,128', np.float32]

    def __len__(self) -> int:
        return len(self.keypoints)


@attr.s(auto_attribs=True)
class SiftFeatureMatcher(FeatureMatcher):
    sift_feature_detector: cv2.SIFT
    feature_matcher: cv2.BFMatcher
    ratio_threshold: float
    max_px_distance: Optional[float]

    @classmethod
    def build(
        cls,
        max_features: int = 0,      # 0 keeps everything SIFT finds
        ratio_threshold: float = 0.75,
        max_px_distance: Optional[float] = None,
    ) -> 'SiftFeatureMatcher':
        return cls(
            sift_feature_detector=cv2.SIFT_create(nfeatures=max_features),
            feature_matcher=cv2.BFMatcher(cv2.NORM_L2),
            ratio_threshold=ratio_threshold,
            max_px_distance=max_px_distance,
        )

    def detect_and_describe(self, img: BGRImageArray) -> SiftDetections:
        gray = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY) if img.ndim == 3 else img
        keypoints, descriptors = self.sift_feature_detector.detectAndCompute(gray, None)

        if descriptors is None:
            return SiftDetections(
                keypoints=np.zeros((0, 2)),
                scales=np.zeros(0),
                descriptors=np.zeros((0, 128), dtype=np.float32),
            )

        return SiftDetections(
            keypoints=np.array([kp.pt for kp in keypoints], dtype=np.float64).reshape(-1, 2),
            scales=np.array([kp.size for kp in keypoints], dtype=np.float64),
            descriptors=descriptors,
        )

    def frame_from_images(
        self,
        index: int,
        img: BGRImageArray,
        depth_img: DepthImageArray,
        intrinsics: CameraIntrinsics,
        depth_scale: float = 5000.0,
        rgb_path: Optional[str] = None,
        depth_path: Optional[str] = None,
    ) -> Frame:
        with just_time(f'detecting frame {index}'):
            detections = self.detect_and_describe(img)

        frame = Frame.from_keypoints_and_depth_image(
            index=index,
            keypoints=detections.keypoints,
            scales=detections.scales,
            depth_image=depth_img,
            intrinsics=intrinsics,
            depth_scale=depth_scale,
            descriptors=detections.descriptors,
            rgb_path=rgb_path,
            depth_path=depth_path,
        )
        logger.debug(f"Frame {index}: {len(frame)} of {len(detections)} keypoints have depth")
        return frame

    def _ratio_test(self, knn_matches) -> List[Tuple[int, int]]:
        pairs = []
        for candidates in knn_matches:
            if len(candidates) < 2:
                continue
            best, second = candidates[0], candidates[1]
            if best.distance < self.ratio_threshold * second.distance:
                pairs.append((best.queryIdx, best.trainIdx))
        return pairs

    def match(self, frame_from: Frame, frame_to: Frame) -> List[IndexPair]:
        if frame_from.descriptors is None or frame_to.descriptors is None:
            raise ValueError(f"Frames {frame_from.index} and {frame_to.index} need descriptors to be matched")
        if len(frame_from) < 2 or len(frame_to) < 2:
            return []

        knn_matches = self.feature_matcher.knnMatch(
            np.asarray(frame_from.descriptors, dtype=np.float32),
            np.asarray(frame_to.descriptors, dtype=np.float32),
            k=2,
        )
        pairs = self._ratio_test(knn_matches)

        if self.max_px_distance is not None:
            pairs = [
                (a, b) for a, b in pairs
                if np.linalg.norm(frame_from.keypoints[a] - frame_to.keypoints[b]) < self.max_px_distance
            ]

        # one keypoint of frame_to answers to one keypoint of frame_from at most
        seen_to = set()
        unique_pairs = []
        for a, b in pairs:
            if b not in seen_to:
                seen_to.add(b)
                unique_pairs.append((int(a), int(b)))

        return unique_pairs
