from typing import List, Protocol, runtime_checkable

from posegraph.frames import Frame
from posegraph.matches import KeypointMatchStore


@runtime_checkable
class DataProvider(Protocol):
    """ Frames with keypoints and depth, plus the raw correspondences between them """
    def get_frames(self) -> List[Frame]:
        ...

    def get_matches(self) -> KeypointMatchStore:
        ...
