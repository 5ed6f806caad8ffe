from typing import TypeAlias, Tuple

import numpy as np


Array: TypeAlias = np.ndarray

# frame number and keypoint number inside that frame
ObservationKey = Tuple[int, int]
# local keypoint index in frame "from" and in frame "to"
IndexPair = Tuple[int, int]

# images
BGRImageArray = Array['H,W,3', np.uint8]
DepthImageArray = Array['H,W', np.float64]
