from typing import Sequence

import numpy as np

# consistency constant of the median absolute deviation for gaussian noise
MAD_TO_SIGMA = 1.4826


def lp_norms(xs: np.ndarray, p: int) -> np.ndarray:
    """ row-wise L1 or L2 norm """
    match p:
        case 1:
            return np.abs(xs).sum(axis=1)
        case 2:
            return np.linalg.norm(xs, axis=1)
        case _:
            raise ValueError(f"Only p=1 and p=2 norms are supported for reprojection errors, got {p=}")


def get_quantile(xs: Sequence[float], quantile: float = 0.5) -> float:
    """ element at position quantile * n of the sorted values (lower one, no interpolation) """
    xs = np.sort(np.asarray(xs, dtype=np.float64))
    if len(xs) == 0:
        raise ValueError("Quantile of an empty set of values")
    return float(xs[int(quantile * (len(xs) - 1))])


def initial_scale_from_median(median: float) -> float:
    """ s_0 = 1.4826 * median, the robust scale the inlier cutoff is measured in """
    return MAD_TO_SIGMA * median


def rms(xs: np.ndarray) -> float:
    xs = np.asarray(xs, dtype=np.float64)
    return float(np.sqrt(np.mean(xs ** 2)))
