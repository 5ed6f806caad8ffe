""" Absolute translations from relative ones once the absolute rotations are fixed.

Every edge i < j with measured t_ij (position of j seen from i) gives the linear constraint
    t_j - t_i = R_i @ t_ij
which only couples equal coordinates, so x, y and z share one sparse incidence matrix.
"""
import logging
from typing import Optional, Sequence

import attr
import numpy as np
import scipy.sparse as sp
from scipy.sparse.linalg import spsolve

from posegraph.config import TranslationAveragingParameters
from posegraph.errors import InputDegenerate, SolverNonConvergence
from posegraph.measurements import TranslationMeasurement
from posegraph.types import CameraRotationSO3

logger = logging.getLogger(__name__)


def _incidence_matrix(measurements: Sequence[TranslationMeasurement], number_of_poses: int) -> sp.csr_matrix:
    m = len(measurements)
    rows = np.repeat(np.arange(m), 2)
    cols = np.array([[meas.index_to, meas.index_from] for meas in measurements], dtype=np.int64).ravel()
    values = np.tile([1., -1.], m)
    return sp.csr_matrix((values, (rows, cols)), shape=(m, number_of_poses))


def _rotated_measurements(
    measurements: Sequence[TranslationMeasurement],
    rotations: Sequence[CameraRotationSO3],
) -> np.ndarray:
    return np.array([rotations[meas.index_from] @ meas.translation for meas in measurements], dtype=np.float64)


def recover_translations(
    measurements: Sequence[TranslationMeasurement],
    rotations: Sequence[CameraRotationSO3],
    index_fixed: int = 0,
    weights: Optional[np.ndarray] = None,
) -> np.ndarray:
    """ Weighted linear least squares with t_fixed pinned at the origin. """
    n = len(rotations)
    if n == 0:
        raise InputDegenerate("No poses to recover translations for")
    if len(measurements) == 0:
        if n > 1:
            raise InputDegenerate(f"{n} poses but no relative translations")
        return np.zeros((1, 3))

    weights = np.ones(len(measurements)) if weights is None else np.asarray(weights, dtype=np.float64)

    anchor = sp.csr_matrix(([1.], ([0], [index_fixed])), shape=(1, n))
    A = sp.vstack([_incidence_matrix(measurements, n), anchor]).tocsr()
    b = np.vstack([_rotated_measurements(measurements, rotations), np.zeros((1, 3))])
    W = sp.diags(np.concatenate([weights, [1.]]))

    normal_matrix = (A.T @ W @ A).tocsc()
    translations = spsolve(normal_matrix, A.T @ (W @ b))
    return np.asarray(translations, dtype=np.float64).reshape(n, 3)


def translation_residuals(
    translations: np.ndarray,
    measurements: Sequence[TranslationMeasurement],
    rotations: Sequence[CameraRotationSO3],
) -> np.ndarray:
    index_from = np.array([meas.index_from for meas in measurements])
    index_to = np.array([meas.index_to for meas in measurements])
    predicted = translations[index_to] - translations[index_from]
    return np.linalg.norm(predicted - _rotated_measurements(measurements, rotations), axis=1)


def cauchy_weights(residuals: np.ndarray, scale: float) -> np.ndarray:
    return 1. / (1. + (residuals / scale) ** 2)


@attr.define
class TranslationAveragingResult:
    translations: np.ndarray            # re-anchored, fixed vertex at the origin
    linear_translations: np.ndarray     # the unweighted solution IRLS started from
    weights: np.ndarray
    converged: bool
    iterations: int


@attr.define
class TranslationAverager:
    params: TranslationAveragingParameters
    index_fixed: int = 0

    def recover_translations_irls(
        self,
        measurements: Sequence[TranslationMeasurement],
        rotations: Sequence[CameraRotationSO3],
        initial_translations: np.ndarray,
    ):
        """ Iteratively reweighted least squares starting from initial_translations.
        Returns (translations, weights, converged, iterations), the last iterate even if not converged. """
        translations = np.array(initial_translations, dtype=np.float64)
        weights = np.ones(len(measurements))

        if len(measurements) == 0:
            return translations, weights, True, 0

        for iteration in range(1, self.params.irls_iterations + 1):
            residuals = translation_residuals(translations, measurements, rotations)
            weights = cauchy_weights(residuals, self.params.weight_scale)
            updated = recover_translations(measurements, rotations, self.index_fixed, weights)

            change = float(np.max(np.abs(updated - translations)))
            translations = updated

            if change < self.params.tolerance:
                return translations, weights, True, iteration

        return translations, weights, False, self.params.irls_iterations

    def average(
        self,
        measurements: Sequence[TranslationMeasurement],
        rotations: Sequence[CameraRotationSO3],
    ) -> TranslationAveragingResult:
        linear = recover_translations(measurements, rotations, self.index_fixed)
        translations, weights, converged, iterations = self.recover_translations_irls(measurements, rotations, linear)

        if not converged:
            if self.params.fail_on_non_convergence:
                raise SolverNonConvergence(f"IRLS did not converge in {iterations} iterations")
            logger.warning(f"IRLS did not converge in {iterations} iterations, keeping the last iterate")

        translations = translations - translations[self.index_fixed]
        down_weighted = int(np.sum(weights < 0.5))
        logger.info(f"Translation averaging over {len(measurements)} edges: {iterations} IRLS iterations, "
                    f"{converged=}, {down_weighted} edges with weight < 0.5")

        return TranslationAveragingResult(
            translations=translations,
            linear_translations=linear - linear[self.index_fixed],
            weights=weights,
            converged=converged,
            iterations=iterations,
        )
