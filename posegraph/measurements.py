import attr

from posegraph.types import CameraRotationSO3, RelativeTranslation


@attr.define
class RotationMeasurement:
    """ R_ij = R_i^T @ R_j for the edge index_from=i < index_to=j """
    rotation: CameraRotationSO3
    index_from: int
    index_to: int


@attr.define
class TranslationMeasurement:
    """ t_ij = R_i^T @ (t_j - t_i), the position of j expressed in frame i """
    translation: RelativeTranslation
    index_from: int
    index_to: int
