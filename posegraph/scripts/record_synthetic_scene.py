import logging

from posegraph.datasets.recorded import RecordedDataset
from posegraph.datasets.synthetic import SyntheticRgbdScene
from posegraph.running import configure_logging
from utils.file_utils import expand_path
from utils.profiling import just_time

logger = logging.getLogger(__name__)


if __name__ == '__main__':
    configure_logging(logging.DEBUG)

    with just_time('generating the scene'):
        scene = SyntheticRgbdScene.generate(
            number_of_frames=20,
            number_of_points=800,
            number_of_components=2,
            px_noise=0.5,
            depth_noise=0.001,
            outlier_ratio=0.15,
        )

    fpath = expand_path('~/data/posegraph/synthetic_scene.msgpack')
    logger.info(f"writing to {fpath}...")
    RecordedDataset.from_provider(scene).save(fpath)
