import logging

from posegraph.config import PipelineConfig
from posegraph.datasets.recorded import RecordedDataset
from posegraph.running import configure_logging, run_reconstruction
from utils.file_utils import expand_path

logger = logging.getLogger(__name__)


if __name__ == '__main__':
    configure_logging(logging.INFO)

    dataset = RecordedDataset.from_dataset_path(expand_path('~/data/posegraph/synthetic_scene.msgpack'))
    config = PipelineConfig(work_dir=expand_path('~/data/posegraph/synthetic_scene_output'))
    config.to_file(expand_path(config.work_dir, 'config.msgpack'))

    result = run_reconstruction(config, data_provider=dataset)

    print(result.statistics.to_df().round(4).T)
    print(f"{len(result.statistics.failed_pairs)} failed pairs, e.g.")
    for pair, reason in list(result.statistics.failed_pairs.items())[:10]:
        print(f"  {pair}: {reason}")
