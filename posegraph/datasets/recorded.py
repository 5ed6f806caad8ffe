from typing import List

import attr

from posegraph.datasets.provider import DataProvider
from posegraph.datasets.synthetic import copy_frames, copy_match_store
from posegraph.frames import Frame
from posegraph.matches import KeypointMatchStore
from utils.file_utils import ensure_parent_dir_exists
from utils.serialization import msgpack_loads, msgpack_dumps, from_native_types, to_native_types


@attr.define
class Recording:
    frames: List[Frame]
    match_store: KeypointMatchStore


@attr.define
class RecordedDataset(DataProvider):
    """ Frames and matches stored earlier, read back from a msgpack file. """
    recorded_data: Recording

    @classmethod
    def from_dataset_path(cls, dataset_path: str) -> 'RecordedDataset':
        with open(dataset_path, 'rb') as f:
            raw_data = f.read()

        dict_data = msgpack_loads(raw_data)
        data = from_native_types(dict_data, Recording)

        return cls(recorded_data=data)

    @classmethod
    def from_provider(cls, provider: DataProvider) -> 'RecordedDataset':
        return cls(recorded_data=Recording(frames=provider.get_frames(), match_store=provider.get_matches()))

    def save(self, dataset_path: str) -> None:
        ensure_parent_dir_exists(dataset_path)
        with open(dataset_path, 'wb') as f:
            f.write(msgpack_dumps(to_native_types(self.recorded_data)))

    def get_frames(self) -> List[Frame]:
        return copy_frames(self.recorded_data.frames)

    def get_matches(self) -> KeypointMatchStore:
        return copy_match_store(self.recorded_data.match_store)
