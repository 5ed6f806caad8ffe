from typing import Any, Dict, Type, TypeVar

import msgpack
import msgpack_numpy as m
import numpy as np
from cattrs import GenConverter

from utils.file_utils import ensure_parent_dir_exists


def msgpack_dumps(obj: Any) -> bytes:
    return msgpack.packb(obj, use_bin_type=True, default=m.encode)


def msgpack_loads(data: bytes):
    return msgpack.unpackb(data, raw=False, object_hook=m.decode, strict_map_key=False)


_CONVERTER = None


def _get_converter_singleton():
    global _CONVERTER

    if _CONVERTER is None:
        converter = GenConverter()

        # arrays go through msgpack_numpy untouched
        converter.register_structure_hook_func(
            lambda t: t is np.ndarray or getattr(t, "__origin__", None) is np.ndarray,
            lambda v, t: np.asarray(v)
        )
        converter.register_unstructure_hook_func(
            lambda t: t is np.ndarray or getattr(t, "__origin__", None) is np.ndarray,
            lambda v: v
        )
        converter.register_unstructure_hook(np.ndarray, lambda v: v)

        _CONVERTER = converter

    return _CONVERTER


def to_native_types(obj: Any) -> Dict[str, Any]:
    return _get_converter_singleton().unstructure(obj)


T = TypeVar('T')


def from_native_types(data: Dict[str, Any], target_type: Type[T]) -> T:
    return _get_converter_singleton().structure(data, target_type)


def save_to_msgpack_file(obj: Any, path: str) -> None:
    ensure_parent_dir_exists(path)
    with open(path, 'wb') as f:
        f.write(msgpack_dumps(to_native_types(obj)))


def load_from_msgpack_file(path: str, target_type: Type[T]) -> T:
    with open(path, 'rb') as f:
        raw_data = f.read()

    return from_native_types(msgpack_loads(raw_data), target_type)
