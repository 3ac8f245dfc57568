from typing import Any, Dict, Type, TypeVar

import msgpack
import msgpack_numpy as m
import numpy as np
from cattrs import Converter


def msgpack_dumps(obj: Any) -> bytes:
    return msgpack.packb(obj, use_bin_type=True, default=m.encode)


def msgpack_loads(data: bytes):
    return msgpack.unpackb(data, raw=False, object_hook=m.decode)


_CONVERTER = None


def _get_converter_singleton():
    global _CONVERTER

    if _CONVERTER is None:
        converter = Converter()

        # arrays pass through as they are, we only ever annotate them as np.ndarray
        converter.register_structure_hook_func(
            lambda t: t is np.ndarray or getattr(t, "__origin__", None) is np.ndarray,
            lambda v, t: np.asarray(v, dtype=np.float64)
        )
        converter.register_unstructure_hook(np.ndarray, lambda v: v.tolist())

        _CONVERTER = converter

    return _CONVERTER


T = TypeVar('T')


def from_native_types(data: Dict[str, Any], target_type: Type[T]) -> T:
    return _get_converter_singleton().structure(data, target_type)


def unstructure(obj: Any) -> Any:
    return _get_converter_singleton().unstructure(obj)
