"""Aquila extension: numeric list helpers backed by numpy.

Load with ``python aquila.py program.aq --ext ext/listops.py``. Every builtin
takes a list whose elements are all ints or all floats.
"""

from __future__ import annotations

from typing import Any, List

import numpy as np

from environment import TYPE_FLOAT, TYPE_INT, TYPE_LIST, AquilaRuntimeError, AquilaTypeError, Value, make_float, make_int, make_list
from extensions import ExtensionAPI


AQUILA_EXTENSION_NAME = "listops"
AQUILA_EXTENSION_API_VERSION = 1


def _numbers(value: Value, rule: str, location: Any) -> np.ndarray:
    if value.type != TYPE_LIST:
        raise AquilaTypeError(f"{rule} expects a list, got {value.type}", location=location, rule=rule)
    items: List[Value] = value.payload(rule, location)
    kinds = {item.type for item in items}
    if kinds - {TYPE_INT, TYPE_FLOAT} or len(kinds) > 1:
        raise AquilaTypeError(f"{rule} expects a list of ints or a list of floats", location=location, rule=rule)
    if kinds == {TYPE_FLOAT}:
        return np.array([item.payload(rule, location) for item in items], dtype=np.float64)
    return np.array([item.payload(rule, location) for item in items], dtype=np.int64)


def _to_value(number: Any) -> Value:
    if isinstance(number, (np.floating, float)):
        return make_float(float(number))
    return make_int(int(number))


def _require_items(array: np.ndarray, rule: str, location: Any) -> None:
    if array.size == 0:
        raise AquilaRuntimeError(f"{rule} of an empty list", location=location, rule=rule)


def _sum_list(_: Any, thunks: List[Any], __: Any, location: Any) -> Value:
    array = _numbers(thunks[0].force(), "sum_list", location)
    return _to_value(array.sum())


def _sort_list(_: Any, thunks: List[Any], __: Any, location: Any) -> Value:
    array = _numbers(thunks[0].force(), "sort_list", location)
    return make_list([_to_value(number) for number in np.sort(array, kind="stable")])


def _max_value(_: Any, thunks: List[Any], __: Any, location: Any) -> Value:
    array = _numbers(thunks[0].force(), "max_value", location)
    _require_items(array, "max_value", location)
    return _to_value(array.max())


def _min_value(_: Any, thunks: List[Any], __: Any, location: Any) -> Value:
    array = _numbers(thunks[0].force(), "min_value", location)
    _require_items(array, "min_value", location)
    return _to_value(array.min())


def _mean(_: Any, thunks: List[Any], __: Any, location: Any) -> Value:
    array = _numbers(thunks[0].force(), "mean", location)
    _require_items(array, "mean", location)
    return make_float(float(array.mean()))


def aquila_register(ext: ExtensionAPI) -> None:
    ext.metadata(name="listops", version="0.1.0")
    ext.register_builtin("sum_list", 1, 1, _sum_list, doc="sum_list(list) -> int|float")
    ext.register_builtin("sort_list", 1, 1, _sort_list, doc="sort_list(list) -> sorted copy")
    ext.register_builtin("max_value", 1, 1, _max_value, doc="max_value(list) -> largest element")
    ext.register_builtin("min_value", 1, 1, _min_value, doc="min_value(list) -> smallest element")
    ext.register_builtin("mean", 1, 1, _mean, doc="mean(list) -> float")
