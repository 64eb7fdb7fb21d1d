"""Filter and transform stages applied to the record stream before batching."""

import logging
from typing import Any, Callable, Iterable, Iterator, List, Optional, Sequence

from recordsync.domain.models import Record

logger = logging.getLogger(__name__)

Predicate = Callable[[Record], bool]
Transform = Callable[[Record], Record]


def build_filter(config: Any) -> Optional[Predicate]:
    """Compile one filter entry; unknown entries return None.

    Supported entries:
        {"type": "field_equals", "field": name, "value": expected}
        {"type": "field_contains", "field": name, "value": substring}
        {"type": "custom", "function": predicate}
        a bare callable taking a Record
    """
    if callable(config):
        return config
    if not isinstance(config, dict):
        return None

    kind = config.get("type")
    name = config.get("field")
    value = config.get("value")
    if kind == "field_equals" and name:
        return lambda record: record.get(name) == value
    if kind == "field_contains" and name and isinstance(value, str):
        return lambda record: isinstance(record.get(name), str) and value in record.get(name)
    if kind == "custom" and callable(config.get("function")):
        return config["function"]
    return None


def build_transform(config: Any) -> Optional[Transform]:
    """Compile one transform entry; unknown entries return None.

    Supported entries:
        {"type": "map_field", "field": name, "function": fn}
        {"type": "custom", "function": fn}  (Record in, Record or field map out)
        a bare callable with the same contract as ``custom``
    """
    if callable(config):
        return _custom(config)
    if not isinstance(config, dict):
        return None

    kind = config.get("type")
    function = config.get("function")
    if kind == "map_field" and config.get("field") and callable(function):
        name = config["field"]

        def map_field(record: Record) -> Record:
            if name not in record.fields:
                return record
            return record.with_fields({**record.fields, name: function(record.fields[name])})

        return map_field
    if kind == "custom" and callable(function):
        return _custom(function)
    return None


def _custom(function: Callable[[Record], Any]) -> Transform:
    def apply(record: Record) -> Record:
        result = function(record)
        if isinstance(result, Record):
            return result
        if isinstance(result, dict):
            return record.with_fields(result)
        raise TypeError(f"Transform returned {type(result).__name__}, expected Record or dict")

    return apply


def compile_stages(
    filters: Sequence[Any], transforms: Sequence[Any]
) -> "tuple[List[Predicate], List[Transform]]":
    """Compile filter and transform configs, logging and skipping unknown ones."""
    predicates: List[Predicate] = []
    for config in filters:
        predicate = build_filter(config)
        if predicate is None:
            logger.warning(f"Unknown filter configuration skipped: {config!r}")
        else:
            predicates.append(predicate)

    functions: List[Transform] = []
    for config in transforms:
        function = build_transform(config)
        if function is None:
            logger.warning(f"Unknown transformation configuration skipped: {config!r}")
        else:
            functions.append(function)
    return predicates, functions


def apply_stages(
    records: Iterable[Record], predicates: Sequence[Predicate], transforms: Sequence[Transform]
) -> Iterator[Record]:
    """Lazily filter then transform records, in configured order."""
    for record in records:
        if all(predicate(record) for predicate in predicates):
            for transform in transforms:
                record = transform(record)
            yield record
