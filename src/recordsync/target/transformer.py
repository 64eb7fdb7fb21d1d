"""Record field transformations applied before mapping to target attributes."""

import logging
from typing import Any, Callable, Dict, List, Sequence, Union

from recordsync.domain.errors import TransformationError
from recordsync.utils.date_parser import normalize_date

logger = logging.getLogger(__name__)

TRUE_VALUES = ("true", "yes", "1", "on", "enabled")
FALSE_VALUES = ("false", "no", "0", "off", "disabled", "")

FieldSelection = Union[str, Sequence[str]]


def normalize_boolean(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in TRUE_VALUES:
            return True
        if lowered in FALSE_VALUES:
            return False
    return value


def normalize_number(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    value = value.strip()
    if value == "":
        return None
    try:
        return float(value) if "." in value else int(value)
    except ValueError:
        return value


def trim_string(value: Any) -> Any:
    return value.strip() if isinstance(value, str) else value


CASE_FUNCTIONS: Dict[str, Callable[[str], str]] = {
    "upper": str.upper,
    "lower": str.lower,
    "title": lambda value: " ".join(word.capitalize() for word in value.split()),
}


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    return isinstance(value, (list, dict)) and len(value) == 0


def _nested(data: Dict[str, Any], path: Union[str, Sequence[str]]) -> Any:
    keys = path.split(".") if isinstance(path, str) else list(path)
    current: Any = data
    for key in keys:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


class RecordTransformer:
    """Applies an ordered list of transformations to a field map.

    Each transformation is a mapping such as
    ``{"type": "trim_strings", "fields": ["name"]}`` (``"all"`` selects every
    field), ``{"type": "normalize_case", "fields": [...], "case": "lower"}``,
    ``{"type": "rename_fields", "fields": {"old": "new"}}``,
    ``{"type": "extract_nested", "fields": {"city": "address.city"}}``,
    ``{"type": "remove_empty_fields"}`` or ``{"type": "custom", "function": fn}``.
    A bare callable is treated as a custom transformation and must return the
    new field map.
    """

    def __init__(self, transformations: Sequence[Any] = ()):
        self.transformations = list(transformations)

    def transform(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Return a transformed copy of ``fields``.

        Raises:
            TransformationError: a transformation failed; the record should be
                abandoned
        """
        result = dict(fields)
        for transformation in self.transformations:
            result = self._apply(transformation, result)
        return result

    def _apply(self, transformation: Any, fields: Dict[str, Any]) -> Dict[str, Any]:
        if callable(transformation):
            return self._custom(transformation, fields)
        if not isinstance(transformation, dict):
            logger.warning(f"Skipping unrecognized transformation: {transformation!r}")
            return fields

        kind = transformation.get("type")
        selection = transformation.get("fields", "all")
        try:
            if kind == "normalize_dates":
                return self._map_values(fields, selection, normalize_date)
            if kind == "normalize_booleans":
                return self._map_values(fields, selection, normalize_boolean)
            if kind == "normalize_numbers":
                return self._map_values(fields, selection, normalize_number)
            if kind == "trim_strings":
                return self._map_values(fields, selection, trim_string)
            if kind == "normalize_case":
                case = CASE_FUNCTIONS.get(transformation.get("case", "lower"))
                if case is None:
                    raise TransformationError(f"Unknown case: {transformation.get('case')}")
                return self._map_values(
                    fields, selection, lambda value: case(value) if isinstance(value, str) else value
                )
            if kind == "remove_empty_fields":
                return {key: value for key, value in fields.items() if not _is_empty(value)}
            if kind == "rename_fields":
                return self._rename(fields, selection)
            if kind == "extract_nested":
                return self._extract(fields, selection)
            if kind == "custom":
                return self._custom(transformation.get("function"), fields)
        except TransformationError:
            raise
        except Exception as e:
            raise TransformationError(f"Transformation '{kind}' failed: {e}", transformation=kind) from e

        logger.warning(f"Skipping unknown transformation type: {kind!r}")
        return fields

    @staticmethod
    def _map_values(
        fields: Dict[str, Any], selection: FieldSelection, function: Callable[[Any], Any]
    ) -> Dict[str, Any]:
        names: List[str] = list(fields) if selection == "all" else list(selection)
        result = dict(fields)
        for name in names:
            if name in result:
                result[name] = function(result[name])
        return result

    @staticmethod
    def _rename(fields: Dict[str, Any], mapping: Dict[str, str]) -> Dict[str, Any]:
        result = dict(fields)
        for old, new in mapping.items():
            if old in result:
                result[new] = result.pop(old)
        return result

    @staticmethod
    def _extract(fields: Dict[str, Any], mapping: Dict[str, Any]) -> Dict[str, Any]:
        result = dict(fields)
        for target, path in mapping.items():
            value = _nested(fields, path)
            if value is not None:
                result[target] = value
        return result

    @staticmethod
    def _custom(function: Any, fields: Dict[str, Any]) -> Dict[str, Any]:
        if not callable(function):
            logger.warning(f"Skipping custom transformation without a callable: {function!r}")
            return fields
        try:
            result = function(dict(fields))
        except Exception as e:
            raise TransformationError(f"Custom transformation failed: {e}") from e
        if not isinstance(result, dict):
            raise TransformationError(f"Custom transformation returned {type(result).__name__}")
        return result
