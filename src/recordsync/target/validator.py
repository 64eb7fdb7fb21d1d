"""Rule-based record validation.

Rules are plain mappings with a ``type`` and a ``fields`` entry, or bare
callables for custom checks::

    [
        {"type": "required_fields", "fields": ["name", "email"]},
        {"type": "field_types", "fields": {"age": "integer", "active": "boolean"}},
        {"type": "field_formats", "fields": {"email": r"^[^@]+@[^@]+\\.[^@]+$"}},
        {"type": "field_lengths", "fields": {"name": {"min": 2, "max": 100}}},
        {"type": "field_ranges", "fields": {"age": {"min": 0, "max": 120}}},
        {"type": "allowed_values", "fields": {"status": ["active", "inactive"]}},
        {"type": "custom", "function": check_record},
    ]

A custom check receives the field map and returns True/None when valid,
False or a message when not, or a list of failure mappings.
"""

import logging
import re
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Sequence

from recordsync.domain.errors import RecordValidationError
from recordsync.utils.date_parser import parse_timestamp

logger = logging.getLogger(__name__)

Failure = Dict[str, Any]


def _is_date(value: Any) -> bool:
    if isinstance(value, (date, datetime)):
        return True
    return isinstance(value, str) and parse_timestamp(value) is not None


TYPE_CHECKS: Dict[str, Callable[[Any], bool]] = {
    "string": lambda value: isinstance(value, str),
    "integer": lambda value: isinstance(value, int) and not isinstance(value, bool),
    "float": lambda value: isinstance(value, float),
    "number": lambda value: isinstance(value, (int, float)) and not isinstance(value, bool),
    "boolean": lambda value: isinstance(value, bool),
    "list": lambda value: isinstance(value, list),
    "map": lambda value: isinstance(value, dict),
    "date": _is_date,
}


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, dict)):
        return len(value) == 0
    return False


class RecordValidator:
    """Applies an ordered list of validation rules to a record's fields."""

    def __init__(self, rules: Sequence[Any] = ()):
        self.rules = list(rules)
        self._checks = {
            "required_fields": self._required_fields,
            "field_types": self._field_types,
            "field_formats": self._field_formats,
            "field_lengths": self._field_lengths,
            "field_ranges": self._field_ranges,
            "allowed_values": self._allowed_values,
        }

    def validate(self, fields: Dict[str, Any]) -> List[Failure]:
        """Return every rule failure for the given field map."""
        failures: List[Failure] = []
        for rule in self.rules:
            failures.extend(self._apply(rule, fields))
        return failures

    def check(self, fields: Dict[str, Any]) -> None:
        """Raise ``RecordValidationError`` if any rule fails."""
        failures = self.validate(fields)
        if failures:
            summary = "; ".join(failure["message"] for failure in failures)
            raise RecordValidationError(summary, failures)

    def _apply(self, rule: Any, fields: Dict[str, Any]) -> List[Failure]:
        if callable(rule):
            return self._custom(rule, fields)
        if not isinstance(rule, dict):
            logger.warning(f"Skipping unrecognized validation rule: {rule!r}")
            return []

        rule_type = rule.get("type")
        if rule_type == "custom":
            return self._custom(rule.get("function"), fields)
        check = self._checks.get(rule_type)
        if check is None:
            logger.warning(f"Skipping unknown validation rule type: {rule_type!r}")
            return []
        return check(rule.get("fields") or {}, fields)

    @staticmethod
    def _required_fields(required: Sequence[str], fields: Dict[str, Any]) -> List[Failure]:
        return [
            {
                "field": name,
                "rule": "required_field",
                "message": f"Required field '{name}' is missing or empty",
                "value": fields.get(name),
            }
            for name in required
            if _is_empty(fields.get(name))
        ]

    @staticmethod
    def _field_types(types: Dict[str, str], fields: Dict[str, Any]) -> List[Failure]:
        failures = []
        for name, expected in types.items():
            value = fields.get(name)
            check = TYPE_CHECKS.get(expected)
            if check is None:
                logger.warning(f"Unknown field type '{expected}' for '{name}'")
                continue
            if value is not None and not check(value):
                failures.append(
                    {
                        "field": name,
                        "rule": "field_type",
                        "message": f"Field '{name}' has incorrect type (expected {expected})",
                        "value": value,
                        "actual": type(value).__name__,
                    }
                )
        return failures

    @staticmethod
    def _field_formats(formats: Dict[str, str], fields: Dict[str, Any]) -> List[Failure]:
        failures = []
        for name, pattern in formats.items():
            value = fields.get(name)
            if isinstance(value, str) and not re.search(pattern, value):
                failures.append(
                    {
                        "field": name,
                        "rule": "field_format",
                        "message": f"Field '{name}' does not match required format",
                        "value": value,
                    }
                )
        return failures

    @staticmethod
    def _field_lengths(lengths: Dict[str, Dict[str, int]], fields: Dict[str, Any]) -> List[Failure]:
        failures = []
        for name, bounds in lengths.items():
            value = fields.get(name)
            if not isinstance(value, (str, list)):
                continue
            if "min" in bounds and len(value) < bounds["min"]:
                message = f"Field '{name}' is too short (minimum: {bounds['min']})"
            elif "max" in bounds and len(value) > bounds["max"]:
                message = f"Field '{name}' is too long (maximum: {bounds['max']})"
            else:
                continue
            failures.append(
                {"field": name, "rule": "field_length", "message": message, "value": value}
            )
        return failures

    @staticmethod
    def _field_ranges(ranges: Dict[str, Dict[str, float]], fields: Dict[str, Any]) -> List[Failure]:
        failures = []
        for name, bounds in ranges.items():
            value = fields.get(name)
            if not isinstance(value, (int, float)) or isinstance(value, bool):
                continue
            if "min" in bounds and value < bounds["min"]:
                message = f"Field '{name}' is below minimum ({bounds['min']})"
            elif "max" in bounds and value > bounds["max"]:
                message = f"Field '{name}' is above maximum ({bounds['max']})"
            else:
                continue
            failures.append(
                {"field": name, "rule": "field_range", "message": message, "value": value}
            )
        return failures

    @staticmethod
    def _allowed_values(allowed: Dict[str, Sequence[Any]], fields: Dict[str, Any]) -> List[Failure]:
        return [
            {
                "field": name,
                "rule": "allowed_values",
                "message": f"Field '{name}' must be one of {list(values)}",
                "value": fields.get(name),
            }
            for name, values in allowed.items()
            if fields.get(name) is not None and fields.get(name) not in values
        ]

    @staticmethod
    def _custom(function: Any, fields: Dict[str, Any]) -> List[Failure]:
        if not callable(function):
            logger.warning(f"Skipping custom validation without a callable: {function!r}")
            return []
        try:
            result = function(dict(fields))
        except Exception as e:
            return [{"field": None, "rule": "custom", "message": f"Custom validation raised: {e}"}]

        if result is None or result is True:
            return []
        if result is False:
            return [{"field": None, "rule": "custom", "message": "Custom validation failed"}]
        if isinstance(result, str):
            return [{"field": None, "rule": "custom", "message": result}]
        if isinstance(result, list):
            return [{"rule": "custom", **item} for item in result]
        return [
            {"field": None, "rule": "custom", "message": f"Invalid validation result: {result!r}"}
        ]
