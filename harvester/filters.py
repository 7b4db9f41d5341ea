from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Any, Mapping

from harvester.schema import FilterCriteria, TextOperator, TextPredicate

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")

# Extensions treated as the same file type by the allow-list.
EXTENSION_ALIASES: dict[str, str] = {"tif": "tiff"}


@dataclass(frozen=True)
class FilterDecision:
    passes: bool
    reason: str | None = None

    def __bool__(self) -> bool:
        return self.passes


PASS = FilterDecision(True)


def parse_int(value: Any) -> int:
    """Read the leading integer of ``value``; anything unparsable reads as 0."""
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    match = _LEADING_INT.match(str(value))
    if not match:
        return 0
    return int(match.group(1))


def record_file_size(record: Mapping[str, Any]) -> int:
    """Return the asset size in bytes, preferring the measured size."""
    actual = parse_int(record.get("actualFileSize"))
    if actual:
        return actual
    declared = str(record.get("imageSize") or "").replace(",", "")
    return parse_int(declared)


def _normalize_type(extension: str) -> str:
    cleaned = extension.strip().lstrip(".").lower()
    return EXTENSION_ALIASES.get(cleaned, cleaned)


def file_type_allowed(asset_name: str, allowed: list[str]) -> bool:
    """Check the asset's extension against the allow-list (tif and tiff match)."""
    if not allowed:
        return True
    if not asset_name:
        return True
    suffix = PurePosixPath(asset_name.replace("\\", "/")).suffix
    if not suffix:
        return False
    normalized_allowed = {_normalize_type(item) for item in allowed}
    return _normalize_type(suffix) in normalized_allowed


def apply_text_predicate(field_value: Any, predicate: TextPredicate | None) -> bool:
    if predicate is None or predicate.operator is None:
        return True

    value = "" if field_value is None else str(field_value).strip().lower()
    expected = predicate.value.strip().lower()
    operator = predicate.operator

    if operator is TextOperator.EQUALS:
        return value == expected
    if operator is TextOperator.NOT_EQUALS:
        return value != expected
    if operator is TextOperator.LIKE:
        return expected in value
    if operator is TextOperator.NOT_LIKE:
        return expected not in value
    if operator is TextOperator.STARTS_WITH:
        return value.startswith(expected)
    if operator is TextOperator.ENDS_WITH:
        return value.endswith(expected)
    if operator is TextOperator.IS_BLANK:
        return value == ""
    if operator is TextOperator.NOT_BLANK:
        return value != ""
    return True


def evaluate(record: Mapping[str, Any], criteria: FilterCriteria) -> FilterDecision:
    """Decide whether ``record`` passes every configured criterion."""
    if not criteria.enabled:
        return PASS

    if not file_type_allowed(
        str(record.get("imageHref") or ""), criteria.allowed_file_types
    ):
        return FilterDecision(False, "file type not allowed")

    width = parse_int(record.get("imageWidth"))
    height = parse_int(record.get("imageHeight"))
    if criteria.min_width is not None and width < criteria.min_width:
        return FilterDecision(False, f"width {width} below {criteria.min_width}")
    if criteria.min_height is not None and height < criteria.min_height:
        return FilterDecision(False, f"height {height} below {criteria.min_height}")

    size = record_file_size(record)
    if criteria.min_file_size is not None and size < criteria.min_file_size:
        return FilterDecision(False, f"file size {size} below {criteria.min_file_size}")
    if criteria.max_file_size is not None and size > criteria.max_file_size:
        return FilterDecision(False, f"file size {size} above {criteria.max_file_size}")

    for field_name, predicate in criteria.text_predicates.items():
        if not apply_text_predicate(record.get(field_name), predicate):
            return FilterDecision(
                False, f"{field_name} failed {predicate.operator.value} filter"
            )

    return PASS


def apply_filters(
    records: list[Mapping[str, Any]], criteria: FilterCriteria
) -> list[Mapping[str, Any]]:
    """Return the records that pass ``criteria`` in their original order."""
    return [record for record in records if evaluate(record, criteria)]
