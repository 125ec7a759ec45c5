"""Translate SoftOne rows into local field values and back."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import Boolean, Date, DateTime, Float, Integer, Numeric

from parksync.services.erp_sync.entities import normalize_key
from parksync.services.erp_sync.integration_config import FieldMapping, SyncConfig
from parksync.services.erp_sync.stats import SkipReason

logger = logging.getLogger(__name__)

# SoftOne pads GetTable responses with a placeholder column.
IGNORED_COLUMNS = frozenset({"", "MYDUMMY"})

_ZERO_DATES = frozenset({"0/0/0 0:0:0.0", "0/0/0 0:0:0", "0/0/0", "0000-00-00", "0000-00-00 00:00:00"})
_DATETIME_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d",
    "%d/%m/%Y %H:%M:%S",
    "%d/%m/%Y %H:%M",
    "%d/%m/%Y",
)
_TRUE_VALUES = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSE_VALUES = frozenset({"0", "false", "f", "no", "n", "off"})


@dataclass
class MappedRow:
    unique_key: str
    raw_key: Any
    values: dict[str, Any]
    defaults: dict[str, Any] = field(default_factory=dict)
    erp_modified_at: datetime | None = None
    index: int = 0


@dataclass
class MapError:
    unique_key: str | None
    reason: SkipReason
    message: str
    index: int = 0


def resolve_rows(rows: list, columns: list[str] | None = None) -> list[dict[str, Any]]:
    """Turn positional rows into dicts keyed by column name.

    Keyed rows are passed through with placeholder columns removed.
    """
    resolved = []
    for row in rows or []:
        if isinstance(row, dict):
            resolved.append({key: value for key, value in row.items() if key not in IGNORED_COLUMNS})
            continue
        if columns is None:
            raise ValueError("Positional ERP rows need a column model")
        resolved.append(
            {name: value for name, value in zip(columns, row) if name not in IGNORED_COLUMNS}
        )
    return resolved


def is_absent(value: Any) -> bool:
    if value is None:
        return True
    return isinstance(value, str) and not value.strip()


def lookup_field(row: dict[str, Any], name: str) -> tuple[bool, Any]:
    """Case tolerant field lookup: exact, then upper, then lower case."""
    for candidate in (name, name.upper(), name.lower()):
        if candidate in row:
            return True, row[candidate]
    return False, None


def parse_erp_datetime(value: Any) -> datetime | None:
    """Parse an ERP timestamp; unparsable and zero dates give ``None``."""
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if is_absent(value):
        return None
    text = str(value).strip()
    if text in _ZERO_DATES:
        return None
    for fmt in _DATETIME_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        logger.debug("ERP_DATE_UNPARSABLE value=%r", text)
        return None


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        return Decimal(int(value))
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    text = str(value).strip().replace(",", ".")
    try:
        return Decimal(text)
    except InvalidOperation as exc:
        raise ValueError(f"not a number: {value!r}") from exc


def coerce_value(value: Any, column) -> Any:
    """Coerce a present ERP value to the Python type of ``column``.

    Raises ``ValueError`` for numbers and booleans that cannot be read.
    Dates never raise; unreadable dates become ``None``.
    """
    column_type = column.type
    if isinstance(column_type, Boolean):
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE_VALUES:
            return True
        if text in _FALSE_VALUES:
            return False
        raise ValueError(f"not a boolean: {value!r}")
    if isinstance(column_type, Integer):
        number = _to_decimal(value)
        if number != number.to_integral_value():
            raise ValueError(f"not an integer: {value!r}")
        return int(number)
    if isinstance(column_type, Float):
        return float(_to_decimal(value))
    if isinstance(column_type, Numeric):
        return _to_decimal(value)
    if isinstance(column_type, DateTime):
        return parse_erp_datetime(value)
    if isinstance(column_type, Date):
        parsed = parse_erp_datetime(value)
        return parsed.date() if parsed else None
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def map_erp_row_to_local(row: dict[str, Any], config: SyncConfig, index: int = 0) -> MappedRow | MapError:
    columns = config.spec.columns

    found, raw_key = lookup_field(row, config.unique_erp_field)
    if not found or is_absent(raw_key):
        return MapError(
            unique_key=None,
            reason=SkipReason.missing_unique_key,
            message=f"Row has no value for unique field {config.unique_erp_field}",
            index=index,
        )
    try:
        key_value = coerce_value(raw_key, columns[config.unique_local_field])
    except ValueError as exc:
        return MapError(
            unique_key=normalize_key(raw_key),
            reason=SkipReason.invalid_value,
            message=f"{config.unique_erp_field}: {exc}",
            index=index,
        )
    unique_key = normalize_key(key_value)

    values: dict[str, Any] = {}
    for mapping in config.mappings:
        if mapping.local_field == config.unique_local_field:
            continue
        found, raw = lookup_field(row, mapping.erp_field)
        if not found or is_absent(raw):
            continue
        try:
            coerced = coerce_value(raw, columns[mapping.local_field])
        except ValueError as exc:
            return MapError(
                unique_key=unique_key,
                reason=SkipReason.invalid_value,
                message=f"{mapping.erp_field}: {exc}",
                index=index,
            )
        if coerced is not None:
            values[mapping.local_field] = coerced
    values[config.unique_local_field] = key_value

    defaults = {
        name: value for name, value in config.create_defaults.items() if name not in values
    }
    missing = sorted(name for name in config.spec.required_fields if name not in values and name not in defaults)
    if missing:
        return MapError(
            unique_key=unique_key,
            reason=SkipReason.required_field_missing,
            message=f"Missing required field(s): {', '.join(missing)}",
            index=index,
        )

    erp_modified_at = None
    if config.modified_field:
        _, modified = lookup_field(row, config.modified_field)
        erp_modified_at = parse_erp_datetime(modified)

    return MappedRow(
        unique_key=unique_key,
        raw_key=raw_key,
        values=values,
        defaults=defaults,
        erp_modified_at=erp_modified_at,
        index=index,
    )


def format_erp_value(value: Any) -> Any:
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M:%S")
    if isinstance(value, date):
        return value.strftime("%Y-%m-%d")
    if isinstance(value, Decimal):
        return float(value)
    return value


def map_local_row_to_erp(
    local_row,
    mappings: tuple[FieldMapping, ...] | list[FieldMapping],
    exclude: set[str] | frozenset[str] = frozenset(),
) -> dict[str, Any]:
    """Reverse mapping for pushes. Only configured ERP fields are emitted."""
    payload = {}
    for mapping in mappings:
        if mapping.erp_field in exclude:
            continue
        if isinstance(local_row, dict):
            value = local_row.get(mapping.local_field)
        else:
            value = getattr(local_row, mapping.local_field, None)
        if is_absent(value):
            continue
        payload[mapping.erp_field] = format_erp_value(value)
    return payload
