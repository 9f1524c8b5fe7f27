"""Shared utilities for validation and normalization."""

from __future__ import annotations

import re
from datetime import UTC, datetime
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Any

from .const import NANO_PER_TON
from .exceptions import ValidationError

_LICENSE_PLATE_RE = re.compile(r"[^A-Z0-9]")
_TRUE_STRINGS = frozenset({"1", "true", "yes", "on"})
_FALSE_STRINGS = frozenset({"0", "false", "no", "off", ""})


def normalize_license_plate(plate: str) -> str:
    if not isinstance(plate, str):
        raise ValidationError("License plate must be a string.")
    normalized = _LICENSE_PLATE_RE.sub("", plate.upper())
    if not normalized:
        raise ValidationError("License plate is empty after normalization.")
    return normalized


def mask_license_plate(plate: str | None) -> str:
    if not isinstance(plate, str):
        return "***"
    normalized = _LICENSE_PLATE_RE.sub("", plate.upper())
    if not normalized:
        return "***"
    if len(normalized) <= 2:
        return "*" * len(normalized)
    if len(normalized) <= 4:
        return f"{normalized[:1]}{'*' * (len(normalized) - 2)}{normalized[-1:]}"
    masked = "*" * (len(normalized) - 4)
    return f"{normalized[:2]}{masked}{normalized[-2:]}"


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    if not isinstance(value, datetime):
        raise ValidationError("Timestamp must be a datetime.")
    if value.tzinfo is None:
        raise ValidationError("Timestamp must include timezone information.")
    return value.astimezone(UTC)


def from_unix_timestamp(value: int | None) -> datetime:
    if value is None:
        return utcnow()
    return datetime.fromtimestamp(value, UTC)


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError("Amount must be numeric.")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int | str):
        raw = value
    elif isinstance(value, float):
        raw = repr(value)
    else:
        raise ValidationError("Amount must be numeric.")
    try:
        parsed = Decimal(raw)
    except InvalidOperation as exc:
        raise ValidationError("Amount is not a valid number.") from exc
    if not parsed.is_finite():
        raise ValidationError("Amount must be finite.")
    return parsed


def ton_to_nano(amount: Decimal | int | float | str) -> int:
    """Convert TON to nanoTON, truncating below one nanoTON."""
    nano = to_decimal(amount) * NANO_PER_TON
    return int(nano.to_integral_value(rounding=ROUND_DOWN))


def nano_to_ton(amount: int) -> Decimal:
    return Decimal(amount) / NANO_PER_TON


def parse_nano(value: Any) -> int:
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return 0
        try:
            return int(stripped)
        except ValueError:
            return 0
    return 0


def coerce_bool(value: Any) -> bool:
    """Collapse boolean-ish input (bool, 0/1, yes/no strings) to a bool."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, int):
        if value in (0, 1):
            return bool(value)
        raise ValidationError("Boolean flag must be 0 or 1.")
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise ValidationError("Boolean flag is not recognized.")


def validate_duration_hours(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("duration_hours must be an integer.")
    if value < 1:
        raise ValidationError("Reservation duration must be at least 1 hour.")
    return value
