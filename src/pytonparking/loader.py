"""Zone and space configuration ingestion.

Zone reference data is owned by the surrounding system. It is validated once
here, so the core only ever sees typed values (in particular a real ``bool``
premium flag).
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from datetime import datetime
from pathlib import Path
from typing import Any

from .const import DEFAULT_MAX_DURATION_HOURS
from .exceptions import ConfigError, ValidationError
from .models import ParkingSpace, SpaceStatus, Zone
from .util import coerce_bool, ensure_utc, normalize_license_plate, to_decimal

_ZONE_KEYS = ("id", "name", "hourly_rate")
_SPACE_KEYS = ("id", "zone_id")


def build_zone(data: Mapping[str, Any]) -> Zone:
    if not isinstance(data, Mapping):
        raise ConfigError("Zone entry must be a JSON object.")
    missing = [key for key in _ZONE_KEYS if key not in data]
    if missing:
        raise ConfigError(f"Zone entry missing keys: {', '.join(missing)}.")
    zone_id = _require_id(data["id"], "Zone id")
    name = data["name"]
    if not isinstance(name, str) or not name.strip():
        raise ConfigError("Zone name must be a non-empty string.")
    try:
        is_premium = coerce_bool(data.get("is_premium", False))
        hourly_rate = to_decimal(data["hourly_rate"])
    except ValidationError as exc:
        raise ConfigError(f"Zone {zone_id} has invalid values: {exc}") from exc
    if hourly_rate < 0:
        raise ConfigError(f"Zone {zone_id} hourly_rate must not be negative.")
    max_duration = data.get("max_duration_hours")
    if max_duration is None:
        max_duration = DEFAULT_MAX_DURATION_HOURS
    if isinstance(max_duration, bool) or not isinstance(max_duration, int) or max_duration < 1:
        raise ConfigError(f"Zone {zone_id} max_duration_hours must be a positive integer.")
    if is_premium and hourly_rate == 0:
        raise ConfigError(f"Premium zone {zone_id} must have a positive hourly_rate.")
    return Zone(
        id=zone_id,
        name=name.strip(),
        is_premium=is_premium,
        hourly_rate=hourly_rate,
        max_duration_hours=max_duration,
    )


def build_space(data: Mapping[str, Any], zones: Mapping[int | str, Zone]) -> ParkingSpace:
    if not isinstance(data, Mapping):
        raise ConfigError("Space entry must be a JSON object.")
    missing = [key for key in _SPACE_KEYS if key not in data]
    if missing:
        raise ConfigError(f"Space entry missing keys: {', '.join(missing)}.")
    space_id = _require_id(data["id"], "Space id")
    zone_id = _require_id(data["zone_id"], "Space zone_id")
    if zone_id not in zones:
        raise ConfigError(f"Space {space_id} references unknown zone {zone_id}.")
    try:
        status = SpaceStatus(data.get("status") or SpaceStatus.VACANT)
    except ValueError as exc:
        raise ConfigError(f"Space {space_id} has an unknown status.") from exc
    space = ParkingSpace(id=space_id, zone_id=zone_id, status=status)
    if status is SpaceStatus.VACANT:
        held = [
            key
            for key in ("license_plate", "reservation_time", "occupied_since", "payment_tx_hash")
            if data.get(key)
        ]
        if held:
            raise ConfigError(f"Vacant space {space_id} must not carry {', '.join(held)}.")
        return space
    try:
        space.license_plate = normalize_license_plate(data.get("license_plate"))
        space.reservation_time = _parse_datetime(data.get("reservation_time"))
        space.reservation_deadline = _parse_datetime(data.get("reservation_deadline"))
        space.occupied_since = _parse_datetime(data.get("occupied_since"))
    except ValidationError as exc:
        raise ConfigError(f"Space {space_id} has invalid occupancy data: {exc}") from exc
    if status is SpaceStatus.RESERVED and space.reservation_deadline is None:
        raise ConfigError(f"Reserved space {space_id} requires reservation_deadline.")
    payment_tx_hash = data.get("payment_tx_hash")
    if isinstance(payment_tx_hash, str) and payment_tx_hash.strip():
        space.payment_tx_hash = payment_tx_hash.strip().lower()
    return space


def load_zones(entries: Iterable[Mapping[str, Any]]) -> dict[int | str, Zone]:
    zones: dict[int | str, Zone] = {}
    for entry in entries:
        zone = build_zone(entry)
        if zone.id in zones:
            raise ConfigError(f"Duplicate zone id {zone.id}.")
        zones[zone.id] = zone
    return zones


def load_spaces(
    entries: Iterable[Mapping[str, Any]],
    zones: Mapping[int | str, Zone],
) -> list[ParkingSpace]:
    return [build_space(entry, zones) for entry in entries]


def load_config(path: str | Path) -> tuple[dict[int | str, Zone], list[ParkingSpace]]:
    """Read ``{"zones": [...], "spaces": [...]}`` from a JSON file."""
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigError("Configuration file could not be read.") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError("Configuration file is not valid JSON.") from exc
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a JSON object.")
    zone_entries = data.get("zones")
    space_entries = data.get("spaces", [])
    if not isinstance(zone_entries, list) or not isinstance(space_entries, list):
        raise ConfigError("Configuration zones and spaces must be lists.")
    zones = load_zones(zone_entries)
    return zones, load_spaces(space_entries, zones)


def _require_id(value: Any, label: str) -> int | str:
    if isinstance(value, bool):
        raise ConfigError(f"{label} must be an integer or string.")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip():
        return value.strip()
    raise ConfigError(f"{label} must be an integer or string.")


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if not isinstance(value, str):
        raise ValidationError("Timestamp must be an ISO 8601 string.")
    raw = value.strip()
    if raw.endswith("Z"):
        raw = f"{raw[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError as exc:
        raise ValidationError("Timestamp is not a valid ISO 8601 value.") from exc
    return ensure_utc(parsed)
