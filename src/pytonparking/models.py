"""Public data models."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import StrEnum

from .address import CanonicalAddress

SpaceId = int | str


class SpaceStatus(StrEnum):
    VACANT = "vacant"
    RESERVED = "reserved"
    OCCUPIED = "occupied"


class SessionStatus(StrEnum):
    RESERVED = "reserved"
    OCCUPIED = "occupied"


class PaymentState(StrEnum):
    CONFIRMED = "confirmed"
    PENDING = "pending"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class Zone:
    id: int | str
    name: str
    is_premium: bool
    hourly_rate: Decimal
    max_duration_hours: int


@dataclass(slots=True)
class ParkingSpace:
    """Mutable space record, only changed by the reservation state machine."""

    id: SpaceId
    zone_id: int | str
    status: SpaceStatus = SpaceStatus.VACANT
    license_plate: str | None = None
    reservation_time: datetime | None = None
    reservation_deadline: datetime | None = None
    occupied_since: datetime | None = None
    payment_tx_hash: str | None = None

    def clear(self) -> None:
        self.status = SpaceStatus.VACANT
        self.license_plate = None
        self.reservation_time = None
        self.reservation_deadline = None
        self.occupied_since = None
        self.payment_tx_hash = None

    def snapshot(self) -> SpaceSnapshot:
        return SpaceSnapshot(
            id=self.id,
            zone_id=self.zone_id,
            status=self.status,
            license_plate=self.license_plate,
            reservation_time=self.reservation_time,
            reservation_deadline=self.reservation_deadline,
            occupied_since=self.occupied_since,
            payment_tx_hash=self.payment_tx_hash,
        )


@dataclass(frozen=True, slots=True)
class SpaceSnapshot:
    id: SpaceId
    zone_id: int | str
    status: SpaceStatus
    license_plate: str | None
    reservation_time: datetime | None
    reservation_deadline: datetime | None
    occupied_since: datetime | None
    payment_tx_hash: str | None


@dataclass(frozen=True, slots=True)
class ClientSession:
    id: str
    license_plate: str
    space_id: SpaceId
    status: SessionStatus
    start_time: datetime
    reservation_time: datetime


@dataclass(frozen=True, slots=True)
class InboundMessage:
    source: str | None
    destination: str | None
    value: int


@dataclass(frozen=True, slots=True)
class ResolvedTransaction:
    hash: str
    utime: int | None
    success: bool
    outgoing_count: int
    in_msg: InboundMessage | None

    @property
    def is_outgoing(self) -> bool:
        return self.outgoing_count > 0


@dataclass(frozen=True, slots=True)
class VerifiedPayment:
    transaction_hash: str
    amount: int
    sender: CanonicalAddress
    recipient: CanonicalAddress
    timestamp: datetime


@dataclass(frozen=True, slots=True)
class PaymentStatus:
    state: PaymentState
    payment: VerifiedPayment | None = None
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class WalletBalance:
    address: str
    balance_nano: int
    balance_ton: Decimal
