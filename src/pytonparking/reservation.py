"""Reservation lifecycle of parking spaces.

Every space moves ``vacant -> reserved -> occupied -> vacant``, with
``reserved -> vacant`` on cancellation or expiry and ``occupied -> vacant`` on
completion. Spaces in premium zones only become reserved after the payment
verifier confirms an on-chain transfer, and each verified transaction unlocks
at most one reservation.

Mutations follow check-act-under-lock: the space lock is taken, the
precondition re-checked, then the record changed. Payment verification talks
to the network and always runs before the lock is taken.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime, timedelta

from .exceptions import (
    ConcurrencyConflictError,
    ConfigError,
    PaymentPendingError,
    PaymentRejectedError,
    ValidationError,
)
from .models import ParkingSpace, SpaceId, SpaceSnapshot, SpaceStatus, VerifiedPayment, Zone
from .resolver import ReferenceKind, classify_reference, normalize_hash
from .session import SessionRegistry
from .util import (
    coerce_bool,
    ensure_utc,
    mask_license_plate,
    normalize_license_plate,
    ton_to_nano,
    utcnow,
    validate_duration_hours,
)
from .verifier import PaymentVerifier

_LOGGER = logging.getLogger(__name__)


class ReservationStateMachine:
    """Owns the spaces and drives every status transition."""

    def __init__(
        self,
        spaces: Iterable[ParkingSpace],
        zones: Mapping[int | str, Zone],
        *,
        verifier: PaymentVerifier | None = None,
        recipient: str | None = None,
        sessions: SessionRegistry | None = None,
        consumed_hashes: Iterable[str] = (),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._zones = dict(zones)
        self._spaces: dict[SpaceId, ParkingSpace] = {}
        for space in spaces:
            if space.id in self._spaces:
                raise ConfigError(f"Duplicate parking space id {space.id}.")
            if space.zone_id not in self._zones:
                raise ConfigError(f"Parking space {space.id} references unknown zone.")
            self._spaces[space.id] = space
        self._locks = {space_id: threading.Lock() for space_id in self._spaces}
        self._verifier = verifier
        self._recipient = recipient
        self._sessions = sessions
        self._clock = clock
        self._payments_lock = threading.Lock()
        self._consumed: set[str] = {tx_hash.strip().lower() for tx_hash in consumed_hashes}
        for space in self._spaces.values():
            if space.payment_tx_hash:
                self._consumed.add(space.payment_tx_hash.strip().lower())

    # Reads

    def get_space(self, space_id: SpaceId) -> SpaceSnapshot:
        space = self._require_space(space_id)
        with self._locks[space.id]:
            return space.snapshot()

    def list_spaces(self) -> list[SpaceSnapshot]:
        return [self.get_space(space_id) for space_id in self._spaces]

    def zone_for(self, space_id: SpaceId) -> Zone:
        return self._zones[self._require_space(space_id).zone_id]

    def expired_space_ids(self, now: datetime | None = None) -> list[SpaceId]:
        """Ids of reserved spaces past their deadline; ``expire`` re-checks."""
        current = self._now(now)
        expired: list[SpaceId] = []
        for space_id, space in self._spaces.items():
            with self._locks[space_id]:
                deadline = space.reservation_deadline
                if space.status is SpaceStatus.RESERVED and deadline and current > deadline:
                    expired.append(space_id)
        return expired

    def is_payment_consumed(self, tx_hash: str) -> bool:
        with self._payments_lock:
            return tx_hash.strip().lower() in self._consumed

    def consumed_payments(self) -> frozenset[str]:
        with self._payments_lock:
            return frozenset(self._consumed)

    def quote(self, space_id: SpaceId, duration_hours: int) -> int:
        """Amount in nanoTON a reservation of this space must pay (0 when free)."""
        duration = validate_duration_hours(duration_hours)
        zone = self.zone_for(space_id)
        self._check_duration(zone, duration)
        if not zone.is_premium:
            return 0
        return ton_to_nano(zone.hourly_rate * duration)

    def validate_deep_link(self, space_id: SpaceId, premium: object = None) -> SpaceSnapshot:
        """Accept a pre-selected space only if it exists and is vacant."""
        space = self.get_space(space_id)
        if space.status is not SpaceStatus.VACANT:
            raise ValidationError("not vacant")
        if premium is not None:
            zone = self._zones[space.zone_id]
            if coerce_bool(premium) != zone.is_premium:
                _LOGGER.debug("Deep link premium flag for space %s ignored", space.id)
        return space

    # Transitions

    async def reserve(
        self,
        space_id: SpaceId,
        license_plate: str,
        duration_hours: int,
        payment_ref: str | None = None,
        *,
        expected_sender: str | None = None,
        session_id: str | None = None,
        now: datetime | None = None,
    ) -> SpaceSnapshot:
        plate = normalize_license_plate(license_plate)
        duration = validate_duration_hours(duration_hours)
        space = self._require_space(space_id)
        zone = self._zones[space.zone_id]
        self._check_duration(zone, duration)
        with self._locks[space.id]:
            if space.status is not SpaceStatus.VACANT:
                raise ValidationError("not vacant")
        _LOGGER.debug(
            "Reserve space %s for %s started duration=%s",
            space.id,
            mask_license_plate(plate),
            duration,
        )

        payment: VerifiedPayment | None = None
        tx_hash: str | None = None
        if zone.is_premium:
            payment = await self._verify_payment(zone, duration, payment_ref, expected_sender)
            tx_hash = self._claim_payment(payment.transaction_hash)
        try:
            snapshot = self._commit_reservation(
                space,
                plate,
                duration,
                tx_hash,
                session_id=session_id,
                now=now,
            )
        except ValidationError:
            if tx_hash is not None:
                self._release_payment(tx_hash)
            raise
        _LOGGER.info(
            "Space %s reserved for %s until %s",
            space.id,
            mask_license_plate(plate),
            snapshot.reservation_deadline,
        )
        return snapshot

    def mark_occupied(
        self,
        space_id: SpaceId,
        license_plate: str,
        *,
        now: datetime | None = None,
    ) -> SpaceSnapshot:
        plate = normalize_license_plate(license_plate)
        space = self._require_space(space_id)
        with self._locks[space.id]:
            if space.status is not SpaceStatus.RESERVED:
                raise ValidationError("space is not reserved")
            if space.license_plate != plate:
                raise ValidationError("space is reserved for another license plate")
            space.status = SpaceStatus.OCCUPIED
            space.occupied_since = self._now(now)
            snapshot = space.snapshot()
        _LOGGER.info("Space %s occupied by %s", space.id, mask_license_plate(plate))
        return snapshot

    def complete(self, space_id: SpaceId, license_plate: str | None = None) -> str | None:
        """Release a reserved or occupied space; a vacant space is left as is.

        With ``license_plate`` the space is only released while that plate
        holds it. Returns the plate that held the released space, if any.
        """
        plate = normalize_license_plate(license_plate) if license_plate is not None else None
        space = self._require_space(space_id)
        with self._locks[space.id]:
            if space.status is SpaceStatus.VACANT:
                return None
            if plate is not None and space.license_plate != plate:
                _LOGGER.debug("Space %s is held by another plate, not released", space.id)
                return None
            released = space.license_plate
            space.clear()
        _LOGGER.info("Space %s released by %s", space.id, mask_license_plate(released))
        return released

    def cancel(
        self,
        space_id: SpaceId,
        license_plate: str | None = None,
        *,
        missing_ok: bool = False,
    ) -> str | None:
        """Release a space the client abandoned before arriving.

        ``missing_ok`` turns a space that is no longer reserved for the plate
        into a no-op returning ``None``.
        """
        plate = normalize_license_plate(license_plate) if license_plate is not None else None
        space = self._require_space(space_id)
        with self._locks[space.id]:
            if space.status is not SpaceStatus.RESERVED:
                if missing_ok:
                    return None
                raise ValidationError("only reserved spaces can be cancelled")
            if plate is not None and space.license_plate != plate:
                if missing_ok:
                    return None
                raise ValidationError("space is reserved for another license plate")
            released = space.license_plate
            space.clear()
        _LOGGER.info("Reservation of space %s cancelled", space.id)
        return released

    def expire(self, space_id: SpaceId, now: datetime | None = None) -> str | None:
        """Reclaim a reserved space whose deadline has passed.

        Occupied spaces have no deadline and are never expired. Returns the
        released plate, or ``None`` when nothing changed.
        """
        current = self._now(now)
        space = self._require_space(space_id)
        with self._locks[space.id]:
            deadline = space.reservation_deadline
            if space.status is not SpaceStatus.RESERVED or deadline is None:
                return None
            if current <= deadline:
                return None
            plate = space.license_plate
            space.clear()
        _LOGGER.info(
            "Reservation of space %s by %s expired",
            space.id,
            mask_license_plate(plate),
        )
        return plate

    # Internals

    def _commit_reservation(
        self,
        space: ParkingSpace,
        plate: str,
        duration: int,
        tx_hash: str | None,
        *,
        session_id: str | None,
        now: datetime | None,
    ) -> SpaceSnapshot:
        with self._locks[space.id]:
            if space.status is not SpaceStatus.VACANT:
                raise ConcurrencyConflictError("not vacant")
            if (
                session_id is not None
                and self._sessions is not None
                and not self._sessions.is_active(session_id)
            ):
                raise ConcurrencyConflictError("space no longer available for this reservation")
            reserved_at = self._now(now)
            space.status = SpaceStatus.RESERVED
            space.license_plate = plate
            space.reservation_time = reserved_at
            space.reservation_deadline = reserved_at + timedelta(hours=duration)
            space.occupied_since = None
            space.payment_tx_hash = tx_hash
            return space.snapshot()

    async def _verify_payment(
        self,
        zone: Zone,
        duration: int,
        payment_ref: str | None,
        expected_sender: str | None,
    ) -> VerifiedPayment:
        if self._verifier is None or not self._recipient:
            raise ConfigError("Premium zones require a payment verifier and recipient.")
        if not isinstance(payment_ref, str) or not payment_ref.strip():
            raise ValidationError("payment reference required for premium zone")
        if classify_reference(payment_ref) is ReferenceKind.HASH and self.is_payment_consumed(
            normalize_hash(payment_ref)
        ):
            raise PaymentRejectedError("payment already used")
        expected_amount = ton_to_nano(zone.hourly_rate * duration)
        try:
            return await self._verifier.verify(
                payment_ref,
                expected_amount,
                self._recipient,
                expected_sender,
                exclude=self.consumed_payments(),
            )
        except PaymentPendingError as exc:
            raise PaymentPendingError(
                "payment not yet confirmed",
                detail=exc.reason,
                user_message="Payment not confirmed yet. Please try again shortly.",
            ) from exc

    def _claim_payment(self, tx_hash: str) -> str:
        normalized = tx_hash.strip().lower()
        with self._payments_lock:
            if normalized in self._consumed:
                raise PaymentRejectedError("payment already used")
            self._consumed.add(normalized)
        return normalized

    def _release_payment(self, tx_hash: str) -> None:
        with self._payments_lock:
            self._consumed.discard(tx_hash)

    def _check_duration(self, zone: Zone, duration: int) -> None:
        if duration > zone.max_duration_hours:
            raise ValidationError(
                "duration exceeds zone maximum",
                detail=(
                    f"Maximum reservation duration for this zone is "
                    f"{zone.max_duration_hours} hour(s). You requested {duration} hour(s)."
                ),
            )

    def _require_space(self, space_id: SpaceId) -> ParkingSpace:
        space = self._spaces.get(space_id)
        if space is None and isinstance(space_id, str) and space_id.strip().isdigit():
            space = self._spaces.get(int(space_id.strip()))
        if space is None:
            raise ValidationError(f"Parking space {space_id} does not exist.")
        return space

    def _now(self, now: datetime | None) -> datetime:
        return ensure_utc(now) if now is not None else ensure_utc(self._clock())
