"""Client-facing facade over the reservation core."""

from __future__ import annotations

import logging

from .exceptions import ValidationError
from .models import ClientSession, PaymentStatus, SpaceId, SpaceSnapshot, SpaceStatus
from .reservation import ReservationStateMachine
from .session import SessionRegistry
from .sweeper import ExpirySweeper
from .util import mask_license_plate
from .verifier import PaymentVerifier

_LOGGER = logging.getLogger(__name__)


class ParkingService:
    """Coordinate sessions and space transitions for clients.

    Every client operation goes through the session registry first, so a
    plate can only ever act on the one space its session names.
    """

    def __init__(
        self,
        machine: ReservationStateMachine,
        sessions: SessionRegistry,
        *,
        verifier: PaymentVerifier | None = None,
        recipient: str | None = None,
        sweeper: ExpirySweeper | None = None,
    ) -> None:
        self._machine = machine
        self._sessions = sessions
        self._verifier = verifier
        self._recipient = recipient
        self._sweeper = sweeper

    @property
    def machine(self) -> ReservationStateMachine:
        return self._machine

    @property
    def sessions(self) -> SessionRegistry:
        return self._sessions

    async def __aenter__(self) -> ParkingService:
        if self._sweeper is not None:
            self._sweeper.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._sweeper is not None:
            await self._sweeper.stop()

    def list_spaces(self) -> list[SpaceSnapshot]:
        return self._machine.list_spaces()

    def active_session(self, license_plate: str) -> ClientSession | None:
        return self._sessions.lookup(license_plate)

    def quote(self, space_id: SpaceId, duration_hours: int) -> int:
        return self._machine.quote(space_id, duration_hours)

    def validate_deep_link(self, space_id: SpaceId, premium: object = None) -> SpaceSnapshot:
        return self._machine.validate_deep_link(space_id, premium)

    async def reserve(
        self,
        license_plate: str,
        space_id: SpaceId,
        duration_hours: int,
        payment_ref: str | None = None,
        *,
        expected_sender: str | None = None,
    ) -> ClientSession:
        # Sessions carry the canonical id so the sweeper's space guard matches.
        canonical_id = self._machine.get_space(space_id).id
        session = self._sessions.begin_session(license_plate, canonical_id)
        try:
            snapshot = await self._machine.reserve(
                canonical_id,
                session.license_plate,
                duration_hours,
                payment_ref,
                expected_sender=expected_sender,
                session_id=session.id,
            )
        except BaseException:
            self._sessions.end_session(session.license_plate, session_id=session.id)
            raise
        _LOGGER.debug(
            "Reservation for %s on space %s admitted",
            mask_license_plate(session.license_plate),
            snapshot.id,
        )
        return session

    def arrive(self, license_plate: str) -> ClientSession:
        session = self._require_session(license_plate)
        self._machine.mark_occupied(session.space_id, session.license_plate)
        return self._sessions.mark_occupied(session.license_plate)

    def complete(self, license_plate: str) -> ClientSession:
        session = self._require_session(license_plate)
        # Ending the session first makes an in-flight commit for it fail.
        self._sessions.end_session(session.license_plate, session_id=session.id)
        self._machine.complete(session.space_id, session.license_plate)
        return session

    def cancel(self, license_plate: str) -> ClientSession:
        """Abandon a session; an in-flight payment check will then fail safely."""
        session = self._require_session(license_plate)
        space = self._machine.get_space(session.space_id)
        if space.status is SpaceStatus.OCCUPIED and space.license_plate == session.license_plate:
            raise ValidationError("only reserved spaces can be cancelled")
        self._sessions.end_session(session.license_plate, session_id=session.id)
        self._machine.cancel(session.space_id, session.license_plate, missing_ok=True)
        return session

    async def check_payment(
        self,
        space_id: SpaceId,
        duration_hours: int,
        payment_ref: str,
    ) -> PaymentStatus:
        if self._verifier is None or not self._recipient:
            raise ValidationError("Payment verification is not configured.")
        amount = self._machine.quote(space_id, duration_hours)
        return await self._verifier.check_status(payment_ref, amount, self._recipient)

    def _require_session(self, license_plate: str) -> ClientSession:
        session = self._sessions.lookup(license_plate)
        if session is None:
            raise ValidationError("no active session")
        return session
