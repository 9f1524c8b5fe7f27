"""Registry of active client sessions, one per license plate."""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import replace
from datetime import datetime

from .exceptions import DuplicateSessionError, ValidationError
from .models import ClientSession, SessionStatus, SpaceId
from .util import ensure_utc, mask_license_plate, normalize_license_plate, utcnow

_LOGGER = logging.getLogger(__name__)


class SessionRegistry:
    """Thread-safe ``plate -> ClientSession`` map.

    ``begin_session`` is the only way in and performs the existence check and
    the insert under one lock, so two concurrent requests for the same plate
    cannot both be admitted.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, ClientSession] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def begin_session(
        self,
        license_plate: str,
        space_id: SpaceId,
        *,
        now: datetime | None = None,
    ) -> ClientSession:
        plate = normalize_license_plate(license_plate)
        started = ensure_utc(now) if now is not None else utcnow()
        with self._lock:
            existing = self._sessions.get(plate)
            if existing is not None:
                raise DuplicateSessionError(
                    f"already has active session at {existing.space_id}",
                    user_message="You already have an active reservation.",
                )
            session = ClientSession(
                id=uuid.uuid4().hex,
                license_plate=plate,
                space_id=space_id,
                status=SessionStatus.RESERVED,
                start_time=started,
                reservation_time=started,
            )
            self._sessions[plate] = session
        _LOGGER.debug("Session %s started for %s", session.id, mask_license_plate(plate))
        return session

    def end_session(
        self,
        license_plate: str,
        *,
        session_id: str | None = None,
        space_id: SpaceId | None = None,
    ) -> ClientSession | None:
        """Remove the plate's session; the optional guards must match."""
        plate = normalize_license_plate(license_plate)
        with self._lock:
            session = self._sessions.get(plate)
            if session is None:
                return None
            if session_id is not None and session.id != session_id:
                return None
            if space_id is not None and session.space_id != space_id:
                return None
            del self._sessions[plate]
        _LOGGER.debug("Session %s ended for %s", session.id, mask_license_plate(plate))
        return session

    def lookup(self, license_plate: str) -> ClientSession | None:
        plate = normalize_license_plate(license_plate)
        with self._lock:
            return self._sessions.get(plate)

    def is_active(self, session_id: str) -> bool:
        with self._lock:
            return any(session.id == session_id for session in self._sessions.values())

    def mark_occupied(
        self,
        license_plate: str,
        *,
        now: datetime | None = None,
    ) -> ClientSession:
        plate = normalize_license_plate(license_plate)
        started = ensure_utc(now) if now is not None else utcnow()
        with self._lock:
            session = self._sessions.get(plate)
            if session is None:
                raise ValidationError("no active session")
            updated = replace(session, status=SessionStatus.OCCUPIED, start_time=started)
            self._sessions[plate] = updated
        return updated

    def sessions(self) -> list[ClientSession]:
        with self._lock:
            return list(self._sessions.values())
