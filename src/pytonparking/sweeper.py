"""Periodic reclamation of reservations whose hold window elapsed."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from datetime import datetime

from .const import DEFAULT_SWEEP_INTERVAL
from .exceptions import ValidationError
from .models import SpaceId
from .reservation import ReservationStateMachine
from .session import SessionRegistry
from .util import ensure_utc, mask_license_plate, utcnow

_LOGGER = logging.getLogger(__name__)


class ExpirySweeper:
    """Expire overdue reservations on a fixed interval.

    Runs independently of client requests. A failure on one space is logged
    and the remaining spaces are still processed; a failing tick is logged and
    retried on the next one.
    """

    def __init__(
        self,
        machine: ReservationStateMachine,
        sessions: SessionRegistry,
        *,
        interval: float = DEFAULT_SWEEP_INTERVAL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if interval <= 0:
            raise ValidationError("interval must be positive.")
        self._machine = machine
        self._sessions = sessions
        self._interval = interval
        self._clock = clock
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def __aenter__(self) -> ExpirySweeper:
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    def run_once(self, now: datetime | None = None) -> list[SpaceId]:
        """Expire every overdue reservation and end its session."""
        current = ensure_utc(now) if now is not None else ensure_utc(self._clock())
        expired: list[SpaceId] = []
        for space_id in self._machine.expired_space_ids(current):
            try:
                plate = self._machine.expire(space_id, current)
                if plate is None:
                    continue
                self._sessions.end_session(plate, space_id=space_id)
            except Exception:
                _LOGGER.exception("Failed to expire reservation of space %s", space_id)
                continue
            _LOGGER.debug("Swept space %s held by %s", space_id, mask_license_plate(plate))
            expired.append(space_id)
        if expired:
            _LOGGER.info("Expired %s reservation(s)", len(expired))
        return expired

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run(self) -> None:
        _LOGGER.debug("Expiry sweeper started interval=%s", self._interval)
        while True:
            try:
                self.run_once()
            except Exception:
                _LOGGER.exception("Expiry sweep failed, retrying next tick")
            await asyncio.sleep(self._interval)
