from __future__ import annotations

import asyncio
from collections.abc import Collection
from datetime import timedelta
from decimal import Decimal

import pytest
from _fakes import (
    NOW,
    OTHER_HASH,
    RECIPIENT,
    SENDER,
    TX_HASH,
    FakeIndexer,
    make_spaces,
    make_tx,
    make_zones,
)

from pytonparking.address import normalize_address
from pytonparking.exceptions import (
    ConcurrencyConflictError,
    ConfigError,
    IndexerUnavailableError,
    PaymentPendingError,
    PaymentRejectedError,
    ValidationError,
)
from pytonparking.models import ParkingSpace, SpaceStatus, VerifiedPayment, Zone
from pytonparking.reservation import ReservationStateMachine
from pytonparking.resolver import TransactionResolver
from pytonparking.session import SessionRegistry
from pytonparking.verifier import PaymentVerifier

FIVE_TON = 5_000_000_000


def _machine(
    indexer: FakeIndexer | None = None,
    *,
    tolerance_nano: int = 1_000_000,
    sessions: SessionRegistry | None = None,
    consumed_hashes: Collection[str] = (),
) -> ReservationStateMachine:
    resolver = TransactionResolver(indexer or FakeIndexer(), tolerance_nano=tolerance_nano)  # type: ignore[arg-type]
    verifier = PaymentVerifier(resolver, tolerance_nano=tolerance_nano)
    return ReservationStateMachine(
        make_spaces(),
        make_zones(),
        verifier=verifier,
        recipient=RECIPIENT,
        sessions=sessions,
        consumed_hashes=consumed_hashes,
        clock=lambda: NOW,
    )


class _StaticVerifier:
    """Verifier returning the same payment for any reference."""

    def __init__(self, tx_hash: str = TX_HASH) -> None:
        self.payment = VerifiedPayment(
            transaction_hash=tx_hash,
            amount=FIVE_TON,
            sender=normalize_address(SENDER),
            recipient=normalize_address(RECIPIENT),
            timestamp=NOW,
        )
        self.calls = 0

    async def verify(self, ref, expected_amount, expected_recipient, expected_sender=None, *, exclude=()):
        self.calls += 1
        return self.payment


def _assert_vacant(machine: ReservationStateMachine, space_id: int) -> None:
    space = machine.get_space(space_id)
    assert space.status is SpaceStatus.VACANT
    assert space.license_plate is None
    assert space.reservation_time is None
    assert space.reservation_deadline is None
    assert space.occupied_since is None
    assert space.payment_tx_hash is None


@pytest.mark.asyncio
async def test_free_zone_reservation() -> None:
    machine = _machine()
    space = await machine.reserve(1, "ab-12-cd", 2)
    assert space.status is SpaceStatus.RESERVED
    assert space.license_plate == "AB12CD"
    assert space.reservation_time == NOW
    assert space.reservation_deadline == NOW + timedelta(hours=2)
    assert space.payment_tx_hash is None


@pytest.mark.asyncio
async def test_reserve_uses_explicit_now() -> None:
    machine = _machine()
    later = NOW + timedelta(minutes=5)
    space = await machine.reserve(1, "AB12CD", 1, now=later)
    assert space.reservation_deadline == later + timedelta(hours=1)


@pytest.mark.asyncio
async def test_reserve_accepts_string_space_id() -> None:
    machine = _machine()
    space = await machine.reserve("2", "AB12CD", 1)
    assert space.id == 2


@pytest.mark.asyncio
async def test_reserve_non_vacant_rejected_without_mutation() -> None:
    machine = _machine()
    await machine.reserve(1, "AB12CD", 2)
    before = machine.get_space(1)
    with pytest.raises(ValidationError) as exc_info:
        await machine.reserve(1, "XY99ZZ", 1)
    assert str(exc_info.value) == "not vacant"
    assert machine.get_space(1) == before

    machine.mark_occupied(1, "AB12CD")
    occupied = machine.get_space(1)
    with pytest.raises(ValidationError):
        await machine.reserve(1, "AB12CD", 1)
    assert machine.get_space(1) == occupied


@pytest.mark.asyncio
@pytest.mark.parametrize("duration", [0, -1, 5])
async def test_reserve_duration_bounds(duration: int) -> None:
    machine = _machine()
    with pytest.raises(ValidationError):
        await machine.reserve(1, "AB12CD", duration)
    _assert_vacant(machine, 1)


@pytest.mark.asyncio
async def test_duration_exceeding_zone_maximum_message() -> None:
    machine = _machine()
    with pytest.raises(ValidationError) as exc_info:
        await machine.reserve(1, "AB12CD", 5)
    assert str(exc_info.value) == "duration exceeds zone maximum"
    assert "4 hour(s)" in (exc_info.value.detail or "")


@pytest.mark.asyncio
async def test_reserve_unknown_space() -> None:
    with pytest.raises(ValidationError):
        await _machine().reserve(99, "AB12CD", 1)


@pytest.mark.asyncio
async def test_premium_reservation_verified() -> None:
    indexer = FakeIndexer({TX_HASH: make_tx(value=4_999_000_000)})
    machine = _machine(indexer, tolerance_nano=10_000_000)
    space = await machine.reserve(10, "AB12CD", 1, TX_HASH)
    assert space.status is SpaceStatus.RESERVED
    assert space.payment_tx_hash == TX_HASH
    assert machine.is_payment_consumed(TX_HASH.upper())


@pytest.mark.asyncio
async def test_premium_amount_mismatch_leaves_space_vacant() -> None:
    indexer = FakeIndexer({TX_HASH: make_tx(value=4_500_000_000)})
    machine = _machine(indexer, tolerance_nano=10_000_000)
    with pytest.raises(PaymentRejectedError) as exc_info:
        await machine.reserve(10, "AB12CD", 1, TX_HASH)
    assert exc_info.value.reason == "amount mismatch"
    _assert_vacant(machine, 10)
    assert not machine.is_payment_consumed(TX_HASH)


@pytest.mark.asyncio
async def test_premium_expected_amount_scales_with_duration() -> None:
    indexer = FakeIndexer({TX_HASH: make_tx(value=15_000_000_000)})
    machine = _machine(indexer)
    assert machine.quote(10, 3) == 15_000_000_000
    space = await machine.reserve(10, "AB12CD", 3, TX_HASH)
    assert space.reservation_deadline == NOW + timedelta(hours=3)


@pytest.mark.asyncio
async def test_premium_requires_payment_reference() -> None:
    machine = _machine()
    with pytest.raises(ValidationError):
        await machine.reserve(10, "AB12CD", 1)
    _assert_vacant(machine, 10)


@pytest.mark.asyncio
async def test_premium_pending_payment() -> None:
    machine = _machine(FakeIndexer())
    with pytest.raises(PaymentPendingError) as exc_info:
        await machine.reserve(10, "AB12CD", 1, TX_HASH)
    assert exc_info.value.reason == "payment not yet confirmed"
    assert exc_info.value.detail == "not yet indexed"
    _assert_vacant(machine, 10)


@pytest.mark.asyncio
async def test_premium_indexer_down_is_pending() -> None:
    indexer = FakeIndexer(errors={"get_transaction": IndexerUnavailableError("down")})
    machine = _machine(indexer)
    with pytest.raises(PaymentPendingError) as exc_info:
        await machine.reserve(10, "AB12CD", 1, TX_HASH)
    assert exc_info.value.detail == "indexer unavailable"
    _assert_vacant(machine, 10)


@pytest.mark.asyncio
async def test_payment_hash_cannot_be_replayed() -> None:
    indexer = FakeIndexer({TX_HASH: make_tx()})
    machine = _machine(indexer)
    await machine.reserve(10, "AB12CD", 1, TX_HASH)
    calls = len(indexer.calls)
    with pytest.raises(PaymentRejectedError) as exc_info:
        await machine.reserve(11, "XY99ZZ", 1, TX_HASH)
    assert exc_info.value.reason == "payment already used"
    assert len(indexer.calls) == calls
    _assert_vacant(machine, 11)


@pytest.mark.asyncio
async def test_payment_stays_consumed_after_completion() -> None:
    machine = _machine(FakeIndexer({TX_HASH: make_tx()}))
    await machine.reserve(10, "AB12CD", 1, TX_HASH)
    machine.complete(10)
    with pytest.raises(PaymentRejectedError):
        await machine.reserve(10, "AB12CD", 1, TX_HASH)


@pytest.mark.asyncio
async def test_seeded_consumed_hashes() -> None:
    machine = _machine(FakeIndexer({TX_HASH: make_tx()}), consumed_hashes=[TX_HASH.upper()])
    with pytest.raises(PaymentRejectedError):
        await machine.reserve(10, "AB12CD", 1, TX_HASH)


@pytest.mark.asyncio
async def test_hashes_of_restored_spaces_are_consumed() -> None:
    spaces = [space for space in make_spaces() if space.id != 10]
    spaces.append(
        ParkingSpace(
            id=10,
            zone_id=2,
            status=SpaceStatus.RESERVED,
            license_plate="XY99ZZ",
            reservation_time=NOW,
            reservation_deadline=NOW + timedelta(hours=1),
            payment_tx_hash=TX_HASH.upper(),
        )
    )
    indexer = FakeIndexer({TX_HASH: make_tx()})
    machine = ReservationStateMachine(
        spaces,
        make_zones(),
        verifier=PaymentVerifier(TransactionResolver(indexer)),  # type: ignore[arg-type]
        recipient=RECIPIENT,
        clock=lambda: NOW,
    )
    assert machine.consumed_payments() == frozenset({TX_HASH})
    with pytest.raises(PaymentRejectedError) as exc_info:
        await machine.reserve(11, "AB12CD", 1, TX_HASH)
    assert exc_info.value.reason == "payment already used"
    _assert_vacant(machine, 11)


@pytest.mark.asyncio
async def test_replay_through_resolved_hash_is_rejected() -> None:
    verifier = _StaticVerifier()
    machine = ReservationStateMachine(
        make_spaces(),
        make_zones(),
        verifier=verifier,  # type: ignore[arg-type]
        recipient=RECIPIENT,
        clock=lambda: NOW,
    )
    await machine.reserve(10, "AB12CD", 1, "blob-one-" + "A" * 80)
    with pytest.raises(PaymentRejectedError) as exc_info:
        await machine.reserve(11, "XY99ZZ", 1, "blob-two-" + "A" * 80)
    assert exc_info.value.reason == "payment already used"
    assert verifier.calls == 2
    _assert_vacant(machine, 11)


@pytest.mark.asyncio
async def test_concurrent_reservations_of_one_space() -> None:
    machine = _machine()
    results = await asyncio.gather(
        *(machine.reserve(1, f"PLATE{index}", 1) for index in range(8)),
        return_exceptions=True,
    )
    successes = [result for result in results if not isinstance(result, Exception)]
    failures = [result for result in results if isinstance(result, Exception)]
    assert len(successes) == 1
    assert all(isinstance(failure, ValidationError) for failure in failures)


@pytest.mark.asyncio
async def test_conflict_after_verification_releases_payment() -> None:
    started = asyncio.Event()
    release = asyncio.Event()

    class _SlowVerifier(_StaticVerifier):
        async def verify(self, *args, **kwargs):
            started.set()
            await release.wait()
            return self.payment

    machine = ReservationStateMachine(
        make_spaces(),
        make_zones(),
        verifier=_SlowVerifier(),  # type: ignore[arg-type]
        recipient=RECIPIENT,
        clock=lambda: NOW,
    )
    task = asyncio.create_task(machine.reserve(10, "AB12CD", 1, TX_HASH))
    await started.wait()
    machine._spaces[10].status = SpaceStatus.RESERVED
    machine._spaces[10].license_plate = "XY99ZZ"
    machine._spaces[10].reservation_deadline = NOW + timedelta(hours=1)
    release.set()
    with pytest.raises(ConcurrencyConflictError) as exc_info:
        await task
    assert str(exc_info.value) == "not vacant"
    assert not machine.is_payment_consumed(TX_HASH)


@pytest.mark.asyncio
async def test_stale_session_cannot_commit() -> None:
    sessions = SessionRegistry()
    machine = _machine(FakeIndexer({TX_HASH: make_tx()}), sessions=sessions)
    session = sessions.begin_session("AB12CD", 10)
    sessions.end_session("AB12CD")
    with pytest.raises(ConcurrencyConflictError) as exc_info:
        await machine.reserve(10, "AB12CD", 1, TX_HASH, session_id=session.id)
    assert str(exc_info.value) == "space no longer available for this reservation"
    _assert_vacant(machine, 10)
    assert not machine.is_payment_consumed(TX_HASH)


@pytest.mark.asyncio
async def test_premium_zone_requires_verifier() -> None:
    machine = ReservationStateMachine(make_spaces(), make_zones(), clock=lambda: NOW)
    with pytest.raises(ConfigError):
        await machine.reserve(10, "AB12CD", 1, TX_HASH)
    await machine.reserve(1, "AB12CD", 1)


@pytest.mark.asyncio
async def test_mark_occupied() -> None:
    machine = _machine()
    await machine.reserve(1, "AB12CD", 1)
    later = NOW + timedelta(minutes=20)
    space = machine.mark_occupied(1, "ab 12 cd", now=later)
    assert space.status is SpaceStatus.OCCUPIED
    assert space.occupied_since == later
    assert space.license_plate == "AB12CD"


@pytest.mark.asyncio
async def test_mark_occupied_preconditions() -> None:
    machine = _machine()
    with pytest.raises(ValidationError):
        machine.mark_occupied(1, "AB12CD")
    await machine.reserve(1, "AB12CD", 1)
    with pytest.raises(ValidationError):
        machine.mark_occupied(1, "XY99ZZ")
    assert machine.get_space(1).status is SpaceStatus.RESERVED


@pytest.mark.asyncio
async def test_complete_is_idempotent() -> None:
    machine = _machine()
    await machine.reserve(1, "AB12CD", 1)
    machine.mark_occupied(1, "AB12CD")
    assert machine.complete(1) == "AB12CD"
    _assert_vacant(machine, 1)
    assert machine.complete(1) is None
    _assert_vacant(machine, 1)


@pytest.mark.asyncio
async def test_complete_from_reserved() -> None:
    machine = _machine()
    await machine.reserve(1, "AB12CD", 1)
    assert machine.complete(1) == "AB12CD"
    _assert_vacant(machine, 1)


@pytest.mark.asyncio
async def test_cancel_only_from_reserved() -> None:
    machine = _machine()
    with pytest.raises(ValidationError):
        machine.cancel(1)
    await machine.reserve(1, "AB12CD", 1)
    with pytest.raises(ValidationError):
        machine.cancel(1, "XY99ZZ")
    assert machine.cancel(1, "AB12CD") == "AB12CD"
    _assert_vacant(machine, 1)

    await machine.reserve(1, "AB12CD", 1)
    machine.mark_occupied(1, "AB12CD")
    with pytest.raises(ValidationError):
        machine.cancel(1)
    assert machine.get_space(1).status is SpaceStatus.OCCUPIED


@pytest.mark.asyncio
async def test_complete_leaves_space_held_by_other_plate() -> None:
    machine = _machine()
    await machine.reserve(1, "XY99ZZ", 1)
    assert machine.complete(1, "AB12CD") is None
    assert machine.get_space(1).license_plate == "XY99ZZ"
    assert machine.complete(1, "xy-99-zz") == "XY99ZZ"
    _assert_vacant(machine, 1)


@pytest.mark.asyncio
async def test_cancel_missing_ok() -> None:
    machine = _machine()
    assert machine.cancel(1, "AB12CD", missing_ok=True) is None
    await machine.reserve(1, "XY99ZZ", 1)
    assert machine.cancel(1, "AB12CD", missing_ok=True) is None
    assert machine.get_space(1).status is SpaceStatus.RESERVED
    machine.mark_occupied(1, "XY99ZZ")
    assert machine.cancel(1, "XY99ZZ", missing_ok=True) is None
    assert machine.get_space(1).status is SpaceStatus.OCCUPIED


@pytest.mark.asyncio
async def test_expire_after_deadline() -> None:
    machine = _machine()
    space = await machine.reserve(1, "AB12CD", 1)
    deadline = space.reservation_deadline
    assert deadline is not None
    assert machine.expire(1, deadline) is None
    assert machine.get_space(1).status is SpaceStatus.RESERVED
    assert machine.expire(1, deadline + timedelta(seconds=1)) == "AB12CD"
    _assert_vacant(machine, 1)


@pytest.mark.asyncio
async def test_expire_never_touches_other_states() -> None:
    machine = _machine()
    far_future = NOW + timedelta(days=30)
    assert machine.expire(1, far_future) is None
    _assert_vacant(machine, 1)

    await machine.reserve(1, "AB12CD", 1)
    machine.mark_occupied(1, "AB12CD")
    assert machine.expire(1, far_future) is None
    assert machine.get_space(1).status is SpaceStatus.OCCUPIED


@pytest.mark.asyncio
async def test_expired_space_ids() -> None:
    machine = _machine()
    await machine.reserve(1, "AB12CD", 1)
    await machine.reserve(2, "XY99ZZ", 3)
    assert machine.expired_space_ids(NOW + timedelta(hours=1)) == []
    assert machine.expired_space_ids(NOW + timedelta(hours=2)) == [1]
    assert sorted(machine.expired_space_ids(NOW + timedelta(hours=4))) == [1, 2]


@pytest.mark.asyncio
async def test_vacancy_invariant_holds_for_all_spaces() -> None:
    machine = _machine(FakeIndexer({TX_HASH: make_tx()}))
    await machine.reserve(1, "AB12CD", 1)
    await machine.reserve(10, "XY99ZZ", 1, TX_HASH)
    machine.mark_occupied(10, "XY99ZZ")
    for space in machine.list_spaces():
        assert (space.status is SpaceStatus.VACANT) == (space.license_plate is None)


def test_quote() -> None:
    machine = _machine()
    assert machine.quote(1, 2) == 0
    assert machine.quote(10, 2) == 10_000_000_000
    with pytest.raises(ValidationError):
        machine.quote(10, 5)


@pytest.mark.asyncio
async def test_validate_deep_link() -> None:
    machine = _machine()
    assert machine.validate_deep_link(10, "1").id == 10
    assert machine.validate_deep_link("1", premium=True).id == 1
    await machine.reserve(1, "AB12CD", 1)
    with pytest.raises(ValidationError):
        machine.validate_deep_link(1)
    with pytest.raises(ValidationError):
        machine.validate_deep_link(404)
    with pytest.raises(ValidationError):
        machine.validate_deep_link(2, premium="maybe")


def test_constructor_rejects_bad_spaces() -> None:
    zones = make_zones()
    with pytest.raises(ConfigError):
        ReservationStateMachine([ParkingSpace(id=1, zone_id=1), ParkingSpace(id=1, zone_id=1)], zones)
    with pytest.raises(ConfigError):
        ReservationStateMachine([ParkingSpace(id=1, zone_id=7)], zones)


@pytest.mark.asyncio
async def test_fractional_hourly_rate() -> None:
    zones = {
        3: Zone(id=3, name="Harbour", is_premium=True, hourly_rate=Decimal("0.35"), max_duration_hours=2)
    }
    indexer = FakeIndexer({OTHER_HASH: make_tx(OTHER_HASH, value=700_000_000)})
    resolver = TransactionResolver(indexer)  # type: ignore[arg-type]
    machine = ReservationStateMachine(
        [ParkingSpace(id=5, zone_id=3)],
        zones,
        verifier=PaymentVerifier(resolver),
        recipient=RECIPIENT,
        clock=lambda: NOW,
    )
    space = await machine.reserve(5, "AB12CD", 2, OTHER_HASH)
    assert space.payment_tx_hash == OTHER_HASH
