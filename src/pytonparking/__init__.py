"""pyTonParking package."""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

from .address import EMPTY_ADDRESS, CanonicalAddress, addresses_match, normalize_address
from .exceptions import (
    ConcurrencyConflictError,
    ConfigError,
    DuplicateSessionError,
    IndexerError,
    IndexerUnavailableError,
    PaymentPendingError,
    PaymentRejectedError,
    PyTonParkingError,
    TransactionNotFoundError,
    ValidationError,
)
from .indexer import IndexerClient
from .models import (
    ClientSession,
    ParkingSpace,
    PaymentStatus,
    SpaceSnapshot,
    SpaceStatus,
    VerifiedPayment,
    Zone,
)
from .reservation import ReservationStateMachine
from .resolver import ReferenceKind, TransactionResolver, classify_reference
from .service import ParkingService
from .session import SessionRegistry
from .sweeper import ExpirySweeper
from .verifier import PaymentVerifier

try:
    __version__ = version("pytonparking")
except PackageNotFoundError:  # pragma: no cover - not installed
    __version__ = "0.0.0"

__all__ = [
    "EMPTY_ADDRESS",
    "CanonicalAddress",
    "ClientSession",
    "ConcurrencyConflictError",
    "ConfigError",
    "DuplicateSessionError",
    "ExpirySweeper",
    "IndexerClient",
    "IndexerError",
    "IndexerUnavailableError",
    "ParkingService",
    "ParkingSpace",
    "PaymentPendingError",
    "PaymentRejectedError",
    "PaymentStatus",
    "PaymentVerifier",
    "PyTonParkingError",
    "ReferenceKind",
    "ReservationStateMachine",
    "SessionRegistry",
    "SpaceSnapshot",
    "SpaceStatus",
    "TransactionNotFoundError",
    "TransactionResolver",
    "ValidationError",
    "VerifiedPayment",
    "Zone",
    "addresses_match",
    "classify_reference",
    "normalize_address",
    "__version__",
]
