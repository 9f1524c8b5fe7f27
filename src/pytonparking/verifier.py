"""Payment verification against the blockchain indexer."""

from __future__ import annotations

import logging
from collections.abc import Collection

from .address import EMPTY_ADDRESS, normalize_address, to_user_friendly
from .const import DEFAULT_TOLERANCE_NANO
from .exceptions import (
    IndexerError,
    IndexerUnavailableError,
    PaymentPendingError,
    PaymentRejectedError,
    TransactionNotFoundError,
    ValidationError,
)
from .models import PaymentState, PaymentStatus, ResolvedTransaction, VerifiedPayment, WalletBalance
from .resolver import TransactionResolver
from .util import from_unix_timestamp, nano_to_ton, parse_nano

_LOGGER = logging.getLogger(__name__)


class PaymentVerifier:
    """Decide whether a payment reference proves an expected transfer.

    The verifier is stateless. A successful verification says nothing about
    whether the same transaction already paid for something else; callers
    that unlock resources with it must track consumed hashes themselves.
    """

    def __init__(
        self,
        resolver: TransactionResolver,
        *,
        tolerance_nano: int = DEFAULT_TOLERANCE_NANO,
    ) -> None:
        if resolver is None:
            raise ValidationError("Resolver is required.")
        if isinstance(tolerance_nano, bool) or not isinstance(tolerance_nano, int):
            raise ValidationError("tolerance_nano must be an integer.")
        if tolerance_nano < 0:
            raise ValidationError("tolerance_nano must not be negative.")
        self._resolver = resolver
        self._tolerance_nano = tolerance_nano

    @property
    def tolerance_nano(self) -> int:
        return self._tolerance_nano

    async def verify(
        self,
        ref: str,
        expected_amount: int,
        expected_recipient: str,
        expected_sender: str | None = None,
        *,
        exclude: Collection[str] = (),
    ) -> VerifiedPayment:
        """Return the verified payment or raise a pending/rejected error."""
        if isinstance(expected_amount, bool) or not isinstance(expected_amount, int):
            raise ValidationError("expected_amount must be an integer amount of nanoTON.")
        if not expected_recipient:
            raise ValidationError("expected_recipient is required.")
        try:
            transaction = await self._resolver.resolve(
                ref,
                recipient=expected_recipient,
                expected_amount=expected_amount,
                exclude=exclude,
            )
        except IndexerUnavailableError as exc:
            _LOGGER.warning("Payment verification deferred: indexer unavailable")
            raise PaymentPendingError("indexer unavailable") from exc
        except TransactionNotFoundError as exc:
            _LOGGER.debug("Payment verification deferred: not yet indexed")
            raise PaymentPendingError("not yet indexed") from exc
        return self._check(transaction, expected_amount, expected_recipient, expected_sender)

    def _check(
        self,
        transaction: ResolvedTransaction,
        expected_amount: int,
        expected_recipient: str,
        expected_sender: str | None,
    ) -> VerifiedPayment:
        if not transaction.success:
            raise self._reject(transaction, "transaction failed")
        if transaction.is_outgoing:
            raise self._reject(transaction, "wrong direction")
        in_msg = transaction.in_msg
        if in_msg is None:
            raise self._reject(transaction, "malformed transaction")
        recipient = normalize_address(in_msg.destination)
        if recipient != normalize_address(expected_recipient):
            raise self._reject(transaction, "wrong recipient")
        if abs(in_msg.value - expected_amount) > self._tolerance_nano:
            _LOGGER.warning(
                "Payment %s rejected: amount mismatch expected=%s actual=%s",
                transaction.hash,
                expected_amount,
                in_msg.value,
            )
            raise PaymentRejectedError(
                "amount mismatch",
                expected=expected_amount,
                actual=in_msg.value,
            )
        sender = normalize_address(in_msg.source) if in_msg.source else EMPTY_ADDRESS
        if expected_sender is not None and sender != normalize_address(expected_sender):
            raise self._reject(transaction, "sender mismatch")
        _LOGGER.info("Payment %s verified amount=%s", transaction.hash, in_msg.value)
        return VerifiedPayment(
            transaction_hash=transaction.hash,
            amount=in_msg.value,
            sender=sender,
            recipient=recipient,
            timestamp=from_unix_timestamp(transaction.utime),
        )

    def _reject(self, transaction: ResolvedTransaction, reason: str) -> PaymentRejectedError:
        _LOGGER.warning("Payment %s rejected: %s", transaction.hash or "-", reason)
        return PaymentRejectedError(reason)

    async def check_status(
        self,
        ref: str,
        expected_amount: int,
        expected_recipient: str,
    ) -> PaymentStatus:
        """Check a payment without raising, for client-side polling."""
        try:
            payment = await self.verify(ref, expected_amount, expected_recipient)
        except PaymentPendingError as exc:
            return PaymentStatus(state=PaymentState.PENDING, reason=exc.reason)
        except PaymentRejectedError as exc:
            return PaymentStatus(state=PaymentState.ERROR, reason=exc.reason)
        return PaymentStatus(state=PaymentState.CONFIRMED, payment=payment)

    async def wallet_balance(self, address: str) -> WalletBalance:
        canonical = normalize_address(address)
        if canonical.is_empty:
            raise ValidationError("Wallet address is required.")
        query = to_user_friendly(canonical) if canonical.is_decoded else address.strip()
        data = await self._resolver.indexer.get_account(query)
        raw_balance = data.get("balance")
        if raw_balance is None:
            result = data.get("result")
            if isinstance(result, dict):
                raw_balance = result.get("balance")
        if raw_balance is None:
            raise IndexerError("Balance not found in indexer response.")
        balance = parse_nano(raw_balance)
        return WalletBalance(
            address=address.strip(),
            balance_nano=balance,
            balance_ton=nano_to_ton(balance),
        )
