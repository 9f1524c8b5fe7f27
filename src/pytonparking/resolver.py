"""Resolution of opaque payment references to indexed transactions."""

from __future__ import annotations

import logging
import re
from collections.abc import Collection, Mapping
from dataclasses import replace
from enum import StrEnum
from typing import Any

from .address import normalize_address
from .const import DEFAULT_SEARCH_LIMIT, DEFAULT_TOLERANCE_NANO
from .exceptions import (
    IndexerError,
    IndexerUnavailableError,
    TransactionNotFoundError,
    ValidationError,
)
from .indexer import IndexerClient
from .models import InboundMessage, ResolvedTransaction
from .util import parse_nano

_LOGGER = logging.getLogger(__name__)

_HASH_RE = re.compile(r"^(?:0x)?([0-9a-fA-F]{64})$")
_MESSAGE_RE = re.compile(r"^[A-Za-z0-9+/_-]+={0,2}$")
_HASH_LENGTH = 64


class ReferenceKind(StrEnum):
    HASH = "hash"
    MESSAGE = "message"
    INVALID = "invalid"


def classify_reference(ref: Any) -> ReferenceKind:
    """Tell a compact transaction hash apart from a serialized message blob."""
    if not isinstance(ref, str):
        return ReferenceKind.INVALID
    value = ref.strip()
    if _HASH_RE.match(value):
        return ReferenceKind.HASH
    if len(value) > _HASH_LENGTH and _MESSAGE_RE.match(value):
        return ReferenceKind.MESSAGE
    return ReferenceKind.INVALID


def normalize_hash(tx_hash: str) -> str:
    match = _HASH_RE.match(tx_hash.strip())
    if match is None:
        raise ValidationError("Transaction hash is not a 64 character hex string.")
    return match.group(1).lower()


class TransactionResolver:
    """Resolve a payment reference via the indexer.

    A reference is either a transaction hash, looked up directly, or a
    serialized message, decoded to a hash through the indexer. When decoding
    yields nothing usable, the newest incoming transactions of the recipient
    are searched for one whose value is within ``tolerance_nano`` of the
    expected amount. There is no retry here: a miss raises
    ``TransactionNotFoundError`` and the caller decides when to ask again.
    """

    def __init__(
        self,
        indexer: IndexerClient,
        *,
        search_limit: int = DEFAULT_SEARCH_LIMIT,
        tolerance_nano: int = DEFAULT_TOLERANCE_NANO,
    ) -> None:
        if indexer is None:
            raise ValidationError("Indexer is required.")
        self._indexer = indexer
        self._search_limit = max(1, search_limit)
        self._tolerance_nano = max(0, tolerance_nano)

    @property
    def indexer(self) -> IndexerClient:
        return self._indexer

    async def resolve(
        self,
        ref: str,
        *,
        recipient: str | None = None,
        expected_amount: int | None = None,
        exclude: Collection[str] = (),
    ) -> ResolvedTransaction:
        kind = classify_reference(ref)
        _LOGGER.debug("Resolving payment reference kind=%s", kind)
        if kind is ReferenceKind.HASH:
            return await self._resolve_hash(normalize_hash(ref))
        if kind is ReferenceKind.MESSAGE:
            return await self._resolve_message(
                ref.strip(),
                recipient=recipient,
                expected_amount=expected_amount,
                exclude=exclude,
            )
        raise TransactionNotFoundError("Payment reference is malformed.")

    async def _resolve_hash(self, tx_hash: str) -> ResolvedTransaction:
        try:
            data = await self._indexer.get_transaction(tx_hash)
        except TransactionNotFoundError:
            _LOGGER.debug("Transaction %s is not indexed", tx_hash)
            raise
        transaction = map_transaction(data)
        if transaction is None:
            raise TransactionNotFoundError("Indexer response did not include a transaction.")
        if not transaction.hash:
            return replace(transaction, hash=tx_hash)
        return transaction

    async def _resolve_message(
        self,
        blob: str,
        *,
        recipient: str | None,
        expected_amount: int | None,
        exclude: Collection[str],
    ) -> ResolvedTransaction:
        tx_hash: str | None = None
        try:
            decoded = await self._indexer.decode_message(blob)
        except IndexerUnavailableError:
            _LOGGER.warning("Message decode failed, indexer unavailable")
            decoded = None
        except IndexerError as exc:
            _LOGGER.debug("Message decode rejected: %s", exc)
            decoded = None
        if decoded is not None and classify_reference(decoded) is ReferenceKind.HASH:
            tx_hash = normalize_hash(decoded)
        if tx_hash is None:
            tx_hash = await self._search_incoming(
                recipient=recipient,
                expected_amount=expected_amount,
                exclude=exclude,
            )
        return await self._resolve_hash(tx_hash)

    async def _search_incoming(
        self,
        *,
        recipient: str | None,
        expected_amount: int | None,
        exclude: Collection[str],
    ) -> str:
        if not recipient or expected_amount is None:
            raise TransactionNotFoundError("Message could not be decoded to a transaction.")
        try:
            entries = await self._indexer.list_transactions(recipient, self._search_limit)
        except TransactionNotFoundError as exc:
            raise TransactionNotFoundError("Recipient has no indexed transactions.") from exc
        expected_recipient = normalize_address(recipient)
        excluded = {item.lower() for item in exclude}
        best: ResolvedTransaction | None = None
        for entry in entries[: self._search_limit]:
            transaction = map_transaction(entry)
            if transaction is None or transaction.in_msg is None or transaction.is_outgoing:
                continue
            if not transaction.hash or transaction.hash.lower() in excluded:
                continue
            destination = transaction.in_msg.destination
            if destination and normalize_address(destination) != expected_recipient:
                continue
            if abs(transaction.in_msg.value - expected_amount) > self._tolerance_nano:
                continue
            if best is None or (transaction.utime or 0) > (best.utime or 0):
                best = transaction
        if best is None:
            raise TransactionNotFoundError("No incoming transaction matches the expected amount.")
        _LOGGER.debug("Fallback search matched transaction %s", best.hash)
        if classify_reference(best.hash) is ReferenceKind.HASH:
            return normalize_hash(best.hash)
        return best.hash


def map_transaction(data: Mapping[str, Any]) -> ResolvedTransaction | None:
    """Map an indexer transaction payload (tonapi or toncenter shape)."""
    if not isinstance(data, Mapping):
        return None
    tx = data
    wrapped = data.get("transaction")
    if isinstance(wrapped, Mapping):
        tx = wrapped
    else:
        result = data.get("result")
        if isinstance(result, list):
            if not result or not isinstance(result[0], Mapping):
                return None
            tx = result[0]
    if not tx:
        return None
    in_msg_raw = tx.get("in_msg")
    if in_msg_raw is None:
        in_msg_raw = tx.get("in_message")
    out_msgs = tx.get("out_msgs")
    if out_msgs is None:
        out_msgs = tx.get("out_messages")
    success = tx.get("success")
    utime = tx.get("utime")
    return ResolvedTransaction(
        hash=_extract_hash(tx),
        utime=utime if isinstance(utime, int) and not isinstance(utime, bool) else None,
        success=success is not False,
        outgoing_count=len(out_msgs) if isinstance(out_msgs, list) else 0,
        in_msg=_map_inbound(in_msg_raw),
    )


def _map_inbound(raw: Any) -> InboundMessage | None:
    if not isinstance(raw, Mapping) or not raw:
        return None
    return InboundMessage(
        source=_extract_address(raw.get("source")),
        destination=_extract_address(raw.get("destination")),
        value=parse_nano(raw.get("value")),
    )


def _extract_address(raw: Any) -> str | None:
    if isinstance(raw, Mapping):
        raw = raw.get("address")
    if isinstance(raw, str) and raw.strip():
        return raw.strip()
    return None


def _extract_hash(tx: Mapping[str, Any]) -> str:
    value = tx.get("hash")
    if not value:
        transaction_id = tx.get("transaction_id")
        if isinstance(transaction_id, Mapping):
            value = transaction_id.get("hash")
    return value.strip() if isinstance(value, str) else ""
