"""Manual live check of payment verification against the TON indexer.

Run from the repository root with:
  PYTHONPATH=src TON_RECIPIENT_ADDRESS=... TON_TX_REF=... TON_EXPECTED_TON=... \
  python scripts/indexer_live_check.py

Optional environment variables:
  TONAPI_BASE_URL
  TONAPI_KEY

TON_TX_REF accepts a transaction hash or a serialized external message.
"""

from __future__ import annotations

import asyncio
import os
import sys

from pytonparking import IndexerClient, PaymentVerifier, TransactionResolver
from pytonparking.const import DEFAULT_BASE_URL
from pytonparking.models import PaymentStatus
from pytonparking.util import ton_to_nano


def _require_env(name: str) -> str:
    value = os.getenv(name)
    if not value:
        print(f"Missing required environment variable: {name}", file=sys.stderr)
        raise SystemExit(2)
    return value


def _format_status(status: PaymentStatus) -> str:
    if status.payment is None:
        return f"{status.state} ({status.reason or '-'})"
    payment = status.payment
    return (
        f"{status.state} | {payment.transaction_hash} | {payment.amount} nanoTON | "
        f"from {payment.sender.text or '-'} at {payment.timestamp}"
    )


async def main() -> int:
    recipient = _require_env("TON_RECIPIENT_ADDRESS")
    reference = _require_env("TON_TX_REF")
    expected_ton = _require_env("TON_EXPECTED_TON")
    base_url = os.getenv("TONAPI_BASE_URL") or DEFAULT_BASE_URL
    api_key = os.getenv("TONAPI_KEY")

    try:
        expected_nano = ton_to_nano(expected_ton)
        async with IndexerClient(base_url=base_url, api_key=api_key) as indexer:
            verifier = PaymentVerifier(TransactionResolver(indexer))
            status = await verifier.check_status(reference, expected_nano, recipient)
            balance = await verifier.wallet_balance(recipient)
    except Exception as exc:
        print(f"Error: {exc.__class__.__name__}: {exc}", file=sys.stderr)
        return 1

    print(f"Indexer: {base_url}")
    print(f"Expected: {expected_nano} nanoTON")
    print(f"Payment: {_format_status(status)}")
    print(f"Recipient balance: {balance.balance_ton} TON")
    return 0


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))
