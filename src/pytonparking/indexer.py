"""HTTP client for the TON blockchain indexer."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import aiohttp

from .const import (
    ACCOUNT_ENDPOINT,
    ACCOUNT_TRANSACTIONS_ENDPOINT,
    AUTH_HEADER,
    AUTH_PREFIX,
    DEFAULT_BASE_URL,
    DEFAULT_HEADERS,
    DEFAULT_SEARCH_LIMIT,
    DEFAULT_TIMEOUT_SECONDS,
    PARSE_BOC_ENDPOINT,
    TRANSACTION_ENDPOINT,
)
from .exceptions import (
    IndexerAuthError,
    IndexerError,
    IndexerUnavailableError,
    TransactionNotFoundError,
    ValidationError,
)

_LOGGER = logging.getLogger(__name__)
_DEFAULT_TIMEOUT = aiohttp.ClientTimeout(total=DEFAULT_TIMEOUT_SECONDS)


class IndexerClient:
    """Thin wrapper over the indexer endpoints the payment core consumes."""

    def __init__(
        self,
        session: aiohttp.ClientSession | None = None,
        *,
        base_url: str = DEFAULT_BASE_URL,
        api_key: str | None = None,
        timeout: aiohttp.ClientTimeout | None = None,
        retry_count: int = 0,
    ) -> None:
        self._session = session
        self._owns_session = session is None
        self._base_url = self._normalize_base_url(base_url)
        self._api_key = api_key
        self._timeout = timeout or _DEFAULT_TIMEOUT
        self._retry_count = max(0, retry_count)

    async def __aenter__(self) -> IndexerClient:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def get_transaction(self, tx_hash: str) -> dict[str, Any]:
        if not isinstance(tx_hash, str) or not tx_hash:
            raise ValidationError("Transaction hash is required.")
        path = TRANSACTION_ENDPOINT.format(tx_hash=quote(tx_hash, safe=""))
        data = await self._request_json("GET", path)
        if not isinstance(data, dict):
            raise IndexerError("Indexer returned an invalid transaction payload.")
        return data

    async def decode_message(self, blob: str) -> str | None:
        """Decode a serialized message and return the transaction hash it names."""
        data = await self._request_json("GET", PARSE_BOC_ENDPOINT, params={"boc": blob})
        if not isinstance(data, dict):
            return None
        tx_hash = data.get("hash")
        if not tx_hash:
            transaction = data.get("transaction")
            if isinstance(transaction, dict):
                tx_hash = transaction.get("hash")
        if isinstance(tx_hash, str) and tx_hash.strip():
            return tx_hash.strip()
        return None

    async def list_transactions(
        self,
        address: str,
        limit: int = DEFAULT_SEARCH_LIMIT,
    ) -> list[dict[str, Any]]:
        if not isinstance(address, str) or not address:
            raise ValidationError("Address is required.")
        path = ACCOUNT_TRANSACTIONS_ENDPOINT.format(address=quote(address, safe=""))
        data = await self._request_json("GET", path, params={"limit": str(max(1, limit))})
        if isinstance(data, dict):
            raw = data.get("transactions")
            if raw is None:
                raw = data.get("result")
        else:
            raw = data
        if raw is None:
            return []
        if not isinstance(raw, list):
            raise IndexerError("Indexer returned an invalid transaction list.")
        return [item for item in raw if isinstance(item, dict)]

    async def get_account(self, address: str) -> dict[str, Any]:
        if not isinstance(address, str) or not address:
            raise ValidationError("Address is required.")
        path = ACCOUNT_ENDPOINT.format(address=quote(address, safe=""))
        try:
            data = await self._request_json("GET", path)
        except TransactionNotFoundError as exc:
            raise IndexerError("Account not found.", error_code="account_not_found") from exc
        if not isinstance(data, dict):
            raise IndexerError("Indexer returned an invalid account payload.")
        return data

    def _build_url(self, path: str) -> str:
        if not isinstance(path, str) or not path:
            raise ValidationError("Path must be a non-empty string.")
        if path.startswith("http://") or path.startswith("https://"):
            raise ValidationError("Use relative paths when building indexer requests.")
        normalized_path = path if path.startswith("/") else f"/{path}"
        return f"{self._base_url}{normalized_path}"

    def _headers(self) -> dict[str, str]:
        headers = dict(DEFAULT_HEADERS)
        if self._api_key:
            headers[AUTH_HEADER] = f"{AUTH_PREFIX}{self._api_key}"
        return headers

    async def _request_json(self, method: str, path: str, **kwargs: Any) -> Any:
        url = self._build_url(path)
        _LOGGER.debug("Indexer %s %s started", method, path)
        data = await self._request(method, url, **kwargs)
        _LOGGER.debug("Indexer %s %s completed", method, path)
        return data

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        session = self._ensure_session()
        retries = self._retry_count if method.upper() == "GET" else 0
        attempts = retries + 1
        for attempt in range(attempts):
            try:
                async with session.request(
                    method,
                    url,
                    headers=self._headers(),
                    timeout=self._timeout,
                    ssl=True,
                    **kwargs,
                ) as response:
                    self._raise_for_status(response)
                    try:
                        return await response.json()
                    except (aiohttp.ContentTypeError, ValueError) as exc:
                        raise IndexerError("Response did not contain valid JSON.") from exc
            except (aiohttp.ClientError, TimeoutError) as exc:
                if attempt >= attempts - 1:
                    raise IndexerUnavailableError("Indexer request failed.") from exc
        raise IndexerUnavailableError("Indexer request failed.")

    def _raise_for_status(self, response: aiohttp.ClientResponse) -> None:
        if 200 <= response.status < 300:
            return
        if response.status in (401, 403):
            raise IndexerAuthError("Indexer rejected the API key.")
        if response.status == 404:
            raise TransactionNotFoundError("Indexer returned 404.")
        if response.status == 429 or response.status >= 500:
            raise IndexerUnavailableError(
                f"Indexer request failed with status {response.status}."
            )
        raise IndexerError(f"Indexer request failed with status {response.status}.")

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    def _normalize_base_url(self, base_url: str) -> str:
        if not isinstance(base_url, str) or not base_url.strip():
            raise ValidationError("base_url must be a non-empty string.")
        return base_url.strip().rstrip("/")
