"""Constants for the indexer client and reservation core."""

DEFAULT_BASE_URL = "https://tonapi.io"

TRANSACTION_ENDPOINT = "/v2/blockchain/transactions/{tx_hash}"
PARSE_BOC_ENDPOINT = "/v2/blockchain/parse-boc"
ACCOUNT_TRANSACTIONS_ENDPOINT = "/v2/blockchain/accounts/{address}/transactions"
ACCOUNT_ENDPOINT = "/v2/accounts/{address}"

AUTH_HEADER = "Authorization"
AUTH_PREFIX = "Bearer "

DEFAULT_HEADERS = {
    "Accept": "application/json",
    "User-Agent": "pytonparking",
}

DEFAULT_TIMEOUT_SECONDS = 10

NANO_PER_TON = 1_000_000_000
# 0.001 TON, absorbs network fee rounding.
DEFAULT_TOLERANCE_NANO = 1_000_000
DEFAULT_SEARCH_LIMIT = 10

DEFAULT_SWEEP_INTERVAL = 30.0
DEFAULT_MAX_DURATION_HOURS = 4
