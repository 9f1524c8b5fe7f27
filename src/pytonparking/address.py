"""Canonicalization of TON account addresses.

Two textual encodings exist for the same account: the raw form
``<workchain>:<64 hex chars>`` and the 48 character user-friendly form, which
is base64 (or base64url) of a flag byte, a signed workchain byte, the 32 byte
account id and a CRC16-XMODEM checksum. Both decode to the same
``(workchain, account_id)`` pair, which is what comparisons use.
"""

from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass

_RAW_RE = re.compile(r"^(-?\d{1,3}):([0-9a-fA-F]{64})$")
_FRIENDLY_RE = re.compile(r"^[A-Za-z0-9+/_-]{48}$")

_TAG_BOUNCEABLE = 0x11
_TAG_NON_BOUNCEABLE = 0x51
_TAG_TESTNET = 0x80
_FRIENDLY_LENGTH = 36


@dataclass(frozen=True, slots=True, eq=False)
class CanonicalAddress:
    """Comparable form of an address.

    ``workchain`` and ``account_id`` are set when the input decoded as a TON
    address. Inputs that did not decode keep a case-folded ``text`` only.
    The empty address never equals anything, itself included.
    """

    text: str
    workchain: int | None = None
    account_id: bytes | None = None

    @property
    def is_empty(self) -> bool:
        return not self.text

    @property
    def is_decoded(self) -> bool:
        return self.account_id is not None

    @property
    def raw(self) -> str:
        return self.text

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CanonicalAddress):
            return NotImplemented
        if self.is_empty or other.is_empty:
            return False
        return self.text == other.text

    def __hash__(self) -> int:
        return hash(self.text)

    def __str__(self) -> str:
        return self.text


EMPTY_ADDRESS = CanonicalAddress(text="")


def normalize_address(raw: str | None) -> CanonicalAddress:
    if not isinstance(raw, str):
        return EMPTY_ADDRESS
    value = raw.strip()
    if not value:
        return EMPTY_ADDRESS
    decoded = _decode_raw(value) or _decode_friendly(value)
    if decoded is None:
        return CanonicalAddress(text=value.lower())
    workchain, account_id = decoded
    return CanonicalAddress(
        text=f"{workchain}:{account_id.hex()}",
        workchain=workchain,
        account_id=account_id,
    )


def addresses_match(left: str | None, right: str | None) -> bool:
    return normalize_address(left) == normalize_address(right)


def to_user_friendly(
    address: CanonicalAddress,
    *,
    bounceable: bool = True,
    testnet: bool = False,
) -> str:
    """Render a decoded address in the url-safe user-friendly form."""
    if address.account_id is None or address.workchain is None:
        raise ValueError("Only decoded addresses can be rendered.")
    tag = _TAG_BOUNCEABLE if bounceable else _TAG_NON_BOUNCEABLE
    if testnet:
        tag |= _TAG_TESTNET
    body = bytes([tag, address.workchain & 0xFF]) + address.account_id
    checksum = binascii.crc_hqx(body, 0).to_bytes(2, "big")
    return base64.urlsafe_b64encode(body + checksum).decode("ascii")


def _decode_raw(value: str) -> tuple[int, bytes] | None:
    match = _RAW_RE.match(value)
    if match is None:
        return None
    workchain = int(match.group(1))
    if not -128 <= workchain <= 127:
        return None
    return workchain, bytes.fromhex(match.group(2))


def _decode_friendly(value: str) -> tuple[int, bytes] | None:
    if _FRIENDLY_RE.match(value) is None:
        return None
    standard = value.replace("-", "+").replace("_", "/")
    try:
        data = base64.b64decode(standard, validate=True)
    except (binascii.Error, ValueError):
        return None
    if len(data) != _FRIENDLY_LENGTH:
        return None
    body, checksum = data[:34], data[34:]
    if binascii.crc_hqx(body, 0) != int.from_bytes(checksum, "big"):
        return None
    tag = body[0] & ~_TAG_TESTNET
    if tag not in (_TAG_BOUNCEABLE, _TAG_NON_BOUNCEABLE):
        return None
    workchain = int.from_bytes(body[1:2], "big", signed=True)
    return workchain, bytes(body[2:])
