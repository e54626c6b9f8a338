"""TON account address codec.

Supports the two textual forms used by wallets and APIs:

- raw: ``<workchain>:<64 hex chars>``
- user-friendly: 48 base64 (standard or url-safe) characters encoding
  ``tag (1) | workchain (1) | account hash (32) | crc16-xmodem (2)``.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass

from highload_settlement.errors import AddressParseFailed

BOUNCEABLE_TAG = 0x11
NON_BOUNCEABLE_TAG = 0x51
TESTNET_FLAG = 0x80

_FRIENDLY_LENGTH = 48
_FRIENDLY_BYTES = 36


def _crc16(data: bytes) -> bytes:
    # crc_hqx with a zero seed is CRC-16/XMODEM
    return binascii.crc_hqx(data, 0).to_bytes(2, "big")


@dataclass(frozen=True)
class Address:
    """A TON account address (workchain + 256-bit account id)."""

    workchain: int
    hash_part: bytes
    bounceable: bool = True
    testnet: bool = False

    def __post_init__(self) -> None:
        if len(self.hash_part) != 32:
            raise AddressParseFailed(self.hash_part.hex(), "account id must be 32 bytes")
        if not -128 <= self.workchain <= 127:
            raise AddressParseFailed(str(self.workchain), "workchain out of range")

    def __eq__(self, other: object) -> bool:
        # Flags are presentation only; two renderings of one account are equal.
        if not isinstance(other, Address):
            return NotImplemented
        return self.workchain == other.workchain and self.hash_part == other.hash_part

    def __hash__(self) -> int:
        return hash((self.workchain, self.hash_part))

    @classmethod
    def parse(cls, raw: str) -> Address:
        """Parse a raw or user-friendly address.

        Raises:
            AddressParseFailed: If the string is not a valid address.
        """
        if not isinstance(raw, str):
            raise AddressParseFailed(repr(raw), "address must be a string")
        text = raw.strip()
        if ":" in text:
            return cls._parse_raw(text)
        return cls._parse_friendly(text)

    @classmethod
    def _parse_raw(cls, text: str) -> Address:
        wc_part, _, hex_part = text.partition(":")
        try:
            workchain = int(wc_part)
        except ValueError:
            raise AddressParseFailed(text, "workchain is not an integer") from None
        if len(hex_part) != 64:
            raise AddressParseFailed(text, "account id must be 64 hex characters")
        try:
            hash_part = bytes.fromhex(hex_part)
        except ValueError:
            raise AddressParseFailed(text, "account id is not hex") from None
        if not -128 <= workchain <= 127:
            raise AddressParseFailed(text, "workchain out of range")
        return cls(workchain=workchain, hash_part=hash_part)

    @classmethod
    def _parse_friendly(cls, text: str) -> Address:
        if len(text) != _FRIENDLY_LENGTH:
            raise AddressParseFailed(text, f"expected {_FRIENDLY_LENGTH} characters, got {len(text)}")
        try:
            data = base64.urlsafe_b64decode(text.replace("+", "-").replace("/", "_"))
        except (binascii.Error, ValueError):
            raise AddressParseFailed(text, "not valid base64") from None
        if len(data) != _FRIENDLY_BYTES:
            raise AddressParseFailed(text, "decoded length is not 36 bytes")
        if _crc16(data[:34]) != data[34:]:
            raise AddressParseFailed(text, "checksum mismatch")

        tag = data[0]
        testnet = bool(tag & TESTNET_FLAG)
        tag &= ~TESTNET_FLAG
        if tag not in (BOUNCEABLE_TAG, NON_BOUNCEABLE_TAG):
            raise AddressParseFailed(text, f"unknown tag 0x{tag:02x}")

        workchain = int.from_bytes(data[1:2], "big", signed=True)
        return cls(
            workchain=workchain,
            hash_part=data[2:34],
            bounceable=tag == BOUNCEABLE_TAG,
            testnet=testnet,
        )

    def to_raw(self) -> str:
        return f"{self.workchain}:{self.hash_part.hex()}"

    def to_string(
        self,
        *,
        bounceable: bool | None = None,
        testnet: bool | None = None,
        url_safe: bool = True,
    ) -> str:
        """Render the user-friendly form."""
        bounce = self.bounceable if bounceable is None else bounceable
        test = self.testnet if testnet is None else testnet
        tag = BOUNCEABLE_TAG if bounce else NON_BOUNCEABLE_TAG
        if test:
            tag |= TESTNET_FLAG
        body = bytes([tag]) + self.workchain.to_bytes(1, "big", signed=True) + self.hash_part
        payload = body + _crc16(body)
        if url_safe:
            return base64.urlsafe_b64encode(payload).decode("ascii")
        return base64.b64encode(payload).decode("ascii")

    def __str__(self) -> str:
        return self.to_string()


def format_address(address: str) -> str:
    """Shorten an address for display, keeping the first and last ten characters."""
    if len(address) <= 20:
        return address
    return f"{address[:10]}...{address[-10:]}"
