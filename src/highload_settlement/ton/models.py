"""Data models for chain transactions and outbound transfers."""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from typing import Any

from highload_settlement.ton.address import Address

# SendMode.PAY_GAS_SEPARATELY + SendMode.IGNORE_ERRORS
DEFAULT_SEND_MODE = 1 + 2
TEXT_COMMENT_OP = 0


def normalize_tx_hash(value: str) -> str:
    """Return a transaction hash as lowercase hex.

    toncenter reports hashes in base64; hex input is passed through.
    """
    text = value.strip()
    if len(text) == 64:
        try:
            bytes.fromhex(text)
            return text.lower()
        except ValueError:
            pass
    try:
        raw = base64.b64decode(text.replace("-", "+").replace("_", "/"), validate=True)
    except (binascii.Error, ValueError):
        return text.lower()
    if len(raw) != 32:
        return text.lower()
    return raw.hex()


def _normalize_address(value: str | None) -> str | None:
    if not value:
        return None
    try:
        return Address.parse(value).to_raw()
    except ValueError:
        return value


@dataclass(frozen=True)
class ChainTransaction:
    """A transaction on a watched account, as reported by the chain client."""

    tx_hash: str
    lt: int
    utime: int
    account: str
    sender: str | None
    amount: int
    comment: str | None = None
    aborted: bool = False
    bounced: bool = False
    mc_block_seqno: int | None = None

    @property
    def is_incoming_internal(self) -> bool:
        """True when the inbound message came from another account (not external)."""
        return self.sender is not None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChainTransaction:
        """Create a ChainTransaction from a toncenter v3 transaction object."""
        in_msg = data.get("in_msg") or {}
        description = data.get("description") or {}
        content = in_msg.get("message_content") or {}
        decoded = content.get("decoded") or {}

        comment = None
        if decoded.get("type") == "text_comment":
            comment = decoded.get("comment")

        aborted = bool(description.get("aborted", False))
        compute = description.get("compute_ph") or {}
        if compute.get("success") is False:
            aborted = True

        seqno = data.get("mc_block_seqno")
        return cls(
            tx_hash=normalize_tx_hash(str(data["hash"])),
            lt=int(data["lt"]),
            utime=int(data.get("now") or data.get("utime") or 0),
            account=_normalize_address(str(data["account"])) or str(data["account"]),
            sender=_normalize_address(in_msg.get("source")),
            amount=int(in_msg.get("value") or 0),
            comment=comment,
            aborted=aborted,
            bounced=bool(in_msg.get("bounced", False)),
            mc_block_seqno=int(seqno) if seqno is not None else None,
        )


@dataclass(frozen=True)
class OutboundTransfer:
    """One outbound payment instruction inside a batch."""

    destination: Address
    amount: int
    comment: str
    bounce: bool = False
    mode: int = DEFAULT_SEND_MODE
    withdrawal_id: str | None = None
