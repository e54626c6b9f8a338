"""Minimal cell hashing for Highload Wallet V3 address derivation.

A contract address is the representation hash of its StateInit cell. Only
ordinary (level 0) cells are needed here: the wallet data cell, built from
the master public key, subwallet id and timeout, and the StateInit cell that
references the wallet code and that data.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field

from highload_settlement.ton.address import Address

SUBWALLET_ID_BITS = 32
TIMESTAMP_BITS = 64
TIMEOUT_BITS = 22


@dataclass(frozen=True)
class CellRef:
    """A referenced cell known only by its hash and depth (e.g. contract code)."""

    hash: bytes
    depth: int


@dataclass
class BitBuilder:
    """Append-only bit string."""

    bits: list[int] = field(default_factory=list)

    def store_uint(self, value: int, width: int) -> BitBuilder:
        if value < 0 or value >= 1 << width:
            raise ValueError(f"value {value} does not fit in {width} bits")
        self.bits.extend((value >> (width - 1 - i)) & 1 for i in range(width))
        return self

    def store_bytes(self, data: bytes) -> BitBuilder:
        for byte in data:
            self.store_uint(byte, 8)
        return self

    def __len__(self) -> int:
        return len(self.bits)

    def augmented_bytes(self) -> bytes:
        """Bytes with the completion tag appended when not byte aligned."""
        bits = list(self.bits)
        if len(bits) % 8:
            bits.append(1)
            bits.extend([0] * (-len(bits) % 8))
        out = bytearray()
        for i in range(0, len(bits), 8):
            byte = 0
            for bit in bits[i : i + 8]:
                byte = (byte << 1) | bit
            out.append(byte)
        return bytes(out)


def cell_hash(data: BitBuilder, refs: tuple[CellRef, ...] = ()) -> CellRef:
    """Compute the representation hash and depth of an ordinary cell."""
    if len(data) > 1023:
        raise ValueError("cell data exceeds 1023 bits")
    if len(refs) > 4:
        raise ValueError("cell has more than 4 references")
    d1 = len(refs)
    d2 = (len(data) + 7) // 8 + len(data) // 8
    repr_bytes = bytes([d1, d2]) + data.augmented_bytes()
    repr_bytes += b"".join(ref.depth.to_bytes(2, "big") for ref in refs)
    repr_bytes += b"".join(ref.hash for ref in refs)
    depth = max((ref.depth for ref in refs), default=-1) + 1
    return CellRef(hash=hashlib.sha256(repr_bytes).digest(), depth=depth)


def highload_data_cell(public_key: bytes, subwallet_id: int, timeout: int) -> CellRef:
    """Initial data cell of a Highload Wallet V3 instance.

    Layout: public_key:bits256 subwallet_id:uint32 old_queries:(HashmapE)
    queries:(HashmapE) last_clean_time:uint64 timeout:uint22, with both
    query dictionaries empty and last_clean_time zero.
    """
    if len(public_key) != 32:
        raise ValueError("public key must be 32 bytes")
    data = (
        BitBuilder()
        .store_bytes(public_key)
        .store_uint(subwallet_id, SUBWALLET_ID_BITS)
        .store_uint(0, 1 + 1 + TIMESTAMP_BITS)
        .store_uint(timeout, TIMEOUT_BITS)
    )
    return cell_hash(data)


def state_init_hash(code: CellRef, data: CellRef) -> bytes:
    """Hash of StateInit{split_depth: none, special: none, code, data, library: none}."""
    bits = BitBuilder().store_uint(0b00110, 5)
    return cell_hash(bits, (code, data)).hash


def highload_wallet_address(
    code: CellRef,
    public_key: bytes,
    subwallet_id: int,
    timeout: int,
    *,
    workchain: int = 0,
) -> Address:
    """Derive the address of a Highload Wallet V3 for the given parameters."""
    data = highload_data_cell(public_key, subwallet_id, timeout)
    return Address(workchain=workchain, hash_part=state_init_hash(code, data))
