"""Highload Wallet V3 query id coordinates.

A query id is a 23-bit value ``shift << 10 | bit_number`` where ``shift`` is
in [0, 8191] and ``bit_number`` in [0, 1022]. Ids are ordered by their
sequence number ``shift * 1023 + bit_number``. The last coordinate
(8191, 1022) is held back for emergencies, leaving 8,380,415 ids that a
sequencer may issue per timeout window.
"""

from __future__ import annotations

from dataclasses import dataclass

BIT_NUMBER_SIZE = 10
SHIFT_SIZE = 13
MAX_BIT_NUMBER = 1022
MAX_SHIFT = (1 << SHIFT_SIZE) - 1
BITS_PER_SHIFT = MAX_BIT_NUMBER + 1

# Sequence numbers 0 .. MAX_QUERY_ID_COUNT - 1 are issuable.
MAX_QUERY_ID_COUNT = MAX_SHIFT * BITS_PER_SHIFT + MAX_BIT_NUMBER
EMERGENCY_SEQNO = MAX_QUERY_ID_COUNT


@dataclass(frozen=True, order=True)
class QueryId:
    """A (shift, bit_number) coordinate in the query id space."""

    shift: int
    bit_number: int

    def __post_init__(self) -> None:
        if not 0 <= self.shift <= MAX_SHIFT:
            raise ValueError(f"shift {self.shift} out of range [0, {MAX_SHIFT}]")
        if not 0 <= self.bit_number <= MAX_BIT_NUMBER:
            raise ValueError(f"bit_number {self.bit_number} out of range [0, {MAX_BIT_NUMBER}]")

    @classmethod
    def from_seqno(cls, seqno: int) -> QueryId:
        if not 0 <= seqno <= EMERGENCY_SEQNO:
            raise ValueError(f"seqno {seqno} out of range")
        shift, bit_number = divmod(seqno, BITS_PER_SHIFT)
        return cls(shift=shift, bit_number=bit_number)

    @classmethod
    def from_query_id(cls, query_id: int) -> QueryId:
        return cls(shift=query_id >> BIT_NUMBER_SIZE, bit_number=query_id & ((1 << BIT_NUMBER_SIZE) - 1))

    @property
    def query_id(self) -> int:
        return (self.shift << BIT_NUMBER_SIZE) | self.bit_number

    @property
    def seqno(self) -> int:
        return self.shift * BITS_PER_SHIFT + self.bit_number

    @property
    def is_emergency(self) -> bool:
        return self.seqno == EMERGENCY_SEQNO

    def __str__(self) -> str:
        return f"{self.query_id} (shift={self.shift}, bit={self.bit_number})"
