"""Data models for the settlement components."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import NamedTuple

from highload_settlement.ton.models import OutboundTransfer
from highload_settlement.ton.query_id import QueryId


class DepositStatus(str, Enum):
    """Deposit record lifecycle.

    SEEN -> VALIDATED -> PENDING_CONFIRMATION -> CREDITED, or SEEN -> REJECTED.
    """

    SEEN = "seen"
    VALIDATED = "validated"
    PENDING_CONFIRMATION = "pending_confirmation"
    CREDITED = "credited"
    REJECTED = "rejected"


class RejectReason(str, Enum):
    BELOW_MINIMUM = "below_minimum"
    ABORTED = "aborted"
    UNIDENTIFIED = "unidentified_user"


class WithdrawalStatus(str, Enum):
    """Withdrawal request lifecycle."""

    PENDING = "pending"
    BATCHED = "batched"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class BatchStatus(str, Enum):
    RESERVED = "reserved"
    SUBMITTED = "submitted"
    SEND_FAILED = "send_failed"
    EXPIRED = "expired"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class ConfirmationMode(str, Enum):
    SEQNO = "seqno"
    TIME = "time"


class Allocation(NamedTuple):
    """Subwallet id and user-friendly deposit address of one user."""

    subwallet_id: int
    address: str


@dataclass
class IngestResult:
    """Counters for one ingestion pass."""

    observed: int = 0
    duplicates: int = 0
    pending: int = 0
    rejected: int = 0
    ignored: int = 0
    failed: int = 0
    last_lt: int | None = None
    last_tx_hash: str | None = None


@dataclass
class AdvanceResult:
    """Counters for one confirmation pass."""

    checked: int = 0
    credited: int = 0
    failed: int = 0


@dataclass(frozen=True)
class ItemResult:
    """Outcome of turning one withdrawal request into a transfer."""

    withdrawal_id: str
    ok: bool
    transfer: OutboundTransfer | None = None
    error: str | None = None


@dataclass
class BatchResult:
    """Outcome of one ``build_batch`` call.

    ``transfers`` is empty when nothing was pending or every request failed;
    in that case no query id was consumed.
    """

    transfers: list[OutboundTransfer] = field(default_factory=list)
    items: list[ItemResult] = field(default_factory=list)
    query_id: QueryId | None = None
    batch_id: int | None = None
    created_at: datetime | None = None
    submitted: bool = False

    @property
    def failed(self) -> list[ItemResult]:
        return [item for item in self.items if not item.ok]

    @property
    def withdrawal_ids(self) -> list[str]:
        return [item.withdrawal_id for item in self.items if item.ok]

    def __len__(self) -> int:
        return len(self.transfers)
