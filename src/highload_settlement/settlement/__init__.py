"""Settlement layer - subwallet allocation, deposits, query ids and batch withdrawals."""

from highload_settlement.settlement.allocator import SubwalletAllocator, derive_subwallet_id
from highload_settlement.settlement.deposits import DepositPipeline
from highload_settlement.settlement.models import (
    AdvanceResult,
    Allocation,
    BatchResult,
    BatchStatus,
    ConfirmationMode,
    DepositStatus,
    IngestResult,
    ItemResult,
    RejectReason,
    WithdrawalStatus,
)
from highload_settlement.settlement.sequencer import QueryIdSequencer, SequencerStore
from highload_settlement.settlement.withdrawals import MAX_BATCH_SIZE, BatchSender, WithdrawalBatcher

__all__ = [
    "AdvanceResult",
    "Allocation",
    "BatchResult",
    "BatchSender",
    "BatchStatus",
    "ConfirmationMode",
    "DepositPipeline",
    "DepositStatus",
    "IngestResult",
    "ItemResult",
    "MAX_BATCH_SIZE",
    "QueryIdSequencer",
    "RejectReason",
    "SequencerStore",
    "SubwalletAllocator",
    "WithdrawalBatcher",
    "WithdrawalStatus",
    "derive_subwallet_id",
]
