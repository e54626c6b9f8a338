"""Storage layer - Database schemas and repositories."""

from highload_settlement.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from highload_settlement.storage.models import (
    Base,
    DepositRecordModel,
    LedgerEntryModel,
    SequencerStateModel,
    UserAccountModel,
    WithdrawalBatchModel,
    WithdrawalRequestModel,
)
from highload_settlement.storage.repos import (
    DepositRecordDTO,
    DepositRepository,
    LedgerRepository,
    UserAccountDTO,
    UserAccountRepository,
    WithdrawalBatchDTO,
    WithdrawalBatchRepository,
    WithdrawalRequestDTO,
    WithdrawalRepository,
)

__all__ = [
    "Base",
    "DatabaseManager",
    "DepositRecordDTO",
    "DepositRecordModel",
    "DepositRepository",
    "LedgerEntryModel",
    "LedgerRepository",
    "SequencerStateModel",
    "UserAccountDTO",
    "UserAccountModel",
    "UserAccountRepository",
    "WithdrawalBatchDTO",
    "WithdrawalBatchModel",
    "WithdrawalBatchRepository",
    "WithdrawalRequestDTO",
    "WithdrawalRequestModel",
    "WithdrawalRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
