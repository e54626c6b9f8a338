"""Repository pattern implementations for data access.

This module provides data access abstractions for subwallet accounts,
deposit records, ledger credits, withdrawals, batches, and the sequencer
and ingestion cursors. Repositories never commit; transaction boundaries
belong to the caller.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import Select, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from highload_settlement.storage.models import (
    DepositProcessingErrorModel,
    DepositRecordModel,
    IngestionCursorModel,
    LedgerEntryModel,
    SequencerStateModel,
    UserAccountModel,
    WithdrawalBatchModel,
    WithdrawalRequestModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def _insert(session: AsyncSession, model: type[Any]) -> Any:
    """Dialect-specific INSERT supporting ``on_conflict_do_*``."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


@dataclass
class UserAccountDTO:
    """Data transfer object for user subwallet allocations."""

    user_id: str
    subwallet_id: int
    address: str
    nonce: int
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: UserAccountModel) -> UserAccountDTO:
        return cls(
            user_id=model.user_id,
            subwallet_id=model.subwallet_id,
            address=model.address,
            nonce=model.nonce,
            created_at=_as_utc(model.created_at),
        )


class UserAccountRepository:
    """Repository for user subwallet allocations."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, user_id: str) -> UserAccountDTO | None:
        result = await self.session.execute(
            select(UserAccountModel).where(UserAccountModel.user_id == user_id)
        )
        model = result.scalar_one_or_none()
        return UserAccountDTO.from_model(model) if model else None

    async def get_by_address(self, raw_address: str) -> UserAccountDTO | None:
        result = await self.session.execute(
            select(UserAccountModel).where(UserAccountModel.address == raw_address)
        )
        model = result.scalar_one_or_none()
        return UserAccountDTO.from_model(model) if model else None

    async def subwallet_id_taken(self, subwallet_id: int) -> bool:
        result = await self.session.execute(
            select(UserAccountModel.user_id).where(UserAccountModel.subwallet_id == subwallet_id)
        )
        return result.first() is not None

    async def insert(self, dto: UserAccountDTO) -> UserAccountDTO:
        """Insert an allocation.

        Raises:
            IntegrityError: If the user, subwallet id or address already exists.
        """
        model = UserAccountModel(
            user_id=dto.user_id,
            subwallet_id=dto.subwallet_id,
            address=dto.address,
            nonce=dto.nonce,
            created_at=dto.created_at or datetime.now(UTC),
        )
        self.session.add(model)
        await self.session.flush()
        return UserAccountDTO.from_model(model)

    async def list_all(self) -> list[UserAccountDTO]:
        result = await self.session.execute(
            select(UserAccountModel).order_by(UserAccountModel.created_at, UserAccountModel.user_id)
        )
        return [UserAccountDTO.from_model(m) for m in result.scalars().all()]


@dataclass
class DepositRecordDTO:
    """Data transfer object for deposit records."""

    tx_hash: str
    lt: int
    account: str
    sender: str | None
    amount: int
    comment: str | None
    user_id: str | None
    status: str
    observed_at: datetime
    reject_reason: str | None = None
    confirmations: int = 0
    observed_seqno: int | None = None
    credited_at: datetime | None = None

    @classmethod
    def from_model(cls, model: DepositRecordModel) -> DepositRecordDTO:
        return cls(
            tx_hash=model.tx_hash,
            lt=model.lt,
            account=model.account,
            sender=model.sender,
            amount=int(model.amount),
            comment=model.comment,
            user_id=model.user_id,
            status=model.status,
            observed_at=_as_utc(model.observed_at) or model.observed_at,
            reject_reason=model.reject_reason,
            confirmations=model.confirmations,
            observed_seqno=model.observed_seqno,
            credited_at=_as_utc(model.credited_at),
        )


class DepositRepository:
    """Repository for deposit records keyed by transaction hash."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, tx_hash: str) -> DepositRecordDTO | None:
        result = await self.session.execute(
            select(DepositRecordModel).where(DepositRecordModel.tx_hash == tx_hash)
        )
        model = result.scalar_one_or_none()
        return DepositRecordDTO.from_model(model) if model else None

    async def insert_if_absent(self, dto: DepositRecordDTO) -> bool:
        """Insert a record unless the hash is already known.

        Returns:
            True if the row was written, False on redelivery.
        """
        stmt = (
            _insert(self.session, DepositRecordModel)
            .values(
                tx_hash=dto.tx_hash,
                lt=dto.lt,
                account=dto.account,
                sender=dto.sender,
                amount=Decimal(dto.amount),
                comment=dto.comment,
                user_id=dto.user_id,
                status=dto.status,
                reject_reason=dto.reject_reason,
                confirmations=dto.confirmations,
                observed_at=dto.observed_at,
                observed_seqno=dto.observed_seqno,
                updated_at=datetime.now(UTC),
            )
            .on_conflict_do_nothing(index_elements=["tx_hash"])
        )
        result = await self.session.execute(stmt)
        return bool(result.rowcount)

    async def transition(self, tx_hash: str, *, from_status: str, to_status: str, **values: Any) -> bool:
        """Compare-and-set the status of a record.

        Returns:
            True if the record was in ``from_status`` and has been moved.
        """
        stmt = (
            update(DepositRecordModel)
            .where(DepositRecordModel.tx_hash == tx_hash, DepositRecordModel.status == from_status)
            .values(status=to_status, updated_at=datetime.now(UTC), **values)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def set_confirmations(self, tx_hash: str, *, status: str, confirmations: int) -> bool:
        stmt = (
            update(DepositRecordModel)
            .where(DepositRecordModel.tx_hash == tx_hash, DepositRecordModel.status == status)
            .values(confirmations=confirmations, updated_at=datetime.now(UTC))
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def list_by_status(self, status: str, *, limit: int = 500) -> list[DepositRecordDTO]:
        result = await self.session.execute(
            select(DepositRecordModel)
            .where(DepositRecordModel.status == status)
            .order_by(DepositRecordModel.lt)
            .limit(limit)
        )
        return [DepositRecordDTO.from_model(m) for m in result.scalars().all()]

    async def count_by_status(self) -> dict[str, int]:
        result = await self.session.execute(
            select(DepositRecordModel.status, func.count()).group_by(DepositRecordModel.status)
        )
        return {status: int(count) for status, count in result.all()}


class LedgerRepository:
    """Repository for idempotent ledger credits."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def credit(self, *, user_id: str, amount: int, reference: str, kind: str = "deposit") -> bool:
        """Apply a credit once per (kind, reference).

        Returns:
            True if the credit was written, False if it already existed.
        """
        stmt = (
            _insert(self.session, LedgerEntryModel)
            .values(
                user_id=user_id,
                amount=Decimal(amount),
                kind=kind,
                reference=reference,
                created_at=datetime.now(UTC),
            )
            .on_conflict_do_nothing(index_elements=["kind", "reference"])
        )
        result = await self.session.execute(stmt)
        return bool(result.rowcount)

    async def count_for_reference(self, reference: str, *, kind: str = "deposit") -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(LedgerEntryModel)
            .where(LedgerEntryModel.kind == kind, LedgerEntryModel.reference == reference)
        )
        return int(result.scalar_one())

    async def balance(self, user_id: str) -> int:
        result = await self.session.execute(
            select(func.coalesce(func.sum(LedgerEntryModel.amount), 0)).where(
                LedgerEntryModel.user_id == user_id
            )
        )
        return int(result.scalar_one())


@dataclass
class WithdrawalRequestDTO:
    """Data transfer object for withdrawal requests."""

    withdrawal_id: str
    user_id: str
    destination: str
    amount: int
    status: str
    failure_reason: str | None = None
    batch_id: int | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: WithdrawalRequestModel) -> WithdrawalRequestDTO:
        return cls(
            withdrawal_id=model.withdrawal_id,
            user_id=model.user_id,
            destination=model.destination,
            amount=int(model.amount),
            status=model.status,
            failure_reason=model.failure_reason,
            batch_id=model.batch_id,
            created_at=_as_utc(model.created_at),
        )


class WithdrawalRepository:
    """Repository for withdrawal requests keyed by withdrawal id."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, withdrawal_id: str) -> WithdrawalRequestDTO | None:
        result = await self.session.execute(
            select(WithdrawalRequestModel).where(WithdrawalRequestModel.withdrawal_id == withdrawal_id)
        )
        model = result.scalar_one_or_none()
        return WithdrawalRequestDTO.from_model(model) if model else None

    async def insert_if_absent(self, dto: WithdrawalRequestDTO) -> bool:
        now = datetime.now(UTC)
        stmt = (
            _insert(self.session, WithdrawalRequestModel)
            .values(
                withdrawal_id=dto.withdrawal_id,
                user_id=dto.user_id,
                destination=dto.destination,
                amount=Decimal(dto.amount),
                status=dto.status,
                created_at=dto.created_at or now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["withdrawal_id"])
        )
        result = await self.session.execute(stmt)
        return bool(result.rowcount)

    async def list_pending(self, status: str, *, limit: int) -> list[WithdrawalRequestDTO]:
        """Oldest requests in ``status``, locked for update where supported."""
        result = await self.session.execute(
            select(WithdrawalRequestModel)
            .where(WithdrawalRequestModel.status == status)
            .order_by(WithdrawalRequestModel.created_at, WithdrawalRequestModel.withdrawal_id)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return [WithdrawalRequestDTO.from_model(m) for m in result.scalars().all()]

    async def list_by_batch(self, batch_id: int) -> list[WithdrawalRequestDTO]:
        result = await self.session.execute(
            select(WithdrawalRequestModel)
            .where(WithdrawalRequestModel.batch_id == batch_id)
            .order_by(WithdrawalRequestModel.created_at, WithdrawalRequestModel.withdrawal_id)
        )
        return [WithdrawalRequestDTO.from_model(m) for m in result.scalars().all()]

    async def transition(
        self,
        withdrawal_ids: Sequence[str],
        *,
        from_status: str,
        to_status: str,
        **values: Any,
    ) -> int:
        """Compare-and-set the status of several requests; returns rows moved."""
        if not withdrawal_ids:
            return 0
        stmt = (
            update(WithdrawalRequestModel)
            .where(
                WithdrawalRequestModel.withdrawal_id.in_(list(withdrawal_ids)),
                WithdrawalRequestModel.status == from_status,
            )
            .values(status=to_status, updated_at=datetime.now(UTC), **values)
        )
        result = await self.session.execute(stmt)
        return int(result.rowcount)

    async def count_by_status(self) -> dict[str, int]:
        result = await self.session.execute(
            select(WithdrawalRequestModel.status, func.count()).group_by(WithdrawalRequestModel.status)
        )
        return {status: int(count) for status, count in result.all()}


@dataclass
class WithdrawalBatchDTO:
    """Data transfer object for withdrawal batches."""

    wallet_address: str
    subwallet_id: int
    timeout_seconds: int
    query_id: int
    window_id: int
    item_count: int
    status: str
    created_at: datetime
    id: int | None = None
    submitted_at: datetime | None = None
    last_error: str | None = None

    @classmethod
    def from_model(cls, model: WithdrawalBatchModel) -> WithdrawalBatchDTO:
        return cls(
            id=model.id,
            wallet_address=model.wallet_address,
            subwallet_id=model.subwallet_id,
            timeout_seconds=model.timeout_seconds,
            query_id=model.query_id,
            window_id=model.window_id,
            item_count=model.item_count,
            status=model.status,
            created_at=_as_utc(model.created_at) or model.created_at,
            submitted_at=_as_utc(model.submitted_at),
            last_error=model.last_error,
        )


class WithdrawalBatchRepository:
    """Repository for withdrawal batches."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: WithdrawalBatchDTO) -> WithdrawalBatchDTO:
        model = WithdrawalBatchModel(
            wallet_address=dto.wallet_address,
            subwallet_id=dto.subwallet_id,
            timeout_seconds=dto.timeout_seconds,
            query_id=dto.query_id,
            window_id=dto.window_id,
            item_count=dto.item_count,
            status=dto.status,
            created_at=dto.created_at,
        )
        self.session.add(model)
        await self.session.flush()
        return WithdrawalBatchDTO.from_model(model)

    async def get(self, batch_id: int) -> WithdrawalBatchDTO | None:
        result = await self.session.execute(
            select(WithdrawalBatchModel).where(WithdrawalBatchModel.id == batch_id)
        )
        model = result.scalar_one_or_none()
        return WithdrawalBatchDTO.from_model(model) if model else None

    async def set_status(self, batch_id: int, status: str, **values: Any) -> None:
        await self.session.execute(
            update(WithdrawalBatchModel)
            .where(WithdrawalBatchModel.id == batch_id)
            .values(status=status, **values)
        )

    async def list_by_status(self, status: str) -> list[WithdrawalBatchDTO]:
        result = await self.session.execute(
            select(WithdrawalBatchModel)
            .where(WithdrawalBatchModel.status == status)
            .order_by(WithdrawalBatchModel.id)
        )
        return [WithdrawalBatchDTO.from_model(m) for m in result.scalars().all()]


@dataclass
class SequencerStateDTO:
    """Data transfer object for a wallet's query id position."""

    wallet_address: str
    timeout_seconds: int
    window_id: int
    position: int
    window_started_at: datetime
    last_issued_at: datetime | None = None

    @classmethod
    def from_model(cls, model: SequencerStateModel) -> SequencerStateDTO:
        return cls(
            wallet_address=model.wallet_address,
            timeout_seconds=model.timeout_seconds,
            window_id=model.window_id,
            position=model.position,
            window_started_at=_as_utc(model.window_started_at) or model.window_started_at,
            last_issued_at=_as_utc(model.last_issued_at),
        )


class SequencerStateRepository:
    """Repository for sequencer positions keyed by (wallet, timeout)."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    def _select(self, wallet_address: str, timeout_seconds: int) -> Select[tuple[SequencerStateModel]]:
        return select(SequencerStateModel).where(
            SequencerStateModel.wallet_address == wallet_address,
            SequencerStateModel.timeout_seconds == timeout_seconds,
        )

    async def get(self, wallet_address: str, timeout_seconds: int) -> SequencerStateDTO | None:
        """Read a position without locking the row."""
        result = await self.session.execute(self._select(wallet_address, timeout_seconds))
        model = result.scalar_one_or_none()
        return SequencerStateDTO.from_model(model) if model else None

    async def get_for_update(self, wallet_address: str, timeout_seconds: int) -> SequencerStateDTO | None:
        result = await self.session.execute(self._select(wallet_address, timeout_seconds).with_for_update())
        model = result.scalar_one_or_none()
        return SequencerStateDTO.from_model(model) if model else None

    async def create_if_absent(self, wallet_address: str, timeout_seconds: int, *, now: datetime) -> None:
        stmt = (
            _insert(self.session, SequencerStateModel)
            .values(
                wallet_address=wallet_address,
                timeout_seconds=timeout_seconds,
                window_id=0,
                position=0,
                window_started_at=now,
                last_issued_at=None,
            )
            .on_conflict_do_nothing(index_elements=["wallet_address", "timeout_seconds"])
        )
        await self.session.execute(stmt)

    async def save(self, dto: SequencerStateDTO) -> None:
        await self.session.execute(
            update(SequencerStateModel)
            .where(
                SequencerStateModel.wallet_address == dto.wallet_address,
                SequencerStateModel.timeout_seconds == dto.timeout_seconds,
            )
            .values(
                window_id=dto.window_id,
                position=dto.position,
                window_started_at=dto.window_started_at,
                last_issued_at=dto.last_issued_at,
            )
        )


class IngestionCursorRepository:
    """Repository for per-account ingestion cursors."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, account: str) -> tuple[int, str] | None:
        result = await self.session.execute(
            select(IngestionCursorModel).where(IngestionCursorModel.account == account)
        )
        model = result.scalar_one_or_none()
        return (model.last_lt, model.last_tx_hash) if model else None

    async def upsert(self, account: str, *, last_lt: int, last_tx_hash: str) -> None:
        """Advance the cursor; it never moves backwards."""
        now = datetime.now(UTC)
        stmt = _insert(self.session, IngestionCursorModel).values(
            account=account, last_lt=last_lt, last_tx_hash=last_tx_hash, updated_at=now
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["account"],
            set_={"last_lt": stmt.excluded.last_lt, "last_tx_hash": stmt.excluded.last_tx_hash, "updated_at": now},
            where=IngestionCursorModel.last_lt < stmt.excluded.last_lt,
        )
        await self.session.execute(stmt)


@dataclass
class DepositProcessingErrorDTO:
    tx_hash: str
    stage: str
    error_type: str
    message: str
    created_at: datetime | None = None


class DepositProcessingErrorRepository:
    """Repository for per-transaction ingestion failures."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: DepositProcessingErrorDTO) -> None:
        self.session.add(
            DepositProcessingErrorModel(
                tx_hash=dto.tx_hash,
                stage=dto.stage,
                error_type=dto.error_type,
                message=dto.message[:2000],
                created_at=dto.created_at or datetime.now(UTC),
            )
        )
        await self.session.flush()

    async def list_for_tx(self, tx_hash: str) -> list[DepositProcessingErrorDTO]:
        result = await self.session.execute(
            select(DepositProcessingErrorModel)
            .where(DepositProcessingErrorModel.tx_hash == tx_hash)
            .order_by(DepositProcessingErrorModel.id)
        )
        return [
            DepositProcessingErrorDTO(
                tx_hash=m.tx_hash,
                stage=m.stage,
                error_type=m.error_type,
                message=m.message,
                created_at=_as_utc(m.created_at),
            )
            for m in result.scalars().all()
        ]
