"""SQLAlchemy models for persistent storage.

This module defines the database schema for subwallet allocations, deposit
records, ledger credits, withdrawal requests, batches, and the sequencer
and ingestion cursors.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class UserAccountModel(Base):
    """Per-user deposit subwallet. Rows are never updated once written."""

    __tablename__ = "user_accounts"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    subwallet_id: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)
    address: Mapped[str] = mapped_column(String(70), nullable=False, unique=True)  # raw form
    nonce: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class DepositRecordModel(Base):
    """Incoming transaction tracked through validation and confirmation."""

    __tablename__ = "deposit_records"

    tx_hash: Mapped[str] = mapped_column(String(64), primary_key=True)
    lt: Mapped[int] = mapped_column(BigInteger, nullable=False)
    account: Mapped[str] = mapped_column(String(70), nullable=False)
    sender: Mapped[str | None] = mapped_column(String(70), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(40, 0), nullable=False)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    status: Mapped[str] = mapped_column(String(24), nullable=False)
    reject_reason: Mapped[str | None] = mapped_column(String(40), nullable=True)
    confirmations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    observed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    observed_seqno: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    credited_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        Index("idx_deposit_records_status", "status"),
        Index("idx_deposit_records_user", "user_id"),
    )


class LedgerEntryModel(Base):
    """Balance movement applied to an exchange user.

    ``reference`` is the idempotency key (deposit tx hash), so a credit can
    only ever be written once.
    """

    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(40, 0), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)  # deposit
    reference: Mapped[str] = mapped_column(String(80), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("kind", "reference", name="uq_ledger_entries_reference"),
        Index("idx_ledger_entries_user", "user_id"),
    )


class WithdrawalBatchModel(Base):
    """One signed submission of up to 254 transfers under a single query id."""

    __tablename__ = "withdrawal_batches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wallet_address: Mapped[str] = mapped_column(String(70), nullable=False)
    subwallet_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    timeout_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    query_id: Mapped[int] = mapped_column(Integer, nullable=False)
    window_id: Mapped[int] = mapped_column(Integer, nullable=False)
    item_count: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)  # reserved|submitted|send_failed|...
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "wallet_address", "timeout_seconds", "window_id", "query_id", name="uq_withdrawal_batches_query"
        ),
        Index("idx_withdrawal_batches_status", "status"),
    )


class WithdrawalRequestModel(Base):
    """User withdrawal waiting for, or carried by, a batch."""

    __tablename__ = "withdrawal_requests"

    withdrawal_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    destination: Mapped[str] = mapped_column(String(120), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(40, 0), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    batch_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("withdrawal_batches.id"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        Index("idx_withdrawal_requests_status_created", "status", "created_at"),
        Index("idx_withdrawal_requests_batch", "batch_id"),
    )


class SequencerStateModel(Base):
    """Query id position of one wallet within its current timeout window."""

    __tablename__ = "sequencer_state"

    wallet_address: Mapped[str] = mapped_column(String(70), primary_key=True)
    timeout_seconds: Mapped[int] = mapped_column(Integer, primary_key=True)
    window_id: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    window_started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_issued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class IngestionCursorModel(Base):
    """Last processed transaction of a watched account."""

    __tablename__ = "ingestion_cursors"

    account: Mapped[str] = mapped_column(String(70), primary_key=True)
    last_lt: Mapped[int] = mapped_column(BigInteger, nullable=False)
    last_tx_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )


class DepositProcessingErrorModel(Base):
    """Per-transaction ingestion failures kept for audit and replay."""

    __tablename__ = "deposit_processing_errors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tx_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    stage: Mapped[str] = mapped_column(String(40), nullable=False)
    error_type: Mapped[str] = mapped_column(String(80), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (Index("idx_deposit_processing_errors_tx", "tx_hash"),)
