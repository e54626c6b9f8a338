"""Deposit detection, validation and confirmation.

Transactions arriving on watched accounts are recorded once per hash,
validated, and credited to the owning user's ledger after enough
confirmations. Every step is keyed on the transaction hash so the chain
client may redeliver the same transaction any number of times.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from highload_settlement.errors import ValidationRejected
from highload_settlement.settlement.allocator import SessionFactory
from highload_settlement.settlement.models import (
    AdvanceResult,
    ConfirmationMode,
    DepositStatus,
    IngestResult,
    RejectReason,
)
from highload_settlement.storage.repos import (
    DepositProcessingErrorDTO,
    DepositProcessingErrorRepository,
    DepositRecordDTO,
    DepositRepository,
    LedgerRepository,
    UserAccountRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from highload_settlement.ton.models import ChainTransaction

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_MIN_AMOUNT = 1_000_000_000  # 1 TON in nanotons
DEFAULT_MIN_CONFIRMATIONS = 3
DEFAULT_BLOCK_INTERVAL_SECONDS = 5.0
DEFAULT_COMMENT_PATTERN = r"^(?:DEPOSIT:)?(?P<user_id>[A-Za-z0-9_\-]{1,64})$"
DEFAULT_OUTSTANDING_LIMIT = 500


class DepositPipeline:
    """Exactly-once deposit crediting over a redeliverable transaction stream.

    Records move SEEN -> VALIDATED -> PENDING_CONFIRMATION -> CREDITED, or
    SEEN -> REJECTED. Status changes are compare-and-set updates, and the
    ledger credit is unique on the transaction hash, so a record is credited
    at most once even if two workers race.

    ``observe``, ``ingest`` and ``advance`` share one lock; within a
    process the pipeline is confined to a single task at a time.
    """

    def __init__(
        self,
        sessions: SessionFactory,
        *,
        min_amount: int = DEFAULT_MIN_AMOUNT,
        min_confirmations: int = DEFAULT_MIN_CONFIRMATIONS,
        confirmation_mode: ConfirmationMode | str = ConfirmationMode.SEQNO,
        block_interval_seconds: float = DEFAULT_BLOCK_INTERVAL_SECONDS,
        comment_pattern: str = DEFAULT_COMMENT_PATTERN,
    ) -> None:
        """Initialize the pipeline.

        Args:
            sessions: Factory returning a transactional session scope.
            min_amount: Smallest accepted deposit, in nanotons.
            min_confirmations: Confirmations required before crediting.
            confirmation_mode: ``seqno`` counts masterchain blocks since the
                deposit was observed; ``time`` divides elapsed seconds by
                ``block_interval_seconds``.
            block_interval_seconds: Assumed block interval for ``time`` mode.
            comment_pattern: Regex with a ``user_id`` group, matched against
                the text comment when the addresses do not identify the user.
        """
        if min_amount < 0:
            raise ValueError("min_amount must not be negative")
        if min_confirmations < 0:
            raise ValueError("min_confirmations must not be negative")
        if block_interval_seconds <= 0:
            raise ValueError("block_interval_seconds must be positive")
        pattern = re.compile(comment_pattern)
        if "user_id" not in pattern.groupindex:
            raise ValueError("comment_pattern must define a 'user_id' group")

        self._sessions = sessions
        self.min_amount = min_amount
        self.min_confirmations = min_confirmations
        self.confirmation_mode = ConfirmationMode(confirmation_mode)
        self.block_interval_seconds = block_interval_seconds
        self._comment_pattern = pattern
        self._lock = asyncio.Lock()

    # =========================================================================
    # Observation
    # =========================================================================

    async def observe(
        self,
        tx: ChainTransaction,
        *,
        now: datetime | None = None,
        current_seqno: int | None = None,
    ) -> DepositRecordDTO | None:
        """Record and validate one transaction.

        Re-observing a known hash returns the stored record unchanged.

        Returns:
            The deposit record, or None if the transaction is not an
            incoming internal transfer.
        """
        async with self._lock:
            record, _ = await self._observe(tx, now or datetime.now(UTC), current_seqno)
        return record

    async def ingest(
        self,
        transactions: Iterable[ChainTransaction],
        *,
        now: datetime | None = None,
        current_seqno: int | None = None,
    ) -> IngestResult:
        """Observe a batch of transactions, isolating per-transaction failures.

        Transactions are processed in logical time order. A transaction that
        raises is logged, stored as a processing error and skipped; the rest
        of the batch is still processed. ``last_lt`` stops just before the
        first failure so a cursor saved from it re-fetches the failed
        transaction on the next poll.
        """
        result = IngestResult()
        now = now or datetime.now(UTC)

        async with self._lock:
            for tx in sorted(transactions, key=lambda t: t.lt):
                try:
                    record, created = await self._observe(tx, now, current_seqno)
                except Exception as e:
                    result.failed += 1
                    logger.exception("Failed to process transaction %s", tx.tx_hash)
                    await self._record_failure(tx.tx_hash, "observe", e)
                    continue

                if not result.failed:
                    result.last_lt = tx.lt
                    result.last_tx_hash = tx.tx_hash

                if record is None:
                    result.ignored += 1
                    continue
                result.observed += 1
                if not created:
                    result.duplicates += 1
                elif record.status == DepositStatus.REJECTED.value:
                    result.rejected += 1
                else:
                    result.pending += 1

        if result.observed or result.failed:
            logger.info(
                "Ingested %d transactions: %d new pending, %d rejected, %d duplicate, %d failed",
                result.observed,
                result.pending,
                result.rejected,
                result.duplicates,
                result.failed,
            )
        return result

    async def _observe(
        self,
        tx: ChainTransaction,
        now: datetime,
        current_seqno: int | None,
    ) -> tuple[DepositRecordDTO | None, bool]:
        if not tx.is_incoming_internal:
            logger.debug("Ignoring non-internal transaction %s", tx.tx_hash)
            return None, False

        async with self._sessions() as session:
            repo = DepositRepository(session)
            existing = await repo.get(tx.tx_hash)
            if existing is not None:
                logger.debug("Transaction %s already recorded as %s", tx.tx_hash, existing.status)
                return existing, False

            seen = DepositRecordDTO(
                tx_hash=tx.tx_hash,
                lt=tx.lt,
                account=tx.account,
                sender=tx.sender,
                amount=tx.amount,
                comment=tx.comment,
                user_id=None,
                status=DepositStatus.SEEN.value,
                observed_at=now,
                observed_seqno=tx.mc_block_seqno if tx.mc_block_seqno is not None else current_seqno,
            )
            if not await repo.insert_if_absent(seen):
                # Another worker recorded it between the read and the insert
                return await repo.get(tx.tx_hash), False

            try:
                user_id = await self._validate(session, tx)
            except ValidationRejected as e:
                await repo.transition(
                    tx.tx_hash,
                    from_status=DepositStatus.SEEN.value,
                    to_status=DepositStatus.REJECTED.value,
                    reject_reason=e.reason,
                )
                logger.info(
                    "Rejected deposit %s (%d nanotons from %s): %s",
                    tx.tx_hash,
                    tx.amount,
                    tx.sender,
                    e.reason,
                )
            else:
                await repo.transition(
                    tx.tx_hash,
                    from_status=DepositStatus.SEEN.value,
                    to_status=DepositStatus.VALIDATED.value,
                    user_id=user_id,
                )
                await repo.transition(
                    tx.tx_hash,
                    from_status=DepositStatus.VALIDATED.value,
                    to_status=DepositStatus.PENDING_CONFIRMATION.value,
                )
                logger.info(
                    "Deposit %s of %d nanotons for user %s awaiting confirmation",
                    tx.tx_hash,
                    tx.amount,
                    user_id,
                )

            return await repo.get(tx.tx_hash), True

    async def _validate(self, session: AsyncSession, tx: ChainTransaction) -> str:
        """Return the owning user id, or raise ValidationRejected."""
        if tx.amount < self.min_amount:
            raise ValidationRejected(tx.tx_hash, RejectReason.BELOW_MINIMUM.value)
        if tx.aborted or tx.bounced:
            raise ValidationRejected(tx.tx_hash, RejectReason.ABORTED.value)

        user_id = await self.resolve_user(session, tx)
        if user_id is None:
            raise ValidationRejected(tx.tx_hash, RejectReason.UNIDENTIFIED.value)
        return user_id

    async def resolve_user(self, session: AsyncSession, tx: ChainTransaction) -> str | None:
        """Find the user a deposit belongs to.

        Checked in order: the sender against allocated deposit addresses, the
        receiving account against allocated deposit addresses, then the text
        comment against the configured pattern. A comment only resolves to a
        user that has an allocation.
        """
        accounts = UserAccountRepository(session)
        for candidate in (tx.sender, tx.account):
            if not candidate:
                continue
            account = await accounts.get_by_address(candidate)
            if account is not None:
                return account.user_id

        if tx.comment:
            match = self._comment_pattern.match(tx.comment.strip())
            if match:
                account = await accounts.get(match.group("user_id"))
                if account is not None:
                    return account.user_id
        return None

    async def _record_failure(self, tx_hash: str, stage: str, error: Exception) -> None:
        try:
            async with self._sessions() as session:
                await DepositProcessingErrorRepository(session).insert(
                    DepositProcessingErrorDTO(
                        tx_hash=tx_hash,
                        stage=stage,
                        error_type=type(error).__name__,
                        message=str(error) or repr(error),
                    )
                )
        except Exception:
            logger.exception("Failed to store processing error for %s", tx_hash)

    # =========================================================================
    # Confirmation
    # =========================================================================

    def confirmations_for(
        self,
        record: DepositRecordDTO,
        *,
        now: datetime,
        current_seqno: int | None,
    ) -> int:
        """Confirmation count of a record under the configured mode."""
        if self.confirmation_mode is ConfirmationMode.SEQNO:
            if current_seqno is None or record.observed_seqno is None:
                return 0
            return max(0, current_seqno - record.observed_seqno)

        elapsed = (now - record.observed_at).total_seconds()
        return max(0, int(elapsed // self.block_interval_seconds))

    async def advance(
        self,
        *,
        now: datetime | None = None,
        current_seqno: int | None = None,
    ) -> AdvanceResult:
        """Update confirmation counters and credit records that reached the threshold.

        Args:
            now: Reference time for ``time`` mode.
            current_seqno: Latest masterchain seqno, required in ``seqno`` mode.

        Raises:
            ValueError: If ``current_seqno`` is missing in ``seqno`` mode.
        """
        if self.confirmation_mode is ConfirmationMode.SEQNO and current_seqno is None:
            raise ValueError("current_seqno is required in seqno confirmation mode")
        now = now or datetime.now(UTC)
        result = AdvanceResult()

        async with self._lock:
            async with self._sessions() as session:
                outstanding = await DepositRepository(session).list_by_status(
                    DepositStatus.PENDING_CONFIRMATION.value, limit=DEFAULT_OUTSTANDING_LIMIT
                )

            for record in outstanding:
                result.checked += 1
                try:
                    if await self._advance_one(record, now, current_seqno):
                        result.credited += 1
                except Exception:
                    result.failed += 1
                    logger.exception("Failed to advance deposit %s", record.tx_hash)

        if result.credited or result.failed:
            logger.info(
                "Confirmation pass: %d checked, %d credited, %d failed",
                result.checked,
                result.credited,
                result.failed,
            )
        return result

    async def _advance_one(self, record: DepositRecordDTO, now: datetime, current_seqno: int | None) -> bool:
        pending = DepositStatus.PENDING_CONFIRMATION.value

        async with self._sessions() as session:
            repo = DepositRepository(session)

            if (
                self.confirmation_mode is ConfirmationMode.SEQNO
                and record.observed_seqno is None
                and current_seqno is not None
            ):
                # Observed without a seqno; count from the first pass that has one
                await repo.transition(
                    record.tx_hash, from_status=pending, to_status=pending, observed_seqno=current_seqno
                )
                return False

            confirmations = self.confirmations_for(record, now=now, current_seqno=current_seqno)
            if confirmations < self.min_confirmations:
                if confirmations != record.confirmations:
                    await repo.set_confirmations(record.tx_hash, status=pending, confirmations=confirmations)
                return False

            moved = await repo.transition(
                record.tx_hash,
                from_status=pending,
                to_status=DepositStatus.CREDITED.value,
                confirmations=confirmations,
                credited_at=now,
            )
            if not moved:
                logger.debug("Deposit %s left the pending set concurrently", record.tx_hash)
                return False

            if record.user_id is None:
                raise RuntimeError(f"pending deposit {record.tx_hash} has no user")
            credited = await LedgerRepository(session).credit(
                user_id=record.user_id,
                amount=record.amount,
                reference=record.tx_hash,
            )
            if not credited:
                logger.warning("Ledger already holds a credit for deposit %s", record.tx_hash)
                return False

        logger.info(
            "Credited %d nanotons to user %s for deposit %s after %d confirmations",
            record.amount,
            record.user_id,
            record.tx_hash,
            confirmations,
        )
        return True

    async def outstanding(self, *, limit: int = DEFAULT_OUTSTANDING_LIMIT) -> list[DepositRecordDTO]:
        """Records still waiting for confirmations, oldest first."""
        async with self._sessions() as session:
            return await DepositRepository(session).list_by_status(
                DepositStatus.PENDING_CONFIRMATION.value, limit=limit
            )

    async def status_counts(self) -> dict[str, int]:
        async with self._sessions() as session:
            return await DepositRepository(session).count_by_status()
