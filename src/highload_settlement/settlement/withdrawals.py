"""Batch withdrawal assembly and submission.

Pending withdrawal requests are grouped into batches of at most 254
transfers, the Highload Wallet V3 per-message ceiling. Each batch consumes
exactly one query id, which is reserved and persisted before the batch is
handed to the signer, so a crash never leads to an id being reused.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Protocol

from redis.exceptions import LockError

from highload_settlement.errors import AddressParseFailed, TransientIOFailure
from highload_settlement.settlement.allocator import SessionFactory
from highload_settlement.settlement.models import BatchResult, BatchStatus, ItemResult, WithdrawalStatus
from highload_settlement.settlement.sequencer import SequencerStore
from highload_settlement.storage.repos import (
    WithdrawalBatchDTO,
    WithdrawalBatchRepository,
    WithdrawalRepository,
    WithdrawalRequestDTO,
)
from highload_settlement.ton.address import Address
from highload_settlement.ton.models import OutboundTransfer
from highload_settlement.ton.query_id import MAX_QUERY_ID_COUNT, QueryId

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 254

# Default configuration
DEFAULT_TIMEOUT_SECONDS = 3600
DEFAULT_LOCK_TIMEOUT_SECONDS = 60.0

WRITER_LOCK_KEY = "highload:wallet:{wallet}:writer"
BATCH_EXPIRED_REASON = "batch expired before acceptance; reconcile on chain"


def withdrawal_comment(withdrawal_id: str) -> str:
    return f"Withdrawal: {withdrawal_id}"


class BatchSender(Protocol):
    """Signs and broadcasts one Highload Wallet V3 batch.

    Implementations live with the key custody layer. Raising from
    ``send_batch`` means the batch was not accepted for broadcast.
    """

    async def send_batch(
        self,
        transfers: Sequence[OutboundTransfer],
        subwallet_id: int,
        query_id: QueryId,
        timeout: int,
        created_at: datetime,
    ) -> None: ...


class WithdrawalBatcher:
    """Builds, submits and tracks withdrawal batches for one hot wallet.

    Only one writer may submit for a wallet at a time. Within a process this
    is an ``asyncio.Lock``; across processes an optional Redis lock keyed by
    the wallet address is held for the duration of each build or resubmit.
    """

    def __init__(
        self,
        sessions: SessionFactory,
        sender: BatchSender,
        *,
        wallet_address: str,
        subwallet_id: int,
        timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
        query_id_capacity: int = MAX_QUERY_ID_COUNT,
        redis: Redis | None = None,
        lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
    ) -> None:
        """Initialize the batcher.

        Args:
            sessions: Factory returning a transactional session scope.
            sender: Signer/broadcaster for finished batches.
            wallet_address: Raw address of the hot wallet.
            subwallet_id: Subwallet id of the hot wallet.
            timeout_seconds: Timeout window of the hot wallet.
            query_id_capacity: Query ids available per timeout window.
            redis: Optional Redis client for the cross-process writer lock.
            lock_timeout_seconds: Expiry and wait limit of the Redis lock.
        """
        self._sessions = sessions
        self._sender = sender
        self.wallet_address = wallet_address
        self.subwallet_id = subwallet_id
        self.timeout_seconds = timeout_seconds
        self._store = SequencerStore(wallet_address, timeout_seconds, capacity=query_id_capacity)
        self._redis = redis
        self._lock_timeout = lock_timeout_seconds
        self._lock = asyncio.Lock()

    @property
    def writer_lock_key(self) -> str:
        return WRITER_LOCK_KEY.format(wallet=self.wallet_address)

    @asynccontextmanager
    async def _writer(self) -> AsyncIterator[None]:
        async with self._lock:
            if self._redis is None:
                yield
                return
            lock = self._redis.lock(
                self.writer_lock_key,
                timeout=self._lock_timeout,
                blocking_timeout=self._lock_timeout,
            )
            if not await lock.acquire():
                raise TransientIOFailure(f"Writer lock for wallet {self.wallet_address} is held elsewhere")
            try:
                yield
            finally:
                try:
                    await lock.release()
                except LockError:
                    logger.warning("Writer lock for wallet %s expired while held", self.wallet_address)

    # =========================================================================
    # Requests
    # =========================================================================

    async def enqueue(
        self,
        withdrawal_id: str,
        user_id: str,
        destination: str,
        amount: int,
    ) -> bool:
        """Queue a withdrawal request. Idempotent by ``withdrawal_id``.

        The destination is stored as given and parsed when the batch is
        built, so a malformed address only fails its own request.

        Returns:
            True if the request was new.
        """
        if not withdrawal_id or not user_id:
            raise ValueError("withdrawal_id and user_id are required")
        if amount <= 0:
            raise ValueError("amount must be positive")

        async with self._sessions() as session:
            created = await WithdrawalRepository(session).insert_if_absent(
                WithdrawalRequestDTO(
                    withdrawal_id=withdrawal_id,
                    user_id=user_id,
                    destination=destination,
                    amount=amount,
                    status=WithdrawalStatus.PENDING.value,
                )
            )
        if created:
            logger.info("Queued withdrawal %s: %d nanotons for user %s", withdrawal_id, amount, user_id)
        else:
            logger.debug("Withdrawal %s already queued", withdrawal_id)
        return created

    def _to_transfer(self, request: WithdrawalRequestDTO) -> ItemResult:
        try:
            destination = Address.parse(request.destination)
        except AddressParseFailed as e:
            logger.warning("Withdrawal %s has an invalid destination: %s", request.withdrawal_id, e)
            return ItemResult(request.withdrawal_id, ok=False, error=f"AddressParseFailed: {e.detail}")

        return ItemResult(
            request.withdrawal_id,
            ok=True,
            transfer=OutboundTransfer(
                destination=dataclasses.replace(destination, bounceable=False),
                amount=request.amount,
                comment=withdrawal_comment(request.withdrawal_id),
                bounce=False,
                withdrawal_id=request.withdrawal_id,
            ),
        )

    # =========================================================================
    # Batches
    # =========================================================================

    async def build_batch(self, max_size: int = MAX_BATCH_SIZE, *, now: datetime | None = None) -> BatchResult:
        """Assemble the oldest pending requests into one batch and submit it.

        Requests with an unparseable destination are marked FAILED and
        reported in ``BatchResult.items``; they never take the rest of the
        batch down. If no valid transfer remains, no query id is consumed.

        Raises:
            ValueError: If ``max_size`` is outside 1..254.
            SequenceExhausted: If the wallet's query id window is used up.
        """
        if not 1 <= max_size <= MAX_BATCH_SIZE:
            raise ValueError(f"max_size must be in [1, {MAX_BATCH_SIZE}], got {max_size}")
        now = now or datetime.now(UTC)

        async with self._writer():
            async with self._sessions() as session:
                requests = WithdrawalRepository(session)
                pending = await requests.list_pending(WithdrawalStatus.PENDING.value, limit=max_size)

                items = [self._to_transfer(request) for request in pending]
                for item in items:
                    if not item.ok:
                        await requests.transition(
                            [item.withdrawal_id],
                            from_status=WithdrawalStatus.PENDING.value,
                            to_status=WithdrawalStatus.FAILED.value,
                            failure_reason=item.error,
                        )

                transfers = [item.transfer for item in items if item.transfer is not None]
                if not transfers:
                    if items:
                        logger.warning("No valid transfers among %d pending withdrawals", len(items))
                    return BatchResult(items=items)

                query_id, window_id = await self._store.reserve(session, now=now)
                batch = await WithdrawalBatchRepository(session).insert(
                    WithdrawalBatchDTO(
                        wallet_address=self.wallet_address,
                        subwallet_id=self.subwallet_id,
                        timeout_seconds=self.timeout_seconds,
                        query_id=query_id.query_id,
                        window_id=window_id,
                        item_count=len(transfers),
                        status=BatchStatus.RESERVED.value,
                        created_at=now,
                    )
                )
                await requests.transition(
                    [t.withdrawal_id for t in transfers if t.withdrawal_id],
                    from_status=WithdrawalStatus.PENDING.value,
                    to_status=WithdrawalStatus.BATCHED.value,
                    batch_id=batch.id,
                )

            if batch.id is None:
                raise RuntimeError("Batch insert did not assign an id")
            logger.info(
                "Built batch %d: %d transfers under query id %s (window %d)",
                batch.id,
                len(transfers),
                query_id,
                window_id,
            )
            await self._submit(batch.id, transfers, query_id, now)

        return BatchResult(
            transfers=transfers,
            items=items,
            query_id=query_id,
            batch_id=batch.id,
            created_at=now,
            submitted=True,
        )

    async def _submit(
        self,
        batch_id: int,
        transfers: list[OutboundTransfer],
        query_id: QueryId,
        created_at: datetime,
    ) -> None:
        try:
            await self._sender.send_batch(
                transfers,
                subwallet_id=self.subwallet_id,
                query_id=query_id,
                timeout=self.timeout_seconds,
                created_at=created_at,
            )
        except Exception as e:
            logger.error("Batch %d (query id %s) was not accepted: %s", batch_id, query_id, e)
            async with self._sessions() as session:
                await WithdrawalBatchRepository(session).set_status(
                    batch_id, BatchStatus.SEND_FAILED.value, last_error=str(e) or repr(e)
                )
            raise

        async with self._sessions() as session:
            await WithdrawalBatchRepository(session).set_status(
                batch_id, BatchStatus.SUBMITTED.value, submitted_at=datetime.now(UTC), last_error=None
            )
            moved = await WithdrawalRepository(session).transition(
                [t.withdrawal_id for t in transfers if t.withdrawal_id],
                from_status=WithdrawalStatus.BATCHED.value,
                to_status=WithdrawalStatus.SUBMITTED.value,
            )
        logger.info("Submitted batch %d: %d withdrawals", batch_id, moved)

    async def resubmit(self, batch_id: int, *, now: datetime | None = None) -> BatchResult:
        """Send an unaccepted batch again under its original query id.

        Only possible while the batch is inside its timeout window; a batch
        past the window is marked EXPIRED and its requests FAILED so they can
        be reconciled against the chain instead of being paid twice.

        Raises:
            LookupError: If the batch does not exist.
            ValueError: If the batch is not awaiting (re)submission.
        """
        now = now or datetime.now(UTC)

        async with self._writer():
            async with self._sessions() as session:
                batches = WithdrawalBatchRepository(session)
                batch = await batches.get(batch_id)
                if batch is None:
                    raise LookupError(f"batch {batch_id} not found")
                if batch.status not in (BatchStatus.RESERVED.value, BatchStatus.SEND_FAILED.value):
                    raise ValueError(f"batch {batch_id} is {batch.status}, not resubmittable")

                requests = await WithdrawalRepository(session).list_by_batch(batch_id)
                batched = [r for r in requests if r.status == WithdrawalStatus.BATCHED.value]

                if now - batch.created_at >= timedelta(seconds=batch.timeout_seconds):
                    await batches.set_status(batch_id, BatchStatus.EXPIRED.value)
                    await WithdrawalRepository(session).transition(
                        [r.withdrawal_id for r in batched],
                        from_status=WithdrawalStatus.BATCHED.value,
                        to_status=WithdrawalStatus.FAILED.value,
                        failure_reason=BATCH_EXPIRED_REASON,
                    )
                    logger.warning(
                        "Batch %d expired with %d withdrawals; marked failed for reconciliation",
                        batch_id,
                        len(batched),
                    )
                    return BatchResult(
                        items=[ItemResult(r.withdrawal_id, ok=False, error=BATCH_EXPIRED_REASON) for r in batched],
                        query_id=QueryId.from_query_id(batch.query_id),
                        batch_id=batch_id,
                        created_at=batch.created_at,
                    )

            items = [self._to_transfer(r) for r in batched]
            transfers = [item.transfer for item in items if item.transfer is not None]
            query_id = QueryId.from_query_id(batch.query_id)
            logger.info("Resubmitting batch %d under query id %s", batch_id, query_id)
            await self._submit(batch_id, transfers, query_id, batch.created_at)

        return BatchResult(
            transfers=transfers,
            items=items,
            query_id=query_id,
            batch_id=batch_id,
            created_at=batch.created_at,
            submitted=True,
        )

    async def unsent_batches(self) -> list[WithdrawalBatchDTO]:
        """Batches that were reserved or failed to send, oldest first."""
        async with self._sessions() as session:
            repo = WithdrawalBatchRepository(session)
            reserved = await repo.list_by_status(BatchStatus.RESERVED.value)
            failed = await repo.list_by_status(BatchStatus.SEND_FAILED.value)
        return sorted(
            (b for b in reserved + failed if b.wallet_address == self.wallet_address),
            key=lambda b: b.id or 0,
        )

    async def record_confirmation(self, batch_id: int, success: bool, *, reason: str | None = None) -> int:
        """Settle a submitted batch once its on-chain outcome is known.

        Returns:
            Number of withdrawal requests moved to CONFIRMED or FAILED.
        """
        batch_status = BatchStatus.CONFIRMED if success else BatchStatus.FAILED
        request_status = WithdrawalStatus.CONFIRMED if success else WithdrawalStatus.FAILED

        async with self._sessions() as session:
            batches = WithdrawalBatchRepository(session)
            batch = await batches.get(batch_id)
            if batch is None:
                raise LookupError(f"batch {batch_id} not found")
            if batch.status != BatchStatus.SUBMITTED.value:
                logger.debug("Batch %d is %s; confirmation ignored", batch_id, batch.status)
                return 0

            await batches.set_status(batch_id, batch_status.value, last_error=None if success else reason)
            requests = await WithdrawalRepository(session).list_by_batch(batch_id)
            values = {} if success else {"failure_reason": reason or "batch failed on chain"}
            moved = await WithdrawalRepository(session).transition(
                [r.withdrawal_id for r in requests],
                from_status=WithdrawalStatus.SUBMITTED.value,
                to_status=request_status.value,
                **values,
            )

        logger.info("Batch %d %s: %d withdrawals settled", batch_id, batch_status.value, moved)
        return moved

    async def status_counts(self) -> dict[str, int]:
        async with self._sessions() as session:
            return await WithdrawalRepository(session).count_by_status()
