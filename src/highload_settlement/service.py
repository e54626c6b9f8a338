"""Settlement service orchestrator.

This module provides the SettlementService class that wires together the
allocator, deposit pipeline and withdrawal batcher and runs their
background loops.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from redis.asyncio import Redis

from highload_settlement.config import Settings, get_settings
from highload_settlement.errors import SequenceExhausted, TransientIOFailure
from highload_settlement.settlement.allocator import SessionFactory, SubwalletAllocator
from highload_settlement.settlement.deposits import DepositPipeline
from highload_settlement.settlement.models import ConfirmationMode
from highload_settlement.settlement.withdrawals import BatchSender, WithdrawalBatcher
from highload_settlement.storage.database import DatabaseManager
from highload_settlement.storage.repos import IngestionCursorRepository, UserAccountRepository
from highload_settlement.ton.address import Address
from highload_settlement.ton.cells import CellRef
from highload_settlement.ton.client import ToncenterClient

logger = logging.getLogger(__name__)

# Transient failures stretch the loop interval up to this ceiling
MAX_BACKOFF_SECONDS = 300.0


def build_allocator(settings: Settings, sessions: SessionFactory) -> SubwalletAllocator:
    """Subwallet allocator configured from settings.

    The hot wallet's own subwallet id is never handed to a user.
    """
    return SubwalletAllocator(
        sessions,
        public_key=settings.ton.public_key,
        code=CellRef(settings.ton.wallet_code_hash, settings.ton.wallet_code_depth),
        base_id=settings.subwallet.base_id,
        timeout_seconds=settings.subwallet.timeout_seconds,
        max_attempts=settings.subwallet.max_attempts,
        reserved_ids=(settings.withdrawal.subwallet_id,),
        testnet=settings.ton.testnet,
    )


class ServiceState(str, Enum):
    """Service lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class ServiceStats:
    """Statistics for the service."""

    started_at: datetime | None = None
    ingestion_passes: int = 0
    deposits_observed: int = 0
    deposits_credited: int = 0
    batches_submitted: int = 0
    withdrawals_submitted: int = 0
    errors: int = 0
    last_error: str | None = None


class SettlementService:
    """Runs deposit ingestion, confirmation and batch withdrawals.

    Service flow:
        toncenter -> DepositPipeline.ingest -> DepositPipeline.advance -> ledger
        pending withdrawals -> WithdrawalBatcher.build_batch -> BatchSender

    Stopping is cooperative: each loop finishes the item it is working on
    and exits at its next wait.

    Example:
        ```python
        service = SettlementService(get_settings(), sender=signer)
        await service.start()
        allocation = await service.allocator.allocate("user_alice")
        await service.stop()
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        sender: BatchSender | None = None,
        db_manager: DatabaseManager | None = None,
        chain_client: ToncenterClient | None = None,
        redis: Redis | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            sender: Signer for withdrawal batches. Without one the withdrawal
                loop is not started.
            db_manager: Pre-built database manager (tests inject SQLite).
            chain_client: Pre-built chain client (tests inject a stub).
            redis: Pre-built Redis client.
        """
        self._settings = settings or get_settings()
        self._sender = sender

        self._state = ServiceState.STOPPED
        self._stats = ServiceStats()

        self._db_manager = db_manager
        self._chain_client = chain_client
        self._redis = redis
        self._owns_db = db_manager is None
        self._owns_chain_client = chain_client is None
        self._owns_redis = redis is None

        # Components (initialized in start())
        self._allocator: SubwalletAllocator | None = None
        self._deposits: DepositPipeline | None = None
        self._withdrawals: WithdrawalBatcher | None = None

        # Synchronization
        self._stop_event: asyncio.Event | None = None
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def state(self) -> ServiceState:
        """Current service state."""
        return self._state

    @property
    def stats(self) -> ServiceStats:
        """Current service statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state == ServiceState.RUNNING

    @property
    def allocator(self) -> SubwalletAllocator:
        if self._allocator is None:
            raise RuntimeError("Service is not started")
        return self._allocator

    @property
    def deposits(self) -> DepositPipeline:
        if self._deposits is None:
            raise RuntimeError("Service is not started")
        return self._deposits

    @property
    def withdrawals(self) -> WithdrawalBatcher | None:
        return self._withdrawals

    async def start(self) -> None:
        """Start the service.

        Raises:
            RuntimeError: If the service is already running.
            Exception: If any component fails to initialize.
        """
        if self._state != ServiceState.STOPPED:
            raise RuntimeError(f"Cannot start service in state {self._state}")

        self._state = ServiceState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting settlement service...")

        try:
            await self._initialize_components()
            self._start_background_loops()
            self._stats.started_at = datetime.now(UTC)
            self._state = ServiceState.RUNNING
            logger.info("Settlement service started")
        except Exception as e:
            self._state = ServiceState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start settlement service: %s", e)
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop the service gracefully."""
        if self._state == ServiceState.STOPPED:
            return

        self._state = ServiceState.STOPPING
        logger.info("Stopping settlement service...")

        if self._stop_event:
            self._stop_event.set()

        await self._stop_background_loops()
        await self._cleanup()

        self._state = ServiceState.STOPPED
        logger.info("Settlement service stopped")

    async def _initialize_components(self) -> None:
        settings = self._settings

        if self._redis is None and settings.redis.url:
            logger.debug("Initializing Redis connection...")
            self._redis = Redis.from_url(settings.redis.url)

        if self._db_manager is None:
            logger.debug("Initializing database manager...")
            self._db_manager = DatabaseManager(settings.database.url)

        if self._chain_client is None:
            logger.debug("Initializing toncenter client...")
            api_key = settings.ton.api_key.get_secret_value() if settings.ton.api_key else None
            self._chain_client = ToncenterClient(settings.ton.api_url, api_key=api_key, redis=self._redis)

        sessions = self._db_manager.get_async_session
        wallet_address = Address.parse(settings.ton.wallet_address).to_raw()

        self._allocator = build_allocator(settings, sessions)
        self._deposits = DepositPipeline(
            sessions,
            min_amount=settings.deposit.min_amount,
            min_confirmations=settings.deposit.min_confirmations,
            confirmation_mode=settings.deposit.confirmation_mode,
            block_interval_seconds=settings.deposit.block_interval_seconds,
            comment_pattern=settings.deposit.comment_pattern,
        )

        if settings.withdrawals_enabled and self._sender is not None:
            self._withdrawals = WithdrawalBatcher(
                sessions,
                self._sender,
                wallet_address=wallet_address,
                subwallet_id=settings.withdrawal.subwallet_id,
                timeout_seconds=settings.withdrawal.timeout_seconds,
                query_id_capacity=settings.withdrawal.query_id_capacity,
                redis=self._redis,
                lock_timeout_seconds=settings.withdrawal.lock_timeout_seconds,
            )
        elif settings.withdrawals_enabled:
            logger.warning("No batch sender configured; withdrawal loop disabled")

    def _start_background_loops(self) -> None:
        deposit = self._settings.deposit
        self._tasks.append(
            asyncio.create_task(self._run_loop("ingestion", deposit.poll_interval_seconds, self.ingest_once))
        )
        self._tasks.append(
            asyncio.create_task(
                self._run_loop("confirmation", deposit.confirm_interval_seconds, self.confirm_once)
            )
        )
        if self._withdrawals is not None:
            self._tasks.append(
                asyncio.create_task(
                    self._run_loop(
                        "withdrawal",
                        self._settings.withdrawal.batch_interval_seconds,
                        self.withdraw_once,
                    )
                )
            )

    async def _run_loop(self, name: str, interval: float, step: Callable[[], Awaitable[None]]) -> None:
        if not self._stop_event:
            return

        delay = interval
        while not self._stop_event.is_set():
            try:
                await step()
                delay = interval
            except TransientIOFailure as e:
                delay = min(delay * 2, MAX_BACKOFF_SECONDS)
                self._record_error(e)
                logger.warning("%s loop: transient failure, retrying in %.0fs: %s", name, delay, e)
            except SequenceExhausted as e:
                self._record_error(e)
                logger.error("%s loop: %s", name, e)
            except Exception as e:
                self._record_error(e)
                logger.exception("%s loop error", name)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                break
            except TimeoutError:
                pass

    def _record_error(self, error: Exception) -> None:
        self._stats.errors += 1
        self._stats.last_error = str(error)

    async def _stop_background_loops(self) -> None:
        for task in self._tasks:
            try:
                await asyncio.wait_for(task, timeout=self._settings.withdrawal.lock_timeout_seconds)
            except TimeoutError:
                logger.warning("Background loop did not stop in time; cancelling")
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._tasks = []

    async def _cleanup(self) -> None:
        if self._chain_client and self._owns_chain_client:
            await self._chain_client.close()
            self._chain_client = None

        if self._db_manager and self._owns_db:
            await self._db_manager.dispose_async()
            self._db_manager = None

        if self._redis and self._owns_redis:
            await self._redis.aclose()
            self._redis = None

        logger.debug("Resources cleaned up")

    # =========================================================================
    # Loop steps
    # =========================================================================

    async def _current_seqno(self) -> int | None:
        if self.deposits.confirmation_mode is not ConfirmationMode.SEQNO:
            return None
        return await self._require_chain_client().get_masterchain_seqno()

    def _require_chain_client(self) -> ToncenterClient:
        if self._chain_client is None:
            raise RuntimeError("Service is not started")
        return self._chain_client

    def _require_db(self) -> DatabaseManager:
        if self._db_manager is None:
            raise RuntimeError("Service is not started")
        return self._db_manager

    async def _watched_accounts(self) -> list[str]:
        """The hot wallet (comment-tagged deposits) followed by every deposit subwallet."""
        hot_wallet = Address.parse(self._settings.ton.wallet_address).to_raw()
        async with self._require_db().get_async_session() as session:
            allocated = [a.address for a in await UserAccountRepository(session).list_all()]
        return [hot_wallet] + [a for a in allocated if a != hot_wallet]

    async def ingest_once(self) -> None:
        """Poll every watched account once and feed new transactions to the pipeline."""
        db = self._require_db()
        chain_client = self._require_chain_client()
        accounts = await self._watched_accounts()

        page_size = self._settings.deposit.page_size
        for account in accounts:
            if self._stop_event and self._stop_event.is_set():
                break

            async with db.get_async_session() as session:
                cursor = await IngestionCursorRepository(session).get(account)
            transactions = await chain_client.get_transactions(
                account, limit=page_size, after_lt=cursor[0] if cursor else None
            )
            if not transactions:
                continue

            result = await self.deposits.ingest(transactions, current_seqno=await self._current_seqno())
            self._stats.deposits_observed += result.observed - result.duplicates

            if result.last_lt is not None and result.last_tx_hash is not None:
                async with db.get_async_session() as session:
                    await IngestionCursorRepository(session).upsert(
                        account, last_lt=result.last_lt, last_tx_hash=result.last_tx_hash
                    )

        self._stats.ingestion_passes += 1

    async def confirm_once(self) -> None:
        """Run one confirmation pass over outstanding deposits."""
        result = await self.deposits.advance(current_seqno=await self._current_seqno())
        self._stats.deposits_credited += result.credited

    async def withdraw_once(self) -> None:
        """Retry unsent batches, then drain the pending queue in full batches."""
        if self._withdrawals is None:
            return

        for batch in await self._withdrawals.unsent_batches():
            if batch.id is None:
                raise RuntimeError("Unsent batch without an id")
            result = await self._withdrawals.resubmit(batch.id)
            if result.submitted:
                self._stats.batches_submitted += 1
                self._stats.withdrawals_submitted += len(result)

        max_size = self._settings.withdrawal.max_batch_size
        while not (self._stop_event and self._stop_event.is_set()):
            result = await self._withdrawals.build_batch(max_size)
            if result.submitted:
                self._stats.batches_submitted += 1
                self._stats.withdrawals_submitted += len(result)
            if len(result.items) < max_size:
                break

    async def run(self) -> None:
        """Start the service and run until stopped or cancelled."""
        await self.start()

        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> SettlementService:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()
