"""Query id sequencing for Highload Wallet V3.

The wallet contract remembers every query id it processed for up to two
timeout periods and rejects repeats as replays. A sequencer hands out ids in
strictly increasing order and refuses to wrap around: once the window's
space is exhausted the caller has to wait until old ids have been forgotten
and start again from position zero.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from highload_settlement.errors import SequenceExhausted
from highload_settlement.storage.repos import SequencerStateDTO, SequencerStateRepository
from highload_settlement.ton.query_id import MAX_QUERY_ID_COUNT, QueryId

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

# Processed ids live in the contract's current and previous query sets.
WINDOW_RETENTION_FACTOR = 2


class QueryIdSequencer:
    """Strictly increasing query ids for one wallet within one timeout window.

    ``next`` is serialized with a lock, so concurrent producers never see the
    same id. A sequencer belongs to exactly one wallet.
    """

    def __init__(
        self,
        wallet_address: str,
        *,
        position: int = 0,
        capacity: int = MAX_QUERY_ID_COUNT,
    ) -> None:
        if not 1 <= capacity <= MAX_QUERY_ID_COUNT:
            raise ValueError(f"capacity must be in [1, {MAX_QUERY_ID_COUNT}]")
        if not 0 <= position <= capacity:
            raise ValueError(f"position {position} outside [0, {capacity}]")
        self._wallet_address = wallet_address
        self._position = position
        self._capacity = capacity
        self._lock = threading.Lock()

    @property
    def wallet_address(self) -> str:
        return self._wallet_address

    @property
    def position(self) -> int:
        """Number of ids issued in this window."""
        return self._position

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def remaining(self) -> int:
        return self._capacity - self._position

    def has_next(self) -> bool:
        """Whether another id can be issued. No side effects."""
        return self._position < self._capacity

    def next(self) -> QueryId:
        """Issue the next query id.

        Raises:
            SequenceExhausted: If every id of the window has been issued.
        """
        with self._lock:
            if self._position >= self._capacity:
                raise SequenceExhausted(self._wallet_address, self._capacity)
            query_id = QueryId.from_seqno(self._position)
            self._position += 1
            return query_id

    def last(self) -> QueryId | None:
        """The most recently issued id, if any."""
        if self._position == 0:
            return None
        return QueryId.from_seqno(self._position - 1)


class SequencerStore:
    """Durable sequencer position keyed by (wallet, timeout).

    ``reserve`` runs inside the caller's transaction: the row is locked, the
    next id is taken and the advanced position is written back before the
    batch that uses it is sent. A crash after sending therefore never leads
    to the same id being issued twice.
    """

    def __init__(
        self,
        wallet_address: str,
        timeout_seconds: int,
        *,
        capacity: int = MAX_QUERY_ID_COUNT,
    ) -> None:
        self.wallet_address = wallet_address
        self.timeout_seconds = timeout_seconds
        self.capacity = capacity

    def _reuse_after(self) -> timedelta:
        return timedelta(seconds=self.timeout_seconds * WINDOW_RETENTION_FACTOR)

    def rotate_if_expired(self, state: SequencerStateDTO, now: datetime) -> SequencerStateDTO:
        """State to issue from at ``now``; a fresh window once the old one can no longer collide."""
        if state.position == 0 or state.last_issued_at is None:
            return state
        if now - state.last_issued_at < self._reuse_after():
            return state
        return SequencerStateDTO(
            wallet_address=state.wallet_address,
            timeout_seconds=state.timeout_seconds,
            window_id=state.window_id + 1,
            position=0,
            window_started_at=now,
            last_issued_at=None,
        )

    async def _load(self, session: AsyncSession, now: datetime) -> SequencerStateDTO:
        repo = SequencerStateRepository(session)
        await repo.create_if_absent(self.wallet_address, self.timeout_seconds, now=now)
        state = await repo.get_for_update(self.wallet_address, self.timeout_seconds)
        if state is None:
            raise RuntimeError(f"sequencer state for {self.wallet_address} vanished")
        current = self.rotate_if_expired(state, now)
        if current.window_id != state.window_id:
            logger.info(
                "Starting query id window %d for wallet %s (previous window issued %d ids)",
                current.window_id,
                self.wallet_address,
                state.position,
            )
        return current

    async def has_next(self, session: AsyncSession, *, now: datetime) -> bool:
        """Whether ``reserve`` would succeed at ``now``. Reads only; nothing is created or locked."""
        state = await SequencerStateRepository(session).get(self.wallet_address, self.timeout_seconds)
        position = 0 if state is None else self.rotate_if_expired(state, now).position
        return QueryIdSequencer(self.wallet_address, position=position, capacity=self.capacity).has_next()

    async def reserve(self, session: AsyncSession, *, now: datetime) -> tuple[QueryId, int]:
        """Take the next id and persist the new position.

        Returns:
            The query id and the window it belongs to.

        Raises:
            SequenceExhausted: If the active window has no ids left.
        """
        state = await self._load(session, now)
        sequencer = QueryIdSequencer(self.wallet_address, position=state.position, capacity=self.capacity)
        query_id = sequencer.next()

        state.position = sequencer.position
        state.last_issued_at = now
        await SequencerStateRepository(session).save(state)

        if sequencer.remaining and sequencer.remaining % 100_000 == 0:
            logger.info(
                "Wallet %s has %d query ids left in window %d",
                self.wallet_address,
                sequencer.remaining,
                state.window_id,
            )
        return query_id, state.window_id
