"""Tests for the deposit pipeline."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from highload_settlement.settlement.allocator import SubwalletAllocator
from highload_settlement.settlement.deposits import DepositPipeline
from highload_settlement.settlement.models import ConfirmationMode, DepositStatus, RejectReason
from highload_settlement.storage.database import DatabaseManager
from highload_settlement.storage.repos import (
    DepositProcessingErrorRepository,
    DepositRepository,
    LedgerRepository,
)
from highload_settlement.ton.address import Address

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def pipeline(db: DatabaseManager) -> DepositPipeline:
    return DepositPipeline(db.get_async_session)


@pytest.fixture
async def alice_account(allocator: SubwalletAllocator) -> str:
    """Raw deposit address allocated to user_alice."""
    allocation = await allocator.allocate("user_alice")
    return Address.parse(allocation.address).to_raw()


async def get_record(db: DatabaseManager, tx_hash: str):
    async with db.get_async_session() as session:
        return await DepositRepository(session).get(tx_hash)


async def balance(db: DatabaseManager, user_id: str) -> int:
    async with db.get_async_session() as session:
        return await LedgerRepository(session).balance(user_id)


# ============================================================================
# Observation and validation
# ============================================================================


class TestObserve:
    """Tests for DepositPipeline.observe."""

    @pytest.mark.asyncio
    async def test_minimum_amount_boundary(self, pipeline, alice_account, make_tx) -> None:
        below = make_tx(account=alice_account, amount=999_999_999)
        exact = make_tx(account=alice_account, amount=1_000_000_000)

        rejected = await pipeline.observe(below, now=T0)
        accepted = await pipeline.observe(exact, now=T0)

        assert rejected.status == DepositStatus.REJECTED.value
        assert rejected.reject_reason == RejectReason.BELOW_MINIMUM.value
        assert accepted.status == DepositStatus.PENDING_CONFIRMATION.value
        assert accepted.user_id == "user_alice"

    @pytest.mark.asyncio
    async def test_external_message_is_ignored(self, pipeline, db, alice_account, make_tx) -> None:
        tx = make_tx(account=alice_account, external=True)
        assert await pipeline.observe(tx, now=T0) is None
        assert await get_record(db, tx.tx_hash) is None

    @pytest.mark.asyncio
    async def test_observe_is_idempotent(self, pipeline, db, alice_account, make_tx) -> None:
        tx = make_tx(account=alice_account)
        first = await pipeline.observe(tx, now=T0)
        second = await pipeline.observe(tx, now=T0 + timedelta(minutes=5))

        assert first == second
        async with db.get_async_session() as session:
            counts = await DepositRepository(session).count_by_status()
        assert counts == {DepositStatus.PENDING_CONFIRMATION.value: 1}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("flag", ["aborted", "bounced"])
    async def test_aborted_or_bounced_is_rejected(self, pipeline, alice_account, make_tx, flag) -> None:
        tx = make_tx(account=alice_account, **{flag: True})
        record = await pipeline.observe(tx, now=T0)
        assert record.status == DepositStatus.REJECTED.value
        assert record.reject_reason == RejectReason.ABORTED.value

    @pytest.mark.asyncio
    async def test_amount_is_checked_before_abort(self, pipeline, alice_account, make_tx) -> None:
        tx = make_tx(account=alice_account, amount=1, aborted=True)
        record = await pipeline.observe(tx, now=T0)
        assert record.reject_reason == RejectReason.BELOW_MINIMUM.value

    @pytest.mark.asyncio
    async def test_sender_resolves_user(self, pipeline, alice_account, make_tx, make_address) -> None:
        tx = make_tx(account=make_address(1).to_raw(), sender=alice_account)
        record = await pipeline.observe(tx, now=T0)
        assert record.user_id == "user_alice"

    @pytest.mark.asyncio
    async def test_comment_resolves_user(self, pipeline, allocator, make_tx, make_address) -> None:
        await allocator.allocate("user_bob")
        hot_wallet = make_address(1).to_raw()

        prefixed = await pipeline.observe(make_tx(account=hot_wallet, comment="DEPOSIT:user_bob"), now=T0)
        bare = await pipeline.observe(make_tx(account=hot_wallet, comment="  user_bob "), now=T0)

        assert prefixed.user_id == "user_bob"
        assert bare.user_id == "user_bob"
        assert bare.status == DepositStatus.PENDING_CONFIRMATION.value

    @pytest.mark.asyncio
    async def test_comment_for_unknown_user_is_unidentified(self, pipeline, make_tx, make_address) -> None:
        tx = make_tx(account=make_address(1).to_raw(), comment="DEPOSIT:nobody")
        record = await pipeline.observe(tx, now=T0)
        assert record.status == DepositStatus.REJECTED.value
        assert record.reject_reason == RejectReason.UNIDENTIFIED.value

    @pytest.mark.asyncio
    async def test_custom_comment_pattern(self, db, allocator, make_tx, make_address) -> None:
        await allocator.allocate("carol")
        pipeline = DepositPipeline(db.get_async_session, comment_pattern=r"^uid=(?P<user_id>\w+)$")
        record = await pipeline.observe(make_tx(account=make_address(1).to_raw(), comment="uid=carol"), now=T0)
        assert record.user_id == "carol"

    def test_pattern_without_user_group_is_rejected(self) -> None:
        with pytest.raises(ValueError):
            DepositPipeline(MagicMock(), comment_pattern=r"^(\w+)$")


# ============================================================================
# Ingestion
# ============================================================================


class TestIngest:
    """Tests for DepositPipeline.ingest."""

    @pytest.mark.asyncio
    async def test_counts_and_cursor(self, pipeline, alice_account, make_tx) -> None:
        good = make_tx(account=alice_account)
        small = make_tx(account=alice_account, amount=10)
        external = make_tx(account=alice_account, external=True)

        result = await pipeline.ingest([good, small, external, good], now=T0)

        assert result.observed == 3
        assert result.pending == 1
        assert result.rejected == 1
        assert result.ignored == 1
        assert result.duplicates == 1
        assert result.failed == 0
        assert result.last_lt == external.lt
        assert result.last_tx_hash == external.tx_hash

    @pytest.mark.asyncio
    async def test_failure_is_isolated(self, pipeline, db, alice_account, make_tx) -> None:
        broken = make_tx(account=alice_account)
        healthy = make_tx(account=alice_account)
        original = pipeline.resolve_user

        async def flaky(session, tx):
            if tx.tx_hash == broken.tx_hash:
                raise RuntimeError("directory unavailable")
            return await original(session, tx)

        with patch.object(pipeline, "resolve_user", AsyncMock(side_effect=flaky)):
            result = await pipeline.ingest([broken, healthy], now=T0)

        assert result.failed == 1
        assert result.pending == 1
        # The cursor must not move past the failed transaction
        assert result.last_lt is None
        assert await get_record(db, broken.tx_hash) is None
        assert (await get_record(db, healthy.tx_hash)).status == DepositStatus.PENDING_CONFIRMATION.value

        async with db.get_async_session() as session:
            errors = await DepositProcessingErrorRepository(session).list_for_tx(broken.tx_hash)
        assert len(errors) == 1
        assert errors[0].error_type == "RuntimeError"
        assert errors[0].stage == "observe"

        # Redelivery after the outage succeeds
        retry = await pipeline.ingest([broken], now=T0)
        assert retry.pending == 1

    @pytest.mark.asyncio
    async def test_cursor_stops_before_first_failure(self, pipeline, alice_account, make_tx) -> None:
        first = make_tx(account=alice_account)
        broken = make_tx(account=alice_account)
        last = make_tx(account=alice_account)
        original = pipeline.resolve_user

        async def flaky(session, tx):
            if tx.tx_hash == broken.tx_hash:
                raise OSError("connection reset")
            return await original(session, tx)

        with patch.object(pipeline, "resolve_user", AsyncMock(side_effect=flaky)):
            result = await pipeline.ingest([last, broken, first], now=T0)

        assert result.pending == 2
        assert result.failed == 1
        assert (result.last_lt, result.last_tx_hash) == (first.lt, first.tx_hash)


# ============================================================================
# Confirmation
# ============================================================================


class TestAdvance:
    """Tests for DepositPipeline.advance."""

    @pytest.mark.asyncio
    async def test_seqno_mode_credits_at_threshold(self, pipeline, db, alice_account, make_tx) -> None:
        tx = make_tx(account=alice_account, amount=5_000_000_000, mc_block_seqno=100)
        await pipeline.observe(tx, now=T0)

        early = await pipeline.advance(current_seqno=102)
        assert early.credited == 0
        record = await get_record(db, tx.tx_hash)
        assert record.confirmations == 2
        assert record.status == DepositStatus.PENDING_CONFIRMATION.value
        assert await balance(db, "user_alice") == 0

        result = await pipeline.advance(current_seqno=103, now=T0 + timedelta(seconds=15))
        assert result.credited == 1
        record = await get_record(db, tx.tx_hash)
        assert record.status == DepositStatus.CREDITED.value
        assert record.credited_at == T0 + timedelta(seconds=15)
        assert await balance(db, "user_alice") == 5_000_000_000

    @pytest.mark.asyncio
    async def test_credit_happens_at_most_once(self, pipeline, db, alice_account, make_tx) -> None:
        tx = make_tx(account=alice_account, mc_block_seqno=100)
        await pipeline.observe(tx, now=T0)

        await pipeline.advance(current_seqno=200)
        again = await pipeline.advance(current_seqno=300)
        await pipeline.observe(tx, now=T0)

        assert again.checked == 0
        async with db.get_async_session() as session:
            assert await LedgerRepository(session).count_for_reference(tx.tx_hash) == 1
        assert await balance(db, "user_alice") == 1_000_000_000

    @pytest.mark.asyncio
    async def test_time_mode(self, db, alice_account, make_tx) -> None:
        pipeline = DepositPipeline(
            db.get_async_session,
            confirmation_mode=ConfirmationMode.TIME,
            block_interval_seconds=5.0,
        )
        tx = make_tx(account=alice_account, mc_block_seqno=None)
        await pipeline.observe(tx, now=T0)

        early = await pipeline.advance(now=T0 + timedelta(seconds=14), current_seqno=10_000)
        assert early.credited == 0
        assert (await get_record(db, tx.tx_hash)).confirmations == 2

        result = await pipeline.advance(now=T0 + timedelta(seconds=15))
        assert result.credited == 1

    @pytest.mark.asyncio
    async def test_seqno_mode_requires_seqno(self, pipeline) -> None:
        with pytest.raises(ValueError):
            await pipeline.advance()

    @pytest.mark.asyncio
    async def test_observation_without_seqno_starts_counting_later(
        self, pipeline, db, alice_account, make_tx
    ) -> None:
        tx = make_tx(account=alice_account, mc_block_seqno=None)
        await pipeline.observe(tx, now=T0)
        assert (await get_record(db, tx.tx_hash)).observed_seqno is None

        await pipeline.advance(current_seqno=500)
        assert (await get_record(db, tx.tx_hash)).observed_seqno == 500
        assert (await pipeline.advance(current_seqno=502)).credited == 0
        assert (await pipeline.advance(current_seqno=503)).credited == 1

    @pytest.mark.asyncio
    async def test_rejected_records_are_never_credited(self, pipeline, db, alice_account, make_tx) -> None:
        tx = make_tx(account=alice_account, amount=1)
        await pipeline.observe(tx, now=T0)
        result = await pipeline.advance(current_seqno=10_000)
        assert result.checked == 0
        assert await balance(db, "user_alice") == 0

    @pytest.mark.asyncio
    async def test_outstanding(self, pipeline, alice_account, make_tx) -> None:
        tx = make_tx(account=alice_account)
        await pipeline.observe(tx, now=T0)
        assert [r.tx_hash for r in await pipeline.outstanding()] == [tx.tx_hash]
