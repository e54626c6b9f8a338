"""Tests for storage repositories."""

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from highload_settlement.storage.models import Base
from highload_settlement.storage.repos import (
    DepositProcessingErrorDTO,
    DepositProcessingErrorRepository,
    DepositRecordDTO,
    DepositRepository,
    IngestionCursorRepository,
    LedgerRepository,
    SequencerStateRepository,
    UserAccountDTO,
    UserAccountRepository,
    WithdrawalBatchDTO,
    WithdrawalBatchRepository,
    WithdrawalRepository,
    WithdrawalRequestDTO,
)

ACCOUNT = "0:" + "ab" * 32
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
async def async_engine():
    """Create an async SQLite engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def async_session(async_engine) -> AsyncSession:
    """Create an async session for testing."""
    session_factory = async_sessionmaker(bind=async_engine, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
def sample_deposit_dto() -> DepositRecordDTO:
    """Create a sample deposit record DTO."""
    return DepositRecordDTO(
        tx_hash="a" * 64,
        lt=1001,
        account=ACCOUNT,
        sender="0:" + "cd" * 32,
        amount=2_500_000_000,
        comment="DEPOSIT:user_alice",
        user_id=None,
        status="seen",
        observed_at=NOW,
        observed_seqno=100,
    )


def make_request(withdrawal_id: str, created_at: datetime) -> WithdrawalRequestDTO:
    return WithdrawalRequestDTO(
        withdrawal_id=withdrawal_id,
        user_id="user_alice",
        destination=ACCOUNT,
        amount=1_000,
        status="pending",
        created_at=created_at,
    )


# ============================================================================
# UserAccountRepository Tests
# ============================================================================


class TestUserAccountRepository:
    """Tests for UserAccountRepository."""

    @pytest.mark.asyncio
    async def test_insert_and_lookup(self, async_session: AsyncSession) -> None:
        repo = UserAccountRepository(async_session)
        await repo.insert(UserAccountDTO(user_id="user_alice", subwallet_id=42, address=ACCOUNT, nonce=0))

        by_user = await repo.get("user_alice")
        by_address = await repo.get_by_address(ACCOUNT)

        assert by_user is not None
        assert by_user.subwallet_id == 42
        assert by_address == by_user
        assert by_user.created_at.tzinfo is not None
        assert await repo.subwallet_id_taken(42)
        assert not await repo.subwallet_id_taken(43)

    @pytest.mark.asyncio
    async def test_subwallet_id_is_unique(self, async_session: AsyncSession) -> None:
        repo = UserAccountRepository(async_session)
        await repo.insert(UserAccountDTO(user_id="a", subwallet_id=42, address=ACCOUNT, nonce=0))

        with pytest.raises(IntegrityError):
            await repo.insert(UserAccountDTO(user_id="b", subwallet_id=42, address="0:" + "11" * 32, nonce=0))


# ============================================================================
# DepositRepository Tests
# ============================================================================


class TestDepositRepository:
    """Tests for DepositRepository."""

    @pytest.mark.asyncio
    async def test_insert_if_absent(self, async_session: AsyncSession, sample_deposit_dto) -> None:
        repo = DepositRepository(async_session)

        assert await repo.insert_if_absent(sample_deposit_dto) is True
        assert await repo.insert_if_absent(sample_deposit_dto) is False

        stored = await repo.get(sample_deposit_dto.tx_hash)
        assert stored.amount == 2_500_000_000
        assert stored.observed_at == NOW
        assert stored.observed_seqno == 100

    @pytest.mark.asyncio
    async def test_transition_is_compare_and_set(self, async_session: AsyncSession, sample_deposit_dto) -> None:
        repo = DepositRepository(async_session)
        await repo.insert_if_absent(sample_deposit_dto)
        tx_hash = sample_deposit_dto.tx_hash

        assert await repo.transition(tx_hash, from_status="seen", to_status="validated", user_id="user_alice")
        assert not await repo.transition(tx_hash, from_status="seen", to_status="rejected")

        stored = await repo.get(tx_hash)
        assert stored.status == "validated"
        assert stored.user_id == "user_alice"

    @pytest.mark.asyncio
    async def test_list_and_count_by_status(self, async_session: AsyncSession, sample_deposit_dto) -> None:
        repo = DepositRepository(async_session)
        await repo.insert_if_absent(sample_deposit_dto)
        second = DepositRecordDTO(**{**sample_deposit_dto.__dict__, "tx_hash": "b" * 64, "lt": 999})
        await repo.insert_if_absent(second)
        await repo.set_confirmations(second.tx_hash, status="seen", confirmations=2)

        listed = await repo.list_by_status("seen")
        assert [r.tx_hash for r in listed] == ["b" * 64, "a" * 64]
        assert listed[0].confirmations == 2
        assert await repo.count_by_status() == {"seen": 2}


# ============================================================================
# LedgerRepository Tests
# ============================================================================


class TestLedgerRepository:
    """Tests for LedgerRepository."""

    @pytest.mark.asyncio
    async def test_credit_is_unique_per_reference(self, async_session: AsyncSession) -> None:
        repo = LedgerRepository(async_session)

        assert await repo.credit(user_id="user_alice", amount=100, reference="tx1") is True
        assert await repo.credit(user_id="user_alice", amount=100, reference="tx1") is False
        assert await repo.credit(user_id="user_alice", amount=50, reference="tx2") is True

        assert await repo.count_for_reference("tx1") == 1
        assert await repo.balance("user_alice") == 150
        assert await repo.balance("user_bob") == 0

    @pytest.mark.asyncio
    async def test_kinds_are_separate(self, async_session: AsyncSession) -> None:
        repo = LedgerRepository(async_session)
        await repo.credit(user_id="u", amount=1, reference="r")
        assert await repo.credit(user_id="u", amount=1, reference="r", kind="adjustment") is True


# ============================================================================
# Withdrawal Repository Tests
# ============================================================================


class TestWithdrawalRepository:
    """Tests for WithdrawalRepository and WithdrawalBatchRepository."""

    @pytest.mark.asyncio
    async def test_list_pending_oldest_first(self, async_session: AsyncSession) -> None:
        repo = WithdrawalRepository(async_session)
        await repo.insert_if_absent(make_request("late", NOW + timedelta(seconds=5)))
        await repo.insert_if_absent(make_request("early", NOW))
        assert await repo.insert_if_absent(make_request("early", NOW)) is False

        pending = await repo.list_pending("pending", limit=10)
        assert [r.withdrawal_id for r in pending] == ["early", "late"]
        assert len(await repo.list_pending("pending", limit=1)) == 1

    @pytest.mark.asyncio
    async def test_batch_lifecycle(self, async_session: AsyncSession) -> None:
        requests = WithdrawalRepository(async_session)
        batches = WithdrawalBatchRepository(async_session)
        await requests.insert_if_absent(make_request("w1", NOW))

        batch = await batches.insert(
            WithdrawalBatchDTO(
                wallet_address=ACCOUNT,
                subwallet_id=7,
                timeout_seconds=3600,
                query_id=5,
                window_id=0,
                item_count=1,
                status="reserved",
                created_at=NOW,
            )
        )
        assert batch.id is not None
        moved = await requests.transition(["w1"], from_status="pending", to_status="batched", batch_id=batch.id)
        assert moved == 1
        assert await requests.transition([], from_status="pending", to_status="batched") == 0

        await batches.set_status(batch.id, "send_failed", last_error="timeout")
        stored = await batches.get(batch.id)
        assert stored.status == "send_failed"
        assert stored.last_error == "timeout"
        assert stored.created_at == NOW
        assert [b.id for b in await batches.list_by_status("send_failed")] == [batch.id]
        assert [r.withdrawal_id for r in await requests.list_by_batch(batch.id)] == ["w1"]

    @pytest.mark.asyncio
    async def test_query_id_is_unique_per_window(self, async_session: AsyncSession) -> None:
        batches = WithdrawalBatchRepository(async_session)
        dto = WithdrawalBatchDTO(
            wallet_address=ACCOUNT,
            subwallet_id=7,
            timeout_seconds=3600,
            query_id=5,
            window_id=0,
            item_count=1,
            status="reserved",
            created_at=NOW,
        )
        await batches.insert(dto)
        with pytest.raises(IntegrityError):
            await batches.insert(dto)


# ============================================================================
# Cursor Repository Tests
# ============================================================================


class TestCursorRepositories:
    """Tests for the sequencer and ingestion cursor repositories."""

    @pytest.mark.asyncio
    async def test_ingestion_cursor_never_moves_backwards(self, async_session: AsyncSession) -> None:
        repo = IngestionCursorRepository(async_session)
        assert await repo.get(ACCOUNT) is None

        await repo.upsert(ACCOUNT, last_lt=200, last_tx_hash="h200")
        await repo.upsert(ACCOUNT, last_lt=100, last_tx_hash="h100")
        assert await repo.get(ACCOUNT) == (200, "h200")

        await repo.upsert(ACCOUNT, last_lt=300, last_tx_hash="h300")
        assert await repo.get(ACCOUNT) == (300, "h300")

    @pytest.mark.asyncio
    async def test_sequencer_state(self, async_session: AsyncSession) -> None:
        repo = SequencerStateRepository(async_session)
        await repo.create_if_absent(ACCOUNT, 3600, now=NOW)
        await repo.create_if_absent(ACCOUNT, 3600, now=NOW + timedelta(hours=1))

        state = await repo.get_for_update(ACCOUNT, 3600)
        assert state.position == 0
        assert state.window_started_at == NOW

        state.position = 12
        state.last_issued_at = NOW
        await repo.save(state)
        assert (await repo.get_for_update(ACCOUNT, 3600)).position == 12
        assert await repo.get_for_update(ACCOUNT, 60) is None

    @pytest.mark.asyncio
    async def test_processing_errors(self, async_session: AsyncSession) -> None:
        repo = DepositProcessingErrorRepository(async_session)
        await repo.insert(
            DepositProcessingErrorDTO(tx_hash="t", stage="observe", error_type="KeyError", message="x" * 5000)
        )

        errors = await repo.list_for_tx("t")
        assert len(errors) == 1
        assert len(errors[0].message) == 2000
        assert await repo.list_for_tx("other") == []
