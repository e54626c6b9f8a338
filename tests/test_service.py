"""Tests for the settlement service orchestrator."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from highload_settlement.config import Settings
from highload_settlement.errors import TransientIOFailure
from highload_settlement.service import ServiceState, SettlementService, build_allocator
from highload_settlement.settlement.models import DepositStatus
from highload_settlement.storage.repos import DepositRepository, IngestionCursorRepository, LedgerRepository
from highload_settlement.ton.address import Address
from highload_settlement.ton.query_id import QueryId

HOT_WALLET = "0:" + "ab" * 32


@pytest.fixture
def settings(monkeypatch: pytest.MonkeyPatch, tmp_path) -> Settings:
    """Real settings built from a test environment."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'unused.db'}")
    monkeypatch.setenv("TON_WALLET_ADDRESS", HOT_WALLET)
    monkeypatch.setenv("TON_PUBLIC_KEY_HEX", bytes(range(32)).hex())
    monkeypatch.setenv("TON_WALLET_CODE_HASH_HEX", "33" * 32)
    monkeypatch.setenv("TON_WALLET_CODE_DEPTH", "7")
    monkeypatch.setenv("DEPOSIT_POLL_INTERVAL_SECONDS", "3600")
    monkeypatch.setenv("DEPOSIT_CONFIRM_INTERVAL_SECONDS", "3600")
    monkeypatch.setenv("WITHDRAWAL_BATCH_INTERVAL_SECONDS", "3600")
    monkeypatch.setenv("WITHDRAWAL_LOCK_TIMEOUT_SECONDS", "5")
    return Settings(_env_file=None)


@pytest.fixture
def chain_client() -> AsyncMock:
    """Chain stub serving per-account transactions and honouring the lt cursor."""
    client = AsyncMock()
    client.transactions = {}

    async def get_transactions(account, *, limit=100, after_lt=None):
        history = sorted(client.transactions.get(account, []), key=lambda tx: tx.lt)
        return [tx for tx in history if after_lt is None or tx.lt > after_lt][:limit]

    client.get_transactions = AsyncMock(side_effect=get_transactions)
    client.get_masterchain_seqno = AsyncMock(return_value=100)
    return client


@pytest.fixture
def service(settings, db, chain_client) -> SettlementService:
    return SettlementService(settings, db_manager=db, chain_client=chain_client)


class TestServiceState:
    """Tests for service state management."""

    def test_initial_state_is_stopped(self, settings) -> None:
        service = SettlementService(settings)
        assert service.state == ServiceState.STOPPED
        assert not service.is_running
        assert service.stats.started_at is None
        assert service.stats.errors == 0

    def test_components_require_start(self, settings) -> None:
        service = SettlementService(settings)
        with pytest.raises(RuntimeError):
            service.deposits
        with pytest.raises(RuntimeError):
            service.allocator
        assert service.withdrawals is None

    def test_uses_get_settings_when_none_provided(self, settings) -> None:
        with patch("highload_settlement.service.get_settings") as mock_get:
            mock_get.return_value = settings
            SettlementService()
            mock_get.assert_called_once()

    @pytest.mark.asyncio
    async def test_start_and_stop(self, service, chain_client) -> None:
        await service.start()
        assert service.is_running
        assert service.stats.started_at is not None
        # No sender, so no withdrawal loop
        assert service.withdrawals is None
        assert len(service._tasks) == 2

        with pytest.raises(RuntimeError):
            await service.start()

        await service.stop()
        assert service.state == ServiceState.STOPPED
        assert service._tasks == []
        chain_client.close.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_context_manager(self, service) -> None:
        async with service as running:
            assert running.is_running
        assert service.state == ServiceState.STOPPED

    @pytest.mark.asyncio
    async def test_loop_survives_transient_failure(self, service, chain_client) -> None:
        chain_client.get_masterchain_seqno.side_effect = TransientIOFailure("toncenter unavailable")

        await service.start()
        await asyncio.sleep(0.05)
        await service.stop()

        assert service.stats.errors >= 1
        assert service.stats.last_error == "toncenter unavailable"


class TestDepositSteps:
    """Tests for the ingestion and confirmation steps."""

    @pytest.fixture
    async def alice_account(self, service) -> str:
        await service._initialize_components()
        allocation = await service.allocator.allocate("user_alice")
        return Address.parse(allocation.address).to_raw()

    @pytest.mark.asyncio
    async def test_ingest_then_confirm_credits_user(
        self, service, db, chain_client, alice_account, make_tx
    ) -> None:
        tx = make_tx(account=alice_account, amount=3_000_000_000, mc_block_seqno=100)
        chain_client.transactions[alice_account] = [tx]

        await service.ingest_once()
        assert service.stats.ingestion_passes == 1
        assert service.stats.deposits_observed == 1

        chain_client.get_masterchain_seqno.return_value = 102
        await service.confirm_once()
        assert service.stats.deposits_credited == 0

        chain_client.get_masterchain_seqno.return_value = 103
        await service.confirm_once()
        assert service.stats.deposits_credited == 1

        async with db.get_async_session() as session:
            assert await LedgerRepository(session).balance("user_alice") == 3_000_000_000

    @pytest.mark.asyncio
    async def test_ingest_advances_cursor(self, service, db, chain_client, alice_account, make_tx) -> None:
        first = make_tx(account=alice_account)
        second = make_tx(account=alice_account)
        chain_client.transactions[alice_account] = [first, second]

        await service.ingest_once()
        async with db.get_async_session() as session:
            assert await IngestionCursorRepository(session).get(alice_account) == (second.lt, second.tx_hash)

        await service.ingest_once()
        polled = [c.args[0] for c in chain_client.get_transactions.await_args_list]
        assert polled == [HOT_WALLET, alice_account, HOT_WALLET, alice_account]
        assert chain_client.get_transactions.await_args.kwargs["after_lt"] == second.lt
        assert service.stats.deposits_observed == 2

    @pytest.mark.asyncio
    async def test_failed_store_write_is_fetched_again(
        self, service, db, chain_client, alice_account, make_tx
    ) -> None:
        tx = make_tx(account=alice_account)
        chain_client.transactions[alice_account] = [tx]
        original = DepositRepository.insert_if_absent
        attempts = []

        async def flaky_insert(repo, dto):
            attempts.append(dto.tx_hash)
            if len(attempts) == 1:
                raise OSError("database connection lost")
            return await original(repo, dto)

        with patch.object(DepositRepository, "insert_if_absent", flaky_insert):
            await service.ingest_once()
            async with db.get_async_session() as session:
                assert await IngestionCursorRepository(session).get(alice_account) is None

            await service.ingest_once()

        assert attempts == [tx.tx_hash, tx.tx_hash]
        assert await service.deposits.status_counts() == {DepositStatus.PENDING_CONFIRMATION.value: 1}

    @pytest.mark.asyncio
    async def test_comment_deposit_to_hot_wallet_is_credited(self, service, db, chain_client, make_tx) -> None:
        await service._initialize_components()
        await service.allocator.allocate("user_bob")
        tx = make_tx(account=HOT_WALLET, amount=2_000_000_000, comment="DEPOSIT:user_bob", mc_block_seqno=100)
        chain_client.transactions[HOT_WALLET] = [tx]

        await service.ingest_once()
        chain_client.get_masterchain_seqno.return_value = 103
        await service.confirm_once()

        assert service.stats.deposits_credited == 1
        async with db.get_async_session() as session:
            assert await LedgerRepository(session).balance("user_bob") == 2_000_000_000
            assert await IngestionCursorRepository(session).get(HOT_WALLET) == (tx.lt, tx.tx_hash)

    @pytest.mark.asyncio
    async def test_steps_require_start(self, settings) -> None:
        with pytest.raises(RuntimeError):
            await SettlementService(settings).ingest_once()

    @pytest.mark.asyncio
    async def test_allocator_skips_hot_wallet_subwallet(self, settings, db) -> None:
        allocator = build_allocator(settings, db.get_async_session)
        allocation = await allocator.allocate("user_alice")
        assert allocation.subwallet_id != settings.withdrawal.subwallet_id


class TestWithdrawalStep:
    """Tests for the withdrawal step."""

    @pytest.fixture
    def sender(self) -> MagicMock:
        mock = MagicMock()
        mock.send_batch = AsyncMock(return_value=None)
        return mock

    @pytest.mark.asyncio
    async def test_withdraw_once_submits_batches(self, settings, db, chain_client, sender, make_address) -> None:
        service = SettlementService(settings, sender=sender, db_manager=db, chain_client=chain_client)
        await service._initialize_components()
        assert service.withdrawals is not None

        for i in range(3):
            await service.withdrawals.enqueue(f"w{i}", "user_alice", make_address(i).to_raw(), 1_000)
        await service.withdraw_once()

        assert service.stats.batches_submitted == 1
        assert service.stats.withdrawals_submitted == 3
        assert sender.send_batch.await_args.kwargs["query_id"] == QueryId(0, 0)

    @pytest.mark.asyncio
    async def test_withdraw_once_retries_unsent_batch(
        self, settings, db, chain_client, sender, make_address
    ) -> None:
        service = SettlementService(settings, sender=sender, db_manager=db, chain_client=chain_client)
        await service._initialize_components()
        await service.withdrawals.enqueue("w1", "user_alice", make_address(1).to_raw(), 1_000)

        sender.send_batch.side_effect = ConnectionError("refused")
        with pytest.raises(ConnectionError):
            await service.withdraw_once()

        sender.send_batch.side_effect = None
        await service.withdraw_once()

        assert service.stats.batches_submitted == 1
        assert sender.send_batch.await_count == 2
        assert {c.kwargs["query_id"] for c in sender.send_batch.await_args_list} == {QueryId(0, 0)}
        assert await service.withdrawals.unsent_batches() == []

    @pytest.mark.asyncio
    async def test_withdrawals_disabled(self, settings, db, chain_client, sender, monkeypatch) -> None:
        monkeypatch.setenv("WITHDRAWALS_ENABLED", "false")
        service = SettlementService(
            Settings(_env_file=None), sender=sender, db_manager=db, chain_client=chain_client
        )
        await service._initialize_components()
        assert service.withdrawals is None
        await service.withdraw_once()
        sender.send_batch.assert_not_called()
