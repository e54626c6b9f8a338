"""Pytest configuration and fixtures."""

import hashlib
from collections.abc import Callable

import pytest

from highload_settlement.settlement.allocator import SubwalletAllocator
from highload_settlement.storage.database import DatabaseManager
from highload_settlement.ton.address import Address
from highload_settlement.ton.cells import CellRef
from highload_settlement.ton.models import ChainTransaction

HOT_WALLET_SUBWALLET_ID = 0x10AD


def _account_address(seed: int, workchain: int = 0) -> Address:
    return Address(workchain, hashlib.sha256(f"account-{seed}".encode()).digest())


@pytest.fixture
def make_address() -> Callable[..., Address]:
    """Factory for deterministic test addresses derived from a small integer."""
    return _account_address


@pytest.fixture
async def db(tmp_path) -> DatabaseManager:
    """SQLite database with the full schema, one file per test."""
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'settlement.db'}")
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()


@pytest.fixture
def public_key() -> bytes:
    """Master public key shared by deposit subwallets."""
    return bytes(range(32))


@pytest.fixture
def wallet_code() -> CellRef:
    """Stand-in for the Highload Wallet V3 code cell."""
    return CellRef(hash=hashlib.sha256(b"highload-wallet-v3-code").digest(), depth=7)


@pytest.fixture
def allocator(db: DatabaseManager, public_key: bytes, wallet_code: CellRef) -> SubwalletAllocator:
    return SubwalletAllocator(
        db.get_async_session,
        public_key=public_key,
        code=wallet_code,
        reserved_ids=(HOT_WALLET_SUBWALLET_ID,),
    )


@pytest.fixture
def make_tx() -> Callable[..., ChainTransaction]:
    """Factory for incoming chain transactions with sensible defaults."""
    counter = {"lt": 1000}

    def _make(
        *,
        account: str,
        amount: int = 1_000_000_000,
        sender: str | None = None,
        external: bool = False,
        comment: str | None = None,
        aborted: bool = False,
        bounced: bool = False,
        mc_block_seqno: int | None = 100,
        tx_hash: str | None = None,
    ) -> ChainTransaction:
        counter["lt"] += 1
        lt = counter["lt"]
        return ChainTransaction(
            tx_hash=tx_hash or hashlib.sha256(f"tx-{lt}".encode()).hexdigest(),
            lt=lt,
            utime=1_700_000_000 + lt,
            account=account,
            sender=None if external else (sender or _account_address(999).to_raw()),
            amount=amount,
            comment=comment,
            aborted=aborted,
            bounced=bounced,
            mc_block_seqno=mc_block_seqno,
        )

    return _make
