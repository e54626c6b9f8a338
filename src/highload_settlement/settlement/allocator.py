"""Deterministic per-user deposit subwallet allocation.

Every exchange user gets a distinct Highload Wallet V3 deposit address that
shares the exchange's master public key and differs only in its subwallet
id. The id is derived from a hash of the user id, so it is not sequential
and cannot be guessed from the user count.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from collections.abc import Callable, Iterable
from contextlib import AbstractAsyncContextManager
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from highload_settlement.errors import AllocationExhausted
from highload_settlement.settlement.models import Allocation
from highload_settlement.storage.repos import UserAccountDTO, UserAccountRepository
from highload_settlement.ton.address import Address
from highload_settlement.ton.cells import CellRef, highload_wallet_address

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager["AsyncSession"]]

# Default configuration
DEFAULT_BASE_SUBWALLET_ID = 0x10AD
DEFAULT_TIMEOUT_SECONDS = 3600
DEFAULT_MAX_ATTEMPTS = 1000
RESERVED_SUBWALLET_ID = 0

# Inserts that lose a race against another process are retried this often
MAX_INSERT_RACES = 3


def derive_subwallet_id(user_id: str, base_id: int, nonce: int) -> int:
    """First four bytes of sha256(user_id | base_id | nonce) as a big-endian uint32.

    The reserved id zero is replaced by ``base_id``.
    """
    digest = hashlib.sha256(
        user_id.encode("utf-8") + str(base_id).encode("ascii") + str(nonce).encode("ascii")
    ).digest()
    subwallet_id = int.from_bytes(digest[:4], "big")
    if subwallet_id == RESERVED_SUBWALLET_ID:
        return base_id
    return subwallet_id


class SubwalletAllocator:
    """Allocates and remembers one deposit subwallet per user.

    Allocation is idempotent: the first call derives and stores the mapping,
    later calls return the stored row without re-deriving. The mapping is
    written in a single transaction under unique constraints on user id,
    subwallet id and address, so a concurrent caller sees either nothing or
    the complete row.

    Example:
        ```python
        allocator = SubwalletAllocator(db.get_async_session, public_key=pk, code=code_ref)
        subwallet_id, address = await allocator.allocate("user_alice")
        ```
    """

    def __init__(
        self,
        sessions: SessionFactory,
        *,
        public_key: bytes,
        code: CellRef,
        base_id: int = DEFAULT_BASE_SUBWALLET_ID,
        timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        reserved_ids: Iterable[int] = (),
        workchain: int = 0,
        testnet: bool = False,
    ) -> None:
        """Initialize the allocator.

        Args:
            sessions: Factory returning a transactional session scope.
            public_key: Master public key shared by all deposit subwallets.
            code: Hash and depth of the Highload Wallet V3 code cell.
            base_id: Base subwallet id mixed into the hash.
            timeout_seconds: Timeout stored in each deposit wallet's data.
            max_attempts: Collision search budget per allocation.
            reserved_ids: Ids never handed to users (e.g. the hot wallet's own).
            workchain: Workchain of the derived addresses.
            testnet: Render addresses with the testnet flag.
        """
        if len(public_key) != 32:
            raise ValueError("public key must be 32 bytes")
        if max_attempts < 1:
            raise ValueError("max_attempts must be positive")
        self._sessions = sessions
        self._public_key = public_key
        self._code = code
        self._base_id = base_id
        self._timeout = timeout_seconds
        self._max_attempts = max_attempts
        self._reserved = frozenset(reserved_ids) | {RESERVED_SUBWALLET_ID}
        self._workchain = workchain
        self._testnet = testnet
        self._lock = asyncio.Lock()

    def address_for(self, subwallet_id: int) -> Address:
        """Deposit address of a subwallet id under the master key."""
        address = highload_wallet_address(
            self._code,
            self._public_key,
            subwallet_id,
            self._timeout,
            workchain=self._workchain,
        )
        # Deposit addresses receive from anywhere; show them non-bounceable.
        return Address(address.workchain, address.hash_part, bounceable=False, testnet=self._testnet)

    def _stored_address(self, dto: UserAccountDTO) -> str:
        # The stored address is authoritative; key or timeout changes never move a user.
        stored = Address.parse(dto.address)
        return stored.to_string(bounceable=False, testnet=self._testnet)

    def _to_allocation(self, dto: UserAccountDTO) -> Allocation:
        return Allocation(dto.subwallet_id, self._stored_address(dto))

    async def _find_free_id(self, repo: UserAccountRepository, user_id: str) -> tuple[int, int]:
        for nonce in range(self._max_attempts):
            candidate = derive_subwallet_id(user_id, self._base_id, nonce)
            if candidate in self._reserved:
                continue
            if not await repo.subwallet_id_taken(candidate):
                return nonce, candidate
            logger.debug("Subwallet id %d taken, user=%s nonce=%d", candidate, user_id, nonce)
        raise AllocationExhausted(user_id, self._max_attempts)

    async def allocate(self, user_id: str) -> Allocation:
        """Return the user's (subwallet_id, address), allocating on first use.

        Raises:
            AllocationExhausted: If no free subwallet id was found.
            ValueError: If ``user_id`` is empty.
        """
        if not user_id:
            raise ValueError("user_id must not be empty")

        async with self._lock:
            race = 0
            while True:
                try:
                    async with self._sessions() as session:
                        repo = UserAccountRepository(session)
                        existing = await repo.get(user_id)
                        if existing is not None:
                            return self._to_allocation(existing)

                        nonce, subwallet_id = await self._find_free_id(repo, user_id)
                        address = self.address_for(subwallet_id)
                        stored = await repo.insert(
                            UserAccountDTO(
                                user_id=user_id,
                                subwallet_id=subwallet_id,
                                address=address.to_raw(),
                                nonce=nonce,
                            )
                        )
                except IntegrityError as e:
                    race += 1
                    if race >= MAX_INSERT_RACES:
                        raise
                    logger.warning("Allocation for user %s lost a race, retrying: %s", user_id, e.orig)
                    continue

                logger.info(
                    "Allocated subwallet %d to user %s (address %s, nonce %d)",
                    stored.subwallet_id,
                    user_id,
                    address.to_string(),
                    nonce,
                )
                return self._to_allocation(stored)

    async def allocate_many(self, user_ids: Iterable[str]) -> dict[str, Allocation]:
        """Allocate addresses for several users, in order."""
        return {user_id: await self.allocate(user_id) for user_id in user_ids}

    async def lookup(self, user_id: str) -> Allocation | None:
        """Stored allocation of a user, without allocating."""
        async with self._sessions() as session:
            dto = await UserAccountRepository(session).get(user_id)
        return self._to_allocation(dto) if dto else None

    async def identify_user(self, address: str) -> str | None:
        """Reverse lookup from a deposit address to its owner.

        Raises:
            AddressParseFailed: If ``address`` is not a valid address.
        """
        raw = Address.parse(address).to_raw()
        async with self._sessions() as session:
            dto = await UserAccountRepository(session).get_by_address(raw)
        return dto.user_id if dto else None

    async def export_mappings(self) -> str:
        """All allocations as a JSON document, for backups."""
        async with self._sessions() as session:
            accounts = await UserAccountRepository(session).list_all()
        return json.dumps(
            [
                {
                    "user_id": a.user_id,
                    "subwallet_id": a.subwallet_id,
                    "address": self._stored_address(a),
                }
                for a in accounts
            ],
            indent=2,
        )
