"""Error taxonomy for the settlement core.

Every failure that crosses a component boundary is one of these types:

- ``AllocationExhausted``: the subwallet collision search ran out of attempts.
- ``SequenceExhausted``: the query id space of the active timeout window is used up.
- ``ValidationRejected``: a deposit failed the amount, abort or identity checks.
- ``AddressParseFailed``: a withdrawal destination could not be parsed.
- ``TransientIOFailure``: the store or the chain was unreachable; retry with backoff.

The first two are hard stops that need an operator or the end of the timeout
window. The next two are per-item and never abort the surrounding loop.
"""

from __future__ import annotations


class SettlementError(Exception):
    """Base exception for settlement errors."""


class AllocationExhausted(SettlementError):
    """Raised when no collision-free subwallet id was found."""

    def __init__(self, user_id: str, attempts: int) -> None:
        super().__init__(
            f"Failed to derive a unique subwallet id for user {user_id} after {attempts} attempts"
        )
        self.user_id = user_id
        self.attempts = attempts


class SequenceExhausted(SettlementError):
    """Raised when a sequencer has issued every query id of its window."""

    def __init__(self, wallet_address: str, capacity: int) -> None:
        super().__init__(
            f"Query ids exhausted for wallet {wallet_address} ({capacity} issued); "
            "wait for the timeout window to elapse"
        )
        self.wallet_address = wallet_address
        self.capacity = capacity


class ValidationRejected(SettlementError):
    """Raised when a deposit is rejected during validation."""

    def __init__(self, tx_hash: str, reason: str) -> None:
        super().__init__(f"Deposit {tx_hash} rejected: {reason}")
        self.tx_hash = tx_hash
        self.reason = reason


class AddressParseFailed(SettlementError, ValueError):
    """Raised when an address string is not a valid TON address."""

    def __init__(self, raw: str, detail: str) -> None:
        super().__init__(f"Invalid address {raw!r}: {detail}")
        self.raw = raw
        self.detail = detail


class TransientIOFailure(SettlementError):
    """Raised when the chain client or store is temporarily unavailable."""

    def __init__(self, message: str, last_exception: Exception | None = None) -> None:
        super().__init__(message)
        self.last_exception = last_exception
