"""TON primitives - addresses, query ids, address derivation and the chain client."""

from highload_settlement.ton.address import Address, format_address
from highload_settlement.ton.cells import CellRef, highload_wallet_address
from highload_settlement.ton.client import ToncenterClient, ToncenterClientError
from highload_settlement.ton.models import ChainTransaction, OutboundTransfer
from highload_settlement.ton.query_id import MAX_QUERY_ID_COUNT, QueryId

__all__ = [
    "Address",
    "CellRef",
    "ChainTransaction",
    "MAX_QUERY_ID_COUNT",
    "OutboundTransfer",
    "QueryId",
    "ToncenterClient",
    "ToncenterClientError",
    "format_address",
    "highload_wallet_address",
]
