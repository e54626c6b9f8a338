"""Tests for query id coordinates."""

import pytest

from highload_settlement.ton.query_id import (
    EMERGENCY_SEQNO,
    MAX_BIT_NUMBER,
    MAX_QUERY_ID_COUNT,
    MAX_SHIFT,
    QueryId,
)


class TestQueryId:
    """Tests for QueryId."""

    def test_ceiling(self) -> None:
        assert MAX_QUERY_ID_COUNT == 8_380_415
        assert MAX_SHIFT == 8191
        assert MAX_BIT_NUMBER == 1022

    def test_query_id_packs_shift_and_bit_number(self) -> None:
        qid = QueryId(shift=3, bit_number=17)
        assert qid.query_id == (3 << 10) | 17
        assert QueryId.from_query_id(qid.query_id) == qid

    def test_seqno_roundtrip_at_shift_boundary(self) -> None:
        assert QueryId.from_seqno(1022) == QueryId(0, 1022)
        assert QueryId.from_seqno(1023) == QueryId(1, 0)
        assert QueryId(1, 0).seqno == 1023

    def test_last_issuable_id(self) -> None:
        last = QueryId.from_seqno(MAX_QUERY_ID_COUNT - 1)
        assert last == QueryId(MAX_SHIFT, MAX_BIT_NUMBER - 1)
        assert not last.is_emergency

    def test_emergency_id(self) -> None:
        emergency = QueryId.from_seqno(EMERGENCY_SEQNO)
        assert emergency == QueryId(MAX_SHIFT, MAX_BIT_NUMBER)
        assert emergency.is_emergency

    def test_ordering_follows_seqno(self) -> None:
        ids = [QueryId.from_seqno(n) for n in (0, 1, 1022, 1023, 5000)]
        assert ids == sorted(ids)

    @pytest.mark.parametrize(
        ("shift", "bit_number"),
        [(-1, 0), (MAX_SHIFT + 1, 0), (0, -1), (0, MAX_BIT_NUMBER + 1)],
    )
    def test_out_of_range_coordinates(self, shift: int, bit_number: int) -> None:
        with pytest.raises(ValueError):
            QueryId(shift=shift, bit_number=bit_number)

    def test_out_of_range_seqno(self) -> None:
        with pytest.raises(ValueError):
            QueryId.from_seqno(EMERGENCY_SEQNO + 1)
        with pytest.raises(ValueError):
            QueryId.from_seqno(-1)

    def test_bit_number_1023_is_not_a_query_id(self) -> None:
        with pytest.raises(ValueError):
            QueryId.from_query_id(1023)
