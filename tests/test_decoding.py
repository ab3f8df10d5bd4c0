import pytest

from walottery.blockchain.decoding import (
    MalformedPayloadError,
    StringShape,
    VectorShape,
    classify_string,
    classify_vector,
    decode_ledger_string,
    normalize_object_id,
    object_id_to_bytes,
    parse_lottery_created,
    parse_lottery_object,
    unwrap_vector,
)

LID = "0x" + "ab" * 32
CREATOR = "0x" + "12" * 20


@pytest.mark.parametrize(
    "payload, shape",
    [
        ([1, 2], VectorShape.SEQUENCE),
        ({"fields": {"contents": [1, 2]}}, VectorShape.FIELDS_CONTENTS),
        ({"contents": [1, 2]}, VectorShape.CONTENTS),
        ({"fields": [1, 2]}, VectorShape.FIELDS_SEQUENCE),
        ({"value": [1, 2]}, VectorShape.VALUE_SEQUENCE),
    ],
)
def test_vector_shapes_unwrap_to_the_same_items(payload, shape):
    assert classify_vector(payload)[0] is shape
    assert unwrap_vector(payload) == [1, 2]


def test_unknown_vector_is_empty():
    assert classify_vector({"other": 1})[0] is VectorShape.UNKNOWN
    assert unwrap_vector(None) == []
    assert unwrap_vector("abc") == []


def test_vector_fallback_prefers_nested_contents():
    payload = {"fields": {"contents": ["inner"]}, "contents": ["outer"]}
    assert unwrap_vector(payload) == ["inner"]


@pytest.mark.parametrize(
    "payload, shape",
    [
        ("Grand prize", StringShape.TEXT),
        (b"Grand prize\x00\x00", StringShape.RAW_BYTES),
        ({"bytes": "0x4772616e64207072697a65"}, StringShape.HEX_BYTES),
        ({"fields": {"bytes": "4772616e64207072697a65"}}, StringShape.FIELDS_BYTES),
        ({"fields": {"value": "Grand prize"}}, StringShape.FIELDS_VALUE),
    ],
)
def test_string_shapes_decode_to_text(payload, shape):
    assert classify_string(payload) is shape
    assert decode_ledger_string(payload) == "Grand prize"


def test_unknown_string_shapes_fall_back_to_str():
    assert decode_ledger_string(None) == ""
    assert decode_ledger_string(42) == "42"


def test_normalize_object_id_variants():
    assert normalize_object_id("0xAB") == "0x" + "0" * 62 + "ab"
    assert normalize_object_id(LID.upper().replace("0X", "0x")) == LID
    assert normalize_object_id(bytes.fromhex("ab" * 32)) == LID
    assert normalize_object_id(171) == "0x" + "0" * 62 + "ab"
    assert normalize_object_id("not-an-id") is None
    assert normalize_object_id("") is None
    assert normalize_object_id(None) is None


def test_object_id_to_bytes_rejects_garbage():
    assert object_id_to_bytes(LID) == bytes.fromhex("ab" * 32)
    with pytest.raises(ValueError):
        object_id_to_bytes("zz")
    with pytest.raises(ValueError):
        object_id_to_bytes("0x" + "1" * 70)


def test_parse_lottery_object_from_tuple():
    raw = (CREATOR, 1_700_000_000_000, False, ["0x01", "0x02"], [("Mug", 2), (b"Tee\x00", 3)])

    state = parse_lottery_object(LID, raw)

    assert state.creator == CREATOR
    assert state.deadline_ms == 1_700_000_000_000
    assert state.settled is False
    assert state.participants_count == 2
    assert state.total_prize_units == 5
    assert state.prize_names == ["Mug", "Tee"]
    assert state.raw["objectId"] == LID
    assert state.raw["fields"]["prize_templates"] == [{"name": "Mug", "quantity": 2}, {"name": "Tee", "quantity": 3}]


def test_parse_lottery_object_from_wrapped_mapping():
    raw = {
        "fields": {
            "creator": CREATOR,
            "deadline_ms": "1700000000000",
            "settled": True,
            "participants": {"fields": {"contents": ["0x01"]}},
            "prize_templates": {
                "contents": [{"fields": {"name": {"bytes": "0x4d7567"}, "quantity": "4"}}],
            },
        }
    }

    state = parse_lottery_object(LID, raw)

    assert state.settled is True
    assert state.deadline_ms == 1_700_000_000_000
    assert state.participants_count == 1
    assert state.total_prize_units == 4
    assert state.prize_names == ["Mug"]


def test_parse_lottery_object_unknown_lottery():
    zero = "0x" + "0" * 40
    assert parse_lottery_object(LID, (zero, 0, False, [], [])) is None
    assert parse_lottery_object(LID, None) is None


def test_parse_lottery_object_missing_fields_is_malformed():
    with pytest.raises(MalformedPayloadError):
        parse_lottery_object(LID, {"creator": CREATOR})
    with pytest.raises(MalformedPayloadError):
        parse_lottery_object(LID, {"deadline_ms": 5})


def test_parse_lottery_created_accepts_both_key_styles():
    camel = parse_lottery_created(
        {"lotteryId": bytes.fromhex("ab" * 32), "creator": CREATOR, "deadlineMs": 10, "totalPrizeUnits": 7},
        block_number=12, log_index=3, tx_hash="0xfeed",
    )
    snake = parse_lottery_created(
        {"lottery_id": LID, "creator": CREATOR, "deadline_ms": "10", "total_prize_units": 7},
        block_number=12, log_index=3, tx_hash="0xfeed",
    )

    for event in (camel, snake):
        assert event.lottery_id == LID
        assert event.deadline_ms == 10
        assert event.total_prize_units == 7
        assert (event.event_id.block_number, event.event_id.event_seq) == (12, 3)
        assert event.payload["txDigest"] == "0xfeed"
        assert event.payload["parsedJson"]["lottery_id"] == LID
    assert camel.payload["args"]["lotteryId"] == LID


def test_parse_lottery_created_without_id_is_kept_for_skipping():
    event = parse_lottery_created({"deadlineMs": 1}, block_number=1, log_index=0, tx_hash="0x01")

    assert event.lottery_id is None
    assert event.creator == "0x0"
