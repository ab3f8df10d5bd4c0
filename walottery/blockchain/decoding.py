"""Normalization of ledger payloads into the reconciliation models.

The node and the ABI decoder hand back the same logical value in several
equivalent wire shapes: a struct may arrive as a positional tuple or as a
mapping, a vector may be a plain sequence or wrapped in `contents`/`fields`/
`value`, and a string may be text, raw bytes or hex-encoded bytes. Every
shape is classified into an explicit tag first and decoded by the branch for
that tag, in a fixed fallback order. Nothing outside this module inspects
payload shapes.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from enum import Enum
from typing import Any, List, Optional, Tuple

from walottery.lottery.models import EventCursor, LedgerEvent, LotteryOnChain

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class MalformedPayloadError(ValueError):
    """A ledger payload is missing a field the reconciliation core needs."""


class VectorShape(Enum):
    SEQUENCE = "sequence"
    FIELDS_CONTENTS = "fields.contents"
    CONTENTS = "contents"
    FIELDS_SEQUENCE = "fields"
    VALUE_SEQUENCE = "value"
    UNKNOWN = "unknown"


class StringShape(Enum):
    TEXT = "text"
    RAW_BYTES = "bytes"
    HEX_BYTES = "hex_bytes"
    FIELDS_BYTES = "fields.bytes"
    FIELDS_VALUE = "fields.value"
    OTHER = "other"


def _is_sequence(value: Any) -> bool:
    return isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray))


# ----------------------------------------------------------------------
# Vectors
# ----------------------------------------------------------------------
def classify_vector(value: Any) -> Tuple[VectorShape, Any]:
    """Return the shape tag of a vector payload and the inner sequence."""
    if _is_sequence(value):
        return VectorShape.SEQUENCE, value
    if isinstance(value, Mapping):
        fields = value.get("fields")
        if isinstance(fields, Mapping) and _is_sequence(fields.get("contents")):
            return VectorShape.FIELDS_CONTENTS, fields["contents"]
        if _is_sequence(value.get("contents")):
            return VectorShape.CONTENTS, value["contents"]
        if _is_sequence(fields):
            return VectorShape.FIELDS_SEQUENCE, fields
        if _is_sequence(value.get("value")):
            return VectorShape.VALUE_SEQUENCE, value["value"]
    return VectorShape.UNKNOWN, None


def unwrap_vector(value: Any) -> List[Any]:
    shape, inner = classify_vector(value)
    if shape is VectorShape.UNKNOWN:
        return []
    return list(inner)


# ----------------------------------------------------------------------
# Strings
# ----------------------------------------------------------------------
def classify_string(value: Any) -> StringShape:
    if isinstance(value, str):
        return StringShape.TEXT
    if isinstance(value, (bytes, bytearray)):
        return StringShape.RAW_BYTES
    if isinstance(value, Mapping):
        if value.get("bytes"):
            return StringShape.HEX_BYTES
        fields = value.get("fields")
        if isinstance(fields, Mapping):
            if fields.get("bytes"):
                return StringShape.FIELDS_BYTES
            if fields.get("value"):
                return StringShape.FIELDS_VALUE
    return StringShape.OTHER


def hex_to_utf8(hex_value: Optional[str]) -> str:
    clean = (hex_value or "")
    if clean.startswith("0x"):
        clean = clean[2:]
    if not clean:
        return ""
    return bytes.fromhex(clean).decode("utf-8", errors="replace")


def decode_ledger_string(value: Any) -> str:
    shape = classify_string(value)
    if shape is StringShape.TEXT:
        return value
    if shape is StringShape.RAW_BYTES:
        return bytes(value).rstrip(b"\x00").decode("utf-8", errors="replace")
    if shape is StringShape.HEX_BYTES:
        return hex_to_utf8(value["bytes"])
    if shape is StringShape.FIELDS_BYTES:
        return hex_to_utf8(value["fields"]["bytes"])
    if shape is StringShape.FIELDS_VALUE:
        return decode_ledger_string(value["fields"]["value"])
    return "" if value is None else str(value)


# ----------------------------------------------------------------------
# Scalars and identifiers
# ----------------------------------------------------------------------
def normalize_object_id(value: Any) -> Optional[str]:
    """Render a lottery identifier as a lowercase 0x-prefixed 32-byte hex string."""
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        if not value:
            return None
        return "0x" + bytes(value).hex().rjust(64, "0")
    if isinstance(value, int) and not isinstance(value, bool):
        return "0x" + format(value, "x").rjust(64, "0")
    if isinstance(value, str):
        text = value.strip().lower()
        if not text:
            return None
        if text.startswith("0x"):
            text = text[2:]
        try:
            int(text, 16)
        except ValueError:
            return None
        return "0x" + text.rjust(64, "0")
    return None


def object_id_to_bytes(lottery_id: str) -> bytes:
    normalized = normalize_object_id(lottery_id)
    if normalized is None or len(normalized) != 66:
        raise ValueError(f"Invalid lottery id: {lottery_id!r}")
    return bytes.fromhex(normalized[2:])


def as_int(value: Any, default: int = 0) -> int:
    if value is None:
        return default
    try:
        if isinstance(value, str) and value.startswith("0x"):
            return int(value, 16)
        return int(value)
    except (TypeError, ValueError):
        return default


def to_json_safe(value: Any) -> Any:
    """Convert web3 return values (AttributeDict, HexBytes, tuples) into JSON types."""
    if isinstance(value, Mapping):
        return {str(k): to_json_safe(v) for k, v in value.items()}
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if _is_sequence(value):
        return [to_json_safe(v) for v in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


def _first_present(mapping: Mapping, *keys: str) -> Any:
    for key in keys:
        if key in mapping and mapping[key] is not None:
            return mapping[key]
    return None


def _select(mapping_or_tuple: Any, keys: Tuple[str, ...], index: int) -> Any:
    if isinstance(mapping_or_tuple, Mapping):
        return _first_present(mapping_or_tuple, *keys)
    if _is_sequence(mapping_or_tuple) and index < len(mapping_or_tuple):
        return mapping_or_tuple[index]
    return None


# ----------------------------------------------------------------------
# Events and objects
# ----------------------------------------------------------------------
def parse_lottery_created(
    args: Mapping[str, Any],
    *,
    block_number: int,
    log_index: int,
    tx_hash: str,
) -> LedgerEvent:
    """Decode the arguments of a `LotteryCreated` log."""
    lottery_id = normalize_object_id(_first_present(args, "lotteryId", "lottery_id"))
    creator = _first_present(args, "creator") or "0x0"
    deadline_ms = as_int(_first_present(args, "deadlineMs", "deadline_ms"))
    total_prize_units = as_int(_first_present(args, "totalPrizeUnits", "total_prize_units"))

    payload = {
        "eventType": "LotteryCreated",
        "txDigest": tx_hash,
        "eventSeq": log_index,
        "blockNumber": block_number,
        "parsedJson": {
            "lottery_id": lottery_id,
            "creator": creator,
            "deadline_ms": deadline_ms,
            "total_prize_units": total_prize_units,
        },
        "args": to_json_safe(dict(args)),
    }
    return LedgerEvent(
        event_id=EventCursor(block_number=block_number, event_seq=log_index, tx_digest=tx_hash),
        lottery_id=lottery_id,
        creator=str(creator),
        deadline_ms=deadline_ms,
        total_prize_units=total_prize_units,
        payload=payload,
    )


def _prize_template(template: Any) -> Tuple[str, int]:
    body = template
    if isinstance(template, Mapping) and isinstance(template.get("fields"), Mapping):
        body = template["fields"]
    name = decode_ledger_string(_select(body, ("name",), 0))
    quantity = as_int(_select(body, ("quantity",), 1))
    return name, quantity


def parse_lottery_object(lottery_id: str, raw: Any) -> Optional[LotteryOnChain]:
    """Decode a `getLottery` result.

    Returns None when the ledger reports no such lottery (zero creator).
    Raises MalformedPayloadError when the object lacks a required field.
    """
    if raw is None:
        return None
    body = raw
    if isinstance(raw, Mapping) and isinstance(raw.get("fields"), Mapping):
        body = raw["fields"]

    creator = _select(body, ("creator",), 0)
    if creator is None:
        raise MalformedPayloadError(f"lottery {lottery_id} has no creator field")
    creator = str(creator)
    if creator.lower() in (ZERO_ADDRESS, "0x0", ""):
        return None

    deadline = _select(body, ("deadline_ms", "deadlineMs", "deadline"), 1)
    if deadline is None:
        raise MalformedPayloadError(f"lottery {lottery_id} has no deadline field")

    settled = _select(body, ("settled",), 2)
    participants = unwrap_vector(_select(body, ("participants",), 3))
    templates = [_prize_template(t) for t in unwrap_vector(_select(body, ("prize_templates", "prizeTemplates"), 4))]

    return LotteryOnChain(
        lottery_id=lottery_id,
        creator=creator,
        deadline_ms=as_int(deadline),
        settled=bool(settled),
        participants_count=len(participants),
        total_prize_units=sum(quantity for _, quantity in templates),
        prize_names=[name for name, _ in templates],
        raw={
            "objectId": lottery_id,
            "fields": {
                "creator": creator,
                "deadline_ms": as_int(deadline),
                "settled": bool(settled),
                "participants": to_json_safe(participants),
                "prize_templates": [{"name": n, "quantity": q} for n, q in templates],
            },
        },
    )
