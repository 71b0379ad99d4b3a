"""
Chain event types.

Raw events from the RPC and the websocket feed are loosely typed
``{"event": name, "values": {...}}`` dicts. They are decoded once, here, into
MetadataUpdated / NameRegistered / Unrecognized.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Union

METADATA_UPDATED = "CrcV2_UpdateMetadataDigest"
REGISTER_GROUP = "CrcV2_RegisterGroup"
REGISTER_ORGANIZATION = "CrcV2_RegisterOrganization"
REGISTER_SHORT_NAME = "CrcV2_RegisterShortName"


class NameKind(str, Enum):
    GROUP = "group"
    ORGANIZATION = "organization"
    SHORT_NAME = "short_name"


# event name -> (kind, field holding the address, field holding the name)
NAME_EVENTS = {
    REGISTER_GROUP: (NameKind.GROUP, "group", "name"),
    REGISTER_ORGANIZATION: (NameKind.ORGANIZATION, "organization", "name"),
    REGISTER_SHORT_NAME: (NameKind.SHORT_NAME, "avatar", "shortName"),
}

INDEXED_EVENTS = [METADATA_UPDATED, *NAME_EVENTS]


@dataclass(frozen=True)
class MetadataUpdated:
    address: str
    digest: bytes
    block_number: int
    transaction_hash: str = ""


@dataclass(frozen=True)
class NameRegistered:
    address: str
    name: Any  # str, or the numeric encoding for SHORT_NAME
    block_number: int
    kind: NameKind
    transaction_hash: str = ""


@dataclass(frozen=True)
class Unrecognized:
    event_name: str
    block_number: int = 0


ChainEvent = Union[MetadataUpdated, NameRegistered, Unrecognized]


class EventDecodeError(ValueError):
    pass


def parse_int(value) -> int:
    if isinstance(value, bool):
        raise EventDecodeError(f"Expected integer, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 16) if value.lower().startswith("0x") else int(value)
        except ValueError:
            pass
    raise EventDecodeError(f"Expected integer, got {value!r}")


def parse_bytes(value) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, list):
        return bytes(value)
    if isinstance(value, str):
        try:
            return bytes.fromhex(value[2:] if value.lower().startswith("0x") else value)
        except ValueError:
            pass
    raise EventDecodeError(f"Expected bytes, got {value!r}")


def _address(value) -> str:
    if not isinstance(value, str) or not value:
        raise EventDecodeError(f"Expected address, got {value!r}")
    return value.lower()


def decode_event(raw: Dict[str, Any]) -> ChainEvent:
    """Decode one raw feed event. Raises EventDecodeError on malformed input."""
    if not isinstance(raw, dict):
        raise EventDecodeError(f"Expected event object, got {type(raw).__name__}")
    name = raw.get("event") or raw.get("$event") or ""
    values = raw.get("values", raw)
    if not isinstance(values, dict):
        raise EventDecodeError(f"Event {name} has no values")

    if name == METADATA_UPDATED:
        return MetadataUpdated(
            address=_address(values.get("avatar")),
            digest=parse_bytes(values.get("metadataDigest")),
            block_number=parse_int(values.get("blockNumber")),
            transaction_hash=values.get("transactionHash") or "",
        )

    if name in NAME_EVENTS:
        kind, address_field, name_field = NAME_EVENTS[name]
        return NameRegistered(
            address=_address(values.get(address_field)),
            name=values.get(name_field),
            block_number=parse_int(values.get("blockNumber")),
            kind=kind,
            transaction_hash=values.get("transactionHash") or "",
        )

    try:
        block_number = parse_int(values.get("blockNumber", 0))
    except EventDecodeError:
        block_number = 0
    return Unrecognized(event_name=str(name), block_number=block_number)
