"""
Content identifier codec.

On-chain metadata digests are raw sha2-256 hashes. IPFS addresses them as
CIDv0 strings: the multihash header (function code + digest length) followed by
the digest, base58 encoded.
"""
import base58

from profiles_mirror.indexer.errors import InvalidContentId, InvalidDigestLength, NameDecodeError

SHA2_256 = 0x12
DIGEST_LENGTH = 32
MULTIHASH_HEADER = bytes([SHA2_256, DIGEST_LENGTH])
CID_V0_LENGTH = 46

# Short names are uint72 values in the name registry
SHORT_NAME_BYTES = 9


def digest_to_content_id(digest: bytes) -> str:
    if len(digest) != DIGEST_LENGTH:
        raise InvalidDigestLength(len(digest))
    return base58.b58encode(MULTIHASH_HEADER + bytes(digest)).decode("ascii")


def content_id_to_digest(cid: str) -> bytes:
    try:
        raw = base58.b58decode(cid)
    except ValueError as e:
        raise InvalidContentId(f"Invalid base58 in CID {cid!r}: {e}") from e
    if len(raw) != len(MULTIHASH_HEADER) + DIGEST_LENGTH or raw[:2] != MULTIHASH_HEADER:
        raise InvalidContentId(f"CID {cid!r} is not a sha2-256 multihash")
    return raw[2:]


def is_valid_content_id(cid) -> bool:
    if not isinstance(cid, str):
        return False
    cid = cid.strip()
    if len(cid) != CID_V0_LENGTH or not cid.startswith("Qm") or not cid.isalnum():
        return False
    try:
        content_id_to_digest(cid)
    except InvalidContentId:
        return False
    return True


def decode_short_name(value) -> str:
    """Convert a numeric short name to its base58 representation."""
    if isinstance(value, str):
        try:
            value = int(value, 16) if value.lower().startswith("0x") else int(value)
        except ValueError as e:
            raise NameDecodeError(f"Unparseable short name {value!r}") from e
    if isinstance(value, bool) or not isinstance(value, int):
        raise NameDecodeError(f"Short name must be an integer, got {type(value).__name__}")
    if value < 0:
        raise NameDecodeError(f"Short name must not be negative: {value}")
    try:
        raw = value.to_bytes(SHORT_NAME_BYTES, "big")
    except OverflowError as e:
        raise NameDecodeError(f"Short name {value} does not fit in {SHORT_NAME_BYTES} bytes") from e
    return base58.b58encode(raw).decode("ascii")
