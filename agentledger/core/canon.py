# agentledger/core/canon.py
from typing import Any, Callable, Dict

import jcs

from agentledger.core.errors import UnsupportedProtocolVersion

# Current block/event encoding. Never change the rules behind an existing tag;
# add a new tag and a new encoder instead, or every stored hash stops verifying.
PROTOCOL_VERSION = "0.2"


def canonical_json(obj: Any) -> bytes:
    """
    Produce deterministic UTF-8 bytes according to RFC 8785 (JSON Canonicalization Scheme).
    Returns bytes ready for hashing.
    """
    return jcs.canonicalize(obj)


def canonical_json_str(obj: Any) -> str:
    """Same as above, as text. Used for JSONL export lines."""
    return canonical_json(obj).decode("utf-8")


def stringify_numbers(obj: Any) -> Any:
    """
    Replace every number with its decimal string, recursively.
    Token ids and chain ids are up to 256 bits wide, far past what a JSON
    number can carry exactly. Booleans stay booleans.
    """
    if isinstance(obj, bool) or obj is None:
        return obj
    if isinstance(obj, int):
        return str(obj)
    if isinstance(obj, float):
        if obj.is_integer():
            return str(int(obj))
        return repr(obj)
    if isinstance(obj, dict):
        return {str(k): stringify_numbers(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [stringify_numbers(v) for v in obj]
    return obj


def _encode_v0_2(payload: Dict[str, Any]) -> bytes:
    return canonical_json(stringify_numbers(payload))


ENCODERS: Dict[str, Callable[[Dict[str, Any]], bytes]] = {
    "0.2": _encode_v0_2,
}


def encode_versioned(payload: Dict[str, Any], version: str) -> bytes:
    """Canonical bytes for `payload` under the rules frozen for `version`."""
    try:
        encoder = ENCODERS[version]
    except KeyError:
        raise UnsupportedProtocolVersion(version) from None
    return encoder(payload)
