# agentledger/identity/resolver.py
"""
Deterministic agent identities.

    agent_id = keccak256(chain_id ‖ origin_contract ‖ token_id)

Each part is left-padded to 32 bytes before concatenation. Anyone holding the
origin triple can recompute the id; nothing here touches storage.

Chain ids come from a versioned registry. EVM chains use their standard
numeric id. Chains without one use the ASCII tag scheme: a four-character
uppercase tag packed big-endian into an unsigned 32-bit integer, so
"SOLA" -> 0x534F4C41 for Solana. Adding chains to the registry is fine; changing
an existing entry changes every agent id derived from it and needs a new
registry version.
"""

import re
from dataclasses import dataclass
from typing import Optional, Union

from agentledger.core.errors import UnknownChain
from agentledger.crypto.hashing import keccak256, keccak256_hex

CHAIN_REGISTRY_VERSION = 1

_DECIMAL = re.compile(r"[0-9]+")
_HEX = re.compile(r"0x[0-9a-fA-F]+")

WORD_BYTES = 32
TOKEN_DIGEST_BYTES = 8          # opaque token ids map into a 64-bit domain


def ascii_tag_chain_id(tag: str) -> int:
    """Pack a four-character ASCII tag into a big-endian uint32."""
    if len(tag) != 4 or not tag.isascii():
        raise ValueError(f"Chain tag must be exactly 4 ASCII characters, got {tag!r}")
    return int.from_bytes(tag.encode("ascii"), "big")


CHAIN_REGISTRY = {
    "ethereum": 1,
    "mainnet": 1,
    "optimism": 10,
    "bsc": 56,
    "polygon": 137,
    "matic": 137,
    "base": 8453,
    "arbitrum": 42161,
    "sepolia": 11155111,
    "solana": ascii_tag_chain_id("SOLA"),
    "dogecoin": ascii_tag_chain_id("DOGE"),
}


def resolve_chain_id(name: Optional[str], explicit: Union[int, str, None] = None) -> int:
    """
    Map a chain name to its numeric id.
    An explicit id wins and is returned as given; the caller vouches for it.
    """
    if explicit is not None:
        if isinstance(explicit, bool):
            raise ValueError("Explicit chain id must be an integer")
        if isinstance(explicit, int):
            return explicit
        if isinstance(explicit, str) and _DECIMAL.fullmatch(explicit.strip()):
            return int(explicit.strip())
        raise ValueError(f"Explicit chain id must be an integer, got {explicit!r}")

    if not name:
        raise UnknownChain(name)
    try:
        return CHAIN_REGISTRY[name.strip().lower()]
    except KeyError:
        raise UnknownChain(name) from None


def normalize_token_id(raw: Union[int, str, None]) -> int:
    """
    Bring any token reference into one unsigned integer domain:
    decimal strings and 0x-hex parse directly, anything else (base58 mints,
    UUIDs, inscription ids) becomes the first 8 bytes of its keccak digest.
    """
    if raw is None:
        raise ValueError("tokenId required")
    if isinstance(raw, bool):
        raise ValueError("tokenId must not be a boolean")
    if isinstance(raw, int):
        if raw < 0:
            raise ValueError(f"tokenId must be unsigned, got {raw}")
        return raw

    s = str(raw)
    if _DECIMAL.fullmatch(s):
        return int(s)
    if _HEX.fullmatch(s):
        return int(s, 16)
    digest = keccak256(s.encode("utf-8"))
    return int.from_bytes(digest[:TOKEN_DIGEST_BYTES], "big")


def normalize_contract(contract: Optional[str]) -> bytes:
    """
    Hex addresses are lowercased and padded to 20 bytes; non-hex identifiers
    are hashed to 32 bytes. A missing contract is 32 zero bytes.
    """
    if not contract:
        return bytes(WORD_BYTES)
    if not _HEX.fullmatch(contract):
        return keccak256(contract.encode("utf-8"))

    digits = contract[2:].lower()
    if len(digits) > WORD_BYTES * 2:
        raise ValueError(f"Contract address wider than {WORD_BYTES} bytes: {contract}")
    digits = digits.rjust(max(40, len(digits) + len(digits) % 2), "0")
    return bytes.fromhex(digits)


def _word(value: int, what: str) -> bytes:
    if value < 0 or value.bit_length() > WORD_BYTES * 8:
        raise ValueError(f"{what} does not fit in {WORD_BYTES} bytes: {value}")
    return value.to_bytes(WORD_BYTES, "big")


def _pad_word(raw: bytes) -> bytes:
    return raw.rjust(WORD_BYTES, b"\x00")


def compute_agent_id(chain_id: int, origin_contract: Optional[str], token_id: Union[int, str]) -> str:
    """Derive the agent id for an origin triple. Pure: same inputs, same id."""
    preimage = (
        _word(int(chain_id), "chain_id")
        + _pad_word(normalize_contract(origin_contract))
        + _word(normalize_token_id(token_id), "token_id")
    )
    return keccak256_hex(preimage)


@dataclass(frozen=True)
class AgentIdentity:
    """Origin triple of an agent. agent_id is always recomputed, never stored."""
    chain_id: int
    origin_contract: Optional[str]
    token_id: int

    @property
    def agent_id(self) -> str:
        return compute_agent_id(self.chain_id, self.origin_contract, self.token_id)

    @classmethod
    def from_nft(
        cls,
        chain: Optional[str],
        contract: Optional[str],
        token_id: Union[int, str],
        chain_id: Union[int, str, None] = None,
    ) -> "AgentIdentity":
        return cls(
            chain_id=resolve_chain_id(chain, chain_id),
            origin_contract=contract,
            token_id=normalize_token_id(token_id),
        )

    def origin(self, chain: Optional[str] = None) -> dict:
        """Origin record as embedded in blocks."""
        return {
            "chain": chain,
            "chain_id": self.chain_id,
            "contract": self.origin_contract,
            "token_id": self.token_id,
        }
