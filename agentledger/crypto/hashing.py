# agentledger/crypto/hashing.py
from eth_hash.auto import keccak

HASH_PREFIX = "0x"


def keccak256(data: bytes) -> bytes:
    """Raw 32-byte Keccak-256 digest (Ethereum flavour, not NIST SHA3-256)."""
    return keccak(data)


def keccak256_hex(data: bytes) -> str:
    """0x-prefixed lowercase hex digest, the format of every ledger hash."""
    return HASH_PREFIX + keccak(data).hex()


def hash_to_bytes(h: str) -> bytes:
    """Decode a 0x-prefixed hex hash back to raw bytes."""
    return bytes.fromhex(h[2:] if h.startswith(HASH_PREFIX) else h)
