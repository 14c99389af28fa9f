# agentledger/chain/codec.py
from dataclasses import replace
from typing import Optional, Union

from agentledger.core.canon import encode_versioned
from agentledger.core.types import Block, BlockCore, HASHED_BLOCK_FIELDS
from agentledger.crypto.hashing import keccak256_hex

# parent_hash of every chain's first block
GENESIS_SENTINEL = "0x" + "0" * 64


def canonical_block_bytes(block: Union[Block, dict]) -> bytes:
    """
    Canonical encoding of everything block_hash covers, under the rules frozen
    for the block's protocol_version.
    """
    fields = block.hashed_fields() if isinstance(block, Block) else {k: block[k] for k in HASHED_BLOCK_FIELDS}
    return encode_versioned(fields, fields["protocol_version"])


def compute_block_hash(block: Union[Block, dict]) -> str:
    """0x-prefixed keccak256 of the canonical block encoding (block_hash excluded)."""
    return keccak256_hex(canonical_block_bytes(block))


def build_block(previous: Optional[Block], core: BlockCore) -> Block:
    """
    Seal a new block on top of `previous` (None for genesis).
    Pure: no clock and no storage. The caller decides the timestamp.
    """
    if not core.agent_id:
        raise ValueError("BlockCore.agent_id is required")
    if core.timestamp is None:
        raise ValueError("BlockCore.timestamp is required to build a block")
    if previous is not None and previous.agent_id != core.agent_id:
        raise ValueError(
            f"Cannot chain block for {core.agent_id} onto a block of {previous.agent_id}"
        )

    unsealed = Block(
        agent_id=core.agent_id,
        index=previous.index + 1 if previous else 0,
        parent_hash=previous.block_hash if previous else GENESIS_SENTINEL,
        timestamp=int(core.timestamp),
        actor=core.actor,
        action=core.action,
        params=dict(core.params),
        resources=dict(core.resources),
        attachments=list(core.attachments),
        protocol_version=core.protocol_version,
        origin=dict(core.origin) if core.origin is not None else None,
    )
    return replace(unsealed, block_hash=compute_block_hash(unsealed))
