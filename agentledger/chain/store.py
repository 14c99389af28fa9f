# agentledger/chain/store.py
import logging
from dataclasses import replace
from typing import List, Optional

from agentledger.chain.codec import build_block, compute_block_hash
from agentledger.config import LedgerSettings
from agentledger.core.clock import Clock, now_ms
from agentledger.core.errors import ChainConflict, HashMismatch
from agentledger.core.types import Block, BlockCore, ChainStats
from agentledger.storage import StorageBackend, UniqueViolation

logger = logging.getLogger(__name__)


class LedgerStore:
    """
    Durable per-agent block chains on top of a StorageBackend.

    Appends are optimistic: read the tip, build a candidate on it and insert.
    The backend's uniqueness on (agent_id, index) decides which writer wins;
    the loser re-reads the tip and tries again with a fresh candidate.
    """

    def __init__(
        self,
        storage: StorageBackend,
        max_attempts: Optional[int] = None,
        clock: Clock = now_ms,
    ):
        self.storage = storage
        self.max_attempts = max_attempts or LedgerSettings.from_env().append_max_attempts
        self.clock = clock

    def append(self, agent_id: str, core: BlockCore) -> Block:
        """
        Append one block to `agent_id`'s chain and return it as stored.
        Raises ChainConflict once every attempt lost the race, HashMismatch if
        the current tip does not verify.
        """
        if not agent_id:
            raise ValueError("agent_id required")
        if core.agent_id and core.agent_id != agent_id:
            raise ValueError(f"BlockCore is for {core.agent_id}, not {agent_id}")

        for attempt in range(1, self.max_attempts + 1):
            previous = self.storage.latest_block(agent_id)
            if previous is not None:
                self.verify(previous)

            timestamp = core.timestamp
            if timestamp is None:
                timestamp = self.clock()
                if previous is not None:
                    timestamp = max(timestamp, previous.timestamp)
            elif previous is not None and timestamp < previous.timestamp:
                raise ValueError(
                    f"timestamp {timestamp} precedes block {previous.index} of {agent_id} ({previous.timestamp})"
                )

            candidate = build_block(previous, replace(core, agent_id=agent_id, timestamp=timestamp))
            try:
                self.storage.insert_block(candidate)
            except UniqueViolation:
                logger.warning(
                    "Append conflict on %s at index %d (attempt %d/%d), retrying",
                    agent_id, candidate.index, attempt, self.max_attempts,
                )
                continue

            logger.info("Appended block %d for agent %s", candidate.index, agent_id)
            return candidate

        raise ChainConflict(agent_id, self.max_attempts)

    def get_latest_block(self, agent_id: str) -> Optional[Block]:
        return self.storage.latest_block(agent_id)

    def get_block(self, agent_id: str, index: int) -> Optional[Block]:
        return self.storage.get_block(agent_id, index)

    def get_block_by_hash(self, block_hash: str) -> Optional[Block]:
        return self.storage.get_block_by_hash(block_hash)

    def get_blocks(self, agent_id: str, from_index: int = 0, limit: Optional[int] = None) -> List[Block]:
        """Blocks of one chain, ascending by index."""
        if from_index < 0:
            raise ValueError("from_index must be >= 0")
        if limit is not None and limit < 0:
            raise ValueError("limit must be >= 0")
        return self.storage.load_blocks(agent_id, from_index=from_index, limit=limit)

    def get_chain_stats(self, agent_id: str) -> ChainStats:
        return self.storage.chain_stats(agent_id)

    def list_agents(self) -> List[str]:
        return self.storage.list_agents()

    def verify(self, block: Block) -> bool:
        """
        Recompute block_hash from the block's other fields.
        A mismatch means corruption or tampering and is never retried.
        """
        computed = compute_block_hash(block)
        if computed != block.block_hash:
            logger.error(
                "HASH MISMATCH on block %d of %s: stored %s, computed %s",
                block.index, block.agent_id, block.block_hash, computed,
            )
            raise HashMismatch(block.agent_id, block.index, block.block_hash, computed)
        return True
