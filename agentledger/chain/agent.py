# agentledger/chain/agent.py
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from agentledger.chain.store import LedgerStore
from agentledger.core.types import Block, BlockCore
from agentledger.events.log import EventLog
from agentledger.identity.resolver import AgentIdentity

logger = logging.getLogger(__name__)

GENESIS_ACTIONS = ("genesis", "welcome", "introduction")


@dataclass
class AgentChain:
    """
    One agent's chain.
    Every append goes through the store first; the block is then mirrored into
    the event log. The ledger is authoritative, so a failed mirror is logged
    and the appended block is still returned.
    """
    agent_id: str
    store: LedgerStore
    events: Optional[EventLog] = None
    origin: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if not self.agent_id:
            raise ValueError("agent_id required")

    @classmethod
    def for_identity(
        cls,
        identity: AgentIdentity,
        store: LedgerStore,
        events: Optional[EventLog] = None,
        chain: Optional[str] = None,
    ) -> "AgentChain":
        return cls(identity.agent_id, store, events, identity.origin(chain))

    @property
    def length(self) -> int:
        latest = self.store.get_latest_block(self.agent_id)
        return latest.index + 1 if latest else 0

    @property
    def last_hash(self) -> Optional[str]:
        latest = self.store.get_latest_block(self.agent_id)
        return latest.block_hash if latest else None

    def append(
        self,
        action: str,
        actor: str = "system",
        params: Optional[Dict[str, Any]] = None,
        resources: Optional[Dict[str, Any]] = None,
        attachments: Optional[List[Any]] = None,
        origin: Optional[Dict[str, Any]] = None,
        timestamp: Optional[int] = None,
    ) -> Block:
        if not action:
            raise ValueError("action required")

        block = self.store.append(self.agent_id, BlockCore(
            action=action,
            actor=actor or "system",
            timestamp=timestamp,
            params=params or {},
            resources=resources or {},
            attachments=attachments or [],
            origin=origin if origin is not None else self.origin,
        ))

        if self.events is not None:
            try:
                self.events.record_block(block)
            except Exception as e:
                logger.warning(
                    "Failed to mirror block %d of %s into the event log: %s",
                    block.index, self.agent_id, e,
                )
        return block

    def create_genesis_blocks(self, actions: Sequence[str] = GENESIS_ACTIONS) -> List[Block]:
        """Onboarding sequence for a new agent. Refuses to run on a non-empty chain."""
        if self.length:
            raise ValueError(f"Chain {self.agent_id} already has {self.length} blocks")
        return [self.append(action, actor="system", params={"auto_generated": True}) for action in actions]

    def get_chain(self) -> List[Block]:
        """Full chain, ascending by index."""
        return self.store.get_blocks(self.agent_id)
