# agentledger/__init__.py
"""
Agent Ledger: per-agent, append-only, hash-chained action logs for NFT-bound avatars.
Deterministic agent identities from on-chain origin triples, conflict-safe appends,
epoch checkpoints over chain tips and reconciliation of external mint jobs.
"""

__version__ = "0.2.0"

from agentledger.chain.agent import AgentChain
from agentledger.chain.store import LedgerStore
from agentledger.checkpoint.service import CheckpointService
from agentledger.events.log import EventLog
from agentledger.identity.resolver import AgentIdentity
from agentledger.mint.receipts import MintReceiptTracker
from agentledger.storage import SQLiteStorage, create_storage
from agentledger.verify.verifier import ChainVerifier

__all__ = [
    "AgentChain",
    "AgentIdentity",
    "ChainVerifier",
    "CheckpointService",
    "EventLog",
    "LedgerStore",
    "MintReceiptTracker",
    "SQLiteStorage",
    "create_storage",
]
