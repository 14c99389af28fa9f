# agentledger/core/types.py
import enum
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

from agentledger.core.canon import PROTOCOL_VERSION

# Block fields covered by block_hash. checkpoint_epoch is storage metadata,
# stamped after the block is sealed, and is never hashed.
HASHED_BLOCK_FIELDS = (
    "agent_id",
    "index",
    "parent_hash",
    "timestamp",
    "actor",
    "action",
    "params",
    "resources",
    "attachments",
    "protocol_version",
    "origin",
)


@dataclass(frozen=True)
class BlockCore:
    """Caller-supplied part of a block; index, parent_hash and block_hash are derived."""
    action: str
    agent_id: str = ""
    actor: str = "system"
    timestamp: Optional[int] = None             # ms since epoch; filled by the store if None
    params: Dict[str, Any] = field(default_factory=dict)
    resources: Dict[str, Any] = field(default_factory=dict)
    attachments: List[Any] = field(default_factory=list)
    protocol_version: str = PROTOCOL_VERSION
    origin: Optional[Dict[str, Any]] = None     # {"chain", "contract", "token_id"}


@dataclass(frozen=True)
class Block:
    """Single immutable entry in an agent's hash chain."""
    agent_id: str
    index: int
    parent_hash: str                # GENESIS_SENTINEL for index 0
    timestamp: int
    actor: str
    action: str
    params: Dict[str, Any]
    resources: Dict[str, Any]
    attachments: List[Any]
    protocol_version: str
    origin: Optional[Dict[str, Any]]
    block_hash: str = ""
    checkpoint_epoch: Optional[int] = None

    def hashed_fields(self) -> dict:
        """Everything block_hash commits to."""
        d = asdict(self)
        return {k: d[k] for k in HASHED_BLOCK_FIELDS}

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class ChainStats:
    agent_id: str
    length: int
    first_timestamp: Optional[int]
    last_timestamp: Optional[int]
    latest_index: int               # -1 for an empty chain
    latest_hash: Optional[str]
    pending_checkpoint: int         # blocks not yet covered by any epoch


@dataclass(frozen=True)
class Checkpoint:
    """Commitment over the chain tips that advanced during one epoch."""
    epoch: int
    committed_tips: Dict[str, str]  # agent_id -> tip block_hash
    root_commitment: str
    previous_root: str
    submitted_at: int

    def to_dict(self) -> dict:
        return asdict(self)


class MintStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not MintStatus.PENDING


@dataclass(frozen=True)
class MintReceipt:
    """Ties one external mint job to exactly one ledger entry."""
    agent_id: str
    block_index: int
    status: MintStatus
    created_at: int
    external_ref: Optional[str] = None
    updated_at: Optional[int] = None

    def to_dict(self) -> dict:
        d = asdict(self)
        d["status"] = self.status.value
        return d


@dataclass(frozen=True)
class Event:
    """Deduplicated activity record; ordering is by ts, not by chain index."""
    agent_id: str
    ts: int
    type: str
    actor: str
    data: Dict[str, Any]
    attachments: List[Any]
    v: str
    content_hash: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class EventStats:
    agent_id: str
    count: int
    first_ts: Optional[int]
    last_ts: Optional[int]
    last_type: Optional[str]
