# agentledger/storage/__init__.py
"""
Storage backends for the agent ledger.

A backend must offer atomic unique inserts, ordered range scans and point
lookups by composite key. Unique-constraint violations surface as
UniqueViolation; deciding whether to retry is the caller's job.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from agentledger.core.types import (
    Block,
    ChainStats,
    Checkpoint,
    Event,
    EventStats,
    MintReceipt,
    MintStatus,
)


class UniqueViolation(Exception):
    """An insert collided with a uniqueness constraint."""

    def __init__(self, table: str, detail: str = ""):
        self.table = table
        self.detail = detail
        super().__init__(f"Unique constraint violated on {table}: {detail}")


class StorageBackend(ABC):
    """Abstract base for all persistent storage implementations."""

    # ── agent_blocks ───────────────────────────────────────────────────────
    @abstractmethod
    def insert_block(self, block: Block) -> None:
        pass

    @abstractmethod
    def latest_block(self, agent_id: str) -> Optional[Block]:
        pass

    @abstractmethod
    def get_block(self, agent_id: str, index: int) -> Optional[Block]:
        pass

    @abstractmethod
    def get_block_by_hash(self, block_hash: str) -> Optional[Block]:
        pass

    @abstractmethod
    def load_blocks(self, agent_id: str, from_index: int = 0, limit: Optional[int] = None) -> List[Block]:
        pass

    @abstractmethod
    def chain_stats(self, agent_id: str) -> ChainStats:
        pass

    @abstractmethod
    def list_agents(self) -> List[str]:
        pass

    @abstractmethod
    def uncheckpointed_tips(self, after_agent: Optional[str], limit: int) -> List[Block]:
        """Tips of agents holding blocks not yet covered by an epoch, ordered by agent_id."""
        pass

    # ── checkpoints ────────────────────────────────────────────────────────
    @abstractmethod
    def commit_checkpoint(self, checkpoint: Checkpoint, tips: Sequence[Block]) -> None:
        """Insert the checkpoint, its tips and the block stamps atomically."""
        pass

    @abstractmethod
    def latest_checkpoint(self) -> Optional[Checkpoint]:
        pass

    @abstractmethod
    def get_checkpoint(self, epoch: int) -> Optional[Checkpoint]:
        pass

    @abstractmethod
    def list_checkpoints(self, limit: Optional[int] = None) -> List[Checkpoint]:
        pass

    # ── agent_events ───────────────────────────────────────────────────────
    @abstractmethod
    def insert_event_if_absent(self, event: Event) -> bool:
        pass

    @abstractmethod
    def get_event(self, content_hash: str) -> Optional[Event]:
        pass

    @abstractmethod
    def list_events(
        self,
        agent_id: str,
        limit: int = 50,
        before_ts: Optional[int] = None,
        event_type: Optional[str] = None,
    ) -> List[Event]:
        pass

    @abstractmethod
    def list_events_by_type(self, event_type: str, limit: int = 50) -> List[Event]:
        pass

    @abstractmethod
    def event_stats(self, agent_id: str) -> EventStats:
        pass

    # ── mint_receipts ──────────────────────────────────────────────────────
    @abstractmethod
    def insert_receipt(self, receipt: MintReceipt) -> None:
        pass

    @abstractmethod
    def get_receipt(self, agent_id: str, block_index: int) -> Optional[MintReceipt]:
        pass

    @abstractmethod
    def transition_receipt(self, agent_id: str, block_index: int, status: MintStatus, updated_at: int) -> bool:
        """Move a pending receipt to `status`. False if it was not pending."""
        pass

    @abstractmethod
    def set_receipt_ref(self, agent_id: str, block_index: int, external_ref: str, updated_at: int) -> bool:
        """Attach the job reference to a pending receipt that has none yet."""
        pass

    @abstractmethod
    def list_receipts(self, status: Optional[MintStatus] = None, limit: Optional[int] = None) -> List[MintReceipt]:
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def parse_storage_uri(uri: str) -> Tuple[str, Path]:
    """Split a storage URI into (scheme, absolute path). Plain paths mean SQLite."""
    stripped = uri.strip()
    if not stripped:
        raise ValueError("Empty storage URI")
    if stripped.startswith("sqlite://"):
        raw_path = stripped[len("sqlite://"):]
        # sqlite:///abs/path and sqlite://rel/path both work
        return "sqlite", Path(raw_path).resolve()
    if "://" in stripped:
        raise ValueError(f"Unsupported storage URI: {uri}")
    return "sqlite", Path(stripped).resolve()


def create_storage(uri: str, busy_timeout: Optional[float] = None) -> StorageBackend:
    scheme, path = parse_storage_uri(uri)
    if scheme == "sqlite":
        from .sqlite import SQLiteStorage
        return SQLiteStorage(path, busy_timeout=busy_timeout)
    raise ValueError(f"Unsupported storage URI: {uri}")


from .sqlite import SQLiteStorage

__all__ = ["StorageBackend", "UniqueViolation", "create_storage", "parse_storage_uri", "SQLiteStorage"]
