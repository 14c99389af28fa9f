# agentledger/events/log.py
"""
Deduplicated activity stream, kept beside the strict per-agent chains.

Events answer cheap "what has this agent been doing" queries. They are keyed
by a content hash over the normalised payload, so re-submitting the same
content (at-least-once callers, re-run backfills) stores nothing new and
hands back the event already on file.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from agentledger.chain.store import LedgerStore
from agentledger.core.canon import encode_versioned
from agentledger.core.clock import Clock, now_ms
from agentledger.core.types import Block, Event, EventStats
from agentledger.crypto.hashing import keccak256_hex
from agentledger.storage import StorageBackend

logger = logging.getLogger(__name__)

EVENT_VERSION = "1.0"

# Events hash under the block encoding rules of this protocol version.
_EVENT_ENCODING = "0.2"


def event_content_hash(
    agent_id: str,
    type: str,
    actor: str,
    data: Dict[str, Any],
    attachments: List[Any],
    v: str = EVENT_VERSION,
) -> str:
    """The timestamp is left out: identical content is the same event."""
    payload = {
        "agent_id": agent_id,
        "type": type,
        "actor": actor,
        "data": data,
        "attachments": attachments,
        "v": v,
    }
    return keccak256_hex(encode_versioned(payload, _EVENT_ENCODING))


class EventLog:
    def __init__(self, storage: StorageBackend, clock: Clock = now_ms):
        self.storage = storage
        self.clock = clock

    def record(
        self,
        agent_id: str,
        type: str,
        actor: str = "system",
        data: Optional[Dict[str, Any]] = None,
        attachments: Optional[List[Any]] = None,
        ts: Optional[int] = None,
    ) -> Event:
        """
        Insert-if-absent. Returns the stored event, which is the earlier one
        when this content was already recorded.
        """
        if not agent_id:
            raise ValueError("agentId required")
        if not type:
            raise ValueError("type required")

        data = data or {}
        attachments = attachments or []
        event = Event(
            agent_id=agent_id,
            ts=self.clock() if ts is None else ts,
            type=type,
            actor=actor or "system",
            data=data,
            attachments=attachments,
            v=EVENT_VERSION,
            content_hash=event_content_hash(agent_id, type, actor or "system", data, attachments),
        )
        return self._insert(event)

    def record_block(self, block: Block) -> Event:
        """Mirror a ledger block as an event; its block_hash is the content hash."""
        return self._insert(self._block_event(block))

    @staticmethod
    def _block_event(block: Block) -> Event:
        return Event(
            agent_id=block.agent_id,
            ts=block.timestamp,
            type=block.action,
            actor=block.actor or "system",
            data={"params": block.params or {}, "resources": block.resources or {}},
            attachments=block.attachments or [],
            v=EVENT_VERSION,
            content_hash=block.block_hash,
        )

    def _insert(self, event: Event) -> Event:
        if self.storage.insert_event_if_absent(event):
            return event
        existing = self.storage.get_event(event.content_hash)
        if existing is None:
            # Only reachable if the row vanished between the two statements.
            raise RuntimeError(f"Event {event.content_hash} neither inserted nor found")
        logger.debug("Duplicate event %s for %s ignored", event.content_hash, event.agent_id)
        return existing

    def list(
        self,
        agent_id: str,
        limit: int = 50,
        before_ts: Optional[int] = None,
        type: Optional[str] = None,
    ) -> List[Event]:
        """Most recent first."""
        return self.storage.list_events(agent_id, limit=limit, before_ts=before_ts, event_type=type)

    def list_by_type(self, type: str, limit: int = 50) -> List[Event]:
        return self.storage.list_events_by_type(type, limit=limit)

    def stats(self, agent_id: str) -> EventStats:
        return self.storage.event_stats(agent_id)

    def backfill_from_blocks(self, store: LedgerStore, agent_id: str, page_size: int = 500) -> Tuple[int, int]:
        """
        Seed events from an agent's existing chain. Safe to re-run: every
        event reuses its block's hash. Returns (inserted, skipped).
        """
        inserted = skipped = 0
        from_index = 0
        while True:
            page = store.get_blocks(agent_id, from_index=from_index, limit=page_size)
            if not page:
                break
            for block in page:
                if self.storage.insert_event_if_absent(self._block_event(block)):
                    inserted += 1
                else:
                    skipped += 1
            from_index = page[-1].index + 1

        logger.info("Backfill for %s complete inserted=%d skipped=%d", agent_id, inserted, skipped)
        return inserted, skipped

