# agentledger/mint/receipts.py
"""
Mint receipts tie one asynchronous external mint job to exactly one ledger
entry, keyed by (agent_id, block_index).

A receipt starts pending and moves once, to confirmed or failed. The move is a
conditional update on the pending row, so two reconcilers racing on the same
receipt cannot both win and a terminal receipt never changes again.

mint() claims the receipt before calling out. If the process dies between the
claim and the ref being attached, the receipt sits pending without a ref;
stalled() reports those and they are left for an operator rather than being
submitted a second time.
"""

import logging
from typing import Any, Dict, List, Optional, Protocol

from agentledger.chain.store import LedgerStore
from agentledger.core.clock import Clock, now_ms
from agentledger.core.errors import (
    BlockNotFound,
    DuplicateReceipt,
    InvalidTransition,
    ReceiptNotFound,
)
from agentledger.core.types import MintReceipt, MintStatus
from agentledger.storage import StorageBackend, UniqueViolation

logger = logging.getLogger(__name__)


class MintBackend(Protocol):
    """External minting service."""

    def submit(self, payload: Dict[str, Any]) -> str:
        """Start a mint job; returns its job id."""
        ...

    def poll(self, job_id: str) -> str:
        """One of "pending", "confirmed", "failed"."""
        ...


class MintReceiptTracker:
    def __init__(
        self,
        storage: StorageBackend,
        store: LedgerStore,
        backend: Optional[MintBackend] = None,
        clock: Clock = now_ms,
    ):
        self.storage = storage
        self.store = store
        self.backend = backend
        self.clock = clock

    def create_receipt(self, agent_id: str, block_index: int, external_ref: Optional[str] = None) -> MintReceipt:
        if self.store.get_block(agent_id, block_index) is None:
            raise BlockNotFound(agent_id, block_index)

        receipt = MintReceipt(
            agent_id=agent_id,
            block_index=block_index,
            status=MintStatus.PENDING,
            created_at=self.clock(),
            external_ref=external_ref,
        )
        try:
            self.storage.insert_receipt(receipt)
        except UniqueViolation:
            raise DuplicateReceipt(self._require(agent_id, block_index)) from None

        logger.info("Mint receipt created for block %d of %s", block_index, agent_id)
        return receipt

    def get_receipt(self, agent_id: str, block_index: int) -> Optional[MintReceipt]:
        return self.storage.get_receipt(agent_id, block_index)

    def update_status(self, agent_id: str, block_index: int, status: MintStatus) -> MintReceipt:
        """pending -> confirmed | failed. Anything else is InvalidTransition."""
        status = MintStatus(status)
        current = self._require(agent_id, block_index)
        if status is MintStatus.PENDING or current.status.is_terminal:
            raise InvalidTransition(current.status.value, status.value)

        if not self.storage.transition_receipt(agent_id, block_index, status, self.clock()):
            # Another writer moved it out of pending first.
            current = self._require(agent_id, block_index)
            raise InvalidTransition(current.status.value, status.value)

        logger.info("Mint receipt for block %d of %s -> %s", block_index, agent_id, status.value)
        return self._require(agent_id, block_index)

    def attach_external_ref(self, agent_id: str, block_index: int, external_ref: str) -> MintReceipt:
        if not external_ref:
            raise ValueError("external_ref required")
        current = self._require(agent_id, block_index)
        if current.external_ref == external_ref:
            return current
        if not self.storage.set_receipt_ref(agent_id, block_index, external_ref, self.clock()):
            current = self._require(agent_id, block_index)
            raise InvalidTransition(
                current.status.value,
                f"ref {external_ref} (already {current.external_ref or current.status.value})",
            )
        return self._require(agent_id, block_index)

    def mint(self, agent_id: str, block_index: int, payload: Dict[str, Any]) -> MintReceipt:
        """
        Claim the receipt, submit the job, record its id. A block that
        already has a receipt is not submitted again; its receipt is returned.
        """
        if self.backend is None:
            raise RuntimeError("No mint backend configured")

        try:
            self.create_receipt(agent_id, block_index)
        except DuplicateReceipt as e:
            logger.info(
                "Block %d of %s already has a %s mint receipt; not resubmitting",
                block_index, agent_id, e.existing.status.value,
            )
            return e.existing

        job_id = self.backend.submit(payload)
        logger.info("Mint job %s submitted for block %d of %s", job_id, block_index, agent_id)
        return self.attach_external_ref(agent_id, block_index, job_id)

    def reconcile(self, limit: int = 100) -> List[MintReceipt]:
        """Poll pending receipts that have a job id. Returns those that changed."""
        if self.backend is None:
            raise RuntimeError("No mint backend configured")

        changed: List[MintReceipt] = []
        for receipt in self.storage.list_receipts(MintStatus.PENDING, limit):
            if receipt.external_ref is None:
                continue
            try:
                remote = MintStatus(self.backend.poll(receipt.external_ref))
            except Exception as e:
                logger.warning("Polling mint job %s for block %d of %s failed: %s",
                               receipt.external_ref, receipt.block_index, receipt.agent_id, e)
                continue
            if remote is MintStatus.PENDING:
                continue
            try:
                changed.append(self.update_status(receipt.agent_id, receipt.block_index, remote))
            except InvalidTransition:
                logger.debug("Receipt for block %d of %s settled concurrently",
                             receipt.block_index, receipt.agent_id)

        for receipt in self.stalled(limit):
            logger.warning(
                "Mint receipt for block %d of %s is pending with no job id (created %d)",
                receipt.block_index, receipt.agent_id, receipt.created_at,
            )
        return changed

    def stalled(self, limit: Optional[int] = None) -> List[MintReceipt]:
        """Pending receipts that never got a job id attached."""
        pending = self.storage.list_receipts(MintStatus.PENDING)
        stalled = [r for r in pending if r.external_ref is None]
        return stalled[:limit] if limit is not None else stalled

    def list_by_status(self, status: Optional[MintStatus] = None, limit: Optional[int] = None) -> List[MintReceipt]:
        return self.storage.list_receipts(MintStatus(status) if status is not None else None, limit)

    def _require(self, agent_id: str, block_index: int) -> MintReceipt:
        receipt = self.storage.get_receipt(agent_id, block_index)
        if receipt is None:
            raise ReceiptNotFound(agent_id, block_index)
        return receipt
