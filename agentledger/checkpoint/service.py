# agentledger/checkpoint/service.py
"""
Epoch checkpoints over agent chain tips.

Each run collects the tip of every chain that grew since it was last
covered, commits to all of them with one Merkle root and stores the result
under the next epoch number. Epoch numbers come from a unique constraint, not
from any process's memory: two schedulers racing for the same epoch both try
to insert it, the loser sees the violation, re-reads and moves to the next
number. Epochs are never skipped.

Roots are internal integrity commitments. Each checkpoint also carries the
previous epoch's root, so the checkpoints form a chain of their own that
verify_checkpoints() can walk end to end.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

from agentledger.chain.codec import GENESIS_SENTINEL
from agentledger.chain.store import LedgerStore
from agentledger.checkpoint.merkle import MerkleProof, MerkleTree, tip_leaf, verify_proof
from agentledger.config import LedgerSettings
from agentledger.core.clock import Clock, now_ms
from agentledger.core.errors import CheckpointAborted, CheckpointEpochConflict
from agentledger.core.types import Block, Checkpoint
from agentledger.storage import UniqueViolation

logger = logging.getLogger(__name__)

FIRST_EPOCH = 1


def compute_root_commitment(tips: Dict[str, str]) -> str:
    """Merkle root over {agent_id: tip_block_hash}."""
    return MerkleTree([tip_leaf(agent_id, h) for agent_id, h in tips.items()]).root


@dataclass
class CheckpointVerification:
    is_valid: bool
    problems: List[str]

    def __bool__(self):
        return self.is_valid


class CheckpointService:
    """
    Usage:
        service = CheckpointService(store)
        checkpoint = service.run_epoch(timeout=30)   # from a scheduler/timer
    """

    def __init__(
        self,
        store: LedgerStore,
        max_attempts: Optional[int] = None,
        page_size: Optional[int] = None,
        clock: Clock = now_ms,
    ):
        settings = LedgerSettings.from_env()
        self.store = store
        self.storage = store.storage
        self.max_attempts = max_attempts or settings.checkpoint_max_attempts
        self.page_size = page_size or settings.checkpoint_page_size
        self.clock = clock

    # ------------------------------------------------------------------
    # Epoch run
    # ------------------------------------------------------------------

    def run_epoch(
        self,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Optional[Checkpoint]:
        """
        Commit the next epoch. Returns None when no chain advanced; no epoch
        number is used up in that case. `timeout` (seconds) and `cancel` are
        checked while scanning; either one aborts with CheckpointAborted
        before anything is written.
        """
        deadline = time.monotonic() + timeout if timeout is not None else None
        epoch = None

        for attempt in range(1, self.max_attempts + 1):
            tips = self._collect_tips(deadline, cancel)
            if not tips:
                logger.info("No chain advanced since the last epoch; nothing to commit")
                return None

            latest = self.storage.latest_checkpoint()
            epoch = latest.epoch + 1 if latest else FIRST_EPOCH
            committed = {b.agent_id: b.block_hash for b in tips}
            checkpoint = Checkpoint(
                epoch=epoch,
                committed_tips=committed,
                root_commitment=compute_root_commitment(committed),
                previous_root=latest.root_commitment if latest else GENESIS_SENTINEL,
                submitted_at=self.clock(),
            )

            self._check_abort(deadline, cancel)
            try:
                self.storage.commit_checkpoint(checkpoint, tips)
            except UniqueViolation as e:
                logger.warning(
                    "Epoch %d lost to a concurrent run on attempt %d (%s); rescanning",
                    epoch, attempt, e.detail,
                )
                continue

            logger.info(
                "Committed epoch %d over %d chain tips, root %s",
                epoch, len(tips), checkpoint.root_commitment,
            )
            return checkpoint

        raise CheckpointEpochConflict(epoch, self.max_attempts)

    def _collect_tips(self, deadline: Optional[float], cancel: Optional[threading.Event]) -> List[Block]:
        tips: List[Block] = []
        after: Optional[str] = None
        while True:
            self._check_abort(deadline, cancel)
            page = self.storage.uncheckpointed_tips(after, self.page_size)
            for block in page:
                self.store.verify(block)
            tips.extend(page)
            if len(page) < self.page_size:
                return tips
            after = page[-1].agent_id

    @staticmethod
    def _check_abort(deadline: Optional[float], cancel: Optional[threading.Event]) -> None:
        if cancel is not None and cancel.is_set():
            raise CheckpointAborted("Epoch run cancelled")
        if deadline is not None and time.monotonic() > deadline:
            raise CheckpointAborted("Epoch run exceeded its timeout")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def latest_checkpoint(self) -> Optional[Checkpoint]:
        return self.storage.latest_checkpoint()

    def get_checkpoint(self, epoch: int) -> Optional[Checkpoint]:
        return self.storage.get_checkpoint(epoch)

    def list_checkpoints(self, limit: Optional[int] = None) -> List[Checkpoint]:
        return self.storage.list_checkpoints(limit)

    def inclusion_proof(self, epoch: int, agent_id: str) -> Optional[MerkleProof]:
        """Proof that `agent_id`'s tip is under the root of `epoch`; None if not included."""
        checkpoint = self.storage.get_checkpoint(epoch)
        if checkpoint is None or agent_id not in checkpoint.committed_tips:
            return None
        tree = MerkleTree([tip_leaf(a, h) for a, h in checkpoint.committed_tips.items()])
        return tree.inclusion_proof(tip_leaf(agent_id, checkpoint.committed_tips[agent_id]))

    @staticmethod
    def verify_inclusion(proof: MerkleProof) -> bool:
        return verify_proof(proof)

    def verify_checkpoints(self) -> CheckpointVerification:
        """Epochs run 1..N without gaps, link by previous_root and recompute from their tips."""
        problems: List[str] = []
        previous_root = GENESIS_SENTINEL
        expected = FIRST_EPOCH
        for checkpoint in self.storage.list_checkpoints():
            if checkpoint.epoch != expected:
                problems.append(f"epoch {checkpoint.epoch}: expected epoch {expected} (gap)")
                expected = checkpoint.epoch
            if checkpoint.previous_root != previous_root:
                problems.append(f"epoch {checkpoint.epoch}: previous_root does not match epoch {expected - 1}")
            recomputed = compute_root_commitment(checkpoint.committed_tips)
            if recomputed != checkpoint.root_commitment:
                problems.append(f"epoch {checkpoint.epoch}: root_commitment does not recompute")
            previous_root = checkpoint.root_commitment
            expected += 1

        for problem in problems:
            logger.error("Checkpoint verification: %s", problem)
        return CheckpointVerification(is_valid=not problems, problems=problems)
