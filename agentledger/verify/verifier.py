# agentledger/verify/verifier.py
from typing import List, Optional
from dataclasses import dataclass, field

from agentledger.chain.codec import GENESIS_SENTINEL, compute_block_hash
from agentledger.chain.store import LedgerStore
from agentledger.core.errors import LedgerError
from agentledger.core.types import Block


@dataclass
class VerificationFailure:
    index: int
    message: str
    category: str = "general"  # "agent", "sequence", "hash_chain", "block_hash", "storage"


@dataclass
class VerificationResult:
    is_valid: bool
    message: str = ""
    failures: List[VerificationFailure] = field(default_factory=list)

    @property
    def first_failure(self) -> Optional[VerificationFailure]:
        return self.failures[0] if self.failures else None

    def __bool__(self):
        return self.is_valid

    def __str__(self):
        if self.is_valid:
            return "Chain is valid ✓"
        lines = [f"Verification FAILED ({len(self.failures)} issues):"]
        for f in self.failures:
            lines.append(f"  • [{f.index}] {f.category}: {f.message}")
        return "\n".join(lines)


class ChainVerifier:
    """
    Offline verifier for agent chains.
    Reports every problem it finds instead of stopping at the first one.
    """

    def verify(self, chain: List[Block]) -> VerificationResult:
        if not chain:
            return VerificationResult(True, "Empty chain is valid")

        result = VerificationResult(True)

        def fail(i: int, message: str, category: str):
            result.failures.append(VerificationFailure(i, message, category))
            result.is_valid = False

        # 1. Agent & index consistency
        agent_id = chain[0].agent_id
        for i, block in enumerate(chain):
            if block.agent_id != agent_id:
                fail(i, f"Agent mismatch: {block.agent_id}", "agent")
            if block.index != i:
                fail(i, f"Index mismatch: expected {i}, got {block.index}", "sequence")

        # 2. Each block's own hash
        for i, block in enumerate(chain):
            try:
                computed = compute_block_hash(block)
            except LedgerError as e:
                fail(i, f"Cannot encode block: {e}", "block_hash")
                continue
            if computed != block.block_hash:
                fail(i, f"block_hash {block.block_hash} != recomputed {computed}", "block_hash")

        # 3. Parent links
        if chain[0].parent_hash != GENESIS_SENTINEL:
            fail(0, "First block does not point at the genesis sentinel", "hash_chain")
        for i in range(1, len(chain)):
            if chain[i].parent_hash != chain[i - 1].block_hash:
                fail(i, "parent_hash does not match previous block_hash", "hash_chain")
            if chain[i].timestamp < chain[i - 1].timestamp:
                fail(i, "timestamp goes backwards", "sequence")

        result.message = "Valid chain" if result.is_valid else f"Failed with {len(result.failures)} issues"
        return result

    def verify_from_store(self, agent_id: str, store: LedgerStore) -> VerificationResult:
        """
        Load an agent's chain from the store and verify it.
        Load errors come back as a failed result.
        """
        try:
            chain = store.get_blocks(agent_id)
        except Exception as e:
            return VerificationResult(
                False,
                f"Failed to load chain '{agent_id}' from storage: {e}",
                [VerificationFailure(-1, str(e), "storage")],
            )

        if not chain:
            return VerificationResult(
                False,
                f"No blocks found for agent '{agent_id}'",
                [VerificationFailure(-1, "chain is empty", "storage")],
            )
        return self.verify(chain)
