# examples/avatar_demo.py
# Run with: python examples/avatar_demo.py
#
# Walks one NFT-bound avatar through onboarding, a few actions, an epoch
# checkpoint and a mint, then verifies everything offline.

import itertools
import logging
import tempfile
from pathlib import Path

from agentledger import (
    AgentChain,
    AgentIdentity,
    ChainVerifier,
    CheckpointService,
    EventLog,
    LedgerStore,
    MintReceiptTracker,
    SQLiteStorage,
)

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")


class InstantMintBackend:
    """Pretend minting service: every job confirms on first poll."""

    def __init__(self):
        self._ids = itertools.count(1)

    def submit(self, payload):
        return f"mint-job-{next(self._ids)}"

    def poll(self, job_id):
        return "confirmed"


def main():
    db_path = Path(tempfile.mkdtemp()) / "avatar-demo.db"
    storage = SQLiteStorage(db_path)
    store = LedgerStore(storage)
    events = EventLog(storage)

    nova = AgentIdentity.from_nft("ethereum", "0xBC4CA0EdA7647A8aB7C2061c2E118A18a936f13D", "42")
    sol = AgentIdentity.from_nft("solana", None, "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU")

    for ident, chain_name in ((nova, "ethereum"), (sol, "solana")):
        chain = AgentChain.for_identity(ident, store, events, chain=chain_name)
        chain.create_genesis_blocks()
        chain.append("chat", actor="user", params={"text": "gm"})
        chain.append("battle", actor="system", params={"opponent": "goblin", "won": True}, resources={"xp": 25})
        print(f"{ident.agent_id}  blocks={chain.length}  tip={chain.last_hash[:18]}…")

    checkpoints = CheckpointService(store)
    epoch = checkpoints.run_epoch(timeout=10)
    print(f"\nEpoch {epoch.epoch} root {epoch.root_commitment}")
    proof = checkpoints.inclusion_proof(epoch.epoch, nova.agent_id)
    print(f"Inclusion proof for nova verifies: {checkpoints.verify_inclusion(proof)}")

    tracker = MintReceiptTracker(storage, store, backend=InstantMintBackend())
    receipt = tracker.mint(nova.agent_id, 4, {"name": "Nova #42", "xp": 25})
    print(f"\nMint submitted: {receipt.external_ref} ({receipt.status.value})")
    for settled in tracker.reconcile():
        print(f"Mint settled: block {settled.block_index} -> {settled.status.value}")

    verifier = ChainVerifier()
    for agent_id in store.list_agents():
        print(f"\n{agent_id}\n{verifier.verify_from_store(agent_id, store)}")
    print(f"Checkpoints valid: {bool(checkpoints.verify_checkpoints())}")

    storage.close()


if __name__ == "__main__":
    main()
