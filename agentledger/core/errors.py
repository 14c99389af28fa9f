# agentledger/core/errors.py
"""
Exception hierarchy for the agent ledger.

Only ChainConflict and CheckpointEpochConflict are ever retried internally;
everything else propagates to the caller as soon as it is detected.
"""

from typing import Optional


class LedgerError(Exception):
    """Base class for all ledger errors."""


class UnknownChain(LedgerError, ValueError):
    """Chain name is not in the registry and no explicit chain id was given."""

    def __init__(self, name: Optional[str]):
        self.name = name
        super().__init__(f"Unknown chain: {name!r} (pass an explicit chain id to override)")


class UnsupportedProtocolVersion(LedgerError, ValueError):
    def __init__(self, version: str):
        self.version = version
        super().__init__(f"No canonical encoding registered for protocol version {version!r}")


class ChainConflict(LedgerError):
    """Append kept losing the race for the next index on an agent's chain."""

    def __init__(self, agent_id: str, attempts: int):
        self.agent_id = agent_id
        self.attempts = attempts
        super().__init__(f"Could not append to chain {agent_id} after {attempts} attempts")


class HashMismatch(LedgerError):
    """Stored block hash does not match the hash recomputed from its fields."""

    def __init__(self, agent_id: str, index: int, stored: str, computed: str):
        self.agent_id = agent_id
        self.index = index
        self.stored = stored
        self.computed = computed
        super().__init__(
            f"Hash mismatch for block {index} of {agent_id}: "
            f"stored {stored} != computed {computed}"
        )


class CheckpointEpochConflict(LedgerError):
    def __init__(self, epoch: int, attempts: int = 1):
        self.epoch = epoch
        self.attempts = attempts
        super().__init__(f"Epoch {epoch} already committed by another writer (attempt {attempts})")


class CheckpointAborted(LedgerError):
    """Epoch scan hit its deadline or was cancelled; nothing was written."""


class BlockNotFound(LedgerError, KeyError):
    def __init__(self, agent_id: str, index: int):
        self.agent_id = agent_id
        self.index = index
        super().__init__(f"No block {index} on chain {agent_id}")

    def __str__(self):
        return self.args[0]


class ReceiptNotFound(LedgerError, KeyError):
    def __init__(self, agent_id: str, block_index: int):
        self.agent_id = agent_id
        self.block_index = block_index
        super().__init__(f"No mint receipt for block {block_index} of {agent_id}")

    def __str__(self):
        return self.args[0]


class DuplicateReceipt(LedgerError):
    """A receipt already exists for this ledger entry."""

    def __init__(self, existing):
        self.existing = existing
        super().__init__(
            f"Block {existing.block_index} of {existing.agent_id} already has a "
            f"{existing.status.value} mint receipt"
        )


class InvalidTransition(LedgerError):
    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Invalid receipt transition: {current} -> {target}")
