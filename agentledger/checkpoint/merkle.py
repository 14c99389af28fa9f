# agentledger/checkpoint/merkle.py
"""
Merkle tree over checkpoint leaves, keccak256 throughout.

Leaves are sorted before the tree is built so the root does not depend on
the order tips were collected in. An odd node at any level is paired with
itself.
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple

from agentledger.crypto.hashing import hash_to_bytes, keccak256_hex

# Root of a tree with no leaves.
EMPTY_ROOT = keccak256_hex(b"")


@dataclass(frozen=True)
class MerkleProof:
    """Inclusion proof for a single leaf."""
    leaf_hash: str
    path: List[Tuple[str, str]]     # (sibling_hash, "L" | "R")
    root: str


def tip_leaf(agent_id: str, block_hash: str) -> str:
    """Leaf committing to one agent's tip. block_hash is always 32 bytes, so the split is unambiguous."""
    return keccak256_hex(agent_id.encode("utf-8") + hash_to_bytes(block_hash))


def hash_pair(left: str, right: str) -> str:
    return keccak256_hex(hash_to_bytes(left) + hash_to_bytes(right))


class MerkleTree:
    """
    Usage:
        tree = MerkleTree(leaves)
        root = tree.root
        proof = tree.inclusion_proof(leaf)
    """

    def __init__(self, leaves: List[str]):
        self._levels: List[List[str]] = [sorted(leaves)]
        current = self._levels[0]
        while len(current) > 1:
            nxt: List[str] = []
            for i in range(0, len(current), 2):
                left = current[i]
                right = current[i + 1] if i + 1 < len(current) else left
                nxt.append(hash_pair(left, right))
            self._levels.append(nxt)
            current = nxt

    @property
    def leaf_count(self) -> int:
        return len(self._levels[0])

    @property
    def root(self) -> str:
        if not self._levels[0]:
            return EMPTY_ROOT
        return self._levels[-1][0]

    def inclusion_proof(self, leaf_hash: str) -> Optional[MerkleProof]:
        """None if the leaf is not in the tree."""
        leaves = self._levels[0]
        if leaf_hash not in leaves:
            return None

        idx = leaves.index(leaf_hash)
        path: List[Tuple[str, str]] = []
        for level in self._levels[:-1]:
            if idx % 2 == 0:
                sibling = level[idx + 1] if idx + 1 < len(level) else level[idx]
                path.append((sibling, "R"))
            else:
                path.append((level[idx - 1], "L"))
            idx //= 2

        return MerkleProof(leaf_hash=leaf_hash, path=path, root=self.root)


def verify_proof(proof: MerkleProof) -> bool:
    """Fold the proof path back up to a root and compare."""
    current = proof.leaf_hash
    for sibling, position in proof.path:
        if position == "L":
            current = hash_pair(sibling, current)
        elif position == "R":
            current = hash_pair(current, sibling)
        else:
            return False
    return current == proof.root
