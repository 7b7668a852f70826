"""Merkle commitment over the serial ledger.

Leaves are SHA-256 hashes of serial identifiers. They are sorted before the
tree is built so the root depends only on the set of serials, never on the
order in which they were ingested.
"""

from __future__ import annotations

import hashlib
from typing import Dict, Iterable, List, Sequence, Tuple

EMPTY_ROOT = bytes(32)

ProofPath = List[Tuple[bytes, bool]]  # (sibling_hash, sibling_is_right)


def hash_serial(serial: str) -> bytes:
    return hashlib.sha256(serial.encode("utf-8")).digest()


def hash_pair(left: bytes, right: bytes) -> bytes:
    return hashlib.sha256(left + right).digest()


def root_to_hex(root: bytes) -> str:
    return "0x" + root.hex()


def hex_to_root(value: str) -> bytes:
    raw = value[2:] if value.startswith("0x") else value
    root = bytes.fromhex(raw)
    if len(root) != 32:
        raise ValueError(f"Merkle root must be 32 bytes, got {len(root)}")
    return root


def compute_merkle_root(leaf_hashes: Iterable[bytes]) -> bytes:
    """Root over the sorted leaves; all-zero root for an empty set.

    An odd node at any level is paired with itself.
    """
    level = sorted(leaf_hashes)
    if not level:
        return EMPTY_ROOT

    while len(level) > 1:
        next_level = []
        for i in range(0, len(level), 2):
            right = level[i + 1] if i + 1 < len(level) else level[i]
            next_level.append(hash_pair(level[i], right))
        level = next_level

    return level[0]


class MerkleTreeBuilder:
    """Builds the serial commitment and per-serial inclusion proofs."""

    def __init__(self):
        self.leaves: List[Tuple[str, bytes]] = []  # (serial, leaf_hash)

    def add_serial(self, serial: str) -> None:
        self.leaves.append((serial, hash_serial(serial)))

    def build(self) -> Tuple[bytes, Dict[str, ProofPath]]:
        """Build the tree.

        Returns:
            Tuple of (root_hash, proofs) where proofs maps each key to its
            authentication path from leaf to root.
        """
        if not self.leaves:
            return EMPTY_ROOT, {}

        ordered = sorted(self.leaves, key=lambda item: item[1])
        level = [leaf_hash for _, leaf_hash in ordered]
        proofs: Dict[str, ProofPath] = {key: [] for key, _ in ordered}
        # positions[key] tracks the index of the key's ancestor on the current level
        positions = {key: index for index, (key, _) in enumerate(ordered)}

        while len(level) > 1:
            for key, index in positions.items():
                if index % 2 == 0:
                    sibling = level[index + 1] if index + 1 < len(level) else level[index]
                    proofs[key].append((sibling, True))
                else:
                    proofs[key].append((level[index - 1], False))

            next_level = []
            for i in range(0, len(level), 2):
                right = level[i + 1] if i + 1 < len(level) else level[i]
                next_level.append(hash_pair(level[i], right))

            level = next_level
            positions = {key: index // 2 for key, index in positions.items()}

        return level[0], proofs

    @staticmethod
    def verify_proof(
        leaf_hash: bytes,
        proof_path: Sequence[Tuple[bytes, bool]],
        root_hash: bytes,
    ) -> bool:
        """Fold ``proof_path`` over ``leaf_hash`` and compare with ``root_hash``."""
        current = leaf_hash
        for sibling, sibling_is_right in proof_path:
            if sibling_is_right:
                current = hash_pair(current, sibling)
            else:
                current = hash_pair(sibling, current)
        return current == root_hash


def verify_serial(serial: str, proof_path: Sequence[Tuple[bytes, bool]], root_hash: bytes) -> bool:
    return MerkleTreeBuilder.verify_proof(hash_serial(serial), proof_path, root_hash)
