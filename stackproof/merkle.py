"""Binary Merkle tree over committed evaluations.

Each leaf is one serialized row of values, salted for the trace and
composition commitments and unsalted (empty salt) for FRI layers. Leaves are
hashed in fixed-size batches, optionally on a thread pool; batch
results are placed by index so the root never depends on scheduling. Odd
levels pair their last node with itself.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Sequence

from stackproof.hashing import digest

LEAF_BATCH = 1024


def leaf_hash(salt: bytes, row: bytes) -> bytes:
    return digest("merkle.leaf", salt, row)


def node_hash(left: bytes, right: bytes) -> bytes:
    return digest("merkle.node", left, right)


@dataclass(frozen=True)
class AuthPath:
    index: int
    siblings: tuple[bytes, ...]

    def root_for(self, leaf: bytes) -> bytes:
        current, idx = leaf, self.index
        for sibling in self.siblings:
            current = node_hash(current, sibling) if idx % 2 == 0 else node_hash(sibling, current)
            idx //= 2
        return current

    def verify(self, leaf: bytes, root: bytes, leaf_count: int) -> bool:
        if not 0 <= self.index < leaf_count or len(self.siblings) != tree_height(leaf_count):
            return False
        return self.root_for(leaf) == root


def tree_height(leaf_count: int) -> int:
    height, width = 0, leaf_count
    while width > 1:
        width = (width + 1) // 2
        height += 1
    return height


class MerkleTree:
    def __init__(self, workers: int = 0):
        self.workers = workers
        self.layers: list[list[bytes]] = []

    def build(self, salts: Sequence[bytes], rows: Sequence[bytes]) -> bytes:
        if not rows or len(salts) != len(rows):
            raise ValueError("a Merkle tree needs one salt per row and at least one row")
        level = self._hash_leaves(salts, rows)
        self.layers = [level]
        while len(level) > 1:
            if len(level) % 2:
                level = level + [level[-1]]
            level = [node_hash(level[i], level[i + 1]) for i in range(0, len(level), 2)]
            self.layers.append(level)
        return level[0]

    def _hash_leaves(self, salts: Sequence[bytes], rows: Sequence[bytes]) -> list[bytes]:
        n = len(rows)
        if self.workers <= 1 or n <= LEAF_BATCH:
            return [leaf_hash(salts[i], rows[i]) for i in range(n)]

        def hash_batch(batch_range: tuple[int, int]) -> list[bytes]:
            start, end = batch_range
            return [leaf_hash(salts[i], rows[i]) for i in range(start, end)]

        batches = [(i, min(i + LEAF_BATCH, n)) for i in range(0, n, LEAF_BATCH)]
        leaves: list[bytes] = []
        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            futures = [executor.submit(hash_batch, b) for b in batches]
            for f in futures:
                leaves.extend(f.result())
        return leaves

    def auth_path(self, index: int) -> AuthPath:
        if not self.layers or not 0 <= index < len(self.layers[0]):
            raise ValueError(f"invalid leaf index {index}")
        siblings = []
        idx = index
        for layer in self.layers[:-1]:
            sibling = idx ^ 1
            siblings.append(layer[sibling] if sibling < len(layer) else layer[idx])
            idx //= 2
        return AuthPath(index, tuple(siblings))
