"""Fiat-Shamir transcript.

Prover and verifier absorb the same commitments in the same order and derive
the same challenges from them, which makes the proof non-interactive. Every
challenge ratchets the state, so two draws under one label differ.
"""

from __future__ import annotations

import struct

from stackproof.field import from_hash, to_bytes
from stackproof.hashing import digest


class Transcript:
    def __init__(self, seed: bytes = b"stackproof.transcript"):
        self.state = digest("transcript.init", seed)
        self.challenge_count = 0

    def append(self, label: str, data: bytes) -> None:
        self.state = digest("transcript.append", self.state, label.encode("ascii"), data)

    def append_int(self, label: str, value: int) -> None:
        self.append(label, struct.pack(">Q", value))

    def append_elements(self, label: str, values) -> None:
        self.append(label, b"".join(to_bytes(v) for v in values))

    def _draw(self, label: str) -> bytes:
        out = digest("transcript.challenge", self.state, label.encode("ascii"),
                     struct.pack(">Q", self.challenge_count))
        self.challenge_count += 1
        self.state = digest("transcript.ratchet", self.state, out)
        return out

    def challenge(self, label: str) -> int:
        """64-bit challenge."""
        return int.from_bytes(self._draw(label)[:8], "big")

    def challenge_field(self, label: str) -> int:
        """Field element from 512 bits, so the reduction bias is negligible."""
        return from_hash(self._draw(label) + self._draw(label))

    def challenge_indices(self, label: str, domain_size: int, count: int) -> list[int]:
        """Up to ``count`` distinct indices below ``domain_size``, in draw order."""
        if domain_size <= 0:
            raise ValueError("empty challenge domain")
        count = min(count, domain_size)
        # Rejection sampling keeps the draw uniform.
        limit = (1 << 64) - (1 << 64) % domain_size
        indices: list[int] = []
        seen: set[int] = set()
        while len(indices) < count:
            value = self.challenge(label)
            if value >= limit:
                continue
            idx = value % domain_size
            if idx not in seen:
                seen.add(idx)
                indices.append(idx)
        return indices
