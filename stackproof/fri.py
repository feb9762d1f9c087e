"""FRI low-degree test.

A layer is a list of evaluations on a coset ``offset * <g>``. Folding pairs
the values at ``x`` and ``-x`` (indices ``i`` and ``i + size/2``) into one
value at ``x**2``:

    f'(x**2) = (f(x) + f(-x)) / 2 + beta * (f(x) - f(-x)) / (2 * x)

which halves both the domain and the degree bound. Layer 0 is never
committed here: its values are recomputed by the verifier from the trace
openings. Layers 1 .. folds-1 are committed with one Merkle leaf per pair,
and the last layer is sent as its first ``FINAL_DEGREE`` coefficients.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from stackproof.errors import ProofError
from stackproof.field import P, batch_inverse, coset_interpolate, evaluate, inv, to_bytes
from stackproof.merkle import AuthPath, MerkleTree, leaf_hash
from stackproof.proof import FINAL_DEGREE, Opening
from stackproof.transcript import Transcript

logger = logging.getLogger(__name__)

HALF = inv(2)


@dataclass(frozen=True)
class Domain:
    offset: int
    generator: int
    size: int

    def point(self, index: int) -> int:
        return self.offset * pow(self.generator, index, P) % P

    def folded(self) -> Domain:
        return Domain(self.offset * self.offset % P, self.generator * self.generator % P, self.size // 2)


def fold_pair(positive: int, negative: int, x: int, beta: int) -> int:
    even = (positive + negative) * HALF
    odd = (positive - negative) * HALF % P * inv(x)
    return (even + beta * odd) % P


def fold(values: Sequence[int], domain: Domain, beta: int) -> list[int]:
    half = domain.size // 2
    xs = [domain.offset] * half
    for i in range(1, half):
        xs[i] = xs[i - 1] * domain.generator % P
    x_inv = batch_inverse(xs)
    out = [0] * half
    for i in range(half):
        pos, neg = values[i], values[i + half]
        out[i] = ((pos + neg) + beta * (pos - neg) % P * x_inv[i]) * HALF % P
    return out


def pair_leaf(values: Sequence[int]) -> bytes:
    return b"".join(to_bytes(v) for v in values)


class _Pairs:
    """Leaf rows of one layer, serialized on demand."""

    def __init__(self, values: Sequence[int]):
        self.values = values
        self.half = len(values) // 2

    def __len__(self) -> int:
        return self.half

    def __getitem__(self, i: int) -> bytes:
        return pair_leaf((self.values[i], self.values[i + self.half]))


class FriProver:
    def __init__(self, workers: int = 0):
        self.workers = workers
        self.layers: list[list[int]] = []
        self.trees: list[MerkleTree] = []

    def commit(self, values: list[int], domain: Domain, folds: int, transcript: Transcript,
               check: bool = True) -> tuple[tuple[bytes, ...], tuple[int, ...]]:
        """Fold ``folds`` times. Returns the layer roots and the final coefficients."""
        self.layers = [values]
        self.trees = []
        roots = []
        for k in range(folds):
            beta = transcript.challenge_field("fri.beta")
            values = fold(values, domain, beta)
            domain = domain.folded()
            if k + 1 == folds:
                break
            tree = MerkleTree(self.workers)
            pairs = _Pairs(values)
            root = tree.build([b""] * len(pairs), pairs)
            transcript.append("fri.root", root)
            self.layers.append(values)
            self.trees.append(tree)
            roots.append(root)

        coeffs = coset_interpolate(values, domain.offset)
        if check and any(coeffs[FINAL_DEGREE:]):
            raise ProofError("FRI: last layer exceeds the degree bound")
        final = tuple(coeffs[:FINAL_DEGREE])
        transcript.append_elements("fri.final", final)
        logger.debug("FRI: %d fold(s), %d committed layer(s)", folds, len(roots))
        return tuple(roots), final

    def open(self, query: int) -> tuple[Opening, ...]:
        """Openings of layers 1 .. folds-1 along the path of ``query``."""
        openings = []
        index = query
        for values, tree in zip(self.layers[1:], self.trees):
            half = len(values) // 2
            j = index % half
            openings.append(Opening((values[j], values[j + half]), b"", tree.auth_path(j).siblings))
            index = j
        return tuple(openings)


def verify_query(query: int, layer0: tuple[int, int], domain: Domain, betas: Sequence[int],
                 roots: Sequence[bytes], final: Sequence[int], openings: Sequence[Opening]) -> bool:
    """Check one query: ``layer0`` holds the values at the query point and its negation."""
    value = fold_pair(layer0[0], layer0[1], domain.point(query), betas[0])
    domain = domain.folded()
    index = query
    for k, (root, opening) in enumerate(zip(roots, openings), start=1):
        half = domain.size // 2
        j = index % half
        path = AuthPath(j, opening.path)
        if not path.verify(leaf_hash(b"", pair_leaf(opening.values)), root, half):
            return False
        if opening.values[0 if index < half else 1] != value:
            return False
        value = fold_pair(opening.values[0], opening.values[1], domain.point(j), betas[k])
        domain = domain.folded()
        index = j
    return evaluate(final, domain.point(index)) == value
