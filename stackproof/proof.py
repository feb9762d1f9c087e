"""Proof container and its canonical byte encoding.

Layout (big-endian, field elements as 32 bytes):

    "SPRF" u16 version  u32 trace length  u64 cycle count
    main root  aux root  composition root
    out-of-domain values: every trace column at z and at z*omega,
        then both composition segments at z
    FRI layer roots, then the coefficients of the last layer
    one block per query: main, aux and composition leaves (values at x and
        -x, salt, authentication path), then one leaf per FRI layer

Every length in the layout follows from the trace length and the number of
queries, so there is exactly one encoding of every proof and anything left
over after decoding is an error.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass

from stackproof.air import AUX_WIDTH, MAIN_WIDTH, WIDTH
from stackproof.field import ELEMENT_BYTES, from_bytes, to_bytes

PROOF_MAGIC = b"SPRF"
PROOF_VERSION = 2

BLOWUP = 8
FINAL_DEGREE = 8
MIN_TRACE_LENGTH = 256
COMPOSITION_WIDTH = 3
DIGEST_BYTES = 32


def log2(n: int) -> int:
    return n.bit_length() - 1


def fri_folds(trace_length: int) -> int:
    """Folds that take the DEEP polynomial (degree below 2N) to FINAL_DEGREE."""
    return log2(2 * trace_length // FINAL_DEGREE)


def leaf_height(trace_length: int, layer: int = 0) -> int:
    """Height of the tree over layer ``layer``; trace trees are layer 0."""
    return log2(BLOWUP * trace_length // 2) - layer


@dataclass(frozen=True)
class Opening:
    """One Merkle leaf: the values at x and -x, the salt and the path."""
    values: tuple[int, ...]
    salt: bytes
    path: tuple[bytes, ...]


@dataclass(frozen=True)
class QueryOpening:
    main: Opening
    aux: Opening
    composition: Opening
    fri: tuple[Opening, ...]


@dataclass(frozen=True)
class Proof:
    trace_length: int
    cycle_count: int
    main_root: bytes
    aux_root: bytes
    composition_root: bytes
    ood_current: tuple[int, ...]
    ood_next: tuple[int, ...]
    ood_composition: tuple[int, ...]
    fri_roots: tuple[bytes, ...]
    fri_final: tuple[int, ...]
    queries: tuple[QueryOpening, ...]

    def to_bytes(self) -> bytes:
        out = [PROOF_MAGIC, struct.pack(">HIQ", PROOF_VERSION, self.trace_length, self.cycle_count)]
        out += [self.main_root, self.aux_root, self.composition_root]
        out += [to_bytes(v) for v in self.ood_current + self.ood_next + self.ood_composition]
        out += list(self.fri_roots)
        out += [to_bytes(v) for v in self.fri_final]
        for query in self.queries:
            for opening in (query.main, query.aux, query.composition) + query.fri:
                out += [to_bytes(v) for v in opening.values]
                out.append(opening.salt)
                out += list(opening.path)
        return b"".join(out)

    @classmethod
    def from_bytes(cls, data: bytes, num_queries: int) -> Proof:
        """Decode proof bytes. Raises ValueError unless the encoding is canonical."""
        if not isinstance(data, (bytes, bytearray)):
            raise ValueError("proof must be bytes")
        reader = _Reader(bytes(data))
        if reader.take(len(PROOF_MAGIC)) != PROOF_MAGIC:
            raise ValueError("not a proof")
        version, n, cycle_count = struct.unpack(">HIQ", reader.take(14))
        if version != PROOF_VERSION:
            raise ValueError(f"proof: unsupported version {version}")
        if n < MIN_TRACE_LENGTH or n & (n - 1):
            raise ValueError(f"proof: bad trace length {n}")

        roots = [reader.digest() for _ in range(3)]
        ood_current = reader.elements(WIDTH)
        ood_next = reader.elements(WIDTH)
        ood_composition = reader.elements(2)
        folds = fri_folds(n)
        fri_roots = tuple(reader.digest() for _ in range(folds - 1))
        fri_final = reader.elements(FINAL_DEGREE)

        queries = []
        height = leaf_height(n)
        for _ in range(num_queries):
            main = reader.opening(2 * MAIN_WIDTH, True, height)
            aux = reader.opening(2 * AUX_WIDTH, True, height)
            comp = reader.opening(2 * COMPOSITION_WIDTH, True, height)
            fri = tuple(reader.opening(2, False, leaf_height(n, k)) for k in range(1, folds))
            queries.append(QueryOpening(main, aux, comp, fri))
        if not reader.done():
            raise ValueError("proof: trailing bytes")

        return cls(
            trace_length=n,
            cycle_count=cycle_count,
            main_root=roots[0],
            aux_root=roots[1],
            composition_root=roots[2],
            ood_current=ood_current,
            ood_next=ood_next,
            ood_composition=ood_composition,
            fri_roots=fri_roots,
            fri_final=fri_final,
            queries=tuple(queries),
        )

    def __len__(self) -> int:
        return len(self.to_bytes())


class _Reader:
    def __init__(self, data: bytes):
        self.data = data
        self.offset = 0

    def take(self, count: int) -> bytes:
        end = self.offset + count
        if end > len(self.data):
            raise ValueError("proof: truncated")
        chunk = self.data[self.offset:end]
        self.offset = end
        return chunk

    def digest(self) -> bytes:
        return self.take(DIGEST_BYTES)

    def elements(self, count: int) -> tuple[int, ...]:
        return tuple(from_bytes(self.take(ELEMENT_BYTES)) for _ in range(count))

    def opening(self, width: int, salted: bool, height: int) -> Opening:
        values = self.elements(width)
        salt = self.digest() if salted else b""
        return Opening(values, salt, tuple(self.digest() for _ in range(height)))

    def done(self) -> bool:
        return self.offset == len(self.data)
