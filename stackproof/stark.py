"""Zero-knowledge STARK over the micro machine trace.

Protocol, in transcript order:

 1. public statement: program digest, trace length, cycle count, I/O words
 2. main trace commitment                     -> LogUp challenges alpha, beta
 3. auxiliary (LogUp) commitment              -> constraint mixer lambda
 4. composition commitment (two segments of the quotient and a random
    polynomial)                               -> out-of-domain point z
 5. every column at z and z*omega, segments at z -> DEEP coefficient gamma
 6. FRI on the DEEP polynomial                -> query indices

Zero knowledge comes from masking: every trace column ``f`` is committed as
``f + Z_H * r`` with ``r`` random of degree below ``mask_degree``, which is
more than the number of points any column is ever opened at. The quotient
segments are re-randomized the same way and the DEEP polynomial carries a
random summand, so the FRI layers are uniformly random too. Leaves are
salted. Randomness is derived from a key over the private witness, which
makes proving deterministic.

The low-degree extension lives on the coset ``3 * <nu>`` with ``nu`` of
order ``BLOWUP * N``. Constraints are evaluated on its even half, where the
next trace row of index ``i`` sits at ``i + BLOWUP // 2``.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import struct
from dataclasses import dataclass
from typing import Sequence

from stackproof import air
from stackproof.air import AUX_WIDTH, MAIN_WIDTH, WIDTH, Boundary, Challenges, Constraints
from stackproof.config import ProverParameters
from stackproof.errors import ProofError
from stackproof.field import (
    GENERATOR, P, add_polys, batch_inverse, coset_evaluate, coset_interpolate, evaluate, from_hash,
    intt, inv, mul_by_vanishing, root_of_unity, to_bytes,
)
from stackproof.fri import Domain, FriProver, verify_query
from stackproof.lowering import OUT_BASE
from stackproof.merkle import AuthPath, MerkleTree, leaf_hash
from stackproof.micro import MicroTrace, RomEntry
from stackproof.proof import (
    BLOWUP, COMPOSITION_WIDTH, MIN_TRACE_LENGTH, Opening, Proof, QueryOpening, fri_folds,
)
from stackproof.transcript import Transcript

logger = logging.getLogger(__name__)

OFFSET = GENERATOR


class Rejected(Exception):
    """A proof failed a check."""


def _require(condition: bool, reason: str) -> None:
    if not condition:
        raise Rejected(reason)


@dataclass(frozen=True)
class Statement:
    """Everything public about one proved run."""
    program_digest: bytes
    rom: tuple[RomEntry, ...]
    stack_base: int
    halt_pc: int
    inputs: tuple[int, ...]
    outputs: tuple[int, ...]
    cycle_count: int

    def io(self) -> list[tuple[int, int, int]]:
        return ([(port, word, 0) for port, word in enumerate(self.inputs)]
                + [(OUT_BASE + j, word, self.cycle_count) for j, word in enumerate(self.outputs)])

    def transcript(self, trace_length: int) -> Transcript:
        t = Transcript()
        t.append("program", self.program_digest)
        t.append_int("trace_length", trace_length)
        t.append_int("cycles", self.cycle_count)
        t.append_elements("inputs", self.inputs)
        t.append_elements("outputs", self.outputs)
        return t


def mask_degree(num_queries: int) -> int:
    """Mask size: above the 2 * num_queries + 2 points any column is opened at."""
    return 2 * num_queries + 4


def trace_length(rows: int, max_address: int, rom_size: int, num_queries: int) -> int:
    need = max(rows, max_address + 1, rom_size, MIN_TRACE_LENGTH, 4 * mask_degree(num_queries) + 1)
    return 1 << (need - 1).bit_length()


def _draw_z(transcript: Transcript, n: int) -> int:
    """Out-of-domain point: off the trace domain and off the extension coset."""
    lde = BLOWUP * n
    offset_inv = inv(OFFSET)
    while True:
        z = transcript.challenge_field("ood")
        if z and pow(z, n, P) != 1 and pow(z * offset_inv % P, lde, P) != 1:
            return z


def _powers(x: int, count: int) -> list[int]:
    out = [1] * count
    for i in range(1, count):
        out[i] = out[i - 1] * x % P
    return out


def combine(values: Constraints, powers: Sequence[int], every: int, transition: int,
            first: int, last: int) -> int:
    """Random linear combination of the constraints, each over its divisor."""
    total, k = 0, 0
    for group, divisor_inv in ((values.every_row, every), (values.transition, transition),
                               (values.first, first), (values.last, last)):
        acc = 0
        for v in group:
            acc += powers[k] * v
            k += 1
        total += acc % P * divisor_inv
    return total % P


def constraint_count() -> int:
    zero = [0] * WIDTH
    values = air.evaluate(zero, zero, [0] * air.ROM_WIDTH, Challenges.derive(0, 0), Boundary(0, 0, 0))
    return len(values.flat())


def deep_coefficients(gamma: int) -> list[int]:
    return _powers(gamma, 2 * WIDTH + COMPOSITION_WIDTH)


def deep_value(columns: Sequence[int], composition: Sequence[int], inv_z: int, inv_zw: int,
               ood_current: Sequence[int], ood_next: Sequence[int], ood_composition: Sequence[int],
               gammas: Sequence[int]) -> int:
    """DEEP polynomial at one point from the column values there."""
    at_z, at_zw = 0, 0
    for c in range(WIDTH):
        at_z += gammas[2 * c] * (columns[c] - ood_current[c])
        at_zw += gammas[2 * c + 1] * (columns[c] - ood_next[c])
    base = 2 * WIDTH
    at_z += gammas[base] * (composition[0] - ood_composition[0])
    at_z += gammas[base + 1] * (composition[1] - ood_composition[1])
    return (at_z % P * inv_z + at_zw % P * inv_zw + gammas[base + 2] * composition[2]) % P


def rom_at(rom: Sequence[RomEntry], n: int, z: int) -> list[int]:
    """Public ROM columns at ``z`` by Lagrange interpolation over the trace domain."""
    omega = root_of_unity(n)
    points = _powers(omega, len(rom))
    scale = (pow(z, n, P) - 1) * inv(n) % P
    denominators = batch_inverse([(z - x) % P for x in points])
    out = [0] * air.ROM_WIDTH
    for j, row in enumerate(air.rom_rows(rom)):
        weight = scale * points[j] % P * denominators[j] % P
        for c, v in enumerate(row):
            if v:
                out[c] += weight * v
    return [v % P for v in out]


class _Randomness:
    """Deterministic salts and masks keyed by the private witness."""

    def __init__(self, key: bytes):
        self.key = key

    def _mac(self, label: str, index: int, part: int = 0) -> bytes:
        return hmac.new(self.key, label.encode("ascii") + struct.pack(">QB", index, part), hashlib.sha256).digest()

    def salt(self, label: str, index: int) -> bytes:
        return self._mac("salt." + label, index)

    def elements(self, label: str, count: int) -> list[int]:
        return [from_hash(self._mac(label, i, 0) + self._mac(label, i, 1)) for i in range(count)]


class _Salts:
    def __init__(self, randomness: _Randomness, label: str, count: int):
        self.randomness = randomness
        self.label = label
        self.count = count

    def __len__(self) -> int:
        return self.count

    def __getitem__(self, i: int) -> bytes:
        return self.randomness.salt(self.label, i)


class _Rows:
    """Leaf rows of a committed matrix: every column at x and at -x."""

    def __init__(self, columns: Sequence[Sequence[int]]):
        self.columns = columns
        self.half = len(columns[0]) // 2

    def __len__(self) -> int:
        return self.half

    def values(self, i: int) -> tuple[int, ...]:
        return tuple(c[i] for c in self.columns) + tuple(c[i + self.half] for c in self.columns)

    def __getitem__(self, i: int) -> bytes:
        return row_bytes(self.values(i))


def row_bytes(values: Sequence[int]) -> bytes:
    return b"".join(to_bytes(v) for v in values)


class _Commitment:
    def __init__(self, label: str, columns: list[list[int]], randomness: _Randomness, workers: int):
        self.rows = _Rows(columns)
        self.salts = _Salts(randomness, label, len(self.rows))
        self.tree = MerkleTree(workers)
        self.root = self.tree.build(self.salts, self.rows)

    def open(self, index: int) -> Opening:
        return Opening(self.rows.values(index), self.salts[index], self.tree.auth_path(index).siblings)


# ---------------------------------------------------------------------------
# Prover
# ---------------------------------------------------------------------------

def prove(statement: Statement, run: MicroTrace, params: ProverParameters, key: bytes,
          check: bool = True) -> Proof:
    """Prove that ``run`` is a valid execution with the statement's I/O.

    With ``check`` the prover first verifies every constraint on the trace
    itself and fails with the name of the first broken one.
    """
    q = params.num_queries
    mask = mask_degree(q)
    n = trace_length(len(run.rows), run.max_address, len(statement.rom), q)
    if n > params.max_trace_length:
        raise ProofError(f"trace of {n} rows exceeds max_trace_length {params.max_trace_length}")
    lde_size = BLOWUP * n
    quarter = BLOWUP // 2
    randomness = _Randomness(key)
    transcript = statement.transcript(n)

    def extend(columns: list[list[int]], label: str) -> tuple[list[list[int]], list[list[int]]]:
        polys, evals = [], []
        for c, column in enumerate(columns):
            poly = add_polys(intt(column), mul_by_vanishing(randomness.elements(f"mask.{label}.{c}", mask), n))
            polys.append(poly)
            evals.append(coset_evaluate(poly, lde_size, OFFSET))
        return polys, evals

    try:
        main = air.main_trace(run, n)
    except ValueError as exc:
        raise ProofError(str(exc)) from None
    rom_columns = air.rom_columns(statement.rom, n)

    main_polys, main_evals = extend(main, "main")
    main_commit = _Commitment("main", main_evals, randomness, params.workers)
    transcript.append("main", main_commit.root)
    ch = Challenges.derive(transcript.challenge_field("alpha"), transcript.challenge_field("beta"))
    boundary = Boundary(statement.stack_base, statement.halt_pc, air.io_sum(ch, statement.io()))

    aux = air.aux_trace(main, rom_columns, ch)
    if check:
        failure = air.first_failure(main, aux, rom_columns, ch, boundary)
        if failure is not None:
            group, index, row = failure
            raise ProofError(f"{group} constraint {index} fails at row {row} (pc {main[air.PC][row]})")
    aux_polys, aux_evals = extend(aux, "aux")
    aux_commit = _Commitment("aux", aux_evals, randomness, params.workers)
    transcript.append("aux", aux_commit.root)
    lam = transcript.challenge_field("lambda")

    # quotient on the even half of the extension
    half_size = lde_size // 2
    omega = root_of_unity(n)
    last_point = inv(omega)
    rom_evals = [coset_evaluate(intt(c), half_size, OFFSET) for c in rom_columns]
    xs = _powers(root_of_unity(half_size), half_size)
    xs = [OFFSET * x % P for x in xs]
    zh = [(pow(x, n, P) - 1) % P for x in xs]
    inverses = batch_inverse(zh + [(x - 1) % P for x in xs] + [(x - last_point) % P for x in xs])
    zh_inv = inverses[:half_size]
    first_inv = inverses[half_size:2 * half_size]
    last_inv = inverses[2 * half_size:]
    powers = _powers(lam, constraint_count())
    columns = main_evals + aux_evals
    quotient = [0] * half_size
    for i in range(half_size):
        j = 2 * i
        nxt_j = (j + 2 * quarter) % lde_size
        values = air.evaluate(
            [c[j] for c in columns], [c[nxt_j] for c in columns],
            [c[i] for c in rom_evals], ch, boundary,
        )
        transition_inv = (xs[i] - last_point) * zh_inv[i] % P
        quotient[i] = combine(values, powers, zh_inv[i], transition_inv, first_inv[i], last_inv[i])
    quotient_poly = coset_interpolate(quotient, OFFSET)

    split = 2 * n - mask
    shift = randomness.elements("mask.split", mask)
    segment0 = quotient_poly[:split] + shift
    segment1 = add_polys(quotient_poly[split:], [(-s) % P for s in shift])
    blind = randomness.elements("mask.deep", 2 * n)
    comp_polys = [segment0, segment1, blind]
    comp_evals = [coset_evaluate(poly, lde_size, OFFSET) for poly in comp_polys]
    comp_commit = _Commitment("composition", comp_evals, randomness, params.workers)
    transcript.append("composition", comp_commit.root)

    z = _draw_z(transcript, n)
    zw = z * omega % P
    polys = main_polys + aux_polys
    ood_current = tuple(evaluate(p, z) for p in polys)
    ood_next = tuple(evaluate(p, zw) for p in polys)
    ood_composition = (evaluate(segment0, z), evaluate(segment1, z))
    transcript.append_elements("ood", ood_current + ood_next + ood_composition)
    gammas = deep_coefficients(transcript.challenge_field("gamma"))

    lde_points = [OFFSET * x % P for x in _powers(root_of_unity(lde_size), lde_size)]
    inv_z = batch_inverse([(x - z) % P for x in lde_points])
    inv_zw = batch_inverse([(x - zw) % P for x in lde_points])
    deep = [
        deep_value(
            [c[j] for c in columns], [c[j] for c in comp_evals], inv_z[j], inv_zw[j],
            ood_current, ood_next, ood_composition, gammas,
        )
        for j in range(lde_size)
    ]

    fri = FriProver(params.workers)
    domain = Domain(OFFSET, root_of_unity(lde_size), lde_size)
    fri_roots, fri_final = fri.commit(deep, domain, fri_folds(n), transcript, check)
    indices = transcript.challenge_indices("query", lde_size // 2, q)

    queries = tuple(
        QueryOpening(main_commit.open(i), aux_commit.open(i), comp_commit.open(i), fri.open(i))
        for i in indices
    )
    proof = Proof(
        trace_length=n,
        cycle_count=statement.cycle_count,
        main_root=main_commit.root,
        aux_root=aux_commit.root,
        composition_root=comp_commit.root,
        ood_current=ood_current,
        ood_next=ood_next,
        ood_composition=ood_composition,
        fri_roots=fri_roots,
        fri_final=fri_final,
        queries=queries,
    )
    logger.debug("STARK: %d trace row(s), domain %d, %d quer(ies)", len(run.rows), n, len(queries))
    return proof


# ---------------------------------------------------------------------------
# Verifier
# ---------------------------------------------------------------------------

def verify(statement: Statement, proof: Proof, params: ProverParameters) -> None:
    """Raise ``Rejected`` unless ``proof`` proves ``statement``."""
    n = proof.trace_length
    q = params.num_queries
    mask = mask_degree(q)
    _require(n <= params.max_trace_length, f"trace length {n} exceeds max_trace_length")
    _require(n > 4 * mask and len(statement.rom) <= n, f"trace length {n} too small")
    _require(proof.cycle_count == statement.cycle_count, "cycle count mismatch")
    lde_size = BLOWUP * n
    folds = fri_folds(n)
    omega = root_of_unity(n)

    transcript = statement.transcript(n)
    transcript.append("main", proof.main_root)
    ch = Challenges.derive(transcript.challenge_field("alpha"), transcript.challenge_field("beta"))
    boundary = Boundary(statement.stack_base, statement.halt_pc, air.io_sum(ch, statement.io()))
    transcript.append("aux", proof.aux_root)
    lam = transcript.challenge_field("lambda")
    transcript.append("composition", proof.composition_root)
    z = _draw_z(transcript, n)
    zw = z * omega % P
    transcript.append_elements("ood", proof.ood_current + proof.ood_next + proof.ood_composition)
    gammas = deep_coefficients(transcript.challenge_field("gamma"))
    betas = []
    for k in range(folds):
        betas.append(transcript.challenge_field("fri.beta"))
        if k + 1 < folds:
            transcript.append("fri.root", proof.fri_roots[k])
    transcript.append_elements("fri.final", proof.fri_final)
    indices = transcript.challenge_indices("query", lde_size // 2, q)
    _require(len(indices) == len(proof.queries), "wrong number of queries")

    leaves = lde_size // 2
    nu = root_of_unity(lde_size)
    domain = Domain(OFFSET, nu, lde_size)
    for index, query in zip(indices, proof.queries):
        for name, opening, root in (("main", query.main, proof.main_root),
                                    ("aux", query.aux, proof.aux_root),
                                    ("composition", query.composition, proof.composition_root)):
            leaf = leaf_hash(opening.salt, row_bytes(opening.values))
            _require(AuthPath(index, opening.path).verify(leaf, root, leaves),
                     f"{name} opening {index} does not match its commitment")
        x = domain.point(index)
        layer0 = []
        for side, point in ((0, x), (1, (P - x) % P)):
            columns = (query.main.values[side * MAIN_WIDTH:(side + 1) * MAIN_WIDTH]
                       + query.aux.values[side * AUX_WIDTH:(side + 1) * AUX_WIDTH])
            composition = query.composition.values[side * COMPOSITION_WIDTH:(side + 1) * COMPOSITION_WIDTH]
            layer0.append(deep_value(
                columns, composition, inv((point - z) % P), inv((point - zw) % P),
                proof.ood_current, proof.ood_next, proof.ood_composition, gammas,
            ))
        _require(verify_query(index, (layer0[0], layer0[1]), domain, betas, proof.fri_roots,
                              proof.fri_final, query.fri),
                 f"FRI query {index} failed")

    values = air.evaluate(proof.ood_current, proof.ood_next, rom_at(statement.rom, n, z), ch, boundary)
    last_point = inv(omega)
    zh_inv = inv((pow(z, n, P) - 1) % P)
    expected = combine(
        values, _powers(lam, len(values.flat())), zh_inv, (z - last_point) * zh_inv % P,
        inv((z - 1) % P), inv((z - last_point) % P),
    )
    split = 2 * n - mask
    segment0, segment1 = proof.ood_composition
    _require((segment0 + pow(z, split, P) * segment1) % P == expected,
             "constraints do not hold out of domain")
