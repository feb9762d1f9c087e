"""Algebraic execution trace of the micro machine.

One trace row per micro step. Columns:

    registers      clk rt pc sp fp hp r vc h0 h1 h2
    permutation    s0..s2 m0..m2 t0..t2 (intermediates of HROUND)
    instruction    one selector per micro op, immediates k0..k5,
                   width flags w16 w32 w64, tick
    memory         slot A and slot B: address, old, new, previous timestamp
                   and three byte limbs of the timestamp gap
    range          limbs l0..l7 of the range-checked value
    witness        inv bit
    lookups        mrom mrng (table multiplicities), fv ft (final memory)

Program fetch, range checks, memory consistency and public I/O are all
tied together by one LogUp sum: every row contributes fractions
``n / (alpha - fingerprint)`` and the running sum ``z`` over the whole trace
must equal the sum over the public I/O words. The 24 fractions of a row are
folded pairwise into 12 helper columns so every constraint has degree 3 or
less.

``evaluate`` computes every constraint at one point. The prover calls it on
trace rows (to check its own witness) and on the low-degree extension; the
verifier calls it once, out of domain.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from stackproof.field import P, batch_inverse
from stackproof.micro import MicroOp, MicroTrace, RomEntry, slot_timestamp
from stackproof.poseidon import MDS

NUM_OPS = len(MicroOp)
RANGE_LIMBS = 8
GAP_LIMBS = 3
RANGE_TABLE = 256

TAG_ROM = 1
TAG_RANGE = 2
TAG_MEMORY = 3
TAG_IO = 4

# -- main column layout ---------------------------------------------------

CLK, RT, PC, SP, FP, HP, R, VC = range(8)
H = 8
SQ = 11
MIX = 14
T2 = 17
SEL = 20
IMM = SEL + NUM_OPS
W16, W32, W64, TICK = IMM + 6, IMM + 7, IMM + 8, IMM + 9
SLOT_A = TICK + 1
SLOT_B = SLOT_A + 4 + GAP_LIMBS
LIMB = SLOT_B + 4 + GAP_LIMBS
INV = LIMB + RANGE_LIMBS
BIT = INV + 1
MROM = BIT + 1
MRNG = MROM + 1
FV = MRNG + 1
FT = FV + 1
MAIN_WIDTH = FT + 1

# slot-relative offsets
ADDR, OLD, NEW, TOLD, GAP = range(5)

NUM_FRACTIONS = 24
AUX_WIDTH = 1 + NUM_FRACTIONS // 2
Z = MAIN_WIDTH
HELPERS = MAIN_WIDTH + 1
WIDTH = MAIN_WIDTH + AUX_WIDTH

ROM_WIDTH = 12


def column_names() -> list[str]:
    names = ["clk", "rt", "pc", "sp", "fp", "hp", "r", "vc", "h0", "h1", "h2"]
    names += [f"{p}{i}" for p in "smt" for i in range(3)]
    names += [f"sel_{op.name.lower()}" for op in MicroOp]
    names += [f"k{i}" for i in range(6)] + ["w16", "w32", "w64", "tick"]
    for slot in "ab":
        names += [f"{slot}_addr", f"{slot}_old", f"{slot}_new", f"{slot}_told"]
        names += [f"{slot}_gap{i}" for i in range(GAP_LIMBS)]
    names += [f"l{i}" for i in range(RANGE_LIMBS)]
    names += ["inv", "bit", "mrom", "mrng", "fv", "ft", "z"]
    names += [f"helper{i}" for i in range(NUM_FRACTIONS // 2)]
    return names


COLUMN_NAMES = column_names()


@dataclass(frozen=True)
class Challenges:
    alpha: int
    betas: tuple[int, ...]

    @classmethod
    def derive(cls, alpha: int, beta: int) -> Challenges:
        powers = [1]
        for _ in range(ROM_WIDTH):
            powers.append(powers[-1] * beta % P)
        return cls(alpha, tuple(powers))

    def denominator(self, tag: int, values: Sequence[int]) -> int:
        acc = tag
        for beta, v in zip(self.betas[1:], values):
            acc += beta * v
        return (self.alpha - acc) % P


@dataclass(frozen=True)
class Boundary:
    """Public values the boundary constraints pin."""
    stack_base: int
    halt_pc: int
    io_sum: int


def _pair_sum(num_a: int, den_a: int, num_b: int, den_b: int) -> tuple[int, int]:
    return (num_a * den_b + num_b * den_a) % P, den_a * den_b % P


# ---------------------------------------------------------------------------
# Public ROM table
# ---------------------------------------------------------------------------

def rom_rows(rom: Sequence[RomEntry]) -> list[tuple[int, ...]]:
    """(pc, opid, k0..k5, w16, w32, w64, tick) of every ROM entry."""
    return [(pc,) + entry.columns() for pc, entry in enumerate(rom)]


def rom_columns(rom: Sequence[RomEntry], n: int) -> list[list[int]]:
    """ROM table as ``ROM_WIDTH`` columns over ``n`` rows, zero past the program."""
    columns = [[0] * n for _ in range(ROM_WIDTH)]
    for j, row in enumerate(rom_rows(rom)):
        for c, v in enumerate(row):
            columns[c][j] = v
    return columns


# ---------------------------------------------------------------------------
# Trace filling
# ---------------------------------------------------------------------------

def _limbs(value: int, count: int) -> list[int]:
    return [(value >> (8 * i)) & 0xFF for i in range(count)]


def main_trace(trace: MicroTrace, n: int) -> list[list[int]]:
    """Columns of the main trace, padded to ``n`` rows with the final HALT."""
    rows = trace.rows
    if not rows or len(rows) > n or rows[-1].entry.op != MicroOp.HALT:
        raise ValueError("micro trace must end in HALT and fit the domain")
    cols = [[0] * n for _ in range(MAIN_WIDTH)]
    fetches: dict[int, int] = {}
    ranges = [0] * RANGE_TABLE
    last = rows[-1]

    for i in range(n):
        row = rows[i] if i < len(rows) else last
        entry = row.entry
        cols[CLK][i] = i
        cols[RT][i] = min(i, RANGE_TABLE - 1)
        cols[PC][i] = row.pc
        cols[SP][i] = row.sp % P
        cols[FP][i] = row.fp % P
        cols[HP][i] = row.hp % P
        cols[R][i] = row.r % P
        cols[VC][i] = row.vc
        imm = entry.columns()[1:7]
        for k in range(3):
            h = row.h[k]
            cube_in = (h + imm[k]) % P
            cols[H + k][i] = h
            cols[SQ + k][i] = cube_in * cube_in % P
        u = [cols[SQ + k][i] * ((row.h[k] + imm[k]) % P) % P for k in range(3)]
        for k in range(3):
            m = sum(MDS[k][j] * u[j] for j in range(3)) % P
            cols[MIX + k][i] = m
            mid = (m + imm[3 + k]) % P
            cols[T2 + k][i] = mid * mid % P
        cols[SEL + entry.op - 1][i] = 1
        for k, v in enumerate(entry.columns()[1:]):
            cols[IMM + k][i] = v
        fetches[row.pc] = fetches.get(row.pc, 0) + 1

        padding = i >= len(rows)
        for base, access, slot in ((SLOT_A, row.a, "a"), (SLOT_B, row.b, "b")):
            gaps = [0] * GAP_LIMBS
            if access is not None and not padding:
                cols[base + ADDR][i] = access.address
                cols[base + OLD][i] = access.old
                cols[base + NEW][i] = access.new
                cols[base + TOLD][i] = access.t_old
                gap = (slot_timestamp(i, slot) - access.t_old - 1) % P
                gaps = _limbs(gap, GAP_LIMBS)
            for k, v in enumerate(gaps):
                cols[base + GAP + k][i] = v
                ranges[v] += 1

        limbs = _limbs(row.target % P if not padding else 0, RANGE_LIMBS)
        for k, v in enumerate(limbs):
            cols[LIMB + k][i] = v
            ranges[v] += 1
        cols[INV][i] = row.inv if not padding else 0
        cols[BIT][i] = row.bit if not padding else 0

    for pc, count in fetches.items():
        if pc < n:
            cols[MROM][pc] = count
    for v, count in enumerate(ranges):
        cols[MRNG][v] = count
    for address, (value, ts) in trace.memory.items():
        if address >= n:
            raise ValueError(f"memory address {address} outside the domain")
        cols[FV][address] = value
        cols[FT][address] = ts
    return cols


def fractions(row: Sequence[int], rom: Sequence[int], ch: Challenges) -> list[tuple[int, int]]:
    """The 24 LogUp (numerator, denominator) pairs of one row."""
    s = row[SEL:SEL + NUM_OPS]
    opid = sum((k + 1) * s[k] for k in range(NUM_OPS))
    clk = row[CLK]
    en_a, en_b = slot_enables(s)
    out = [
        (1, ch.denominator(TAG_ROM, [row[PC], opid] + list(row[IMM:TICK + 1]))),
        (-row[MROM], ch.denominator(TAG_ROM, rom)),
        (-row[MRNG], ch.denominator(TAG_RANGE, [row[RT]])),
    ]
    for k in range(RANGE_LIMBS):
        out.append((1, ch.denominator(TAG_RANGE, [row[LIMB + k]])))
    for base in (SLOT_A, SLOT_B):
        for k in range(GAP_LIMBS):
            out.append((1, ch.denominator(TAG_RANGE, [row[base + GAP + k]])))
    for base, en, ts in ((SLOT_A, en_a, 2 * clk + 1), (SLOT_B, en_b, 2 * clk + 2)):
        out.append((en, ch.denominator(TAG_MEMORY, [row[base + ADDR], row[base + OLD], row[base + TOLD]])))
        out.append((-en, ch.denominator(TAG_MEMORY, [row[base + ADDR], row[base + NEW], ts])))
    out.append((-1, ch.denominator(TAG_MEMORY, [clk, 0, 0])))
    out.append((1, ch.denominator(TAG_MEMORY, [clk, row[FV], row[FT]])))
    out.append((s[MicroOp.IO - 1], ch.denominator(TAG_IO, [row[IMM], row[SLOT_A + OLD], row[VC]])))
    return out


def aux_trace(main: list[list[int]], rom: list[list[int]], ch: Challenges) -> list[list[int]]:
    """Running LogUp sum ``z`` and the pairwise helper columns."""
    n = len(main[0])
    per_row = []
    dens = []
    for i in range(n):
        row = [col[i] for col in main]
        fr = fractions(row, [col[i] for col in rom], ch)
        per_row.append(fr)
        dens.extend(d for _, d in fr)
    inverses = batch_inverse(dens)
    helpers = [[0] * n for _ in range(NUM_FRACTIONS // 2)]
    z = [0] * n
    acc = 0
    for i in range(n):
        total = 0
        for k in range(NUM_FRACTIONS // 2):
            (n1, _), (n2, _) = per_row[i][2 * k], per_row[i][2 * k + 1]
            base = i * NUM_FRACTIONS + 2 * k
            value = (n1 * inverses[base] + n2 * inverses[base + 1]) % P
            helpers[k][i] = value
            total += value
        z[i] = acc
        acc = (acc + total) % P
    return [z] + helpers


def slot_enables(s: Sequence[int]) -> tuple[int, int]:
    en_a = sum(s[op - 1] for op in A_USERS)
    en_b = sum(s[op - 1] for op in B_USERS)
    return en_a, en_b


# ---------------------------------------------------------------------------
# Constraints
# ---------------------------------------------------------------------------

O = MicroOp

TOP_A = (
    O.SWAP, O.ST, O.LDI, O.TOR, O.STR, O.FADD, O.FSUB, O.FMUL, O.WADD, O.WSUB, O.WMUL,
    O.DIVS, O.RCT, O.LTR, O.LT, O.EQ, O.NOT, O.ASRT, O.BOOLT, O.JZ, O.RET1, O.ALLOC,
    O.HABS, O.IO,
)
A_USERS = TOP_A + (O.PICK, O.LD, O.CALL, O.RET2)
A_WRITERS = (O.SWAP, O.LDI, O.NOT, O.CALL, O.ALLOC)

B_AT_SP = (O.PUSH, O.PICK, O.LD, O.PUSHR, O.HOUT, O.ADV)
B_SECOND = (O.SWAP, O.FADD, O.FSUB, O.FMUL, O.WADD, O.WSUB, O.WMUL, O.DIVS, O.LT, O.EQ, O.HABS)
B_USERS = B_AT_SP + B_SECOND + (O.ST, O.LDI, O.STR, O.CALL, O.RET1, O.RET2)

PUSHES = (O.PUSH, O.PICK, O.LD, O.PUSHR, O.HOUT, O.ADV)
POPS = (O.POP, O.ST, O.TOR, O.FADD, O.FSUB, O.FMUL, O.WADD, O.WSUB, O.WMUL,
        O.LT, O.EQ, O.ASRT, O.JZ, O.IO)


@dataclass
class Constraints:
    """Constraint values at one point, grouped by the rows they must vanish on."""
    every_row: list[int]
    transition: list[int]
    first: list[int]
    last: list[int]

    def flat(self) -> list[int]:
        return self.every_row + self.transition + self.first + self.last


def evaluate(cur: Sequence[int], nxt: Sequence[int], rom: Sequence[int],
             ch: Challenges, boundary: Boundary) -> Constraints:
    """All constraints at one point. ``cur``/``nxt`` hold ``WIDTH`` values each."""
    s = cur[SEL:SEL + NUM_OPS]

    def sel(*ops: MicroOp) -> int:
        return sum(s[op - 1] for op in ops)

    clk, pc, sp, fp, hp, r, vc = cur[CLK], cur[PC], cur[SP], cur[FP], cur[HP], cur[R], cur[VC]
    h = cur[H:H + 3]
    imm = cur[IMM:IMM + 6]
    ka, kb, kc = imm[0], imm[1], imm[2]
    a_addr, a_old, a_new, a_told = cur[SLOT_A:SLOT_A + 4]
    b_addr, b_old, b_new, b_told = cur[SLOT_B:SLOT_B + 4]
    bit, inv_ = cur[BIT], cur[INV]
    r_next = nxt[R]

    every: list[int] = []
    trans: list[int] = []

    # instruction decoding
    for v in s:
        every.append(v * (1 - v))
    every.append(sum(s) - 1)
    every.append(bit * (1 - bit))

    # permutation intermediates
    cube_in = [h[k] + imm[k] for k in range(3)]
    for k in range(3):
        every.append(cur[SQ + k] - cube_in[k] * cube_in[k])
    u = [cur[SQ + k] * cube_in[k] for k in range(3)]
    for k in range(3):
        every.append(cur[MIX + k] - sum(MDS[k][j] * u[j] for j in range(3)))
    mid = [cur[MIX + k] + imm[3 + k] for k in range(3)]
    for k in range(3):
        every.append(cur[T2 + k] - mid[k] * mid[k])
    v_ = [cur[T2 + k] * mid[k] for k in range(3)]
    rounded = [sum(MDS[k][j] * v_[j] for j in range(3)) for k in range(3)]

    # registers
    next_pc = (pc + 1 + sel(O.JMP, O.CALL) * (ka - pc - 1)
               + sel(O.JZ) * (ka + a_old * (pc + 1 - ka) - pc - 1)
               + sel(O.RET2) * (a_old - pc - 1) - sel(O.HALT))
    trans.append(nxt[PC] - next_pc)
    sp_delta = (2 * sel(*PUSHES) - 2 * sel(*POPS) - 4 * sel(O.HABS)
                + sel(O.CALL) * (kc + 4 - kb) + sel(O.RET2) * (fp + kb - sp))
    trans.append(nxt[SP] - sp - sp_delta)
    trans.append(nxt[FP] - fp - sel(O.CALL) * (sp - kb - fp) - sel(O.RET2) * (b_old - fp))
    trans.append(nxt[HP] - hp - sel(O.ALLOC) * (2 * a_old + ka))
    trans.append(r_next - r - sel(O.TOR) * (a_old - r) - sel(O.WMUL, O.DIVS) * (r_next - r))
    trans.append(nxt[H] - h[0] + sel(O.HINIT) * h[0] - sel(O.HABS) * b_old
                 - sel(O.HROUND) * (rounded[0] - h[0]))
    trans.append(nxt[H + 1] - h[1] + sel(O.HINIT) * h[1] - sel(O.HABS) * a_old
                 - sel(O.HROUND) * (rounded[1] - h[1]))
    trans.append(nxt[H + 2] - h[2] - sel(O.HINIT) * (ka - h[2]) - sel(O.HROUND) * (rounded[2] - h[2]))
    trans.append(nxt[VC] - vc - cur[TICK])
    trans.append(nxt[CLK] - clk - 1)
    step = nxt[RT] - cur[RT]
    trans.append(step * (step - 1))

    # slot A
    trans.append(
        sel(*TOP_A) * (a_addr - sp + 2)
        + sel(O.PICK) * (a_addr - sp + 2 + ka)
        + sel(O.LD) * (a_addr - ka - kb * fp)
        + sel(O.CALL) * (a_addr - sp + kb - kc)
        + sel(O.RET2) * (a_addr - fp - kc)
    )
    readers = tuple(op for op in A_USERS if op not in A_WRITERS)
    trans.append(
        sel(*readers) * (a_new - a_old)
        + sel(O.SWAP, O.LDI) * (a_new - b_old)
        + sel(O.NOT) * (a_new - 1 + a_old)
        + sel(O.CALL) * (a_new - pc - 1)
        + sel(O.ALLOC) * (a_new - hp)
    )

    # slot B
    trans.append(
        sel(*B_AT_SP) * (b_addr - sp)
        + sel(*B_SECOND) * (b_addr - sp + 4)
        + sel(O.ST) * (b_addr - ka - kb * fp)
        + sel(O.LDI, O.STR) * (b_addr - a_old - ka)
        + sel(O.CALL) * (b_addr - sp + kb - kc - 2)
        + sel(O.RET1) * (b_addr - fp)
        + sel(O.RET2) * (b_addr - fp - kc - 2)
    )
    diff = b_old - a_old
    trans.append(
        sel(O.LDI, O.RET2, O.HABS) * (b_new - b_old)
        + sel(O.PUSH) * (b_new - ka)
        + sel(O.PICK, O.SWAP, O.LD, O.ST, O.RET1) * (b_new - a_old)
        + sel(O.PUSHR, O.STR) * (b_new - r)
        + sel(O.FADD) * (b_new - b_old - a_old)
        + sel(O.FSUB) * (b_new - diff)
        + sel(O.FMUL) * (b_new - b_old * a_old)
        + sel(O.WADD) * (b_new - b_old - a_old + bit * ka)
        + sel(O.WSUB) * (b_new - diff - bit * ka)
        + sel(O.WMUL) * (b_new - b_old * a_old + r_next * ka)
        + sel(O.LT) * (b_new - bit)
        + sel(O.EQ) * (b_new - 1 + diff * inv_)
        + sel(O.CALL) * (b_new - fp)
        + sel(O.HOUT) * (b_new - h[0])
    )
    trans.append(sel(O.DIVS) * (b_old - b_new * a_old - r_next))
    every.append(sel(O.EQ) * diff * b_new)
    every.append(sel(O.ASRT) * (a_old - 1))
    every.append(sel(O.BOOLT) * a_old * (1 - a_old))

    # range checks
    target = (
        sel(O.WADD, O.WSUB, O.WMUL, O.DIVS) * b_new
        + sel(O.RCT, O.ALLOC) * a_old
        + sel(O.RCR) * r
        + sel(O.LTR) * (a_old - r - 1)
        + sel(O.LT) * (bit * (a_old - b_old - 1) + (1 - bit) * diff)
    )
    limbs = cur[LIMB:LIMB + RANGE_LIMBS]
    every.append(sum(limbs[k] << (8 * k) for k in range(RANGE_LIMBS)) - target)
    every.append((1 - cur[W16]) * limbs[1])
    for k in (2, 3):
        every.append((1 - cur[W32]) * limbs[k])
    for k in range(4, RANGE_LIMBS):
        every.append((1 - cur[W64]) * limbs[k])

    # timestamps
    en_a, en_b = slot_enables(s)
    for base, en, ts in ((SLOT_A, en_a, 2 * clk + 1), (SLOT_B, en_b, 2 * clk + 2)):
        gap = sum(cur[base + GAP + k] << (8 * k) for k in range(GAP_LIMBS))
        every.append(en * (gap - ts + cur[base + TOLD] + 1))

    # lookups
    fr = fractions(cur, rom, ch)
    helper_sum = 0
    for k in range(NUM_FRACTIONS // 2):
        (n1, d1), (n2, d2) = fr[2 * k], fr[2 * k + 1]
        hk = cur[HELPERS + k]
        helper_sum += hk
        every.append(hk * d1 % P * d2 - n1 * d2 - n2 * d1)
    trans.append(nxt[Z] - cur[Z] - helper_sum)

    first = [
        cur[CLK], cur[RT], pc, sp - boundary.stack_base, fp - boundary.stack_base,
        hp - 1, vc, cur[Z],
    ]
    last = [pc - boundary.halt_pc, cur[RT] - (RANGE_TABLE - 1), cur[Z] + helper_sum - boundary.io_sum]

    return Constraints(
        every_row=[v % P for v in every],
        transition=[v % P for v in trans],
        first=[v % P for v in first],
        last=[v % P for v in last],
    )


def io_sum(ch: Challenges, io: Sequence[tuple[int, int, int]]) -> int:
    """Sum of the I/O fractions the trace must reproduce."""
    dens = [ch.denominator(TAG_IO, list(t)) for t in io]
    return sum(batch_inverse(dens)) % P


def first_failure(main: list[list[int]], aux: list[list[int]], rom: list[list[int]],
                  ch: Challenges, boundary: Boundary) -> tuple[str, int, int] | None:
    """(group, constraint index, row) of the first constraint a trace violates."""
    cols = main + aux
    n = len(main[0])
    for i in range(n):
        cur = [c[i] for c in cols]
        nxt = [c[(i + 1) % n] for c in cols]
        values = evaluate(cur, nxt, [c[i] for c in rom], ch, boundary)
        groups = [("every_row", values.every_row)]
        if i < n - 1:
            groups.append(("transition", values.transition))
        if i == 0:
            groups.append(("first", values.first))
        if i == n - 1:
            groups.append(("last", values.last))
        for name, group in groups:
            for k, v in enumerate(group):
                if v:
                    return name, k, i
    return None
