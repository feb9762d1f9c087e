"""Micro machine: the register machine the proof speaks about.

Every compiled program is lowered (see ``lowering``) to a read-only list of
micro instructions over a single word-addressed memory of field elements. A
micro instruction touches memory through at most two access slots per step,
A and B, which is what the constraint system in ``air`` expects.

Memory map:

    0  log accumulator        2  auth accumulator
    4  self-destruct flag     6  caller public key
    8 + 2s   ``this`` slot s, followed by the operand stack
    odd addresses             heap blocks, bump-allocated from 1

Strings and arrays are heap blocks ``[length, e0, e1, ...]`` and contract
objects are blocks ``[f0, f1, ...]``, one cell every two addresses. Blocks
are never updated in place.

``MicroMachine`` runs a lowered program on an advice tape (the private
inputs) and records one ``Row`` per step. It never raises on bad data: the
rows it records are whatever the instructions computed, and it is the
constraint check that decides whether they form a valid execution.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Optional, Sequence

from stackproof.errors import ProofError
from stackproof.field import P, inv
from stackproof.poseidon import MDS, WIDTH

logger = logging.getLogger(__name__)


class MicroOp(IntEnum):
    PUSH = 1
    POP = 2
    PICK = 3
    SWAP = 4
    LD = 5
    ST = 6
    LDI = 7
    TOR = 8
    PUSHR = 9
    STR = 10
    FADD = 11
    FSUB = 12
    FMUL = 13
    WADD = 14
    WSUB = 15
    WMUL = 16
    DIVS = 17
    RCT = 18
    RCR = 19
    LTR = 20
    LT = 21
    EQ = 22
    NOT = 23
    ASRT = 24
    BOOLT = 25
    JMP = 26
    JZ = 27
    CALL = 28
    RET1 = 29
    RET2 = 30
    HALT = 31
    ALLOC = 32
    HINIT = 33
    HABS = 34
    HROUND = 35
    HOUT = 36
    IO = 37
    ADV = 38


@dataclass(frozen=True)
class RomEntry:
    """One micro instruction. ``width`` selects the range-check width."""
    op: MicroOp
    a: int = 0
    b: int = 0
    c: int = 0
    d: int = 0
    e: int = 0
    f: int = 0
    width: int = 0
    tick: int = 0

    @property
    def flags(self) -> tuple[int, int, int]:
        """Cumulative width flags (w16, w32, w64)."""
        return (int(self.width >= 16), int(self.width >= 32), int(self.width >= 64))

    def columns(self) -> tuple[int, ...]:
        """(opid, a, b, c, d, e, f, w16, w32, w64, tick) as field elements."""
        return (int(self.op), self.a % P, self.b % P, self.c % P, self.d % P,
                self.e % P, self.f % P) + self.flags + (self.tick,)

    def __str__(self) -> str:
        args = [x for x in (self.a, self.b, self.c) if x]
        text = self.op.name + "".join(f" {x}" for x in args)
        if self.width:
            text += f" /u{self.width}"
        return text + (" *" if self.tick else "")


@dataclass
class Access:
    address: int
    old: int
    new: int
    t_old: int


@dataclass
class Row:
    clk: int
    pc: int
    sp: int
    fp: int
    hp: int
    r: int
    vc: int
    h: tuple[int, int, int]
    entry: RomEntry
    a: Optional[Access] = None
    b: Optional[Access] = None
    target: int = 0
    inv: int = 0
    bit: int = 0


@dataclass
class MicroTrace:
    rows: list[Row]
    # address -> (final value, final timestamp)
    memory: dict[int, tuple[int, int]] = field(default_factory=dict)
    # (port, word, visible cycle) for every IO step
    io: list[tuple[int, int, int]] = field(default_factory=list)

    @property
    def max_address(self) -> int:
        return max(self.memory, default=0)


def slot_timestamp(clk: int, slot: str) -> int:
    return 2 * clk + (1 if slot == "a" else 2)


def mds(state: Sequence[int]) -> list[int]:
    return [sum(MDS[i][j] * state[j] for j in range(WIDTH)) % P for i in range(WIDTH)]


class MicroMachine:
    """Runs a lowered program. ``run`` records one row per executed instruction."""

    def __init__(self, rom: Sequence[RomEntry], stack_base: int, advice: Sequence[int], max_rows: int):
        self.rom = rom
        self.advice = list(advice)
        self.max_rows = max_rows
        self.memory: dict[int, tuple[int, int]] = {}
        self.pc = 0
        self.sp = stack_base
        self.fp = stack_base
        self.hp = 1
        self.r = 0
        self.vc = 0
        self.h = [0, 0, 0]
        self.io: list[tuple[int, int, int]] = []
        self._advice_at = 0
        self._row: Optional[Row] = None

    def run(self) -> MicroTrace:
        rows: list[Row] = []
        while True:
            if len(rows) >= self.max_rows:
                raise ProofError(f"micro trace exceeds {self.max_rows} rows")
            if not 0 <= self.pc < len(self.rom):
                raise ProofError(f"micro pc {self.pc} outside the program")
            entry = self.rom[self.pc]
            row = Row(
                clk=len(rows), pc=self.pc, sp=self.sp, fp=self.fp, hp=self.hp,
                r=self.r, vc=self.vc, h=tuple(self.h), entry=entry,
            )
            self._row = row
            self.pc += 1
            getattr(self, "_op_" + entry.op.name.lower())(entry)
            self.vc += entry.tick
            rows.append(row)
            if entry.op == MicroOp.HALT:
                break
        if self._advice_at != len(self.advice):
            raise ProofError(f"{len(self.advice) - self._advice_at} advice word(s) left unread")
        logger.debug("micro run: %d row(s), %d memory cell(s)", len(rows), len(self.memory))
        return MicroTrace(rows, dict(self.memory), list(self.io))

    # -- memory -----------------------------------------------------------

    def _peek(self, address: int) -> int:
        return self.memory.get(address % P, (0, 0))[0]

    def _access(self, slot: str, address: int, new: Optional[int] = None) -> int:
        """Record an access through ``slot``. Returns the value read."""
        address %= P
        old, t_old = self.memory.get(address, (0, 0))
        value = old if new is None else new % P
        self.memory[address] = (value, slot_timestamp(self._row.clk, slot))
        setattr(self._row, slot, Access(address, old, value, t_old))
        return old

    def _top(self) -> int:
        return self._access("a", self.sp - 2)

    # -- stack ------------------------------------------------------------

    def _op_push(self, e: RomEntry) -> None:
        self._access("b", self.sp, e.a)
        self.sp += 2

    def _op_pop(self, e: RomEntry) -> None:
        self.sp -= 2

    def _op_pick(self, e: RomEntry) -> None:
        value = self._access("a", self.sp - 2 - e.a)
        self._access("b", self.sp, value)
        self.sp += 2

    def _op_swap(self, e: RomEntry) -> None:
        x, y = self._peek(self.sp - 2), self._peek(self.sp - 4)
        self._access("a", self.sp - 2, y)
        self._access("b", self.sp - 4, x)

    def _op_ld(self, e: RomEntry) -> None:
        value = self._access("a", e.a + e.b * self.fp)
        self._access("b", self.sp, value)
        self.sp += 2

    def _op_st(self, e: RomEntry) -> None:
        value = self._top()
        self._access("b", e.a + e.b * self.fp, value)
        self.sp -= 2

    def _op_ldi(self, e: RomEntry) -> None:
        pointer = self._peek(self.sp - 2)
        value = self._access("b", pointer + e.a)
        self._access("a", self.sp - 2, value)

    def _op_tor(self, e: RomEntry) -> None:
        self.r = self._top()
        self.sp -= 2

    def _op_pushr(self, e: RomEntry) -> None:
        self._access("b", self.sp, self.r)
        self.sp += 2

    def _op_str(self, e: RomEntry) -> None:
        pointer = self._top()
        self._access("b", pointer + e.a, self.r)

    # -- arithmetic -------------------------------------------------------

    def _binary(self, compute) -> int:
        r = self._top()
        l = self._peek(self.sp - 4)
        result = compute(l, r) % P
        self._access("b", self.sp - 4, result)
        self.sp -= 2
        return result

    def _op_fadd(self, e: RomEntry) -> None:
        self._binary(lambda l, r: l + r)

    def _op_fsub(self, e: RomEntry) -> None:
        self._binary(lambda l, r: l - r)

    def _op_fmul(self, e: RomEntry) -> None:
        self._binary(lambda l, r: l * r)

    def _op_wadd(self, e: RomEntry) -> None:
        row = self._row
        row.target = self._binary(lambda l, r: self._wrap(l + r, e.a))

    def _op_wsub(self, e: RomEntry) -> None:
        row = self._row
        row.target = self._binary(lambda l, r: self._wrap(l - r, e.a))

    def _wrap(self, exact: int, modulus: int) -> int:
        self._row.bit = int(exact >= modulus or exact < 0)
        return exact % modulus

    def _op_wmul(self, e: RomEntry) -> None:
        row = self._row

        def low(l: int, r: int) -> int:
            self.r = l * r // e.a
            return l * r % e.a

        row.target = self._binary(low)

    def _op_divs(self, e: RomEntry) -> None:
        divisor = self._top()
        dividend = self._peek(self.sp - 4)
        if divisor == 0:
            quotient, self.r = 0, dividend
        else:
            quotient, self.r = divmod(dividend, divisor)
        self._access("b", self.sp - 4, quotient)
        self._row.target = quotient

    def _op_rct(self, e: RomEntry) -> None:
        self._row.target = self._top()

    def _op_rcr(self, e: RomEntry) -> None:
        self._row.target = self.r

    def _op_ltr(self, e: RomEntry) -> None:
        self._row.target = (self._top() - self.r - 1) % P

    def _op_lt(self, e: RomEntry) -> None:
        r = self._top()
        l = self._peek(self.sp - 4)
        bit = int(l < r)
        self._row.bit = bit
        self._row.target = (r - l - 1 if bit else l - r) % P
        self._access("b", self.sp - 4, bit)
        self.sp -= 2

    def _op_eq(self, e: RomEntry) -> None:
        r = self._top()
        l = self._peek(self.sp - 4)
        diff = (l - r) % P
        self._row.inv = inv(diff) if diff else 0
        self._access("b", self.sp - 4, int(diff == 0))
        self.sp -= 2

    def _op_not(self, e: RomEntry) -> None:
        value = self._peek(self.sp - 2)
        self._access("a", self.sp - 2, 1 - value)

    def _op_asrt(self, e: RomEntry) -> None:
        self._top()
        self.sp -= 2

    def _op_boolt(self, e: RomEntry) -> None:
        self._top()

    # -- control ----------------------------------------------------------

    def _op_jmp(self, e: RomEntry) -> None:
        self.pc = e.a

    def _op_jz(self, e: RomEntry) -> None:
        if self._top() == 0:
            self.pc = e.a
        self.sp -= 2

    def _op_call(self, e: RomEntry) -> None:
        frame = self.sp - e.b
        self._access("a", frame + e.c, self._row.pc + 1)
        self._access("b", frame + e.c + 2, self.fp)
        self.fp = frame
        self.sp = frame + e.c + 4
        self.pc = e.a

    def _op_ret1(self, e: RomEntry) -> None:
        value = self._top()
        self._access("b", self.fp, value)

    def _op_ret2(self, e: RomEntry) -> None:
        frame = self.fp
        self.pc = self._access("a", frame + e.c)
        self.fp = self._access("b", frame + e.c + 2)
        self.sp = frame + e.b

    def _op_halt(self, e: RomEntry) -> None:
        self.pc = self._row.pc

    # -- heap -------------------------------------------------------------

    def _op_alloc(self, e: RomEntry) -> None:
        count = self._peek(self.sp - 2)
        self._access("a", self.sp - 2, self.hp)
        self._row.target = count
        self.hp = (self.hp + 2 * count + e.a) % P

    # -- hashing ----------------------------------------------------------

    def _op_hinit(self, e: RomEntry) -> None:
        self.h = [0, 0, e.a % P]

    def _op_habs(self, e: RomEntry) -> None:
        y = self._top()
        x = self._access("b", self.sp - 4)
        self.h = [(self.h[0] + x) % P, (self.h[1] + y) % P, self.h[2]]
        self.sp -= 4

    def _op_hround(self, e: RomEntry) -> None:
        first = mds([pow((x + c) % P, 3, P) for x, c in zip(self.h, (e.a, e.b, e.c))])
        self.h = mds([pow((x + c) % P, 3, P) for x, c in zip(first, (e.d, e.e, e.f))])

    def _op_hout(self, e: RomEntry) -> None:
        self._access("b", self.sp, self.h[0])
        self.sp += 2

    # -- boundary ---------------------------------------------------------

    def _op_io(self, e: RomEntry) -> None:
        self.io.append((e.a, self._top(), self.vc))
        self.sp -= 2

    def _op_adv(self, e: RomEntry) -> None:
        if self._advice_at >= len(self.advice):
            raise ProofError("advice tape exhausted")
        value = self.advice[self._advice_at]
        self._advice_at += 1
        self._access("b", self.sp, value)
        self.sp += 2
