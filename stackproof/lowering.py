"""Lowering of compiled programs to micro instructions.

The proof does not speak about the instruction stream of ``ir`` directly.
Each instruction is rewritten into a short sequence of micro instructions
(see ``micro``), and composite operations (hashing, copying, building values
from the advice tape) become shared routines appended after the program.

The first micro instruction of every program instruction carries a tick;
nothing else does. The tick count at any point therefore equals the cycle
count of the reference executor, which is how cycle counts end up in the
proof.

Layout of a lowered program:

    prologue  read the caller key and every live ``this`` slot from the
              advice tape, hash each and publish it on an input port
    program   the lowered instruction stream; HALT publishes every output
              word on an output port
    routines  bodies of all routines the two parts above call

Lowering is deterministic, so prover and verifier derive the same ROM from
the same program info.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from stackproof.hashing import T_ARR, T_BOOL, T_NULL, T_OBJ, T_STR, T_UINT, contract_id
from stackproof.ir import CompiledProgram, Instruction, Opcode, Shape
from stackproof.micro import MicroOp, RomEntry
from stackproof.poseidon import IV_AUTH, IV_LOG, IV_VALUE, ROUNDS, ROUNDS_PER_ROW, row_constants
from stackproof.types import (
    Type, ArrayType, ContractType, UIntType, VoidType, STRING, BOOLEAN, type_from_string,
)
from stackproof.values import Value, ValueKind

logger = logging.getLogger(__name__)

G_LOG = 0
G_AUTH = 2
G_FLAG = 4
G_CTX = 6
THIS_BASE = 8

OUT_BASE = 1 << 32
MAX_CODE_POINT = 0x110000


def slot_address(slot: int) -> int:
    return THIS_BASE + 2 * slot


def frame_size(local_count: int) -> int:
    return 2 * max(local_count, 1)


class Label:
    """A micro jump target whose pc is fixed once the ROM is complete."""
    __slots__ = ()


@dataclass(frozen=True)
class MicroProgram:
    rom: tuple[RomEntry, ...]
    stack_base: int
    halt_pc: int
    inputs: int
    outputs: int

    def disassemble(self) -> str:
        return "\n".join(f"{pc:5d}  {entry}" for pc, entry in enumerate(self.rom))


@dataclass(frozen=True)
class _Routine:
    label: Label
    args: int
    locals: int


@dataclass
class _Pending:
    routine: _Routine
    body: Callable[[], None]


# ---------------------------------------------------------------------------
# Type helpers
# ---------------------------------------------------------------------------

def is_scalar(t: Type) -> bool:
    return t == BOOLEAN or isinstance(t, (UIntType, VoidType))


def scalar_tag(t: Type) -> int:
    if t == BOOLEAN:
        return T_BOOL
    if isinstance(t, UIntType):
        return T_UINT + t.width
    return T_NULL


def advice_words(value: Value, t: Type, layouts) -> list[int]:
    """Advice tape words that the builder of ``t`` consumes to rebuild ``value``."""
    if t == STRING:
        points = [ord(c) for c in value.data]
        return [len(points)] + points
    if isinstance(t, ArrayType):
        words = [len(value.data)]
        for item in value.data:
            words.extend(advice_words(item, t.element, layouts))
        return words
    if isinstance(t, ContractType):
        words = []
        for (_, field_type), (_, item) in zip(layouts[t.name], value.data):
            words.extend(advice_words(item, field_type, layouts))
        return words
    if value.kind == ValueKind.NULL:
        return [0]
    return [int(value.data)]


# ---------------------------------------------------------------------------
# Lowering
# ---------------------------------------------------------------------------

class Lowering:
    """Builds the ROM of one compiled program."""

    def __init__(self, program: CompiledProgram):
        self.program = program
        self.layouts = program.layouts
        self.stack_base = THIS_BASE + 2 * len(program.this_slots)
        self.code: list[tuple[MicroOp, tuple, int, int]] = []
        self.labels: dict[Label, int] = {}
        self.ir_labels: dict[int, Label] = {}
        self.routines: dict[str, _Routine] = {}
        self.pending: list[_Pending] = []
        self.halt_pc: Optional[int] = None
        self._tick = 0
        self._frame: dict[int, int] = {}
        self._outputs = 4 + len(program.live_slots)

    # -- primitives -------------------------------------------------------

    def _op(self, op: MicroOp, *args: Any, width: int = 0) -> None:
        self.code.append((op, args, width, self._tick))
        self._tick = 0

    def _place(self, label: Label) -> None:
        self.labels[label] = len(self.code)

    def _ld(self, local: int) -> None:
        self._op(MicroOp.LD, 2 * local, 1)

    def _st(self, local: int) -> None:
        self._op(MicroOp.ST, 2 * local, 1)

    def _routine(self, key: str, args: int, local_count: int, body: Callable[[], None]) -> _Routine:
        routine = self.routines.get(key)
        if routine is None:
            routine = _Routine(Label(), args, local_count)
            self.routines[key] = routine
            self.pending.append(_Pending(routine, body))
        return routine

    def _call(self, routine: _Routine) -> None:
        self._op(MicroOp.CALL, routine.label, 2 * routine.args, frame_size(routine.locals))

    def _return(self, routine: _Routine) -> None:
        self._op(MicroOp.RET1)
        self._op(MicroOp.RET2, 2, frame_size(routine.locals))

    def _loop(self, index: int, end: int, body: Callable[[], None], step: int = 2) -> None:
        """``while index != end: body(); index += step`` over two locals."""
        top, done = Label(), Label()
        self._place(top)
        self._ld(index)
        self._ld(end)
        self._op(MicroOp.EQ)
        self._op(MicroOp.NOT)
        self._op(MicroOp.JZ, done)
        body()
        self._ld(index)
        self._op(MicroOp.PUSH, step)
        self._op(MicroOp.FADD)
        self._st(index)
        self._op(MicroOp.JMP, top)
        self._place(done)

    def _block_end(self, length_of: Callable[[], None], end: int) -> None:
        """``end = 2 * length + 2``: the offset one past a block's last cell."""
        length_of()
        self._op(MicroOp.PUSH, 2)
        self._op(MicroOp.FMUL)
        self._op(MicroOp.PUSH, 2)
        self._op(MicroOp.FADD)
        self._st(end)

    # -- shared routines --------------------------------------------------

    def _perm(self) -> None:
        routine = self._routine("perm", 0, 1, self._perm_body)
        self._call(routine)

    def _perm_body(self) -> None:
        for row in range(ROUNDS // ROUNDS_PER_ROW):
            self._op(MicroOp.HROUND, *row_constants(row))
        self._op(MicroOp.RET2, 0, frame_size(1))

    def _copy(self) -> None:
        """CALL copy(src, dst, count): copy ``count`` cells between two blocks."""
        self._call(self._routine("copy", 3, 4, self._copy_body))

    def _copy_body(self) -> None:
        src, dst, count, end = 0, 1, 2, 3
        self._ld(src)
        self._ld(count)
        self._op(MicroOp.PUSH, 2)
        self._op(MicroOp.FMUL)
        self._op(MicroOp.FADD)
        self._st(end)

        def move() -> None:
            self._ld(src)
            self._op(MicroOp.LDI, 0)
            self._op(MicroOp.TOR)
            self._ld(dst)
            self._op(MicroOp.STR, 0)
            self._op(MicroOp.POP)
            self._ld(dst)
            self._op(MicroOp.PUSH, 2)
            self._op(MicroOp.FADD)
            self._st(dst)

        self._loop(src, end, move)
        self._op(MicroOp.RET2, 0, frame_size(4))

    def _concat(self) -> None:
        routine = self._routine("concat", 2, 5, lambda: self._concat_body(routine))
        self._call(routine)

    def _concat_body(self, routine: _Routine) -> None:
        a, b, la, lb, t = 0, 1, 2, 3, 4
        self._ld(a)
        self._op(MicroOp.LDI, 0)
        self._st(la)
        self._ld(b)
        self._op(MicroOp.LDI, 0)
        self._st(lb)
        self._ld(la)
        self._ld(lb)
        self._op(MicroOp.FADD)
        self._op(MicroOp.ALLOC, 2, width=32)
        self._st(t)
        self._ld(la)
        self._ld(lb)
        self._op(MicroOp.FADD)
        self._op(MicroOp.TOR)
        self._ld(t)
        self._op(MicroOp.STR, 0)
        self._op(MicroOp.POP)
        # copy(a + 2, t + 2, la)
        self._ld(a)
        self._op(MicroOp.PUSH, 2)
        self._op(MicroOp.FADD)
        self._ld(t)
        self._op(MicroOp.PUSH, 2)
        self._op(MicroOp.FADD)
        self._ld(la)
        self._copy()
        # copy(b + 2, t + 2 + 2 * la, lb)
        self._ld(b)
        self._op(MicroOp.PUSH, 2)
        self._op(MicroOp.FADD)
        self._ld(t)
        self._op(MicroOp.PUSH, 2)
        self._op(MicroOp.FADD)
        self._ld(la)
        self._op(MicroOp.PUSH, 2)
        self._op(MicroOp.FMUL)
        self._op(MicroOp.FADD)
        self._ld(lb)
        self._copy()
        self._ld(t)
        self._return(routine)

    def _array_set(self) -> None:
        routine = self._routine("array_set", 3, 5, lambda: self._array_set_body(routine))
        self._call(routine)

    def _array_set_body(self, routine: _Routine) -> None:
        arr, idx, val, n, t = 0, 1, 2, 3, 4
        self._ld(idx)
        self._ld(arr)
        self._op(MicroOp.LDI, 0)
        self._op(MicroOp.LT)
        self._op(MicroOp.ASRT)
        self._ld(arr)
        self._op(MicroOp.LDI, 0)
        self._st(n)
        self._ld(n)
        self._op(MicroOp.ALLOC, 2, width=32)
        self._st(t)
        self._ld(arr)
        self._ld(t)
        self._ld(n)
        self._op(MicroOp.PUSH, 1)
        self._op(MicroOp.FADD)
        self._copy()
        self._ld(val)
        self._op(MicroOp.TOR)
        self._ld(t)
        self._ld(idx)
        self._op(MicroOp.PUSH, 2)
        self._op(MicroOp.FMUL)
        self._op(MicroOp.FADD)
        self._op(MicroOp.STR, 2)
        self._op(MicroOp.POP)
        self._ld(t)
        self._return(routine)

    def _array_push(self) -> None:
        routine = self._routine("array_push", 2, 4, lambda: self._array_push_body(routine))
        self._call(routine)

    def _array_push_body(self, routine: _Routine) -> None:
        arr, val, n, t = 0, 1, 2, 3
        self._ld(arr)
        self._op(MicroOp.LDI, 0)
        self._st(n)
        self._ld(n)
        self._op(MicroOp.PUSH, 1)
        self._op(MicroOp.FADD)
        self._op(MicroOp.ALLOC, 2, width=32)
        self._st(t)
        self._ld(arr)
        self._ld(t)
        self._ld(n)
        self._op(MicroOp.PUSH, 1)
        self._op(MicroOp.FADD)
        self._copy()
        self._ld(n)
        self._op(MicroOp.PUSH, 1)
        self._op(MicroOp.FADD)
        self._op(MicroOp.TOR)
        self._ld(t)
        self._op(MicroOp.STR, 0)
        self._op(MicroOp.POP)
        self._ld(val)
        self._op(MicroOp.TOR)
        self._ld(t)
        self._ld(n)
        self._op(MicroOp.PUSH, 2)
        self._op(MicroOp.FMUL)
        self._op(MicroOp.FADD)
        self._op(MicroOp.STR, 2)
        self._op(MicroOp.POP)
        self._ld(t)
        self._return(routine)

    # -- hashing ----------------------------------------------------------

    def _hash(self, t: Type) -> None:
        """Replace the value on top of the stack with its content digest."""
        if is_scalar(t):
            self._op(MicroOp.PUSH, scalar_tag(t))
            self._op(MicroOp.SWAP)
            self._op(MicroOp.HINIT, IV_VALUE)
            self._op(MicroOp.HABS)
            self._perm()
            self._op(MicroOp.HOUT)
        elif t == STRING:
            self._call(self._absorb_routine(T_STR))
        elif isinstance(t, ArrayType) and is_scalar(t.element):
            self._call(self._absorb_routine(T_ARR))
        elif isinstance(t, ArrayType):
            key = f"hash:{t}"
            routine = self._routine(key, 1, 4, lambda: self._hash_array_body(self.routines[key], t))
            self._call(routine)
        else:
            key = f"hash:{t}"
            routine = self._routine(key, 1, 1, lambda: self._hash_object_body(self.routines[key], t))
            self._call(routine)

    def _absorb_routine(self, tag: int) -> _Routine:
        key = f"absorb:{tag}"
        return self._routine(key, 1, 3, lambda: self._absorb_body(self.routines[key], tag))

    def _absorb_body(self, routine: _Routine, tag: int) -> None:
        """Digest of a block [length, e0, e1, ...] whose cells are field words."""
        p, q, end = 0, 1, 2
        self._op(MicroOp.HINIT, IV_VALUE)
        self._op(MicroOp.PUSH, tag)
        self._ld(p)
        self._op(MicroOp.LDI, 0)
        self._op(MicroOp.HABS)
        self._perm()
        self._ld(p)
        self._op(MicroOp.PUSH, 2)
        self._op(MicroOp.FADD)
        self._st(q)
        self._ld(q)
        self._ld(p)
        self._op(MicroOp.LDI, 0)
        self._op(MicroOp.PUSH, 2)
        self._op(MicroOp.FMUL)
        self._op(MicroOp.FADD)
        self._st(end)

        odd, done = Label(), Label()

        def pair() -> None:
            self._ld(q)
            self._op(MicroOp.LDI, 0)
            self._ld(q)
            self._op(MicroOp.PUSH, 2)
            self._op(MicroOp.FADD)
            self._ld(end)
            self._op(MicroOp.EQ)
            self._op(MicroOp.NOT)
            self._op(MicroOp.JZ, odd)
            self._ld(q)
            self._op(MicroOp.LDI, 2)
            self._op(MicroOp.HABS)
            self._perm()

        self._loop(q, end, pair, step=4)
        self._op(MicroOp.JMP, done)
        self._place(odd)
        self._op(MicroOp.PUSH, 0)
        self._op(MicroOp.HABS)
        self._perm()
        self._place(done)
        self._op(MicroOp.HOUT)
        self._return(routine)

    def _hash_array_body(self, routine: _Routine, t: ArrayType) -> None:
        """Digest of an array of composites: digest every element, then absorb the digests."""
        p, out, i, end = 0, 1, 2, 3
        self._ld(p)
        self._op(MicroOp.LDI, 0)
        self._op(MicroOp.ALLOC, 2, width=32)
        self._st(out)
        self._ld(p)
        self._op(MicroOp.LDI, 0)
        self._op(MicroOp.TOR)
        self._ld(out)
        self._op(MicroOp.STR, 0)
        self._op(MicroOp.POP)
        self._op(MicroOp.PUSH, 2)
        self._st(i)
        def length() -> None:
            self._ld(p)
            self._op(MicroOp.LDI, 0)

        self._block_end(length, end)

        def element() -> None:
            self._ld(p)
            self._ld(i)
            self._op(MicroOp.FADD)
            self._op(MicroOp.LDI, 0)
            self._hash(t.element)
            self._op(MicroOp.TOR)
            self._ld(out)
            self._ld(i)
            self._op(MicroOp.FADD)
            self._op(MicroOp.STR, 0)
            self._op(MicroOp.POP)

        self._loop(i, end, element)
        self._ld(out)
        self._call(self._absorb_routine(T_ARR))
        self._return(routine)

    def _hash_object_body(self, routine: _Routine, t: ContractType) -> None:
        fields = self.layouts[t.name]
        inputs: list[Callable[[], None]] = [
            lambda: self._op(MicroOp.PUSH, T_OBJ),
            lambda: self._op(MicroOp.PUSH, contract_id(t.name)),
        ]
        for j, (_, field_type) in enumerate(fields):
            inputs.append(lambda j=j, ft=field_type: self._field_word(j, ft))
        if len(inputs) % 2:
            inputs.append(lambda: self._op(MicroOp.PUSH, 0))
        pairs = [inputs[k:k + 2] for k in range(0, len(inputs), 2)]
        for first, second in reversed(pairs):
            first()
            second()
        self._op(MicroOp.HINIT, IV_VALUE)
        for _ in pairs:
            self._op(MicroOp.HABS)
            self._perm()
        self._op(MicroOp.HOUT)
        self._return(routine)

    def _field_word(self, index: int, t: Type) -> None:
        self._ld(0)
        self._op(MicroOp.LDI, 2 * index)
        if not is_scalar(t):
            self._hash(t)

    # -- building values from advice --------------------------------------

    def _build(self, t: Type) -> None:
        """Push a value of type ``t`` read from the advice tape, checking it is well formed."""
        if isinstance(t, UIntType):
            self._op(MicroOp.ADV)
            self._op(MicroOp.RCT, width=t.width)
        elif t == BOOLEAN:
            self._op(MicroOp.ADV)
            self._op(MicroOp.BOOLT)
        elif isinstance(t, VoidType):
            self._op(MicroOp.PUSH, 0)
        elif isinstance(t, ContractType):
            key = f"build:{t}"
            self._call(self._routine(key, 0, 1, lambda: self._build_object_body(self.routines[key], t)))
        else:
            key = f"build:{t}"
            self._call(self._routine(key, 0, 4, lambda: self._build_block_body(self.routines[key], t)))

    def _code_point(self) -> None:
        self._op(MicroOp.ADV)
        self._op(MicroOp.RCT, width=32)
        self._op(MicroOp.PICK, 0)
        self._op(MicroOp.PUSH, MAX_CODE_POINT)
        self._op(MicroOp.LT)
        self._op(MicroOp.ASRT)

    def _build_block_body(self, routine: _Routine, t: Type) -> None:
        n, out, i, end = 0, 1, 2, 3
        element = self._code_point if t == STRING else (lambda: self._build(t.element))
        self._op(MicroOp.ADV)
        self._st(n)
        self._ld(n)
        self._op(MicroOp.ALLOC, 2, width=32)
        self._st(out)
        self._ld(n)
        self._op(MicroOp.TOR)
        self._ld(out)
        self._op(MicroOp.STR, 0)
        self._op(MicroOp.POP)
        self._op(MicroOp.PUSH, 2)
        self._st(i)
        self._block_end(lambda: self._ld(n), end)

        def store() -> None:
            element()
            self._op(MicroOp.TOR)
            self._ld(out)
            self._ld(i)
            self._op(MicroOp.FADD)
            self._op(MicroOp.STR, 0)
            self._op(MicroOp.POP)

        self._loop(i, end, store)
        self._ld(out)
        self._return(routine)

    def _build_object_body(self, routine: _Routine, t: ContractType) -> None:
        fields = self.layouts[t.name]
        self._op(MicroOp.PUSH, len(fields))
        self._op(MicroOp.ALLOC, 0, width=32)
        self._st(0)
        for j, (_, field_type) in enumerate(fields):
            self._build(field_type)
            self._op(MicroOp.TOR)
            self._ld(0)
            self._op(MicroOp.STR, 2 * j)
            self._op(MicroOp.POP)
        self._ld(0)
        self._return(routine)

    # -- constants and shapes ---------------------------------------------

    def _constant(self, value: Value) -> None:
        if value.kind == ValueKind.STRING:
            items = [ord(c) for c in value.data]
            self._block(len(items), [lambda cp=cp: self._op(MicroOp.PUSH, cp) for cp in items], header=True)
        elif value.kind == ValueKind.ARRAY:
            self._block(len(value.data), [lambda v=v: self._constant(v) for v in value.data], header=True)
        elif value.kind == ValueKind.OBJECT:
            self._block(len(value.data), [lambda v=v: self._constant(v) for _, v in value.data], header=False)
        elif value.kind == ValueKind.NULL:
            self._op(MicroOp.PUSH, 0)
        elif value.kind == ValueKind.HASH:
            self._op(MicroOp.PUSH, int.from_bytes(value.data, "big"))
        else:
            self._op(MicroOp.PUSH, int(value.data))

    def _block(self, count: int, items: list[Callable[[], None]], header: bool) -> None:
        """Allocate a block and fill it from ``items``, leaving its pointer on the stack."""
        self._op(MicroOp.PUSH, count)
        self._op(MicroOp.ALLOC, 2 if header else 0, width=32)
        base = 0
        if header:
            self._op(MicroOp.PUSH, count)
            self._op(MicroOp.TOR)
            self._op(MicroOp.STR, 0)
            base = 2
        for j, item in enumerate(items):
            item()
            self._op(MicroOp.TOR)
            self._op(MicroOp.STR, base + 2 * j)

    def _load_shape(self, shape: Shape) -> None:
        if isinstance(shape, int):
            self._op(MicroOp.LD, slot_address(shape), 0)
            return
        self._block(len(shape[1]), [lambda s=sub: self._load_shape(s) for _, sub in shape[1]], header=False)

    def _store_shape(self, shape: Shape) -> None:
        if isinstance(shape, int):
            self._op(MicroOp.ST, slot_address(shape), 0)
            return
        for j, (_, sub) in enumerate(shape[1]):
            self._op(MicroOp.PICK, 0)
            self._op(MicroOp.LDI, 2 * j)
            self._store_shape(sub)
        self._op(MicroOp.POP)

    # -- program ----------------------------------------------------------

    def _field_index(self, contract: str, name: str) -> int:
        for j, (field_name, _) in enumerate(self.layouts[contract]):
            if field_name == name:
                return j
        raise ValueError(f"{contract} has no field '{name}'")

    def _ir_target(self, pc: int) -> Label:
        return self.ir_labels.setdefault(pc, Label())

    def _accumulate(self, address: int, iv: int) -> None:
        """acc = sponge([acc, top], iv); pops the top."""
        self._op(MicroOp.LD, address, 0)
        self._op(MicroOp.SWAP)
        self._op(MicroOp.HINIT, iv)
        self._op(MicroOp.HABS)
        self._perm()
        self._op(MicroOp.HOUT)
        self._op(MicroOp.ST, address, 0)

    def _compare(self, instr: Instruction) -> None:
        t = type_from_string(instr.arg)
        if not is_scalar(t):
            self._hash(t)
            self._op(MicroOp.SWAP)
            self._hash(t)
        self._op(MicroOp.EQ)

    def _lower(self, pc: int, instr: Instruction) -> None:
        op, arg = instr.op, instr.arg
        if op == Opcode.PUSH:
            self._constant(arg)
        elif op == Opcode.POP:
            self._op(MicroOp.POP)
        elif op == Opcode.DUP:
            self._op(MicroOp.PICK, 0)
        elif op == Opcode.ADVICE:
            self._build(type_from_string(arg[1]))

        elif op == Opcode.LOAD_LOCAL:
            self._ld(arg)
        elif op == Opcode.STORE_LOCAL:
            self._st(arg)
        elif op == Opcode.LOAD_THIS:
            self._load_shape(arg)
        elif op == Opcode.STORE_THIS:
            self._store_shape(arg)
        elif op == Opcode.LOAD_CTX:
            self._op(MicroOp.LD, G_CTX, 0)

        elif op == Opcode.ADD:
            self._op(MicroOp.FADD)
            self._op(MicroOp.RCT, width=arg)
        elif op == Opcode.SUB:
            self._op(MicroOp.FSUB)
            self._op(MicroOp.RCT, width=arg)
        elif op == Opcode.MUL:
            self._op(MicroOp.FMUL)
            self._op(MicroOp.RCT, width=arg)
        elif op in (Opcode.DIV, Opcode.MOD):
            self._op(MicroOp.DIVS, width=arg)
            self._op(MicroOp.RCR, width=arg)
            self._op(MicroOp.LTR, width=64)
            self._op(MicroOp.POP)
            if op == Opcode.MOD:
                self._op(MicroOp.POP)
                self._op(MicroOp.PUSHR)
        elif op == Opcode.WADD:
            self._op(MicroOp.WADD, 1 << arg, width=arg)
        elif op == Opcode.WSUB:
            self._op(MicroOp.WSUB, 1 << arg, width=arg)
        elif op == Opcode.WMUL:
            self._op(MicroOp.WMUL, 1 << arg, width=arg)
            self._op(MicroOp.RCR, width=arg)

        elif op == Opcode.CONCAT:
            self._concat()
        elif op == Opcode.EQ:
            self._compare(instr)
        elif op == Opcode.NEQ:
            self._compare(instr)
            self._op(MicroOp.NOT)
        elif op == Opcode.LT:
            self._op(MicroOp.LT, width=64)
        elif op == Opcode.GT:
            self._op(MicroOp.SWAP)
            self._op(MicroOp.LT, width=64)
        elif op == Opcode.LTE:
            self._op(MicroOp.SWAP)
            self._op(MicroOp.LT, width=64)
            self._op(MicroOp.NOT)
        elif op == Opcode.GTE:
            self._op(MicroOp.LT, width=64)
            self._op(MicroOp.NOT)
        elif op == Opcode.NOT:
            self._op(MicroOp.NOT)

        elif op == Opcode.JUMP:
            self._op(MicroOp.JMP, self._ir_target(arg))
        elif op == Opcode.JUMP_IF_FALSE:
            self._op(MicroOp.JZ, self._ir_target(arg))
        elif op == Opcode.CALL:
            entry_pc, argc, _ = arg
            callee = self._frame[entry_pc]
            self._op(MicroOp.CALL, self._ir_target(entry_pc), 2 * argc, frame_size(callee))
        elif op == Opcode.RET:
            owner = self.program.function_at(pc)
            self._op(MicroOp.RET1)
            self._op(MicroOp.RET2, 2, frame_size(owner.local_count if owner else 0))

        elif op == Opcode.ARRAY_NEW:
            self._op(MicroOp.PUSH, arg)
            self._op(MicroOp.ALLOC, 2, width=32)
            self._op(MicroOp.PUSH, arg)
            self._op(MicroOp.TOR)
            self._op(MicroOp.STR, 0)
            for i in reversed(range(arg)):
                self._op(MicroOp.SWAP)
                self._op(MicroOp.TOR)
                self._op(MicroOp.STR, 2 + 2 * i)
        elif op == Opcode.ARRAY_GET:
            self._op(MicroOp.PICK, 0)
            self._op(MicroOp.PICK, 4)
            self._op(MicroOp.LDI, 0)
            self._op(MicroOp.LT, width=64)
            self._op(MicroOp.ASRT)
            self._op(MicroOp.PUSH, 2)
            self._op(MicroOp.FMUL)
            self._op(MicroOp.FADD)
            self._op(MicroOp.LDI, 2)
        elif op == Opcode.ARRAY_SET:
            self._array_set()
        elif op == Opcode.ARRAY_PUSH:
            self._array_push()
        elif op == Opcode.LENGTH:
            self._op(MicroOp.LDI, 0)
        elif op == Opcode.OBJ_GET:
            self._op(MicroOp.LDI, 2 * self._field_index(*arg))
        elif op == Opcode.OBJ_SET:
            self._obj_set(*arg)

        elif op == Opcode.LOG:
            self._hash(type_from_string(arg))
            self._accumulate(G_LOG, IV_LOG)
        elif op in (Opcode.AUTH_CHECK, Opcode.AUTH_REQUIRE):
            self._op(MicroOp.PICK, 0)
            self._accumulate(G_AUTH, IV_AUTH)
            if op == Opcode.AUTH_REQUIRE:
                self._op(MicroOp.ASRT)
        elif op == Opcode.SELF_DESTRUCT:
            self._op(MicroOp.PUSH, 1)
            self._op(MicroOp.ST, G_FLAG, 0)

        elif op == Opcode.HASH:
            self._hash(type_from_string(arg))
        elif op == Opcode.PUSH_LOG_ACC:
            self._op(MicroOp.LD, G_LOG, 0)
        elif op == Opcode.PUSH_AUTH_ACC:
            self._op(MicroOp.LD, G_AUTH, 0)
        elif op == Opcode.PUSH_FLAG:
            self._op(MicroOp.LD, G_FLAG, 0)
        elif op == Opcode.HALT:
            publish = Label()
            self._op(MicroOp.JMP, publish)
            self._place(publish)
            for j in range(self._outputs):
                self._op(MicroOp.IO, OUT_BASE + j)
            self.halt_pc = len(self.code)
            self._op(MicroOp.HALT)
        else:
            raise ValueError(f"cannot lower {op}")

    def _obj_set(self, contract: str, name: str) -> None:
        fields = self.layouts[contract]
        target = self._field_index(contract, name)
        self._op(MicroOp.PUSH, len(fields))
        self._op(MicroOp.ALLOC, 0, width=32)
        for j in range(len(fields)):
            # stack: obj, value, copy
            self._op(MicroOp.PICK, 2 if j == target else 4)
            if j != target:
                self._op(MicroOp.LDI, 2 * j)
            self._op(MicroOp.TOR)
            self._op(MicroOp.STR, 2 * j)
        for _ in range(2):
            self._op(MicroOp.SWAP)
            self._op(MicroOp.POP)

    def _prologue(self) -> None:
        self._build(STRING)
        self._op(MicroOp.ST, G_CTX, 0)
        self._op(MicroOp.LD, G_CTX, 0)
        self._hash(STRING)
        self._op(MicroOp.IO, 0)
        slot_types = self.program.slot_types
        for port, slot in enumerate(self.program.live_slots, start=1):
            t = slot_types[slot]
            self._build(t)
            self._op(MicroOp.ST, slot_address(slot), 0)
            self._op(MicroOp.LD, slot_address(slot), 0)
            self._hash(t)
            self._op(MicroOp.IO, port)

    def lower(self) -> MicroProgram:
        program = self.program
        self._frame = {f.entry_pc: f.local_count for f in program.functions}
        self._prologue()
        for pc, instr in enumerate(program.instructions):
            self._place(self._ir_target(pc))
            self._tick = 1
            self._lower(pc, instr)
        while self.pending:
            job = self.pending.pop(0)
            self._place(job.routine.label)
            job.body()
        if self.halt_pc is None:
            raise ValueError("program has no HALT")

        rom = []
        for op, args, width, tick in self.code:
            values = [self.labels[x] if isinstance(x, Label) else x for x in args]
            rom.append(RomEntry(op, *values, width=width, tick=tick))
        logger.debug(
            "lowered %s: %d instruction(s) to %d micro instruction(s), %d routine(s)",
            program.entry.qualified_name, len(program.instructions), len(rom), len(self.routines),
        )
        return MicroProgram(
            rom=tuple(rom),
            stack_base=self.stack_base,
            halt_pc=self.halt_pc,
            inputs=1 + len(program.live_slots),
            outputs=self._outputs,
        )


def lower(program: CompiledProgram) -> MicroProgram:
    return Lowering(program).lower()


def advice_tape(program: CompiledProgram, ctx: Value, slots, args) -> list[int]:
    """Advice words in the order the lowered program reads them."""
    layouts = program.layouts
    words = advice_words(ctx, STRING, layouts)
    slot_types = program.slot_types
    for slot, value in zip(program.live_slots, slots):
        words.extend(advice_words(value, slot_types[slot], layouts))
    for value, t in zip(args, program.param_types):
        words.extend(advice_words(value, t, layouts))
    return words
