"""Instruction semantics of the reference executor.

Each instruction is a pure function from (registers, popped operands, memory
reads) to (pushed operands, memory writes, next registers). ``vm.Machine``
calls ``execute`` to run a program and produce its results and public words;
the proof re-derives the same words from a lowered form of the program (see
``lowering``), so the executor is the reference both must agree with.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Optional

from stackproof.errors import RuntimeErrorKind
from stackproof.hashing import (
    EMPTY_LOG, EMPTY_AUTH, log_push, auth_push, flag_word, value_hash, word_bytes,
)
from stackproof.ir import CompiledProgram, Instruction, Opcode, Shape, shape_leaves
from stackproof.types import type_from_string
from stackproof.values import Value, ValueKind, TRUE, FALSE, conforms


class Trap(Exception):
    """An instruction cannot complete. The executor turns this into an ExecutionError."""

    def __init__(self, kind: RuntimeErrorKind, message: str):
        self.kind = kind
        self.message = message
        super().__init__(message)


@dataclass(frozen=True)
class Registers:
    pc: int = 0
    frame: int = 0
    log: int = EMPTY_LOG
    auth: int = EMPTY_AUTH
    destructed: bool = False


INITIAL = Registers()


@dataclass(frozen=True)
class CallEntry:
    """A call-stack entry popped by RET."""
    return_pc: int
    frame: int


@dataclass
class StepResult:
    pushed: list[Value] = field(default_factory=list)
    writes: list[tuple[str, Value]] = field(default_factory=list)
    registers: Registers = INITIAL
    logged: Optional[Value] = None
    auth: Optional[bool] = None


# ---------------------------------------------------------------------------
# Static shape of each instruction
# ---------------------------------------------------------------------------

BINARY_OPS = {
    Opcode.ADD, Opcode.SUB, Opcode.MUL, Opcode.DIV, Opcode.MOD,
    Opcode.WADD, Opcode.WSUB, Opcode.WMUL, Opcode.CONCAT,
    Opcode.EQ, Opcode.NEQ, Opcode.LT, Opcode.LTE, Opcode.GT, Opcode.GTE,
    Opcode.ARRAY_GET, Opcode.ARRAY_PUSH, Opcode.OBJ_SET,
}
UNARY_OPS = {
    Opcode.POP, Opcode.DUP, Opcode.STORE_LOCAL, Opcode.STORE_THIS, Opcode.NOT,
    Opcode.JUMP_IF_FALSE, Opcode.LENGTH, Opcode.OBJ_GET, Opcode.LOG,
    Opcode.AUTH_CHECK, Opcode.AUTH_REQUIRE, Opcode.HASH,
}


def local_address(frame: int, slot: int) -> str:
    return f"l:{frame}:{slot}"


def this_address(slot: int) -> str:
    return f"t:{slot}"


CTX_ADDRESS = "c:publicKey"


def pop_count(instr: Instruction) -> int:
    if instr.op in BINARY_OPS:
        return 2
    if instr.op in UNARY_OPS:
        return 1
    if instr.op == Opcode.ARRAY_SET:
        return 3
    if instr.op == Opcode.ARRAY_NEW:
        return instr.arg
    if instr.op == Opcode.CALL:
        return instr.arg[1]
    return 0


def read_addresses(instr: Instruction, frame: int) -> list[str]:
    if instr.op == Opcode.LOAD_LOCAL:
        return [local_address(frame, instr.arg)]
    if instr.op == Opcode.LOAD_THIS:
        return [this_address(s) for s in shape_leaves(instr.arg)]
    if instr.op == Opcode.LOAD_CTX:
        return [CTX_ADDRESS]
    return []


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _mismatch(message: str) -> Trap:
    return Trap(RuntimeErrorKind.TYPE_MISMATCH, message)


def _uint(v: Value, width: Optional[int] = None) -> int:
    if v.kind != ValueKind.UINT or (width is not None and v.width != width):
        raise _mismatch(f"expected u{width or ''} operand, got {v.kind.value}")
    return v.data


def _bool(v: Value) -> bool:
    if v.kind != ValueKind.BOOLEAN:
        raise _mismatch(f"expected boolean operand, got {v.kind.value}")
    return v.data


def _array(v: Value) -> tuple[Value, ...]:
    if v.kind != ValueKind.ARRAY:
        raise _mismatch(f"expected array operand, got {v.kind.value}")
    return v.data


def _index(items: tuple[Value, ...], v: Value) -> int:
    i = _uint(v)
    if i >= len(items):
        raise Trap(RuntimeErrorKind.INDEX_OUT_OF_BOUNDS, f"index {i} out of bounds for length {len(items)}")
    return i


def _object(v: Value) -> Value:
    if v.kind != ValueKind.OBJECT:
        raise _mismatch(f"expected object operand, got {v.kind.value}")
    return v


def _get_field(obj: Value, name: str) -> Value:
    try:
        return _object(obj).get_field(name)
    except KeyError:
        raise _mismatch(f"object {obj.type_name} has no field '{name}'") from None


def _set_field(obj: Value, name: str, value: Value) -> Value:
    try:
        return _object(obj).with_field(name, value)
    except KeyError:
        raise _mismatch(f"object {obj.type_name} has no field '{name}'") from None


def assemble(shape: Shape, leaves: list[Value]) -> Value:
    """Build the value of a ``this`` shape from its leaf values in slot order."""
    it = iter(leaves)

    def build(s: Shape) -> Value:
        if isinstance(s, int):
            return next(it)
        return Value.object(s[0], [(name, build(sub)) for name, sub in s[1]])

    return build(shape)


def decompose(shape: Shape, value: Value) -> list[tuple[int, Value]]:
    """Split a value into (slot, leaf value) pairs following a ``this`` shape."""
    if isinstance(shape, int):
        return [(shape, value)]
    obj = _object(value)
    if obj.type_name != shape[0] or [n for n, _ in obj.data] != [n for n, _ in shape[1]]:
        raise _mismatch(f"expected {shape[0]} object, got {obj.type_name}")
    pairs: list[tuple[int, Value]] = []
    for (_, sub), (_, field_value) in zip(shape[1], obj.data):
        pairs.extend(decompose(sub, field_value))
    return pairs


def _arith(op: Opcode, width: int, a: int, b: int) -> int:
    modulus = 1 << width
    if op == Opcode.WADD:
        return (a + b) % modulus
    if op == Opcode.WSUB:
        return (a - b) % modulus
    if op == Opcode.WMUL:
        return (a * b) % modulus
    if op in (Opcode.DIV, Opcode.MOD) and b == 0:
        raise Trap(RuntimeErrorKind.DIVISION_BY_ZERO, "division by zero")
    if op == Opcode.ADD:
        r = a + b
    elif op == Opcode.SUB:
        r = a - b
    elif op == Opcode.MUL:
        r = a * b
    elif op == Opcode.DIV:
        r = a // b
    else:
        r = a % b
    if not 0 <= r < modulus:
        raise Trap(RuntimeErrorKind.ARITHMETIC_OVERFLOW, f"u{width} {op.value} overflow: {a}, {b}")
    return r


COMPARE = {
    Opcode.LT: lambda a, b: a < b,
    Opcode.LTE: lambda a, b: a <= b,
    Opcode.GT: lambda a, b: a > b,
    Opcode.GTE: lambda a, b: a >= b,
}


# ---------------------------------------------------------------------------
# Transition
# ---------------------------------------------------------------------------

def execute(
    program: CompiledProgram,
    instr: Instruction,
    regs: Registers,
    cycle: int,
    popped: list[Value],
    reads: list[Value],
    advice: Optional[Value] = None,
    call_entry: Optional[CallEntry] = None,
) -> StepResult:
    """Apply one instruction. ``popped`` is bottom-to-top; ``reads`` follow ``read_addresses``."""
    op = instr.op
    nxt = replace(regs, pc=regs.pc + 1)
    result = StepResult(registers=nxt)

    if op == Opcode.PUSH:
        result.pushed = [instr.arg]
    elif op == Opcode.POP:
        pass
    elif op == Opcode.DUP:
        result.pushed = [popped[0], popped[0]]
    elif op == Opcode.ADVICE:
        index, type_text = instr.arg
        if advice is None or not conforms(advice, type_from_string(type_text), program.layouts):
            raise _mismatch(f"argument {index} is not a {type_text}")
        result.pushed = [advice]

    elif op == Opcode.LOAD_LOCAL or op == Opcode.LOAD_CTX:
        result.pushed = [reads[0]]
    elif op == Opcode.STORE_LOCAL:
        result.writes = [(local_address(regs.frame, instr.arg), popped[0])]
    elif op == Opcode.LOAD_THIS:
        result.pushed = [assemble(instr.arg, reads)]
    elif op == Opcode.STORE_THIS:
        result.writes = [(this_address(slot), v) for slot, v in decompose(instr.arg, popped[0])]

    elif op in (Opcode.ADD, Opcode.SUB, Opcode.MUL, Opcode.DIV, Opcode.MOD,
                Opcode.WADD, Opcode.WSUB, Opcode.WMUL):
        a, b = _uint(popped[0], instr.arg), _uint(popped[1], instr.arg)
        result.pushed = [Value.uint(_arith(op, instr.arg, a, b), instr.arg)]
    elif op == Opcode.CONCAT:
        a, b = popped
        if a.kind != ValueKind.STRING or b.kind != ValueKind.STRING:
            raise _mismatch("concatenation of non-strings")
        result.pushed = [Value.string(a.data + b.data)]
    elif op == Opcode.EQ:
        result.pushed = [Value.boolean(popped[0] == popped[1])]
    elif op == Opcode.NEQ:
        result.pushed = [Value.boolean(popped[0] != popped[1])]
    elif op in COMPARE:
        a, b = popped
        width = a.width if a.kind == ValueKind.UINT else None
        result.pushed = [Value.boolean(COMPARE[op](_uint(a), _uint(b, width)))]
    elif op == Opcode.NOT:
        result.pushed = [Value.boolean(not _bool(popped[0]))]

    elif op == Opcode.JUMP:
        result.registers = replace(regs, pc=instr.arg)
    elif op == Opcode.JUMP_IF_FALSE:
        if not _bool(popped[0]):
            result.registers = replace(regs, pc=instr.arg)
    elif op == Opcode.CALL:
        entry_pc, argc, _ = instr.arg
        result.writes = [(local_address(cycle, i), v) for i, v in enumerate(popped)]
        result.registers = replace(regs, pc=entry_pc, frame=cycle)
    elif op == Opcode.RET:
        if call_entry is None:
            raise _mismatch("return without a matching call")
        result.registers = replace(regs, pc=call_entry.return_pc, frame=call_entry.frame)

    elif op == Opcode.ARRAY_NEW:
        result.pushed = [Value.array(popped)]
    elif op == Opcode.ARRAY_GET:
        items = _array(popped[0])
        result.pushed = [items[_index(items, popped[1])]]
    elif op == Opcode.ARRAY_SET:
        items = list(_array(popped[0]))
        items[_index(tuple(items), popped[1])] = popped[2]
        result.pushed = [Value.array(items)]
    elif op == Opcode.ARRAY_PUSH:
        result.pushed = [Value.array(_array(popped[0]) + (popped[1],))]
    elif op == Opcode.LENGTH:
        v = popped[0]
        if v.kind == ValueKind.STRING:
            n = len(v.data)
        else:
            n = len(_array(v))
        result.pushed = [Value.uint(n, 32)]
    elif op == Opcode.OBJ_GET:
        result.pushed = [_get_field(popped[0], instr.arg[1])]
    elif op == Opcode.OBJ_SET:
        result.pushed = [_set_field(popped[0], instr.arg[1], popped[1])]

    elif op == Opcode.LOG:
        result.logged = popped[0]
        result.registers = replace(nxt, log=log_push(regs.log, popped[0]))
    elif op in (Opcode.AUTH_CHECK, Opcode.AUTH_REQUIRE):
        ok = _bool(popped[0])
        result.auth = ok
        result.registers = replace(nxt, auth=auth_push(regs.auth, ok))
        if op == Opcode.AUTH_CHECK:
            result.pushed = [TRUE if ok else FALSE]
        elif not ok:
            raise Trap(RuntimeErrorKind.AUTHORIZATION_DENIED, "authorization check failed")
    elif op == Opcode.SELF_DESTRUCT:
        result.registers = replace(nxt, destructed=True)

    elif op == Opcode.HASH:
        result.pushed = [Value.hash(value_hash(popped[0]))]
    elif op == Opcode.PUSH_LOG_ACC:
        result.pushed = [Value.hash(word_bytes(regs.log))]
    elif op == Opcode.PUSH_AUTH_ACC:
        result.pushed = [Value.hash(word_bytes(regs.auth))]
    elif op == Opcode.PUSH_FLAG:
        result.pushed = [Value.hash(flag_word(regs.destructed))]
    elif op == Opcode.HALT:
        result.registers = regs
    else:
        raise ValueError(f"unknown opcode {op}")

    return result
