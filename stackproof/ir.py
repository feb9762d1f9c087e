"""Compiled program representation.

A CompiledProgram is the immutable output of compilation: a flat instruction
stream over a shared operand stack, the function table, the entry point, the
flattened ``this`` layout and the public I/O layout. It never holds run data.

``to_program_info`` gives its canonical public encoding. ``ProgramInfo``
bytes are all a verifier needs to know about the program.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from stackproof.types import Type, ContractType, type_from_string
from stackproof.values import Value, Layouts, from_wire

PROGRAM_INFO_MAGIC = b"SPPI\x02"


class Opcode(Enum):
    # Stack
    PUSH = "push"
    POP = "pop"
    DUP = "dup"
    ADVICE = "advice"

    # Memory
    LOAD_LOCAL = "load_local"
    STORE_LOCAL = "store_local"
    LOAD_THIS = "load_this"
    STORE_THIS = "store_this"
    LOAD_CTX = "load_ctx"

    # Checked arithmetic (arg: width)
    ADD = "add"
    SUB = "sub"
    MUL = "mul"
    DIV = "div"
    MOD = "mod"

    # Wrapping arithmetic (arg: width)
    WADD = "wadd"
    WSUB = "wsub"
    WMUL = "wmul"

    # Comparison and logic (EQ, NEQ arg: operand type)
    CONCAT = "concat"
    EQ = "eq"
    NEQ = "neq"
    LT = "lt"
    LTE = "lte"
    GT = "gt"
    GTE = "gte"
    NOT = "not"

    # Control flow
    JUMP = "jump"
    JUMP_IF_FALSE = "jump_if_false"
    CALL = "call"
    RET = "ret"

    # Arrays and objects (OBJ_GET, OBJ_SET arg: contract, field)
    ARRAY_NEW = "array_new"
    ARRAY_GET = "array_get"
    ARRAY_SET = "array_set"
    ARRAY_PUSH = "array_push"
    LENGTH = "length"
    OBJ_GET = "obj_get"
    OBJ_SET = "obj_set"

    # Observable effects (LOG arg: value type)
    LOG = "log"
    AUTH_CHECK = "auth_check"
    AUTH_REQUIRE = "auth_require"
    SELF_DESTRUCT = "self_destruct"

    # Epilogue (HASH arg: value type)
    HASH = "hash"
    PUSH_LOG_ACC = "push_log_acc"
    PUSH_AUTH_ACC = "push_auth_acc"
    PUSH_FLAG = "push_flag"
    HALT = "halt"


INT_ARG_OPS = {
    Opcode.LOAD_LOCAL, Opcode.STORE_LOCAL, Opcode.JUMP, Opcode.JUMP_IF_FALSE,
    Opcode.ARRAY_NEW, Opcode.ADD, Opcode.SUB, Opcode.MUL, Opcode.DIV, Opcode.MOD,
    Opcode.WADD, Opcode.WSUB, Opcode.WMUL,
}
TYPE_ARG_OPS = {Opcode.EQ, Opcode.NEQ, Opcode.LOG, Opcode.HASH}
FIELD_ARG_OPS = {Opcode.OBJ_GET, Opcode.OBJ_SET}
SHAPE_ARG_OPS = {Opcode.LOAD_THIS, Opcode.STORE_THIS}

# A shape is either a leaf slot of ``this`` or a nested contract:
# (contract name, ((field name, shape), ...))
Shape = Union[int, tuple]


def shape_leaves(shape: Shape) -> list[int]:
    if isinstance(shape, int):
        return [shape]
    leaves: list[int] = []
    for _, sub in shape[1]:
        leaves.extend(shape_leaves(sub))
    return leaves


def _shape_to_json(shape: Shape) -> Any:
    if isinstance(shape, int):
        return shape
    return [shape[0], [[name, _shape_to_json(sub)] for name, sub in shape[1]]]


def _shape_from_json(data: Any) -> Shape:
    if isinstance(data, int) and not isinstance(data, bool) and data >= 0:
        return data
    if isinstance(data, list) and len(data) == 2 and isinstance(data[0], str) and isinstance(data[1], list):
        fields = []
        for entry in data[1]:
            if not isinstance(entry, list) or len(entry) != 2 or not isinstance(entry[0], str):
                raise ValueError(f"malformed shape field: {entry!r}")
            fields.append((entry[0], _shape_from_json(entry[1])))
        return (data[0], tuple(fields))
    raise ValueError(f"malformed shape: {data!r}")


def _expect_int(x: Any) -> int:
    if not isinstance(x, int) or isinstance(x, bool) or x < 0:
        raise ValueError(f"expected a non-negative integer, got {x!r}")
    return x


@dataclass(frozen=True)
class Instruction:
    op: Opcode
    arg: Any = None

    def __str__(self) -> str:
        return self.op.value if self.arg is None else f"{self.op.value} {self.arg_json()}"

    def arg_json(self) -> Any:
        if self.op == Opcode.PUSH:
            return self.arg.to_wire()
        if self.op in SHAPE_ARG_OPS:
            return _shape_to_json(self.arg)
        if self.op in (Opcode.CALL, Opcode.ADVICE) or self.op in FIELD_ARG_OPS:
            return list(self.arg)
        return self.arg

    def to_json(self) -> list[Any]:
        return [self.op.value, self.arg_json()]

    @classmethod
    def from_json(cls, data: Any) -> Instruction:
        if not isinstance(data, list) or len(data) != 2 or not isinstance(data[0], str):
            raise ValueError(f"malformed instruction: {data!r}")
        op = Opcode(data[0])
        raw = data[1]
        if op == Opcode.PUSH:
            return cls(op, from_wire(raw))
        if op in INT_ARG_OPS:
            return cls(op, _expect_int(raw))
        if op in TYPE_ARG_OPS:
            if not isinstance(raw, str):
                raise ValueError(f"{op.value}: expected a type")
            type_from_string(raw)
            return cls(op, raw)
        if op in FIELD_ARG_OPS:
            if not isinstance(raw, list) or len(raw) != 2 or not all(isinstance(x, str) for x in raw):
                raise ValueError(f"{op.value}: expected a contract and a field name")
            return cls(op, (raw[0], raw[1]))
        if op in SHAPE_ARG_OPS:
            return cls(op, _shape_from_json(raw))
        if op == Opcode.CALL:
            if not isinstance(raw, list) or len(raw) != 3 or not isinstance(raw[2], str):
                raise ValueError(f"call: malformed argument {raw!r}")
            return cls(op, (_expect_int(raw[0]), _expect_int(raw[1]), raw[2]))
        if op == Opcode.ADVICE:
            if not isinstance(raw, list) or len(raw) != 2 or not isinstance(raw[1], str):
                raise ValueError(f"advice: malformed argument {raw!r}")
            type_from_string(raw[1])
            return cls(op, (_expect_int(raw[0]), raw[1]))
        if raw is not None:
            raise ValueError(f"{op.value} takes no argument")
        return cls(op)


@dataclass(frozen=True)
class FunctionInfo:
    name: str
    entry_pc: int
    param_count: int
    local_count: int


@dataclass(frozen=True)
class EntryInfo:
    contract: Optional[str]
    name: str
    param_types: tuple[str, ...] = ()
    return_type: str = "void"

    @property
    def qualified_name(self) -> str:
        return f"{self.contract}.{self.name}" if self.contract else self.name


def _canonical_json(data: Any) -> bytes:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=True).encode("ascii")


@dataclass(frozen=True)
class CompiledProgram:
    instructions: tuple[Instruction, ...]
    functions: tuple[FunctionInfo, ...]
    entry: EntryInfo
    # (contract name, ((field name, type string), ...)) for every contract
    contracts: tuple[tuple[str, tuple[tuple[str, str], ...]], ...] = ()
    # dotted leaf field path of each ``this`` slot, in slot order
    this_slots: tuple[str, ...] = ()
    # slots accessed by live code; their hashes are public
    live_slots: tuple[int, ...] = ()
    digest: bytes = field(default=b"", compare=False)

    def __post_init__(self):
        if not self.digest:
            object.__setattr__(self, "digest", hashlib.sha256(_canonical_json(self._body())).digest())

    def __len__(self) -> int:
        return len(self.instructions)

    @property
    def layouts(self) -> Layouts:
        return {
            name: [(field_name, type_from_string(t)) for field_name, t in fields]
            for name, fields in self.contracts
        }

    @property
    def this_type(self) -> Optional[Type]:
        if self.entry.contract is None:
            return None
        return type_from_string(self.entry.contract)

    @property
    def this_shape(self) -> Optional[Shape]:
        """Shape of the whole ``this`` value over the flattened slots."""
        if self.entry.contract is None:
            return None
        layouts = self.layouts
        slots = iter(range(len(self.this_slots)))

        def flatten(name: str) -> Shape:
            fields = []
            for field_name, t in layouts[name]:
                if isinstance(t, ContractType):
                    fields.append((field_name, flatten(t.name)))
                else:
                    fields.append((field_name, next(slots)))
            return (name, tuple(fields))

        return flatten(self.entry.contract)

    @property
    def param_types(self) -> list[Type]:
        return [type_from_string(t) for t in self.entry.param_types]

    @property
    def slot_types(self) -> list[Type]:
        """Leaf type of each ``this`` slot, in slot order."""
        if self.entry.contract is None:
            return []
        layouts = self.layouts
        types: list[Type] = []

        def walk(name: str) -> None:
            for _, t in layouts[name]:
                if isinstance(t, ContractType):
                    walk(t.name)
                else:
                    types.append(t)

        walk(self.entry.contract)
        return types

    def function_at(self, pc: int) -> Optional[FunctionInfo]:
        """The function whose body contains ``pc``."""
        owner = None
        for f in sorted(self.functions, key=lambda f: f.entry_pc):
            if f.entry_pc <= pc:
                owner = f
        return owner

    def _body(self) -> dict[str, Any]:
        return {
            "instructions": [i.to_json() for i in self.instructions],
            "functions": [[f.name, f.entry_pc, f.param_count, f.local_count] for f in self.functions],
            "entry": [self.entry.contract, self.entry.name, list(self.entry.param_types), self.entry.return_type],
            "contracts": [[name, [list(f) for f in fields]] for name, fields in self.contracts],
            "this_slots": list(self.this_slots),
            "live_slots": list(self.live_slots),
        }

    def to_program_info(self) -> bytes:
        return PROGRAM_INFO_MAGIC + _canonical_json(self._body())

    @classmethod
    def from_program_info(cls, data: bytes) -> CompiledProgram:
        """Decode program-info bytes. Raises ValueError unless the encoding is canonical."""
        if not isinstance(data, (bytes, bytearray)) or not bytes(data).startswith(PROGRAM_INFO_MAGIC):
            raise ValueError("not a program info payload")
        body = json.loads(bytes(data)[len(PROGRAM_INFO_MAGIC):].decode("ascii"))
        if not isinstance(body, dict) or sorted(body) != sorted(
            ["instructions", "functions", "entry", "contracts", "this_slots", "live_slots"]
        ):
            raise ValueError("program info: unexpected keys")

        entry_raw = body["entry"]
        if not isinstance(entry_raw, list) or len(entry_raw) != 4:
            raise ValueError("program info: malformed entry")
        contract, name, params, ret = entry_raw
        if contract is not None and not isinstance(contract, str):
            raise ValueError("program info: malformed entry contract")
        if not isinstance(name, str) or not isinstance(params, list) or not isinstance(ret, str):
            raise ValueError("program info: malformed entry")
        for t in params + [ret]:
            if not isinstance(t, str):
                raise ValueError("program info: malformed type")
            type_from_string(t)

        functions = []
        for f in body["functions"]:
            if not isinstance(f, list) or len(f) != 4 or not isinstance(f[0], str):
                raise ValueError("program info: malformed function")
            functions.append(FunctionInfo(f[0], _expect_int(f[1]), _expect_int(f[2]), _expect_int(f[3])))

        contracts = []
        for c in body["contracts"]:
            if not isinstance(c, list) or len(c) != 2 or not isinstance(c[0], str) or not isinstance(c[1], list):
                raise ValueError("program info: malformed contract")
            fields = []
            for f in c[1]:
                if not isinstance(f, list) or len(f) != 2 or not all(isinstance(x, str) for x in f):
                    raise ValueError("program info: malformed field")
                type_from_string(f[1])
                fields.append((f[0], f[1]))
            contracts.append((c[0], tuple(fields)))

        this_slots = body["this_slots"]
        if not isinstance(this_slots, list) or not all(isinstance(s, str) for s in this_slots):
            raise ValueError("program info: malformed this layout")
        live_slots = [_expect_int(s) for s in body["live_slots"]]
        if any(s >= len(this_slots) for s in live_slots) or live_slots != sorted(set(live_slots)):
            raise ValueError("program info: malformed live slots")

        program = cls(
            instructions=tuple(Instruction.from_json(i) for i in body["instructions"]),
            functions=tuple(functions),
            entry=EntryInfo(contract, name, tuple(params), ret),
            contracts=tuple(contracts),
            this_slots=tuple(this_slots),
            live_slots=tuple(live_slots),
        )
        if program.to_program_info() != bytes(data):
            raise ValueError("program info: non-canonical encoding")
        return program

    def disassemble(self) -> str:
        lines = []
        starts = {f.entry_pc: f.name for f in self.functions}
        for pc, instr in enumerate(self.instructions):
            if pc in starts:
                lines.append(f"{starts[pc]}:")
            lines.append(f"  {pc:4d}  {instr}")
        return "\n".join(lines)
