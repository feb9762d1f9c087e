"""stackproof Pass 3: Emit.

Lowers the pruned, typed AST into a flat instruction stream.

Layout of every program:
  prologue   ADVICE per entry argument, CALL entry
  epilogue   HASH (result), PUSH_LOG_ACC, PUSH_AUTH_ACC, PUSH_FLAG,
             LOAD_THIS + HASH per live ``this`` slot, HALT
  functions  one body per reachable function, labels resolved at assembly

Control flow lowers to JUMP / JUMP_IF_FALSE. ``this`` is flattened into one
memory slot per leaf field (nested contracts included), so field access
becomes a fixed slot read or write. Nested updates such as
``this.items[i].name = x`` lower to a read-modify-write over immutable
values.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from stackproof.ast_nodes import (
    FunctionDef, Statement, LetStmt, AssignStmt, ExprStmt, IfStmt, WhileStmt,
    ForStmt, ReturnStmt, BreakStmt, ContinueStmt,
    Expr, IntLiteral, StringLiteral, BoolLiteral, ArrayLiteral, Identifier,
    ThisExpr, BinaryOp, UnaryOp, FunctionCall, MethodCall, FieldAccess, IndexExpr,
)
from stackproof.errors import CompileError, unknown_entry
from stackproof.ir import (
    CompiledProgram, EntryInfo, FunctionInfo, Instruction, Opcode, Shape, shape_leaves,
)
from stackproof.pass1_check import TypedProgram, is_ctx_access, WRAPPING_METHODS
from stackproof.pass2_prune import PrunedProgram, prune
from stackproof.types import ArrayType, ContractType, ContractInfo, STRING, VOID, UIntType
from stackproof.values import Value, NULL, TRUE, FALSE

logger = logging.getLogger(__name__)

ARITH_OPCODES = {"+": Opcode.ADD, "-": Opcode.SUB, "*": Opcode.MUL, "/": Opcode.DIV, "%": Opcode.MOD}
WRAPPING_OPCODES = {"+": Opcode.WADD, "-": Opcode.WSUB, "*": Opcode.WMUL}
COMPARE_OPCODES = {
    "==": Opcode.EQ, "!=": Opcode.NEQ, "<": Opcode.LT,
    "<=": Opcode.LTE, ">": Opcode.GT, ">=": Opcode.GTE,
}


class Label:
    """A jump target whose pc is fixed at assembly."""
    __slots__ = ()


# ---------------------------------------------------------------------------
# this layout
# ---------------------------------------------------------------------------

class ThisLayout:
    """Flattens a contract's fields into leaf slots, depth first in declaration order."""

    def __init__(self, contract: Optional[str], contracts: dict[str, ContractInfo]):
        self.contract = contract
        self.contracts = contracts
        self.slots: list[str] = []
        self.slot_types: list[str] = []
        self._shapes: dict[tuple[str, ...], Shape] = {}
        if contract is not None:
            self._root = self._flatten(contract, ())

    def _flatten(self, contract: str, prefix: tuple[str, ...]) -> Shape:
        fields = []
        for name, field_type in self.contracts[contract].fields:
            path = prefix + (name,)
            if isinstance(field_type, ContractType):
                shape = self._flatten(field_type.name, path)
            else:
                shape = len(self.slots)
                self.slots.append(".".join(path))
                self.slot_types.append(str(field_type))
            self._shapes[path] = shape
            fields.append((name, shape))
        shape = (contract, tuple(fields))
        self._shapes[prefix] = shape
        return shape

    def shape(self, path: tuple[str, ...]) -> Shape:
        return self._shapes[path]


def this_path(expr: Expr) -> Optional[tuple[str, ...]]:
    """Field path of a pure ``this.a.b`` chain, or None."""
    fields: list[str] = []
    while isinstance(expr, FieldAccess) and isinstance(expr.obj.ty, ContractType):
        fields.append(expr.field_name)
        expr = expr.obj
    if isinstance(expr, ThisExpr):
        return tuple(reversed(fields))
    return None


@dataclass
class _Loop:
    continue_label: Label
    break_label: Label


@dataclass
class _Assembly:
    code: list[tuple[Opcode, object]] = field(default_factory=list)
    labels: dict[Label, int] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Emitter
# ---------------------------------------------------------------------------

class CodeGenerator:
    """Generates the instruction stream for one entry point."""

    def __init__(self, pruned: PrunedProgram):
        self.pruned = pruned
        self.typed: TypedProgram = pruned.typed
        entry_def = pruned.functions[pruned.entry]
        self.layout = ThisLayout(entry_def.contract, self.typed.contracts)
        self.asm = _Assembly()
        self.function_labels: dict[str, Label] = {name: Label() for name in pruned.functions}
        self.live_slots: set[int] = set()
        self._definition: Optional[FunctionDef] = None
        self._next_local = 0
        self._loops: list[_Loop] = []

    # -- primitives -------------------------------------------------------

    def _emit(self, op: Opcode, arg: object = None) -> None:
        self.asm.code.append((op, arg))

    def _place_label(self, label: Label) -> None:
        self.asm.labels[label] = len(self.asm.code)

    def _temp(self) -> int:
        slot = self._next_local
        self._next_local += 1
        return slot

    def _load_this(self, shape: Shape) -> None:
        self.live_slots.update(shape_leaves(shape))
        self._emit(Opcode.LOAD_THIS, shape)

    def _store_this(self, shape: Shape) -> None:
        self.live_slots.update(shape_leaves(shape))
        self._emit(Opcode.STORE_THIS, shape)

    # -- functions --------------------------------------------------------

    def generate(self) -> list[FunctionInfo]:
        infos = []
        for name, definition in self.pruned.functions.items():
            self._definition = definition
            self._next_local = definition.local_count
            entry = len(self.asm.code)
            self._place_label(self.function_labels[name])
            for stmt in definition.body:
                self._stmt(stmt)
            self._emit(Opcode.PUSH, NULL)
            self._emit(Opcode.RET)
            infos.append(FunctionInfo(name, entry, len(definition.params), self._next_local))
        return infos

    # -- statements -------------------------------------------------------

    def _stmt(self, stmt: Statement) -> None:
        if isinstance(stmt, LetStmt):
            self._expr(stmt.value)
            self._emit(Opcode.STORE_LOCAL, stmt.slot)
        elif isinstance(stmt, AssignStmt):
            self._assign(stmt)
        elif isinstance(stmt, ExprStmt):
            if self._expr(stmt.expr):
                self._emit(Opcode.POP)
        elif isinstance(stmt, IfStmt):
            else_label, end_label = Label(), Label()
            self._expr(stmt.condition)
            self._emit(Opcode.JUMP_IF_FALSE, else_label)
            for s in stmt.then_body:
                self._stmt(s)
            self._emit(Opcode.JUMP, end_label)
            self._place_label(else_label)
            for s in stmt.else_body:
                self._stmt(s)
            self._place_label(end_label)
        elif isinstance(stmt, WhileStmt):
            cond_label, end_label = Label(), Label()
            self._place_label(cond_label)
            self._expr(stmt.condition)
            self._emit(Opcode.JUMP_IF_FALSE, end_label)
            self._loop_body(stmt.body, _Loop(cond_label, end_label))
            self._emit(Opcode.JUMP, cond_label)
            self._place_label(end_label)
        elif isinstance(stmt, ForStmt):
            cond_label, step_label, end_label = Label(), Label(), Label()
            if stmt.init is not None:
                self._stmt(stmt.init)
            self._place_label(cond_label)
            if stmt.condition is not None:
                self._expr(stmt.condition)
                self._emit(Opcode.JUMP_IF_FALSE, end_label)
            self._loop_body(stmt.body, _Loop(step_label, end_label))
            self._place_label(step_label)
            if stmt.step is not None:
                self._stmt(stmt.step)
            self._emit(Opcode.JUMP, cond_label)
            self._place_label(end_label)
        elif isinstance(stmt, ReturnStmt):
            if stmt.value is not None:
                self._expr(stmt.value)
            else:
                self._emit(Opcode.PUSH, NULL)
            self._emit(Opcode.RET)
        elif isinstance(stmt, BreakStmt):
            self._emit(Opcode.JUMP, self._loops[-1].break_label)
        elif isinstance(stmt, ContinueStmt):
            self._emit(Opcode.JUMP, self._loops[-1].continue_label)

    def _loop_body(self, body: list[Statement], loop: _Loop) -> None:
        self._loops.append(loop)
        for s in body:
            self._stmt(s)
        self._loops.pop()

    # -- assignment -------------------------------------------------------

    def _assign(self, stmt: AssignStmt) -> None:
        if stmt.op == "=":
            self._update(stmt.target, lambda: self._expr(stmt.value), needs_old=False)
            return
        if stmt.op == "+=" and stmt.target.ty == STRING:
            op, arg = Opcode.CONCAT, None
        else:
            op, arg = ARITH_OPCODES[stmt.op[0]], stmt.target.ty.width

        def combine() -> None:
            self._expr(stmt.value)
            self._emit(op, arg)

        self._update(stmt.target, combine, needs_old=True)

    def _split_place(self, target: Expr) -> tuple[tuple[str, object], list[tuple[str, object]]]:
        steps: list[tuple[str, object]] = []
        e = target
        while True:
            path = this_path(e) if isinstance(e, (FieldAccess, ThisExpr)) else None
            if path is not None:
                shape = self.layout.shape(path)
                steps.reverse()
                return ("this", shape), steps
            if isinstance(e, FieldAccess):
                steps.append(("field", (e.obj.ty.name, e.field_name)))
                e = e.obj
            elif isinstance(e, IndexExpr):
                steps.append(("index", e.index))
                e = e.obj
            elif isinstance(e, Identifier):
                steps.reverse()
                return ("local", e.slot), steps
            else:
                raise ValueError(f"not an assignable place: {type(e).__name__}")

    def _load_base(self, base: tuple[str, object]) -> None:
        kind, arg = base
        if kind == "local":
            self._emit(Opcode.LOAD_LOCAL, arg)
        else:
            self._load_this(arg)

    def _store_base(self, base: tuple[str, object]) -> None:
        kind, arg = base
        if kind == "local":
            self._emit(Opcode.STORE_LOCAL, arg)
        else:
            self._store_this(arg)

    def _update(self, target: Expr, produce: Callable[[], object], needs_old: bool) -> None:
        """Store into ``target``. ``produce`` leaves the new value on the stack,
        consuming the old one first when ``needs_old`` is set."""
        base, steps = self._split_place(target)
        if not steps:
            if needs_old:
                self._load_base(base)
            produce()
            self._store_base(base)
            return

        # Index expressions are evaluated once, up front, into temporaries.
        resolved: list[tuple[str, object]] = []
        for kind, arg in steps:
            if kind == "index":
                self._expr(arg)
                temp = self._temp()
                self._emit(Opcode.STORE_LOCAL, temp)
                resolved.append(("index", temp))
            else:
                resolved.append((kind, arg))

        self._load_base(base)
        self._update_steps(resolved, produce, needs_old)
        self._store_base(base)

    def _update_steps(self, steps: list[tuple[str, object]], produce: Callable[[], object], needs_old: bool) -> None:
        (kind, arg), rest = steps[0], steps[1:]
        if not rest and not needs_old:
            if kind == "field":
                produce()
                self._emit(Opcode.OBJ_SET, arg)
            else:
                self._emit(Opcode.LOAD_LOCAL, arg)
                produce()
                self._emit(Opcode.ARRAY_SET)
            return

        self._emit(Opcode.DUP)
        if kind == "field":
            self._emit(Opcode.OBJ_GET, arg)
        else:
            self._emit(Opcode.LOAD_LOCAL, arg)
            self._emit(Opcode.ARRAY_GET)
        if rest:
            self._update_steps(rest, produce, needs_old)
        else:
            produce()
        if kind == "field":
            self._emit(Opcode.OBJ_SET, arg)
        else:
            child = self._temp()
            self._emit(Opcode.STORE_LOCAL, child)
            self._emit(Opcode.LOAD_LOCAL, arg)
            self._emit(Opcode.LOAD_LOCAL, child)
            self._emit(Opcode.ARRAY_SET)

    # -- expressions ------------------------------------------------------

    def _expr(self, expr: Expr) -> bool:
        """Emit ``expr``. Returns whether a value was left on the stack."""
        if isinstance(expr, IntLiteral):
            self._emit(Opcode.PUSH, Value.uint(expr.value, expr.ty.width))
        elif isinstance(expr, StringLiteral):
            self._emit(Opcode.PUSH, Value.string(expr.value))
        elif isinstance(expr, BoolLiteral):
            self._emit(Opcode.PUSH, TRUE if expr.value else FALSE)
        elif isinstance(expr, ArrayLiteral):
            for element in expr.elements:
                self._expr(element)
            self._emit(Opcode.ARRAY_NEW, len(expr.elements))
        elif isinstance(expr, Identifier):
            self._emit(Opcode.LOAD_LOCAL, expr.slot)
        elif isinstance(expr, ThisExpr):
            self._load_this(self.layout.shape(()))
        elif isinstance(expr, FieldAccess):
            self._field(expr)
        elif isinstance(expr, IndexExpr):
            self._expr(expr.obj)
            self._expr(expr.index)
            self._emit(Opcode.ARRAY_GET)
        elif isinstance(expr, UnaryOp):
            self._expr(expr.operand)
            self._emit(Opcode.NOT)
        elif isinstance(expr, BinaryOp):
            self._binary(expr)
        elif isinstance(expr, FunctionCall):
            return self._call(expr)
        elif isinstance(expr, MethodCall):
            return self._method_call(expr)
        else:
            raise ValueError(f"cannot emit {type(expr).__name__}")
        return True

    def _field(self, expr: FieldAccess) -> None:
        if is_ctx_access(expr):
            self._emit(Opcode.LOAD_CTX)
            return
        path = this_path(expr)
        if path is not None:
            self._load_this(self.layout.shape(path))
            return
        self._expr(expr.obj)
        if expr.field_name == "length" and (isinstance(expr.obj.ty, ArrayType) or expr.obj.ty == STRING):
            self._emit(Opcode.LENGTH)
        else:
            self._emit(Opcode.OBJ_GET, (expr.obj.ty.name, expr.field_name))

    def _binary(self, expr: BinaryOp) -> None:
        op = expr.op
        if op == "&&":
            false_label, end_label = Label(), Label()
            self._expr(expr.left)
            self._emit(Opcode.JUMP_IF_FALSE, false_label)
            self._expr(expr.right)
            self._emit(Opcode.JUMP, end_label)
            self._place_label(false_label)
            self._emit(Opcode.PUSH, FALSE)
            self._place_label(end_label)
            return
        if op == "||":
            right_label, end_label = Label(), Label()
            self._expr(expr.left)
            self._emit(Opcode.JUMP_IF_FALSE, right_label)
            self._emit(Opcode.PUSH, TRUE)
            self._emit(Opcode.JUMP, end_label)
            self._place_label(right_label)
            self._expr(expr.right)
            self._place_label(end_label)
            return

        self._expr(expr.left)
        self._expr(expr.right)
        if op == "+" and expr.left.ty == STRING:
            self._emit(Opcode.CONCAT)
        elif op in ARITH_OPCODES:
            self._emit(ARITH_OPCODES[op], expr.ty.width)
        elif op in ("==", "!="):
            self._emit(COMPARE_OPCODES[op], str(expr.left.ty))
        else:
            self._emit(COMPARE_OPCODES[op])

    def _call(self, expr: FunctionCall) -> bool:
        name = expr.name
        for arg in expr.args:
            self._expr(arg)
        if name == "log":
            self._emit(Opcode.LOG, str(expr.args[0].ty))
            return False
        if name == "checkAuth":
            self._emit(Opcode.AUTH_CHECK)
            return True
        if name == "requireAuth":
            self._emit(Opcode.AUTH_REQUIRE)
            return False
        if name == "selfdestruct":
            self._emit(Opcode.SELF_DESTRUCT)
            return False
        self._emit(Opcode.CALL, (self.function_labels[name], len(expr.args), name))
        return True

    def _method_call(self, expr: MethodCall) -> bool:
        name = expr.method_name
        if isinstance(expr.obj, ThisExpr):
            qualified = f"{self._definition.contract}.{name}"
            for arg in expr.args:
                self._expr(arg)
            self._emit(Opcode.CALL, (self.function_labels[qualified], len(expr.args), qualified))
            return True
        if name in WRAPPING_METHODS:
            self._expr(expr.obj)
            self._expr(expr.args[0])
            self._emit(WRAPPING_OPCODES[WRAPPING_METHODS[name]], expr.ty.width)
            return True
        if name == "push":
            def append() -> None:
                self._expr(expr.args[0])
                self._emit(Opcode.ARRAY_PUSH)

            self._update(expr.obj, append, needs_old=True)
            return False
        raise ValueError(f"cannot emit method '{name}'")


# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------

def _resolve(arg: object, labels: dict[Label, int], offset: int) -> object:
    if isinstance(arg, Label):
        return labels[arg] + offset
    if isinstance(arg, tuple) and arg and isinstance(arg[0], Label):
        return (labels[arg[0]] + offset,) + arg[1:]
    return arg


def assemble(
    gen: CodeGenerator, functions: list[FunctionInfo], param_types: list[str], return_type: str,
) -> tuple[tuple[Instruction, ...], tuple[FunctionInfo, ...], tuple[int, ...]]:
    live_slots = tuple(sorted(gen.live_slots))
    entry_label = gen.function_labels[gen.pruned.entry]
    slot_types = gen.layout.slot_types

    header: list[tuple[Opcode, object]] = [(Opcode.ADVICE, (i, t)) for i, t in enumerate(param_types)]
    header.append((Opcode.CALL, (entry_label, len(param_types), gen.pruned.entry)))
    header += [(Opcode.HASH, return_type), (Opcode.PUSH_LOG_ACC, None), (Opcode.PUSH_AUTH_ACC, None), (Opcode.PUSH_FLAG, None)]
    for slot in live_slots:
        header += [(Opcode.LOAD_THIS, slot), (Opcode.HASH, slot_types[slot])]
    header.append((Opcode.HALT, None))

    offset = len(header)
    labels = gen.asm.labels
    instructions = tuple(
        Instruction(op, _resolve(arg, labels, offset))
        for op, arg in header + gen.asm.code
    )
    functions = [
        FunctionInfo(f.name, f.entry_pc + offset, f.param_count, f.local_count) for f in functions
    ]
    return instructions, tuple(functions), live_slots


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def emit(typed: TypedProgram, entry_contract: Optional[str], entry_name: str) -> CompiledProgram:
    """Run Pass 2 and Pass 3 for one entry point."""
    if entry_contract is not None and entry_contract not in typed.contracts:
        raise CompileError(unknown_entry(entry_contract, entry_name))
    definition = typed.lookup(entry_contract, entry_name)
    if definition is None:
        raise CompileError(unknown_entry(entry_contract, entry_name))

    qualified = definition.qualified_name
    signature = typed.signatures[qualified]
    pruned = prune(typed, qualified)
    gen = CodeGenerator(pruned)
    functions = gen.generate()
    param_types = [str(t) for t in signature.param_types]
    instructions, functions, live_slots = assemble(gen, functions, param_types, str(signature.return_type))

    program = CompiledProgram(
        instructions=instructions,
        functions=functions,
        entry=EntryInfo(
            contract=entry_contract,
            name=entry_name,
            param_types=tuple(param_types),
            return_type=str(signature.return_type),
        ),
        contracts=tuple(
            (name, tuple((field_name, str(t)) for field_name, t in info.fields))
            for name, info in typed.contracts.items()
        ),
        this_slots=tuple(gen.layout.slots),
        live_slots=live_slots,
    )
    logger.debug(
        "emitted %d instruction(s) for %s; live this slots %s",
        len(instructions), qualified, list(live_slots),
    )
    return program
