"""stackproof Pass 2: Prune.

Liveness-based dead-code elimination over the typed AST.

Roots are observable effects: returned values, ``log``, authorization checks,
``selfdestruct``, writes to ``this``, and calls to functions that
transitively perform any of those. A statement survives when it is a root
or defines a variable some surviving statement reads. Marking is
flow-insensitive per variable and iterates to a fixpoint. Enclosing control
flow of a surviving statement survives with it, and so do the ``break`` and
``continue`` statements of a surviving loop.

Only functions reachable from the entry point after pruning are kept.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Iterator, Optional

from stackproof.ast_nodes import (
    FunctionDef, Statement, LetStmt, AssignStmt, ExprStmt, IfStmt, WhileStmt,
    ForStmt, ReturnStmt, BreakStmt, ContinueStmt,
    Expr, ArrayLiteral, Identifier, ThisExpr, BinaryOp, UnaryOp,
    FunctionCall, MethodCall, FieldAccess, IndexExpr,
)
from stackproof.pass1_check import TypedProgram, place_root

logger = logging.getLogger(__name__)

EFFECT_BUILTINS = ("log", "checkAuth", "requireAuth", "selfdestruct")


@dataclass
class PrunedProgram:
    typed: TypedProgram
    entry: str
    functions: dict[str, FunctionDef] = field(default_factory=dict)
    removed_statements: int = 0


# ---------------------------------------------------------------------------
# Walkers
# ---------------------------------------------------------------------------

def walk_expr(expr: Optional[Expr]) -> Iterator[Expr]:
    """Yield ``expr`` and every expression nested inside it."""
    if expr is None:
        return
    yield expr
    if isinstance(expr, (FieldAccess, IndexExpr)):
        yield from walk_expr(expr.obj)
        if isinstance(expr, IndexExpr):
            yield from walk_expr(expr.index)
    elif isinstance(expr, BinaryOp):
        yield from walk_expr(expr.left)
        yield from walk_expr(expr.right)
    elif isinstance(expr, UnaryOp):
        yield from walk_expr(expr.operand)
    elif isinstance(expr, ArrayLiteral):
        for e in expr.elements:
            yield from walk_expr(e)
    elif isinstance(expr, FunctionCall):
        for e in expr.args:
            yield from walk_expr(e)
    elif isinstance(expr, MethodCall):
        yield from walk_expr(expr.obj)
        for e in expr.args:
            yield from walk_expr(e)


def own_exprs(stmt: Statement) -> list[Expr]:
    """Expressions evaluated by ``stmt`` itself, excluding nested statements."""
    if isinstance(stmt, LetStmt):
        return [stmt.value]
    if isinstance(stmt, AssignStmt):
        return [stmt.target, stmt.value]
    if isinstance(stmt, ExprStmt):
        return [stmt.expr]
    if isinstance(stmt, (IfStmt, WhileStmt)):
        return [stmt.condition]
    if isinstance(stmt, ForStmt):
        return [stmt.condition] if stmt.condition is not None else []
    if isinstance(stmt, ReturnStmt):
        return [stmt.value] if stmt.value is not None else []
    return []


def child_statements(stmt: Statement) -> list[Statement]:
    if isinstance(stmt, IfStmt):
        return stmt.then_body + stmt.else_body
    if isinstance(stmt, WhileStmt):
        return list(stmt.body)
    if isinstance(stmt, ForStmt):
        children = [s for s in (stmt.init, stmt.step) if s is not None]
        return children + stmt.body
    return []


def walk_statements(
    stmts: list[Statement],
    ancestors: tuple[Statement, ...] = (),
) -> Iterator[tuple[Statement, tuple[Statement, ...]]]:
    """Yield every statement with the chain of compound statements enclosing it."""
    for stmt in stmts:
        yield stmt, ancestors
        yield from walk_statements(child_statements(stmt), ancestors + (stmt,))


def called_functions(expr: Expr, contract: Optional[str]) -> Iterator[str]:
    """Qualified names of user functions and methods called inside ``expr``."""
    for e in walk_expr(expr):
        if isinstance(e, FunctionCall) and e.name not in EFFECT_BUILTINS:
            yield e.name
        elif isinstance(e, MethodCall) and isinstance(e.obj, ThisExpr):
            yield f"{contract}.{e.method_name}"


def _writes_this(stmt: Statement) -> bool:
    if isinstance(stmt, AssignStmt):
        return isinstance(place_root(stmt.target), ThisExpr)
    return False


def _pushes(expr: Expr) -> Iterator[MethodCall]:
    for e in walk_expr(expr):
        if isinstance(e, MethodCall) and e.method_name == "push" and not isinstance(e.obj, ThisExpr):
            yield e


# ---------------------------------------------------------------------------
# Effect analysis
# ---------------------------------------------------------------------------

def effectful_functions(typed: TypedProgram) -> set[str]:
    """Functions whose execution has an observable effect, to a fixpoint over the call graph."""
    effectful: set[str] = set()
    changed = True
    while changed:
        changed = False
        for name, definition in typed.definitions.items():
            if name in effectful:
                continue
            if any(_has_effect(stmt, definition.contract, effectful)
                   for stmt, _ in walk_statements(definition.body)):
                effectful.add(name)
                changed = True
    return effectful


def _has_effect(stmt: Statement, contract: Optional[str], effectful: set[str]) -> bool:
    if _writes_this(stmt):
        return True
    for expr in own_exprs(stmt):
        for e in walk_expr(expr):
            if isinstance(e, FunctionCall) and (e.name in EFFECT_BUILTINS or e.name in effectful):
                return True
            if isinstance(e, MethodCall):
                if isinstance(e.obj, ThisExpr) and f"{contract}.{e.method_name}" in effectful:
                    return True
                if e.method_name == "push" and isinstance(place_root(e.obj), ThisExpr):
                    return True
    return False


# ---------------------------------------------------------------------------
# Liveness
# ---------------------------------------------------------------------------

class LivenessPruner:
    """Prunes one function body."""

    def __init__(self, definition: FunctionDef, effectful: set[str]):
        self.definition = definition
        self.effectful = effectful
        self.marked: set[int] = set()
        self.needed: set[int] = set()

    def _defs(self, stmt: Statement) -> set[int]:
        if isinstance(stmt, LetStmt):
            return {stmt.slot}
        slots: set[int] = set()
        if isinstance(stmt, AssignStmt):
            root = place_root(stmt.target)
            if isinstance(root, Identifier) and root.slot is not None:
                slots.add(root.slot)
        for expr in own_exprs(stmt):
            for call in _pushes(expr):
                root = place_root(call.obj)
                if isinstance(root, Identifier) and root.slot is not None:
                    slots.add(root.slot)
        return slots

    def _uses(self, stmt: Statement) -> set[int]:
        exprs = own_exprs(stmt)
        if isinstance(stmt, AssignStmt) and stmt.op == "=" and isinstance(stmt.target, Identifier):
            exprs = [stmt.value]
        slots: set[int] = set()
        for expr in exprs:
            for e in walk_expr(expr):
                if isinstance(e, Identifier) and e.slot is not None:
                    slots.add(e.slot)
        return slots

    def _is_root(self, stmt: Statement) -> bool:
        if isinstance(stmt, ReturnStmt):
            return True
        return _has_effect(stmt, self.definition.contract, self.effectful)

    def _mark(self, stmt: Statement, ancestors: tuple[Statement, ...]) -> None:
        for s in (stmt,) + ancestors:
            if id(s) not in self.marked:
                self.marked.add(id(s))
                self.needed |= self._uses(s)

    def run(self) -> FunctionDef:
        statements = list(walk_statements(self.definition.body))
        changed = True
        while changed:
            changed = False
            for stmt, ancestors in statements:
                if id(stmt) in self.marked:
                    continue
                if self._is_root(stmt) or self._defs(stmt) & self.needed or self._loop_exit_of_live_loop(stmt, ancestors):
                    self._mark(stmt, ancestors)
                    changed = True
        return replace(self.definition, body=self._rebuild(self.definition.body))

    def _loop_exit_of_live_loop(self, stmt: Statement, ancestors: tuple[Statement, ...]) -> bool:
        if not isinstance(stmt, (BreakStmt, ContinueStmt)):
            return False
        for a in reversed(ancestors):
            if isinstance(a, (WhileStmt, ForStmt)):
                return id(a) in self.marked
        return False

    def _rebuild(self, stmts: list[Statement]) -> list[Statement]:
        kept: list[Statement] = []
        for stmt in stmts:
            if id(stmt) not in self.marked:
                continue
            if isinstance(stmt, IfStmt):
                stmt = replace(stmt, then_body=self._rebuild(stmt.then_body), else_body=self._rebuild(stmt.else_body))
            elif isinstance(stmt, WhileStmt):
                stmt = replace(stmt, body=self._rebuild(stmt.body))
            elif isinstance(stmt, ForStmt):
                stmt = replace(
                    stmt,
                    init=stmt.init if stmt.init is not None and id(stmt.init) in self.marked else None,
                    step=stmt.step if stmt.step is not None and id(stmt.step) in self.marked else None,
                    body=self._rebuild(stmt.body),
                )
            kept.append(stmt)
        return kept


def _count(stmts: list[Statement]) -> int:
    return sum(1 for _ in walk_statements(stmts))


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def prune(typed: TypedProgram, entry: str) -> PrunedProgram:
    """Run Pass 2 from the qualified entry name, keeping only live code."""
    effectful = effectful_functions(typed)
    result = PrunedProgram(typed=typed, entry=entry)
    worklist = [entry]
    while worklist:
        name = worklist.pop(0)
        if name in result.functions:
            continue
        original = typed.definitions[name]
        pruned = LivenessPruner(original, effectful).run()
        result.functions[name] = pruned
        result.removed_statements += _count(original.body) - _count(pruned.body)
        for stmt, _ in walk_statements(pruned.body):
            for expr in own_exprs(stmt):
                for callee in called_functions(expr, pruned.contract):
                    if callee not in result.functions:
                        worklist.append(callee)
    logger.debug(
        "pruned %d statement(s); %d function(s) reachable from %s",
        result.removed_statements, len(result.functions), entry,
    )
    return result
