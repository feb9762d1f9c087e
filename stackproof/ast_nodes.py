"""Contract-language AST node definitions.

Top-level constructs: contract, function.
Expressions carry a ``ty`` slot the type checker fills in, which turns the
parsed tree into the typed AST consumed by the later passes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Any

from stackproof.errors import SourceLocation


# ---------------------------------------------------------------------------
# Decorators
# ---------------------------------------------------------------------------

@dataclass
class Decorator:
    """``@name`` or ``@name(a, b)``; arguments are field names."""
    name: str
    arguments: list[str] = field(default_factory=list)
    location: Optional[SourceLocation] = None


# ---------------------------------------------------------------------------
# Type Annotations (in source)
# ---------------------------------------------------------------------------

@dataclass
class TypeAnnotation:
    name: str
    array_depth: int = 0
    location: Optional[SourceLocation] = None

    def __str__(self) -> str:
        return self.name + "[]" * self.array_depth


# ---------------------------------------------------------------------------
# Expressions
# ---------------------------------------------------------------------------

@dataclass
class Expr:
    location: Optional[SourceLocation] = None
    ty: Any = field(default=None, compare=False, repr=False)


@dataclass
class IntLiteral(Expr):
    value: int = 0


@dataclass
class StringLiteral(Expr):
    value: str = ""


@dataclass
class BoolLiteral(Expr):
    value: bool = False


@dataclass
class ArrayLiteral(Expr):
    elements: list[Expr] = field(default_factory=list)


@dataclass
class Identifier(Expr):
    name: str = ""
    slot: Optional[int] = field(default=None, compare=False)


@dataclass
class ThisExpr(Expr):
    pass


@dataclass
class BinaryOp(Expr):
    op: str = ""
    left: Optional[Expr] = None
    right: Optional[Expr] = None


@dataclass
class UnaryOp(Expr):
    op: str = ""
    operand: Optional[Expr] = None


@dataclass
class FunctionCall(Expr):
    """A call to a free function or a built-in such as ``log``."""
    name: str = ""
    args: list[Expr] = field(default_factory=list)


@dataclass
class MethodCall(Expr):
    """``obj.method(args)``: contract methods on ``this`` or built-ins like ``push``."""
    obj: Optional[Expr] = None
    method_name: str = ""
    args: list[Expr] = field(default_factory=list)


@dataclass
class FieldAccess(Expr):
    obj: Optional[Expr] = None
    field_name: str = ""


@dataclass
class IndexExpr(Expr):
    obj: Optional[Expr] = None
    index: Optional[Expr] = None


# ---------------------------------------------------------------------------
# Statements
# ---------------------------------------------------------------------------

@dataclass
class Statement:
    location: Optional[SourceLocation] = None


@dataclass
class LetStmt(Statement):
    name: str = ""
    type_annotation: Optional[TypeAnnotation] = None
    value: Optional[Expr] = None
    slot: Optional[int] = field(default=None, compare=False)


@dataclass
class AssignStmt(Statement):
    """``target op value`` where op is one of ``=``, ``+=``, ``-=``, ``*=``."""
    target: Optional[Expr] = None
    op: str = "="
    value: Optional[Expr] = None


@dataclass
class ExprStmt(Statement):
    expr: Optional[Expr] = None


@dataclass
class IfStmt(Statement):
    condition: Optional[Expr] = None
    then_body: list[Statement] = field(default_factory=list)
    else_body: list[Statement] = field(default_factory=list)


@dataclass
class WhileStmt(Statement):
    condition: Optional[Expr] = None
    body: list[Statement] = field(default_factory=list)


@dataclass
class ForStmt(Statement):
    init: Optional[Statement] = None
    condition: Optional[Expr] = None
    step: Optional[Statement] = None
    body: list[Statement] = field(default_factory=list)


@dataclass
class ReturnStmt(Statement):
    value: Optional[Expr] = None


@dataclass
class BreakStmt(Statement):
    pass


@dataclass
class ContinueStmt(Statement):
    pass


# ---------------------------------------------------------------------------
# Declarations
# ---------------------------------------------------------------------------

@dataclass
class Parameter:
    name: str
    type_annotation: TypeAnnotation
    location: Optional[SourceLocation] = None


@dataclass
class FieldDef:
    name: str
    type_annotation: TypeAnnotation
    location: Optional[SourceLocation] = None
    decorators: list[Decorator] = field(default_factory=list)


@dataclass
class FunctionDef:
    """A free function, a contract method, or a constructor (``name == "constructor"``)."""
    name: str
    params: list[Parameter] = field(default_factory=list)
    return_type: Optional[TypeAnnotation] = None
    body: list[Statement] = field(default_factory=list)
    contract: Optional[str] = None
    location: Optional[SourceLocation] = None
    local_count: int = 0
    decorators: list[Decorator] = field(default_factory=list)

    @property
    def qualified_name(self) -> str:
        return f"{self.contract}.{self.name}" if self.contract else self.name


@dataclass
class ContractDef:
    name: str
    fields: list[FieldDef] = field(default_factory=list)
    constructor: Optional[FunctionDef] = None
    methods: list[FunctionDef] = field(default_factory=list)
    location: Optional[SourceLocation] = None
    decorators: list[Decorator] = field(default_factory=list)


Declaration = ContractDef | FunctionDef


@dataclass
class Program:
    declarations: list[Declaration] = field(default_factory=list)
    filename: str = "<stdin>"

    @property
    def contracts(self) -> list[ContractDef]:
        return [d for d in self.declarations if isinstance(d, ContractDef)]

    @property
    def functions(self) -> list[FunctionDef]:
        return [d for d in self.declarations if isinstance(d, FunctionDef)]
