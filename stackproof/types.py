"""Contract-language type system.

Built-in types: string, boolean, number, u8, u16, u32, u64
Composite types: T[] and named contract types.
``number`` is the default-width unsigned integer and is the same type as u32.
Type environment with scoping.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional


# ---------------------------------------------------------------------------
# Type Representations
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Type:
    """Base type."""
    def __str__(self) -> str:
        return "unknown"

    def is_assignable_from(self, other: Type) -> bool:
        return self == other


@dataclass(frozen=True)
class PrimitiveType(Type):
    name: str = ""

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class UIntType(Type):
    width: int = 32

    def __str__(self) -> str:
        return f"u{self.width}"

    @property
    def max_value(self) -> int:
        return (1 << self.width) - 1

    def fits(self, value: int) -> bool:
        return 0 <= value <= self.max_value


@dataclass(frozen=True)
class ArrayType(Type):
    element: Type = field(default_factory=Type)

    def __str__(self) -> str:
        return f"{self.element}[]"


@dataclass(frozen=True)
class ContractType(Type):
    """A named contract. Field layouts live in the checker's contract table."""
    name: str = ""

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class VoidType(Type):
    def __str__(self) -> str:
        return "void"


# ---------------------------------------------------------------------------
# Built-in type instances
# ---------------------------------------------------------------------------

STRING = PrimitiveType("string")
BOOLEAN = PrimitiveType("boolean")
VOID = VoidType()
ERROR = PrimitiveType("<error>")
U8 = UIntType(8)
U16 = UIntType(16)
U32 = UIntType(32)
U64 = UIntType(64)
NUMBER = U32

UINT_WIDTHS = (8, 16, 32, 64)

BUILTIN_TYPES: dict[str, Type] = {
    "string": STRING,
    "boolean": BOOLEAN,
    "number": NUMBER,
    "u8": U8,
    "u16": U16,
    "u32": U32,
    "u64": U64,
}


def is_uint(t: Optional[Type]) -> bool:
    return isinstance(t, UIntType)


def type_from_string(text: str) -> Type:
    """Inverse of ``str(type)`` for the types that appear in program metadata."""
    depth = 0
    while text.endswith("[]"):
        text = text[:-2]
        depth += 1
    if text == "void":
        base: Type = VOID
    elif text in BUILTIN_TYPES:
        base = BUILTIN_TYPES[text]
    elif text.startswith("u") and text[1:].isdigit() and int(text[1:]) in UINT_WIDTHS:
        base = UIntType(int(text[1:]))
    elif text.isidentifier():
        base = ContractType(text)
    else:
        raise ValueError(f"Not a type: {text!r}")
    for _ in range(depth):
        base = ArrayType(base)
    return base


# ---------------------------------------------------------------------------
# Contract and function signatures
# ---------------------------------------------------------------------------

@dataclass
class FunctionSignature:
    name: str
    param_types: list[Type] = field(default_factory=list)
    return_type: Type = VOID
    contract: Optional[str] = None


@dataclass
class ContractInfo:
    name: str
    fields: list[tuple[str, Type]] = field(default_factory=list)
    methods: dict[str, FunctionSignature] = field(default_factory=dict)
    constructor: Optional[FunctionSignature] = None

    def field_type(self, name: str) -> Optional[Type]:
        for field_name, field_type in self.fields:
            if field_name == name:
                return field_type
        return None


# ---------------------------------------------------------------------------
# Type Environment (scoping)
# ---------------------------------------------------------------------------

class TypeEnvironment:
    """Scoped local-variable environment mapping names to (type, slot)."""

    def __init__(self, parent: Optional[TypeEnvironment] = None):
        self.parent = parent
        self.variables: dict[str, tuple[Type, int]] = {}

    def define_variable(self, name: str, t: Type, slot: int) -> None:
        self.variables[name] = (t, slot)

    def defines(self, name: str) -> bool:
        return name in self.variables

    def lookup_variable(self, name: str) -> Optional[tuple[Type, int]]:
        if name in self.variables:
            return self.variables[name]
        if self.parent:
            return self.parent.lookup_variable(name)
        return None

    def child_scope(self) -> TypeEnvironment:
        return TypeEnvironment(parent=self)
