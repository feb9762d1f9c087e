"""Runtime values.

A closed tagged union: null, boolean, string, fixed-width unsigned integer,
array, contract object and 32-byte hash. Values are immutable, so nested
contract instances never alias. Two representations are supported:

- JSON: what callers pass to ``Program.run`` and get back from it, validated
  against a declared type with no coercion.
- wire: a tagged JSON-able form used inside program metadata.
  ``from_wire`` accepts only well-formed input.

Content hashes are computed over field elements, see ``hashing``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from stackproof.types import (
    Type, PrimitiveType, UIntType, ArrayType, ContractType, STRING, BOOLEAN, UINT_WIDTHS,
)


class ValueKind(Enum):
    NULL = "null"
    BOOLEAN = "boolean"
    STRING = "string"
    UINT = "uint"
    ARRAY = "array"
    OBJECT = "object"
    HASH = "hash"


# Field layouts by contract name: [(field name, field type), ...]
Layouts = dict[str, list[tuple[str, Type]]]


@dataclass(frozen=True)
class Value:
    kind: ValueKind
    data: Any = None
    width: int = 0
    type_name: str = ""

    # -- constructors -----------------------------------------------------

    @staticmethod
    def null() -> Value:
        return Value(ValueKind.NULL)

    @staticmethod
    def boolean(b: bool) -> Value:
        return Value(ValueKind.BOOLEAN, bool(b))

    @staticmethod
    def string(s: str) -> Value:
        return Value(ValueKind.STRING, s)

    @staticmethod
    def uint(n: int, width: int) -> Value:
        return Value(ValueKind.UINT, n, width=width)

    @staticmethod
    def array(items) -> Value:
        return Value(ValueKind.ARRAY, tuple(items))

    @staticmethod
    def object(type_name: str, fields) -> Value:
        return Value(ValueKind.OBJECT, tuple(fields), type_name=type_name)

    @staticmethod
    def hash(digest: bytes) -> Value:
        return Value(ValueKind.HASH, bytes(digest))

    # -- accessors --------------------------------------------------------

    def get_field(self, name: str) -> Value:
        for field_name, value in self.data:
            if field_name == name:
                return value
        raise KeyError(name)

    def with_field(self, name: str, value: Value) -> Value:
        if not any(field_name == name for field_name, _ in self.data):
            raise KeyError(name)
        fields = [(f, value if f == name else v) for f, v in self.data]
        return Value.object(self.type_name, fields)

    def __str__(self) -> str:
        return str(self.to_json())

    # -- JSON -------------------------------------------------------------

    def to_json(self) -> Any:
        if self.kind == ValueKind.NULL:
            return None
        if self.kind in (ValueKind.BOOLEAN, ValueKind.STRING, ValueKind.UINT):
            return self.data
        if self.kind == ValueKind.ARRAY:
            return [v.to_json() for v in self.data]
        if self.kind == ValueKind.OBJECT:
            return {name: v.to_json() for name, v in self.data}
        return self.data.hex()

    # -- wire -------------------------------------------------------------

    def to_wire(self) -> Any:
        if self.kind == ValueKind.NULL:
            return ["n"]
        if self.kind == ValueKind.BOOLEAN:
            return ["b", self.data]
        if self.kind == ValueKind.STRING:
            return ["s", self.data]
        if self.kind == ValueKind.UINT:
            return ["u", self.width, self.data]
        if self.kind == ValueKind.ARRAY:
            return ["a", [v.to_wire() for v in self.data]]
        if self.kind == ValueKind.OBJECT:
            return ["o", self.type_name, [[name, v.to_wire()] for name, v in self.data]]
        return ["h", self.data.hex()]


NULL = Value.null()
TRUE = Value.boolean(True)
FALSE = Value.boolean(False)


def _is_int(x: Any) -> bool:
    return isinstance(x, int) and not isinstance(x, bool)


def from_wire(data: Any) -> Value:
    """Decode a wire value. Raises ValueError on anything malformed."""
    if not isinstance(data, list) or not data or not isinstance(data[0], str):
        raise ValueError(f"malformed wire value: {data!r}")
    tag = data[0]
    if tag == "n" and len(data) == 1:
        return NULL
    if tag == "b" and len(data) == 2 and isinstance(data[1], bool):
        return Value.boolean(data[1])
    if tag == "s" and len(data) == 2 and isinstance(data[1], str):
        return Value.string(data[1])
    if tag == "u" and len(data) == 3 and _is_int(data[1]) and _is_int(data[2]):
        width, n = data[1], data[2]
        if width in UINT_WIDTHS and 0 <= n < (1 << width):
            return Value.uint(n, width)
    if tag == "a" and len(data) == 2 and isinstance(data[1], list):
        return Value.array(from_wire(item) for item in data[1])
    if tag == "o" and len(data) == 3 and isinstance(data[1], str) and isinstance(data[2], list):
        fields = []
        for entry in data[2]:
            if not isinstance(entry, list) or len(entry) != 2 or not isinstance(entry[0], str):
                raise ValueError(f"malformed object field: {entry!r}")
            fields.append((entry[0], from_wire(entry[1])))
        return Value.object(data[1], fields)
    if tag == "h" and len(data) == 2 and isinstance(data[1], str) and len(data[1]) == 64:
        digest = bytes.fromhex(data[1])
        if digest.hex() == data[1]:
            return Value.hash(digest)
    raise ValueError(f"malformed wire value: {data!r}")


# ---------------------------------------------------------------------------
# Typed JSON boundary
# ---------------------------------------------------------------------------

def from_json(data: Any, t: Type, layouts: Layouts, path: str = "$") -> Value:
    """Validate boundary JSON against a declared type. Raises ValueError on mismatch."""
    if t == STRING:
        if isinstance(data, str):
            try:
                data.encode("utf-8")
            except UnicodeEncodeError:
                raise ValueError(f"{path}: string is not valid UTF-8") from None
            return Value.string(data)
    elif t == BOOLEAN:
        if isinstance(data, bool):
            return Value.boolean(data)
    elif isinstance(t, UIntType):
        if _is_int(data) and t.fits(data):
            return Value.uint(data, t.width)
    elif isinstance(t, ArrayType):
        if isinstance(data, list):
            return Value.array(from_json(item, t.element, layouts, f"{path}[{i}]") for i, item in enumerate(data))
    elif isinstance(t, ContractType):
        if isinstance(data, dict):
            fields = layouts[t.name]
            expected = [name for name, _ in fields]
            if sorted(data) != sorted(expected):
                raise ValueError(f"{path}: expected fields {expected}, got {sorted(data)}")
            return Value.object(t.name, [
                (name, from_json(data[name], field_type, layouts, f"{path}.{name}"))
                for name, field_type in fields
            ])
    raise ValueError(f"{path}: expected {t}, got {data!r}")


def conforms(value: Value, t: Type, layouts: Layouts) -> bool:
    """True when ``value`` is a well-formed instance of ``t``."""
    if t == STRING:
        return value.kind == ValueKind.STRING
    if t == BOOLEAN:
        return value.kind == ValueKind.BOOLEAN
    if isinstance(t, UIntType):
        return value.kind == ValueKind.UINT and value.width == t.width
    if isinstance(t, ArrayType):
        return value.kind == ValueKind.ARRAY and all(conforms(v, t.element, layouts) for v in value.data)
    if isinstance(t, ContractType):
        if value.kind != ValueKind.OBJECT or value.type_name != t.name or t.name not in layouts:
            return False
        fields = layouts[t.name]
        if [name for name, _ in value.data] != [name for name, _ in fields]:
            return False
        return all(conforms(v, ft, layouts) for (_, v), (_, ft) in zip(value.data, fields))
    if isinstance(t, PrimitiveType):
        return False
    return value.kind == ValueKind.NULL


def zero_value(t: Type, layouts: Layouts) -> Value:
    """The zero of a type: "", false, 0, [] and contracts of zeros."""
    if t == STRING:
        return Value.string("")
    if t == BOOLEAN:
        return FALSE
    if isinstance(t, UIntType):
        return Value.uint(0, t.width)
    if isinstance(t, ArrayType):
        return Value.array(())
    if isinstance(t, ContractType):
        return Value.object(t.name, [(name, zero_value(ft, layouts)) for name, ft in layouts[t.name]])
    return NULL
