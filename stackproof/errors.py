"""Structured error objects for the stackproof compiler, executor and prover.

Compile-time problems are reported as machine-readable diagnostics wrapped in a
``CompileError``. Runtime traps carry the cycle at which the machine stopped.
Verification never raises; see ``stackproof.verifier``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class ErrorKind(Enum):
    SYNTAX = "syntax"
    UNRESOLVED_REFERENCE = "unresolved-reference"
    TYPE_MISMATCH = "type-mismatch"
    ARITY_MISMATCH = "arity-mismatch"
    CYCLIC_TYPE = "cyclic-type"
    DUPLICATE_DEFINITION = "duplicate-definition"
    UNKNOWN_ENTRY = "unknown-entry"


class RuntimeErrorKind(Enum):
    TYPE_MISMATCH = "type-mismatch"
    INDEX_OUT_OF_BOUNDS = "index-out-of-bounds"
    DIVISION_BY_ZERO = "division-by-zero"
    AUTHORIZATION_DENIED = "authorization-denied"
    ARITHMETIC_OVERFLOW = "arithmetic-overflow"


class ProofErrorKind(Enum):
    GENERATION_FAILURE = "generation-failure"


@dataclass
class SourceLocation:
    line: int
    column: int
    file: str = "<stdin>"

    def __str__(self) -> str:
        return f"{self.file}:{self.line}:{self.column}"


@dataclass
class Diagnostic:
    kind: ErrorKind
    message: str
    location: Optional[SourceLocation] = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "kind": self.kind.value,
            "message": self.message,
        }
        if self.location:
            d["location"] = {
                "file": self.location.file,
                "line": self.location.line,
                "column": self.location.column,
            }
        if self.details:
            d["details"] = self.details
        return d

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    def __str__(self) -> str:
        loc = f" at {self.location}" if self.location else ""
        return f"[{self.kind.value}]{loc}: {self.message}"


def syntax_error(message: str, location: Optional[SourceLocation] = None) -> Diagnostic:
    return Diagnostic(kind=ErrorKind.SYNTAX, message=message, location=location)


def unresolved_reference(
    name: str,
    location: Optional[SourceLocation] = None,
    what: str = "name",
) -> Diagnostic:
    return Diagnostic(
        kind=ErrorKind.UNRESOLVED_REFERENCE,
        message=f"Unresolved {what} '{name}'",
        location=location,
        details={"name": name, "what": what},
    )


def type_mismatch(
    expected: str,
    actual: str,
    location: Optional[SourceLocation] = None,
    context: str = "",
) -> Diagnostic:
    message = f"Expected type '{expected}', got '{actual}'"
    if context:
        message = f"{message} in {context}"
    return Diagnostic(
        kind=ErrorKind.TYPE_MISMATCH,
        message=message,
        location=location,
        details={"expected_type": expected, "actual_type": actual},
    )


def arity_mismatch(
    name: str,
    expected: int,
    actual: int,
    location: Optional[SourceLocation] = None,
) -> Diagnostic:
    return Diagnostic(
        kind=ErrorKind.ARITY_MISMATCH,
        message=f"'{name}' takes {expected} argument(s), {actual} given",
        location=location,
        details={"callee": name, "expected": expected, "actual": actual},
    )


def cyclic_type(cycle: list[str], location: Optional[SourceLocation] = None) -> Diagnostic:
    return Diagnostic(
        kind=ErrorKind.CYCLIC_TYPE,
        message=f"Cyclic contract reference: {' -> '.join(cycle)}",
        location=location,
        details={"cycle": cycle},
    )


def duplicate_definition(name: str, location: Optional[SourceLocation] = None) -> Diagnostic:
    return Diagnostic(
        kind=ErrorKind.DUPLICATE_DEFINITION,
        message=f"'{name}' is already defined",
        location=location,
        details={"name": name},
    )


def unknown_entry(contract: Optional[str], name: str) -> Diagnostic:
    target = f"{contract}.{name}" if contract else name
    return Diagnostic(
        kind=ErrorKind.UNKNOWN_ENTRY,
        message=f"Entry point '{target}' does not exist",
        details={"contract": contract, "name": name},
    )


def render_snippet(source: str, location: SourceLocation) -> str:
    """Return the offending source line, de-indented, with a caret under the column."""
    lines = source.split("\n")
    if not 1 <= location.line <= len(lines):
        return ""
    line = lines[location.line - 1]
    stripped = line.lstrip()
    column = max(location.column - 1 - (len(line) - len(stripped)), 0)
    return f"{stripped}\n{' ' * column}^"


class CompileError(Exception):
    """Exception wrapping one or more Diagnostics."""

    def __init__(self, errors: list[Diagnostic] | Diagnostic, source: Optional[str] = None):
        if isinstance(errors, Diagnostic):
            errors = [errors]
        self.errors = errors
        self.source = source
        super().__init__(self._format())

    @property
    def kind(self) -> ErrorKind:
        return self.errors[0].kind

    @property
    def location(self) -> Optional[SourceLocation]:
        return self.errors[0].location

    def with_source(self, source: str) -> CompileError:
        return CompileError(self.errors, source)

    def _format(self) -> str:
        parts = []
        for e in self.errors:
            parts.append(str(e))
            if self.source is not None and e.location is not None:
                snippet = render_snippet(self.source, e.location)
                if snippet:
                    parts.append(snippet)
        return "\n".join(parts)

    def to_json(self, indent: int = 2) -> str:
        return json.dumps([e.to_dict() for e in self.errors], indent=indent)


class ExecutionError(Exception):
    """A runtime trap. The whole run is void; no partial output survives."""

    def __init__(self, kind: RuntimeErrorKind, cycle: int, message: str = ""):
        self.kind = kind
        self.cycle = cycle
        self.message = message or kind.value
        super().__init__(f"[{kind.value}] at cycle {cycle}: {self.message}")

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "cycle": self.cycle, "message": self.message}


class ProofError(Exception):
    """Raised when a proof cannot be produced under the configured parameters."""

    def __init__(self, message: str, kind: ProofErrorKind = ProofErrorKind.GENERATION_FAILURE):
        self.kind = kind
        self.message = message
        super().__init__(f"[{kind.value}]: {message}")
