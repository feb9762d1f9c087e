"""stackproof: a compiler, prover and verifier for a small typed contract language."""

__version__ = "0.1.0"

from stackproof.errors import (
    CompileError, ExecutionError, ProofError, ErrorKind, RuntimeErrorKind, ProofErrorKind,
)
from stackproof.program import (
    init, compile_program, Program, ExecutionOutput, verify,
)

compile = compile_program

__all__ = [
    "init", "compile", "compile_program", "verify", "Program", "ExecutionOutput",
    "CompileError", "ExecutionError", "ProofError",
    "ErrorKind", "RuntimeErrorKind", "ProofErrorKind",
]
