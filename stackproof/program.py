"""Public API: init, compile, run and verify.

    program = stackproof.compile(source, "Account", "deposit")
    output = program.run({"owner": "a", "balance": 0}, [10], generate_proof=True)
    assert stackproof.verify(output.proof(), output.program_info(),
                             output.stack_inputs(), output.output_stack(),
                             output.overflow_addrs())

A Program is immutable and can be run any number of times, from any thread;
each run owns its own machine state.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Optional

from stackproof.config import ProverParameters, StackproofConfig, load_config
from stackproof.errors import CompileError, ExecutionError, RuntimeErrorKind
from stackproof.ir import CompiledProgram
from stackproof.parser import parse
from stackproof.pass1_check import check
from stackproof.pass3_emit import emit
from stackproof.prover import prove
from stackproof.values import zero_value
from stackproof.verifier import verify as verify_proof
from stackproof.vm import ExecutionTrace, Machine

logger = logging.getLogger(__name__)

_init_lock = threading.Lock()
_config: Optional[StackproofConfig] = None


def init(config_path: Optional[str] = None) -> StackproofConfig:
    """Load configuration and fix the proof parameters for this process.

    Only the first call has an effect; later calls return the same config.
    """
    global _config
    with _init_lock:
        if _config is None:
            _config = load_config(config_path)
            logger.debug("initialized with %s", _config.path or "default parameters")
        elif config_path is not None and config_path != _config.path:
            logger.warning("already initialized from %s; ignoring %s", _config.path, config_path)
        return _config


def parameters() -> ProverParameters:
    return init().prover


def compile_program(source: str, entry_contract: Optional[str], entry_name: str,
                    filename: str = "<source>") -> Program:
    """Parse, check and emit ``source`` for one entry point."""
    try:
        ast = parse(source, filename)
        typed = check(ast, source)
        compiled = emit(typed, entry_contract, entry_name)
    except CompileError as e:
        if e.source is None:
            raise e.with_source(source) from None
        raise
    return Program(compiled)


def _decode(data: Any, what: str) -> Any:
    if isinstance(data, (bytes, bytearray)):
        data = data.decode("utf-8")
    if isinstance(data, str):
        try:
            return json.loads(data)
        except json.JSONDecodeError as exc:
            raise ExecutionError(RuntimeErrorKind.TYPE_MISMATCH, 0, f"{what} is not valid JSON: {exc}") from None
    return data


class Program:
    def __init__(self, compiled: CompiledProgram):
        self.compiled = compiled

    @property
    def entry(self) -> str:
        return self.compiled.entry.qualified_name

    def default_this(self) -> Any:
        """Zero-valued ``this`` document for the entry contract, or None."""
        this_type = self.compiled.this_type
        if this_type is None:
            return None
        return zero_value(this_type, self.compiled.layouts).to_json()

    def program_info(self) -> bytes:
        return self.compiled.to_program_info()

    def disassemble(self) -> str:
        return self.compiled.disassemble()

    def run(self, this_json: Any, args_json: Any, generate_proof: bool = False,
            ctx_public_key: Optional[str] = None) -> ExecutionOutput:
        """Execute the entry point. ``this_json``/``args_json`` may be JSON text or decoded values."""
        params = parameters()
        machine = Machine(self.compiled, trace=generate_proof, min_stack_depth=params.min_stack_depth)
        trace = machine.run(_decode(this_json, "this"), _decode(args_json, "args"), ctx_public_key)
        proof = prove(trace, self.compiled, params).to_bytes() if generate_proof else None
        return ExecutionOutput(self.compiled, trace, proof)


class ExecutionOutput:
    """Results of one run plus, when requested, its proof and public metadata."""

    def __init__(self, compiled: CompiledProgram, trace: ExecutionTrace, proof: Optional[bytes]):
        self._compiled = compiled
        self._trace = trace
        self._proof = proof

    def proof(self) -> Optional[bytes]:
        return self._proof

    def cycle_count(self) -> int:
        return self._trace.cycle_count

    def this(self) -> Any:
        this = self._trace.this
        return None if this is None else this.to_json()

    def result(self) -> Any:
        return self._trace.result.to_json()

    def result_hash(self) -> str:
        return self._trace.result_hash

    def logs(self) -> list[Any]:
        return [v.to_json() for v in self._trace.logs]

    def hashes(self) -> list[str]:
        return list(self._trace.hashes)

    def read_auth(self) -> list[bool]:
        return list(self._trace.auth)

    def self_destructed(self) -> bool:
        return self._trace.self_destructed

    def program_info(self) -> bytes:
        return self._compiled.to_program_info()

    def stack_inputs(self) -> list[str]:
        return list(self._trace.stack_inputs)

    def output_stack(self) -> list[str]:
        return list(self._trace.output_stack)

    def overflow_addrs(self) -> list[int]:
        return list(self._trace.overflow_addrs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycle_count": self.cycle_count(),
            "this": self.this(),
            "result": self.result(),
            "result_hash": self.result_hash(),
            "logs": self.logs(),
            "hashes": self.hashes(),
            "read_auth": self.read_auth(),
            "self_destructed": self.self_destructed(),
            "stack_inputs": self.stack_inputs(),
            "output_stack": self.output_stack(),
            "overflow_addrs": self.overflow_addrs(),
            "proof_size": len(self._proof) if self._proof is not None else None,
        }


def verify(proof: Any, program_info: Any, stack_inputs: Any, output_stack: Any, overflow_addrs: Any) -> bool:
    """Check a proof with the process-wide parameters. Never raises."""
    return verify_proof(proof, program_info, stack_inputs, output_stack, overflow_addrs, parameters())
