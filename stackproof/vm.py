"""Virtual machine executor.

Runs a CompiledProgram against a ``this`` document, positional arguments and
an optional caller public key. Execution is deterministic: the cycle counter
advances once per executed instruction, HALT included, and two runs over the
same inputs produce identical results.

Every instruction goes through ``semantics.execute``; this module only owns
the operand stack, the call stack and memory. Memory is addressed by strings
(``l:<frame>:<slot>`` for locals, ``t:<slot>`` for ``this`` leaf fields,
``c:publicKey`` for the caller key).

When the run is traced for proving, the result also carries the private
witness (caller key, initial live ``this`` values and arguments) from which
the prover replays the execution at the level of its constraint system.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from stackproof.errors import ExecutionError, RuntimeErrorKind
from stackproof.hashing import hex_word
from stackproof.ir import CompiledProgram, Opcode
from stackproof.semantics import (
    INITIAL, CTX_ADDRESS, CallEntry, Trap,
    assemble, decompose, execute, pop_count, read_addresses, this_address,
)
from stackproof.types import STRING
from stackproof.values import Value, ValueKind, from_json

logger = logging.getLogger(__name__)

DEFAULT_MIN_STACK_DEPTH = 16


@dataclass(frozen=True)
class Witness:
    """Private inputs of one run, in the order the prover consumes them."""
    ctx: Value
    slots: tuple[Value, ...]
    args: tuple[Value, ...]


@dataclass
class ExecutionTrace:
    """Everything one successful run produced."""
    cycle_count: int
    result: Value
    this: Optional[Value]
    logs: list[Value] = field(default_factory=list)
    auth: list[bool] = field(default_factory=list)
    self_destructed: bool = False
    hashes: list[str] = field(default_factory=list)
    stack_inputs: list[str] = field(default_factory=list)
    output_stack: list[str] = field(default_factory=list)
    overflow_addrs: list[int] = field(default_factory=list)
    witness: Optional[Witness] = None

    @property
    def result_hash(self) -> str:
        return hex_word(self.result)


class Machine:
    """Executes one compiled program. Each ``run`` starts from a fresh state."""

    def __init__(self, program: CompiledProgram, trace: bool = False,
                 min_stack_depth: int = DEFAULT_MIN_STACK_DEPTH):
        self.program = program
        self.trace = trace
        self.min_stack_depth = min_stack_depth

    # -- boundary ---------------------------------------------------------

    def _validate(self, this_json: Any, args_json: Any) -> tuple[Optional[Value], list[Value]]:
        program = self.program
        layouts = program.layouts
        try:
            this_type = program.this_type
            if this_type is None:
                if this_json is not None:
                    raise ValueError(f"'{program.entry.name}' is a free function and takes no this")
                this_value = None
            else:
                this_value = from_json(this_json, this_type, layouts, "this")

            if args_json is None:
                args_json = []
            if not isinstance(args_json, list):
                raise ValueError(f"arguments must be a list, got {type(args_json).__name__}")
            param_types = program.param_types
            if len(args_json) != len(param_types):
                raise ValueError(f"expected {len(param_types)} argument(s), got {len(args_json)}")
            args = [
                from_json(arg, t, layouts, f"args[{i}]")
                for i, (arg, t) in enumerate(zip(args_json, param_types))
            ]
        except ValueError as exc:
            raise ExecutionError(RuntimeErrorKind.TYPE_MISMATCH, 0, str(exc)) from None
        return this_value, args

    # -- execution --------------------------------------------------------

    def run(self, this_json: Any, args_json: Any, ctx_public_key: Optional[str] = None) -> ExecutionTrace:
        program = self.program
        this_value, args = self._validate(this_json, args_json)
        if ctx_public_key is not None and not isinstance(ctx_public_key, str):
            raise ExecutionError(RuntimeErrorKind.TYPE_MISMATCH, 0, "ctx public key must be a string")
        try:
            ctx = from_json(ctx_public_key or "", STRING, {}, "ctx.publicKey")
        except ValueError as exc:
            raise ExecutionError(RuntimeErrorKind.TYPE_MISMATCH, 0, str(exc)) from None

        memory: dict[str, Value] = {CTX_ADDRESS: ctx}
        shape = program.this_shape
        if shape is not None:
            for slot, leaf in decompose(shape, this_value):
                memory[this_address(slot)] = leaf
        initial_slots = tuple(memory[this_address(slot)] for slot in program.live_slots)
        stack_inputs = [hex_word(ctx)] + [hex_word(v) for v in initial_slots]

        # The HASH right after the entry CALL consumes the entry's return value.
        result_pc = len(program.param_types) + 1
        result: Value = Value.null()

        stack: list[tuple[Value, int]] = []
        calls: list[CallEntry] = []
        logs: list[Value] = []
        auth: list[bool] = []
        regs = INITIAL
        cycle = 0

        while True:
            if not 0 <= regs.pc < len(program.instructions):
                raise ExecutionError(RuntimeErrorKind.TYPE_MISMATCH, cycle, f"pc {regs.pc} outside the program")
            instr = program.instructions[regs.pc]

            n = pop_count(instr)
            if n > len(stack):
                raise ExecutionError(RuntimeErrorKind.TYPE_MISMATCH, cycle, f"stack underflow at {instr}")
            popped = [v for v, _ in stack[len(stack) - n:]]
            del stack[len(stack) - n:]

            reads: list[Value] = []
            for address in read_addresses(instr, regs.frame):
                if address not in memory:
                    raise ExecutionError(RuntimeErrorKind.TYPE_MISMATCH, cycle, f"read of uninitialized {address}")
                reads.append(memory[address])

            advice = args[instr.arg[0]] if instr.op == Opcode.ADVICE and instr.arg[0] < len(args) else None
            call_entry = calls.pop() if instr.op == Opcode.RET and calls else None
            try:
                step = execute(program, instr, regs, cycle, popped, reads, advice, call_entry)
            except Trap as trap:
                logger.debug("trap %s at cycle %d (pc %d)", trap.kind.value, cycle, regs.pc)
                raise ExecutionError(trap.kind, cycle, trap.message) from None

            for address, value in step.writes:
                memory[address] = value
            if instr.op == Opcode.CALL:
                calls.append(CallEntry(regs.pc + 1, regs.frame))
            for value in step.pushed:
                stack.append((value, cycle))
            if step.logged is not None:
                logs.append(step.logged)
            if step.auth is not None:
                auth.append(step.auth)
            if instr.op == Opcode.HASH and regs.pc == result_pc:
                result = popped[0]

            cycle += 1
            if instr.op == Opcode.HALT:
                break
            regs = step.registers

        final_this = None
        if shape is not None:
            final_this = assemble(shape, [memory[this_address(s)] for s in range(len(program.this_slots))])

        output_stack, overflow_addrs = self._outputs(stack)
        trace = ExecutionTrace(
            cycle_count=cycle,
            result=result,
            this=final_this,
            logs=logs,
            auth=auth,
            self_destructed=regs.destructed,
            hashes=[hex_word(memory[this_address(s)]) for s in program.live_slots],
            stack_inputs=stack_inputs,
            output_stack=output_stack,
            overflow_addrs=overflow_addrs,
            witness=Witness(ctx, initial_slots, tuple(args)) if self.trace else None,
        )
        logger.debug(
            "ran %s in %d cycle(s): %d log(s), %d auth check(s)",
            program.entry.qualified_name, cycle, len(logs), len(auth),
        )
        return trace

    def _outputs(self, stack: list[tuple[Value, int]]) -> tuple[list[str], list[int]]:
        """Public output words, top first, and the push cycle of each word below the minimum depth."""
        words: list[str] = []
        overflow: list[int] = []
        for depth, (value, pushed_at) in enumerate(reversed(stack)):
            if value.kind != ValueKind.HASH:
                raise ExecutionError(RuntimeErrorKind.TYPE_MISMATCH, pushed_at, "epilogue left a non-hash word")
            words.append(value.data.hex())
            if depth >= self.min_stack_depth:
                overflow.append(pushed_at)
        return words, overflow
