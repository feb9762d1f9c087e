"""Prover: replays a recorded run on the micro machine and proves it.

The executor's run supplies both halves of the statement. Its public side
(input and output words, cycle count) becomes the STARK statement; its
private witness (caller key, initial ``this`` slots, arguments) becomes the
advice tape the lowered program reads. The micro machine must reproduce
exactly the words the executor published, or there is nothing to prove.
"""

from __future__ import annotations

import hashlib
import logging
import struct

from stackproof import stark
from stackproof.config import ProverParameters
from stackproof.errors import ProofError
from stackproof.field import to_bytes
from stackproof.hashing import parse_word
from stackproof.ir import CompiledProgram
from stackproof.lowering import MicroProgram, advice_tape, lower
from stackproof.micro import MicroMachine
from stackproof.proof import Proof
from stackproof.vm import ExecutionTrace

logger = logging.getLogger(__name__)


def witness_key(program: CompiledProgram, tape: list[int]) -> bytes:
    """Key for every salt and mask of one proof."""
    h = hashlib.sha256(b"stackproof.witness")
    h.update(program.digest)
    h.update(struct.pack(">Q", len(tape)))
    for word in tape:
        h.update(to_bytes(word))
    return h.digest()


def statement(program: CompiledProgram, micro: MicroProgram, trace: ExecutionTrace) -> stark.Statement:
    return stark.Statement(
        program_digest=program.digest,
        rom=micro.rom,
        stack_base=micro.stack_base,
        halt_pc=micro.halt_pc,
        inputs=tuple(parse_word(w) for w in trace.stack_inputs),
        outputs=tuple(parse_word(w) for w in trace.output_stack),
        cycle_count=trace.cycle_count,
    )


def prove(trace: ExecutionTrace, program: CompiledProgram, params: ProverParameters,
          check: bool = True) -> Proof:
    """Prove one recorded run. ``check`` verifies the witness before committing to it."""
    witness = trace.witness
    if witness is None:
        raise ProofError("run was not recorded for proving")
    micro = lower(program)
    tape = advice_tape(program, witness.ctx, witness.slots, witness.args)
    run = MicroMachine(micro.rom, micro.stack_base, tape, params.max_trace_length).run()
    public = statement(program, micro, trace)
    if check and sorted(run.io) != sorted(public.io()):
        raise ProofError("micro machine I/O differs from the executor's public words")

    proof = stark.prove(public, run, params, witness_key(program, tape), check)
    logger.debug(
        "proved %s: %d cycle(s), %d micro step(s), %d bytes",
        program.entry.qualified_name, trace.cycle_count, len(run.rows), len(proof),
    )
    return proof
