"""Verifier: checks a proof against public metadata only.

Nothing here touches the executor or the prover. The verifier decodes the
program info, lowers it to the same micro program the prover used (cached
per program info), rebuilds the public statement from the I/O words and the
cycle count carried by the proof, and runs the STARK verifier. ``verify``
never raises: any malformed input or failed check is a plain ``False``, with
the reason logged at debug level.
"""

from __future__ import annotations

import logging
import struct
from functools import lru_cache
from typing import Any, Optional

from stackproof import stark
from stackproof.config import ProverParameters
from stackproof.hashing import parse_word
from stackproof.ir import CompiledProgram
from stackproof.lowering import MicroProgram, lower
from stackproof.proof import Proof
from stackproof.stark import Rejected

logger = logging.getLogger(__name__)


def _require(condition: bool, reason: str) -> None:
    if not condition:
        raise Rejected(reason)


@lru_cache(maxsize=64)
def _load(program_info: bytes) -> tuple[CompiledProgram, MicroProgram]:
    program = CompiledProgram.from_program_info(program_info)
    return program, lower(program)


def _words(data: Any, what: str) -> tuple[int, ...]:
    _require(isinstance(data, list), f"{what} must be a list")
    return tuple(parse_word(word) for word in data)


def _addrs(data: Any) -> list[int]:
    _require(isinstance(data, list), "overflow addresses must be a list")
    for addr in data:
        _require(isinstance(addr, int) and not isinstance(addr, bool) and addr >= 0, "malformed overflow address")
    return data


def overflow_cycles(cycle_count: int, live_slots: int, min_stack_depth: int) -> list[int]:
    """Push cycles of the output words at depth ``min_stack_depth`` and below.

    The epilogue pushes the result hash, the log and auth accumulators, the
    self-destruct flag and one hash per live slot, then halts; outputs are
    listed top first.
    """
    first = cycle_count - 5 - 2 * live_slots
    pushes = [first + 5 + 2 * (live_slots - 1 - d) for d in range(live_slots)]
    pushes += [first + 3, first + 2, first + 1, first]
    return pushes[min_stack_depth:]


def _verify(
    proof_bytes: Any,
    program_info: Any,
    stack_inputs: Any,
    output_stack: Any,
    overflow_addrs: Any,
    params: ProverParameters,
) -> None:
    inputs = _words(stack_inputs, "stack input")
    outputs = _words(output_stack, "output stack")
    overflow = _addrs(overflow_addrs)
    _require(isinstance(program_info, (bytes, bytearray)), "program info must be bytes")
    program, micro = _load(bytes(program_info))

    live = len(program.live_slots)
    _require(len(inputs) == 1 + live, "stack inputs do not match the program layout")
    _require(len(outputs) == 4 + live, "output stack does not match the program layout")

    proof = Proof.from_bytes(proof_bytes, params.num_queries)
    _require(overflow == overflow_cycles(proof.cycle_count, live, params.min_stack_depth),
             "overflow addresses do not match the epilogue")
    statement = stark.Statement(
        program_digest=program.digest,
        rom=micro.rom,
        stack_base=micro.stack_base,
        halt_pc=micro.halt_pc,
        inputs=inputs,
        outputs=outputs,
        cycle_count=proof.cycle_count,
    )
    stark.verify(statement, proof, params)


def verify(
    proof: Any,
    program_info: Any,
    stack_inputs: Any,
    output_stack: Any,
    overflow_addrs: Any,
    params: Optional[ProverParameters] = None,
) -> bool:
    """Check ``proof`` against the public metadata of one run."""
    try:
        _verify(proof, program_info, stack_inputs, output_stack, overflow_addrs, params or ProverParameters())
    except Rejected as exc:
        logger.debug("proof rejected: %s", exc)
        return False
    except (ValueError, KeyError, TypeError, IndexError, AttributeError, ZeroDivisionError,
            RecursionError, struct.error) as exc:
        logger.debug("proof rejected: %s: %s", type(exc).__name__, exc)
        return False
    return True
