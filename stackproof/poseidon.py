"""Algebraic sponge used for content hashes and the log/auth chains.

A Poseidon-style permutation over the proof field: state width 3, cube
S-box, a 3x3 Cauchy matrix for mixing and 64 full rounds with round
constants derived from SHA-256. It is not a standardized Poseidon instance.
The permutation is cheap to express as polynomial constraints, which is why
public words use it instead of SHA-256: the proof recomputes every public
word from the private values inside the trace.

The sponge has rate 2 and capacity 1. It starts from ``(0, 0, iv)``, absorbs
inputs two at a time (adding them to the first two state words), permutes
after every pair, pads an odd tail with a zero and squeezes the first state
word.
"""

from __future__ import annotations

import hashlib
from typing import Sequence

from stackproof.field import P, inv

WIDTH = 3
ROUNDS = 64
ROUNDS_PER_ROW = 2

IV_VALUE = 1
IV_LOG = 2
IV_AUTH = 3

MDS = tuple(tuple(inv(i + j + WIDTH) for j in range(WIDTH)) for i in range(WIDTH))


def _round_constant(r: int, i: int) -> int:
    data = b"stackproof.poseidon/%d/%d" % (r, i)
    return int.from_bytes(hashlib.sha256(data).digest(), "big") % P


ROUND_CONSTANTS = tuple(tuple(_round_constant(r, i) for i in range(WIDTH)) for r in range(ROUNDS))


def mix(state: Sequence[int]) -> list[int]:
    return [sum(MDS[i][j] * state[j] for j in range(WIDTH)) % P for i in range(WIDTH)]


def full_round(state: Sequence[int], constants: Sequence[int]) -> list[int]:
    return mix([pow((x + c) % P, 3, P) for x, c in zip(state, constants)])


def permute(state: Sequence[int]) -> list[int]:
    state = list(state)
    for constants in ROUND_CONSTANTS:
        state = full_round(state, constants)
    return state


def row_constants(row: int) -> tuple[int, ...]:
    """The six round constants applied by one permutation row of the trace."""
    first = ROUND_CONSTANTS[ROUNDS_PER_ROW * row]
    second = ROUND_CONSTANTS[ROUNDS_PER_ROW * row + 1]
    return tuple(first) + tuple(second)


def sponge(inputs: Sequence[int], iv: int) -> int:
    state = [0, 0, iv]
    for k in range(0, len(inputs), 2):
        state[0] = (state[0] + inputs[k]) % P
        state[1] = (state[1] + (inputs[k + 1] if k + 1 < len(inputs) else 0)) % P
        state = permute(state)
    return state[0]
