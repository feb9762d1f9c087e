"""Prime field arithmetic and polynomial transforms.

All proof arithmetic happens in the field of order

    P = 2**251 + 17 * 2**192 + 1

whose multiplicative group has a subgroup of every power-of-two order up to
2**192, which is what the number-theoretic transform needs. Elements are
plain Python ints in ``[0, P)``. Polynomials are coefficient lists, lowest
degree first.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Sequence

P = 2**251 + 17 * 2**192 + 1
GENERATOR = 3
TWO_ADICITY = 192
ELEMENT_BYTES = 32


def inv(a: int) -> int:
    if a % P == 0:
        raise ZeroDivisionError("inverse of zero")
    return pow(a, P - 2, P)


def batch_inverse(values: Sequence[int]) -> list[int]:
    """Inverses of many non-zero elements with a single exponentiation."""
    n = len(values)
    if n == 0:
        return []
    prefix = [1] * n
    acc = 1
    for i, v in enumerate(values):
        prefix[i] = acc
        acc = acc * v % P
    acc = inv(acc)
    out = [0] * n
    for i in range(n - 1, -1, -1):
        out[i] = acc * prefix[i] % P
        acc = acc * values[i] % P
    return out


def root_of_unity(n: int) -> int:
    """Generator of the subgroup of order ``n`` (a power of two)."""
    if n <= 0 or n & (n - 1) or n.bit_length() - 1 > TWO_ADICITY:
        raise ValueError(f"no subgroup of order {n}")
    return pow(GENERATOR, (P - 1) // n, P)


def to_bytes(a: int) -> bytes:
    return a.to_bytes(ELEMENT_BYTES, "big")


def from_bytes(data: bytes) -> int:
    """Decode one canonical element. Raises ValueError for values >= P."""
    if len(data) != ELEMENT_BYTES:
        raise ValueError("field element must be 32 bytes")
    value = int.from_bytes(data, "big")
    if value >= P:
        raise ValueError("non-canonical field element")
    return value


def from_hash(data: bytes) -> int:
    """Map arbitrary bytes (a hash output) onto the field."""
    return int.from_bytes(data, "big") % P


# ---------------------------------------------------------------------------
# NTT
# ---------------------------------------------------------------------------

@lru_cache(maxsize=None)
def _bit_reversal(n: int) -> tuple[int, ...]:
    bits = n.bit_length() - 1
    return tuple(int(format(i, f"0{bits}b")[::-1], 2) if bits else 0 for i in range(n))


@lru_cache(maxsize=64)
def _twiddles(n: int, inverse: bool) -> tuple[tuple[int, ...], ...]:
    """Per-stage twiddle factors for an iterative radix-2 transform of size ``n``."""
    root = root_of_unity(n)
    if inverse:
        root = inv(root)
    stages = []
    length = 2
    while length <= n:
        step = pow(root, n // length, P)
        half = length // 2
        ws = [1] * half
        for k in range(1, half):
            ws[k] = ws[k - 1] * step % P
        stages.append(tuple(ws))
        length *= 2
    return tuple(stages)


def _transform(values: Sequence[int], inverse: bool) -> list[int]:
    n = len(values)
    if n & (n - 1):
        raise ValueError(f"transform size {n} is not a power of two")
    order = _bit_reversal(n)
    a = [values[order[i]] for i in range(n)]
    length = 2
    for ws in _twiddles(n, inverse):
        half = length // 2
        for start in range(0, n, length):
            for k in range(half):
                i = start + k
                j = i + half
                t = a[j] * ws[k] % P
                u = a[i]
                a[i] = (u + t) % P
                a[j] = (u - t) % P
        length *= 2
    return a


def ntt(coeffs: Sequence[int]) -> list[int]:
    """Evaluations of a polynomial on the subgroup of order ``len(coeffs)``."""
    return _transform(coeffs, inverse=False)


def intt(values: Sequence[int]) -> list[int]:
    """Coefficients of the polynomial taking ``values`` on the subgroup."""
    n = len(values)
    n_inv = inv(n)
    return [c * n_inv % P for c in _transform(values, inverse=True)]


def coset_evaluate(coeffs: Sequence[int], size: int, offset: int) -> list[int]:
    """Evaluate on ``offset * <w>`` where ``w`` has order ``size``."""
    if len(coeffs) > size:
        raise ValueError("polynomial does not fit the evaluation domain")
    scaled = [0] * size
    power = 1
    for i, c in enumerate(coeffs):
        scaled[i] = c * power % P
        power = power * offset % P
    return ntt(scaled)


def coset_interpolate(values: Sequence[int], offset: int) -> list[int]:
    """Inverse of ``coset_evaluate`` for a full-size coefficient list."""
    coeffs = intt(values)
    offset_inv = inv(offset)
    power = 1
    for i in range(len(coeffs)):
        coeffs[i] = coeffs[i] * power % P
        power = power * offset_inv % P
    return coeffs


def evaluate(coeffs: Sequence[int], x: int) -> int:
    acc = 0
    for c in reversed(coeffs):
        acc = (acc * x + c) % P
    return acc


def add_polys(a: Sequence[int], b: Sequence[int]) -> list[int]:
    out = list(a) + [0] * max(0, len(b) - len(a))
    for i, c in enumerate(b):
        out[i] = (out[i] + c) % P
    return out


def mul_by_vanishing(coeffs: Sequence[int], n: int) -> list[int]:
    """``coeffs * (x**n - 1)``."""
    out = [0] * (len(coeffs) + n)
    for i, c in enumerate(coeffs):
        out[i] = (out[i] - c) % P
        out[i + n] = (out[i + n] + c) % P
    return out


def barycentric_weights(n: int, z: int) -> list[int]:
    """Weights ``w_i`` with ``f(z) = sum(w_i * f(omega**i))`` for deg f < n.

    ``z`` must lie outside the subgroup of order ``n``.
    """
    omega = root_of_unity(n)
    points = [1] * n
    for i in range(1, n):
        points[i] = points[i - 1] * omega % P
    denominators = batch_inverse([(z - x) % P for x in points])
    scale = (pow(z, n, P) - 1) * inv(n) % P
    return [scale * x % P * d % P for x, d in zip(points, denominators)]
