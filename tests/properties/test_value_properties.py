"""Property-based tests for values, arithmetic and the commitment primitives.

Arithmetic must agree with integer arithmetic modulo 2**width, the wire and
canonical encodings must be faithful, every Merkle path and transcript
draw must stay inside its domain, and the polynomial toolkit must agree
with direct evaluation.
"""

from __future__ import annotations

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

import stackproof
from stackproof.errors import RuntimeErrorKind
from stackproof.field import (
    P, barycentric_weights, batch_inverse, coset_evaluate, coset_interpolate, evaluate, from_bytes,
    intt, inv, mul_by_vanishing, ntt, root_of_unity, to_bytes,
)
from stackproof.fri import Domain, fold
from stackproof.hashing import hex_word, parse_word
from stackproof.ir import Opcode
from stackproof.merkle import MerkleTree, leaf_hash, tree_height
from stackproof.semantics import Trap, _arith
from stackproof.transcript import Transcript
from stackproof.types import U32, UINT_WIDTHS, ArrayType, STRING
from stackproof.values import Value, from_json, from_wire


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

@st.composite
def width_and_operands(draw):
    width = draw(st.sampled_from(UINT_WIDTHS))
    top = (1 << width) - 1
    return width, draw(st.integers(0, top)), draw(st.integers(0, top))


scalars = st.one_of(
    st.just(Value.null()),
    st.booleans().map(Value.boolean),
    st.text(max_size=12).map(Value.string),
    st.sampled_from(UINT_WIDTHS).flatmap(
        lambda w: st.integers(0, (1 << w) - 1).map(lambda n: Value.uint(n, w))
    ),
    st.binary(min_size=32, max_size=32).map(Value.hash),
)

values = st.recursive(
    scalars,
    lambda children: st.one_of(
        st.lists(children, max_size=4).map(Value.array),
        st.lists(st.tuples(st.text(min_size=1, max_size=5), children), max_size=3).map(
            lambda fields: Value.object("T", fields)
        ),
    ),
    max_leaves=10,
)


# ===========================================================================
# Arithmetic
# ===========================================================================

class TestArithmetic:
    """Checked and wrapping arithmetic against Python integers."""

    @given(width_and_operands(), st.sampled_from([Opcode.WADD, Opcode.WSUB, Opcode.WMUL]))
    @settings(max_examples=300)
    def test_wrapping_is_modular(self, operands, op):
        width, a, b = operands
        expected = {
            Opcode.WADD: a + b, Opcode.WSUB: a - b, Opcode.WMUL: a * b,
        }[op] % (1 << width)
        assert _arith(op, width, a, b) == expected

    @given(width_and_operands(), st.sampled_from([Opcode.ADD, Opcode.SUB, Opcode.MUL]))
    @settings(max_examples=300)
    def test_checked_traps_exactly_when_out_of_range(self, operands, op):
        width, a, b = operands
        exact = {Opcode.ADD: a + b, Opcode.SUB: a - b, Opcode.MUL: a * b}[op]
        if 0 <= exact < (1 << width):
            assert _arith(op, width, a, b) == exact
        else:
            with pytest.raises(Trap) as info:
                _arith(op, width, a, b)
            assert info.value.kind == RuntimeErrorKind.ARITHMETIC_OVERFLOW

    @given(width_and_operands())
    @settings(max_examples=200)
    def test_division_matches_floor_division(self, operands):
        width, a, b = operands
        if b == 0:
            with pytest.raises(Trap):
                _arith(Opcode.DIV, width, a, b)
        else:
            assert _arith(Opcode.DIV, width, a, b) == a // b
            assert _arith(Opcode.MOD, width, a, b) == a % b


WRAP_U8 = stackproof.compile(
    "function main(a: u8, b: u8): u8 { return a.wrappingAdd(b).wrappingMul(b); }", None, "main",
)


@given(st.integers(0, 255), st.integers(0, 255))
@settings(max_examples=50, deadline=None)
def test_compiled_wrapping_matches_python(a, b):
    assert WRAP_U8.run(None, [a, b]).result() == ((a + b) % 256) * b % 256


# ===========================================================================
# Encodings
# ===========================================================================

class TestEncodings:
    """Wire and canonical encodings of values."""

    @given(values)
    @settings(max_examples=200)
    def test_wire_round_trip(self, value):
        assert from_wire(value.to_wire()) == value

    @given(values)
    @settings(max_examples=100)
    def test_content_word_is_canonical(self, value):
        word = hex_word(value)
        assert parse_word(word) == int(word, 16)
        with pytest.raises(ValueError):
            parse_word(word.upper() if word.upper() != word else "g" + word[1:])

    @given(st.lists(st.integers(0, (1 << 32) - 1), max_size=8))
    def test_typed_json_round_trip(self, items):
        t = ArrayType(U32)
        assert from_json(items, t, {}).to_json() == items

    @given(st.text(max_size=20))
    def test_strings_are_not_integers(self, text):
        with pytest.raises(ValueError):
            from_json(text, U32, {})
        assert from_json(text, STRING, {}) == Value.string(text)


# ===========================================================================
# Merkle tree and transcript
# ===========================================================================

class TestCommitment:
    """Merkle paths and Fiat-Shamir draws."""

    @given(st.integers(1, 70))
    @settings(max_examples=40, deadline=None)
    def test_every_auth_path_verifies(self, count):
        rows = [str(i).encode() for i in range(count)]
        salts = [bytes([i % 256]) * 32 for i in range(count)]
        tree = MerkleTree()
        root = tree.build(salts, rows)
        for i in range(count):
            path = tree.auth_path(i)
            assert len(path.siblings) == tree_height(count)
            assert path.verify(leaf_hash(salts[i], rows[i]), root, count)

    @given(st.integers(2, 70), st.data())
    @settings(max_examples=40, deadline=None)
    def test_path_rejects_other_leaf(self, count, data):
        rows = [str(i).encode() for i in range(count)]
        salts = [bytes(32)] * count
        tree = MerkleTree()
        root = tree.build(salts, rows)
        i = data.draw(st.integers(0, count - 1))
        j = data.draw(st.integers(0, count - 1).filter(lambda k: k != i))
        assert not tree.auth_path(i).verify(leaf_hash(salts[j], rows[j]), root, count)

    @given(st.binary(max_size=16), st.integers(1, 500), st.integers(0, 64))
    @settings(max_examples=200)
    def test_indices_distinct_and_in_domain(self, seed, domain, count):
        t = Transcript()
        t.append("seed", seed)
        indices = t.challenge_indices("q", domain, count)
        assert len(indices) == min(domain, count)
        assert len(set(indices)) == len(indices)
        assert all(0 <= i < domain for i in indices)

    @given(st.binary(max_size=16))
    def test_transcript_is_deterministic(self, seed):
        first, second = Transcript(), Transcript()
        first.append("seed", seed)
        second.append("seed", seed)
        assert first.challenge_indices("q", 1000, 10) == second.challenge_indices("q", 1000, 10)


# ===========================================================================
# Field and polynomials
# ===========================================================================

elements = st.integers(0, P - 1)
nonzero = st.integers(1, P - 1)


def poly(max_size: int):
    return st.lists(elements, min_size=1, max_size=max_size)


class TestField:
    """Field inverses, NTTs and the FRI fold."""

    @given(st.lists(nonzero, min_size=1, max_size=12))
    def test_batch_inverse_matches_inverse(self, xs):
        assert batch_inverse(xs) == [inv(x) for x in xs]
        assert all(x * y % P == 1 for x, y in zip(xs, batch_inverse(xs)))

    @given(elements)
    def test_canonical_bytes(self, x):
        assert from_bytes(to_bytes(x)) == x

    @given(st.integers(P, (1 << 256) - 1))
    def test_non_canonical_bytes_rejected(self, x):
        with pytest.raises(ValueError):
            from_bytes(x.to_bytes(32, "big"))

    @given(poly(16), st.sampled_from([16, 32]))
    @settings(max_examples=40)
    def test_ntt_evaluates_on_subgroup(self, coeffs, size):
        values = ntt(coeffs + [0] * (size - len(coeffs)))
        omega = root_of_unity(size)
        for i in (0, 1, size - 1):
            assert values[i] == evaluate(coeffs, pow(omega, i, P))
        assert intt(values)[:len(coeffs)] == coeffs

    @given(poly(8))
    @settings(max_examples=40)
    def test_coset_extension_keeps_degree(self, coeffs):
        lde = coset_evaluate(coeffs, 32, 3)
        assert lde[5] == evaluate(coeffs, 3 * pow(root_of_unity(32), 5, P) % P)
        back = coset_interpolate(lde, 3)
        assert back[:len(coeffs)] == coeffs
        assert not any(back[len(coeffs):])

    @given(poly(6), st.sampled_from([8, 16]))
    @settings(max_examples=40)
    def test_masked_polynomial_agrees_on_subgroup(self, mask, n):
        masked = mul_by_vanishing(mask, n)
        omega = root_of_unity(n)
        assert all(evaluate(masked, pow(omega, i, P)) == 0 for i in range(n))

    @given(poly(16), nonzero)
    @settings(max_examples=40)
    def test_barycentric_matches_direct_evaluation(self, coeffs, z):
        n = 16
        if pow(z, n, P) == 1:
            return
        values = ntt(coeffs + [0] * (n - len(coeffs)))
        weights = barycentric_weights(n, z)
        assert sum(w * v for w, v in zip(weights, values)) % P == evaluate(coeffs, z)

    @given(st.lists(elements, min_size=16, max_size=16), elements)
    @settings(max_examples=40)
    def test_fold_halves_the_degree(self, coeffs, beta):
        size = 64
        domain = Domain(3, root_of_unity(size), size)
        folded = fold(coset_evaluate(coeffs, size, 3), domain, beta)
        back = coset_interpolate(folded, domain.folded().offset)
        assert not any(back[8:])
        even, odd = coeffs[0::2], coeffs[1::2]
        assert back[:8] == [(e + beta * o) % P for e, o in zip(even, odd)]
