"""Content hashing and digest chains.

Two hash functions live here. ``digest`` is domain-separated SHA-256 over
length-prefixed parts; the Merkle trees, the Fiat-Shamir transcript and the
program digest use it. Public words (content hashes, the log and auth
accumulators and the self-destruct flag) are field elements produced by the
algebraic sponge in ``poseidon``, because the proof has to recompute them
from private values.

A value's digest absorbs a type tag followed by its contents:

    null        [T_NULL, 0]
    boolean     [T_BOOL, 0 | 1]
    uN          [T_UINT + N, n]
    string      [T_STR, length, code points...]
    array       [T_ARR, length, element words...]
    object      [T_OBJ, contract id, field words...]
    hash        [T_HASH, word]

Scalars (null, booleans, integers, hashes) stand for themselves inside an
array or object; strings, arrays and objects are replaced by their digest.
Element types are fixed by the program, so digests of values of one static
type never collide.
"""

from __future__ import annotations

import hashlib
import struct

from stackproof.field import P
from stackproof.poseidon import IV_AUTH, IV_LOG, IV_VALUE, sponge
from stackproof.values import Value, ValueKind

DOMAIN = b"stackproof.v1"

T_NULL = 1
T_BOOL = 2
T_STR = 3
T_ARR = 4
T_OBJ = 5
T_HASH = 6
T_UINT = 16

EMPTY_LOG = 0
EMPTY_AUTH = 0


def digest(label: str, *parts: bytes) -> bytes:
    h = hashlib.sha256()
    h.update(DOMAIN)
    for chunk in (label.encode("ascii"),) + parts:
        h.update(struct.pack(">Q", len(chunk)))
        h.update(chunk)
    return h.digest()


def contract_id(name: str) -> int:
    return int.from_bytes(digest("contract", name.encode("utf-8")), "big") % P


def element_word(value: Value) -> int:
    """What an array element or object field contributes to its parent's digest."""
    if value.kind == ValueKind.NULL:
        return 0
    if value.kind in (ValueKind.BOOLEAN, ValueKind.UINT):
        return int(value.data)
    if value.kind == ValueKind.HASH:
        return int.from_bytes(value.data, "big") % P
    return value_digest(value)


def value_digest(value: Value) -> int:
    kind = value.kind
    if kind == ValueKind.NULL:
        inputs = [T_NULL, 0]
    elif kind == ValueKind.BOOLEAN:
        inputs = [T_BOOL, int(value.data)]
    elif kind == ValueKind.UINT:
        inputs = [T_UINT + value.width, value.data]
    elif kind == ValueKind.STRING:
        points = [ord(c) for c in value.data]
        inputs = [T_STR, len(points)] + points
    elif kind == ValueKind.ARRAY:
        inputs = [T_ARR, len(value.data)] + [element_word(v) for v in value.data]
    elif kind == ValueKind.OBJECT:
        inputs = [T_OBJ, contract_id(value.type_name)] + [element_word(v) for _, v in value.data]
    else:
        inputs = [T_HASH, int.from_bytes(value.data, "big") % P]
    return sponge(inputs, IV_VALUE)


def log_push(log: int, value: Value) -> int:
    return sponge([log, value_digest(value)], IV_LOG)


def auth_push(auth: int, ok: bool) -> int:
    return sponge([auth, int(ok)], IV_AUTH)


def word_bytes(word: int) -> bytes:
    return word.to_bytes(32, "big")


def flag_word(flag: bool) -> bytes:
    return word_bytes(int(flag))


def value_hash(value: Value) -> bytes:
    return word_bytes(value_digest(value))


def hex_word(value: Value) -> str:
    """Public 64-hex form of a value's content hash."""
    return value_hash(value).hex()


def parse_word(text: str) -> int:
    """Inverse of the 64-hex word form. Raises ValueError unless canonical."""
    if not isinstance(text, str) or len(text) != 64:
        raise ValueError(f"malformed word: {text!r}")
    raw = bytes.fromhex(text)
    if raw.hex() != text:
        raise ValueError(f"non-canonical word: {text!r}")
    word = int.from_bytes(raw, "big")
    if word >= P:
        raise ValueError(f"word outside the field: {text!r}")
    return word
