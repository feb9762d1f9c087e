"""Executor tests: results, effects, traps and the JSON boundary."""

import pytest

import stackproof
from stackproof.errors import ExecutionError, RuntimeErrorKind
from stackproof.hashing import flag_word, hex_word
from stackproof.values import Value
from stackproof.vm import Machine


MAIN = "function main(x: string): string { log(x); return 'x: ' + x; }"

ACCOUNT = "contract Account { id: string; function main() { log(this.id); } }"

REVERSE_ARRAY = """
contract ReverseArray {
    elements: number[];

    constructor (elements: number[]) {
        this.elements = elements;
    }

    function reverse(): number[] {
      let reversed: u32[] = [];
      let i: u32 = 0;
      let one: u32 = 1;
      let len: u32 = this.elements.length;

      while (i < len) {
        let idx: u32 = len - i - one;
        reversed.push(this.elements[idx]);
        i = i + one;
      }

      return reversed;
    }
}
"""

CITY = """
contract City {
  id: string;
  name: string;
  country: Country;

  constructor(id: string, name: string, country: Country) {
      this.id = id;
      this.name = name;
      this.country = country;
  }
}

contract Country {
  id: string;
  name: string;

  constructor (id: string, name: string) {
    this.id = id;
    this.name = name;
  }
}
"""

FIBONACCI = """
function main(p: u32, a: u32, b: u32): u32 {
  for (let i: u32 = 0; i < p; i++) {
    let c = a.wrappingAdd(b);
    a = b;
    b = c;
  }
  return b;
}
"""

SHOP = """
contract Item { name: string; qty: u32; }
contract Shop {
  items: Item[];
  function rename(i: u32, name: string) { this.items[i].name = name; }
  function restock(i: u32, n: u32) { this.items[i].qty += n; }
}
"""


def run_trapping(source, contract, entry, this, args) -> ExecutionError:
    program = stackproof.compile(source, contract, entry)
    with pytest.raises(ExecutionError) as info:
        program.run(this, args)
    return info.value


class TestPrograms:
    """End-to-end runs of small programs."""

    def test_main_with_log(self):
        output = stackproof.compile(MAIN, None, "main").run(None, ["hello world"])
        assert output.result() == "x: hello world"
        assert output.logs() == ["hello world"]
        assert output.this() is None
        assert output.hashes() == []
        assert output.read_auth() == []
        assert output.cycle_count() == 13
        assert output.proof() is None

    def test_logged_field_is_hashed(self):
        output = stackproof.compile(ACCOUNT, "Account", "main").run({"id": "test"}, [])
        assert output.logs() == ["test"]
        assert output.this() == {"id": "test"}
        assert output.hashes() == [hex_word(Value.string("test"))]

    def test_removing_log_drops_field_from_trace(self):
        logged = stackproof.compile(ACCOUNT, "Account", "main").run({"id": "test"}, [])
        silent_source = ACCOUNT.replace("log(this.id);", "let x = this.id;")
        silent = stackproof.compile(silent_source, "Account", "main").run({"id": "test"}, [])
        assert logged.hashes() == [hex_word(Value.string("test"))]
        assert silent.hashes() == []
        assert silent.logs() == []
        assert silent.result() == logged.result()
        assert silent.cycle_count() < logged.cycle_count()

    def test_reverse_array(self):
        output = stackproof.compile(REVERSE_ARRAY, "ReverseArray", "reverse").run(
            {"elements": [1, 2, 3, 4, 5]}, [],
        )
        assert output.result() == [5, 4, 3, 2, 1]
        assert output.this() == {"elements": [1, 2, 3, 4, 5]}

    def test_reverse_array_constructor(self):
        output = stackproof.compile(REVERSE_ARRAY, "ReverseArray", "constructor").run(
            {"elements": []}, [[7, 8]],
        )
        assert output.this() == {"elements": [7, 8]}
        assert output.result() is None

    def test_nested_construction(self):
        program = stackproof.compile(CITY, "City", "constructor")
        output = program.run(
            {"id": "", "name": "", "country": {"id": "", "name": ""}},
            ["boston", "BOSTON", {"id": "usa", "name": "USA"}],
        )
        assert output.this() == {
            "id": "boston", "name": "BOSTON", "country": {"id": "usa", "name": "USA"},
        }
        assert len(output.hashes()) == 4
        assert output.hashes()[2] == hex_word(Value.string("usa"))

    def test_fibonacci(self):
        program = stackproof.compile(FIBONACCI, None, "main")
        first = program.run(None, [30, 1, 1])
        second = program.run(None, [30, 1, 1])
        assert first.result() == 2178309
        assert first.cycle_count() == second.cycle_count()
        assert first.output_stack() == second.output_stack()

    def test_fibonacci_without_return_is_pruned(self):
        source = FIBONACCI.replace("): u32 {", ") {", 1).replace("return b;", "")
        output = stackproof.compile(source, None, "main").run(None, [30, 1, 1])
        assert output.result() is None
        assert output.cycle_count() == 11

    def test_wrapping_add_wraps(self):
        source = "function main(a: u32): u32 { return a.wrappingAdd(1); }"
        output = stackproof.compile(source, None, "main").run(None, [4294967295])
        assert output.result() == 0

    def test_wrapping_sub_and_mul(self):
        source = "function main(a: u8, b: u8): u8 { return a.wrappingSub(b).wrappingMul(3); }"
        output = stackproof.compile(source, None, "main").run(None, [1, 2])
        assert output.result() == (255 * 3) % 256

    def test_nested_field_update(self):
        program = stackproof.compile(SHOP, "Shop", "rename")
        this = {"items": [{"name": "a", "qty": 1}, {"name": "b", "qty": 2}]}
        output = program.run(this, [1, "z"])
        assert output.this() == {"items": [{"name": "a", "qty": 1}, {"name": "z", "qty": 2}]}

    def test_nested_compound_update(self):
        program = stackproof.compile(SHOP, "Shop", "restock")
        this = {"items": [{"name": "a", "qty": 1}]}
        assert program.run(this, [0, 4]).this() == {"items": [{"name": "a", "qty": 5}]}

    def test_string_concat_and_length(self):
        source = "function main(s: string): u32 { let t = s; t += '!'; return t.length; }"
        assert stackproof.compile(source, None, "main").run(None, ["abc"]).result() == 4

    def test_control_flow(self):
        source = """
            function main(n: u32): u32 {
                let total: u32 = 0;
                for (let i: u32 = 0; i < n; i++) {
                    if (i % 2 == 0) { continue; }
                    if (i > 7 || total > 100) { break; }
                    total += i;
                }
                return total;
            }
        """
        assert stackproof.compile(source, None, "main").run(None, [20]).result() == 1 + 3 + 5 + 7

    def test_helper_calls(self):
        source = """
            function square(a: u64): u64 { return a * a; }
            function main(a: u64, b: u64): u64 { return square(a) + square(b); }
        """
        assert stackproof.compile(source, None, "main").run(None, [3, 4]).result() == 25

    def test_method_calls_on_this(self):
        source = """
            contract Counter {
                count: u32;
                function bump(by: u32) { this.count = this.next(by); }
                next(by: u32): u32 { return this.count + by; }
            }
        """
        output = stackproof.compile(source, "Counter", "bump").run({"count": 2}, [3])
        assert output.this() == {"count": 5}

    def test_json_text_inputs(self):
        output = stackproof.compile(ACCOUNT, "Account", "main").run('{"id": "t"}', "[]")
        assert output.logs() == ["t"]

    def test_default_this(self):
        assert stackproof.compile(CITY, "City", "constructor").default_this() == {
            "id": "", "name": "", "country": {"id": "", "name": ""},
        }
        assert stackproof.compile(MAIN, None, "main").default_this() is None


class TestEffects:
    """Authorization, self-destruct and caller context."""

    AUTH = """
        function main(a: boolean, b: boolean): boolean {
            let x = checkAuth(a);
            requireAuth(b);
            return x;
        }
    """

    def test_auth_sequence(self):
        output = stackproof.compile(self.AUTH, None, "main").run(None, [False, True])
        assert output.read_auth() == [False, True]
        assert output.result() is False

    def test_require_auth_denied(self):
        err = run_trapping(self.AUTH, None, "main", None, [True, False])
        assert err.kind == RuntimeErrorKind.AUTHORIZATION_DENIED

    VAULT = """
        contract Vault {
            @read owner: string;
            balance: u32;

            @call(owner)
            function deposit(amount: u32): u32 {
                this.balance = this.balance + amount;
                return this.balance;
            }
        }
    """

    def test_call_decorator_admits_owner(self):
        program = stackproof.compile(self.VAULT, "Vault", "deposit")
        output = program.run({"owner": "alice", "balance": 1}, [2], ctx_public_key="alice")
        assert output.result() == 3
        assert output.read_auth() == [True, True]

    def test_call_decorator_denies_others(self):
        program = stackproof.compile(self.VAULT, "Vault", "deposit")
        with pytest.raises(ExecutionError) as info:
            program.run({"owner": "alice", "balance": 1}, [2], ctx_public_key="mallory")
        assert info.value.kind == RuntimeErrorKind.AUTHORIZATION_DENIED

    def test_read_decorator_only_records(self):
        source = "contract Note { @read owner: string; text: string; function get(): string { return this.text; } }"
        output = stackproof.compile(source, "Note", "get").run({"owner": "alice", "text": "hi"}, [])
        assert output.result() == "hi"
        assert output.read_auth() == [False]

    def test_selfdestruct(self):
        source = "contract Vault { owner: string; function close() { selfdestruct(); } }"
        output = stackproof.compile(source, "Vault", "close").run({"owner": "o"}, [])
        assert output.self_destructed() is True
        assert output.output_stack()[0] == flag_word(True).hex()

    def test_ctx_public_key(self):
        source = "function main(): string { return ctx.publicKey; }"
        output = stackproof.compile(source, None, "main").run(None, [], ctx_public_key="pk-1")
        assert output.result() == "pk-1"
        assert output.stack_inputs()[0] == hex_word(Value.string("pk-1"))

    def test_output_stack_layout(self):
        output = stackproof.compile(ACCOUNT, "Account", "main").run({"id": "test"}, [])
        words = output.output_stack()
        assert len(words) == 5
        assert words[0] == output.hashes()[0]
        assert words[1] == flag_word(False).hex()
        assert words[-1] == output.result_hash()
        assert output.stack_inputs()[1] == output.hashes()[0]


class TestTraps:
    """Runtime errors carry their kind and cycle."""

    def test_checked_add_overflows(self):
        err = run_trapping("function main(a: u32): u32 { return a + 1; }", None, "main", None, [4294967295])
        assert err.kind == RuntimeErrorKind.ARITHMETIC_OVERFLOW
        assert err.cycle == 4

    def test_checked_sub_underflows(self):
        err = run_trapping("function main(a: u8): u8 { return a - 1; }", None, "main", None, [0])
        assert err.kind == RuntimeErrorKind.ARITHMETIC_OVERFLOW

    def test_division_by_zero(self):
        err = run_trapping("function main(a: u32, b: u32): u32 { return a / b; }", None, "main", None, [1, 0])
        assert err.kind == RuntimeErrorKind.DIVISION_BY_ZERO
        assert err.cycle == 5

    def test_index_out_of_bounds(self):
        err = run_trapping("function main(xs: u32[]): u32 { return xs[3]; }", None, "main", None, [[1, 2]])
        assert err.kind == RuntimeErrorKind.INDEX_OUT_OF_BOUNDS

    @pytest.mark.parametrize("this,args", [
        ({"id": 5}, []),
        ({"id": "a", "extra": 1}, []),
        ({}, []),
        (None, []),
        ({"id": "a"}, [1]),
        ({"id": "a"}, "not json"),
    ])
    def test_boundary_type_mismatch(self, this, args):
        err = run_trapping(ACCOUNT, "Account", "main", this, args)
        assert err.kind == RuntimeErrorKind.TYPE_MISMATCH
        assert err.cycle == 0

    @pytest.mark.parametrize("text", ["\ud800", "ok\udfff"])
    def test_lone_surrogate_is_rejected(self, text):
        err = run_trapping(MAIN, None, "main", None, [text])
        assert err.kind == RuntimeErrorKind.TYPE_MISMATCH
        assert err.cycle == 0

    def test_bool_is_not_an_integer(self):
        err = run_trapping("function main(a: u32): u32 { return a; }", None, "main", None, [True])
        assert err.kind == RuntimeErrorKind.TYPE_MISMATCH

    def test_free_function_rejects_this(self):
        err = run_trapping(MAIN, None, "main", {"id": "x"}, ["a"])
        assert err.kind == RuntimeErrorKind.TYPE_MISMATCH

    def test_error_to_dict(self):
        err = run_trapping("function main(a: u32, b: u32): u32 { return a % b; }", None, "main", None, [1, 0])
        assert err.to_dict()["kind"] == "division-by-zero"


class TestWitness:
    """The private witness is recorded only on request."""

    def test_witness_off_by_default(self):
        program = stackproof.compile(MAIN, None, "main")
        assert Machine(program.compiled).run(None, ["a"]).witness is None

    def test_witness_holds_private_inputs(self):
        program = stackproof.compile(REVERSE_ARRAY, "ReverseArray", "reverse")
        trace = Machine(program.compiled, trace=True).run({"elements": [1, 2, 3]}, [])
        assert trace.witness.args == ()
        assert trace.witness.ctx == Value.string("")
        assert [hex_word(v) for v in trace.witness.slots] == trace.stack_inputs[1:]

    def test_witness_does_not_change_public_words(self):
        program = stackproof.compile(FIBONACCI, None, "main")
        plain = Machine(program.compiled).run(None, [5, 1, 1])
        traced = Machine(program.compiled, trace=True).run(None, [5, 1, 1])
        assert traced.witness.args == (Value.uint(5, 32), Value.uint(1, 32), Value.uint(1, 32))
        assert traced.output_stack == plain.output_stack
        assert traced.cycle_count == plain.cycle_count
