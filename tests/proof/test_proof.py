"""Prover, verifier and configuration tests."""

from concurrent.futures import ThreadPoolExecutor

import pytest

import stackproof
from stackproof.config import ProverParameters, StackproofConfig, find_config, load_config
from stackproof.errors import ProofError
from stackproof.field import to_bytes
from stackproof.hashing import hex_word
from stackproof.micro import MicroMachine
from stackproof.proof import PROOF_MAGIC, Proof
from stackproof.prover import prove
from stackproof.values import Value
from stackproof.verifier import verify as verify_with
from stackproof.vm import Machine


DEMOS = {
    "main": (
        "function main(x: string): string { log(x); return 'x: ' + x; }",
        None, "main", None, ["hello world"],
    ),
    "account": (
        "contract Account { id: string; function main() { log(this.id); } }",
        "Account", "main", {"id": "test"}, [],
    ),
    "reverse": (
        """
        contract ReverseArray {
            elements: number[];
            function reverse(): number[] {
                let reversed: u32[] = [];
                let i: u32 = 0;
                let len: u32 = this.elements.length;
                while (i < len) {
                    reversed.push(this.elements[len - i - 1]);
                    i = i + 1;
                }
                return reversed;
            }
        }
        """,
        "ReverseArray", "reverse", {"elements": [1, 2, 3, 4, 5]}, [],
    ),
    "city": (
        """
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
        contract Country { id: string; name: string; }
        """,
        "City", "constructor",
        {"id": "", "name": "", "country": {"id": "", "name": ""}},
        ["boston", "BOSTON", {"id": "usa", "name": "USA"}],
    ),
    "fibonacci": (
        """
        function main(p: u32, a: u32, b: u32): u32 {
            for (let i: u32 = 0; i < p; i++) {
                let c = a.wrappingAdd(b);
                a = b;
                b = c;
            }
            return b;
        }
        """,
        None, "main", None, [30, 1, 1],
    ),
}

SEVEN = "function main(): u32 { return 7; }"
SECRET_ARG = "function main(secret: string): u32 { return 7; }"
SECRET = "hunter2-private"

# header: magic, version, trace length, cycle count
HEADER = len(PROOF_MAGIC) + 14


def wide_source(count: int) -> str:
    fields = " ".join(f"f{i}: u32;" for i in range(count))
    writes = " ".join(f"this.f{i} = v + {i};" for i in range(count))
    return f"contract Wide {{ {fields} function fill(v: u32) {{ {writes} }} }}"


def run_demo(name: str, generate_proof: bool = True):
    source, contract, entry, this, args = DEMOS[name]
    program = stackproof.compile(source, contract, entry)
    return program.run(this, args, generate_proof=generate_proof)


def public(output) -> tuple:
    return (
        output.proof(), output.program_info(), output.stack_inputs(),
        output.output_stack(), output.overflow_addrs(),
    )


def recorded(source: str, args: list, this=None, contract=None, entry="main"):
    compiled = stackproof.compile(source, contract, entry).compiled
    return compiled, Machine(compiled, trace=True).run(this, args)


def check(proof: Proof, compiled, trace, params: ProverParameters) -> bool:
    return verify_with(proof.to_bytes(), compiled.to_program_info(), trace.stack_inputs,
                       trace.output_stack, trace.overflow_addrs, params)


@pytest.fixture(scope="module")
def demo():
    """Proved demo runs, one per name, shared by the module."""
    cache = {}

    def get(name: str):
        if name not in cache:
            cache[name] = run_demo(name)
        return cache[name]

    return get


class SkewedAdder(MicroMachine):
    """Adds 1000 to the result of the 15th wrapping addition."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.additions = 0

    def _op_wadd(self, e):
        self.additions += 1
        if self.additions != 15:
            return super()._op_wadd(e)
        self._row.target = self._binary(lambda l, r: (self._wrap(l + r, e.a) + 1000) % e.a)


class TestProveAndVerify:
    """Honest proofs verify; proofs are deterministic."""

    @pytest.mark.parametrize("name", sorted(DEMOS))
    def test_demo_verifies(self, demo, name):
        output = demo(name)
        assert output.proof()[:4] == PROOF_MAGIC
        assert stackproof.verify(*public(output))

    def test_proof_is_deterministic(self, demo):
        assert run_demo("account").proof() == demo("account").proof()

    def test_runs_are_independent_across_threads(self):
        with ThreadPoolExecutor(max_workers=2) as executor:
            proofs = list(executor.map(lambda _: run_demo("main").proof(), range(2)))
        assert len(set(proofs)) == 1

    def test_proof_encoding_is_canonical(self, demo):
        raw = demo("account").proof()
        decoded = Proof.from_bytes(raw, stackproof.init().prover.num_queries)
        assert decoded.to_bytes() == raw
        assert len(decoded) == len(raw)

    def test_outputs_match_plain_run(self, demo):
        proved = demo("city")
        plain = run_demo("city", generate_proof=False)
        assert proved.output_stack() == plain.output_stack()
        assert proved.cycle_count() == plain.cycle_count()
        assert plain.proof() is None

    def test_overflow_words(self):
        program = stackproof.compile(wide_source(13), "Wide", "fill")
        output = program.run(program.default_this(), [7], generate_proof=True)
        assert len(output.output_stack()) == 17
        assert len(output.overflow_addrs()) == 1
        assert output.output_stack()[16] == output.result_hash()
        assert stackproof.verify(*public(output))

    def test_no_overflow_at_minimum_depth(self):
        program = stackproof.compile(wide_source(12), "Wide", "fill")
        output = program.run(program.default_this(), [7], generate_proof=True)
        assert len(output.output_stack()) == 16
        assert output.overflow_addrs() == []
        assert stackproof.verify(*public(output))

    def test_decorated_method_with_caller_key(self):
        source = """
            contract Vault {
                @read owner: string;
                balance: u32;
                @call(owner)
                function deposit(amount: u32) { this.balance = this.balance + amount; }
            }
        """
        program = stackproof.compile(source, "Vault", "deposit")
        output = program.run({"owner": "alice", "balance": 1}, [2], generate_proof=True, ctx_public_key="alice")
        assert output.read_auth() == [True, True]
        assert stackproof.verify(*public(output))

    def test_query_count(self):
        compiled, trace = recorded(SEVEN, [])
        params = ProverParameters(num_queries=4)
        proof = prove(trace, compiled, params)
        assert len(proof.queries) == 4
        assert all(len(q.fri) == len(proof.fri_roots) for q in proof.queries)
        assert check(proof, compiled, trace, params)
        assert not check(proof, compiled, trace, ProverParameters(num_queries=5))

    def test_parallel_leaf_hashing_gives_same_proof(self):
        source, contract, entry, this, args = DEMOS["fibonacci"]
        compiled, trace = recorded(source, args)
        params = ProverParameters(num_queries=4)
        sequential = prove(trace, compiled, params)
        threaded = prove(trace, compiled, ProverParameters(num_queries=4, workers=4))
        assert sequential.to_bytes() == threaded.to_bytes()

    def test_trace_too_long(self):
        source, contract, entry, this, args = DEMOS["main"]
        compiled, trace = recorded(source, args)
        with pytest.raises(ProofError):
            prove(trace, compiled, ProverParameters(max_trace_length=4))

    def test_untraced_run_cannot_be_proved(self):
        source, contract, entry, this, args = DEMOS["main"]
        compiled = stackproof.compile(source, contract, entry).compiled
        trace = Machine(compiled).run(this, args)
        with pytest.raises(ProofError):
            prove(trace, compiled, ProverParameters())


class TestPrivacy:
    """Proofs carry no private input, in any encoding."""

    @pytest.fixture(scope="class")
    def secret_run(self):
        program = stackproof.compile(SECRET_ARG, None, "main")
        return program.run(None, [SECRET], generate_proof=True)

    def test_private_argument_absent_from_proof(self, secret_run):
        proof = secret_run.proof()
        assert stackproof.verify(*public(secret_run))
        for encoded in (SECRET.encode("utf-8"), SECRET.encode("utf-16-le"),
                        SECRET.encode("utf-16-be"), SECRET.encode("utf-32-be")):
            assert encoded not in proof
        assert bytes.fromhex(hex_word(Value.string(SECRET))) not in proof
        for ch in SECRET:
            assert to_bytes(ord(ch)) not in proof
        assert to_bytes(len(SECRET)) not in proof

    def test_no_small_field_elements(self, secret_run):
        proof = secret_run.proof()
        chunks = [proof[i:i + 32] for i in range(HEADER, len(proof), 32)]
        assert all(len(c) == 32 for c in chunks)
        assert all(int.from_bytes(c, "big") >= 1 << 64 for c in chunks)

    def test_different_secrets_share_public_data(self, secret_run):
        program = stackproof.compile(SECRET_ARG, None, "main")
        other = program.run(None, ["something else"], generate_proof=True)
        assert other.output_stack() == secret_run.output_stack()
        assert other.stack_inputs() == secret_run.stack_inputs()
        assert other.proof() != secret_run.proof()
        assert stackproof.verify(other.proof(), *public(secret_run)[1:])


class TestForgedTrace:
    """A trace that breaks one transition cannot be proved."""

    PARAMS = ProverParameters(num_queries=8)

    def forged(self, monkeypatch):
        source, contract, entry, this, args = DEMOS["fibonacci"]
        compiled, trace = recorded(source, args)
        monkeypatch.setattr("stackproof.prover.MicroMachine", SkewedAdder)
        return compiled, trace

    def test_honest_run_proves(self):
        source, contract, entry, this, args = DEMOS["fibonacci"]
        compiled, trace = recorded(source, args)
        assert check(prove(trace, compiled, self.PARAMS), compiled, trace, self.PARAMS)

    def test_forged_addition_is_rejected(self, monkeypatch):
        compiled, trace = self.forged(monkeypatch)
        proof = prove(trace, compiled, self.PARAMS, check=False)
        assert not check(proof, compiled, trace, self.PARAMS)

    def test_prover_refuses_forged_trace(self, monkeypatch):
        compiled, trace = self.forged(monkeypatch)
        with pytest.raises(ProofError):
            prove(trace, compiled, self.PARAMS)


class TestTampering:
    """Any change to the proof or the public data is rejected."""

    def test_every_single_bit_flip_is_rejected(self):
        compiled, trace = recorded(SEVEN, [])
        params = ProverParameters(num_queries=1)
        raw = prove(trace, compiled, params).to_bytes()
        info = compiled.to_program_info()
        assert verify_with(raw, info, trace.stack_inputs, trace.output_stack, trace.overflow_addrs, params)
        accepted = []
        for at in range(len(raw)):
            tampered = bytearray(raw)
            tampered[at] ^= 0x01
            if verify_with(bytes(tampered), info, trace.stack_inputs, trace.output_stack,
                           trace.overflow_addrs, params):
                accepted.append(at)
        assert accepted == []

    def test_flipped_root(self, demo):
        output = demo("reverse")
        proof = bytearray(output.proof())
        proof[HEADER] ^= 0x01
        assert not stackproof.verify(bytes(proof), *public(output)[1:])

    @pytest.mark.parametrize("fraction", [0.0, 0.2, 0.4, 0.6, 0.8, 1.0])
    def test_any_flipped_byte(self, demo, fraction):
        output = demo("fibonacci")
        proof = bytearray(output.proof())
        at = min(int(len(proof) * fraction), len(proof) - 1)
        proof[at] ^= 0x01
        assert not stackproof.verify(bytes(proof), *public(output)[1:])

    def test_truncated_proof(self, demo):
        output = demo("account")
        assert not stackproof.verify(output.proof()[:-10], *public(output)[1:])
        assert not stackproof.verify(output.proof() + b"\x00", *public(output)[1:])

    def test_changed_result_word(self, demo):
        output = demo("fibonacci")
        proof, info, inputs, outputs, overflow = public(output)
        outputs[-1] = hex_word(Value.uint(2178310, 32))
        assert not stackproof.verify(proof, info, inputs, outputs, overflow)

    def test_changed_log_word(self, demo):
        output = demo("main")
        proof, info, inputs, outputs, overflow = public(output)
        outputs[-2] = outputs[-1]
        assert not stackproof.verify(proof, info, inputs, outputs, overflow)

    def test_changed_stack_input(self, demo):
        output = demo("account")
        proof, info, inputs, outputs, overflow = public(output)
        inputs[1] = hex_word(Value.string("someone else"))
        assert not stackproof.verify(proof, info, inputs, outputs, overflow)

    def test_changed_overflow_addrs(self):
        program = stackproof.compile(wide_source(13), "Wide", "fill")
        output = program.run(program.default_this(), [7], generate_proof=True)
        proof, info, inputs, outputs, overflow = public(output)
        assert not stackproof.verify(proof, info, inputs, outputs, [overflow[0] + 1])
        assert not stackproof.verify(proof, info, inputs, outputs, [])

    def test_wrong_program_info(self, demo):
        main = demo("main")
        other = stackproof.compile("function main(x: string): string { return x; }", None, "main")
        proof, _, inputs, outputs, overflow = public(main)
        assert not stackproof.verify(proof, other.program_info(), inputs, outputs, overflow)

    def test_proof_swapped_between_runs(self):
        source, contract, entry, this, _ = DEMOS["main"]
        program = stackproof.compile(source, contract, entry)
        first = program.run(this, ["a"], generate_proof=True)
        second = program.run(this, ["b"], generate_proof=True)
        assert not stackproof.verify(first.proof(), *public(second)[1:])

    @pytest.mark.parametrize("proof,info,inputs,outputs,overflow", [
        (None, None, None, None, None),
        (b"junk", b"junk", [], [], []),
        (b"SPRF{}", b"", ["zz"], [], []),
        (b"SPRF[1,2]", b"SPIN", [0], [0], [-1]),
        ("text", 5, "words", {"a": 1}, [True]),
    ])
    def test_garbage_is_rejected_without_raising(self, proof, info, inputs, outputs, overflow):
        assert stackproof.verify(proof, info, inputs, outputs, overflow) is False

    def test_uppercase_words_rejected(self, demo):
        output = demo("account")
        proof, info, inputs, outputs, overflow = public(output)
        assert not stackproof.verify(proof, info, [w.upper() for w in inputs], outputs, overflow)


class TestConfig:
    """Project configuration discovery and validation."""

    def test_defaults_without_file(self, tmp_path):
        config = load_config(start_dir=str(tmp_path))
        if config.path is None:
            assert config.prover == ProverParameters()

    def test_find_config_walks_up(self, tmp_path):
        (tmp_path / ".stackproofrc.yml").write_text("prover:\n  num_queries: 8\n")
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        path = find_config(str(nested))
        assert path == str(tmp_path / ".stackproofrc.yml")
        assert load_config(start_dir=str(nested)).prover.num_queries == 8

    def test_yaml_values(self, tmp_path):
        path = tmp_path / ".stackproofrc.yml"
        path.write_text(
            "prover:\n"
            "  num_queries: 12\n"
            "  max_trace_length: 5000\n"
            "  workers: 2\n"
            "  min_stack_depth: 20\n"
        )
        config = load_config(str(path))
        assert config == StackproofConfig(
            prover=ProverParameters(num_queries=12, max_trace_length=5000, workers=2, min_stack_depth=20),
            path=str(path),
        )

    def test_json_config(self, tmp_path):
        path = tmp_path / ".stackproofrc.json"
        path.write_text('{"prover": {"workers": 3}}')
        assert load_config(str(path)).prover.workers == 3

    def test_bad_values_fall_back_to_defaults(self, tmp_path):
        path = tmp_path / ".stackproofrc.yml"
        path.write_text("prover:\n  num_queries: -3\n  workers: many\n  min_stack_depth: true\n  extra: 1\n")
        assert load_config(str(path)).prover == ProverParameters()

    def test_unparsable_file_gives_defaults(self, tmp_path):
        path = tmp_path / ".stackproofrc.yml"
        path.write_text("prover: [unclosed\n")
        assert load_config(str(path)).prover == ProverParameters()

    def test_missing_file_gives_defaults(self, tmp_path):
        assert load_config(str(tmp_path / "nope.yml")).prover == ProverParameters()

    def test_init_is_idempotent(self):
        assert stackproof.init() is stackproof.init()
