"""Dead-code elimination, code generation and program-info encoding."""

import pytest

from stackproof.errors import CompileError, ErrorKind
from stackproof.ir import CompiledProgram, Instruction, Opcode
from stackproof.parser import parse
from stackproof.pass1_check import check
from stackproof.pass2_prune import prune
from stackproof.pass3_emit import emit


def compile_entry(source: str, contract, name: str) -> CompiledProgram:
    return emit(check(parse(source), source), contract, name)


def opcodes(program: CompiledProgram) -> list[Opcode]:
    return [i.op for i in program.instructions]


class TestPrune:
    """Liveness roots and what survives them."""

    def test_unused_local_removed(self):
        source = "function f(a: u32): u32 { let unused = a * 2; return a; }"
        typed = check(parse(source), source)
        pruned = prune(typed, "f")
        assert pruned.removed_statements == 1
        assert len(pruned.functions["f"].body) == 1

    def test_log_keeps_its_inputs(self):
        source = "function f(a: u32) { let b = a * 2; log(b); }"
        pruned = prune(check(parse(source), source), "f")
        assert pruned.removed_statements == 0

    def test_loop_without_effect_removed(self):
        source = """
            function f(p: u32, a: u32, b: u32) {
                for (let i: u32 = 0; i < p; i++) {
                    let c = a.wrappingAdd(b);
                    a = b;
                    b = c;
                }
            }
        """
        pruned = prune(check(parse(source), source), "f")
        assert pruned.functions["f"].body == []

    def test_loop_feeding_return_kept(self):
        source = """
            function f(p: u32, a: u32, b: u32): u32 {
                for (let i: u32 = 0; i < p; i++) {
                    let c = a.wrappingAdd(b);
                    a = b;
                    b = c;
                }
                return b;
            }
        """
        pruned = prune(check(parse(source), source), "f")
        assert pruned.removed_statements == 0

    def test_break_of_live_loop_kept(self):
        source = """
            function f(n: u32): u32 {
                let total: u32 = 0;
                while (true) {
                    if (total > n) { break; }
                    total += 3;
                }
                return total;
            }
        """
        pruned = prune(check(parse(source), source), "f")
        assert pruned.removed_statements == 0

    def test_only_reachable_functions_kept(self):
        source = """
            function helper(a: u32): u32 { return a + 1; }
            function unused(a: u32): u32 { return a; }
            function silent(a: u32): u32 { return a; }
            function main(a: u32): u32 { let x = silent(a); return helper(a); }
        """
        pruned = prune(check(parse(source), source), "main")
        assert set(pruned.functions) == {"main", "helper"}

    def test_effectful_callee_keeps_call(self):
        source = """
            function noisy(a: u32): u32 { log(a); return a; }
            function main(a: u32) { let x = noisy(a); }
        """
        pruned = prune(check(parse(source), source), "main")
        assert set(pruned.functions) == {"main", "noisy"}


class TestEmit:
    """Instruction stream layout and entry selection."""

    def test_prologue_and_epilogue(self):
        program = compile_entry("function main(x: string): string { log(x); return 'x: ' + x; }", None, "main")
        ops = opcodes(program)
        assert ops[:7] == [
            Opcode.ADVICE, Opcode.CALL, Opcode.HASH, Opcode.PUSH_LOG_ACC,
            Opcode.PUSH_AUTH_ACC, Opcode.PUSH_FLAG, Opcode.HALT,
        ]
        assert Opcode.CONCAT in ops
        assert Opcode.LOG in ops
        assert program.instructions[0].arg == (0, "string")

    def test_call_targets_resolved(self):
        program = compile_entry(
            "function g(a: u32): u32 { return a; } function main(a: u32): u32 { return g(a); }", None, "main",
        )
        entries = {f.name: f.entry_pc for f in program.functions}
        for instr in program.instructions:
            if instr.op == Opcode.CALL:
                entry_pc, _, name = instr.arg
                assert entries[name] == entry_pc

    def test_log_makes_field_live(self):
        source = "contract Account { id: string; function main() { log(this.id); } }"
        program = compile_entry(source, "Account", "main")
        assert program.this_slots == ("id",)
        assert program.live_slots == (0,)

    def test_unlogged_field_read_disappears(self):
        source = "contract Account { id: string; function main() { let x = this.id; } }"
        program = compile_entry(source, "Account", "main")
        assert program.live_slots == ()
        assert Opcode.LOAD_THIS not in opcodes(program)

    def test_nested_contract_flattened(self):
        source = """
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
        """
        program = compile_entry(source, "City", "constructor")
        assert program.this_slots == ("id", "name", "country.id", "country.name")
        assert program.live_slots == (0, 1, 2, 3)
        assert program.this_shape == ("City", (
            ("id", 0), ("name", 1), ("country", ("Country", (("id", 2), ("name", 3)))),
        ))

    def test_checked_and_wrapping_arithmetic(self):
        program = compile_entry("function main(a: u64): u64 { return a.wrappingAdd(1) * 2; }", None, "main")
        ops = opcodes(program)
        assert Opcode.WADD in ops and Opcode.MUL in ops
        widths = {i.arg for i in program.instructions if i.op in (Opcode.WADD, Opcode.MUL)}
        assert widths == {64}

    @pytest.mark.parametrize("contract,name", [
        ("Missing", "main"),
        ("Account", "nope"),
        (None, "main"),
        ("Account", "constructor"),
    ])
    def test_unknown_entry(self, contract, name):
        source = "contract Account { id: string; function main() { log(this.id); } }"
        with pytest.raises(CompileError) as info:
            compile_entry(source, contract, name)
        assert info.value.kind == ErrorKind.UNKNOWN_ENTRY


class TestProgramInfo:
    """Canonical public encoding of a compiled program."""

    SOURCE = """
        contract ReverseArray {
            elements: number[];
            function reverse(): number[] {
                let reversed: u32[] = [];
                let i: u32 = this.elements.length;
                while (i > 0) {
                    i -= 1;
                    reversed.push(this.elements[i]);
                }
                return reversed;
            }
        }
    """

    def test_round_trip(self):
        program = compile_entry(self.SOURCE, "ReverseArray", "reverse")
        info = program.to_program_info()
        decoded = CompiledProgram.from_program_info(info)
        assert decoded == program
        assert decoded.digest == program.digest
        assert decoded.to_program_info() == info

    def test_rejects_non_canonical_encoding(self):
        info = compile_entry(self.SOURCE, "ReverseArray", "reverse").to_program_info()
        spaced = info.replace(b",", b", ", 1)
        with pytest.raises(ValueError):
            CompiledProgram.from_program_info(spaced)

    def test_rejects_wrong_magic(self):
        with pytest.raises(ValueError):
            CompiledProgram.from_program_info(b"{}")

    def test_instruction_json_is_strict(self):
        with pytest.raises(ValueError):
            Instruction.from_json(["push", ["u", 8, 256]])
        with pytest.raises(ValueError):
            Instruction.from_json(["halt", 1])
        assert Instruction.from_json(["jump", 3]) == Instruction(Opcode.JUMP, 3)

    def test_disassemble_labels_functions(self):
        text = compile_entry(self.SOURCE, "ReverseArray", "reverse").disassemble()
        assert "ReverseArray.reverse:" in text
        assert "halt" in text
