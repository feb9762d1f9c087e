"""Lowering, the micro machine and the constraint system, without proving."""

import pytest

import stackproof
from stackproof import air, stark
from stackproof.errors import ProofError
from stackproof.lowering import advice_tape, lower
from stackproof.micro import MicroMachine, MicroOp
from stackproof.prover import statement
from stackproof.vm import Machine


PROGRAMS = {
    "echo": ("function main(x: string): string { log(x); return 'x: ' + x; }", None, "main", None, ["hi"]),
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
        None, "main", None, [6, 1, 1],
    ),
    "account": (
        "contract Account { id: string; n: u64; function bump(k: u64) { log(this.id); this.n = this.n * k; } }",
        "Account", "bump", {"id": "acc", "n": 3}, [5],
    ),
}

LIMIT = 1 << 16


def replay(name: str):
    source, contract, entry, this, args = PROGRAMS[name]
    compiled = stackproof.compile(source, contract, entry).compiled
    trace = Machine(compiled, trace=True).run(this, args)
    micro = lower(compiled)
    w = trace.witness
    tape = advice_tape(compiled, w.ctx, w.slots, w.args)
    return compiled, trace, micro, tape


def first_failure(micro, run, public):
    n = stark.trace_length(len(run.rows), run.max_address, len(micro.rom), 4)
    main = air.main_trace(run, n)
    rom = air.rom_columns(micro.rom, n)
    ch = air.Challenges.derive(123456789, 987654321)
    aux = air.aux_trace(main, rom, ch)
    boundary = air.Boundary(micro.stack_base, micro.halt_pc, air.io_sum(ch, public.io()))
    return air.first_failure(main, aux, rom, ch, boundary)


@pytest.mark.parametrize("name", sorted(PROGRAMS))
def test_micro_run_publishes_executor_words(name):
    compiled, trace, micro, tape = replay(name)
    run = MicroMachine(micro.rom, micro.stack_base, tape, LIMIT).run()
    public = statement(compiled, micro, trace)
    assert sorted(run.io) == sorted(public.io())
    assert run.rows[-1].entry.op == MicroOp.HALT
    assert run.rows[-1].pc == micro.halt_pc
    assert run.rows[-1].vc == trace.cycle_count


@pytest.mark.parametrize("name", sorted(PROGRAMS))
def test_honest_rows_satisfy_every_constraint(name):
    compiled, trace, micro, tape = replay(name)
    run = MicroMachine(micro.rom, micro.stack_base, tape, LIMIT).run()
    assert first_failure(micro, run, statement(compiled, micro, trace)) is None


def test_altered_addition_breaks_a_constraint():
    compiled, trace, micro, tape = replay("fibonacci")
    run = MicroMachine(micro.rom, micro.stack_base, tape, LIMIT).run()
    row = next(r for r in run.rows if r.entry.op == MicroOp.WADD)
    row.b.new += 1
    assert first_failure(micro, run, statement(compiled, micro, trace)) is not None


def test_wrong_public_output_breaks_the_io_sum():
    compiled, trace, micro, tape = replay("echo")
    run = MicroMachine(micro.rom, micro.stack_base, tape, LIMIT).run()
    public = statement(compiled, micro, trace)
    forged = stark.Statement(
        public.program_digest, public.rom, public.stack_base, public.halt_pc,
        public.inputs, public.outputs[:-1] + (public.outputs[-1] + 1,), public.cycle_count,
    )
    assert first_failure(micro, run, forged) is not None


def test_unread_advice_is_an_error():
    compiled, trace, micro, tape = replay("echo")
    with pytest.raises(ProofError):
        MicroMachine(micro.rom, micro.stack_base, tape + [0], LIMIT).run()


def test_row_limit():
    compiled, trace, micro, tape = replay("fibonacci")
    with pytest.raises(ProofError):
        MicroMachine(micro.rom, micro.stack_base, tape, 10).run()


def test_lowering_is_deterministic():
    compiled, trace, micro, tape = replay("account")
    again = lower(compiled)
    assert again.rom == micro.rom
    assert "HALT" in micro.disassemble()
