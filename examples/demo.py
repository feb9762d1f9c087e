"""Compile, run, prove and verify a handful of small programs.

    python examples/demo.py
"""

import json
import logging

import stackproof


DEMOS = [
    (
        "main",
        "function main(x: string): string { log(x); return 'x: ' + x; }",
        None, "main", None, ["hello world"],
    ),
    (
        "account",
        "contract Account { id: string; function main() { log(this.id); } }",
        "Account", "main", {"id": "test"}, [],
    ),
    (
        "reverse",
        """
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
        """,
        "ReverseArray", "reverse", {"elements": [1, 2, 3, 4, 5]}, [],
    ),
    (
        "city",
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

        contract Country {
          id: string;
          name: string;

          constructor (id: string, name: string) {
            this.id = id;
            this.name = name;
          }
        }
        """,
        "City", "constructor",
        {"id": "", "name": "", "country": {"id": "", "name": ""}},
        ["boston", "BOSTON", {"id": "usa", "name": "USA"}],
    ),
    (
        "fibonacci",
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
]


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    stackproof.init()
    for label, source, contract, entry, this, args in DEMOS:
        program = stackproof.compile(source, contract, entry)
        output = program.run(this, args, generate_proof=True)
        ok = stackproof.verify(
            output.proof(), output.program_info(),
            output.stack_inputs(), output.output_stack(), output.overflow_addrs(),
        )
        summary = output.to_dict()
        print(f"== {label} ({program.entry})")
        print(f"   result:   {json.dumps(summary['result'])}")
        print(f"   this:     {json.dumps(summary['this'])}")
        print(f"   logs:     {json.dumps(summary['logs'])}")
        print(f"   cycles:   {summary['cycle_count']}")
        print(f"   proof:    {summary['proof_size']} bytes, verified={ok}")


if __name__ == "__main__":
    main()
