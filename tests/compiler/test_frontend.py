"""Lexer, parser and type checker tests.

Every rejected program must surface as a CompileError whose first diagnostic
has the right kind and points at the offending line and column.
"""

import json

import pytest

from stackproof.ast_nodes import (
    AssignStmt, ContractDef, ExprStmt, ForStmt, FunctionCall, FunctionDef, IfStmt, IntLiteral,
    LetStmt, MethodCall, ReturnStmt, WhileStmt,
)
from stackproof.errors import CompileError, ErrorKind
from stackproof.lexer import TokenType, tokenize
from stackproof.parser import parse
from stackproof.pass1_check import check
from stackproof.types import U8, U32, U64, STRING, ArrayType, ContractType


def check_source(source: str):
    return check(parse(source), source)


def compile_error(source: str) -> CompileError:
    with pytest.raises(CompileError) as info:
        check_source(source)
    return info.value


# ===================================================================
# Lexer
# ===================================================================


class TestLexer:
    """Tokens, literals and lexical errors."""

    def test_keywords_and_identifiers(self):
        tokens = tokenize("contract Account { id: string; }")
        assert [t.type for t in tokens] == [
            TokenType.CONTRACT, TokenType.IDENT, TokenType.LBRACE, TokenType.IDENT,
            TokenType.COLON, TokenType.IDENT, TokenType.SEMICOLON, TokenType.RBRACE, TokenType.EOF,
        ]

    def test_hex_literal_normalized_to_decimal(self):
        tokens = tokenize("0xff 1_000")
        assert [t.value for t in tokens[:2]] == ["255", "1000"]

    def test_both_quote_styles_and_escapes(self):
        tokens = tokenize("'x: ' \"a\\n\\\"b\"")
        assert tokens[0].value == "x: "
        assert tokens[1].value == 'a\n"b'

    def test_compound_operators_take_longest_match(self):
        tokens = tokenize("a += 1; b++; c <= d && !e")
        types = [t.type for t in tokens]
        assert TokenType.PLUS_ASSIGN in types
        assert TokenType.INCREMENT in types
        assert TokenType.LTE in types
        assert TokenType.AND in types

    def test_comments_are_skipped(self):
        tokens = tokenize("// line\n/* block\n comment */ let")
        assert tokens[0].type == TokenType.LET
        assert tokens[0].location.line == 3

    def test_unterminated_comment(self):
        with pytest.raises(CompileError) as info:
            tokenize("let x = 1; /* never closed")
        assert info.value.kind == ErrorKind.SYNTAX
        assert "Unterminated comment" in str(info.value)
        assert (info.value.location.line, info.value.location.column) == (1, 12)

    def test_unterminated_string(self):
        with pytest.raises(CompileError) as info:
            tokenize("log('oops)")
        assert info.value.kind == ErrorKind.SYNTAX
        assert info.value.location.column == 5

    def test_invalid_character(self):
        with pytest.raises(CompileError) as info:
            tokenize("let x = 1 # 2;")
        assert "Invalid token '#'" in str(info.value)


# ===================================================================
# Parser
# ===================================================================


class TestParser:
    """Grammar coverage and syntax errors."""

    def test_free_function(self):
        program = parse("function main(x: string): string { log(x); return 'x: ' + x; }")
        assert len(program.functions) == 1
        main = program.functions[0]
        assert main.name == "main"
        assert [p.name for p in main.params] == ["x"]
        assert main.return_type.name == "string"
        assert isinstance(main.body[1], ReturnStmt)

    def test_contract_members(self):
        program = parse("""
            contract City {
                id: string;
                tags: string[][];
                constructor (id: string) { this.id = id; }
                function rename(name: string) { this.id = name; }
                size(): u32 { return this.tags.length; }
            }
        """)
        city = program.contracts[0]
        assert isinstance(city, ContractDef)
        assert [f.name for f in city.fields] == ["id", "tags"]
        assert city.fields[1].type_annotation.array_depth == 2
        assert city.constructor.qualified_name == "City.constructor"
        assert [m.qualified_name for m in city.methods] == ["City.rename", "City.size"]

    def test_increment_desugars_to_compound_assignment(self):
        program = parse("function f(p: u32) { for (let i: u32 = 0; i < p; i++) { } }")
        loop = program.functions[0].body[0]
        assert isinstance(loop, ForStmt)
        assert isinstance(loop.init, LetStmt)
        assert isinstance(loop.step, AssignStmt)
        assert loop.step.op == "+="
        assert isinstance(loop.step.value, IntLiteral) and loop.step.value.value == 1

    def test_if_accepts_single_statement_branches(self):
        program = parse("function f(a: boolean): u32 { if (a) return 1; else return 2; }")
        stmt = program.functions[0].body[0]
        assert isinstance(stmt, IfStmt)
        assert len(stmt.then_body) == 1 and len(stmt.else_body) == 1

    def test_method_call_and_push(self):
        program = parse("function f(xs: u32[]) { xs.push(1); while (false) { } }")
        body = program.functions[0].body
        assert isinstance(body[0], ExprStmt) and isinstance(body[0].expr, MethodCall)
        assert isinstance(body[1], WhileStmt)

    def test_missing_semicolon(self):
        with pytest.raises(CompileError) as info:
            parse("function f() {\n  let x = 1\n}")
        assert info.value.kind == ErrorKind.SYNTAX
        assert info.value.location.line == 3

    def test_invalid_assignment_target(self):
        with pytest.raises(CompileError) as info:
            parse("function f() { 1 = 2; }")
        assert info.value.kind == ErrorKind.SYNTAX

    def test_duplicate_constructor(self):
        with pytest.raises(CompileError) as info:
            parse("contract A { constructor() {} constructor() {} }")
        assert info.value.kind == ErrorKind.DUPLICATE_DEFINITION

    def test_unexpected_end_of_file(self):
        with pytest.raises(CompileError) as info:
            parse("function f() {")
        assert "end of file" in str(info.value)


# ===================================================================
# Type checker
# ===================================================================


class TestChecker:
    """Name resolution, widths, slots and diagnostics."""

    def test_forward_contract_reference(self):
        typed = check_source("""
            contract City { id: string; country: Country; }
            contract Country { id: string; name: string; }
        """)
        assert typed.contracts["City"].field_type("country") == ContractType("Country")

    def test_number_is_u32(self):
        typed = check_source("contract A { n: number; }")
        assert typed.contracts["A"].field_type("n") == U32

    def test_literal_takes_contextual_width(self):
        typed = check_source("function f(a: u64): u64 { return a + 5000000000; }")
        ret = typed.definitions["f"].body[0]
        assert ret.value.ty == U64
        assert ret.value.right.ty == U64

    def test_literal_must_fit_width(self):
        err = compile_error("function f(a: u8): u8 { return a + 256; }")
        assert err.kind == ErrorKind.TYPE_MISMATCH

    def test_slots_params_then_locals(self):
        typed = check_source("function f(a: u32, b: u32): u32 { let c = a; let d = b; return c + d; }")
        f = typed.definitions["f"]
        assert [s.slot for s in f.body[:2]] == [2, 3]
        assert f.local_count == 4

    def test_mismatched_widths_rejected(self):
        err = compile_error("function f(a: u8, b: u32): u32 { return a + b; }")
        assert err.kind == ErrorKind.TYPE_MISMATCH
        assert err.location.line == 1

    def test_unresolved_name(self):
        err = compile_error("function f(): u32 {\n  return missing;\n}")
        assert err.kind == ErrorKind.UNRESOLVED_REFERENCE
        assert (err.location.line, err.location.column) == (2, 10)

    def test_unresolved_type(self):
        err = compile_error("contract A { b: Nowhere; }")
        assert err.kind == ErrorKind.UNRESOLVED_REFERENCE

    def test_arity_mismatch(self):
        err = compile_error("function g(a: u32): u32 { return a; } function f(): u32 { return g(1, 2); }")
        assert err.kind == ErrorKind.ARITY_MISMATCH

    def test_builtin_arity(self):
        err = compile_error("function f() { log(); }")
        assert err.kind == ErrorKind.ARITY_MISMATCH

    def test_cyclic_contracts(self):
        err = compile_error("contract A { b: B; } contract B { a: A; }")
        assert err.kind == ErrorKind.CYCLIC_TYPE

    def test_cycle_through_array(self):
        err = compile_error("contract Node { children: Node[]; }")
        assert err.kind == ErrorKind.CYCLIC_TYPE

    def test_this_outside_contract(self):
        err = compile_error("function f() { log(this); }")
        assert err.kind == ErrorKind.UNRESOLVED_REFERENCE

    def test_selfdestruct_outside_contract(self):
        err = compile_error("function f() { selfdestruct(); }")
        assert err.kind == ErrorKind.UNRESOLVED_REFERENCE

    def test_missing_return(self):
        err = compile_error("function f(a: boolean): u32 { if (a) { return 1; } }")
        assert err.kind == ErrorKind.TYPE_MISMATCH

    def test_duplicate_function(self):
        err = compile_error("function f() {} function f() {}")
        assert err.kind == ErrorKind.DUPLICATE_DEFINITION

    def test_wrapping_methods_typed(self):
        typed = check_source("function f(a: u8, b: u8): u8 { return a.wrappingMul(b); }")
        assert typed.definitions["f"].body[0].value.ty == U8

    def test_ctx_public_key_is_string(self):
        typed = check_source("function f(): string { return ctx.publicKey; }")
        assert typed.definitions["f"].body[0].value.ty == STRING

    def test_array_literal_needs_annotation_when_empty(self):
        err = compile_error("function f() { let xs = []; }")
        assert err.kind == ErrorKind.TYPE_MISMATCH
        typed = check_source("function f(): u32[] { let xs: u32[] = []; return xs; }")
        assert typed.definitions["f"].body[0].value.ty == ArrayType(U32)

    def test_break_outside_loop(self):
        err = compile_error("function f() { break; }")
        assert err.kind == ErrorKind.SYNTAX

    def test_all_errors_collected(self):
        err = compile_error("function f() { log(a); log(b); }")
        assert len(err.errors) == 2

    def test_error_message_shows_source_line(self):
        err = compile_error("function f(): u32 {\n  return missing;\n}")
        assert "return missing;" in str(err)
        assert "^" in str(err)

    def test_error_json(self):
        err = compile_error("function f(): u32 { return missing; }")
        data = json.loads(err.to_json())
        assert data[0]["kind"] == "unresolved-reference"


# ===================================================================
# Decorators
# ===================================================================


VAULT = """
@public
contract Vault {
    @read owner: string;
    admin: string;
    balance: u32;

    @call(owner, admin)
    function deposit(amount: u32) { this.balance = this.balance + amount; }

    function peek(): u32 { return this.balance; }
}
"""


class TestDecorators:
    """Decorator syntax and the checks it expands to."""

    def test_parsed_onto_their_members(self):
        vault = parse(VAULT).contracts[0]
        assert [d.name for d in vault.decorators] == ["public"]
        assert [d.name for d in vault.fields[0].decorators] == ["read"]
        assert vault.fields[1].decorators == []
        deposit = vault.methods[0]
        assert [(d.name, d.arguments) for d in deposit.decorators] == [("call", ["owner", "admin"])]

    def test_lexer_emits_at(self):
        assert tokenize("@read")[0].type == TokenType.AT

    @pytest.mark.parametrize("source", [
        "contract A { @call(x) constructor() {} }",
        "@read function f() {}",
        "contract A { @public x: string; }",
        "contract A { @read(x) x: string; }",
        "@private(x) contract A { }",
        "contract A { @audit function f() {} }",
    ])
    def test_misplaced_decorator(self, source):
        with pytest.raises(CompileError) as info:
            parse(source)
        assert info.value.kind == ErrorKind.SYNTAX

    def test_repeated_decorator(self):
        with pytest.raises(CompileError) as info:
            parse("contract A { k: string; @call(k) @call(k) function f() {} }")
        assert info.value.kind == ErrorKind.DUPLICATE_DEFINITION

    def test_expanded_into_auth_checks(self):
        typed = check_source(VAULT)
        for name in ("Vault.deposit", "Vault.peek"):
            body = typed.definitions[name].body
            calls = [s.expr.name for s in body if isinstance(s, ExprStmt) and isinstance(s.expr, FunctionCall)]
            expected = ["requireAuth", "checkAuth"] if name == "Vault.deposit" else ["checkAuth"]
            assert calls[:len(expected)] == expected

    def test_key_field_must_be_string(self):
        err = compile_error("contract A { n: u32; @call(n) function f() {} }")
        assert err.kind == ErrorKind.TYPE_MISMATCH

    def test_key_field_must_exist(self):
        err = compile_error("contract A { @call(owner) function f() {} }")
        assert err.kind == ErrorKind.UNRESOLVED_REFERENCE


class TestUnsupportedTypes:
    """Nullable, PublicKey and map types are not part of the language."""

    def test_public_key_type_is_unknown(self):
        err = compile_error("contract A { owner: PublicKey; }")
        assert err.kind == ErrorKind.UNRESOLVED_REFERENCE

    @pytest.mark.parametrize("source", [
        "contract A { owner?: string; }",
        "contract A { owner: string?; }",
        "contract A { balances: map<string, u32>; }",
    ])
    def test_nullable_and_map_do_not_parse(self, source):
        with pytest.raises(CompileError) as info:
            parse(source)
        assert info.value.kind == ErrorKind.SYNTAX
