"""Contract-language parser: LL(1) recursive descent.

Top-level declarations:
  contract Name { field: T; constructor(...) { ... } function m(...): T { ... } }
  function name(...): T { ... }

Decorators precede the item they apply to:
  @public / @private   on a contract (recorded, no runtime effect)
  @read                on a field
  @call(field, ...)    on a method

Statements end with ``;``. Control-flow bodies are blocks, except that ``if``
and ``else`` also accept a single statement.
"""

from __future__ import annotations

from typing import Optional

from stackproof.lexer import Token, TokenType, tokenize
from stackproof.ast_nodes import (
    Program, Declaration, ContractDef, Decorator, FunctionDef, FieldDef, Parameter,
    TypeAnnotation, Statement, LetStmt, AssignStmt, ExprStmt, IfStmt,
    WhileStmt, ForStmt, ReturnStmt, BreakStmt, ContinueStmt,
    Expr, IntLiteral, StringLiteral, BoolLiteral, ArrayLiteral, Identifier,
    ThisExpr, BinaryOp, UnaryOp, FunctionCall, MethodCall, FieldAccess,
    IndexExpr,
)
from stackproof.errors import SourceLocation, syntax_error, duplicate_definition, CompileError


ASSIGN_OPS = {
    TokenType.ASSIGN: "=",
    TokenType.PLUS_ASSIGN: "+=",
    TokenType.MINUS_ASSIGN: "-=",
    TokenType.STAR_ASSIGN: "*=",
}

# decorator name -> whether it takes arguments
CONTRACT_DECORATORS = {"public": False, "private": False}
FIELD_DECORATORS = {"read": False}
METHOD_DECORATORS = {"call": True}


class Parser:
    """LL(1) recursive-descent parser for the contract language."""

    def __init__(self, tokens: list[Token], filename: str = "<stdin>"):
        self.tokens = tokens
        self.pos = 0
        self.filename = filename

    def _current(self) -> Token:
        if self.pos < len(self.tokens):
            return self.tokens[self.pos]
        return self.tokens[-1]  # EOF

    def _peek(self) -> TokenType:
        return self._current().type

    def _peek_ahead(self, offset: int = 1) -> TokenType:
        idx = min(self.pos + offset, len(self.tokens) - 1)
        return self.tokens[idx].type

    def _loc(self) -> SourceLocation:
        return self._current().location

    def _advance(self) -> Token:
        tok = self._current()
        if self.pos < len(self.tokens) - 1:
            self.pos += 1
        return tok

    def _unexpected(self, expected: str) -> CompileError:
        tok = self._current()
        if tok.type == TokenType.EOF:
            return CompileError(syntax_error(f"Unexpected end of file, expected {expected}", tok.location))
        return CompileError(syntax_error(
            f"Unrecognized token '{tok.value}', expected {expected}",
            tok.location,
        ))

    def _expect(self, tt: TokenType, what: Optional[str] = None) -> Token:
        if self._peek() != tt:
            raise self._unexpected(what or tt.name)
        return self._advance()

    def _match(self, tt: TokenType) -> Optional[Token]:
        if self._peek() == tt:
            return self._advance()
        return None

    # -------------------------------------------------------------------
    # Top-level
    # -------------------------------------------------------------------

    def parse(self) -> Program:
        decls: list[Declaration] = []
        while self._peek() != TokenType.EOF:
            decls.append(self._parse_declaration())
        return Program(declarations=decls, filename=self.filename)

    def _parse_declaration(self) -> Declaration:
        decorators = self._parse_decorators()
        tt = self._peek()
        if tt == TokenType.CONTRACT:
            contract = self._parse_contract()
            contract.decorators = self._allowed(decorators, CONTRACT_DECORATORS, "a contract")
            return contract
        elif tt == TokenType.FUNCTION:
            self._allowed(decorators, {}, "a free function")
            self._advance()
            return self._parse_function(contract=None)
        raise self._unexpected("declaration (contract, function)")

    # -------------------------------------------------------------------
    # contract
    # -------------------------------------------------------------------

    def _parse_contract(self) -> ContractDef:
        loc = self._loc()
        self._expect(TokenType.CONTRACT)
        name = self._expect(TokenType.IDENT, "contract name").value
        contract = ContractDef(name=name, location=loc)
        self._expect(TokenType.LBRACE)
        while self._peek() != TokenType.RBRACE:
            decorators = self._parse_decorators()
            tt = self._peek()
            if tt == TokenType.CONSTRUCTOR:
                self._allowed(decorators, {}, "a constructor")
                ctor_loc = self._loc()
                self._advance()
                if contract.constructor is not None:
                    raise CompileError(duplicate_definition(f"{name}.constructor", ctor_loc))
                contract.constructor = self._parse_function_rest(
                    "constructor", contract=name, loc=ctor_loc, allow_return_type=False,
                )
            elif tt == TokenType.FUNCTION or (tt == TokenType.IDENT and self._peek_ahead() == TokenType.LPAREN):
                if tt == TokenType.FUNCTION:
                    self._advance()
                method = self._parse_function(contract=name)
                method.decorators = self._allowed(decorators, METHOD_DECORATORS, "a method")
                contract.methods.append(method)
            elif tt == TokenType.IDENT and self._peek_ahead() == TokenType.COLON:
                field_def = self._parse_field_def()
                field_def.decorators = self._allowed(decorators, FIELD_DECORATORS, "a field")
                contract.fields.append(field_def)
            else:
                raise self._unexpected("field, constructor or method")
        self._expect(TokenType.RBRACE)
        return contract

    def _parse_decorators(self) -> list[Decorator]:
        decorators: list[Decorator] = []
        while self._peek() == TokenType.AT:
            loc = self._loc()
            self._advance()
            name = self._expect(TokenType.IDENT, "decorator name").value
            arguments: list[str] = []
            if self._match(TokenType.LPAREN):
                if self._peek() != TokenType.RPAREN:
                    arguments.append(self._expect(TokenType.IDENT, "field name").value)
                    while self._match(TokenType.COMMA):
                        arguments.append(self._expect(TokenType.IDENT, "field name").value)
                self._expect(TokenType.RPAREN, "')'")
            decorators.append(Decorator(name=name, arguments=arguments, location=loc))
        return decorators

    def _allowed(self, decorators: list[Decorator], allowed: dict[str, bool], what: str) -> list[Decorator]:
        seen: set[str] = set()
        for d in decorators:
            if d.name not in allowed:
                raise CompileError(syntax_error(f"'@{d.name}' is not allowed on {what}", d.location))
            if d.arguments and not allowed[d.name]:
                raise CompileError(syntax_error(f"'@{d.name}' takes no arguments", d.location))
            if d.name in seen:
                raise CompileError(duplicate_definition(f"@{d.name}", d.location))
            seen.add(d.name)
        return decorators

    def _parse_field_def(self) -> FieldDef:
        loc = self._loc()
        name = self._expect(TokenType.IDENT).value
        self._expect(TokenType.COLON)
        type_ann = self._parse_type_annotation()
        self._expect(TokenType.SEMICOLON, "';'")
        return FieldDef(name=name, type_annotation=type_ann, location=loc)

    def _parse_type_annotation(self) -> TypeAnnotation:
        loc = self._loc()
        name = self._expect(TokenType.IDENT, "type name").value
        depth = 0
        while self._peek() == TokenType.LBRACKET and self._peek_ahead() == TokenType.RBRACKET:
            self._advance()
            self._advance()
            depth += 1
        return TypeAnnotation(name=name, array_depth=depth, location=loc)

    # -------------------------------------------------------------------
    # function / method / constructor
    # -------------------------------------------------------------------

    def _parse_function(self, contract: Optional[str]) -> FunctionDef:
        loc = self._loc()
        name = self._expect(TokenType.IDENT, "function name").value
        return self._parse_function_rest(name, contract=contract, loc=loc)

    def _parse_function_rest(
        self,
        name: str,
        contract: Optional[str],
        loc: SourceLocation,
        allow_return_type: bool = True,
    ) -> FunctionDef:
        params = self._parse_param_list()
        return_type: Optional[TypeAnnotation] = None
        if allow_return_type and self._match(TokenType.COLON):
            return_type = self._parse_type_annotation()
        body = self._parse_block()
        return FunctionDef(
            name=name, params=params, return_type=return_type,
            body=body, contract=contract, location=loc,
        )

    def _parse_param_list(self) -> list[Parameter]:
        self._expect(TokenType.LPAREN)
        params: list[Parameter] = []
        if self._peek() != TokenType.RPAREN:
            params.append(self._parse_parameter())
            while self._match(TokenType.COMMA):
                params.append(self._parse_parameter())
        self._expect(TokenType.RPAREN, "')'")
        return params

    def _parse_parameter(self) -> Parameter:
        loc = self._loc()
        name = self._expect(TokenType.IDENT, "parameter name").value
        self._expect(TokenType.COLON, "':'")
        type_ann = self._parse_type_annotation()
        return Parameter(name=name, type_annotation=type_ann, location=loc)

    def _parse_block(self) -> list[Statement]:
        self._expect(TokenType.LBRACE, "'{'")
        stmts: list[Statement] = []
        while self._peek() not in (TokenType.RBRACE, TokenType.EOF):
            stmts.append(self._parse_statement())
        self._expect(TokenType.RBRACE, "'}'")
        return stmts

    def _parse_block_or_statement(self) -> list[Statement]:
        if self._peek() == TokenType.LBRACE:
            return self._parse_block()
        return [self._parse_statement()]

    # -------------------------------------------------------------------
    # Statements
    # -------------------------------------------------------------------

    def _parse_statement(self) -> Statement:
        tt = self._peek()

        if tt == TokenType.RETURN:
            return self._parse_return()
        elif tt == TokenType.IF:
            return self._parse_if()
        elif tt == TokenType.WHILE:
            return self._parse_while()
        elif tt == TokenType.FOR:
            return self._parse_for()
        elif tt == TokenType.BREAK:
            loc = self._loc()
            self._advance()
            self._expect(TokenType.SEMICOLON, "';'")
            return BreakStmt(location=loc)
        elif tt == TokenType.CONTINUE:
            loc = self._loc()
            self._advance()
            self._expect(TokenType.SEMICOLON, "';'")
            return ContinueStmt(location=loc)
        stmt = self._parse_simple_statement()
        self._expect(TokenType.SEMICOLON, "';'")
        return stmt

    def _parse_simple_statement(self) -> Statement:
        """A statement that may appear in a ``for`` header: let, assignment or expression."""
        if self._peek() == TokenType.LET:
            return self._parse_let()
        loc = self._loc()
        expr = self._parse_expression()
        tt = self._peek()
        if tt in ASSIGN_OPS:
            self._check_assignable(expr)
            self._advance()
            value = self._parse_expression()
            return AssignStmt(target=expr, op=ASSIGN_OPS[tt], value=value, location=loc)
        if tt in (TokenType.INCREMENT, TokenType.DECREMENT):
            self._check_assignable(expr)
            op_loc = self._loc()
            self._advance()
            op = "+=" if tt == TokenType.INCREMENT else "-="
            return AssignStmt(target=expr, op=op, value=IntLiteral(value=1, location=op_loc), location=loc)
        return ExprStmt(expr=expr, location=loc)

    def _check_assignable(self, expr: Expr) -> None:
        if not isinstance(expr, (Identifier, FieldAccess, IndexExpr)):
            raise CompileError(syntax_error("Invalid assignment target", expr.location))

    def _parse_return(self) -> ReturnStmt:
        loc = self._loc()
        self._expect(TokenType.RETURN)
        value: Optional[Expr] = None
        if self._peek() != TokenType.SEMICOLON:
            value = self._parse_expression()
        self._expect(TokenType.SEMICOLON, "';'")
        return ReturnStmt(value=value, location=loc)

    def _parse_let(self) -> LetStmt:
        loc = self._loc()
        self._expect(TokenType.LET)
        name = self._expect(TokenType.IDENT, "variable name").value
        type_ann: Optional[TypeAnnotation] = None
        if self._match(TokenType.COLON):
            type_ann = self._parse_type_annotation()
        self._expect(TokenType.ASSIGN, "'=' (variables must be initialized)")
        value = self._parse_expression()
        return LetStmt(name=name, type_annotation=type_ann, value=value, location=loc)

    def _parse_condition(self) -> Expr:
        self._expect(TokenType.LPAREN, "'('")
        condition = self._parse_expression()
        self._expect(TokenType.RPAREN, "')'")
        return condition

    def _parse_if(self) -> IfStmt:
        loc = self._loc()
        self._expect(TokenType.IF)
        condition = self._parse_condition()
        then_body = self._parse_block_or_statement()
        else_body: list[Statement] = []
        if self._match(TokenType.ELSE):
            if self._peek() == TokenType.IF:
                else_body = [self._parse_if()]
            else:
                else_body = self._parse_block_or_statement()
        return IfStmt(condition=condition, then_body=then_body, else_body=else_body, location=loc)

    def _parse_while(self) -> WhileStmt:
        loc = self._loc()
        self._expect(TokenType.WHILE)
        condition = self._parse_condition()
        body = self._parse_block()
        return WhileStmt(condition=condition, body=body, location=loc)

    def _parse_for(self) -> ForStmt:
        """Parse: for (init; condition; step) { body }"""
        loc = self._loc()
        self._expect(TokenType.FOR)
        self._expect(TokenType.LPAREN, "'('")
        init: Optional[Statement] = None
        if self._peek() != TokenType.SEMICOLON:
            init = self._parse_simple_statement()
        self._expect(TokenType.SEMICOLON, "';'")
        condition: Optional[Expr] = None
        if self._peek() != TokenType.SEMICOLON:
            condition = self._parse_expression()
        self._expect(TokenType.SEMICOLON, "';'")
        step: Optional[Statement] = None
        if self._peek() != TokenType.RPAREN:
            step = self._parse_simple_statement()
        self._expect(TokenType.RPAREN, "')'")
        body = self._parse_block()
        return ForStmt(init=init, condition=condition, step=step, body=body, location=loc)

    # -------------------------------------------------------------------
    # Expressions (precedence climbing)
    # -------------------------------------------------------------------

    def _parse_expression(self) -> Expr:
        return self._parse_or()

    def _parse_or(self) -> Expr:
        left = self._parse_and()
        while self._peek() == TokenType.OR:
            loc = self._loc()
            self._advance()
            right = self._parse_and()
            left = BinaryOp(op="||", left=left, right=right, location=loc)
        return left

    def _parse_and(self) -> Expr:
        left = self._parse_equality()
        while self._peek() == TokenType.AND:
            loc = self._loc()
            self._advance()
            right = self._parse_equality()
            left = BinaryOp(op="&&", left=left, right=right, location=loc)
        return left

    def _parse_equality(self) -> Expr:
        left = self._parse_comparison()
        while self._peek() in (TokenType.EQ, TokenType.NEQ):
            loc = self._loc()
            op = self._advance().value
            right = self._parse_comparison()
            left = BinaryOp(op=op, left=left, right=right, location=loc)
        return left

    def _parse_comparison(self) -> Expr:
        left = self._parse_additive()
        while self._peek() in (TokenType.LT, TokenType.GT, TokenType.LTE, TokenType.GTE):
            loc = self._loc()
            op = self._advance().value
            right = self._parse_additive()
            left = BinaryOp(op=op, left=left, right=right, location=loc)
        return left

    def _parse_additive(self) -> Expr:
        left = self._parse_multiplicative()
        while self._peek() in (TokenType.PLUS, TokenType.MINUS):
            loc = self._loc()
            op = self._advance().value
            right = self._parse_multiplicative()
            left = BinaryOp(op=op, left=left, right=right, location=loc)
        return left

    def _parse_multiplicative(self) -> Expr:
        left = self._parse_unary()
        while self._peek() in (TokenType.STAR, TokenType.SLASH, TokenType.PERCENT):
            loc = self._loc()
            op = self._advance().value
            right = self._parse_unary()
            left = BinaryOp(op=op, left=left, right=right, location=loc)
        return left

    def _parse_unary(self) -> Expr:
        if self._peek() == TokenType.NOT:
            loc = self._loc()
            self._advance()
            operand = self._parse_unary()
            return UnaryOp(op="!", operand=operand, location=loc)
        return self._parse_postfix()

    def _parse_args(self) -> list[Expr]:
        self._expect(TokenType.LPAREN)
        args: list[Expr] = []
        if self._peek() != TokenType.RPAREN:
            args.append(self._parse_expression())
            while self._match(TokenType.COMMA):
                args.append(self._parse_expression())
        self._expect(TokenType.RPAREN, "')'")
        return args

    def _parse_postfix(self) -> Expr:
        expr = self._parse_primary()
        while True:
            if self._peek() == TokenType.LPAREN:
                if not isinstance(expr, Identifier):
                    raise CompileError(syntax_error("Expression is not callable", self._loc()))
                expr = FunctionCall(name=expr.name, args=self._parse_args(), location=expr.location)
            elif self._peek() == TokenType.DOT:
                loc = self._loc()
                self._advance()
                name_tok = self._current()
                # `constructor` is a keyword but still a valid member name after a dot
                if name_tok.type not in (TokenType.IDENT, TokenType.CONSTRUCTOR):
                    raise self._unexpected("member name")
                self._advance()
                if self._peek() == TokenType.LPAREN:
                    expr = MethodCall(obj=expr, method_name=name_tok.value, args=self._parse_args(), location=loc)
                else:
                    expr = FieldAccess(obj=expr, field_name=name_tok.value, location=loc)
            elif self._peek() == TokenType.LBRACKET:
                loc = self._loc()
                self._advance()
                index = self._parse_expression()
                self._expect(TokenType.RBRACKET, "']'")
                expr = IndexExpr(obj=expr, index=index, location=loc)
            else:
                break
        return expr

    def _parse_primary(self) -> Expr:
        tt = self._peek()
        loc = self._loc()

        if tt == TokenType.INT_LIT:
            tok = self._advance()
            return IntLiteral(value=int(tok.value), location=loc)

        if tt == TokenType.STRING_LIT:
            tok = self._advance()
            return StringLiteral(value=tok.value, location=loc)

        if tt == TokenType.TRUE:
            self._advance()
            return BoolLiteral(value=True, location=loc)

        if tt == TokenType.FALSE:
            self._advance()
            return BoolLiteral(value=False, location=loc)

        if tt == TokenType.THIS:
            self._advance()
            return ThisExpr(location=loc)

        if tt == TokenType.IDENT:
            tok = self._advance()
            return Identifier(name=tok.value, location=loc)

        if tt == TokenType.LPAREN:
            self._advance()
            expr = self._parse_expression()
            self._expect(TokenType.RPAREN, "')'")
            return expr

        if tt == TokenType.LBRACKET:
            self._advance()
            elements: list[Expr] = []
            if self._peek() != TokenType.RBRACKET:
                elements.append(self._parse_expression())
                while self._match(TokenType.COMMA):
                    if self._peek() == TokenType.RBRACKET:
                        break
                    elements.append(self._parse_expression())
            self._expect(TokenType.RBRACKET, "']'")
            return ArrayLiteral(elements=elements, location=loc)

        raise self._unexpected("expression")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def parse(source: str, filename: str = "<stdin>") -> Program:
    """Parse contract-language source code into an AST."""
    tokens = tokenize(source, filename)
    parser = Parser(tokens, filename)
    return parser.parse()
