"""Contract-language lexer with line/column tracking.

Produces a flat token stream. Whitespace and comments carry no meaning.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from typing import Optional

from stackproof.errors import SourceLocation, syntax_error, CompileError


class TokenType(Enum):
    # Keywords
    CONTRACT = auto()
    FUNCTION = auto()
    CONSTRUCTOR = auto()
    LET = auto()
    IF = auto()
    ELSE = auto()
    WHILE = auto()
    FOR = auto()
    RETURN = auto()
    BREAK = auto()
    CONTINUE = auto()
    TRUE = auto()
    FALSE = auto()
    THIS = auto()

    # Literals
    INT_LIT = auto()
    STRING_LIT = auto()

    # Identifier
    IDENT = auto()

    # Operators
    PLUS = auto()
    MINUS = auto()
    STAR = auto()
    SLASH = auto()
    PERCENT = auto()
    EQ = auto()
    NEQ = auto()
    GTE = auto()
    LTE = auto()
    GT = auto()
    LT = auto()
    AND = auto()
    OR = auto()
    NOT = auto()
    ASSIGN = auto()
    PLUS_ASSIGN = auto()
    MINUS_ASSIGN = auto()
    STAR_ASSIGN = auto()
    INCREMENT = auto()
    DECREMENT = auto()
    DOT = auto()

    # Delimiters
    LBRACE = auto()
    RBRACE = auto()
    LPAREN = auto()
    RPAREN = auto()
    LBRACKET = auto()
    RBRACKET = auto()
    COLON = auto()
    COMMA = auto()
    SEMICOLON = auto()
    AT = auto()

    # Special
    EOF = auto()


KEYWORDS: dict[str, TokenType] = {
    "contract": TokenType.CONTRACT,
    "function": TokenType.FUNCTION,
    "constructor": TokenType.CONSTRUCTOR,
    "let": TokenType.LET,
    "if": TokenType.IF,
    "else": TokenType.ELSE,
    "while": TokenType.WHILE,
    "for": TokenType.FOR,
    "return": TokenType.RETURN,
    "break": TokenType.BREAK,
    "continue": TokenType.CONTINUE,
    "true": TokenType.TRUE,
    "false": TokenType.FALSE,
    "this": TokenType.THIS,
}

# Longest match first: two-character operators before their one-character prefixes.
OPERATORS: list[tuple[str, TokenType]] = [
    ("==", TokenType.EQ),
    ("!=", TokenType.NEQ),
    (">=", TokenType.GTE),
    ("<=", TokenType.LTE),
    ("&&", TokenType.AND),
    ("||", TokenType.OR),
    ("+=", TokenType.PLUS_ASSIGN),
    ("-=", TokenType.MINUS_ASSIGN),
    ("*=", TokenType.STAR_ASSIGN),
    ("++", TokenType.INCREMENT),
    ("--", TokenType.DECREMENT),
    ("+", TokenType.PLUS),
    ("-", TokenType.MINUS),
    ("*", TokenType.STAR),
    ("/", TokenType.SLASH),
    ("%", TokenType.PERCENT),
    (">", TokenType.GT),
    ("<", TokenType.LT),
    ("!", TokenType.NOT),
    ("=", TokenType.ASSIGN),
    (".", TokenType.DOT),
    ("{", TokenType.LBRACE),
    ("}", TokenType.RBRACE),
    ("(", TokenType.LPAREN),
    (")", TokenType.RPAREN),
    ("[", TokenType.LBRACKET),
    ("]", TokenType.RBRACKET),
    (":", TokenType.COLON),
    (",", TokenType.COMMA),
    (";", TokenType.SEMICOLON),
    ("@", TokenType.AT),
]

ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "0": "\0", "\\": "\\", '"': '"', "'": "'"}


@dataclass
class Token:
    type: TokenType
    value: str
    location: SourceLocation

    def __repr__(self) -> str:
        return f"Token({self.type.name}, {self.value!r}, {self.location})"


class Lexer:
    """Tokenizer for contract-language source code."""

    def __init__(self, source: str, filename: str = "<stdin>"):
        self.source = source
        self.filename = filename
        self.pos = 0
        self.line = 1
        self.column = 1

    def _loc(self) -> SourceLocation:
        return SourceLocation(self.line, self.column, self.filename)

    def _peek(self) -> Optional[str]:
        if self.pos < len(self.source):
            return self.source[self.pos]
        return None

    def _peek_ahead(self, offset: int = 1) -> Optional[str]:
        idx = self.pos + offset
        if idx < len(self.source):
            return self.source[idx]
        return None

    def _advance(self) -> str:
        ch = self.source[self.pos]
        self.pos += 1
        if ch == "\n":
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        return ch

    def _skip_whitespace_and_comments(self) -> None:
        while self.pos < len(self.source):
            ch = self.source[self.pos]
            if ch in (" ", "\t", "\r", "\n"):
                self._advance()
            elif ch == "/" and self._peek_ahead() == "/":
                while self.pos < len(self.source) and self.source[self.pos] != "\n":
                    self._advance()
            elif ch == "/" and self._peek_ahead() == "*":
                loc = self._loc()
                self._advance()
                self._advance()
                while True:
                    if self.pos >= len(self.source):
                        raise CompileError(syntax_error("Unterminated comment", loc))
                    if self.source[self.pos] == "*" and self._peek_ahead() == "/":
                        self._advance()
                        self._advance()
                        break
                    self._advance()
            else:
                break

    def _read_string(self) -> Token:
        loc = self._loc()
        quote = self._advance()
        chars: list[str] = []
        while self.pos < len(self.source):
            ch = self._advance()
            if ch == quote:
                return Token(TokenType.STRING_LIT, "".join(chars), loc)
            if ch == "\n":
                break
            if ch == "\\":
                if self.pos >= len(self.source):
                    break
                next_ch = self._advance()
                chars.append(ESCAPES.get(next_ch, next_ch))
            else:
                chars.append(ch)
        raise CompileError(syntax_error("Unterminated string", loc))

    def _read_number(self) -> Token:
        loc = self._loc()
        if self._peek() == "0" and self._peek_ahead() in ("x", "X"):
            self._advance()
            self._advance()
            digits = ""
            while self.pos < len(self.source) and self.source[self.pos] in "0123456789abcdefABCDEF_":
                digits += self._advance()
            digits = digits.replace("_", "")
            if not digits:
                raise CompileError(syntax_error("Failed to parse number", loc))
            return Token(TokenType.INT_LIT, str(int(digits, 16)), loc)

        digits = ""
        while self.pos < len(self.source) and (self.source[self.pos].isdigit() or self.source[self.pos] == "_"):
            digits += self._advance()
        if self._peek() is not None and (self._peek().isalpha() or self._peek() == "."):
            if self._peek() != "." or (self._peek_ahead() or "").isdigit():
                raise CompileError(syntax_error("Failed to parse number", loc))
        return Token(TokenType.INT_LIT, str(int(digits.replace("_", ""))), loc)

    def _read_identifier(self) -> Token:
        loc = self._loc()
        value = ""
        while self.pos < len(self.source) and (self.source[self.pos].isalnum() or self.source[self.pos] == "_"):
            value += self._advance()
        token_type = KEYWORDS.get(value, TokenType.IDENT)
        return Token(token_type, value, loc)

    def tokenize(self) -> list[Token]:
        tokens: list[Token] = []
        while self.pos < len(self.source):
            self._skip_whitespace_and_comments()
            if self.pos >= len(self.source):
                break

            ch = self._peek()
            loc = self._loc()

            if ch in ('"', "'"):
                tokens.append(self._read_string())
            elif ch.isdigit():
                tokens.append(self._read_number())
            elif ch.isalpha() or ch == "_":
                tokens.append(self._read_identifier())
            else:
                for text, token_type in OPERATORS:
                    if self.source.startswith(text, self.pos):
                        for _ in text:
                            self._advance()
                        tokens.append(Token(token_type, text, loc))
                        break
                else:
                    raise CompileError(syntax_error(f"Invalid token '{ch}'", loc))

        tokens.append(Token(TokenType.EOF, "", self._loc()))
        return tokens


def tokenize(source: str, filename: str = "<stdin>") -> list[Token]:
    """Convenience function to tokenize contract-language source code."""
    return Lexer(source, filename).tokenize()
