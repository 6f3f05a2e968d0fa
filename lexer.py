from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional


class AquilaError(Exception):
    """Base class for interpreter errors."""


class AquilaSyntaxError(AquilaError):
    """Raised when a line cannot be tokenized or compiled."""

    def __init__(self, message: str, *, filename: Optional[str] = None, line: Optional[int] = None, statement: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.filename = filename
        self.line = line
        self.statement = statement

    def __str__(self) -> str:
        if self.line is None:
            return self.message
        where = f"{self.filename or '<string>'}:{self.line}"
        if self.statement:
            return f"{self.message} at {where}: {self.statement}"
        return f"{self.message} at {where}"


class UnclosedBlockError(AquilaSyntaxError):
    """Raised when a block opener has no matching closer."""


class UnknownMacroError(AquilaSyntaxError):
    """Raised for unknown '#' macros or setting keys."""


@dataclass
class Token:
    type: str
    value: str
    line: int
    column: int


KEYWORDS = {
    "decl",
    "safe",
    "overwrite",
    "const",
    "global",
    "if",
    "else",
    "for",
    "while",
    "function",
    "recursive",
    "trace",
    "true",
    "false",
    "null",
}

# Single glyphs. The comparison glyphs are part of the source format.
SYMBOLS = {
    "(": "LPAREN",
    ")": "RPAREN",
    "[": "LBRACKET",
    "]": "RBRACKET",
    ",": "COMMA",
    ";": "SEMICOLON",
    "=": "ASSIGN",
    "+": "PLUS",
    "-": "MINUS",
    "*": "STAR",
    "/": "SLASH",
    "%": "PERCENT",
    "<": "LT",
    ">": "GT",
    "{": "LTE",
    "}": "GTE",
    "~": "EQ",
    ":": "NEQ",
    "&": "AND",
    "|": "OR",
    "^": "XOR",
    "!": "NOT",
}

# Two-character spellings accepted as aliases of the glyphs above.
ALIASES = {
    "<=": "LTE",
    ">=": "GTE",
    "==": "EQ",
    "!=": "NEQ",
    "&&": "AND",
    "||": "OR",
}

# Builtins whose argument is kept as raw source text instead of being parsed.
RAW_TEXT_CALLS = {"print_str", "print_str_endl", "interactive_call"}


class Lexer:
    def __init__(self, text: str, filename: str, line: int = 1) -> None:
        self.text = text
        self.filename = filename
        self.index = 0
        self.line = line
        self.column = 1

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        tokens_append = tokens.append
        _advance = self._advance
        text = self.text
        n = len(text)

        while self.index < n:
            ch: str = text[self.index]
            if ch in " \t\r\n":
                _advance()
                continue
            pair = text[self.index:self.index + 2]
            if pair in ALIASES:
                tokens_append(Token(ALIASES[pair], pair, self.line, self.column))
                _advance()
                _advance()
                continue
            if ch in SYMBOLS:
                tokens_append(Token(SYMBOLS[ch], ch, self.line, self.column))
                _advance()
                continue
            if ch.isdigit():
                tokens_append(self._consume_number())
                continue
            if ch == "$":
                tokens_append(self._consume_variable())
                continue
            if self._is_identifier_start(ch):
                ident = self._consume_identifier()
                tokens_append(ident)
                if ident.value in RAW_TEXT_CALLS:
                    tokens.extend(self._consume_raw_arguments())
                continue
            raise AquilaSyntaxError(
                f"Unexpected character '{ch}' at column {self.column}",
                filename=self.filename,
                line=self.line,
                statement=self.text.strip(),
            )
        tokens_append(Token("EOF", "", self.line, self.column))
        return tokens

    def _consume_number(self) -> Token:
        line, col = self.line, self.column
        whole = self._consume_digits()
        if not self._eof and self._peek() == ".":
            saved_index, saved_col = self.index, self.column
            self._advance()  # consume '.'
            frac = self._consume_digits()
            if frac == "":
                # "1." is not a float literal
                self.index, self.column = saved_index, saved_col
                return Token("INT", whole, line, col)
            value = f"{whole}.{frac}"
            if not self._eof and self._peek() == "f":
                self._advance()
            self._reject_trailing_word(whole, line)
            return Token("FLOAT", value, line, col)
        if not self._eof and self._peek() == "f":
            self._advance()
            self._reject_trailing_word(whole, line)
            return Token("FLOAT", whole, line, col)
        self._reject_trailing_word(whole, line)
        return Token("INT", whole, line, col)

    def _reject_trailing_word(self, whole: str, line: int) -> None:
        if not self._eof and self._is_identifier_part(self._peek()):
            raise AquilaSyntaxError(
                f"Invalid numeric literal starting with '{whole}'",
                filename=self.filename,
                line=line,
                statement=self.text.strip(),
            )

    def _consume_digits(self) -> str:
        start = self.index
        while not self._eof and self._peek().isdigit():
            self._advance()
        return self.text[start:self.index]

    def _consume_variable(self) -> Token:
        line, col = self.line, self.column
        self._advance()  # consume '$'
        if self._eof or not self._is_identifier_start(self._peek()):
            raise AquilaSyntaxError(
                "Expected a variable name after '$'",
                filename=self.filename,
                line=line,
                statement=self.text.strip(),
            )
        name = self._consume_word()
        return Token("VARIABLE", name, line, col)

    def _consume_identifier(self) -> Token:
        line, col = self.line, self.column
        value = self._consume_word()
        token_type: str = value.upper() if value in KEYWORDS else "IDENT"
        return Token(token_type, value, line, col)

    def _consume_raw_arguments(self) -> List[Token]:
        """Read "( ... )" verbatim after a raw-text builtin name."""
        while not self._eof and self._peek() in " \t":
            self._advance()
        if self._eof or self._peek() != "(":
            return []
        tokens = [Token("LPAREN", "(", self.line, self.column)]
        self._advance()
        start_line, start_col, start = self.line, self.column, self.index
        depth = 1
        while not self._eof:
            ch = self._peek()
            if ch == "(":
                depth += 1
            elif ch == ")":
                depth -= 1
                if depth == 0:
                    break
            self._advance()
        if self._eof:
            raise AquilaSyntaxError(
                "Unclosed '(' in call",
                filename=self.filename,
                line=start_line,
                statement=self.text.strip(),
            )
        raw = self.text[start:self.index]
        # Emitted even when empty.
        tokens.append(Token("RAW", raw.strip(), start_line, start_col))
        tokens.append(Token("RPAREN", ")", self.line, self.column))
        self._advance()
        return tokens

    def _consume_word(self) -> str:
        start = self.index
        while not self._eof and self._is_identifier_part(self._peek()):
            self._advance()
        return self.text[start:self.index]

    def _is_identifier_start(self, ch: str) -> bool:
        return ch == "_" or ch.isalpha()

    def _is_identifier_part(self, ch: str) -> bool:
        return ch == "_" or ch.isalnum()

    @property
    def _eof(self) -> bool:
        return self.index >= len(self.text)

    def _peek(self) -> str:
        return self.text[self.index]

    def _advance(self) -> None:
        if self.text[self.index] == "\n":
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        self.index += 1


def tokenize_line(text: str, filename: str = "<string>", line: int = 1) -> List[Token]:
    return Lexer(text, filename, line).tokenize()
