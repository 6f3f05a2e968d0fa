from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Union

from lexer import AquilaSyntaxError, Token, tokenize_line


@dataclass
class SourceLocation:
    file: str
    line: int
    column: int
    statement: str


@dataclass
class Node:
    location: SourceLocation


class Expression(Node):
    pass


@dataclass
class Literal(Expression):
    value: Union[int, float, bool, None]
    literal_type: str


@dataclass
class ListLiteral(Expression):
    items: List[Expression]


@dataclass
class Variable(Expression):
    name: str


@dataclass
class IndexExpression(Expression):
    base: Expression
    indices: List[Expression]


@dataclass
class CallArgument:
    # None for raw-text arguments, which are never evaluated.
    expression: Optional[Expression]
    text: str


@dataclass
class CallExpression(Expression):
    name: str
    args: List[CallArgument]


@dataclass
class BinaryOp(Expression):
    operator: str
    left: Expression
    right: Expression


@dataclass
class UnaryOp(Expression):
    operator: str
    operand: Expression


# Lowest to highest. Every binary operator is left-associative.
BINARY_PRECEDENCE: Dict[str, int] = {
    "OR": 1,
    "XOR": 2,
    "AND": 3,
    "EQ": 4,
    "NEQ": 4,
    "LT": 5,
    "GT": 5,
    "LTE": 5,
    "GTE": 5,
    "PLUS": 6,
    "MINUS": 6,
    "STAR": 7,
    "SLASH": 7,
    "PERCENT": 7,
}

OPERATOR_GLYPHS: Dict[str, str] = {
    "OR": "|",
    "XOR": "^",
    "AND": "&",
    "EQ": "~",
    "NEQ": ":",
    "LT": "<",
    "GT": ">",
    "LTE": "{",
    "GTE": "}",
    "PLUS": "+",
    "MINUS": "-",
    "STAR": "*",
    "SLASH": "/",
    "PERCENT": "%",
    "NOT": "!",
}

UNARY_OPERATORS = {"NOT", "MINUS"}


class Parser:
    """Precedence-climbing parser over the tokens of one source line.

    The statement compiler hands it slices of a line's tokens (a condition,
    an initializer, an assignment target), always terminated by an EOF token.
    """

    def __init__(self, tokens: List[Token], filename: str, source_lines: Mapping[int, str]) -> None:
        self.tokens = tokens
        self.filename = filename
        self.source_lines = source_lines
        self.index = 0

    def parse_expression(self) -> Expression:
        expr = self._parse_expression(1)
        self._expect_end()
        return expr

    def parse_expression_list(self) -> List[Expression]:
        """Parse expressions separated by commas or plain juxtaposition."""
        expressions: List[Expression] = []
        while self._peek().type != "EOF":
            expressions.append(self._parse_expression(1))
            self._match("COMMA")
        return expressions

    def _parse_expression(self, min_precedence: int) -> Expression:
        left = self._parse_unary()
        while True:
            token = self._peek()
            precedence = BINARY_PRECEDENCE.get(token.type)
            if precedence is None or precedence < min_precedence:
                return left
            self.index += 1
            right = self._parse_expression(precedence + 1)
            left = BinaryOp(
                location=self._location_from_token(token),
                operator=OPERATOR_GLYPHS[token.type],
                left=left,
                right=right,
            )

    def _parse_unary(self) -> Expression:
        token = self._peek()
        if token.type not in UNARY_OPERATORS:
            return self._parse_postfix()
        self.index += 1
        operand = self._parse_unary()
        location = self._location_from_token(token)
        # Fold "-3" into a literal so negative constants stay const.
        if token.type == "MINUS" and isinstance(operand, Literal) and operand.literal_type in ("int", "float"):
            return Literal(location=location, value=-operand.value, literal_type=operand.literal_type)  # type: ignore[operator]
        return UnaryOp(location=location, operator=OPERATOR_GLYPHS[token.type], operand=operand)

    def _parse_postfix(self) -> Expression:
        expr = self._parse_primary()
        if self._peek().type != "LBRACKET":
            return expr
        indices: List[Expression] = []
        while self._match("LBRACKET"):
            indices.append(self._parse_expression(1))
            self._consume("RBRACKET")
        return IndexExpression(location=expr.location, base=expr, indices=indices)

    def _parse_primary(self) -> Expression:
        token = self._peek()
        location = self._location_from_token(token)
        if token.type == "INT":
            self.index += 1
            return Literal(location=location, value=int(token.value), literal_type="int")
        if token.type == "FLOAT":
            self.index += 1
            return Literal(location=location, value=float(token.value), literal_type="float")
        if token.type in ("TRUE", "FALSE"):
            self.index += 1
            return Literal(location=location, value=token.type == "TRUE", literal_type="bool")
        if token.type == "NULL":
            self.index += 1
            return Literal(location=location, value=None, literal_type="null")
        if token.type == "VARIABLE":
            self.index += 1
            return Variable(location=location, name=token.value)
        if token.type == "LBRACKET":
            return self._parse_list_literal()
        if token.type == "IDENT":
            if self._peek_next().type == "LPAREN":
                return self._parse_call()
            raise self._error(f"Unknown identifier '{token.value}' (variables are written '${token.value}')", token)
        if token.type == "LPAREN":
            self._consume("LPAREN")
            expr = self._parse_expression(1)
            self._consume("RPAREN")
            return expr
        if token.type == "EOF":
            raise self._error("Unexpected end of expression", token)
        raise self._error(f"Unexpected token '{token.value}' in expression", token)

    def _parse_list_literal(self) -> ListLiteral:
        lbracket = self._consume("LBRACKET")
        items: List[Expression] = []
        if self._peek().type != "RBRACKET":
            while True:
                items.append(self._parse_expression(1))
                if not self._match("COMMA"):
                    break
        self._consume("RBRACKET")
        return ListLiteral(location=self._location_from_token(lbracket), items=items)

    def _parse_call(self) -> CallExpression:
        name = self._consume("IDENT")
        self._consume("LPAREN")
        args: List[CallArgument] = []
        if self._peek().type == "RAW":
            raw = self._consume("RAW")
            args.append(CallArgument(expression=None, text=raw.value))
        elif self._peek().type != "RPAREN":
            while True:
                start = self._peek()
                expression = self._parse_expression(1)
                args.append(CallArgument(expression=expression, text=self._source_between(start, self._peek())))
                if not self._match("COMMA"):
                    break
        self._consume("RPAREN")
        return CallExpression(location=self._location_from_token(name), name=name.value, args=args)

    def _source_between(self, start: Token, end: Token) -> str:
        line = self.source_lines.get(start.line, "")
        if end.type == "EOF" or end.line != start.line:
            return line[start.column - 1:].strip()
        return line[start.column - 1:end.column - 1].strip()

    def _expect_end(self) -> None:
        token = self._peek()
        if token.type != "EOF":
            raise self._error(f"Unexpected token '{token.value}' after expression", token)

    def _consume(self, token_type: str) -> Token:
        token = self._peek()
        if token.type != token_type:
            found = token.value or token.type
            raise self._error(f"Expected token {token_type} but found '{found}'", token)
        self.index += 1
        return token

    def _match(self, token_type: str) -> bool:
        if self._peek().type == token_type:
            self.index += 1
            return True
        return False

    def _peek(self) -> Token:
        return self.tokens[self.index]

    def _peek_next(self) -> Token:
        if self.index + 1 >= len(self.tokens):
            return self.tokens[-1]
        return self.tokens[self.index + 1]

    def _location_from_token(self, token: Token) -> SourceLocation:
        statement = self.source_lines.get(token.line, "").strip()
        return SourceLocation(file=self.filename, line=token.line, column=token.column, statement=statement)

    def _error(self, message: str, token: Token) -> AquilaSyntaxError:
        return AquilaSyntaxError(
            message,
            filename=self.filename,
            line=token.line,
            statement=self.source_lines.get(token.line, "").strip() or None,
        )


def parse_expression(text: str, filename: str = "<string>", line: int = 1) -> Expression:
    tokens = tokenize_line(text, filename, line)
    return Parser(tokens, filename, {line: text}).parse_expression()
