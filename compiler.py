from __future__ import annotations
import re
from dataclasses import dataclass, field
from typing import List, Mapping, Optional, Sequence as SequenceType, Tuple

from lexer import AquilaSyntaxError, Token, UnclosedBlockError, tokenize_line
from parser import (
    CallExpression,
    Expression,
    IndexExpression,
    Node,
    Parser,
    SourceLocation,
    Variable,
)


BLOCK_CLOSERS = {
    "for": "end-for",
    "while": "end-while",
    "if": "end-if",
    "function": "end-function",
}
CLOSERS = set(BLOCK_CLOSERS.values())
_OPENER_RE = re.compile(r"^(for|while|if|function)\b")

TYPE_NAMES = {"int", "float", "bool", "list", "auto"}
RETURN_TYPES = TYPE_NAMES | {"null"}
DECLARATION_TOKENS = {"DECL", "SAFE", "OVERWRITE", "CONST", "GLOBAL"}
BLOCK_TOKENS = {"FOR", "WHILE", "IF", "FUNCTION"}
CONTROL_CALLS = {"return", "break", "continue"}


@dataclass
class RawInstruction:
    line: int
    text: str
    children: List["RawInstruction"] = field(default_factory=list)
    is_block: bool = False


class Instruction(Node):
    pass


@dataclass
class Sequence(Instruction):
    instructions: List[Instruction]


@dataclass
class Declaration(Instruction):
    name: str
    initializer: Optional[Expression]
    declared_type: str
    mode: str = "new"
    is_const: bool = False
    is_global: bool = False


@dataclass
class Assignment(Instruction):
    target: Expression
    expression: Expression
    # Used instead when the target name is unknown at run time.
    fallback: Optional[Declaration] = None


@dataclass
class WhileLoop(Instruction):
    condition: Expression
    body: Sequence


@dataclass
class ForLoop(Instruction):
    start: Instruction
    condition: Expression
    step: Instruction
    body: Sequence


@dataclass
class IfCondition(Instruction):
    condition: Expression
    then_branch: Sequence
    else_branch: Sequence


@dataclass
class VoidCall(Instruction):
    call: CallExpression


@dataclass
class FunctionDef(Instruction):
    name: str
    return_type: str
    params: List[str]
    body: Sequence
    recursive: bool = False


@dataclass
class Trace(Instruction):
    targets: List[Expression]


@dataclass
class Program:
    body: Sequence
    filename: str
    name: str = ""
    libraries: List["Program"] = field(default_factory=list)


def block_opener(text: str) -> Optional[str]:
    match = _OPENER_RE.match(text)
    return match.group(1) if match else None


def build_raw_instructions(lines: Mapping[int, str], filename: str = "<string>") -> List[RawInstruction]:
    """Group numbered lines into a tree, nesting every opener's body under it.

    Blank lines and '#' macro lines are skipped.
    """
    entries: List[Tuple[int, str]] = []
    for number in sorted(lines):
        text = lines[number].strip()
        if not text or text.startswith("#"):
            continue
        entries.append((number, text))
    return _build_range(entries, 0, len(entries), filename)


def _build_range(entries: List[Tuple[int, str]], start: int, stop: int, filename: str) -> List[RawInstruction]:
    nodes: List[RawInstruction] = []
    i = start
    while i < stop:
        number, text = entries[i]
        opener = block_opener(text)
        if opener is None:
            if text in CLOSERS:
                raise AquilaSyntaxError(f"'{text}' has no matching opener", filename=filename, line=number, statement=text)
            nodes.append(RawInstruction(line=number, text=text))
            i += 1
            continue
        end = _find_closer(entries, i, stop, opener, filename)
        children = _build_range(entries, i + 1, end, filename)
        nodes.append(RawInstruction(line=number, text=text, children=children, is_block=True))
        i = end + 1
    return nodes


def _find_closer(entries: List[Tuple[int, str]], index: int, stop: int, opener: str, filename: str) -> int:
    closer = BLOCK_CLOSERS[opener]
    counter = 1
    for j in range(index + 1, stop):
        text = entries[j][1]
        if text == closer:
            counter -= 1
            if counter == 0:
                return j
        elif block_opener(text) == opener:
            counter += 1
    number, text = entries[index]
    raise UnclosedBlockError(f"'{opener}' block is never closed (missing '{closer}')", filename=filename, line=number, statement=text)


def _split_tokens(tokens: SequenceType[Token], separator: str) -> List[List[Token]]:
    parts: List[List[Token]] = []
    current: List[Token] = []
    depth = 0
    for token in tokens:
        if token.type in ("LPAREN", "LBRACKET"):
            depth += 1
        elif token.type in ("RPAREN", "RBRACKET"):
            depth -= 1
        if token.type == separator and depth == 0:
            parts.append(current)
            current = []
            continue
        current.append(token)
    parts.append(current)
    return parts


def _find_top_level(tokens: SequenceType[Token], token_type: str) -> Optional[int]:
    depth = 0
    for index, token in enumerate(tokens):
        if token.type in ("LPAREN", "LBRACKET"):
            depth += 1
        elif token.type in ("RPAREN", "RBRACKET"):
            depth -= 1
        elif token.type == token_type and depth == 0:
            return index
    return None


def _matching_paren(tokens: SequenceType[Token], start: int) -> Optional[int]:
    depth = 0
    for index in range(start, len(tokens)):
        if tokens[index].type == "LPAREN":
            depth += 1
        elif tokens[index].type == "RPAREN":
            depth -= 1
            if depth == 0:
                return index
    return None


class Compiler:
    def __init__(self, filename: str = "<string>", *, implicit_declaration: bool = True) -> None:
        self.filename = filename
        self.implicit_declaration = implicit_declaration

    def compile_program(self, lines: Mapping[int, str], *, name: str = "") -> Program:
        body = self.compile_lines(lines)
        return Program(body=body, filename=self.filename, name=name)

    def compile_lines(self, lines: Mapping[int, str]) -> Sequence:
        raw = build_raw_instructions(lines, self.filename)
        first_line = raw[0].line if raw else 1
        location = SourceLocation(file=self.filename, line=first_line, column=1, statement="<program>")
        return self._compile_block(raw, location)

    def compile_statement(self, text: str, line: int = 1) -> Instruction:
        """Compile one standalone line. Block openers are rejected."""
        raw = RawInstruction(line=line, text=text.strip())
        return self.compile_raw(raw)

    def compile_raw(self, raw: RawInstruction) -> Instruction:
        tokens = tokenize_line(raw.text, self.filename, raw.line)
        return self._compile_tokens(tokens, raw)

    def _compile_block(self, nodes: List[RawInstruction], location: SourceLocation) -> Sequence:
        return Sequence(location=location, instructions=[self.compile_raw(node) for node in nodes])

    def _compile_tokens(self, tokens: List[Token], raw: RawInstruction) -> Instruction:
        first = tokens[0]
        if first.type == "EOF":
            raise self._error("Empty instruction", raw)
        if first.type == "TRACE":
            return self._compile_trace(tokens, raw)
        if first.type in DECLARATION_TOKENS:
            return self._compile_declaration(tokens, raw)
        if first.type == "VARIABLE":
            assign_at = _find_top_level(tokens, "ASSIGN")
            if assign_at is not None:
                return self._compile_assignment(tokens, assign_at, raw)
        if first.type in BLOCK_TOKENS:
            if not raw.is_block:
                raise self._error(f"'{first.value}' cannot be used here", raw)
            if first.type == "FUNCTION":
                return self._compile_function(tokens, raw)
            if first.type == "FOR":
                return self._compile_for(tokens, raw)
            if first.type == "WHILE":
                return self._compile_while(tokens, raw)
            return self._compile_if(tokens, raw)
        if first.type == "ELSE":
            raise self._error("'else' outside of an if block", raw)
        if first.type == "IDENT":
            return self._compile_call(tokens, raw)
        raise self._error("Unrecognized instruction", raw)

    # ---- statements ----
    def _compile_trace(self, tokens: List[Token], raw: RawInstruction) -> Trace:
        targets = self._parser(tokens[1:], raw).parse_expression_list()
        if not targets:
            raise self._error("trace expects at least one variable", raw)
        for target in targets:
            if not isinstance(target, Variable):
                raise self._error("trace expects variables", raw)
        return Trace(location=self._location(raw), targets=targets)

    def _compile_declaration(self, tokens: List[Token], raw: RawInstruction) -> Instruction:
        body = tokens[:-1]
        seen = set()
        i = 0
        while i < len(body) and body[i].type in DECLARATION_TOKENS:
            if body[i].type in seen:
                raise self._error(f"Repeated '{body[i].value}' in declaration", raw)
            seen.add(body[i].type)
            i += 1
        if "SAFE" in seen and "OVERWRITE" in seen:
            raise self._error("'safe' and 'overwrite' cannot be combined", raw)
        mode = "safe" if "SAFE" in seen else "overwrite" if "OVERWRITE" in seen else "new"
        declared_type = "auto"
        if i < len(body) and body[i].type == "IDENT" and body[i].value in TYPE_NAMES:
            declared_type = body[i].value
            i += 1
        declarations: List[Instruction] = []
        for part in _split_tokens(body[i:], "COMMA"):
            declarations.append(
                self._compile_declared_variable(
                    part,
                    raw,
                    declared_type=declared_type,
                    mode=mode,
                    is_const="CONST" in seen,
                    is_global="GLOBAL" in seen,
                )
            )
        if len(declarations) == 1:
            return declarations[0]
        return Sequence(location=self._location(raw), instructions=declarations)

    def _compile_declared_variable(
        self,
        part: List[Token],
        raw: RawInstruction,
        *,
        declared_type: str,
        mode: str,
        is_const: bool,
        is_global: bool,
    ) -> Declaration:
        if not part or part[0].type not in ("VARIABLE", "IDENT"):
            raise self._error("Expected a variable name in declaration", raw)
        name = part[0].value
        rest = part[1:]
        if rest and rest[0].type == "ASSIGN":
            rest = rest[1:]
            if not rest:
                raise self._error(f"Missing initializer for '${name}'", raw)
        initializer: Optional[Expression] = None
        if rest:
            initializer = self._parser(rest, raw).parse_expression()
        elif declared_type == "auto":
            raise self._error(f"Declaration of '${name}' needs a type or an initializer", raw)
        return Declaration(
            location=self._location(raw),
            name=name,
            initializer=initializer,
            declared_type=declared_type,
            mode=mode,
            is_const=is_const,
            is_global=is_global,
        )

    def _compile_assignment(self, tokens: List[Token], assign_at: int, raw: RawInstruction) -> Assignment:
        target = self._parser(tokens[:assign_at], raw).parse_expression()
        if isinstance(target, IndexExpression):
            if not isinstance(target.base, Variable):
                raise self._error("Indexed assignment requires a variable", raw)
        elif not isinstance(target, Variable):
            raise self._error("Invalid assignment target", raw)
        value_tokens = tokens[assign_at + 1:-1]
        if not value_tokens:
            raise self._error("Missing value after '='", raw)
        expression = self._parser(value_tokens, raw).parse_expression()
        location = self._location(raw)
        fallback: Optional[Declaration] = None
        if isinstance(target, Variable) and self.implicit_declaration:
            fallback = Declaration(location=location, name=target.name, initializer=expression, declared_type="auto")
        return Assignment(location=location, target=target, expression=expression, fallback=fallback)

    def _compile_function(self, tokens: List[Token], raw: RawInstruction) -> FunctionDef:
        body = tokens[1:-1]
        i = 0
        recursive = False
        if i < len(body) and body[i].type == "RECURSIVE":
            recursive = True
            i += 1
        if i >= len(body) or body[i].type not in ("IDENT", "NULL") or body[i].value not in RETURN_TYPES:
            raise self._error("Expected a return type after 'function'", raw)
        return_type = body[i].value
        i += 1
        if i >= len(body) or body[i].type != "IDENT":
            raise self._error("Expected a function name", raw)
        name = body[i].value
        if name in CONTROL_CALLS:
            raise self._error(f"'{name}' is reserved", raw)
        i += 1
        if i >= len(body) or body[i].type != "LPAREN" or _matching_paren(body, i) != len(body) - 1:
            raise self._error("Expected '(parameters)' after the function name", raw)
        params: List[str] = []
        for part in _split_tokens(body[i + 1:-1], "COMMA"):
            if not part:
                continue
            if len(part) != 1 or part[0].type not in ("VARIABLE", "IDENT"):
                raise self._error("Function parameters must be plain names", raw)
            if part[0].value in params:
                raise self._error(f"Duplicate parameter '{part[0].value}'", raw)
            params.append(part[0].value)
        location = self._location(raw)
        return FunctionDef(
            location=location,
            name=name,
            return_type=return_type,
            params=params,
            body=self._compile_block(raw.children, location),
            recursive=recursive,
        )

    def _compile_for(self, tokens: List[Token], raw: RawInstruction) -> ForLoop:
        header = tokens[1:-1]
        if not header or header[0].type != "LPAREN" or _matching_paren(header, 0) != len(header) - 1:
            raise self._error("Expected 'for (start; condition; step)'", raw)
        inner = header[1:-1]
        clauses = _split_tokens(inner, "SEMICOLON")
        if len(clauses) == 1:
            clauses = _split_tokens(inner, "COMMA")
        if len(clauses) != 3 or not all(clauses):
            raise self._error("A for header needs exactly three clauses: start; condition; step", raw)
        clause_raw = RawInstruction(line=raw.line, text=raw.text)
        start = self._compile_tokens(clauses[0] + [self._eof(clauses[0])], clause_raw)
        condition = self._parser(clauses[1], raw).parse_expression()
        step = self._compile_tokens(clauses[2] + [self._eof(clauses[2])], clause_raw)
        location = self._location(raw)
        return ForLoop(
            location=location,
            start=start,
            condition=condition,
            step=step,
            body=self._compile_block(raw.children, location),
        )

    def _compile_while(self, tokens: List[Token], raw: RawInstruction) -> WhileLoop:
        if len(tokens) <= 2:
            raise self._error("while expects a condition", raw)
        condition = self._parser(tokens[1:-1], raw).parse_expression()
        location = self._location(raw)
        return WhileLoop(location=location, condition=condition, body=self._compile_block(raw.children, location))

    def _compile_if(self, tokens: List[Token], raw: RawInstruction) -> IfCondition:
        if len(tokens) <= 2:
            raise self._error("if expects a condition", raw)
        condition = self._parser(tokens[1:-1], raw).parse_expression()
        then_nodes: List[RawInstruction] = []
        else_nodes: List[RawInstruction] = []
        in_else = False
        for child in raw.children:
            if child.text == "else":
                if in_else:
                    raise AquilaSyntaxError("Duplicate 'else'", filename=self.filename, line=child.line, statement=child.text)
                in_else = True
                continue
            (else_nodes if in_else else then_nodes).append(child)
        location = self._location(raw)
        return IfCondition(
            location=location,
            condition=condition,
            then_branch=self._compile_block(then_nodes, location),
            else_branch=self._compile_block(else_nodes, location),
        )

    def _compile_call(self, tokens: List[Token], raw: RawInstruction) -> VoidCall:
        location = self._location(raw)
        if len(tokens) == 2 and tokens[0].value in CONTROL_CALLS:
            return VoidCall(location=location, call=CallExpression(location=location, name=tokens[0].value, args=[]))
        expression = self._parser(tokens[:-1], raw).parse_expression()
        if not isinstance(expression, CallExpression):
            raise self._error("Expected a function call", raw)
        return VoidCall(location=location, call=expression)

    # ---- helpers ----
    def _parser(self, tokens: List[Token], raw: RawInstruction) -> Parser:
        if not tokens or tokens[-1].type != "EOF":
            tokens = list(tokens) + [self._eof(tokens, raw)]
        return Parser(tokens, self.filename, {raw.line: raw.text})

    def _eof(self, tokens: SequenceType[Token], raw: Optional[RawInstruction] = None) -> Token:
        if tokens:
            last = tokens[-1]
            return Token("EOF", "", last.line, last.column + len(last.value))
        return Token("EOF", "", raw.line if raw else 1, 1)

    def _location(self, raw: RawInstruction) -> SourceLocation:
        return SourceLocation(file=self.filename, line=raw.line, column=1, statement=raw.text)

    def _error(self, message: str, raw: RawInstruction) -> AquilaSyntaxError:
        return AquilaSyntaxError(message, filename=self.filename, line=raw.line, statement=raw.text)
