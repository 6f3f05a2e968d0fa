from __future__ import annotations
import enum
import json
import os
import re
import sys
import numpy as np
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

from compiler import (
    CONTROL_CALLS,
    Assignment,
    Compiler,
    Declaration,
    ForLoop,
    FunctionDef,
    IfCondition,
    Instruction,
    Program,
    Sequence,
    Trace,
    VoidCall,
    WhileLoop,
)
from environment import (
    NUMERIC_TYPES,
    TYPE_AUTO,
    TYPE_BOOL,
    TYPE_FLOAT,
    TYPE_INT,
    TYPE_LIST,
    TYPE_NULL,
    AquilaNameError,
    AquilaRecursionError,
    AquilaRuntimeError,
    AquilaTypeError,
    AquilaZeroDivisionError,
    ChangeObserver,
    ControlFlowError,
    Environment,
    InvalidClassifierError,
    InvalidIndexError,
    StopRequested,
    Value,
    copy_payload,
    copy_value,
    default_value,
    make_bool,
    make_float,
    make_int,
    make_list,
    make_null,
    render_value,
    values_equal,
)
from extensions import AquilaExtensionError, HookRegistry, RuntimeServices, StepContext, build_default_services
from lexer import AquilaSyntaxError
from loader import Settings, apply_macros, extract_macros, read_lines, read_source
from parser import (
    BinaryOp,
    CallExpression,
    Expression,
    IndexExpression,
    ListLiteral,
    Literal,
    SourceLocation,
    UnaryOp,
    Variable,
)


_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Python frames spent per nested Aquila call, roughly.
_PY_FRAMES_PER_CALL = 40


class Signal(enum.Enum):
    NORMAL = "normal"
    BREAK = "break"
    CONTINUE = "continue"
    RETURN = "return"


@dataclass(frozen=True)
class Control:
    signal: Signal
    value: Optional[Value] = None


NORMAL = Control(Signal.NORMAL)


@dataclass
class Function:
    name: str
    params: List[str]
    return_type: str
    body: Sequence
    recursive: bool
    definition: FunctionDef
    active_calls: int = 0


@dataclass
class Thunk:
    """An unevaluated call argument bound to the caller's environment."""

    expression: Optional[Expression]
    text: str
    env: Environment
    interpreter: "Interpreter"

    def force(self) -> Value:
        if self.expression is None:
            raise AquilaTypeError(f"'{self.text}' is raw text, not an expression", rule="CALL")
        return self.interpreter.evaluate(self.expression, self.env)


@dataclass
class Frame:
    name: str
    env: Environment
    frame_id: str
    call_location: Optional[SourceLocation]


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    frame_id: Optional[str]
    source_location: Optional[SourceLocation]
    statement: Optional[str]
    env_snapshot: Optional[Dict[str, str]]
    rewrite_record: Optional[Dict[str, Any]]


class StateLogger:
    def __init__(self, verbose: bool) -> None:
        self.verbose = verbose
        self.entries: List[StateEntry] = []
        self.next_state_index = 0
        self.last_state_id = "seed"
        self.frame_last_entry: Dict[str, StateEntry] = {}

    def record(
        self,
        *,
        frame: Optional[Frame],
        location: Optional[SourceLocation],
        statement: Optional[str],
        rewrite_record: Optional[Dict[str, Any]] = None,
        env_snapshot: Optional[Dict[str, str]] = None,
    ) -> StateEntry:
        rewrite = {} if rewrite_record is None else rewrite_record
        rewrite.setdefault("from_state_id", self.last_state_id)
        step_index = self.next_state_index
        state_id = f"s_{step_index:06d}"
        rewrite["to_state_id"] = state_id
        entry = StateEntry(
            step_index=step_index,
            state_id=state_id,
            frame_id=frame.frame_id if frame else None,
            source_location=location,
            statement=statement,
            env_snapshot=env_snapshot,
            rewrite_record=rewrite,
        )
        self.entries.append(entry)
        if frame:
            self.frame_last_entry[frame.frame_id] = entry
        self.last_state_id = state_id
        self.next_state_index += 1
        return entry

    def last_entry_for_frame(self, frame_id: str) -> Optional[StateEntry]:
        return self.frame_last_entry.get(frame_id)

    def rules(self) -> List[str]:
        return [entry.rewrite_record.get("rule", "") for entry in self.entries if entry.rewrite_record]


@dataclass
class Alteration:
    """One recorded change of a traced variable."""

    name: str
    kind: str
    value: str
    aux: List[str] = field(default_factory=list)


BuiltinImpl = Callable[["Interpreter", List[Thunk], Environment, SourceLocation], Value]


@dataclass
class BuiltinFunction:
    name: str
    min_args: int
    max_args: Optional[int]
    impl: BuiltinImpl

    def validate(self, supplied: int, location: Optional[SourceLocation] = None) -> None:
        if supplied < self.min_args:
            raise AquilaTypeError(
                f"{self.name} expects at least {self.min_args} arguments but received {supplied}",
                location=location,
                rule=self.name,
            )
        if self.max_args is not None and supplied > self.max_args:
            raise AquilaTypeError(
                f"{self.name} expects at most {self.max_args} arguments but received {supplied}",
                location=location,
                rule=self.name,
            )


def normalize_index(position: int, length: int, *, rule: str, location: Optional[SourceLocation], allow_end: bool = False) -> int:
    """Map a possibly negative index onto [0, length) (or [0, length] with allow_end)."""
    limit = length + 1 if allow_end else length
    normalized = position + limit if position < 0 else position
    if not 0 <= normalized < limit:
        raise InvalidIndexError(f"Index {position} out of range for list of length {length}", location=location, rule=rule)
    return normalized


class Builtins:
    def __init__(self, *, seed: Optional[int] = None) -> None:
        self.table: Dict[str, BuiltinFunction] = {}
        self.rng = np.random.default_rng(seed)
        # Value builtins.
        self._register_custom("length", 1, 1, self._length)
        self._register_custom("list_at", 2, 2, self._list_at)
        self._register_custom("copy_list", 1, 1, self._copy_list)
        self._register_custom("float2int", 1, 1, self._float2int)
        self._register_custom("int2float", 1, 1, self._int2float)
        self._register_custom("random", 0, 0, self._random)
        self._register_custom("sqrt", 1, 1, self._sqrt)
        # Output.
        self._register_custom("print_value", 1, 1, self._print_value)
        self._register_custom("print_value_endl", 1, 1, self._print_value_endl)
        self._register_custom("print_str", 1, 1, self._print_str)
        self._register_custom("print_str_endl", 1, 1, self._print_str_endl)
        self._register_custom("print_endl", 0, 0, self._print_endl)
        # Mutation.
        self._register_custom("delete_var", 1, 1, self._delete_var)
        self._register_custom("delete_value_at", 2, 2, self._delete_value_at)
        self._register_custom("insert_value_at", 3, 3, self._insert_value_at)
        self._register_custom("append_value", 2, 2, self._append_value)
        self._register_custom("swap", 3, 3, self._swap)
        self._register_custom("interactive_call", 1, 1, self._interactive_call)

    def _register_custom(
        self,
        name: str,
        min_args: int,
        max_args: Optional[int],
        impl: BuiltinImpl,
    ) -> None:
        self.table[name] = BuiltinFunction(name=name, min_args=min_args, max_args=max_args, impl=impl)

    def _check_signature(self, name: str, min_args: int, max_args: Optional[int], impl: BuiltinImpl) -> None:
        if not isinstance(name, str) or not _NAME_RE.match(name):
            raise AquilaExtensionError(f"Invalid builtin name {name!r}")
        if name in CONTROL_CALLS:
            raise AquilaExtensionError(f"'{name}' is reserved and cannot be redefined")
        if min_args < 0:
            raise AquilaExtensionError(f"Builtin '{name}' has a negative minimum arity")
        if max_args is not None and max_args < min_args:
            raise AquilaExtensionError(f"Builtin '{name}' has max_args ({max_args}) below min_args ({min_args})")
        if not callable(impl):
            raise AquilaExtensionError(f"Builtin '{name}' implementation is not callable")

    def register(self, name: str, min_args: int, max_args: Optional[int], impl: BuiltinImpl) -> None:
        self._check_signature(name, min_args, max_args, impl)
        if name in self.table:
            raise AquilaExtensionError(f"Cannot override existing builtin '{name}'")
        self._register_custom(name, min_args, max_args, impl)

    def overwrite(self, name: str, min_args: int, max_args: Optional[int], impl: BuiltinImpl) -> None:
        self._check_signature(name, min_args, max_args, impl)
        if name not in self.table:
            raise AquilaExtensionError(f"Cannot overwrite unknown builtin '{name}'")
        self._register_custom(name, min_args, max_args, impl)

    def has(self, name: str) -> bool:
        return name in self.table

    def invoke(
        self,
        interpreter: "Interpreter",
        name: str,
        thunks: List[Thunk],
        env: Environment,
        location: SourceLocation,
    ) -> Value:
        builtin = self.table.get(name)
        if builtin is None:
            raise AquilaNameError(f"Unknown function '{name}'", location=location, rule="CALL")
        builtin.validate(len(thunks), location)
        return builtin.impl(interpreter, thunks, env, location)

    # Helpers
    def _expect_list(self, value: Value, rule: str, location: SourceLocation) -> List[Value]:
        if value.type != TYPE_LIST:
            raise AquilaTypeError(f"{rule} expects a list, got {value.type}", location=location, rule=rule)
        return value.payload(rule, location)

    def _expect_int(self, value: Value, rule: str, location: SourceLocation) -> int:
        if value.type != TYPE_INT:
            raise AquilaTypeError(f"{rule} expects an int, got {value.type}", location=location, rule=rule)
        return value.payload(rule, location)

    def _expect_mutable(self, value: Value, rule: str, location: SourceLocation) -> None:
        if value.is_const:
            label = f"'{value.name}'" if value.name else "value"
            raise InvalidClassifierError(f"Cannot modify constant {label}", location=location, rule=rule)

    def _length(self, _: "Interpreter", thunks: List[Thunk], __: Environment, location: SourceLocation) -> Value:
        return make_int(len(self._expect_list(thunks[0].force(), "length", location)))

    def _list_at(self, _: "Interpreter", thunks: List[Thunk], __: Environment, location: SourceLocation) -> Value:
        current = thunks[0].force()
        indices = self._expect_list(thunks[1].force(), "list_at", location)
        for index in indices:
            items = self._expect_list(current, "list_at", location)
            position = self._expect_int(index, "list_at", location)
            current = items[normalize_index(position, len(items), rule="list_at", location=location)]
        return current

    def _copy_list(self, _: "Interpreter", thunks: List[Thunk], __: Environment, location: SourceLocation) -> Value:
        value = thunks[0].force()
        self._expect_list(value, "copy_list", location)
        return copy_value(value)

    def _float2int(self, _: "Interpreter", thunks: List[Thunk], __: Environment, location: SourceLocation) -> Value:
        value = thunks[0].force()
        if value.type != TYPE_FLOAT:
            raise AquilaTypeError(f"float2int expects a float, got {value.type}", location=location, rule="float2int")
        number = value.payload("float2int", location)
        if not np.isfinite(number):
            raise AquilaRuntimeError(f"Cannot convert {number!r} to int", location=location, rule="float2int")
        return make_int(int(number))

    def _int2float(self, _: "Interpreter", thunks: List[Thunk], __: Environment, location: SourceLocation) -> Value:
        return make_float(float(self._expect_int(thunks[0].force(), "int2float", location)))

    def _random(self, _: "Interpreter", __: List[Thunk], ___: Environment, ____: SourceLocation) -> Value:
        return make_int(int(self.rng.integers(0, 2**31 - 1)))

    def _sqrt(self, _: "Interpreter", thunks: List[Thunk], __: Environment, location: SourceLocation) -> Value:
        value = thunks[0].force()
        if value.type not in NUMERIC_TYPES:
            raise AquilaTypeError(f"sqrt expects an int or a float, got {value.type}", location=location, rule="sqrt")
        number = float(value.payload("sqrt", location))
        if number < 0:
            raise AquilaRuntimeError(f"sqrt of negative number {render_value(value)}", location=location, rule="sqrt")
        return make_float(float(np.sqrt(number)))

    def _print_value(self, interpreter: "Interpreter", thunks: List[Thunk], __: Environment, location: SourceLocation) -> Value:
        value = thunks[0].force()
        if value.type != TYPE_NULL:
            value.payload("print_value", location)
        interpreter.write(render_value(value))
        return make_null()

    def _print_value_endl(self, interpreter: "Interpreter", thunks: List[Thunk], env: Environment, location: SourceLocation) -> Value:
        self._print_value(interpreter, thunks, env, location)
        interpreter.write("\n")
        return make_null()

    def _print_str(self, interpreter: "Interpreter", thunks: List[Thunk], __: Environment, ___: SourceLocation) -> Value:
        interpreter.write(thunks[0].text)
        return make_null()

    def _print_str_endl(self, interpreter: "Interpreter", thunks: List[Thunk], __: Environment, ___: SourceLocation) -> Value:
        interpreter.write(thunks[0].text + "\n")
        return make_null()

    def _print_endl(self, interpreter: "Interpreter", _: List[Thunk], __: Environment, ___: SourceLocation) -> Value:
        interpreter.write("\n")
        return make_null()

    def _delete_var(self, _: "Interpreter", thunks: List[Thunk], env: Environment, location: SourceLocation) -> Value:
        target = thunks[0].expression
        if not isinstance(target, Variable):
            raise AquilaTypeError("delete_var expects a variable", location=location, rule="delete_var")
        removed = env.delete(target.name)
        env.notify(removed, "delete_var", None, [])
        return make_null()

    def _delete_value_at(self, _: "Interpreter", thunks: List[Thunk], env: Environment, location: SourceLocation) -> Value:
        target = thunks[0].force()
        items = self._expect_list(target, "delete_value_at", location)
        self._expect_mutable(target, "delete_value_at", location)
        index = thunks[1].force()
        position = normalize_index(self._expect_int(index, "delete_value_at", location), len(items), rule="delete_value_at", location=location)
        del items[position]
        env.notify(target, "delete_value_at", items, [index])
        return make_null()

    def _insert_value_at(self, _: "Interpreter", thunks: List[Thunk], env: Environment, location: SourceLocation) -> Value:
        target = thunks[0].force()
        items = self._expect_list(target, "insert_value_at", location)
        self._expect_mutable(target, "insert_value_at", location)
        index = thunks[1].force()
        position = normalize_index(
            self._expect_int(index, "insert_value_at", location),
            len(items),
            rule="insert_value_at",
            location=location,
            allow_end=True,
        )
        inserted = thunks[2].force()
        inserted.payload("insert_value_at", location)
        items.insert(position, copy_value(inserted))
        env.notify(target, "insert_value_at", items, [index, inserted])
        return make_null()

    def _append_value(self, _: "Interpreter", thunks: List[Thunk], env: Environment, location: SourceLocation) -> Value:
        target = thunks[0].force()
        if target.type != TYPE_LIST:
            raise AquilaTypeError(f"append_value expects a list, got {target.type}", location=location, rule="append_value")
        self._expect_mutable(target, "append_value", location)
        appended = thunks[1].force()
        appended.payload("append_value", location)
        if not target.assigned:
            target.value = []
            target.assigned = True
        target.value.append(copy_value(appended))
        env.notify(target, "append_value", target.value, [appended])
        return make_null()

    def _swap(self, _: "Interpreter", thunks: List[Thunk], env: Environment, location: SourceLocation) -> Value:
        target = thunks[0].force()
        items = self._expect_list(target, "swap", location)
        self._expect_mutable(target, "swap", location)
        first = thunks[1].force()
        second = thunks[2].force()
        i = normalize_index(self._expect_int(first, "swap", location), len(items), rule="swap", location=location)
        j = normalize_index(self._expect_int(second, "swap", location), len(items), rule="swap", location=location)
        env.freeze()
        try:
            left, right = items[i], items[j]
            items[i] = right
            env.notify(target, "swap", items, [first])
            items[j] = left
            env.notify(target, "swap", items, [second])
        finally:
            env.unfreeze()
        env.notify(target, "swap", items, [first, second])
        return make_null()

    def _interactive_call(self, interpreter: "Interpreter", thunks: List[Thunk], env: Environment, location: SourceLocation) -> Value:
        try:
            instruction = interpreter.make_compiler(location.file).compile_statement(thunks[0].text, location.line)
        except AquilaSyntaxError as exc:
            raise AquilaRuntimeError(f"interactive_call: {exc}", location=location, rule="interactive_call")
        control = interpreter.execute(instruction, env)
        if control.signal is not Signal.NORMAL:
            raise ControlFlowError(
                f"'{control.signal.value}' cannot escape interactive_call",
                location=location,
                rule="interactive_call",
            )
        return make_null()


def _ensure_stack_depth(call_limit: int) -> None:
    needed = call_limit * _PY_FRAMES_PER_CALL + 1000
    if sys.getrecursionlimit() < needed:
        sys.setrecursionlimit(needed)


class Interpreter:
    def __init__(
        self,
        *,
        source: str = "",
        filename: str = "<string>",
        verbose: bool = False,
        settings: Optional[Settings] = None,
        services: Optional[RuntimeServices] = None,
        output_sink: Optional[Callable[[str], None]] = None,
        change_observer: Optional[ChangeObserver] = None,
        seed: Optional[int] = None,
    ) -> None:
        self.source = source
        normalized_filename = filename if filename == "<string>" else os.path.abspath(filename)
        self.filename = normalized_filename
        self.settings = settings or Settings()
        self.verbose = verbose or self.settings.debug
        self.services = services or build_default_services()
        self.hook_registry: HookRegistry = self.services.hook_registry
        self.output_sink = output_sink or (lambda text: print(text, end="", flush=True))
        self.change_observer = change_observer
        self.builtins = Builtins(seed=seed)

        # Extension builtins are added to the table but cannot replace existing names.
        for spec in self.services.builtins:
            self.builtins.register(spec.name, spec.min_args, spec.max_args, spec.impl)

        self.functions: Dict[str, Function] = {}
        self.logger = StateLogger(verbose=self.verbose)
        self.logger.record(frame=None, location=None, statement="<seed>", rewrite_record={"rule": "SEED"})
        self.alterations: List[Alteration] = []
        self.call_stack: List[Frame] = []
        self.frame_counter = 0
        self.env: Optional[Environment] = None
        self._stop_requested = False

    # ---- compilation ----
    def make_compiler(self, filename: Optional[str] = None) -> Compiler:
        return Compiler(filename or self.filename, implicit_declaration=self.settings.implicit_declaration)

    def compile(self, source_lines: Mapping[int, str], *, filename: Optional[str] = None) -> Program:
        return self.make_compiler(filename).compile_program(source_lines, name=self.settings.name)

    def compile_source(self, text: str) -> Program:
        return self._compile_text(text, self.filename, set())

    def _compile_text(self, text: str, filename: str, loading: Set[str]) -> Program:
        lines = read_lines(text, filename)
        macros = extract_macros(lines, filename)
        base_dir = os.path.dirname(filename) if filename != "<string>" else os.getcwd()
        library_paths = apply_macros(macros, self.settings, base_dir=base_dir, filename=filename)
        if self.settings.debug:
            self.verbose = True
            self.logger.verbose = True
        program = self.compile(lines, filename=filename)
        for path in library_paths:
            if path in loading or path == filename:
                raise AquilaSyntaxError(f"Circular library load of '{path}'", filename=filename)
            library_text = read_source(path)
            program.libraries.append(self._compile_text(library_text, path, loading | {filename}))
        return program

    # ---- running ----
    def new_environment(self) -> Environment:
        return Environment(observer=self._observe)

    def request_stop(self) -> None:
        self._stop_requested = True

    def write(self, text: str) -> None:
        self.output_sink(text)

    def run(self, program: Optional[Program] = None, env: Optional[Environment] = None) -> Value:
        if program is None:
            program = self.compile_source(self.source)
        if env is None:
            env = self.new_environment()
        elif env.observer is None:
            env.observer = self._observe
        self.env = env
        self._stop_requested = False
        _ensure_stack_depth(self.settings.recursion_limit)
        self.call_stack = [self._new_frame(program.name or "<top-level>", env, None)]
        self._emit_event("program_start", self, program, env)
        try:
            self._run_libraries(program, env)
            result = self._run_top_level(program.body, env)
        except AquilaRuntimeError as error:
            self._emit_event("on_error", self, error)
            if self.logger.entries:
                error.step_index = self.logger.entries[-1].step_index
            raise
        except Exception as exc:
            self._emit_event("on_error", self, exc)
            # Unexpected Python-level failures are reported like runtime errors.
            loc = None
            if self.logger.entries:
                loc = self.logger.entries[-1].source_location
            wrapped = AquilaRuntimeError(f"Internal interpreter error: {exc}", location=loc, rule="internal")
            if self.logger.entries:
                wrapped.step_index = self.logger.entries[-1].step_index
            raise wrapped
        else:
            self._emit_event("program_end", self, result)
            self.call_stack.pop()
            return result

    def _run_libraries(self, program: Program, env: Environment) -> None:
        for library in program.libraries:
            self._run_libraries(library, env)
            self._run_top_level(library.body, env)

    def _run_top_level(self, body: Sequence, env: Environment) -> Value:
        for instruction in body.instructions:
            self._check_stop(instruction.location)
            control = self.execute(instruction, env)
            if control.signal is Signal.RETURN:
                if control.value is None or control.value.type == TYPE_NULL:
                    return make_null()
                return copy_value(control.value)
            if control.signal is not Signal.NORMAL:
                raise ControlFlowError(
                    f"'{control.signal.value}' used outside of a loop",
                    location=instruction.location,
                    rule=control.signal.value.upper(),
                )
        return make_null()

    def _check_stop(self, location: Optional[SourceLocation]) -> None:
        if self._stop_requested:
            raise StopRequested("Execution stopped on request", location=location, rule="STOP")

    # ---- instructions ----
    def execute(self, instruction: Instruction, env: Environment) -> Control:
        self._emit_event("before_instruction", self, instruction, env)
        try:
            control = self._execute_instruction(instruction, env)
        except AquilaRuntimeError as err:
            if err.location is None:
                err.location = instruction.location
            raise
        self._emit_event("after_instruction", self, instruction, env)
        return control

    def _execute_instruction(self, instruction: Instruction, env: Environment) -> Control:
        if isinstance(instruction, Sequence):
            return self._execute_sequence(instruction, env)
        self._log_step(rule=instruction.__class__.__name__, location=instruction.location)
        if isinstance(instruction, Declaration):
            return self._execute_declaration(instruction, env)
        if isinstance(instruction, Assignment):
            return self._execute_assignment(instruction, env)
        if isinstance(instruction, VoidCall):
            return self._execute_void_call(instruction, env)
        if isinstance(instruction, IfCondition):
            return self._execute_if(instruction, env)
        if isinstance(instruction, WhileLoop):
            return self._execute_while(instruction, env)
        if isinstance(instruction, ForLoop):
            return self._execute_for(instruction, env)
        if isinstance(instruction, FunctionDef):
            return self._execute_function_def(instruction, env)
        if isinstance(instruction, Trace):
            for target in instruction.targets:
                env.get(target.name).traced = True  # type: ignore[attr-defined]
            return NORMAL
        raise AquilaRuntimeError(f"Unsupported instruction {instruction.__class__.__name__}", rule="internal")

    def _execute_sequence(self, sequence: Sequence, env: Environment) -> Control:
        for instruction in sequence.instructions:
            control = self.execute(instruction, env)
            if control.signal is not Signal.NORMAL:
                return control
        return NORMAL

    def _execute_declaration(self, statement: Declaration, env: Environment) -> Control:
        name = statement.name
        location = statement.location
        exists = env.exists_in_scope(name) or (statement.is_global and name in env.global_frame)
        if statement.mode == "new" and exists:
            raise AquilaNameError(f"Variable '{name}' is already declared", location=location, rule="DECLARE")
        if statement.mode == "overwrite" and not env.has(name):
            raise AquilaNameError(f"Cannot overwrite undeclared variable '{name}'", location=location, rule="DECLARE")
        if statement.initializer is None:
            if statement.is_const:
                raise InvalidClassifierError(f"Constant '{name}' needs an initializer", location=location, rule="DECLARE")
            value = default_value(statement.declared_type)
        else:
            initial = self.evaluate(statement.initializer, env)
            if initial.type == TYPE_NULL:
                raise AquilaTypeError(f"Cannot declare '{name}' with a null value", location=location, rule="DECLARE")
            initial.payload("DECLARE", location)
            if statement.declared_type != TYPE_AUTO and initial.type != statement.declared_type:
                raise AquilaTypeError(
                    f"Cannot declare {statement.declared_type} variable '{name}' with a {initial.type} value",
                    location=location,
                    rule="DECLARE",
                )
            if statement.is_const and not initial.is_const:
                raise InvalidClassifierError(
                    f"Constant '{name}' needs a constant initializer",
                    location=location,
                    rule="DECLARE",
                )
            value = copy_value(initial, is_const=statement.is_const)
        value.traced = self.settings.trace_all
        if statement.mode != "new" and env.has(name):
            env.replace(name, value)
        else:
            env.declare(name, value, is_global=statement.is_global)
        return NORMAL

    def _execute_assignment(self, statement: Assignment, env: Environment) -> Control:
        location = statement.location
        target = statement.target
        indices: List[Value] = []
        if isinstance(target, Variable):
            binding = env.get_optional(target.name)
            if binding is None:
                if statement.fallback is not None:
                    return self._execute_declaration(statement.fallback, env)
                raise AquilaNameError(f"Variable '{target.name}' is not defined", location=location, rule="ASSIGN")
            current = owner = binding
        else:
            if not isinstance(target, IndexExpression) or not isinstance(target.base, Variable):
                raise AquilaRuntimeError(
                    f"Unsupported assignment target {target.__class__.__name__}",
                    location=location,
                    rule="internal",
                )
            owner = env.get(target.base.name)
            if owner.is_const:
                raise InvalidClassifierError(f"Cannot modify constant '{owner.name}'", location=location, rule="ASSIGN")
            current = owner
            for index_node in target.indices:
                index = self.evaluate(index_node, env)
                indices.append(index)
                current = self._index_value(current, index, location)
        value = self.evaluate(statement.expression, env)
        value.payload("ASSIGN", location)
        if current.is_const:
            raise InvalidClassifierError(f"Cannot assign to constant '{current.name}'", location=location, rule="ASSIGN")
        if current.type != value.type:
            label = current.name or (owner.name and f"{owner.name}[...]") or "element"
            raise AquilaTypeError(
                f"Cannot assign a {value.type} value to {current.type} variable '{label}'",
                location=location,
                rule="ASSIGN",
            )
        current.value = copy_payload(value)
        current.assigned = True
        if indices:
            env.notify(owner, "assign_at", owner.value, indices)
        else:
            env.notify(owner, "assign", owner.value, [])
        return NORMAL

    def _execute_void_call(self, statement: VoidCall, env: Environment) -> Control:
        call = statement.call
        if call.name in CONTROL_CALLS:
            return self._control_call(call, env)
        self._call(call, env)
        return NORMAL

    def _control_call(self, call: CallExpression, env: Environment) -> Control:
        if call.name == "return":
            if len(call.args) > 1:
                raise AquilaTypeError("return expects at most one value", location=call.location, rule="RETURN")
            if not call.args:
                return Control(Signal.RETURN, make_null())
            return Control(Signal.RETURN, self.evaluate(call.args[0].expression, env))  # type: ignore[arg-type]
        if call.args:
            raise AquilaTypeError(f"{call.name} takes no arguments", location=call.location, rule=call.name.upper())
        return Control(Signal.BREAK if call.name == "break" else Signal.CONTINUE)

    def _execute_if(self, statement: IfCondition, env: Environment) -> Control:
        branch = statement.then_branch if self._condition(statement.condition, env) else statement.else_branch
        depth = env.depth()
        env.enter_block()
        try:
            return self._execute_sequence(branch, env)
        finally:
            env.unwind_to(depth)

    def _execute_while(self, statement: WhileLoop, env: Environment) -> Control:
        depth = env.depth()
        try:
            while True:
                self._check_stop(statement.location)
                if not self._condition(statement.condition, env):
                    break
                env.enter_block()
                control = self._execute_sequence(statement.body, env)
                env.unwind_to(depth)
                if control.signal is Signal.BREAK:
                    break
                if control.signal is Signal.RETURN:
                    return control
        finally:
            env.unwind_to(depth)
        return NORMAL

    def _execute_for(self, statement: ForLoop, env: Environment) -> Control:
        depth = env.depth()
        env.enter_block()
        try:
            self._execute_clause(statement.start, env)
            while True:
                self._check_stop(statement.location)
                if not self._condition(statement.condition, env):
                    break
                env.enter_block()
                control = self._execute_sequence(statement.body, env)
                env.unwind_to(depth + 1)
                if control.signal is Signal.BREAK:
                    break
                if control.signal is Signal.RETURN:
                    return control
                self._execute_clause(statement.step, env)
        finally:
            env.unwind_to(depth)
        return NORMAL

    def _execute_clause(self, clause: Instruction, env: Environment) -> None:
        control = self.execute(clause, env)
        if control.signal is not Signal.NORMAL:
            raise ControlFlowError(
                f"'{control.signal.value}' cannot be used in a for header",
                location=clause.location,
                rule="FOR",
            )

    def _execute_function_def(self, statement: FunctionDef, _: Environment) -> Control:
        name = statement.name
        if self.builtins.has(name):
            raise AquilaNameError(f"'{name}' is a builtin function", location=statement.location, rule="FUNCTION")
        existing = self.functions.get(name)
        if existing is not None:
            if existing.definition is not statement:
                raise AquilaNameError(f"Function '{name}' is already defined", location=statement.location, rule="FUNCTION")
            return NORMAL
        self.functions[name] = Function(
            name=name,
            params=list(statement.params),
            return_type=statement.return_type,
            body=statement.body,
            recursive=statement.recursive,
            definition=statement,
        )
        return NORMAL

    def _condition(self, expression: Expression, env: Environment) -> bool:
        value = self.evaluate(expression, env)
        if value.type != TYPE_BOOL:
            raise AquilaTypeError(f"Condition must be a bool, got {value.type}", location=expression.location, rule="COND")
        return bool(value.payload("COND", expression.location))

    # ---- calls ----
    def _call(self, call: CallExpression, env: Environment) -> Value:
        if call.name in CONTROL_CALLS:
            raise ControlFlowError(f"'{call.name}' can only be used as a statement", location=call.location, rule="CALL")
        thunks = [Thunk(expression=arg.expression, text=arg.text, env=env, interpreter=self) for arg in call.args]
        self._emit_event("before_call", self, call.name, thunks, env, call.location)
        if self.builtins.has(call.name):
            result = self.builtins.invoke(self, call.name, thunks, env, call.location)
        else:
            function = self.functions.get(call.name)
            if function is None:
                raise AquilaNameError(f"Unknown function '{call.name}'", location=call.location, rule="CALL")
            result = self._call_user_function(function, thunks, env, call.location)
        self._emit_event("after_call", self, call.name, result, env, call.location)
        return result

    def _call_user_function(self, function: Function, thunks: List[Thunk], env: Environment, call_location: SourceLocation) -> Value:
        if len(thunks) != len(function.params):
            raise AquilaTypeError(
                f"Function {function.name} expects {len(function.params)} arguments but received {len(thunks)}",
                location=call_location,
                rule=function.name,
            )
        if function.active_calls and not function.recursive:
            raise AquilaRecursionError(
                "Already in function scope. Missing 'recursive' keyword?",
                location=call_location,
                rule=function.name,
            )
        if len(self.call_stack) > self.settings.recursion_limit:
            raise AquilaRecursionError(
                f"Maximum recursion depth exceeded ({self.settings.recursion_limit})",
                location=call_location,
                rule=function.name,
            )
        bindings: Dict[str, Value] = {}
        for param, thunk in zip(function.params, thunks):
            argument = thunk.force()
            if argument.type == TYPE_NULL:
                raise AquilaTypeError(f"Argument for '{param}' is null", location=call_location, rule=function.name)
            argument.payload(function.name, call_location)
            if argument.type == TYPE_LIST and isinstance(thunk.expression, (Variable, IndexExpression)):
                # Stored lists share element storage with the caller, constness included.
                bound = Value(TYPE_LIST, argument.value, is_const=argument.is_const, name=param)
            else:
                bound = copy_value(argument, name=param)
            bound.traced = self.settings.trace_all
            bindings[param] = bound

        self._log_step(rule="CALL", location=call_location, extra={"function": function.name})
        frame = self._new_frame(function.name, env, call_location)
        self.call_stack.append(frame)
        function.active_calls += 1
        env.push_main(bindings)
        try:
            control = self._execute_sequence(function.body, env)
        except RecursionError:
            raise AquilaRecursionError(
                f"Python stack exhausted while calling {function.name}",
                location=call_location,
                rule=function.name,
            ) from None
        finally:
            env.pop_main()
            function.active_calls -= 1

        if control.signal in (Signal.BREAK, Signal.CONTINUE):
            raise ControlFlowError(
                f"'{control.signal.value}' escaped function {function.name}",
                location=call_location,
                rule=control.signal.value.upper(),
            )
        self.call_stack.pop()
        if control.signal is Signal.RETURN:
            result = control.value or make_null()
        elif function.return_type in (TYPE_AUTO, TYPE_NULL):
            result = make_null()
        else:
            raise AquilaTypeError(
                f"Function {function.name} must return {function.return_type} but reached its end",
                location=call_location,
                rule=function.name,
            )
        if function.return_type != TYPE_AUTO and result.type != function.return_type:
            raise AquilaTypeError(
                f"Function {function.name} must return {function.return_type} but got {result.type}",
                location=call_location,
                rule=function.name,
            )
        if result.type == TYPE_NULL:
            return result
        if result.is_const:
            return copy_value(result)
        return Value(result.type, result.value, assigned=result.assigned)

    # ---- expressions ----
    def evaluate(self, expression: Expression, env: Environment) -> Value:
        if isinstance(expression, Literal):
            if expression.literal_type == TYPE_NULL:
                return make_null()
            if expression.literal_type == TYPE_INT:
                return make_int(expression.value, is_const=True)  # type: ignore[arg-type]
            return Value(expression.literal_type, expression.value, is_const=True)
        if isinstance(expression, Variable):
            try:
                return env.get(expression.name)
            except AquilaNameError as err:
                err.location = expression.location
                raise
        if isinstance(expression, BinaryOp):
            return self._evaluate_binary(expression, env)
        if isinstance(expression, UnaryOp):
            return self._evaluate_unary(expression, env)
        if isinstance(expression, IndexExpression):
            current = self.evaluate(expression.base, env)
            for index_node in expression.indices:
                current = self._index_value(current, self.evaluate(index_node, env), expression.location)
            return current
        if isinstance(expression, ListLiteral):
            items = [self.evaluate(item, env) for item in expression.items]
            for item in items:
                if item.type != TYPE_NULL:
                    item.payload("LIST", expression.location)
            is_const = all(item.is_const for item in items)
            return make_list([copy_value(item) for item in items], is_const=is_const)
        if isinstance(expression, CallExpression):
            return self._call(expression, env)
        raise AquilaRuntimeError(f"Unsupported expression {expression.__class__.__name__}", location=expression.location, rule="internal")

    def _index_value(self, container: Value, index: Value, location: SourceLocation) -> Value:
        if container.type != TYPE_LIST:
            raise AquilaTypeError(f"Only lists can be indexed, got {container.type}", location=location, rule="INDEX")
        if index.type != TYPE_INT:
            raise AquilaTypeError(f"List indices must be int, got {index.type}", location=location, rule="INDEX")
        items = container.payload("INDEX", location)
        position = normalize_index(index.payload("INDEX", location), len(items), rule="INDEX", location=location)
        return items[position]

    def _evaluate_unary(self, expression: UnaryOp, env: Environment) -> Value:
        operand = self.evaluate(expression.operand, env)
        location = expression.location
        if expression.operator == "!":
            if operand.type != TYPE_BOOL:
                raise AquilaTypeError(f"Operator '!' expects a bool, got {operand.type}", location=location, rule="NOT")
            return make_bool(not operand.payload("NOT", location), is_const=operand.is_const)
        if operand.type == TYPE_INT:
            return make_int(-operand.payload("NEG", location), is_const=operand.is_const)
        if operand.type == TYPE_FLOAT:
            return make_float(-operand.payload("NEG", location), is_const=operand.is_const)
        raise AquilaTypeError(f"Unary '-' expects an int or a float, got {operand.type}", location=location, rule="NEG")

    def _evaluate_binary(self, expression: BinaryOp, env: Environment) -> Value:
        operator = expression.operator
        location = expression.location
        if operator in ("&", "|") and self.settings.lazy_logic:
            left = self.evaluate(expression.left, env)
            flag = self._expect_bool(left, operator, location)
            if (operator == "&" and not flag) or (operator == "|" and flag):
                return make_bool(flag, is_const=left.is_const)
            right = self.evaluate(expression.right, env)
            return make_bool(self._expect_bool(right, operator, location), is_const=left.is_const and right.is_const)
        left = self.evaluate(expression.left, env)
        right = self.evaluate(expression.right, env)
        return self._apply_binary(operator, left, right, location)

    def _expect_bool(self, value: Value, operator: str, location: SourceLocation) -> bool:
        if value.type != TYPE_BOOL:
            raise AquilaTypeError(f"Operator '{operator}' expects bools, got {value.type}", location=location, rule=operator)
        return bool(value.payload(operator, location))

    def _apply_binary(self, operator: str, left: Value, right: Value, location: SourceLocation) -> Value:
        is_const = left.is_const and right.is_const
        if operator in ("~", ":"):
            if left.type != right.type and TYPE_NULL not in (left.type, right.type):
                raise AquilaTypeError(
                    f"Cannot compare {left.type} with {right.type}",
                    location=location,
                    rule=operator,
                )
            equal = values_equal(left, right)
            return make_bool(equal if operator == "~" else not equal, is_const=is_const)
        if operator in ("&", "|", "^"):
            a = self._expect_bool(left, operator, location)
            b = self._expect_bool(right, operator, location)
            if operator == "&":
                return make_bool(a and b, is_const=is_const)
            if operator == "|":
                return make_bool(a or b, is_const=is_const)
            return make_bool(a != b, is_const=is_const)
        if left.type not in NUMERIC_TYPES or right.type != left.type:
            raise AquilaTypeError(
                f"Operator '{operator}' expects two ints or two floats, got {left.type} and {right.type}",
                location=location,
                rule=operator,
            )
        a = left.payload(operator, location)
        b = right.payload(operator, location)
        if operator == "<":
            return make_bool(a < b, is_const=is_const)
        if operator == ">":
            return make_bool(a > b, is_const=is_const)
        if operator == "{":
            return make_bool(a <= b, is_const=is_const)
        if operator == "}":
            return make_bool(a >= b, is_const=is_const)
        if operator in ("/", "%") and b == 0:
            raise AquilaZeroDivisionError(
                "Division by zero" if operator == "/" else "Modulo by zero",
                location=location,
                rule=operator,
            )
        if left.type == TYPE_INT:
            if operator == "+":
                number = a + b
            elif operator == "-":
                number = a - b
            elif operator == "*":
                number = a * b
            else:
                quotient = abs(a) // abs(b)
                if (a < 0) != (b < 0):
                    quotient = -quotient
                number = quotient if operator == "/" else a - b * quotient
            return make_int(number, is_const=is_const)
        if operator == "+":
            result = a + b
        elif operator == "-":
            result = a - b
        elif operator == "*":
            result = a * b
        elif operator == "/":
            result = a / b
        else:
            result = float(np.fmod(a, b))
        return make_float(result, is_const=is_const)

    # ---- observability ----
    def _observe(self, affected: Value, change_kind: str, new_value: Any, aux_values: List[Value]) -> None:
        if affected.traced:
            name = affected.name or "<anonymous>"
            self.alterations.append(
                Alteration(
                    name=name,
                    kind=change_kind,
                    value=render_value(affected),
                    aux=[render_value(value) for value in aux_values],
                )
            )
            location = self.logger.entries[-1].source_location if self.logger.entries else None
            self._log_step(rule="TRACE", location=location, extra={"variable": name, "change": change_kind})
        self._emit_event("on_change", self, affected, change_kind, new_value, aux_values)
        if self.change_observer is not None:
            self.change_observer(affected, change_kind, new_value, aux_values)

    def _new_frame(self, name: str, env: Environment, call_location: Optional[SourceLocation]) -> Frame:
        frame_id = f"f_{self.frame_counter:04d}"
        self.frame_counter += 1
        return Frame(name=name, env=env, frame_id=frame_id, call_location=call_location)

    def _emit_event(self, event: str, *args: Any, **kwargs: Any) -> None:
        try:
            self.hook_registry.emit(event, *args, **kwargs)
        except AquilaRuntimeError:
            raise
        except Exception as exc:
            loc = None
            if self.logger.entries:
                loc = self.logger.entries[-1].source_location
            raise AquilaRuntimeError(
                f"Extension hook '{event}' failed: {exc}",
                location=loc,
                rule="EXT",
            )

    def _log_step(
        self,
        *,
        rule: str,
        location: Optional[SourceLocation],
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        frame = self.call_stack[-1] if self.call_stack else None
        env_snapshot = frame.env.snapshot() if (self.verbose and frame) else None
        statement = location.statement if location else None
        rewrite: Dict[str, Any] = {"rule": rule}
        if extra:
            rewrite.update(extra)
        entry = self.logger.record(
            frame=frame,
            location=location,
            statement=statement,
            env_snapshot=env_snapshot,
            rewrite_record=rewrite,
        )

        try:
            self.hook_registry.after_step(
                self,
                StepContext(step_index=entry.step_index, rule=rule, location=location, extra=extra),
            )
        except AquilaRuntimeError:
            raise
        except Exception as exc:
            raise AquilaRuntimeError(
                f"Extension step rule failed: {exc}",
                location=location,
                rule="EXT",
            )


@dataclass
class TracebackFrame:
    name: str
    location: Optional[SourceLocation]
    statement: Optional[str]
    state_entry: Optional[StateEntry]


class TracebackFormatter:
    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def build_frames(self) -> List[TracebackFrame]:
        frames: List[TracebackFrame] = []
        for frame in self.interpreter.call_stack:
            entry = self.interpreter.logger.last_entry_for_frame(frame.frame_id)
            location = entry.source_location if entry else frame.call_location
            frames.append(
                TracebackFrame(
                    name=frame.name,
                    location=location,
                    statement=entry.statement if entry else None,
                    state_entry=entry,
                )
            )
        return frames

    def format_text(self, error: AquilaRuntimeError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        for frame in self.build_frames():
            if frame.location:
                lines.append(f"  File \"{frame.location.file}\", line {frame.location.line}, in {frame.name}")
                if frame.statement:
                    lines.append(f"    {frame.statement}")
            else:
                lines.append(f"  <unknown location> in {frame.name}")
            if frame.state_entry:
                lines.append(
                    f"    State log index: {frame.state_entry.step_index}  State id: {frame.state_entry.state_id}"
                )
                if verbose and frame.state_entry.env_snapshot is not None:
                    snapshot = ", ".join(f"{k}={v}" for k, v in frame.state_entry.env_snapshot.items())
                    lines.append(f"    Env snapshot: {snapshot}")
        if error.location and error.location.statement:
            lines.append(f"  Failing instruction (line {error.location.line}): {error.location.statement}")
        rule = error.rule or "runtime"
        lines.append(f"{error.__class__.__name__}: {error.message} (rule: {rule})")
        return "\n".join(lines)

    def to_json(self, error: AquilaRuntimeError) -> str:
        frames_json: List[Dict[str, Any]] = []
        for index, frame in enumerate(self.build_frames()):
            entry: Dict[str, Any] = {"frame_index": index, "name": frame.name}
            if frame.location:
                entry["source_location"] = {
                    "file": frame.location.file,
                    "line": frame.location.line,
                    "statement": frame.location.statement,
                }
            if frame.state_entry:
                entry["state_id"] = frame.state_entry.state_id
                entry["step_index"] = frame.state_entry.step_index
                if frame.state_entry.env_snapshot is not None:
                    entry["env_snapshot"] = frame.state_entry.env_snapshot
                if frame.state_entry.rewrite_record is not None:
                    entry["rewrite_record"] = frame.state_entry.rewrite_record
            frames_json.append(entry)
        data = {
            "error": {
                "type": error.__class__.__name__,
                "message": error.message,
                "rule": error.rule,
                "failing_step_index": error.step_index,
            },
            "traceback": frames_json,
        }
        return json.dumps(data, indent=2)
