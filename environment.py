from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from lexer import AquilaError
from parser import SourceLocation


TYPE_INT = "int"
TYPE_FLOAT = "float"
TYPE_BOOL = "bool"
TYPE_LIST = "list"
TYPE_NULL = "null"
TYPE_AUTO = "auto"

VALUE_TYPES = (TYPE_INT, TYPE_FLOAT, TYPE_BOOL, TYPE_LIST)
NUMERIC_TYPES = (TYPE_INT, TYPE_FLOAT)

_INT64 = np.iinfo(np.int64)
INT_MIN = int(_INT64.min)
INT_MAX = int(_INT64.max)
_INT_SPAN = INT_MAX - INT_MIN + 1


class AquilaRuntimeError(AquilaError):
    """Raised for runtime faults."""

    def __init__(
        self,
        message: str,
        *,
        location: Optional[SourceLocation] = None,
        rule: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.location = location
        self.rule = rule
        self.step_index: Optional[int] = None


class AquilaNameError(AquilaRuntimeError):
    pass


class AquilaTypeError(AquilaRuntimeError):
    pass


class InvalidIndexError(AquilaRuntimeError):
    pass


class UnassignedValueError(AquilaRuntimeError):
    pass


class AquilaZeroDivisionError(AquilaRuntimeError):
    pass


class AquilaRecursionError(AquilaRuntimeError):
    pass


class InvalidClassifierError(AquilaRuntimeError):
    """Raised when a const/global classifier is misused."""


class ControlFlowError(AquilaRuntimeError):
    """A break/continue/return escaped the construct meant to consume it."""


class StopRequested(AquilaRuntimeError):
    """The host asked the running program to stop."""


@dataclass(eq=False)
class Value:
    type: str
    value: Any
    assigned: bool = True
    is_const: bool = False
    name: Optional[str] = None
    traced: bool = False

    def payload(self, rule: str = "read", location: Optional[SourceLocation] = None) -> Any:
        if not self.assigned:
            label = f"'{self.name}'" if self.name else "value"
            raise UnassignedValueError(f"Variable {label} is declared but has no value", location=location, rule=rule)
        return self.value


def wrap_int(number: int) -> int:
    if INT_MIN <= number <= INT_MAX:
        return number
    return (number - INT_MIN) % _INT_SPAN + INT_MIN


def make_int(number: int, is_const: bool = False) -> Value:
    return Value(TYPE_INT, wrap_int(int(number)), is_const=is_const)


def make_float(number: float, is_const: bool = False) -> Value:
    return Value(TYPE_FLOAT, float(number), is_const=is_const)


def make_bool(flag: bool, is_const: bool = False) -> Value:
    return Value(TYPE_BOOL, bool(flag), is_const=is_const)


def make_list(items: List[Value], is_const: bool = False) -> Value:
    return Value(TYPE_LIST, items, is_const=is_const)


def make_null() -> Value:
    return Value(TYPE_NULL, None, is_const=True)


def default_value(type_name: str) -> Value:
    """Type default for declarations without initializer. Left unassigned."""
    if type_name == TYPE_INT:
        value = make_int(0)
    elif type_name == TYPE_FLOAT:
        value = make_float(0.0)
    elif type_name == TYPE_BOOL:
        value = make_bool(False)
    elif type_name == TYPE_LIST:
        value = make_list([])
    else:
        raise AquilaTypeError(f"Type '{type_name}' has no default value", rule="DECLARE")
    value.assigned = False
    return value


def copy_payload(value: Value, is_const: bool = False) -> Any:
    if value.type == TYPE_LIST:
        return [copy_value(item, is_const=is_const) for item in value.value]
    return value.value


def copy_value(value: Value, *, name: Optional[str] = None, is_const: bool = False) -> Value:
    """Deep copy. A constant copy is constant at every nesting level."""
    return Value(
        type=value.type,
        value=copy_payload(value, is_const),
        assigned=value.assigned,
        is_const=is_const,
        name=name,
    )


def render_value(value: Value) -> str:
    if value.type == TYPE_NULL:
        return "null"
    if not value.assigned:
        return "<unassigned>"
    if value.type == TYPE_BOOL:
        return "true" if value.value else "false"
    if value.type == TYPE_FLOAT:
        return repr(float(value.value))
    if value.type == TYPE_LIST:
        return "[" + ", ".join(render_value(item) for item in value.value) + "]"
    return str(value.value)


def values_equal(left: Value, right: Value) -> bool:
    if left.type == TYPE_NULL or right.type == TYPE_NULL:
        return left.type == right.type
    if left.type == TYPE_LIST:
        items_l = left.payload("EQ")
        items_r = right.payload("EQ")
        if len(items_l) != len(items_r):
            return False
        return all(a.type == b.type and values_equal(a, b) for a, b in zip(items_l, items_r))
    return left.payload("EQ") == right.payload("EQ")


ChangeObserver = Callable[[Value, str, Any, List[Value]], None]


@dataclass
class Environment:
    """Main scopes (one per program or function invocation), each a stack of
    local frames, plus a single global frame visible from everywhere."""

    global_frame: Dict[str, Value] = field(default_factory=dict)
    main_scopes: List[List[Dict[str, Value]]] = field(default_factory=lambda: [[{}]])
    observer: Optional[ChangeObserver] = None
    freeze_count: int = 0

    @property
    def frames(self) -> List[Dict[str, Value]]:
        return self.main_scopes[-1]

    # ---- frame lifecycle ----
    def depth(self) -> int:
        return len(self.main_scopes[-1])

    def main_depth(self) -> int:
        return len(self.main_scopes)

    def enter_block(self, bindings: Optional[Dict[str, Value]] = None) -> None:
        self.main_scopes[-1].append(dict(bindings) if bindings else {})

    def exit_block(self) -> None:
        if len(self.main_scopes[-1]) <= 1:
            raise ControlFlowError("Cannot exit the base frame of a scope", rule="SCOPE")
        self.main_scopes[-1].pop()

    def unwind_to(self, depth: int) -> None:
        if depth < 1 or depth > self.depth():
            raise ControlFlowError(f"Cannot unwind scope to depth {depth} (current depth {self.depth()})", rule="SCOPE")
        del self.main_scopes[-1][depth:]

    def push_main(self, bindings: Optional[Dict[str, Value]] = None) -> None:
        self.main_scopes.append([dict(bindings) if bindings else {}])

    def pop_main(self) -> None:
        if len(self.main_scopes) <= 1:
            raise ControlFlowError("Cannot pop the program scope", rule="SCOPE")
        self.main_scopes.pop()

    # ---- bindings ----
    def _find_frame(self, name: str) -> Optional[Dict[str, Value]]:
        for frame in reversed(self.main_scopes[-1]):
            if name in frame:
                return frame
        if name in self.global_frame:
            return self.global_frame
        return None

    def get(self, name: str) -> Value:
        frame = self._find_frame(name)
        if frame is not None:
            return frame[name]
        raise AquilaNameError(f"Variable '{name}' is not defined", rule="LOOKUP")

    def get_optional(self, name: str) -> Optional[Value]:
        frame = self._find_frame(name)
        if frame is not None:
            return frame[name]
        return None

    def has(self, name: str) -> bool:
        return self._find_frame(name) is not None

    def exists_in_scope(self, name: str) -> bool:
        return any(name in frame for frame in self.main_scopes[-1])

    def declare(self, name: str, value: Value, *, is_global: bool = False) -> None:
        value.name = name
        if is_global:
            self.global_frame[name] = value
        else:
            self.main_scopes[-1][-1][name] = value

    def replace(self, name: str, value: Value) -> None:
        """Rebind an existing name in the frame that owns it."""
        frame = self._find_frame(name)
        if frame is None:
            raise AquilaNameError(f"Cannot overwrite undeclared variable '{name}'", rule="DECLARE")
        value.name = name
        value.traced = value.traced or frame[name].traced
        frame[name] = value

    def delete(self, name: str) -> Value:
        frame = self._find_frame(name)
        if frame is None:
            raise AquilaNameError(f"Cannot delete undefined variable '{name}'", rule="DELETE")
        return frame.pop(name)

    def snapshot(self) -> Dict[str, str]:
        def _render(val: Value) -> str:
            rendered = render_value(val)
            if len(rendered) > 80:
                rendered = rendered[:77] + "..."
            return f"{val.type}:{rendered}"

        visible: Dict[str, Value] = dict(self.global_frame)
        for frame in self.main_scopes[-1]:
            visible.update(frame)
        return {k: _render(v) for k, v in visible.items()}

    # ---- change notification ----
    def freeze(self) -> None:
        self.freeze_count += 1

    def unfreeze(self) -> None:
        if self.freeze_count == 0:
            raise ControlFlowError("unfreeze() without matching freeze()", rule="FREEZE")
        self.freeze_count -= 1

    @property
    def frozen(self) -> bool:
        return self.freeze_count > 0

    def notify(self, affected: Value, change_kind: str, new_value: Any, aux_values: Optional[List[Value]] = None) -> None:
        if self.observer is None or self.freeze_count:
            return
        self.observer(affected, change_kind, new_value, list(aux_values or []))
