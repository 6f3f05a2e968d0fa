from dataclasses import dataclass
from typing import List

import pytest

from environment import Environment, Value
from interpreter import Interpreter


@dataclass
class Outcome:
    interpreter: Interpreter
    value: Value
    output: str

    @property
    def env(self) -> Environment:
        return self.interpreter.env


class CapturingInterpreter(Interpreter):
    """Interpreter that collects everything written by the print builtins."""

    def __init__(self, **kwargs):
        self.chunks: List[str] = []
        kwargs.setdefault("output_sink", self.chunks.append)
        super().__init__(**kwargs)

    @property
    def output(self) -> str:
        return "".join(self.chunks)


@pytest.fixture
def make_interpreter():
    def _make(source: str = "", **kwargs) -> CapturingInterpreter:
        return CapturingInterpreter(source=source, **kwargs)

    return _make


@pytest.fixture
def run_aquila(make_interpreter):
    def _run(source: str, **kwargs) -> Outcome:
        interpreter = make_interpreter(source, **kwargs)
        value = interpreter.run()
        return Outcome(interpreter=interpreter, value=value, output=interpreter.output)

    return _run
