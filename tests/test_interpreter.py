import json

import pytest

from compiler import Assignment
from environment import (
    INT_MIN,
    AquilaNameError,
    AquilaRecursionError,
    AquilaRuntimeError,
    AquilaTypeError,
    AquilaZeroDivisionError,
    ControlFlowError,
    InvalidClassifierError,
    InvalidIndexError,
    StopRequested,
    UnassignedValueError,
    make_int,
    render_value,
)
from extensions import build_default_services
from interpreter import TracebackFormatter
from lexer import UnclosedBlockError
from parser import Literal, SourceLocation


FACTORIAL = """
function {recursive} int factorial($n)
    if $n {{ 1
        return(1)
    end-if
    return($n * factorial($n - 1))
end-function
return(factorial(5))
"""


class TestScenarios:
    def test_arithmetic_precedence(self, run_aquila):
        outcome = run_aquila(
            """
            decl $x = 2
            decl $y = 3
            decl $z = $x + $y * 2
            return($z ~ 8)
            """
        )
        assert outcome.value.value is True
        assert outcome.env.get("z").value == 8

    def test_indexed_assignment(self, run_aquila):
        outcome = run_aquila(
            """
            decl $l = [1, 2, 3]
            $l[1] = 9
            print_value($l)
            """
        )
        assert outcome.output == "[1, 9, 3]"

    def test_recursive_factorial(self, run_aquila):
        assert run_aquila(FACTORIAL.format(recursive="recursive")).value.value == 120

    def test_factorial_without_recursive_keyword(self, make_interpreter):
        interpreter = make_interpreter(FACTORIAL.format(recursive=""))
        with pytest.raises(AquilaRecursionError, match="Missing 'recursive' keyword"):
            interpreter.run()

    def test_for_loop_counts(self, run_aquila):
        outcome = run_aquila(
            """
            decl list $seen = []
            for ($i = 0; $i < 3; $i = $i + 1)
                append_value($seen, $i)
            end-for
            """
        )
        assert render_value(outcome.env.get("seen")) == "[0, 1, 2]"
        assert not outcome.env.has("i")

    def test_unclosed_if(self, make_interpreter):
        with pytest.raises(UnclosedBlockError):
            make_interpreter("if true\ndecl $x = 1").run()


class TestArithmetic:
    @pytest.mark.parametrize(
        "a,b,quotient,remainder",
        [(7, 2, 3, 1), (-7, 2, -3, -1), (7, -2, -3, 1), (-7, -2, 3, -1), (6, 3, 2, 0)],
    )
    def test_integer_division_truncates(self, run_aquila, a, b, quotient, remainder):
        assert run_aquila(f"return({a} / {b})").value.value == quotient
        assert run_aquila(f"return({a} % {b})").value.value == remainder

    @pytest.mark.parametrize("text", ["1 / 0", "5 % 0", "1.0 / 0.0", "2.5 % 0.0"])
    def test_zero_division(self, make_interpreter, text):
        with pytest.raises(AquilaZeroDivisionError):
            make_interpreter(f"return({text})").run()

    def test_overflow_wraps(self, run_aquila):
        assert run_aquila("return(9223372036854775807 + 1)").value.value == INT_MIN

    def test_float_operations(self, run_aquila):
        assert run_aquila("return(7.0 / 2.0)").value.value == 3.5
        assert run_aquila("return(-7.5 % 2.0)").value.value == -1.5

    @pytest.mark.parametrize("text", ["1 + 1.5", "1 < 2.0", "true + 1", "1 ~ 1.0", "[1] < [2]", "1 & true", "!1", "-true"])
    def test_no_implicit_widening(self, make_interpreter, text):
        with pytest.raises(AquilaTypeError):
            make_interpreter(f"return({text})").run()

    def test_equality(self, run_aquila):
        assert run_aquila("return([1, [2]] ~ [1, [2]])").value.value is True
        assert run_aquila("return([1, 2] : [1])").value.value is True
        assert run_aquila("return(null ~ 1)").value.value is False
        assert run_aquila("return(null ~ null)").value.value is True

    def test_logic(self, run_aquila):
        assert run_aquila("return(true ^ false)").value.value is True
        assert run_aquila("return(!(true & false) | false)").value.value is True


class TestShortCircuit:
    def test_and_skips_right_operand(self, run_aquila):
        assert run_aquila("return(false & (1 / 0 ~ 1))").value.value is False

    def test_or_skips_right_operand(self, run_aquila):
        assert run_aquila("return(true | (1 / 0 ~ 1))").value.value is True

    def test_disabled_by_setting(self, make_interpreter):
        interpreter = make_interpreter("#setting lazy_logic false\nreturn(false & (1 / 0 ~ 1))")
        with pytest.raises(AquilaZeroDivisionError):
            interpreter.run()


class TestIndexing:
    def test_negative_index(self, run_aquila):
        assert run_aquila("decl $l = [1, 2, 3]\nreturn($l[-1])").value.value == 3
        assert run_aquila("decl $l = [1, 2, 3]\nreturn($l[-3])").value.value == 1

    @pytest.mark.parametrize("index", ["3", "-4", "10"])
    def test_out_of_range(self, make_interpreter, index):
        with pytest.raises(InvalidIndexError):
            make_interpreter(f"decl $l = [1, 2, 3]\nreturn($l[{index}])").run()

    def test_nested_index(self, run_aquila):
        assert run_aquila("decl $l = [[1, 2], [3, 4]]\nreturn($l[1][0])").value.value == 3

    def test_indexing_requires_list_and_int(self, make_interpreter):
        with pytest.raises(AquilaTypeError):
            make_interpreter("decl $x = 3\nreturn($x[0])").run()
        with pytest.raises(AquilaTypeError):
            make_interpreter("decl $l = [1]\nreturn($l[true])").run()


class TestDeclarationsAndAssignment:
    def test_type_is_immutable(self, make_interpreter):
        interpreter = make_interpreter("decl $x = 1\n$x = [1]")
        with pytest.raises(AquilaTypeError):
            interpreter.run()
        assert interpreter.env.get("x").value == 1

    def test_explicit_type_must_match(self, make_interpreter):
        with pytest.raises(AquilaTypeError):
            make_interpreter("decl float $x = 1").run()

    def test_redeclaration(self, make_interpreter):
        with pytest.raises(AquilaNameError):
            make_interpreter("decl $x = 1\ndecl $x = 2").run()

    def test_overwrite_requires_existing(self, make_interpreter):
        with pytest.raises(AquilaNameError):
            make_interpreter("overwrite $x = 1").run()

    def test_safe_replaces(self, run_aquila):
        outcome = run_aquila("decl $x = 1\nsafe $x = 2.5\nsafe $y = 3")
        assert outcome.env.get("x").value == 2.5
        assert outcome.env.get("y").value == 3

    def test_unassigned_read(self, make_interpreter):
        with pytest.raises(UnassignedValueError):
            make_interpreter("decl int $x\nreturn($x + 1)").run()

    def test_unassigned_then_assigned(self, run_aquila):
        assert run_aquila("decl int $x\n$x = 4\nreturn($x)").value.value == 4

    def test_const(self, make_interpreter):
        with pytest.raises(InvalidClassifierError):
            make_interpreter("const decl $c = 5\n$c = 6").run()
        with pytest.raises(InvalidClassifierError):
            make_interpreter("const decl $c = random()").run()
        with pytest.raises(InvalidClassifierError):
            make_interpreter("const decl $l = [1, 2]\n$l[0] = 3").run()

    def test_const_expression(self, run_aquila):
        outcome = run_aquila("const decl $c = (2 + 3) * -1")
        assert outcome.env.get("c").value == -5
        assert outcome.env.get("c").is_const

    def test_declaration_copies(self, run_aquila):
        outcome = run_aquila("decl $a = [1]\ndecl $b = $a\n$b[0] = 5\nreturn($a[0])")
        assert outcome.value.value == 1

    def test_implicit_declaration_disabled(self, make_interpreter):
        interpreter = make_interpreter("#setting (implicit declaration in assignment) false\n$x = 1")
        with pytest.raises(AquilaNameError):
            interpreter.run()

    def test_global_binding_visible_in_functions(self, run_aquila):
        outcome = run_aquila(
            """
            global decl $g = 1
            function null setg()
                $g = 5
            end-function
            setg()
            return($g)
            """
        )
        assert outcome.value.value == 5


class TestControlFlow:
    def test_break_and_continue(self, run_aquila):
        outcome = run_aquila(
            """
            decl $total = 0
            decl $i = 0
            while true
                $i = $i + 1
                if $i > 5
                    break
                end-if
                if $i % 2 ~ 0
                    continue()
                end-if
                $total = $total + $i
            end-while
            return($total)
            """
        )
        assert outcome.value.value == 9
        assert outcome.env.depth() == 1

    def test_scope_depth_restored(self, make_interpreter):
        interpreter = make_interpreter(
            """
            decl $before = depth()
            while true
                if true
                    break
                end-if
            end-while
            for ($i = 0; $i < 2; $i = $i + 1)
                decl $inner = $i
            end-for
            return($before ~ depth())
            """
        )
        interpreter.builtins.register("depth", 0, 0, lambda interp, thunks, env, loc: make_int(env.depth()))
        assert interpreter.run().value is True

    def test_return_unwinds_loops_in_functions(self, run_aquila):
        outcome = run_aquila(
            """
            function int first_big($l)
                for ($i = 0; $i < length($l); $i = $i + 1)
                    if $l[$i] > 10
                        return($l[$i])
                    end-if
                end-for
                return(-1)
            end-function
            decl $r = first_big([1, 20, 30])
            """
        )
        assert outcome.env.get("r").value == 20
        assert outcome.env.depth() == 1
        assert outcome.env.main_depth() == 1

    def test_break_outside_loop(self, make_interpreter):
        with pytest.raises(ControlFlowError):
            make_interpreter("break").run()

    def test_break_escaping_function(self, make_interpreter):
        source = "function null f()\nbreak\nend-function\nwhile true\nf()\nend-while"
        with pytest.raises(ControlFlowError):
            make_interpreter(source).run()

    def test_return_only_as_statement(self, make_interpreter):
        with pytest.raises(ControlFlowError):
            make_interpreter("decl $x = return(1)").run()

    def test_condition_must_be_bool(self, make_interpreter):
        with pytest.raises(AquilaTypeError):
            make_interpreter("if 1\nend-if").run()

    def test_else_branch(self, run_aquila):
        outcome = run_aquila("if 1 > 2\nprint_str(yes)\nelse\nprint_str(no)\nend-if")
        assert outcome.output == "no"

    def test_top_level_return_ends_program(self, run_aquila):
        outcome = run_aquila("print_str(a)\nreturn(1)\nprint_str(b)")
        assert outcome.output == "a"
        assert outcome.value.value == 1

    def test_program_without_return_yields_null(self, run_aquila):
        assert run_aquila("decl $x = 1").value.type == "null"


class TestFunctions:
    def test_lists_share_storage(self, run_aquila):
        outcome = run_aquila(
            """
            function null push($l)
                append_value($l, 4)
            end-function
            decl $l = [1, 2]
            push($l)
            return(length($l))
            """
        )
        assert outcome.value.value == 3

    def test_scalars_are_copied(self, run_aquila):
        outcome = run_aquila(
            """
            function null bump($x)
                $x = $x + 1
            end-function
            decl $a = 1
            bump($a)
            return($a)
            """
        )
        assert outcome.value.value == 1

    def test_caller_locals_are_invisible(self, make_interpreter):
        source = "decl $a = 1\nfunction int geta()\nreturn($a)\nend-function\nreturn(geta())"
        with pytest.raises(AquilaNameError):
            make_interpreter(source).run()

    def test_argument_count(self, make_interpreter):
        source = "function int f($a)\nreturn($a)\nend-function\nreturn(f(1, 2))"
        with pytest.raises(AquilaTypeError):
            make_interpreter(source).run()

    def test_return_type_checked(self, make_interpreter):
        with pytest.raises(AquilaTypeError):
            make_interpreter("function int f()\nreturn(1.5)\nend-function\nreturn(f())").run()

    def test_typed_function_must_return(self, make_interpreter):
        with pytest.raises(AquilaTypeError):
            make_interpreter("function int f()\ndecl $a = 1\nend-function\nf()").run()

    def test_auto_function_returns_anything(self, run_aquila):
        outcome = run_aquila("function auto f($x)\nreturn([$x])\nend-function\nreturn(f(2.5))")
        assert render_value(outcome.value) == "[2.5]"

    def test_null_function_result(self, run_aquila):
        assert run_aquila("function null f()\nend-function\nreturn(f())").value.type == "null"

    def test_builtin_name_clash(self, make_interpreter):
        with pytest.raises(AquilaNameError):
            make_interpreter("function int length($l)\nreturn(0)\nend-function").run()

    def test_duplicate_function(self, make_interpreter):
        source = "function null f()\nend-function\nfunction null f()\nend-function"
        with pytest.raises(AquilaNameError):
            make_interpreter(source).run()

    def test_definition_inside_loop_is_allowed(self, run_aquila):
        outcome = run_aquila(
            """
            for ($i = 0; $i < 3; $i = $i + 1)
                function int twice($n)
                    return($n * 2)
                end-function
            end-for
            return(twice(4))
            """
        )
        assert outcome.value.value == 8

    def test_unknown_function(self, make_interpreter):
        with pytest.raises(AquilaNameError):
            make_interpreter("nothing_here()").run()

    def test_recursion_limit(self, make_interpreter, run_aquila):
        body = (
            "function recursive int down($n)\n"
            "if $n ~ 0\nreturn(0)\nend-if\n"
            "return(down($n - 1))\n"
            "end-function\n"
            "return(down(10))"
        )
        assert run_aquila(body).value.value == 0
        with pytest.raises(AquilaRecursionError):
            make_interpreter("#setting recursion_limit 5\n" + body).run()


class TestTracing:
    def test_traced_assignments_are_recorded(self, run_aquila):
        outcome = run_aquila("decl $x = 1\ntrace $x\n$x = 2\n$x = 3")
        alterations = outcome.interpreter.alterations
        assert [(a.name, a.kind, a.value) for a in alterations] == [("x", "assign", "2"), ("x", "assign", "3")]
        assert "TRACE" in outcome.interpreter.logger.rules()

    def test_untraced_values_are_not_recorded(self, run_aquila):
        assert run_aquila("decl $x = 1\n$x = 2").interpreter.alterations == []

    def test_trace_all(self, run_aquila):
        outcome = run_aquila("#trace_all\ndecl $l = [1]\nappend_value($l, 2)")
        (alteration,) = outcome.interpreter.alterations
        assert (alteration.kind, alteration.value, alteration.aux) == ("append_value", "[1, 2]", ["2"])

    def test_swap_reports_once(self, run_aquila):
        outcome = run_aquila("decl $l = [1, 2, 3]\ntrace $l\nswap($l, 0, 2)")
        (alteration,) = outcome.interpreter.alterations
        assert (alteration.kind, alteration.value, alteration.aux) == ("swap", "[3, 2, 1]", ["0", "2"])

    def test_indexed_assignment_reports_the_list(self, run_aquila):
        outcome = run_aquila("decl $l = [1, 2]\ntrace $l\n$l[0] = 7")
        (alteration,) = outcome.interpreter.alterations
        assert (alteration.name, alteration.kind, alteration.value, alteration.aux) == ("l", "assign_at", "[7, 2]", ["0"])

    def test_user_observer_sees_every_change(self, run_aquila):
        seen = []
        run_aquila(
            "decl $x = 1\n$x = 2\ndecl $l = []\nappend_value($l, 1)",
            change_observer=lambda value, kind, new, aux: seen.append((value.name, kind)),
        )
        assert seen == [("x", "assign"), ("l", "append_value")]


class TestStopAndErrors:
    def test_request_stop(self, make_interpreter):
        services = build_default_services()
        counter = {"n": 0}

        def _hook(interpreter, instruction, env):
            counter["n"] += 1
            if counter["n"] == 5:
                interpreter.request_stop()

        services.hook_registry.on_event("before_instruction", _hook, priority=0, ext_name="test")
        interpreter = make_interpreter("decl $n = 0\nwhile true\n$n = $n + 1\nend-while", services=services)
        with pytest.raises(StopRequested):
            interpreter.run()
        assert interpreter.env.depth() == 1

    def test_error_location_and_step(self, make_interpreter):
        interpreter = make_interpreter("decl $x = 1\ndecl $y = $x / 0")
        with pytest.raises(AquilaZeroDivisionError) as info:
            interpreter.run()
        assert info.value.location.line == 2
        assert info.value.step_index is not None

    def test_internal_errors_are_wrapped(self, make_interpreter):
        def _boom(interpreter, thunks, env, location):
            raise ValueError("boom")

        interpreter = make_interpreter("explode()")
        interpreter.builtins.register("explode", 0, 0, _boom)
        with pytest.raises(AquilaRuntimeError) as info:
            interpreter.run()
        assert info.value.rule == "internal"
        assert "boom" in info.value.message

    def test_hook_failures_become_runtime_errors(self, make_interpreter):
        services = build_default_services()

        def _hook(*args):
            raise KeyError("nope")

        services.hook_registry.on_event("after_call", _hook, priority=0, ext_name="test")
        with pytest.raises(AquilaRuntimeError) as info:
            make_interpreter("print_endl()", services=services).run()
        assert info.value.rule == "EXT"


class TestStepLogAndTraceback:
    def test_states_are_chained(self, run_aquila):
        logger = run_aquila("decl $x = 1\n$x = 2").interpreter.logger
        assert logger.entries[0].rewrite_record["rule"] == "SEED"
        for previous, entry in zip(logger.entries, logger.entries[1:]):
            assert entry.rewrite_record["from_state_id"] == previous.state_id
        assert logger.rules()[1:] == ["Declaration", "Assignment"]

    def test_verbose_snapshots(self, run_aquila):
        logger = run_aquila("decl $x = 1\n$x = 2", verbose=True).interpreter.logger
        assert logger.entries[-1].env_snapshot == {"x": "int:1"}

    def test_traceback_text_and_json(self, make_interpreter):
        interpreter = make_interpreter("function int fail()\nreturn(1 / 0)\nend-function\ndecl $x = fail()")
        with pytest.raises(AquilaZeroDivisionError) as info:
            interpreter.run()
        formatter = TracebackFormatter(interpreter)
        text = formatter.format_text(info.value, verbose=False)
        assert text.startswith("Traceback (most recent call last):")
        assert "in fail" in text
        assert text.endswith("AquilaZeroDivisionError: Division by zero (rule: /)")
        data = json.loads(formatter.to_json(info.value))
        assert data["error"]["type"] == "AquilaZeroDivisionError"
        assert [frame["name"] for frame in data["traceback"]] == ["<top-level>", "fail"]


class TestConstantStorage:
    def test_const_list_parameter_cannot_be_assigned(self, make_interpreter):
        source = "function null poke($l)\n$l[0] = 9\nend-function\nconst decl $c = [1, 2]\npoke($c)"
        interpreter = make_interpreter(source)
        with pytest.raises(InvalidClassifierError):
            interpreter.run()
        assert render_value(interpreter.env.get("c")) == "[1, 2]"

    def test_const_list_parameter_cannot_grow(self, make_interpreter):
        source = "function null grow($l)\nappend_value($l, 3)\nend-function\nconst decl $c = [1, 2]\ngrow($c)"
        interpreter = make_interpreter(source)
        with pytest.raises(InvalidClassifierError):
            interpreter.run()
        assert render_value(interpreter.env.get("c")) == "[1, 2]"

    def test_nested_items_of_const_list(self, make_interpreter):
        interpreter = make_interpreter("const decl $c = [[1]]\nappend_value($c[0], 2)")
        with pytest.raises(InvalidClassifierError):
            interpreter.run()
        assert render_value(interpreter.env.get("c")) == "[[1]]"

    def test_copy_of_const_list_is_mutable(self, run_aquila):
        outcome = run_aquila("const decl $c = [[1]]\ndecl $d = $c\nappend_value($d[0], 2)\nreturn([$c, $d])")
        assert render_value(outcome.value) == "[[[1]], [[1, 2]]]"

    def test_literal_argument_is_a_mutable_temporary(self, run_aquila):
        source = "function int push($l)\nappend_value($l, 3)\nreturn(length($l))\nend-function\nreturn(push([1, 2]))"
        assert run_aquila(source).value.value == 3

    def test_returned_const_parameter_is_detached(self, run_aquila):
        outcome = run_aquila(
            """
            function list same($l)
                return($l)
            end-function
            const decl $c = [1]
            decl $d = same($c)
            append_value(same($c), 5)
            append_value($d, 2)
            return(length($c))
            """
        )
        assert outcome.value.value == 1


class TestProgramResult:
    def test_result_is_detached_from_the_environment(self, run_aquila):
        outcome = run_aquila("decl $l = [1]\nreturn($l)")
        outcome.value.value.append(make_int(2))
        assert render_value(outcome.env.get("l")) == "[1]"

    def test_unsupported_assignment_target(self, make_interpreter):
        location = SourceLocation(file="<string>", line=1, column=1, statement="1 = 2")
        statement = Assignment(
            location=location,
            target=Literal(location=location, value=1, literal_type="int"),
            expression=Literal(location=location, value=2, literal_type="int"),
        )
        interpreter = make_interpreter()
        with pytest.raises(AquilaRuntimeError) as info:
            interpreter.execute(statement, interpreter.new_environment())
        assert info.value.rule == "internal"
