import pytest

from environment import (
    INT_MAX,
    INT_MIN,
    AquilaNameError,
    ControlFlowError,
    Environment,
    UnassignedValueError,
    copy_value,
    default_value,
    make_bool,
    make_float,
    make_int,
    make_list,
    make_null,
    render_value,
    values_equal,
    wrap_int,
)


class TestValues:
    def test_int_wraps_to_i64(self):
        assert wrap_int(INT_MAX + 1) == INT_MIN
        assert wrap_int(INT_MIN - 1) == INT_MAX
        assert make_int(2**64 + 5).value == 5

    def test_default_values_are_unassigned(self):
        value = default_value("int")
        assert value.value == 0 and not value.assigned
        with pytest.raises(UnassignedValueError):
            value.payload()

    def test_copy_is_deep(self):
        original = make_list([make_int(1), make_list([make_int(2)])])
        clone = copy_value(original)
        clone.value[1].value[0].value = 99
        assert original.value[1].value[0].value == 2

    def test_rendering(self):
        assert render_value(make_list([make_int(1), make_float(2.5), make_bool(True), make_list([])])) == "[1, 2.5, true, []]"
        assert render_value(make_null()) == "null"
        assert render_value(make_float(3.0)) == "3.0"

    def test_equality(self):
        assert values_equal(make_list([make_int(1)]), make_list([make_int(1)]))
        assert not values_equal(make_list([make_int(1)]), make_list([make_float(1.0)]))
        assert values_equal(make_null(), make_null())
        assert not values_equal(make_null(), make_int(0))


class TestScopes:
    def test_inner_frame_shadows_and_unwinds(self):
        env = Environment()
        env.declare("x", make_int(1))
        env.enter_block()
        env.declare("x", make_int(2))
        assert env.get("x").value == 2
        assert env.depth() == 2
        env.exit_block()
        assert env.get("x").value == 1

    def test_unwind_to_restores_depth(self):
        env = Environment()
        env.enter_block()
        env.enter_block()
        env.enter_block()
        env.unwind_to(2)
        assert env.depth() == 2
        with pytest.raises(ControlFlowError):
            env.unwind_to(5)

    def test_base_frame_cannot_be_exited(self):
        env = Environment()
        with pytest.raises(ControlFlowError):
            env.exit_block()
        with pytest.raises(ControlFlowError):
            env.pop_main()

    def test_main_scope_hides_caller_locals_but_not_globals(self):
        env = Environment()
        env.declare("local", make_int(1))
        env.declare("shared", make_int(2), is_global=True)
        env.push_main({"param": make_int(3)})
        assert not env.has("local")
        assert env.get("shared").value == 2
        assert env.get("param").value == 3
        env.pop_main()
        assert env.has("local") and not env.has("param")

    def test_replace_updates_owning_frame(self):
        env = Environment()
        env.declare("x", make_int(1))
        env.get("x").traced = True
        env.enter_block()
        env.replace("x", make_float(2.0))
        env.exit_block()
        assert env.get("x").type == "float"
        assert env.get("x").traced

    def test_delete(self):
        env = Environment()
        env.declare("x", make_int(1))
        removed = env.delete("x")
        assert removed.value == 1
        with pytest.raises(AquilaNameError):
            env.get("x")
        with pytest.raises(AquilaNameError):
            env.delete("x")

    def test_snapshot_lists_visible_bindings(self):
        env = Environment()
        env.declare("g", make_bool(True), is_global=True)
        env.declare("x", make_int(4))
        assert env.snapshot() == {"g": "bool:true", "x": "int:4"}


class TestNotifications:
    def test_freeze_nests(self):
        seen = []
        env = Environment(observer=lambda value, kind, new, aux: seen.append(kind))
        target = make_int(1)
        env.freeze()
        env.freeze()
        env.notify(target, "a", 1)
        env.unfreeze()
        env.notify(target, "b", 1)
        env.unfreeze()
        env.notify(target, "c", 1)
        assert seen == ["c"]
        assert not env.frozen

    def test_unbalanced_unfreeze(self):
        with pytest.raises(ControlFlowError):
            Environment().unfreeze()

    def test_without_observer_is_a_no_op(self):
        Environment().notify(make_int(1), "assign", 1)
