"""Tests for the execution context (variables, targets) and control flow."""

import pytest

from cardscript.engine import Engine
from cardscript.presentation import NullPresenter
from cardscript.runtime import ExecContext, StatementExecutor
from cardscript.scene import Scene
from cardscript.script import parse_block


def _make_scene():
    return Scene.from_dict({
        "stack": {"id": "stk", "name": "Demo"},
        "backgrounds": [{"id": "bg1", "name": "Main", "objects": [
            {"type": "field", "id": "bg-title", "name": "Title", "content": "bg"},
        ]}],
        "cards": [
            {"id": "c1", "name": "Home", "background": "bg1", "objects": [
                {"type": "field", "id": "cd-title", "name": "Title", "content": "card"},
                {"type": "button", "id": "btn-ok", "name": "OK"},
            ]},
            {"id": "c2", "name": "Second", "background": "bg1"},
        ],
    })


def _make_engine(**scripting):
    config = {"engine": {"idle_interval": 0}}
    if scripting:
        config["scripting"] = scripting
    return Engine(_make_scene(), NullPresenter(), config)


class TestVariables:
    def test_locals_are_per_context(self):
        engine = _make_engine()
        a = ExecContext(engine)
        a.assign("x", "1")
        assert a.lookup_variable("X") == "1"
        assert ExecContext(engine).lookup_variable("x") is None

    def test_it_is_shared(self):
        engine = _make_engine()
        ExecContext(engine).it = 42
        assert ExecContext(engine).it == "42"
        assert engine.registers.it == "42"

    def test_declared_global_survives_dispatch(self):
        engine = _make_engine()
        a = ExecContext(engine)
        a.declare_global("Score")
        a.assign("score", "10")
        b = ExecContext(engine)
        assert b.lookup_variable("score") == "10"
        assert engine.registers.globals == {"score": "10"}

    def test_undeclared_assignment_stays_local(self):
        engine = _make_engine()
        ctx = ExecContext(engine)
        ctx.assign("tmp", "1")
        assert engine.registers.globals == {}

    def test_existing_global_is_updated(self):
        engine = _make_engine()
        engine.registers.globals["total"] = "1"
        ExecContext(engine).assign("total", "2")
        assert engine.registers.globals["total"] == "2"


class TestTargets:
    def test_me_is_origin(self):
        ctx = ExecContext(_make_engine(), "btn-ok")
        assert ctx.resolve_target("me").id == "btn-ok"
        assert ctx.resolve_target("this button").id == "btn-ok"

    def test_me_without_origin(self):
        assert ExecContext(_make_engine()).resolve_target("me") is None

    def test_layers(self):
        ctx = ExecContext(_make_engine())
        assert ctx.resolve_target('field "Title"').id == "cd-title"
        assert ctx.resolve_target('card field "Title"').id == "cd-title"
        assert ctx.resolve_target('bg field "Title"').id == "bg-title"
        assert ctx.resolve_target('background fld "title"').id == "bg-title"

    def test_kind_filter(self):
        ctx = ExecContext(_make_engine())
        assert ctx.resolve_target('field "OK"') is None
        assert ctx.resolve_target('btn "OK"').id == "btn-ok"
        assert ctx.resolve_target("object OK").id == "btn-ok"

    def test_containers(self):
        ctx = ExecContext(_make_engine())
        assert ctx.resolve_target("this card").id == "c1"
        assert ctx.resolve_target("card 2").id == "c2"
        assert ctx.resolve_target('card "Second"').id == "c2"
        assert ctx.resolve_target("bg").id == "bg1"
        assert ctx.resolve_target('background "Main"').id == "bg1"
        assert ctx.resolve_target("this stack").id == "stk"

    def test_unknown_card_falls_back_to_current(self):
        ctx = ExecContext(_make_engine())
        assert ctx.resolve_target('card "Nowhere"').id == "c1"

    def test_unknown_background_is_none(self):
        ctx = ExecContext(_make_engine())
        assert ctx.resolve_target('background "Nowhere"') is None

    def test_field_named_by_variable(self):
        ctx = ExecContext(_make_engine())
        ctx.assign("which", "Title")
        assert ctx.resolve_target("field which").id == "cd-title"

    def test_bare_name(self):
        ctx = ExecContext(_make_engine())
        assert ctx.resolve_target('"ok"').id == "btn-ok"


class TestControlFlow:
    @pytest.mark.asyncio
    async def test_if_else(self):
        engine = _make_engine()
        await engine.execute('if 1 = 2 then\nput "a" into it\nelse\nput "b" into it\nend if')
        assert engine.registers.it == "b"

    @pytest.mark.asyncio
    async def test_inline_if_with_next_line_else(self):
        engine = _make_engine()
        await engine.execute('if 2 > 1 then put "yes" into it\nelse put "no" into it')
        assert engine.registers.it == "yes"

    @pytest.mark.asyncio
    async def test_else_if_chain(self):
        engine = _make_engine()
        script = "\n".join([
            "x = 2",
            "if x = 1 then",
            'put "one" into it',
            "else if x = 2 then",
            'put "two" into it',
            "else",
            'put "many" into it',
            "end if",
        ])
        await engine.execute(script)
        assert engine.registers.it == "two"

    @pytest.mark.asyncio
    async def test_repeat_times(self):
        engine = _make_engine()
        await engine.execute('repeat 3 times\nput "x" after it\nend repeat')
        assert engine.registers.it == "xxx"

    @pytest.mark.asyncio
    async def test_repeat_count_from_variable(self):
        engine = _make_engine()
        await engine.execute('n = 2\nrepeat n times\nput "y" after it\nend repeat')
        assert engine.registers.it == "yy"

    @pytest.mark.asyncio
    async def test_repeat_with(self):
        engine = _make_engine()
        await engine.execute("repeat with i = 1 to 3\nput i after it\nend repeat")
        assert engine.registers.it == "123"

    @pytest.mark.asyncio
    async def test_repeat_with_down_to(self):
        engine = _make_engine()
        await engine.execute("repeat with i = 3 down to 1\nput i after it\nend repeat")
        assert engine.registers.it == "321"

    @pytest.mark.asyncio
    async def test_repeat_with_empty_range(self):
        engine = _make_engine()
        await engine.execute("repeat with i = 5 to 1\nput i after it\nend repeat")
        assert engine.registers.it == ""

    @pytest.mark.asyncio
    async def test_repeat_while(self):
        engine = _make_engine()
        await engine.execute("x = 0\nrepeat while x < 5\nx = x + 1\nend repeat\nput x into it")
        assert engine.registers.it == "5"

    @pytest.mark.asyncio
    async def test_repeat_until(self):
        engine = _make_engine()
        await engine.execute("x = 10\nrepeat until x <= 7\nx = x - 1\nend repeat\nput x into it")
        assert engine.registers.it == "7"

    @pytest.mark.asyncio
    async def test_forever_stops_at_limit(self):
        engine = _make_engine(repeat_limit=10)
        await engine.execute('repeat forever\nput "." after it\nend repeat')
        assert engine.registers.it == "." * 10

    @pytest.mark.asyncio
    async def test_runaway_while_stops_at_limit(self):
        engine = _make_engine(repeat_limit=25)
        await engine.execute('repeat while true\nput "." after it\nend repeat')
        assert len(engine.registers.it) == 25

    @pytest.mark.asyncio
    async def test_nested_loops(self):
        engine = _make_engine()
        script = "\n".join([
            "repeat with i = 1 to 2",
            "repeat with j = 1 to 2",
            'put i & j & " " after it',
            "end repeat",
            "end repeat",
        ])
        await engine.execute(script)
        assert engine.registers.it == "11 12 21 22 "

    @pytest.mark.asyncio
    async def test_executor_passes_leaf_commands(self):
        seen = []

        async def run_command(text, ctx):
            seen.append(text)

        executor = StatementExecutor(run_command)
        ctx = ExecContext(_make_engine())
        await executor.run(parse_block(["if true then", "one", "else", "two", "end if", "three"]), ctx)
        assert seen == ["one", "three"]
