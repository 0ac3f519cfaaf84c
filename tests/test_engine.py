"""Tests for the engine — dispatch, event hierarchy, navigation, idle, message box."""

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from cardscript.engine import Engine
from cardscript.errors import NavigationError
from cardscript.presentation import NullPresenter
from cardscript.scene import Scene


def _make_scene():
    return Scene.from_dict({
        "stack": {"id": "stk", "name": "Demo", "script": ""},
        "backgrounds": [{"id": "bg1", "name": "Main", "objects": [
            {"type": "button", "id": "bg-btn", "name": "Shared"},
        ]}],
        "cards": [
            {"id": "c1", "name": "Home", "background": "bg1", "objects": [
                {"type": "button", "id": "btn-a", "name": "A"},
                {"type": "field", "id": "fld-log", "name": "Log"},
            ]},
            {"id": "c2", "name": "Second", "background": "bg1"},
            {"id": "c3", "name": "Third", "background": "bg1"},
        ],
    })


def _make_engine(**config):
    merged = {"engine": {"idle_interval": 0}}
    merged.update(config)
    return Engine(_make_scene(), NullPresenter(), merged)


def _handler(event, *lines):
    return "\n".join([f"on {event}", *lines, f"end {event}"])


_real_sleep = asyncio.sleep


async def _yield(seconds):
    await _real_sleep(0)


class TestDispatch:
    @pytest.mark.asyncio
    async def test_runs_matching_handler(self):
        engine = _make_engine()
        script = _handler("mouseUp", 'put "up" into it')
        assert await engine.dispatch("mouseUp", script) is True
        assert engine.registers.it == "up"

    @pytest.mark.asyncio
    async def test_missing_handler(self):
        engine = _make_engine()
        assert await engine.dispatch("mouseDown", _handler("mouseUp", "beep")) is False

    @pytest.mark.asyncio
    async def test_empty_script(self):
        engine = _make_engine()
        assert await engine.dispatch("mouseUp", "") is False
        assert await engine.dispatch("mouseUp", "   \n") is False

    @pytest.mark.asyncio
    async def test_no_handler_leaves_state_alone(self):
        engine = _make_engine()
        engine.registers.it = "before"
        await engine.dispatch("mouseDown", _handler("mouseUp", 'put "after" into it'))
        assert engine.registers.it == "before"
        assert engine.presenter.renders == 0

    @pytest.mark.asyncio
    async def test_prepend_and_append_to_it(self):
        engine = _make_engine()
        engine.registers.it = "world"
        await engine.dispatch("e", _handler("e", 'put "hello " before it', 'put "!" after it'))
        assert engine.registers.it == "hello world!"

    @pytest.mark.asyncio
    async def test_read_only_handler_is_repeatable(self):
        engine = _make_engine()
        script = _handler("e", "get the number of cards * 2")
        await engine.dispatch("e", script)
        first = (engine.registers.it, engine.scene.current_index, engine.presenter.alerts[:])
        await engine.dispatch("e", script)
        assert (engine.registers.it, engine.scene.current_index, engine.presenter.alerts) == first
        assert first[0] == "6"

    @pytest.mark.asyncio
    async def test_locals_do_not_leak_between_dispatches(self):
        engine = _make_engine()
        await engine.dispatch("a", _handler("a", "x = 5"))
        await engine.dispatch("b", _handler("b", "put x into it"))
        assert engine.registers.it == "x"

    @pytest.mark.asyncio
    async def test_globals_persist(self):
        engine = _make_engine()
        await engine.dispatch("a", _handler("a", "global n", "n = 5"))
        await engine.dispatch("b", _handler("b", "global n", "put n + 1 into it"))
        assert engine.registers.it == "6"

    @pytest.mark.asyncio
    async def test_error_alerts_once_and_reports_false(self, caplog):
        engine = _make_engine()
        engine.presenter.beep = MagicMock()
        engine.scene.move_to(2)
        with caplog.at_level(logging.ERROR):
            handled = await engine.dispatch("mouseUp", _handler("mouseUp", "go to next", "beep"))
        assert handled is False
        assert engine.presenter.alerts == [("Script Error", "Already at the last card.")]
        engine.presenter.beep.assert_called_once()
        assert "Script error in mouseUp" in caplog.text

    @pytest.mark.asyncio
    async def test_statements_before_error_take_effect(self):
        engine = _make_engine()
        await engine.dispatch("mouseUp", _handler("mouseUp", 'put "partial" into it', "go to 99"))
        assert engine.registers.it == "partial"
        assert engine.presenter.alerts[0][0] == "Script Error"


class TestHierarchy:
    @pytest.mark.asyncio
    async def test_object_handles_first(self):
        engine = _make_engine()
        scene = engine.scene
        scene.find_entity_by_id("btn-a").script = _handler("mouseUp", 'put "button" into it')
        scene.current_card().script = _handler("mouseUp", 'put "card" into it')
        assert await engine.handle_object_event("mouseUp", "btn-a") is True
        assert engine.registers.it == "button"

    @pytest.mark.asyncio
    async def test_bubbles_to_card(self):
        engine = _make_engine()
        engine.scene.current_card().script = _handler("mouseUp", "put the target into it")
        assert await engine.handle_object_event("mouseUp", "btn-a") is True
        assert engine.registers.it == "btn-a"

    @pytest.mark.asyncio
    async def test_bubbles_to_background_then_stack(self):
        engine = _make_engine()
        scene = engine.scene
        scene.stack.script = _handler("mouseUp", 'put "stack" into it')
        assert await engine.handle_object_event("mouseUp", "btn-a") is True
        assert engine.registers.it == "stack"
        scene.backgrounds["bg1"].script = _handler("mouseUp", 'put "bg" into it')
        await engine.handle_object_event("mouseUp", "btn-a")
        assert engine.registers.it == "bg"

    @pytest.mark.asyncio
    async def test_me_is_origin_at_every_level(self):
        engine = _make_engine()
        engine.scene.stack.script = _handler("mouseUp", "put the name of me into it")
        await engine.handle_object_event("mouseUp", "btn-a")
        assert engine.registers.it == "A"

    @pytest.mark.asyncio
    async def test_unhandled(self):
        engine = _make_engine()
        assert await engine.handle_object_event("mouseUp", "btn-a") is False

    @pytest.mark.asyncio
    async def test_failed_handler_keeps_bubbling(self):
        engine = _make_engine()
        scene = engine.scene
        scene.find_entity_by_id("btn-a").script = _handler("mouseUp", "go to 99")
        scene.stack.script = _handler("mouseUp", 'put "stack" into it')
        assert await engine.handle_object_event("mouseUp", "btn-a") is True
        # A failed dispatch reports unhandled
        assert engine.registers.it == "stack"

    @pytest.mark.asyncio
    async def test_background_object(self):
        engine = _make_engine()
        engine.scene.find_entity_by_id("bg-btn").script = _handler("mouseUp", "go next")
        await engine.handle_object_event("mouseUp", "bg-btn")
        assert engine.scene.current_index == 1


class TestPostEvent:
    @pytest.mark.asyncio
    async def test_same_source_is_serialized(self):
        engine = _make_engine()
        engine.scene.find_entity_by_id("btn-a").script = _handler(
            "mouseUp", 'put "<" after it', "wait 1", 'put ">" after it')
        with patch("cardscript.commands.asyncio.sleep", new=_yield):
            await asyncio.gather(
                engine.post_event("mouseUp", "btn-a"),
                engine.post_event("mouseUp", "btn-a"),
            )
        assert engine.registers.it == "<><>"

    @pytest.mark.asyncio
    async def test_unserialized_interleaves(self):
        engine = _make_engine(engine={"idle_interval": 0, "serialize_events": False})
        engine.scene.find_entity_by_id("btn-a").script = _handler(
            "mouseUp", 'put "<" after it', "wait 1", 'put ">" after it')
        with patch("cardscript.commands.asyncio.sleep", new=_yield):
            await asyncio.gather(
                engine.post_event("mouseUp", "btn-a"),
                engine.post_event("mouseUp", "btn-a"),
            )
        assert engine.registers.it == "<<>>"


class TestNavigation:
    @pytest.mark.asyncio
    async def test_close_then_open(self):
        engine = _make_engine()
        scene = engine.scene
        scene.cards[0].script = _handler("closeCard", 'put "closed " after it')
        scene.cards[1].script = _handler("openCard", 'put "opened" after it')
        await engine.go_to_card("next")
        assert scene.current_index == 1
        assert engine.registers.it == "closed opened"
        assert engine.presenter.renders >= 1

    @pytest.mark.asyncio
    async def test_same_card_fires_nothing(self):
        engine = _make_engine()
        engine.scene.cards[0].script = _handler("closeCard", 'put "closed" into it')
        await engine.go_to_card(1)
        assert engine.registers.it == ""

    @pytest.mark.asyncio
    async def test_go_back(self):
        engine = _make_engine()
        await engine.go_to_card("last")
        await engine.go_to_card("back")
        assert engine.scene.current_index == 0
        assert engine.scene.history == []

    @pytest.mark.asyncio
    async def test_go_command_forms(self):
        engine = _make_engine()
        await engine.execute('go to card "Third"')
        assert engine.scene.current_index == 2
        await engine.execute("go card 2")
        assert engine.scene.current_index == 1
        await engine.execute("go prev")
        assert engine.scene.current_index == 0
        await engine.execute("go to last card")
        assert engine.scene.current_index == 2

    @pytest.mark.asyncio
    async def test_go_to_missing_card_via_dispatch(self):
        engine = _make_engine()
        await engine.dispatch("mouseUp", _handler("mouseUp", 'go to card "Nowhere"'))
        assert engine.presenter.alerts == [("Script Error", 'Could not find card named "Nowhere".')]
        assert engine.scene.current_index == 0


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_order(self):
        engine = _make_engine()
        engine.scene.stack.script = "\n".join([
            _handler("startUp", 'put "start " after it'),
            _handler("openStack", 'put "stack " after it'),
            _handler("openCard", 'put "card" after it'),
        ])
        await engine.start()
        assert engine.registers.it == "start stack card"
        assert engine._idle_task is None
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_start_launches_idle_loop(self):
        engine = _make_engine(engine={"idle_interval": 0.01})
        engine.idle_tick = AsyncMock(return_value=True)
        await engine.start()
        await asyncio.sleep(0.05)
        await engine.shutdown()
        assert engine.idle_tick.await_count >= 1
        assert engine._idle_task is None

    @pytest.mark.asyncio
    async def test_idle_order(self):
        engine = _make_engine()
        scene = engine.scene
        scene.find_entity_by_id("bg-btn").script = _handler("idle", 'put "bg-obj " after it')
        scene.find_entity_by_id("btn-a").script = _handler("idle", 'put "card-obj " after it')
        scene.current_card().script = _handler("idle", 'put "card" after it')
        assert await engine.idle_tick() is True
        assert engine.registers.it == "bg-obj card-obj card"

    @pytest.mark.asyncio
    async def test_idle_skips_while_running(self):
        engine = _make_engine()
        engine._idle_running = True
        assert await engine.idle_tick() is False

    @pytest.mark.asyncio
    async def test_idle_guard_released_after_error(self):
        engine = _make_engine()
        engine.handle_object_event = AsyncMock(side_effect=RuntimeError("boom"))
        assert await engine.idle_tick() is True
        assert engine._idle_running is False

    @pytest.mark.asyncio
    async def test_from_config(self, tmp_path):
        config = tmp_path / "cardscript.yaml"
        config.write_text("engine:\n  idle_interval: 0\n", encoding="utf-8")
        stack = tmp_path / "stack.yaml"
        stack.write_text("stack:\n  name: Loaded\ncards:\n  - name: One\n  - name: Two\n",
                         encoding="utf-8")
        engine = Engine.from_config(config, stack)
        assert engine.scene.stack.name == "Loaded"
        assert len(engine.scene.cards) == 2
        assert engine.config["engine"]["idle_interval"] == 0
        assert isinstance(engine.presenter, NullPresenter)


class TestFetch:
    @pytest.mark.asyncio
    async def test_injected_fetcher(self):
        fetch = AsyncMock(return_value="text")
        engine = Engine(_make_scene(), NullPresenter(), fetch=fetch)
        assert await engine.fetch_text("https://example.com") == "text"

    @pytest.mark.asyncio
    async def test_httpx_client(self):
        engine = _make_engine()
        response = MagicMock()
        response.text = "remote body"
        client = MagicMock()
        client.get = AsyncMock(return_value=response)
        client.aclose = AsyncMock()
        with patch("cardscript.engine.httpx.AsyncClient", return_value=client) as factory:
            assert await engine.fetch_text("https://example.com") == "remote body"
            await engine.fetch_text("https://example.com/2")
        factory.assert_called_once()
        response.raise_for_status.assert_called()
        await engine.shutdown()
        client.aclose.assert_awaited_once()


class TestMessageBox:
    @pytest.mark.asyncio
    async def test_expression(self):
        engine = _make_engine()
        assert await engine.message("2 + 3") == "5"
        assert await engine.message("the number of cards") == "3"

    @pytest.mark.asyncio
    async def test_command(self):
        engine = _make_engine()
        assert await engine.message('put "hi" into it') == "hi"

    @pytest.mark.asyncio
    async def test_command_without_it(self):
        engine = _make_engine()
        assert await engine.message("go next") == "(done)"
        assert engine.scene.current_index == 1

    @pytest.mark.asyncio
    async def test_verb_wins_over_operator(self):
        engine = _make_engine()
        assert await engine.message("put 1 + 1 into it") == "2"

    @pytest.mark.asyncio
    async def test_control_structure(self):
        engine = _make_engine()
        result = await engine.message("repeat 2 times\nput \"a\" after it\nend repeat")
        assert result == "aa"

    @pytest.mark.asyncio
    async def test_empty(self):
        engine = _make_engine()
        assert await engine.message("   ") == ""

    @pytest.mark.asyncio
    async def test_errors_propagate(self):
        engine = _make_engine()
        with pytest.raises(NavigationError):
            await engine.message("go to 42")
