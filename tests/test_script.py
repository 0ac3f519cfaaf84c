"""Tests for script preprocessing, the handler locator and the block parser."""

from cardscript.script import (
    CommandNode, IfNode, RepeatNode,
    find_handler, handler_names, is_host_script, parse_block,
    parse_repeat_header, split_statements, strip_comment,
)


class TestPreprocessing:
    def test_strip_comment(self):
        assert strip_comment("beep -- make noise") == "beep "
        assert strip_comment("beep") == "beep"

    def test_comment_marker_inside_quotes(self):
        assert strip_comment('put "a--b" into x -- note') == 'put "a--b" into x '

    def test_apostrophe_in_word_does_not_hide_comment(self):
        assert strip_comment("put it's done into it -- note") == "put it's done into it "
        assert split_statements("put it's done into it -- note") == ["put it's done into it"]

    def test_single_quoted_string_hides_marker(self):
        assert strip_comment("put 'a--b' into x") == "put 'a--b' into x"

    def test_split_statements(self):
        script = """
        -- header comment
        on mouseUp
            beep   -- loud

        end mouseUp
        """
        assert split_statements(script) == ["on mouseUp", "beep", "end mouseUp"]

    def test_host_marker(self):
        assert is_host_script("\n  -- @lua\nprint(1)", "-- @lua")
        assert not is_host_script("on mouseUp\n-- @lua", "-- @lua")
        assert not is_host_script("", "-- @lua")


class TestHandlerLocator:
    def test_finds_body_span(self):
        lines = ["on openCard", "beep", "end openCard", "on mouseUp", "go next", "end mouseUp"]
        assert find_handler(lines, "mouseUp") == (4, 5)
        assert find_handler(lines, "openCard") == (1, 2)

    def test_case_insensitive(self):
        lines = ["ON MOUSEUP", "beep", "END MOUSEUP"]
        assert find_handler(lines, "mouseUp") == (1, 2)

    def test_whole_word_match(self):
        lines = ["on mouseUpLate", "beep", "end mouseUpLate"]
        assert find_handler(lines, "mouseUp") is None

    def test_missing_end_runs_to_script_end(self):
        lines = ["on mouseUp", "beep", "beep"]
        assert find_handler(lines, "mouseUp") == (1, 3)

    def test_first_handler_wins(self):
        lines = ["on idle", "beep", "end idle", "on idle", "go next", "end idle"]
        assert find_handler(lines, "idle") == (1, 2)

    def test_handler_names(self):
        lines = ["on openCard", "end openCard", "on mouseUp", "end mouseUp"]
        assert handler_names(lines) == ["openCard", "mouseUp"]


class TestRepeatHeader:
    def test_times(self):
        node = parse_repeat_header("repeat 5 times")
        assert (node.kind, node.count) == ("times", "5")
        assert parse_repeat_header("repeat for n times").count == "n"
        assert parse_repeat_header("repeat 3").kind == "times"

    def test_with(self):
        node = parse_repeat_header("repeat with i = 1 to 10")
        assert (node.kind, node.var, node.start, node.end) == ("with", "i", "1", "10")
        assert node.descending is False

    def test_with_down(self):
        node = parse_repeat_header("repeat with i = 10 down to 1")
        assert node.descending is True
        assert (node.start, node.end) == ("10", "1")

    def test_conditions(self):
        assert parse_repeat_header("repeat while x < 3").kind == "while"
        node = parse_repeat_header("repeat until done")
        assert (node.kind, node.condition) == ("until", "done")
        assert parse_repeat_header("repeat forever").kind == "forever"
        assert parse_repeat_header("repeat").kind == "forever"


class TestBlockParser:
    def test_flat_commands(self):
        assert parse_block(["beep", "go next"]) == [CommandNode("beep"), CommandNode("go next")]

    def test_inline_if(self):
        nodes = parse_block(["if x = 1 then beep", "go next"])
        assert nodes == [IfNode("x = 1", [CommandNode("beep")]), CommandNode("go next")]

    def test_inline_if_else(self):
        nodes = parse_block(["if x then beep", "else go next"])
        assert nodes == [IfNode("x", [CommandNode("beep")], [CommandNode("go next")])]

    def test_block_if_else(self):
        nodes = parse_block([
            "if x > 1 then", "put 1 into y", "else", "put 2 into y", "end if", "beep",
        ])
        assert nodes == [
            IfNode("x > 1", [CommandNode("put 1 into y")], [CommandNode("put 2 into y")]),
            CommandNode("beep"),
        ]

    def test_else_if_chain_shares_end_if(self):
        nodes = parse_block([
            "if x = 1 then", "put 1 into y",
            "else if x = 2 then", "put 2 into y",
            "else", "put 3 into y",
            "end if", "beep",
        ])
        assert len(nodes) == 2
        outer = nodes[0]
        inner = outer.else_body[0]
        assert isinstance(inner, IfNode)
        assert inner.condition == "x = 2"
        assert inner.then_body == [CommandNode("put 2 into y")]
        assert inner.else_body == [CommandNode("put 3 into y")]
        assert nodes[1] == CommandNode("beep")

    def test_else_command_in_block_form(self):
        nodes = parse_block(["if x then", "beep", "else put 1 into y", "put 2 into z", "end if"])
        assert nodes[0].else_body == [CommandNode("put 1 into y"), CommandNode("put 2 into z")]

    def test_nested_repeat_in_if(self):
        nodes = parse_block([
            "if go then", "repeat 2 times", "beep", "end repeat", "end if",
        ])
        repeat = nodes[0].then_body[0]
        assert isinstance(repeat, RepeatNode)
        assert repeat.body == [CommandNode("beep")]

    def test_nested_if_in_repeat(self):
        nodes = parse_block([
            "repeat with i = 1 to 3", "if i = 2 then", "beep", "end if", "end repeat", "go next",
        ])
        assert len(nodes) == 2
        assert isinstance(nodes[0].body[0], IfNode)

    def test_missing_then_is_skipped(self):
        assert parse_block(["if x = 1", "beep"]) == [CommandNode("beep")]

    def test_unterminated_blocks_run_to_end(self):
        nodes = parse_block(["repeat 2 times", "beep"])
        assert nodes[0].body == [CommandNode("beep")]

    def test_stray_closer_skipped(self):
        assert parse_block(["end if", "beep"]) == [CommandNode("beep")]
