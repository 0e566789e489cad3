"""
Tests for digit map generation over a dialplan.
"""

import logging
import threading

import pytest

from dialplan import Dialplan, Include
from dialplan_to_digitmap import (
    ActiveStack,
    BufferExhausted,
    ContextNotFound,
    GeneratorConfig,
    MapGenerator,
    MaxDepthExceeded,
    OutputCursor,
    generate_digit_map,
)


def make_dialplan(contexts):
    """Build a dialplan from {name: (extensions, includes, ignorepats)}."""
    dialplan = Dialplan()
    for name, (extensions, includes, ignorepats) in contexts.items():
        context = dialplan.add_context(name)
        for ext in extensions:
            if isinstance(ext, tuple):
                context.add_extension(*ext)
            else:
                context.add_extension(ext, 1)
        for inc in includes:
            context.add_include(inc)
        for pat in ignorepats:
            context.add_ignore_pattern(pat)
    return dialplan


class TestActiveStack:
    """Test the include path bookkeeping."""

    def test_push_and_pop(self):
        stack = ActiveStack(3)
        stack.push("a")
        stack.push("b")
        assert list(stack) == ["a", "b"]
        assert stack.pop() == "b"
        assert len(stack) == 1

    def test_depth_bound(self):
        stack = ActiveStack(1)
        stack.push("a")
        with pytest.raises(MaxDepthExceeded) as excinfo:
            stack.push("b")
        assert excinfo.value.max_depth == 1
        assert list(stack) == ["a"]

    def test_membership_ignores_case(self):
        stack = ActiveStack(2)
        stack.push("Default")
        assert "default" in stack
        assert "other" not in stack

    def test_visiting_pops_on_error(self):
        stack = ActiveStack(2)
        with pytest.raises(RuntimeError):
            with stack.visiting("a"):
                raise RuntimeError("boom")
        assert len(stack) == 0


class TestOutputCursor:
    """Test the bounded writer."""

    def test_write_advances(self):
        cursor = OutputCursor(bytearray(8))
        cursor.write("|12")
        assert cursor.pos == 3
        assert cursor.remaining == 5
        assert cursor.text() == "|12"

    def test_write_refused_when_full(self):
        cursor = OutputCursor(bytearray(2))
        with pytest.raises(BufferExhausted) as excinfo:
            cursor.write("abc")
        assert excinfo.value.capacity == 2
        assert cursor.pos == 0


class TestMapGenerator:
    """Test traversal and emission."""

    def test_single_pattern(self):
        dialplan = make_dialplan({"default": (["_NXX1234"], [], [])})
        assert generate_digit_map(dialplan, "default") == "[2-9]xx1234"

    def test_include_prefix(self):
        dialplan = make_dialplan({
            "default": ([], ["intl|x|011"], []),
            "intl": (["_X."], [], []),
        })
        assert generate_digit_map(dialplan, "default") == "011x."

    def test_ignorepat_scenario(self):
        dialplan = make_dialplan({"default": (["_9NXXXXXX"], [], ["9"])})
        assert generate_digit_map(dialplan, "default") == "9,[2-9]xxxxxx"

    def test_ignorepat_from_grandparent(self):
        dialplan = make_dialplan({
            "default": ([], ["middle"], ["9"]),
            "middle": ([], ["leaf"], []),
            "leaf": (["_9XX"], [], []),
        })
        assert generate_digit_map(dialplan, "default") == "9,xx"

    def test_ignorepat_of_sibling_not_applied(self):
        dialplan = make_dialplan({
            "default": ([], ["a", "b"], []),
            "a": (["1"], [], ["9"]),
            "b": (["_9XX"], [], []),
        })
        assert generate_digit_map(dialplan, "default") == "1|9xx"

    def test_ignorepat_uses_prefix_first_digit(self):
        dialplan = make_dialplan({
            "default": ([], ["out|x|9"], ["9"]),
            "out": (["_NXXXXXX"], [], []),
        })
        assert generate_digit_map(dialplan, "default") == "9,[2-9]xxxxxx"

    def test_reserved_and_priority_skipped(self):
        dialplan = make_dialplan({"default": ([
            "a", "i", "s", "t",
            ("100", -1, "PJSIP/100"),
            ("100", 1, "Dial(PJSIP/100)"),
            ("100", 2, "Hangup()"),
            ("_1XX", 3),
        ], [], [])})
        assert generate_digit_map(dialplan, "default") == "100"

    def test_reserved_names_only_exact(self):
        dialplan = make_dialplan({"default": (["_s", "st"], [], [])})
        assert generate_digit_map(dialplan, "default") == "s|st"

    def test_extensions_before_includes_in_order(self):
        dialplan = make_dialplan({
            "default": (["1", "2"], ["x", "y"], []),
            "x": (["3"], ["z"], []),
            "y": (["5"], [], []),
            "z": (["4"], [], []),
        })
        assert generate_digit_map(dialplan, "default") == "1|2|3|4|5"

    def test_nested_prefixes_concatenate(self):
        dialplan = make_dialplan({
            "default": ([], ["a|x|8"], []),
            "a": (["0"], [Include("b", ("", "1"))], []),
            "b": (["_NXX"], [], []),
        })
        assert generate_digit_map(dialplan, "default") == "80|81[2-9]xx"

    def test_prefix_truncated(self, caplog):
        dialplan = make_dialplan({
            "default": ([], ["a|x|12345"], []),
            "a": (["9"], [], []),
        })
        config = GeneratorConfig(max_prefix_length=3)
        with caplog.at_level(logging.WARNING):
            assert generate_digit_map(dialplan, "default", config) == "1239"
        assert "truncated" in caplog.text

    def test_circular_include_skipped(self, caplog):
        dialplan = make_dialplan({
            "default": (["100"], ["other"], []),
            "other": (["200"], ["default"], []),
        })
        with caplog.at_level(logging.WARNING):
            assert generate_digit_map(dialplan, "default") == "100|200"
        assert "circular include of default within other" in caplog.text

    def test_self_include_skipped(self):
        dialplan = make_dialplan({"default": (["1"], ["default"], [])})
        assert generate_digit_map(dialplan, "default") == "1"

    def test_diamond_include_visited_twice(self):
        dialplan = make_dialplan({
            "default": ([], ["a", "b"], []),
            "a": ([], ["shared"], []),
            "b": ([], ["shared"], []),
            "shared": (["7"], [], []),
        })
        assert generate_digit_map(dialplan, "default") == "7|7"

    def test_depth_bound_truncates_branch(self, caplog):
        dialplan = make_dialplan({
            "default": (["1"], ["a", "c"], []),
            "a": (["2"], ["b"], []),
            "b": (["3"], [], []),
            "c": (["4"], [], []),
        })
        config = GeneratorConfig(max_depth=2)
        with caplog.at_level(logging.WARNING):
            assert generate_digit_map(dialplan, "default", config) == "1|2|4"
        assert "Maximum include depth (2) exceeded" in caplog.text

    def test_missing_include_skipped(self, caplog):
        dialplan = make_dialplan({
            "default": (["1"], ["ghost", "real"], []),
            "real": (["2"], [], []),
        })
        with caplog.at_level(logging.WARNING):
            assert generate_digit_map(dialplan, "default") == "1|2"
        assert "No such context: ghost" in caplog.text

    def test_empty_include_target_skipped(self, caplog):
        dialplan = make_dialplan({
            "default": (["1"], ["|x|9", "real"], []),
            "real": (["2"], [], []),
        })
        with caplog.at_level(logging.WARNING):
            assert generate_digit_map(dialplan, "default") == "1|2"
        assert "Empty include context" in caplog.text

    def test_include_timing_arguments_dropped(self):
        dialplan = make_dialplan({
            "default": ([], ["daytime,08:00-17:00,mon-fri,*,*"], []),
            "daytime": (["_X"], [], []),
        })
        assert generate_digit_map(dialplan, "default") == "x"

    def test_missing_root_raises(self):
        with pytest.raises(ContextNotFound) as excinfo:
            generate_digit_map(Dialplan(), "nowhere")
        assert excinfo.value.context == "nowhere"

    def test_empty_map(self):
        dialplan = make_dialplan({"default": (["s", ("1", 2)], [], [])})
        buffer = bytearray(16)
        assert MapGenerator(dialplan).generate("default", buffer) == 0
        assert generate_digit_map(dialplan, "default") == ""

    def test_generate_strips_leading_separator_in_buffer(self):
        dialplan = make_dialplan({"default": (["12", "34"], [], [])})
        buffer = bytearray(16)
        length = MapGenerator(dialplan).generate("default", buffer)
        assert length == 5
        assert bytes(buffer[:length]) == b"12|34"

    def test_buffer_exhausted_is_fatal(self):
        dialplan = make_dialplan({
            "default": (["1"], ["big"], []),
            "big": (["_NXXNXXXXXX"], [], []),
        })
        config = GeneratorConfig(buffer_size=10)
        with pytest.raises(BufferExhausted):
            generate_digit_map(dialplan, "default", config)

    def test_buffer_exact_fit(self):
        dialplan = make_dialplan({"default": (["_NXX1234"], [], [])})
        assert generate_digit_map(dialplan, "default", GeneratorConfig(buffer_size=12)) == "[2-9]xx1234"
        with pytest.raises(BufferExhausted):
            generate_digit_map(dialplan, "default", GeneratorConfig(buffer_size=11))

    def test_invalid_pattern_not_fatal(self, caplog):
        dialplan = make_dialplan({"default": (["_[12", "_[1.]"], [], [])})
        with caplog.at_level(logging.WARNING):
            assert generate_digit_map(dialplan, "default") == "[12|[1.]"
        assert "periods should not appear inside []: _[1.]" in caplog.text
        assert "Dialplan is invalid: unterminated []: _[12" in caplog.text

    def test_deterministic(self):
        dialplan = make_dialplan({
            "default": (["_NXX", "911"], ["a|x|9", "b"], ["9"]),
            "a": (["_1NXXNXXXXXX"], ["default"], []),
            "b": (["_[2-5]XX"], [], []),
        })
        first = generate_digit_map(dialplan, "default")
        for _ in range(5):
            assert generate_digit_map(dialplan, "default") == first

    def test_locks_released_after_generation(self):
        dialplan = make_dialplan({
            "default": (["1"], ["other", "default"], []),
            "other": (["2"], [], []),
        })
        generate_digit_map(dialplan, "default")
        # A writer would block forever if a read lock had leaked
        acquired = []

        def writer():
            dialplan.find_context("default").add_extension("3", 1)
            dialplan.find_context("other").add_extension("4", 1)
            acquired.append(True)

        thread = threading.Thread(target=writer)
        thread.start()
        thread.join(timeout=5)
        assert acquired == [True]

    def test_locks_released_after_failure(self):
        dialplan = make_dialplan({"default": (["_NXXNXXXXXX"], [], [])})
        with pytest.raises(BufferExhausted):
            generate_digit_map(dialplan, "default", GeneratorConfig(buffer_size=4))
        context = dialplan.find_context("default")
        done = []
        thread = threading.Thread(target=lambda: done.append(context.add_extension("1", 1)))
        thread.start()
        thread.join(timeout=5)
        assert len(done) == 1

    def test_concurrent_generation_independent(self):
        dialplan = make_dialplan({
            "default": (["_NXX"], ["a|x|9"], ["9"]),
            "a": (["_1XX"], [], []),
        })
        generator = MapGenerator(dialplan)
        expected = generate_digit_map(dialplan, "default")
        results = []

        def worker():
            buffer = bytearray(256)
            length = generator.generate("default", buffer)
            results.append(bytes(buffer[:length]).decode())

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)
        assert results == [expected] * 8


class TestGeneratorConfig:
    """Test generator settings."""

    def test_defaults(self):
        config = GeneratorConfig()
        assert config.max_depth == 128
        assert config.buffer_size == 2048
        assert config.max_prefix_length == 31

    @pytest.mark.parametrize("field", ["max_depth", "buffer_size", "max_prefix_length"])
    def test_rejects_non_positive(self, field):
        with pytest.raises(ValueError):
            GeneratorConfig(**{field: 0})

    def test_from_mapping(self):
        config = GeneratorConfig.from_mapping({"max_depth": 4})
        assert config.max_depth == 4
        assert config.buffer_size == 2048

    def test_from_mapping_rejects_unknown(self):
        with pytest.raises(ValueError, match="bogus"):
            GeneratorConfig.from_mapping({"bogus": 1})

    def test_replace_ignores_none(self):
        config = GeneratorConfig(max_depth=4).replace(max_depth=None, buffer_size=64)
        assert config.max_depth == 4
        assert config.buffer_size == 64
