"""Tests for imaginator.core.prompt_compiler — inline directive extraction.

Tests cover:
- Aspect ratio to width/height conversion.
- Quality and stylize mapping to steps (with clamping and precedence).
- Seed and chaos extraction.
- Free-text exclusions.
- Removal of directive tokens from the cleaned prompt.
"""

from __future__ import annotations

import pytest

from imaginator.core.prompt_compiler import CompiledPrompt, compile_prompt


class TestNoDirectives:
    """Prompts without directives pass through untouched."""

    def test_plain_prompt(self):
        result = compile_prompt("a quiet harbour at dawn")
        assert result == CompiledPrompt(cleaned_prompt="a quiet harbour at dawn", options={})

    def test_prompt_is_trimmed(self):
        result = compile_prompt("   a quiet harbour  ")
        assert result.cleaned_prompt == "a quiet harbour"
        assert result.options == {}

    def test_inner_whitespace_preserved(self):
        """Without directives only the ends are trimmed."""
        assert compile_prompt("a  b").cleaned_prompt == "a  b"

    def test_hyphenated_words_are_not_directives(self):
        result = compile_prompt("a well-lit room - wide shot")
        assert result.cleaned_prompt == "a well-lit room - wide shot"
        assert result.options == {}


class TestAspectRatio:
    """Test --ar W:H."""

    @pytest.mark.parametrize(
        ("directive", "width", "height"),
        [
            ("--ar 16:9", 1024, 576),
            ("--ar 9:16", 576, 1024),
            ("--ar 1:1", 1024, 1024),
            ("--ar 3:2", 1024, 683),
            ("--ar 2:3", 683, 1024),
        ],
    )
    def test_dimensions(self, directive, width, height):
        result = compile_prompt(f"a cat {directive}")
        assert result.options == {"width": width, "height": height}
        assert result.cleaned_prompt == "a cat"

    def test_case_insensitive(self):
        assert compile_prompt("a cat --AR 16:9").options == {"width": 1024, "height": 576}

    def test_zero_component_is_removed_and_ignored(self):
        result = compile_prompt("a cat --ar 0:9")
        assert result.cleaned_prompt == "a cat"
        assert result.options == {}


class TestSteps:
    """Test --q and --s, which both set steps."""

    @pytest.mark.parametrize(
        ("quality", "steps"),
        [(3, 30), (10, 50), (0, 10), (1, 10), (5, 50)],
    )
    def test_quality(self, quality, steps):
        assert compile_prompt(f"a cat --q {quality}").options == {"steps": steps}

    @pytest.mark.parametrize(
        ("stylize", "steps"),
        [(0, 20), (500, 35), (1000, 50), (250, 28), (5000, 50)],
    )
    def test_stylize(self, stylize, steps):
        assert compile_prompt(f"a cat --s {stylize}").options == {"steps": steps}

    def test_stylize_wins_over_quality(self):
        """Stylize is applied after quality in the fixed scan order."""
        assert compile_prompt("a cat --s 1000 --q 1").options == {"steps": 50}
        assert compile_prompt("a cat --q 1 --s 0").options == {"steps": 20}

    def test_last_occurrence_of_a_directive_wins(self):
        result = compile_prompt("a cat --q 1 --q 3")
        assert result.options == {"steps": 30}
        assert result.cleaned_prompt == "a cat"


class TestSeedAndChaos:
    """Test --seed and --chaos."""

    def test_seed(self):
        assert compile_prompt("a cat --seed 42").options == {"seed": 42}

    def test_seed_is_not_mistaken_for_stylize(self):
        result = compile_prompt("a cat --seed 7")
        assert "steps" not in result.options

    @pytest.mark.parametrize(
        ("chaos", "cfg"),
        [(0, 7.5), (100, 12.5), (50, 10.0), (250, 12.5)],
    )
    def test_chaos(self, chaos, cfg):
        assert compile_prompt(f"a cat --chaos {chaos}").options == {"cfg_scale": pytest.approx(cfg)}


class TestExclude:
    """Test --no free text."""

    def test_exclude_to_end(self):
        result = compile_prompt("a cat --no dogs, birds")
        assert result.options == {"negative_prompt": "dogs, birds"}
        assert result.cleaned_prompt == "a cat"

    def test_exclude_stops_at_next_directive(self):
        result = compile_prompt("a cat --no dogs, birds --ar 16:9")
        assert result.options == {"negative_prompt": "dogs, birds", "width": 1024, "height": 576}
        assert result.cleaned_prompt == "a cat"

    def test_exclude_keeps_hyphenated_words(self):
        result = compile_prompt("a cat --no low-res, over-saturated")
        assert result.options["negative_prompt"] == "low-res, over-saturated"

    def test_empty_exclude_sets_nothing(self):
        result = compile_prompt("a cat --no --seed 3")
        assert result.options == {"seed": 3}
        assert result.cleaned_prompt == "a cat"


class TestCleanedPrompt:
    """Directive tokens are removed exactly."""

    def test_full_combination(self):
        result = compile_prompt(
            "a lighthouse --ar 9:16 in a storm --q 2 --seed 99 --chaos 20 --no boats, people"
        )
        assert result.cleaned_prompt == "a lighthouse in a storm"
        assert "--" not in result.cleaned_prompt
        assert result.options == {
            "width": 576,
            "height": 1024,
            "steps": 20,
            "seed": 99,
            "cfg_scale": pytest.approx(8.5),
            "negative_prompt": "boats, people",
        }

    def test_directive_in_middle_joins_with_single_space(self):
        assert compile_prompt("a --seed 1 cat").cleaned_prompt == "a cat"

    def test_only_directives(self):
        result = compile_prompt("--ar 1:1 --seed 5")
        assert result.cleaned_prompt == ""
        assert result.options == {"width": 1024, "height": 1024, "seed": 5}

    def test_input_is_not_modified(self):
        text = "a cat --seed 42"
        compile_prompt(text)
        assert text == "a cat --seed 42"
