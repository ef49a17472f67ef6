"""Tests for agent output classification and parsing."""

import re

import pytest

from team_orchestrator.core.classifier import (
    DEFAULT_CONFIG,
    ClassifierConfig,
    CompletionPattern,
    classify,
    clean_output,
    completion_to_dict,
    format_content,
    parse_content,
)


class TestClassify:
    def test_closed_code_fence_completes_immediately(self):
        result = classify("Done! ```js\nconsole.log(1)\n```", 0.0)
        assert result.is_complete is True
        assert result.confidence >= 0.9
        assert result.reason == "code_block_complete"
        assert result.parsed.code_blocks[0].language == "js"
        assert result.parsed.code_blocks[0].code == "console.log(1)"

    def test_silence_completes_via_timeout(self):
        result = classify("Working on the component and wiring up the styles", 6.0)
        assert result.is_complete is True
        assert result.reason.startswith("timeout_")
        assert 0.5 <= result.confidence <= 0.8

    def test_timeout_confidence_grows_with_length(self):
        short = classify("Still going along here", 6.0)
        long = classify("word " * 100 + "and more", 6.0)
        assert short.confidence < long.confidence <= 0.8

    def test_no_silence_no_pattern_is_incomplete(self):
        result = classify("Working on the component and wiring up the styles", 0.5)
        assert result.is_complete is False
        assert result.parsed is None

    def test_short_buffer_never_completes(self):
        result = classify("ok.", 60.0)
        assert result.is_complete is False
        assert result.reason == "insufficient_length"

    def test_quick_threshold_is_shorter(self):
        text = "Working on the component and wiring up the styles"
        assert classify(text, 2.5, quick=True).is_complete is True
        assert classify(text, 2.5, quick=False).is_complete is False

    def test_sentence_end_pattern(self):
        result = classify("I have finished the task", 0.0)
        assert result.is_complete is False
        result = classify("I have finished the task.", 0.0)
        assert result.is_complete is True
        assert result.reason == "pattern_sentence_end"

    def test_natural_ending_phrase(self):
        result = classify("I added the route. Let me know if you need anything else", 0.0)
        assert result.is_complete is True
        assert result.reason == "natural_language_end"

    def test_ansi_and_prompt_noise_are_ignored(self):
        assert clean_output("\x1b[32m> hello\x1b[0m\r\n") == "hello\n"

    def test_injected_patterns(self):
        config = ClassifierConfig(
            completion_patterns=(CompletionPattern("marker", re.compile(r"<<END>>$"), 0.99),),
        )
        result = classify("all the work is here <<END>>", 0.0, config)
        assert result.is_complete is True
        assert result.confidence == 0.99
        assert result.reason == "pattern_marker"
        assert classify("all the work is here <<END>>", 0.0).is_complete is False

    def test_buffer_is_bounded(self):
        config = ClassifierConfig(max_buffer_size=100)
        result = classify("x" * 1000, 0.0, config)
        assert result.length == 100

    def test_to_dict(self):
        data = completion_to_dict(classify("Done! ```py\nprint(1)\n```", 0.0, DEFAULT_CONFIG))
        assert data["isComplete"] is True
        assert data["parsed"]["codeBlocks"] == [{"language": "py", "code": "print(1)"}]


class TestParseContent:
    def test_error_type(self):
        parsed = parse_content("Error: module not found")
        assert parsed.type == "error"
        assert parsed.errors[0].message == "module not found"

    def test_file_operations(self):
        parsed = parse_content("Created file src/app.js\nModified README.md")
        paths = {(f.kind, f.path) for f in parsed.files}
        assert ("created", "src/app.js") in paths
        assert ("modified", "README.md") in paths

    def test_progress(self):
        parsed = parse_content("Progress: 40% - Step 2 of 5")
        assert parsed.type == "progress"
        assert parsed.progress.percentage == 40.0
        assert (parsed.progress.step, parsed.progress.total) == (2, 5)

    def test_mixed_code_and_action(self):
        parsed = parse_content("I'll add this:\n```python\nx = 1\n```")
        assert parsed.type == "mixed"
        assert parsed.metadata.has_code_blocks is True

    def test_urls(self):
        parsed = parse_content("Preview at http://localhost:4001 now")
        assert parsed.urls == ["http://localhost:4001"]


class TestFormatContent:
    def test_text_format(self):
        parsed = parse_content("Here it is\n```js\nlet a\n```")
        out = format_content(parsed)
        assert "[Code - js]" in out
        assert "let a" in out

    def test_markdown_format(self):
        out = format_content(parse_content("Here\n```js\nlet a\n```"), "markdown")
        assert "```js\nlet a\n```" in out

    def test_html_escapes(self):
        out = format_content(parse_content("a <b> c"), "html")
        assert "&lt;b&gt;" in out

    def test_unknown_format(self):
        with pytest.raises(ValueError):
            format_content(parse_content("hello there"), "pdf")
