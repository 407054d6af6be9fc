"""Tests for model output repair and validation.

Covers the repair pipeline (fences, prose, quotes, trailing commas,
truncation), bounded retries, and the whitelisting/clamping schema.
"""

import pytest

from notetriage.classifier.repair import (
    DEFAULT_REASONING,
    ClassificationOutput,
    auto_repair_json,
    parse_output,
    parse_with_repair,
    repair_brackets,
)
from notetriage.core.errors import OutputParseError


class TestParseWithRepair:
    """Tests for repair + decode."""

    def test_clean_json(self) -> None:
        assert parse_with_repair('{"type": "decision", "confidence": 0.9}') == {
            "type": "decision",
            "confidence": 0.9,
        }

    def test_code_fence_stripped(self) -> None:
        text = '```json\n{"type": "decision", "confidence": 0.9}\n```'
        assert parse_with_repair(text)["type"] == "decision"

    def test_leading_prose_dropped(self) -> None:
        text = 'Here is the classification: {"type": "learning"}'
        assert parse_with_repair(text) == {"type": "learning"}

    def test_trailing_prose_ignored(self) -> None:
        text = '{"type": "log"} Hope this helps!'
        assert parse_with_repair(text) == {"type": "log"}

    def test_trailing_comma_removed(self) -> None:
        assert parse_with_repair('{"type": "log", "confidence": 0.8,}') == {
            "type": "log",
            "confidence": 0.8,
        }

    def test_single_quotes_normalized(self) -> None:
        data = parse_with_repair("{'type': 'emotion', 'confidence': 0.7}")
        assert data == {"type": "emotion", "confidence": 0.7}

    def test_newlines_inside_strings(self) -> None:
        data = parse_with_repair('{"type": "decision",\n "reasoning": "line one\nline two"}')
        assert data["reasoning"] == "line one line two"

    def test_truncated_string_value_closed(self) -> None:
        text = (
            '{"type": "decision", "intent": "architecture", '
            '"confidence": 0.82, "reasoning": "We chose SQL'
        )
        data = parse_with_repair(text)
        assert data["type"] == "decision"
        assert data["confidence"] == 0.82
        assert data["reasoning"] == "We chose SQL"

    def test_truncated_number_and_key_dropped(self) -> None:
        data = parse_with_repair('{"type": "decision", "confidence": 0.')
        assert data == {"type": "decision"}

    def test_truncated_nested_object(self) -> None:
        text = (
            '{"type": "decision", "confidenceDetail": '
            '{"structural": 0.8, "semantic": 0.'
        )
        data = parse_with_repair(text)
        assert data == {"type": "decision", "confidenceDetail": {"structural": 0.8}}

    def test_unterminated_key_dropped(self) -> None:
        data = parse_with_repair('{"type": "scratch", "conf')
        assert data == {"type": "scratch"}

    def test_garbage_raises_after_retries(self) -> None:
        with pytest.raises(OutputParseError) as exc_info:
            parse_with_repair("I cannot classify this note.", max_retries=2)
        assert exc_info.value.attempts == 3
        assert exc_info.value.raw_output == "I cannot classify this note."

    def test_top_level_array_rejected(self) -> None:
        with pytest.raises(OutputParseError):
            parse_with_repair("[1, 2, 3]")

    def test_empty_output_rejected(self) -> None:
        with pytest.raises(OutputParseError):
            parse_with_repair("")


class TestRepairHelpers:
    """Direct tests of the repair primitives."""

    def test_repair_brackets_appends_closers_in_order(self) -> None:
        assert repair_brackets('{"a": [1, {"b": 2') == '{"a": [1, {"b": 2}]}'

    def test_repair_brackets_leaves_balanced_text(self) -> None:
        assert repair_brackets('{"a": 1}') == '{"a": 1}'

    def test_auto_repair_keeps_apostrophes_when_double_quotes_present(self) -> None:
        text = '{"reasoning": "it\'s a decision"}'
        assert auto_repair_json(text) == text


class TestClassificationOutput:
    """Tests for schema whitelisting and clamping."""

    def test_aliases_and_conversion(self) -> None:
        output = ClassificationOutput.model_validate(
            {
                "type": "decision",
                "intent": "architecture",
                "confidence": 0.85,
                "confidenceDetail": {"structural": 0.9, "semantic": 0.8, "reasoning": 0.7},
                "decayProfile": "stable",
                "reasoning": "Adopted as policy",
            }
        )
        result = output.to_inference_result()
        assert result.note_type == "decision"
        assert result.decay_profile == "stable"
        assert result.confidence_detail.to_llm_dict() == {
            "structural": 0.9,
            "semantic": 0.8,
            "reasoning": 0.7,
        }

    def test_unknown_enums_fall_back(self) -> None:
        output = ClassificationOutput.model_validate(
            {"type": "idea", "intent": "marketing", "decayProfile": "forever"}
        )
        assert output.note_type == "scratch"
        assert output.intent == "unknown"
        assert output.decay_profile == "exploratory"

    def test_enum_case_and_whitespace_normalized(self) -> None:
        output = ClassificationOutput.model_validate({"type": " Decision "})
        assert output.note_type == "decision"

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [(1.7, 1.0), (-0.2, 0.0), ("0.6", 0.6), ("high", 0.5), (None, 0.5), (True, 0.5)],
    )
    def test_confidence_clamped(self, raw: object, expected: float) -> None:
        output = ClassificationOutput.model_validate({"confidence": raw})
        assert output.confidence == expected

    def test_missing_fields_use_defaults(self) -> None:
        output = ClassificationOutput.model_validate({})
        assert output.note_type == "scratch"
        assert output.confidence == 0.5
        assert output.reasoning == DEFAULT_REASONING
        assert output.confidence_detail.structural == 0.5

    def test_non_dict_detail_ignored(self) -> None:
        output = ClassificationOutput.model_validate({"confidenceDetail": [1, 2]})
        assert output.confidence_detail.semantic == 0.5


class TestParseOutput:
    """Tests for the tagged parse result."""

    def test_ok_result(self) -> None:
        result = parse_output('{"type": "learning", "confidence": 0.75}')
        assert result.ok
        assert result.unwrap().note_type == "learning"

    def test_error_result_unwrap_raises(self) -> None:
        result = parse_output("no json here")
        assert not result.ok
        assert isinstance(result.error, OutputParseError)
        with pytest.raises(OutputParseError):
            result.unwrap()
