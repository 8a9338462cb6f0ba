"""
Tests for the JSON parsing utilities used by the gate evaluator and the critic.
=============================================================================

Evaluator and critic models wrap their JSON in markdown, prepend explanations
or leave trailing commas; the parser has to cope with all of it.
"""

import pytest

from adforge.core.json_parser import (
    RobustJSONParser,
    JSONExtractionError,
    TruncatedResponseError,
    parse_llm_json_response,
    should_use_manual_parsing,
)
from adforge.models import ModelEvaluation
from adforge.stages.critic import CriticResponse


class TestJSONParser:
    """Test cases for the RobustJSONParser class."""

    def setup_method(self):
        """Set up test parser instance."""
        self.parser = RobustJSONParser(debug_mode=False)
        self.debug_parser = RobustJSONParser(debug_mode=True)

    @pytest.mark.parametrize("raw,expected", [
        ('```json\n{"score": 72, "issues": []}\n```', {"score": 72, "issues": []}),
        ('Here is my evaluation:\n```json\n{"specificity": 12}\n```\nHope this helps!', {"specificity": 12}),
        ('```JSON\n{"suggestions": ["Add lighting"]}\n```', {"suggestions": ["Add lighting"]}),
        ('```\n{"consistency": 25}\n```', {"consistency": 25}),
    ])
    def test_markdown_block_extraction(self, raw, expected):
        """Test extraction from fenced code blocks."""
        assert self.parser.extract_and_parse(raw) == expected

    def test_direct_json_extraction(self):
        assert self.parser.extract_and_parse('  {"score": 90, "revised_prompt": null}  ') == {
            "score": 90, "revised_prompt": None,
        }

    def test_brace_matching_with_surrounding_text(self):
        raw = 'Sure! The scores are {"specificity": 10, "consistency": 20} based on the request.'
        assert self.parser.extract_and_parse(raw) == {"specificity": 10, "consistency": 20}

    def test_trailing_commas_are_repaired(self):
        raw = '```json\n{"issues": ["cropped product",], "score": 40,}\n```'
        assert self.debug_parser.extract_and_parse(raw) == {"issues": ["cropped product"], "score": 40}

    def test_schema_validation(self):
        raw = ('{"specificity": 10, "context_completeness": 8, "image_adequacy": 12, '
               '"consistency": 25, "suggestions": ["Name the product"]}')
        result = self.parser.extract_and_parse(raw, expected_schema=ModelEvaluation)
        assert result["suggestions"] == ["Name the product"]

    def test_schema_validation_failure(self):
        with pytest.raises(JSONExtractionError, match="Schema validation failed"):
            self.parser.extract_and_parse('{"issues": []}', expected_schema=CriticResponse)

    @pytest.mark.parametrize("raw", ["", "   ", None])
    def test_empty_responses(self, raw):
        with pytest.raises(JSONExtractionError):
            self.parser.extract_and_parse(raw)

    def test_no_json_at_all(self):
        with pytest.raises(JSONExtractionError) as exc_info:
            self.parser.extract_and_parse("I am unable to evaluate this image.")
        assert not isinstance(exc_info.value, TruncatedResponseError)

    def test_truncated_response_detection(self):
        with pytest.raises(TruncatedResponseError):
            self.parser.extract_and_parse('{"score": 55, "issues": ["product is')

    def test_non_object_json_is_rejected(self):
        with pytest.raises(JSONExtractionError, match="Expected a JSON object"):
            self.parser.extract_and_parse("```json\n[1, 2, 3]\n```")

    def test_parse_llm_json_response(self):
        assert parse_llm_json_response('{"score": 61}', expected_schema=CriticResponse)["score"] == 61


class TestManualParsingSelection:

    def test_problem_models_use_manual_parsing(self):
        assert should_use_manual_parsing("openai/o4-mini", force_manual=False)
        assert not should_use_manual_parsing("openai/gpt-4.1-mini", force_manual=False)

    def test_force_manual_parse(self):
        assert should_use_manual_parsing("openai/gpt-4.1-mini", force_manual=True)

    def test_custom_problem_models(self):
        assert should_use_manual_parsing("vendor/model-x", force_manual=False, problem_models=["vendor/model-x"])
