"""
JSON Parsing Utilities for LLM Responses
========================================

Used by the gate evaluator and the critic when instructor is not in play
(forced manual parsing or models with known tool-mode problems).

Handles:
- Markdown code blocks (```json...``` and ```...```)
- Explanatory text before/after the JSON object
- Trailing commas
- Truncated responses (reported as TruncatedResponseError)

Usage:
    from adforge.core.json_parser import RobustJSONParser

    parser = RobustJSONParser()
    result = parser.extract_and_parse(raw_llm_response, expected_schema=MyModel)
"""

import json
import re
import logging
from typing import Dict, Any, List, Optional, Type
from pydantic import BaseModel, ValidationError

from .constants import FORCE_MANUAL_JSON_PARSE, INSTRUCTOR_TOOL_MODE_PROBLEM_MODELS

logger = logging.getLogger(__name__)


class JSONExtractionError(Exception):
    """Custom exception for JSON extraction failures."""
    pass


class TruncatedResponseError(JSONExtractionError):
    """Specific exception for truncated LLM responses that create malformed JSON."""
    pass


class RobustJSONParser:
    """Extracts a single JSON object from free-form LLM output."""

    def __init__(self, debug_mode: bool = False):
        self.debug_mode = debug_mode

    def extract_and_parse(
        self,
        raw_response: str,
        expected_schema: Optional[Type[BaseModel]] = None
    ) -> Dict[str, Any]:
        """
        Extract and parse JSON from LLM response with optional validation.

        Raises:
            JSONExtractionError: If JSON cannot be extracted or validated
            TruncatedResponseError: If response appears to be truncated
        """
        if not isinstance(raw_response, str) or not raw_response.strip():
            raise JSONExtractionError("Empty response")

        json_str = self.extract_json_string(raw_response)
        if not json_str:
            if self._is_likely_truncated(raw_response):
                raise TruncatedResponseError(
                    f"Response appears to be truncated. Last 100 characters: ...{raw_response[-100:]}"
                )
            raise JSONExtractionError(
                f"Could not extract JSON from response. Raw content preview: {raw_response[:200]}..."
            )

        parsed_data = json.loads(json_str)
        if not isinstance(parsed_data, dict):
            raise JSONExtractionError(f"Expected a JSON object, got {type(parsed_data).__name__}")

        if expected_schema:
            try:
                return expected_schema(**parsed_data).model_dump()
            except ValidationError as e:
                raise JSONExtractionError(f"Schema validation failed: {e}")

        return parsed_data

    def extract_json_string(self, raw_text: str) -> Optional[str]:
        """Try each extraction strategy in turn; return the first valid JSON string."""
        text = raw_text.strip()

        strategies = [
            self._extract_from_markdown_blocks,
            self._extract_direct_json,
            self._extract_by_brace_matching,
        ]
        for strategy in strategies:
            json_str = strategy(text)
            if json_str:
                return json_str

        if self.debug_mode:
            logger.debug(f"All extraction strategies failed for text: {raw_text[:300]}...")
        return None

    def _extract_from_markdown_blocks(self, text: str) -> Optional[str]:
        match = re.search(r"```(?:json)?\s*([\s\S]+?)\s*```", text, re.IGNORECASE)
        if not match:
            return None
        return self._valid_or_repaired(match.group(1).strip())

    def _extract_direct_json(self, text: str) -> Optional[str]:
        if not (text.startswith("{") and text.endswith("}")):
            return None
        return self._valid_or_repaired(text)

    def _extract_by_brace_matching(self, text: str) -> Optional[str]:
        first_brace = text.find("{")
        last_brace = text.rfind("}")
        if first_brace == -1 or last_brace <= first_brace:
            return None
        return self._valid_or_repaired(text[first_brace:last_brace + 1])

    def _valid_or_repaired(self, candidate: str) -> Optional[str]:
        if self._is_valid_json(candidate):
            return candidate
        repaired = re.sub(r",(\s*[}\]])", r"\1", candidate)
        if self._is_valid_json(repaired):
            if self.debug_mode:
                logger.debug("JSON repair (trailing commas) successful")
            return repaired
        return None

    def _is_valid_json(self, text: str) -> bool:
        try:
            json.loads(text)
            return True
        except json.JSONDecodeError:
            return False

    def _is_likely_truncated(self, raw_text: str) -> bool:
        text = raw_text.strip()
        if text.count("{") > text.count("}"):
            return True
        return bool(re.search(r'[,\[{:]\s*$', text) or re.search(r':\s*"[^"]*$', text))


def parse_llm_json_response(
    raw_response: str,
    expected_schema: Optional[Type[BaseModel]] = None,
    debug: bool = False
) -> Dict[str, Any]:
    """Complete JSON extraction and parsing with validation."""
    return RobustJSONParser(debug_mode=debug).extract_and_parse(raw_response, expected_schema=expected_schema)


def should_use_manual_parsing(model_id: str, force_manual: bool = FORCE_MANUAL_JSON_PARSE,
                              problem_models: Optional[List[str]] = None) -> bool:
    """Determine if manual parsing should be used for a given model."""
    if problem_models is None:
        problem_models = INSTRUCTOR_TOOL_MODE_PROBLEM_MODELS
    return force_manual or model_id in problem_models
