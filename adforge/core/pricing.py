"""
Generation cost estimation.

Estimates the cost of one image generation in micro-dollars. Real token counts
from the backend usage payload are preferred when present; otherwise a
deterministic formula based on resolution and input image count is used.
"""

import os
import logging
from dataclasses import dataclass
from typing import Dict, Any, Optional

from .constants import (
    GENERATION_BASELINE_USD_BY_RESOLUTION,
    MULTI_IMAGE_UPLIFT_PER_IMAGE,
    MULTI_IMAGE_UPLIFT_CAP,
    MAX_INPUT_IMAGES,
    MAX_INSTRUCTION_CHARS,
    DEFAULT_RESOLUTION,
)

logger = logging.getLogger(__name__)

MAX_COST_MICROS = 2_000_000_000
MAX_TOKENS = 10_000_000


@dataclass
class CostEstimate:
    estimated_cost_micros: int
    estimation_source: str  # "usage" or "pricing_formula"
    input_tokens: Optional[int]
    output_tokens: Optional[int]


def usd_to_micros(usd: float) -> int:
    return max(0, int(round(usd * 1_000_000)))


def clamp_int(value: Any, minimum: int, maximum: int) -> int:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return minimum
    if number != number or number in (float("inf"), float("-inf")):
        return minimum
    return min(maximum, max(minimum, int(round(number))))


def extract_usage_tokens(usage: Optional[Dict[str, Any]]) -> Dict[str, Optional[int]]:
    """
    Pull input/output token counts from a backend usage payload.

    Understands both OpenAI (`input_tokens`/`output_tokens`, `prompt_tokens`/
    `completion_tokens`) and Gemini (`promptTokenCount`/`candidatesTokenCount`)
    field names.
    """
    if not usage:
        return {"input_tokens": None, "output_tokens": None}

    def first_int(*keys: str) -> Optional[int]:
        for key in keys:
            value = usage.get(key)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                return clamp_int(value, 0, MAX_TOKENS)
        return None

    return {
        "input_tokens": first_int("input_tokens", "prompt_tokens", "promptTokenCount"),
        "output_tokens": first_int("output_tokens", "completion_tokens", "candidatesTokenCount"),
    }


def _baseline_usd(resolution: str) -> float:
    env_value = os.getenv(f"PRICING_BASELINE_USD_{resolution}")
    if env_value:
        try:
            return float(env_value)
        except ValueError:
            logger.warning(f"Ignoring invalid PRICING_BASELINE_USD_{resolution}={env_value!r}")
    return GENERATION_BASELINE_USD_BY_RESOLUTION.get(
        resolution, GENERATION_BASELINE_USD_BY_RESOLUTION[DEFAULT_RESOLUTION]
    )


def _token_usd_per_1k() -> float:
    env_value = os.getenv("PRICING_TOKEN_USD_PER_1K")
    if not env_value:
        return 0.0
    try:
        return max(0.0, float(env_value))
    except ValueError:
        logger.warning(f"Ignoring invalid PRICING_TOKEN_USD_PER_1K={env_value!r}")
        return 0.0


def estimate_generation_cost(
    resolution: str,
    input_images_count: int,
    prompt_chars: int,
    usage: Optional[Dict[str, Any]] = None,
) -> CostEstimate:
    """Estimate the cost of a single generation call."""
    images = clamp_int(input_images_count, 0, MAX_INPUT_IMAGES)
    chars = clamp_int(prompt_chars, 0, MAX_INSTRUCTION_CHARS)

    tokens = extract_usage_tokens(usage)
    input_tokens = tokens["input_tokens"]
    output_tokens = tokens["output_tokens"]

    # Multi-image compositions are slightly more expensive
    multi_image_factor = 1.0 if images <= 1 else 1.0 + min(
        MULTI_IMAGE_UPLIFT_CAP, MULTI_IMAGE_UPLIFT_PER_IMAGE * (images - 1)
    )

    inferred_input = input_tokens if input_tokens is not None else round(chars / 4)
    inferred_output = output_tokens if output_tokens is not None else 0
    token_price = _token_usd_per_1k()
    token_usd = ((inferred_input + inferred_output) / 1000) * token_price if token_price > 0 else 0.0

    cost_micros = min(MAX_COST_MICROS, usd_to_micros(_baseline_usd(resolution) * multi_image_factor + token_usd))
    source = "usage" if (input_tokens is not None or output_tokens is not None) else "pricing_formula"

    return CostEstimate(
        estimated_cost_micros=cost_micros,
        estimation_source=source,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
    )
