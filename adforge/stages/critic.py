"""
Critic Stage

Best-effort post-generation quality check. A vision model judges the image
against the instruction and brand; when the score falls below the threshold
and the model proposes a revised prompt, the image is silently regenerated
(bounded by CRITIC_MAX_RETRIES). Any failure yields an absent critique and
the current image is kept: a generation that already succeeded is never
turned into a failure here.
"""

import asyncio
import logging
from typing import Any, List, Optional, Tuple

from openai.types.chat import ChatCompletionMessageParam
from pydantic import BaseModel, Field

from ..core.constants import (
    CRITIC_MODEL_ID,
    CRITIC_QUALITY_THRESHOLD,
    CRITIC_MAX_RETRIES,
    CRITIC_TIMEOUT_SECONDS,
)
from ..core.json_parser import RobustJSONParser
from ..models import AssembledInstruction, CritiqueResult, GeneratedImage
from ..pipeline.context import StageContext

logger = logging.getLogger(__name__)

CRITIC_STAGE = "critic"

_json_parser = RobustJSONParser()


class CriticResponse(BaseModel):
    """Raw JSON shape requested from the critic model."""
    score: float = Field(..., description="Overall quality 0-100")
    product_visible: bool = True
    brand_consistent: bool = True
    composition_good: bool = True
    prompt_faithful: bool = True
    issues: List[str] = Field(default_factory=list)
    revised_prompt: Optional[str] = None


def build_critique_prompt(instruction: AssembledInstruction, ctx: StageContext) -> str:
    brand_name = ctx.brand.name if ctx.brand else "Unknown"
    brand_colors = ", ".join(ctx.brand.colors) if ctx.brand and ctx.brand.colors else "not specified"
    product = ctx.primary_product
    has_uploads = any(ref.source == "upload" for ref in instruction.reference_images)

    return f"""You are an advertising quality evaluator. Analyze this generated ad image against the requested brief.

GENERATION INSTRUCTION: "{instruction.text[:3000]}"

CONTEXT:
- Brand: {brand_name}
- Brand Colors: {brand_colors}
- Product: {product.name if product else "the product"}
- Product photos were provided: {"YES, the product should be clearly visible" if has_uploads else "NO, the product was described in text only"}

Evaluate the image on these 4 criteria (true/false each):
1. product_visible: Is the product clearly visible and recognizable?
2. brand_consistent: Does the image align with the brand colors and style?
3. composition_good: Is the composition professional and balanced?
4. prompt_faithful: Does the image match what was requested?

Give an overall quality score from 0-100. If the score is below {CRITIC_QUALITY_THRESHOLD}, provide a revised version of the instruction that would fix the issues.

Respond in this exact JSON format:
{{
  "score": <number 0-100>,
  "product_visible": <boolean>,
  "brand_consistent": <boolean>,
  "composition_good": <boolean>,
  "prompt_faithful": <boolean>,
  "issues": [<specific issues found, empty if none>],
  "revised_prompt": <string or null>
}}"""


class ImageCritic:
    """ImageCriticClient over an OpenAI-compatible vision chat model."""

    def __init__(self, client: Any, model_id: str = CRITIC_MODEL_ID,
                 quality_threshold: float = CRITIC_QUALITY_THRESHOLD):
        self.client = client
        self.model_id = model_id
        self.quality_threshold = quality_threshold

    def _create_completion(self, messages: List[ChatCompletionMessageParam]) -> str:
        completion = self.client.chat.completions.create(
            model=self.model_id,
            messages=messages,
            temperature=0.2,
            max_tokens=600,
        )
        return completion.choices[0].message.content

    async def critique(self, image: GeneratedImage, instruction: AssembledInstruction,
                       ctx: StageContext) -> CritiqueResult:
        messages: List[ChatCompletionMessageParam] = [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": build_critique_prompt(instruction, ctx)},
                    {"type": "image_url", "image_url": {"url": f"data:{image.mime_type};base64,{image.image_base64}"}},
                ],
            }
        ]
        raw_content = await asyncio.to_thread(self._create_completion, messages)
        parsed = CriticResponse(**_json_parser.extract_and_parse(raw_content, expected_schema=CriticResponse))

        score = max(0.0, min(100.0, parsed.score))
        return CritiqueResult(
            score=score,
            passed=score >= self.quality_threshold,
            product_visible=parsed.product_visible,
            brand_consistent=parsed.brand_consistent,
            composition_good=parsed.composition_good,
            prompt_faithful=parsed.prompt_faithful,
            issues=parsed.issues[:5],
            revised_prompt=parsed.revised_prompt.strip() if parsed.revised_prompt and parsed.revised_prompt.strip() else None,
        )


class CriticStage:
    """Runs the critic loop; never raises."""

    def __init__(self, critic: Any = None, invoker: Any = None,
                 timeout: float = CRITIC_TIMEOUT_SECONDS, max_retries: int = CRITIC_MAX_RETRIES):
        self.critic = critic
        self.invoker = invoker
        self.timeout = timeout
        self.max_retries = max_retries

    async def _critique_once(self, image: GeneratedImage, instruction: AssembledInstruction,
                             ctx: StageContext) -> Optional[CritiqueResult]:
        try:
            return await asyncio.wait_for(self.critic.critique(image, instruction, ctx), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[{ctx.request_id}] Critic timed out after {self.timeout}s, critique absent")
        except Exception as e:
            logger.warning(f"[{ctx.request_id}] Critic failed ({type(e).__name__}: {e}), critique absent")
        return None

    async def run(self, image: GeneratedImage, instruction: AssembledInstruction, ctx: StageContext,
                  allow_regeneration: bool = True) -> Tuple[GeneratedImage, Optional[CritiqueResult]]:
        if self.critic is None:
            ctx.log("Critic not configured, skipping")
            return image, None

        retries_used = 0
        critique = await self._critique_once(image, instruction, ctx)

        while (
            critique is not None
            and not critique.passed
            and critique.revised_prompt
            and allow_regeneration
            and self.invoker is not None
            and retries_used < self.max_retries
        ):
            ctx.log(f"Critic score {critique.score} below threshold, regenerating with revised prompt")
            revised = instruction.model_copy(update={"text": critique.revised_prompt})
            try:
                image = await self.invoker.invoke(revised)
            except Exception as e:
                logger.warning(f"[{ctx.request_id}] Regeneration failed ({type(e).__name__}: {e}), keeping current image")
                break
            retries_used += 1
            instruction = revised
            critique = await self._critique_once(image, instruction, ctx)

        if critique is not None:
            critique = critique.model_copy(update={"retries_used": retries_used})
            ctx.log(f"Critic: score={critique.score} passed={critique.passed} retries={retries_used}")
        return image, critique
