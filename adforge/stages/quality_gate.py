"""
Pre-Generation Quality Gate

Decides whether a request is good enough to spend an expensive generation
call on. Two tiers:

Tier 1 - heuristic (always runs, in-process, never fails). Four categories,
each 0-25:
    specificity           instruction length + descriptive keywords
    context_completeness  brand / recipe-or-products / template availability
    image_adequacy        uploaded image count versus what the mode expects
    consistency           mode versus resolved template

Tier 2 - model evaluator (only when the heuristic is below the fast-path
threshold). A cheap LLM scores the same four categories. Any failure is
treated as "absent": the blended score then equals the heuristic score.

Blend:   blended = heuristic_weight * heuristic + model_weight * model
Verdict: blended < block -> BLOCK, block <= blended <= warn -> WARN, else PASS
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from openai.types.chat import ChatCompletionMessageParam
from pydantic import ValidationError
from tenacity import RetryError

from ..core.constants import (
    TEMPLATE_MODES,
    GATE_CATEGORIES,
    GATE_CATEGORY_MAX,
    GATE_CATEGORY_HINTS,
    GATE_MAX_SUGGESTIONS,
    GATE_MAX_MODEL_SUGGESTIONS,
    DESCRIPTIVE_KEYWORDS,
    DESCRIPTIVE_KEYWORD_BONUS,
    DESCRIPTIVE_KEYWORD_BONUS_MIN_MATCHES,
    EVALUATOR_TIMEOUT_SECONDS,
    GATE_EVALUATOR_MODEL_ID,
)
from ..core.client_config import GateConfig
from ..core.json_parser import RobustJSONParser, JSONExtractionError, should_use_manual_parsing
from ..models import (
    AssembledInstruction,
    CategoryScores,
    GateVerdict,
    GenerationRequest,
    ModelEvaluation,
    QualityGateResult,
)
from ..pipeline.context import StageContext
from ..pipeline.errors import EvaluatorError

logger = logging.getLogger(__name__)

QUALITY_GATE_STAGE = "quality_gate"

_json_parser = RobustJSONParser()


# --- Tier 1: heuristic ---

@dataclass
class HeuristicScore:
    breakdown: CategoryScores
    # Category -> hint recorded when that category was penalized
    hints: Dict[str, str] = field(default_factory=dict)

    @property
    def score(self) -> float:
        return self.breakdown.total


def _score_specificity(instruction: str, hints: Dict[str, str]) -> int:
    length = len(instruction)
    if length == 0:
        score = 0
        hints["specificity"] = "The instruction is empty. Describe the image you want to generate."
    elif length < 20:
        score = 5
        hints["specificity"] = "The instruction is very short. Add details about the scene, style and composition."
    elif length < 50:
        score = 12
        hints["specificity"] = "Add more detail to your instruction (lighting, environment, mood)."
    elif length < 150:
        score = 18
    else:
        score = GATE_CATEGORY_MAX

    lowered = instruction.lower()
    keyword_matches = sum(1 for keyword in DESCRIPTIVE_KEYWORDS if keyword in lowered)
    if keyword_matches >= DESCRIPTIVE_KEYWORD_BONUS_MIN_MATCHES:
        score = min(GATE_CATEGORY_MAX, score + DESCRIPTIVE_KEYWORD_BONUS)
    return score


def _score_context(request: GenerationRequest, ctx: StageContext, instruction: str, hints: Dict[str, str]) -> int:
    has_recipe = bool(request.recipe) or ctx.has_products
    score = 0
    if ctx.has_brand:
        score += 10
    if has_recipe:
        score += 8
    if ctx.has_template:
        score += 7

    if not (ctx.has_brand or has_recipe or ctx.has_template):
        # The instruction alone is valid; a long one partly compensates
        score = 10 if len(instruction) > 100 else 5
        hints["context_completeness"] = GATE_CATEGORY_HINTS["context_completeness"]
    return score


def _score_images(request: GenerationRequest, hints: Dict[str, str]) -> int:
    image_count = len(request.images)
    if request.mode in TEMPLATE_MODES:
        if image_count >= 2:
            return 25
        if image_count == 1:
            return 20
        hints["image_adequacy"] = (
            f"{request.mode} mode works best with product photos. Consider uploading product images."
        )
        return 10

    if image_count >= 2:
        return 25
    if image_count == 1:
        return 22
    # Text-only generation is valid but limited
    hints["image_adequacy"] = "Text-only generation is limited. Upload a product photo for a more faithful result."
    return 15


def _score_consistency(request: GenerationRequest, ctx: StageContext, instruction: AssembledInstruction,
                       hints: Dict[str, str]) -> int:
    if request.mode not in TEMPLATE_MODES:
        return 25
    if not ctx.has_template:
        hints["consistency"] = f"{request.mode} mode requires a template. Select a template for best results."
        return 5
    if not instruction.reference_images:
        hints["consistency"] = "The selected template has no reference images. Upload a product photo to anchor the scene."
        return 15
    return 25


def score_heuristic(request: GenerationRequest, ctx: StageContext, instruction: AssembledInstruction) -> HeuristicScore:
    """
    Tier-1 score. Pure and deterministic for identical inputs.

    Specificity is measured on the user's own instruction, not the assembled
    text, so that added context does not inflate it.
    """
    hints: Dict[str, str] = {}
    user_instruction = request.instruction.strip()
    breakdown = CategoryScores(
        specificity=_score_specificity(user_instruction, hints),
        context_completeness=_score_context(request, ctx, user_instruction, hints),
        image_adequacy=_score_images(request, hints),
        consistency=_score_consistency(request, ctx, instruction, hints),
    )
    return HeuristicScore(breakdown=breakdown, hints=hints)


# --- Blend and verdict ---

def clamp_score(value: float, maximum: float = 100.0) -> float:
    return max(0.0, min(maximum, float(value)))


def blend_scores(heuristic_score: float, model_score: Optional[float], config: Optional[GateConfig] = None) -> float:
    """Weighted blend, or the heuristic unchanged when the model did not run. Always in [0, 100]."""
    config = config or GateConfig()
    if model_score is None:
        return round(clamp_score(heuristic_score), 2)
    blended = config.heuristic_weight * clamp_score(heuristic_score) + config.model_weight * clamp_score(model_score)
    return round(clamp_score(blended), 2)


def decide_verdict(blended_score: float, config: Optional[GateConfig] = None) -> GateVerdict:
    config = config or GateConfig()
    if blended_score < config.block_threshold:
        return GateVerdict.BLOCK
    if blended_score <= config.warn_threshold:
        return GateVerdict.WARN
    return GateVerdict.PASS


def _lowest_category(breakdown: CategoryScores) -> str:
    # min() keeps the first minimum, so ties follow GATE_CATEGORIES order
    return min(GATE_CATEGORIES, key=lambda category: getattr(breakdown, category))


def build_block_suggestions(heuristic: HeuristicScore, model_breakdown: Optional[CategoryScores],
                            model_suggestions: Optional[List[str]] = None) -> List[str]:
    """Hint for the weakest heuristic category, then the weakest model category, then the model's own."""
    candidates = []
    weakest = _lowest_category(heuristic.breakdown)
    candidates.append(heuristic.hints.get(weakest, GATE_CATEGORY_HINTS[weakest]))

    if model_breakdown is not None:
        candidates.append(GATE_CATEGORY_HINTS[_lowest_category(model_breakdown)])
        candidates.extend(model_suggestions or [])

    suggestions: List[str] = []
    for suggestion in candidates:
        suggestion = (suggestion or "").strip()
        if suggestion and suggestion not in suggestions:
            suggestions.append(suggestion)
    return suggestions[:GATE_MAX_SUGGESTIONS]


# --- Tier 2: model evaluator ---

def build_evaluation_prompt(instruction: AssembledInstruction, ctx: StageContext, image_count: int) -> str:
    """Builds the structured scoring prompt sent to the evaluator model."""
    return f"""You are an advertising image generation quality gate. Evaluate whether this generation request has enough information to produce a good result.

REQUEST DETAILS:
- Instruction: "{instruction.text[:4000]}"
- Mode: {instruction.mode}
- Product images provided: {f"YES ({image_count})" if image_count else "NO"}
- Template reference images: {sum(1 for ref in instruction.reference_images if ref.source == "template")}
- Template resolved: {"YES" if ctx.has_template else "NO"}
- Brand context available: {"YES" if ctx.has_brand else "NO"}
- Product context available: {"YES" if ctx.has_products else "NO"}

Score each category from 0 to 25:
1. specificity: Is the instruction clear, specific and actionable?
2. context_completeness: Is there enough context (brand, product, template) for a quality result?
3. image_adequacy: Are the right images provided for this mode? (exact_insert needs product photos, standard can be text-only)
4. consistency: Do the mode, template and instruction align logically?

Respond in this exact JSON format:
{{
  "specificity": <0-25>,
  "context_completeness": <0-25>,
  "image_adequacy": <0-25>,
  "consistency": <0-25>,
  "suggestions": [<up to 3 short, actionable suggestions for improvement>]
}}"""


class ModelEvaluator:
    """Tier-2 evaluator backed by an OpenAI-compatible chat model."""

    def __init__(
        self,
        client: Any,
        model_id: str = GATE_EVALUATOR_MODEL_ID,
        timeout: float = EVALUATOR_TIMEOUT_SECONDS,
        base_client: Any = None,
        force_manual_json_parse: bool = False,
    ):
        self.client = client
        self.base_client = base_client or client
        self.model_id = model_id
        self.timeout = timeout
        self.use_manual_parsing = should_use_manual_parsing(model_id, force_manual=force_manual_json_parse)

    def _create_completion(self, messages: List[ChatCompletionMessageParam]) -> ModelEvaluation:
        llm_args: Dict[str, Any] = {
            "model": self.model_id,
            "messages": messages,
            "temperature": 0.0,
            "max_tokens": 400,
        }
        if not self.use_manual_parsing:
            llm_args["response_model"] = ModelEvaluation
            return self.client.chat.completions.create(**llm_args)

        completion = self.base_client.chat.completions.create(**llm_args)
        raw_content = completion.choices[0].message.content
        return ModelEvaluation(**_json_parser.extract_and_parse(raw_content, expected_schema=ModelEvaluation))

    async def evaluate(self, instruction: AssembledInstruction, ctx: StageContext, image_count: int) -> ModelEvaluation:
        """Score the request; raises EvaluatorError on any failure."""
        messages: List[ChatCompletionMessageParam] = [
            {"role": "system", "content": "You score ad image generation requests. Respond only with the requested JSON."},
            {"role": "user", "content": build_evaluation_prompt(instruction, ctx, image_count)},
        ]
        try:
            evaluation = await asyncio.wait_for(
                asyncio.to_thread(self._create_completion, messages),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            raise EvaluatorError(f"Evaluator timed out after {self.timeout}s")
        except RetryError as e:
            raise EvaluatorError(f"Evaluator failed after retries: {e.last_attempt.exception()}")
        except (JSONExtractionError, ValidationError) as e:
            raise EvaluatorError(f"Evaluator returned unparsable output: {e}")
        except Exception as e:
            raise EvaluatorError(f"Evaluator call failed: {type(e).__name__}: {e}")

        return normalize_evaluation(evaluation)


def normalize_evaluation(evaluation: ModelEvaluation) -> ModelEvaluation:
    """Clamp each subscore to [0, 25] and keep at most 3 suggestions."""
    values = {category: clamp_score(getattr(evaluation, category), GATE_CATEGORY_MAX) for category in GATE_CATEGORIES}
    suggestions = [s.strip() for s in evaluation.suggestions if isinstance(s, str) and s.strip()]
    return ModelEvaluation(**values, suggestions=suggestions[:GATE_MAX_MODEL_SUGGESTIONS])


# --- Gate ---

class QualityGate:
    """Combines both tiers into a QualityGateResult."""

    def __init__(self, config: Optional[GateConfig] = None, evaluator: Any = None):
        self.config = config or GateConfig()
        self.evaluator = evaluator

    async def evaluate(self, request: GenerationRequest, ctx: StageContext,
                       instruction: AssembledInstruction) -> QualityGateResult:
        heuristic = score_heuristic(request, ctx, instruction)
        heuristic_score = heuristic.score

        model_evaluation: Optional[ModelEvaluation] = None
        if heuristic_score >= self.config.fast_path_threshold:
            ctx.log(f"Quality gate fast path: heuristic {heuristic_score} >= {self.config.fast_path_threshold}, evaluator skipped")
        elif self.evaluator is None:
            ctx.log("Quality gate: no evaluator configured, using heuristic only")
        else:
            try:
                model_evaluation = await self.evaluator.evaluate(instruction, ctx, len(request.images))
            except EvaluatorError as e:
                logger.warning(f"[{ctx.request_id}] EvaluatorError, falling back to heuristic: {e}")
            except Exception as e:
                # Injected evaluators may raise anything; all of it means "absent"
                logger.warning(f"[{ctx.request_id}] Evaluator failed ({type(e).__name__}: {e}), falling back to heuristic")

        model_breakdown = None
        model_score = None
        if model_evaluation is not None:
            model_evaluation = normalize_evaluation(model_evaluation)
            model_breakdown = CategoryScores(**{c: getattr(model_evaluation, c) for c in GATE_CATEGORIES})
            model_score = model_breakdown.total

        blended = blend_scores(heuristic_score, model_score, self.config)
        verdict = decide_verdict(blended, self.config)

        suggestions: List[str] = []
        if verdict == GateVerdict.BLOCK:
            suggestions = build_block_suggestions(
                heuristic,
                model_breakdown,
                model_evaluation.suggestions if model_evaluation else None,
            )

        result = QualityGateResult(
            heuristic_score=heuristic_score,
            heuristic_breakdown=heuristic.breakdown,
            model_score=model_score,
            model_breakdown=model_breakdown,
            blended_score=blended,
            verdict=verdict,
            suggestions=suggestions,
            evaluator_ran=model_evaluation is not None,
        )
        ctx.log(
            f"Quality gate: heuristic={heuristic_score} model={model_score} "
            f"blended={blended} verdict={verdict.value}"
        )
        return result
