"""
Pipeline Executor - Orchestrates one generation request end to end.

Stage order (STAGE_ORDER):
    product_context, brand_context, template_context   (concurrent fork/join)
    prompt_assembly
    quality_gate                                        (block -> stop)
    generation_dispatch                                 (cancellation checkpoint)
    image_generation
    critic                                              (best-effort)
    persistence

`stages_completed` only ever grows by appending the next name of STAGE_ORDER,
so it is always a prefix of it. Exactly one telemetry event is emitted per
run, from a finally block, whatever the exit path.
"""

import asyncio
import time
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from .context import StageContext
from .errors import (
    GenerationBackendError,
    PersistenceError,
    PipelineError,
    PreGenGateBlocked,
    RequestValidationError,
)
from .telemetry import emit_event
from ..core.client_config import GateConfig, PipelineTimeouts
from ..core.constants import (
    GENERATION_MODES,
    MODE_TEMPLATE_GUIDED,
    MAX_INPUT_IMAGES,
    MAX_INSTRUCTION_CHARS,
    SUPPORTED_ASPECT_RATIOS,
    SUPPORTED_RESOLUTIONS,
)
from ..models import (
    GeneratedArtifact,
    GenerationRequest,
    GateVerdict,
    PipelineOutcome,
    PipelineRejection,
    QualityGateResult,
    RejectionReason,
    StageStatus,
    TelemetryEvent,
)
from ..stages.context_enrichment import (
    BRAND_CONTEXT_STAGE,
    PRODUCT_CONTEXT_STAGE,
    TEMPLATE_CONTEXT_STAGE,
    BrandContextStage,
    ProductContextStage,
    TemplateContextStage,
    run_enrichment_stages,
)
from ..stages.prompt_assembly import PROMPT_ASSEMBLY_STAGE, assemble_instruction
from ..stages.quality_gate import QUALITY_GATE_STAGE, QualityGate
from ..stages.image_generation import GENERATION_DISPATCH_STAGE, IMAGE_GENERATION_STAGE, GenerationInvoker
from ..stages.critic import CRITIC_STAGE, CriticStage
from ..stages.persistence import PERSISTENCE_STAGE, PersistenceStage, build_usage_record

logger = logging.getLogger(__name__)

STAGE_ORDER = [
    PRODUCT_CONTEXT_STAGE,
    BRAND_CONTEXT_STAGE,
    TEMPLATE_CONTEXT_STAGE,
    PROMPT_ASSEMBLY_STAGE,
    QUALITY_GATE_STAGE,
    GENERATION_DISPATCH_STAGE,
    IMAGE_GENERATION_STAGE,
    CRITIC_STAGE,
    PERSISTENCE_STAGE,
]

ProgressCallback = Callable[[str, int, StageStatus, str], Awaitable[None]]


def validate_request(request: GenerationRequest) -> List[str]:
    """Return every validation problem with the request (empty list when valid)."""
    errors: List[str] = []

    instruction = (request.instruction or "").strip()
    if not instruction:
        errors.append("Instruction must not be empty.")
    elif len(instruction) > MAX_INSTRUCTION_CHARS:
        errors.append(f"Instruction must be at most {MAX_INSTRUCTION_CHARS} characters.")

    if request.mode not in GENERATION_MODES:
        errors.append(f"Mode must be one of: {', '.join(GENERATION_MODES)}.")
    elif request.mode == MODE_TEMPLATE_GUIDED and not (request.template_id or "").strip():
        errors.append("Template-guided mode requires a template_id.")

    if len(request.images) > MAX_INPUT_IMAGES:
        errors.append(f"At most {MAX_INPUT_IMAGES} images may be supplied.")

    if request.aspect_ratio is not None and request.aspect_ratio not in SUPPORTED_ASPECT_RATIOS:
        errors.append(f"Aspect ratio must be one of: {', '.join(SUPPORTED_ASPECT_RATIOS)}.")

    if request.resolution not in SUPPORTED_RESOLUTIONS:
        errors.append(f"Resolution must be one of: {', '.join(SUPPORTED_RESOLUTIONS)}.")

    return errors


def raise_for_rejection(outcome: PipelineOutcome) -> GeneratedArtifact:
    """Turn a PipelineRejection into its typed error; pass artifacts through."""
    if isinstance(outcome, PipelineRejection):
        if outcome.reason == RejectionReason.GATE_BLOCKED and outcome.gate_result is not None:
            raise PreGenGateBlocked(outcome.gate_result, outcome.stages_completed)
        raise RequestValidationError(outcome.validation_errors or [outcome.message])
    return outcome


async def _await_through_cancellation(task: "asyncio.Future[Any]") -> Tuple[Any, bool]:
    """
    Wait for a task even if the caller is cancelled meanwhile.

    Returns the task result and whether a cancellation arrived while waiting.
    """
    cancelled = False
    while True:
        try:
            return await asyncio.shield(task), cancelled
        except asyncio.CancelledError:
            if task.cancelled():
                raise
            cancelled = True


@dataclass
class _RunState:
    """Bookkeeping for the telemetry event of one run."""
    request_id: str
    mode: Optional[str]
    stages_completed: List[str] = field(default_factory=list)
    degraded_stages: List[str] = field(default_factory=list)
    gate_result: Optional[QualityGateResult] = None
    status: str = "failed"
    error_kind: Optional[str] = None
    record_id: Optional[str] = None


class PipelineExecutor:
    """Runs generation requests through the fixed stage order. All collaborators are constructor-injected."""

    def __init__(
        self,
        product_provider: Any = None,
        brand_provider: Any = None,
        template_provider: Any = None,
        quality_gate: Optional[QualityGate] = None,
        backend: Any = None,
        critic: Any = None,
        store: Any = None,
        telemetry_sink: Any = None,
        timeouts: Optional[PipelineTimeouts] = None,
        gate_config: Optional[GateConfig] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        self.timeouts = timeouts or PipelineTimeouts()
        self.enrichment_stages = [
            ProductContextStage(product_provider, self.timeouts.enrichment),
            BrandContextStage(brand_provider, self.timeouts.enrichment),
            TemplateContextStage(template_provider, self.timeouts.enrichment),
        ]
        self.quality_gate = quality_gate or QualityGate(config=gate_config)
        self.invoker = GenerationInvoker(backend, self.timeouts.generation)
        self.critic_stage = CriticStage(critic, self.invoker, self.timeouts.critic)
        self.persistence_stage = PersistenceStage(store, self.timeouts.persistence)
        self.telemetry_sink = telemetry_sink
        self.progress_callback = progress_callback

        logger.info(
            f"🔧 Pipeline executor initialized: evaluator={'yes' if self.quality_gate.evaluator else 'no'}, "
            f"backend={'yes' if backend else 'no'}, critic={'yes' if critic else 'no'}"
        )

    async def _notify(self, stage_name: str, status: StageStatus, message: str) -> None:
        if self.progress_callback is None:
            return
        try:
            await self.progress_callback(stage_name, STAGE_ORDER.index(stage_name) + 1, status, message)
        except Exception as e:
            logger.warning(f"Progress callback failed for {stage_name}: {type(e).__name__}: {e}")

    async def _complete(self, state: _RunState, ctx: StageContext, stage_name: str, stage_start_time: float,
                        status: StageStatus = StageStatus.COMPLETED) -> None:
        expected = STAGE_ORDER[len(state.stages_completed)]
        if stage_name != expected:
            raise RuntimeError(f"Stage '{stage_name}' completed out of order (expected '{expected}')")
        state.stages_completed.append(stage_name)
        duration = time.time() - stage_start_time
        ctx.log(f"Stage {stage_name} {status.value.lower()} in {duration:.2f}s")
        await self._notify(stage_name, status, f"Stage {stage_name} {status.value.lower()}")

    async def run_pipeline(self, request: GenerationRequest,
                           cancel_event: Optional[asyncio.Event] = None) -> PipelineOutcome:
        """
        Run one request.

        Returns a GeneratedArtifact or a PipelineRejection (validation failure
        or gate block). Raises GenerationBackendError or PersistenceError for
        the fatal failures, and asyncio.CancelledError when cancelled.
        """
        overall_start_time = time.time()
        state = _RunState(request_id=request.request_id, mode=request.mode)

        try:
            errors = validate_request(request)
            if errors:
                logger.info(f"[{request.request_id}] Request rejected by validation: {errors}")
                state.status = "rejected_validation"
                return PipelineRejection(
                    request_id=request.request_id,
                    reason=RejectionReason.VALIDATION,
                    message=RequestValidationError.public_message,
                    validation_errors=errors,
                    stages_completed=[],
                )

            ctx = StageContext(request_id=request.request_id)
            outcome = await self._run_stages(request, ctx, state, cancel_event)
            return outcome

        except GenerationBackendError as e:
            state.status = "backend_error"
            state.error_kind = e.kind.value
            raise
        except PersistenceError:
            state.status = "persistence_error"
            state.error_kind = "persistence"
            raise
        except asyncio.CancelledError:
            state.status = "cancelled"
            logger.info(f"[{request.request_id}] Pipeline cancelled after stages {state.stages_completed}")
            raise
        except PipelineError as e:
            state.error_kind = type(e).__name__
            raise
        except Exception as e:
            state.error_kind = type(e).__name__
            logger.exception(f"[{request.request_id}] Unexpected pipeline failure: {e}")
            raise PipelineError(f"{type(e).__name__}: {e}", state.stages_completed) from e
        finally:
            gate = state.gate_result
            emit_event(self.telemetry_sink, TelemetryEvent(
                request_id=state.request_id,
                status=state.status,
                mode=state.mode,
                stages_completed=list(state.stages_completed),
                degraded_stages=list(state.degraded_stages),
                gate_score=gate.blended_score if gate else None,
                gate_verdict=gate.verdict.value if gate else None,
                evaluator_ran=gate.evaluator_ran if gate else False,
                error_kind=state.error_kind,
                record_id=state.record_id,
                duration_ms=int((time.time() - overall_start_time) * 1000),
            ))

    async def _run_stages(self, request: GenerationRequest, ctx: StageContext, state: _RunState,
                          cancel_event: Optional[asyncio.Event]) -> PipelineOutcome:
        ctx.log(f"Starting pipeline: mode={request.mode}, images={len(request.images)}")

        # --- Context enrichment (fork/join) ---
        stage_start_time = time.time()
        results = await run_enrichment_stages(self.enrichment_stages, request)
        for stage, result in zip(self.enrichment_stages, results):
            if result.degraded:
                # Absent branch: continue without this context
                ctx.mark_degraded(stage.name)
                state.degraded_stages = list(ctx.degraded_stages)
                await self._complete(state, ctx, stage.name, stage_start_time, StageStatus.DEGRADED)
                continue
            if result.present:
                stage.apply(ctx, result.value)
            await self._complete(state, ctx, stage.name, stage_start_time)

        # --- Prompt assembly ---
        stage_start_time = time.time()
        instruction = assemble_instruction(request, ctx)
        await self._complete(state, ctx, PROMPT_ASSEMBLY_STAGE, stage_start_time)

        # --- Quality gate ---
        stage_start_time = time.time()
        gate_result = await self.quality_gate.evaluate(request, ctx, instruction)
        state.gate_result = gate_result
        await self._complete(state, ctx, QUALITY_GATE_STAGE, stage_start_time)

        if gate_result.verdict == GateVerdict.BLOCK:
            logger.info(f"[{request.request_id}] Quality gate blocked request (score {gate_result.blended_score})")
            state.status = "rejected_gate"
            return PipelineRejection(
                request_id=request.request_id,
                reason=RejectionReason.GATE_BLOCKED,
                message=PreGenGateBlocked.public_message,
                gate_result=gate_result,
                stages_completed=list(state.stages_completed),
                degraded_stages=list(ctx.degraded_stages),
            )
        if gate_result.verdict == GateVerdict.WARN:
            logger.warning(
                f"[{request.request_id}] Quality gate warning (score {gate_result.blended_score}); proceeding"
            )

        # --- Cancellation checkpoint: nothing expensive has happened yet ---
        if cancel_event is not None and cancel_event.is_set():
            ctx.log("Cancellation requested before generation; backend not called")
            raise asyncio.CancelledError()

        stage_start_time = time.time()
        await self._complete(state, ctx, GENERATION_DISPATCH_STAGE, stage_start_time)

        # --- Generation (shielded: an in-flight call is allowed to finish) ---
        generation_task = asyncio.ensure_future(self.invoker.invoke(instruction, list(state.stages_completed)))
        image, cancelled = await _await_through_cancellation(generation_task)

        if cancelled:
            ctx.log("Cancellation arrived during generation; finishing critic and persistence before stopping")

        # --- Everything after the backend call is protected so the spent cost is recorded ---
        finish_task = asyncio.ensure_future(
            self._finish(request, ctx, state, instruction, image, gate_result, stage_start_time,
                         allow_regeneration=not cancelled and not (cancel_event and cancel_event.is_set()))
        )
        artifact, cancelled_late = await _await_through_cancellation(finish_task)

        if cancelled or cancelled_late or (cancel_event is not None and cancel_event.is_set()):
            raise asyncio.CancelledError()

        state.status = "completed"
        logger.info(f"[{request.request_id}] Pipeline completed: record {artifact.record_id}")
        return artifact

    async def _finish(self, request: GenerationRequest, ctx: StageContext, state: _RunState, instruction,
                      image, gate_result: QualityGateResult, generation_start_time: float,
                      allow_regeneration: bool = True) -> GeneratedArtifact:
        await self._complete(state, ctx, IMAGE_GENERATION_STAGE, generation_start_time)

        stage_start_time = time.time()
        image, critique = await self.critic_stage.run(image, instruction, ctx, allow_regeneration=allow_regeneration)
        await self._complete(state, ctx, CRITIC_STAGE, stage_start_time)

        stage_start_time = time.time()
        usage = build_usage_record(
            request, instruction, image,
            duration_ms=int((time.time() - generation_start_time) * 1000),
        )
        record_id = await self.persistence_stage.persist(image, usage, list(state.stages_completed), request=request)
        state.record_id = record_id
        await self._complete(state, ctx, PERSISTENCE_STAGE, stage_start_time)

        return GeneratedArtifact(
            request_id=request.request_id,
            record_id=record_id,
            image=image,
            instruction=instruction,
            gate_result=gate_result,
            critique=critique,
            usage=usage,
            stages_completed=list(state.stages_completed),
            degraded_stages=list(ctx.degraded_stages),
        )
