"""
Persistence & Usage Recorder

Builds the usage/cost record for a generated image and hands both to the
persistence store. From the pipeline's point of view the write is atomic;
any failure (including a timeout) becomes a PersistenceError, because the
artifact exists and cost was incurred but the user-visible record was not
saved.
"""

import asyncio
import logging
from typing import Any, List, Optional

from ..core.constants import PERSISTENCE_TIMEOUT_SECONDS
from ..core.pricing import estimate_generation_cost
from ..models import AssembledInstruction, GeneratedImage, GenerationRequest, UsageRecord
from ..pipeline.errors import PersistenceError
from .context_enrichment import resolve_product_ids

logger = logging.getLogger(__name__)

PERSISTENCE_STAGE = "persistence"


def build_usage_record(request: GenerationRequest, instruction: AssembledInstruction,
                       image: GeneratedImage, duration_ms: int) -> UsageRecord:
    estimate = estimate_generation_cost(
        resolution=instruction.resolution,
        input_images_count=len(instruction.reference_images),
        prompt_chars=len(image.prompt_used),
        usage=image.usage,
    )
    return UsageRecord(
        request_id=request.request_id,
        user_id=request.user_id,
        model_id=image.model_id,
        operation="generate",
        resolution=instruction.resolution,
        input_images_count=len(instruction.reference_images),
        prompt_chars=len(image.prompt_used),
        duration_ms=max(0, int(duration_ms)),
        input_tokens=estimate.input_tokens,
        output_tokens=estimate.output_tokens,
        estimated_cost_micros=estimate.estimated_cost_micros,
        estimation_source=estimate.estimation_source,
    )


class PersistenceStage:
    """Writes the artifact and its usage record through the injected store."""

    def __init__(self, store: Any, timeout: float = PERSISTENCE_TIMEOUT_SECONDS):
        self.store = store
        self.timeout = timeout

    async def persist(self, image: GeneratedImage, usage: UsageRecord,
                      stages_completed: Optional[List[str]] = None,
                      request: Optional[GenerationRequest] = None) -> str:
        if self.store is None:
            raise PersistenceError("No persistence store configured", stages_completed)
        product_ids = resolve_product_ids(request) if request is not None else None
        try:
            record_id = await asyncio.wait_for(
                self.store.save(image, usage, request=request, product_ids=product_ids),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"[{usage.request_id}] Persistence timed out after {self.timeout}s")
            raise PersistenceError(f"Persistence timed out after {self.timeout}s", stages_completed) from e
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[{usage.request_id}] Persistence failed: {type(e).__name__}: {e}")
            raise PersistenceError(f"{type(e).__name__}: {e}", stages_completed) from e

        if not record_id:
            raise PersistenceError("Persistence store returned no record id", stages_completed)
        return str(record_id)
