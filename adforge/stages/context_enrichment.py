"""
Context Enrichment Stages

Three independent stages (product, brand, template) that each wrap one
context provider call with a short timeout. A provider failure or timeout is
never fatal: the stage logs it and returns an absent EnrichmentResult flagged
as degraded, and the executor continues with whatever context is available.
"""

import asyncio
import logging
from typing import Any, List, Optional, Sequence

from ..core.constants import ENRICHMENT_TIMEOUT_SECONDS
from ..models import GenerationRequest
from ..pipeline.context import StageContext
from ..pipeline.errors import ContextProviderError
from ..pipeline.providers import EnrichmentResult

logger = logging.getLogger(__name__)

PRODUCT_CONTEXT_STAGE = "product_context"
BRAND_CONTEXT_STAGE = "brand_context"
TEMPLATE_CONTEXT_STAGE = "template_context"


class EnrichmentStage:
    """Base class: subclasses pick the provider key and know how to store the value."""

    name = ""

    def __init__(self, provider: Any = None, timeout: float = ENRICHMENT_TIMEOUT_SECONDS):
        self.provider = provider
        self.timeout = timeout

    def provider_key(self, request: GenerationRequest) -> Any:
        raise NotImplementedError

    def apply(self, ctx: StageContext, value: Any) -> bool:
        raise NotImplementedError

    async def enrich(self, request: GenerationRequest) -> EnrichmentResult:
        key = self.provider_key(request)
        if self.provider is None or not key:
            return EnrichmentResult.absent(self.name)

        try:
            value = await asyncio.wait_for(self.provider.fetch(key), timeout=self.timeout)
        except asyncio.TimeoutError:
            error = ContextProviderError(self.name, f"provider timed out after {self.timeout}s")
            logger.warning(f"[{request.request_id}] {error}")
            return EnrichmentResult.absent(self.name, error)
        except Exception as e:
            error = ContextProviderError(self.name, f"{type(e).__name__}: {e}")
            logger.warning(f"[{request.request_id}] {error}")
            return EnrichmentResult.absent(self.name, error)

        if value is None:
            return EnrichmentResult.absent(self.name)
        return EnrichmentResult.some(self.name, value)


class ProductContextStage(EnrichmentStage):
    name = PRODUCT_CONTEXT_STAGE

    def provider_key(self, request: GenerationRequest) -> List[str]:
        return resolve_product_ids(request)

    def apply(self, ctx: StageContext, value: Any) -> bool:
        return ctx.add_products(value)


class BrandContextStage(EnrichmentStage):
    name = BRAND_CONTEXT_STAGE

    def provider_key(self, request: GenerationRequest) -> Optional[str]:
        return request.user_id

    def apply(self, ctx: StageContext, value: Any) -> bool:
        return ctx.add_brand(value)


class TemplateContextStage(EnrichmentStage):
    name = TEMPLATE_CONTEXT_STAGE

    def provider_key(self, request: GenerationRequest) -> Optional[str]:
        return (request.template_id or "").strip() or None

    def apply(self, ctx: StageContext, value: Any) -> bool:
        return ctx.add_template(value)


def resolve_product_ids(request: GenerationRequest) -> List[str]:
    """Explicit product ids win; otherwise fall back to the recipe's product list."""
    if request.product_ids:
        return [pid for pid in request.product_ids if pid]

    recipe = request.recipe or {}
    ids = []
    for product in recipe.get("products") or []:
        if isinstance(product, dict) and product.get("id"):
            ids.append(str(product["id"]))
    return ids


async def run_enrichment_stages(
    stages: Sequence[EnrichmentStage],
    request: GenerationRequest,
) -> List[EnrichmentResult]:
    """
    Run all enrichment stages concurrently and wait for every one of them.

    Results come back in the order the stages were given, regardless of which
    provider answered first. Stages never raise, so the gather never fails
    part-way.
    """
    return list(await asyncio.gather(*(stage.enrich(request) for stage in stages)))
