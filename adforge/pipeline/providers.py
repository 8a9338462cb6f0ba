"""
Collaborator interfaces consumed by the pipeline.

Every external dependency is injected into the executor at construction time
and can be swapped for a mock in tests. Implementations may be sync or async
where noted; the pipeline awaits whatever the provider returns.
"""

from dataclasses import dataclass
from typing import Any, Generic, List, Optional, Protocol, TypeVar, Union, Awaitable

from ..models import (
    AssembledInstruction,
    BrandVoice,
    GeneratedImage,
    GenerationRequest,
    ModelEvaluation,
    ProductFacts,
    TemplateDirectives,
    TelemetryEvent,
    UsageRecord,
)
from .context import StageContext

T = TypeVar("T")


@dataclass(frozen=True)
class EnrichmentResult(Generic[T]):
    """
    Option-like result of one enrichment stage.

    `value` is None when the provider had nothing to add or failed. `error`
    is set only for the failure branch, which the executor records as a
    degraded stage before continuing.
    """
    stage_name: str
    value: Optional[T] = None
    error: Optional[Exception] = None

    @property
    def present(self) -> bool:
        return self.value is not None

    @property
    def degraded(self) -> bool:
        return self.error is not None

    @classmethod
    def some(cls, stage_name: str, value: T) -> "EnrichmentResult[T]":
        return cls(stage_name=stage_name, value=value)

    @classmethod
    def absent(cls, stage_name: str, error: Optional[Exception] = None) -> "EnrichmentResult[T]":
        return cls(stage_name=stage_name, error=error)


class ProductContextProvider(Protocol):
    async def fetch(self, product_ids: List[str]) -> Optional[List[ProductFacts]]: ...


class BrandContextProvider(Protocol):
    async def fetch(self, user_id: str) -> Optional[BrandVoice]: ...


class TemplateProvider(Protocol):
    async def fetch(self, template_id: str) -> Optional[TemplateDirectives]: ...


class ModelEvaluatorClient(Protocol):
    async def evaluate(self, instruction: AssembledInstruction, ctx: StageContext, image_count: int) -> ModelEvaluation: ...


class GenerationBackend(Protocol):
    async def generate(self, instruction: AssembledInstruction) -> GeneratedImage: ...


class ImageCriticClient(Protocol):
    async def critique(self, image: GeneratedImage, instruction: AssembledInstruction, ctx: StageContext) -> Any: ...


class PersistenceStore(Protocol):
    async def save(self, image: GeneratedImage, usage: UsageRecord,
                   request: Optional[GenerationRequest] = None,
                   product_ids: Optional[List[str]] = None) -> str: ...


class TelemetrySink(Protocol):
    """
    Receives one outcome event per run. `record` may be async. A sync `record`
    runs in the default executor unless the sink sets `non_blocking = True`.
    """

    def record(self, event: TelemetryEvent) -> Union[None, Awaitable[None]]: ...
