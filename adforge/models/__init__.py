"""
Pydantic models for the Ad Generation Pipeline.
Request, intermediate and outcome shapes passed between pipeline stages.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import List, Optional, Dict, Any, Union
from pydantic import BaseModel, ConfigDict, Field

from ..core.constants import DEFAULT_RESOLUTION, MODE_STANDARD


class StageStatus(str, Enum):
    """Pipeline stage status reported to progress callbacks"""
    COMPLETED = "COMPLETED"
    DEGRADED = "DEGRADED"


# --- Request ---
class ImageInput(BaseModel):
    """A user-uploaded product photo."""
    model_config = ConfigDict(frozen=True)

    filename: str
    content_type: str = "image/png"
    data: bytes = Field(..., repr=False)


class GenerationRequest(BaseModel):
    """
    Immutable input to one pipeline run.

    `mode` is kept as a raw string so that an unknown mode becomes a validation
    rejection from the executor instead of a construction error.
    """
    model_config = ConfigDict(frozen=True)

    request_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    instruction: str
    images: List[ImageInput] = Field(default_factory=list)
    mode: str = MODE_STANDARD
    aspect_ratio: Optional[str] = None
    product_ids: List[str] = Field(default_factory=list)
    template_id: Optional[str] = None
    recipe: Optional[Dict[str, Any]] = None
    user_id: Optional[str] = None
    resolution: str = DEFAULT_RESOLUTION
    platform: Optional[str] = None


# --- Context provider payloads ---
class ProductFacts(BaseModel):
    """Product facts returned by the product context provider."""
    product_id: str
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class BrandVoice(BaseModel):
    """Brand voice returned by the brand context provider."""
    name: str = "Unknown"
    tone: Optional[str] = None
    styles: List[str] = Field(default_factory=list)
    colors: List[str] = Field(default_factory=list)
    forbidden_phrases: List[str] = Field(default_factory=list)


class TemplateDirectives(BaseModel):
    """Template / recipe style data returned by the template provider."""
    template_id: str
    title: Optional[str] = None
    blueprint: str = ""
    category: Optional[str] = None
    mood: Optional[str] = None
    lighting: Optional[str] = None
    environment: Optional[str] = None
    placement_hints: Dict[str, Any] = Field(default_factory=dict)
    style_directives: List[str] = Field(default_factory=list)
    reference_image_urls: List[str] = Field(default_factory=list)
    aspect_ratio: Optional[str] = None


# --- Prompt assembly ---
class ReferenceImage(BaseModel):
    """One entry in the ordered reference image list."""
    model_config = ConfigDict(frozen=True)

    source: str = Field(..., description="'template' or 'upload'")
    url: Optional[str] = None
    filename: Optional[str] = None
    content_type: Optional[str] = None
    data: Optional[bytes] = Field(None, repr=False)


class AssembledInstruction(BaseModel):
    """Final generation instruction plus the metadata the backend needs."""
    model_config = ConfigDict(frozen=True)

    text: str
    reference_images: List[ReferenceImage] = Field(default_factory=list)
    mode: str
    aspect_ratio: str
    resolution: str = DEFAULT_RESOLUTION
    layers: List[str] = Field(default_factory=list, description="Names of the context layers applied, in order")


# --- Quality gate ---
class GateVerdict(str, Enum):
    BLOCK = "block"
    WARN = "warn"
    PASS = "pass"


class CategoryScores(BaseModel):
    """Four equally weighted 0-25 subscores."""
    specificity: float = Field(0, ge=0, le=25)
    context_completeness: float = Field(0, ge=0, le=25)
    image_adequacy: float = Field(0, ge=0, le=25)
    consistency: float = Field(0, ge=0, le=25)

    @property
    def total(self) -> float:
        return self.specificity + self.context_completeness + self.image_adequacy + self.consistency


class ModelEvaluation(BaseModel):
    """Structured output requested from the cheap evaluator model."""
    specificity: float = Field(..., description="0-25: Is the instruction clear, specific and actionable?")
    context_completeness: float = Field(..., description="0-25: Is there enough brand/product/template context?")
    image_adequacy: float = Field(..., description="0-25: Are the right images provided for this mode?")
    consistency: float = Field(..., description="0-25: Do the mode, template and instruction align?")
    suggestions: List[str] = Field(default_factory=list, description="Up to 3 short, actionable suggestions for improvement.")


class QualityGateResult(BaseModel):
    """Outcome of the pre-generation quality gate."""
    heuristic_score: float
    heuristic_breakdown: CategoryScores
    model_score: Optional[float] = None
    model_breakdown: Optional[CategoryScores] = None
    blended_score: float
    verdict: GateVerdict
    suggestions: List[str] = Field(default_factory=list)
    evaluator_ran: bool = False

    @property
    def blocked(self) -> bool:
        return self.verdict == GateVerdict.BLOCK


# --- Generation and downstream ---
class GeneratedImage(BaseModel):
    """Backend output."""
    image_base64: str = Field(..., repr=False)
    mime_type: str = "image/png"
    model_id: str
    prompt_used: str
    usage: Dict[str, Any] = Field(default_factory=dict)


class CritiqueResult(BaseModel):
    """Post-hoc quality check of a generated image."""
    score: float
    passed: bool
    product_visible: bool = True
    brand_consistent: bool = True
    composition_good: bool = True
    prompt_faithful: bool = True
    issues: List[str] = Field(default_factory=list)
    revised_prompt: Optional[str] = None
    retries_used: int = 0


class UsageRecord(BaseModel):
    """Usage / cost row written alongside the artifact."""
    request_id: str
    user_id: Optional[str] = None
    model_id: str
    operation: str = "generate"
    resolution: str
    input_images_count: int
    prompt_chars: int
    duration_ms: int
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    estimated_cost_micros: int
    estimation_source: str


class GeneratedArtifact(BaseModel):
    """Successful pipeline outcome."""
    request_id: str
    record_id: str
    image: GeneratedImage
    instruction: AssembledInstruction
    gate_result: QualityGateResult
    critique: Optional[CritiqueResult] = None
    usage: UsageRecord
    stages_completed: List[str]
    degraded_stages: List[str] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return True


class RejectionReason(str, Enum):
    VALIDATION = "validation"
    GATE_BLOCKED = "gate_blocked"


class PipelineRejection(BaseModel):
    """Deliberate, user-correctable rejection. Carries no internal details."""
    request_id: str
    reason: RejectionReason
    message: str
    validation_errors: List[str] = Field(default_factory=list)
    gate_result: Optional[QualityGateResult] = None
    stages_completed: List[str] = Field(default_factory=list)
    degraded_stages: List[str] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return False

    @property
    def suggestions(self) -> List[str]:
        return self.gate_result.suggestions if self.gate_result else []


PipelineOutcome = Union[GeneratedArtifact, PipelineRejection]


# --- Telemetry ---
class TelemetryEvent(BaseModel):
    """One record-outcome event per pipeline run."""
    request_id: str
    status: str
    mode: Optional[str] = None
    stages_completed: List[str] = Field(default_factory=list)
    degraded_stages: List[str] = Field(default_factory=list)
    gate_score: Optional[float] = None
    gate_verdict: Optional[str] = None
    evaluator_ran: bool = False
    error_kind: Optional[str] = None
    record_id: Optional[str] = None
    duration_ms: int = 0
    created_at: str = Field(default_factory=lambda: datetime.utcnow().isoformat())
