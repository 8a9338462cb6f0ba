"""
Prompt Assembly

Merges the enriched StageContext into the user's instruction to produce the
final AssembledInstruction. This is a pure function: no network calls, no
randomness, no clock reads. Identical request + context always yields an
identical result, which keeps heuristic scoring reproducible.

Layering order:
    mode preamble (embeds the user's instruction verbatim)
    + template style directives
    + brand guidelines
    + product context
    + platform guidelines
    + quality constraints (brand forbidden phrases override generic lines)
    + aspect ratio
"""

import json
from typing import List, Optional

from ..core.constants import (
    MODE_EXACT_INSERT,
    MODE_TEMPLATE_GUIDED,
    TEMPLATE_MODES,
    MAX_TEMPLATE_REFERENCES,
    SUPPORTED_ASPECT_RATIOS,
    DEFAULT_ASPECT_RATIO,
    PLATFORM_GUIDELINES,
    QUALITY_CONSTRAINTS,
)
from ..models import (
    GenerationRequest,
    AssembledInstruction,
    ReferenceImage,
    TemplateDirectives,
    BrandVoice,
    ProductFacts,
)
from ..pipeline.context import StageContext

PROMPT_ASSEMBLY_STAGE = "prompt_assembly"


def get_platform_guidelines(platform: Optional[str]) -> str:
    """Returns platform-specific image guidelines, or an empty string for unknown platforms."""
    if not platform:
        return ""
    return PLATFORM_GUIDELINES.get(platform.strip().lower(), "")


def resolve_aspect_ratio(request: GenerationRequest, template: Optional[TemplateDirectives]) -> str:
    """Request first, then the template's default, then 1:1."""
    if request.aspect_ratio:
        return request.aspect_ratio
    if template and template.aspect_ratio in SUPPORTED_ASPECT_RATIOS:
        return template.aspect_ratio
    return DEFAULT_ASPECT_RATIO


def _standard_preamble(instruction: str, image_count: int) -> str:
    if image_count == 0:
        # Text-only generation uses the instruction as-is
        return instruction
    if image_count == 1:
        return f"Transform this product photo based on the following instructions: {instruction}"
    return (
        f"Transform these {image_count} product photos based on the following instructions: {instruction}\n"
        "Combine all products in one cohesive scene and keep each of them clearly visible."
    )


def _exact_insert_preamble(instruction: str, template: TemplateDirectives, image_count: int) -> str:
    if image_count > 0:
        return (
            "Insert this product into the following scene template.\n\n"
            f"Template Scene: {template.blueprint}\n\n"
            f"User Instructions: {instruction}\n\n"
            "The product must look natural and integrated into the scene, not pasted on. "
            "Product lighting must match the template scene's lighting."
        )
    return (
        "Generate an image following this scene template exactly.\n\n"
        f"Template Scene: {template.blueprint}\n\n"
        f"User Instructions: {instruction}"
    )


def _template_guided_preamble(instruction: str, template: TemplateDirectives, image_count: int) -> str:
    subject = "Transform this product photo inspired by" if image_count > 0 else "Generate an image inspired by"
    return (
        f"{subject} the following template style, creating a unique scene rather than copying it.\n\n"
        "Template Inspiration:\n"
        f"- Category: {template.category or 'not specified'}\n"
        f"- General Vibe: {template.blueprint[:200]}\n\n"
        f"User Instructions: {instruction}"
    )


def build_mode_preamble(request: GenerationRequest, template: Optional[TemplateDirectives]) -> str:
    instruction = request.instruction.strip()
    image_count = len(request.images)

    # Template modes fall back to the standard preamble when the template did not resolve
    if request.mode == MODE_EXACT_INSERT and template:
        return _exact_insert_preamble(instruction, template, image_count)
    if request.mode == MODE_TEMPLATE_GUIDED and template:
        return _template_guided_preamble(instruction, template, image_count)
    return _standard_preamble(instruction, image_count)


def build_template_section(template: TemplateDirectives) -> str:
    lines = []
    if template.mood:
        lines.append(f"- Mood: {template.mood}")
    if template.lighting:
        lines.append(f"- Lighting: {template.lighting}")
    if template.environment:
        lines.append(f"- Environment: {template.environment}")
    if template.placement_hints:
        lines.append(f"- Placement: {json.dumps(template.placement_hints, sort_keys=True)}")
    for directive in template.style_directives:
        lines.append(f"- {directive}")
    if not lines:
        return ""
    return "TEMPLATE STYLE:\n" + "\n".join(lines)


def build_brand_section(brand: BrandVoice) -> str:
    return (
        f"BRAND GUIDELINES ({brand.name}):\n"
        f"- Tone: {brand.tone or 'Professional'}\n"
        f"- Visual Style: {', '.join(brand.styles) or 'Professional'}\n"
        f"- Brand Colors: {', '.join(brand.colors) or 'Standard'}\n"
        "Ensure the generated image aligns with these brand guidelines."
    )


def build_product_section(products: List[ProductFacts]) -> str:
    lines = ["PRODUCT CONTEXT:"]
    for product in products:
        line = f"- {product.name}"
        if product.description:
            line += f": {product.description}"
        if product.tags:
            line += f" ({', '.join(product.tags)})"
        lines.append(line)
    return "\n".join(lines)


def build_platform_section(platform: str, guidelines: str) -> str:
    return (
        f"PLATFORM GUIDELINES ({platform.upper()}):\n"
        f"{guidelines}"
    )


def build_constraints_section(brand: Optional[BrandVoice]) -> str:
    forbidden = [phrase.strip() for phrase in (brand.forbidden_phrases if brand else []) if phrase.strip()]
    forbidden_lower = [phrase.lower() for phrase in forbidden]

    # Brand constraints override generic phrasing
    constraints = [
        line for line in QUALITY_CONSTRAINTS
        if not any(phrase in line.lower() for phrase in forbidden_lower)
    ]
    lines = ["QUALITY CONSTRAINTS:"] + [f"- {line}" for line in constraints]
    if forbidden:
        lines.append(f"- Avoid: {', '.join(forbidden)}")
    return "\n".join(lines)


def build_reference_images(request: GenerationRequest, template: Optional[TemplateDirectives]) -> List[ReferenceImage]:
    """Template references first (template modes only), then uploads in upload order."""
    references: List[ReferenceImage] = []
    if template and request.mode in TEMPLATE_MODES:
        for url in template.reference_image_urls[:MAX_TEMPLATE_REFERENCES]:
            references.append(ReferenceImage(source="template", url=url))
    for image in request.images:
        references.append(ReferenceImage(
            source="upload",
            filename=image.filename,
            content_type=image.content_type,
            data=image.data,
        ))
    return references


def assemble_instruction(request: GenerationRequest, ctx: StageContext) -> AssembledInstruction:
    """Build the final generation instruction from the request and the context bag."""
    template = ctx.template
    sections = [build_mode_preamble(request, template)]
    layers = ["mode_preamble"]

    if template:
        template_section = build_template_section(template)
        if template_section:
            sections.append(template_section)
            layers.append("template_style")

    if ctx.brand:
        sections.append(build_brand_section(ctx.brand))
        layers.append("brand")

    if ctx.products:
        sections.append(build_product_section(ctx.products))
        layers.append("product")

    platform = request.platform or (request.recipe or {}).get("platform")
    guidelines = get_platform_guidelines(platform) if isinstance(platform, str) else ""
    if guidelines:
        sections.append(build_platform_section(platform, guidelines))
        layers.append("platform")

    sections.append(build_constraints_section(ctx.brand))
    layers.append("quality_constraints")

    aspect_ratio = resolve_aspect_ratio(request, template)
    sections.append(f"Aspect ratio: {aspect_ratio}.")
    layers.append("aspect_ratio")

    return AssembledInstruction(
        text="\n\n".join(sections),
        reference_images=build_reference_images(request, template),
        mode=request.mode,
        aspect_ratio=aspect_ratio,
        resolution=request.resolution,
        layers=layers,
    )
