"""
Constants for the Ad Generation Pipeline.
=========================================

🎯 CENTRALIZED CONFIGURATION - Single Source of Truth
-----------------------------------------------------
This file serves as the ONLY place to define:
- Model configurations (providers, IDs) and pricing baselines
- Quality gate thresholds and blend weights
- Per-stage timeouts
- Generation modes, aspect ratios and request bounds

⚠️  DO NOT duplicate these constants in other files!
   Other modules should import from here to maintain consistency.

Design Pattern:
- ClientConfig reads these defaults and applies environment overrides
- GateConfig / PipelineTimeouts are built from the (possibly overridden) values
- Pipeline stages receive their configuration through their constructors
"""

from typing import Dict, List

# --- LLM Configuration ---
MAX_LLM_RETRIES = 2
FORCE_MANUAL_JSON_PARSE = False  # Set to False to try Instructor first where applicable

# --- Model Definitions ---
# Tier 2 of the pre-generation gate: must be cheap and fast
GATE_EVALUATOR_MODEL_PROVIDER = "OpenRouter"  # "OpenRouter" or "OpenAI"
GATE_EVALUATOR_MODEL_ID = "openai/gpt-4.1-mini"

# Post-generation critic (vision capable)
CRITIC_MODEL_PROVIDER = "OpenRouter"
CRITIC_MODEL_ID = "openai/gpt-4.1-mini"

IMAGE_GENERATION_MODEL_ID = "gpt-image-1"

# Models known to have issues with instructor's default TOOLS mode via OpenRouter
INSTRUCTOR_TOOL_MODE_PROBLEM_MODELS = ["openai/o4-mini", "google/gemini-2.5-pro", "openai/o4-mini-high"]

# --- Generation Modes ---
MODE_STANDARD = "standard"
MODE_EXACT_INSERT = "exact_insert"
MODE_TEMPLATE_GUIDED = "template_guided"

GENERATION_MODES = [MODE_STANDARD, MODE_EXACT_INSERT, MODE_TEMPLATE_GUIDED]
TEMPLATE_MODES = [MODE_EXACT_INSERT, MODE_TEMPLATE_GUIDED]

# --- Request Bounds ---
MAX_INPUT_IMAGES = 6
MAX_INSTRUCTION_CHARS = 20000
MAX_TEMPLATE_REFERENCES = 3

SUPPORTED_ASPECT_RATIOS = ["1:1", "2:3", "3:2", "3:4", "4:5", "9:16", "16:9", "1.91:1"]
DEFAULT_ASPECT_RATIO = "1:1"

SUPPORTED_RESOLUTIONS = ["1K", "2K", "4K"]
DEFAULT_RESOLUTION = "2K"

# --- Pre-Generation Quality Gate ---
# Scores are 0-100, made of four 0-25 categories.
# blended < BLOCK -> block, BLOCK <= blended <= WARN -> warn, > WARN -> pass
GATE_BLOCK_THRESHOLD = 40.0
GATE_WARN_THRESHOLD = 60.0
# Heuristic scores at or above this skip the model evaluator entirely
GATE_FAST_PATH_THRESHOLD = 75.0
# Weights used once both tiers are present; must sum to 1
GATE_HEURISTIC_WEIGHT = 0.4
GATE_MODEL_WEIGHT = 0.6

GATE_CATEGORY_MAX = 25
GATE_MAX_SUGGESTIONS = 5
GATE_MAX_MODEL_SUGGESTIONS = 3

GATE_CATEGORIES = ["specificity", "context_completeness", "image_adequacy", "consistency"]

# Substring matches on the lowercased instruction
DESCRIPTIVE_KEYWORDS = [
    "lighting",
    "background",
    "color",
    "style",
    "professional",
    "product",
    "scene",
    "mood",
    "angle",
    "perspective",
    "composition",
    "quality",
    "texture",
    "material",
    "setting",
    "studio",
]
DESCRIPTIVE_KEYWORD_BONUS_MIN_MATCHES = 3
DESCRIPTIVE_KEYWORD_BONUS = 5

# Generic improvement hint per category, used when a category is the weakest
GATE_CATEGORY_HINTS = {
    "specificity": "Describe the scene in more detail: subject, setting, lighting, materials and composition.",
    "context_completeness": "Add brand, product or template context so the image can match your brand.",
    "image_adequacy": "Upload product photos or pick a template with reference images for this mode.",
    "consistency": "Make sure the selected mode matches your template choice (template modes need a resolved template).",
}

# --- Critic ---
CRITIC_QUALITY_THRESHOLD = 60
CRITIC_MAX_RETRIES = 1

# --- Timeouts (seconds) ---
ENRICHMENT_TIMEOUT_SECONDS = 5.0
EVALUATOR_TIMEOUT_SECONDS = 10.0
GENERATION_TIMEOUT_SECONDS = 180.0
CRITIC_TIMEOUT_SECONDS = 30.0
PERSISTENCE_TIMEOUT_SECONDS = 15.0
REFERENCE_DOWNLOAD_TIMEOUT_SECONDS = 10.0

# Only these hosts are fetched for template reference images
ALLOWED_REFERENCE_HOSTS = ["res.cloudinary.com", "images.unsplash.com", "cdn.pixabay.com"]

# --- Platform Guidelines ---
PLATFORM_GUIDELINES: Dict[str, str] = {
    "instagram": "Square (1:1) or vertical (4:5), vibrant colors, lifestyle-focused, clean composition, high visual impact",
    "linkedin": "Horizontal (1.91:1), professional tone, data-driven visuals, minimal text overlay, business-appropriate",
    "tiktok": "Vertical (9:16), bold text, high contrast, dynamic composition, eye-catching in first frame",
    "facebook": "Flexible (1.91:1 for ads, 1:1 for posts), engaging, storytelling-focused, works at small sizes in feed",
    "twitter": "Horizontal (16:9), clean composition, minimal text, works well cropped, stands out in timeline",
    "twitter/x": "Horizontal (16:9), clean composition, minimal text, works well cropped, stands out in timeline",
}

# Generic constraints appended to every instruction unless a brand constraint removes them
QUALITY_CONSTRAINTS: List[str] = [
    "Keep the product as the hero and clearly recognizable",
    "Maintain professional photography quality",
    "Use clean, modern styling",
    "Do not add text or watermarks",
]

# --- Pricing (USD) ---
# Baseline per generated image by resolution. Env PRICING_BASELINE_USD_<RES> overrides.
GENERATION_BASELINE_USD_BY_RESOLUTION: Dict[str, float] = {
    "1K": 0.13,
    "2K": 0.13,
    "4K": 0.24,
}
MULTI_IMAGE_UPLIFT_PER_IMAGE = 0.05
MULTI_IMAGE_UPLIFT_CAP = 0.25
