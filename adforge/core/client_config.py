"""
Client Configuration Module

Handles API key loading, LLM client setup, logging setup and the tunable
pipeline configuration (gate thresholds/weights and per-stage timeouts).
"""

import os
import logging
from typing import Dict, Any, Optional, Tuple

from dotenv import load_dotenv
from openai import OpenAI
import instructor
from pydantic import BaseModel, Field, model_validator

# Import configuration constants from central location
from .constants import (
    MAX_LLM_RETRIES,
    FORCE_MANUAL_JSON_PARSE,
    INSTRUCTOR_TOOL_MODE_PROBLEM_MODELS,
    GATE_EVALUATOR_MODEL_PROVIDER,
    GATE_EVALUATOR_MODEL_ID,
    CRITIC_MODEL_PROVIDER,
    CRITIC_MODEL_ID,
    IMAGE_GENERATION_MODEL_ID,
    GATE_BLOCK_THRESHOLD,
    GATE_WARN_THRESHOLD,
    GATE_FAST_PATH_THRESHOLD,
    GATE_HEURISTIC_WEIGHT,
    GATE_MODEL_WEIGHT,
    ENRICHMENT_TIMEOUT_SECONDS,
    EVALUATOR_TIMEOUT_SECONDS,
    GENERATION_TIMEOUT_SECONDS,
    CRITIC_TIMEOUT_SECONDS,
    PERSISTENCE_TIMEOUT_SECONDS,
    REFERENCE_DOWNLOAD_TIMEOUT_SECONDS,
)

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_logging_configured = False


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging once, from LOG_LEVEL unless a level is given."""
    global _logging_configured
    if _logging_configured:
        return
    log_level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    numeric_level = getattr(logging, log_level, logging.INFO)
    logging.basicConfig(level=numeric_level, format=LOG_FORMAT)
    _logging_configured = True
    logger.info(f"🔧 Logging configured: LOG_LEVEL={log_level}")


def _env_float(name: str) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring non-numeric value for {name}: {raw!r}")
        return None


class GateConfig(BaseModel):
    """
    Tunable thresholds and blend weights of the pre-generation quality gate.

    Defaults come from constants.py. Each field can be overridden from the
    environment variable of the same upper-case name with a GATE_ prefix, e.g.
    GATE_BLOCK_THRESHOLD or GATE_HEURISTIC_WEIGHT.
    """
    block_threshold: float = Field(GATE_BLOCK_THRESHOLD, ge=0, le=100)
    warn_threshold: float = Field(GATE_WARN_THRESHOLD, ge=0, le=100)
    fast_path_threshold: float = Field(GATE_FAST_PATH_THRESHOLD, ge=0, le=100)
    heuristic_weight: float = Field(GATE_HEURISTIC_WEIGHT, ge=0, le=1)
    model_weight: float = Field(GATE_MODEL_WEIGHT, ge=0, le=1)

    @model_validator(mode="after")
    def check_consistency(self) -> "GateConfig":
        if abs(self.heuristic_weight + self.model_weight - 1.0) > 1e-6:
            raise ValueError(
                f"Gate weights must sum to 1 (got {self.heuristic_weight} + {self.model_weight})"
            )
        if self.block_threshold > self.warn_threshold:
            raise ValueError(
                f"block_threshold ({self.block_threshold}) must not exceed warn_threshold ({self.warn_threshold})"
            )
        return self

    @classmethod
    def from_env(cls) -> "GateConfig":
        overrides = {}
        for field_name in cls.model_fields:
            value = _env_float(f"GATE_{field_name.upper()}")
            if value is not None:
                overrides[field_name] = value
        if overrides:
            logger.info(f"🔧 Gate config overrides from environment: {overrides}")
        return cls(**overrides)


class PipelineTimeouts(BaseModel):
    """Per-suspension-point timeouts, in seconds."""
    enrichment: float = Field(ENRICHMENT_TIMEOUT_SECONDS, gt=0)
    evaluator: float = Field(EVALUATOR_TIMEOUT_SECONDS, gt=0)
    generation: float = Field(GENERATION_TIMEOUT_SECONDS, gt=0)
    critic: float = Field(CRITIC_TIMEOUT_SECONDS, gt=0)
    persistence: float = Field(PERSISTENCE_TIMEOUT_SECONDS, gt=0)
    reference_download: float = Field(REFERENCE_DOWNLOAD_TIMEOUT_SECONDS, gt=0)

    @classmethod
    def from_env(cls) -> "PipelineTimeouts":
        overrides = {}
        for field_name in cls.model_fields:
            value = _env_float(f"{field_name.upper()}_TIMEOUT_SECONDS")
            if value is not None:
                overrides[field_name] = value
        return cls(**overrides)


class ClientConfig:
    """Manages API client configuration and setup."""

    def __init__(self, env_path: Optional[str] = None):
        """Initialize client configuration."""
        self.env_path = env_path or ".env"

        # API Keys
        self.openrouter_api_key = None
        self.openai_api_key = None

        # Use centralized configuration (from constants.py)
        self.max_llm_retries = MAX_LLM_RETRIES
        self.force_manual_json_parse = FORCE_MANUAL_JSON_PARSE
        self.instructor_tool_mode_problem_models = INSTRUCTOR_TOOL_MODE_PROBLEM_MODELS

        # Model configurations (from constants.py)
        self.model_config = {
            "GATE_EVALUATOR_MODEL_PROVIDER": GATE_EVALUATOR_MODEL_PROVIDER,
            "GATE_EVALUATOR_MODEL_ID": GATE_EVALUATOR_MODEL_ID,

            "CRITIC_MODEL_PROVIDER": CRITIC_MODEL_PROVIDER,
            "CRITIC_MODEL_ID": CRITIC_MODEL_ID,

            "IMAGE_GENERATION_MODEL_ID": IMAGE_GENERATION_MODEL_ID,
        }

        # Initialize clients storage
        self.clients: Dict[str, Any] = {}

        # Load environment and configure clients
        self._load_environment()
        self.gate_config = GateConfig.from_env()
        self.timeouts = PipelineTimeouts.from_env()
        self._configure_clients()

    def _load_environment(self):
        """Load API keys from environment file and check for model configuration overrides."""
        if os.path.exists(self.env_path):
            load_dotenv(dotenv_path=self.env_path)
            configure_logging()
            logger.info(f"✅ Loaded .env file from: {self.env_path}")
        else:
            configure_logging()
            logger.warning(f"⚠️ .env file not found at {self.env_path}; relying on process environment")

        self.openrouter_api_key = os.getenv("OPENROUTER_API_KEY")
        self.openai_api_key = os.getenv("OPENAI_API_KEY")

        # Never log the keys themselves
        for key, value in (("OPENROUTER_API_KEY", self.openrouter_api_key), ("OPENAI_API_KEY", self.openai_api_key)):
            logger.info(f"  {key}: {'available' if value else 'missing'}")

        self._check_model_config_overrides()

    def _check_model_config_overrides(self):
        """Check for environment variable overrides of model configuration."""
        overrides = {}
        for config_key in self.model_config:
            env_value = os.getenv(config_key)
            if env_value:
                original_value = self.model_config[config_key]
                self.model_config[config_key] = env_value
                overrides[config_key] = {"original": original_value, "override": env_value}
                logger.info(f"🔧 Model config override: {config_key} = {env_value} (was: {original_value})")

        if not overrides:
            logger.debug("Using default model configuration from constants.py")

    def _configure_llm_client(self, provider_name: str, model_id: str, purpose: str) -> Tuple[Optional[Any], Optional[Any]]:
        """Configure a base OpenAI client and an instructor-patched client."""
        if provider_name == "OpenRouter":
            api_key_to_use = self.openrouter_api_key
            base_url_to_use = "https://openrouter.ai/api/v1"
        elif provider_name == "OpenAI":
            api_key_to_use = self.openai_api_key
            base_url_to_use = None  # Use default OpenAI base URL
        else:
            logger.error(f"❌ Unsupported provider: {provider_name} for {purpose}")
            return None, None

        if not api_key_to_use:
            logger.warning(f"⚠️ {provider_name} API key not found for {purpose}. Client not configured.")
            return None, None

        base_client = OpenAI(
            api_key=api_key_to_use,
            base_url=base_url_to_use,
            max_retries=self.max_llm_retries,
        )

        if self.force_manual_json_parse:
            instructor_client_patched = base_client
            logger.info(f"✅ {provider_name} client for {purpose} configured (Manual JSON parsing). Model: {model_id}")
        else:
            instructor_client_patched = instructor.patch(base_client)
            logger.info(f"✅ {provider_name} client for {purpose} configured (Instructor patched). Model: {model_id}")

        return base_client, instructor_client_patched

    def _configure_clients(self):
        """Configure the evaluator, critic and image generation clients."""
        base_llm_client_gate, instructor_client_gate = self._configure_llm_client(
            self.model_config["GATE_EVALUATOR_MODEL_PROVIDER"],
            self.model_config["GATE_EVALUATOR_MODEL_ID"],
            "Gate Evaluator",
        )

        base_llm_client_critic, _ = self._configure_llm_client(
            self.model_config["CRITIC_MODEL_PROVIDER"],
            self.model_config["CRITIC_MODEL_ID"],
            "Image Critic",
        )

        # Image generation always goes straight to OpenAI
        image_gen_client = None
        if self.openai_api_key:
            image_gen_client = OpenAI(
                api_key=self.openai_api_key,
                max_retries=0,
                timeout=self.timeouts.generation,
            )
            logger.info(f"✅ Image Generation client (OpenAI) configured. Model: {self.model_config['IMAGE_GENERATION_MODEL_ID']}")
        else:
            logger.warning("⚠️ OPENAI_API_KEY not found. Image Generation client not configured.")

        self.clients = {
            "base_llm_client_gate": base_llm_client_gate,
            "instructor_client_gate": instructor_client_gate,
            "base_llm_client_critic": base_llm_client_critic,
            "image_gen_client": image_gen_client,
            "model_config": self.model_config,
            "force_manual_json_parse": self.force_manual_json_parse,
            "instructor_tool_mode_problem_models": self.instructor_tool_mode_problem_models,
        }

    def get_clients(self) -> Dict[str, Any]:
        """Get all configured clients."""
        return self.clients

    def get_client_summary(self) -> Dict[str, str]:
        """Get a summary of client configuration status."""
        summary = {}
        for client_name, client in self.clients.items():
            if client_name in ("model_config", "force_manual_json_parse", "instructor_tool_mode_problem_models"):
                continue
            summary[client_name] = "configured" if client is not None else "not configured"
        return summary


def build_executor(
    env_path: Optional[str] = None,
    product_provider: Any = None,
    brand_provider: Any = None,
    template_provider: Any = None,
    store: Any = None,
    telemetry_sink: Any = None,
    enable_critic: bool = True,
):
    """
    Wire a PipelineExecutor with real clients.

    Context providers are supplied by the caller (the data stores live outside
    this package); any that are omitted simply contribute nothing.
    """
    from ..pipeline.executor import PipelineExecutor
    from ..pipeline.telemetry import LoggingTelemetrySink
    from ..stages.quality_gate import ModelEvaluator, QualityGate
    from ..stages.image_generation import OpenAIImageBackend
    from ..stages.critic import ImageCritic
    from .database import SQLModelGenerationStore

    config = ClientConfig(env_path)
    clients = config.get_clients()
    model_config = clients["model_config"]

    evaluator = None
    if clients["instructor_client_gate"] is not None:
        evaluator = ModelEvaluator(
            client=clients["instructor_client_gate"],
            model_id=model_config["GATE_EVALUATOR_MODEL_ID"],
            timeout=config.timeouts.evaluator,
            base_client=clients["base_llm_client_gate"],
            force_manual_json_parse=config.force_manual_json_parse,
        )

    backend = None
    if clients["image_gen_client"] is not None:
        backend = OpenAIImageBackend(
            client=clients["image_gen_client"],
            model_id=model_config["IMAGE_GENERATION_MODEL_ID"],
            download_timeout=config.timeouts.reference_download,
        )
    else:
        logger.error("❌ No image generation backend configured; every request past the gate will fail")

    critic = None
    if enable_critic and clients["base_llm_client_critic"] is not None:
        critic = ImageCritic(
            client=clients["base_llm_client_critic"],
            model_id=model_config["CRITIC_MODEL_ID"],
        )

    return PipelineExecutor(
        product_provider=product_provider,
        brand_provider=brand_provider,
        template_provider=template_provider,
        quality_gate=QualityGate(config=config.gate_config, evaluator=evaluator),
        backend=backend,
        critic=critic,
        store=store or SQLModelGenerationStore(),
        telemetry_sink=telemetry_sink or LoggingTelemetrySink(),
        timeouts=config.timeouts,
    )
