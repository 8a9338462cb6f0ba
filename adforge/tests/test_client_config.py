"""
Tests for client configuration, timeouts and executor wiring.
"""

import pytest

from adforge.core.client_config import ClientConfig, PipelineTimeouts, build_executor
from adforge.pipeline.executor import PipelineExecutor
from adforge.pipeline.telemetry import InMemoryTelemetrySink
from adforge.stages.image_generation import OpenAIImageBackend
from adforge.stages.quality_gate import ModelEvaluator


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for name in ("OPENROUTER_API_KEY", "OPENAI_API_KEY", "GATE_EVALUATOR_MODEL_ID", "GENERATION_TIMEOUT_SECONDS"):
        monkeypatch.delenv(name, raising=False)
    return str(tmp_path / "missing.env")


class TestClientConfig:

    def test_missing_keys_leave_clients_unconfigured(self, clean_env):
        config = ClientConfig(env_path=clean_env)

        summary = config.get_client_summary()
        assert summary == {
            "base_llm_client_gate": "not configured",
            "instructor_client_gate": "not configured",
            "base_llm_client_critic": "not configured",
            "image_gen_client": "not configured",
        }

    def test_keys_configure_clients(self, clean_env, monkeypatch):
        monkeypatch.setenv("OPENROUTER_API_KEY", "sk-or-test")
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")

        clients = ClientConfig(env_path=clean_env).get_clients()

        assert clients["base_llm_client_gate"] is not None
        assert clients["instructor_client_gate"] is not None
        assert clients["base_llm_client_critic"] is not None
        assert clients["image_gen_client"] is not None
        assert str(clients["base_llm_client_gate"].base_url).startswith("https://openrouter.ai/api/v1")

    def test_model_override_from_env(self, clean_env, monkeypatch):
        monkeypatch.setenv("GATE_EVALUATOR_MODEL_ID", "google/gemini-2.5-flash")
        config = ClientConfig(env_path=clean_env)
        assert config.model_config["GATE_EVALUATOR_MODEL_ID"] == "google/gemini-2.5-flash"


class TestPipelineTimeouts:

    def test_from_env(self, clean_env, monkeypatch):
        monkeypatch.setenv("GENERATION_TIMEOUT_SECONDS", "90")
        timeouts = PipelineTimeouts.from_env()
        assert timeouts.generation == 90
        assert timeouts.enrichment == PipelineTimeouts().enrichment

    def test_timeouts_must_be_positive(self):
        with pytest.raises(ValueError):
            PipelineTimeouts(critic=0)


class TestBuildExecutor:

    def test_wires_real_clients(self, clean_env, monkeypatch):
        monkeypatch.setenv("OPENROUTER_API_KEY", "sk-or-test")
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        sink = InMemoryTelemetrySink()

        executor = build_executor(env_path=clean_env, store=object(), telemetry_sink=sink, enable_critic=False)

        assert isinstance(executor, PipelineExecutor)
        assert isinstance(executor.quality_gate.evaluator, ModelEvaluator)
        assert isinstance(executor.invoker.backend, OpenAIImageBackend)
        assert executor.critic_stage.critic is None
        assert executor.telemetry_sink is sink

    def test_without_keys_the_gate_is_heuristic_only(self, clean_env):
        executor = build_executor(env_path=clean_env, store=object())
        assert executor.quality_gate.evaluator is None
        assert executor.invoker.backend is None
