"""
Tests for the best-effort critic stage.
"""

import asyncio
import base64
import pytest
from unittest.mock import AsyncMock, Mock

from adforge.models import AssembledInstruction, BrandVoice, CritiqueResult, GeneratedImage
from adforge.pipeline.context import StageContext
from adforge.pipeline.errors import BackendErrorKind, GenerationBackendError
from adforge.stages.critic import CriticStage, ImageCritic, build_critique_prompt


def make_instruction(text: str = "A ceramic vase on a linen tablecloth") -> AssembledInstruction:
    return AssembledInstruction(text=text, mode="standard", aspect_ratio="1:1")


def make_image(tag: bytes = b"first") -> GeneratedImage:
    return GeneratedImage(
        image_base64=base64.b64encode(tag).decode(),
        model_id="gpt-image-1",
        prompt_used="A ceramic vase on a linen tablecloth",
    )


def make_critique(score: float, revised_prompt=None) -> CritiqueResult:
    return CritiqueResult(score=score, passed=score >= 60, revised_prompt=revised_prompt)


class TestCriticStage:
    """The critic never fails a generation that already succeeded."""

    def create_test_context(self) -> StageContext:
        ctx = StageContext(request_id="req-critic")
        ctx.add_brand(BrandVoice(name="Clay & Co", colors=["terracotta"]))
        return ctx

    def create_critic(self, *results) -> Mock:
        critic = Mock()
        critic.critique = AsyncMock(side_effect=list(results))
        return critic

    @pytest.mark.asyncio
    async def test_no_critic_configured(self):
        image = make_image()
        result_image, critique = await CriticStage(None).run(image, make_instruction(), self.create_test_context())
        assert result_image is image
        assert critique is None

    @pytest.mark.asyncio
    async def test_passing_critique(self):
        stage = CriticStage(self.create_critic(make_critique(85)), invoker=Mock())
        image = make_image()

        result_image, critique = await stage.run(image, make_instruction(), self.create_test_context())

        assert result_image is image
        assert critique.passed
        assert critique.retries_used == 0

    @pytest.mark.asyncio
    async def test_critic_failure_yields_absent_critique(self):
        stage = CriticStage(self.create_critic(RuntimeError("vision model unavailable")))
        image = make_image()

        result_image, critique = await stage.run(image, make_instruction(), self.create_test_context())

        assert result_image is image
        assert critique is None

    @pytest.mark.asyncio
    async def test_critic_timeout_yields_absent_critique(self):
        async def slow_critique(image, instruction, ctx):
            await asyncio.sleep(5)

        critic = Mock()
        critic.critique = slow_critique
        stage = CriticStage(critic, timeout=0.05)

        _, critique = await stage.run(make_image(), make_instruction(), self.create_test_context())
        assert critique is None

    @pytest.mark.asyncio
    async def test_low_score_regenerates_with_revised_prompt(self):
        critic = self.create_critic(
            make_critique(35, revised_prompt="A ceramic vase, centered, soft daylight"),
            make_critique(78),
        )
        invoker = Mock()
        invoker.invoke = AsyncMock(return_value=make_image(b"second"))
        stage = CriticStage(critic, invoker=invoker, max_retries=1)

        result_image, critique = await stage.run(make_image(), make_instruction(), self.create_test_context())

        revised_instruction = invoker.invoke.await_args.args[0]
        assert revised_instruction.text == "A ceramic vase, centered, soft daylight"
        assert result_image.image_base64 == base64.b64encode(b"second").decode()
        assert critique.passed
        assert critique.retries_used == 1

    @pytest.mark.asyncio
    async def test_regeneration_is_bounded(self):
        critic = self.create_critic(
            make_critique(30, revised_prompt="try again"),
            make_critique(32, revised_prompt="try once more"),
        )
        invoker = Mock()
        invoker.invoke = AsyncMock(return_value=make_image(b"second"))
        stage = CriticStage(critic, invoker=invoker, max_retries=1)

        _, critique = await stage.run(make_image(), make_instruction(), self.create_test_context())

        assert invoker.invoke.await_count == 1
        assert not critique.passed
        assert critique.retries_used == 1

    @pytest.mark.asyncio
    async def test_failed_regeneration_keeps_current_image(self):
        critic = self.create_critic(make_critique(20, revised_prompt="better prompt"))
        invoker = Mock()
        invoker.invoke = AsyncMock(side_effect=GenerationBackendError(BackendErrorKind.RATE_LIMIT, "429"))
        stage = CriticStage(critic, invoker=invoker)
        image = make_image()

        result_image, critique = await stage.run(image, make_instruction(), self.create_test_context())

        assert result_image is image
        assert critique.score == 20
        assert critique.retries_used == 0

    @pytest.mark.asyncio
    async def test_regeneration_can_be_disabled(self):
        critic = self.create_critic(make_critique(20, revised_prompt="better prompt"))
        invoker = Mock()
        invoker.invoke = AsyncMock()
        stage = CriticStage(critic, invoker=invoker)

        _, critique = await stage.run(make_image(), make_instruction(), self.create_test_context(),
                                      allow_regeneration=False)

        invoker.invoke.assert_not_awaited()
        assert not critique.passed


class TestImageCritic:
    """ImageCritic against a mocked vision chat client."""

    def create_client(self, content: str) -> Mock:
        client = Mock()
        client.chat.completions.create.return_value = Mock(choices=[Mock(message=Mock(content=content))])
        return client

    @pytest.mark.asyncio
    async def test_parses_json_response(self):
        client = self.create_client(
            '```json\n{"score": 45, "product_visible": false, "brand_consistent": true, '
            '"composition_good": true, "prompt_faithful": false, "issues": ["vase is cropped"], '
            '"revised_prompt": "  Show the full vase  "}\n```'
        )
        critic = ImageCritic(client, model_id="openai/gpt-4.1-mini", quality_threshold=60)
        ctx = StageContext(request_id="req-critic")

        result = await critic.critique(make_image(), make_instruction(), ctx)

        assert result.score == 45
        assert not result.passed
        assert not result.product_visible
        assert result.issues == ["vase is cropped"]
        assert result.revised_prompt == "Show the full vase"

        content = client.chat.completions.create.call_args.kwargs["messages"][0]["content"]
        assert content[1]["image_url"]["url"].startswith("data:image/png;base64,")

    @pytest.mark.asyncio
    async def test_score_is_clamped(self):
        client = self.create_client('{"score": 140, "issues": []}')
        result = await ImageCritic(client).critique(make_image(), make_instruction(), StageContext())
        assert result.score == 100
        assert result.passed
        assert result.revised_prompt is None

    def test_prompt_mentions_brand_and_uploads(self):
        ctx = StageContext(request_id="req")
        ctx.add_brand(BrandVoice(name="Clay & Co", colors=["terracotta", "cream"]))
        prompt = build_critique_prompt(make_instruction(), ctx)
        assert "Brand: Clay & Co" in prompt
        assert "terracotta, cream" in prompt
        assert "NO, the product was described in text only" in prompt
