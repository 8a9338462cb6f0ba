"""
Tests for the image generation backend, the invoker and backend error classification.
"""

import asyncio
import base64
import pytest
import httpx
import requests
from unittest.mock import AsyncMock, Mock, patch

from openai import (
    APITimeoutError,
    AuthenticationError,
    BadRequestError,
    InternalServerError,
    PermissionDeniedError,
    RateLimitError,
)

from adforge.models import AssembledInstruction, GeneratedImage, ReferenceImage
from adforge.pipeline.errors import BackendErrorKind, GenerationBackendError
from adforge.stages.image_generation import (
    GenerationInvoker,
    OpenAIImageBackend,
    classify_backend_error,
    is_allowed_reference_url,
    map_aspect_ratio_to_size_for_api,
)

API_URL = "https://api.openai.com/v1/images/generations"


def make_status_error(error_class, status_code: int, message: str = "error", body=None):
    request = httpx.Request("POST", API_URL)
    response = httpx.Response(status_code, request=request)
    return error_class(message, response=response, body=body)


def make_instruction(references=None, aspect_ratio: str = "1:1") -> AssembledInstruction:
    return AssembledInstruction(
        text="A sneaker on a wet street at night",
        reference_images=references or [],
        mode="standard",
        aspect_ratio=aspect_ratio,
        resolution="2K",
    )


def make_image(prompt: str = "A sneaker on a wet street at night") -> GeneratedImage:
    return GeneratedImage(
        image_base64=base64.b64encode(b"fake-png").decode(),
        model_id="gpt-image-1",
        prompt_used=prompt,
    )


class TestClassifyBackendError:
    """Mapping of backend exceptions onto BackendErrorKind."""

    def test_auth_errors(self):
        assert classify_backend_error(make_status_error(AuthenticationError, 401)) == BackendErrorKind.AUTH
        assert classify_backend_error(make_status_error(PermissionDeniedError, 403)) == BackendErrorKind.AUTH

    def test_rate_limit(self):
        assert classify_backend_error(make_status_error(RateLimitError, 429)) == BackendErrorKind.RATE_LIMIT

    def test_timeouts(self):
        assert classify_backend_error(APITimeoutError(request=httpx.Request("POST", API_URL))) == BackendErrorKind.TIMEOUT
        assert classify_backend_error(asyncio.TimeoutError()) == BackendErrorKind.TIMEOUT

    def test_content_policy_by_code(self):
        error = make_status_error(
            BadRequestError, 400, "Your request was rejected",
            body={"code": "content_policy_violation", "message": "Your request was rejected"},
        )
        assert classify_backend_error(error) == BackendErrorKind.CONTENT_POLICY

    def test_content_policy_by_message(self):
        error = make_status_error(BadRequestError, 400, "Request blocked by our safety system")
        assert classify_backend_error(error) == BackendErrorKind.CONTENT_POLICY

    def test_other_bad_request_is_unknown(self):
        error = make_status_error(BadRequestError, 400, "Invalid size parameter")
        assert classify_backend_error(error) == BackendErrorKind.UNKNOWN

    def test_anything_else_is_unknown(self):
        assert classify_backend_error(make_status_error(InternalServerError, 500)) == BackendErrorKind.UNKNOWN
        assert classify_backend_error(ValueError("bad")) == BackendErrorKind.UNKNOWN

    def test_already_classified_error_keeps_its_kind(self):
        error = GenerationBackendError(BackendErrorKind.CONTENT_POLICY, "declined")
        assert classify_backend_error(error) == BackendErrorKind.CONTENT_POLICY


class TestGenerationBackendError:

    @pytest.mark.parametrize("kind,status", [
        (BackendErrorKind.AUTH, 502),
        (BackendErrorKind.RATE_LIMIT, 429),
        (BackendErrorKind.CONTENT_POLICY, 422),
        (BackendErrorKind.TIMEOUT, 504),
        (BackendErrorKind.UNKNOWN, 502),
    ])
    def test_status_codes(self, kind, status):
        error = GenerationBackendError(kind, "internal detail sk-12345")
        assert error.status_code == status
        assert "sk-12345" not in error.public_message

    def test_retryable_kinds(self):
        assert GenerationBackendError(BackendErrorKind.RATE_LIMIT, "x").is_retryable
        assert not GenerationBackendError(BackendErrorKind.AUTH, "x").is_retryable


class TestHelpers:

    @pytest.mark.parametrize("aspect_ratio,size", [
        ("1:1", "1024x1024"),
        ("9:16", "1024x1536"),
        ("4:5", "1024x1536"),
        ("16:9", "1536x1024"),
        ("1.91:1", "1536x1024"),
        ("5:1", "1024x1024"),
    ])
    def test_map_aspect_ratio_to_size(self, aspect_ratio, size):
        assert map_aspect_ratio_to_size_for_api(aspect_ratio) == size

    def test_reference_url_allowlist(self):
        assert is_allowed_reference_url("https://res.cloudinary.com/demo/ref.png")
        assert not is_allowed_reference_url("http://res.cloudinary.com/demo/ref.png")
        assert not is_allowed_reference_url("https://evil.example.com/ref.png")
        assert not is_allowed_reference_url("https://169.254.169.254/latest/meta-data")
        assert not is_allowed_reference_url(None)


class TestOpenAIImageBackend:
    """OpenAIImageBackend with a mocked OpenAI client."""

    def create_client(self) -> Mock:
        client = Mock()
        response = Mock()
        response.data = [Mock(b64_json=base64.b64encode(b"generated").decode())]
        response.usage = Mock()
        response.usage.model_dump.return_value = {"input_tokens": 120, "output_tokens": 4160}
        client.images.generate.return_value = response
        client.images.edit.return_value = response
        return client

    @pytest.mark.asyncio
    async def test_text_only_uses_generate(self):
        client = self.create_client()
        backend = OpenAIImageBackend(client)

        image = await backend.generate(make_instruction(aspect_ratio="9:16"))

        client.images.generate.assert_called_once()
        client.images.edit.assert_not_called()
        kwargs = client.images.generate.call_args.kwargs
        assert kwargs["size"] == "1024x1536"
        assert kwargs["model"] == "gpt-image-1"
        assert image.usage == {"input_tokens": 120, "output_tokens": 4160}
        assert image.prompt_used == "A sneaker on a wet street at night"

    @pytest.mark.asyncio
    async def test_uploads_use_edit(self):
        client = self.create_client()
        backend = OpenAIImageBackend(client)
        references = [ReferenceImage(source="upload", filename="shoe.png", content_type="image/png", data=b"png-bytes")]

        await backend.generate(make_instruction(references))

        client.images.edit.assert_called_once()
        files = client.images.edit.call_args.kwargs["image"]
        assert files == [("shoe.png", b"png-bytes", "image/png")]

    @pytest.mark.asyncio
    async def test_template_references_are_downloaded_first(self):
        client = self.create_client()
        backend = OpenAIImageBackend(client)
        references = [
            ReferenceImage(source="template", url="https://res.cloudinary.com/demo/ref.png"),
            ReferenceImage(source="upload", filename="shoe.png", content_type="image/png", data=b"png-bytes"),
        ]
        download = Mock(content=b"ref-bytes", headers={"Content-Type": "image/png; charset=binary"})

        with patch("adforge.stages.image_generation.requests.get", return_value=download) as mock_get:
            await backend.generate(make_instruction(references))

        mock_get.assert_called_once_with("https://res.cloudinary.com/demo/ref.png", timeout=backend.download_timeout)
        files = client.images.edit.call_args.kwargs["image"]
        assert files[0] == ("ref.png", b"ref-bytes", "image/png")
        assert files[1][0] == "shoe.png"

    @pytest.mark.asyncio
    async def test_disallowed_or_failed_references_are_skipped(self):
        client = self.create_client()
        backend = OpenAIImageBackend(client)
        references = [
            ReferenceImage(source="template", url="https://evil.example.com/ref.png"),
            ReferenceImage(source="template", url="https://images.unsplash.com/broken.png"),
        ]

        with patch("adforge.stages.image_generation.requests.get",
                   side_effect=requests.exceptions.ConnectionError("unreachable")) as mock_get:
            await backend.generate(make_instruction(references))

        mock_get.assert_called_once()
        client.images.generate.assert_called_once()
        client.images.edit.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_response_is_unknown_error(self):
        client = self.create_client()
        client.images.generate.return_value = Mock(data=[])
        backend = OpenAIImageBackend(client)

        with pytest.raises(GenerationBackendError) as exc_info:
            await backend.generate(make_instruction())
        assert exc_info.value.kind == BackendErrorKind.UNKNOWN


class TestGenerationInvoker:
    """Timeout and error classification around the backend call."""

    @pytest.mark.asyncio
    async def test_success(self):
        backend = Mock()
        backend.generate = AsyncMock(return_value=make_image())
        invoker = GenerationInvoker(backend, timeout=1)

        image = await invoker.invoke(make_instruction())

        assert image.model_id == "gpt-image-1"

    @pytest.mark.asyncio
    async def test_rate_limit_is_classified(self):
        backend = Mock()
        backend.generate = AsyncMock(side_effect=make_status_error(RateLimitError, 429, "Rate limit reached"))
        invoker = GenerationInvoker(backend, timeout=1)

        with pytest.raises(GenerationBackendError) as exc_info:
            await invoker.invoke(make_instruction(), ["product_context", "brand_context"])

        error = exc_info.value
        assert error.kind == BackendErrorKind.RATE_LIMIT
        assert error.status_code == 429
        assert error.stages_completed == ["product_context", "brand_context"]
        assert isinstance(error.__cause__, RateLimitError)

    @pytest.mark.asyncio
    async def test_timeout_is_classified(self):
        async def slow_generate(instruction):
            await asyncio.sleep(5)

        backend = Mock()
        backend.generate = slow_generate
        invoker = GenerationInvoker(backend, timeout=0.05)

        with pytest.raises(GenerationBackendError) as exc_info:
            await invoker.invoke(make_instruction())
        assert exc_info.value.kind == BackendErrorKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_missing_backend(self):
        with pytest.raises(GenerationBackendError) as exc_info:
            await GenerationInvoker(None).invoke(make_instruction())
        assert exc_info.value.kind == BackendErrorKind.UNKNOWN
