"""
Image Generation

OpenAIImageBackend is the concrete generation backend: `images.generate` for
text-only requests, `images.edit` when reference images are present (user
uploads plus allow-listed template references downloaded with requests).

GenerationInvoker is the thin adapter the executor calls. It applies the
generation timeout and classifies every backend failure into the fixed
BackendErrorKind taxonomy.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import requests
from openai import (
    APITimeoutError,
    AuthenticationError,
    BadRequestError,
    PermissionDeniedError,
    RateLimitError,
)

from ..core.constants import (
    IMAGE_GENERATION_MODEL_ID,
    ALLOWED_REFERENCE_HOSTS,
    GENERATION_TIMEOUT_SECONDS,
    REFERENCE_DOWNLOAD_TIMEOUT_SECONDS,
)
from ..models import AssembledInstruction, GeneratedImage, ReferenceImage
from ..pipeline.errors import BackendErrorKind, GenerationBackendError

logger = logging.getLogger(__name__)

GENERATION_DISPATCH_STAGE = "generation_dispatch"
IMAGE_GENERATION_STAGE = "image_generation"

_CONTENT_POLICY_MARKERS = ("content_policy", "content policy", "moderation", "safety")


def map_aspect_ratio_to_size_for_api(aspect_ratio: str) -> str:
    """Maps aspect ratio string to a size supported by the image API."""
    if aspect_ratio == "1:1":
        return "1024x1024"
    if aspect_ratio in ("9:16", "3:4", "2:3", "4:5"):  # Vertical
        return "1024x1536"
    if aspect_ratio in ("16:9", "3:2", "1.91:1"):  # Horizontal
        return "1536x1024"
    logger.warning(f"Unsupported aspect ratio '{aspect_ratio}'. Defaulting to '1024x1024'.")
    return "1024x1024"


def is_allowed_reference_url(url: Optional[str]) -> bool:
    if not url:
        return False
    parsed = urlparse(url)
    return parsed.scheme == "https" and (parsed.hostname or "") in ALLOWED_REFERENCE_HOSTS


def classify_backend_error(error: BaseException) -> BackendErrorKind:
    """Map a backend exception onto the fixed taxonomy."""
    if isinstance(error, GenerationBackendError):
        return error.kind
    if isinstance(error, (AuthenticationError, PermissionDeniedError)):
        return BackendErrorKind.AUTH
    if isinstance(error, RateLimitError):
        return BackendErrorKind.RATE_LIMIT
    if isinstance(error, (APITimeoutError, asyncio.TimeoutError, TimeoutError)):
        return BackendErrorKind.TIMEOUT
    if isinstance(error, BadRequestError):
        code = str(getattr(error, "code", "") or "").lower()
        message = str(error).lower()
        if any(marker in code or marker in message for marker in _CONTENT_POLICY_MARKERS):
            return BackendErrorKind.CONTENT_POLICY
    return BackendErrorKind.UNKNOWN


class OpenAIImageBackend:
    """GenerationBackend over the OpenAI Images API."""

    def __init__(
        self,
        client: Any,
        model_id: str = IMAGE_GENERATION_MODEL_ID,
        download_timeout: float = REFERENCE_DOWNLOAD_TIMEOUT_SECONDS,
        quality: str = "high",
    ):
        self.client = client
        self.model_id = model_id
        self.download_timeout = download_timeout
        self.quality = quality

    def _download_reference(self, reference: ReferenceImage) -> Optional[Tuple[str, bytes, str]]:
        if not is_allowed_reference_url(reference.url):
            logger.warning(f"Skipping template reference outside the allowlist: {reference.url}")
            return None
        try:
            response = requests.get(reference.url, timeout=self.download_timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            logger.warning(f"Failed to download template reference {reference.url}: {e}")
            return None
        content_type = response.headers.get("Content-Type", "image/png").split(";")[0].strip()
        filename = urlparse(reference.url).path.rsplit("/", 1)[-1] or "reference.png"
        return filename, response.content, content_type

    async def _collect_image_files(self, instruction: AssembledInstruction) -> List[Tuple[str, bytes, str]]:
        files: List[Tuple[str, bytes, str]] = []
        for reference in instruction.reference_images:
            if reference.source == "template":
                downloaded = await asyncio.to_thread(self._download_reference, reference)
                if downloaded:
                    files.append(downloaded)
            elif reference.data:
                files.append((reference.filename or "upload.png", reference.data, reference.content_type or "image/png"))
        return files

    async def generate(self, instruction: AssembledInstruction) -> GeneratedImage:
        size = map_aspect_ratio_to_size_for_api(instruction.aspect_ratio)
        image_files = await self._collect_image_files(instruction)

        params: Dict[str, Any] = {
            "model": self.model_id,
            "prompt": instruction.text,
            "size": size,
            "n": 1,
            "quality": self.quality,
        }
        if image_files:
            logger.info(f"--- Calling Image Edit API ({self.model_id}) with {len(image_files)} reference image(s), size {size} ---")
            response = await asyncio.to_thread(self.client.images.edit, image=image_files, **params)
        else:
            logger.info(f"--- Calling Image Generation API ({self.model_id}), size {size} ---")
            response = await asyncio.to_thread(self.client.images.generate, **params)

        if not response.data or not response.data[0].b64_json:
            raise GenerationBackendError(BackendErrorKind.UNKNOWN, "Image API response contained no image data")

        usage = response.usage.model_dump() if getattr(response, "usage", None) else {}
        return GeneratedImage(
            image_base64=response.data[0].b64_json,
            mime_type="image/png",
            model_id=self.model_id,
            prompt_used=instruction.text,
            usage=usage,
        )


class GenerationInvoker:
    """Calls the backend under a timeout and turns failures into GenerationBackendError."""

    def __init__(self, backend: Any, timeout: float = GENERATION_TIMEOUT_SECONDS):
        self.backend = backend
        self.timeout = timeout

    async def invoke(self, instruction: AssembledInstruction,
                     stages_completed: Optional[List[str]] = None) -> GeneratedImage:
        if self.backend is None:
            raise GenerationBackendError(BackendErrorKind.UNKNOWN, "No generation backend configured", stages_completed)

        start_time = time.time()
        try:
            image = await asyncio.wait_for(self.backend.generate(instruction), timeout=self.timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            kind = classify_backend_error(e)
            logger.error(f"Generation backend failed ({kind.value}) after {time.time() - start_time:.2f}s: {type(e).__name__}: {e}")
            raise GenerationBackendError(kind, f"{type(e).__name__}: {e}", stages_completed) from e

        logger.info(f"Generation backend returned an image in {time.time() - start_time:.2f}s")
        return image
