# image_client.py
# Image generator used for primary and example images. Each call is bounded
# by a timeout and degrades to a fixed placeholder instead of failing.

import asyncio
from typing import Optional

from loguru import logger
from openai import AsyncOpenAI

import config
from errors import ImageGenerationError


class OpenAIImageGenerator:
    """Generates one image per prompt through the OpenAI images API."""

    def __init__(self, client: Optional[AsyncOpenAI] = None, model: str = config.IMAGE_MODEL,
                 size: str = config.IMAGE_SIZE):
        self._client = client
        self.model = model
        self.size = size

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            if not config.OPENAI_API_KEY:
                raise ImageGenerationError("OPENAI_API_KEY is not configured.")
            self._client = AsyncOpenAI(api_key=config.OPENAI_API_KEY, max_retries=1)
            logger.info(f"OpenAI image client configured (model={self.model}).")
        return self._client

    async def generate(self, prompt: str) -> str:
        """Returns an image reference: a URL, or a data URI for base64 payloads."""
        if not prompt or not prompt.strip():
            raise ImageGenerationError("Empty image prompt.")
        response = await self.client.images.generate(model=self.model, prompt=prompt, size=self.size, n=1)
        if not response.data:
            raise ImageGenerationError("Image provider returned no data.")
        image = response.data[0]
        if getattr(image, 'b64_json', None):
            return f"data:image/png;base64,{image.b64_json}"
        if getattr(image, 'url', None):
            return image.url
        raise ImageGenerationError("Image provider returned neither a URL nor base64 data.")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()


async def generate_image_or_fallback(
    generator,
    prompt: str,
    timeout: float = config.IMAGE_TIMEOUT_SECONDS,
    fallback: str = config.FALLBACK_IMAGE_URL,
) -> str:
    """Runs one image call; any failure or timeout yields the fallback image."""
    try:
        image = await asyncio.wait_for(generator.generate(prompt), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Image generation timed out after {timeout}s; using fallback. Prompt: {prompt[:80]!r}")
        return fallback
    except Exception as e:
        logger.warning(f"Image generation failed ({type(e).__name__}: {e}); using fallback. Prompt: {prompt[:80]!r}")
        return fallback
    if not image:
        logger.warning(f"Image generation returned an empty reference; using fallback. Prompt: {prompt[:80]!r}")
        return fallback
    return image
