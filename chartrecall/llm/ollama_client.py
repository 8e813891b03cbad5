"""
Ollama LLM Client for ChartRecall

Async HTTP client for the Ollama API, exposing the single model capability
the core depends on: complete(prompt, context) -> text.

- Retry with exponential backoff on connection and HTTP errors
- Timeouts surface as UpstreamTimeout so the call boundary decides retries
- Health check and warmup for application startup
"""

import asyncio
import logging
import os

import httpx

from chartrecall.core.errors import UpstreamTimeout

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = os.environ.get("OLLAMA_URL", "http://localhost:11434")
DEFAULT_MODEL = os.environ.get("OLLAMA_MODEL", "qwen2.5:3b")
DEFAULT_TIMEOUT = int(os.environ.get("OLLAMA_TIMEOUT_SECONDS", "60"))

# Generation parameters
DEFAULT_TEMPERATURE = float(os.environ.get("LLM_TEMPERATURE", "0.0"))
DEFAULT_MAX_TOKENS = int(os.environ.get("LLM_MAX_TOKENS", "512"))
DEFAULT_TOP_P = float(os.environ.get("LLM_TOP_P", "0.9"))
DEFAULT_NUM_CTX = int(os.environ.get("LLM_NUM_CTX", "8192"))
DEFAULT_KEEP_ALIVE = os.environ.get("OLLAMA_KEEP_ALIVE", "60m")

STOP_SEQUENCES = [
    "\n\n---",
    "\n\nDisclaimer:",
]

MAX_RETRIES = 3
RETRY_BACKOFF_BASE = 2  # seconds


def render_context(context: dict[str, str] | None) -> str:
    """Render named context sections as labelled blocks."""
    if not context:
        return ""
    blocks = []
    for name, value in context.items():
        label = name.replace("_", " ").upper()
        blocks.append(f"### {label}\n{value.strip() if value else '(none)'}")
    return "\n\n".join(blocks)


class OllamaClient:
    """Async client for Ollama LLM inference API."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        model: str = DEFAULT_MODEL,
        timeout: int = DEFAULT_TIMEOUT,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        top_p: float = DEFAULT_TOP_P,
        num_ctx: int = DEFAULT_NUM_CTX,
        keep_alive: str = DEFAULT_KEEP_ALIVE,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.top_p = top_p
        self.num_ctx = num_ctx
        self.keep_alive = keep_alive

    async def complete(self, prompt: str, context: dict[str, str] | None = None) -> str:
        """Complete a prompt with named context sections placed after it."""
        rendered = render_context(context)
        full_prompt = f"{prompt}\n\n{rendered}\n" if rendered else prompt
        return await self.generate(full_prompt)

    async def generate(self, prompt: str) -> str:
        """
        Send a prompt to Ollama and return the generated text.

        Retries connection and HTTP errors up to MAX_RETRIES times with
        exponential backoff and returns an empty string once exhausted.
        Timeouts raise UpstreamTimeout immediately.
        """
        for attempt in range(MAX_RETRIES):
            try:
                async with httpx.AsyncClient(
                    timeout=httpx.Timeout(self.timeout)
                ) as client:
                    response = await client.post(
                        f"{self.base_url}/api/generate",
                        json={
                            "model": self.model,
                            "prompt": prompt,
                            "stream": False,
                            "keep_alive": self.keep_alive,
                            "options": self._build_options(),
                            "stop": STOP_SEQUENCES,
                        },
                    )
                    response.raise_for_status()
                    data = response.json()
                    return data.get("response", "")

            except httpx.TimeoutException as e:
                logger.warning("Ollama timeout after %ds: %s", self.timeout, e)
                raise UpstreamTimeout("ollama", float(self.timeout)) from e
            except httpx.ConnectError as e:
                logger.warning(
                    "Ollama connection error (attempt %d/%d): %s",
                    attempt + 1,
                    MAX_RETRIES,
                    e,
                )
            except httpx.HTTPStatusError as e:
                logger.warning(
                    "Ollama HTTP error %d (attempt %d/%d): %s",
                    e.response.status_code,
                    attempt + 1,
                    MAX_RETRIES,
                    e,
                )
            except (httpx.HTTPError, ValueError) as e:
                # Dropped connections, protocol errors and malformed bodies
                logger.error(
                    "Unexpected Ollama error (attempt %d/%d): %s",
                    attempt + 1,
                    MAX_RETRIES,
                    e,
                )

            if attempt < MAX_RETRIES - 1:
                wait = RETRY_BACKOFF_BASE**attempt
                logger.info("Retrying in %ds...", wait)
                await asyncio.sleep(wait)

        logger.error("Ollama generation failed after %d attempts", MAX_RETRIES)
        return ""

    def _build_options(self) -> dict:
        """Build the Ollama options dict from instance configuration."""
        return {
            "temperature": self.temperature,
            "top_p": self.top_p,
            "num_predict": self.max_tokens,
            "num_ctx": self.num_ctx,
        }

    async def warmup(self) -> bool:
        """Load the model into Ollama memory with a one-token generation."""
        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout)) as client:
                response = await client.post(
                    f"{self.base_url}/api/generate",
                    json={
                        "model": self.model,
                        "prompt": "hi",
                        "stream": False,
                        "keep_alive": self.keep_alive,
                        "options": {"num_predict": 1},
                    },
                )
                response.raise_for_status()
                return True
        except httpx.HTTPError as e:
            logger.warning("LLM warmup failed: %s", e)
            return False

    async def health_check(self) -> bool:
        """True if the Ollama API responds with 200."""
        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(10)) as client:
                response = await client.get(self.base_url)
                return response.status_code == 200
        except httpx.HTTPError as e:
            logger.warning("Ollama health check failed: %s", e)
            return False
