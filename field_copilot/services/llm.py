"""
Model providers for generating copilot responses
"""
import json
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, Optional

import httpx
import structlog

from field_copilot.exceptions import ModelInvocationError
from field_copilot.models.chat import CompletionRequest, ModelCompletion
from field_copilot.services.config import Settings

logger = structlog.get_logger()


class ModelProvider(ABC):
    """A backend able to turn a prompt into completion text"""

    name: str = "provider"

    @abstractmethod
    async def complete(self, request: CompletionRequest) -> ModelCompletion:
        """Return the full completion for ``request``"""

    async def close(self):
        """Release backend resources"""


class StreamingModelProvider(ModelProvider):
    """A backend that can also yield the completion incrementally"""

    @abstractmethod
    def stream(self, request: CompletionRequest) -> AsyncIterator[str]:
        """Yield completion text fragments in generation order"""


class OpenAIChatProvider(StreamingModelProvider):
    """Provider for OpenAI-compatible chat completion endpoints"""

    name = "openai"

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.base_url = settings.LLM_BASE_URL.rstrip("/")
        self.http_client = http_client or httpx.AsyncClient(timeout=settings.REQUEST_TIMEOUT)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.settings.OPENAI_API_KEY}",
            "Content-Type": "application/json",
        }

    def _build_payload(self, request: CompletionRequest, stream: bool) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": request.model,
            "messages": [message.model_dump() for message in request.messages],
            "stream": stream,
        }
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.response_format:
            payload["response_format"] = {"type": request.response_format}
        if request.top_p is not None:
            payload["top_p"] = request.top_p
        if request.max_tokens is not None:
            payload["max_tokens"] = request.max_tokens
        return payload

    async def complete(self, request: CompletionRequest) -> ModelCompletion:
        """
        Generate complete response from the model (non-streaming)
        """
        payload = self._build_payload(request, stream=False)

        try:
            response = await self.http_client.post(
                f"{self.base_url}/v1/chat/completions",
                json=payload,
                headers=self._headers(),
                timeout=self.settings.REQUEST_TIMEOUT
            )
        except httpx.HTTPError as e:
            logger.error("LLM request failed", error=str(e), model=request.model)
            raise ModelInvocationError(f"Model request failed: {e}") from e

        if response.is_error:
            logger.error(
                "LLM request failed",
                status=response.status_code,
                model=request.model
            )
            raise ModelInvocationError(
                f"Model error: {response.status_code} {response.text}",
                status_code=response.status_code
            )

        try:
            result = response.json()
        except ValueError:
            result = None
        if not isinstance(result, dict):
            logger.error(
                "LLM returned an invalid response",
                status=response.status_code,
                model=request.model
            )
            raise ModelInvocationError(
                "Model returned an invalid response",
                status_code=response.status_code
            )

        content = ""
        choices = result.get("choices") or []
        if choices and isinstance(choices[0], dict):
            message = choices[0].get("message") or {}
            content = message.get("content") or ""

        return ModelCompletion(content=content, usage=result.get("usage"))

    async def stream(self, request: CompletionRequest) -> AsyncIterator[str]:
        """
        Generate streaming response from the model
        """
        payload = self._build_payload(request, stream=True)

        try:
            async with self.http_client.stream(
                "POST",
                f"{self.base_url}/v1/chat/completions",
                json=payload,
                headers=self._headers(),
                timeout=self.settings.STREAM_TIMEOUT
            ) as response:
                if response.is_error:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    logger.error(
                        "LLM stream request failed",
                        status=response.status_code,
                        model=request.model
                    )
                    raise ModelInvocationError(
                        f"Model error: {response.status_code} {body}",
                        status_code=response.status_code
                    )

                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    data = line[5:].strip()
                    if data == "[DONE]":
                        break

                    try:
                        chunk = json.loads(data)
                    except json.JSONDecodeError:
                        continue
                    if not isinstance(chunk, dict):
                        continue

                    choices = chunk.get("choices") or []
                    if choices and isinstance(choices[0], dict):
                        delta = choices[0].get("delta") or {}
                        text = delta.get("content") or ""
                        if text:
                            yield text

        except httpx.HTTPError as e:
            logger.error("LLM stream failed", error=str(e), model=request.model)
            raise ModelInvocationError(f"Model stream failed: {e}") from e

    async def close(self):
        """Clean up resources"""
        await self.http_client.aclose()
