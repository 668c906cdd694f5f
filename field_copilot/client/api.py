"""
HTTP client for the copilot chat API
"""
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import structlog
from pydantic import ValidationError

from field_copilot.client.config import ClientSettings
from field_copilot.client.mock import build_mock_response, mock_deltas
from field_copilot.client.sse import consume_stream
from field_copilot.exceptions import ConfigError, ModelInvocationError, ParseError
from field_copilot.models.chat import ChatResponse, ConversationHistory

logger = structlog.get_logger()

TokenProvider = Callable[[], Awaitable[Optional[str]]]
DeltaCallback = Callable[[str], None]


class CopilotApiClient:
    """
    Talks to ``/jobs/{job_id}/ai/...`` on the copilot API.

    Without a base URL every call is answered by the offline responder, so
    callers never see ConfigError.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token_provider: Optional[TokenProvider] = None,
        dev_tenant_id: Optional[str] = None,
        dev_user_id: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 60.0
    ):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.token_provider = token_provider
        self.dev_tenant_id = dev_tenant_id
        self.dev_user_id = dev_user_id
        self.http_client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    @classmethod
    def from_settings(
        cls,
        settings: Optional[ClientSettings] = None,
        token_provider: Optional[TokenProvider] = None
    ) -> "CopilotApiClient":
        settings = settings or ClientSettings()
        return cls(
            base_url=settings.API_URL,
            token_provider=token_provider,
            dev_tenant_id=settings.TENANT_ID,
            dev_user_id=settings.USER_ID,
            timeout=settings.TIMEOUT,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url)

    def _url(self, path: str) -> str:
        if not self.base_url:
            raise ConfigError("Copilot API URL is not configured")
        return f"{self.base_url}{path}"

    async def _headers(self, stream: bool = False) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream" if stream else "application/json",
        }
        token = await self.token_provider() if self.token_provider else None
        if token:
            headers["Authorization"] = f"Bearer {token}"
        else:
            if self.dev_tenant_id:
                headers["x-tenant-id"] = self.dev_tenant_id
            if self.dev_user_id:
                headers["x-user-id"] = self.dev_user_id
        return headers

    @staticmethod
    def _chat_body(message: str, conversation_id: Optional[str], stream: bool) -> Dict[str, Any]:
        body: Dict[str, Any] = {"message": message, "stream": stream}
        if conversation_id:
            body["conversationId"] = conversation_id
        return body

    @staticmethod
    def _parse_response(data: Any) -> ChatResponse:
        try:
            return ChatResponse.model_validate(data)
        except ValidationError as e:
            raise ParseError(f"Invalid copilot response: {e.error_count()} validation errors") from e

    @staticmethod
    def _raise_for_status(response: httpx.Response):
        if response.is_success:
            return
        text = response.text
        raise ModelInvocationError(
            text or f"Copilot request failed with status {response.status_code}",
            status_code=response.status_code
        )

    async def send_message(
        self,
        job_id: str,
        message: str,
        conversation_id: Optional[str] = None
    ) -> ChatResponse:
        """
        Ask one question and wait for the complete answer

        Args:
            job_id: Job the question is about
            message: Technician's question
            conversation_id: Conversation to continue, if any

        Returns:
            Parsed chat response
        """
        try:
            url = self._url(f"/jobs/{job_id}/ai/chat")
        except ConfigError:
            logger.info("Copilot API not configured, using offline responder")
            return build_mock_response(message)

        try:
            response = await self.http_client.post(
                url,
                json=self._chat_body(message, conversation_id, stream=False),
                headers=await self._headers()
            )
        except httpx.TimeoutException as e:
            raise ModelInvocationError("Copilot request timed out") from e
        except httpx.HTTPError as e:
            raise ModelInvocationError(f"Copilot request failed: {e}") from e

        self._raise_for_status(response)
        try:
            data = response.json()
        except ValueError as e:
            raise ParseError("Copilot response is not JSON") from e
        return self._parse_response(data)

    async def send_message_streaming(
        self,
        job_id: str,
        message: str,
        conversation_id: Optional[str] = None,
        on_delta: Optional[DeltaCallback] = None
    ) -> ChatResponse:
        """
        Ask one question, handing answer text to ``on_delta`` as it arrives

        Returns:
            The terminal response of the stream

        Raises:
            ModelInvocationError: Transport failure or non-2xx status
            StreamIncomplete: The stream ended without a terminal payload
            ParseError: The terminal payload is not a valid response
        """
        on_delta = on_delta or (lambda delta: None)

        try:
            url = self._url(f"/jobs/{job_id}/ai/chat")
        except ConfigError:
            logger.info("Copilot API not configured, replaying offline response")
            mock = build_mock_response(message)
            for delta in mock_deltas(mock.answer):
                on_delta(delta)
            return mock

        try:
            async with self.http_client.stream(
                "POST",
                url,
                json=self._chat_body(message, conversation_id, stream=True),
                headers=await self._headers(stream=True)
            ) as response:
                if not response.is_success:
                    await response.aread()
                    self._raise_for_status(response)

                content_type = response.headers.get("content-type", "")
                if "text/event-stream" not in content_type:
                    # Server answered in one piece
                    await response.aread()
                    try:
                        data = response.json()
                    except ValueError as e:
                        raise ParseError("Copilot response is not JSON") from e
                    logger.debug("Response was not an event stream", content_type=content_type)
                    return self._parse_response(data)

                payload = await consume_stream(response.aiter_bytes(), on_delta)
        except httpx.TimeoutException as e:
            raise ModelInvocationError("Copilot stream timed out") from e
        except httpx.HTTPError as e:
            raise ModelInvocationError(f"Copilot stream failed: {e}") from e

        return self._parse_response(payload)

    async def get_conversation(
        self,
        job_id: str,
        conversation_id: Optional[str] = None
    ) -> ConversationHistory:
        """Fetch persisted turns; empty when the API is not configured"""
        try:
            url = self._url(f"/jobs/{job_id}/ai/conversation")
        except ConfigError:
            return ConversationHistory()

        params = {"conversationId": conversation_id} if conversation_id else None
        try:
            response = await self.http_client.get(url, params=params, headers=await self._headers())
        except httpx.HTTPError as e:
            raise ModelInvocationError(f"Conversation request failed: {e}") from e

        self._raise_for_status(response)
        try:
            return ConversationHistory.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise ParseError("Invalid conversation history response") from e

    async def close(self):
        """Close the HTTP client"""
        await self.http_client.aclose()
