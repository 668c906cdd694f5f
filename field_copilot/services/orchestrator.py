"""
Copilot orchestration: prompt build, model invocation, response parsing
"""
import asyncio
import time
from typing import AsyncGenerator, Optional, Union

import structlog

from field_copilot.models.chat import (
    CompletionRequest,
    CopilotRequest,
    ModelCompletion,
    ParsedResponse,
)
from field_copilot.services.llm import ModelProvider, StreamingModelProvider
from field_copilot.services.parser import parse_response
from field_copilot.services.prompts import build_prompt
from field_copilot.services.streaming import AnswerDeltaExtractor
from field_copilot.services.telemetry import (
    MODEL_COMPLETED,
    NullTelemetry,
    REQUEST_COMPLETED,
    REQUEST_FAILED,
    REQUEST_STARTED,
    RESPONSE_PARSED,
    Telemetry,
    TelemetryEvent,
)

logger = structlog.get_logger()


class CopilotOrchestrator:
    """Sequences build -> invoke -> parse for one CopilotRequest"""

    def __init__(self, provider: ModelProvider, telemetry: Optional[Telemetry] = None):
        self.provider = provider
        self.telemetry = telemetry or NullTelemetry()

    @property
    def supports_streaming(self) -> bool:
        return isinstance(self.provider, StreamingModelProvider)

    def _emit(self, name: str, request_id: str, **payload):
        try:
            self.telemetry.emit(TelemetryEvent(name=name, request_id=request_id, payload=payload))
        except Exception as e:
            logger.warning("Telemetry sink failed", telemetry_event=name, request_id=request_id, error=str(e))

    def _completion_request(self, request: CopilotRequest) -> CompletionRequest:
        config = request.config
        return CompletionRequest(
            model=config.model.name,
            temperature=config.model.temperature,
            top_p=config.model.top_p,
            max_tokens=config.model.max_tokens,
            response_format=config.model.response_format,
            messages=build_prompt(
                config.prompt.version,
                snapshot=request.context,
                evidence_text=request.evidence_text,
                history=request.history,
                user_message=request.user_input,
            ),
        )

    def _parse(self, request_id: str, completion: ModelCompletion) -> ParsedResponse:
        parsed = parse_response(completion.content)
        self._emit(
            RESPONSE_PARSED,
            request_id,
            citations=len(parsed.citations),
            follow_ups=len(parsed.follow_ups),
        )
        return parsed

    async def run(self, request: CopilotRequest) -> ParsedResponse:
        """
        Run one orchestration and return the parsed response.

        Emits exactly one terminal telemetry event and re-raises any failure.
        """
        start_time = time.perf_counter()
        self._emit(REQUEST_STARTED, request.request_id, prompt_version=request.config.prompt.version)

        try:
            completion_request = self._completion_request(request)
            completion = await self.provider.complete(completion_request)
            self._emit(MODEL_COMPLETED, request.request_id, usage=completion.usage)
            parsed = self._parse(request.request_id, completion)
        except Exception as e:
            self._emit(
                REQUEST_FAILED,
                request.request_id,
                error=str(e),
                latency_ms=(time.perf_counter() - start_time) * 1000
            )
            raise

        self._emit(
            REQUEST_COMPLETED,
            request.request_id,
            latency_ms=(time.perf_counter() - start_time) * 1000
        )
        return parsed

    async def stream(
        self,
        request: CopilotRequest
    ) -> AsyncGenerator[Union[str, ParsedResponse], None]:
        """
        Run one orchestration, yielding answer text deltas and then exactly one
        ParsedResponse.

        Deltas always concatenate to the final answer. Providers without
        streaming support are invoked once and their answer is sent as a
        single delta.
        """
        start_time = time.perf_counter()
        self._emit(REQUEST_STARTED, request.request_id, prompt_version=request.config.prompt.version)
        sent = []

        try:
            completion_request = self._completion_request(request)

            if isinstance(self.provider, StreamingModelProvider):
                extractor = AnswerDeltaExtractor()
                fragments = []
                async for fragment in self.provider.stream(completion_request):
                    fragments.append(fragment)
                    delta = extractor.feed(fragment)
                    if delta:
                        sent.append(delta)
                        yield delta
                completion = ModelCompletion(content="".join(fragments))
            else:
                completion = await self.provider.complete(completion_request)

            self._emit(MODEL_COMPLETED, request.request_id, usage=completion.usage)
            parsed = self._parse(request.request_id, completion)

            streamed = "".join(sent)
            if streamed != parsed.answer and parsed.answer.startswith(streamed):
                remainder = parsed.answer[len(streamed):]
                sent.append(remainder)
                yield remainder
        except (Exception, asyncio.CancelledError, GeneratorExit) as e:
            self._emit(
                REQUEST_FAILED,
                request.request_id,
                error=str(e) or type(e).__name__,
                latency_ms=(time.perf_counter() - start_time) * 1000
            )
            raise

        self._emit(
            REQUEST_COMPLETED,
            request.request_id,
            latency_ms=(time.perf_counter() - start_time) * 1000,
            deltas=len(sent)
        )
        yield parsed
