"""Pytest fixtures for field copilot tests."""

import json
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from field_copilot.models.chat import (
    CompletionRequest,
    CopilotRequest,
    EvidenceItem,
    ModelCompletion,
)
from field_copilot.services.config import Settings
from field_copilot.services.job_context import JobContext, StaticJobContextProvider
from field_copilot.services.llm import ModelProvider, StreamingModelProvider
from field_copilot.services.store import InMemoryConversationStore
from field_copilot.services.telemetry import Telemetry, TelemetryEvent


ANSWER = "The blower mount was tightened on the last visit."

MODEL_OUTPUT = json.dumps({
    "answer": ANSWER,
    "citations": [
        {"doc_id": "note_1", "snippet": "Tightened blower mount, rattle resolved.", "type": "note"}
    ],
    "follow_ups": ["Any parts replaced?", "When is the next visit?"],
})


class ScriptedProvider(ModelProvider):
    """Returns a fixed completion, or raises a fixed error."""

    name = "scripted"

    def __init__(self, content: str = MODEL_OUTPUT, usage: Optional[Dict[str, Any]] = None,
                 error: Optional[Exception] = None):
        self.content = content
        self.usage = usage
        self.error = error
        self.requests: List[CompletionRequest] = []

    async def complete(self, request: CompletionRequest) -> ModelCompletion:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return ModelCompletion(content=self.content, usage=self.usage)


class ScriptedStreamingProvider(StreamingModelProvider):
    """Yields fixed fragments; optionally raises after ``fail_after`` of them."""

    name = "scripted-stream"

    def __init__(self, fragments: List[str], fail_after: Optional[int] = None,
                 error: Optional[Exception] = None):
        self.fragments = fragments
        self.fail_after = fail_after
        self.error = error
        self.requests: List[CompletionRequest] = []

    async def complete(self, request: CompletionRequest) -> ModelCompletion:
        self.requests.append(request)
        return ModelCompletion(content="".join(self.fragments))

    async def stream(self, request: CompletionRequest):
        self.requests.append(request)
        for index, fragment in enumerate(self.fragments):
            if self.fail_after is not None and index == self.fail_after:
                raise self.error
            yield fragment


class RecordingTelemetry(Telemetry):
    """Keeps every emitted event."""

    def __init__(self):
        self.events: List[TelemetryEvent] = []

    def emit(self, event: TelemetryEvent) -> None:
        self.events.append(event)

    def names(self, request_id: Optional[str] = None) -> List[str]:
        return [
            event.name for event in self.events
            if request_id is None or event.request_id == request_id
        ]


class FakeRedis:
    """The subset of redis.asyncio.Redis used by the conversation store."""

    def __init__(self):
        self.values: Dict[str, str] = {}
        self.hashes: Dict[str, Dict[str, str]] = {}
        self.lists: Dict[str, List[str]] = {}
        self.closed = False

    async def ping(self):
        return True

    async def aclose(self):
        self.closed = True

    async def get(self, key):
        return self.values.get(key)

    async def set(self, key, value):
        self.values[key] = value
        return True

    async def hsetnx(self, key, field, value):
        bucket = self.hashes.setdefault(key, {})
        if field in bucket:
            return 0
        bucket[field] = value
        return 1

    async def hset(self, key, field=None, value=None, mapping=None):
        bucket = self.hashes.setdefault(key, {})
        if field is not None:
            bucket[field] = value
        for name, item in (mapping or {}).items():
            bucket[name] = item
        return 1

    async def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    async def rpush(self, key, *values):
        self.lists.setdefault(key, []).extend(values)
        return len(self.lists[key])

    async def lrange(self, key, start, end):
        items = self.lists.get(key, [])
        stop = None if end == -1 else end + 1
        return items[start:stop]


@pytest.fixture(autouse=True)
def reset_sse_app_status():
    """sse-starlette keeps an exit event bound to the first event loop."""
    from sse_starlette import sse

    app_status = getattr(sse, "AppStatus", None)
    if app_status is not None and hasattr(app_status, "should_exit_event"):
        app_status.should_exit_event = None
    yield


@pytest.fixture
def test_settings():
    """Settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,
        OPENAI_API_KEY=None,
        REDIS_HOST="",
        JOB_CONTEXT_PATH=None,
        LOG_LEVEL="WARNING",
        ENVIRONMENT="testing",
    )


@pytest.fixture
def evidence_items():
    return [
        EvidenceItem(
            doc_id="note_1",
            type="note",
            scope="job",
            date="2024-11-12T17:40:00Z",
            text="Tightened blower mount, rattle resolved.",
            author_name="Sam Rivera",
            author_email="sam@example.com",
        ),
        EvidenceItem(
            doc_id="event_1",
            type="job_event",
            scope="property",
            date="2024-10-01T09:00:00Z",
            text="Filter replaced during seasonal maintenance.",
        ),
    ]


@pytest.fixture
def job_context(evidence_items):
    return JobContext(
        tenant_id="tenant_demo",
        snapshot={
            "job": {"id": "job_1", "title": "AC tune-up", "status": "scheduled"},
            "equipment": [{"type": "air handler", "model": "AH-200"}],
        },
        evidence=evidence_items,
    )


@pytest.fixture
def context_provider(job_context):
    return StaticJobContextProvider({"job_1": job_context})


@pytest.fixture
def memory_store():
    return InMemoryConversationStore()


@pytest.fixture
def recording_telemetry():
    return RecordingTelemetry()


@pytest.fixture
def scripted_provider():
    return ScriptedProvider(usage={"prompt_tokens": 120, "completion_tokens": 30})


@pytest.fixture
def copilot_request():
    return CopilotRequest(
        request_id="req-1",
        context={"job": {"id": "job_1"}},
        evidence_text="Job Notes:\n- Tightened blower mount",
        history=[],
        user_input="Was the blower fixed?",
    )


@pytest.fixture
def make_client(test_settings, memory_store, context_provider, recording_telemetry):
    """Build a TestClient around an app with injected services."""
    from field_copilot.main import create_app

    clients = []

    def factory(provider: Optional[ModelProvider] = None) -> TestClient:
        app = create_app(
            test_settings,
            provider=provider,
            store=memory_store,
            context_provider=context_provider,
            telemetry=recording_telemetry,
        )
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield factory

    for client in clients:
        client.__exit__(None, None, None)
