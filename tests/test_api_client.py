"""Tests for the copilot HTTP client."""

import asyncio
import json

import httpx
import pytest

from field_copilot.client.api import CopilotApiClient
from field_copilot.client.config import ClientSettings
from field_copilot.client.mock import CAPABILITY_ANSWER, NOISE_ANSWER
from field_copilot.exceptions import ModelInvocationError, ParseError, StreamIncomplete


BASE_URL = "http://copilot.test/api"

RESPONSE = {
    "conversation_id": "conv-1",
    "answer": "Filter replaced on October 1.",
    "citations": [{"doc_id": "event_1", "snippet": "Filter replaced", "type": "job_event"}],
    "follow_ups": ["Any repeat issues?"],
    "evidence": [{"doc_id": "event_1", "text": "Filter replaced during maintenance.", "type": "job_event"}],
}


def sse_body(*payloads):
    return "".join(f"data: {json.dumps(payload)}\n\n" for payload in payloads).encode("utf-8")


def make_client(handler, **kwargs):
    return CopilotApiClient(
        base_url=BASE_URL,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        **kwargs
    )


def test_unconfigured_send_uses_mock():
    client = CopilotApiClient()
    response = asyncio.run(client.send_message("job_1", "What's the weather"))
    assert response.answer == CAPABILITY_ANSWER
    assert not client.is_configured
    asyncio.run(client.close())


def test_unconfigured_streaming_replays_words():
    client = CopilotApiClient()
    deltas = []

    response = asyncio.run(client.send_message_streaming("job_1", "odd noise", on_delta=deltas.append))

    assert response.answer == NOISE_ANSWER
    assert len(deltas) == len(NOISE_ANSWER.split(" "))
    assert "".join(deltas) == NOISE_ANSWER


def test_unconfigured_history_is_empty():
    history = asyncio.run(CopilotApiClient().get_conversation("job_1"))
    assert history.conversation_id is None
    assert history.messages == []


def test_send_message_request_shape():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=RESPONSE)

    client = make_client(handler, dev_tenant_id="tenant_demo", dev_user_id="user_7")
    response = asyncio.run(client.send_message("job_1", "Filter?", conversation_id="conv-1"))

    assert seen["url"] == f"{BASE_URL}/jobs/job_1/ai/chat"
    assert seen["body"] == {"message": "Filter?", "stream": False, "conversationId": "conv-1"}
    assert seen["headers"]["x-tenant-id"] == "tenant_demo"
    assert seen["headers"]["x-user-id"] == "user_7"
    assert "authorization" not in seen["headers"]
    assert response.conversation_id == "conv-1"
    assert response.citations[0].doc_id == "event_1"
    assert response.evidence[0].text == "Filter replaced during maintenance."


def test_conversation_id_omitted_when_absent():
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json=RESPONSE)

    asyncio.run(make_client(handler).send_message("job_1", "hi"))
    assert "conversationId" not in bodies[0]


def test_bearer_token_replaces_dev_headers():
    seen = {}

    async def token_provider():
        return "token-123"

    def handler(request):
        seen["headers"] = request.headers
        return httpx.Response(200, json=RESPONSE)

    client = make_client(handler, token_provider=token_provider, dev_tenant_id="tenant_demo")
    asyncio.run(client.send_message("job_1", "hi"))

    assert seen["headers"]["authorization"] == "Bearer token-123"
    assert "x-tenant-id" not in seen["headers"]


@pytest.mark.parametrize("stream", [False, True])
def test_error_body_surfaced_verbatim(stream):
    def handler(request):
        return httpx.Response(
            503,
            headers={"content-type": "application/json"},
            content=b'{"error":"Missing model API key","status_code":503}',
        )

    client = make_client(handler)
    call = (
        client.send_message_streaming("job_1", "hi") if stream
        else client.send_message("job_1", "hi")
    )

    with pytest.raises(ModelInvocationError) as exc:
        asyncio.run(call)

    assert exc.value.status_code == 503
    assert exc.value.message == '{"error":"Missing model API key","status_code":503}'


def test_transport_error_is_invocation_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ModelInvocationError):
        asyncio.run(make_client(handler).send_message_streaming("job_1", "hi"))


def test_timeout_is_invocation_error():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(ModelInvocationError) as exc:
        asyncio.run(make_client(handler).send_message("job_1", "hi"))
    assert "timed out" in exc.value.message


def test_streaming_applies_deltas_then_returns_terminal():
    body = sse_body({"delta": "Filter "}, {"delta": "replaced."}, RESPONSE)

    async def chunked():
        for i in range(0, len(body), 5):
            yield body[i:i + 5]

    seen = {}

    def handler(request):
        seen["accept"] = request.headers["accept"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=chunked())

    deltas = []
    response = asyncio.run(make_client(handler).send_message_streaming(
        "job_1", "Filter?", conversation_id="conv-1", on_delta=deltas.append
    ))

    assert deltas == ["Filter ", "replaced."]
    assert response.answer == RESPONSE["answer"]
    assert response.conversation_id == "conv-1"
    assert seen["accept"] == "text/event-stream"
    assert seen["body"]["stream"] is True


def test_streaming_without_terminal_is_incomplete():
    def handler(request):
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream; charset=utf-8"},
            content=sse_body({"delta": "Filter "}, {"error": "An error occurred processing your request"}),
        )

    deltas = []
    with pytest.raises(StreamIncomplete):
        asyncio.run(make_client(handler).send_message_streaming("job_1", "hi", on_delta=deltas.append))
    assert deltas == ["Filter "]


def test_streaming_falls_back_to_json_body():
    def handler(request):
        return httpx.Response(200, json=RESPONSE)

    deltas = []
    response = asyncio.run(make_client(handler).send_message_streaming("job_1", "hi", on_delta=deltas.append))

    assert response.answer == RESPONSE["answer"]
    assert deltas == []


def test_invalid_terminal_is_parse_error():
    def handler(request):
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=sse_body({"answer": None, "citations": []}),
        )

    with pytest.raises(ParseError):
        asyncio.run(make_client(handler).send_message_streaming("job_1", "hi"))


def test_get_conversation():
    seen = {}

    def handler(request):
        seen["url"] = request.url
        return httpx.Response(200, json={
            "conversation_id": "conv-1",
            "messages": [
                {"role": "user", "content": "Filter?", "created_at": "2024-11-12T17:40:00.000Z"},
                {"role": "assistant", "content": "Replaced.", "created_at": "2024-11-12T17:40:01.000Z",
                 "metadata_json": "{\"citations\": []}"},
            ],
        })

    history = asyncio.run(make_client(handler).get_conversation("job_1", "conv-1"))

    assert seen["url"].path == "/api/jobs/job_1/ai/conversation"
    assert seen["url"].params["conversationId"] == "conv-1"
    assert [m.role for m in history.messages] == ["user", "assistant"]


def test_from_settings():
    settings = ClientSettings(
        _env_file=None, API_URL="http://copilot.test/", TENANT_ID="t1", USER_ID="u1", TIMEOUT=5
    )
    client = CopilotApiClient.from_settings(settings)
    assert client.base_url == "http://copilot.test"
    assert client.dev_tenant_id == "t1"
    assert client.http_client.timeout.read == 5
