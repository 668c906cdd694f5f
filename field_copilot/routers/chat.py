"""
Job copilot chat endpoints with optional SSE streaming
"""
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse
import structlog

from field_copilot.exceptions import ConfigError, ConversationMismatchError
from field_copilot.models.chat import (
    ChatMessage,
    ChatRequestBody,
    ConversationHistory,
    ConversationTurn,
    CopilotRequest,
    EvidenceItem,
    ParsedResponse,
)
from field_copilot.services.evidence import (
    evidence_payload,
    final_answer,
    format_evidence_for_prompt,
    normalize_citations,
)
from field_copilot.services.orchestrator import CopilotOrchestrator
from field_copilot.services.store import ConversationRecord, StoredMessage
from field_copilot.utils.metrics import track_stream_delta

logger = structlog.get_logger()

router = APIRouter(tags=["copilot"])

STREAM_ERROR_MESSAGE = "An error occurred processing your request"


@dataclass
class Identity:
    """Caller identity resolved from request headers"""
    tenant_id: str
    user_id: str


@dataclass
class PreparedTurn:
    """Everything needed to orchestrate and persist one turn"""
    identity: Identity
    job_id: str
    conversation_id: str
    message: str
    request: CopilotRequest
    evidence: List[EvidenceItem]


def get_identity(request: Request) -> Identity:
    """
    Resolve tenant and user; token verification happens upstream, so the
    development headers win when present and settings supply the defaults.
    """
    settings = request.app.state.settings
    tenant_id = request.headers.get("x-tenant-id") or settings.DEFAULT_TENANT_ID
    user_id = request.headers.get("x-user-id") or settings.DEFAULT_USER_ID
    return Identity(tenant_id=tenant_id, user_id=user_id)


def create_sse_message(data: Dict[str, Any]) -> str:
    """Create SSE message - EventSourceResponse adds the 'data: ' prefix"""
    return json.dumps(data, ensure_ascii=False)


def get_orchestrator(request: Request) -> CopilotOrchestrator:
    orchestrator = request.app.state.orchestrator
    if orchestrator is None:
        raise ConfigError("Missing model API key")
    return orchestrator


async def prepare_turn(req: Request, job_id: str, body: ChatRequestBody, identity: Identity) -> PreparedTurn:
    """Load context, resolve the conversation and build the CopilotRequest"""
    app = req.app
    settings = app.state.settings
    store = app.state.store
    context_provider = app.state.context_provider
    config = settings.copilot_config()

    snapshot = await context_provider.get_snapshot(identity.tenant_id, job_id)
    evidence = await context_provider.get_evidence(identity.tenant_id, job_id, settings.EVIDENCE_LIMIT)
    evidence_text = format_evidence_for_prompt(evidence)

    conversation_id = (body.conversation_id or "").strip() or str(uuid.uuid4())
    existing = await store.get(identity.tenant_id, conversation_id)
    if existing is None:
        await store.ensure(ConversationRecord(
            id=conversation_id,
            tenant_id=identity.tenant_id,
            job_id=job_id,
            user_id=identity.user_id,
        ))
    elif existing.job_id != job_id:
        raise ConversationMismatchError("Conversation does not belong to this job")

    stored = await store.list_messages(conversation_id, limit=config.retrieval.history_limit)
    history = [
        ChatMessage(role="assistant" if row.role == "assistant" else "user", content=row.content)
        for row in stored
    ]

    return PreparedTurn(
        identity=identity,
        job_id=job_id,
        conversation_id=conversation_id,
        message=body.message,
        request=CopilotRequest(
            request_id=str(uuid.uuid4()),
            context=snapshot,
            evidence_text=evidence_text,
            history=history,
            user_input=body.message,
            config=config,
        ),
        evidence=evidence,
    )


async def finish_turn(req: Request, turn: PreparedTurn, parsed: ParsedResponse) -> Dict[str, Any]:
    """Normalize citations, persist both turns and build the response body"""
    store = req.app.state.store
    config = turn.request.config
    citations = normalize_citations(parsed.citations, turn.evidence)
    answer = final_answer(parsed.answer)

    common = dict(
        conversation_id=turn.conversation_id,
        tenant_id=turn.identity.tenant_id,
        job_id=turn.job_id,
        user_id=turn.identity.user_id,
        model=config.model.name,
        prompt_version=config.prompt.version,
    )
    await store.append_message(StoredMessage.create(
        role="user",
        content=turn.message,
        metadata_json=json.dumps({"type": "user_message"}),
        **common
    ))
    await store.append_message(StoredMessage.create(
        role="assistant",
        content=answer,
        metadata_json=json.dumps({
            "type": "assistant_message",
            "citations": citations,
            "evidence": [item.doc_id for item in turn.evidence],
        }),
        **common
    ))
    await store.touch(turn.conversation_id)

    return {
        "conversation_id": turn.conversation_id,
        "answer": answer,
        "citations": citations,
        "follow_ups": parsed.follow_ups,
        "evidence": evidence_payload(turn.evidence),
    }


@router.post("/jobs/{job_id}/ai/chat")
async def chat_endpoint(
    job_id: str,
    body: ChatRequestBody,
    req: Request,
    identity: Identity = Depends(get_identity)
):
    """
    Answer a technician's question about a job, as JSON or as an SSE stream
    """
    if not body.message.strip():
        raise HTTPException(status_code=400, detail="Missing message")

    orchestrator = get_orchestrator(req)
    start_time = time.time()
    turn = await prepare_turn(req, job_id, body, identity)

    logger.info(
        "Chat request received",
        request_id=turn.request.request_id,
        job_id=job_id,
        conversation_id=turn.conversation_id,
        history_length=len(turn.request.history),
        evidence_count=len(turn.evidence),
        stream=body.stream
    )

    if not body.stream:
        parsed = await orchestrator.run(turn.request)
        payload = await finish_turn(req, turn, parsed)
        logger.info(
            "Chat request completed",
            request_id=turn.request.request_id,
            total_time=time.time() - start_time
        )
        return JSONResponse(payload, headers={"x-conversation-id": turn.conversation_id})

    async def generate_response() -> AsyncGenerator[str, None]:
        """Generate SSE stream"""
        delta_count = 0
        try:
            async for item in orchestrator.stream(turn.request):
                if isinstance(item, ParsedResponse):
                    payload = await finish_turn(req, turn, item)
                    yield create_sse_message(payload)
                    break
                delta_count += 1
                track_stream_delta()
                yield create_sse_message({"delta": item})

            logger.info(
                "Chat stream completed",
                request_id=turn.request.request_id,
                total_time=time.time() - start_time,
                delta_count=delta_count
            )
        except Exception as e:
            logger.error(
                "Chat stream failed",
                request_id=turn.request.request_id,
                error=str(e),
                exc_info=True
            )
            yield create_sse_message({"error": STREAM_ERROR_MESSAGE})

    return EventSourceResponse(
        generate_response(),
        sep="\n",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
            "x-conversation-id": turn.conversation_id,
        }
    )


@router.get("/jobs/{job_id}/ai/conversation", response_model=ConversationHistory)
async def conversation_endpoint(
    job_id: str,
    req: Request,
    conversation_id: Optional[str] = Query(default=None, alias="conversationId"),
    identity: Identity = Depends(get_identity)
) -> ConversationHistory:
    """
    Return the persisted turns of a job conversation in chronological order
    """
    store = req.app.state.store

    if conversation_id:
        conversation = await store.get(identity.tenant_id, conversation_id)
    else:
        conversation = await store.find_latest(identity.tenant_id, job_id, identity.user_id)

    if conversation is None or conversation.job_id != job_id:
        return ConversationHistory(conversation_id=None, messages=[])

    rows = await store.list_messages(conversation.id)
    return ConversationHistory(
        conversation_id=conversation.id,
        messages=[
            ConversationTurn(
                role=row.role,
                content=row.content,
                created_at=row.created_at,
                metadata_json=row.metadata_json,
            )
            for row in rows
        ],
    )
