"""
Client-side conversation state for one job's copilot chat
"""
import asyncio
import itertools
import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, List, Optional

import structlog

from field_copilot.client.api import CopilotApiClient
from field_copilot.models.chat import ChatResponse

logger = structlog.get_logger()

ASSISTANT_SENDER_ID = "ai"
ASSISTANT_NAME = "HVACOps Copilot"
PLACEHOLDER_TEXT = "Thinking..."
FAILURE_MESSAGE = (
    "Copilot is unavailable right now. Please try again in a moment or check your connection."
)


class ConversationState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    FAILED = "failed"


@dataclass
class Source:
    """Uniform shape for citations and evidence shown under an answer"""
    snippet: str
    date: Optional[str] = None
    type: Optional[str] = None
    author_name: Optional[str] = None
    author_email: Optional[str] = None


@dataclass
class DisplayMessage:
    id: str
    role: str
    content: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    is_loading: bool = False
    sources: List[Source] = field(default_factory=list)
    sender_id: Optional[str] = None
    sender_name: Optional[str] = None
    sender_role: Optional[str] = None


@dataclass(frozen=True)
class ConversationEvent:
    """
    Notification sent to observers.

    ``kind`` is one of "state", "messages", "delta" or "follow_ups"; ``data``
    carries the new state, the delta text, or None.
    """
    kind: str
    data: Any = None


Observer = Callable[[ConversationEvent], None]


def _optional_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def sources_from_response(response: ChatResponse) -> List[Source]:
    """Map evidence (preferred) or citations to display sources"""
    if response.evidence:
        return [
            Source(
                snippet=item.text,
                date=item.date,
                type=item.type,
                author_name=item.author_name,
                author_email=item.author_email,
            )
            for item in response.evidence
            if isinstance(item.text, str)
        ]

    return [
        Source(
            snippet=citation.snippet,
            date=citation.date,
            type=citation.type,
            author_name=citation.author_name,
            author_email=citation.author_email,
        )
        for citation in response.citations
        if isinstance(citation.snippet, str)
    ]


def sources_from_metadata(metadata_json: Optional[str]) -> List[Source]:
    """Decode citations stored with a persisted assistant turn; anything malformed gives []"""
    if not metadata_json:
        return []
    try:
        metadata = json.loads(metadata_json)
    except (TypeError, ValueError):
        return []
    if not isinstance(metadata, dict) or not isinstance(metadata.get("citations"), list):
        return []

    sources = []
    for citation in metadata["citations"]:
        if not isinstance(citation, dict) or not isinstance(citation.get("snippet"), str):
            continue
        sources.append(Source(
            snippet=citation["snippet"],
            date=_optional_str(citation.get("date")),
            type=_optional_str(citation.get("type")),
            author_name=_optional_str(citation.get("author_name")),
            author_email=_optional_str(citation.get("author_email")),
        ))
    return sources


class ConversationStateMachine:
    """
    Owns the message list, follow-ups and conversation id of one job chat.

    States per turn: IDLE -> SENDING -> STREAMING -> FINALIZING -> IDLE, or
    SENDING/STREAMING -> FAILED -> IDLE. Only one placeholder is in flight at
    a time; a send while busy is ignored.
    """

    def __init__(
        self,
        client: CopilotApiClient,
        job_id: Optional[str],
        user_id: Optional[str] = None,
        user_name: Optional[str] = None,
        streaming: bool = True
    ):
        self.client = client
        self.job_id = job_id
        self.user_id = user_id
        self.user_name = user_name
        self.streaming = streaming

        self.state = ConversationState.IDLE
        self.messages: List[DisplayMessage] = []
        self.follow_ups: List[str] = []
        self.conversation_id: Optional[str] = None

        self._placeholder_id: Optional[str] = None
        self._restored = False
        self._observers: List[Observer] = []
        self._ids = itertools.count(1)

    @property
    def is_busy(self) -> bool:
        return self._placeholder_id is not None

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register an observer; returns a function that unregisters it"""
        self._observers.append(observer)

        def unsubscribe():
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _notify(self, kind: str, data: Any = None):
        event = ConversationEvent(kind, data)
        for observer in list(self._observers):
            try:
                observer(event)
            except Exception as e:
                logger.warning("Conversation observer failed", event_kind=kind, error=str(e))

    def _transition(self, state: ConversationState):
        self.state = state
        self._notify("state", state)

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    def _index_of(self, message_id: str) -> int:
        for index, message in enumerate(self.messages):
            if message.id == message_id:
                return index
        raise KeyError(message_id)

    def _replace_message(self, message_id: str, message: DisplayMessage):
        self.messages[self._index_of(message_id)] = message
        self._notify("messages")

    def _assistant_message(self, message_id: str, content: str, **fields) -> DisplayMessage:
        return DisplayMessage(
            id=message_id,
            role="assistant",
            content=content,
            sender_id=ASSISTANT_SENDER_ID,
            sender_name=ASSISTANT_NAME,
            sender_role="ai",
            **fields
        )

    def _user_message(self, message_id: str, content: str, **fields) -> DisplayMessage:
        return DisplayMessage(
            id=message_id,
            role="user",
            content=content,
            sender_id=self.user_id,
            sender_name=self.user_name,
            sender_role="primary",
            **fields
        )

    async def send_message(self, content: str) -> Optional[DisplayMessage]:
        """
        Run one turn and return the message that replaced the placeholder

        Returns None without doing anything for blank content, a missing job id,
        or while another turn is in flight.
        """
        if not content or not content.strip() or not self.job_id or self.is_busy:
            return None

        placeholder = self._assistant_message(
            self._next_id("ai"), PLACEHOLDER_TEXT, is_loading=True
        )
        self.messages.extend([self._user_message(self._next_id("user"), content), placeholder])
        self._placeholder_id = placeholder.id

        deltas: List[str] = []

        def on_delta(delta: str):
            if self._placeholder_id != placeholder.id:
                return
            current = self.messages[self._index_of(placeholder.id)]
            if not deltas:
                self._transition(ConversationState.STREAMING)
                updated = replace(current, content=delta, is_loading=False)
            else:
                updated = replace(current, content=current.content + delta)
            deltas.append(delta)
            self._replace_message(placeholder.id, updated)
            self._notify("delta", delta)

        try:
            self._notify("messages")
            self._transition(ConversationState.SENDING)
            if self.streaming:
                response = await self.client.send_message_streaming(
                    self.job_id, content, self.conversation_id, on_delta
                )
            else:
                response = await self.client.send_message(self.job_id, content, self.conversation_id)
        except asyncio.CancelledError:
            logger.info("Copilot turn cancelled", job_id=self.job_id)
            self._fail(placeholder.id)
            raise
        except Exception as e:
            logger.warning(
                "Copilot turn failed",
                job_id=self.job_id,
                error_type=type(e).__name__,
                error=str(e)
            )
            return self._fail(placeholder.id)

        return self._finalize(placeholder.id, response, deltas)

    def _finalize(self, placeholder_id: str, response: ChatResponse, deltas: List[str]) -> DisplayMessage:
        self._transition(ConversationState.FINALIZING)

        final = self._assistant_message(
            f"{placeholder_id}-final",
            "".join(deltas) if deltas else response.answer,
            sources=sources_from_response(response),
        )
        self._placeholder_id = None
        if response.conversation_id:
            self.conversation_id = response.conversation_id
        self.follow_ups = list(response.follow_ups)

        self._replace_message(placeholder_id, final)
        self._notify("follow_ups", self.follow_ups)
        self._transition(ConversationState.IDLE)
        return final

    def _fail(self, placeholder_id: str) -> DisplayMessage:
        self._transition(ConversationState.FAILED)

        failure = self._assistant_message(f"{placeholder_id}-error", FAILURE_MESSAGE)
        self._placeholder_id = None
        self._replace_message(placeholder_id, failure)
        self._transition(ConversationState.IDLE)
        return failure

    async def restore(self) -> List[DisplayMessage]:
        """
        Load persisted turns once per machine

        A failed fetch leaves the conversation as it is.
        """
        if self._restored or not self.job_id:
            return self.messages
        self._restored = True

        try:
            history = await self.client.get_conversation(self.job_id, self.conversation_id)
        except Exception as e:
            logger.warning("Conversation restore failed", job_id=self.job_id, error=str(e))
            return self.messages

        if history.conversation_id and not self.conversation_id:
            self.conversation_id = history.conversation_id

        restored = []
        for index, turn in enumerate(history.messages):
            message_id = f"history-{index}-{turn.created_at}"
            if turn.role == "assistant":
                restored.append(self._assistant_message(
                    message_id, turn.content, sources=sources_from_metadata(turn.metadata_json)
                ))
            else:
                restored.append(self._user_message(message_id, turn.content))

        self.messages = restored + self.messages
        self._notify("messages")
        return self.messages
