"""
Conversation persistence: in-memory and Redis-backed stores
"""
import hashlib
import json
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional

import redis.asyncio as aioredis
import structlog
from pydantic import BaseModel, Field

from field_copilot.services.config import Settings

logger = structlog.get_logger()

KEY_PREFIX = "field-copilot"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class ConversationRecord(BaseModel):
    """Ownership of one conversation"""
    id: str
    tenant_id: str
    job_id: str
    user_id: str
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)


class StoredMessage(BaseModel):
    """One persisted conversation turn"""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    conversation_id: str
    tenant_id: str
    job_id: str
    user_id: str
    role: Literal["user", "assistant"]
    content: str
    source: str = "app"
    model: Optional[str] = None
    prompt_version: Optional[str] = None
    metadata_json: Optional[str] = None
    content_hash: str = ""
    created_at: str = Field(default_factory=utc_now_iso)

    @classmethod
    def create(cls, **fields) -> "StoredMessage":
        message = cls(**fields)
        message.content_hash = content_hash(message.content)
        return message


class ConversationStore(ABC):
    """Storage for conversations and their turns"""

    @abstractmethod
    async def find_latest(self, tenant_id: str, job_id: str, user_id: str) -> Optional[ConversationRecord]:
        ...

    @abstractmethod
    async def get(self, tenant_id: str, conversation_id: str) -> Optional[ConversationRecord]:
        ...

    @abstractmethod
    async def ensure(self, record: ConversationRecord) -> None:
        ...

    @abstractmethod
    async def touch(self, conversation_id: str) -> None:
        ...

    @abstractmethod
    async def append_message(self, message: StoredMessage) -> None:
        ...

    @abstractmethod
    async def list_messages(self, conversation_id: str, limit: Optional[int] = None) -> List[StoredMessage]:
        """Return turns in chronological order; with ``limit``, only the most recent ones"""

    async def initialize(self):
        return None

    async def close(self):
        return None

    async def ping(self) -> bool:
        return True


class InMemoryConversationStore(ConversationStore):
    """Process-local store, used when Redis is not configured"""

    def __init__(self):
        self.conversations: Dict[str, ConversationRecord] = {}
        self.messages: Dict[str, List[StoredMessage]] = {}

    async def find_latest(self, tenant_id: str, job_id: str, user_id: str) -> Optional[ConversationRecord]:
        matches = [
            record for record in self.conversations.values()
            if (record.tenant_id, record.job_id, record.user_id) == (tenant_id, job_id, user_id)
        ]
        if not matches:
            return None
        return max(matches, key=lambda record: record.updated_at)

    async def get(self, tenant_id: str, conversation_id: str) -> Optional[ConversationRecord]:
        record = self.conversations.get(conversation_id)
        if record is None or record.tenant_id != tenant_id:
            return None
        return record

    async def ensure(self, record: ConversationRecord) -> None:
        self.conversations.setdefault(record.id, record)
        self.messages.setdefault(record.id, [])

    async def touch(self, conversation_id: str) -> None:
        record = self.conversations.get(conversation_id)
        if record is None:
            raise KeyError(f"Touch failed: conversation {conversation_id} not found")
        record.updated_at = utc_now_iso()

    async def append_message(self, message: StoredMessage) -> None:
        self.messages.setdefault(message.conversation_id, []).append(message)

    async def list_messages(self, conversation_id: str, limit: Optional[int] = None) -> List[StoredMessage]:
        messages = list(self.messages.get(conversation_id, []))
        if limit is None:
            return messages
        return messages[-limit:] if limit > 0 else []


class RedisConversationStore(ConversationStore):
    """Conversations stored in Redis hashes and lists"""

    def __init__(self, settings: Settings, redis_client: Optional[aioredis.Redis] = None):
        self.settings = settings
        self.redis_client = redis_client

    async def initialize(self):
        """Initialize Redis connection"""
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.settings.get_redis_url(),
                encoding="utf-8",
                decode_responses=True
            )
        try:
            await self.redis_client.ping()
            logger.info("Redis connection established")
        except Exception as e:
            logger.error("Failed to connect to Redis", error=str(e))
            raise

    async def close(self):
        """Close Redis connection"""
        if self.redis_client:
            await self.redis_client.aclose()
            logger.info("Redis connection closed")

    async def ping(self) -> bool:
        """Test Redis connection"""
        try:
            await self.redis_client.ping()
            return True
        except Exception:
            return False

    @staticmethod
    def _conversation_key(conversation_id: str) -> str:
        return f"{KEY_PREFIX}:conversation:{conversation_id}"

    @staticmethod
    def _messages_key(conversation_id: str) -> str:
        return f"{KEY_PREFIX}:conversation:{conversation_id}:messages"

    @staticmethod
    def _latest_key(tenant_id: str, job_id: str, user_id: str) -> str:
        return f"{KEY_PREFIX}:latest:{tenant_id}:{job_id}:{user_id}"

    async def _load(self, conversation_id: str) -> Optional[ConversationRecord]:
        data = await self.redis_client.hgetall(self._conversation_key(conversation_id))
        if not data:
            return None
        return ConversationRecord.model_validate(data)

    async def find_latest(self, tenant_id: str, job_id: str, user_id: str) -> Optional[ConversationRecord]:
        """
        Get the most recently used conversation of a user on a job

        Args:
            tenant_id: Tenant owning the job
            job_id: Job the conversation is about
            user_id: Technician who owns the conversation

        Returns:
            The conversation record, or None if there is none
        """
        conversation_id = await self.redis_client.get(self._latest_key(tenant_id, job_id, user_id))
        if not conversation_id:
            return None
        return await self._load(conversation_id)

    async def get(self, tenant_id: str, conversation_id: str) -> Optional[ConversationRecord]:
        record = await self._load(conversation_id)
        if record is None or record.tenant_id != tenant_id:
            return None
        return record

    async def ensure(self, record: ConversationRecord) -> None:
        """
        Create the conversation if it does not exist yet

        Args:
            record: Conversation ownership record
        """
        key = self._conversation_key(record.id)
        created = await self.redis_client.hsetnx(key, "id", record.id)
        if created:
            await self.redis_client.hset(key, mapping=record.model_dump())
            await self.redis_client.set(
                self._latest_key(record.tenant_id, record.job_id, record.user_id),
                record.id
            )
            logger.info("Conversation created", conversation_id=record.id, job_id=record.job_id)

    async def touch(self, conversation_id: str) -> None:
        record = await self._load(conversation_id)
        if record is None:
            raise KeyError(f"Touch failed: conversation {conversation_id} not found")
        await self.redis_client.hset(self._conversation_key(conversation_id), "updated_at", utc_now_iso())
        await self.redis_client.set(
            self._latest_key(record.tenant_id, record.job_id, record.user_id),
            conversation_id
        )

    async def append_message(self, message: StoredMessage) -> None:
        await self.redis_client.rpush(
            self._messages_key(message.conversation_id),
            message.model_dump_json()
        )

    async def list_messages(self, conversation_id: str, limit: Optional[int] = None) -> List[StoredMessage]:
        if limit is not None and limit <= 0:
            return []
        start = -limit if limit is not None else 0
        rows = await self.redis_client.lrange(self._messages_key(conversation_id), start, -1)
        return [StoredMessage.model_validate(json.loads(row)) for row in rows]


def create_store(settings: Settings) -> ConversationStore:
    """Pick the store backend from settings"""
    if settings.REDIS_HOST:
        return RedisConversationStore(settings)
    logger.info("REDIS_HOST not set, keeping conversations in memory")
    return InMemoryConversationStore()
