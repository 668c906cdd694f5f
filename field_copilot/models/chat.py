"""
Data models for copilot chat functionality
"""
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


ChatRole = Literal["system", "user", "assistant"]
RetrievalMode = Literal["vector", "keyword", "hybrid"]


class ChatMessage(BaseModel):
    """Role-tagged prompt message"""
    model_config = ConfigDict(frozen=True)

    role: ChatRole
    content: str


class ModelSettings(BaseModel):
    """Model invocation parameters"""
    name: str = "gpt-4o"
    temperature: float = 0.2
    top_p: Optional[float] = None
    max_tokens: Optional[int] = None
    response_format: Literal["json_object"] = "json_object"


class RetrievalSettings(BaseModel):
    """Retrieval parameters passed through to the context source"""
    mode: RetrievalMode = "vector"
    top_k: int = 6
    fallback_top_k: int = 10
    history_limit: int = 25


class PromptSettings(BaseModel):
    """Prompt template selection"""
    version: str = "copilot.v1"


class CopilotConfig(BaseModel):
    """Per-request copilot configuration"""
    model: ModelSettings = Field(default_factory=ModelSettings)
    retrieval: RetrievalSettings = Field(default_factory=RetrievalSettings)
    prompt: PromptSettings = Field(default_factory=PromptSettings)


class CopilotRequest(BaseModel):
    """One orchestration attempt"""
    request_id: str
    context: Dict[str, Any] = Field(default_factory=dict)
    evidence_text: str = ""
    history: List[ChatMessage] = Field(default_factory=list)
    user_input: str
    config: CopilotConfig = Field(default_factory=CopilotConfig)


class CompletionRequest(BaseModel):
    """Backend-neutral completion call"""
    model: str
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    max_tokens: Optional[int] = None
    response_format: Optional[Literal["json_object"]] = None
    messages: List[ChatMessage]


class ModelCompletion(BaseModel):
    """Raw, untrusted completion text"""
    content: str
    usage: Optional[Dict[str, Any]] = None


class ParsedResponse(BaseModel):
    """Structured answer extracted from model output"""
    answer: str = ""
    citations: List[Dict[str, Any]] = Field(default_factory=list)
    follow_ups: List[str] = Field(default_factory=list)


class Citation(BaseModel):
    """Source reference attached to an answer"""
    model_config = ConfigDict(extra="allow")

    doc_id: Optional[str] = None
    date: Optional[str] = None
    type: Optional[str] = None
    snippet: Optional[str] = None
    author_name: Optional[str] = None
    author_email: Optional[str] = None


class Evidence(BaseModel):
    """Evidence record, richer than a citation"""
    model_config = ConfigDict(extra="allow")

    doc_id: Optional[str] = None
    date: Optional[str] = None
    type: Optional[str] = None
    scope: Optional[str] = None
    text: Optional[str] = None
    author_name: Optional[str] = None
    author_email: Optional[str] = None


class EvidenceItem(BaseModel):
    """Evidence as supplied by the job context source"""
    doc_id: str
    type: str
    scope: str = "job"
    date: str = ""
    text: str
    author_name: Optional[str] = None
    author_email: Optional[str] = None


class ChatRequestBody(BaseModel):
    """Body of POST /jobs/{job_id}/ai/chat"""
    model_config = ConfigDict(populate_by_name=True)

    message: str = Field(default="", description="Technician's question")
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    stream: bool = Field(default=False, description="Enable SSE streaming")


class ChatResponse(BaseModel):
    """Success body of the chat endpoint, also the terminal stream payload"""
    conversation_id: Optional[str] = None
    answer: str
    citations: List[Citation] = Field(default_factory=list)
    follow_ups: List[str] = Field(default_factory=list)
    evidence: Optional[List[Evidence]] = None


class ConversationTurn(BaseModel):
    """Persisted conversation turn as returned by the history endpoint"""
    role: str
    content: str
    created_at: str = ""
    metadata_json: Optional[str] = None


class ConversationHistory(BaseModel):
    """Body of GET /jobs/{job_id}/ai/conversation"""
    conversation_id: Optional[str] = None
    messages: List[ConversationTurn] = Field(default_factory=list)
