"""
Error taxonomy for the copilot pipeline
"""
from typing import Optional


class CopilotError(Exception):
    """Base class for all copilot errors"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigError(CopilotError):
    """No model backend (or no API URL on the client) is configured"""


class ParseError(CopilotError):
    """Model output has no extractable structured answer"""


class ModelInvocationError(CopilotError):
    """Transport or backend failure while invoking the model or the API"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class StreamIncomplete(CopilotError):
    """Stream ended without a terminal payload"""

    def __init__(self, message: str = "Streaming response incomplete"):
        super().__init__(message)


class MalformedChunk(CopilotError, ValueError):
    """A single streaming record could not be decoded"""


class JobNotFoundError(CopilotError):
    """Requested job is unknown to the context source"""


class ConversationMismatchError(CopilotError):
    """Conversation exists but belongs to a different job"""
