"""
Offline responder used when no copilot API is configured
"""
from typing import List

from field_copilot.models.chat import ChatResponse, Citation

DEMO_NOTE = Citation(
    doc_id="note_demo_1",
    date="2024-11-12T17:40:00Z",
    type="note",
    snippet=(
        "Homeowner reported intermittent rattling from the air handler. "
        "Recommended tightening blower mount at next visit."
    ),
)

NOISE_ANSWER = (
    "Yes, the notes mention intermittent rattling from the air handler. "
    "The prior tech recommended tightening the blower mount on the next visit."
)
NOISE_FOLLOW_UPS = ["Any parts replaced last visit?", "Show recent maintenance notes"]
NOISE_KEYWORDS = ("rattle", "rattling", "noise")

CAPABILITY_ANSWER = (
    "I can help with service history, equipment details, and recent notes. "
    "Ask about repeat issues, last maintenance, or technician notes."
)
CAPABILITY_FOLLOW_UPS = ["Any repeat issues?", "When was the last maintenance?"]


def build_mock_response(message: str) -> ChatResponse:
    """Deterministic canned answer chosen by case-insensitive keyword match"""
    lower = (message or "").lower()
    if any(keyword in lower for keyword in NOISE_KEYWORDS):
        return ChatResponse(
            answer=NOISE_ANSWER,
            citations=[DEMO_NOTE.model_copy()],
            follow_ups=list(NOISE_FOLLOW_UPS),
        )

    return ChatResponse(
        answer=CAPABILITY_ANSWER,
        citations=[],
        follow_ups=list(CAPABILITY_FOLLOW_UPS),
    )


def mock_deltas(answer: str) -> List[str]:
    """Split an answer into word deltas that concatenate back to it"""
    words = answer.split(" ")
    return words[:1] + [f" {word}" for word in words[1:]]
