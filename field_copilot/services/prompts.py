"""
Versioned prompt templates and prompt assembly
"""
import json
from typing import Any, Dict, List, Sequence

from field_copilot.models.chat import ChatMessage


BASELINE_PROMPT_VERSION = "copilot.v1"

PROMPT_VERSIONS: Dict[str, str] = {
    "copilot.v0": " ".join([
        "You are HVACOps Copilot helping a technician on a specific job.",
        "Only answer using the provided structured context.",
        "If you do not see evidence, say you do not see it in the job history.",
        "Be concise and field-oriented.",
        "Citations must reference the provided evidence with doc_id, date, type, snippet.",
        "Return ONLY raw JSON with keys: answer, citations, follow_ups.",
    ]),
    "copilot.v1": " ".join([
        "You are HVACOps Copilot helping a technician on a specific job.",
        "Only answer using the provided structured context.",
        "If evidence is provided, you MUST use it and cite it.",
        "If you do not see evidence, say you do not see it in the job history.",
        "Be concise and field-oriented.",
        "Citations must reference the provided evidence with doc_id, date, type, snippet.",
        "Return ONLY raw JSON with keys: answer, citations, follow_ups.",
    ]),
}


def resolve_prompt_version(version: str) -> str:
    """Return version if registered, otherwise the baseline version"""
    return version if version in PROMPT_VERSIONS else BASELINE_PROMPT_VERSION


def build_context_block(snapshot: Dict[str, Any], evidence_text: str) -> str:
    """Render the structured context and evidence system message"""
    snapshot_json = json.dumps(snapshot, separators=(",", ":"), ensure_ascii=False, default=str)
    return (
        f"Structured context:\n{snapshot_json}"
        f"\n\nEvidence (labeled sections):\n{evidence_text}"
    )


def build_prompt(
    version: str,
    snapshot: Dict[str, Any],
    evidence_text: str,
    history: Sequence[ChatMessage],
    user_message: str,
) -> List[ChatMessage]:
    """
    Assemble the message sequence sent to the model.

    Order is always: base instruction, context block, history verbatim,
    then the user's message. ``history`` is copied, never mutated.
    """
    instruction = PROMPT_VERSIONS[resolve_prompt_version(version)]
    return [
        ChatMessage(role="system", content=instruction),
        ChatMessage(role="system", content=build_context_block(snapshot, evidence_text)),
        *list(history),
        ChatMessage(role="user", content=user_message),
    ]
