"""
Evidence formatting for prompts and citation normalization for responses
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from field_copilot.models.chat import EvidenceItem

SNIPPET_LENGTH = 240
EMPTY_ANSWER = "Information not available in the job history."

_SECTIONS = [
    ("Job Notes", "job", "note"),
    ("Job Events", "job", "job_event"),
    ("Property Notes", "property", "note"),
    ("Property Events", "property", "job_event"),
    ("Client Notes", "client", "note"),
]


def format_timestamp(value: Optional[str]) -> str:
    """Format an ISO timestamp as 'YYYY-MM-DD HH:MM UTC', or '' if unparsable"""
    if not value:
        return ""
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return ""
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


def format_evidence_section(title: str, items: Sequence[EvidenceItem]) -> str:
    if not items:
        return ""
    lines = []
    for item in items:
        stamp = format_timestamp(item.date)
        prefix = f"[{stamp}] " if stamp else ""
        lines.append(f"- {prefix}{item.text}")
    return f"{title}:\n" + "\n".join(lines)


def format_evidence_for_prompt(
    evidence: Sequence[EvidenceItem],
    vector_evidence: Sequence[EvidenceItem] = ()
) -> str:
    """Render evidence as labeled sections for the context system message"""
    sections = [
        format_evidence_section(
            title,
            [item for item in evidence if item.scope == scope and item.type == kind]
        )
        for title, scope, kind in _SECTIONS
    ]
    sections.append(format_evidence_section("Related Vector Matches", vector_evidence))
    return "\n\n".join(section for section in sections if section)


def evidence_to_citations(evidence: Sequence[EvidenceItem]) -> List[Dict[str, Any]]:
    """Derive citation records from evidence items"""
    return [
        {
            "doc_id": item.doc_id,
            "date": item.date or None,
            "type": item.type,
            "snippet": item.text[:SNIPPET_LENGTH],
            "author_name": item.author_name,
            "author_email": item.author_email,
        }
        for item in evidence
    ]


def _is_complete_citation(citation: Any) -> bool:
    return (
        isinstance(citation, dict)
        and isinstance(citation.get("doc_id"), str)
        and isinstance(citation.get("snippet"), str)
        and isinstance(citation.get("type"), str)
    )


def normalize_citations(
    citations: Sequence[Dict[str, Any]],
    evidence: Sequence[EvidenceItem]
) -> List[Dict[str, Any]]:
    """
    Reconcile model citations with the evidence that was supplied.

    Model citations are kept only when every one of them names a doc_id,
    snippet and type; each is merged over the matching evidence record so
    provenance (date, author) is filled in. Otherwise the evidence itself
    becomes the citation list.
    """
    evidence_citations = evidence_to_citations(evidence)
    if not citations or not all(_is_complete_citation(c) for c in citations):
        return evidence_citations

    by_id = {item["doc_id"]: item for item in evidence_citations}
    return [{**by_id.get(citation["doc_id"], {}), **citation} for citation in citations]


def evidence_payload(evidence: Sequence[EvidenceItem]) -> List[Dict[str, Any]]:
    """Evidence as sent back to clients"""
    return [
        {
            "doc_id": item.doc_id,
            "date": item.date or None,
            "type": item.type,
            "scope": item.scope,
            "text": item.text,
            "author_name": item.author_name,
            "author_email": item.author_email,
        }
        for item in evidence
    ]


def final_answer(answer: str) -> str:
    return answer if answer.strip() else EMPTY_ANSWER
