"""Tests for evidence formatting and citation normalization."""

import pytest

from field_copilot.models.chat import EvidenceItem
from field_copilot.services.evidence import (
    EMPTY_ANSWER,
    SNIPPET_LENGTH,
    evidence_payload,
    evidence_to_citations,
    final_answer,
    format_evidence_for_prompt,
    format_timestamp,
    normalize_citations,
)


@pytest.mark.parametrize("value, expected", [
    ("2024-11-12T17:40:00Z", "2024-11-12 17:40 UTC"),
    ("2024-11-12T12:40:00-05:00", "2024-11-12 17:40 UTC"),
    ("2024-11-12T17:40:00", "2024-11-12 17:40 UTC"),
    ("", ""),
    (None, ""),
    ("last tuesday", ""),
])
def test_format_timestamp(value, expected):
    assert format_timestamp(value) == expected


def test_sections_in_order(evidence_items):
    client_note = EvidenceItem(doc_id="c1", type="note", scope="client", text="Prefers mornings.")
    vector_match = EvidenceItem(doc_id="v1", type="note", text="Similar rattle on unit 4.")

    text = format_evidence_for_prompt([client_note, *evidence_items], [vector_match])

    assert text == (
        "Job Notes:\n- [2024-11-12 17:40 UTC] Tightened blower mount, rattle resolved."
        "\n\nProperty Events:\n- [2024-10-01 09:00 UTC] Filter replaced during seasonal maintenance."
        "\n\nClient Notes:\n- Prefers mornings."
        "\n\nRelated Vector Matches:\n- Similar rattle on unit 4."
    )


def test_no_evidence_gives_empty_text():
    assert format_evidence_for_prompt([]) == ""


def test_complete_citations_are_merged_with_evidence(evidence_items):
    citations = [{"doc_id": "note_1", "snippet": "Tightened blower mount", "type": "note"}]

    result = normalize_citations(citations, evidence_items)

    assert result == [{
        "doc_id": "note_1",
        "date": "2024-11-12T17:40:00Z",
        "type": "note",
        "snippet": "Tightened blower mount",
        "author_name": "Sam Rivera",
        "author_email": "sam@example.com",
    }]


def test_unknown_doc_id_kept_as_given(evidence_items):
    citations = [{"doc_id": "other", "snippet": "From elsewhere", "type": "note"}]
    assert normalize_citations(citations, evidence_items) == citations


@pytest.mark.parametrize("citations", [
    [],
    [{"doc_id": "note_1", "type": "note"}],
    [{"doc_id": "note_1", "snippet": "ok", "type": "note"}, {"snippet": "missing id"}],
])
def test_incomplete_citations_fall_back_to_evidence(citations, evidence_items):
    result = normalize_citations(citations, evidence_items)
    assert [item["doc_id"] for item in result] == ["note_1", "event_1"]
    assert result == evidence_to_citations(evidence_items)


def test_evidence_snippets_are_truncated():
    item = EvidenceItem(doc_id="long", type="note", text="x" * 1000)
    assert len(evidence_to_citations([item])[0]["snippet"]) == SNIPPET_LENGTH


def test_evidence_payload_carries_full_text(evidence_items):
    payload = evidence_payload(evidence_items)
    assert payload[1] == {
        "doc_id": "event_1",
        "date": "2024-10-01T09:00:00Z",
        "type": "job_event",
        "scope": "property",
        "text": "Filter replaced during seasonal maintenance.",
        "author_name": None,
        "author_email": None,
    }


def test_final_answer():
    assert final_answer("Filter replaced.") == "Filter replaced."
    assert final_answer("   ") == EMPTY_ANSWER
