"""Tests for the offline responder."""

import pytest

from field_copilot.client.mock import (
    CAPABILITY_ANSWER,
    CAPABILITY_FOLLOW_UPS,
    NOISE_ANSWER,
    build_mock_response,
    mock_deltas,
)


@pytest.mark.parametrize("message", [
    "System rattling loudly",
    "Is there a RATTLE in the return?",
    "Customer hears a noise at startup",
])
def test_noise_questions_cite_demo_note(message):
    response = build_mock_response(message)

    assert response.answer == NOISE_ANSWER
    assert len(response.citations) == 1
    assert response.citations[0].doc_id == "note_demo_1"
    assert response.citations[0].type == "note"
    assert response.follow_ups == ["Any parts replaced last visit?", "Show recent maintenance notes"]


@pytest.mark.parametrize("message", ["What's the weather", "", "  "])
def test_other_questions_get_capability_answer(message):
    response = build_mock_response(message)

    assert response.answer == CAPABILITY_ANSWER
    assert response.citations == []
    assert response.follow_ups == CAPABILITY_FOLLOW_UPS
    assert len(response.follow_ups) == 2


def test_deterministic_and_unshared():
    first = build_mock_response("noise")
    first.follow_ups.append("mutated")
    first.citations[0].snippet = "mutated"

    second = build_mock_response("noise")

    assert "mutated" not in second.follow_ups
    assert second.citations[0].snippet != "mutated"
    assert build_mock_response("What's the weather") == build_mock_response("What's the weather")


def test_mock_deltas_rebuild_answer():
    deltas = mock_deltas(NOISE_ANSWER)
    assert "".join(deltas) == NOISE_ANSWER
    assert deltas[0] == "Yes,"
    assert deltas[1] == " the"
