"""Tests for incremental answer extraction from a streamed JSON completion."""

import json

from field_copilot.services.streaming import AnswerDeltaExtractor


def feed_all(fragments):
    extractor = AnswerDeltaExtractor()
    deltas = [extractor.feed(fragment) for fragment in fragments]
    return extractor, deltas


def test_escape_split_across_fragments():
    fragments = ['{"ans', 'wer": "Line one\\', 'nLine \\u00e9', 't\\u00e9 done", "citations": []}']

    extractor, deltas = feed_all(fragments)

    assert deltas == ["", "Line one", "\nLine é", "té done"]
    assert extractor.text == "Line one\nLine été done"
    assert extractor.state == AnswerDeltaExtractor.DONE


def test_surrogate_pair_one_char_at_a_time():
    content = '{"answer": "fan \\ud83d\\ude00 ok"}'

    extractor, _ = feed_all(list(content))

    assert extractor.text == "fan \U0001F600 ok"


def test_matches_json_decoding():
    answer = 'Tab\there, slash \\ and "quotes" / ünïcode'
    content = json.dumps({"answer": answer})

    extractor, _ = feed_all([content[i:i + 4] for i in range(0, len(content), 4)])

    assert extractor.text == answer


def test_no_answer_key():
    extractor, deltas = feed_all(['{"citations": [', "]}"])
    assert deltas == ["", ""]
    assert extractor.text == ""
    assert extractor.state == AnswerDeltaExtractor.SEEKING


def test_ignores_input_after_answer_closes():
    extractor = AnswerDeltaExtractor()
    assert extractor.feed('{"answer": "done"') == "done"
    assert extractor.feed(', "follow_ups": ["answer": "again"]}') == ""
    assert extractor.text == "done"
