import pytest

from guard_rp.decision_parser import (
    JudgeDecision,
    MalformedJson,
    NoJsonFound,
    ParseError,
    parse_decision,
    strip_think_blocks,
)


def test_parse_clean_object():
    d = parse_decision('{"decision": "FAILED_RUDE", "reason": "The user was hostile"}')
    assert d == JudgeDecision(choice="FAILED_RUDE", rationale="The user was hostile")


def test_parse_after_think_block():
    raw = (
        "<think>The user refused to show their passport and was rude.</think>\n"
        '{"decision": "FAILED_RUDE", "reason": "Refused passport and was hostile"}'
    )
    d = parse_decision(raw)
    assert d.choice == "FAILED_RUDE"
    assert "hostile" in d.rationale


def test_parse_ignores_surrounding_prose():
    raw = '<think>reasoning</think>\nHere: {"decision":"PASSPORT_CHECK","reason":"Cooperated"}. Done.'
    assert parse_decision(raw) == JudgeDecision("PASSPORT_CHECK", "Cooperated")


def test_think_block_containing_json_is_discarded():
    raw = (
        '<think>\nmaybe {"decision": "FAILED", "reason": "draft"}\nno wait\n</think>'
        'Final: {"decision": "PASSPORT_CHECK", "reason": "polite"}'
    )
    assert parse_decision(raw).choice == "PASSPORT_CHECK"


def test_multiple_think_blocks_are_all_stripped():
    raw = '<think>a</think>text<think>{"x": 1}</think>{"decision": "A", "reason": "r"}'
    assert strip_think_blocks(raw) == 'text{"decision": "A", "reason": "r"}'
    assert parse_decision(raw).choice == "A"


def test_think_tag_is_case_sensitive():
    # <THINK> is not a reasoning block, so its JSON is the first object found
    raw = '<THINK>{"decision": "X", "reason": "y"}</THINK>{"decision": "A", "reason": "r"}'
    assert parse_decision(raw).choice == "X"


def test_first_object_wins():
    raw = '{"decision": "A", "reason": "one"} and {"decision": "B", "reason": "two"}'
    assert parse_decision(raw).choice == "A"


def test_extra_fields_are_ignored():
    assert parse_decision('{"decision": "A", "reason": "r", "confidence": 0.9}').choice == "A"


@pytest.mark.parametrize(
    "raw",
    [
        "",
        "I think the traveller should pass.",
        "<think>{\"decision\": \"A\", \"reason\": \"r\"}</think> no verdict",
    ],
)
def test_no_json_found(raw):
    with pytest.raises(NoJsonFound) as exc:
        parse_decision(raw)
    assert exc.value.raw == raw


@pytest.mark.parametrize(
    "raw",
    [
        '{"decision": "A"}',
        '{"reason": "r"}',
        '{"decision": 3, "reason": "r"}',
        '{"decision": "A", "reason": null}',
        "{decision: A, reason: r}",
        '{"decision": "A", "reason": {"nested": "no"}}',
    ],
)
def test_malformed_json(raw):
    with pytest.raises(MalformedJson):
        parse_decision(raw)


def test_parse_errors_share_a_base():
    assert issubclass(NoJsonFound, ParseError)
    assert issubclass(MalformedJson, ParseError)
