import pytest

from vulnscope.enrichment.analysis import ANALYSIS_SCHEMA
from vulnscope.enrichment.cwe import SUMMARY_SCHEMA
from vulnscope.llm import ResponseParseError, parse_fenced_json, parse_reply


def test_fenced_summary_round_trip():
    reply = 'text ```json {"summaryEn":"a","summaryKo":"b"} ``` text'
    payload = parse_reply(reply, SUMMARY_SCHEMA)
    assert payload == {"summaryEn": "a", "summaryKo": "b"}


def test_missing_fence_is_a_parse_failure():
    with pytest.raises(ResponseParseError):
        parse_fenced_json('{"summaryEn":"a","summaryKo":"b"}')


def test_unterminated_fence_is_a_parse_failure():
    with pytest.raises(ResponseParseError):
        parse_fenced_json('```json {"summaryEn":"a"}')


def test_invalid_json_is_a_parse_failure():
    with pytest.raises(ResponseParseError):
        parse_fenced_json("```json {not json} ```")


def test_schema_violation_is_a_parse_failure():
    reply = "```json\n" + '{"analysis_summary": "x", "risk_level": 5}' + "\n```"
    with pytest.raises(ResponseParseError) as excinfo:
        parse_reply(reply, ANALYSIS_SCHEMA)
    assert "schema_violation" in str(excinfo.value)


def test_first_fenced_block_wins():
    reply = '```json\n{"a": 1}\n```\nand later\n```json\n{"a": 2}\n```'
    assert parse_fenced_json(reply) == {"a": 1}
