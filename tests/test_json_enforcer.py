from typing import List

from pydantic import BaseModel

from research_agent.llm.base import CompletionResponse
from research_agent.llm.json_enforcer import (
    ParseError,
    ParseOk,
    extract_text,
    find_json_span,
    iter_json_spans,
    parse_bullets,
    parse_json,
    parse_model,
    parse_model_list,
    parse_string_list,
)
from research_agent.llm.schemas import ExtractedFact, ReasoningOptionPayload, ReflectionSynthesis


class SamplePayload(BaseModel):
    foo: int


def test_find_json_span_skips_prose_and_nested_brackets():
    text = 'Sure! Here it is: {"a": [1, {"b": 2}], "c": "x"} and then more {"d": 1}'
    assert find_json_span(text) == '{"a": [1, {"b": 2}], "c": "x"}'


def test_find_json_span_ignores_brackets_inside_strings():
    text = 'prefix ["close ] and open { inside", "escaped \\" quote ]"] suffix'
    assert find_json_span(text) == '["close ] and open { inside", "escaped \\" quote ]"]'


def test_find_json_span_unbalanced_returns_none():
    assert find_json_span('{"a": [1, 2}') is None
    assert find_json_span("no json here") is None


def test_scan_resumes_after_bracketed_prose():
    assert find_json_span('Plan [draft]: {"options": []}') == '{"options": []}'
    assert find_json_span('See [1 and {"a": 1}') == '{"a": 1}'
    assert [v for _, v in iter_json_spans('[x] {"a": [1]} then [2]')] == [{"a": [1]}, [2]]


def test_parsers_take_first_value_of_the_expected_shape():
    text = 'Sources [1] show: {"foo": 4, "items": ["a"]}'
    assert parse_json(text) == ParseOk([1])
    model = parse_model(text, SamplePayload)
    assert isinstance(model, ParseOk) and model.value.foo == 4
    assert parse_string_list(text, key="items") == ParseOk(["a"])
    assert parse_string_list(text) == ParseOk(["1"])


def test_parse_json_is_tagged():
    assert parse_json('```json\n{"foo": 1}\n```') == ParseOk({"foo": 1})
    result = parse_json("not json")
    assert isinstance(result, ParseError)


def test_parse_model_validates_schema():
    ok = parse_model('{"foo": 3}', SamplePayload)
    assert isinstance(ok, ParseOk) and ok.value.foo == 3
    bad = parse_model('{"foo": "three"}', SamplePayload)
    assert isinstance(bad, ParseError)
    assert "SamplePayload" in bad.reason


def test_parse_model_list_drops_invalid_items():
    text = '[{"content": "Water boils at 100C", "category": "Physics", "confidence": 1.7}, {"category": "x"}]'
    result = parse_model_list(text, ExtractedFact)
    assert isinstance(result, ParseOk)
    facts: List[ExtractedFact] = result.value
    assert len(facts) == 1
    assert facts[0].category == "physics"
    assert facts[0].confidence == 1.0


def test_parse_model_list_accepts_wrapped_array():
    text = '{"options": [{"action": "web_search", "estimatedCost": 42, "confidence": 0.8}]}'
    result = parse_model_list(text, ReasoningOptionPayload, key="options")
    assert isinstance(result, ParseOk)
    assert result.value[0].estimated_cost == 10.0
    assert isinstance(parse_model_list('{"other": 1}', ReasoningOptionPayload, key="options"), ParseError)


def test_camel_case_and_snake_case_both_accepted():
    camel = parse_model('{"nextFocus": "x", "shouldReplan": true}', ReflectionSynthesis)
    snake = parse_model('{"next_focus": "x", "should_replan": true}', ReflectionSynthesis)
    assert isinstance(camel, ParseOk) and isinstance(snake, ParseOk)
    assert camel.value == snake.value


def test_parse_string_list_and_bullets():
    assert parse_string_list('["a", " b ", ""]') == ParseOk(["a", "b"])
    assert parse_bullets("intro\n- first\n* second\n2. third\nplain") == ["first", "second", "third"]


def test_extract_text_handles_response_and_str():
    assert extract_text(CompletionResponse(text="hi")) == "hi"
    assert extract_text("raw") == "raw"
    assert extract_text(None) == ""
