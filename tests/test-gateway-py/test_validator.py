import json

import pytest

from aicore_gateway.config import GatewaySettings
from aicore_gateway.proxy.streaming import StreamChunk, Usage
from aicore_gateway.proxy.translator import ParsedResponse
from aicore_gateway.proxy.validator import (
    BUSY_TEXT,
    DELTA_NOT_STRING,
    EMPTY_OR_INVALID_TEXT,
    ERROR_TEXT,
    FAMILY_APOLOGY_TEXT,
    INVALID_CHARACTERS,
    INVALID_CHUNK_STRUCTURE,
    INVALID_USAGE,
    MALFORMED_JSON,
    MISSING_DELTA,
    REASONING_ONLY,
    TIMEOUT_TEXT,
    USAGE_ON_NON_TERMINAL,
    WHITESPACE_ONLY,
    ResponseLogWriter,
    ResponseValidator,
)


@pytest.fixture
def validator():
    return ResponseValidator(GatewaySettings())


def test_empty_string_is_corrected_to_non_empty_text(validator):
    result = validator.validate_and_correct_response("", "anthropic--claude-4-sonnet")

    assert result.was_corrected is True
    assert result.is_valid is False
    assert EMPTY_OR_INVALID_TEXT in result.issues
    assert result.corrected_response is not None
    assert result.corrected_response.text.strip()
    assert result.final_response is result.corrected_response


def test_clean_response_passes_through_unchanged(validator):
    response = ParsedResponse(text="Paris is the capital of France.", usage=Usage(3, 7, 10))
    result = validator.validate_and_correct_response(response, "gpt-4o", "capital of France?")

    assert result.is_valid is True
    assert result.was_corrected is False
    assert result.final_response.text == "Paris is the capital of France."
    assert result.final_response.usage == Usage(3, 7, 10)


def test_whitespace_only_text_uses_family_fallback(validator):
    result = validator.validate_and_correct_response(ParsedResponse(text="   \n"), "gpt-4o")

    assert WHITESPACE_ONLY in result.issues
    assert result.final_response.text == FAMILY_APOLOGY_TEXT


def test_unknown_model_fallback_names_the_model(validator):
    result = validator.validate_and_correct_response(ParsedResponse(text=""), "acme-large")
    assert "acme-large" in result.final_response.text


@pytest.mark.parametrize(
    "raw,expected",
    [
        ({"status": "timeout"}, TIMEOUT_TEXT),
        ({"error": {"message": "Request timed out"}}, TIMEOUT_TEXT),
        ({"error": "model at capacity"}, BUSY_TEXT),
        ({"error": "unexpected failure"}, ERROR_TEXT),
        ({"output": "recovered from output"}, "recovered from output"),
    ],
)
def test_fallback_text_from_error_signatures(validator, raw, expected):
    result = validator.validate_and_correct_response(raw, "custom-model")
    assert result.final_response.text == expected


def test_malformed_json_is_repaired(validator):
    result = validator.validate_and_correct_response(
        ParsedResponse(text="{'answer': 'yes', 'count': 2,}"), "gpt-4o"
    )

    assert MALFORMED_JSON in result.issues
    assert json.loads(result.final_response.text) == {"answer": "yes", "count": 2}


def test_unrepairable_json_extracts_text_field(validator):
    result = validator.validate_and_correct_response(
        ParsedResponse(text='{"text": "inner value", broken'+"}"), "gpt-4o"
    )
    assert MALFORMED_JSON in result.issues
    assert result.final_response.text == "inner value"


def test_bracketed_prose_is_not_treated_as_json(validator):
    text = "[Image content - format not supported] but the chart shows growth."
    result = validator.validate_and_correct_response(ParsedResponse(text=text), "gpt-4o")
    assert MALFORMED_JSON not in result.issues
    assert result.final_response.text == text


def test_thinking_only_response_is_rewritten(validator):
    result = validator.validate_and_correct_response(
        ParsedResponse(text="<thinking>The user wants a haiku.</thinking>"), "claude"
    )

    assert REASONING_ONLY in result.issues
    assert "The user wants a haiku." in result.final_response.text
    assert "<thinking>" not in result.final_response.text


def test_reasoning_prefix_single_paragraph_is_rewritten(validator):
    result = validator.validate_and_correct_response(
        ParsedResponse(text="Let me think about which file to open."), "gpt-4o"
    )
    assert REASONING_ONLY in result.issues


def test_reasoning_prefix_with_answer_paragraph_is_kept(validator):
    text = "Let me explain.\n\nThe answer is 42."
    result = validator.validate_and_correct_response(ParsedResponse(text=text), "gpt-4o")
    assert REASONING_ONLY not in result.issues
    assert result.final_response.text == text


@pytest.mark.parametrize(
    "raw",
    [None, 42, [], {"unexpected": object()}, ParsedResponse(text="", success=False)],
)
def test_validator_never_raises_and_returns_text(validator, raw):
    result = validator.validate_and_correct_response(raw, "gpt-4o")
    assert isinstance(result.final_response.text, str)
    assert result.final_response.text.strip()


def test_valid_chunk_is_untouched(validator):
    chunk = StreamChunk(delta_text="Hello")
    result = validator.validate_stream_chunk(chunk, "gpt-4o")

    assert result.is_valid is True
    assert result.final_chunk is chunk


def test_chunk_usage_on_non_terminal_is_stripped(validator):
    result = validator.validate_stream_chunk(
        StreamChunk(delta_text="Hi", usage=Usage(1, 1, 2)), "gpt-4o"
    )
    assert USAGE_ON_NON_TERMINAL in result.issues
    assert result.final_chunk.usage is None
    assert result.final_chunk.delta_text == "Hi"


def test_chunk_control_characters_are_removed(validator):
    result = validator.validate_stream_chunk(StreamChunk(delta_text="a\x00b\x07c"), "gpt-4o")
    assert INVALID_CHARACTERS in result.issues
    assert result.final_chunk.delta_text == "abc"


@pytest.mark.parametrize(
    "chunk,issue",
    [
        ("not a chunk", INVALID_CHUNK_STRUCTURE),
        ({"finished": False}, MISSING_DELTA),
        ({"delta": 12, "finished": False}, DELTA_NOT_STRING),
    ],
)
def test_malformed_chunks_are_normalized(validator, chunk, issue):
    result = validator.validate_stream_chunk(chunk, "gpt-4o")
    assert issue in result.issues
    assert isinstance(result.final_chunk, StreamChunk)
    assert isinstance(result.final_chunk.delta_text, str)


def test_validator_tolerates_non_finite_usage(validator):
    raw = json.loads('{"text": "ok", "usage": {"prompt_tokens": Infinity, "completion_tokens": 3}}')
    result = validator.validate_and_correct_response(raw, "gpt-4o")

    assert result.final_response.text == "ok"
    assert result.final_response.usage == Usage(0, 3, 3)


def test_validator_tolerates_deeply_nested_json_text(validator):
    deep = "[" * 100_000 + "]" * 100_000
    result = validator.validate_and_correct_response({"text": deep}, "gpt-4o")

    assert isinstance(result.final_response.text, str)
    assert result.final_response.text.strip()


def test_chunk_usage_that_is_not_a_mapping_is_dropped(validator):
    result = validator.validate_stream_chunk({"delta_text": "", "finished": True, "usage": 5}, "gpt-4o")

    assert INVALID_USAGE in result.issues
    assert result.final_chunk.usage is None
    assert result.final_chunk.finished is True


def test_terminal_chunk_keeps_usage(validator):
    result = validator.validate_stream_chunk(
        {"delta_text": "", "finished": True, "usage": {"prompt_tokens": 2, "completion_tokens": 3}},
        "gpt-4o",
    )
    assert result.final_chunk.finished is True
    assert result.final_chunk.usage == Usage(2, 3, 5)


def test_log_writer_appends_json_lines_when_issues(tmp_path):
    log_file = tmp_path / "logs" / "analysis.jsonl"
    writer = ResponseLogWriter(enabled=True, log_all=False, log_file=str(log_file))
    validator = ResponseValidator(GatewaySettings(), log_writer=writer)

    validator.validate_and_correct_response("", "gpt-4o", "why?")
    validator.validate_and_correct_response(ParsedResponse(text="fine answer"), "gpt-4o")

    lines = log_file.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    entry = json.loads(lines[0])
    assert entry["model"] == "gpt-4o"
    assert entry["request_type"] == "non-streaming"
    assert entry["corrected"] is True
    assert entry["prompt"] == "why?"
    assert EMPTY_OR_INVALID_TEXT in entry["issues"]


def test_log_writer_disabled_by_default(tmp_path):
    writer = ResponseLogWriter.from_settings(GatewaySettings(response_log_file=str(tmp_path / "x.jsonl")))
    assert writer.should_log(["anything"]) is False
