import json

import pytest

from aicore_gateway.messages import CanonicalMessage
from aicore_gateway.model_router import ModelConfig
from aicore_gateway.proxy.errors import ConfigurationError, UpstreamTransportError
from aicore_gateway.proxy.streaming import StreamState, Usage
from aicore_gateway.proxy.translator import (
    NO_RESPONSE_TEXT,
    UNSUPPORTED_IMAGE_TEXT,
    AnthropicTranslator,
    GeminiTranslator,
    OpenAITranslator,
    VendorKind,
    create_translator,
    vendor_kind_for,
)
from aicore_gateway.proxy.translator.gemini import stream_endpoint_for

BASE = "https://aicore.example/v2/inference/deployments/d1"
PNG_URI = "data:image/png;base64,iVBORw0KGgo="


def _messages(*pairs):
    return [CanonicalMessage(role=role, content=content) for role, content in pairs]


@pytest.mark.parametrize(
    "request_format,kind",
    [
        ("anthropic_bedrock", VendorKind.ANTHROPIC),
        ("anthropic-style", VendorKind.ANTHROPIC),
        ("google_ai_studio", VendorKind.GOOGLE),
        ("gemini", VendorKind.GOOGLE),
        ("openai", VendorKind.GENERIC),
        (None, VendorKind.GENERIC),
        ("something-new", VendorKind.GENERIC),
    ],
)
def test_factory_maps_request_formats(request_format, kind):
    assert vendor_kind_for(request_format) is kind
    assert create_translator(request_format).kind is kind


def test_anthropic_single_user_message_has_no_system_field():
    config = ModelConfig(requestFormat="anthropic-style")
    request = AnthropicTranslator().build_request(BASE, config, _messages(("user", "Hi")))

    assert "system" not in request.body
    assert request.body["messages"] == [{"role": "user", "content": "Hi"}]
    assert request.body["anthropic_version"] == "bedrock-2023-05-31"
    assert request.body["max_tokens"] == 1000
    assert request.url == f"{BASE}/invoke"


def test_anthropic_joins_system_messages_and_uses_stream_endpoint():
    config = ModelConfig(anthropicVersion="custom-version", maxTokens=50)
    messages = _messages(("system", "Be brief."), ("system", "Be kind."), ("user", "Hello"))
    request = AnthropicTranslator().build_request(BASE, config, messages, stream=True)

    assert request.body["system"] == "Be brief.\n\nBe kind."
    assert [m["role"] for m in request.body["messages"]] == ["user"]
    assert request.body["anthropic_version"] == "custom-version"
    assert request.body["max_tokens"] == 50
    assert request.url.endswith("/invoke-with-response-stream")


def test_anthropic_image_parts_become_base64_blocks():
    message = CanonicalMessage(
        role="user",
        content=[
            {"type": "text", "text": "What is this?"},
            {"type": "image_url", "image_url": {"url": PNG_URI}},
            {"type": "image_url", "image_url": "https://example.com/cat.png"},
        ],
    )
    blocks = AnthropicTranslator.format_content(message)

    assert blocks[0] == {"type": "text", "text": "What is this?"}
    assert blocks[1] == {
        "type": "image",
        "source": {"type": "base64", "media_type": "image/png", "data": "iVBORw0KGgo="},
    }
    assert blocks[2] == {"type": "text", "text": UNSUPPORTED_IMAGE_TEXT}


def test_anthropic_parse_response_reads_first_text_block_and_usage():
    parsed = AnthropicTranslator().parse_response(
        {
            "content": [{"type": "text", "text": "hello there"}],
            "usage": {"input_tokens": 3, "output_tokens": 4},
        }
    )
    assert parsed.text == "hello there"
    assert parsed.usage == Usage(3, 4, 7)


def test_anthropic_parse_response_without_text_is_no_response():
    assert AnthropicTranslator().parse_response({"content": []}).text == NO_RESPONSE_TEXT


def test_anthropic_stream_events_produce_deltas_and_terminal():
    translator = AnthropicTranslator()
    state = StreamState()
    events = [
        {"type": "message_start", "message": {"usage": {"input_tokens": 9, "output_tokens": 1}}},
        {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hel"}},
        {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "lo"}},
        {"type": "message_delta", "usage": {"output_tokens": 2}},
        {"type": "message_stop"},
    ]
    chunks = [chunk for event in events for chunk in translator.parse_stream_event(event, state)]

    assert "".join(chunk.delta_text for chunk in chunks) == "Hello"
    assert [chunk.finished for chunk in chunks] == [False, False, True]
    assert chunks[-1].usage == Usage(9, 2, 11)


def test_anthropic_stream_error_event_raises():
    with pytest.raises(UpstreamTransportError):
        AnthropicTranslator().parse_stream_event(
            {"type": "error", "error": {"message": "overloaded"}}, StreamState()
        )


def test_gemini_parse_candidates_text_with_zero_usage():
    parsed = GeminiTranslator().parse_response(
        {"candidates": [{"content": {"parts": [{"text": "hello"}]}, "finishReason": "STOP"}]}
    )
    assert parsed.text == "hello"
    assert parsed.usage == Usage(0, 0, 0)


@pytest.mark.parametrize(
    "body,expected",
    [
        ({"candidates": [{"text": "from candidate"}]}, "from candidate"),
        ({"response": "direct field"}, "direct field"),
        ({"error": {"message": "quota exceeded"}}, "Error: quota exceeded"),
        ({"errors": [{"message": "bad request"}]}, "Error: bad request"),
        ({}, NO_RESPONSE_TEXT),
        ("plain text body", "plain text body"),
    ],
)
def test_gemini_parse_fallback_strategies(body, expected):
    assert GeminiTranslator().parse_response(body).text == expected


def test_gemini_request_merges_turns_into_one_user_content():
    config = ModelConfig(endpoint="/models/gemini-2.5-flash:generateContent", maxTokens=64)
    message = CanonicalMessage(
        role="user",
        content=[{"type": "text", "text": "Describe"}, {"type": "image_url", "image_url": PNG_URI}],
    )
    request = GeminiTranslator().build_request(
        BASE, config, [CanonicalMessage(role="system", content="Be terse."), message]
    )

    assert request.body["contents"]["role"] == "user"
    assert request.body["contents"]["parts"] == [
        {"text": "Be terse."},
        {"text": "Describe"},
        {"inlineData": {"mimeType": "image/png", "data": "iVBORw0KGgo="}},
    ]
    assert request.body["generationConfig"] == {"maxOutputTokens": 64, "temperature": 0.7}
    assert request.url == f"{BASE}/models/gemini-2.5-flash:generateContent"


def test_gemini_stream_url_derived_from_generate_endpoint():
    assert stream_endpoint_for("/models/x:generateContent") == "/models/x:streamGenerateContent?alt=sse"
    request = GeminiTranslator().build_request(
        BASE, ModelConfig(endpoint="/models/x:generateContent"), _messages(("user", "Hi")), stream=True
    )
    assert request.url.endswith(":streamGenerateContent?alt=sse")


def test_gemini_stream_events_record_usage_and_finish():
    translator = GeminiTranslator()
    state = StreamState()
    first = translator.parse_stream_event(
        {"candidates": [{"content": {"parts": [{"text": "Hi "}]}}]}, state
    )
    last = translator.parse_stream_event(
        {
            "candidates": [{"content": {"parts": [{"text": "there"}]}, "finishReason": "STOP"}],
            "usageMetadata": {"promptTokenCount": 2, "candidatesTokenCount": 3},
        },
        state,
    )
    assert [chunk.delta_text for chunk in first] == ["Hi "]
    assert last[0].delta_text == "there"
    assert last[-1].finished is True
    assert last[-1].usage == Usage(2, 3, 5)


def test_openai_request_passes_messages_and_stream_options():
    config = ModelConfig(endpoint="/chat/completions", temperature=0.2)
    request = OpenAITranslator().build_request(BASE, config, _messages(("user", "Hi")), stream=True)

    assert request.url == f"{BASE}/chat/completions"
    assert request.body["messages"] == [{"role": "user", "content": "Hi"}]
    assert request.body["temperature"] == 0.2
    assert request.body["stream"] is True
    assert request.body["stream_options"] == {"include_usage": True}


def test_openai_parse_response_and_missing_content():
    translator = OpenAITranslator()
    parsed = translator.parse_response(
        {
            "choices": [{"message": {"role": "assistant", "content": "ok"}}],
            "usage": {"prompt_tokens": 1, "completion_tokens": 2, "total_tokens": 3},
        }
    )
    assert parsed.text == "ok"
    assert parsed.usage.total_tokens == 3
    assert translator.parse_response({"choices": []}).text == NO_RESPONSE_TEXT


def test_missing_base_url_is_configuration_error():
    with pytest.raises(ConfigurationError):
        OpenAITranslator().build_request("", ModelConfig(), _messages(("user", "Hi")))


ROUND_TRIP_TEXT = "Line one,\n  line two: été ✓ {not json}  "


@pytest.mark.parametrize(
    "translator,config,sent_text,echo",
    [
        (
            AnthropicTranslator(),
            ModelConfig(requestFormat="anthropic_bedrock"),
            lambda body: body["messages"][0]["content"],
            lambda text: {"content": [{"type": "text", "text": text}]},
        ),
        (
            GeminiTranslator(),
            ModelConfig(endpoint="/models/gemini-2.5-flash:generateContent"),
            lambda body: body["contents"]["parts"][0]["text"],
            lambda text: {"candidates": [{"content": {"parts": [{"text": text}]}}]},
        ),
        (
            OpenAITranslator(),
            ModelConfig(endpoint="/chat/completions"),
            lambda body: body["messages"][0]["content"],
            lambda text: {"choices": [{"message": {"role": "assistant", "content": text}}]},
        ),
    ],
)
def test_echoed_request_text_parses_back_unchanged(translator, config, sent_text, echo):
    request = translator.build_request(BASE, config, _messages(("user", ROUND_TRIP_TEXT)))

    echoed = sent_text(request.body)
    assert echoed == ROUND_TRIP_TEXT
    assert translator.parse_response(echo(echoed)).text == ROUND_TRIP_TEXT


@pytest.mark.parametrize(
    "translator,body",
    [
        (
            OpenAITranslator(),
            '{"choices": [{"message": {"content": "ok"}}],'
            ' "usage": {"prompt_tokens": 2, "completion_tokens": 3, "total_tokens": 1e400}}',
        ),
        (
            AnthropicTranslator(),
            '{"content": [{"type": "text", "text": "ok"}],'
            ' "usage": {"input_tokens": Infinity, "output_tokens": 5}}',
        ),
        (
            GeminiTranslator(),
            '{"candidates": [{"content": {"parts": [{"text": "ok"}]}}],'
            ' "usageMetadata": {"promptTokenCount": -Infinity, "candidatesTokenCount": 5}}',
        ),
    ],
)
def test_non_finite_token_counts_are_ignored(translator, body):
    parsed = translator.parse_response(json.loads(body))

    assert parsed.text == "ok"
    assert parsed.usage.total_tokens == 5
