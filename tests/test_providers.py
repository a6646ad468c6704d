from __future__ import annotations

import copy
import json

import httpx
import pytest

from transloom.ai import AIService, EchoProvider, build_provider, validate_ai_config
from transloom.ai.exceptions import ProviderError, ProviderErrorKind
from transloom.ai.providers import classify_status
from transloom.config import DEFAULT_CONFIG


def _config(provider: str = "openai") -> dict:
    config = copy.deepcopy(DEFAULT_CONFIG)
    config["ai_provider"] = provider
    config[provider]["api_key"] = "sk-test"
    return config


def _openai_reply(content: str, finish_reason: str = "stop") -> dict:
    return {
        "choices": [{"message": {"role": "assistant", "content": content}, "finish_reason": finish_reason}],
        "usage": {"prompt_tokens": 12, "completion_tokens": 3},
    }


def _service(handler, provider: str = "openai", config: dict = None) -> AIService:
    return AIService(config or _config(provider), transport=httpx.MockTransport(handler))


@pytest.mark.parametrize(
    "status,body,kind",
    [
        (429, "slow down", ProviderErrorKind.RATE_LIMITED),
        (401, "bad key", ProviderErrorKind.AUTH),
        (403, "forbidden", ProviderErrorKind.AUTH),
        (408, "request timeout", ProviderErrorKind.TIMEOUT),
        (400, "bad request", ProviderErrorKind.INVALID_INPUT),
        (400, "rejected by content_policy", ProviderErrorKind.CONTENT_POLICY),
        (500, "oops", ProviderErrorKind.SERVER_ERROR),
        (503, "overloaded", ProviderErrorKind.SERVER_ERROR),
        (302, "moved", ProviderErrorKind.UNKNOWN),
    ],
)
def test_classify_status(status, body, kind) -> None:
    assert classify_status(status, body) == kind


def test_openai_translation_and_usage() -> None:
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=_openai_reply("  Bonjour  "))

    service = _service(handler)
    translated = service.translate("Hello", "en", "fr", {"model": "gpt-test", "tone": "casual"})

    assert translated == "Bonjour"
    assert service.get_total_token_usage() == {"prompt_tokens": 12, "completion_tokens": 3, "calls": 1}

    request = requests[0]
    assert request.headers["Authorization"] == "Bearer sk-test"
    body = json.loads(request.content)
    assert body["model"] == "gpt-test"
    assert body["messages"][0]["role"] == "system"
    prompt = body["messages"][1]["content"]
    assert "from English (en) to French (fr)" in prompt
    assert "casual tone" in prompt
    assert prompt.endswith("Hello")


def test_model_falls_back_to_configured_models() -> None:
    seen = []

    def handler(request):
        seen.append(json.loads(request.content)["model"])
        return httpx.Response(200, json=_openai_reply("Hallo"))

    _service(handler).translate("Hello", "en", "de")

    assert seen == [DEFAULT_CONFIG["openai"]["models"][0]]


def test_http_errors_become_classified_provider_errors() -> None:
    def handler(request):
        return httpx.Response(429, json={"error": {"message": "Rate limit reached", "code": "rate_limit"}})

    with pytest.raises(ProviderError) as excinfo:
        _service(handler).translate("Hello", "en", "fr")

    error = excinfo.value
    assert error.kind == ProviderErrorKind.RATE_LIMITED
    assert error.is_transient
    assert error.status_code == 429
    assert "Rate limit reached (rate_limit)" in str(error)


def test_timeout_is_transient() -> None:
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(ProviderError) as excinfo:
        _service(handler).translate("Hello", "en", "fr")
    assert excinfo.value.kind == ProviderErrorKind.TIMEOUT


def test_connection_error_is_unknown() -> None:
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ProviderError) as excinfo:
        _service(handler).translate("Hello", "en", "fr")
    assert excinfo.value.kind == ProviderErrorKind.UNKNOWN


def test_content_filter_is_permanent() -> None:
    def handler(request):
        return httpx.Response(200, json=_openai_reply("", finish_reason="content_filter"))

    with pytest.raises(ProviderError) as excinfo:
        _service(handler).translate("Hello", "en", "fr")
    assert excinfo.value.kind == ProviderErrorKind.CONTENT_POLICY
    assert not excinfo.value.is_transient


def test_empty_translation_is_an_error() -> None:
    def handler(request):
        return httpx.Response(200, json=_openai_reply("   "))

    with pytest.raises(ProviderError) as excinfo:
        _service(handler).translate("Hello", "en", "fr")
    assert excinfo.value.kind == ProviderErrorKind.UNKNOWN


def test_invalid_json_response() -> None:
    def handler(request):
        return httpx.Response(200, content=b"<html>gateway</html>")

    with pytest.raises(ProviderError) as excinfo:
        _service(handler).translate("Hello", "en", "fr")
    assert excinfo.value.kind == ProviderErrorKind.UNKNOWN


def test_missing_api_key_is_an_auth_error() -> None:
    config = copy.deepcopy(DEFAULT_CONFIG)

    def handler(request):
        raise AssertionError("no request expected")

    with pytest.raises(ProviderError) as excinfo:
        _service(handler, config=config).translate("Hello", "en", "fr")
    assert excinfo.value.kind == ProviderErrorKind.AUTH


def test_gemini_translation() -> None:
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={
            "candidates": [{"content": {"parts": [{"text": "Bon"}, {"text": "jour"}]}, "finishReason": "STOP"}],
            "usageMetadata": {"promptTokenCount": 10, "totalTokenCount": 14},
        })

    service = _service(handler, provider="gemini")
    translated = service.translate("Hello", "en", "fr")

    assert translated == "Bonjour"
    assert service.get_total_token_usage()["completion_tokens"] == 4
    request = requests[0]
    assert request.url.path.endswith(f"/{DEFAULT_CONFIG['gemini']['models'][0]}:generateContent")
    assert request.url.params["key"] == "sk-test"
    assert "systemInstruction" in json.loads(request.content)


def test_gemini_blocked_prompt() -> None:
    def handler(request):
        return httpx.Response(200, json={"promptFeedback": {"blockReason": "SAFETY"}})

    with pytest.raises(ProviderError) as excinfo:
        _service(handler, provider="gemini").translate("Hello", "en", "fr")
    assert excinfo.value.kind == ProviderErrorKind.CONTENT_POLICY


def test_validate_ai_config() -> None:
    validate_ai_config(_config("openai"))
    validate_ai_config({"ai_provider": "echo"})

    with pytest.raises(ProviderError) as excinfo:
        validate_ai_config(copy.deepcopy(DEFAULT_CONFIG))
    assert excinfo.value.kind == ProviderErrorKind.AUTH

    with pytest.raises(ProviderError) as excinfo:
        validate_ai_config({"ai_provider": "custom"})
    assert excinfo.value.kind == ProviderErrorKind.INVALID_INPUT


def test_build_provider() -> None:
    assert isinstance(build_provider({"ai_provider": "echo"}), EchoProvider)
    service = build_provider(_config("deepseek"))
    assert isinstance(service, AIService)
    assert service.provider == "deepseek"


def test_echo_provider_returns_source() -> None:
    echo = EchoProvider()

    assert echo.translate("Hello", "en", "fr") == "Hello"
    assert echo.call_count == 1
