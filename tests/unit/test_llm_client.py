from __future__ import annotations

import io
import json
import sys
import urllib.error
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

import meta_norm.llm_client as llm_client_module  # noqa: E402
from meta_norm.config import CanonicalizationLimits, load_limits_from_env  # noqa: E402
from meta_norm.llm_client import OpenAIChatJsonClient, build_llm_client_from_env  # noqa: E402


def test_build_llm_client_from_env_returns_none_without_key() -> None:
    client, runtime = build_llm_client_from_env(
        {
            "META_NORM_LLM_PROVIDER": "openai",
            "META_NORM_LLM_MODEL": "gpt-4o-mini",
        }
    )
    assert client is None
    assert runtime["enabled"] is False
    assert runtime["reason"] == "missing_api_key"


def test_build_llm_client_from_env_can_be_disabled_even_with_key() -> None:
    client, runtime = build_llm_client_from_env(
        {
            "META_NORM_LLM_ENABLED": "0",
            "OPENAI_API_KEY": "sk-test",
        }
    )
    assert client is None
    assert runtime["reason"] == "env_disabled"


def test_build_llm_client_from_env_rejects_unknown_provider() -> None:
    client, runtime = build_llm_client_from_env({"META_NORM_LLM_PROVIDER": "other", "OPENAI_API_KEY": "sk-test"})
    assert client is None
    assert runtime["reason"] == "unsupported_provider"


def test_build_llm_client_from_env_builds_openai_client_with_key() -> None:
    client, runtime = build_llm_client_from_env(
        {
            "META_NORM_LLM_PROVIDER": "openai",
            "META_NORM_LLM_MODEL": "gpt-4o-mini",
            "META_NORM_LLM_API_KEY": "sk-project",
            "OPENAI_API_KEY": "sk-fallback",
            "META_NORM_LLM_TIMEOUT_S": "7.5",
            "META_NORM_LLM_MAX_TOKENS": "not-a-number",
        }
    )
    assert isinstance(client, OpenAIChatJsonClient)
    assert client.api_key == "sk-project"
    assert client.max_completion_tokens == 800
    assert runtime["enabled"] is True
    assert runtime["reason"] == "ready"
    assert runtime["timeout_s_default"] == 7.5


def test_build_payload_requests_json_object_output() -> None:
    client = OpenAIChatJsonClient(api_key="sk-test")

    payload = client.build_payload("user text", "system text")

    assert payload["messages"] == [
        {"role": "system", "content": "system text"},
        {"role": "user", "content": "user text"},
    ]
    assert payload["response_format"] == {"type": "json_object"}
    assert payload["temperature"] == 0.0
    assert "max_tokens" not in payload


class _FakeResponse:
    def __init__(self, body: dict) -> None:
        self._raw = json.dumps(body).encode("utf-8")

    def read(self) -> bytes:
        return self._raw

    def __enter__(self) -> "_FakeResponse":
        return self

    def __exit__(self, *exc_info: object) -> None:
        return None


def test_complete_returns_message_content(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    captured: dict[str, object] = {}

    def _fake_urlopen(request, timeout, context):  # type: ignore[no-untyped-def]
        captured["url"] = request.full_url
        captured["timeout"] = timeout
        captured["auth"] = request.get_header("Authorization")
        return _FakeResponse({"choices": [{"message": {"content": ' {"canonicalToAliases": {}} '}}]})

    monkeypatch.setattr(llm_client_module.urllib.request, "urlopen", _fake_urlopen)
    client = OpenAIChatJsonClient(api_key="sk-test", base_url="https://example.test/v1/")

    text = client.complete("prompt", system="system", timeout_s=3)

    assert text == '{"canonicalToAliases": {}}'
    assert captured["url"] == "https://example.test/v1/chat/completions"
    assert captured["timeout"] == 3.0
    assert captured["auth"] == "Bearer sk-test"


def test_complete_maps_transport_timeout_to_timeout_error(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    def _fake_urlopen(request, timeout, context):  # type: ignore[no-untyped-def]
        raise urllib.error.URLError(TimeoutError("timed out"))

    monkeypatch.setattr(llm_client_module.urllib.request, "urlopen", _fake_urlopen)

    with pytest.raises(TimeoutError):
        OpenAIChatJsonClient(api_key="sk-test").complete("prompt")


def test_complete_maps_http_error_to_runtime_error(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    def _fake_urlopen(request, timeout, context):  # type: ignore[no-untyped-def]
        body = io.BytesIO(json.dumps({"error": {"message": "quota exceeded"}}).encode("utf-8"))
        raise urllib.error.HTTPError(request.full_url, 429, "Too Many Requests", {}, body)

    monkeypatch.setattr(llm_client_module.urllib.request, "urlopen", _fake_urlopen)

    with pytest.raises(RuntimeError, match="Classifier HTTP 429: quota exceeded"):
        OpenAIChatJsonClient(api_key="sk-test").complete("prompt")


def test_complete_rejects_response_without_content(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    monkeypatch.setattr(
        llm_client_module.urllib.request,
        "urlopen",
        lambda request, timeout, context: _FakeResponse({"choices": []}),
    )

    with pytest.raises(RuntimeError, match="missing choices"):
        OpenAIChatJsonClient(api_key="sk-test").complete("prompt")


def test_load_limits_from_env_falls_back_on_bad_values() -> None:
    limits = load_limits_from_env({"META_NORM_MAX_VALUES": "50", "META_NORM_MAX_NOTES_LENGTH": "-1"})

    assert limits == CanonicalizationLimits(max_values=50)
    assert limits.as_dict()["max_notes_length"] == 600
