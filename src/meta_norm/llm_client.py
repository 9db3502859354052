from __future__ import annotations

import json
import os
import socket
import ssl
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Mapping

import certifi

from .config import DEFAULT_CLASSIFIER_TIMEOUT_S, _as_bool, _as_float, _as_int, _as_text

DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MAX_COMPLETION_TOKENS = 800


def _is_timeout_exception(exc: BaseException) -> bool:
    if isinstance(exc, (TimeoutError, socket.timeout)):
        return True
    message = str(exc).lower()
    return "timeout" in message or "timed out" in message or "time out" in message


def _build_ssl_context() -> ssl.SSLContext:
    return ssl.create_default_context(cafile=certifi.where())


@dataclass(slots=True)
class OpenAIChatJsonClient:
    api_key: str
    model: str = DEFAULT_MODEL
    base_url: str = DEFAULT_BASE_URL
    temperature: float = 0.0
    max_completion_tokens: int = DEFAULT_MAX_COMPLETION_TOKENS

    def build_payload(self, prompt: str, system: str | None = None) -> dict[str, Any]:
        messages: list[dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        return {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
            "max_completion_tokens": self.max_completion_tokens,
            "response_format": {"type": "json_object"},
        }

    def complete(self, prompt: str, system: str | None = None, timeout_s: float | None = None) -> str:
        body = json.dumps(self.build_payload(prompt, system), ensure_ascii=False).encode("utf-8")
        endpoint = f"{self.base_url.rstrip('/')}/chat/completions"
        request = urllib.request.Request(
            endpoint,
            data=body,
            method="POST",
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self.api_key}",
            },
        )
        timeout_value = _as_float(timeout_s, DEFAULT_CLASSIFIER_TIMEOUT_S)

        try:
            with urllib.request.urlopen(request, timeout=timeout_value, context=_build_ssl_context()) as response:
                raw = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            try:
                error_payload = json.loads(exc.read().decode("utf-8"))
            except (ValueError, OSError):
                error_payload = None
            message = "chat completion failed"
            if isinstance(error_payload, Mapping):
                error_obj = error_payload.get("error")
                if isinstance(error_obj, Mapping):
                    detail = _as_text(error_obj.get("message"))
                    if detail:
                        message = detail
            raise RuntimeError(f"Classifier HTTP {exc.code}: {message}") from exc
        except urllib.error.URLError as exc:
            reason = getattr(exc, "reason", exc)
            if isinstance(reason, BaseException) and _is_timeout_exception(reason):
                raise TimeoutError("Classifier request timeout") from exc
            if _is_timeout_exception(exc):
                raise TimeoutError("Classifier request timeout") from exc
            raise RuntimeError(f"Classifier request failed: {exc}") from exc
        except Exception as exc:
            if _is_timeout_exception(exc):
                raise TimeoutError("Classifier request timeout") from exc
            raise RuntimeError(f"Classifier request failed: {exc}") from exc

        return _extract_message_text(raw)


def _extract_message_text(raw: str) -> str:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise RuntimeError("Classifier response is not JSON") from exc
    if not isinstance(parsed, Mapping):
        raise RuntimeError("Classifier response must be a JSON object")
    choices = parsed.get("choices")
    if not isinstance(choices, list) or not choices:
        raise RuntimeError("Classifier response missing choices")
    first = choices[0]
    if not isinstance(first, Mapping):
        raise RuntimeError("Classifier response choice format invalid")
    message_obj = first.get("message")
    if not isinstance(message_obj, Mapping):
        raise RuntimeError("Classifier response missing message")
    content = message_obj.get("content")
    if isinstance(content, str):
        text = content.strip()
        if text:
            return text
    if isinstance(content, list):
        chunks: list[str] = []
        for part in content:
            if isinstance(part, Mapping):
                text = part.get("text")
                if isinstance(text, str) and text.strip():
                    chunks.append(text.strip())
        if chunks:
            return "\n".join(chunks)
    raise RuntimeError("Classifier response missing content text")


def build_llm_client_from_env(
    env: Mapping[str, str] | None = None,
) -> tuple[OpenAIChatJsonClient | None, dict[str, Any]]:
    env_map: Mapping[str, str] = env if env is not None else os.environ
    provider = _as_text(env_map.get("META_NORM_LLM_PROVIDER"), "openai").lower()
    model = _as_text(env_map.get("META_NORM_LLM_MODEL"), DEFAULT_MODEL)
    base_url = _as_text(env_map.get("META_NORM_LLM_BASE_URL"), DEFAULT_BASE_URL)
    api_key = _as_text(env_map.get("META_NORM_LLM_API_KEY")) or _as_text(env_map.get("OPENAI_API_KEY"))
    timeout_s = _as_float(env_map.get("META_NORM_LLM_TIMEOUT_S"), DEFAULT_CLASSIFIER_TIMEOUT_S)
    temperature = _as_float(env_map.get("META_NORM_LLM_TEMPERATURE"), 0.0)
    max_tokens = _as_int(env_map.get("META_NORM_LLM_MAX_TOKENS"), DEFAULT_MAX_COMPLETION_TOKENS)
    enabled_flag = _as_bool(env_map.get("META_NORM_LLM_ENABLED"), None)

    runtime: dict[str, Any] = {
        "enabled": False,
        "provider": provider,
        "model": model,
        "base_url": base_url,
        "timeout_s_default": timeout_s,
        "reason": "unknown",
    }

    if enabled_flag is False:
        runtime["reason"] = "env_disabled"
        return None, runtime

    if provider != "openai":
        runtime["reason"] = "unsupported_provider"
        return None, runtime

    if not api_key:
        runtime["reason"] = "missing_api_key"
        return None, runtime

    client = OpenAIChatJsonClient(
        api_key=api_key,
        model=model,
        base_url=base_url,
        temperature=temperature,
        max_completion_tokens=max_tokens,
    )
    runtime["enabled"] = True
    runtime["reason"] = "ready"
    return client, runtime


__all__ = ["OpenAIChatJsonClient", "build_llm_client_from_env"]
