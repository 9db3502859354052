from __future__ import annotations

import inspect
import json
from typing import Any, Callable, Mapping


def _select_call_shape(
    fn: Callable[..., Any],
    *,
    prompt: str,
    system: str | None,
    timeout_s: float,
) -> tuple[tuple[Any, ...], dict[str, Any]]:
    combined = f"{system}\n\n{prompt}" if system else prompt
    shapes: tuple[tuple[tuple[Any, ...], dict[str, Any]], ...] = (
        ((), {"prompt": prompt, "system": system, "timeout_s": timeout_s}),
        ((prompt,), {"system": system, "timeout_s": timeout_s}),
        ((), {"prompt": combined, "timeout_s": timeout_s}),
        ((combined,), {"timeout_s": timeout_s}),
        ((combined,), {}),
    )
    try:
        signature = inspect.signature(fn)
    except (TypeError, ValueError):
        return shapes[0]
    for args, kwargs in shapes:
        try:
            signature.bind(*args, **kwargs)
        except TypeError:
            continue
        return args, kwargs
    raise TypeError("classifier client must accept a prompt argument")


def _call_with_optional_timeout(
    fn: Callable[..., Any],
    *,
    prompt: str,
    system: str | None,
    timeout_s: float,
) -> str:
    # The shape is chosen up front; errors raised by the call itself propagate unchanged.
    args, kwargs = _select_call_shape(fn, prompt=prompt, system=system, timeout_s=timeout_s)
    response = fn(*args, **kwargs)
    return response if isinstance(response, str) else json.dumps(response, ensure_ascii=False)


def invoke_classifier(client: Any, *, prompt: str, system: str | None, timeout_s: float) -> str:
    """Run one classifier call.

    ``client`` may implement ``complete()`` or ``invoke()``, or be a plain callable. The call
    shape is picked from its signature and the client is called exactly once, so fakes
    with a bare ``(prompt)`` signature work too.
    """
    if hasattr(client, "complete"):
        fn = client.complete
    elif hasattr(client, "invoke"):
        fn = client.invoke
    elif callable(client):
        fn = client
    else:
        raise TypeError("classifier client must be callable or implement complete()/invoke()")
    return _call_with_optional_timeout(fn, prompt=prompt, system=system, timeout_s=timeout_s)


def parse_json_object(text: str) -> Mapping[str, Any]:
    if not isinstance(text, str) or not text.strip():
        raise ValueError("Classifier output is empty")
    try:
        value = json.loads(text)
    except json.JSONDecodeError:
        start = text.find("{")
        end = text.rfind("}")
        if start < 0 or end <= start:
            raise ValueError("Classifier output is not valid JSON") from None
        value = json.loads(text[start : end + 1])
    if not isinstance(value, Mapping):
        raise ValueError("Classifier output must be a JSON object")
    return value


def is_timeout_like_error(exc: BaseException) -> bool:
    if isinstance(exc, TimeoutError):
        return True
    if "timeout" in exc.__class__.__name__.lower():
        return True
    message = str(exc).lower()
    return any(keyword in message for keyword in ("timeout", "timed out", "time out"))


def preview(text: Any, limit: int = 500) -> str:
    if not isinstance(text, str):
        return ""
    return text[:limit]


__all__ = ["invoke_classifier", "is_timeout_like_error", "parse_json_object", "preview"]
