from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

from .contracts import AuditEvent

DEFAULT_AUDIT_PATH = "./meta_norm.audit.jsonl"

FAILURE_EVENT_TYPES = frozenset(
    {
        "canonicalize_rejected_request",
        "classifier_config_missing",
        "classifier_call_failed",
        "model_parse_failure",
        "model_validation_failure",
        "factor_extraction_failed",
        "canonicalize_unexpected_failure",
        "column_scan_failed",
    }
)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _mask_value(value: Any, *, mask_text: str = "***") -> Any:
    sensitive_keys = {
        "password",
        "token",
        "api_key",
        "apikey",
        "authorization",
        "cookie",
        "email",
    }

    if isinstance(value, Mapping):
        masked: dict[str, Any] = {}
        for key, inner in value.items():
            key_l = str(key).lower()
            if key_l in sensitive_keys or "token" in key_l or "secret" in key_l:
                masked[str(key)] = mask_text
            else:
                masked[str(key)] = _mask_value(inner, mask_text=mask_text)
        return masked

    if isinstance(value, list):
        return [_mask_value(item, mask_text=mask_text) for item in value]

    if isinstance(value, str):
        if value.startswith("sk-") or value.lower().startswith("bearer "):
            return mask_text
        return value

    return value


def make_audit_event(
    event_type: str,
    message: str,
    *,
    request_id: str | None = None,
    **metadata: Any,
) -> AuditEvent:
    return AuditEvent(event_type=event_type, message=message, request_id=request_id, metadata=dict(metadata))


@dataclass(slots=True)
class AuditRecord:
    request_id: str
    event_type: str
    timestamp: str = field(default_factory=_utc_now_iso)
    message: str | None = None
    column_name: str | None = None
    llm_request: Any | None = None
    llm_response: Any | None = None
    failure_reason: str | None = None
    result: Any | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_event(cls, event: AuditEvent, *, request_id: str | None = None) -> "AuditRecord":
        metadata = dict(event.metadata)
        return cls(
            request_id=event.request_id or request_id or "",
            event_type=event.event_type,
            message=event.message,
            column_name=metadata.pop("column_name", None),
            llm_request=metadata.pop("llm_request", None),
            llm_response=metadata.pop("llm_response", None),
            failure_reason=metadata.pop("failure_reason", None),
            result=metadata.pop("result", None),
            metadata=metadata,
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "event_type": self.event_type,
            "timestamp": self.timestamp,
            "message": self.message,
            "column_name": self.column_name,
            "llm_request": self.llm_request,
            "llm_response": self.llm_response,
            "failure_reason": self.failure_reason,
            "result": self.result,
            "metadata": self.metadata,
        }


class AuditLogger:
    """Append-only JSONL audit trail keyed by request id."""

    def __init__(self, path: str | Path = DEFAULT_AUDIT_PATH) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def write_event(
        self,
        event: Mapping[str, Any] | AuditRecord | AuditEvent,
        *,
        mask_sensitive: bool = True,
    ) -> dict[str, Any]:
        payload = self._to_event_payload(event)
        if mask_sensitive:
            payload = self._mask_llm_fields(payload)

        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
        return payload

    def write_events(self, events: list[AuditEvent], *, request_id: str | None = None) -> list[dict[str, Any]]:
        return [self.write_event(AuditRecord.from_event(event, request_id=request_id)) for event in events]

    def list_events(self, request_id: str) -> list[dict[str, Any]]:
        return [event for event in self._read_all() if event.get("request_id") == request_id]

    def list_by_type(self, event_type: str) -> list[dict[str, Any]]:
        return [event for event in self._read_all() if event.get("event_type") == event_type]

    def get_request_trace(self, request_id: str) -> dict[str, Any]:
        events = self.list_events(request_id)
        trace: dict[str, Any] = {
            "request_id": request_id,
            "column_name": None,
            "llm_request": None,
            "llm_response": None,
            "failure_reason": None,
            "result": None,
            "succeeded": False,
            "events": events,
        }

        for event in events:
            column_name = event.get("column_name")
            if isinstance(column_name, str) and column_name.strip():
                trace["column_name"] = column_name

            for key in ("llm_request", "llm_response", "result"):
                value = event.get(key)
                if value is not None:
                    trace[key] = value

            failure_reason = event.get("failure_reason")
            if isinstance(failure_reason, str) and failure_reason.strip():
                trace["failure_reason"] = failure_reason

            if event.get("event_type") == "canonicalize_success":
                trace["succeeded"] = True

        return trace

    def list_failures(self, *, limit: int = 100) -> list[dict[str, Any]]:
        failures = [event for event in self._read_all() if event.get("event_type") in FAILURE_EVENT_TYPES]
        failures.sort(key=lambda event: str(event.get("timestamp", "")), reverse=True)
        safe_limit = max(0, int(limit))
        return failures[:safe_limit]

    def _to_event_payload(self, event: Mapping[str, Any] | AuditRecord | AuditEvent) -> dict[str, Any]:
        if isinstance(event, AuditEvent):
            payload = AuditRecord.from_event(event).as_dict()
        elif isinstance(event, AuditRecord):
            payload = event.as_dict()
        else:
            payload = dict(event)

        request_id = payload.get("request_id")
        event_type = payload.get("event_type")
        if not isinstance(request_id, str) or not request_id.strip():
            raise ValueError("audit event missing required field: request_id")
        if not isinstance(event_type, str) or not event_type.strip():
            raise ValueError("audit event missing required field: event_type")

        payload.setdefault("timestamp", _utc_now_iso())
        payload.setdefault("message", None)
        payload.setdefault("column_name", None)
        payload.setdefault("llm_request", None)
        payload.setdefault("llm_response", None)
        payload.setdefault("failure_reason", None)
        payload.setdefault("result", None)
        payload.setdefault("metadata", {})
        return payload

    def _mask_llm_fields(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        masked = dict(payload)
        masked["llm_request"] = _mask_value(masked.get("llm_request"))
        masked["llm_response"] = _mask_value(masked.get("llm_response"))
        return masked

    def _read_all(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []

        events: list[dict[str, Any]] = []
        with self.path.open("r", encoding="utf-8") as handle:
            for line in handle:
                raw = line.strip()
                if not raw:
                    continue
                try:
                    parsed = json.loads(raw)
                except json.JSONDecodeError:
                    continue
                if isinstance(parsed, dict):
                    events.append(parsed)
        return events


def write_event(
    event: Mapping[str, Any] | AuditRecord | AuditEvent,
    *,
    path: str | Path = DEFAULT_AUDIT_PATH,
    mask_sensitive: bool = True,
) -> dict[str, Any]:
    return AuditLogger(path).write_event(event, mask_sensitive=mask_sensitive)


def list_events(request_id: str, *, path: str | Path = DEFAULT_AUDIT_PATH) -> list[dict[str, Any]]:
    return AuditLogger(path).list_events(request_id)


def list_by_type(event_type: str, *, path: str | Path = DEFAULT_AUDIT_PATH) -> list[dict[str, Any]]:
    return AuditLogger(path).list_by_type(event_type)


def get_request_trace(request_id: str, *, path: str | Path = DEFAULT_AUDIT_PATH) -> dict[str, Any]:
    return AuditLogger(path).get_request_trace(request_id)


def list_failures(*, path: str | Path = DEFAULT_AUDIT_PATH, limit: int = 100) -> list[dict[str, Any]]:
    return AuditLogger(path).list_failures(limit=limit)


__all__ = [
    "AuditLogger",
    "AuditRecord",
    "DEFAULT_AUDIT_PATH",
    "FAILURE_EVENT_TYPES",
    "get_request_trace",
    "list_by_type",
    "list_events",
    "list_failures",
    "make_audit_event",
    "write_event",
]
