from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from .audit import AuditLogger, make_audit_event
from .classifier import invoke_classifier, is_timeout_like_error, parse_json_object, preview
from .config import DEFAULT_CLASSIFIER_TIMEOUT_S, DEFAULT_LIMITS, CanonicalizationLimits
from .contracts import (
    CONTRACT_VERSION,
    AuditEvent,
    CanonicalizationErrorResponse,
    CanonicalizationResultPayload,
    CanonicalizationSuccessResponse,
    ErrorKind,
    ValidMapping,
)
from .canonical_validate import validate_canonical_mapping
from .sanitize import sanitize_values

ERROR_INVALID_REQUEST = "Invalid request"
ERROR_CONFIG_MISSING = "Missing classifier configuration"
ERROR_CALL_FAILED = "Classifier call failed"
ERROR_INVALID_OUTPUT = "Invalid model output"
DETAILS_JSON_PARSE_FAILED = "JSON parse failed"
_START_PREVIEW_COUNT = 5

CANONICALIZE_SYSTEM_PROMPT = " ".join(
    (
        "You normalize experimental column values into canonical groups.",
        'Return ONLY JSON with keys {"canonicalToAliases": Record<string, string[]>, '
        '"notes"?: string, "uncertainties"?: string[]}.',
        "Each canonical key should be concise and human-readable.",
        "Every input value must appear exactly once in aliases across all canonicals "
        "(no missing, no duplicates).",
        "Do not invent new raw values. Avoid markdown or extra text.",
    )
)


@dataclass(slots=True)
class CanonicalizationOutcome:
    status_code: int
    body: dict[str, Any]
    audit_events: list[AuditEvent] = field(default_factory=list)
    version: str = CONTRACT_VERSION

    @property
    def ok(self) -> bool:
        return self.body.get("ok") is True

    @property
    def request_id(self) -> str:
        return str(self.body.get("requestId", ""))


def new_request_id() -> str:
    return str(uuid.uuid4())


def build_canonicalization_prompt(column_name: str, values: Sequence[str]) -> tuple[str, str]:
    user = json.dumps({"columnName": column_name, "values": list(values)}, ensure_ascii=False)
    return CANONICALIZE_SYSTEM_PROMPT, user


def validate_canonicalization_request(
    column_name: Any,
    values: Any,
    *,
    limits: CanonicalizationLimits | None = None,
) -> tuple[str, list[str]] | None:
    """Return ``(column_name, sanitized_values)`` or None when the request is unusable."""
    active_limits = limits or DEFAULT_LIMITS
    column = column_name.strip() if isinstance(column_name, str) else ""
    if not column:
        return None
    if not isinstance(values, list) or not values or len(values) > active_limits.max_values:
        return None
    sanitized = sanitize_values(values, max_length=active_limits.max_value_length)
    if not sanitized:
        return None
    return column, sanitized


def _error_body(request_id: str, error: str, kind: ErrorKind, details: str | None = None) -> CanonicalizationErrorResponse:
    body: CanonicalizationErrorResponse = {
        "ok": False,
        "requestId": request_id,
        "error": error,
        "kind": kind.value,
    }
    if details:
        body["details"] = details
    return body


def _success_body(request_id: str, mapping: ValidMapping) -> CanonicalizationSuccessResponse:
    result: CanonicalizationResultPayload = {"canonicalToAliases": mapping.canonical_to_aliases}
    if mapping.notes is not None:
        result["notes"] = mapping.notes
    if mapping.uncertainties is not None:
        result["uncertainties"] = mapping.uncertainties
    return {"ok": True, "requestId": request_id, "result": result}


def _finish(
    status_code: int,
    body: Mapping[str, Any],
    audit_events: list[AuditEvent],
    audit_logger: AuditLogger | None,
) -> CanonicalizationOutcome:
    if audit_logger is not None:
        audit_logger.write_events(audit_events, request_id=str(body.get("requestId", "")))
    return CanonicalizationOutcome(status_code=status_code, body=dict(body), audit_events=audit_events)


def canonicalize_column(
    column_name: Any,
    values: Any,
    *,
    llm_client: Any | None,
    timeout_s: float = DEFAULT_CLASSIFIER_TIMEOUT_S,
    limits: CanonicalizationLimits | None = None,
    request_id: str | None = None,
    audit_logger: AuditLogger | None = None,
) -> CanonicalizationOutcome:
    """Ask the classifier for a canonical-to-aliases mapping of one column's values.

    The classifier is called once with ``timeout_s``. Its answer is accepted only if
    ``validate_canonical_mapping`` accepts it in full; otherwise the outcome carries a 502
    error body and no part of the answer. Every step is recorded in ``audit_events`` and, when
    ``audit_logger`` is given, appended to its JSONL file.
    """
    active_limits = limits or DEFAULT_LIMITS
    rid = request_id or new_request_id()
    audit_events: list[AuditEvent] = []

    validated = validate_canonicalization_request(column_name, values, limits=active_limits)
    if validated is None:
        audit_events.append(
            make_audit_event(
                "canonicalize_rejected_request",
                "Request rejected before classifier call",
                request_id=rid,
                failure_reason=ErrorKind.INVALID_REQUEST.value,
            )
        )
        return _finish(400, _error_body(rid, ERROR_INVALID_REQUEST, ErrorKind.INVALID_REQUEST), audit_events, audit_logger)

    column, source_values = validated
    audit_events.append(
        make_audit_event(
            "canonicalize_start",
            "Canonicalization started",
            request_id=rid,
            column_name=column,
            value_count=len(source_values),
            preview=source_values[:_START_PREVIEW_COUNT],
        )
    )

    if llm_client is None:
        audit_events.append(
            make_audit_event(
                "classifier_config_missing",
                "No classifier client configured",
                request_id=rid,
                column_name=column,
                failure_reason=ErrorKind.CONFIG_MISSING.value,
            )
        )
        return _finish(500, _error_body(rid, ERROR_CONFIG_MISSING, ErrorKind.CONFIG_MISSING), audit_events, audit_logger)

    system, prompt = build_canonicalization_prompt(column, source_values)
    llm_request = {"system": system, "user": prompt, "timeout_s": timeout_s}
    try:
        raw_output = invoke_classifier(llm_client, prompt=prompt, system=system, timeout_s=timeout_s)
    except Exception as exc:
        timed_out = is_timeout_like_error(exc)
        details = "Classifier request timed out" if timed_out else (str(exc) or exc.__class__.__name__)
        audit_events.append(
            make_audit_event(
                "classifier_call_failed",
                "Classifier call failed",
                request_id=rid,
                column_name=column,
                llm_request=llm_request,
                failure_reason="timeout" if timed_out else "api_error",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
        )
        return _finish(
            502,
            _error_body(rid, ERROR_CALL_FAILED, ErrorKind.UPSTREAM_UNAVAILABLE, details),
            audit_events,
            audit_logger,
        )

    try:
        parsed = parse_json_object(raw_output)
    except ValueError as exc:
        audit_events.append(
            make_audit_event(
                "model_parse_failure",
                "Classifier output is not a JSON object",
                request_id=rid,
                column_name=column,
                llm_request=llm_request,
                llm_response=preview(raw_output),
                failure_reason="json_parse_failed",
                error=str(exc),
            )
        )
        return _finish(
            502,
            _error_body(rid, ERROR_INVALID_OUTPUT, ErrorKind.INVALID_MODEL_OUTPUT, DETAILS_JSON_PARSE_FAILED),
            audit_events,
            audit_logger,
        )

    validation = validate_canonical_mapping(parsed, source_values, limits=active_limits)
    if not isinstance(validation, ValidMapping):
        audit_events.append(
            make_audit_event(
                "model_validation_failure",
                validation.message,
                request_id=rid,
                column_name=column,
                llm_request=llm_request,
                llm_response=preview(raw_output),
                failure_reason=validation.reason.value,
                rejection=dict(validation.metadata),
            )
        )
        return _finish(
            502,
            _error_body(rid, ERROR_INVALID_OUTPUT, ErrorKind.INVALID_MODEL_OUTPUT, validation.reason.value),
            audit_events,
            audit_logger,
        )

    body = _success_body(rid, validation)
    audit_events.append(
        make_audit_event(
            "canonicalize_success",
            "Canonicalization accepted",
            request_id=rid,
            column_name=column,
            llm_response=preview(raw_output),
            result=body["result"],
            canonical_groups=len(validation.canonical_to_aliases),
        )
    )
    return _finish(200, body, audit_events, audit_logger)


__all__ = [
    "CANONICALIZE_SYSTEM_PROMPT",
    "CanonicalizationOutcome",
    "DETAILS_JSON_PARSE_FAILED",
    "ERROR_CALL_FAILED",
    "ERROR_CONFIG_MISSING",
    "ERROR_INVALID_OUTPUT",
    "ERROR_INVALID_REQUEST",
    "build_canonicalization_prompt",
    "canonicalize_column",
    "new_request_id",
    "validate_canonicalization_request",
]
