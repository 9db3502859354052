from __future__ import annotations

import json
import math
import re
from typing import Any, Mapping, Sequence

from .audit import make_audit_event
from .classifier import invoke_classifier, is_timeout_like_error, parse_json_object, preview
from .config import DEFAULT_CLASSIFIER_TIMEOUT_S
from .contracts import (
    AuditEvent,
    ColumnRole,
    ColumnScanPayload,
    ColumnScanResult,
    ColumnSummary,
    ColumnType,
)
from .sanitize import sanitize_value

MAX_SCAN_COLUMNS = 500
MAX_EXAMPLES = 6
EXAMPLE_LENGTH = 120

_NUMERIC_PATTERN = re.compile(r"^-?\d+(?:\.\d+)?(?:[eE][+-]?\d+)?$")
_COMMA_DECIMAL_PATTERN = re.compile(r"^-?\d+,\d+(?:[eE][+-]?\d+)?$")
_ROLE_VALUES = {item.value for item in ColumnRole}

COLUMN_SCAN_SYSTEM_PROMPT = (
    "You identify meaningful metadata columns for kinetic experiment grouping. "
    "Return strict JSON with keys selectedColumns, columnRoles, factorCandidates, notes, uncertainties. "
    "columnRoles maps a column name to condition|comment|noise."
)


def _read(source: Any, key: str, default: Any = None) -> Any:
    if isinstance(source, Mapping):
        return source.get(key, default)
    return getattr(source, key, default)


def _experiment_metadata(experiment: Any) -> Mapping[str, Any]:
    for key in ("metadata", "metaRaw", "meta"):
        value = _read(experiment, key)
        if isinstance(value, Mapping):
            return value
    return {}


def is_numeric_cell(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return not isinstance(value, float) or math.isfinite(value)
    if not isinstance(value, str):
        return False
    cleaned = re.sub(r"\s+", "", value)
    return bool(_NUMERIC_PATTERN.match(cleaned) or _COMMA_DECIMAL_PATTERN.match(cleaned))


def _column_type(values: Sequence[Any]) -> ColumnType:
    if not values:
        return ColumnType.TEXT
    numeric = sum(1 for value in values if is_numeric_cell(value))
    if numeric == len(values):
        return ColumnType.NUMERIC
    if numeric == 0:
        return ColumnType.TEXT
    return ColumnType.MIXED


def _column_names(experiments: Sequence[Any], max_columns: int) -> list[str]:
    names: list[str] = []
    for experiment in experiments:
        for key in _experiment_metadata(experiment):
            name = key.strip() if isinstance(key, str) else ""
            if name and name not in names:
                names.append(name)
    return names[: max(0, max_columns)]


def _column_value(metadata: Mapping[str, Any], name: str) -> Any:
    if name in metadata:
        return metadata[name]
    for key, value in metadata.items():
        if isinstance(key, str) and key.strip() == name:
            return value
    return None


def summarize_columns(
    experiments: Sequence[Any],
    *,
    max_columns: int = MAX_SCAN_COLUMNS,
    max_examples: int = MAX_EXAMPLES,
) -> list[ColumnSummary]:
    """Profile every metadata column seen across ``experiments``.

    Columns appear in first-seen order. Blank strings, NaN and None count as empty cells, and
    ``non_null_ratio`` is relative to the number of experiments (rounded to 3 places).
    """
    total = len(experiments)
    summaries: list[ColumnSummary] = []
    for name in _column_names(experiments, max_columns):
        present: list[Any] = []
        examples: list[str] = []
        for experiment in experiments:
            raw = _column_value(_experiment_metadata(experiment), name)
            example = sanitize_value(raw, max_length=EXAMPLE_LENGTH)
            if example is None:
                continue
            present.append(raw)
            if len(examples) < max_examples and example not in examples:
                examples.append(example)
        ratio = round(len(present) / total, 3) if total else 0.0
        summaries.append(
            ColumnSummary(
                name=name,
                type_heuristic=_column_type(present),
                non_null_ratio=min(1.0, max(0.0, ratio)),
                examples=examples,
            )
        )
    return summaries


def build_column_scan_payload(
    experiments: Sequence[Any],
    known_structural_columns: Sequence[str] = (),
) -> ColumnScanPayload:
    return {
        "columns": [
            {
                "name": summary.name,
                "typeHeuristic": summary.type_heuristic.value,
                "nonNullRatio": summary.non_null_ratio,
                "examples": list(summary.examples),
            }
            for summary in summarize_columns(experiments)
        ],
        "experimentCount": len(experiments),
        "knownStructuralColumns": [name for name in known_structural_columns if isinstance(name, str)],
    }


def _unique_texts(raw: Any) -> list[str]:
    texts: list[str] = []
    if not isinstance(raw, list):
        return texts
    for item in raw:
        if isinstance(item, str) and item.strip() and item.strip() not in texts:
            texts.append(item.strip())
    return texts


def sanitize_column_scan(
    payload: Any,
    column_names: Sequence[str],
    *,
    known_structural_columns: Sequence[str] = (),
) -> tuple[ColumnScanResult, list[AuditEvent]]:
    """Keep only the parts of a column-scan answer that refer to real metadata columns.

    Selected columns must exist and must not be structural; roles must be condition, comment or
    noise. Every dropped entry becomes an audit event.
    """
    audit_events: list[AuditEvent] = []
    if not isinstance(payload, Mapping):
        audit_events.append(make_audit_event("column_scan_malformed", "Answer must be a JSON object"))
        return ColumnScanResult(), audit_events

    known = set(column_names)
    structural = set(known_structural_columns)

    raw_selected = payload.get("selectedColumns")
    if raw_selected is not None and not isinstance(raw_selected, list):
        audit_events.append(
            make_audit_event("column_scan_malformed", "selectedColumns must be a list", field="selectedColumns")
        )
    selected: list[str] = []
    for name in _unique_texts(raw_selected):
        if name not in known or name in structural:
            audit_events.append(
                make_audit_event(
                    "column_scan_unknown_column",
                    "Selected column is not a metadata column",
                    column=name,
                    structural=name in structural,
                )
            )
            continue
        selected.append(name)

    roles: dict[str, ColumnRole] = {}
    raw_roles = payload.get("columnRoles")
    if isinstance(raw_roles, Mapping):
        for name, role in raw_roles.items():
            if name not in known or role not in _ROLE_VALUES:
                audit_events.append(
                    make_audit_event(
                        "column_role_rejected",
                        "Column role ignored",
                        column=str(name),
                        role=role if isinstance(role, str) else None,
                    )
                )
                continue
            roles[name] = ColumnRole(role)
    elif raw_roles is not None:
        audit_events.append(
            make_audit_event("column_scan_malformed", "columnRoles must be an object", field="columnRoles")
        )

    notes = payload.get("notes")
    return (
        ColumnScanResult(
            selected_columns=selected,
            column_roles=roles,
            factor_candidates=_unique_texts(payload.get("factorCandidates")),
            notes=notes.strip() if isinstance(notes, str) else "",
            uncertainties=_unique_texts(payload.get("uncertainties")),
        ),
        audit_events,
    )


def scan_columns(
    experiments: Sequence[Any],
    *,
    llm_client: Any,
    known_structural_columns: Sequence[str] = (),
    timeout_s: float = DEFAULT_CLASSIFIER_TIMEOUT_S,
) -> tuple[ColumnScanResult | None, list[AuditEvent]]:
    """Ask the classifier which metadata columns describe experimental conditions.

    Returns ``(None, events)`` when the single classifier call fails or its output is not a JSON
    object. With no metadata columns at all, no call is made and an empty result comes back.
    """
    payload = build_column_scan_payload(experiments, known_structural_columns)
    if not payload["columns"]:
        return ColumnScanResult(), []

    prompt = f"Column scan input: {json.dumps(payload, ensure_ascii=False)}"
    try:
        raw_output = invoke_classifier(
            llm_client,
            prompt=prompt,
            system=COLUMN_SCAN_SYSTEM_PROMPT,
            timeout_s=timeout_s,
        )
    except Exception as exc:
        return None, [
            make_audit_event(
                "column_scan_failed",
                "Classifier call failed for column scan",
                failure_reason="timeout" if is_timeout_like_error(exc) else "api_error",
                error=str(exc),
            )
        ]

    try:
        parsed = parse_json_object(raw_output)
    except ValueError as exc:
        return None, [
            make_audit_event(
                "column_scan_failed",
                "Classifier output is not a JSON object",
                failure_reason="json_parse_failed",
                error=str(exc),
                llm_response=preview(raw_output),
            )
        ]

    return sanitize_column_scan(
        parsed,
        [column["name"] for column in payload["columns"]],
        known_structural_columns=payload["knownStructuralColumns"],
    )


__all__ = [
    "COLUMN_SCAN_SYSTEM_PROMPT",
    "MAX_SCAN_COLUMNS",
    "build_column_scan_payload",
    "is_numeric_cell",
    "sanitize_column_scan",
    "scan_columns",
    "summarize_columns",
]
