from __future__ import annotations

import json
from typing import Any, Mapping, Sequence

from .audit import make_audit_event
from .classifier import invoke_classifier, is_timeout_like_error, parse_json_object, preview
from .config import DEFAULT_CLASSIFIER_TIMEOUT_S
from .contracts import (
    AuditEvent,
    Confidence,
    ExperimentFactors,
    FactorExtractionPayload,
    FactorScalar,
    FactorValue,
    ProvenanceSnippet,
)

DEFAULT_BATCH_SIZE = 30
FREE_TEXT_LIMIT = 160
PROVENANCE_SNIPPET_LIMIT = 160
_ELLIPSIS = "…"
_CONFIDENCE_VALUES = {item.value for item in Confidence}

FACTOR_EXTRACTION_SYSTEM_PROMPT = (
    "You normalize messy metadata into clear factors for kinetic experiments. "
    "Return strict JSON with experiments[{experimentId, factors, warnings}] and include provenance. "
    "Each factor is {name, value, confidence: low|medium|high, provenance: [{column, rawValueSnippet}]}."
)


def _read(source: Any, key: str, default: Any = None) -> Any:
    if isinstance(source, Mapping):
        return source.get(key, default)
    return getattr(source, key, default)


def _experiment_id(experiment: Any) -> str | None:
    value = _read(experiment, "experiment_id") or _read(experiment, "experimentId") or _read(experiment, "id")
    return value if isinstance(value, str) and value else None


def _experiment_metadata(experiment: Any) -> Mapping[str, Any]:
    for key in ("metadata", "metaRaw", "meta"):
        value = _read(experiment, key)
        if isinstance(value, Mapping):
            return value
    return {}


def truncate_free_text(value: Any, max_length: int = FREE_TEXT_LIMIT) -> Any:
    if not isinstance(value, str) or len(value) <= max_length:
        return value
    return f"{value[:max_length]}{_ELLIPSIS}"


def build_factor_extraction_payloads(
    experiments: Sequence[Any],
    selected_columns: Sequence[str],
    factor_candidates: Sequence[str],
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> list[FactorExtractionPayload]:
    if not experiments or not selected_columns:
        return []
    size = max(1, int(batch_size))

    rows: list[dict[str, Any]] = []
    for experiment in experiments:
        experiment_id = _experiment_id(experiment)
        if experiment_id is None:
            continue
        metadata = _experiment_metadata(experiment)
        meta = {column: truncate_free_text(metadata[column]) for column in selected_columns if column in metadata}
        rows.append({"experimentId": experiment_id, "meta": meta})

    return [
        {
            "factorCandidates": list(factor_candidates),
            "selectedColumns": list(selected_columns),
            "experiments": rows[start : start + size],
        }
        for start in range(0, len(rows), size)
    ]


def _factor_scalar(value: Any) -> tuple[bool, FactorScalar]:
    if value is None:
        return True, None
    if isinstance(value, bool):
        return False, None
    if isinstance(value, (int, float, str)):
        return True, value
    return False, None


def _provenance(raw: Any) -> list[ProvenanceSnippet]:
    if not isinstance(raw, list):
        return []
    snippets: list[ProvenanceSnippet] = []
    for item in raw:
        if not isinstance(item, Mapping):
            continue
        column = item.get("column")
        snippet = item.get("rawValueSnippet", item.get("raw_value_snippet"))
        if not isinstance(column, str) or not isinstance(snippet, str):
            continue
        snippets.append(
            ProvenanceSnippet(column=column, raw_value_snippet=truncate_free_text(snippet, PROVENANCE_SNIPPET_LIMIT))
        )
    return snippets


def _sanitize_factors(raw_factors: Any, experiment_id: str, audit_events: list[AuditEvent]) -> list[FactorValue]:
    if not isinstance(raw_factors, list):
        return []
    factors: list[FactorValue] = []
    seen: set[str] = set()
    for raw in raw_factors:
        name = raw.get("name") if isinstance(raw, Mapping) else None
        if not isinstance(name, str) or not name.strip():
            continue
        name = name.strip()
        accepted, value = _factor_scalar(raw.get("value"))
        if not accepted:
            audit_events.append(
                make_audit_event(
                    "factor_value_rejected",
                    "Factor value must be a string, number or null",
                    experiment_id=experiment_id,
                    factor=name,
                )
            )
            continue
        if name in seen:
            continue
        seen.add(name)
        confidence = raw.get("confidence")
        factors.append(
            FactorValue(
                name=name,
                value=value,
                confidence=confidence if confidence in _CONFIDENCE_VALUES else Confidence.LOW.value,
                provenance=_provenance(raw.get("provenance")),
            )
        )
    return factors


def sanitize_factor_extraction(
    payload: Any,
    experiment_ids: Sequence[str],
) -> tuple[list[ExperimentFactors], list[AuditEvent]]:
    """Turn a classifier factor-extraction answer into typed ``ExperimentFactors``.

    Only experiments named in ``experiment_ids`` are kept and the first answer for each wins.
    Everything that is dropped is reported as an audit event.
    """
    audit_events: list[AuditEvent] = []
    rows = payload.get("experiments") if isinstance(payload, Mapping) else None
    if not isinstance(rows, list):
        audit_events.append(make_audit_event("factor_extraction_malformed", "Answer must contain an experiments list"))
        return [], audit_events

    allowed = set(experiment_ids)
    seen: set[str] = set()
    results: list[ExperimentFactors] = []
    for row in rows:
        experiment_id = row.get("experimentId") if isinstance(row, Mapping) else None
        if not isinstance(experiment_id, str) or experiment_id not in allowed:
            audit_events.append(
                make_audit_event(
                    "factor_experiment_unknown",
                    "Answer references an experiment that was not requested",
                    experiment_id=experiment_id if isinstance(experiment_id, str) else None,
                )
            )
            continue
        if experiment_id in seen:
            audit_events.append(
                make_audit_event(
                    "factor_experiment_duplicate",
                    "Duplicate experiment answer ignored",
                    experiment_id=experiment_id,
                )
            )
            continue
        seen.add(experiment_id)
        raw_warnings = row.get("warnings")
        warnings = [item for item in raw_warnings if isinstance(item, str)] if isinstance(raw_warnings, list) else []
        results.append(
            ExperimentFactors(
                experiment_id=experiment_id,
                factors=_sanitize_factors(row.get("factors"), experiment_id, audit_events),
                warnings=warnings,
            )
        )
    return results, audit_events


def _empty_results(experiment_ids: Sequence[str], warning: str) -> list[ExperimentFactors]:
    return [ExperimentFactors(experiment_id=experiment_id, warnings=[warning]) for experiment_id in experiment_ids]


def extract_factors(
    experiments: Sequence[Any],
    selected_columns: Sequence[str],
    factor_candidates: Sequence[str],
    *,
    llm_client: Any,
    timeout_s: float = DEFAULT_CLASSIFIER_TIMEOUT_S,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> tuple[list[ExperimentFactors], list[AuditEvent]]:
    results: list[ExperimentFactors] = []
    audit_events: list[AuditEvent] = []
    for batch_index, payload in enumerate(
        build_factor_extraction_payloads(experiments, selected_columns, factor_candidates, batch_size=batch_size)
    ):
        batch_ids = [row["experimentId"] for row in payload["experiments"]]
        prompt = f"Factor extraction input: {json.dumps(payload, ensure_ascii=False)}"
        try:
            raw_output = invoke_classifier(
                llm_client,
                prompt=prompt,
                system=FACTOR_EXTRACTION_SYSTEM_PROMPT,
                timeout_s=timeout_s,
            )
        except Exception as exc:
            reason = "timeout" if is_timeout_like_error(exc) else "api_error"
            audit_events.append(
                make_audit_event(
                    "factor_extraction_failed",
                    "Classifier call failed for batch",
                    batch=batch_index,
                    failure_reason=reason,
                    error=str(exc),
                )
            )
            results.extend(_empty_results(batch_ids, "Factor extraction failed for this experiment"))
            continue

        try:
            parsed = parse_json_object(raw_output)
        except ValueError as exc:
            audit_events.append(
                make_audit_event(
                    "factor_extraction_failed",
                    "Classifier output is not a JSON object",
                    batch=batch_index,
                    failure_reason="json_parse_failed",
                    error=str(exc),
                    llm_response=preview(raw_output),
                )
            )
            results.extend(_empty_results(batch_ids, "Factor extraction failed for this experiment"))
            continue

        batch_results, batch_events = sanitize_factor_extraction(parsed, batch_ids)
        audit_events.extend(batch_events)
        answered = {item.experiment_id: item for item in batch_results}
        for experiment_id in batch_ids:
            if experiment_id in answered:
                results.append(answered[experiment_id])
            else:
                results.extend(_empty_results([experiment_id], "No factors returned for this experiment"))
    return results, audit_events


__all__ = [
    "DEFAULT_BATCH_SIZE",
    "FACTOR_EXTRACTION_SYSTEM_PROMPT",
    "build_factor_extraction_payloads",
    "extract_factors",
    "sanitize_factor_extraction",
    "truncate_free_text",
]
