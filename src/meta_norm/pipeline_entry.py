from __future__ import annotations

import json
from dataclasses import asdict, is_dataclass
from enum import Enum
from typing import Any, Mapping, Sequence

from .audit import AuditLogger, make_audit_event
from .canonicalize import (
    ERROR_CALL_FAILED,
    ERROR_CONFIG_MISSING,
    ERROR_INVALID_OUTPUT,
    canonicalize_column,
    new_request_id,
)
from .column_scan import scan_columns, summarize_columns
from .config import DEFAULT_CLASSIFIER_TIMEOUT_S, load_limits_from_env
from .contracts import CONTRACT_VERSION, AuditEvent, FactorOverrideMap, Group
from .factor_extraction import extract_factors
from .factors import available_factor_names as collect_factor_names
from .factors import build_factor_table
from .grouping import DEFAULT_COMPANION_FACTORS, derive_group_signatures, generate_grouping_options
from .llm_client import build_llm_client_from_env
from .manual_editor import apply_group_edit, find_partition_conflicts


def _jsonable(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return _jsonable(asdict(value))
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [_jsonable(item) for item in value]
    return value


def _parse_body(body: Any) -> tuple[bool, Any]:
    if body is None:
        return False, None
    if isinstance(body, (bytes, bytearray)):
        try:
            body = bytes(body).decode("utf-8")
        except UnicodeDecodeError:
            return False, None
    if isinstance(body, str):
        try:
            return True, json.loads(body)
        except json.JSONDecodeError:
            return False, None
    return True, body


def _resolve_client(
    llm_client: Any | None,
    env: Mapping[str, str] | None,
    llm_timeout_s: float | None,
) -> tuple[Any | None, dict[str, Any], float]:
    if llm_client is None:
        llm_client, llm_runtime = build_llm_client_from_env(env)
    else:
        llm_runtime = {
            "enabled": True,
            "provider": "injected",
            "model": "injected",
            "base_url": "injected",
            "timeout_s_default": DEFAULT_CLASSIFIER_TIMEOUT_S,
            "reason": "injected_client",
        }
    timeout_value = (
        float(llm_timeout_s)
        if isinstance(llm_timeout_s, (int, float)) and llm_timeout_s > 0
        else float(llm_runtime.get("timeout_s_default", DEFAULT_CLASSIFIER_TIMEOUT_S))
    )
    return llm_client, llm_runtime, timeout_value


def handle_canonicalize_request(
    method: str,
    body: Any,
    *,
    llm_client: Any | None = None,
    env: Mapping[str, str] | None = None,
    llm_timeout_s: float | None = None,
    audit_logger: AuditLogger | None = None,
    request_id: str | None = None,
) -> dict[str, Any]:
    """Transport-neutral handler for a canonicalization request.

    Returns ``{"status_code", "body", "audit_events", "llm_runtime", "version"}``; the caller
    only has to write ``body`` as JSON with ``status_code``.
    """
    rid = request_id or new_request_id()
    if str(method).upper() != "POST":
        return _jsonable(
            {
                "status_code": 405,
                "body": {"ok": False, "requestId": rid, "error": "Method Not Allowed"},
                "audit_events": [],
                "llm_runtime": None,
                "version": CONTRACT_VERSION,
            }
        )

    parsed_ok, payload = _parse_body(body)
    if not parsed_ok or not isinstance(payload, Mapping):
        payload = {}

    client, llm_runtime, timeout_value = _resolve_client(llm_client, env, llm_timeout_s)
    try:
        outcome = canonicalize_column(
            payload.get("columnName"),
            payload.get("values"),
            llm_client=client,
            timeout_s=timeout_value,
            limits=load_limits_from_env(env),
            request_id=rid,
            audit_logger=audit_logger,
        )
    except Exception as exc:
        return _jsonable(
            {
                "status_code": 500,
                "body": {"ok": False, "requestId": rid, "error": "Internal Server Error"},
                "audit_events": [
                    make_audit_event(
                        "canonicalize_unexpected_failure",
                        "Unexpected failure while canonicalizing",
                        request_id=rid,
                        error=f"{exc.__class__.__name__}:{exc}",
                    )
                ],
                "llm_runtime": llm_runtime,
                "version": CONTRACT_VERSION,
            }
        )

    return _jsonable(
        {
            "status_code": outcome.status_code,
            "body": outcome.body,
            "audit_events": outcome.audit_events,
            "llm_runtime": llm_runtime,
            "version": CONTRACT_VERSION,
        }
    )


def build_grouping(
    experiments: Sequence[Any],
    overrides: FactorOverrideMap | None = None,
    *,
    available_factor_names: Sequence[str] | None = None,
    companion_factors: Sequence[str] = DEFAULT_COMPANION_FACTORS,
) -> dict[str, Any]:
    if available_factor_names is not None:
        names = list(available_factor_names)
    else:
        # Resolved values include overrides, so override-only factors count as available.
        names = collect_factor_names(experiments)
        for name in _factor_names_of(build_factor_table(experiments, overrides)):
            if name not in names:
                names.append(name)
    table = build_factor_table(experiments, overrides, factor_names=names)
    options = generate_grouping_options(experiments, table, names, companion_factors=companion_factors)
    return _jsonable(
        {
            "available_factor_names": names,
            "resolved_factors": table,
            "options": options,
            "version": CONTRACT_VERSION,
        }
    )


def _text(source: Mapping[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = source.get(key)
        if isinstance(value, str):
            return value
    return None


def _group_from_mapping(raw: Mapping[str, Any]) -> Group:
    group_id = _text(raw, "group_id", "groupId")
    if not group_id:
        raise ValueError("group is missing group_id")
    members = raw.get("experiment_ids", raw.get("experimentIds"))
    signature = raw.get("signature")
    warnings = raw.get("warnings")
    warning_factors = raw.get("warning_factors", raw.get("warningFactors"))
    return Group(
        group_id=group_id,
        name=_text(raw, "name") or group_id,
        experiment_ids=[str(item) for item in members] if isinstance(members, list) else [],
        signature=dict(signature) if isinstance(signature, Mapping) else {},
        warnings=[str(item) for item in warnings] if isinstance(warnings, list) else [],
        warning_factors=[str(item) for item in warning_factors] if isinstance(warning_factors, list) else [],
        created_from_recipe=_text(raw, "created_from_recipe", "createdFromRecipe"),
    )


def coerce_groups(groups: Sequence[Group | Mapping[str, Any]]) -> list[Group]:
    return [group if isinstance(group, Group) else _group_from_mapping(group) for group in groups]


def edit_groups(
    groups: Sequence[Group | Mapping[str, Any]],
    actions: Sequence[Mapping[str, Any]],
    *,
    strict: bool = False,
    resolved_factors: Mapping[str, Mapping[str, Any]] | None = None,
    factor_names: Sequence[str] | None = None,
) -> dict[str, Any]:
    current = coerce_groups(groups)
    for action in actions:
        current = apply_group_edit(current, action, strict=strict)
    if resolved_factors is not None:
        names = list(factor_names) if factor_names is not None else _factor_names_of(resolved_factors)
        current = derive_group_signatures(current, resolved_factors, names)
    return _jsonable(
        {
            "groups": current,
            "conflicts": find_partition_conflicts(current),
            "version": CONTRACT_VERSION,
        }
    )


def _factor_names_of(resolved_factors: Mapping[str, Mapping[str, Any]]) -> list[str]:
    names: list[str] = []
    for row in resolved_factors.values():
        if not isinstance(row, Mapping):
            continue
        for name in row:
            if isinstance(name, str) and name not in names:
                names.append(name)
    return names


def _config_missing_event(llm_runtime: Mapping[str, Any]) -> AuditEvent:
    return make_audit_event(
        "classifier_config_missing",
        "No classifier client configured",
        failure_reason=llm_runtime.get("reason"),
    )


def run_column_scan(
    experiments: Sequence[Any],
    *,
    known_structural_columns: Sequence[str] = (),
    llm_client: Any | None = None,
    env: Mapping[str, str] | None = None,
    llm_timeout_s: float | None = None,
) -> dict[str, Any]:
    """Profile metadata columns and let the classifier pick the ones worth extracting.

    A successful ``result`` carries ``selected_columns`` and ``factor_candidates``, which are the
    inputs ``run_factor_extraction`` expects.
    """
    columns = summarize_columns(experiments)
    client, llm_runtime, timeout_value = _resolve_client(llm_client, env, llm_timeout_s)
    if client is None:
        return _jsonable(
            {
                "ok": False,
                "error": ERROR_CONFIG_MISSING,
                "result": None,
                "columns": columns,
                "audit_events": [_config_missing_event(llm_runtime)],
                "llm_runtime": llm_runtime,
                "version": CONTRACT_VERSION,
            }
        )
    result, audit_events = scan_columns(
        experiments,
        llm_client=client,
        known_structural_columns=known_structural_columns,
        timeout_s=timeout_value,
    )
    payload: dict[str, Any] = {
        "ok": result is not None,
        "result": result,
        "columns": columns,
        "audit_events": audit_events,
        "llm_runtime": llm_runtime,
        "version": CONTRACT_VERSION,
    }
    if result is None:
        failure = audit_events[-1].metadata.get("failure_reason") if audit_events else None
        payload["error"] = ERROR_INVALID_OUTPUT if failure == "json_parse_failed" else ERROR_CALL_FAILED
    return _jsonable(payload)


def run_factor_extraction(
    experiments: Sequence[Any],
    selected_columns: Sequence[str],
    factor_candidates: Sequence[str],
    *,
    llm_client: Any | None = None,
    env: Mapping[str, str] | None = None,
    llm_timeout_s: float | None = None,
) -> dict[str, Any]:
    client, llm_runtime, timeout_value = _resolve_client(llm_client, env, llm_timeout_s)
    if client is None:
        return _jsonable(
            {
                "ok": False,
                "error": ERROR_CONFIG_MISSING,
                "experiments": [],
                "audit_events": [_config_missing_event(llm_runtime)],
                "llm_runtime": llm_runtime,
                "version": CONTRACT_VERSION,
            }
        )
    results, audit_events = extract_factors(
        experiments,
        selected_columns,
        factor_candidates,
        llm_client=client,
        timeout_s=timeout_value,
    )
    return _jsonable(
        {
            "ok": True,
            "experiments": results,
            "available_factor_names": collect_factor_names(results),
            "audit_events": audit_events,
            "llm_runtime": llm_runtime,
            "version": CONTRACT_VERSION,
        }
    )


__all__ = [
    "build_grouping",
    "coerce_groups",
    "edit_groups",
    "handle_canonicalize_request",
    "run_column_scan",
    "run_factor_extraction",
]
