from __future__ import annotations

import json
import sys
import traceback
from pathlib import Path
from typing import Any


def _load_payload() -> dict[str, Any]:
    raw = sys.stdin.read()
    if not raw.strip():
        raise ValueError("stdin payload is empty")
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise ValueError("payload must be a JSON object")
    return payload


def _ensure_src_on_path() -> None:
    module_root = Path(__file__).resolve().parents[1]
    src_dir = module_root / "src"
    src_text = str(src_dir)
    if src_text not in sys.path:
        sys.path.insert(0, src_text)


def _list(payload: dict[str, Any], key: str) -> list[Any]:
    value = payload.get(key)
    return value if isinstance(value, list) else []


def main() -> int:
    try:
        _ensure_src_on_path()
        from meta_norm.audit import AuditLogger
        from meta_norm.pipeline_entry import (
            build_grouping,
            edit_groups,
            handle_canonicalize_request,
            run_column_scan,
            run_factor_extraction,
        )

        payload = _load_payload()
        action = str(payload.get("action") or "canonicalize").strip().lower()

        if action == "canonicalize":
            audit_path = payload.get("audit_log")
            result = handle_canonicalize_request(
                "POST",
                {"columnName": payload.get("columnName"), "values": payload.get("values")},
                audit_logger=AuditLogger(audit_path) if isinstance(audit_path, str) and audit_path else None,
            )
            print(json.dumps({"ok": result["body"]["ok"], "result": result}, ensure_ascii=False))
            return 0 if result["status_code"] == 200 else 2

        if action == "scan":
            result = run_column_scan(
                _list(payload, "experiments"),
                known_structural_columns=_list(payload, "knownStructuralColumns"),
            )
        elif action == "extract":
            result = run_factor_extraction(
                _list(payload, "experiments"),
                _list(payload, "selectedColumns"),
                _list(payload, "factorCandidates"),
            )
        elif action == "group":
            overrides = payload.get("overrides")
            result = build_grouping(
                _list(payload, "experiments"),
                overrides if isinstance(overrides, dict) else None,
                available_factor_names=payload.get("availableFactorNames")
                if isinstance(payload.get("availableFactorNames"), list)
                else None,
            )
        elif action == "edit":
            resolved = payload.get("resolvedFactors")
            result = edit_groups(
                _list(payload, "groups"),
                _list(payload, "actions"),
                strict=payload.get("strict") is True,
                resolved_factors=resolved if isinstance(resolved, dict) else None,
            )
        else:
            raise ValueError(f"unsupported action: {action}")

        ok = result.get("ok", True) is True
        print(json.dumps({"ok": ok, "result": result}, ensure_ascii=False))
        return 0 if ok else 2
    except Exception as exc:  # pragma: no cover - CLI hardening path
        error_payload = {
            "ok": False,
            "error": {
                "type": exc.__class__.__name__,
                "message": str(exc),
                "traceback": traceback.format_exc(limit=10),
            },
        }
        print(json.dumps(error_payload, ensure_ascii=False))
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
