from __future__ import annotations

import json
import math
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from meta_norm.column_scan import (  # noqa: E402
    COLUMN_SCAN_SYSTEM_PROMPT,
    build_column_scan_payload,
    is_numeric_cell,
    sanitize_column_scan,
    scan_columns,
    summarize_columns,
)
from meta_norm.contracts import ColumnRole, ColumnType, Experiment  # noqa: E402


class FakeLLMClient:
    def __init__(self, response: object) -> None:
        self.response = response
        self.calls: list[dict[str, object]] = []

    def complete(self, prompt: str, system: str | None = None, timeout_s: float | None = None) -> str:
        self.calls.append({"prompt": prompt, "system": system, "timeout_s": timeout_s})
        if isinstance(self.response, Exception):
            raise self.response
        return self.response if isinstance(self.response, str) else json.dumps(self.response)


def _experiments() -> list[Experiment]:
    return [
        Experiment("e1", {"Catalyst_used": "Pd/C", "Temp_C": 70, "Comment": "  ", "experimentId": "e1"}),
        Experiment("e2", {"Catalyst_used": "Pd on C", "Temp_C": "85", "Comment": "reused", "experimentId": "e2"}),
        Experiment("e3", {"Catalyst_used": "Pd/C", "Temp_C": "rt", "experimentId": "e3"}),
        Experiment("e4", {"Catalyst_used": None, "Temp_C": math.nan, "experimentId": "e4"}),
    ]


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (70, True),
        (2.5, True),
        ("85", True),
        (" -1.5e3 ", True),
        ("0,25", True),
        ("rt", False),
        (True, False),
        (math.nan, False),
        (None, False),
    ],
)
def test_is_numeric_cell(value: object, expected: bool) -> None:
    assert is_numeric_cell(value) is expected


def test_summarize_columns_profiles_each_metadata_column() -> None:
    summaries = {summary.name: summary for summary in summarize_columns(_experiments())}

    assert list(summaries) == ["Catalyst_used", "Temp_C", "Comment", "experimentId"]
    assert summaries["Catalyst_used"].type_heuristic == ColumnType.TEXT
    assert summaries["Catalyst_used"].non_null_ratio == 0.75
    assert summaries["Catalyst_used"].examples == ["Pd/C", "Pd on C"]
    assert summaries["Temp_C"].type_heuristic == ColumnType.MIXED
    assert summaries["Temp_C"].examples == ["70", "85", "rt"]
    assert summaries["Comment"].non_null_ratio == 0.25
    assert summaries["experimentId"].non_null_ratio == 1.0


def test_summarize_columns_caps_examples_and_columns() -> None:
    experiments = [{"experimentId": f"e{index}", "metadata": {"x": index, "y": "long " * 40}} for index in range(10)]

    summaries = summarize_columns(experiments, max_columns=1)

    assert [summary.name for summary in summaries] == ["x"]
    assert summaries[0].type_heuristic == ColumnType.NUMERIC
    assert summaries[0].examples == ["0", "1", "2", "3", "4", "5"]
    assert len(summarize_columns(experiments)[1].examples[0]) <= 120


def test_build_column_scan_payload_uses_wire_names() -> None:
    payload = build_column_scan_payload(_experiments(), ["experimentId"])

    assert payload["experimentCount"] == 4
    assert payload["knownStructuralColumns"] == ["experimentId"]
    assert payload["columns"][1] == {
        "name": "Temp_C",
        "typeHeuristic": "mixed",
        "nonNullRatio": 0.75,
        "examples": ["70", "85", "rt"],
    }
    json.dumps(payload)


def test_sanitize_column_scan_drops_unknown_and_structural_columns() -> None:
    answer = {
        "selectedColumns": ["Catalyst_used", "Temp_C", "experimentId", "Solvent", "Temp_C"],
        "columnRoles": {"Catalyst_used": "condition", "Comment": "comment", "Temp_C": "important", "Ghost": "noise"},
        "factorCandidates": ["catalyst", " temperature ", "catalyst", 5],
        "notes": " temp column mixes text ",
        "uncertainties": ["rt means room temperature?", ""],
    }

    result, events = sanitize_column_scan(
        answer,
        ["Catalyst_used", "Temp_C", "Comment", "experimentId"],
        known_structural_columns=["experimentId"],
    )

    assert result.selected_columns == ["Catalyst_used", "Temp_C"]
    assert result.column_roles == {"Catalyst_used": ColumnRole.CONDITION, "Comment": ColumnRole.COMMENT}
    assert result.factor_candidates == ["catalyst", "temperature"]
    assert result.notes == "temp column mixes text"
    assert result.uncertainties == ["rt means room temperature?"]
    assert [event.event_type for event in events] == [
        "column_scan_unknown_column",
        "column_scan_unknown_column",
        "column_role_rejected",
        "column_role_rejected",
    ]
    assert events[0].metadata == {"column": "experimentId", "structural": True}


def test_sanitize_column_scan_reports_malformed_answers() -> None:
    result, events = sanitize_column_scan({"selectedColumns": "Temp_C", "columnRoles": []}, ["Temp_C"])

    assert result.selected_columns == []
    assert result.column_roles == {}
    assert [event.metadata["field"] for event in events] == ["selectedColumns", "columnRoles"]


def test_scan_columns_calls_classifier_once_with_payload() -> None:
    client = FakeLLMClient({"selectedColumns": ["Catalyst_used"], "factorCandidates": ["catalyst"]})

    result, events = scan_columns(_experiments(), llm_client=client, known_structural_columns=["experimentId"], timeout_s=3.0)

    assert events == []
    assert result is not None
    assert result.selected_columns == ["Catalyst_used"]
    assert len(client.calls) == 1
    assert client.calls[0]["system"] == COLUMN_SCAN_SYSTEM_PROMPT
    assert client.calls[0]["timeout_s"] == 3.0
    prompt = str(client.calls[0]["prompt"])
    assert prompt.startswith("Column scan input: ")
    assert json.loads(prompt.removeprefix("Column scan input: "))["knownStructuralColumns"] == ["experimentId"]


@pytest.mark.parametrize(
    ("response", "reason"),
    [(TimeoutError("timed out"), "timeout"), (RuntimeError("HTTP 500"), "api_error"), ("not json", "json_parse_failed")],
)
def test_scan_columns_failures_return_no_result(response: object, reason: str) -> None:
    client = FakeLLMClient(response)

    result, events = scan_columns(_experiments(), llm_client=client)

    assert result is None
    assert len(client.calls) == 1
    assert events[0].event_type == "column_scan_failed"
    assert events[0].metadata["failure_reason"] == reason


def test_scan_columns_without_metadata_skips_classifier() -> None:
    client = FakeLLMClient({})

    result, events = scan_columns([Experiment("e1")], llm_client=client)

    assert result is not None
    assert result.selected_columns == []
    assert events == []
    assert client.calls == []
