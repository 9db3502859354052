from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from meta_norm.contracts import Experiment, FactorOverride  # noqa: E402
from meta_norm.factor_extraction import extract_factors  # noqa: E402
from meta_norm.factors import available_factor_names, build_factor_table  # noqa: E402
from meta_norm.grouping import derive_group_signatures, generate_grouping_options, groups_from_option  # noqa: E402
from meta_norm.manual_editor import find_partition_conflicts, merge_groups, split_group  # noqa: E402
from meta_norm.sanitize import collect_unique_values  # noqa: E402
from meta_norm.canonicalize import canonicalize_column  # noqa: E402

CLI_PATH = PROJECT_ROOT / "scripts" / "meta_norm_cli.py"


class ScriptedLLMClient:
    def __init__(self, answers: list[dict]) -> None:
        self.answers = list(answers)

    def complete(self, prompt: str, system: str | None = None, timeout_s: float | None = None) -> str:
        return json.dumps(self.answers.pop(0))


def _experiments() -> list[Experiment]:
    return [
        Experiment("e1", {"catalyst": "Pd/C", "additive": "TEA", "temp": "25 C"}),
        Experiment("e2", {"catalyst": "Pd on carbon", "additive": "DMAP", "temp": "80"}),
        Experiment("e3", {"catalyst": "Pt/Al2O3", "additive": "TEA", "temp": None}),
    ]


def test_canonicalize_extract_group_and_edit() -> None:
    experiments = _experiments()
    unique = collect_unique_values(experiments, "catalyst")
    assert unique.values == ["Pd/C", "Pd on carbon", "Pt/Al2O3"]

    canonical = canonicalize_column(
        "catalyst",
        unique.values,
        llm_client=ScriptedLLMClient(
            [{"canonicalToAliases": {"Pd/C": ["Pd/C", "Pd on carbon"], "Pt/Al2O3": ["Pt/Al2O3"]}}]
        ),
    )
    assert canonical.status_code == 200

    extraction_answer = {
        "experiments": [
            {
                "experimentId": experiment.experiment_id,
                "factors": [
                    {"name": "catalyst", "value": catalyst, "confidence": "high"},
                    {"name": "additive", "value": experiment.metadata["additive"], "confidence": "medium"},
                    {"name": "temperature", "value": temperature},
                ],
            }
            for experiment, catalyst, temperature in zip(experiments, ["Pd/C", "Pd/C", "Pt/Al2O3"], [25, 80, None])
        ]
    }
    factors, events = extract_factors(
        experiments,
        ["catalyst", "additive", "temp"],
        ["catalyst", "additive", "temperature"],
        llm_client=ScriptedLLMClient([extraction_answer]),
    )
    assert events == []

    overrides = {"e3": {"temperature": FactorOverride(95, note="from notebook")}}
    names = available_factor_names(factors)
    table = build_factor_table(factors, overrides, factor_names=names)
    options = {option.recipe_id: option for option in generate_grouping_options(factors, table, names)}

    assert [group.experiment_ids for group in options["by-catalyst"].groups] == [["e1", "e2"], ["e3"]]
    assert [group.signature["temperature"] for group in options["by-temperature-bin"].groups] == [
        "<30°C",
        "60-89°C",
        "90°C+",
    ]

    groups = groups_from_option(options["by-catalyst"])
    groups = merge_groups(groups, [group.group_id for group in groups], "Everything")
    groups = split_group(groups, groups[0].group_id, [["e3", "e1"], ["e2"]])
    groups = derive_group_signatures(groups, table, names)

    assert find_partition_conflicts(groups) == []
    assert groups[0].signature["catalyst"] == "(mixed)"
    assert groups[1].signature == {"catalyst": "Pd/C", "additive": "DMAP", "temperature": 80}


def _offline_env() -> dict[str, str]:
    return {
        key: value
        for key, value in os.environ.items()
        if not key.startswith("META_NORM_") and key != "OPENAI_API_KEY"
    }


def _run_cli(payload: dict) -> tuple[int, dict]:
    completed = subprocess.run(
        [sys.executable, str(CLI_PATH)],
        input=json.dumps(payload),
        capture_output=True,
        text=True,
        check=False,
        env=_offline_env(),
    )
    return completed.returncode, json.loads(completed.stdout)


def test_cli_group_action_emits_options() -> None:
    code, output = _run_cli(
        {
            "action": "group",
            "experiments": [
                {"experimentId": "e1", "factors": [{"name": "catalyst", "value": "Pd/C"}]},
                {"experimentId": "e2", "factors": [{"name": "catalyst", "value": "Pt"}]},
            ],
        }
    )

    assert code == 0
    assert output["ok"] is True
    assert [option["recipe_id"] for option in output["result"]["options"]] == [
        "by-catalyst",
        "all-in-one",
        "one-per-experiment",
    ]


def test_cli_reports_bad_action() -> None:
    code, output = _run_cli({"action": "explode"})

    assert code == 1
    assert output["ok"] is False
    assert output["error"]["type"] == "ValueError"


def test_cli_extract_without_classifier_reports_failure() -> None:
    code, output = _run_cli(
        {
            "action": "extract",
            "experiments": [{"experimentId": "e1", "metadata": {"catalyst": "Pd/C"}}],
            "selectedColumns": ["catalyst"],
            "factorCandidates": ["catalyst"],
        }
    )

    assert code == 2
    assert output["ok"] is False
    assert output["result"]["error"] == "Missing classifier configuration"


def test_cli_scan_action_profiles_columns_without_classifier() -> None:
    code, output = _run_cli(
        {
            "action": "scan",
            "experiments": [{"experimentId": "e1", "metadata": {"catalyst": "Pd/C", "temp": 25}}],
            "knownStructuralColumns": ["time"],
        }
    )

    assert code == 2
    assert output["ok"] is False
    assert [column["name"] for column in output["result"]["columns"]] == ["catalyst", "temp"]
