from __future__ import annotations

import math
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from meta_norm.contracts import Group  # noqa: E402
from meta_norm.grouping import (  # noqa: E402
    MIXED_VALUE,
    MIXED_WARNING,
    derive_group_signatures,
    generate_grouping_options,
    groups_from_option,
    temperature_bin,
)


def _by_recipe(options: list) -> dict:
    return {option.recipe_id: option for option in options}


def _members(option) -> list[list[str]]:  # type: ignore[no-untyped-def]
    return [group.experiment_ids for group in option.groups]


def test_catalyst_and_additive_recipes_split_as_expected() -> None:
    resolved = {
        "e1": {"catalyst": "Pd/C", "additive": "TEA"},
        "e2": {"catalyst": "Pd/C", "additive": "DMAP"},
    }

    options = _by_recipe(generate_grouping_options(["e1", "e2"], resolved, ["catalyst", "additive"]))

    assert _members(options["by-catalyst"]) == [["e1", "e2"]]
    assert _members(options["by-catalyst-additive"]) == [["e1"], ["e2"]]
    assert "by-substrate-catalyst" not in options
    assert "by-temperature-bin" not in options
    assert _members(options["all-in-one"]) == [["e1", "e2"]]
    assert _members(options["one-per-experiment"]) == [["e1"], ["e2"]]


def test_recipe_order_and_group_ids_are_deterministic() -> None:
    resolved = {
        "e1": {"catalyst": "Pd/C", "temperature": 25},
        "e2": {"catalyst": "Pt", "temperature": 80},
        "e3": {"catalyst": "Pd/C", "temperature": "95"},
    }
    names = ["catalyst", "temperature"]

    first = generate_grouping_options(["e1", "e2", "e3"], resolved, names)
    second = generate_grouping_options(["e1", "e2", "e3"], resolved, names)

    assert [option.recipe_id for option in first] == [
        "by-catalyst",
        "by-temperature-bin",
        "all-in-one",
        "one-per-experiment",
    ]
    assert first == second
    by_catalyst = first[0]
    assert [group.group_id for group in by_catalyst.groups] == ["group-by-catalyst-1", "group-by-catalyst-2"]
    assert by_catalyst.groups[0].signature == {"catalyst": "Pd/C"}
    assert by_catalyst.groups[0].created_from_recipe == "by-catalyst"


def test_recipe_requires_non_null_value_and_listed_name() -> None:
    resolved = {"e1": {"catalyst": None, "substrate": "aryl"}, "e2": {"catalyst": "  "}}

    options = _by_recipe(generate_grouping_options(["e1", "e2"], resolved, ["catalyst"]))

    assert "by-catalyst" not in options
    assert "by-substrate-catalyst" not in options
    assert list(options) == ["all-in-one", "one-per-experiment"]


def test_fallback_recipe_uses_first_qualifying_factor() -> None:
    resolved = {"e1": {"solvent": "THF"}, "e2": {"solvent": "DMF"}, "e3": {"solvent": " THF "}}

    options = generate_grouping_options(["e1", "e2", "e3"], resolved, ["catalyst", "solvent"])

    assert options[0].recipe_id == "by-first-factor"
    assert options[0].factors_used == ["solvent"]
    assert _members(options[0]) == [["e1", "e3"], ["e2"]]


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (-5, "<30°C"),
        (29.9, "<30°C"),
        (30, "30-59°C"),
        ("59.5", "30-59°C"),
        (60, "60-89°C"),
        (89.99, "60-89°C"),
        (90, "90°C+"),
        (250.0, "90°C+"),
        (None, "unspecified"),
        ("room temp", "unspecified"),
        (math.nan, "unspecified"),
        (True, "unspecified"),
    ],
)
def test_temperature_bin(value: object, expected: str) -> None:
    assert temperature_bin(value) == expected


def test_temperature_recipe_groups_unparseable_values_as_unspecified() -> None:
    resolved = {
        "e1": {"temperature": 25},
        "e2": {"temperature": "rt"},
        "e3": {"temperature": 28.5},
        "e4": {"temperature": None},
    }

    option = _by_recipe(generate_grouping_options(["e1", "e2", "e3", "e4"], resolved, ["temperature"]))[
        "by-temperature-bin"
    ]

    assert _members(option) == [["e1", "e3"], ["e2", "e4"]]
    assert option.groups[1].signature == {"temperature": "unspecified"}
    assert option.groups[1].warnings == []


def test_missing_key_factor_is_flagged() -> None:
    resolved = {
        "e1": {"substrate": "aryl", "catalyst": "Pd/C"},
        "e2": {"substrate": None, "catalyst": "Pd/C"},
    }

    option = _by_recipe(generate_grouping_options(["e1", "e2"], resolved, ["substrate", "catalyst"]))[
        "by-substrate-catalyst"
    ]

    assert _members(option) == [["e1"], ["e2"]]
    assert option.groups[0].warnings == []
    assert option.groups[1].warnings == ["Missing factor values: substrate"]
    assert option.groups[1].warning_factors == ["substrate"]
    assert option.groups[1].name == "substrate: unspecified | catalyst: Pd/C"


def test_companion_factor_variation_is_flagged() -> None:
    resolved = {
        "e1": {"catalyst": "Pd/C", "additive": "TEA"},
        "e2": {"catalyst": "Pd/C", "additive": "DMAP"},
    }

    options = _by_recipe(generate_grouping_options(["e1", "e2"], resolved, ["catalyst", "additive"]))

    assert options["by-catalyst"].groups[0].warnings == ["additive differs across experiments"]
    assert options["by-catalyst"].groups[0].warning_factors == ["additive"]
    assert options["by-catalyst-additive"].groups[0].warnings == []
    assert options["all-in-one"].groups[0].warning_factors == ["additive"]


def test_numeric_and_text_values_group_by_type() -> None:
    resolved = {"e1": {"catalyst": 5}, "e2": {"catalyst": 5.0}, "e3": {"catalyst": "5"}}

    option = generate_grouping_options(["e1", "e2", "e3"], resolved, ["catalyst"])[0]

    assert _members(option) == [["e1", "e2"], ["e3"]]


def test_duplicate_and_missing_experiment_ids_are_reported() -> None:
    experiments = ["e1", {"experimentId": "e2"}, "e1", {"name": "no id"}]
    resolved = {"e1": {"catalyst": "Pd/C"}, "e2": {"catalyst": "Pd/C"}}

    options = generate_grouping_options(experiments, resolved, ["catalyst"])

    assert _members(options[0]) == [["e1", "e2"]]
    assert options[0].warnings == [
        "Duplicate experimentId ignored: e1",
        "Experiment without an experimentId was ignored",
    ]


def test_no_experiments_yields_no_options() -> None:
    assert generate_grouping_options([], {}, ["catalyst"]) == []


def test_derive_group_signatures_marks_mixed_factors() -> None:
    resolved = {
        "e1": {"catalyst": "Pd/C", "additive": "TEA"},
        "e2": {"catalyst": "Pd/C", "additive": "DMAP"},
    }
    groups = [
        Group("g1", "Both", experiment_ids=["e1", "e2"]),
        Group("g2", "Empty"),
    ]

    derived = derive_group_signatures(groups, resolved, ["catalyst", "additive"])

    assert derived[0].signature == {"catalyst": "Pd/C", "additive": MIXED_VALUE}
    assert derived[0].warnings == [MIXED_WARNING]
    assert derived[0].warning_factors == ["additive"]
    assert derived[1].signature == {"catalyst": None, "additive": None}
    assert derived[1].warnings == []
    assert groups[0].signature == {}


def test_groups_from_option_returns_independent_copies() -> None:
    resolved = {"e1": {"catalyst": "Pd/C"}}
    option = generate_grouping_options(["e1"], resolved, ["catalyst"])[0]

    groups = groups_from_option(option)
    groups[0].experiment_ids.append("e2")

    assert option.groups[0].experiment_ids == ["e1"]
