from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from .contracts import FactorScalar, Group, GroupingOption, Signature

UNSPECIFIED_BIN = "unspecified"
MIXED_VALUE = "(mixed)"
MIXED_WARNING = "Mixed/conflicting factors"
DEFAULT_COMPANION_FACTORS = ("catalyst", "additive")

_TEMPERATURE_BANDS = (
    (30.0, "<30°C"),
    (60.0, "30-59°C"),
    (90.0, "60-89°C"),
)
_TEMPERATURE_TOP_BAND = "90°C+"


@dataclass(slots=True, frozen=True)
class Recipe:
    recipe_id: str
    description: str
    factors: tuple[str, ...]
    binned_factor: str | None = None


RECIPES: tuple[Recipe, ...] = (
    Recipe("by-catalyst", "Group by catalyst", ("catalyst",)),
    Recipe("by-catalyst-additive", "Group by catalyst + additive", ("catalyst", "additive")),
    Recipe("by-substrate-catalyst", "Group by substrate + catalyst", ("substrate", "catalyst")),
    Recipe("by-temperature-bin", "Group by temperature bins", ("temperature",), binned_factor="temperature"),
)
ALL_IN_ONE = "all-in-one"
ONE_PER_EXPERIMENT = "one-per-experiment"
BY_FIRST_FACTOR = "by-first-factor"


def _read(source: Any, key: str, default: Any = None) -> Any:
    if isinstance(source, Mapping):
        return source.get(key, default)
    return getattr(source, key, default)


def _experiment_id(experiment: Any) -> str | None:
    if isinstance(experiment, str):
        return experiment
    value = _read(experiment, "experiment_id")
    if value is None:
        value = _read(experiment, "experimentId")
    return value if isinstance(value, str) and value else None


def make_group_id(recipe_id: str, ordinal: int) -> str:
    return f"group-{recipe_id}-{ordinal}"


def normalize_factor_value(value: Any) -> FactorScalar:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value if math.isfinite(value) else None
    text = str(value).strip()
    return text or None


def temperature_bin(value: Any) -> str:
    if value is None or isinstance(value, bool):
        return UNSPECIFIED_BIN
    try:
        numeric = float(value.strip() if isinstance(value, str) else value)
    except (TypeError, ValueError):
        return UNSPECIFIED_BIN
    if not math.isfinite(numeric):
        return UNSPECIFIED_BIN
    for upper, label in _TEMPERATURE_BANDS:
        if numeric < upper:
            return label
    return _TEMPERATURE_TOP_BAND


def _value_key(value: FactorScalar) -> tuple[str, FactorScalar]:
    if value is None:
        return ("null", None)
    if isinstance(value, (int, float)):
        return ("number", value)
    return ("text", value)


def _display(value: FactorScalar) -> str:
    return UNSPECIFIED_BIN if value is None else str(value)


def _ordered_experiment_ids(experiments: Sequence[Any]) -> tuple[list[str], list[str]]:
    ordered: list[str] = []
    seen: set[str] = set()
    warnings: list[str] = []
    for experiment in experiments:
        experiment_id = _experiment_id(experiment)
        if experiment_id is None:
            warnings.append("Experiment without an experimentId was ignored")
            continue
        if experiment_id in seen:
            warnings.append(f"Duplicate experimentId ignored: {experiment_id}")
            continue
        seen.add(experiment_id)
        ordered.append(experiment_id)
    return ordered, warnings


def _factor_value(resolved: Mapping[str, Mapping[str, Any]], experiment_id: str, factor_name: str) -> FactorScalar:
    row = resolved.get(experiment_id)
    if not isinstance(row, Mapping):
        return None
    return normalize_factor_value(row.get(factor_name))


def _is_available(
    factor_name: str,
    experiment_ids: Sequence[str],
    resolved: Mapping[str, Mapping[str, Any]],
    available: set[str],
) -> bool:
    if factor_name not in available:
        return False
    return any(_factor_value(resolved, experiment_id, factor_name) is not None for experiment_id in experiment_ids)


def _group_warnings(
    signature: Signature,
    members: Sequence[str],
    recipe: Recipe,
    resolved: Mapping[str, Mapping[str, Any]],
    companion_factors: Sequence[str],
) -> tuple[list[str], list[str]]:
    warnings: list[str] = []
    warning_factors: list[str] = []
    missing = [
        factor
        for factor in recipe.factors
        if factor != recipe.binned_factor and signature.get(factor) is None
    ]
    if missing:
        warnings.append(f"Missing factor values: {', '.join(missing)}")
        warning_factors.extend(missing)
    for factor in companion_factors:
        if factor in recipe.factors:
            continue
        distinct: list[FactorScalar] = []
        for experiment_id in members:
            value = _factor_value(resolved, experiment_id, factor)
            if value is not None and value not in distinct:
                distinct.append(value)
        if len(distinct) > 1:
            warnings.append(f"{factor} differs across experiments")
            if factor not in warning_factors:
                warning_factors.append(factor)
    return warnings, warning_factors


def build_recipe_option(
    recipe: Recipe,
    experiment_ids: Sequence[str],
    resolved: Mapping[str, Mapping[str, Any]],
    *,
    companion_factors: Sequence[str] = DEFAULT_COMPANION_FACTORS,
) -> GroupingOption:
    buckets: dict[tuple[FactorScalar, ...], tuple[Signature, list[str]]] = {}
    for experiment_id in experiment_ids:
        signature: Signature = {}
        for factor in recipe.factors:
            if factor == recipe.binned_factor:
                row = resolved.get(experiment_id)
                raw = row.get(factor) if isinstance(row, Mapping) else None
                signature[factor] = temperature_bin(raw)
            else:
                signature[factor] = _factor_value(resolved, experiment_id, factor)
        key = tuple(_value_key(signature[factor]) for factor in recipe.factors)
        if key in buckets:
            buckets[key][1].append(experiment_id)
        else:
            buckets[key] = (signature, [experiment_id])

    groups: list[Group] = []
    for ordinal, (signature, members) in enumerate(buckets.values(), start=1):
        warnings, warning_factors = _group_warnings(signature, members, recipe, resolved, companion_factors)
        groups.append(
            Group(
                group_id=make_group_id(recipe.recipe_id, ordinal),
                name=" | ".join(f"{factor}: {_display(signature[factor])}" for factor in recipe.factors),
                experiment_ids=list(members),
                signature=dict(signature),
                warnings=warnings,
                warning_factors=warning_factors,
                created_from_recipe=recipe.recipe_id,
            )
        )
    return GroupingOption(
        recipe_id=recipe.recipe_id,
        description=recipe.description,
        factors_used=list(recipe.factors),
        groups=groups,
    )


def _all_in_one(
    experiment_ids: Sequence[str],
    resolved: Mapping[str, Mapping[str, Any]],
    companion_factors: Sequence[str],
) -> GroupingOption:
    recipe = Recipe(ALL_IN_ONE, "Single group with all experiments", ())
    warnings, warning_factors = _group_warnings({}, experiment_ids, recipe, resolved, companion_factors)
    group = Group(
        group_id=make_group_id(ALL_IN_ONE, 1),
        name="All experiments",
        experiment_ids=list(experiment_ids),
        warnings=warnings,
        warning_factors=warning_factors,
        created_from_recipe=ALL_IN_ONE,
    )
    return GroupingOption(recipe_id=ALL_IN_ONE, description=recipe.description, factors_used=[], groups=[group])


def _one_per_experiment(experiment_ids: Sequence[str]) -> GroupingOption:
    groups = [
        Group(
            group_id=make_group_id(ONE_PER_EXPERIMENT, ordinal),
            name=f"Group for {experiment_id}",
            experiment_ids=[experiment_id],
            created_from_recipe=ONE_PER_EXPERIMENT,
        )
        for ordinal, experiment_id in enumerate(experiment_ids, start=1)
    ]
    return GroupingOption(
        recipe_id=ONE_PER_EXPERIMENT,
        description="One group per experiment",
        factors_used=[],
        groups=groups,
    )


def generate_grouping_options(
    experiments: Sequence[Any],
    resolved_factors: Mapping[str, Mapping[str, Any]],
    available_factor_names: Sequence[str],
    *,
    companion_factors: Sequence[str] = DEFAULT_COMPANION_FACTORS,
) -> list[GroupingOption]:
    """Build one deterministic partition of ``experiments`` per applicable recipe.

    ``experiments`` may hold experiment ids, ``Experiment``/``ExperimentFactors`` objects or
    mappings carrying ``experimentId``. ``resolved_factors`` is the effective factor table
    (see ``factors.build_factor_table``). Identical inputs always give identical groups,
    group ids included.
    """
    experiment_ids, input_warnings = _ordered_experiment_ids(experiments)
    if not experiment_ids:
        return []

    available = {name for name in available_factor_names if isinstance(name, str)}
    options: list[GroupingOption] = []
    for recipe in RECIPES:
        if all(_is_available(factor, experiment_ids, resolved_factors, available) for factor in recipe.factors):
            options.append(
                build_recipe_option(recipe, experiment_ids, resolved_factors, companion_factors=companion_factors)
            )

    if not options:
        fallback = next(
            (
                name
                for name in available_factor_names
                if isinstance(name, str) and _is_available(name, experiment_ids, resolved_factors, available)
            ),
            None,
        )
        if fallback is not None:
            recipe = Recipe(BY_FIRST_FACTOR, f"Group by {fallback}", (fallback,))
            options.append(
                build_recipe_option(recipe, experiment_ids, resolved_factors, companion_factors=companion_factors)
            )

    options.append(_all_in_one(experiment_ids, resolved_factors, companion_factors))
    options.append(_one_per_experiment(experiment_ids))
    for option in options:
        option.warnings = list(input_warnings)
    return options


def derive_group_signatures(
    groups: Sequence[Group],
    resolved_factors: Mapping[str, Mapping[str, Any]],
    factor_names: Sequence[str],
) -> list[Group]:
    derived: list[Group] = []
    for group in groups:
        signature: Signature = {}
        mixed: list[str] = []
        for factor in factor_names:
            distinct: list[tuple[str, FactorScalar]] = []
            for experiment_id in group.experiment_ids:
                value = _factor_value(resolved_factors, experiment_id, factor)
                marker = _value_key(value)
                if marker not in distinct:
                    distinct.append(marker)
            if not distinct:
                signature[factor] = None
            elif len(distinct) == 1:
                signature[factor] = distinct[0][1]
            else:
                signature[factor] = MIXED_VALUE
                mixed.append(factor)
        warnings = [warning for warning in group.warnings if warning != MIXED_WARNING]
        warning_factors = list(group.warning_factors)
        if mixed:
            warnings.append(MIXED_WARNING)
            warning_factors.extend(factor for factor in mixed if factor not in warning_factors)
        derived.append(
            Group(
                group_id=group.group_id,
                name=group.name,
                experiment_ids=list(group.experiment_ids),
                signature=signature,
                warnings=warnings,
                warning_factors=warning_factors,
                created_from_recipe=group.created_from_recipe,
                version=group.version,
            )
        )
    return derived


def groups_from_option(option: GroupingOption) -> list[Group]:
    return [
        Group(
            group_id=group.group_id,
            name=group.name,
            experiment_ids=list(group.experiment_ids),
            signature=dict(group.signature),
            warnings=list(group.warnings),
            warning_factors=list(group.warning_factors),
            created_from_recipe=group.created_from_recipe or option.recipe_id,
            version=group.version,
        )
        for group in option.groups
    ]


__all__ = [
    "ALL_IN_ONE",
    "BY_FIRST_FACTOR",
    "DEFAULT_COMPANION_FACTORS",
    "MIXED_VALUE",
    "MIXED_WARNING",
    "ONE_PER_EXPERIMENT",
    "RECIPES",
    "Recipe",
    "UNSPECIFIED_BIN",
    "build_recipe_option",
    "derive_group_signatures",
    "generate_grouping_options",
    "groups_from_option",
    "make_group_id",
    "normalize_factor_value",
    "temperature_bin",
]
