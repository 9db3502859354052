from __future__ import annotations

from dataclasses import replace
from typing import Any, Mapping, Sequence

from .contracts import ExperimentFactors, FactorOverride, FactorOverrideMap, FactorScalar, FactorTable, FactorValue

_MISSING = object()


def _read(source: Any, key: str, default: Any = None) -> Any:
    if isinstance(source, Mapping):
        return source.get(key, default)
    return getattr(source, key, default)


def _override_value(entry: Any) -> Any:
    """Return the overriding value, or ``_MISSING`` when ``entry`` is not an override."""
    if entry is None:
        return _MISSING
    if isinstance(entry, FactorOverride):
        return entry.value
    if isinstance(entry, Mapping):
        if "value" not in entry:
            return _MISSING
        return entry["value"]
    return _MISSING


def _overrides_for(overrides: FactorOverrideMap | None, experiment_id: str) -> Mapping[str, Any]:
    if not overrides:
        return {}
    per_experiment = overrides.get(experiment_id)
    return per_experiment if isinstance(per_experiment, Mapping) else {}


def resolve_factor(
    experiment_id: str,
    factor_name: str,
    overrides: FactorOverrideMap | None,
    extracted_factors: Sequence[FactorValue | Mapping[str, Any]],
) -> FactorScalar:
    override = _override_value(_overrides_for(overrides, experiment_id).get(factor_name))
    if override is not _MISSING:
        return override
    for factor in extracted_factors:
        if _read(factor, "name") == factor_name:
            return _read(factor, "value")
    return None


def available_factor_names(experiments: Sequence[ExperimentFactors | Mapping[str, Any]]) -> list[str]:
    names: list[str] = []
    for experiment in experiments:
        for factor in _read(experiment, "factors", None) or []:
            name = _read(factor, "name")
            if isinstance(name, str) and name and name not in names:
                names.append(name)
    return names


def build_factor_table(
    experiments: Sequence[ExperimentFactors | Mapping[str, Any]],
    overrides: FactorOverrideMap | None,
    *,
    factor_names: Sequence[str] | None = None,
) -> FactorTable:
    table: FactorTable = {}
    for experiment in experiments:
        experiment_id = _read(experiment, "experiment_id") or _read(experiment, "experimentId")
        if not isinstance(experiment_id, str) or experiment_id in table:
            continue
        extracted = list(_read(experiment, "factors", None) or [])
        names: list[str] = list(factor_names or [])
        for factor in extracted:
            name = _read(factor, "name")
            if isinstance(name, str) and name not in names:
                names.append(name)
        for name, entry in _overrides_for(overrides, experiment_id).items():
            if name not in names and _override_value(entry) is not _MISSING:
                names.append(name)
        table[experiment_id] = {
            name: resolve_factor(experiment_id, name, overrides, extracted) for name in names
        }
    return table


def apply_overrides(
    experiments: Sequence[ExperimentFactors],
    overrides: FactorOverrideMap | None,
) -> list[ExperimentFactors]:
    applied: list[ExperimentFactors] = []
    for experiment in experiments:
        per_experiment = _overrides_for(overrides, experiment.experiment_id)
        factors: list[FactorValue] = []
        for factor in experiment.factors:
            value = _override_value(per_experiment.get(factor.name))
            if value is _MISSING:
                factors.append(replace(factor, provenance=list(factor.provenance)))
            else:
                factors.append(replace(factor, value=value, provenance=list(factor.provenance)))
        applied.append(replace(experiment, factors=factors, warnings=list(experiment.warnings)))
    return applied


__all__ = ["apply_overrides", "available_factor_names", "build_factor_table", "resolve_factor"]
