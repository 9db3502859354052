from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from .config import DEFAULT_MAX_VALUE_LENGTH, DEFAULT_MAX_VALUES

# Integral floats at or above this magnitude keep repr() so precision loss stays visible.
_INTEGRAL_FLOAT_LIMIT = 1e16


@dataclass(slots=True)
class UniqueValues:
    values: list[str] = field(default_factory=list)
    counts: dict[str, int] = field(default_factory=dict)


def _number_text(value: int | float) -> str | None:
    if isinstance(value, int):
        try:
            return str(value)
        except ValueError:
            # Beyond the interpreter's int-to-str digit limit.
            return None
    if not math.isfinite(value):
        return None
    if value.is_integer() and abs(value) < _INTEGRAL_FLOAT_LIMIT:
        return str(int(value))
    return repr(value)


def sanitize_value(raw: Any, *, max_length: int = DEFAULT_MAX_VALUE_LENGTH) -> str | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        text = _number_text(raw)
    elif isinstance(raw, str):
        text = raw
    else:
        return None
    if text is None:
        return None
    text = text.strip()
    if not text:
        return None
    if len(text) > max_length:
        text = text[:max_length].rstrip()
    return text or None


def sanitize_values(values: Iterable[Any], *, max_length: int = DEFAULT_MAX_VALUE_LENGTH) -> list[str]:
    seen: set[str] = set()
    sanitized: list[str] = []
    for raw in values:
        value = sanitize_value(raw, max_length=max_length)
        if value is None or value in seen:
            continue
        seen.add(value)
        sanitized.append(value)
    return sanitized


def _experiment_metadata(experiment: Any) -> Mapping[str, Any]:
    if isinstance(experiment, Mapping):
        for key in ("metadata", "metaRaw", "meta"):
            value = experiment.get(key)
            if isinstance(value, Mapping):
                return value
        return {}
    value = getattr(experiment, "metadata", None)
    return value if isinstance(value, Mapping) else {}


def collect_unique_values(
    experiments: Sequence[Any],
    column_name: str,
    *,
    max_values: int = DEFAULT_MAX_VALUES,
    max_length: int = DEFAULT_MAX_VALUE_LENGTH,
) -> UniqueValues:
    column = column_name.strip() if isinstance(column_name, str) else ""
    if not column:
        return UniqueValues()

    counts: dict[str, int] = {}
    first_seen: dict[str, int] = {}
    for position, experiment in enumerate(experiments):
        value = sanitize_value(_experiment_metadata(experiment).get(column), max_length=max_length)
        if value is None:
            continue
        counts[value] = counts.get(value, 0) + 1
        first_seen.setdefault(value, position)

    ordered = sorted(counts, key=lambda value: (-counts[value], first_seen[value]))
    limited = ordered[: max(0, int(max_values))]
    return UniqueValues(values=limited, counts={value: counts[value] for value in limited})


__all__ = ["UniqueValues", "collect_unique_values", "sanitize_value", "sanitize_values"]
