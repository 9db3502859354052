from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Mapping


DEFAULT_MAX_VALUES = 300
DEFAULT_MAX_VALUE_LENGTH = 120
DEFAULT_MAX_LABEL_LENGTH = 120
DEFAULT_MAX_NOTES_LENGTH = 600
DEFAULT_MAX_UNCERTAINTY_LENGTH = 200
DEFAULT_MAX_UNCERTAINTIES = 20
DEFAULT_CLASSIFIER_TIMEOUT_S = 25.0


def _as_text(value: Any, fallback: str = "") -> str:
    if not isinstance(value, str):
        return fallback
    text = value.strip()
    return text or fallback


def _as_float(value: Any, fallback: float) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return fallback
    if parsed <= 0:
        return fallback
    return parsed


def _as_int(value: Any, fallback: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return fallback
    if parsed <= 0:
        return fallback
    return parsed


def _as_bool(value: Any, fallback: bool | None = None) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on", "y"}:
            return True
        if normalized in {"0", "false", "no", "off", "n"}:
            return False
    return fallback


@dataclass(slots=True, frozen=True)
class CanonicalizationLimits:
    max_values: int = DEFAULT_MAX_VALUES
    max_value_length: int = DEFAULT_MAX_VALUE_LENGTH
    max_label_length: int = DEFAULT_MAX_LABEL_LENGTH
    max_notes_length: int = DEFAULT_MAX_NOTES_LENGTH
    max_uncertainty_length: int = DEFAULT_MAX_UNCERTAINTY_LENGTH
    max_uncertainties: int = DEFAULT_MAX_UNCERTAINTIES

    def as_dict(self) -> dict[str, int]:
        return {
            "max_values": self.max_values,
            "max_value_length": self.max_value_length,
            "max_label_length": self.max_label_length,
            "max_notes_length": self.max_notes_length,
            "max_uncertainty_length": self.max_uncertainty_length,
            "max_uncertainties": self.max_uncertainties,
        }


DEFAULT_LIMITS = CanonicalizationLimits()


def load_limits_from_env(env: Mapping[str, str] | None = None) -> CanonicalizationLimits:
    env_map: Mapping[str, str] = env if env is not None else os.environ
    return CanonicalizationLimits(
        max_values=_as_int(env_map.get("META_NORM_MAX_VALUES"), DEFAULT_MAX_VALUES),
        max_value_length=_as_int(env_map.get("META_NORM_MAX_VALUE_LENGTH"), DEFAULT_MAX_VALUE_LENGTH),
        max_label_length=_as_int(env_map.get("META_NORM_MAX_LABEL_LENGTH"), DEFAULT_MAX_LABEL_LENGTH),
        max_notes_length=_as_int(env_map.get("META_NORM_MAX_NOTES_LENGTH"), DEFAULT_MAX_NOTES_LENGTH),
        max_uncertainty_length=_as_int(
            env_map.get("META_NORM_MAX_UNCERTAINTY_LENGTH"), DEFAULT_MAX_UNCERTAINTY_LENGTH
        ),
        max_uncertainties=_as_int(env_map.get("META_NORM_MAX_UNCERTAINTIES"), DEFAULT_MAX_UNCERTAINTIES),
    )


__all__ = [
    "CanonicalizationLimits",
    "DEFAULT_CLASSIFIER_TIMEOUT_S",
    "DEFAULT_LIMITS",
    "load_limits_from_env",
]
