from __future__ import annotations

from typing import Any, Iterable, Mapping

from .config import DEFAULT_LIMITS, CanonicalizationLimits
from .contracts import InvalidMapping, MappingRejection, MappingValidation, ValidMapping
from .sanitize import sanitize_value, sanitize_values

MAPPING_KEY = "canonicalToAliases"
NOTES_KEY = "notes"
UNCERTAINTIES_KEY = "uncertainties"
_ALLOWED_TOP_LEVEL_KEYS = {MAPPING_KEY, NOTES_KEY, UNCERTAINTIES_KEY}


def _reject(reason: MappingRejection, message: str, **metadata: Any) -> InvalidMapping:
    return InvalidMapping(reason=reason, message=message, metadata=dict(metadata))


def _is_alias_scalar(value: Any) -> bool:
    return isinstance(value, (str, int, float)) and not isinstance(value, bool)


def _check_shape(payload: Any) -> InvalidMapping | None:
    if not isinstance(payload, Mapping):
        return _reject(MappingRejection.MALFORMED_SHAPE, "Model output must be a JSON object")
    unexpected = sorted(str(key) for key in payload.keys() if key not in _ALLOWED_TOP_LEVEL_KEYS)
    if unexpected:
        return _reject(
            MappingRejection.MALFORMED_SHAPE,
            "Model output contains unexpected fields",
            unexpected_fields=unexpected,
        )
    if not isinstance(payload.get(MAPPING_KEY), Mapping):
        return _reject(MappingRejection.MALFORMED_SHAPE, f"{MAPPING_KEY} must be an object")
    return None


def _normalize_labels(
    mapping: Mapping[Any, Any],
    limits: CanonicalizationLimits,
) -> tuple[list[tuple[str, Any]], InvalidMapping | None]:
    entries: list[tuple[str, Any]] = []
    seen: set[str] = set()
    for raw_label, aliases in mapping.items():
        if not isinstance(raw_label, str):
            return [], _reject(
                MappingRejection.EMPTY_OR_DUPLICATE_LABEL,
                "Canonical label must be a string",
                label=repr(raw_label),
            )
        label = raw_label.strip()
        if not label:
            return [], _reject(MappingRejection.EMPTY_OR_DUPLICATE_LABEL, "Canonical label is empty")
        if len(label) > limits.max_label_length:
            return [], _reject(
                MappingRejection.EMPTY_OR_DUPLICATE_LABEL,
                "Canonical label exceeds maximum length",
                label=label[: limits.max_label_length],
                max_label_length=limits.max_label_length,
            )
        if label in seen:
            return [], _reject(
                MappingRejection.EMPTY_OR_DUPLICATE_LABEL,
                "Canonical label duplicated after trimming",
                label=label,
            )
        seen.add(label)
        entries.append((label, aliases))
    return entries, None


def _validate_notes(notes: Any, limits: CanonicalizationLimits) -> tuple[str | None, InvalidMapping | None]:
    if not isinstance(notes, str):
        return None, _reject(MappingRejection.INVALID_AUXILIARY_FIELD, "notes must be a string", field=NOTES_KEY)
    if len(notes) > limits.max_notes_length:
        return None, _reject(
            MappingRejection.INVALID_AUXILIARY_FIELD,
            "notes exceeds maximum length",
            field=NOTES_KEY,
            max_notes_length=limits.max_notes_length,
        )
    return notes.strip(), None


def _validate_uncertainties(
    uncertainties: Any,
    limits: CanonicalizationLimits,
) -> tuple[list[str] | None, InvalidMapping | None]:
    if not isinstance(uncertainties, list):
        return None, _reject(
            MappingRejection.INVALID_AUXILIARY_FIELD,
            "uncertainties must be a list",
            field=UNCERTAINTIES_KEY,
        )
    if len(uncertainties) > limits.max_uncertainties:
        return None, _reject(
            MappingRejection.INVALID_AUXILIARY_FIELD,
            "uncertainties has too many entries",
            field=UNCERTAINTIES_KEY,
            max_uncertainties=limits.max_uncertainties,
        )
    normalized: list[str] = []
    for position, item in enumerate(uncertainties):
        text = item.strip() if isinstance(item, str) else ""
        if not text or len(item) > limits.max_uncertainty_length:
            return None, _reject(
                MappingRejection.INVALID_AUXILIARY_FIELD,
                "uncertainties entries must be non-empty strings within the length limit",
                field=UNCERTAINTIES_KEY,
                position=position,
            )
        normalized.append(text)
    return normalized, None


def validate_canonical_mapping(
    payload: Any,
    source_values: Iterable[Any],
    *,
    limits: CanonicalizationLimits | None = None,
) -> MappingValidation:
    """Accept a classifier answer only when it partitions ``source_values`` exactly.

    ``payload`` is the parsed classifier output
    (``{"canonicalToAliases": {...}, "notes"?: str, "uncertainties"?: [str]}``) and
    ``source_values`` the raw values that were sent to the classifier. Checks run in a fixed
    order and the first failure is returned; nothing is ever partially accepted.
    """
    active_limits = limits or DEFAULT_LIMITS
    expected = set(sanitize_values(source_values, max_length=active_limits.max_value_length))

    shape_error = _check_shape(payload)
    if shape_error is not None:
        return shape_error

    entries, label_error = _normalize_labels(payload[MAPPING_KEY], active_limits)
    if label_error is not None:
        return label_error

    canonical_to_aliases: dict[str, list[str]] = {}
    coverage: dict[str, str] = {}
    for label, raw_aliases in entries:
        if not isinstance(raw_aliases, list):
            return _reject(MappingRejection.INVALID_ALIAS, "Alias list must be a list", label=label)
        if not raw_aliases:
            return _reject(MappingRejection.INVALID_ALIAS, "Alias list is empty", label=label)
        aliases: list[str] = []
        for raw_alias in raw_aliases:
            if not _is_alias_scalar(raw_alias):
                return _reject(
                    MappingRejection.INVALID_ALIAS,
                    "Alias must be a string or number",
                    label=label,
                    alias=repr(raw_alias),
                )
            alias = sanitize_value(raw_alias, max_length=active_limits.max_value_length)
            if alias is None:
                return _reject(MappingRejection.INVALID_ALIAS, "Alias is empty after sanitizing", label=label)
            if alias in coverage:
                return _reject(
                    MappingRejection.DUPLICATE_ALIAS,
                    "Alias claimed more than once",
                    alias=alias,
                    label=label,
                    first_label=coverage[alias],
                )
            if alias not in expected:
                return _reject(
                    MappingRejection.EXTRANEOUS_ALIAS,
                    "Alias is not one of the source values",
                    alias=alias,
                    label=label,
                )
            coverage[alias] = label
            aliases.append(alias)
        canonical_to_aliases[label] = aliases

    if len(coverage) != len(expected):
        missing = sorted(value for value in expected if value not in coverage)
        return _reject(
            MappingRejection.MISSING_COVERAGE,
            "Not every source value was assigned to a canonical label",
            missing=missing,
            covered=len(coverage),
            expected=len(expected),
        )

    notes: str | None = None
    if NOTES_KEY in payload:
        notes, notes_error = _validate_notes(payload[NOTES_KEY], active_limits)
        if notes_error is not None:
            return notes_error

    uncertainties: list[str] | None = None
    if UNCERTAINTIES_KEY in payload:
        uncertainties, uncertainties_error = _validate_uncertainties(payload[UNCERTAINTIES_KEY], active_limits)
        if uncertainties_error is not None:
            return uncertainties_error

    return ValidMapping(
        canonical_to_aliases=canonical_to_aliases,
        raw_to_canonical=dict(coverage),
        notes=notes,
        uncertainties=uncertainties,
    )


__all__ = ["MAPPING_KEY", "NOTES_KEY", "UNCERTAINTIES_KEY", "validate_canonical_mapping"]
