from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Mapping, NotRequired, Protocol, Sequence, TypeAlias, TypedDict


CONTRACT_VERSION = "1.0.0"
API_CONTRACT_VERSION = "1.0.0"


JSONPrimitive: TypeAlias = str | int | float | bool | None
JSONValue: TypeAlias = JSONPrimitive | list["JSONValue"] | dict[str, "JSONValue"]
Metadata: TypeAlias = dict[str, JSONValue]

RawValue: TypeAlias = str | int | float | None
FactorScalar: TypeAlias = str | int | float | None
Signature: TypeAlias = dict[str, FactorScalar]


class Confidence(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


ConfidenceLiteral: TypeAlias = Literal["low", "medium", "high"]


class MappingRejection(str, Enum):
    MALFORMED_SHAPE = "malformed_shape"
    EMPTY_OR_DUPLICATE_LABEL = "empty_or_duplicate_label"
    INVALID_ALIAS = "invalid_alias"
    DUPLICATE_ALIAS = "duplicate_alias"
    EXTRANEOUS_ALIAS = "extraneous_alias"
    MISSING_COVERAGE = "missing_coverage"
    INVALID_AUXILIARY_FIELD = "invalid_auxiliary_field"


class ErrorKind(str, Enum):
    INVALID_REQUEST = "invalid_request"
    INVALID_MODEL_OUTPUT = "invalid_model_output"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    CONFIG_MISSING = "config_missing"


class ColumnType(str, Enum):
    NUMERIC = "numeric"
    TEXT = "text"
    MIXED = "mixed"


class ColumnRole(str, Enum):
    CONDITION = "condition"
    COMMENT = "comment"
    NOISE = "noise"


@dataclass(slots=True)
class ProvenanceSnippet:
    column: str
    raw_value_snippet: str
    version: str = CONTRACT_VERSION


@dataclass(slots=True)
class FactorValue:
    name: str
    value: FactorScalar
    confidence: ConfidenceLiteral = "low"
    provenance: list[ProvenanceSnippet] = field(default_factory=list)
    version: str = CONTRACT_VERSION


@dataclass(slots=True)
class FactorOverride:
    value: FactorScalar
    note: str | None = None
    version: str = CONTRACT_VERSION


@dataclass(slots=True)
class Experiment:
    experiment_id: str
    metadata: dict[str, RawValue] = field(default_factory=dict)
    version: str = CONTRACT_VERSION


@dataclass(slots=True)
class ExperimentFactors:
    experiment_id: str
    factors: list[FactorValue] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    version: str = CONTRACT_VERSION


@dataclass(slots=True)
class Group:
    group_id: str
    name: str
    experiment_ids: list[str] = field(default_factory=list)
    signature: Signature = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    warning_factors: list[str] = field(default_factory=list)
    created_from_recipe: str | None = None
    version: str = CONTRACT_VERSION


@dataclass(slots=True)
class GroupingOption:
    recipe_id: str
    description: str
    factors_used: list[str]
    groups: list[Group]
    warnings: list[str] = field(default_factory=list)
    version: str = CONTRACT_VERSION


@dataclass(slots=True)
class ColumnSummary:
    name: str
    type_heuristic: ColumnType = ColumnType.TEXT
    non_null_ratio: float = 0.0
    examples: list[str] = field(default_factory=list)
    version: str = CONTRACT_VERSION


@dataclass(slots=True)
class ColumnScanResult:
    selected_columns: list[str] = field(default_factory=list)
    column_roles: dict[str, ColumnRole] = field(default_factory=dict)
    factor_candidates: list[str] = field(default_factory=list)
    notes: str = ""
    uncertainties: list[str] = field(default_factory=list)
    version: str = CONTRACT_VERSION


@dataclass(slots=True)
class AuditEvent:
    event_type: str
    message: str
    request_id: str | None = None
    metadata: Metadata = field(default_factory=dict)
    version: str = CONTRACT_VERSION


@dataclass(slots=True)
class ValidMapping:
    canonical_to_aliases: dict[str, list[str]]
    raw_to_canonical: dict[str, str]
    notes: str | None = None
    uncertainties: list[str] | None = None
    version: str = CONTRACT_VERSION

    @property
    def ok(self) -> bool:
        return True


@dataclass(slots=True)
class InvalidMapping:
    reason: MappingRejection
    message: str
    metadata: Metadata = field(default_factory=dict)
    version: str = CONTRACT_VERSION

    @property
    def ok(self) -> bool:
        return False


MappingValidation: TypeAlias = ValidMapping | InvalidMapping

FactorOverrideEntry: TypeAlias = FactorOverride | Mapping[str, Any] | None
FactorOverrideMap: TypeAlias = Mapping[str, Mapping[str, FactorOverrideEntry]]
FactorTable: TypeAlias = dict[str, dict[str, FactorScalar]]


class CanonicalizationRequest(TypedDict):
    columnName: str
    values: list[str | int | float]


class CanonicalizationResultPayload(TypedDict):
    canonicalToAliases: dict[str, list[str]]
    notes: NotRequired[str]
    uncertainties: NotRequired[list[str]]


class CanonicalizationSuccessResponse(TypedDict):
    ok: Literal[True]
    requestId: str
    result: CanonicalizationResultPayload


class CanonicalizationErrorResponse(TypedDict):
    ok: Literal[False]
    requestId: str
    error: str
    kind: NotRequired[str]
    details: NotRequired[str]


CanonicalizationResponse: TypeAlias = CanonicalizationSuccessResponse | CanonicalizationErrorResponse


class ColumnSummaryPayload(TypedDict):
    name: str
    typeHeuristic: str
    nonNullRatio: float
    examples: list[str]


class ColumnScanPayload(TypedDict):
    columns: list[ColumnSummaryPayload]
    experimentCount: int
    knownStructuralColumns: list[str]


class FactorExtractionPayload(TypedDict):
    factorCandidates: list[str]
    selectedColumns: list[str]
    experiments: list[dict[str, Any]]


class GroupEditAction(TypedDict, total=False):
    type: Literal["move", "create", "rename", "merge", "split"]
    experimentId: str
    targetGroupId: str
    groupId: str
    groupIds: list[str]
    name: str
    partitions: list[list[str]]


class ClassifierClient(Protocol):
    def complete(self, prompt: str, system: str | None = None, timeout_s: float | None = None) -> str: ...


class ValidateCanonicalMapping(Protocol):
    def __call__(self, payload: Any, source_values: Sequence[Any]) -> MappingValidation: ...


class GenerateGroupingOptions(Protocol):
    def __call__(
        self,
        experiments: Sequence[Any],
        resolved_factors: Mapping[str, Mapping[str, FactorScalar]],
        available_factor_names: Sequence[str],
    ) -> list[GroupingOption]: ...


__all__ = [
    "API_CONTRACT_VERSION",
    "AuditEvent",
    "CONTRACT_VERSION",
    "CanonicalizationErrorResponse",
    "CanonicalizationRequest",
    "CanonicalizationResponse",
    "CanonicalizationResultPayload",
    "CanonicalizationSuccessResponse",
    "ClassifierClient",
    "ColumnRole",
    "ColumnScanPayload",
    "ColumnScanResult",
    "ColumnSummary",
    "ColumnSummaryPayload",
    "ColumnType",
    "Confidence",
    "ConfidenceLiteral",
    "ErrorKind",
    "Experiment",
    "ExperimentFactors",
    "FactorExtractionPayload",
    "FactorOverride",
    "FactorOverrideEntry",
    "FactorOverrideMap",
    "FactorScalar",
    "FactorTable",
    "FactorValue",
    "GenerateGroupingOptions",
    "Group",
    "GroupEditAction",
    "GroupingOption",
    "InvalidMapping",
    "JSONValue",
    "MappingRejection",
    "MappingValidation",
    "Metadata",
    "ProvenanceSnippet",
    "RawValue",
    "Signature",
    "ValidMapping",
    "ValidateCanonicalMapping",
]
