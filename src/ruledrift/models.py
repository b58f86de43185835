"""Data models for desired-state records, canonical rules and drift records.

Desired-state records and the workspace map are Pydantic models so that
YAML is validated at the boundary. Canonical rules and drift records are
frozen dataclasses: they are produced by the engine, never parsed.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from pathlib import PurePosixPath
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_serializer, field_validator

from .durations import format_duration, parse_duration
from .errors import NotFoundError, UnrecognizedFormat

# Local rule names double as file names
VALID_RULE_NAME_PATTERN = r"^[a-z0-9]+(?:-[a-z0-9]+)*$"
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"

DEFAULT_MATCHING_METHOD = "AllEntities"
KNOWN_MATCHING_METHODS = ("AllEntities", "AnyAlert", "Selected")


class Severity(str, Enum):
    """Alert severity levels."""

    CRITICAL = "Critical"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"
    INFORMATIONAL = "Informational"

    @classmethod
    def parse(cls, value: Any) -> Severity:
        """Match a severity case-insensitively.

        Raises:
            ValueError: If the value is not a known severity.
        """
        if isinstance(value, Severity):
            return value
        if isinstance(value, str):
            for member in cls:
                if member.value.lower() == value.strip().lower():
                    return member
        valid = [s.value for s in cls]
        raise ValueError(f"severity must be one of {valid}: {value!r}")


# =============================================================================
# Desired State
# =============================================================================


class EntityMapping(BaseModel):
    """One entity-to-column mapping of a rule."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    entity_type: Annotated[str, Field(min_length=1, alias="entityType")]
    identifier: Annotated[str, Field(min_length=1)]
    column_name: Annotated[str, Field(min_length=1, alias="columnName")]


class GroupingConfig(BaseModel):
    """Alert grouping settings. Absent values are defaulted during canonicalization."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    enabled: bool | None = None
    matching_method: str | None = Field(None, alias="matchingMethod")


class RuleDefinition(BaseModel):
    """A scheduled detection rule as declared in the desired-state store.

    The query body lives in a separate file referenced by ``query_file``.
    ConfigStore attaches the loaded text as ``query``; it is never written
    back into the collection file.
    """

    model_config = {"extra": "forbid", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=128)]
    display_name: Annotated[str, Field(min_length=1, alias="displayName")]
    query_file: str = Field(alias="queryFile")
    severity: Severity
    enabled: bool = True
    query_frequency: timedelta = Field(alias="queryFrequency")
    query_period: timedelta = Field(alias="queryPeriod")
    tactics: list[str] = Field(default_factory=list)
    techniques: list[str] = Field(default_factory=list)
    create_incident: bool = Field(True, alias="createIncident")
    grouping: GroupingConfig | None = None
    entity_mappings: list[EntityMapping] = Field(default_factory=list, alias="entityMappings")
    custom_details: dict[str, str] = Field(default_factory=dict, alias="customDetails")
    remote_name: str | None = Field(None, alias="remoteName")

    query: str = Field("", exclude=True)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not re.match(VALID_RULE_NAME_PATTERN, v):
            raise ValueError(f"name must match {VALID_RULE_NAME_PATTERN}")
        return v

    @field_validator("severity", mode="before")
    @classmethod
    def validate_severity(cls, v: Any) -> Severity:
        return Severity.parse(v)

    @field_validator("query_frequency", "query_period", mode="before")
    @classmethod
    def validate_duration(cls, v: Any) -> timedelta:
        try:
            return parse_duration(v)
        except UnrecognizedFormat as e:
            raise ValueError(str(e)) from e

    @field_validator("query_file")
    @classmethod
    def validate_query_file(cls, v: str) -> str:
        # SECURITY: query bodies must stay inside the environment directory
        path = PurePosixPath(v)
        if not v or path.is_absolute() or ".." in path.parts or "\\" in v:
            raise ValueError(f"queryFile must be a relative path inside the environment: {v!r}")
        return v

    @field_serializer("query_frequency", "query_period")
    def serialize_duration(self, v: timedelta) -> str:
        return format_duration(v)

    def to_record(self) -> dict[str, Any]:
        """Serialize to the YAML record shape (camelCase keys, no query text)."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# =============================================================================
# Workspace Map
# =============================================================================


class WorkspaceRef(BaseModel):
    """Coordinates of the Sentinel workspace behind one organization/environment."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    subscription_id: str = Field(alias="subscriptionId")
    resource_group: Annotated[str, Field(min_length=1, max_length=90, alias="resourceGroup")]
    workspace_name: Annotated[str, Field(min_length=4, max_length=63, alias="workspaceName")]

    @field_validator("subscription_id")
    @classmethod
    def validate_subscription_id(cls, v: str) -> str:
        if not re.match(VALID_SUBSCRIPTION_ID_PATTERN, v.lower()):
            raise ValueError(f"subscriptionId must be a valid GUID: {v}")
        return v.lower()

    @property
    def alert_rules_path(self) -> str:
        """Resource path of the workspace's alert rule collection."""
        return (
            f"/subscriptions/{self.subscription_id}"
            f"/resourceGroups/{self.resource_group}"
            f"/providers/Microsoft.OperationalInsights/workspaces/{self.workspace_name}"
            f"/providers/Microsoft.SecurityInsights/alertRules"
        )


class WorkspaceMap(BaseModel):
    """Organization → environment → workspace mapping."""

    model_config = {"extra": "ignore"}

    organizations: dict[str, dict[str, WorkspaceRef]] = Field(default_factory=dict)

    def resolve(self, org: str, env: str) -> WorkspaceRef:
        """Look up the workspace for an organization/environment pair.

        Raises:
            NotFoundError: If either name is unknown.
        """
        environments = self.organizations.get(org)
        if environments is None:
            raise NotFoundError(f"Organization '{org}' is not in the workspace map")
        workspace = environments.get(env)
        if workspace is None:
            raise NotFoundError(
                f"Environment '{env}' does not exist for organization '{org}'. "
                f"Known environments: {sorted(environments)}"
            )
        return workspace


# =============================================================================
# Canonical Form
# =============================================================================


class RuleSource(str, Enum):
    """Which side produced a canonical record."""

    DESIRED = "desired"
    ACTUAL = "actual"


@dataclass(frozen=True, order=True)
class CanonicalEntity:
    """One entity mapping flattened to a (type, identifier, column) triple."""

    entity_type: str
    identifier: str
    column_name: str

    def __str__(self) -> str:
        return f"{self.entity_type}.{self.identifier}={self.column_name}"


@dataclass(frozen=True)
class Grouping:
    """Alert grouping after defaults have been applied."""

    enabled: bool
    matching_method: str

    def __str__(self) -> str:
        return f"enabled={str(self.enabled).lower()}, matchingMethod={self.matching_method}"


@dataclass(frozen=True)
class CanonicalRule:
    """The unified schema both desired and actual records are projected into.

    Attributes:
        identifier: Local rule name (desired) or remote resource name (actual).
        deployment_name: Remote resource name; the key used to pair rules.
        source: Provenance tag; excluded from equality.
    """

    identifier: str
    deployment_name: str
    display_name: str
    query: str
    severity: Severity
    enabled: bool
    frequency: timedelta
    period: timedelta
    tactics: frozenset[str]
    techniques: frozenset[str]
    create_incident: bool
    grouping: Grouping
    entities: frozenset[CanonicalEntity]
    custom_details: tuple[tuple[str, str], ...] = ()
    source: RuleSource = field(default=RuleSource.DESIRED, compare=False)


# =============================================================================
# Drift
# =============================================================================


class DriftClassification(str, Enum):
    """Kinds of divergence reported by the diff engine."""

    MISSING_IN_ACTUAL = "MissingInActual"
    EXTRA_IN_ACTUAL = "ExtraInActual"
    MODIFIED = "Modified"
    MISSING_IN_TARGET = "MissingInTarget"


@dataclass(frozen=True)
class FieldDiff:
    """A single field whose desired and actual values differ."""

    field: str
    desired_value: Any
    actual_value: Any


@dataclass(frozen=True)
class DriftRecord:
    """Drift for one rule.

    ``field_diffs`` is only populated for MODIFIED. ``desired`` and
    ``actual`` keep the canonical records the drift was computed from.
    """

    rule_identifier: str
    classification: DriftClassification
    field_diffs: tuple[FieldDiff, ...] = ()
    desired: CanonicalRule | None = None
    actual: CanonicalRule | None = None
