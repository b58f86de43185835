"""Projection of desired and remote rule records into the canonical schema.

Remote records come in several historical shapes:
- ARM envelope ({"name", "kind", "properties": {...}}) or a flat export
  with every attribute at the top level and PascalCase keys
- Durations as clock time ("1:00:00") or ISO 8601 ("PT1H")
- Entity mappings as a flat object of well-known *CustomEntity keys, as a
  typed array of {entityType, fieldMappings}, or as flat typed entries
- Grouping configuration nested under incidentConfiguration, flattened,
  partially populated, or missing

Each shape is decoded by trying its parse rule in a fixed priority order.
A value that matches none of them raises UnrecognizedFormat; nothing is
guessed.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from .durations import parse_duration
from .errors import UnrecognizedFormat
from .models import (
    DEFAULT_MATCHING_METHOD,
    KNOWN_MATCHING_METHODS,
    CanonicalEntity,
    CanonicalRule,
    EntityMapping,
    Grouping,
    GroupingConfig,
    RuleDefinition,
    RuleSource,
    Severity,
)

logger = logging.getLogger(__name__)

# Legacy flat entity keys → (entityType, identifier)
LEGACY_ENTITY_KEYS: dict[str, tuple[str, str]] = {
    "accountcustomentity": ("Account", "FullName"),
    "hostcustomentity": ("Host", "FullName"),
    "ipcustomentity": ("IP", "Address"),
    "urlcustomentity": ("URL", "Url"),
    "filehashcustomentity": ("FileHash", "Value"),
}

# Attribute aliases, matched case-insensitively
DISPLAY_NAME_KEYS = ("displayName",)
QUERY_KEYS = ("query",)
SEVERITY_KEYS = ("severity",)
ENABLED_KEYS = ("enabled",)
FREQUENCY_KEYS = ("queryFrequency",)
PERIOD_KEYS = ("queryPeriod",)
TACTICS_KEYS = ("tactics", "tactic")
TECHNIQUES_KEYS = ("techniques", "technique")
ENTITY_KEYS = ("entityMappings", "entityMapping")
CUSTOM_DETAILS_KEYS = ("customDetails", "customDetail")
INCIDENT_CONFIG_KEYS = ("incidentConfiguration",)
FLAT_CREATE_INCIDENT_KEYS = ("incidentConfigurationCreateIncident", "createIncident")
FLAT_GROUPING_ENABLED_KEYS = ("groupingConfigurationEnabled",)
FLAT_GROUPING_METHOD_KEYS = ("groupingConfigurationMatchingMethod",)

_MISSING = object()


def _casefold_keys(mapping: Mapping[str, Any]) -> dict[str, Any]:
    return {str(k).lower(): v for k, v in mapping.items()}


def _get(fields: Mapping[str, Any], keys: tuple[str, ...], default: Any = _MISSING) -> Any:
    """Return the first present alias from a casefolded mapping."""
    for key in keys:
        if key.lower() in fields:
            return fields[key.lower()]
    return default


def _require_str(fields: Mapping[str, Any], keys: tuple[str, ...]) -> str:
    value = _get(fields, keys)
    if value is _MISSING or value is None:
        raise UnrecognizedFormat(f"Missing required field '{keys[0]}'")
    if not isinstance(value, str):
        raise UnrecognizedFormat(f"Field '{keys[0]}' must be a string")
    return value


def normalize_boolean(value: Any, field_name: str) -> bool:
    """Normalize boolean-like values.

    True, "true", "True", 1 → True; False, "false", 0 → False.

    Raises:
        UnrecognizedFormat: For anything else.
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        if value.strip().lower() in ("true", "yes", "1"):
            return True
        if value.strip().lower() in ("false", "no", "0"):
            return False
    if isinstance(value, int):
        if value == 1:
            return True
        if value == 0:
            return False
    raise UnrecognizedFormat(f"Field '{field_name}' is not a boolean: {value!r}")


def normalize_query(text: str) -> str:
    """Normalize line endings only. Query text is otherwise compared verbatim."""
    return text.replace("\r\n", "\n").replace("\r", "\n")


def apply_grouping_defaults(raw: Mapping[str, Any] | None) -> Grouping:
    """Fill a missing or partial grouping block with defaults.

    This is the only place grouping defaults are applied. The remote
    service tolerates partial grouping blocks, so they are not errors.

    Defaults: enabled=False, matchingMethod="AllEntities".
    """
    fields = _casefold_keys(raw) if raw else {}

    enabled_value = _get(fields, ("enabled",), None)
    enabled = False if enabled_value is None else normalize_boolean(enabled_value, "enabled")

    method_value = _get(fields, ("matchingMethod",), None)
    if not method_value:
        matching_method = DEFAULT_MATCHING_METHOD
    else:
        matching_method = str(method_value)
        for known in KNOWN_MATCHING_METHODS:
            if known.lower() == matching_method.lower():
                matching_method = known
                break

    return Grouping(enabled=enabled, matching_method=matching_method)


def normalize_entities(value: Any) -> frozenset[CanonicalEntity]:
    """Normalize entity mappings to a set of canonical triples.

    Shapes, in priority order:
    1. Absent or empty → empty set (never None)
    2. Flat object of legacy *CustomEntity keys → one entry per present key
    3. Typed array [{entityType, fieldMappings: [{identifier, columnName}]}]
    4. Flat typed entries [{entityType, identifier, columnName}]

    Raises:
        UnrecognizedFormat: If the value matches none of the shapes.
    """
    if value is None or value == [] or value == {}:
        return frozenset()

    if isinstance(value, Mapping):
        return _entities_from_legacy(value)

    if isinstance(value, list) and all(isinstance(e, Mapping) for e in value):
        entries = [_casefold_keys(e) for e in value]
        if all("fieldmappings" in e for e in entries):
            return _entities_from_typed_array(entries)
        if all({"entitytype", "identifier", "columnname"} <= e.keys() for e in entries):
            return frozenset(
                CanonicalEntity(
                    entity_type=_entity_str(e, "entitytype"),
                    identifier=_entity_str(e, "identifier"),
                    column_name=_entity_str(e, "columnname"),
                )
                for e in entries
            )

    raise UnrecognizedFormat(f"Unrecognized entity mapping shape: {type(value).__name__}")


def _entity_str(entry: Mapping[str, Any], key: str) -> str:
    value = entry.get(key)
    if not isinstance(value, str) or not value:
        raise UnrecognizedFormat(f"Entity mapping field '{key}' must be a non-empty string")
    return value


def _entities_from_legacy(value: Mapping[str, Any]) -> frozenset[CanonicalEntity]:
    entities = set()
    for key, column in value.items():
        known = LEGACY_ENTITY_KEYS.get(str(key).lower())
        if known is None:
            raise UnrecognizedFormat(f"Unknown legacy entity key: {key!r}")
        if column in (None, ""):
            continue
        if not isinstance(column, str):
            raise UnrecognizedFormat(f"Legacy entity '{key}' must map to a column name")
        entity_type, identifier = known
        entities.add(
            CanonicalEntity(entity_type=entity_type, identifier=identifier, column_name=column)
        )
    return frozenset(entities)


def _entities_from_typed_array(entries: list[dict[str, Any]]) -> frozenset[CanonicalEntity]:
    entities = set()
    for entry in entries:
        entity_type = _entity_str(entry, "entitytype")
        field_mappings = entry.get("fieldmappings") or []
        if not isinstance(field_mappings, list):
            raise UnrecognizedFormat("fieldMappings must be a list")
        for mapping in field_mappings:
            if not isinstance(mapping, Mapping):
                raise UnrecognizedFormat("fieldMappings entries must be objects")
            folded = _casefold_keys(mapping)
            entities.add(
                CanonicalEntity(
                    entity_type=entity_type,
                    identifier=_entity_str(folded, "identifier"),
                    column_name=_entity_str(folded, "columnname"),
                )
            )
    return frozenset(entities)


def _string_set(value: Any, field_name: str) -> frozenset[str]:
    if value is None or value is _MISSING:
        return frozenset()
    if isinstance(value, str):
        return frozenset({value}) if value else frozenset()
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return frozenset(value)
    raise UnrecognizedFormat(f"Field '{field_name}' must be a list of strings")


def _custom_details(value: Any) -> tuple[tuple[str, str], ...]:
    if value is None or value is _MISSING:
        return ()
    if isinstance(value, Mapping) and all(
        isinstance(k, str) and isinstance(v, str) for k, v in value.items()
    ):
        return tuple(sorted(value.items()))
    raise UnrecognizedFormat("customDetails must map labels to column names")


def remote_rule_name(record: Mapping[str, Any]) -> str | None:
    """Resource name of a remote record: ``name``, else the last segment of ``id``."""
    fields = _casefold_keys(record)
    name = fields.get("name")
    if isinstance(name, str) and name:
        return name
    resource_id = fields.get("id")
    if isinstance(resource_id, str) and resource_id.strip("/"):
        return resource_id.rstrip("/").rsplit("/", 1)[-1]
    return None


def _unwrap(record: Mapping[str, Any]) -> dict[str, Any]:
    """Return the attribute mapping of either envelope, with casefolded keys."""
    fields = _casefold_keys(record)
    properties = fields.get("properties")
    if isinstance(properties, Mapping):
        return _casefold_keys(properties)
    return fields


class Canonicalizer:
    """Maps RuleDefinition and remote records onto CanonicalRule."""

    def from_desired(self, rule: RuleDefinition) -> CanonicalRule:
        """Project a desired-state record. Total: the record is already validated."""
        grouping = rule.grouping.model_dump(by_alias=True) if rule.grouping else None

        return CanonicalRule(
            identifier=rule.name,
            deployment_name=rule.remote_name or rule.name,
            display_name=rule.display_name,
            query=normalize_query(rule.query),
            severity=rule.severity,
            enabled=rule.enabled,
            frequency=rule.query_frequency,
            period=rule.query_period,
            tactics=frozenset(rule.tactics),
            techniques=frozenset(rule.techniques),
            create_incident=rule.create_incident,
            grouping=apply_grouping_defaults(grouping),
            entities=frozenset(
                CanonicalEntity(
                    entity_type=m.entity_type,
                    identifier=m.identifier,
                    column_name=m.column_name,
                )
                for m in rule.entity_mappings
            ),
            custom_details=tuple(sorted(rule.custom_details.items())),
            source=RuleSource.DESIRED,
        )

    def from_remote(self, record: Mapping[str, Any]) -> CanonicalRule:
        """Project a remote record, normalizing every known legacy shape.

        Raises:
            UnrecognizedFormat: If any field matches none of the known shapes.
        """
        if not isinstance(record, Mapping):
            raise UnrecognizedFormat(f"Remote rule must be an object, got {type(record).__name__}")

        name = remote_rule_name(record)
        if name is None:
            raise UnrecognizedFormat("Remote rule has neither 'name' nor 'id'")

        fields = _unwrap(record)

        try:
            severity = Severity.parse(_get(fields, SEVERITY_KEYS, None))
        except ValueError as e:
            raise UnrecognizedFormat(str(e)) from e

        enabled_value = _get(fields, ENABLED_KEYS, None)
        enabled = True if enabled_value is None else normalize_boolean(enabled_value, "enabled")

        frequency = _get(fields, FREQUENCY_KEYS, None)
        period = _get(fields, PERIOD_KEYS, None)
        if frequency is None or period is None:
            raise UnrecognizedFormat("Missing queryFrequency or queryPeriod")

        create_incident, grouping = self._incident_settings(fields)

        return CanonicalRule(
            identifier=name,
            deployment_name=name,
            display_name=_require_str(fields, DISPLAY_NAME_KEYS),
            query=normalize_query(_require_str(fields, QUERY_KEYS)),
            severity=severity,
            enabled=enabled,
            frequency=parse_duration(frequency),
            period=parse_duration(period),
            tactics=_string_set(_get(fields, TACTICS_KEYS), "tactics"),
            techniques=_string_set(_get(fields, TECHNIQUES_KEYS), "techniques"),
            create_incident=create_incident,
            grouping=apply_grouping_defaults(grouping),
            entities=normalize_entities(_get(fields, ENTITY_KEYS, None)),
            custom_details=_custom_details(_get(fields, CUSTOM_DETAILS_KEYS)),
            source=RuleSource.ACTUAL,
        )

    def _incident_settings(
        self, fields: Mapping[str, Any]
    ) -> tuple[bool, Mapping[str, Any] | None]:
        """Extract createIncident and the raw grouping block from either layout."""
        incident = _get(fields, INCIDENT_CONFIG_KEYS, None)

        if isinstance(incident, Mapping):
            folded = _casefold_keys(incident)
            create_value = folded.get("createincident")
            grouping = folded.get("groupingconfiguration")
            if grouping is not None and not isinstance(grouping, Mapping):
                raise UnrecognizedFormat("groupingConfiguration must be an object")
        elif incident is None:
            create_value = _get(fields, FLAT_CREATE_INCIDENT_KEYS, None)
            grouping = {
                "enabled": _get(fields, FLAT_GROUPING_ENABLED_KEYS, None),
                "matchingMethod": _get(fields, FLAT_GROUPING_METHOD_KEYS, None),
            }
        else:
            raise UnrecognizedFormat("incidentConfiguration must be an object")

        create_incident = (
            True if create_value is None else normalize_boolean(create_value, "createIncident")
        )
        return create_incident, grouping

    def needs_detail(self, record: Mapping[str, Any]) -> bool:
        """True when a list-endpoint record lacks entity mappings entirely.

        Those are only populated on the per-resource detail endpoint.
        """
        return _get(_unwrap(record), ENTITY_KEYS) is _MISSING

    def to_rule_definition(
        self,
        rule: CanonicalRule,
        *,
        name: str,
        query_file: str,
        remote_name: str | None = None,
    ) -> RuleDefinition:
        """Build the desired-state record for a canonical remote rule."""
        return RuleDefinition(
            name=name,
            display_name=rule.display_name,
            query_file=query_file,
            severity=rule.severity,
            enabled=rule.enabled,
            query_frequency=rule.frequency,
            query_period=rule.period,
            tactics=sorted(rule.tactics),
            techniques=sorted(rule.techniques),
            create_incident=rule.create_incident,
            grouping=GroupingConfig(
                enabled=rule.grouping.enabled,
                matching_method=rule.grouping.matching_method,
            ),
            entity_mappings=[
                EntityMapping(
                    entity_type=e.entity_type,
                    identifier=e.identifier,
                    column_name=e.column_name,
                )
                for e in sorted(rule.entities)
            ],
            custom_details=dict(rule.custom_details),
            remote_name=remote_name if remote_name and remote_name != name else None,
            query=rule.query,
        )
