"""Structured diff between desired and actual canonical rules.

Rules are paired by deployment name (the remote resource name). Both sides
are already canonical, so comparison is plain equality per field: sets
compare as sets and durations by value.

Output ordering is deterministic: MissingInActual, then ExtraInActual, then
Modified, each sorted by rule identifier. Field diffs follow FIELD_ORDER.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import timedelta
from enum import Enum
from typing import Any

from .durations import format_duration
from .models import (
    CanonicalEntity,
    CanonicalRule,
    DriftClassification,
    DriftRecord,
    FieldDiff,
    Grouping,
)

logger = logging.getLogger(__name__)

# (reported field name, CanonicalRule attribute)
FIELD_ORDER: tuple[tuple[str, str], ...] = (
    ("severity", "severity"),
    ("enabled", "enabled"),
    ("frequency", "frequency"),
    ("period", "period"),
    ("query", "query"),
    ("createIncident", "create_incident"),
    ("grouping", "grouping"),
    ("entities", "entities"),
    ("tactics", "tactics"),
    ("techniques", "techniques"),
    ("displayName", "display_name"),
    ("customDetails", "custom_details"),
)

CLASSIFICATION_ORDER = {
    DriftClassification.MISSING_IN_ACTUAL: 0,
    DriftClassification.EXTRA_IN_ACTUAL: 1,
    DriftClassification.MODIFIED: 2,
    DriftClassification.MISSING_IN_TARGET: 3,
}


def to_plain(value: Any) -> Any:
    """Convert a canonical field value to a JSON-friendly value.

    Sets become sorted lists, durations become ISO 8601 strings, entity
    triples and grouping become objects keyed like the YAML records.
    """
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, timedelta):
        return format_duration(value)
    if isinstance(value, CanonicalEntity):
        return {
            "entityType": value.entity_type,
            "identifier": value.identifier,
            "columnName": value.column_name,
        }
    if isinstance(value, Grouping):
        return {"enabled": value.enabled, "matchingMethod": value.matching_method}
    if isinstance(value, (frozenset, set)):
        return [to_plain(v) for v in sorted(value, key=_member_sort_key)]
    if isinstance(value, tuple):
        # custom details: sorted (label, column) pairs
        return {k: v for k, v in value}
    if isinstance(value, (bool, int, float, str)) or value is None:
        return value
    return str(value)


def _member_sort_key(value: Any) -> tuple[str, ...]:
    if isinstance(value, CanonicalEntity):
        return value.entity_type, value.identifier, value.column_name
    return (str(value),)


def format_value(value: Any) -> str:
    """Render a canonical field value for the text report."""
    if isinstance(value, (frozenset, set)):
        return "[" + ", ".join(str(v) for v in sorted(value, key=_member_sort_key)) + "]"
    if isinstance(value, (CanonicalEntity, Grouping)):
        return str(value)
    plain = to_plain(value)
    if isinstance(plain, list):
        return "[" + ", ".join(str(v) for v in plain) + "]"
    if isinstance(plain, dict):
        return "{" + ", ".join(f"{k}: {v}" for k, v in plain.items()) + "}"
    if isinstance(plain, bool):
        return str(plain).lower()
    return str(plain)


def diff_fields(desired: CanonicalRule, actual: CanonicalRule) -> tuple[FieldDiff, ...]:
    """Return field diffs in FIELD_ORDER; empty when the rules are equal."""
    diffs = []
    for field_name, attribute in FIELD_ORDER:
        desired_value = getattr(desired, attribute)
        actual_value = getattr(actual, attribute)
        if desired_value != actual_value:
            diffs.append(FieldDiff(field_name, desired_value, actual_value))
    return tuple(diffs)


def _sort_key(record: DriftRecord) -> tuple[int, str]:
    return CLASSIFICATION_ORDER[record.classification], record.rule_identifier


class DiffEngine:
    """Computes drift records. Stateless."""

    def diff(
        self,
        desired: Iterable[CanonicalRule],
        actual: Iterable[CanonicalRule],
    ) -> list[DriftRecord]:
        """Compare desired and actual rule sets.

        Exact matches produce no record.
        """
        desired_index = self._index(desired, "desired")
        actual_index = self._index(actual, "actual")
        records: list[DriftRecord] = []

        for key, wanted in desired_index.items():
            deployed = actual_index.get(key)
            if deployed is None:
                records.append(
                    DriftRecord(
                        rule_identifier=wanted.identifier,
                        classification=DriftClassification.MISSING_IN_ACTUAL,
                        desired=wanted,
                    )
                )
                continue

            field_diffs = diff_fields(wanted, deployed)
            if field_diffs:
                records.append(
                    DriftRecord(
                        rule_identifier=wanted.identifier,
                        classification=DriftClassification.MODIFIED,
                        field_diffs=field_diffs,
                        desired=wanted,
                        actual=deployed,
                    )
                )

        for key, deployed in actual_index.items():
            if key not in desired_index:
                records.append(
                    DriftRecord(
                        rule_identifier=deployed.identifier,
                        classification=DriftClassification.EXTRA_IN_ACTUAL,
                        actual=deployed,
                    )
                )

        records.sort(key=_sort_key)
        logger.debug(
            "Computed drift",
            extra={
                "desired_count": len(desired_index),
                "actual_count": len(actual_index),
                "drift_count": len(records),
            },
        )
        return records

    def promotion_gap(
        self,
        source: Iterable[CanonicalRule],
        target: Iterable[CanonicalRule],
    ) -> list[DriftRecord]:
        """Rules present in source but absent from target, by identifier.

        Existence only: field differences between environments are ignored.
        """
        target_identifiers = {rule.identifier for rule in target}
        gaps = [
            DriftRecord(
                rule_identifier=rule.identifier,
                classification=DriftClassification.MISSING_IN_TARGET,
                desired=rule,
            )
            for rule in source
            if rule.identifier not in target_identifiers
        ]
        gaps.sort(key=_sort_key)
        return gaps

    @staticmethod
    def _index(rules: Iterable[CanonicalRule], side: str) -> dict[str, CanonicalRule]:
        index: dict[str, CanonicalRule] = {}
        for rule in rules:
            if rule.deployment_name in index:
                logger.warning(
                    "Duplicate deployment name, keeping first",
                    extra={
                        "side": side,
                        "deployment_name": rule.deployment_name,
                        "rule": rule.identifier,
                    },
                )
                continue
            index[rule.deployment_name] = rule
        return index
