"""Desired-state fixtures: rule records and environment directories on disk."""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any

import yaml

DEFAULT_QUERY = "SecurityEvent | where EventID == 4625"


def rule_record(name: str, **overrides: Any) -> dict[str, Any]:
    """A desired-state record matching sentinel_mock.arm_rule(name).

    Pass a value of None to drop a key.
    """
    record: dict[str, Any] = {
        "name": name,
        "displayName": name.replace("-", " ").title(),
        "queryFile": f"queries/{name}.kql",
        "severity": "Medium",
        "enabled": True,
        "queryFrequency": "PT1H",
        "queryPeriod": "PT1H",
        "tactics": ["CredentialAccess"],
        "techniques": ["T1110"],
        "createIncident": True,
        "entityMappings": [
            {"entityType": "Account", "identifier": "FullName", "columnName": "TargetAccount"}
        ],
    }
    for key, value in overrides.items():
        if value is None:
            record.pop(key, None)
        else:
            record[key] = copy.deepcopy(value)
    return record


def write_environment(
    root: Path,
    org: str,
    env: str,
    records: list[Any],
    *,
    queries: dict[str, str] | None = None,
    skip_queries: tuple[str, ...] = (),
) -> Path:
    """Write rules.yaml and one query file per record.

    Args:
        queries: Query text per queryFile; DEFAULT_QUERY otherwise.
        skip_queries: queryFile paths to leave missing.
    """
    env_dir = root / org / env
    env_dir.mkdir(parents=True, exist_ok=True)
    (env_dir / "rules.yaml").write_text(
        yaml.safe_dump({"rules": records}, sort_keys=False), encoding="utf-8"
    )

    queries = queries or {}
    for record in records:
        if not isinstance(record, dict) or not isinstance(record.get("queryFile"), str):
            continue
        query_file = record["queryFile"]
        if query_file in skip_queries or ".." in query_file:
            continue
        path = env_dir / query_file
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(queries.get(query_file, DEFAULT_QUERY), encoding="utf-8")
    return env_dir
