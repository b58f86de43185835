"""Desired-state store backed by YAML collections and query files.

Layout:
    <root>/<org>/<env>/rules.yaml        rules: [ {name, displayName, queryFile, ...}, ... ]
    <root>/<org>/<env>/queries/*.kql     query bodies referenced by queryFile

SECURITY: File sizes are bounded before reading and query paths are
confined to their environment directory.

Writes are atomic: content goes to a temporary sibling file that is then
renamed over the target, so an interrupted run never leaves a collection
half written.
"""

from __future__ import annotations

import logging
import os
import posixpath
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import (
    MAX_COLLECTION_FILE_SIZE_BYTES,
    MAX_QUERY_FILE_SIZE_BYTES,
    MAX_WORKSPACES_FILE_SIZE_BYTES,
    RULES_FILENAME,
    ConfigurationError,
    validate_scope_name,
)
from .errors import NotFoundError, ParseError, RuleError, StoreError
from .models import RuleDefinition, WorkspaceMap

logger = logging.getLogger(__name__)


@dataclass
class RuleLoadResult:
    """Rules loaded from one environment plus the records that were skipped.

    ``failed_keys`` holds every readable ``name`` and ``remoteName`` of a
    skipped record, so callers can keep those rules out of comparisons.
    ``query_files`` holds every query path referenced by any record,
    skipped or not, normalized with :func:`normalize_query_file`.
    """

    rules: list[RuleDefinition] = field(default_factory=list)
    errors: list[RuleError] = field(default_factory=list)
    failed_keys: set[str] = field(default_factory=set)
    query_files: set[str] = field(default_factory=set)


@dataclass(frozen=True)
class SaveOutcome:
    """What save_rule actually wrote."""

    rule_name: str
    created: bool
    collection_written: bool
    query_written: bool

    @property
    def written(self) -> bool:
        return self.collection_written or self.query_written


def normalize_query_file(relative: str) -> str:
    """Normalize a queryFile value so two spellings of one path compare equal."""
    return posixpath.normpath(relative.replace("\\", "/"))


def _format_validation_error(error: ValidationError) -> str:
    errors = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"])
        errors.append(f"{loc}: {item['msg']}")
    return "; ".join(errors)


def load_workspace_map(path: Path) -> WorkspaceMap:
    """Load and validate the organization/environment → workspace map.

    Raises:
        ConfigurationError: If the file is missing, too large or invalid.
    """
    if not path.is_file():
        raise ConfigurationError(f"Workspace map not found: {path}")

    # SECURITY: Check file size before reading
    file_size = path.stat().st_size
    if file_size > MAX_WORKSPACES_FILE_SIZE_BYTES:
        raise ConfigurationError(
            f"Workspace map exceeds maximum size of {MAX_WORKSPACES_FILE_SIZE_BYTES} bytes"
        )

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to read workspace map {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Workspace map must be a YAML mapping: {path}")

    try:
        return WorkspaceMap.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(
            f"Workspace map validation failed: {_format_validation_error(e)}"
        ) from e


class ConfigStore:
    """Reads and writes rule collections for organization/environment pairs."""

    def __init__(self, root: Path) -> None:
        self._root = root

    @property
    def root(self) -> Path:
        return self._root

    def environment_dir(self, org: str, env: str) -> Path:
        validate_scope_name("Organization", org)
        validate_scope_name("Environment", env)
        return self._root / org / env

    def list_environments(self, org: str) -> list[str]:
        """List environments of an organization.

        Raises:
            NotFoundError: If the organization directory does not exist.
        """
        validate_scope_name("Organization", org)
        org_dir = self._root / org
        if not org_dir.is_dir():
            raise NotFoundError(f"Organization directory not found: {org_dir}")

        return sorted(
            child.name
            for child in org_dir.iterdir()
            if child.is_dir() and (child / RULES_FILENAME).is_file()
        )

    def load_rules(self, org: str, env: str) -> RuleLoadResult:
        """Load every rule record of an environment with its query body.

        Malformed records are logged and reported in the result, not raised.

        Raises:
            NotFoundError: If the environment does not exist.
            ParseError: If the collection file itself cannot be parsed.
        """
        env_dir = self.environment_dir(org, env)
        collection_path = env_dir / RULES_FILENAME
        if not collection_path.is_file():
            raise NotFoundError(f"Environment '{env}' not found for '{org}': {collection_path}")

        raw_records = self._read_collection(collection_path)
        result = RuleLoadResult()
        seen: set[str] = set()
        # deployment name -> name of the record that claimed it
        deployments: dict[str, str] = {}

        for index, raw in enumerate(raw_records):
            name = raw.get("name") if isinstance(raw, dict) else None
            name = name if isinstance(name, str) and name else None
            query_file = raw.get("queryFile") if isinstance(raw, dict) else None
            if isinstance(query_file, str) and query_file:
                result.query_files.add(normalize_query_file(query_file))
            try:
                rule = self._parse_record(env_dir, raw, index, seen, deployments)
            except ParseError as e:
                logger.warning(
                    "Skipping malformed rule record",
                    extra={
                        "org": org,
                        "env": env,
                        "rule": name,
                        "index": index,
                        "error": str(e),
                    },
                )
                result.errors.append(RuleError.from_exception(name, e, "desired"))
                if name:
                    result.failed_keys.add(name)
                remote_name = raw.get("remoteName") if isinstance(raw, dict) else None
                if isinstance(remote_name, str) and remote_name:
                    result.failed_keys.add(remote_name)
                continue

            seen.add(rule.name)
            deployments[rule.remote_name or rule.name] = rule.name
            result.rules.append(rule)

        logger.info(
            "Loaded desired rules",
            extra={
                "org": org,
                "env": env,
                "rules_loaded": len(result.rules),
                "rules_skipped": len(result.errors),
            },
        )
        return result

    def get_rule(self, org: str, env: str, name: str) -> RuleDefinition:
        """Load one rule by name.

        Raises:
            NotFoundError: If the environment or rule does not exist.
            ParseError: If the rule record is malformed.
        """
        loaded = self.load_rules(org, env)
        for rule in loaded.rules:
            if rule.name == name:
                return rule
        for error in loaded.errors:
            if error.rule_identifier == name:
                raise ParseError(f"Rule '{name}' is malformed: {error.message}")
        raise NotFoundError(f"Rule '{name}' not found in {org}/{env}")

    def save_rule(
        self,
        org: str,
        env: str,
        rule: RuleDefinition,
        *,
        create_environment: bool = False,
    ) -> SaveOutcome:
        """Upsert one rule record and write its query body.

        Files whose content would not change are left untouched, so
        re-saving an identical rule performs no writes. Records that fail
        to parse are preserved as they are.

        Args:
            create_environment: Start an empty collection if the
                environment does not exist yet (promotion only).

        Raises:
            NotFoundError: If the environment does not exist.
            ParseError: If the existing collection cannot be parsed.
            StoreError: If a file cannot be written.
        """
        env_dir = self.environment_dir(org, env)
        collection_path = env_dir / RULES_FILENAME
        if collection_path.is_file():
            raw_records = self._read_collection(collection_path)
        elif create_environment:
            logger.info("Creating environment", extra={"org": org, "env": env})
            raw_records = []
        else:
            raise NotFoundError(f"Environment '{env}' not found for '{org}': {collection_path}")

        record = rule.to_record()

        position = next(
            (
                i
                for i, raw in enumerate(raw_records)
                if isinstance(raw, dict) and raw.get("name") == rule.name
            ),
            None,
        )

        # Query body first, so the collection never references a missing file
        query_path = self._confined_path(env_dir, rule.query_file)
        query_written = self._write_if_changed(query_path, rule.query)

        collection_written = False
        if position is None or raw_records[position] != record:
            updated = list(raw_records)
            if position is None:
                updated.append(record)
            else:
                updated[position] = record
            content = yaml.safe_dump(
                {"rules": updated},
                sort_keys=False,
                allow_unicode=True,
                default_flow_style=False,
            )
            self._atomic_write(collection_path, content)
            collection_written = True

        outcome = SaveOutcome(
            rule_name=rule.name,
            created=position is None,
            collection_written=collection_written,
            query_written=query_written,
        )
        logger.info(
            "Saved rule" if outcome.written else "Rule unchanged, nothing written",
            extra={
                "org": org,
                "env": env,
                "rule": rule.name,
                "rule_created": outcome.created,
                "collection_written": collection_written,
                "query_written": query_written,
            },
        )
        return outcome

    def _parse_record(
        self,
        env_dir: Path,
        raw: Any,
        index: int,
        seen: set[str],
        deployments: dict[str, str],
    ) -> RuleDefinition:
        if not isinstance(raw, dict):
            raise ParseError(f"Record #{index} must be a mapping")
        if "query" in raw:
            raise ParseError(f"Record #{index} has an inline query; use queryFile")

        try:
            rule = RuleDefinition.model_validate(raw)
        except ValidationError as e:
            raise ParseError(
                f"Record #{index} failed validation: {_format_validation_error(e)}"
            ) from e

        if rule.name in seen:
            raise ParseError(f"Duplicate rule name '{rule.name}'")

        # Two records deploying to one remote rule cannot both be compared
        deployment_name = rule.remote_name or rule.name
        if deployment_name in deployments:
            raise ParseError(
                f"Rule '{rule.name}' deploys as '{deployment_name}', "
                f"which rule '{deployments[deployment_name]}' already uses"
            )

        query = self._read_query(env_dir, rule.query_file)
        return rule.model_copy(update={"query": query})

    def _read_collection(self, path: Path) -> list[Any]:
        # SECURITY: Check file size before reading
        try:
            file_size = path.stat().st_size
        except OSError as e:
            raise ParseError(f"Failed to stat {path}: {e}") from e

        if file_size > MAX_COLLECTION_FILE_SIZE_BYTES:
            raise ParseError(
                f"Collection exceeds maximum size of {MAX_COLLECTION_FILE_SIZE_BYTES} bytes: {path}"
            )

        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ParseError(f"Failed to read {path}: {e}") from e

        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ParseError(f"Invalid YAML in {path}: {e}") from e

        if data is None:
            return []
        if not isinstance(data, dict):
            raise ParseError(f"Collection must be a YAML mapping with a 'rules' list: {path}")

        rules = data.get("rules") or []
        if not isinstance(rules, list):
            raise ParseError(f"'rules' must be a list: {path}")
        return rules

    def _confined_path(self, env_dir: Path, relative: str) -> Path:
        path = env_dir / relative
        resolved_root = env_dir.resolve()
        if not path.resolve().is_relative_to(resolved_root):
            raise ParseError(f"Query path escapes the environment directory: {relative}")
        return path

    def _read_query(self, env_dir: Path, relative: str) -> str:
        path = self._confined_path(env_dir, relative)
        if not path.is_file():
            raise ParseError(f"Query file not found: {relative}")

        try:
            file_size = path.stat().st_size
        except OSError as e:
            raise ParseError(f"Failed to stat query file {relative}: {e}") from e
        if file_size > MAX_QUERY_FILE_SIZE_BYTES:
            raise ParseError(
                f"Query file exceeds maximum size of {MAX_QUERY_FILE_SIZE_BYTES} bytes: {relative}"
            )

        try:
            with path.open(encoding="utf-8", newline="") as handle:
                return handle.read()
        except (OSError, UnicodeDecodeError) as e:
            raise ParseError(f"Failed to read query file {relative}: {e}") from e

    def _write_if_changed(self, path: Path, content: str) -> bool:
        if path.is_file():
            try:
                with path.open(encoding="utf-8", newline="") as handle:
                    if handle.read() == content:
                        return False
            except (OSError, UnicodeDecodeError):
                # Unreadable existing file is replaced
                pass
        self._atomic_write(path, content)
        return True

    def _atomic_write(self, path: Path, content: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
            )
        except OSError as e:
            raise StoreError(f"Failed to prepare write of {path}: {e}") from e

        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except OSError as e:
            Path(tmp_name).unlink(missing_ok=True)
            raise StoreError(f"Failed to write {path}: {e}") from e
