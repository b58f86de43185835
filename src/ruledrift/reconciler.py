"""Reconciliation of desired and actual rule state.

One Reconciler handles one organization. Each run is a fixed sequence of
phases with a cancellation check between them:

Import mode:
1. Load desired rules from the ConfigStore
2. Fetch actual rules (list endpoint, then detail fetches where needed)
3. Canonicalize both sides
4. Diff
5. Write ExtraInActual and Modified rules back into the ConfigStore

Promotion-check mode compares two ConfigStore snapshots and never touches
the remote service.

Failure semantics:
- AuthError, NotFoundError and cancellation propagate and end the run
- A failed list fetch or the import guardrail is recorded as the run error
- Everything scoped to one rule becomes a RuleError; that rule is kept out
  of the diff on both sides
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .canonicalizer import Canonicalizer, remote_rule_name
from .config import Config, ReconcileMode
from .config_store import ConfigStore, RuleLoadResult, SaveOutcome
from .diff_engine import DiffEngine
from .errors import (
    ImportLimitExceeded,
    NotFoundError,
    ParseError,
    ReconcileCancelled,
    RemoteError,
    RuleDriftError,
    RuleError,
    StoreError,
    TransientError,
    UnrecognizedFormat,
)
from .models import CanonicalRule, DriftClassification, DriftRecord, RuleDefinition
from .naming import local_name_for, query_file_for
from .provenance import ProvenanceLogger, get_provenance_logger
from .remote_client import RemoteClient

logger = logging.getLogger(__name__)


class ActionOutcome:
    """What an import action did to the store."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    PLANNED = "planned"  # dry run


@dataclass(frozen=True)
class ImportAction:
    """One rule written (or planned) by an import run."""

    rule_name: str
    remote_name: str
    classification: DriftClassification
    outcome: str
    query_file: str


@dataclass
class ReconcileResult:
    """Result of one reconciliation run for an organization."""

    org: str
    env: str
    mode: ReconcileMode
    target_env: str | None = None
    dry_run: bool = False
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    desired_count: int = 0
    actual_count: int = 0
    drift: list[DriftRecord] = field(default_factory=list)
    actions: list[ImportAction] = field(default_factory=list)
    rule_errors: list[RuleError] = field(default_factory=list)
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    def count(self, classification: DriftClassification) -> int:
        return sum(1 for record in self.drift if record.classification == classification)

    @property
    def promotion_gaps(self) -> int:
        return self.count(DriftClassification.MISSING_IN_TARGET)

    @property
    def rules_written(self) -> int:
        return sum(
            1
            for action in self.actions
            if action.outcome in (ActionOutcome.CREATED, ActionOutcome.UPDATED)
        )

    @property
    def success(self) -> bool:
        return self.error is None


class Reconciler:
    """Runs reconciliation for one organization.

    Args:
        config: Engine configuration.
        store: Desired-state store.
        remote: Remote client; only needed for import mode.
        cancel_event: Set by signal handlers or the run deadline.
    """

    def __init__(
        self,
        config: Config,
        store: ConfigStore,
        remote: RemoteClient | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
        canonicalizer: Canonicalizer | None = None,
        diff_engine: DiffEngine | None = None,
        provenance_logger: ProvenanceLogger | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._remote = remote
        self._cancel_event = cancel_event or asyncio.Event()
        self._canonicalizer = canonicalizer or Canonicalizer()
        self._diff = diff_engine or DiffEngine()
        self._provenance = provenance_logger or get_provenance_logger()

    # =========================================================================
    # Import mode
    # =========================================================================

    async def run_import(
        self,
        org: str,
        env: str,
        *,
        dry_run: bool = False,
        force: bool = False,
    ) -> ReconcileResult:
        """Diff desired against actual and import remote changes.

        Raises:
            AuthError: If the remote service rejects the credential.
            NotFoundError: If the environment or its workspace does not exist.
            ReconcileCancelled: If the run is cancelled.
        """
        if self._remote is None:
            raise ValueError("Import mode requires a remote client")

        result = ReconcileResult(org=org, env=env, mode=ReconcileMode.IMPORT, dry_run=dry_run)
        try:
            self._check_cancelled("load desired state")
            try:
                loaded = self._store.load_rules(org, env)
            except ParseError as e:
                logger.error(
                    "Failed to load rule collection",
                    extra={"org": org, "env": env, "error": str(e)},
                )
                result.error = e
                return result
            result.rule_errors.extend(loaded.errors)
            result.desired_count = len(loaded.rules)

            self._check_cancelled("fetch actual state")
            try:
                records, failed_actual = await self._fetch_actual(org, env, result)
            except (TransientError, RemoteError) as e:
                logger.error(
                    "Failed to fetch actual rules",
                    extra={"org": org, "env": env, "error": str(e)},
                )
                result.error = e
                return result
            result.actual_count = len(records) + len(failed_actual)

            self._check_cancelled("canonicalize")
            desired = [self._canonicalizer.from_desired(rule) for rule in loaded.rules]
            actual = self._canonicalize_remote(records, result, failed_actual)

            excluded = loaded.failed_keys | failed_actual
            desired = [
                r
                for r in desired
                if r.identifier not in excluded and r.deployment_name not in excluded
            ]
            actual = [r for r in actual if r.deployment_name not in excluded]

            self._check_cancelled("diff")
            result.drift = self._diff.diff(desired, actual)

            self._check_cancelled("import")
            try:
                self._apply_import(org, env, loaded, result, dry_run=dry_run, force=force)
            except ImportLimitExceeded as e:
                logger.error(
                    "Import guardrail blocked the run",
                    extra={"org": org, "env": env, "error": str(e)},
                )
                result.error = e

            return result
        except RuleDriftError as e:
            result.error = e
            raise
        finally:
            result.end_time = datetime.now(UTC)
            self._finish(result)

    async def _fetch_actual(
        self, org: str, env: str, result: ReconcileResult
    ) -> tuple[list[dict[str, Any]], set[str]]:
        """Fetch list records, replacing incomplete ones with their detail record.

        Returns:
            The records, and the names whose detail fetch failed.
        """
        assert self._remote is not None
        records = await self._remote.fetch_rules(org, env, self._cancel_event)

        incomplete = [
            name
            for name in (
                remote_rule_name(r) for r in records if self._canonicalizer.needs_detail(r)
            )
            if name
        ]
        if not incomplete:
            return records, set()

        logger.info(
            "Fetching rule details",
            extra={"org": org, "env": env, "count": len(incomplete)},
        )
        details = await self._remote.fetch_rule_details(
            org, env, incomplete, self._cancel_event
        )

        merged: list[dict[str, Any]] = []
        failed: set[str] = set()
        for record in records:
            name = remote_rule_name(record)
            detail = details.get(name) if name else None
            if isinstance(detail, RuleDriftError):
                result.rule_errors.append(RuleError.from_exception(name, detail, "actual"))
                failed.add(name)
            elif detail is not None:
                merged.append(detail)
            else:
                merged.append(record)
        return merged, failed

    def _canonicalize_remote(
        self,
        records: list[dict[str, Any]],
        result: ReconcileResult,
        failed: set[str],
    ) -> list[CanonicalRule]:
        """Canonicalize remote records, adding unparseable names to ``failed``."""
        canonical: list[CanonicalRule] = []

        for record in records:
            name = remote_rule_name(record)
            try:
                canonical.append(self._canonicalizer.from_remote(record))
            except UnrecognizedFormat as e:
                logger.warning(
                    "Skipping remote rule with unrecognized format",
                    extra={"org": result.org, "env": result.env, "rule": name, "error": str(e)},
                )
                result.rule_errors.append(RuleError.from_exception(name, e, "actual"))
                if name:
                    failed.add(name)

        return canonical

    def _apply_import(
        self,
        org: str,
        env: str,
        loaded: RuleLoadResult,
        result: ReconcileResult,
        *,
        dry_run: bool,
        force: bool,
    ) -> None:
        """Write ExtraInActual and Modified rules back into the store.

        MissingInActual is never acted on: deletion is not automated.

        Raises:
            ImportLimitExceeded: If more rules would be written than allowed.
            ReconcileCancelled: If the run is cancelled between writes.
        """
        candidates = [
            record
            for record in result.drift
            if record.classification
            in (DriftClassification.EXTRA_IN_ACTUAL, DriftClassification.MODIFIED)
        ]
        if not candidates:
            return

        limit = self._config.max_rules_per_import
        if len(candidates) > limit:
            if not force:
                raise ImportLimitExceeded(
                    f"Import would write {len(candidates)} rules, limit is {limit}. "
                    f"Re-run with --force to import anyway."
                )
            logger.warning(
                "Import guardrail bypassed with --force",
                extra={"org": org, "env": env, "count": len(candidates), "limit": limit},
            )

        existing = {rule.name: rule for rule in loaded.rules}
        taken = set(existing) | loaded.failed_keys
        taken_query_files = set(loaded.query_files)

        for record in candidates:
            self._check_cancelled("import write")
            definition = self._import_definition(record, existing, taken, taken_query_files)

            if dry_run:
                outcome = ActionOutcome.PLANNED
            else:
                try:
                    saved = self._store.save_rule(org, env, definition)
                except StoreError as e:
                    logger.error(
                        "Failed to save imported rule",
                        extra={"org": org, "env": env, "rule": definition.name, "error": str(e)},
                    )
                    result.rule_errors.append(
                        RuleError.from_exception(definition.name, e, "store")
                    )
                    continue
                outcome = self._outcome(saved)

            assert record.actual is not None
            result.actions.append(
                ImportAction(
                    rule_name=definition.name,
                    remote_name=record.actual.deployment_name,
                    classification=record.classification,
                    outcome=outcome,
                    query_file=definition.query_file,
                )
            )

    def _import_definition(
        self,
        record: DriftRecord,
        existing: dict[str, RuleDefinition],
        taken: set[str],
        taken_query_files: set[str],
    ) -> RuleDefinition:
        actual = record.actual
        assert actual is not None

        if record.classification == DriftClassification.MODIFIED:
            assert record.desired is not None
            current = existing[record.desired.identifier]
            return self._canonicalizer.to_rule_definition(
                actual,
                name=current.name,
                query_file=current.query_file,
                remote_name=actual.deployment_name,
            )

        name = local_name_for(actual.deployment_name, actual.display_name, taken)
        taken.add(name)
        # Never reuse a query file another record already points at
        query_file = query_file_for(name, taken_query_files)
        taken_query_files.add(query_file)
        return self._canonicalizer.to_rule_definition(
            actual,
            name=name,
            query_file=query_file,
            remote_name=actual.deployment_name,
        )

    @staticmethod
    def _outcome(saved: SaveOutcome) -> str:
        if saved.created:
            return ActionOutcome.CREATED
        if saved.written:
            return ActionOutcome.UPDATED
        return ActionOutcome.UNCHANGED

    # =========================================================================
    # Promotion
    # =========================================================================

    async def run_promotion_check(
        self, org: str, source_env: str, target_env: str
    ) -> ReconcileResult:
        """Report rules present in source_env but missing from target_env.

        Read-only; no remote call is made.

        Raises:
            NotFoundError: If either environment does not exist.
            ReconcileCancelled: If the run is cancelled.
        """
        result = ReconcileResult(
            org=org,
            env=source_env,
            mode=ReconcileMode.PROMOTION_CHECK,
            target_env=target_env,
        )
        try:
            self._check_cancelled("load source state")
            try:
                source = self._store.load_rules(org, source_env)
                self._check_cancelled("load target state")
                target = self._store.load_rules(org, target_env)
            except ParseError as e:
                logger.error(
                    "Failed to load rule collection",
                    extra={"org": org, "env": source_env, "target_env": target_env, "error": str(e)},
                )
                result.error = e
                return result

            result.rule_errors.extend(source.errors)
            result.rule_errors.extend(target.errors)
            result.desired_count = len(source.rules)
            result.actual_count = len(target.rules)

            self._check_cancelled("diff")
            # A broken target record is not a missing one
            source_rules = [
                self._canonicalizer.from_desired(rule)
                for rule in source.rules
                if rule.name not in target.failed_keys
            ]
            target_rules = [self._canonicalizer.from_desired(rule) for rule in target.rules]
            result.drift = self._diff.promotion_gap(source_rules, target_rules)
            return result
        except RuleDriftError as e:
            result.error = e
            raise
        finally:
            result.end_time = datetime.now(UTC)
            self._finish(result)

    def promote(
        self,
        org: str,
        source_env: str,
        target_env: str,
        rule_name: str,
        *,
        dry_run: bool = False,
    ) -> SaveOutcome | None:
        """Copy one rule definition and its query body to another environment.

        The target keeps its own remote resource name if it already has the
        rule; remote names are never carried across environments.

        Returns:
            The save outcome, or None for a dry run.

        Raises:
            NotFoundError: If the source rule does not exist.
            ParseError: If the source or an existing target record is malformed.
        """
        rule = self._store.get_rule(org, source_env, rule_name)

        try:
            target_remote_name = self._store.get_rule(org, target_env, rule_name).remote_name
        except NotFoundError:
            target_remote_name = None

        promoted = rule.model_copy(update={"remote_name": target_remote_name})
        logger.info(
            "Promoting rule",
            extra={
                "org": org,
                "source_env": source_env,
                "target_env": target_env,
                "rule": rule_name,
                "dry_run": dry_run,
            },
        )
        if dry_run:
            return None
        return self._store.save_rule(org, target_env, promoted, create_environment=True)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _check_cancelled(self, phase: str) -> None:
        if self._cancel_event.is_set():
            logger.warning("Run cancelled", extra={"phase": phase})
            raise ReconcileCancelled(f"Run cancelled before {phase}")

    def _finish(self, result: ReconcileResult) -> None:
        self._log_result(result)

        provenance = self._provenance.create_provenance(
            result.org,
            result.env,
            result.mode.value,
            target_env=result.target_env,
            dry_run=result.dry_run,
        )
        provenance.desired_count = result.desired_count
        provenance.actual_count = result.actual_count
        provenance.missing_count = result.count(DriftClassification.MISSING_IN_ACTUAL)
        provenance.extra_count = result.count(DriftClassification.EXTRA_IN_ACTUAL)
        provenance.modified_count = result.count(DriftClassification.MODIFIED)
        provenance.promotion_gap_count = result.promotion_gaps
        provenance.rules_written = result.rules_written
        provenance.rule_errors = len(result.rule_errors)
        provenance.duration_seconds = result.duration_seconds
        if result.error is not None:
            provenance.error = str(result.error)
            provenance.error_type = type(result.error).__name__
        self._provenance.log_provenance(provenance)

    def _log_result(self, result: ReconcileResult) -> None:
        """Log reconciliation result with structured data."""
        extra: dict[str, Any] = {
            "org": result.org,
            "env": result.env,
            "mode": result.mode.value,
            "duration_seconds": result.duration_seconds,
            "drift_count": len(result.drift),
            "rules_written": result.rules_written,
            "rule_errors": len(result.rule_errors),
        }
        if result.target_env:
            extra["target_env"] = result.target_env

        if result.error is not None:
            extra["error"] = str(result.error)
            logger.error("Reconciliation failed", extra=extra)
        elif result.rule_errors:
            logger.warning("Reconciliation finished with rule errors", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)
