"""Rendering of reconciliation results.

Two forms:
- Text, for humans: one block per organization with counts, drift with
  before → after values, import actions and failed rules
- JSON lines, for machines: a summary record per organization followed by
  one record per drift, action and error
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from typing import Any

from .diff_engine import format_value, to_plain
from .models import DriftClassification, DriftRecord
from .reconciler import ReconcileResult

MAX_INLINE_VALUE_CHARS = 120

COUNT_LABELS: tuple[tuple[str, DriftClassification], ...] = (
    ("Missing in actual", DriftClassification.MISSING_IN_ACTUAL),
    ("Extra in actual", DriftClassification.EXTRA_IN_ACTUAL),
    ("Modified", DriftClassification.MODIFIED),
    ("Promotion gaps", DriftClassification.MISSING_IN_TARGET),
)


def _inline(value: Any) -> str:
    text = format_value(value).replace("\r", "").replace("\n", "\\n")
    if len(text) > MAX_INLINE_VALUE_CHARS:
        return text[: MAX_INLINE_VALUE_CHARS - 3] + "..."
    return text


def _counts(result: ReconcileResult) -> dict[str, int]:
    return {
        "missingInActual": result.count(DriftClassification.MISSING_IN_ACTUAL),
        "extraInActual": result.count(DriftClassification.EXTRA_IN_ACTUAL),
        "modified": result.count(DriftClassification.MODIFIED),
        "promotionGaps": result.promotion_gaps,
        "errors": len(result.rule_errors),
    }


class ReportRenderer:
    """Renders ReconcileResults as text or JSON lines."""

    def render_text(self, results: Iterable[ReconcileResult]) -> str:
        return "\n".join(self._text_block(result) for result in results)

    def _text_block(self, result: ReconcileResult) -> str:
        scope = f"org={result.org} env={result.env}"
        if result.target_env:
            scope += f" target={result.target_env}"
        header = f"Rule drift report: mode={result.mode.value} {scope}"
        if result.dry_run:
            header += " (dry run)"

        lines = [header, "=" * len(header)]
        for label, classification in COUNT_LABELS:
            lines.append(f"{label + ':':<20}{result.count(classification)}")
        lines.append(f"{'Errors:':<20}{len(result.rule_errors)}")

        if result.error is not None:
            lines += ["", f"Run failed: [{_classification(result.error)}] {result.error}"]

        if result.drift:
            lines += ["", "Drift", "-----"]
            for record in result.drift:
                lines += self._drift_lines(record)

        if result.actions:
            lines += ["", "Actions", "-------"]
            for action in result.actions:
                remote = (
                    f" (remote {action.remote_name})"
                    if action.remote_name != action.rule_name
                    else ""
                )
                lines.append(
                    f"{action.outcome:<10} {action.rule_name}{remote} -> {action.query_file}"
                )

        if result.rule_errors:
            lines += ["", "Errors", "------"]
            for error in result.rule_errors:
                identifier = error.rule_identifier or "<unnamed record>"
                lines.append(
                    f"[{error.classification}] {identifier} ({error.source}): {error.message}"
                )

        return "\n".join(lines) + "\n"

    @staticmethod
    def _drift_lines(record: DriftRecord) -> list[str]:
        lines = [f"[{record.classification.value}] {record.rule_identifier}"]
        for diff in record.field_diffs:
            lines.append(
                f"    {diff.field}: {_inline(diff.desired_value)} -> {_inline(diff.actual_value)}"
            )
        return lines

    def render_jsonl(self, results: Iterable[ReconcileResult]) -> str:
        """One JSON object per line; empty string for no results."""
        lines = [
            json.dumps(record, ensure_ascii=False)
            for result in results
            for record in self.jsonl_records(result)
        ]
        return "".join(line + "\n" for line in lines)

    def jsonl_records(self, result: ReconcileResult) -> list[dict[str, Any]]:
        scope = {"org": result.org, "env": result.env}
        if result.target_env:
            scope["targetEnv"] = result.target_env

        records: list[dict[str, Any]] = [
            {
                "type": "summary",
                **scope,
                "mode": result.mode.value,
                "dryRun": result.dry_run,
                "counts": _counts(result),
                "rulesWritten": result.rules_written,
                "durationSeconds": round(result.duration_seconds, 3),
                "error": str(result.error) if result.error is not None else None,
            }
        ]

        for drift in result.drift:
            records.append(
                {
                    "type": "drift",
                    **scope,
                    "ruleIdentifier": drift.rule_identifier,
                    "classification": drift.classification.value,
                    "fieldDiffs": [
                        {
                            "field": d.field,
                            "desiredValue": to_plain(d.desired_value),
                            "actualValue": to_plain(d.actual_value),
                        }
                        for d in drift.field_diffs
                    ],
                }
            )

        for action in result.actions:
            records.append(
                {
                    "type": "action",
                    **scope,
                    "ruleName": action.rule_name,
                    "remoteName": action.remote_name,
                    "classification": action.classification.value,
                    "outcome": action.outcome,
                    "queryFile": action.query_file,
                }
            )

        for error in result.rule_errors:
            records.append(
                {
                    "type": "error",
                    **scope,
                    "ruleIdentifier": error.rule_identifier,
                    "classification": error.classification,
                    "source": error.source,
                    "message": error.message,
                }
            )

        return records


def _classification(error: Exception) -> str:
    return getattr(error, "classification", type(error).__name__)
