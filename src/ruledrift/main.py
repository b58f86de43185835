"""Run orchestration: logging, cancellation and the per-organization pipelines.

SECRETLESS ARCHITECTURE:
Import mode authenticates with a managed identity or the local Azure CLI
login only; see security.py.

Each organization runs its own Reconciler inside one asyncio.TaskGroup.
AuthError, NotFoundError and cancellation in any of them end the whole
invocation without a report.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from collections.abc import Sequence
from datetime import UTC, datetime

from .config import Config, ReconcileMode, validate_scope_name
from .config_store import ConfigStore, load_workspace_map
from .errors import RuleDriftError
from .reconciler import Reconciler, ReconcileResult
from .remote_client import RemoteClient
from .security import get_credential

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_PARTIAL = 2

_RESERVED_RECORD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


_handler: logging.Handler | None = None


def setup_logging(verbose: bool = False) -> None:
    """Configure JSON logging on stderr; stdout is reserved for the report."""
    global _handler

    root_logger = logging.getLogger()
    if _handler is not None:
        root_logger.removeHandler(_handler)

    _handler = logging.StreamHandler(sys.stderr)
    _handler.setFormatter(JsonFormatter())
    root_logger.addHandler(_handler)
    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def exit_code_for(results: Sequence[ReconcileResult]) -> int:
    """Map results to the process exit code.

    Precedence: run failure (1) > rule failures (2) > promotion gaps (1) > 0.
    """
    if any(result.error is not None for result in results):
        return EXIT_FAILURE
    if any(result.rule_errors for result in results):
        return EXIT_PARTIAL
    if any(
        result.mode == ReconcileMode.PROMOTION_CHECK and result.promotion_gaps
        for result in results
    ):
        return EXIT_FAILURE
    return EXIT_OK


def build_remote_client(config: Config) -> RemoteClient:
    """Create the remote client with a secretless credential.

    Raises:
        ConfigurationError: If the workspace map cannot be loaded.
        SecretlessViolationError: If credential secrets are in the environment.
    """
    workspaces = load_workspace_map(config.resolved_workspaces_file)
    credential = get_credential(
        client_id=config.managed_identity_client_id,
        use_azure_cli=config.use_azure_cli_credential,
    )
    return RemoteClient(config, workspaces, credential)


def _install_cancellation(
    loop: asyncio.AbstractEventLoop, cancel_event: asyncio.Event, config: Config
) -> tuple[list[signal.Signals], asyncio.TimerHandle | None]:
    """Wire SIGINT/SIGTERM and the optional deadline to the cancel event."""

    def cancel(reason: str) -> None:
        if not cancel_event.is_set():
            logger.warning("Cancelling run", extra={"reason": reason})
            cancel_event.set()

    installed = []
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, cancel, sig.name)
        except (NotImplementedError, RuntimeError):
            # Not supported outside the main thread or on Windows
            continue
        installed.append(sig)

    deadline = None
    if config.run_deadline_seconds:
        deadline = loop.call_later(config.run_deadline_seconds, cancel, "deadline")

    return installed, deadline


async def reconcile(
    config: Config,
    orgs: Sequence[str],
    env: str,
    mode: ReconcileMode,
    *,
    target_env: str | None = None,
    dry_run: bool = False,
    force: bool = False,
    remote: RemoteClient | None = None,
    cancel_event: asyncio.Event | None = None,
) -> list[ReconcileResult]:
    """Run one reconciliation per organization, concurrently.

    Returns:
        Results in the order of ``orgs``.

    Raises:
        AuthError: If the remote service rejects the credential.
        NotFoundError: If an organization or environment does not exist.
        ReconcileCancelled: If the run was cancelled by signal or deadline.
    """
    if mode == ReconcileMode.PROMOTION_CHECK and not target_env:
        raise ValueError("promotion-check mode requires a target environment")

    for org in orgs:
        validate_scope_name("Organization", org)
    for name in filter(None, (env, target_env)):
        validate_scope_name("Environment", name)

    store = ConfigStore(config.rules_root)
    owns_remote = False
    if mode == ReconcileMode.IMPORT and remote is None:
        remote = build_remote_client(config)
        owns_remote = True

    cancel_event = cancel_event or asyncio.Event()
    loop = asyncio.get_running_loop()
    installed, deadline = _install_cancellation(loop, cancel_event, config)

    logger.info(
        "Starting reconciliation",
        extra={
            "orgs": list(orgs),
            "env": env,
            "target_env": target_env,
            "mode": mode.value,
            "dry_run": dry_run,
        },
    )

    async def run_org(org: str) -> ReconcileResult:
        reconciler = Reconciler(config, store, remote, cancel_event=cancel_event)
        if mode == ReconcileMode.IMPORT:
            return await reconciler.run_import(org, env, dry_run=dry_run, force=force)
        assert target_env is not None
        return await reconciler.run_promotion_check(org, env, target_env)

    fatal: RuleDriftError | None = None
    try:
        async with asyncio.TaskGroup() as tg:
            tasks = [tg.create_task(run_org(org)) for org in orgs]
    except* RuleDriftError as group:
        fatal = group.exceptions[0]
    finally:
        if deadline is not None:
            deadline.cancel()
        for sig in installed:
            loop.remove_signal_handler(sig)
        if owns_remote and remote is not None:
            remote.close()

    if fatal is not None:
        raise fatal

    return [task.result() for task in tasks]
