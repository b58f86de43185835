"""Read-only client for Microsoft Sentinel alert rules.

Talks to the Azure Resource Manager REST API through an azure-core
pipeline: bearer-token authentication, user agent and request logging are
pipeline policies; retries, timeouts and cancellation are handled here so
that they follow the engine's own error taxonomy.

SECURITY: The client only issues GET requests. Nothing in this module can
change remote state.

Status mapping:
- 200 → JSON body (anything else in the body is a RemoteError)
- 401/403 or a credential failure → AuthError (never retried)
- 404 → NotFoundError
- 408/429/5xx, connection errors, timeouts → TransientError (retried)
- anything else → RemoteError

Cancellation is checked before every attempt and while waiting out a
backoff. A request already running in the executor cannot be interrupted:
it finishes or hits the request timeout before cancellation takes effect.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Iterable, Mapping
from typing import Any
from urllib.parse import quote

from azure.core import PipelineClient
from azure.core.credentials import TokenCredential
from azure.core.exceptions import (
    ClientAuthenticationError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.core.pipeline.policies import (
    BearerTokenCredentialPolicy,
    HeadersPolicy,
    NetworkTraceLoggingPolicy,
    UserAgentPolicy,
)
from azure.core.rest import HttpRequest

from . import __version__
from .config import MAX_REMOTE_PAGES, Config
from .errors import (
    AuthError,
    NotFoundError,
    ReconcileCancelled,
    RemoteError,
    RuleDriftError,
    TransientError,
)
from .models import WorkspaceMap

logger = logging.getLogger(__name__)

SCHEDULED_KIND = "scheduled"
RETRYABLE_STATUS_CODES = frozenset({408, 429})
MAX_RETRY_AFTER_SECONDS = 120.0
MAX_ERROR_BODY_CHARS = 500


def is_scheduled(record: Mapping[str, Any]) -> bool:
    """True for scheduled rules. Records without a kind are assumed scheduled."""
    for key, value in record.items():
        if str(key).lower() == "kind":
            return isinstance(value, str) and value.lower() == SCHEDULED_KIND
    return True


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        # HTTP-date form is not used by Resource Manager
        return None
    return min(max(seconds, 0.0), MAX_RETRY_AFTER_SECONDS)


class RemoteClient:
    """Fetches deployed rules for organization/environment pairs.

    Args:
        config: Engine configuration (endpoint, timeouts, retry policy).
        workspaces: Organization/environment → workspace coordinates.
        credential: Azure credential used for bearer tokens.
        client: Pre-built pipeline client; anything with ``send_request``.
    """

    def __init__(
        self,
        config: Config,
        workspaces: WorkspaceMap,
        credential: TokenCredential | None = None,
        *,
        client: Any | None = None,
    ) -> None:
        self._config = config
        self._workspaces = workspaces
        if client is None:
            if credential is None:
                raise ValueError("Either credential or client is required")
            client = self._build_pipeline_client(credential)
        self._client = client

    def _build_pipeline_client(self, credential: TokenCredential) -> PipelineClient:
        policies = [
            HeadersPolicy({"Accept": "application/json"}),
            UserAgentPolicy(sdk_moniker=f"ruledrift/{__version__}"),
            BearerTokenCredentialPolicy(credential, self._config.token_scope),
            NetworkTraceLoggingPolicy(),
        ]
        return PipelineClient(base_url=self._config.arm_endpoint, policies=policies)

    def close(self) -> None:
        close = getattr(self._client, "close", None)
        if close is not None:
            close()

    def _collection_url(self, org: str, env: str) -> str:
        workspace = self._workspaces.resolve(org, env)
        return f"{self._config.arm_endpoint.rstrip('/')}{workspace.alert_rules_path}"

    async def fetch_rules(
        self, org: str, env: str, cancel_event: asyncio.Event | None = None
    ) -> list[dict[str, Any]]:
        """Fetch every scheduled rule of a workspace, following nextLink.

        Raises:
            NotFoundError: If the pair is not mapped or the workspace is gone.
            AuthError: If the credential is rejected.
            TransientError: If a page still fails after all retries.
            RemoteError: On malformed responses or a runaway page chain.
            ReconcileCancelled: If the run is cancelled.
        """
        url: str | None = self._collection_url(org, env)
        params: dict[str, str] | None = {"api-version": self._config.api_version}
        records: list[dict[str, Any]] = []
        pages = 0

        while url:
            pages += 1
            if pages > MAX_REMOTE_PAGES:
                raise RemoteError(f"Pagination exceeded {MAX_REMOTE_PAGES} pages")

            body = await self._get_json(url, params, cancel_event, operation="List alert rules")
            value = body.get("value")
            if not isinstance(value, list):
                raise RemoteError("List response has no 'value' array")

            records.extend(item for item in value if isinstance(item, dict))
            logger.debug(
                "Fetched alert rule page",
                extra={"org": org, "env": env, "page": pages, "count": len(value)},
            )

            url = body.get("nextLink") or None
            # nextLink already carries the api-version and skip token
            params = None

        scheduled = [r for r in records if is_scheduled(r)]
        logger.info(
            "Fetched remote rules",
            extra={
                "org": org,
                "env": env,
                "pages": pages,
                "rules_total": len(records),
                "rules_scheduled": len(scheduled),
            },
        )
        return scheduled

    async def fetch_rule_detail(
        self,
        org: str,
        env: str,
        rule_name: str,
        cancel_event: asyncio.Event | None = None,
    ) -> dict[str, Any]:
        """Fetch one rule from its per-resource endpoint."""
        url = f"{self._collection_url(org, env)}/{quote(rule_name, safe='')}"
        return await self._get_json(
            url,
            {"api-version": self._config.api_version},
            cancel_event,
            operation=f"Get alert rule {rule_name}",
        )

    async def fetch_rule_details(
        self,
        org: str,
        env: str,
        rule_names: Iterable[str],
        cancel_event: asyncio.Event | None = None,
    ) -> dict[str, dict[str, Any] | RuleDriftError]:
        """Fetch several rules concurrently, bounded by the detail worker count.

        Per-rule failures are returned in place of the record. AuthError
        and cancellation abort the whole batch.
        """
        semaphore = asyncio.Semaphore(self._config.detail_workers)

        async def fetch_one(name: str) -> tuple[str, dict[str, Any] | RuleDriftError]:
            async with semaphore:
                try:
                    return name, await self.fetch_rule_detail(org, env, name, cancel_event)
                except (AuthError, ReconcileCancelled):
                    raise
                except RuleDriftError as e:
                    logger.warning(
                        "Rule detail fetch failed",
                        extra={"org": org, "env": env, "rule": name, "error": str(e)},
                    )
                    return name, e

        tasks = [asyncio.create_task(fetch_one(name)) for name in rule_names]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            raise
        return dict(results)

    async def _get_json(
        self,
        url: str,
        params: dict[str, str] | None,
        cancel_event: asyncio.Event | None,
        *,
        operation: str,
    ) -> dict[str, Any]:
        """GET with exponential backoff retry on TransientError."""
        max_attempts = self._config.max_retries
        last_error: TransientError | None = None

        for attempt in range(1, max_attempts + 1):
            self._check_cancelled(cancel_event)
            try:
                return await self._send(url, params, operation)
            except TransientError as e:
                last_error = e

                if attempt < max_attempts:
                    # Exponential backoff with jitter
                    backoff = self._config.retry_backoff_base_seconds * (2 ** (attempt - 1))
                    jitter = random.uniform(0, backoff * 0.2)
                    wait_time = max(backoff + jitter, e.retry_after or 0.0)

                    logger.warning(
                        f"{operation} failed, retrying",
                        extra={
                            "attempt": attempt,
                            "max_attempts": max_attempts,
                            "wait_seconds": wait_time,
                            "error": str(e),
                        },
                    )
                    await self._sleep(wait_time, cancel_event)

        # SAFETY: Loop runs at least once (max_retries >= 1)
        assert last_error is not None
        logger.error(
            f"{operation} failed after all retries",
            extra={"max_attempts": max_attempts, "error": str(last_error)},
        )
        raise last_error

    async def _send(
        self, url: str, params: dict[str, str] | None, operation: str
    ) -> dict[str, Any]:
        """Run one request in the executor, bounded by the request timeout."""
        request = HttpRequest("GET", url, params=params)
        timeout_seconds = self._config.request_timeout_seconds
        loop = asyncio.get_event_loop()

        try:
            response = await asyncio.wait_for(
                loop.run_in_executor(None, self._client.send_request, request),
                timeout=timeout_seconds,
            )
        except TimeoutError as e:
            raise TransientError(f"{operation} timed out after {timeout_seconds}s") from e
        except ClientAuthenticationError as e:
            raise AuthError(f"{operation}: authentication failed: {e.message}") from e
        except (ServiceRequestError, ServiceResponseError) as e:
            raise TransientError(f"{operation}: connection error: {e.message}") from e

        return self._parse_response(response, operation)

    def _parse_response(self, response: Any, operation: str) -> dict[str, Any]:
        status = response.status_code

        if status == 200:
            try:
                body = response.json()
            except ValueError as e:
                raise RemoteError(f"{operation}: response is not JSON") from e
            if not isinstance(body, dict):
                raise RemoteError(f"{operation}: response is not a JSON object")
            return body

        detail = self._error_detail(response)
        if status in (401, 403):
            raise AuthError(f"{operation}: HTTP {status}: {detail}")
        if status == 404:
            raise NotFoundError(f"{operation}: HTTP 404: {detail}")
        if status in RETRYABLE_STATUS_CODES or status >= 500:
            raise TransientError(
                f"{operation}: HTTP {status}: {detail}",
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            )
        raise RemoteError(f"{operation}: HTTP {status}: {detail}")

    @staticmethod
    def _error_detail(response: Any) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text()[:MAX_ERROR_BODY_CHARS]
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            error = body["error"]
            return f"{error.get('code', '')}: {error.get('message', '')}"
        return str(body)[:MAX_ERROR_BODY_CHARS]

    @staticmethod
    def _check_cancelled(cancel_event: asyncio.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise ReconcileCancelled("Run cancelled before remote call")

    @staticmethod
    async def _sleep(seconds: float, cancel_event: asyncio.Event | None) -> None:
        """Sleep for a backoff interval, waking early on cancellation."""
        if cancel_event is None:
            await asyncio.sleep(seconds)
            return
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
        except TimeoutError:
            return
        raise ReconcileCancelled("Run cancelled during retry backoff")
