"""Sentinel alert-rules API mock for testing.

Provides an in-memory stand-in for the Resource Manager alert-rules
endpoints that plugs into RemoteClient through its ``client`` argument.

Key Features:
- Collection endpoint with nextLink paging
- Per-rule detail endpoint
- Error injection (HTTP status codes, transport exceptions)
- Record builders for the ARM envelope and the legacy flat export shape

Usage:
    from sentinel_mock import MockSentinelService, arm_rule

    service = MockSentinelService(page_size=2)
    service.add_rule("ws-contoso-dev", arm_rule("r1"))
    client = RemoteClient(config, workspaces, client=service)
"""

from .records import SUBSCRIPTION_ID, WORKSPACES, arm_rule, flat_export_rule, workspace_map
from .service import MockResponse, MockSentinelService

__all__ = [
    "SUBSCRIPTION_ID",
    "WORKSPACES",
    "MockResponse",
    "MockSentinelService",
    "arm_rule",
    "flat_export_rule",
    "workspace_map",
]
