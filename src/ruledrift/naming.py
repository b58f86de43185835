"""Local rule naming.

Rule names are file names in the desired-state store, so they are kept to
lower-case slugs. Remote rules created through the portal carry GUID
resource names; those get a name derived from their display name instead.
"""

from __future__ import annotations

import posixpath
import re
from collections.abc import Collection

from .config import QUERIES_DIRNAME
from .models import VALID_RULE_NAME_PATTERN

FALLBACK_IDENTIFIER = "rule"
MAX_IDENTIFIER_LENGTH = 100

_NON_ALPHANUMERIC = re.compile(r"[^a-z0-9]+")
_GUID = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.I)


def derive_identifier(display_name: str) -> str:
    """Derive a slug from a display name.

    Lower-cases, collapses every run of non-alphanumeric characters into a
    single hyphen and trims hyphens from both ends. An empty result falls
    back to "rule".

    >>> derive_identifier("Suspicious Sign-in (Impossible Travel)")
    'suspicious-sign-in-impossible-travel'
    """
    slug = _NON_ALPHANUMERIC.sub("-", display_name.lower()).strip("-")
    slug = slug[:MAX_IDENTIFIER_LENGTH].rstrip("-")
    return slug or FALLBACK_IDENTIFIER


def unique_identifier(base: str, taken: Collection[str]) -> str:
    """Return ``base``, or ``base-2``, ``base-3``... if it is already taken."""
    if base not in taken:
        return base
    suffix = 2
    while f"{base}-{suffix}" in taken:
        suffix += 1
    return f"{base}-{suffix}"


def is_readable_name(name: str) -> bool:
    """True for a remote resource name that is usable as a local rule name."""
    return bool(re.match(VALID_RULE_NAME_PATTERN, name)) and not _GUID.match(name)


def local_name_for(remote_name: str, display_name: str, taken: Collection[str]) -> str:
    """Choose the local name for a newly imported remote rule."""
    if is_readable_name(remote_name):
        base = remote_name
    else:
        base = derive_identifier(display_name)
    return unique_identifier(base, taken)


def query_file_for(name: str, taken: Collection[str]) -> str:
    """Choose a query path for a new rule that no existing record references.

    ``taken`` holds normalized queryFile values. Collisions get the same
    numeric suffixes as rule names: ``queries/<name>-2.kql``, ...
    """
    stems = {
        posixpath.splitext(posixpath.basename(path))[0]
        for path in taken
        if posixpath.dirname(path) == QUERIES_DIRNAME
    }
    return f"{QUERIES_DIRNAME}/{unique_identifier(name, stems)}.kql"
