"""Unique, DNS-1123-safe names for ephemeral test namespaces."""

import re
import secrets

from ket.models.run_config import DEFAULT_NAMESPACE_PREFIX

DEFAULT_TOKEN = "default"
SUFFIX_LENGTH = 8

# Namespace names are DNS-1123 labels
MAX_NAMESPACE_LENGTH = 63

_INVALID_CHARS = re.compile(r"[^A-Za-z0-9]")
_HYPHEN_RUNS = re.compile(r"-{2,}")


def sanitize_name(name: str) -> str:
    """Reduce a name to letters, digits and single hyphens.

    Every character outside ``[A-Za-z0-9]`` becomes a hyphen, runs of hyphens
    collapse to one, and leading/trailing hyphens are stripped. Returns
    ``"default"`` when nothing is left. The result is lowercased so it is a
    valid namespace name.
    """
    cleaned = _INVALID_CHARS.sub("-", name)
    cleaned = _HYPHEN_RUNS.sub("-", cleaned).strip("-")
    return cleaned.lower() or DEFAULT_TOKEN


def random_suffix() -> str:
    """Return 8 lowercase hex characters."""
    return secrets.token_hex(SUFFIX_LENGTH // 2)


def generate_test_namespace(prefix: str = DEFAULT_NAMESPACE_PREFIX) -> str:
    """Generate a namespace name of the form ``{prefix}-{8 hex chars}``.

    Names are collision-resistant, not globally unique. Overlong prefixes
    are truncated so the result still fits in a DNS-1123 label.
    """
    base = sanitize_name(prefix)
    max_base = MAX_NAMESPACE_LENGTH - SUFFIX_LENGTH - 1
    if len(base) > max_base:
        base = base[:max_base].rstrip("-") or DEFAULT_TOKEN
    return f"{base}-{random_suffix()}"
