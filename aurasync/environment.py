"""
One-shot environment assessment taken at the start of every capture attempt.
"""
from __future__ import annotations
from urllib.parse import urlsplit

from aurasync.models import EnvironmentAssessment, PermissionState

LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1"}


def is_secure_context(url: str) -> bool:
    """HTTPS anywhere, or plain HTTP on a loopback host."""
    parts = urlsplit(url or "")
    scheme = (parts.scheme or "").lower()
    host = (parts.hostname or "").lower()
    if scheme in ("https", "wss"):
        return True
    if scheme in ("http", "ws"):
        return host in LOCAL_HOSTS or host.endswith(".localhost")
    return False


def assess_environment(url: str, provider) -> EnvironmentAssessment:
    query = getattr(provider, "query_permission", None)
    permission = query() if callable(query) else PermissionState.UNKNOWN
    return EnvironmentAssessment(
        secure_context=is_secure_context(url),
        media_supported=bool(getattr(provider, "supported", False)),
        permission=permission,
    )
