"""Service API key validation."""

import hashlib
import hmac
import os
from typing import Optional

from fastapi import Request

_FROM_ENV = object()


def validate_service_api_key(header_key: Optional[str], expected=_FROM_ENV) -> bool:
    """
    Check a caller-supplied key against the configured service key.

    Args:
        header_key: Raw header value, None when the header is absent
        expected: Configured secret; read from SERVICE_API_KEY when omitted

    Returns:
        True only when a secret is configured and the key matches it exactly
    """
    if expected is _FROM_ENV:
        expected = os.getenv("SERVICE_API_KEY") or None
    if not expected:
        return False
    if not header_key:
        return False
    return hmac.compare_digest(header_key.encode("utf-8"), expected.encode("utf-8"))


def get_api_key_from_request(request: Request, header: str = "x-api-key") -> Optional[str]:
    """Extract the API key header; None when missing."""
    return request.headers.get(header)


def caller_key(api_key: str) -> str:
    """Stable, non-reversible identity for a credential."""
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:32]


class CredentialValidator:
    """Validates callers against one process-wide service key."""

    def __init__(self, expected: Optional[str]):
        self._expected = expected or None

    @property
    def configured(self) -> bool:
        return self._expected is not None

    def validate(self, provided_key: Optional[str]) -> bool:
        return validate_service_api_key(provided_key, self._expected)
