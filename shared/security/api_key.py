"""
Shared secret for back-office and service-to-service calls (product seeding).

A missing INTERNAL_API_KEY does not stop the app from starting; it falls back
to a throwaway default and warns loudly so production misconfiguration shows
up in the logs.
"""
import os
import secrets
import warnings

_INTERNAL_API_KEY: str = os.getenv("INTERNAL_API_KEY", "")

if not _INTERNAL_API_KEY:
    warnings.warn(
        "INTERNAL_API_KEY is not set. Falling back to an insecure default.",
        stacklevel=2,
    )
    _INTERNAL_API_KEY = "insecure-default-change-me"

INTERNAL_API_KEY: str = _INTERNAL_API_KEY


def verify_api_key(provided_key: str | None) -> bool:
    """Constant-time comparison against the configured internal key."""
    if not provided_key:
        return False
    return secrets.compare_digest(str(provided_key), str(INTERNAL_API_KEY))
