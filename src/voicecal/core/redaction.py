"""Helpers that keep secret material out of logs and error payloads."""

from __future__ import annotations

import re

import httpx

_MAX_MESSAGE_CHARS = 200
_SECRET_KEYS = r"client_secret|refresh_token|access_token|token|api_key|value"


def redact_credentials(message: str) -> str:
    """Redact credential values from an error message.

    Redaction is pattern-based: credentials are DB-managed and never present
    in process environment variables that could be matched literally.
    """
    redacted = message
    # key=value style pairs
    redacted = re.sub(
        rf"(?i)\b({_SECRET_KEYS})\s*=\s*([^\s,;]+)",
        r"\1=[REDACTED]",
        redacted,
    )
    # JSON/Python dict style quoted values
    redacted = re.sub(
        rf"""(?i)(['"]?(?:{_SECRET_KEYS})['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    # Bearer headers
    redacted = re.sub(r"(?i)\bbearer\s+[A-Za-z0-9._\-]+", "Bearer [REDACTED]", redacted)
    return redacted


def sanitize_message(message: str) -> str:
    """Redact, collapse whitespace and truncate *message* for display."""
    return " ".join(redact_credentials(message).split())[:_MAX_MESSAGE_CHARS]


def safe_error_message(response: httpx.Response) -> str:
    """Extract a short, redacted error description from a provider response.

    Understands the ``{"error": {"message": ...}}`` and
    ``{"error": "...", "error_description": "..."}`` payload shapes.
    """
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return sanitize_message(message)
        if isinstance(error_payload, str) and error_payload.strip():
            description = payload.get("error_description")
            if isinstance(description, str) and description.strip():
                return sanitize_message(f"{error_payload}: {description}")
            return sanitize_message(error_payload)

    raw_text = response.text.strip()
    if raw_text:
        return sanitize_message(raw_text)
    return "Request failed without an error payload"
