from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Any

REDACTED = "<REDACTED>"

# Credential fields of the Xero OAuth flow, as they appear in token responses,
# refresh form posts and reprs of the stored connection.
SECRET_KEYS: frozenset[str] = frozenset(
    {
        "access_token",
        "refresh_token",
        "id_token",
        "client_secret",
        "code_verifier",
        "authorization",
    }
)

_ASSIGNED_SECRET = re.compile(
    r"(?i)(?P<key>(?<![\w-])[\"']?(?:"
    + "|".join(sorted(SECRET_KEYS - {"authorization"}))
    + r")[\"']?\s*[:=]\s*)(?P<value>\"[^\"]*\"|'[^']*'|[^,&\s}\])]+)"
)
_AUTHORIZATION_HEADER = re.compile(r"(?i)(?P<key>authorization[\"']?\s*[:=]\s*[\"']?(?:bearer|basic)\s+)(?P<value>[^\s,;'\"]+)")
_AUTHORIZATION_CODE = re.compile(r"(?P<key>[?&]code=)(?P<value>[^&\s]+)")


def _keep_key(match: re.Match[str]) -> str:
    return match.group("key") + REDACTED


def redact_text(text: str) -> str:
    for pattern in (_ASSIGNED_SECRET, _AUTHORIZATION_HEADER, _AUTHORIZATION_CODE):
        text = pattern.sub(_keep_key, text)
    return text


def redact_value(value: Any) -> Any:
    """Redacts strings, and mapping values under a credential key, at any depth."""
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, Mapping):
        return {
            key: REDACTED if isinstance(key, str) and key.lower() in SECRET_KEYS else redact_value(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return type(value)(redact_value(item) for item in value)
    return value


class LoggingSecretsFilter(logging.Filter):
    """Scrubs Xero credentials from a record's message, arguments and ``extra`` payload."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact_text(record.msg)
        if record.args:
            record.args = redact_value(record.args)
        payload = getattr(record, "extra", None)
        if isinstance(payload, Mapping):
            record.extra = redact_value(payload)
        return True
