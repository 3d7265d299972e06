"""Secret redaction for log output.

Provides:
  - ``redact_secrets(msg)``          — strip credential patterns from a string
  - ``LogRedactionFilter``           — ``logging.Filter`` that auto-redacts
  - ``apply_log_redaction(logger)``  — attach the filter to all handlers
  - ``apply_global_log_redaction()`` — attach the filter to the root logger

Besides the generic patterns, the configured provider keys themselves
can be registered so they are masked wherever they show up (e.g. in an
exception message that echoes a request URL).

Usage::

    from newsstack.log_redaction import apply_global_log_redaction
    apply_global_log_redaction(secrets=[cfg.fmp_api_key])  # call once at startup
"""
from __future__ import annotations

import logging
import re
from typing import Iterable

# ---------------------------------------------------------------------------
# Sensitive patterns (name, compiled regex)
# ---------------------------------------------------------------------------
_SENSITIVE_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    # Query-string credentials used by the news providers
    (
        "query_key",
        re.compile(r"(?:apikey|api_key|api_token|token)=[^&\s'\"]+", re.IGNORECASE),
    ),
    # key: value / key=value style
    (
        "api_token",
        re.compile(
            r"(?:api[_-]?key|secret|password)\s*[:=]\s*[\"']?([^\s'\"]+)[\"']?",
            re.IGNORECASE,
        ),
    ),
    # Authorization header (the stream provider uses "Token <key>")
    (
        "auth_header",
        re.compile(r"(?:Authorization\s*[:=]\s*)?(?:Bearer|Token)\s+[A-Za-z0-9._\-]{8,}", re.IGNORECASE),
    ),
    # Bare 32-char hex keys (FMP / Benzinga style)
    ("hex_key", re.compile(r"\b[a-fA-F0-9]{32}\b")),
]

_REPLACEMENT = "***REDACTED***"

# Literal secret values registered at startup.
_KNOWN_SECRETS: set[str] = set()

# Shorter values would mask ordinary words.
_MIN_SECRET_LEN = 6


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def register_secrets(values: Iterable[str]) -> None:
    """Mask these literal values in every redacted message."""
    for v in values:
        if v and len(v) >= _MIN_SECRET_LEN:
            _KNOWN_SECRETS.add(v)


def redact_secrets(msg: str, replacement: str = _REPLACEMENT) -> str:
    """Return *msg* with all recognised secret patterns replaced."""
    if not msg:
        return msg
    result = msg
    for secret in _KNOWN_SECRETS:
        if secret in result:
            result = result.replace(secret, replacement)
    for _name, pattern in _SENSITIVE_PATTERNS:
        result = pattern.sub(replacement, result)
    return result


class LogRedactionFilter(logging.Filter):
    """Logging filter that automatically redacts sensitive data.

    Attach to a handler (not a logger) for best results::

        handler.addFilter(LogRedactionFilter())
    """

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        if record.msg and isinstance(record.msg, str):
            record.msg = redact_secrets(record.msg)
        if record.args:
            if isinstance(record.args, dict):
                record.args = {k: _redact_arg(v) for k, v in record.args.items()}
            elif isinstance(record.args, tuple):
                record.args = tuple(_redact_arg(v) for v in record.args)
        return True


def _redact_arg(v: object) -> object:
    # Exceptions are common log args and often echo request URLs.
    if isinstance(v, str):
        return redact_secrets(v)
    if isinstance(v, BaseException):
        return redact_secrets(str(v))
    return v


def apply_log_redaction(logger: logging.Logger) -> None:
    """Attach :class:`LogRedactionFilter` to every handler of *logger*."""
    filt = LogRedactionFilter()
    for handler in logger.handlers:
        handler.addFilter(filt)


def apply_global_log_redaction(secrets: Iterable[str] = ()) -> None:
    """Attach :class:`LogRedactionFilter` to the **root** logger's handlers."""
    register_secrets(secrets)
    apply_log_redaction(logging.getLogger())
