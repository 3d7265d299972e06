"""Structured error taxonomy for the ingestion core.

Callers catch the specific failure mode instead of bare ``Exception``:

  - ``FetchError`` family: raised by source adapters.  Transient and
    rate-limited errors are retried with backoff; auth errors park the
    source; parse errors drop the payload.
  - ``NormalizeError`` family: raised by normalisers for one payload.
  - ``SinkError`` family: raised by the persistence collaborator.

Every error carries a short ``reason`` label that is also used as the
``reason`` label on the failure counter.
"""
from __future__ import annotations


class NewsstackError(Exception):
    """Base error for all newsstack subsystems."""

    reason = "error"

    def __init__(self, message: str, *, source_id: str = "", reason: str | None = None):
        self.source_id = source_id
        if reason is not None:
            self.reason = reason
        super().__init__(message)


# ---------------------------------------------------------------------------
# Adapter errors
# ---------------------------------------------------------------------------

class FetchError(NewsstackError):
    """An adapter call failed."""

    retryable = False


class TransientFetchError(FetchError):
    """Network error, timeout, 5xx, or dropped connection."""

    reason = "transient"
    retryable = True


class RateLimitedError(TransientFetchError):
    """HTTP 429 or the provider's soft rate-limit body."""

    reason = "rate_limited"

    def __init__(
        self,
        message: str,
        *,
        source_id: str = "",
        retry_after_s: float | None = None,
    ):
        self.retry_after_s = retry_after_s
        super().__init__(message, source_id=source_id)


class AuthError(FetchError):
    """Credential rejected (401/403).  Fatal to the source until reconfigured."""

    reason = "auth"


class ParseError(FetchError):
    """Response body could not be decoded."""

    reason = "parse"


# ---------------------------------------------------------------------------
# Normaliser errors
# ---------------------------------------------------------------------------

class NormalizeError(NewsstackError):
    """A raw payload could not be turned into a ``NewsItem``."""

    reason = "normalize"


class IncompleteError(NormalizeError):
    """Payload lacks a required field (title or link)."""

    reason = "incomplete"

    def __init__(self, message: str, *, source_id: str = "", missing: tuple[str, ...] = ()):
        self.missing = missing
        super().__init__(message, source_id=source_id)


# ---------------------------------------------------------------------------
# Sink errors
# ---------------------------------------------------------------------------

class SinkError(NewsstackError):
    """Persistence collaborator failure."""

    reason = "sink"


class SinkUnavailableError(SinkError):
    """Store unreachable; the write should be retried later."""

    reason = "unavailable"
