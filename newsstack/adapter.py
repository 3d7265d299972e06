"""Capability surface shared by every source adapter.

The Scheduler and the Retry/Backoff Controller only ever talk to this
interface and dispatch on ``descriptor.kind``:

  - ``POLL`` / ``SCRAPE``: ``await fetch_once()`` returns the raw payloads
    of one run, in source order.
  - ``STREAM``: ``await open()`` returns a :class:`StreamHandle` that
    yields raw payloads until it is closed or the connection drops.

Every adapter failure is raised as a ``FetchError`` subclass.
"""

from __future__ import annotations

import abc
from typing import AsyncIterator, List

from .common_types import RawPayload, SourceDescriptor


class StreamHandle(abc.ABC):
    """Live stream connection.  Iterate to receive payloads.

    Iteration ends by raising ``TransientFetchError`` when the connection
    drops, and stops cleanly after ``close()``.
    """

    @abc.abstractmethod
    def __aiter__(self) -> AsyncIterator[RawPayload]:
        ...

    @abc.abstractmethod
    async def close(self) -> None:
        ...


class SourceAdapter(abc.ABC):
    """One adapter per configured source."""

    def __init__(self, descriptor: SourceDescriptor) -> None:
        self.descriptor = descriptor

    @property
    def source_id(self) -> str:
        return self.descriptor.source_id

    async def fetch_once(self) -> List[RawPayload]:
        """Run one fetch (poll / scrape sources)."""
        raise NotImplementedError(f"{type(self).__name__} does not support fetch_once()")

    async def open(self) -> StreamHandle:
        """Open a live connection (stream sources)."""
        raise NotImplementedError(f"{type(self).__name__} does not support open()")

    async def aclose(self) -> None:
        """Release long-lived resources (HTTP clients, sockets)."""
        return None
