"""
Pending ICE candidate queue.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Awaitable, Callable, Deque, Iterator

from ..backend.base import EndpointHandle, ICECandidate
from ..errors import CandidateApplyFailed

LOG = logging.getLogger(__name__)

ApplyCallable = Callable[[EndpointHandle, ICECandidate], Awaitable[None]]


class CandidateQueue:
    """
    FIFO buffer of candidates received before the remote endpoint exists.

    The queue is drained exactly once; after :meth:`drain_into` it stays
    closed and refuses further candidates so nothing can linger behind a
    ready endpoint.
    """

    def __init__(self) -> None:
        self._items: Deque[ICECandidate] = deque()
        self._drained = False

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[ICECandidate]:
        return iter(list(self._items))

    @property
    def drained(self) -> bool:
        return self._drained

    def enqueue(self, candidate: ICECandidate) -> None:
        if self._drained:
            raise RuntimeError("candidate queue already drained")
        self._items.append(candidate)

    def clear(self) -> None:
        self._items.clear()
        self._drained = True

    async def drain_into(self, endpoint: EndpointHandle, apply: ApplyCallable) -> int:
        """
        Apply every queued candidate to ``endpoint`` in arrival order.

        ``apply`` may raise :class:`CandidateApplyFailed` for a single
        candidate; that candidate is logged and skipped.  Returns the number of
        candidates applied successfully.
        """

        self._drained = True
        applied = 0
        while self._items:
            candidate = self._items.popleft()
            try:
                await apply(endpoint, candidate)
            except CandidateApplyFailed as exc:
                LOG.warning("Skipping queued candidate for %s: %s", endpoint, exc)
                continue
            applied += 1
        return applied


__all__ = ["ApplyCallable", "CandidateQueue", "ICECandidate"]
