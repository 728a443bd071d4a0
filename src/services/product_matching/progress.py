"""
Unidirectional progress stream for batch matching runs.

Producers publish ``ProgressEvent`` objects; a single consumer iterates them in
publish order. The channel terminates exactly once, with a ``complete`` event.
"""

import asyncio
from typing import AsyncIterator, List, Literal, Optional

from pydantic import BaseModel, Field

EventType = Literal["start", "progress", "complete"]


class ItemResultPayload(BaseModel):
    detection_id: int
    detection_index: int
    status: str
    outcome: Optional[str] = None
    product_name: Optional[str] = None
    brand_name: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None
    saved_match: Optional[dict] = None


class ProgressEvent(BaseModel):
    type: EventType = "progress"
    detection_id: Optional[int] = None
    detection_index: Optional[int] = None
    stage: Optional[str] = None
    message: Optional[str] = None
    current_product: Optional[str] = None
    processed: int = 0
    total: int = 0
    success: int = 0
    no_match: int = 0
    manual_review: int = 0
    errors: int = 0
    cancelled: int = 0
    results: Optional[List[ItemResultPayload]] = Field(default=None)


class ChannelClosed(RuntimeError):
    pass


_CLOSED = object()


class ProgressChannel:
    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: ProgressEvent) -> None:
        if self._closed:
            raise ChannelClosed("Progress channel already completed")
        if event.type == "complete":
            raise ValueError("Use complete() to publish the final event")
        self._queue.put_nowait(event)

    def complete(self, event: ProgressEvent) -> None:
        if self._closed:
            raise ChannelClosed("Progress channel already completed")
        self._closed = True
        self._queue.put_nowait(event.model_copy(update={"type": "complete"}))
        self._queue.put_nowait(_CLOSED)

    async def events(self) -> AsyncIterator[ProgressEvent]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item


def encode_sse(event: ProgressEvent) -> str:
    return f"data: {event.model_dump_json(exclude_none=True)}\n\n"
