"""Server-Sent Events adapter for turn events."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from dataclasses import asdict

from chatloop.events import TurnComplete, TurnError, TurnEvent


def _payload(event: TurnEvent) -> dict:
    if isinstance(event, TurnComplete):
        result = event.result
        return {
            "content": result.content,
            "rounds": result.rounds,
            "hit_round_cap": result.hit_round_cap,
        } if result is not None else {}
    if isinstance(event, TurnError):
        return {
            "type": type(event.error).__name__,
            "message": str(event.error),
        }
    return asdict(event)


async def sse_generator(
    event_stream: AsyncIterator[TurnEvent],
) -> AsyncIterator[str]:
    """Convert a TurnEvent async iterator into SSE-formatted strings."""
    async for event in event_stream:
        event_type = type(event).__name__
        data = json.dumps(_payload(event))
        yield f"event: {event_type}\ndata: {data}\n\n"
    yield "event: done\ndata: {}\n\n"
