"""Events produced while a turn is generated.

Two layers share this module.  :class:`ParserEvent` subclasses come out
of the stream parser, one per protocol record.  :class:`TurnEvent`
subclasses are what the orchestrator yields to its caller: a single
ordered channel that always ends with exactly one of
:class:`TurnComplete`, :class:`TurnError` or :class:`TurnAborted`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


# ---------------------------------------------------------------------------
# Parser events
# ---------------------------------------------------------------------------

@dataclass
class ParserEvent:
    """Base for events decoded from the response stream."""


@dataclass
class ContentDelta(ParserEvent):
    """A fragment of generated text."""

    text: str = ""


@dataclass
class ToolCallDelta(ParserEvent):
    """A partial update to the tool call at position ``index``."""

    index: int = 0
    call_id: str | None = None
    name: str | None = None
    arguments: str | None = None


@dataclass
class Finish(ParserEvent):
    """The server's ``finish_reason`` for the round.

    Common values: ``"stop"``, ``"length"``, ``"tool_calls"``.
    """

    reason: str = ""


@dataclass
class StreamEnd(ParserEvent):
    """The stream is over.

    ``saw_done`` is false when the transport closed without sending the
    ``[DONE]`` marker.
    """

    saw_done: bool = True
    usage: dict | None = None


# ---------------------------------------------------------------------------
# Turn events
# ---------------------------------------------------------------------------

@dataclass
class TurnEvent:
    """Base for events yielded by the orchestrator."""


@dataclass
class RoundStarted(TurnEvent):
    round_number: int = 0
    message_id: str = ""


@dataclass
class ContentEvent(TurnEvent):
    """Text delta; ``content`` is the thinking-free body so far."""

    delta: str = ""
    content: str = ""
    thinking: str = ""


@dataclass
class ToolCallEvent(TurnEvent):
    round_number: int = 0
    call_id: str = ""
    name: str = ""
    arguments: str = ""


@dataclass
class ToolResultEvent(TurnEvent):
    round_number: int = 0
    call_id: str = ""
    name: str = ""
    content: str = ""
    is_error: bool = False


@dataclass
class TurnComplete(TurnEvent):
    """Final event of a successful turn."""

    result: Any = None


@dataclass
class TurnError(TurnEvent):
    """Final event of a turn that failed with a transport or context error."""

    error: Exception | None = None


@dataclass
class TurnAborted(TurnEvent):
    """Final event of a turn the caller stopped."""

    partial_content: str = ""
    round_number: int = 0
    saved_message_id: str | None = None


TERMINAL_EVENTS = (TurnComplete, TurnError, TurnAborted)


@dataclass
class TurnResult:
    """Outcome of a drained turn."""

    content: str = ""
    rounds: int = 0
    hit_round_cap: bool = False
    aborted: bool = False
    messages: list = field(default_factory=list)
    history_tail: list[dict] = field(default_factory=list)
