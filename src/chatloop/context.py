from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from chatloop.message import ToolCall
    from chatloop.session import ChatSession


@dataclass
class Context:
    """Runtime context injected into tools that declare a ``context`` parameter.

    The executor builds one per call, so a tool can see which conversation
    it is acting on and the exact call the model made.

    Args:
        session: The chat session running the turn, or ``None`` when the
            executor is used on its own.
        call: The tool call being executed.
    """

    session: ChatSession | None
    call: ToolCall
