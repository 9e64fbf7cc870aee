"""Separate ``<think>`` reasoning segments from the visible reply.

Reasoning models interleave their chain of thought with the answer using
``<think>…</think>`` delimiters.  While a response is still streaming the
closing tag may not have arrived yet, so an unclosed segment counts as
thinking up to the end of the text.
"""

from dataclasses import dataclass

THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"


@dataclass(frozen=True)
class ThinkingSplit:
    thinking: str
    content: str
    inside_thinking: bool = False


def split_thinking(text: str) -> ThinkingSplit:
    thinking: list[str] = []
    content: list[str] = []
    inside = False
    pos = 0
    while pos < len(text):
        tag = THINK_CLOSE if inside else THINK_OPEN
        found = text.find(tag, pos)
        if found == -1:
            (thinking if inside else content).append(text[pos:])
            break
        (thinking if inside else content).append(text[pos:found])
        pos = found + len(tag)
        inside = not inside
    return ThinkingSplit(
        thinking="".join(thinking),
        content="".join(content),
        inside_thinking=inside,
    )
