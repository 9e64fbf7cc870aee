"""Request-history assembly.

Each round re-sends the conversation as it stood when the turn began,
followed by the :class:`HistoryTail`: the protocol messages produced by
earlier rounds of the same turn.  Within one round the tail grows in a
fixed order: the assistant's text (if it said anything), the assistant
message requesting tools, then one tool message per call in the order
the calls were made.
"""

from __future__ import annotations

from chatloop.message import (
    AudioAttachment,
    ImageAttachment,
    MessageRole,
    PdfAttachment,
    StoredMessage,
    TextFileAttachment,
    ToolCall,
    ToolResult,
)


def _attachment_parts(message: StoredMessage) -> list[dict]:
    parts: list[dict] = []
    if message.content:
        parts.append({"type": "text", "text": message.content})
    extras = message.extra or []

    for a in extras:
        if isinstance(a, ImageAttachment):
            parts.append({"type": "image_url", "image_url": {"url": a.base64_url}})
    for a in extras:
        if isinstance(a, TextFileAttachment):
            parts.append({
                "type": "text",
                "text": f"\n\n--- File: {a.name} ---\n{a.content}",
            })
    for a in extras:
        if isinstance(a, AudioAttachment):
            parts.append({
                "type": "input_audio",
                "input_audio": {
                    "data": a.base64_data,
                    "format": "wav" if "wav" in a.mime_type else "mp3",
                },
            })
    for a in extras:
        if isinstance(a, PdfAttachment):
            if a.processed_as_images and a.images:
                parts.extend(
                    {"type": "image_url", "image_url": {"url": img}}
                    for img in a.images
                )
            else:
                parts.append({
                    "type": "text",
                    "text": f"\n\n--- PDF File: {a.name} ---\n{a.content}",
                })
    return parts


def to_request_message(message: StoredMessage | dict) -> dict:
    """Convert a stored message into the shape the completion API expects.

    Dicts are assumed to be protocol-shaped already and pass through.
    Attachments are grouped by kind: images, text files, audio, then PDFs.
    """
    if isinstance(message, dict):
        return message

    if message.role == MessageRole.TOOL:
        return {
            "role": MessageRole.TOOL.value,
            "content": message.content or "",
            "tool_call_id": message.tool_call_id,
            "name": message.tool_name,
        }

    if message.role == MessageRole.ASSISTANT and message.tool_calls:
        return {
            "role": MessageRole.ASSISTANT.value,
            "content": message.content or "",
            "tool_calls": [tc.to_api() for tc in message.tool_calls],
        }

    if message.extra:
        return {"role": message.role.value, "content": _attachment_parts(message)}
    return {"role": message.role.value, "content": message.content or ""}


def assemble_history(
    history: list[StoredMessage | dict], tail: "HistoryTail | list[dict]",
) -> list[dict]:
    """Messages to send for the next round: original history, then the tail."""
    return [to_request_message(m) for m in history] + list(tail)


def summarize_messages(messages: list[dict]) -> list[dict]:
    """Compact per-message description for debug logging."""
    summary = []
    for i, m in enumerate(messages):
        content = m.get("content") or ""
        if not isinstance(content, str):
            content = " ".join(
                p.get("text", f"<{p.get('type')}>") for p in content
            )
        summary.append({
            "i": i,
            "role": m.get("role", "unknown"),
            "has_tool_calls": bool(m.get("tool_calls")),
            "preview": content if len(content) <= 120 else content[:120] + "…",
        })
    return summary


class HistoryTail:
    """Protocol messages generated during the current turn, in send order."""

    def __init__(self) -> None:
        self._messages: list[dict] = []

    def __iter__(self):
        return iter(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __getitem__(self, i):
        return self._messages[i]

    @property
    def messages(self) -> list[dict]:
        return list(self._messages)

    def append_text(self, text: str) -> None:
        self._messages.append({"role": MessageRole.ASSISTANT.value, "content": text})

    def record_round(
        self, text: str, calls: list[ToolCall], results: list[ToolResult],
    ) -> None:
        """Append one tool-calling round.

        Blank *text* is left out.  Every result must answer one of *calls*.

        Raises:
            ValueError: If a result references a call id not in *calls*.
        """
        call_ids = {c.id for c in calls}
        for r in results:
            if r.tool_call_id not in call_ids:
                raise ValueError(
                    f"Tool result for unknown call id '{r.tool_call_id}'"
                )
        if text.strip():
            self.append_text(text)
        self._messages.append({
            "role": MessageRole.ASSISTANT.value,
            "content": "",
            "tool_calls": [c.to_api() for c in calls],
        })
        self._messages.extend(r.to_api() for r in results)
