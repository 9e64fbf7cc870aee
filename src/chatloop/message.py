import time
import uuid
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field, field_serializer


class MessageRole(Enum):
    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    TOOL = "tool"


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return str(uuid.uuid4())


def new_tool_call_id() -> str:
    return f"call_{uuid.uuid4().hex}"


class ToolCall(BaseModel):
    """A complete tool call requested by the model.

    ``id`` comes from the server when it sends one; otherwise the
    orchestrator fills in a locally generated id before the call is
    persisted, so the paired result can reference it.
    """

    id: str = ""
    name: str = ""
    arguments: str = ""

    def to_api(self) -> dict:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }

    @property
    def fingerprint(self) -> str:
        return f"{self.name}:{self.arguments}"


class ToolResult(BaseModel):
    tool_call_id: str
    name: str
    content: str
    is_error: bool = False

    def to_api(self) -> dict:
        return {
            "role": MessageRole.TOOL.value,
            "content": self.content,
            "tool_call_id": self.tool_call_id,
            "name": self.name,
        }


# ---------------------------------------------------------------------------
# Attachments
# ---------------------------------------------------------------------------

class ImageAttachment(BaseModel):
    type: Literal["imageFile"] = "imageFile"
    name: str
    base64_url: str


class TextFileAttachment(BaseModel):
    type: Literal["textFile"] = "textFile"
    name: str
    content: str


class AudioAttachment(BaseModel):
    type: Literal["audioFile"] = "audioFile"
    name: str
    base64_data: str
    mime_type: str


class PdfAttachment(BaseModel):
    type: Literal["pdfFile"] = "pdfFile"
    name: str
    content: str
    images: list[str] | None = None
    processed_as_images: bool = False


Attachment = ImageAttachment | TextFileAttachment | AudioAttachment | PdfAttachment


# ---------------------------------------------------------------------------
# Stored messages
# ---------------------------------------------------------------------------

class StoredMessage(BaseModel):
    """A message as persisted by the message store.

    Content is only mutated in place while the round that owns the message
    is streaming.
    """

    id: str = Field(default_factory=new_id)
    conv_id: str
    role: MessageRole
    content: str | None = ""
    timestamp: int = Field(default_factory=now_ms)
    parent: str = "-1"
    thinking: str = ""
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    tool_name: str | None = None
    finish_reason: str | None = None
    usage: dict | None = None
    extra: list[Attachment] | None = None

    @field_serializer("role")
    def serialize_role(self, role: MessageRole, _info) -> str:
        return role.value


class MessageDraft(BaseModel):
    """Fields for a message that has not been stored yet."""

    conv_id: str
    role: MessageRole
    content: str | None = ""
    timestamp: int = Field(default_factory=now_ms)
    parent: str = "-1"
    thinking: str = ""
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    tool_name: str | None = None
    extra: list[Attachment] | None = None


class Conversation(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    last_modified: int = Field(default_factory=now_ms)
    curr_node: str | None = None
