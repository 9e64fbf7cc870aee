"""Message store collaborator.

The orchestrator only depends on :class:`MessageStore`.  The bundled
:class:`InMemoryMessageStore` is enough for scripts and tests; a browser
database, SQLite or a remote API can sit behind the same four calls.
"""

from __future__ import annotations

from typing import Protocol

from chatloop.message import Conversation, MessageDraft, StoredMessage, now_ms


class MessageStore(Protocol):
    async def add_message(self, draft: MessageDraft) -> StoredMessage: ...

    async def update_message(self, message_id: str, **patch) -> None: ...

    async def delete_message(self, message_id: str) -> None: ...

    async def get_conversation_messages(self, conv_id: str) -> list[StoredMessage]: ...


class ConversationStore(MessageStore, Protocol):
    """A message store that also keeps the conversation list."""

    async def create_conversation(self, name: str) -> Conversation: ...

    async def get_conversation(self, conv_id: str) -> Conversation | None: ...

    async def update_conversation(self, conv_id: str, **patch) -> None: ...

    async def delete_conversation(self, conv_id: str) -> None: ...


class InMemoryMessageStore:
    """Dictionary-backed store for conversations and their messages."""

    def __init__(self) -> None:
        self.conversations: dict[str, Conversation] = {}
        self.messages: dict[str, StoredMessage] = {}

    async def create_conversation(self, name: str) -> Conversation:
        conversation = Conversation(name=name)
        self.conversations[conversation.id] = conversation
        return conversation

    async def get_conversation(self, conv_id: str) -> Conversation | None:
        return self.conversations.get(conv_id)

    async def get_all_conversations(self) -> list[Conversation]:
        return sorted(
            self.conversations.values(),
            key=lambda c: c.last_modified, reverse=True,
        )

    async def update_conversation(self, conv_id: str, **patch) -> None:
        conversation = self.conversations[conv_id]
        for key, value in patch.items():
            setattr(conversation, key, value)

    async def delete_conversation(self, conv_id: str) -> None:
        self.conversations.pop(conv_id, None)
        for message_id in [
            m.id for m in self.messages.values() if m.conv_id == conv_id
        ]:
            del self.messages[message_id]

    async def add_message(self, draft: MessageDraft) -> StoredMessage:
        message = StoredMessage(**draft.model_dump())
        self.messages[message.id] = message
        conversation = self.conversations.get(message.conv_id)
        if conversation is not None:
            conversation.last_modified = now_ms()
            conversation.curr_node = message.id
        return message.model_copy(deep=True)

    async def update_message(self, message_id: str, **patch) -> None:
        if message_id not in self.messages:
            raise KeyError(f"Message '{message_id}' not found")
        message = self.messages[message_id]
        for key, value in patch.items():
            setattr(message, key, value)

    async def delete_message(self, message_id: str) -> None:
        self.messages.pop(message_id, None)

    async def get_conversation_messages(self, conv_id: str) -> list[StoredMessage]:
        found = [m for m in self.messages.values() if m.conv_id == conv_id]
        return [m.model_copy(deep=True) for m in sorted(found, key=lambda m: m.timestamp)]
