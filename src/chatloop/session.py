import asyncio
import functools
import logging
from collections.abc import AsyncIterator
from contextlib import aclosing
from datetime import datetime

from chatloop.config import ChatSettings
from chatloop.errors import ContextError, StoreError
from chatloop.events import (
    TurnAborted,
    TurnComplete,
    TurnError,
    TurnEvent,
    TurnResult,
)
from chatloop.executor import ToolExecutor
from chatloop.message import (
    Attachment,
    Conversation,
    MessageDraft,
    MessageRole,
    StoredMessage,
    now_ms,
)
from chatloop.orchestrator import RoundOrchestrator, RoundPhase
from chatloop.provider import ModelProvider
from chatloop.store import ConversationStore
from chatloop.tools import ToolRegistry

logger = logging.getLogger(__name__)


class ChatSession:
    """State and operations for one conversation.

    A session holds the active conversation, its in-memory message list and
    at most one running generation.  Starting a new turn while one is in
    flight stops the old turn first.

    ``iter_*`` methods yield :class:`~chatloop.events.TurnEvent` objects as
    the turn progresses; the plain methods drain them and return a
    :class:`~chatloop.events.TurnResult`, raising on transport or context
    errors.

    Args:
        provider: Completion transport.
        store: Persistent conversation and message store.
        registry: Tools offered to the model.
        settings: Request and loop settings.
    """

    def __init__(
        self,
        provider: ModelProvider,
        store: ConversationStore,
        registry: ToolRegistry | None = None,
        settings: ChatSettings | None = None,
    ):
        self.provider = provider
        self.store = store
        self.registry = registry if registry is not None else ToolRegistry()
        self.settings = settings or ChatSettings()
        self.executor = ToolExecutor(self.registry, session=self)

        self.conversation: Conversation | None = None
        self.active_messages: list[StoredMessage] = []
        self.is_loading = False
        self.max_context_error: dict | None = None
        self._orchestrator: RoundOrchestrator | None = None
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def current_response(self) -> str:
        if self._orchestrator is None or not self.is_loading:
            return ""
        return self._orchestrator.current_response

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def create_conversation(self, name: str | None = None) -> str:
        name = name or f"Chat {datetime.now():%Y-%m-%d %H:%M:%S}"
        self.conversation = await self.store.create_conversation(name)
        self.active_messages = []
        self.max_context_error = None
        return self.conversation.id

    async def load_conversation(self, conv_id: str) -> bool:
        try:
            conversation = await self.store.get_conversation(conv_id)
            if conversation is None:
                return False
            self.conversation = conversation
            self.active_messages = await self.store.get_conversation_messages(conv_id)
        except Exception as e:
            logger.error(f"Failed to load conversation: {e}")
            return False
        self.max_context_error = None
        return True

    async def rename_conversation(self, name: str) -> None:
        if self.conversation is None:
            return
        try:
            await self.store.update_conversation(self.conversation.id, name=name)
        except Exception as e:
            logger.error(f"Failed to update conversation name: {e}")
            return
        self.conversation.name = name

    def clear_max_context_error(self) -> None:
        self.max_context_error = None

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def iter_send_message(
        self, content: str, extras: list[Attachment] | None = None,
    ) -> AsyncIterator[TurnEvent]:
        """Add a user message and stream the assistant's turn.

        Blank input without attachments is ignored.  A context error
        removes the user message again, as if the turn never happened.
        """
        if not content.strip() and not extras:
            return
        if self.is_loading:
            await self.graceful_stop()

        is_new = self.conversation is None
        if is_new:
            await self.create_conversation()

        self.is_loading = True
        self._idle.clear()
        try:
            user_message = await self._add_message(
                MessageRole.USER, content, extras=extras,
            )
            if is_new and content.strip():
                await self.rename_conversation(content.strip())
            history = await self.store.get_conversation_messages(self.conversation.id)
            placeholder = await self._add_message(MessageRole.ASSISTANT, "")
        except Exception:
            self._settled(RoundPhase.ERROR)
            raise

        async with aclosing(self._run_turn(history, placeholder)) as events:
            async for event in events:
                if isinstance(event, TurnError) and isinstance(event.error, ContextError):
                    await self._rollback(user_message, event.error)
                yield event

    async def send_message(
        self, content: str, extras: list[Attachment] | None = None,
    ) -> TurnResult | None:
        return await self._drain(self.iter_send_message(content, extras))

    async def update_message(self, message_id: str, new_content: str) -> TurnResult | None:
        """Edit a user message and regenerate everything after it.

        Only user messages can be edited.  If regeneration fails the
        original content is put back.
        """
        if self.conversation is None:
            return None
        if self.is_loading:
            await self.graceful_stop()

        index = self._index_of(message_id)
        if index is None:
            logger.error("Message not found for update")
            return None
        message = self.active_messages[index]
        if message.role != MessageRole.USER:
            logger.error("Only user messages can be edited")
            return None

        original_content = message.content
        message.content = new_content
        await self.store.update_message(message_id, content=new_content)
        await self._truncate_after(index + 1)

        try:
            placeholder = await self._begin_regeneration()
            return await self._drain(
                self._run_turn(self.active_messages[:-1], placeholder)
            )
        except Exception:
            message.content = original_content
            try:
                await self.store.update_message(message_id, content=original_content)
            except Exception as e:
                logger.error(f"Failed to restore edited message: {e}")
            raise

    async def regenerate_message(self, message_id: str) -> TurnResult | None:
        """Drop an assistant message and everything after it, then regenerate."""
        if self.conversation is None or self.is_loading:
            return None

        index = self._index_of(message_id)
        if index is None:
            logger.error("Message not found for regeneration")
            return None
        if self.active_messages[index].role != MessageRole.ASSISTANT:
            logger.error("Only assistant messages can be regenerated")
            return None

        await self._truncate_after(index)
        history = await self.store.get_conversation_messages(self.conversation.id)
        placeholder = await self._begin_regeneration()
        return await self._drain(self._run_turn(history, placeholder))

    def stop_generation(self) -> None:
        """Ask the running turn to stop.

        The turn saves any partial text and ends with ``TurnAborted``.
        Safe to call from inside the loop consuming the turn's events.
        """
        if self._orchestrator is not None and self.is_loading:
            self._orchestrator.abort()

    async def graceful_stop(self) -> None:
        """Stop the running turn and wait until it has wound down.

        Must be awaited from a task other than the one consuming the turn.
        """
        if not self.is_loading:
            return
        self.stop_generation()
        await self._idle.wait()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run_turn(
        self, history: list[StoredMessage], placeholder: StoredMessage,
    ) -> AsyncIterator[TurnEvent]:
        orchestrator = RoundOrchestrator(
            provider=self.provider,
            store=self.store,
            history=history,
            placeholder=placeholder,
            registry=self.registry,
            settings=self.settings,
            active_messages=self.active_messages,
            executor=self.executor,
        )
        orchestrator.on_settled = functools.partial(self._turn_settled, orchestrator)
        self._orchestrator = orchestrator
        try:
            async with aclosing(orchestrator.iter()) as events:
                async for event in events:
                    yield event
        finally:
            # The consumer may stop iterating early.
            self._turn_settled(orchestrator, orchestrator.phase)

    def _turn_settled(self, orchestrator: RoundOrchestrator, phase: RoundPhase) -> None:
        # A stopped turn can wind down after its replacement has started.
        if orchestrator is self._orchestrator:
            self._settled(phase)

    def _settled(self, phase: RoundPhase) -> None:
        if self._idle.is_set():
            return
        logger.debug(f"Turn settled: {phase.value}")
        self.is_loading = False
        self._idle.set()

    async def _drain(self, events: AsyncIterator[TurnEvent]) -> TurnResult | None:
        async with aclosing(events) as stream:
            async for event in stream:
                if isinstance(event, TurnComplete):
                    return event.result
                if isinstance(event, TurnError):
                    raise event.error
                if isinstance(event, TurnAborted):
                    return TurnResult(
                        content=event.partial_content,
                        rounds=event.round_number,
                        aborted=True,
                    )
        return None

    async def _begin_regeneration(self) -> StoredMessage:
        self.is_loading = True
        self._idle.clear()
        try:
            return await self._add_message(MessageRole.ASSISTANT, "")
        except Exception:
            self._settled(RoundPhase.ERROR)
            raise

    async def _add_message(
        self, role: MessageRole, content: str,
        extras: list[Attachment] | None = None,
    ) -> StoredMessage:
        if self.conversation is None:
            raise StoreError("No active conversation")
        parent = self.active_messages[-1].id if self.active_messages else "-1"
        try:
            message = await self.store.add_message(MessageDraft(
                conv_id=self.conversation.id, role=role, content=content,
                parent=parent, extra=extras,
            ))
        except Exception as e:
            raise StoreError(f"Failed to add {role.value} message: {e}") from e
        self.active_messages.append(message)
        self.conversation.last_modified = now_ms()
        return message

    async def _rollback(self, user_message: StoredMessage, error: ContextError) -> None:
        self.max_context_error = {
            "message": str(error),
            "estimated_tokens": error.estimated_tokens,
            "max_context": error.max_context,
        }
        index = self._index_of(user_message.id)
        if index is None:
            return
        del self.active_messages[index]
        try:
            await self.store.delete_message(user_message.id)
        except Exception as e:
            logger.error(f"Failed to delete user message: {e}")

    async def _truncate_after(self, index: int) -> None:
        for message in self.active_messages[index:]:
            await self.store.delete_message(message.id)
        del self.active_messages[index:]
        if self.conversation is not None:
            self.conversation.last_modified = now_ms()

    def _index_of(self, message_id: str) -> int | None:
        for i, m in enumerate(self.active_messages):
            if m.id == message_id:
                return i
        return None
