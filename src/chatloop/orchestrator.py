"""Round orchestration for one generation turn.

A turn is a user message followed by as many completion rounds as the
model needs: each round streams a response, and if the model asked for
tools, runs them and feeds the results into the next round.  The
:class:`RoundOrchestrator` drives that loop and reports progress as a
single ordered stream of :mod:`chatloop.events` turn events.

Per-round bookkeeping lives in an immutable :class:`RoundState`, advanced
by :func:`reduce_round` for every parser event.  The reducer is pure; the
orchestrator carries out the effects it returns.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import aclosing
from dataclasses import dataclass, replace
from enum import Enum

from chatloop.config import ChatSettings
from chatloop.errors import ContextError, StoreError, TransportError
from chatloop.events import (
    ContentDelta,
    ContentEvent,
    Finish,
    ParserEvent,
    RoundStarted,
    StreamEnd,
    ToolCallDelta,
    ToolCallEvent,
    ToolResultEvent,
    TurnAborted,
    TurnComplete,
    TurnError,
    TurnEvent,
    TurnResult,
)
from chatloop.executor import ToolExecutor
from chatloop.history import HistoryTail, assemble_history, summarize_messages
from chatloop.instrumentation import (
    completion_span,
    record_error,
    record_usage,
    turn_span,
)
from chatloop.message import (
    MessageDraft,
    MessageRole,
    StoredMessage,
    ToolCall,
    ToolResult,
    new_tool_call_id,
    now_ms,
)
from chatloop.provider import ModelProvider
from chatloop.request import build_chat_request
from chatloop.store import MessageStore
from chatloop.streaming import ToolCallBuffer, parse_completion, parse_stream
from chatloop.thinking import ThinkingSplit, split_thinking
from chatloop.tools import ToolRegistry

logger = logging.getLogger(__name__)


class RoundPhase(Enum):
    SENDING = "sending"
    STREAMING = "streaming"
    NO_CALLS = "no_calls"
    HAS_CALLS = "has_calls"
    EXECUTING = "executing"
    ASSEMBLING = "assembling"
    FINISHED = "finished"
    ABORTED = "aborted"
    ERROR = "error"


TERMINAL_PHASES = (RoundPhase.FINISHED, RoundPhase.ABORTED, RoundPhase.ERROR)


class RoundEffect(Enum):
    SHOW_CONTENT = "show_content"
    BUFFER_TOOL_CALL = "buffer_tool_call"
    FLUSH_TOOL_CALLS = "flush_tool_calls"


@dataclass(frozen=True)
class RoundState:
    """What one round has produced so far.

    ``had_text`` turns true once the thinking-free text is non-blank.
    ``saw_content`` and ``saw_tool_calls`` record whether the server sent
    anything at all, which is what the context-error check looks at.
    """

    round_number: int
    accumulated_text: str = ""
    pending_calls: tuple[ToolCall, ...] = ()
    had_text: bool = False
    saw_content: bool = False
    saw_tool_calls: bool = False
    finish_reason: str | None = None
    usage: dict | None = None
    ended: bool = False

    @property
    def split(self) -> ThinkingSplit:
        return split_thinking(self.accumulated_text)

    @property
    def visible_text(self) -> str:
        return self.split.content

    @property
    def received_nothing(self) -> bool:
        return not self.saw_content and not self.saw_tool_calls

    def with_calls(self, calls: list[ToolCall]) -> RoundState:
        if not calls:
            return self
        return replace(self, pending_calls=self.pending_calls + tuple(calls))


def reduce_round(
    state: RoundState, event: ParserEvent,
) -> tuple[RoundState, tuple[RoundEffect, ...]]:
    """Advance *state* by one parser event.

    Returns the new state and the effects the caller must perform.
    ``FLUSH_TOOL_CALLS`` is requested both when the server finishes with
    ``"tool_calls"`` and again at stream end; the buffer makes the second
    flush a no-op.
    """
    if isinstance(event, ContentDelta):
        text = state.accumulated_text + event.text
        visible = split_thinking(text).content
        return replace(
            state,
            accumulated_text=text,
            saw_content=True,
            had_text=state.had_text or bool(visible.strip()),
        ), (RoundEffect.SHOW_CONTENT,)
    if isinstance(event, ToolCallDelta):
        return replace(state, saw_tool_calls=True), (RoundEffect.BUFFER_TOOL_CALL,)
    if isinstance(event, Finish):
        effects = (
            (RoundEffect.FLUSH_TOOL_CALLS,) if event.reason == "tool_calls" else ()
        )
        return replace(state, finish_reason=event.reason), effects
    if isinstance(event, StreamEnd):
        return replace(
            state, ended=True, usage=event.usage or state.usage,
        ), (RoundEffect.FLUSH_TOOL_CALLS,)
    return state, ()


class _Aborted(Exception):
    """Internal signal: the caller asked the turn to stop."""


_END = object()


async def _next_or_end(iterator: AsyncIterator):
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _END


class RoundOrchestrator:
    """Runs one turn: rounds of completion, tool execution and re-sending.

    The orchestrator owns *active_messages* and its own history tail for the
    duration of the turn.  ``iter()`` yields :class:`TurnEvent` objects and
    always ends with exactly one of ``TurnComplete``, ``TurnError`` or
    ``TurnAborted``; ``run()`` drains it.

    Args:
        provider: Completion transport.
        store: Message store the turn persists into.
        history: The conversation as it stood before this turn, including
            the user message that started it.
        placeholder: Assistant message created for the turn; round 1
            streams into it.
        registry: Tools offered to the model.
        settings: Request and loop settings.
        active_messages: The session's in-memory message list, updated as
            the turn progresses.
        executor: Tool executor; built from *registry* when omitted.
        on_settled: Called once, with the terminal phase, when the turn
            ends for any reason.
    """

    def __init__(
        self,
        provider: ModelProvider,
        store: MessageStore,
        history: list[StoredMessage | dict],
        placeholder: StoredMessage,
        registry: ToolRegistry | None = None,
        settings: ChatSettings | None = None,
        active_messages: list[StoredMessage] | None = None,
        executor: ToolExecutor | None = None,
        on_settled: Callable[[RoundPhase], None] | None = None,
    ):
        self.provider = provider
        self.store = store
        self.history = list(history)
        self.placeholder = placeholder
        self.registry = registry if registry is not None else ToolRegistry()
        self.settings = settings or ChatSettings()
        self.active_messages = (
            active_messages if active_messages is not None else [placeholder]
        )
        self.executor = executor or ToolExecutor(self.registry)
        self.on_settled = on_settled

        self.conv_id = placeholder.conv_id
        self.tail = HistoryTail()
        self.phase = RoundPhase.SENDING
        self.state = RoundState(round_number=0)
        self.round_message: StoredMessage | None = None
        self.persisted: list[StoredMessage] = []
        self._abort = asyncio.Event()
        self._call_ids: set[str] = set()
        self._round_text_saved = False
        self._settled = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def current_response(self) -> str:
        return self.state.accumulated_text

    def abort(self) -> None:
        """Ask the turn to stop at its next suspension point."""
        self._abort.set()

    @property
    def aborted(self) -> bool:
        return self._abort.is_set()

    async def run(self) -> TurnResult:
        """Drain ``iter()``.

        Raises:
            TransportError: The completion request failed.
            ContextError: A round came back empty.
        """
        async for event in self.iter():
            if isinstance(event, TurnComplete):
                return event.result
            if isinstance(event, TurnError):
                raise event.error
            if isinstance(event, TurnAborted):
                return TurnResult(
                    content=event.partial_content,
                    rounds=event.round_number,
                    aborted=True,
                    messages=list(self.persisted),
                    history_tail=self.tail.messages,
                )
        raise RuntimeError("iter() ended without a terminal event")

    async def iter(self) -> AsyncIterator[TurnEvent]:
        self.executor.reset()
        async with turn_span(self.conv_id, self.settings.model) as span:
            try:
                async for event in self._run_rounds():
                    if isinstance(event, TurnError):
                        record_error(span, event.error)
                    yield event
            except asyncio.CancelledError:
                logger.info("Generation cancelled")
                await self._save_partial()
                self._settle(RoundPhase.ABORTED)
                raise

    # ------------------------------------------------------------------
    # Round loop
    # ------------------------------------------------------------------

    async def _run_rounds(self) -> AsyncIterator[TurnEvent]:
        max_rounds = self.settings.max_tool_rounds
        for round_number in range(1, max_rounds + 1):
            try:
                self._check_abort()
                message = await self._start_round(round_number)
                yield RoundStarted(round_number=round_number, message_id=message.id)
                self._check_abort()

                async with aclosing(self._stream_round()) as events:
                    async for event in events:
                        yield event
                        self._check_abort()

                if not self.state.pending_calls:
                    yield await self._finish_turn()
                    return

                async with aclosing(self._run_tools()) as events:
                    async for event in events:
                        yield event
                        self._check_abort()
            except _Aborted:
                yield await self._abort_turn()
                return
            except (TransportError, ContextError, StoreError) as e:
                yield self._fail(e)
                return

        logger.warning(
            f"Reached max tool rounds ({max_rounds}). Stopping tool loop."
        )
        yield self._complete(hit_round_cap=True)

    async def _start_round(self, round_number: int) -> StoredMessage:
        self.phase = RoundPhase.SENDING
        self.state = RoundState(round_number=round_number)
        self.round_message = None
        self._round_text_saved = False
        logger.info(f"Tool round #{round_number}")

        if round_number == 1:
            self.round_message = self.placeholder
            return self.round_message

        parent = (
            self.active_messages[-1].id if self.active_messages
            else self.placeholder.parent
        )
        try:
            message = await self.store.add_message(MessageDraft(
                conv_id=self.conv_id, role=MessageRole.ASSISTANT,
                content="", parent=parent,
            ))
        except Exception as e:
            raise StoreError(f"Failed to create assistant message: {e}") from e
        self.active_messages.append(message)
        self.round_message = message
        return message

    async def _stream_round(self) -> AsyncIterator[TurnEvent]:
        outgoing = assemble_history(self.history, self.tail)
        logger.debug(f"Outgoing messages: {summarize_messages(outgoing)}")
        body = build_chat_request(
            outgoing, self.settings,
            tools=self.registry.schemas(),
            tool_choice=self.settings.tool_choice,
        )
        buffer = ToolCallBuffer()

        async with completion_span(
            self.provider.system, self.settings.model, self.state.round_number,
        ) as span:
            try:
                async with aclosing(self._parser_events(body)) as events:
                    async for event in events:
                        self._check_abort()
                        self.phase = RoundPhase.STREAMING
                        self.state, effects = reduce_round(self.state, event)
                        for effect in effects:
                            if effect is RoundEffect.SHOW_CONTENT:
                                yield self._show_content(event.text)
                            elif effect is RoundEffect.BUFFER_TOOL_CALL:
                                buffer.feed(event)
                            elif effect is RoundEffect.FLUSH_TOOL_CALLS:
                                self.state = self.state.with_calls(buffer.flush())
            except TransportError as e:
                record_error(span, e)
                raise
            record_usage(span, self.state.usage)

        if self.state.finish_reason == "length":
            logger.info("Generation stopped at the max_tokens limit")
        if self.state.received_nothing:
            # Heuristic: the server answers an over-long prompt with an
            # empty stream, which looks the same as a truncated response.
            logger.warning("Round produced neither text nor tool calls")
            await self._discard_round_message()
            raise ContextError(max_context=self.settings.max_context)

    async def _parser_events(self, body: dict) -> AsyncIterator[ParserEvent]:
        if body.get("stream", True):
            async with aclosing(parse_stream(self.provider.stream(body))) as events:
                async with aclosing(self._until_aborted(events)) as guarded:
                    async for event in guarded:
                        yield event
        else:
            for event in parse_completion(await self.provider.complete(body)):
                yield event

    async def _until_aborted(
        self, iterator: AsyncIterator[ParserEvent],
    ) -> AsyncIterator[ParserEvent]:
        """Yield from *iterator*, giving up as soon as the turn is aborted.

        Waiting for the next chunk can take arbitrarily long, so the wait
        races the abort signal instead of checking it only between chunks.
        """
        aborted = asyncio.ensure_future(self._abort.wait())
        step = None
        try:
            while True:
                step = asyncio.ensure_future(_next_or_end(iterator))
                await asyncio.wait(
                    {step, aborted}, return_when=asyncio.FIRST_COMPLETED,
                )
                if not step.done():
                    raise _Aborted()
                event = step.result()
                if event is _END:
                    return
                yield event
        finally:
            aborted.cancel()
            if step is not None and not step.done():
                step.cancel()
                await asyncio.wait({step})

    def _show_content(self, delta: str) -> ContentEvent:
        split = self.state.split
        if self.round_message is not None:
            self.round_message.content = split.content
            self.round_message.thinking = split.thinking
        return ContentEvent(
            delta=delta, content=split.content, thinking=split.thinking,
        )

    # ------------------------------------------------------------------
    # Tool execution
    # ------------------------------------------------------------------

    def _assign_ids(self, calls: tuple[ToolCall, ...]) -> list[ToolCall]:
        assigned = []
        for call in calls:
            call_id = call.id
            if not call_id or call_id in self._call_ids:
                if call_id:
                    logger.warning(f"Duplicate tool call id '{call_id}', replacing")
                call_id = new_tool_call_id()
            self._call_ids.add(call_id)
            assigned.append(call.model_copy(update={"id": call_id}))
        return assigned

    async def _run_tools(self) -> AsyncIterator[TurnEvent]:
        self.phase = RoundPhase.HAS_CALLS
        round_number = self.state.round_number
        calls = self._assign_ids(self.state.pending_calls)
        self.state = replace(self.state, pending_calls=tuple(calls))

        text = self.state.visible_text if self.state.had_text else ""
        kept = await self._settle_round_message(text)
        for call in calls:
            logger.info(f"Tool call: id={call.id} name={call.name} args={call.arguments}")
            yield ToolCallEvent(
                round_number=round_number, call_id=call.id,
                name=call.name, arguments=call.arguments,
            )

        parent = kept.id if kept is not None else self.placeholder.parent
        request = await self._add(MessageDraft(
            conv_id=self.conv_id, role=MessageRole.ASSISTANT, content="",
            parent=parent, tool_calls=calls,
        ))

        self.phase = RoundPhase.EXECUTING
        base_timestamp = request.timestamp if request is not None else now_ms()
        results: list[ToolResult] = []
        for i, call in enumerate(calls):
            self._check_abort()
            result = await self.executor.execute(call)
            self._check_abort()
            results.append(result)
            await self._add(MessageDraft(
                conv_id=self.conv_id, role=MessageRole.TOOL,
                content=result.content,
                timestamp=base_timestamp + i + 1,
                parent=request.id if request is not None else parent,
                tool_call_id=result.tool_call_id,
                tool_name=result.name,
            ))
            yield ToolResultEvent(
                round_number=round_number, call_id=result.tool_call_id,
                name=result.name, content=result.content, is_error=result.is_error,
            )

        self.phase = RoundPhase.ASSEMBLING
        self.tail.record_round(text, calls, results)
        logger.debug(f"Next round history tail: {summarize_messages(self.tail.messages)}")

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    async def _finish_turn(self) -> TurnComplete:
        self.phase = RoundPhase.NO_CALLS
        text = self.state.visible_text if self.state.had_text else ""
        if await self._settle_round_message(text) is not None:
            self.tail.append_text(text)
        logger.info("No tool calls this round, finishing")
        return self._complete()

    def _complete(self, hit_round_cap: bool = False) -> TurnComplete:
        result = TurnResult(
            content=self.state.visible_text,
            rounds=self.state.round_number,
            hit_round_cap=hit_round_cap,
            messages=list(self.persisted),
            history_tail=self.tail.messages,
        )
        self._settle(RoundPhase.FINISHED)
        return TurnComplete(result=result)

    def _fail(self, error: Exception) -> TurnError:
        if isinstance(error, ContextError):
            logger.warning(f"Context error detected: {error}")
        else:
            logger.error(f"Generation failed: {error}")
            if self.round_message is not None and self.round_message in self.active_messages:
                self.round_message.content = f"Error: {error}"
        self._settle(RoundPhase.ERROR)
        return TurnError(error=error)

    async def _abort_turn(self) -> TurnAborted:
        logger.info("Generation aborted by user")
        saved = await self._save_partial()
        self._settle(RoundPhase.ABORTED)
        return TurnAborted(
            partial_content=self.state.visible_text,
            round_number=self.state.round_number,
            saved_message_id=saved,
        )

    def _settle(self, phase: RoundPhase) -> None:
        self.phase = phase
        if self._settled:
            return
        self._settled = True
        if self.on_settled is not None:
            self.on_settled(phase)

    def _check_abort(self) -> None:
        if self._abort.is_set():
            raise _Aborted()

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    async def _save_partial(self) -> str | None:
        """Best-effort save of the current round's partial text."""
        message = self.round_message
        if self._round_text_saved or message is None:
            return None
        if not self.state.accumulated_text.strip():
            return None
        split = self.state.split
        self._round_text_saved = True
        try:
            await self.store.update_message(
                message.id,
                content=split.content or self.state.accumulated_text,
                thinking=split.thinking,
            )
        except Exception as e:
            logger.error(f"Failed to save partial response: {e}")
            return None
        return message.id

    async def _settle_round_message(self, text: str) -> StoredMessage | None:
        """Persist the round's text, or discard its message when blank."""
        message = self.round_message
        if message is None:
            return None
        if not text.strip():
            await self._discard_round_message()
            return None
        split = self.state.split
        message.content = text
        message.thinking = split.thinking
        message.finish_reason = self.state.finish_reason
        message.usage = self.state.usage
        self._round_text_saved = True
        try:
            await self.store.update_message(
                message.id,
                content=text,
                thinking=split.thinking,
                finish_reason=self.state.finish_reason,
                usage=self.state.usage,
            )
        except Exception as e:
            logger.warning(f"Failed to persist assistant text: {e}")
        self.persisted.append(message)
        return message

    async def _discard_round_message(self) -> None:
        message = self.round_message
        if message is None:
            return
        if message in self.active_messages:
            self.active_messages.remove(message)
        self.round_message = None
        try:
            await self.store.delete_message(message.id)
        except Exception as e:
            logger.warning(f"Failed to delete empty assistant message: {e}")

    async def _add(self, draft: MessageDraft) -> StoredMessage | None:
        try:
            message = await self.store.add_message(draft)
        except Exception as e:
            logger.warning(f"Failed to persist {draft.role.value} message: {e}")
            return None
        self.active_messages.append(message)
        self.persisted.append(message)
        return message
