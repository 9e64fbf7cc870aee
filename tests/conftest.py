import asyncio
import json

import pytest

from chatloop.config import ChatSettings
from chatloop.context import Context
from chatloop.message import MessageDraft, MessageRole
from chatloop.orchestrator import RoundOrchestrator
from chatloop.provider import ModelProvider
from chatloop.store import InMemoryMessageStore
from chatloop.tools import ToolRegistry, tool


# ---------------------------------------------------------------------------
# Stream record builders (mirror the llama.cpp / OpenAI wire format)
# ---------------------------------------------------------------------------

DONE = "data: [DONE]\n\n"

# Placed in a script, makes the stream stall until it is cancelled.
# Compared by value: test modules import this file as ``tests.conftest``
# while pytest loads it as ``conftest``, so object identity would differ.
HANG = "<hang until cancelled>"


def sse(payload: dict) -> str:
    return f"data: {json.dumps(payload)}\n\n"


def content_chunk(text: str) -> str:
    return sse({"choices": [{"index": 0, "delta": {"content": text}}]})


def tool_call_chunk(
    index: int = 0,
    call_id: str | None = None,
    name: str | None = None,
    arguments: str | None = None,
) -> str:
    function = {}
    if name is not None:
        function["name"] = name
    if arguments is not None:
        function["arguments"] = arguments
    tc = {"index": index, "function": function}
    if call_id is not None:
        tc["id"] = call_id
        tc["type"] = "function"
    return sse({"choices": [{"index": 0, "delta": {"tool_calls": [tc]}}]})


def finish_chunk(reason: str, usage: dict | None = None) -> str:
    payload = {"choices": [{"index": 0, "delta": {}, "finish_reason": reason}]}
    if usage is not None:
        payload["usage"] = usage
    return sse(payload)


def text_round(*texts: str) -> list:
    """Script for a round that only answers with text."""
    return [*(content_chunk(t) for t in texts), finish_chunk("stop"), DONE]


def tool_round(
    calls: list[tuple[str, str, dict]], text: str | None = None,
) -> list:
    """Script for a round requesting tools.

    Each item in *calls* is ``(call_id, name, args_dict)``.
    """
    chunks = [content_chunk(text)] if text else []
    for i, (call_id, name, args) in enumerate(calls):
        chunks.append(tool_call_chunk(i, call_id=call_id, name=name, arguments=""))
        chunks.append(tool_call_chunk(i, arguments=json.dumps(args)))
    return [*chunks, finish_chunk("tool_calls"), DONE]


# ---------------------------------------------------------------------------
# Scripted provider
# ---------------------------------------------------------------------------

class ScriptedProvider(ModelProvider):
    """Provider that replays pre-queued raw stream scripts. No network calls.

    Each entry of ``scripts`` is the list of body chunks for one request.
    """

    def __init__(self, scripts: list[list] | None = None):
        self.scripts: list[list] = list(scripts or [])
        self.completions: list[dict] = []
        self.requests: list[dict] = []
        self.closed = 0

    async def stream(self, body: dict):
        self.requests.append(body)
        script = self.scripts.pop(0)
        try:
            for chunk in script:
                if chunk == HANG:
                    await asyncio.Event().wait()
                elif isinstance(chunk, Exception):
                    raise chunk
                else:
                    yield chunk
        finally:
            self.closed += 1

    async def complete(self, body: dict) -> dict:
        self.requests.append(body)
        return self.completions.pop(0)


# ---------------------------------------------------------------------------
# Recording store
# ---------------------------------------------------------------------------

class RecordingStore(InMemoryMessageStore):
    """In-memory store that logs every write.

    Set ``fail_adds`` / ``fail_updates`` / ``fail_reads`` to make the matching
    call raise.
    """

    def __init__(self):
        super().__init__()
        self.added: list = []
        self.updates: list[tuple[str, dict]] = []
        self.deleted: list[str] = []
        self.fail_adds = False
        self.fail_updates = False
        self.fail_reads = False

    async def add_message(self, draft):
        if self.fail_adds:
            raise RuntimeError("store unavailable")
        message = await super().add_message(draft)
        self.added.append(message)
        return message

    async def update_message(self, message_id, **patch):
        self.updates.append((message_id, patch))
        if self.fail_updates:
            raise RuntimeError("store unavailable")
        await super().update_message(message_id, **patch)

    async def delete_message(self, message_id):
        self.deleted.append(message_id)
        await super().delete_message(message_id)

    async def get_conversation_messages(self, conv_id):
        if self.fail_reads:
            raise RuntimeError("store unavailable")
        return await super().get_conversation_messages(conv_id)


def messages_with_role(store: InMemoryMessageStore, conv_id: str, role: MessageRole):
    return [
        m for m in sorted(store.messages.values(), key=lambda m: m.timestamp)
        if m.conv_id == conv_id and m.role == role
    ]


async def collect(events) -> list:
    return [e async for e in events]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def store():
    return RecordingStore()


@pytest.fixture
def get_weather():
    @tool
    def get_weather(city: str):
        """Look up the weather for a city."""
        return {"city": city, "forecast": "sunny"}
    return get_weather


@pytest.fixture
def get_time():
    @tool
    async def get_time(zone: str = "UTC"):
        """Current time in a zone."""
        return f"12:00 {zone}"
    return get_time


@pytest.fixture
def whoami():
    @tool
    def whoami(context: Context):
        """Report the call id the tool was invoked with."""
        return context.call.id
    return whoami


@pytest.fixture
def registry(get_weather, get_time, whoami):
    return ToolRegistry([get_weather, get_time, whoami])


@pytest.fixture
def make_orchestrator(provider, store, registry):
    """Factory fixture building an orchestrator over a fresh conversation.

    Returns ``(orchestrator, placeholder)``.  The conversation holds one
    user message, *prompt*, followed by the assistant placeholder.
    """
    async def _make(prompt="What's the weather?", settings=None, **kwargs):
        conversation = await store.create_conversation("test")
        user = await store.add_message(MessageDraft(
            conv_id=conversation.id, role=MessageRole.USER, content=prompt,
        ))
        placeholder = await store.add_message(MessageDraft(
            conv_id=conversation.id, role=MessageRole.ASSISTANT,
            content="", parent=user.id,
        ))
        store.added.clear()
        orchestrator = RoundOrchestrator(
            provider=provider,
            store=store,
            history=[user],
            placeholder=placeholder,
            registry=kwargs.pop("registry", registry),
            settings=settings or ChatSettings(model="test-model"),
            active_messages=[user, placeholder],
            **kwargs,
        )
        return orchestrator, placeholder
    return _make
