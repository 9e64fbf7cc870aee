from chatloop.config import ChatSettings, GenerationSettings, configure_logging
from chatloop.errors import (
    ChatloopError,
    ContextError,
    StoreError,
    ToolRecoverableError,
    TransportError,
)
from chatloop.instrumentation import instrument, uninstrument
from chatloop.orchestrator import RoundOrchestrator
from chatloop.provider import (
    LlamaCppProvider,
    ModelProvider,
    OpenAICompatibleProvider,
    OpenAIProvider,
    OpenRouter,
)
from chatloop.session import ChatSession
from chatloop.store import InMemoryMessageStore
from chatloop.tools import Tool, ToolRegistry, tool

__all__ = [
    "ChatSession",
    "ChatSettings",
    "ChatloopError",
    "ContextError",
    "GenerationSettings",
    "InMemoryMessageStore",
    "LlamaCppProvider",
    "ModelProvider",
    "OpenAICompatibleProvider",
    "OpenAIProvider",
    "OpenRouter",
    "RoundOrchestrator",
    "StoreError",
    "Tool",
    "ToolRecoverableError",
    "ToolRegistry",
    "TransportError",
    "configure_logging",
    "instrument",
    "tool",
    "uninstrument",
]
