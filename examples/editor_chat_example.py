"""Streaming chat with client-side tools: an HTML editing assistant.

Demonstrates:
- Exposing the editor tool set to the model
- Streaming a turn event by event with ChatSession.iter_send_message
- Optional OpenTelemetry tracing

Usage:
    uv run examples/editor_chat_example.py --provider llama.cpp --url http://localhost:8080/v1
    uv run --env-file=.env examples/editor_chat_example.py --provider openai --model gpt-4o-mini --trace
"""

import argparse
import asyncio
import logging

from chatloop.config import ChatSettings, configure_logging
from chatloop.editor import EditorBuffer, editor_tools
from chatloop.errors import ChatloopError
from chatloop.events import (
    ContentEvent,
    RoundStarted,
    ToolCallEvent,
    ToolResultEvent,
    TurnAborted,
    TurnComplete,
    TurnError,
)
from chatloop.provider import LlamaCppProvider, ModelProvider, OpenAIProvider, OpenRouter
from chatloop.session import ChatSession
from chatloop.store import InMemoryMessageStore
from chatloop.tools import ToolRegistry

PROVIDERS = {
    "llama.cpp": lambda url: LlamaCppProvider(url),
    "openai": lambda url: OpenAIProvider(),
    "openrouter": lambda url: OpenRouter(),
}

SYSTEM_MESSAGE = (
    "You are an assistant editing the HTML page shown in the user's editor. "
    "Read the page with get_editor_code before changing it, and prefer "
    "replace_in_editor_code for small edits."
)


def make_provider(provider: str, url: str | None) -> ModelProvider:
    return PROVIDERS[provider](url)


def setup_tracing(service_name: str):
    from opentelemetry import trace
    from opentelemetry.sdk.resources import SERVICE_NAME, Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import (
        SimpleSpanProcessor, ConsoleSpanExporter,
    )
    from chatloop.instrumentation import instrument

    provider = TracerProvider(
        resource=Resource({SERVICE_NAME: service_name})
    )
    provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    instrument()


async def run_turn(session: ChatSession, prompt: str):
    printed = 0
    async for event in session.iter_send_message(prompt):
        if isinstance(event, RoundStarted) and event.round_number > 1:
            printed = 0
            print()
        elif isinstance(event, ContentEvent):
            print(event.content[printed:], end="", flush=True)
            printed = len(event.content)
        elif isinstance(event, ToolCallEvent):
            print(f"\n  -> {event.name}({event.arguments})")
        elif isinstance(event, ToolResultEvent):
            print(f"  <- {event.content[:80]}")
        elif isinstance(event, TurnComplete):
            if event.result.hit_round_cap:
                print("\n[stopped after too many tool rounds]")
        elif isinstance(event, TurnAborted):
            print("\n[stopped]")
        elif isinstance(event, TurnError):
            print(f"\n[error] {event.error}")
    print("\n")


async def main():
    parser = argparse.ArgumentParser(description="HTML editor chat")
    parser.add_argument("--provider", choices=PROVIDERS, default="llama.cpp")
    parser.add_argument("--model", default="default")
    parser.add_argument("--url", default=None)
    parser.add_argument("--trace", action="store_true")
    parser.add_argument("--debug", action="store_true")
    args = parser.parse_args()

    configure_logging(logging.DEBUG if args.debug else logging.WARNING, log_file=None)
    if args.trace:
        setup_tracing("editor-chat")

    buffer = EditorBuffer()
    session = ChatSession(
        make_provider(args.provider, args.url),
        InMemoryMessageStore(),
        registry=ToolRegistry(editor_tools(buffer)),
        settings=ChatSettings(model=args.model, system_message=SYSTEM_MESSAGE),
    )

    print("HTML editor assistant. Ctrl-D quits.\n")
    while True:
        try:
            user_input = input("You: ")
        except (KeyboardInterrupt, EOFError):
            print("\nGoodbye!")
            break

        try:
            await run_turn(session, user_input)
        except ChatloopError as e:
            print(f"[error] {e}")
        print(f"--- editor ---\n{buffer.code}\n")


if __name__ == "__main__":
    asyncio.run(main())
