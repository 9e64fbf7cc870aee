import inspect
import json
import logging
import time
from typing import TYPE_CHECKING

from chatloop.context import Context
from chatloop.decoding import decode_json_object
from chatloop.errors import ToolRecoverableError
from chatloop.instrumentation import record_error, tool_span
from chatloop.message import ToolCall, ToolResult
from chatloop.tools import ToolRegistry

if TYPE_CHECKING:
    from chatloop.session import ChatSession

logger = logging.getLogger(__name__)


def _error_content(error: str, **extra) -> str:
    return json.dumps({"error": error, **extra})


def _preview(text: str, limit: int = 200) -> str:
    return text if len(text) <= limit else text[:limit] + "…"


class ToolExecutor:
    """Runs tool calls against a :class:`ToolRegistry`.

    ``execute`` never raises for problems with the call itself: an unknown
    tool, undecodable arguments or an exception inside the tool all come
    back as a :class:`ToolResult` whose content is a JSON object with an
    ``error`` field, so the model can see what went wrong and the round
    carries on.

    Args:
        registry: Tools available to the model.
        session: Session handed to tools through :class:`Context`.
    """

    def __init__(
        self, registry: ToolRegistry, session: "ChatSession | None" = None,
    ):
        self.registry = registry
        self.session = session
        self._seen: set[str] = set()

    def reset(self) -> None:
        """Forget the calls seen so far; call at the start of each turn."""
        self._seen.clear()

    async def execute(self, call: ToolCall) -> ToolResult:
        if call.fingerprint in self._seen:
            logger.warning(
                f"Repeated tool call detected (same name+args): {call.fingerprint}"
            )
        self._seen.add(call.fingerprint)

        async with tool_span(call.name, call.id) as span:
            started = time.perf_counter()
            result = await self._execute(call, span)
            elapsed = (time.perf_counter() - started) * 1000
        logger.debug(f"{call.name} took {elapsed:.1f}ms")
        logger.debug(f"{call.name} result: {_preview(result.content)}")
        return result

    async def _execute(self, call: ToolCall, span) -> ToolResult:
        tool_obj = self.registry.lookup(call.name)
        if tool_obj is None:
            logger.warning(f"Tool not found: {call.name}")
            return self._result(
                call, _error_content(f"Unknown tool: {call.name}"), is_error=True,
            )

        decoded = decode_json_object(call.arguments, empty_is_object=True)
        if not decoded.ok:
            logger.warning(f"Invalid JSON in arguments for {call.name}: {decoded.error}")
            return self._result(
                call,
                _error_content("Invalid JSON arguments", raw=call.arguments),
                is_error=True,
            )
        params = dict(decoded.value)

        logger.info(f"Calling {call.name} with {params}")
        if "context" in inspect.signature(tool_obj.func).parameters:
            params["context"] = Context(session=self.session, call=call)

        try:
            output = (await tool_obj(**params)).output
        except ToolRecoverableError as e:
            logger.info(f"Tool {call.name} requested retry: {e}")
            return self._result(call, str(e))
        except Exception as e:
            logger.error(f"Tool {call.name} raised: {e}")
            record_error(span, e)
            return self._result(
                call, _error_content(f"Error calling {call.name}: {e}"), is_error=True,
            )

        content = output if isinstance(output, str) else json.dumps(output, default=str)
        return self._result(call, content)

    @staticmethod
    def _result(call: ToolCall, content: str, is_error: bool = False) -> ToolResult:
        return ToolResult(
            tool_call_id=call.id, name=call.name, content=content, is_error=is_error,
        )
