import logging

from chatloop.config import ChatSettings
from chatloop.decoding import decode_json_object
from chatloop.message import MessageRole

logger = logging.getLogger(__name__)


def inject_system_message(messages: list[dict], system_message: str) -> list[dict]:
    """Prepend *system_message* unless the history already opens with one."""
    system_message = (system_message or "").strip()
    if not system_message:
        return messages
    if messages and messages[0].get("role") == MessageRole.SYSTEM.value:
        return messages
    return [{"role": MessageRole.SYSTEM.value, "content": system_message}, *messages]


def _custom_params(custom: str | dict) -> dict:
    if isinstance(custom, dict):
        return custom
    decoded = decode_json_object(custom, empty_is_object=True)
    if not decoded.ok:
        logger.warning(f"Ignoring custom parameters: {decoded.error}")
        return {}
    return decoded.value


def build_chat_request(
    messages: list[dict],
    settings: ChatSettings,
    tools: list[dict] | None = None,
    tool_choice: str | dict | None = None,
) -> dict:
    """Assemble the JSON body of a chat completion request.

    ``tools`` and ``tool_choice`` are only included when there is at least
    one tool.  Custom parameters are merged last and may override anything.
    """
    body: dict = {
        "model": settings.model,
        "messages": inject_system_message(messages, settings.system_message),
        "stream": settings.stream,
    }
    if tools:
        body["tools"] = tools
        body["tool_choice"] = tool_choice or settings.tool_choice

    params = settings.generation.model_dump(exclude={"samplers", "custom"})
    body.update(params)

    samplers = settings.generation.samplers
    if isinstance(samplers, str):
        samplers = [s for s in samplers.split(";") if s.strip()]
    body["samplers"] = samplers

    body.update(_custom_params(settings.generation.custom))
    return body
