"""Error taxonomy for a generation turn.

Per-chunk and per-tool problems are recovered where they happen and never
reach these types.  Transport and context errors end the turn.
"""

CONTEXT_ERROR_MESSAGE = (
    "The request exceeds the available context size. Try increasing the "
    "context size or enable context shift."
)


class ChatloopError(Exception):
    """Base class for errors raised by chatloop."""


class TransportError(ChatloopError):
    """The completion request never completed.

    Args:
        message: User-facing description of the failure.
        status_code: HTTP status returned by the server, if any.
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ContextError(ChatloopError):
    """A round ended with neither text nor tool calls.

    This is inferred, not reported by the server: an empty stream is taken
    to mean the prompt did not fit the model's context window.
    """

    def __init__(
        self,
        message: str = CONTEXT_ERROR_MESSAGE,
        estimated_tokens: int = 0,
        max_context: int = 4096,
    ):
        super().__init__(message)
        self.estimated_tokens = estimated_tokens
        self.max_context = max_context


class StoreError(ChatloopError):
    """The message store failed where its result is required."""


class ToolRecoverableError(ChatloopError):
    """Raise from a tool to hand a corrective message back to the model.

    The message becomes the tool result content and the round continues
    as if the tool had succeeded.
    """


def http_error_message(status_code: int, reason: str = "") -> str:
    """Map an HTTP status from the completion endpoint to a readable message."""
    if status_code == 400:
        return "Invalid request - check your message format"
    if status_code == 401:
        return "Unauthorized - check server authentication"
    if status_code == 404:
        return "Chat endpoint not found - server may not support chat completions"
    if status_code == 500:
        return "Server internal error - check server logs"
    if status_code == 503:
        return "Server unavailable - try again later"
    if reason:
        return f"Server error ({status_code}): {reason}"
    return f"Server error ({status_code})"
