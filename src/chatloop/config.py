import logging

from pydantic import BaseModel

LOG_FORMAT = "%(asctime)s:%(name)s:%(levelname)s:%(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(
    level: int = logging.INFO, log_file: str | None = "chatloop.log",
) -> None:
    """Send chatloop logs to the console and, optionally, a file."""
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        handlers=handlers,
    )


class GenerationSettings(BaseModel):
    """Sampling parameters sent with every completion request.

    Defaults match the llama.cpp server's web client.  ``samplers`` is a
    ``;``-separated sampler order; ``custom`` is a JSON object merged into
    the request body last, for server options not modelled here.
    """

    temperature: float = 0.8
    max_tokens: int = 2048
    dynatemp_range: float = 0.0
    dynatemp_exponent: float = 1.0
    top_k: int = 40
    top_p: float = 0.95
    min_p: float = 0.05
    xtc_probability: float = 0.0
    xtc_threshold: float = 0.1
    typical_p: float = 1.0
    repeat_last_n: int = 64
    repeat_penalty: float = 1.0
    presence_penalty: float = 0.0
    frequency_penalty: float = 0.0
    dry_multiplier: float = 0.0
    dry_base: float = 1.75
    dry_allowed_length: int = 2
    dry_penalty_last_n: int = -1
    samplers: str | list[str] = "top_k;tfs_z;typical_p;top_p;min_p;temperature"
    custom: str | dict = ""


class ChatSettings(BaseModel):
    """Per-session configuration.

    Args:
        model: Model name sent with each request.
        system_message: Prepended to the request unless the history already
            starts with a system message.
        stream: Request a streamed response.
        max_tool_rounds: Hard cap on completion rounds within one turn.
        max_context: Context size reported alongside a context error.
        tool_choice: ``"auto"``, ``"none"`` or a forced-function object.
        generation: Sampling parameters.
    """

    model: str = "default"
    system_message: str = ""
    stream: bool = True
    max_tool_rounds: int = 10
    max_context: int = 4096
    tool_choice: str | dict = "auto"
    generation: GenerationSettings = GenerationSettings()
