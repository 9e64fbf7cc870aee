"""Fallible JSON decoding.

Stream records and tool arguments are both untrusted text coming back
from the model server.  :func:`decode_json` never raises; callers branch
on the returned :class:`Decoded` / :class:`DecodeFailure` value.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class Decoded:
    """Successful decode."""

    value: Any
    ok: bool = True


@dataclass(frozen=True)
class DecodeFailure:
    """Failed decode, keeping the raw text for error reporting."""

    raw: str
    error: str
    ok: bool = False


DecodeResult = Decoded | DecodeFailure


def decode_json(raw: str) -> DecodeResult:
    try:
        return Decoded(json.loads(raw))
    except (json.JSONDecodeError, TypeError) as e:
        return DecodeFailure(raw=raw, error=str(e))


def decode_json_object(raw: str, empty_is_object: bool = False) -> DecodeResult:
    """Decode *raw* and require a JSON object.

    Args:
        raw: Text to decode.
        empty_is_object: Treat an empty or whitespace-only string as ``{}``.
            Tool calls without parameters often arrive with no argument
            fragments at all.
    """
    if empty_is_object and not raw.strip():
        return Decoded({})
    result = decode_json(raw)
    if result.ok and not isinstance(result.value, dict):
        return DecodeFailure(
            raw=raw,
            error=f"expected a JSON object, got {type(result.value).__name__}",
        )
    return result
